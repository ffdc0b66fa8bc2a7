# pharmacy_ledger/main.py
import logging
from contextlib import asynccontextmanager

import anyio
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from pharmacy_ledger.core.config import settings
from pharmacy_ledger.core.logging import configure_logging
from pharmacy_ledger.api.router import api_router
from pharmacy_ledger.api.exception_handlers import register_exception_handlers
from pharmacy_ledger.services.event_fanout import SubscriberRegistry

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    app.state.fanout = SubscriberRegistry(settings.FANOUT_QUEUE_SIZE)
    app.state.stream_readers = anyio.CapacityLimiter(settings.SSE_MAX_STREAMS)
    logger.info("Live feed registry ready")
    try:
        yield
    finally:
        app.state.fanout.close_all()


def create_app() -> FastAPI:
    configure_logging()

    app = FastAPI(
        title=settings.PROJECT_NAME,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.BACKEND_CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    register_exception_handlers(app)
    app.include_router(api_router, prefix=settings.API_V1_STR)

    # Health
    @app.get("/")
    def root():
        return {"message": "Pharmacy stock & billing ledger running", "version": "v1"}

    return app


app = create_app()
