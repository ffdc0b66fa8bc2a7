# pharmacy_ledger/api/deps.py
from __future__ import annotations

from dataclasses import dataclass, field
from typing import FrozenSet, Generator, Iterable, Optional

import anyio
from fastapi import Header, HTTPException, Request
from sqlalchemy.orm import Session

from pharmacy_ledger.db.session import create_session
from pharmacy_ledger.services.event_fanout import SubscriberRegistry
from pharmacy_ledger.utils.jwt import decode_token


# =========================================================
# DB (per request)
# =========================================================
def get_db() -> Generator[Session, None, None]:
    db = create_session()
    try:
        yield db
    finally:
        db.close()


# =========================================================
# AUTH HELPERS
# =========================================================
@dataclass(frozen=True)
class Actor:
    """Already-authenticated caller. Only the id is written to the ledger."""
    id: int
    permissions: FrozenSet[str] = field(default_factory=frozenset)
    is_admin: bool = False

    def can(self, code: str) -> bool:
        return self.is_admin or code in self.permissions


def _extract_bearer(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    parts = authorization.split()
    if len(parts) == 2 and parts[0].lower() == "bearer":
        return parts[1]
    return None


def _actor_from_claims(payload: dict) -> Actor:
    sub = payload.get("sub")
    try:
        actor_id = int(sub)
    except (TypeError, ValueError):
        raise HTTPException(status_code=401, detail="Invalid token payload")

    perms = payload.get("perms") or []
    if isinstance(perms, str):
        perms = [p.strip() for p in perms.split(",")]
    return Actor(
        id=actor_id,
        permissions=frozenset(p for p in perms if p),
        is_admin=bool(payload.get("adm", False)),
    )


def current_actor(authorization: Optional[str] = Header(None)) -> Actor:
    raw = _extract_bearer(authorization)
    if not raw:
        raise HTTPException(status_code=401, detail="Missing token")
    payload = decode_token(raw)
    if payload is None:
        raise HTTPException(status_code=401, detail="Invalid token")
    return _actor_from_claims(payload)


def require_perm(actor: Actor, perm: str) -> None:
    if not actor.can(perm):
        raise HTTPException(status_code=403, detail=f"Forbidden: missing {perm}")


def require_any(actor: Actor, perms: Iterable[str]) -> None:
    perms = list(perms)
    if not any(actor.can(p) for p in perms):
        raise HTTPException(status_code=403, detail=f"Forbidden: needs one of {', '.join(perms)}")


# =========================================================
# LIVE FEED
# =========================================================
def get_fanout(request: Request) -> SubscriberRegistry:
    return request.app.state.fanout


def get_stream_readers(request: Request) -> anyio.CapacityLimiter:
    return request.app.state.stream_readers
