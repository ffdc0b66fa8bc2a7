# pharmacy_ledger/utils/resp.py
from __future__ import annotations

from typing import Any, Dict, Optional

from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from pharmacy_ledger.schemas.common import ApiError, ApiResponse


def ok(data: Any = None, status_code: int = 200) -> JSONResponse:
    payload = ApiResponse(status=True, data=data)
    return JSONResponse(status_code=status_code, content=jsonable_encoder(payload))


def err(
    msg: str,
    status_code: int = 400,
    *,
    code: Optional[str] = None,
    details: Optional[Dict[str, Any]] = None,
) -> JSONResponse:
    payload = ApiResponse(status=False, error=ApiError(msg=msg, code=code, details=details))
    return JSONResponse(status_code=status_code, content=jsonable_encoder(payload))
