# pharmacy_ledger/utils/jwt.py
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, Optional

from jose import JWTError, jwt

from pharmacy_ledger.core.config import settings


def create_access_token(
    actor_id: int,
    perms: Iterable[str] = (),
    *,
    is_admin: bool = False,
    expires_delta: timedelta = timedelta(hours=12),
) -> str:
    """
    Mint a token in the shape the identity service issues.
    Used by tests and local tooling; production tokens come from outside.
    """
    now = datetime.utcnow()
    payload = {
        "sub": str(actor_id),
        "perms": sorted(set(perms)),
        "adm": bool(is_admin),
        "iat": now,
        "exp": now + expires_delta,
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALG)


def decode_token(raw_token: str) -> Optional[Dict[str, Any]]:
    try:
        return jwt.decode(raw_token, settings.JWT_SECRET, algorithms=[settings.JWT_ALG])
    except JWTError:
        return None
