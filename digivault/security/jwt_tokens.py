import datetime as dt
from typing import Any, Dict, Optional

import jwt

from digivault.core.clock import utcnow
from digivault.core.settings import settings

ACCESS = "access"
REFRESH = "refresh"


class TokenError(Exception):
    pass


def _secret(token_type: str) -> str:
    return settings.access_token_secret if token_type == ACCESS else settings.refresh_token_secret


def _encode(subject: str, token_type: str, lifetime: dt.timedelta, extra: Optional[Dict[str, Any]] = None) -> str:
    now = utcnow()
    payload: Dict[str, Any] = {"sub": subject, "type": token_type, "iat": now, "exp": now + lifetime}
    payload.update(extra or {})
    return jwt.encode(payload, _secret(token_type), algorithm=settings.jwt_algorithm)


def create_access_token(user_id: int, role: str) -> str:
    return _encode(
        str(user_id),
        ACCESS,
        dt.timedelta(minutes=settings.access_token_expires_minutes),
        {"role": role},
    )


def create_refresh_token(user_id: int) -> str:
    return _encode(str(user_id), REFRESH, dt.timedelta(days=settings.refresh_token_expires_days))


def decode_token(token: str, expected_type: str) -> int:
    """Verify a token of the given type and return the user id it was issued for."""
    try:
        payload = jwt.decode(
            token,
            _secret(expected_type),
            algorithms=[settings.jwt_algorithm],
            options={"require": ["exp", "sub"]},
        )
    except jwt.PyJWTError as e:
        raise TokenError(str(e)) from e

    if payload.get("type") != expected_type:
        raise TokenError(f"Expected {expected_type} token")
    try:
        return int(payload["sub"])
    except (TypeError, ValueError) as e:
        raise TokenError("Malformed subject") from e
