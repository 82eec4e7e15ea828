from datetime import timedelta
from typing import Any, Dict, Optional

from jose import JWTError, jwt

from chatcore.core.config import get_settings
from chatcore.core.errors import AuthenticationError
from chatcore.core.time import utcnow


def create_access_token(subject: str, expires_delta: Optional[timedelta] = None) -> str:
    settings = get_settings()
    now = utcnow()
    expire = now + (expires_delta or timedelta(minutes=settings.access_token_expire_minutes))
    payload = {"sub": subject, "iat": now, "exp": expire}
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> Dict[str, Any]:
    """Validate signature and expiry; raises AuthenticationError."""
    settings = get_settings()
    try:
        payload = jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])
    except JWTError as exc:
        raise AuthenticationError("Could not validate credentials") from exc
    if not payload.get("sub"):
        raise AuthenticationError("Token has no subject")
    return payload
