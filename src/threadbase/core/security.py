"""JWT access tokens and integration credential encryption.

Identity for every tenant-scoped request comes from a bearer token whose
`sub` claim is the user id. Tenant membership is checked separately by the
AccessGate; the token itself carries no tenant authority.

Integration credentials (bot tokens, API keys) are stored Fernet-encrypted,
one token per credential value.
"""

from __future__ import annotations

import base64
import hashlib
import json
from datetime import datetime, timedelta, timezone
from typing import Any

from cryptography.fernet import Fernet
from fastapi import HTTPException, status
from jose import JWTError, jwt

from src.threadbase.config import get_settings


def create_access_token(data: dict, expires_delta: timedelta | None = None) -> str:
    """Create a JWT access token.

    The data dict should contain at minimum:
    - sub: user_id (str)
    """
    settings = get_settings()
    to_encode = data.copy()
    now = datetime.now(timezone.utc)
    expire = now + (expires_delta or timedelta(minutes=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode.update({
        "exp": expire,
        "iat": now,
        "type": "access",
    })
    return jwt.encode(to_encode, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def verify_token(token: str, token_type: str = "access") -> dict:
    """Decode and validate a JWT token.

    Raises:
        HTTPException(401): If the token is invalid, expired, of the wrong
            type or has no subject.
    """
    settings = get_settings()
    credentials_exception = HTTPException(
        status_code=status.HTTP_401_UNAUTHORIZED,
        detail="Could not validate credentials",
        headers={"WWW-Authenticate": "Bearer"},
    )
    try:
        payload = jwt.decode(
            token,
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
        )
    except JWTError:
        raise credentials_exception
    if payload.get("type") != token_type or not payload.get("sub"):
        raise credentials_exception
    return payload


def user_id_from_header(authorization: str | None) -> str | None:
    """Best-effort subject of a bearer header; None when absent or invalid."""
    if not authorization or not authorization.startswith("Bearer "):
        return None
    settings = get_settings()
    try:
        payload = jwt.decode(
            authorization[7:],
            settings.JWT_SECRET_KEY,
            algorithms=[settings.JWT_ALGORITHM],
        )
    except JWTError:
        return None
    return payload.get("sub")


# ── Integration credentials at rest ─────────────────────────────────────────


def _fernet() -> Fernet:
    settings = get_settings()
    key = settings.CREDENTIALS_ENCRYPTION_KEY
    if not key:
        key = base64.urlsafe_b64encode(hashlib.sha256(settings.JWT_SECRET_KEY.encode()).digest())
    return Fernet(key)


def encrypt_credentials(credentials: dict[str, Any]) -> dict[str, str]:
    """Encrypt each credential value; keys stay readable for debugging."""
    fernet = _fernet()
    return {
        name: fernet.encrypt(json.dumps(value).encode()).decode()
        for name, value in credentials.items()
    }


def decrypt_credentials(stored: dict[str, str]) -> dict[str, Any]:
    """Inverse of encrypt_credentials.

    Raises:
        InvalidToken: A value was written with another key or tampered with.
    """
    fernet = _fernet()
    return {name: json.loads(fernet.decrypt(token.encode())) for name, token in stored.items()}
