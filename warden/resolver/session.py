"""Session cookie helpers."""

from __future__ import annotations

import base64
import secrets
from datetime import datetime

from starlette.responses import Response

from warden.crypto.utils import sha256_hex

SESSION_COOKIE_NAME = "session"
SESSION_TOKEN_BYTES = 20


def generate_session_token() -> str:
    """Random session token: 20 bytes as lowercase unpadded base32."""
    raw = secrets.token_bytes(SESSION_TOKEN_BYTES)
    return base64.b32encode(raw).decode("ascii").lower().rstrip("=")


def session_id_from_token(token: str) -> str:
    """Stored session id; only the hash of the cookie value is persisted."""
    return sha256_hex(token)


def set_session_cookie(
    response: Response,
    token: str,
    expires_at: datetime,
    cookie_name: str = SESSION_COOKIE_NAME,
    secure: bool = True,
) -> None:
    response.set_cookie(
        cookie_name,
        token,
        expires=expires_at,
        path="/",
        secure=secure,
        httponly=True,
        samesite="lax",
    )


def delete_session_cookie(
    response: Response,
    cookie_name: str = SESSION_COOKIE_NAME,
    secure: bool = True,
) -> None:
    response.delete_cookie(
        cookie_name,
        path="/",
        secure=secure,
        httponly=True,
        samesite="lax",
    )
