from __future__ import annotations

import hashlib
import hmac
import secrets

from namecard.core.config import get_settings


ACCESS_TOKEN_PREFIX = "ncat_"
REFRESH_TOKEN_PREFIX = "ncrt_"


def generate_access_token() -> str:
    return f"{ACCESS_TOKEN_PREFIX}{secrets.token_urlsafe(32)}"


def generate_refresh_token() -> str:
    return f"{REFRESH_TOKEN_PREFIX}{secrets.token_urlsafe(32)}"


def hash_token(raw_token: str, *, pepper: str | None = None) -> str:
    # Peppered HMAC so a leaked session table cannot be matched against guessed tokens.
    key = (pepper if pepper is not None else get_settings().token_hash_pepper).encode("utf-8")
    return hmac.new(key, raw_token.encode("utf-8"), hashlib.sha256).hexdigest()
