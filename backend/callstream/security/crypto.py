from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
from functools import lru_cache
from typing import Any

from cryptography.fernet import Fernet, InvalidToken

from callstream.config import get_settings

DEV_SEED = "callstream-dev"


def _normalize_key(raw_key: str | None) -> bytes:
    """Accept either a valid Fernet key or any string and derive a stable key."""
    trimmed = (raw_key or "").strip()
    if not trimmed:
        trimmed = DEV_SEED
    else:
        try:
            if len(base64.urlsafe_b64decode(trimmed)) == 32:
                return trimmed.encode("utf-8")
        except (ValueError, binascii.Error):
            pass
    return base64.urlsafe_b64encode(hashlib.sha256(trimmed.encode("utf-8")).digest())


@lru_cache
def _payload_cipher() -> Fernet:
    return Fernet(_normalize_key(get_settings().APP_ENCRYPTION_KEY))


def seal_payload(value: Any) -> str:
    """Encrypt a JSON-able webhook payload into a Fernet token."""
    body = json.dumps(value, separators=(",", ":"), default=str)
    return _payload_cipher().encrypt(body.encode("utf-8")).decode("utf-8")


def open_payload(token: str) -> Any:
    data = _payload_cipher().decrypt(token.encode("utf-8"))
    return json.loads(data.decode("utf-8"))


def try_open_payload(token: str) -> Any | None:
    """Return None instead of raising when the token was sealed with another key."""
    try:
        return open_payload(token)
    except InvalidToken:
        return None


def hash_credential(credential: str) -> str:
    """SHA-256 hex digest used to look up tenant API keys without storing them."""
    return hashlib.sha256(credential.strip().encode("utf-8")).hexdigest()


def credential_matches(credential: str, stored_hash: str | None) -> bool:
    if not stored_hash:
        return False
    return hmac.compare_digest(hash_credential(credential), stored_hash)


def reset_crypto_state() -> None:
    """Clear the cached cipher (used by tests when env changes)."""
    _payload_cipher.cache_clear()
