from __future__ import annotations

from typing import Any

from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.types import JSON, TypeDecorator

from callstream.security.crypto import seal_payload, try_open_payload


JSON_PAYLOAD = JSON().with_variant(JSONB(), "postgresql")


class EncryptedJSON(TypeDecorator):
    """Verbatim webhook bodies, sealed with Fernet in a ``{"ciphertext": ...}`` wrapper."""

    impl = JSON_PAYLOAD
    cache_ok = True

    def process_bind_param(self, value: Any, dialect) -> Any:  # noqa: ANN001
        if value is None:
            return None
        return {"ciphertext": seal_payload(value)}

    def process_result_value(self, value: Any, dialect) -> Any:  # noqa: ANN001
        if value is None:
            return None
        if isinstance(value, dict) and "ciphertext" in value:
            opened = try_open_payload(value["ciphertext"])
            if opened is not None:
                return opened
        # rows written before encryption was switched on
        return value


def is_sealed(value: Any) -> bool:
    """True for a wrapper that came back unopened (wrong or rotated key)."""
    return isinstance(value, dict) and set(value) == {"ciphertext"}
