from __future__ import annotations

import pytest
from cryptography.fernet import Fernet

from callstream.security import crypto
from callstream import config


@pytest.fixture(autouse=True)
def fresh_cipher():
    config.get_settings.cache_clear()
    crypto.reset_crypto_state()
    yield
    config.get_settings.cache_clear()
    crypto.reset_crypto_state()


def test_seal_open_roundtrip(monkeypatch):
    """Short keys should be derived into valid Fernet secrets automatically."""
    monkeypatch.setenv("APP_ENCRYPTION_KEY", "short-key")
    config.get_settings.cache_clear()
    crypto.reset_crypto_state()

    payload = {"call": {"id": 42, "from": "+15550001111"}}
    token = crypto.seal_payload(payload)
    assert isinstance(token, str)
    assert "+15550001111" not in token
    assert crypto.open_payload(token) == payload


def test_accepts_pre_encoded_keys(monkeypatch):
    """Base64 keys that decode to 32 bytes should be used as-is."""
    key = Fernet.generate_key().decode("utf-8")
    monkeypatch.setenv("APP_ENCRYPTION_KEY", key)
    config.get_settings.cache_clear()
    crypto.reset_crypto_state()

    token = crypto.seal_payload([1, 2, 3])
    assert Fernet(key.encode("utf-8")).decrypt(token.encode("utf-8")) == b"[1,2,3]"


def test_try_open_invalid_returns_none(monkeypatch):
    monkeypatch.delenv("APP_ENCRYPTION_KEY", raising=False)
    assert crypto.try_open_payload("not-a-token") is None


def test_token_from_another_key_is_not_opened(monkeypatch):
    monkeypatch.setenv("APP_ENCRYPTION_KEY", "key-one")
    config.get_settings.cache_clear()
    crypto.reset_crypto_state()
    token = crypto.seal_payload({"a": 1})

    monkeypatch.setenv("APP_ENCRYPTION_KEY", "key-two")
    config.get_settings.cache_clear()
    crypto.reset_crypto_state()
    assert crypto.try_open_payload(token) is None


def test_credential_hashing():
    digest = crypto.hash_credential("  tenant-one-key ")
    assert digest == crypto.hash_credential("tenant-one-key")
    assert len(digest) == 64
    assert crypto.credential_matches("tenant-one-key", digest) is True
    assert crypto.credential_matches("other", digest) is False
    assert crypto.credential_matches("tenant-one-key", None) is False
