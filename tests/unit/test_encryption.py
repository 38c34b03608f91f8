"""
Unit tests for integration config encryption.
"""

import base64
import json

import pytest
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from dashdb.migration.base_migration import ConfigurationWarning
from dashdb.migration.encryption import (
    IV_LENGTH,
    TAG_LENGTH,
    EncryptionMode,
    decrypt_config,
    encrypt_config,
    parse_key,
)

KEY_HEX = "00112233445566778899aabbccddeeff00112233445566778899aabbccddeeff"
OTHER_KEY_HEX = "ff" * 32

CONFIG = {"url": "http://plex:32400", "token": "s3cret"}


@pytest.mark.unit
class TestParseKey:
    """Tests for key parsing."""

    def test_hex_key(self):
        assert parse_key(KEY_HEX) == bytes.fromhex(KEY_HEX)

    def test_raw_bytes(self):
        assert parse_key(b"k" * 32) == b"k" * 32

    def test_invalid_keys(self):
        for value in (None, "", "abc", "zz" * 32, b"short"):
            assert parse_key(value) is None


@pytest.mark.unit
class TestEncryptConfig:
    """Tests for encrypt_config / decrypt_config."""

    def test_plaintext_mode_is_compact_json(self):
        """Plaintext mode keeps key order and drops whitespace."""
        stored = encrypt_config(CONFIG, EncryptionMode.PLAINTEXT, KEY_HEX)
        assert stored == '{"url":"http://plex:32400","token":"s3cret"}'

    def test_missing_key_falls_back_to_plaintext(self):
        with pytest.warns(ConfigurationWarning):
            stored = encrypt_config(CONFIG, EncryptionMode.ENCRYPTED, None)
        assert json.loads(stored) == CONFIG

    def test_fresh_iv_every_call(self):
        """Same input and key never produce the same blob."""
        first = encrypt_config(CONFIG, EncryptionMode.ENCRYPTED, KEY_HEX)
        second = encrypt_config(CONFIG, EncryptionMode.ENCRYPTED, KEY_HEX)

        assert first != second
        assert decrypt_config(first, EncryptionMode.ENCRYPTED, KEY_HEX) == CONFIG
        assert decrypt_config(second, EncryptionMode.ENCRYPTED, KEY_HEX) == CONFIG

    def test_stored_layout_is_iv_tag_ciphertext(self):
        """The blob decodes as iv || tag || ciphertext under AES-256-GCM."""
        stored = encrypt_config(CONFIG, EncryptionMode.ENCRYPTED, KEY_HEX)
        combined = base64.b64decode(stored)

        iv = combined[:IV_LENGTH]
        tag = combined[IV_LENGTH:IV_LENGTH + TAG_LENGTH]
        ciphertext = combined[IV_LENGTH + TAG_LENGTH:]
        plaintext = AESGCM(bytes.fromhex(KEY_HEX)).decrypt(iv, ciphertext + tag, None)

        assert json.loads(plaintext) == CONFIG

    def test_wrong_key_yields_empty_config(self):
        stored = encrypt_config(CONFIG, EncryptionMode.ENCRYPTED, KEY_HEX)
        assert decrypt_config(stored, EncryptionMode.ENCRYPTED, OTHER_KEY_HEX) == {}

    def test_plain_json_readable_in_encrypted_mode(self):
        """Blobs written before a key existed still decrypt."""
        assert decrypt_config('{"a":1}', EncryptionMode.ENCRYPTED, KEY_HEX) == {"a": 1}

    def test_garbage_yields_empty_config(self):
        assert decrypt_config("not a config", EncryptionMode.PLAINTEXT) == {}
        assert decrypt_config(None, EncryptionMode.ENCRYPTED, KEY_HEX) == {}
        assert decrypt_config("[1, 2]", EncryptionMode.PLAINTEXT) == {}
