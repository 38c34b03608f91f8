"""
At-rest encryption for integration configuration blobs.

Stored format (base64 of the concatenation):

    iv (16 bytes) || auth tag (16 bytes) || ciphertext

The cipher is AES-256-GCM. In plaintext mode, or when no usable key is
configured, the blob is the compact JSON serialization of the config.
"""

import os
import json
import base64
import logging
import warnings
from enum import Enum
from typing import Any, Dict, Optional, Union

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .base_migration import ConfigurationWarning

logger = logging.getLogger(__name__)

IV_LENGTH = 16
TAG_LENGTH = 16
KEY_LENGTH = 32


class EncryptionMode(Enum):
    """How configuration blobs are written."""

    PLAINTEXT = "plaintext"
    ENCRYPTED = "encrypted"


def parse_key(value: Union[str, bytes, None]) -> Optional[bytes]:
    """
    Turn a configured key into 32 raw bytes.

    Accepts raw bytes or a 64-character hex string. Anything else is
    treated as "no key".
    """
    if value is None:
        return None
    if isinstance(value, bytes):
        return value if len(value) == KEY_LENGTH else None

    value = value.strip()
    if len(value) != KEY_LENGTH * 2:
        return None
    try:
        return bytes.fromhex(value)
    except ValueError:
        return None


def serialize_config(config: Dict[str, Any]) -> str:
    return json.dumps(config, separators=(",", ":"), ensure_ascii=False)


def encrypt_config(config: Dict[str, Any], mode: EncryptionMode,
                   key: Union[str, bytes, None] = None) -> str:
    """
    Serialize and (optionally) encrypt a configuration object.

    Args:
        config: Configuration dict to store
        mode: Plaintext or encrypted
        key: 32-byte key or its 64-char hex form

    Returns:
        JSON text in plaintext mode, otherwise base64(iv || tag || ciphertext).
        A fresh IV is drawn on every call.
    """
    plaintext = serialize_config(config)

    if mode is EncryptionMode.PLAINTEXT:
        return plaintext

    key_bytes = parse_key(key)
    if key_bytes is None:
        message = "Encryption requested but no valid 32-byte key is configured, storing plaintext"
        logger.warning(message)
        warnings.warn(message, ConfigurationWarning, stacklevel=2)
        return plaintext

    iv = os.urandom(IV_LENGTH)
    sealed = AESGCM(key_bytes).encrypt(iv, plaintext.encode("utf-8"), None)
    ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]

    return base64.b64encode(iv + tag + ciphertext).decode("ascii")


def decrypt_config(stored: Optional[str], mode: EncryptionMode,
                   key: Union[str, bytes, None] = None) -> Dict[str, Any]:
    """
    Inverse of encrypt_config.

    Returns an empty dict when the blob cannot be decrypted or parsed;
    callers that migrate configs treat that as "nothing to carry over".
    """
    if not stored:
        return {}

    key_bytes = parse_key(key)
    if mode is EncryptionMode.PLAINTEXT or key_bytes is None:
        return _parse_object(stored)

    try:
        combined = base64.b64decode(stored, validate=True)
        iv = combined[:IV_LENGTH]
        tag = combined[IV_LENGTH:IV_LENGTH + TAG_LENGTH]
        ciphertext = combined[IV_LENGTH + TAG_LENGTH:]
        plaintext = AESGCM(key_bytes).decrypt(iv, ciphertext + tag, None)
    except (InvalidTag, ValueError) as e:
        # Blobs written before a key was configured are plain JSON
        parsed = _parse_object(stored)
        if not parsed:
            logger.debug(f"Could not decrypt config blob: {e.__class__.__name__}")
        return parsed

    return _parse_object(plaintext.decode("utf-8"))


def _parse_object(text: str) -> Dict[str, Any]:
    try:
        value = json.loads(text)
    except (ValueError, TypeError):
        return {}
    return value if isinstance(value, dict) else {}
