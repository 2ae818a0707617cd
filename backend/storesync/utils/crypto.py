"""At-rest protection for the store connection secrets.

``connector_settings`` keeps the consumer secret used for the store's Basic
auth and the shared webhook secret. Both are written as

    ENC:v1:<base64(nonce || ciphertext || tag)>

sealed with AES-GCM under a key derived from ``SECRET_KEY``. Rows saved
before a secret was ever sealed hold plain text and are read back as-is, so
an operator can paste a secret straight into the table during setup.
"""
from __future__ import annotations

import base64
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from storesync.config import settings
from storesync.utils.logger import logger


SEALED_PREFIX = "ENC:v1:"
_NONCE_BYTES = 12
_KEY_BYTES = 32
_KEY_INFO = b"storesync-connector-secrets"


def _connector_key() -> bytes:
    # Not cached; SECRET_KEY can change at runtime.
    return HKDF(
        algorithm=hashes.SHA256(),
        length=_KEY_BYTES,
        salt=None,
        info=_KEY_INFO,
    ).derive(settings.secret_key.encode("utf-8"))


def is_encrypted(value: Optional[str]) -> bool:
    return isinstance(value, str) and value.startswith(SEALED_PREFIX)


def encrypt(secret: Optional[str]) -> Optional[str]:
    """Seal a connector secret for storage. ``None`` stays ``None``."""
    if secret is None:
        return None
    nonce = os.urandom(_NONCE_BYTES)
    sealed = AESGCM(_connector_key()).encrypt(nonce, str(secret).encode("utf-8"), None)
    return SEALED_PREFIX + base64.b64encode(nonce + sealed).decode("ascii")


def decrypt(stored: Optional[str]) -> Optional[str]:
    """Open a value written by :func:`encrypt`.

    Plain-text values are returned unchanged. A sealed value that cannot be
    opened (``SECRET_KEY`` changed, or the row was edited by hand) is logged
    and returned as stored.
    """
    if not is_encrypted(stored):
        return stored

    try:
        blob = base64.b64decode(stored[len(SEALED_PREFIX):].encode("ascii"), validate=True)
    except (ValueError, UnicodeEncodeError) as exc:
        logger.error(f"[settings] Stored connector secret is not valid base64: {exc}")
        return stored
    if len(blob) <= _NONCE_BYTES:
        logger.error("[settings] Stored connector secret is truncated")
        return stored

    nonce, sealed = blob[:_NONCE_BYTES], blob[_NONCE_BYTES:]
    try:
        return AESGCM(_connector_key()).decrypt(nonce, sealed, None).decode("utf-8")
    except InvalidTag:
        logger.error("[settings] Could not open stored connector secret; was SECRET_KEY rotated?")
        return stored
