"""Provider API keys at rest.

Keys are sealed with Fernet from ``cryptography``. The key material comes
from ``WEBSETS_SECRET_KEY``: either a ready Fernet key or any passphrase,
which is hashed into one. Without it a fixed development key is used and a
warning is logged once.
"""

from __future__ import annotations

import base64
import hashlib
import os
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken
from loguru import logger

_ENV_KEY = "WEBSETS_SECRET_KEY"
_DEV_PASSPHRASE = b"websets-development-only"

_cipher: Optional[Fernet] = None


def _derive(passphrase: bytes) -> bytes:
    return base64.urlsafe_b64encode(hashlib.sha256(passphrase).digest())


def _get_cipher() -> Fernet:
    global _cipher
    if _cipher is not None:
        return _cipher

    raw = os.getenv(_ENV_KEY, "").strip()
    if not raw:
        logger.warning(f"{_ENV_KEY} is not set, provider API keys use a development key")
        _cipher = Fernet(_derive(_DEV_PASSPHRASE))
        return _cipher

    try:
        _cipher = Fernet(raw.encode())
    except ValueError:
        _cipher = Fernet(_derive(raw.encode()))
    return _cipher


def reset_cipher() -> None:
    """Forget the cached cipher so the next call re-reads the environment."""
    global _cipher
    _cipher = None


def seal(plaintext: Optional[str]) -> Optional[str]:
    text = (plaintext or "").strip()
    if not text:
        return None
    return _get_cipher().encrypt(text.encode()).decode()


def unseal(token: Optional[str]) -> str:
    """Open a sealed key. Values that were stored before sealing pass through."""
    if not token:
        return ""
    try:
        return _get_cipher().decrypt(token.encode()).decode()
    except InvalidToken:
        return token


def mask(value: Optional[str]) -> str:
    text = str(value or "")
    if not text:
        return ""
    if len(text) <= 8:
        return "***"
    return f"***{text[-4:]}"
