"""
Utility functions for TokenKV.

Provides canonical JSON serialization, hashing, encoding, and identifier helpers.
"""

import json
import hashlib
import base64
import secrets
from typing import Any, Union


def canonicalize(obj: Any) -> bytes:
    """
    Convert object to canonical JSON bytes.

    Canonical JSON:
    - Lexicographically sorted keys
    - No whitespace
    - UTF-8 encoded
    """
    s = json.dumps(obj, sort_keys=True, separators=(',', ':'), ensure_ascii=False)
    return s.encode('utf-8')


def sha256_hex(data: Union[bytes, str]) -> str:
    """Compute SHA-256 hash and return as hex string."""
    if isinstance(data, str):
        data = data.encode('utf-8')
    return hashlib.sha256(data).hexdigest()


def sha256_bytes(data: Union[bytes, str]) -> bytes:
    """Compute SHA-256 hash and return as bytes."""
    if isinstance(data, str):
        data = data.encode('utf-8')
    return hashlib.sha256(data).digest()


def b64e(b: bytes) -> str:
    """Base64 encode bytes to string."""
    return base64.b64encode(b).decode('ascii')


def b64d(s: str) -> bytes:
    """Base64 decode string to bytes (strict)."""
    return base64.b64decode(s.encode('ascii'), validate=True)


def generate_nonce(length: int = 16) -> str:
    """Generate a cryptographically secure random nonce."""
    return secrets.token_hex(length)


def mask_sensitive(value: str, visible_chars: int = 4) -> str:
    """
    Mask a sensitive value, showing only the last N characters.
    Useful for logging.
    """
    if len(value) <= visible_chars:
        return '*' * len(value)
    return '*' * (len(value) - visible_chars) + value[-visible_chars:]


def format_outpoint(txid: str, index: int) -> str:
    """Render an output identity as "<txid>.<index>"."""
    return f"{txid}.{index}"


def parse_outpoint(outpoint: str):
    """Split "<txid>.<index>" into (txid, index)."""
    txid, _, index = outpoint.rpartition('.')
    if not txid or not index.isdigit():
        raise ValueError(f"Malformed outpoint: {outpoint!r}")
    return txid, int(index)
