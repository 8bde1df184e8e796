from __future__ import annotations

import base64
import binascii


AES_KEY_BYTES = 32


def decode_key_material(value: str) -> bytes:
    """Resolve the configured credential key into raw bytes.

    A 32 character value is used as-is; otherwise hex and base64 encodings
    of a 32 byte key are accepted. Anything else is returned unchanged so
    callers can detect the wrong length and fall back to plaintext.
    """
    stripped = value.strip()
    raw = stripped.encode("utf-8")
    if len(raw) == AES_KEY_BYTES:
        return raw
    try:
        decoded = bytes.fromhex(stripped)
    except ValueError:
        try:
            decoded = base64.b64decode(stripped, validate=True)
        except (binascii.Error, ValueError):
            return raw
    return decoded if len(decoded) == AES_KEY_BYTES else raw


def b64encode_bytes(value: bytes) -> str:
    return base64.b64encode(value).decode("ascii")


def b64decode_str(value: str) -> bytes:
    return base64.b64decode(value.encode("ascii"), validate=True)
