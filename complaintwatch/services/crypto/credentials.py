from __future__ import annotations

import binascii
import os

from cryptography.hazmat.primitives.ciphers import Cipher, algorithms, modes

from complaintwatch.services.crypto.utils import AES_KEY_BYTES, b64decode_str, b64encode_bytes


AES_BLOCK_BYTES = 16
PEM_MARKER = "-----BEGIN"


def _looks_like_text(value: str) -> bool:
    return all(ch.isprintable() or ch in "\r\n\t" for ch in value)


def decrypt_credential_blob(value: str, key: bytes) -> str:
    """Decrypt a stored credential blob, or return it unchanged when it is not encrypted.

    Encrypted blobs are ``base64(iv || AES-CFB(plaintext))`` under a 32 byte
    key. A wrong key length, a payload that is not base64, one shorter than a
    block, or a result that is not readable text all mean the input was stored
    in the clear. This is a convenience fallback, not an integrity check.
    """
    stripped = value.strip()
    if not stripped or stripped.startswith(PEM_MARKER):
        return stripped
    if len(key) != AES_KEY_BYTES:
        return stripped
    try:
        raw = b64decode_str(stripped)
    except (binascii.Error, ValueError, UnicodeEncodeError):
        return stripped
    if len(raw) < AES_BLOCK_BYTES:
        return stripped
    iv, ciphertext = raw[:AES_BLOCK_BYTES], raw[AES_BLOCK_BYTES:]
    decryptor = Cipher(algorithms.AES(key), modes.CFB(iv)).decryptor()
    plaintext = decryptor.update(ciphertext) + decryptor.finalize()
    try:
        text = plaintext.decode("utf-8")
    except UnicodeDecodeError:
        return stripped
    if not _looks_like_text(text):
        # Bare base64 DER that happens to decode; keep the original.
        return stripped
    return text


def encrypt_credential_blob(value: str, key: bytes, *, iv: bytes | None = None) -> str:
    if len(key) != AES_KEY_BYTES:
        raise ValueError(f"credential key must be {AES_KEY_BYTES} bytes")
    nonce = iv if iv is not None else os.urandom(AES_BLOCK_BYTES)
    encryptor = Cipher(algorithms.AES(key), modes.CFB(nonce)).encryptor()
    ciphertext = encryptor.update(value.encode("utf-8")) + encryptor.finalize()
    return b64encode_bytes(nonce + ciphertext)
