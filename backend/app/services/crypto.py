# app/services/crypto.py
from __future__ import annotations

import base64
import binascii
import re
import secrets
import struct

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from app.core.config import settings


class CryptoError(RuntimeError):
    pass


_HEX_KEY = re.compile(r"^[0-9a-fA-F]{64}$")


def _load_key() -> bytes:
    raw = (settings.TOKEN_ENC_KEY_B64 or "").strip()
    if not raw:
        raise CryptoError("TOKEN_ENC_KEY_B64 is empty")
    if _HEX_KEY.match(raw):
        key = bytes.fromhex(raw)
    else:
        try:
            key = base64.urlsafe_b64decode(raw.replace("+", "-").replace("/", "_").encode() + b"===")
        except (binascii.Error, ValueError):
            raise CryptoError("Invalid TOKEN_ENC_KEY_B64 (Base64 decode failed)")
    if len(key) != 32:
        raise CryptoError(f"TOKEN_ENC_KEY_B64 must decode to 32 bytes, got {len(key)}")
    return key


def encrypt_bytes(plain: bytes, *, key_version: int | None = None, aad: bytes | None = None) -> bytes:
    """
    AES-256-GCM: pack => b"v" + uint16 kv + 12B nonce + ciphertext|tag
    """
    kv = int(settings.TOKEN_KEY_VERSION if key_version is None else key_version)
    nonce = secrets.token_bytes(12)
    ct = AESGCM(_load_key()).encrypt(nonce, plain, aad)
    return b"v" + struct.pack(">H", kv) + nonce + ct


def decrypt_bytes(blob: bytes, *, aad: bytes | None = None) -> bytes:
    if not blob or blob[:1] != b"v" or len(blob) < 1 + 2 + 12 + 16:
        raise CryptoError("cipher blob format error")
    # key version is recorded for rotation; a single key is active today
    nonce = blob[3:15]
    ct = blob[15:]
    try:
        return AESGCM(_load_key()).decrypt(nonce, ct, aad)
    except InvalidTag:
        raise CryptoError("cipher blob authentication failed")


def blob_key_version(blob: bytes) -> int:
    if not blob or blob[:1] != b"v" or len(blob) < 3:
        raise CryptoError("cipher blob format error")
    return struct.unpack(">H", blob[1:3])[0]


def encrypt_token(text: str, *, aad_text: str | None = None) -> bytes:
    return encrypt_bytes(text.encode("utf-8"), aad=aad_text.encode("utf-8") if aad_text else None)


def decrypt_token(blob: bytes, *, aad_text: str | None = None) -> str:
    return decrypt_bytes(blob, aad=aad_text.encode("utf-8") if aad_text else None).decode("utf-8")


def generate_key_b64() -> str:
    return base64.urlsafe_b64encode(secrets.token_bytes(32)).decode("ascii")
