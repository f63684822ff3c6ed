from __future__ import annotations

import base64
import binascii
import hashlib


def decode_key_material(value: str) -> bytes:
    """Decode an operator secret as base64, then hex, then raw UTF-8.

    The first decoding that yields a non-empty byte string wins. Returns empty
    bytes only when the secret itself is blank.
    """
    stripped = value.strip()
    if not stripped:
        return b""
    try:
        decoded = base64.b64decode(stripped, validate=True)
        if decoded:
            return decoded
    except (binascii.Error, ValueError):
        pass
    try:
        decoded = bytes.fromhex(stripped)
        if decoded:
            return decoded
    except ValueError:
        pass
    return stripped.encode("utf-8")


def b64encode_bytes(value: bytes) -> str:
    return base64.b64encode(value).decode("ascii")


def b64decode_str(value: str) -> bytes:
    return base64.b64decode(value.encode("ascii"), validate=True)


def sha256_digest(value: bytes) -> bytes:
    return hashlib.sha256(value).digest()
