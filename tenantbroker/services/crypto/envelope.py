from __future__ import annotations

import binascii
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from tenantbroker.services.crypto.utils import (
    b64decode_str,
    b64encode_bytes,
    decode_key_material,
    sha256_digest,
)


ENVELOPE_VERSION = "v1"
ENVELOPE_MODE = "gcm"
KEY_BYTES = 32
NONCE_BYTES = 12
TAG_BYTES = 16


def derive_key(secret: str | None) -> bytes | None:
    # Stretch short material with SHA-256; truncate long material to the AES-256 key size.
    if not isinstance(secret, str):
        return None
    material = decode_key_material(secret)
    if not material:
        return None
    if len(material) < KEY_BYTES:
        material = sha256_digest(material)
    return material[:KEY_BYTES]


def encrypt(plaintext: str, key: bytes) -> str:
    """Encrypt text into a ``v1:gcm:<iv>:<tag>:<ciphertext>`` envelope.

    Every call draws a fresh 96-bit nonce, so identical plaintexts never share
    an envelope.
    """
    if len(key) != KEY_BYTES:
        raise ValueError("encryption key must be 32 bytes")
    nonce = os.urandom(NONCE_BYTES)
    ciphertext_with_tag = AESGCM(key).encrypt(nonce, plaintext.encode("utf-8"), None)
    cipher_text = ciphertext_with_tag[:-TAG_BYTES]
    tag = ciphertext_with_tag[-TAG_BYTES:]
    return ":".join(
        [
            ENVELOPE_VERSION,
            ENVELOPE_MODE,
            b64encode_bytes(nonce),
            b64encode_bytes(tag),
            b64encode_bytes(cipher_text),
        ]
    )


def is_envelope(value: object) -> bool:
    if not isinstance(value, str):
        return False
    segments = value.strip().split(":")
    return len(segments) == 5 and segments[0] == ENVELOPE_VERSION and segments[1] == ENVELOPE_MODE


def decrypt(envelope: str | None, key: bytes | None) -> str | None:
    # Any malformed, tampered, or wrong-key envelope yields None instead of raising.
    if not isinstance(envelope, str) or not key or len(key) != KEY_BYTES:
        return None
    segments = envelope.strip().split(":")
    if len(segments) != 5:
        return None
    version, mode, nonce_part, tag_part, cipher_part = segments
    if version != ENVELOPE_VERSION or mode != ENVELOPE_MODE:
        return None
    try:
        nonce = b64decode_str(nonce_part)
        tag = b64decode_str(tag_part)
        cipher_text = b64decode_str(cipher_part)
    except (binascii.Error, ValueError):
        return None
    if len(nonce) != NONCE_BYTES or len(tag) != TAG_BYTES:
        return None
    try:
        plaintext = AESGCM(key).decrypt(nonce, cipher_text + tag, None)
    except InvalidTag:
        return None
    try:
        return plaintext.decode("utf-8")
    except UnicodeDecodeError:
        return None
