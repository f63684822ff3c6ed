from __future__ import annotations

import base64
import hashlib

from tenantbroker.services.crypto.envelope import (
    KEY_BYTES,
    NONCE_BYTES,
    TAG_BYTES,
    decrypt,
    derive_key,
    encrypt,
    is_envelope,
)


KEY = derive_key(base64.b64encode(b"k" * 32).decode("ascii"))
OTHER_KEY = derive_key(base64.b64encode(b"o" * 32).decode("ascii"))


def test_envelope_roundtrip_and_layout() -> None:
    envelope = encrypt("service-role-key", KEY)
    version, mode, iv, tag, cipher_text = envelope.split(":")
    assert (version, mode) == ("v1", "gcm")
    assert len(base64.b64decode(iv)) == NONCE_BYTES
    assert len(base64.b64decode(tag)) == TAG_BYTES
    assert base64.b64decode(cipher_text)
    assert decrypt(envelope, KEY) == "service-role-key"


def test_envelopes_use_a_fresh_nonce_every_time() -> None:
    first = encrypt("same text", KEY)
    second = encrypt("same text", KEY)
    assert first != second
    assert first.split(":")[2] != second.split(":")[2]
    assert decrypt(first, KEY) == decrypt(second, KEY) == "same text"


def test_unicode_and_empty_plaintext_survive() -> None:
    assert decrypt(encrypt("מפתח-סודי 🔑", KEY), KEY) == "מפתח-סודי 🔑"
    assert decrypt(encrypt("", KEY), KEY) == ""


def test_wrong_key_returns_none() -> None:
    assert decrypt(encrypt("secret", KEY), OTHER_KEY) is None


def test_tampered_ciphertext_returns_none() -> None:
    version, mode, iv, tag, cipher_text = encrypt("secret payload", KEY).split(":")
    raw = bytearray(base64.b64decode(cipher_text))
    raw[0] ^= 0x01
    tampered = ":".join([version, mode, iv, tag, base64.b64encode(bytes(raw)).decode("ascii")])
    assert decrypt(tampered, KEY) is None


def test_tampered_tag_returns_none() -> None:
    version, mode, iv, tag, cipher_text = encrypt("secret payload", KEY).split(":")
    raw = bytearray(base64.b64decode(tag))
    raw[-1] ^= 0xFF
    tampered = ":".join([version, mode, iv, base64.b64encode(bytes(raw)).decode("ascii"), cipher_text])
    assert decrypt(tampered, KEY) is None


def test_malformed_envelopes_return_none() -> None:
    envelope = encrypt("secret", KEY)
    _, _, iv, tag, cipher_text = envelope.split(":")
    assert decrypt(None, KEY) is None
    assert decrypt("", KEY) is None
    assert decrypt("v1:gcm:only-three", KEY) is None
    assert decrypt(f"v2:gcm:{iv}:{tag}:{cipher_text}", KEY) is None
    assert decrypt(f"v1:cbc:{iv}:{tag}:{cipher_text}", KEY) is None
    assert decrypt(f"v1:gcm:***:{tag}:{cipher_text}", KEY) is None
    short_iv = base64.b64encode(b"x" * 8).decode("ascii")
    assert decrypt(f"v1:gcm:{short_iv}:{tag}:{cipher_text}", KEY) is None
    assert decrypt(envelope, None) is None


def test_derive_key_handles_missing_short_and_long_material() -> None:
    assert derive_key(None) is None
    assert derive_key("") is None
    assert derive_key("   ") is None
    # Not base64 (bad padding) and not hex, so the raw text is stretched.
    assert derive_key("short") == hashlib.sha256(b"short").digest()
    exact = bytes(range(32))
    assert derive_key(base64.b64encode(exact).decode("ascii")) == exact
    long_material = bytes(range(48))
    assert derive_key(base64.b64encode(long_material).decode("ascii")) == long_material[:KEY_BYTES]


def test_sixteen_byte_base64_secret_is_stretched_to_a_full_key() -> None:
    material = bytes(range(16))
    key = derive_key(base64.b64encode(material).decode("ascii"))
    assert len(key) == KEY_BYTES == 32
    assert key == hashlib.sha256(material).digest()


def test_derive_key_accepts_hex_material() -> None:
    # 62 hex characters cannot be padded base64, so the hex decoding applies.
    material = "ab" * 31
    assert derive_key(material) == hashlib.sha256(bytes.fromhex(material)).digest()


def test_is_envelope() -> None:
    assert is_envelope(encrypt("x", KEY))
    assert not is_envelope("plain-text")
    assert not is_envelope({"_credentials": "v1:gcm"})
    assert not is_envelope(None)
