"""
envelope.py
-----------
AES-256-GCM message envelopes for the E2EE relay chat.

One envelope is built per (message, recipient): every recipient has its own
pairwise key, so envelopes are never shared, even for a group message.

Wire form (the opaque `payload` string the relay forwards):
    {"iv": base64(12-byte nonce), "data": base64(ciphertext || tag), "private": bool}

`nonce` is accepted as an alias of `iv`. Older senders omit `private`; such
envelopes parse with private=None.
"""

import json
import os
from dataclasses import dataclass
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from keys import b64_decode, b64_encode

NONCE_SIZE = 12
PLACEHOLDER = "[message could not be decrypted]"


class DecryptionError(ValueError):
    """Authentication failed or the envelope is malformed. Scoped to one message."""


@dataclass(frozen=True)
class Envelope:
    nonce: bytes
    ciphertext: bytes
    private: Optional[bool] = False


# ---------------------------------------------------------------------------
# Encrypt / decrypt
# ---------------------------------------------------------------------------
def encrypt(key: bytes, plaintext: str, private: bool = False) -> Envelope:
    """Seal UTF-8 plaintext under a fresh random nonce."""
    nonce = os.urandom(NONCE_SIZE)
    ct = AESGCM(key).encrypt(nonce, plaintext.encode("utf-8"), None)
    return Envelope(nonce=nonce, ciphertext=ct, private=bool(private))

def decrypt(key: bytes, envelope: Envelope) -> str:
    if len(envelope.nonce) != NONCE_SIZE:
        raise DecryptionError(f"nonce must be {NONCE_SIZE} bytes, got {len(envelope.nonce)}")
    try:
        plain = AESGCM(key).decrypt(envelope.nonce, envelope.ciphertext, None)
    except InvalidTag as e:
        raise DecryptionError("authentication tag mismatch") from e
    except ValueError as e:
        raise DecryptionError(str(e)) from e
    try:
        return plain.decode("utf-8")
    except UnicodeDecodeError as e:
        raise DecryptionError("plaintext is not valid UTF-8") from e

# ---------------------------------------------------------------------------
# Wire format
# ---------------------------------------------------------------------------
def serialize(envelope: Envelope) -> str:
    obj = {
        "iv": b64_encode(envelope.nonce),
        "data": b64_encode(envelope.ciphertext),
    }
    if envelope.private is not None:
        obj["private"] = bool(envelope.private)
    return json.dumps(obj)

def parse(payload) -> Envelope:
    """
    Inverse of serialize(). Accepts the JSON string or an already decoded dict.
    Raises DecryptionError on anything malformed.
    """
    if isinstance(payload, (str, bytes)):
        try:
            payload = json.loads(payload)
        except (ValueError, UnicodeDecodeError) as e:
            raise DecryptionError(f"payload is not JSON: {e}") from e
    if not isinstance(payload, dict):
        raise DecryptionError("payload must be a JSON object")

    nonce_b64 = payload.get("iv", payload.get("nonce"))
    data_b64 = payload.get("data")
    if not isinstance(nonce_b64, str) or not isinstance(data_b64, str):
        raise DecryptionError("payload missing iv/data")
    try:
        nonce = b64_decode(nonce_b64)
        data = b64_decode(data_b64)
    except ValueError as e:
        raise DecryptionError(f"payload field is not base64: {e}") from e

    flag = payload.get("private")
    if flag is not None and not isinstance(flag, bool):
        raise DecryptionError("private flag must be a boolean")
    return Envelope(nonce=nonce, ciphertext=data, private=flag)

def seal(key: bytes, plaintext: str, private: bool = False) -> str:
    """encrypt() + serialize(): the payload string for one recipient."""
    return serialize(encrypt(key, plaintext, private))

def open_payload(key: bytes, payload):
    """
    parse() + decrypt() with the failure contained.

    Returns (text, private_flag). On any DecryptionError the text is
    PLACEHOLDER and the flag is whatever could be read (None if nothing).
    """
    try:
        env = parse(payload)
    except DecryptionError as e:
        print(f"[recv] Malformed envelope: {e}")
        return PLACEHOLDER, None
    try:
        return decrypt(key, env), env.private
    except DecryptionError as e:
        print(f"[recv] Decryption failed: {e}")
        return PLACEHOLDER, env.private
