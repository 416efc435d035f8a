# keys.py
# Key material helpers for the E2EE relay chat
# - Base64 encode/decode (standard alphabet, padding tolerant)
# - Per-session EC P-256 key pairs (never persisted)
# - Public key wire format helpers (DER SubjectPublicKeyInfo, base64)
# - ECDH pairwise key derivation + per-peer cache
# - Identity abstraction for register frames

import base64
import binascii
import threading
from dataclasses import dataclass
from typing import Dict, Tuple, Union

from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    PublicFormat,
    load_der_public_key,
)

CURVE = ec.SECP256R1
SHARED_KEY_BYTES = 32


class KeyFormatError(ValueError):
    """Public key bytes could not be parsed as an EC P-256 SubjectPublicKeyInfo."""


class UnknownPeerError(KeyError):
    """No published public key is known for the requested peer."""


# ----------------------------
# Base64 (standard alphabet, like btoa/atob)
# ----------------------------

def b64_encode(data: Union[bytes, bytearray, memoryview]) -> str:
    if not isinstance(data, (bytes, bytearray, memoryview)):
        raise TypeError("b64_encode expects bytes-like input")
    return base64.b64encode(bytes(data)).decode("ascii")

def b64_decode(s: Union[str, bytes]) -> bytes:
    if isinstance(s, bytes):
        s = s.decode("ascii")
    if not isinstance(s, str):
        raise TypeError("b64_decode expects str/bytes input")
    s = s.strip()
    pad = "=" * (-len(s) % 4)
    return base64.b64decode(s + pad, validate=True)

# ----------------------------
# Session key pairs (EC P-256)
# ----------------------------

@dataclass(frozen=True)
class SessionKeyPair:
    private_key: ec.EllipticCurvePrivateKey
    public_key: ec.EllipticCurvePublicKey

def generate_identity() -> SessionKeyPair:
    """Fresh key pair for one session. Only the public half ever leaves the process."""
    priv = ec.generate_private_key(CURVE())
    return SessionKeyPair(private_key=priv, public_key=priv.public_key())

# ----------------------------
# Public key wire format helpers
#   - JSON carries keys as DER SubjectPublicKeyInfo, base64
# ----------------------------

def export_public(pair: Union[SessionKeyPair, ec.EllipticCurvePublicKey]) -> bytes:
    """DER SubjectPublicKeyInfo bytes for a key pair or a bare public key."""
    pub = pair.public_key if isinstance(pair, SessionKeyPair) else pair
    return pub.public_bytes(encoding=Encoding.DER, format=PublicFormat.SubjectPublicKeyInfo)

def export_public_b64(pair: Union[SessionKeyPair, ec.EllipticCurvePublicKey]) -> str:
    return b64_encode(export_public(pair))

def import_public(data: Union[str, bytes, bytearray]) -> ec.EllipticCurvePublicKey:
    """
    Inverse of export_public()/export_public_b64().

    str input is treated as base64 DER, bytes input as raw DER. Anything that
    is not an EC P-256 public key raises KeyFormatError.
    """
    try:
        der = b64_decode(data) if isinstance(data, str) else bytes(data)
    except (TypeError, ValueError, binascii.Error) as e:
        raise KeyFormatError(f"public key is not valid base64: {e}") from e
    if not der:
        raise KeyFormatError("public key is empty")
    try:
        pub = load_der_public_key(der)
    except (ValueError, TypeError) as e:
        raise KeyFormatError(f"public key is not a DER SubjectPublicKeyInfo: {e}") from e
    if not isinstance(pub, ec.EllipticCurvePublicKey) or not isinstance(pub.curve, CURVE):
        raise KeyFormatError("public key must be an EC P-256 key")
    return pub

# ----------------------------
# Pairwise key derivation (ECDH)
# ----------------------------

def derive_shared_key(local_private: ec.EllipticCurvePrivateKey,
                      remote_public: Union[ec.EllipticCurvePublicKey, str, bytes, None]) -> bytes:
    """
    ECDH(local_private, remote_public) -> 32-byte AES-256-GCM key.

    The raw shared secret is used directly as the key, which is what a browser
    gets from deriveKey(ECDH -> AES-GCM 256), so both sides interoperate.
    derive_shared_key(A.priv, B.pub) == derive_shared_key(B.priv, A.pub)
    """
    if remote_public is None:
        raise UnknownPeerError("no public key for peer")
    if not isinstance(remote_public, ec.EllipticCurvePublicKey):
        remote_public = import_public(remote_public)
    secret = local_private.exchange(ec.ECDH(), remote_public)
    return secret[:SHARED_KEY_BYTES]


class PairwiseKeyCache:
    """
    Derived keys per peer for the lifetime of a session.

    Each entry remembers the published key it came from; a peer that
    reconnects with a fresh key pair gets a fresh derivation. key_for() may
    be called from executor threads; derivation itself runs outside the lock.
    """

    def __init__(self, local_private: ec.EllipticCurvePrivateKey):
        self._local_private = local_private
        self._keys: Dict[str, Tuple[str, bytes]] = {}
        self._lock = threading.Lock()

    def key_for(self, peer: str, directory: Dict[str, str]) -> bytes:
        published = directory.get(peer)
        if published is None:
            raise UnknownPeerError(peer)
        with self._lock:
            cached = self._keys.get(peer)
        if cached and cached[0] == published:
            return cached[1]
        key = derive_shared_key(self._local_private, published)
        with self._lock:
            self._keys[peer] = (published, key)
        return key

    def prune(self, directory: Dict[str, str]) -> None:
        """Drop entries for departed peers and for peers whose key changed."""
        with self._lock:
            for peer in list(self._keys):
                if directory.get(peer) != self._keys[peer][0]:
                    del self._keys[peer]

    def __contains__(self, peer: str) -> bool:
        return peer in self._keys

    def __len__(self) -> int:
        return len(self._keys)

# ----------------------------
# Identity (self-asserted usernames)
# ----------------------------

@dataclass(frozen=True)
class Identity:
    username: str
    public_key: str  # base64 DER SPKI exactly as published


class SelfAssertedIdentityProvider:
    """
    Takes the username in a register frame at face value.

    The relay only calls identify(); an authenticated provider can replace
    this one without touching registry or routing code.
    """

    max_username_len = 64

    def identify(self, frame: dict) -> Identity:
        username = frame.get("username")
        public_key = frame.get("publicKey")
        if not isinstance(username, str) or not username.strip():
            raise KeyFormatError("register requires a non-empty username")
        if len(username) > self.max_username_len:
            raise KeyFormatError("username too long")
        if not isinstance(public_key, str):
            raise KeyFormatError("register requires a base64 publicKey string")
        import_public(public_key)
        return Identity(username=username, public_key=public_key)


if __name__ == "__main__":
    pair = generate_identity()
    print("Session public key (base64 DER SPKI):")
    print(export_public_b64(pair))
