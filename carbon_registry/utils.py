# utils.py — hashing, canonical JSON, Ed25519 checks and JSON-safe conversion
import hashlib
import json
from dataclasses import asdict, is_dataclass
from datetime import datetime, timezone
from enum import Enum

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey, Ed25519PublicKey


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt):
    """Naive datetimes coming back from Mongo are UTC; make them tz-aware."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def parse_iso(s: str) -> datetime:
    # supports "...Z"
    if s.endswith("Z"):
        s = s[:-1] + "+00:00"
    return as_utc(datetime.fromisoformat(s))


def canonical_json(data: dict) -> str:
    """Deterministic JSON for signing and hashing (sorted keys, compact)."""
    return json.dumps(data, separators=(",", ":"), sort_keys=True, default=str)


def sha256_hex(b: bytes) -> str:
    return hashlib.sha256(b).hexdigest()


def hex0x(h) -> str:
    """HexBytes / bytes / str -> '0x'-prefixed lowercase hex."""
    if h is None:
        return None
    if isinstance(h, (bytes, bytearray)):
        h = h.hex()
    h = str(h).lower()
    return h if h.startswith("0x") else "0x" + h


# ---- Ed25519 ----
def load_pubkey(pem_text: str) -> Ed25519PublicKey:
    return serialization.load_pem_public_key(pem_text.encode("utf-8"))


def verify_ed25519(pub_pem: str, msg: bytes, sig_hex: str) -> bool:
    try:
        pub = load_pubkey(pub_pem)
        pub.verify(bytes.fromhex(sig_hex), msg)
        return True
    except (InvalidSignature, ValueError, TypeError):
        return False


def ed25519_keypair_pem():
    """Fresh keypair: (private key object, SPKI public key PEM)."""
    sk = Ed25519PrivateKey.generate()
    pub_pem = sk.public_key().public_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    ).decode("ascii")
    return sk, pub_pem


def ed25519_sign_hex(sk: Ed25519PrivateKey, payload: dict) -> str:
    return sk.sign(canonical_json(payload).encode("utf-8")).hex()


# ---- JSON-safe views ----
def to_public(x):
    """Recursively convert dataclasses, enums, ObjectId and datetime to JSON-safe values."""
    if is_dataclass(x) and not isinstance(x, type):
        return to_public(asdict(x))
    if isinstance(x, dict):
        return {k: to_public(v) for k, v in x.items() if k != "_id"}
    if isinstance(x, (list, tuple)):
        return [to_public(v) for v in x]
    if isinstance(x, Enum):
        return x.value
    if isinstance(x, datetime):
        return as_utc(x).isoformat().replace("+00:00", "Z")
    if type(x).__name__ == "ObjectId":
        return str(x)
    return x
