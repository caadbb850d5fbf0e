"""Shared crypto utilities for the escrow agent ledger.

Provides:
- Ed25519 identity (keypair generation, signing, verification)
- Account addresses derived from Ed25519 public keys
- Signed API requests with replay protection

Dependencies: hashlib, os, re, cryptography
"""

import hashlib
import os
import re
import time as _time

from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from cryptography.hazmat.primitives import serialization


# ---------------------------------------------------------------------------
# Ed25519 identity
# ---------------------------------------------------------------------------

def generate_ed25519_keypair() -> tuple[bytes, bytes]:
    """Generate a new Ed25519 keypair. Returns (privkey_bytes, pubkey_bytes).
    Both are 32 bytes raw."""
    privkey = Ed25519PrivateKey.generate()
    priv_bytes = privkey.private_bytes(
        serialization.Encoding.Raw,
        serialization.PrivateFormat.Raw,
        serialization.NoEncryption(),
    )
    pub_bytes = privkey.public_key().public_bytes(
        serialization.Encoding.Raw,
        serialization.PublicFormat.Raw,
    )
    return priv_bytes, pub_bytes


def load_ed25519_key(path: str) -> bytes:
    """Load a 32-byte raw Ed25519 private key from file."""
    with open(path, "rb") as f:
        data = f.read()
    if len(data) != 32:
        raise ValueError(f"Expected 32-byte Ed25519 key, got {len(data)} bytes")
    return data


def save_ed25519_key(path: str, key: bytes) -> None:
    """Save a 32-byte raw Ed25519 private key to file (mode 0600)."""
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    try:
        os.write(fd, key)
    finally:
        os.close(fd)


def ed25519_privkey_to_pubkey(privkey_bytes: bytes) -> bytes:
    """Derive the 32-byte public key from a 32-byte private key."""
    privkey = Ed25519PrivateKey.from_private_bytes(privkey_bytes)
    return privkey.public_key().public_bytes(
        serialization.Encoding.Raw,
        serialization.PublicFormat.Raw,
    )


def ed25519_sign(privkey_bytes: bytes, data: bytes) -> str:
    """Sign data with Ed25519 private key. Returns 128-char hex signature."""
    privkey = Ed25519PrivateKey.from_private_bytes(privkey_bytes)
    sig = privkey.sign(data)
    return sig.hex()


def ed25519_verify(pubkey_bytes: bytes, data: bytes, sig_hex: str) -> bool:
    """Verify Ed25519 signature. Returns True if valid."""
    from cryptography.exceptions import InvalidSignature
    try:
        pubkey = Ed25519PublicKey.from_public_bytes(pubkey_bytes)
        pubkey.verify(bytes.fromhex(sig_hex), data)
        return True
    except (InvalidSignature, ValueError):
        return False


# ---------------------------------------------------------------------------
# Account addresses: 0x + 40 hex
# ---------------------------------------------------------------------------

_ADDRESS_RE = re.compile(r"^0x[0-9a-fA-F]{40}$")


def pubkey_to_address(pubkey_bytes: bytes) -> str:
    """Account address for a 32-byte Ed25519 pubkey: last 20 bytes of its SHA-256."""
    return "0x" + hashlib.sha256(pubkey_bytes).digest()[-20:].hex()


def privkey_to_address(privkey_bytes: bytes) -> str:
    return pubkey_to_address(ed25519_privkey_to_pubkey(privkey_bytes))


def validate_address(address: str) -> tuple[bool, str]:
    """Validate an account address.

    Returns (True, "") on success, or (False, "error message") on failure.
    """
    if not isinstance(address, str) or not address:
        return False, "Address is empty"
    if not address.startswith(("0x", "0X")):
        return False, f"Invalid prefix: expected '0x', got '{address[:2]}'"
    if len(address) != 42:
        return False, f"Invalid length: expected 42 chars, got {len(address)}"
    if not _ADDRESS_RE.match("0x" + address[2:]):
        return False, "Invalid character: address must be hex"
    return True, ""


def normalize_address(address: str) -> str:
    """Canonical (lowercase) form of a valid address. Raises ValueError otherwise."""
    valid, err = validate_address(address)
    if not valid:
        raise ValueError(f"Invalid address {address!r}: {err}")
    return "0x" + address[2:].lower()


# ---------------------------------------------------------------------------
# Ed25519 request signing
# ---------------------------------------------------------------------------

REQUEST_MAX_AGE = 300  # 5 minutes
REQUEST_MAX_SKEW = 30

HEADER_TIMESTAMP = "X-Escrow-Timestamp"
HEADER_SIGNATURE = "X-Escrow-Signature"
HEADER_PUBKEY = "X-Escrow-Pubkey"


class ReplayGuard:
    """Track seen signatures to prevent replay attacks. TTL matches REQUEST_MAX_AGE."""

    def __init__(self, ttl: int = REQUEST_MAX_AGE):
        self._seen: dict[str, float] = {}  # sig_hex -> expiry_timestamp
        self._ttl = ttl
        self._check_count = 0

    def check_and_record(self, sig_hex: str) -> bool:
        """Return False if sig was already seen, True if new (and record it)."""
        self._check_count += 1
        if self._check_count % 100 == 0:
            self._prune()

        now = _time.time()
        if sig_hex in self._seen:
            if now < self._seen[sig_hex]:
                return False  # still valid, replay detected
            # expired entry, treat as new
        self._seen[sig_hex] = now + self._ttl
        return True

    def _prune(self):
        now = _time.time()
        self._seen = {k: v for k, v in self._seen.items() if v > now}

    def __len__(self):
        return len(self._seen)


def _request_payload(method: str, path: str, timestamp: str, body: str) -> bytes:
    return f"{method}\n{path}\n{timestamp}\n{body}".encode("utf-8")


def sign_request_ed25519(
    privkey_bytes: bytes,
    pubkey_hex: str,
    method: str,
    path: str,
    body: str = "",
    timestamp: float | None = None,
) -> dict:
    """Sign an API request with Ed25519. Returns headers to include.

    Signs: METHOD\\nPATH\\nTIMESTAMP\\nBODY
    """
    ts = str(int(_time.time() if timestamp is None else timestamp))
    sig = ed25519_sign(privkey_bytes, _request_payload(method, path, ts, body))
    return {
        HEADER_TIMESTAMP: ts,
        HEADER_SIGNATURE: sig,
        HEADER_PUBKEY: pubkey_hex,
    }


def verify_request_ed25519(
    method: str,
    path: str,
    body: str,
    timestamp: str,
    signature: str,
    pubkey_hex: str,
) -> tuple[bool, str]:
    """Verify an Ed25519-signed API request.

    Returns (ok, error_message).
    """
    try:
        ts = int(timestamp)
    except (ValueError, TypeError):
        return False, "invalid timestamp"

    age = _time.time() - ts
    if age < -REQUEST_MAX_SKEW:
        return False, f"request timestamp is in the future (skew={int(-age)}s)"
    if age > REQUEST_MAX_AGE:
        return False, f"request expired (age={int(age)}s, max={REQUEST_MAX_AGE}s)"

    try:
        pubkey_bytes = bytes.fromhex(pubkey_hex)
        if len(pubkey_bytes) != 32:
            return False, "invalid pubkey length"
    except ValueError:
        return False, "invalid pubkey hex"

    if not ed25519_verify(pubkey_bytes, _request_payload(method, path, timestamp, body), signature):
        return False, "invalid signature"

    return True, ""
