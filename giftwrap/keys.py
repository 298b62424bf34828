"""
Key management — secp256k1 identities for signing and ECDH.

Requires secp256k1 (C bindings). Will raise ImportError if the library is
unavailable. Install with: pip install nostr-giftwrap

Identity public keys are x-only (32 bytes, 64 hex chars), as used on Nostr.
Keys are never written to disk by this package; ``load_identity`` only reads.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path

log = logging.getLogger(__name__)

# Order of the secp256k1 group
CURVE_ORDER = 0xFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFFEBAAEDCE6AF48A03BBFD25E8CD0364141

PRIVKEY_SIZE = 32
PUBKEY_HEX_LEN = 64


class InvalidKeyError(ValueError):
    """Malformed or out-of-range key material."""


# ---------------------------------------------------------------------------
# Secp256k1 helpers. No fallback: secp256k1 is required.
# ---------------------------------------------------------------------------

def _import_secp256k1():
    """Import secp256k1 C bindings. Raises ImportError if unavailable."""
    try:
        import secp256k1
        return secp256k1
    except ImportError:
        raise ImportError(
            "secp256k1 is required for identities and signing. "
            "Install with: pip install nostr-giftwrap"
        )


def _check_scalar(privkey: bytes) -> None:
    if len(privkey) != PRIVKEY_SIZE:
        raise InvalidKeyError(
            f"Private key must be {PRIVKEY_SIZE} bytes, got {len(privkey)}"
        )
    scalar = int.from_bytes(privkey, "big")
    if not 0 < scalar < CURVE_ORDER:
        raise InvalidKeyError("Private key is outside the secp256k1 scalar range")


def pubkey_from_privkey(privkey: bytes) -> str:
    """Derive the x-only public key (hex) from a 32-byte private key."""
    _check_scalar(privkey)
    lib = _import_secp256k1()
    try:
        pk = lib.PrivateKey(privkey)
    except Exception as e:
        raise InvalidKeyError(f"Invalid private key: {e}") from e
    # x-only pubkey: strip the 02/03 prefix byte
    return pk.pubkey.serialize(compressed=True)[1:].hex()


def validate_pubkey(pubkey_hex: str) -> bytes:
    """Check an x-only public key and return its 32 raw bytes.

    The key must be 64 hex chars and the x coordinate must lie on the curve.
    """
    if not isinstance(pubkey_hex, str) or len(pubkey_hex) != PUBKEY_HEX_LEN:
        raise InvalidKeyError("Public key must be a 64-char hex string")
    try:
        raw = bytes.fromhex(pubkey_hex)
    except ValueError as e:
        raise InvalidKeyError("Public key is not valid hex") from e

    lib = _import_secp256k1()
    try:
        lib.PublicKey(b"\x02" + raw, raw=True)
    except Exception as e:
        raise InvalidKeyError("Public key is not a point on secp256k1") from e
    return raw


@dataclass(frozen=True)
class Identity:
    """A secp256k1 keypair.

    Attributes:
        privkey: The 32-byte private scalar. Excluded from ``repr``.
        pubkey: The x-only public key as 64 hex chars.
    """

    privkey: bytes = field(repr=False)
    pubkey: str

    @property
    def privkey_hex(self) -> str:
        return self.privkey.hex()


def generate_identity() -> Identity:
    """Generate a fresh random identity.

    Draws 32 random bytes and redraws in the (negligible) case the value is
    zero or not below the curve order.
    """
    while True:
        privkey = os.urandom(PRIVKEY_SIZE)
        try:
            _check_scalar(privkey)
        except InvalidKeyError:
            continue
        return Identity(privkey=privkey, pubkey=pubkey_from_privkey(privkey))


def import_identity(data: bytes | str) -> Identity:
    """Import an identity from 32 raw bytes or a 64-char hex string.

    Raises:
        InvalidKeyError: wrong length, bad hex, or out-of-range scalar.
    """
    if isinstance(data, str):
        text = data.strip()
        if len(text) != PRIVKEY_SIZE * 2:
            raise InvalidKeyError("Private key must be 64 hex chars")
        try:
            privkey = bytes.fromhex(text)
        except ValueError as e:
            raise InvalidKeyError("Private key is not valid hex") from e
    elif isinstance(data, (bytes, bytearray)):
        privkey = bytes(data)
    else:
        raise InvalidKeyError(f"Unsupported key type: {type(data).__name__}")

    return Identity(privkey=privkey, pubkey=pubkey_from_privkey(privkey))


def load_identity(key_path: Path | str) -> Identity:
    """Read a hex-encoded private key from a file.

    Read-only: a missing file is an error, nothing is generated or written.
    """
    path = Path(key_path).expanduser()
    if not path.is_file():
        raise FileNotFoundError(f"Key file not found: {path}")
    identity = import_identity(path.read_text().strip())
    log.debug("Loaded identity %s from %s", identity.pubkey[:12], path)
    return identity
