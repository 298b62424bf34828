"""
Payload encryption for seals and wraps (NIP-44 version 2).

- Key agreement: secp256k1 ECDH (unhashed shared x coordinate)
- Conversation key: HKDF-extract(SHA-256, salt="nip44-v2", ikm=shared_x)
- Message keys: HKDF-expand(conversation_key, info=nonce, 76 bytes)
      chacha_key (32) | chacha_nonce (12) | hmac_key (32)
- Cipher: ChaCha20 over a length-prefixed, padded plaintext
- Integrity: HMAC-SHA256(hmac_key, nonce || ciphertext)

Payload: base64( version(1) || nonce(32) || ciphertext || mac(32) )

The `cryptography` package is lazily imported; a missing dependency produces
a clear error message, same pattern as keys.py handles missing `secp256k1`.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import os
import struct

from giftwrap import (
    NIP44_MAC_SIZE,
    NIP44_MAX_PLAINTEXT,
    NIP44_MIN_PLAINTEXT,
    NIP44_NONCE_SIZE,
    NIP44_SALT,
    NIP44_VERSION,
)
from giftwrap.keys import InvalidKeyError, _check_scalar, _import_secp256k1

# Base64 payload bounds for 1..65535 byte plaintexts
_MIN_PAYLOAD_B64 = 132
_MAX_PAYLOAD_B64 = 87472
_MIN_PAYLOAD_RAW = 99
_MAX_PAYLOAD_RAW = 65603


class EncryptionError(Exception):
    """Cipher setup failed (bad counterpart key, oversized plaintext)."""


class DecryptionFailure(Exception):
    """Wrong key or corrupted ciphertext. Deliberately not distinguished further."""


def _import_cryptography():
    """Lazily import the primitives used from the cryptography package.

    Raises ImportError with a helpful message if not installed.
    """
    try:
        from cryptography.hazmat.primitives import hashes
        from cryptography.hazmat.primitives.ciphers import Cipher, algorithms
        from cryptography.hazmat.primitives.kdf.hkdf import HKDFExpand

        return hashes, Cipher, algorithms, HKDFExpand
    except ImportError:
        raise ImportError(
            "cryptography is required for payload encryption. "
            "Install with: pip install nostr-giftwrap"
        )


# ---------------------------------------------------------------------------
# Key agreement
# ---------------------------------------------------------------------------

def shared_secret(privkey: bytes, pubkey_hex: str) -> bytes:
    """ECDH: the 32-byte x coordinate of privkey * P.

    The x-only public key is lifted to the even-y point; the x coordinate of
    the product does not depend on that choice.
    """
    try:
        _check_scalar(privkey)
    except InvalidKeyError as e:
        raise EncryptionError(str(e)) from e
    try:
        pub_raw = bytes.fromhex(pubkey_hex)
    except (TypeError, ValueError) as e:
        raise EncryptionError("Counterpart public key is not valid hex") from e
    if len(pub_raw) != 32:
        raise EncryptionError("Counterpart public key must be 32 bytes")

    lib = _import_secp256k1()
    try:
        point = lib.PublicKey(b"\x02" + pub_raw, raw=True)
        product = point.tweak_mul(privkey)
    except Exception as e:
        raise EncryptionError("Counterpart public key is not a point on secp256k1") from e
    return product.serialize(compressed=True)[1:]


def conversation_key(privkey: bytes, pubkey_hex: str) -> bytes:
    """Derive the long-term symmetric key between two parties.

    Symmetric: conversation_key(a, B) == conversation_key(b, A).
    """
    shared_x = shared_secret(privkey, pubkey_hex)
    return hmac.new(NIP44_SALT, shared_x, hashlib.sha256).digest()


def _message_keys(conv_key: bytes, nonce: bytes) -> tuple[bytes, bytes, bytes]:
    hashes, _Cipher, _algorithms, HKDFExpand = _import_cryptography()
    okm = HKDFExpand(algorithm=hashes.SHA256(), length=76, info=nonce).derive(conv_key)
    return okm[0:32], okm[32:44], okm[44:76]


# ---------------------------------------------------------------------------
# Padding
# ---------------------------------------------------------------------------

def calc_padded_len(unpadded_len: int) -> int:
    """Padded size for a plaintext of ``unpadded_len`` bytes.

    32 bytes minimum, then power-of-two buckets split into 8 chunks above 256.
    """
    if unpadded_len <= 32:
        return 32
    next_power = 1 << (unpadded_len - 1).bit_length()
    chunk = 32 if next_power <= 256 else next_power // 8
    return chunk * ((unpadded_len - 1) // chunk + 1)


def pad(plaintext: bytes) -> bytes:
    length = len(plaintext)
    if not NIP44_MIN_PLAINTEXT <= length <= NIP44_MAX_PLAINTEXT:
        raise EncryptionError(
            f"Plaintext must be {NIP44_MIN_PLAINTEXT}..{NIP44_MAX_PLAINTEXT} bytes, got {length}"
        )
    suffix = b"\x00" * (calc_padded_len(length) - length)
    return struct.pack(">H", length) + plaintext + suffix


def unpad(padded: bytes) -> bytes:
    if len(padded) < 2:
        raise DecryptionFailure("Decryption failed")
    (length,) = struct.unpack(">H", padded[:2])
    unpadded = padded[2:2 + length]
    if (
        length == 0
        or len(unpadded) != length
        or len(padded) != 2 + calc_padded_len(length)
    ):
        raise DecryptionFailure("Decryption failed")
    return unpadded


# ---------------------------------------------------------------------------
# Encrypt / decrypt
# ---------------------------------------------------------------------------

def _chacha20(key: bytes, nonce: bytes, data: bytes) -> bytes:
    _hashes, Cipher, algorithms, _HKDFExpand = _import_cryptography()
    # cryptography takes a 16-byte nonce: 32-bit little-endian counter || 96-bit nonce
    cipher = Cipher(algorithms.ChaCha20(key, b"\x00\x00\x00\x00" + nonce), mode=None)
    return cipher.encryptor().update(data)


def encrypt(plaintext: str, conv_key: bytes, nonce: bytes | None = None) -> str:
    """Encrypt a UTF-8 string under a conversation key.

    Args:
        plaintext: Text to encrypt (1..65535 UTF-8 bytes).
        conv_key: 32-byte key from conversation_key().
        nonce: Optional 32-byte nonce. Generated if not provided; only pass
            one to reproduce known-answer vectors.

    Returns:
        The base64 payload string.
    """
    if nonce is None:
        nonce = os.urandom(NIP44_NONCE_SIZE)
    if len(nonce) != NIP44_NONCE_SIZE:
        raise EncryptionError(f"Nonce must be {NIP44_NONCE_SIZE} bytes")
    if len(conv_key) != 32:
        raise EncryptionError("Conversation key must be 32 bytes")

    chacha_key, chacha_nonce, hmac_key = _message_keys(conv_key, nonce)
    ciphertext = _chacha20(chacha_key, chacha_nonce, pad(plaintext.encode("utf-8")))
    mac = hmac.new(hmac_key, nonce + ciphertext, hashlib.sha256).digest()

    payload = bytes([NIP44_VERSION]) + nonce + ciphertext + mac
    return base64.b64encode(payload).decode("ascii")


def decrypt(payload: str, conv_key: bytes) -> str:
    """Decrypt a base64 payload produced by encrypt().

    Raises:
        DecryptionFailure: on any structural, MAC, padding or encoding error.
    """
    if not isinstance(payload, str) or not payload or payload[0] == "#":
        raise DecryptionFailure("Decryption failed")
    if not _MIN_PAYLOAD_B64 <= len(payload) <= _MAX_PAYLOAD_B64:
        raise DecryptionFailure("Decryption failed")

    try:
        data = base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as e:
        raise DecryptionFailure("Decryption failed") from e
    if not _MIN_PAYLOAD_RAW <= len(data) <= _MAX_PAYLOAD_RAW or data[0] != NIP44_VERSION:
        raise DecryptionFailure("Decryption failed")

    nonce = data[1:1 + NIP44_NONCE_SIZE]
    ciphertext = data[1 + NIP44_NONCE_SIZE:-NIP44_MAC_SIZE]
    mac = data[-NIP44_MAC_SIZE:]

    chacha_key, chacha_nonce, hmac_key = _message_keys(conv_key, nonce)
    expected = hmac.new(hmac_key, nonce + ciphertext, hashlib.sha256).digest()
    if not hmac.compare_digest(mac, expected):
        raise DecryptionFailure("Decryption failed")

    padded = _chacha20(chacha_key, chacha_nonce, ciphertext)
    try:
        return unpad(padded).decode("utf-8")
    except UnicodeDecodeError as e:
        raise DecryptionFailure("Decryption failed") from e
