"""
Canonical event model — construction, id hashing, Schnorr signing, parsing.

Every layer of a gift-wrapped message is the same record shape (a Nostr
event); the ``layer`` field says which one it is.

Event id (NIP-01):
    SHA-256( UTF-8( JSON [0, pubkey, created_at, kind, tags, content] ) )
    serialized without whitespace and without ASCII escaping.
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
import time
from dataclasses import dataclass, replace
from enum import IntEnum
from typing import Any

from giftwrap import KIND_DIRECT, KIND_SEALED, KIND_WRAPPED
from giftwrap.keys import InvalidKeyError, _import_secp256k1, pubkey_from_privkey

log = logging.getLogger(__name__)

_HEX64 = re.compile(r"^[0-9a-f]{64}$")
_HEX128 = re.compile(r"^[0-9a-f]{128}$")

WIRE_FIELDS = ("id", "pubkey", "created_at", "kind", "tags", "content", "sig")

# 9999-12-31T23:59:59Z, the last second datetime can represent
MAX_CREATED_AT = 253402300799


class EnvelopeError(Exception):
    """Base class for envelope parse/verification failures."""


class MalformedEnvelope(EnvelopeError):
    """Bytes or dict do not form a well-formed envelope of the expected layer."""


class SignatureInvalid(EnvelopeError):
    """Recomputed id or Schnorr signature does not match the claimed author."""


class Layer(IntEnum):
    """Envelope layer, valued by its wire ``kind``."""

    DIRECT = KIND_DIRECT
    SEALED = KIND_SEALED
    WRAPPED = KIND_WRAPPED


@dataclass(frozen=True)
class Envelope:
    """A single event record at one layer of the pipeline."""

    layer: Layer
    pubkey: str
    created_at: int
    tags: list[list[str]]
    content: str
    id: str = ""
    sig: str = ""

    @property
    def is_signed(self) -> bool:
        return bool(self.sig)

    def tag_values(self, name: str) -> list[str]:
        """Return the first value of every tag called ``name``."""
        return [t[1] for t in self.tags if len(t) >= 2 and t[0] == name]

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "pubkey": self.pubkey,
            "created_at": self.created_at,
            "kind": int(self.layer),
            "tags": [list(t) for t in self.tags],
            "content": self.content,
            "sig": self.sig,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), separators=(",", ":"), ensure_ascii=False)

    @classmethod
    def from_dict(
        cls,
        data: Any,
        expected_layer: Layer | None = None,
    ) -> Envelope:
        """Strictly parse a wire dict. Raises MalformedEnvelope."""
        if not isinstance(data, dict):
            raise MalformedEnvelope("Envelope must be a JSON object")

        missing = [f for f in WIRE_FIELDS if f not in data]
        if missing:
            raise MalformedEnvelope(f"Missing fields: {', '.join(missing)}")

        kind = data["kind"]
        if not isinstance(kind, int) or isinstance(kind, bool):
            raise MalformedEnvelope("kind must be an integer")
        try:
            layer = Layer(kind)
        except ValueError:
            raise MalformedEnvelope(f"Unknown kind: {kind}")
        if expected_layer is not None and layer != expected_layer:
            raise MalformedEnvelope(
                f"Expected kind {int(expected_layer)}, got {kind}"
            )

        created_at = data["created_at"]
        if (
            not isinstance(created_at, int)
            or isinstance(created_at, bool)
            or not 0 <= created_at <= MAX_CREATED_AT
        ):
            raise MalformedEnvelope(f"created_at must be an integer in 0..{MAX_CREATED_AT}")

        for name, pattern in (("id", _HEX64), ("pubkey", _HEX64), ("sig", _HEX128)):
            value = data[name]
            if not isinstance(value, str) or not pattern.match(value):
                raise MalformedEnvelope(f"{name} must be lowercase hex of fixed length")

        tags = data["tags"]
        if not isinstance(tags, list) or not all(
            isinstance(t, list) and all(isinstance(v, str) for v in t) for t in tags
        ):
            raise MalformedEnvelope("tags must be a list of string lists")

        if not isinstance(data["content"], str):
            raise MalformedEnvelope("content must be a string")

        return cls(
            layer=layer,
            pubkey=data["pubkey"],
            created_at=created_at,
            tags=[list(t) for t in tags],
            content=data["content"],
            id=data["id"],
            sig=data["sig"],
        )

    @classmethod
    def from_json(cls, text: str, expected_layer: Layer | None = None) -> Envelope:
        try:
            data = json.loads(text)
        except (ValueError, RecursionError, TypeError) as e:
            # ValueError covers JSONDecodeError and oversized integer literals
            raise MalformedEnvelope(f"Invalid JSON: {e}") from e
        return cls.from_dict(data, expected_layer)


def compute_event_id(
    pubkey_hex: str,
    created_at: int,
    kind: int,
    tags: list,
    content: str,
) -> str:
    """Compute the event id (SHA-256 of the canonical event array)."""
    serialized = json.dumps(
        [0, pubkey_hex, created_at, int(kind), tags, content],
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return hashlib.sha256(serialized.encode("utf-8")).hexdigest()


def build_envelope(
    layer: Layer,
    pubkey: str,
    tags: list[list[str]],
    content: str,
    created_at: int | None = None,
) -> Envelope:
    """Build an unsigned envelope with its id filled in."""
    if created_at is None:
        created_at = int(time.time())
    tags = [list(t) for t in tags]
    return Envelope(
        layer=Layer(layer),
        pubkey=pubkey,
        created_at=created_at,
        tags=tags,
        content=content,
        id=compute_event_id(pubkey, created_at, layer, tags, content),
    )


def sign_envelope(envelope: Envelope, privkey: bytes) -> Envelope:
    """Return a copy of ``envelope`` with a fresh id and Schnorr signature.

    Raises:
        InvalidKeyError: if ``privkey`` does not belong to ``envelope.pubkey``.
    """
    if pubkey_from_privkey(privkey) != envelope.pubkey:
        raise InvalidKeyError("Signing key does not match envelope author")

    event_id = compute_event_id(
        envelope.pubkey,
        envelope.created_at,
        envelope.layer,
        envelope.tags,
        envelope.content,
    )
    lib = _import_secp256k1()
    pk = lib.PrivateKey(privkey)
    sig = pk.schnorr_sign(bytes.fromhex(event_id), bip340tag=None, raw=True)
    return replace(envelope, id=event_id, sig=sig.hex())


def _verify_schnorr(pubkey_bytes: bytes, msg_hash: bytes, sig_bytes: bytes) -> bool:
    lib = _import_secp256k1()
    try:
        pk = lib.PublicKey(b"\x02" + pubkey_bytes, raw=True)
        return bool(pk.schnorr_verify(msg_hash, sig_bytes, bip340tag=None, raw=True))
    except Exception:
        return False


def verify_envelope(envelope: Envelope) -> bool:
    """Recompute the id from current fields and check the signature.

    Returns True if valid, False otherwise.
    """
    try:
        if not _HEX64.match(envelope.pubkey) or not _HEX128.match(envelope.sig):
            return False

        expected_id = compute_event_id(
            envelope.pubkey,
            envelope.created_at,
            envelope.layer,
            envelope.tags,
            envelope.content,
        )
        if expected_id != envelope.id:
            return False

        return _verify_schnorr(
            bytes.fromhex(envelope.pubkey),
            bytes.fromhex(expected_id),
            bytes.fromhex(envelope.sig),
        )
    except (TypeError, ValueError):
        return False
