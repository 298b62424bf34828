"""
Seal / wrap and their inverses.

    seal:    signed Direct  -> Sealed  (author = true sender, ECDH sender x receiver)
    wrap:    signed Sealed  -> Wrapped (author = disposable key, ECDH disposable x receiver)
    unwrap:  Wrapped -> Sealed         (ECDH receiver x wrap author)
    unseal:  Sealed  -> ReceivedMessage (ECDH receiver x seal author)

Each inner layer is carried as the JSON of the complete signed event, so the
receiver re-verifies every layer after decrypting it.
"""

from __future__ import annotations

import logging
import secrets
import time
from dataclasses import dataclass

from giftwrap import TIMESTAMP_JITTER_SECS
from giftwrap.crypto import DecryptionFailure, EncryptionError, conversation_key, decrypt, encrypt
from giftwrap.event import (
    Envelope,
    Layer,
    MalformedEnvelope,
    SignatureInvalid,
    build_envelope,
    sign_envelope,
    verify_envelope,
)
from giftwrap.keys import generate_identity, pubkey_from_privkey

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReceivedMessage:
    """A successfully opened gift wrap.

    Attributes:
        plaintext: The Direct envelope's content.
        sender_pubkey: The true sender (seal and Direct author).
        sent_at: The Direct envelope's created_at (not jittered).
        message_id: The Direct envelope's id.
        tags: The Direct envelope's tags (recipient, subject, ...).
    """

    plaintext: str
    sender_pubkey: str
    sent_at: int
    message_id: str
    tags: list[list[str]]


def randomized_timestamp(jitter: int = TIMESTAMP_JITTER_SECS) -> int:
    """Current unix time pushed back by a uniform random 0..jitter seconds."""
    now = int(time.time())
    if jitter <= 0:
        return now
    return now - secrets.randbelow(jitter + 1)


def _recipient_tags(receiver_pubkey: str) -> list[list[str]]:
    return [["p", receiver_pubkey]]


def seal(
    direct: Envelope,
    sender_privkey: bytes,
    receiver_pubkey: str,
    jitter: int = TIMESTAMP_JITTER_SECS,
) -> Envelope:
    """Encrypt a Direct envelope to the receiver, signed by the sender.

    An unsigned Direct envelope is signed with ``sender_privkey`` first.

    Raises:
        EncryptionError: malformed receiver key or oversized message.
        ValueError: ``direct`` is not a Direct envelope by the sender.
    """
    if direct.layer != Layer.DIRECT:
        raise ValueError(f"seal expects a Direct envelope, got {direct.layer.name}")

    sender_pubkey = pubkey_from_privkey(sender_privkey)
    if direct.pubkey != sender_pubkey:
        raise ValueError("Direct envelope author does not match the sender key")
    if not direct.is_signed:
        direct = sign_envelope(direct, sender_privkey)

    ck = conversation_key(sender_privkey, receiver_pubkey)
    ciphertext = encrypt(direct.to_json(), ck)

    sealed = build_envelope(
        Layer.SEALED,
        sender_pubkey,
        _recipient_tags(receiver_pubkey),
        ciphertext,
        randomized_timestamp(jitter),
    )
    return sign_envelope(sealed, sender_privkey)


def wrap(
    sealed: Envelope,
    receiver_pubkey: str,
    jitter: int = TIMESTAMP_JITTER_SECS,
) -> Envelope:
    """Encrypt a Sealed envelope to the receiver under a one-shot key.

    The disposable identity lives only inside this call.

    Raises:
        EncryptionError: malformed receiver key or oversized seal.
    """
    if sealed.layer != Layer.SEALED or not sealed.is_signed:
        raise ValueError("wrap expects a signed Sealed envelope")

    disposable = generate_identity()
    while disposable.pubkey == sealed.pubkey:
        disposable = generate_identity()

    try:
        ck = conversation_key(disposable.privkey, receiver_pubkey)
        ciphertext = encrypt(sealed.to_json(), ck)
        wrapped = build_envelope(
            Layer.WRAPPED,
            disposable.pubkey,
            _recipient_tags(receiver_pubkey),
            ciphertext,
            randomized_timestamp(jitter),
        )
        return sign_envelope(wrapped, disposable.privkey)
    finally:
        del disposable


def _open_layer(
    outer: Envelope,
    receiver_privkey: bytes,
    inner_layer: Layer,
) -> Envelope:
    try:
        ck = conversation_key(receiver_privkey, outer.pubkey)
    except EncryptionError as e:
        raise DecryptionFailure("Decryption failed") from e
    plaintext = decrypt(outer.content, ck)

    inner = Envelope.from_json(plaintext, expected_layer=inner_layer)
    if not verify_envelope(inner):
        raise SignatureInvalid(f"Inner {inner_layer.name} envelope signature invalid")
    return inner


def unwrap(wrapped: Envelope, receiver_privkey: bytes) -> Envelope:
    """Recover the Sealed envelope from a Wrapped one.

    Raises:
        SignatureInvalid: outer or recovered seal fails verification.
        DecryptionFailure: wrong key or corrupted ciphertext.
        MalformedEnvelope: decrypted text is not a Sealed envelope.
    """
    if wrapped.layer != Layer.WRAPPED:
        raise MalformedEnvelope(f"unwrap expects a Wrapped envelope, got {wrapped.layer.name}")
    if not verify_envelope(wrapped):
        raise SignatureInvalid("Wrapped envelope signature invalid")
    return _open_layer(wrapped, receiver_privkey, Layer.SEALED)


def unseal(sealed: Envelope, receiver_privkey: bytes) -> ReceivedMessage:
    """Recover the plaintext and true sender from a Sealed envelope.

    The Direct envelope must be authored by the same key as the seal.
    """
    if sealed.layer != Layer.SEALED:
        raise MalformedEnvelope(f"unseal expects a Sealed envelope, got {sealed.layer.name}")
    direct = _open_layer(sealed, receiver_privkey, Layer.DIRECT)
    if direct.pubkey != sealed.pubkey:
        raise SignatureInvalid("Direct envelope author differs from seal author")

    return ReceivedMessage(
        plaintext=direct.content,
        sender_pubkey=sealed.pubkey,
        sent_at=direct.created_at,
        message_id=direct.id,
        tags=direct.tags,
    )


def open_gift_wrap(wrapped: Envelope, receiver_privkey: bytes) -> ReceivedMessage:
    """Unwrap then unseal. Raises on any failure."""
    sealed = unwrap(wrapped, receiver_privkey)
    log.debug("Unwrapped %s -> seal %s", wrapped.id[:12], sealed.id[:12])
    return unseal(sealed, receiver_privkey)
