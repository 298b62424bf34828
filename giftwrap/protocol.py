"""
Send / receive orchestration and the transport seam.

``send`` and ``receive`` are stateless: any number may run concurrently.
``receive`` has one failure channel (``None``) whatever went wrong, so a
delivery loop can call it on every pushed event without guarding.

Transport (relay pool) is a collaborator passed to ``Messenger``; this module
never opens connections itself.
"""

from __future__ import annotations

import collections
import logging
import threading
import time
from typing import Any, Callable, Iterable, Protocol

from giftwrap import (
    DEDUP_MAX_SIZE,
    DEDUP_WINDOW_SECONDS,
    KIND_WRAPPED,
    TIMESTAMP_JITTER_SECS,
)
from giftwrap.crypto import DecryptionFailure, EncryptionError
from giftwrap.event import (
    Envelope,
    EnvelopeError,
    Layer,
    build_envelope,
    sign_envelope,
)
from giftwrap.keys import Identity, pubkey_from_privkey, validate_pubkey
from giftwrap.layers import ReceivedMessage, open_gift_wrap, seal, wrap

log = logging.getLogger(__name__)

_UNRECOVERABLE = (DecryptionFailure, EnvelopeError)


class PublishError(Exception):
    """No transport endpoint accepted the event."""


class Transport(Protocol):
    """What the orchestration layer needs from a relay pool."""

    def publish(self, event: dict[str, Any]) -> dict[str, bool]:
        """Send one event. Returns {endpoint: accepted}."""
        ...

    def subscribe(
        self,
        filters: dict[str, Any],
        on_event: Callable[[dict[str, Any]], None],
    ) -> Callable[[], None]:
        """Push matching events to ``on_event``. Returns an unsubscribe callable."""
        ...


def _event_id(event: Any) -> str:
    if isinstance(event, Envelope):
        return event.id
    if isinstance(event, dict) and isinstance(event.get("id"), str):
        return event["id"]
    return ""


def recipient_filter(
    pubkey: str,
    since: int | None = None,
    limit: int | None = None,
) -> dict[str, Any]:
    """Subscription filter for gift wraps addressed to ``pubkey``."""
    filters: dict[str, Any] = {"kinds": [KIND_WRAPPED], "#p": [pubkey]}
    if since is not None:
        filters["since"] = since
    if limit is not None:
        filters["limit"] = limit
    return filters


def send(
    sender_privkey: bytes,
    receiver_pubkey: str,
    message: str,
    *,
    extra_tags: Iterable[list[str]] = (),
    jitter: int = TIMESTAMP_JITTER_SECS,
) -> Envelope:
    """Build, seal and wrap ``message`` for ``receiver_pubkey``.

    Returns the Wrapped envelope, the only thing that goes on the wire.

    Raises:
        InvalidKeyError: bad sender or receiver key.
        EncryptionError: message too large to seal/wrap, or not encodable as UTF-8.
    """
    validate_pubkey(receiver_pubkey)
    sender_pubkey = pubkey_from_privkey(sender_privkey)

    tags = [["p", receiver_pubkey]] + [list(t) for t in extra_tags]
    try:
        direct = sign_envelope(
            build_envelope(Layer.DIRECT, sender_pubkey, tags, message),
            sender_privkey,
        )
    except UnicodeEncodeError as e:
        raise EncryptionError(f"Message is not encodable as UTF-8: {e}") from e
    sealed = seal(direct, sender_privkey, receiver_pubkey, jitter=jitter)
    wrapped = wrap(sealed, receiver_pubkey, jitter=jitter)
    log.debug(
        "Wrapped message %s from %s as %s",
        direct.id[:12], sender_pubkey[:12], wrapped.id[:12],
    )
    return wrapped


def receive(
    receiver_privkey: bytes,
    wrapped: Envelope | dict[str, Any],
) -> ReceivedMessage | None:
    """Open a gift wrap. Returns None if the message is not recoverable.

    Wrong recipient, tampering, bad signatures and garbage input all produce
    the same None; the cause is only logged locally at DEBUG.
    """
    event_id = ""
    try:
        if not isinstance(wrapped, Envelope):
            wrapped = Envelope.from_dict(wrapped, expected_layer=Layer.WRAPPED)
        event_id = wrapped.id
        return open_gift_wrap(wrapped, receiver_privkey)
    except _UNRECOVERABLE as e:
        log.debug("Gift wrap %s not recoverable: %s", event_id[:12] or "?", e)
        return None


def receive_all(
    receiver_privkey: bytes,
    events: Iterable[Envelope | dict[str, Any]],
    since: int | None = None,
) -> list[ReceivedMessage]:
    """Open a batch of gift wraps, oldest first.

    Unrecoverable events and repeats of the same wrap are dropped. ``since``
    filters on the true send time of the inner message.
    """
    seen: set[str] = set()
    messages: list[ReceivedMessage] = []
    failed = 0

    for event in events:
        event_id = _event_id(event)
        if event_id and event_id in seen:
            continue

        msg = receive(receiver_privkey, event)
        if msg is None:
            failed += 1
            continue
        # Record only wraps that opened
        if event_id:
            seen.add(event_id)
        if since is not None and msg.sent_at < since:
            continue
        messages.append(msg)

    if failed:
        log.info("Opened %d gift wraps, %d not recoverable", len(messages), failed)
    messages.sort(key=lambda m: m.sent_at)
    return messages


class Messenger:
    """Sends and listens for gift-wrapped messages over an injected transport.

    Usage:
        messenger = Messenger(identity, transport)
        messenger.listen(lambda msg: print(msg.plaintext))
        messenger.send_message(friend_pubkey, "hello")
        ...
        messenger.close()
    """

    def __init__(
        self,
        identity: Identity,
        transport: Transport,
        jitter: int = TIMESTAMP_JITTER_SECS,
    ) -> None:
        self.identity = identity
        self.transport = transport
        self.jitter = jitter

        self._unsubscribers: list[Callable[[], None]] = []
        # Time-windowed wrap-id deduplication (OrderedDict for FIFO eviction)
        self._seen_ids: collections.OrderedDict[str, float] = collections.OrderedDict()
        self._lock = threading.Lock()

    @property
    def pubkey(self) -> str:
        return self.identity.pubkey

    def send_message(
        self,
        receiver_pubkey: str,
        message: str,
        extra_tags: Iterable[list[str]] = (),
    ) -> tuple[Envelope, dict[str, bool]]:
        """Wrap and publish one message. Returns (wrapped, acks per endpoint).

        Raises:
            PublishError: if no endpoint accepted the event.
        """
        wrapped = send(
            self.identity.privkey,
            receiver_pubkey,
            message,
            extra_tags=extra_tags,
            jitter=self.jitter,
        )
        acks = self.transport.publish(wrapped.to_dict())
        accepted = [url for url, ok in acks.items() if ok]
        if not accepted:
            raise PublishError(f"No endpoint accepted gift wrap {wrapped.id[:12]}")
        if len(accepted) < len(acks):
            log.warning(
                "Gift wrap %s accepted by %d/%d endpoints",
                wrapped.id[:12], len(accepted), len(acks),
            )
        else:
            log.info("Published gift wrap %s to %d endpoints", wrapped.id[:12], len(acks))
        return wrapped, acks

    def _is_duplicate(self, event_id: str) -> bool:
        """Check and record a wrap id. Entries expire after DEDUP_WINDOW_SECONDS."""
        now = time.monotonic()
        with self._lock:
            while self._seen_ids:
                oldest_key, oldest_time = next(iter(self._seen_ids.items()))
                if now - oldest_time > DEDUP_WINDOW_SECONDS:
                    del self._seen_ids[oldest_key]
                else:
                    break

            if event_id in self._seen_ids:
                return True
            self._seen_ids[event_id] = now

            while len(self._seen_ids) > DEDUP_MAX_SIZE:
                self._seen_ids.popitem(last=False)
        return False

    def handle_event(
        self,
        event: dict[str, Any],
        callback: Callable[[ReceivedMessage], Any],
    ) -> ReceivedMessage | None:
        """Process one pushed event. Never raises into the delivery loop.

        Only wraps that open successfully are recorded for dedup, so a forged
        event reusing a real id cannot shadow the genuine one.
        """
        msg = receive(self.identity.privkey, event)
        if msg is None:
            return None
        if self._is_duplicate(_event_id(event)):
            log.debug("Dropped duplicate gift wrap %s", _event_id(event)[:12])
            return None

        try:
            callback(msg)
        except Exception:
            log.exception("Message callback failed for %s", msg.message_id[:12])
        return msg

    def listen(
        self,
        callback: Callable[[ReceivedMessage], Any],
        since: int | None = None,
    ) -> Callable[[], None]:
        """Subscribe to gift wraps for this identity. Returns an unsubscribe callable."""
        filters = recipient_filter(self.pubkey, since=since)
        unsubscribe = self.transport.subscribe(
            filters, lambda event: self.handle_event(event, callback)
        )
        self._unsubscribers.append(unsubscribe)
        log.info("Listening for gift wraps to %s", self.pubkey[:12])
        return unsubscribe

    def close(self) -> None:
        """Cancel every subscription opened by listen()."""
        while self._unsubscribers:
            unsubscribe = self._unsubscribers.pop()
            try:
                unsubscribe()
            except Exception as e:
                log.warning("Unsubscribe failed: %s", e)
