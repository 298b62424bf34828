"""
giftwrap CLI — private direct messages as Nostr gift wraps.

Commands:
  giftwrap keygen                     - Print a fresh keypair (nothing is written)
  giftwrap pubkey                     - Show the public key of the configured identity
  giftwrap send <pubkey> <message>    - Print a gift-wrapped event for <pubkey>
  giftwrap open [file|-]              - Open a gift-wrapped event addressed to you
  giftwrap verify [file|-]            - Check an event's id and signature

Publishing and fetching events is left to your relay client: ``send`` writes
the event JSON to stdout and ``open`` reads it from a file or stdin.
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import datetime, timezone
from pathlib import Path


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        stream=sys.stderr,
    )


def _get_identity(args: argparse.Namespace):
    """Resolve the caller's identity or exit with an error."""
    from giftwrap.config import resolve_identity
    from giftwrap.keys import InvalidKeyError

    try:
        return resolve_identity(getattr(args, "key_file", None), args.config)
    except (LookupError, FileNotFoundError, InvalidKeyError) as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)


def _read_event(source: str) -> dict:
    """Read one event JSON object from a path or '-' for stdin."""
    if source == "-":
        text = sys.stdin.read()
    else:
        path = Path(source)
        if not path.is_file():
            print(f"Error: File not found: {source}", file=sys.stderr)
            sys.exit(1)
        text = path.read_text()

    try:
        data = json.loads(text)
    except json.JSONDecodeError as e:
        print(f"Error: Invalid JSON: {e}", file=sys.stderr)
        sys.exit(1)

    # Accept a relay frame ["EVENT", sub_id, event] as well as a bare event
    if isinstance(data, list) and len(data) >= 3 and data[0] == "EVENT":
        data = data[2]
    return data


def cmd_keygen(args: argparse.Namespace) -> None:
    """Generate a keypair and print it. The private key is not stored."""
    from giftwrap.keys import generate_identity

    identity = generate_identity()
    print(f"pubkey:  {identity.pubkey}")
    print(f"privkey: {identity.privkey_hex}")
    print()
    print("Keep the private key secret. Save it to a file and pass --key-file,")
    print("or export it as GIFTWRAP_PRIVKEY.")


def cmd_pubkey(args: argparse.Namespace) -> None:
    identity = _get_identity(args)
    print(identity.pubkey)


def cmd_send(args: argparse.Namespace) -> None:
    """Build, seal and wrap a message; print the wrapped event JSON."""
    from giftwrap.crypto import EncryptionError
    from giftwrap.keys import InvalidKeyError
    from giftwrap.protocol import send

    identity = _get_identity(args)
    message = args.message
    if message == "-":
        message = sys.stdin.read()

    extra_tags = []
    if args.subject:
        extra_tags.append(["subject", args.subject])

    try:
        wrapped = send(
            identity.privkey,
            args.receiver,
            message,
            extra_tags=extra_tags,
            jitter=args.config["jitter_seconds"],
        )
    except (InvalidKeyError, EncryptionError) as e:
        print(f"Error: Cannot wrap message: {e}", file=sys.stderr)
        sys.exit(1)

    print(wrapped.to_json())


def cmd_open(args: argparse.Namespace) -> None:
    """Open a gift wrap addressed to the configured identity."""
    from giftwrap.protocol import receive

    identity = _get_identity(args)
    event = _read_event(args.source)

    msg = receive(identity.privkey, event)
    if msg is None:
        print("FAIL: message not recoverable", file=sys.stderr)
        sys.exit(1)

    if args.json:
        print(json.dumps({
            "sender": msg.sender_pubkey,
            "sent_at": msg.sent_at,
            "id": msg.message_id,
            "tags": msg.tags,
            "content": msg.plaintext,
        }, ensure_ascii=False))
        return

    sent = datetime.fromtimestamp(msg.sent_at, tz=timezone.utc).isoformat()
    print(f"from: {msg.sender_pubkey}")
    print(f"sent: {sent}")
    for tag in msg.tags:
        if len(tag) >= 2 and tag[0] == "subject":
            print(f"subject: {tag[1]}")
    print()
    print(msg.plaintext)


def cmd_verify(args: argparse.Namespace) -> None:
    """Check an event's structure, id and signature."""
    from giftwrap.event import Envelope, MalformedEnvelope, verify_envelope

    data = _read_event(args.source)
    try:
        envelope = Envelope.from_dict(data)
    except MalformedEnvelope as e:
        print(f"FAIL: {e}", file=sys.stderr)
        sys.exit(1)

    if not verify_envelope(envelope):
        print(f"FAIL: event {envelope.id[:16]}... has an invalid id or signature", file=sys.stderr)
        sys.exit(1)

    print(f"OK: {envelope.layer.name.lower()} event (kind {int(envelope.layer)}) verified")
    print(f"  id:     {envelope.id}")
    print(f"  author: {envelope.pubkey}")


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="giftwrap",
        description="Private, sender-anonymous direct messages as Nostr gift wraps.",
    )
    from giftwrap import __version__
    parser.add_argument("--version", action="version", version=f"giftwrap {__version__}")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging to stderr")
    parser.add_argument("--config-file", help="Config TOML (default: ~/.giftwrap/config.toml)")
    sub = parser.add_subparsers(dest="command")

    sub.add_parser("keygen", help="Print a fresh keypair")

    p_pub = sub.add_parser("pubkey", help="Show the configured identity's public key")
    p_pub.add_argument("--key-file", help="File holding a hex private key")

    p_send = sub.add_parser("send", help="Print a gift-wrapped event for a receiver")
    p_send.add_argument("receiver", help="Receiver public key (64 hex chars)")
    p_send.add_argument("message", help="Message text, or '-' to read stdin")
    p_send.add_argument("--subject", help="Optional subject tag")
    p_send.add_argument("--key-file", help="File holding a hex private key")

    p_open = sub.add_parser("open", help="Open a gift-wrapped event addressed to you")
    p_open.add_argument("source", nargs="?", default="-", help="Event JSON file (default: stdin)")
    p_open.add_argument("--json", action="store_true", help="Print the result as JSON")
    p_open.add_argument("--key-file", help="File holding a hex private key")

    p_verify = sub.add_parser("verify", help="Check an event's id and signature")
    p_verify.add_argument("source", nargs="?", default="-", help="Event JSON file (default: stdin)")

    args = parser.parse_args(argv)
    _setup_logging(args.verbose)

    if not args.command:
        parser.print_help()
        sys.exit(0)

    from giftwrap.config import load_config
    args.config = load_config(Path(args.config_file) if args.config_file else None)

    commands = {
        "keygen": cmd_keygen,
        "pubkey": cmd_pubkey,
        "send": cmd_send,
        "open": cmd_open,
        "verify": cmd_verify,
    }
    commands[args.command](args)


if __name__ == "__main__":
    main()
