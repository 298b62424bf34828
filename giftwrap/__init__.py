"""
Nostr gift wrap — private, sender-anonymous direct messages over public relays.

Architecture:
    Direct  (kind 14):   plaintext message, signed by the true sender
    Sealed  (kind 13):   encrypted Direct, signed by the true sender
    Wrapped (kind 1059): encrypted Sealed, signed by a one-shot disposable key

Only the Wrapped event is ever handed to a relay. Relays see the recipient's
``p`` tag and a random author key, nothing else.
"""

__version__ = "0.1.0"

# Event kinds (wire ``kind`` field)
KIND_DIRECT = 14
KIND_SEALED = 13
KIND_WRAPPED = 1059

# Payload encryption (NIP-44 version 2)
NIP44_VERSION = 2
NIP44_SALT = b"nip44-v2"
NIP44_NONCE_SIZE = 32
NIP44_MAC_SIZE = 32
NIP44_MIN_PLAINTEXT = 1
NIP44_MAX_PLAINTEXT = 65535

# Seal/wrap timestamps are pushed up to two days into the past
TIMESTAMP_JITTER_SECS = 2 * 24 * 60 * 60

# Recipient-side dedup window for wraps delivered by several relays
DEDUP_WINDOW_SECONDS = 600
DEDUP_MAX_SIZE = 10_000
