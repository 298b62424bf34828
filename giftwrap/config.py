"""
Configuration — TOML file with defaults, plus where to find the private key.

Lookup order for the config file: explicit path > $GIFTWRAP_CONFIG >
~/.giftwrap/config.toml. A missing or unreadable file means defaults.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

from giftwrap import TIMESTAMP_JITTER_SECS
from giftwrap.keys import Identity, import_identity, load_identity

log = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path.home() / ".giftwrap" / "config.toml"
PRIVKEY_ENV = "GIFTWRAP_PRIVKEY"
CONFIG_ENV = "GIFTWRAP_CONFIG"

DEFAULT_CONFIG = {
    "jitter_seconds": TIMESTAMP_JITTER_SECS,
    "key_file": "",
}


def load_config(config_path: Path | None = None) -> dict[str, Any]:
    """Load config from TOML file, falling back to defaults."""
    config = dict(DEFAULT_CONFIG)

    env_path = os.environ.get(CONFIG_ENV, "")
    path = Path(config_path or env_path or DEFAULT_CONFIG_PATH).expanduser()
    if path.is_file():
        try:
            import tomllib
        except ImportError:
            import tomli as tomllib

        try:
            with open(path, "rb") as f:
                file_config = tomllib.load(f)
            config.update(file_config)
        except (OSError, tomllib.TOMLDecodeError) as e:
            log.warning("Failed to load config from %s: %s", path, e)

    jitter = config.get("jitter_seconds")
    if not isinstance(jitter, int) or isinstance(jitter, bool) or jitter < 0:
        log.warning("Ignoring invalid jitter_seconds %r", jitter)
        config["jitter_seconds"] = TIMESTAMP_JITTER_SECS

    return config


def resolve_identity(
    key_file: str | Path | None = None,
    config: dict[str, Any] | None = None,
) -> Identity:
    """Find the caller's private key.

    Priority: explicit key file > $GIFTWRAP_PRIVKEY > ``key_file`` in config.

    Raises:
        LookupError: if no source provides a key.
    """
    if key_file:
        return load_identity(key_file)

    env_key = os.environ.get(PRIVKEY_ENV, "").strip()
    if env_key:
        return import_identity(env_key)

    cfg_file = (config or {}).get("key_file", "")
    if cfg_file:
        return load_identity(cfg_file)

    raise LookupError(
        f"No private key. Use --key-file, set {PRIVKEY_ENV}, or set key_file in config."
    )
