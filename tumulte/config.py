"""
tumulte.config — YAML Configuration Loader
===========================================

Reads ``config.yaml`` for **infrastructure-only** settings (API port, Twitch
endpoints, sweep intervals, HTTP timeouts).  Secrets (database URL, Twitch
client secret, EventSub signing secret, JWT secret) stay in the environment
and are loaded from ``.env`` by the API entry point.

Usage::

    from tumulte.config import load_config

    cfg = load_config()              # reads ./config.yaml by default
    print(cfg.expiry_interval_seconds)   # 60
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import yaml


# ---------------------------------------------------------------------------
# Typed settings object
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class TumulteConfig:
    """Immutable configuration loaded from ``config.yaml``."""

    # API
    api_port: int
    public_base_url: str  # Used to build the EventSub webhook callback

    # Twitch
    helix_base_url: str = "https://api.twitch.tv/helix"
    oauth_base_url: str = "https://id.twitch.tv/oauth2"
    http_timeout_seconds: float = 10.0

    # Scheduler
    expiry_interval_seconds: int = 60
    orphan_cleanup_interval_seconds: int = 300
    reconcile_on_startup: bool = True

    @property
    def eventsub_callback_url(self) -> str:
        return f"{self.public_base_url.rstrip('/')}/api/webhooks/twitch/eventsub"


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def load_config(path: str | Path = "config.yaml") -> TumulteConfig:
    """Read *path* and return a :class:`TumulteConfig` instance.

    Parameters
    ----------
    path:
        Filesystem path to the YAML configuration file.
        Defaults to ``config.yaml`` in the current working directory.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    KeyError
        If a required key is missing from the YAML file.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh) or {}

    twitch = raw.get("twitch") or {}
    scheduler = raw.get("scheduler") or {}

    return TumulteConfig(
        api_port=int(raw["api_port"]),
        public_base_url=str(raw["public_base_url"]),
        helix_base_url=twitch.get("helix_base_url", "https://api.twitch.tv/helix"),
        oauth_base_url=twitch.get("oauth_base_url", "https://id.twitch.tv/oauth2"),
        http_timeout_seconds=float(twitch.get("http_timeout_seconds", 10.0)),
        expiry_interval_seconds=int(scheduler.get("expiry_interval_seconds", 60)),
        orphan_cleanup_interval_seconds=int(
            scheduler.get("orphan_cleanup_interval_seconds", 300)
        ),
        reconcile_on_startup=bool(scheduler.get("reconcile_on_startup", True)),
    )
