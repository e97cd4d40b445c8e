"""
Runtime configuration.

Values come from ``CHATWARDEN_*`` environment variables (``.env`` is loaded by
the server and the CLI before ``CONFIG.reload()``), falling back to the
defaults below.
"""

import os
from dataclasses import dataclass, fields
from pathlib import Path
from typing import Dict

PROJECT_DIR = Path(__file__).resolve().parent.parent.parent
DATA_DIR = Path(os.getenv("CHATWARDEN_DATA_DIR", str(PROJECT_DIR / ".chatwarden")))

ENV_PREFIX = "CHATWARDEN_"

DEFAULT_ASSET_URL = (
    "https://res.cloudinary.com/dckwrqrur/image/upload/v1756264264/"
    "tf-stream-url/IMG-20250826-WA0000_ymn2wa.jpg"
)


@dataclass
class Config:
    # Web transport
    host: str = "0.0.0.0"
    port: int = 3000
    allowed_origin: str = "*"

    # Storage and protocol driver
    sessions_dir: str = str(DATA_DIR / "sessions")
    protocol_driver: str = "chatwarden.protocol.loopback.LoopbackSocket"

    # Command parsing
    command_prefix: str = "."

    # Branding used in replies
    bot_name: str = "Warden"
    owner_name: str = "Owner"
    bot_version: str = "1.0.0"
    purge_subject: str = "Warden"

    # Asset helper
    asset_url: str = DEFAULT_ASSET_URL
    asset_timeout: float = 15.0

    # Reconnection policy (milliseconds)
    restart_base_ms: int = 2000
    restart_step_ms: int = 2000
    restart_cap_ms: int = 30000
    reconnect_delay_ms: int = 5000

    # Throttling between group mutations (milliseconds)
    purge_delay_ms: int = 3000
    kick_delay_ms: int = 500
    add_delay_ms: int = 800
    promote_delay_ms: int = 500
    demote_delay_ms: int = 500

    # Recurring job period (milliseconds) and payload
    job_period_ms: int = 1000
    job_placeholder: str = "ㅤ   "

    @classmethod
    def from_env(cls) -> "Config":
        config = cls()
        config.reload()
        return config

    def reload(self) -> None:
        """Re-read every field from the environment, keeping defaults for unset ones."""
        defaults = type(self)()
        for f in fields(self):
            raw = os.getenv(f"{ENV_PREFIX}{f.name.upper()}")
            default = getattr(defaults, f.name)
            if raw is None:
                setattr(self, f.name, default)
                continue
            setattr(self, f.name, _coerce(raw, default))

    def to_dict(self) -> Dict[str, object]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


def _coerce(raw: str, default):
    if isinstance(default, bool):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, float):
        return float(raw)
    return raw


CONFIG = Config.from_env()
