from __future__ import annotations

import os
from dataclasses import dataclass, fields
from typing import Mapping

DEFAULT_RECONCILE_INTERVAL_SECONDS = 30.0
ENV_PREFIX = "MARKETCHAT_"


@dataclass
class SyncConfig:
    reconcile_interval_seconds: float = DEFAULT_RECONCILE_INTERVAL_SECONDS
    message_image_bucket: str = "message-images"
    avatar_bucket: str = "avatars"
    rating_image_bucket: str = "rating-images"
    public_url_base: str | None = None
    db_path: str | None = None
    ping_interval_s: int = 30

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "SyncConfig":
        """Build a config from ``MARKETCHAT_*`` variables, e.g. ``MARKETCHAT_DB_PATH``."""

        environ = os.environ if environ is None else environ
        config = cls()
        for field in fields(cls):
            raw = environ.get(ENV_PREFIX + field.name.upper())
            if raw is None or raw == "":
                continue
            current = getattr(config, field.name)
            try:
                if isinstance(current, int):
                    value: object = int(raw)
                elif isinstance(current, float):
                    value = float(raw)
                else:
                    value = raw
            except ValueError as exc:
                raise ValueError(f"invalid value for {ENV_PREFIX}{field.name.upper()}: {raw!r}") from exc
            setattr(config, field.name, value)
        if config.reconcile_interval_seconds < 0:
            raise ValueError("reconcile_interval_seconds must be non-negative")
        return config
