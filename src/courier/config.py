"""Configuration for the courier server.

Settings are resolved in three layers, later layers winning:
    1. Dataclass defaults
    2. Optional YAML file named by COURIER_CONFIG
    3. Environment variables

Environment Variables:
    COURIER_CONFIG: Path to a YAML settings file
    COURIER_DB: SQLite path (":memory:" for ephemeral storage)
    COURIER_AUTH_MODULE: Python module implementing the identity verifier
    COURIER_AUTH_URL: Base URL of the HTTP identity verification service
    COURIER_FCM_PROJECT: Firebase project id for push delivery
    COURIER_FCM_TOKEN: OAuth2 access token for the FCM HTTP v1 API
    COURIER_PUSH_TIMEOUT: Push gateway timeout in seconds
    COURIER_LOG_LEVEL: Logging level name
"""

from __future__ import annotations

import logging
import os
from dataclasses import asdict, dataclass, fields
from pathlib import Path
from typing import Any

import yaml

DEFAULT_CIPHER_PLACEHOLDER = "New encrypted message"

_ENV_VARS = {
    "db_path": "COURIER_DB",
    "auth_module": "COURIER_AUTH_MODULE",
    "auth_url": "COURIER_AUTH_URL",
    "fcm_project_id": "COURIER_FCM_PROJECT",
    "fcm_access_token": "COURIER_FCM_TOKEN",
    "push_timeout": "COURIER_PUSH_TIMEOUT",
    "log_level": "COURIER_LOG_LEVEL",
}


class CourierConfigError(Exception):
    """Raised when courier settings are invalid."""

    pass


@dataclass
class CourierSettings:
    """Resolved server settings."""

    db_path: str = ":memory:"
    auth_module: str | None = None
    auth_url: str | None = None
    fcm_project_id: str | None = None
    fcm_access_token: str | None = None
    push_timeout: float = 10.0
    cipher_placeholder: str = DEFAULT_CIPHER_PLACEHOLDER
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        self._validate()

    def _validate(self) -> None:
        try:
            self.push_timeout = float(self.push_timeout)
        except (TypeError, ValueError):
            raise CourierConfigError(f"push_timeout must be a number, got {self.push_timeout!r}")
        if self.push_timeout <= 0:
            raise CourierConfigError("push_timeout must be positive")

        if not self.cipher_placeholder or not self.cipher_placeholder.strip():
            raise CourierConfigError("cipher_placeholder cannot be empty")

        level = str(self.log_level).upper()
        if not isinstance(logging.getLevelName(level), int):
            raise CourierConfigError(f"Unknown log level: {self.log_level!r}")
        self.log_level = level

        if self.auth_url:
            self.auth_url = self.auth_url.rstrip("/")

    @property
    def push_enabled(self) -> bool:
        """True when enough FCM settings are present to deliver pushes."""
        return bool(self.fcm_project_id and self.fcm_access_token)

    @classmethod
    def load(cls, path: str | Path | None = None) -> "CourierSettings":
        """Load settings from YAML (if any) and apply environment overrides."""
        data: dict[str, Any] = {}

        config_path = path or os.environ.get("COURIER_CONFIG")
        if config_path:
            config_path = Path(config_path)
            if not config_path.exists():
                raise CourierConfigError(f"Config file not found: {config_path}")
            with open(config_path) as f:
                loaded = yaml.safe_load(f) or {}
            if not isinstance(loaded, dict):
                raise CourierConfigError(f"Config file must contain a mapping: {config_path}")
            data.update(loaded)

        for name, env_var in _ENV_VARS.items():
            value = os.environ.get(env_var)
            if value:
                data[name] = value

        known = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - known)
        if unknown:
            raise CourierConfigError(f"Unknown settings: {', '.join(unknown)}")

        return cls(**data)

    def to_dict(self) -> dict[str, Any]:
        """Settings as a dict with secrets masked (for logging/debugging)."""
        data = asdict(self)
        if data["fcm_access_token"]:
            data["fcm_access_token"] = "***"
        return data
