from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any

from fetchnews.models.domain import FetchPreferences


class ConfigError(Exception):
    pass


class ClientConfig:
    def __init__(
        self,
        api_base_url: str,
        request_timeout_s: float = 60.0,
        max_retries: int = 2,
        schedule_poll_interval_s: float = 120.0,
        schedule_tolerance_minutes: int = 1,
        interruption_settle_s: float = 0.1,
        store_path: str = ".fetchnews/state.db",
        timezone: str = "UTC",
        preferences: FetchPreferences | None = None,
        auth_token: str = "",
    ) -> None:
        self.api_base_url = api_base_url.rstrip("/")
        self.request_timeout_s = request_timeout_s
        self.max_retries = max_retries
        self.schedule_poll_interval_s = schedule_poll_interval_s
        self.schedule_tolerance_minutes = schedule_tolerance_minutes
        self.interruption_settle_s = interruption_settle_s
        self.store_path = store_path
        self.timezone = timezone
        self.preferences = preferences or FetchPreferences()
        # Secret: comes from the environment only, never from client.json
        self.auth_token = auth_token

    def validate(self) -> list[str]:
        errors: list[str] = []

        if not self.api_base_url.startswith(("http://", "https://")):
            errors.append(f"api_base_url must be an http(s) URL: {self.api_base_url!r}")
        if self.request_timeout_s <= 0:
            errors.append("request_timeout_s must be positive")
        if self.max_retries < 0:
            errors.append("max_retries must be >= 0")
        if self.schedule_poll_interval_s < 1:
            errors.append("schedule_poll_interval_s must be at least 1 second")
        if not 0 <= self.schedule_tolerance_minutes <= 30:
            errors.append("schedule_tolerance_minutes must be between 0 and 30")
        if self.interruption_settle_s < 0:
            errors.append("interruption_settle_s must be >= 0")
        if self.timezone != "UTC":
            try:
                from zoneinfo import ZoneInfo
                ZoneInfo(self.timezone)
            except (ImportError, KeyError, ValueError):
                errors.append(f"Unknown timezone: {self.timezone!r}")

        if errors:
            raise ConfigError("Configuration validation failed:\n  " + "\n  ".join(errors))

        return []

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ClientConfig:
        if "api_base_url" not in data:
            raise ConfigError("Missing required setting: api_base_url")
        prefs = data.get("preferences", {})
        if not isinstance(prefs, dict):
            raise ConfigError("preferences must be an object")
        try:
            return cls(
                api_base_url=str(data["api_base_url"]),
                request_timeout_s=float(data.get("request_timeout_s", 60.0)),
                max_retries=int(data.get("max_retries", 2)),
                schedule_poll_interval_s=float(data.get("schedule_poll_interval_s", 120.0)),
                schedule_tolerance_minutes=int(data.get("schedule_tolerance_minutes", 1)),
                interruption_settle_s=float(data.get("interruption_settle_s", 0.1)),
                store_path=str(data.get("store_path", ".fetchnews/state.db")),
                timezone=str(data.get("timezone", "UTC")),
                preferences=FetchPreferences.from_dict(prefs),
            )
        except (TypeError, ValueError) as e:
            raise ConfigError(f"Invalid setting type: {e}") from e


def load_json(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise ConfigError(f"Config file not found: {path}")
    try:
        with path.open("r", encoding="utf-8") as f:
            return json.load(f)
    except json.JSONDecodeError as e:
        raise ConfigError(f"Invalid JSON in {path}: {e}") from e


def _apply_env_overrides(data: dict[str, Any]) -> str:
    """Apply FETCHNEWS_* environment overrides in place. Returns the auth token."""
    env_map = {
        "api_base_url": "FETCHNEWS_API_BASE",
        "store_path": "FETCHNEWS_STORE_PATH",
        "timezone": "FETCHNEWS_TIMEZONE",
    }
    for config_key, env_key in env_map.items():
        val = os.environ.get(env_key, "").strip()
        if val:
            data[config_key] = val
    return os.environ.get("FETCHNEWS_AUTH_TOKEN", "").strip()


def load_client_config(config_dir: Path) -> ClientConfig:
    if not config_dir.is_dir():
        raise ConfigError(f"Config directory not found: {config_dir}")

    data = load_json(config_dir / "client.json")
    if not isinstance(data, dict):
        raise ConfigError(f"Expected a JSON object in {config_dir / 'client.json'}")
    token = _apply_env_overrides(data)
    cfg = ClientConfig.from_dict(data)
    cfg.auth_token = token
    cfg.validate()
    return cfg
