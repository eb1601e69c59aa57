"""Configuration management for the webmail administration service."""
from __future__ import annotations

import os
from dataclasses import dataclass, fields, replace
from pathlib import Path
from typing import Dict, Mapping, Optional

import yaml

_LOG_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}


def _env_flag(value: Optional[str], default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _coerce_bool(name: str, value: object) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        lowered = value.strip().lower()
        if lowered in {"1", "true", "yes", "on"}:
            return True
        if lowered in {"0", "false", "no", "off"}:
            return False
    raise ValueError(f"Setting '{name}' must be a boolean")


def _coerce_positive_int(name: str, value: object) -> int:
    try:
        number = int(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Setting '{name}' must be an integer") from exc
    if number <= 0:
        raise ValueError(f"Setting '{name}' must be greater than zero")
    return number


@dataclass(frozen=True)
class Settings:
    """Runtime settings for the API service and the CLI."""

    database_path: Path
    session_ttl_hours: int = 24
    secure_cookies: bool = False
    cookie_name: str = "mailadmin_session"
    sender_domain: str = "emailserver.com"
    audit_log_limit: int = 100
    strict_audit: bool = True
    log_level: str = "INFO"
    trusted_proxies: str = "*"

    @staticmethod
    def from_dict(data: Mapping[str, object], base_path: Path | None = None) -> "Settings":
        """Create :class:`Settings` from raw dictionary data."""
        known = {item.name for item in fields(Settings)}
        unknown = set(data.keys()) - known
        if unknown:
            raise ValueError(f"Unknown configuration settings: {', '.join(sorted(unknown))}")

        raw_path = data.get("database_path")
        if raw_path:
            candidate = Path(str(raw_path)).expanduser()
            if not candidate.is_absolute() and base_path is not None:
                candidate = base_path / candidate
            database_path = candidate.resolve(strict=False)
        else:
            database_path = resolve_database_path(None)

        settings = Settings(database_path=database_path)
        values: Dict[str, object] = {}
        if "session_ttl_hours" in data:
            values["session_ttl_hours"] = _coerce_positive_int("session_ttl_hours", data["session_ttl_hours"])
        if "audit_log_limit" in data:
            values["audit_log_limit"] = _coerce_positive_int("audit_log_limit", data["audit_log_limit"])
        for flag in ("secure_cookies", "strict_audit"):
            if flag in data:
                values[flag] = _coerce_bool(flag, data[flag])
        for text in ("cookie_name", "sender_domain", "trusted_proxies"):
            if text in data:
                cleaned = str(data[text]).strip()
                if not cleaned:
                    raise ValueError(f"Setting '{text}' must not be empty")
                values[text] = cleaned.lower() if text == "sender_domain" else cleaned
        if "log_level" in data:
            values["log_level"] = _normalise_log_level(str(data["log_level"]))
        return replace(settings, **values)

    def with_environment(self, environ: Mapping[str, str] | None = None) -> "Settings":
        """Return a copy with ``MAILADMIN_*`` environment overrides applied."""
        env = os.environ if environ is None else environ
        values: Dict[str, object] = {}

        db_path = env.get("MAILADMIN_DB_PATH")
        if db_path:
            values["database_path"] = resolve_database_path(db_path)
        ttl = env.get("MAILADMIN_SESSION_TTL_HOURS")
        if ttl:
            values["session_ttl_hours"] = _coerce_positive_int("session_ttl_hours", ttl)
        secure = env.get("MAILADMIN_SESSION_SECURE")
        if secure is not None:
            values["secure_cookies"] = _env_flag(secure)
        strict = env.get("MAILADMIN_STRICT_AUDIT")
        if strict is not None:
            values["strict_audit"] = _env_flag(strict, default=True)
        sender_domain = env.get("MAILADMIN_SENDER_DOMAIN")
        if sender_domain and sender_domain.strip():
            values["sender_domain"] = sender_domain.strip().lower()
        log_level = env.get("MAILADMIN_LOG_LEVEL")
        if log_level:
            values["log_level"] = _normalise_log_level(log_level)
        proxies = env.get("MAILADMIN_TRUSTED_PROXIES")
        if proxies and proxies.strip():
            values["trusted_proxies"] = proxies.strip()

        return replace(self, **values) if values else self

    def trusted_proxy_hosts(self) -> list[str] | str:
        hosts = [item.strip() for item in self.trusted_proxies.split(",") if item.strip()]
        if not hosts or hosts == ["*"]:
            return "*"
        return hosts


def _normalise_log_level(value: str) -> str:
    level = value.strip().upper()
    if level not in _LOG_LEVELS:
        raise ValueError(f"Setting 'log_level' must be one of {', '.join(sorted(_LOG_LEVELS))}")
    return level


def resolve_database_path(env_value: Optional[str]) -> Path:
    """Resolve the on-disk path for the application database."""

    if env_value:
        return Path(env_value).expanduser().resolve(strict=False)
    base_dir = Path(__file__).resolve().parent.parent / "data"
    return (base_dir / "mailadmin.sqlite3").resolve(strict=False)


def resolve_config_path(env_value: Optional[str]) -> Path:
    """Resolve the path to the configuration file."""
    if env_value:
        return Path(env_value).expanduser().resolve(strict=False)
    return (Path(__file__).resolve().parent.parent / "config" / "mailadmin.yaml").resolve(strict=False)


def load_settings(config_path: Path | None = None, environ: Mapping[str, str] | None = None) -> Settings:
    """Load settings from an optional YAML file, then apply environment overrides."""
    env = os.environ if environ is None else environ
    path = config_path or resolve_config_path(env.get("MAILADMIN_CONFIG"))

    raw: Mapping[str, object] = {}
    if path.exists():
        with path.open("r", encoding="utf-8") as handle:
            loaded = yaml.safe_load(handle) or {}
        if not isinstance(loaded, dict):
            raise ValueError("Configuration file must contain a mapping of settings")
        raw = loaded

    return Settings.from_dict(raw, base_path=path.parent).with_environment(env)


__all__ = ["Settings", "load_settings", "resolve_config_path", "resolve_database_path"]
