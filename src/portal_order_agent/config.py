from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Optional, Union
from urllib.parse import urlparse

import yaml
from pydantic import BaseModel, Field, model_validator

from .portals import KNOWN_PORTALS


_ENV_VAR_PATTERN = re.compile(r"\$\{([A-Z0-9_]+)\}")
_PORTAL_SLUG_RE = re.compile(r"^[a-z0-9-]+$")


def _expand_env_vars(value: object) -> object:
    if isinstance(value, str):
        def repl(match: re.Match[str]) -> str:
            var = match.group(1)
            return os.getenv(var, "")

        return _ENV_VAR_PATTERN.sub(repl, value)
    if isinstance(value, list):
        return [_expand_env_vars(v) for v in value]
    if isinstance(value, dict):
        return {k: _expand_env_vars(v) for k, v in value.items()}
    return value


def _env_bool(name: str, default: bool = False) -> bool:
    raw = (os.getenv(name, "") or "").strip().lower()
    if not raw:
        return bool(default)
    return raw in {"1", "true", "t", "yes", "y", "on"}


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name, "") or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _deep_merge(base: object, override: object) -> object:
    if isinstance(base, dict) and isinstance(override, dict):
        out = dict(base)
        for k, v in override.items():
            if k in out:
                out[k] = _deep_merge(out[k], v)
            else:
                out[k] = v
        return out
    return override


def _default_config_from_env() -> dict:
    """
    Provide a sensible env-only config so most deployments only need `.env`.

    YAML remains an optional override for field catalogs and per-portal tuning.
    """
    return {
        "portals": {
            "labcorp": {
                "username": os.getenv("LABCORP_USERNAME", ""),
                "password": os.getenv("LABCORP_PASSWORD", ""),
            },
            "quest": {
                "username": os.getenv("QUEST_USERNAME", ""),
                "password": os.getenv("QUEST_PASSWORD", ""),
            },
        },
        "engine": {
            "preview_mode": _env_bool("ENABLE_PREVIEW_MODE", default=True),
            "headless": _env_bool("HEADLESS_MODE", default=True),
            "max_attempts": _env_int("MAX_RETRY_ATTEMPTS", 3),
            "step_delay_ms": _env_int("AUTOMATION_DELAY_MS", 0),
        },
        "eligibility": {
            "endpoint": os.getenv("ELIGIBILITY_ENDPOINT", ""),
            "api_key": os.getenv("ELIGIBILITY_API_KEY", ""),
        },
        "adaptive": {
            "api_key": os.getenv("OPENAI_API_KEY", ""),
            "model": os.getenv("ADAPTIVE_MODEL", "gpt-4o-mini"),
        },
        "audit": {
            "dir": os.getenv("SCREENSHOT_PATH", "data/audit"),
        },
        "state": {
            "db_path": os.getenv("STATE_DB_PATH", "data/state.db"),
        },
        "logging": {
            "level": os.getenv("LOG_LEVEL", "INFO"),
            "file_path": os.getenv("LOG_FILE", "data/portal-order-agent.log"),
        },
    }


class PortalConfig(BaseModel):
    """
    Connection and catalog settings for one order portal.

    `labcorp` and `quest` get their URLs and login markers from the built-in profiles; any other
    portal name must set `base_url` explicitly.
    """

    name: str = ""
    base_url: str = ""
    login_url: str = ""
    username: str = ""
    password: str = Field(default="", repr=False)
    session_ttl_minutes: int = 14
    authenticated_url_patterns: list[str] = Field(default_factory=list)
    authenticated_markers: list[str] = Field(default_factory=list)
    login_url_patterns: list[str] = Field(default_factory=list)

    # semantic field -> extra locator candidates, tried before the built-in ones
    field_overrides: dict[str, list[str]] = Field(default_factory=dict)
    # semantic field -> required flag
    required_overrides: dict[str, bool] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _fill_defaults_and_validate(self) -> "PortalConfig":
        name = (self.name or "").strip().lower()
        if not name:
            raise ValueError("portal name is required")
        if not _PORTAL_SLUG_RE.match(name):
            raise ValueError("portal names must be slugs like 'labcorp' (lowercase letters, numbers, hyphen only)")

        info = KNOWN_PORTALS.get(name)
        base_url = (self.base_url or "").strip() or (info.base_url if info else "")
        if not base_url:
            raise ValueError(f"portals.{name}.base_url is required for portals without a built-in profile")

        base_url = base_url.rstrip("/")
        parsed = urlparse(base_url)
        if not parsed.scheme or not parsed.netloc:
            raise ValueError(f"portals.{name}.base_url must be a full URL like 'https://portal.example.com'")

        if self.session_ttl_minutes <= 0:
            raise ValueError(f"portals.{name}.session_ttl_minutes must be positive")

        self.name = name
        self.base_url = base_url
        if info:
            self.login_url = self.login_url or info.login_url
            self.authenticated_url_patterns = self.authenticated_url_patterns or list(info.authenticated_url_patterns)
            self.authenticated_markers = self.authenticated_markers or list(info.authenticated_markers)
            self.login_url_patterns = self.login_url_patterns or list(info.login_url_patterns)
        self.login_url = self.login_url or base_url
        self.login_url_patterns = self.login_url_patterns or ["/login"]
        return self

    @property
    def has_credentials(self) -> bool:
        return bool(self.username and self.password)


class EngineConfig(BaseModel):
    # Halt after validation and wait for an explicit confirm before submitting.
    preview_mode: bool = True
    max_attempts: int = 3
    backoff_base_seconds: float = 2.0
    backoff_max_seconds: float = 30.0
    element_timeout_ms: int = 5_000
    navigation_timeout_ms: int = 30_000
    auth_verify_timeout_ms: int = 15_000
    confirmation_timeout_ms: int = 15_000
    headless: bool = True
    slow_mo_ms: int = 0
    step_delay_ms: int = 0
    popup_sweep_limit: int = 5

    @model_validator(mode="after")
    def _validate_retry_budget(self) -> "EngineConfig":
        if self.max_attempts < 1:
            raise ValueError("engine.max_attempts must be at least 1")
        if self.backoff_base_seconds <= 0:
            raise ValueError("engine.backoff_base_seconds must be positive")
        # Backoff must stay strictly increasing across every attempt we are allowed to make.
        if self.max_attempts > 1:
            peak = self.backoff_base_seconds * 2 ** (self.max_attempts - 2)
            if peak > self.backoff_max_seconds:
                raise ValueError(
                    "engine.backoff_max_seconds is too small for engine.max_attempts "
                    f"(need at least {peak:g}s)"
                )
        return self


class EligibilityConfig(BaseModel):
    endpoint: str = ""
    api_key: str = Field(default="", repr=False)
    timeout_seconds: float = 10.0

    @property
    def enabled(self) -> bool:
        return bool(self.endpoint)


class AdaptiveConfig(BaseModel):
    enabled: bool = True
    api_key: str = Field(default="", repr=False)
    model: str = "gpt-4o-mini"
    max_markup_chars: int = 5_000

    @property
    def active(self) -> bool:
        return bool(self.enabled and self.api_key)


class AuditConfig(BaseModel):
    dir: str = "data/audit"
    retention_days: int = 30


class OutboxConfig(BaseModel):
    notifications_dir: str = "data/outbox/notifications"
    documents_dir: str = "data/outbox/requisitions"


class StateConfig(BaseModel):
    db_path: str = "data/state.db"


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file_path: str = "data/portal-order-agent.log"


class AppConfig(BaseModel):
    portals: dict[str, PortalConfig] = Field(default_factory=dict)
    engine: EngineConfig = EngineConfig()
    eligibility: EligibilityConfig = EligibilityConfig()
    adaptive: AdaptiveConfig = AdaptiveConfig()
    audit: AuditConfig = AuditConfig()
    outbox: OutboxConfig = OutboxConfig()
    state: StateConfig = StateConfig()
    logging: LoggingConfig = LoggingConfig()

    @model_validator(mode="before")
    @classmethod
    def _inject_portal_names(cls, data: object) -> object:
        # The mapping key is the portal name; copy it into each entry so PortalConfig can validate itself.
        if isinstance(data, dict) and isinstance(data.get("portals"), dict):
            portals = {}
            for key, value in data["portals"].items():
                entry = dict(value or {}) if isinstance(value, dict) else value
                if isinstance(entry, dict):
                    entry.setdefault("name", str(key))
                portals[str(key).strip().lower()] = entry
            data = {**data, "portals": portals}
        return data

    def get_portal(self, name: str) -> PortalConfig:
        key = (name or "").strip().lower()
        portal = self.portals.get(key)
        if portal is None:
            raise KeyError(f"Unknown portal {name!r}; configured portals: {', '.join(sorted(self.portals)) or '(none)'}")
        return portal

    def secrets(self) -> list[str]:
        """Every configured secret value, for log redaction."""
        out: list[str] = []
        for portal in self.portals.values():
            out.append(portal.password)
        out.extend([self.eligibility.api_key, self.adaptive.api_key])
        return [s for s in out if s]


def load_config(path: Optional[Union[str, Path]] = None) -> AppConfig:
    raw: dict = {}
    if path:
        p = Path(path)
        if p.exists():
            raw = yaml.safe_load(p.read_text(encoding="utf-8")) or {}
            raw = _expand_env_vars(raw)  # supports ${ENV_VAR} in YAML

    merged = _deep_merge(_default_config_from_env(), raw)
    return AppConfig.model_validate(merged)
