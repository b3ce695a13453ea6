"""Environment-driven runtime settings for the inspection engine."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from .engine_config import (
    DEFAULT_USER_AGENT,
    DOMAIN_AGE_CACHE_MAX_ENTRIES,
    EXPANSION_CACHE_MAX_ENTRIES,
    LOOKUP_TIMEOUT_S,
    MALICIOUS_HOSTS_PATH,
    MAX_HOPS,
    ONE_DAY_S,
    PER_HOP_TIMEOUT_S,
    RATE_LIMIT_REQUESTS,
    RATE_LIMIT_WINDOW_S,
    SHORTENERS_PATH,
    TOTAL_DEADLINE_S,
)


def _env_int(name: str, default: int = 0) -> int:
    try:
        raw = os.getenv(name, "")
        return int(raw) if raw.strip() else default
    except (TypeError, ValueError):
        return default


def _env_float(name: str, default: float = 0.0) -> float:
    try:
        raw = os.getenv(name, "")
        return float(raw) if raw.strip() else default
    except (TypeError, ValueError):
        return default


def _env_bool(name: str, default: str = "0") -> bool:
    raw = os.getenv(name, default)
    return str(raw).strip().lower() not in {"0", "false", "no", "off", ""}


def _env_path(name: str, default: Optional[Path] = None) -> Optional[Path]:
    raw = (os.getenv(name) or "").strip()
    return Path(raw) if raw else default


@dataclass(frozen=True)
class EngineSettings:
    """Process-wide knobs; built once and handed to every service."""

    max_hops: int = MAX_HOPS
    hop_timeout: float = PER_HOP_TIMEOUT_S
    deadline: float = TOTAL_DEADLINE_S
    user_agent: str = DEFAULT_USER_AGENT
    cache_path: Optional[Path] = None
    cache_disabled: bool = False
    cache_max_age: float = ONE_DAY_S
    expansion_cache_max_entries: int = EXPANSION_CACHE_MAX_ENTRIES
    domain_age_cache_max_entries: int = DOMAIN_AGE_CACHE_MAX_ENTRIES
    rate_limit: int = RATE_LIMIT_REQUESTS
    rate_window: float = RATE_LIMIT_WINDOW_S
    shorteners_path: Path = SHORTENERS_PATH
    malicious_hosts_path: Path = MALICIOUS_HOSTS_PATH
    urlhaus_enabled: bool = False
    urlhaus_auth_key: Optional[str] = None
    domain_age_endpoint: Optional[str] = None
    lookup_timeout: float = LOOKUP_TIMEOUT_S
    cors_origin: str = "*"
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "EngineSettings":
        return cls(
            max_hops=max(1, _env_int("QRCHECK_MAX_HOPS", MAX_HOPS)),
            hop_timeout=max(0.05, _env_float("QRCHECK_HOP_TIMEOUT", PER_HOP_TIMEOUT_S)),
            deadline=max(0.1, _env_float("QRCHECK_DEADLINE", TOTAL_DEADLINE_S)),
            user_agent=os.getenv("QRCHECK_USER_AGENT", DEFAULT_USER_AGENT).strip() or DEFAULT_USER_AGENT,
            cache_path=_env_path("QRCHECK_CACHE_PATH"),
            cache_disabled=_env_bool("QRCHECK_CACHE_DISABLE"),
            cache_max_age=max(1.0, _env_float("QRCHECK_CACHE_MAX_AGE", ONE_DAY_S)),
            expansion_cache_max_entries=max(1, _env_int("QRCHECK_CACHE_MAX_ENTRIES", EXPANSION_CACHE_MAX_ENTRIES)),
            domain_age_cache_max_entries=max(1, _env_int("QRCHECK_DOMAIN_AGE_CACHE_MAX_ENTRIES", DOMAIN_AGE_CACHE_MAX_ENTRIES)),
            rate_limit=max(1, _env_int("QRCHECK_RATE_LIMIT", RATE_LIMIT_REQUESTS)),
            rate_window=max(0.1, _env_float("QRCHECK_RATE_WINDOW", RATE_LIMIT_WINDOW_S)),
            shorteners_path=_env_path("QRCHECK_SHORTENERS_PATH", SHORTENERS_PATH) or SHORTENERS_PATH,
            malicious_hosts_path=_env_path("QRCHECK_MALICIOUS_HOSTS_PATH", MALICIOUS_HOSTS_PATH) or MALICIOUS_HOSTS_PATH,
            urlhaus_enabled=_env_bool("QRCHECK_URLHAUS_ENABLE"),
            urlhaus_auth_key=(os.getenv("QRCHECK_URLHAUS_AUTH_KEY") or "").strip() or None,
            domain_age_endpoint=(os.getenv("QRCHECK_DOMAIN_AGE_ENDPOINT") or "").strip() or None,
            lookup_timeout=max(0.1, _env_float("QRCHECK_LOOKUP_TIMEOUT", LOOKUP_TIMEOUT_S)),
            cors_origin=(os.getenv("QRCHECK_CORS_ORIGIN") or "*").strip() or "*",
            log_level=(os.getenv("QRCHECK_LOG_LEVEL") or "INFO").strip().upper() or "INFO",
        )
