from __future__ import annotations

import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from .reputation import ShortenerDirectory, StaticHostFeed
from .settings import EngineSettings


_SECRET_TOKENS = ("key", "token", "secret", "password", "pass")


def _is_secret_name(name: str) -> bool:
    lowered = (name or "").lower()
    return any(token in lowered for token in _SECRET_TOKENS)


def redact_value(value: str, keep: int = 4) -> str:
    raw = (value or "").strip()
    if not raw:
        return ""
    if len(raw) <= keep * 2:
        return "*" * len(raw)
    return f"{raw[:keep]}...{raw[-keep:]}"


def _redacted_env_value(name: str, value: Optional[str]) -> Optional[str]:
    if value is None:
        return None
    return redact_value(value) if _is_secret_name(name) else value


def _check_writable(path: Path) -> bool:
    try:
        if path.exists():
            return os.access(path, os.W_OK)
        parent = path.parent
        while not parent.exists() and parent != parent.parent:
            parent = parent.parent
        return os.access(parent, os.W_OK)
    except OSError:
        return False


def collect_environment_warnings(settings: EngineSettings) -> List[Dict[str, str]]:
    """Flag setting combinations that silently weaken the engine."""

    warnings: List[Dict[str, str]] = []
    if settings.hop_timeout > settings.deadline:
        warnings.append(
            {
                "code": "hop_timeout_exceeds_deadline",
                "message": f"QRCHECK_HOP_TIMEOUT ({settings.hop_timeout}s) is longer than QRCHECK_DEADLINE ({settings.deadline}s)",
                "remedy": "Lower QRCHECK_HOP_TIMEOUT or raise QRCHECK_DEADLINE.",
            }
        )
    if settings.urlhaus_enabled and not settings.urlhaus_auth_key:
        warnings.append(
            {
                "code": "urlhaus_missing_auth",
                "message": "URLhaus lookups enabled without an auth key; abuse.ch rejects anonymous queries",
                "remedy": "Set QRCHECK_URLHAUS_AUTH_KEY.",
            }
        )
    if settings.cache_disabled:
        warnings.append(
            {
                "code": "cache_disabled",
                "message": "Expansion cache disabled; every analysis re-walks redirect chains",
                "remedy": "Unset QRCHECK_CACHE_DISABLE.",
            }
        )
    return warnings


def build_doctor_report(settings: Optional[EngineSettings] = None) -> Dict[str, Any]:
    settings = settings or EngineSettings.from_env()
    report: Dict[str, Any] = {
        "generated_at": datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z"),
        "ok": True,
        "checks": [],
        "environment_warnings": collect_environment_warnings(settings),
    }

    def add_check(
        name: str,
        status: bool,
        *,
        detail: Optional[str] = None,
        remedy: Optional[str] = None,
        level: str = "warn",
        value: Optional[str] = None,
    ) -> None:
        entry = {
            "name": name,
            "status": "ok" if status else "missing",
            "level": level,
            "detail": detail,
        }
        if remedy:
            entry["remedy"] = remedy
        if value is not None:
            entry["value"] = _redacted_env_value(name, value)
        report["checks"].append(entry)
        if not status and level == "warn":
            report["ok"] = False

    shorteners = ShortenerDirectory.load(settings.shorteners_path) if settings.shorteners_path.exists() else None
    add_check(
        "QRCHECK_SHORTENERS_PATH",
        shorteners is not None,
        detail=f"{settings.shorteners_path} ({len(shorteners)} domains)" if shorteners else str(settings.shorteners_path),
        remedy="Restore shorteners.json or point QRCHECK_SHORTENERS_PATH at a refreshed list.",
    )

    hosts = StaticHostFeed.load(settings.malicious_hosts_path) if settings.malicious_hosts_path.exists() else None
    add_check(
        "QRCHECK_MALICIOUS_HOSTS_PATH",
        hosts is not None,
        detail=f"{settings.malicious_hosts_path} ({len(hosts)} hosts)" if hosts else str(settings.malicious_hosts_path),
        remedy="Restore malicious_hosts.json or set QRCHECK_MALICIOUS_HOSTS_PATH.",
    )

    if settings.cache_disabled:
        add_check("QRCHECK_CACHE_DISABLE", True, detail="Expansion and domain-age caches disabled", level="info")
    elif settings.cache_path is None:
        add_check("QRCHECK_CACHE_PATH", True, detail="In-memory caches (unset)", level="info")
    else:
        writable = _check_writable(settings.cache_path)
        add_check(
            "QRCHECK_CACHE_PATH",
            writable,
            detail=str(settings.cache_path),
            remedy="Create the cache directory or set QRCHECK_CACHE_PATH to a writable location.",
        )

    add_check(
        "QRCHECK_URLHAUS_AUTH_KEY",
        bool(settings.urlhaus_auth_key),
        detail="URLhaus lookups enabled" if settings.urlhaus_enabled else "URLhaus lookups disabled",
        remedy="Set QRCHECK_URLHAUS_ENABLE=1 and QRCHECK_URLHAUS_AUTH_KEY to query URLhaus.",
        level="warn" if settings.urlhaus_enabled else "info",
        value=settings.urlhaus_auth_key,
    )

    add_check(
        "QRCHECK_DOMAIN_AGE_ENDPOINT",
        bool(settings.domain_age_endpoint),
        detail="Domain-age scoring enabled" if settings.domain_age_endpoint else "Domain-age scoring disabled",
        remedy="Set QRCHECK_DOMAIN_AGE_ENDPOINT to a service answering ?domain= with {ageDays}.",
        level="info",
        value=settings.domain_age_endpoint,
    )

    return report


def format_doctor_report(report: Dict[str, Any]) -> str:
    lines: List[str] = []
    lines.append("qrcheck doctor")
    lines.append(f"Generated: {report.get('generated_at')}")
    lines.append("Values are redacted where applicable.")
    lines.append("")
    for check in report.get("checks", []):
        name = check.get("name", "check")
        status = check.get("status", "unknown")
        level = check.get("level", "info")
        detail = check.get("detail")
        value = check.get("value")
        label = f"{name}: {status}"
        if value:
            label = f"{label} ({value})"
        lines.append(f"- [{level}] {label}")
        if detail:
            lines.append(f"  detail: {detail}")
        remedy = check.get("remedy")
        if remedy:
            lines.append(f"  remedy: {remedy}")
    warnings = report.get("environment_warnings") or []
    if warnings:
        lines.append("")
        lines.append("Environment warnings:")
        for warning in warnings:
            lines.append(f"- {warning.get('code', 'warning')}: {warning.get('message', '')}")
            if warning.get("remedy"):
                lines.append(f"  remedy: {warning['remedy']}")
    return "\n".join(lines).rstrip() + "\n"
