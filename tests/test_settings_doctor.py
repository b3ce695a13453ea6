from pathlib import Path

import pytest

from qrcheck.workflows.doctor import build_doctor_report, collect_environment_warnings, format_doctor_report, redact_value
from qrcheck.workflows.engine_config import MAX_HOPS, SHORTENERS_PATH
from qrcheck.workflows.settings import EngineSettings


def test_settings_read_environment(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    monkeypatch.setenv("QRCHECK_MAX_HOPS", "4")
    monkeypatch.setenv("QRCHECK_HOP_TIMEOUT", "0.5")
    monkeypatch.setenv("QRCHECK_CACHE_PATH", str(tmp_path))
    monkeypatch.setenv("QRCHECK_URLHAUS_ENABLE", "yes")
    monkeypatch.setenv("QRCHECK_RATE_LIMIT", "25")

    settings = EngineSettings.from_env()

    assert settings.max_hops == 4
    assert settings.hop_timeout == 0.5
    assert settings.cache_path == tmp_path
    assert settings.urlhaus_enabled
    assert settings.rate_limit == 25


def test_settings_fall_back_on_garbage(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("QRCHECK_MAX_HOPS", "many")
    monkeypatch.setenv("QRCHECK_DEADLINE", "")
    monkeypatch.setenv("QRCHECK_RATE_LIMIT", "0")
    monkeypatch.delenv("QRCHECK_SHORTENERS_PATH", raising=False)

    settings = EngineSettings.from_env()

    assert settings.max_hops == MAX_HOPS
    assert settings.deadline == 10.0
    assert settings.rate_limit == 1
    assert settings.shorteners_path == SHORTENERS_PATH


def test_redact_value() -> None:
    assert redact_value("abcd1234efgh5678") == "abcd...5678"
    assert redact_value("short") == "*****"
    assert redact_value("") == ""


def test_environment_warnings() -> None:
    settings = EngineSettings(hop_timeout=20.0, deadline=10.0, urlhaus_enabled=True, cache_disabled=True)

    codes = [w["code"] for w in collect_environment_warnings(settings)]

    assert codes == ["hop_timeout_exceeds_deadline", "urlhaus_missing_auth", "cache_disabled"]
    assert collect_environment_warnings(EngineSettings()) == []


def test_doctor_redacts_auth_key_and_flags_missing_lists(tmp_path: Path) -> None:
    settings = EngineSettings(
        shorteners_path=tmp_path / "none.json",
        urlhaus_enabled=True,
        urlhaus_auth_key="abcd1234efgh5678",
    )

    report = build_doctor_report(settings)
    checks = {c["name"]: c for c in report["checks"]}
    text = format_doctor_report(report)

    assert report["ok"] is False
    assert checks["QRCHECK_SHORTENERS_PATH"]["status"] == "missing"
    assert checks["QRCHECK_MALICIOUS_HOSTS_PATH"]["status"] == "ok"
    assert checks["QRCHECK_URLHAUS_AUTH_KEY"]["value"] == "abcd...5678"
    assert "abcd1234efgh5678" not in text


def test_doctor_checks_cache_directory(tmp_path: Path) -> None:
    report = build_doctor_report(EngineSettings(cache_path=tmp_path / "new" / "dir"))
    checks = {c["name"]: c for c in report["checks"]}

    assert checks["QRCHECK_CACHE_PATH"]["status"] == "ok"
    assert report["ok"] is True
