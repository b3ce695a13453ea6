import json
from pathlib import Path
from typing import Any, Dict, List

import pytest
import requests

from qrcheck.workflows import reputation
from qrcheck.workflows.engine_config import MALICIOUS_HOSTS_PATH, SHORTENERS_PATH
from qrcheck.workflows.reputation import (
    STATUS_ERROR,
    STATUS_OK,
    STATUS_UNKNOWN,
    DomainAgeClient,
    ShortenerDirectory,
    StaticHostFeed,
    URLhausClient,
)
from qrcheck.workflows.ttl_cache import TTLCache


class FakeResponse:
    def __init__(self, payload: Any, status_code: int = 200) -> None:
        self._payload = payload
        self.status_code = status_code

    def json(self) -> Any:
        if isinstance(self._payload, Exception):
            raise self._payload
        return self._payload


def test_bundled_shortener_list_loads_with_metadata() -> None:
    directory = ShortenerDirectory.load(SHORTENERS_PATH)

    assert "bit.ly" in directory
    assert "www.tinyurl.com" in directory
    assert "example.com" not in directory
    assert directory.version == 1
    assert directory.generated_at
    assert len(directory) >= 40


def test_shortener_tiers() -> None:
    directory = ShortenerDirectory(["adf.ly"])

    assert directory.tier("bit.ly") == "reputable"
    assert directory.tier("is.gd") == "standard"
    assert directory.tier("adf.ly") == "unvetted"
    assert directory.match("bit.ly") == "bit.ly"


def test_missing_or_corrupt_list_degrades_to_empty(tmp_path: Path) -> None:
    broken = tmp_path / "broken.json"
    broken.write_text("[1, 2", encoding="utf-8")

    assert len(StaticHostFeed.load(tmp_path / "missing.json")) == 0
    assert len(StaticHostFeed.load(broken)) == 0
    # Tiered domains stay known even without a list file
    assert "bit.ly" in ShortenerDirectory.load(tmp_path / "missing.json")


def test_static_feed_matches_hosts_and_subdomains(tmp_path: Path) -> None:
    path = tmp_path / "hosts.json"
    path.write_text(json.dumps({"version": 1, "count": 1, "hosts": ["evil.example"]}), encoding="utf-8")
    feed = StaticHostFeed.load(path)

    assert feed.lookup("cdn.evil.example").malicious
    assert not feed.lookup("example.com").malicious
    assert feed.lookup("example.com").status == STATUS_OK


def test_bundled_malicious_hosts_include_test_domain() -> None:
    assert StaticHostFeed.load(MALICIOUS_HOSTS_PATH).lookup("malware.wicar.org").malicious


def test_urlhaus_hit_and_miss(monkeypatch: pytest.MonkeyPatch) -> None:
    sent: List[Dict[str, Any]] = []

    def fake_post(url: str, **kwargs: Any) -> FakeResponse:
        sent.append(kwargs)
        if "bad" in kwargs["data"]["url"]:
            return FakeResponse({"query_status": "ok", "threat": "malware_download"})
        return FakeResponse({"query_status": "no_results"})

    monkeypatch.setattr(reputation.requests, "post", fake_post)
    client = URLhausClient(auth_key="secret-key")

    hit = client.lookup("https://bad.example/")
    miss = client.lookup("https://good.example/")

    assert hit.malicious and hit.detail == "malware_download"
    assert miss.status == STATUS_OK and not miss.malicious
    assert sent[0]["headers"]["Auth-Key"] == "secret-key"


def test_urlhaus_failures_never_raise(monkeypatch: pytest.MonkeyPatch) -> None:
    def boom(url: str, **kwargs: Any) -> FakeResponse:
        raise requests.ConnectionError("offline")

    monkeypatch.setattr(reputation.requests, "post", boom)
    assert URLhausClient().lookup("https://x.example/").status == STATUS_ERROR

    monkeypatch.setattr(reputation.requests, "post", lambda url, **kw: FakeResponse({}, status_code=401))
    assert URLhausClient().lookup("https://x.example/").status == STATUS_UNKNOWN


def test_domain_age_lookup_is_cached_per_registrable_domain(monkeypatch: pytest.MonkeyPatch) -> None:
    queried: List[str] = []

    def fake_get(url: str, **kwargs: Any) -> FakeResponse:
        queried.append(kwargs["params"]["domain"])
        return FakeResponse({"ageDays": 12.7})

    monkeypatch.setattr(reputation.requests, "get", fake_get)
    client = DomainAgeClient("https://age.example/api", cache=TTLCache(max_age=60))

    first = client.lookup("login.fresh.co.uk")
    second = client.lookup("www.fresh.co.uk")

    assert first.status == STATUS_OK and first.days == 12
    assert second == first
    assert queried == ["fresh.co.uk"]


def test_domain_age_bypass_cache_queries_again(monkeypatch: pytest.MonkeyPatch) -> None:
    calls = {"n": 0}

    def fake_get(url: str, **kwargs: Any) -> FakeResponse:
        calls["n"] += 1
        return FakeResponse({"ageDays": 400})

    monkeypatch.setattr(reputation.requests, "get", fake_get)
    client = DomainAgeClient("https://age.example/api", cache=TTLCache(max_age=60))

    client.lookup("old.example")
    client.lookup("old.example", bypass_cache=True)

    assert calls["n"] == 2


def test_domain_age_without_endpoint_makes_no_request(monkeypatch: pytest.MonkeyPatch) -> None:
    def unexpected(*args: Any, **kwargs: Any) -> FakeResponse:
        raise AssertionError("no request expected")

    monkeypatch.setattr(reputation.requests, "get", unexpected)

    assert DomainAgeClient(None).lookup("example.com").status == STATUS_UNKNOWN


def test_domain_age_errors_are_not_cached(monkeypatch: pytest.MonkeyPatch) -> None:
    answers: List[Any] = [requests.Timeout("slow"), FakeResponse({"ageDays": 5})]

    def fake_get(url: str, **kwargs: Any) -> FakeResponse:
        answer = answers.pop(0)
        if isinstance(answer, Exception):
            raise answer
        return answer

    monkeypatch.setattr(reputation.requests, "get", fake_get)
    client = DomainAgeClient("https://age.example/api", cache=TTLCache(max_age=60))

    assert client.lookup("new.example").status == STATUS_ERROR
    assert client.lookup("new.example").days == 5


def test_domain_age_unparseable_answer_is_unknown(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(reputation.requests, "get", lambda url, **kw: FakeResponse({"ageDays": "old"}))

    assert DomainAgeClient("https://age.example/api").lookup("example.com").status == STATUS_UNKNOWN
