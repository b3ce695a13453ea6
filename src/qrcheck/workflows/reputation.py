"""Reputation collaborators: shortener directory, malicious-host feeds, domain age.

All lookups degrade to an ``unknown``/``error`` status instead of raising;
callers score only what came back ``ok``.
"""

from __future__ import annotations

import json
import logging
import math
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, Mapping, Optional

import requests

from .engine_config import (
    DEFAULT_USER_AGENT,
    HDR_URLHAUS_AUTH,
    HDR_USER_AGENT,
    LOOKUP_TIMEOUT_S,
    REPUTABLE_SHORTENERS,
    SHORTENER_TIER_REPUTABLE,
    SHORTENER_TIER_STANDARD,
    SHORTENER_TIER_UNVETTED,
    STANDARD_SHORTENERS,
    URLHAUS_URL_ENDPOINT,
)
from .engine_utils import idna_normalize, match_domain, registrable_domain
from .ttl_cache import TTLCache

logger = logging.getLogger(__name__)

STATUS_OK = "ok"
STATUS_UNKNOWN = "unknown"
STATUS_ERROR = "error"


def _load_list(path: Path, key: str) -> Dict[str, Any]:
    """Read a ``{version, generatedAt, count, <key>: [...]}`` document; empty on failure."""

    try:
        payload = json.loads(Path(path).read_text(encoding="utf-8"))
    except FileNotFoundError:
        logger.warning("list file %s not found; continuing with an empty list", path)
        return {key: []}
    except (OSError, json.JSONDecodeError) as exc:
        logger.warning("list file %s unreadable (%s); continuing with an empty list", path, exc)
        return {key: []}
    if not isinstance(payload, dict) or not isinstance(payload.get(key), list):
        logger.warning("list file %s has no '%s' array", path, key)
        return {key: []}
    return payload


class ShortenerDirectory:
    """Known URL-shortener domains with reputation tiers."""

    def __init__(
        self,
        domains: Iterable[str],
        *,
        reputable: Iterable[str] = REPUTABLE_SHORTENERS,
        standard: Iterable[str] = STANDARD_SHORTENERS,
        version: Optional[int] = None,
        generated_at: Optional[str] = None,
    ) -> None:
        self._reputable = {idna_normalize(d) for d in reputable if d}
        self._standard = {idna_normalize(d) for d in standard if d}
        # Tiered domains are shorteners even when a refreshed list omits them.
        self._domains = {idna_normalize(d) for d in domains if d} | self._reputable | self._standard
        self.version = version
        self.generated_at = generated_at

    @classmethod
    def load(cls, path: Path) -> "ShortenerDirectory":
        payload = _load_list(path, "domains")
        return cls(
            [str(d) for d in payload["domains"]],
            version=payload.get("version"),
            generated_at=payload.get("generatedAt"),
        )

    def match(self, host: str) -> Optional[str]:
        return match_domain(host, self._domains)

    def tier(self, domain: str) -> str:
        d = idna_normalize(domain)
        if d in self._reputable:
            return SHORTENER_TIER_REPUTABLE
        if d in self._standard:
            return SHORTENER_TIER_STANDARD
        return SHORTENER_TIER_UNVETTED

    def __len__(self) -> int:
        return len(self._domains)

    def __contains__(self, host: object) -> bool:
        return isinstance(host, str) and self.match(host) is not None


@dataclass(frozen=True, slots=True)
class FeedResult:
    source: str
    status: str
    matches: int = 0
    detail: str = ""

    @property
    def malicious(self) -> bool:
        return self.status == STATUS_OK and self.matches > 0

    def to_dict(self) -> Dict[str, Any]:
        return {"source": self.source, "status": self.status, "matches": self.matches, "detail": self.detail}


class StaticHostFeed:
    """Malicious-host set refreshed out of band (bundled ``malicious_hosts.json``)."""

    source = "local"

    def __init__(self, hosts: Iterable[str], *, generated_at: Optional[str] = None) -> None:
        self._hosts = {idna_normalize(h) for h in hosts if h}
        self.generated_at = generated_at

    @classmethod
    def load(cls, path: Path) -> "StaticHostFeed":
        payload = _load_list(path, "hosts")
        return cls([str(h) for h in payload["hosts"]], generated_at=payload.get("generatedAt"))

    def lookup(self, host: str) -> FeedResult:
        hit = match_domain(host, self._hosts)
        return FeedResult(source=self.source, status=STATUS_OK, matches=1 if hit else 0, detail=hit or "")

    def __len__(self) -> int:
        return len(self._hosts)


class URLhausClient:
    """abuse.ch URLhaus URL lookup (blocking; run it off the event loop)."""

    source = "urlhaus"

    def __init__(
        self,
        *,
        auth_key: Optional[str] = None,
        endpoint: str = URLHAUS_URL_ENDPOINT,
        timeout: float = LOOKUP_TIMEOUT_S,
        user_agent: str = DEFAULT_USER_AGENT,
    ) -> None:
        self.auth_key = auth_key
        self.endpoint = endpoint
        self.timeout = timeout
        self.user_agent = user_agent

    def lookup(self, url: str) -> FeedResult:
        headers = {HDR_USER_AGENT: self.user_agent, "Accept": "application/json"}
        if self.auth_key:
            headers[HDR_URLHAUS_AUTH] = self.auth_key
        try:
            resp = requests.post(self.endpoint, data={"url": url}, headers=headers, timeout=self.timeout)
            if resp.status_code != 200:
                logger.warning("URLhaus lookup returned HTTP %s", resp.status_code)
                return FeedResult(source=self.source, status=STATUS_UNKNOWN, detail=f"http_{resp.status_code}")
            data = resp.json()
        except (requests.RequestException, ValueError) as exc:
            logger.warning("URLhaus lookup failed: %s", exc)
            return FeedResult(source=self.source, status=STATUS_ERROR, detail=str(exc))
        status = data.get("query_status") if isinstance(data, dict) else None
        if status == "ok":
            return FeedResult(source=self.source, status=STATUS_OK, matches=1, detail=str(data.get("threat") or ""))
        if status == "no_results":
            return FeedResult(source=self.source, status=STATUS_OK, matches=0)
        return FeedResult(source=self.source, status=STATUS_UNKNOWN, detail=str(status or ""))


@dataclass(frozen=True, slots=True)
class DomainAge:
    domain: str
    status: str
    days: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {"domain": self.domain, "status": self.status, "days": self.days}

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "DomainAge":
        days = payload.get("days")
        return cls(domain=str(payload["domain"]), status=str(payload["status"]), days=int(days) if days is not None else None)


class DomainAgeClient:
    """Queries ``<endpoint>?domain=<registrable domain>`` for ``{ageDays}``.

    Answers (including "unknown") are cached per registrable domain; transport
    errors are not cached so the next request tries again.
    """

    def __init__(
        self,
        endpoint: Optional[str],
        *,
        cache: Optional[TTLCache] = None,
        timeout: float = LOOKUP_TIMEOUT_S,
        user_agent: str = DEFAULT_USER_AGENT,
    ) -> None:
        self.endpoint = endpoint
        self.cache = cache
        self.timeout = timeout
        self.user_agent = user_agent

    def _remember(self, result: DomainAge, bypass_cache: bool) -> DomainAge:
        if self.cache is not None and not bypass_cache:
            self.cache.set(result.domain, result.to_dict())
        return result

    def lookup(self, host: str, *, bypass_cache: bool = False) -> DomainAge:
        domain = registrable_domain(host)
        if not self.endpoint:
            return DomainAge(domain=domain, status=STATUS_UNKNOWN)
        if self.cache is not None and not bypass_cache:
            cached = self.cache.get(domain)
            if cached is not None:
                try:
                    return DomainAge.from_dict(cached)
                except (KeyError, TypeError, ValueError):
                    self.cache.delete(domain)
        try:
            resp = requests.get(
                self.endpoint,
                params={"domain": domain},
                headers={"Accept": "application/json", HDR_USER_AGENT: self.user_agent},
                timeout=self.timeout,
            )
            if resp.status_code != 200:
                return self._remember(DomainAge(domain=domain, status=STATUS_UNKNOWN), bypass_cache)
            data = resp.json()
        except (requests.RequestException, ValueError) as exc:
            logger.warning("domain age lookup for %s failed: %s", domain, exc)
            return DomainAge(domain=domain, status=STATUS_ERROR)
        age = data.get("ageDays") if isinstance(data, dict) else None
        if isinstance(age, (int, float)) and not isinstance(age, bool) and math.isfinite(age):
            return self._remember(DomainAge(domain=domain, status=STATUS_OK, days=max(0, math.floor(age))), bypass_cache)
        return self._remember(DomainAge(domain=domain, status=STATUS_UNKNOWN), bypass_cache)


__all__ = [
    "STATUS_OK",
    "STATUS_UNKNOWN",
    "STATUS_ERROR",
    "ShortenerDirectory",
    "FeedResult",
    "StaticHostFeed",
    "URLhausClient",
    "DomainAge",
    "DomainAgeClient",
]
