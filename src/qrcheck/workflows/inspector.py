"""Inspection pipeline: extract -> resolve -> reputation -> aggregate.

Results are emitted at two points: an immediate local-only result (no
network) and the fully resolved result that supersedes it.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from typing import Callable, List, Optional, Sequence

from .aggregator import STAGE_LOCAL, STAGE_RESOLVED, ReputationFindings, RiskResult, aggregate, invalid_result
from .engine_config import LOOKUP_TIMEOUT_S, MAX_URL_LENGTH, SAFE_SCHEMES
from .engine_utils import parse_candidate
from .reputation import (
    STATUS_ERROR,
    STATUS_OK,
    DomainAge,
    DomainAgeClient,
    FeedResult,
    ShortenerDirectory,
    StaticHostFeed,
    URLhausClient,
)
from .resolver import RedirectExpansion, RedirectResolver
from .settings import EngineSettings
from .signals import DEFAULT_POLICY, LexicalPolicy, SignalReport, extract_signals
from .ttl_cache import TTLCache, open_store

logger = logging.getLogger(__name__)

PartialListener = Callable[[RiskResult], None]


async def _skip() -> None:
    return None


class InvalidCandidateError(ValueError):
    """Input rejected at the boundary; never reaches the resolver."""


def validate_candidate(raw: object, *, max_length: int = MAX_URL_LENGTH) -> str:
    """Return the trimmed URL or raise :class:`InvalidCandidateError`."""

    if not isinstance(raw, str) or not raw.strip():
        raise InvalidCandidateError("URL is required")
    text = raw.strip()
    if len(text) > max_length:
        raise InvalidCandidateError(f"URL exceeds {max_length} characters")
    parsed = parse_candidate(text)
    if parsed is None:
        raise InvalidCandidateError("URL must be absolute")
    if parsed.scheme.lower() not in SAFE_SCHEMES:
        raise InvalidCandidateError("Only http and https URLs can be resolved")
    return text


class InspectionEngine:
    """Process-wide service wiring the extractor, resolver and collaborators together."""

    def __init__(
        self,
        resolver: RedirectResolver,
        *,
        shorteners: Optional[ShortenerDirectory] = None,
        feeds: Sequence[StaticHostFeed] = (),
        urlhaus: Optional[URLhausClient] = None,
        domain_age: Optional[DomainAgeClient] = None,
        policy: LexicalPolicy = DEFAULT_POLICY,
        lookup_timeout: float = LOOKUP_TIMEOUT_S,
    ) -> None:
        self.resolver = resolver
        self.shorteners = shorteners if shorteners is not None else ShortenerDirectory([])
        self.feeds = tuple(feeds)
        self.urlhaus = urlhaus
        self.domain_age = domain_age
        self.policy = policy
        self.lookup_timeout = lookup_timeout

    @classmethod
    def from_settings(cls, settings: Optional[EngineSettings] = None) -> "InspectionEngine":
        settings = settings or EngineSettings.from_env()
        expansion_cache: Optional[TTLCache] = None
        age_cache: Optional[TTLCache] = None
        if not settings.cache_disabled:
            expansion_cache = TTLCache(
                open_store(settings.cache_path, "expansions"),
                max_age=settings.cache_max_age,
                max_entries=settings.expansion_cache_max_entries,
            )
            age_cache = TTLCache(
                open_store(settings.cache_path, "domain_age"),
                max_age=settings.cache_max_age,
                max_entries=settings.domain_age_cache_max_entries,
            )
        resolver = RedirectResolver(
            cache=expansion_cache,
            max_hops=settings.max_hops,
            hop_timeout=settings.hop_timeout,
            deadline=settings.deadline,
            user_agent=settings.user_agent,
        )
        urlhaus = None
        if settings.urlhaus_enabled:
            urlhaus = URLhausClient(
                auth_key=settings.urlhaus_auth_key,
                timeout=settings.lookup_timeout,
                user_agent=settings.user_agent,
            )
        return cls(
            resolver,
            shorteners=ShortenerDirectory.load(settings.shorteners_path),
            feeds=[StaticHostFeed.load(settings.malicious_hosts_path)],
            urlhaus=urlhaus,
            domain_age=DomainAgeClient(
                settings.domain_age_endpoint,
                cache=age_cache,
                timeout=settings.lookup_timeout,
                user_agent=settings.user_agent,
            ),
            lookup_timeout=settings.lookup_timeout,
        )

    def extract(self, url: str) -> SignalReport:
        return extract_signals(url, self.shorteners, self.policy)

    def analyze_local(self, raw: str, *, label_host: Optional[str] = None) -> RiskResult:
        """Network-free analysis; the first emission point."""

        text = (raw or "").strip()
        if parse_candidate(text) is None:
            return invalid_result(text)
        return aggregate(self.extract(text), label_host=label_host, stage=STAGE_LOCAL)

    async def resolve(self, raw: str, *, bypass_cache: bool = False) -> RedirectExpansion:
        url = validate_candidate(raw)
        return await self.resolver.resolve(url, bypass_cache=bypass_cache)

    async def analyze(
        self,
        raw: str,
        *,
        bypass_cache: bool = False,
        label_host: Optional[str] = None,
        on_partial: Optional[PartialListener] = None,
    ) -> RiskResult:
        """Full analysis. Never raises for bad input; ``on_partial`` gets the local result first."""

        text = (raw or "").strip()
        if parse_candidate(text) is None:
            return invalid_result(text)
        report = self.extract(text)
        local = aggregate(report, label_host=label_host, stage=STAGE_LOCAL)
        if on_partial is not None:
            try:
                on_partial(local)
            except Exception:
                logger.exception("partial-result listener failed")
        if report.dangerous_scheme:
            return replace(local, stage=STAGE_RESOLVED)

        expansion = await self.resolver.resolve(text, bypass_cache=bypass_cache)
        final_report = None
        if expansion.final_url != expansion.chain[0]:
            try:
                final_report = self.extract(expansion.final_url)
            except ValueError:
                logger.debug("final hop %s is not an absolute URL", expansion.final_url)
        findings = await self._reputation(report, final_report, expansion, bypass_cache)
        return aggregate(
            report,
            final=final_report,
            expansion=expansion,
            reputation=findings,
            label_host=label_host,
            stage=STAGE_RESOLVED,
        )

    async def _reputation(
        self,
        original: SignalReport,
        final: Optional[SignalReport],
        expansion: RedirectExpansion,
        bypass_cache: bool,
    ) -> ReputationFindings:
        hosts: List[str] = [r.host for r in (original, final) if r is not None and r.host]
        feeds: List[FeedResult] = []
        for feed in self.feeds:
            matched = [result for result in (feed.lookup(h) for h in hosts) if result.malicious]
            feeds.append(matched[0] if matched else FeedResult(source=feed.source, status=STATUS_OK))

        destination = final or original
        age_host = destination.host if not destination.ip_host else ""
        urlhaus_answer, age_answer = await asyncio.gather(
            self._guarded(self.urlhaus.lookup, expansion.final_url) if self.urlhaus is not None else _skip(),
            (
                self._guarded(lambda h: self.domain_age.lookup(h, bypass_cache=bypass_cache), age_host)
                if self.domain_age is not None and self.domain_age.endpoint and age_host
                else _skip()
            ),
        )
        if self.urlhaus is not None:
            feeds.append(
                urlhaus_answer
                if isinstance(urlhaus_answer, FeedResult)
                else FeedResult(source=self.urlhaus.source, status=STATUS_ERROR)
            )
        domain_age: Optional[DomainAge] = None
        if isinstance(age_answer, DomainAge):
            domain_age = age_answer
        elif age_host and self.domain_age is not None and self.domain_age.endpoint:
            domain_age = DomainAge(domain=age_host, status=STATUS_ERROR)
        return ReputationFindings(feeds=tuple(feeds), domain_age=domain_age)

    async def _guarded(self, func: Callable[[str], object], arg: str) -> object:
        """Run a blocking collaborator off the loop; failures come back as ``None``."""

        try:
            return await asyncio.wait_for(asyncio.to_thread(func, arg), timeout=self.lookup_timeout + 0.5)
        except asyncio.TimeoutError:
            logger.warning("reputation lookup for %s timed out", arg)
        except Exception as exc:
            logger.warning("reputation lookup for %s failed: %s", arg, exc)
        return None

    async def close(self) -> None:
        await self.resolver.close()


def analyze_url(
    url: str,
    *,
    settings: Optional[EngineSettings] = None,
    bypass_cache: bool = False,
    label_host: Optional[str] = None,
) -> RiskResult:
    """Blocking convenience wrapper: build an engine, analyze one URL, clean up."""

    engine = InspectionEngine.from_settings(settings)

    async def _run() -> RiskResult:
        try:
            return await engine.analyze(url, bypass_cache=bypass_cache, label_host=label_host)
        finally:
            await engine.close()

    return asyncio.run(_run())


__all__ = [
    "InvalidCandidateError",
    "validate_candidate",
    "InspectionEngine",
    "analyze_url",
]
