"""Risk aggregation: signals + expansion + reputation -> score, verdict, reasons.

``aggregate`` performs no I/O. Identical inputs always produce an identical
``RiskResult``: reasons follow ``CHECK_ORDER``, never weight order.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple
from urllib.parse import urlparse

from ..core.keys import (
    K_EXPANSION_FAILURE,
    K_FINAL_URL,
    K_HOP_COUNT,
    K_ORIGINAL_URL,
    K_REASONS,
    K_REDIRECT_CHAIN,
    K_SCORE,
    K_SIGNALS,
    K_STAGE,
    K_VERDICT,
    K_WARNINGS,
)
from .engine_config import (
    BLOCK_THRESHOLD,
    DANGEROUS_SCHEME_SCORE_FLOOR,
    DANGEROUS_SCHEMES,
    INVALID_URL_REASON,
    INVALID_URL_SCORE,
    NEW_DOMAIN_DAYS,
    REDIRECT_MIN_HOPS,
    SCORE_MAX,
    SCORE_MIN,
    WARN_THRESHOLD,
    WEIGHT_ARCHIVE,
    WEIGHT_ARCHIVE_PAYLOAD,
    WEIGHT_DANGEROUS_SCHEME,
    WEIGHT_DISPLAY_MISMATCH,
    WEIGHT_EXECUTABLE,
    WEIGHT_EXTENSION_TLD,
    WEIGHT_HOMOGRAPH,
    WEIGHT_IP_HOST,
    WEIGHT_KEYWORDS,
    WEIGHT_MALICIOUS_FEED,
    WEIGHT_NEW_DOMAIN,
    WEIGHT_NOT_HTTPS,
    WEIGHT_OBFUSCATION,
    WEIGHT_PUNYCODE,
    WEIGHT_REDIRECT_CAP,
    WEIGHT_REDIRECT_PER_HOP,
    WEIGHT_SHORTENER_OBSCURED,
    WEIGHT_SHORTENER_TIER,
    WEIGHT_SUSPICIOUS_TLD,
    WEIGHT_TYPOSQUAT,
    WEIGHT_UNKNOWN_SHORTENER,
    WEIGHT_VERY_LONG,
    YOUNG_DOMAIN_DAYS,
)
from .engine_utils import idna_normalize, redact_url
from .reputation import STATUS_ERROR, STATUS_OK, DomainAge, FeedResult
from .resolver import RedirectExpansion
from .signals import SHORTENER_KNOWN, Signal, SignalReport

VERDICT_SAFE = "safe"
VERDICT_WARN = "warn"
VERDICT_BLOCK = "block"

STAGE_LOCAL = "local"
STAGE_RESOLVED = "resolved"

CHECK_ORDER: Tuple[str, ...] = (
    "dangerous_scheme",
    "not_https",
    "suspicious_tld",
    "extension_tld",
    "ip_host",
    "punycode",
    "homograph",
    "typosquat",
    "shortener",
    "shortener_obscured",
    "keywords",
    "obfuscation",
    "very_long",
    "executable",
    "archive",
    "archive_payload",
    "redirects",
    "malicious_feed",
    "new_domain",
    "display_mismatch",
)


@dataclass(frozen=True, slots=True)
class ReputationFindings:
    """Whatever the reputation collaborators returned; any part may be missing."""

    feeds: Tuple[FeedResult, ...] = ()
    domain_age: Optional[DomainAge] = None


@dataclass(frozen=True, slots=True)
class RiskResult:
    score: int
    verdict: str
    signals: Tuple[Signal, ...]
    reasons: Tuple[str, ...]
    warnings: Tuple[str, ...] = ()
    original_url: str = ""
    final_url: str = ""
    redirect_chain: Tuple[str, ...] = ()
    expansion_failure: Optional[str] = None
    stage: str = STAGE_RESOLVED

    def signal(self, name: str) -> Optional[Signal]:
        for item in self.signals:
            if item.name == name:
                return item
        return None

    def to_dict(self) -> Dict[str, Any]:
        """JSON-ready payload; URLs are redacted for display."""

        return {
            K_SCORE: self.score,
            K_VERDICT: self.verdict,
            K_SIGNALS: [s.to_dict() for s in self.signals],
            K_REASONS: list(self.reasons),
            K_WARNINGS: list(self.warnings),
            K_ORIGINAL_URL: redact_url(self.original_url),
            K_FINAL_URL: redact_url(self.final_url),
            K_REDIRECT_CHAIN: [redact_url(hop) for hop in self.redirect_chain],
            K_HOP_COUNT: max(0, len(self.redirect_chain) - 1),
            K_EXPANSION_FAILURE: self.expansion_failure,
            K_STAGE: self.stage,
        }


def verdict_for_score(score: int) -> str:
    if score >= BLOCK_THRESHOLD:
        return VERDICT_BLOCK
    if score >= WARN_THRESHOLD:
        return VERDICT_WARN
    return VERDICT_SAFE


def clamp_score(score: int) -> int:
    return max(SCORE_MIN, min(SCORE_MAX, int(score)))


def _bare_host(host: str) -> str:
    h = idna_normalize(host)
    return h[4:] if h.startswith("www.") else h


def _label_host(label: str) -> str:
    text = (label or "").strip()
    if "://" in text:
        try:
            text = urlparse(text).hostname or ""
        except ValueError:
            return ""
    return _bare_host(text.split("/", 1)[0])


def _first(reports: Sequence[SignalReport], attr: str) -> Any:
    for report in reports:
        value = getattr(report, attr)
        if value:
            return value
    return None


def _union(reports: Sequence[SignalReport], attr: str) -> Tuple[Any, ...]:
    merged: List[Any] = []
    for report in reports:
        for item in getattr(report, attr):
            if item not in merged:
                merged.append(item)
    return tuple(merged)


def aggregate(
    original: SignalReport,
    *,
    final: Optional[SignalReport] = None,
    expansion: Optional[RedirectExpansion] = None,
    reputation: Optional[ReputationFindings] = None,
    label_host: Optional[str] = None,
    stage: str = STAGE_RESOLVED,
) -> RiskResult:
    """Combine every available observation into a score and verdict.

    Lexical checks count when they fire on the original or the final URL.
    HTTPS is judged on the destination; shortener checks on the original.
    """

    reports: Tuple[SignalReport, ...] = (original,) if final is None or final.url == original.url else (original, final)
    destination = final or original
    hits: Dict[str, Tuple[Signal, int, str]] = {}

    def hit(name: str, value: Any, weight: int, reason: str, detail: str = "") -> None:
        hits[name] = (Signal(name=name, value=value, detail=detail or reason), weight, reason)

    dangerous = [r for r in reports if r.dangerous_scheme]
    if dangerous:
        scheme = dangerous[0].scheme
        hit("dangerous_scheme", True, WEIGHT_DANGEROUS_SCHEME, f"Dangerous URL scheme ({scheme}:)", f"{scheme}:")

    if not destination.is_https and not destination.dangerous_scheme:
        hit("not_https", True, WEIGHT_NOT_HTTPS, "Connection is not encrypted (no HTTPS)", destination.scheme)

    tld = _first(reports, "suspicious_tld")
    if tld:
        hit("suspicious_tld", True, WEIGHT_SUSPICIOUS_TLD, f"Suspicious top-level domain (.{tld})", f".{tld}")
    ext_tld = _first(reports, "extension_tld")
    if ext_tld:
        hit("extension_tld", True, WEIGHT_EXTENSION_TLD, f"Top-level domain .{ext_tld} looks like a file extension", f".{ext_tld}")

    if any(r.ip_host for r in reports):
        hit("ip_host", True, WEIGHT_IP_HOST, "Uses a raw IP address instead of a domain name")

    if any(r.punycode for r in reports):
        hit("punycode", True, WEIGHT_PUNYCODE, "Domain uses punycode or non-ASCII characters")
    chars = _union(reports, "homograph_chars")
    if chars:
        listed = ", ".join(chars)
        hit("homograph", list(chars), WEIGHT_HOMOGRAPH, f"Look-alike characters in domain: {listed}", listed)
    squat = _first(reports, "typosquat")
    if squat:
        hit(
            "typosquat",
            squat.brand,
            WEIGHT_TYPOSQUAT,
            f'Domain resembles "{squat.brand}" (edit distance {squat.distance})',
            f"{squat.brand}:{squat.distance}",
        )

    shortener = original.shortener
    if shortener.is_shortener:
        if shortener.kind == SHORTENER_KNOWN:
            tier = shortener.tier or ""
            weight = WEIGHT_SHORTENER_TIER.get(tier, max(WEIGHT_SHORTENER_TIER.values()))
            hit("shortener", shortener.kind, weight, f"Known URL shortener ({shortener.domain}, {tier} tier)", shortener.domain or "")
        else:
            hit("shortener", shortener.kind, WEIGHT_UNKNOWN_SHORTENER, f"Possible unknown URL shortener ({shortener.domain})", shortener.domain or "")
        # Every shortener obscured its destination, resolved or not.
        unverified = expansion is None or expansion.failure_reason is not None or expansion.hop_count == 0
        if unverified or final is None or final.shortener.is_shortener:
            hit("shortener_obscured", "unverified", WEIGHT_SHORTENER_OBSCURED, "Shortened link destination could not be verified")
        else:
            hit("shortener_obscured", "expanded", WEIGHT_SHORTENER_OBSCURED, f"Shortened link hid its destination ({final.host})", final.host)

    words = _union(reports, "keywords")
    if words:
        listed = ", ".join(word for _, word in words)
        hit("keywords", [word for _, word in words], WEIGHT_KEYWORDS, f"Suspicious keywords: {listed}", listed)
    patterns = _union(reports, "obfuscation")
    if patterns:
        listed = ", ".join(patterns)
        hit("obfuscation", list(patterns), WEIGHT_OBFUSCATION, f"Obfuscated URL content: {listed}", listed)
    if any(r.very_long for r in reports):
        hit("very_long", True, WEIGHT_VERY_LONG, "URL is unusually long or has many parameters")

    exe = _first(reports, "executable_ext")
    if exe:
        hit("executable", exe, WEIGHT_EXECUTABLE, f"Links to an executable file ({exe})")
    archive = _first(reports, "archive_ext")
    if archive:
        hit("archive", archive, WEIGHT_ARCHIVE, f"Links to an archive file ({archive})")
        if any(r.archive_payload for r in reports):
            hit("archive_payload", True, WEIGHT_ARCHIVE_PAYLOAD, "Archive download with installer-style parameters")

    warnings: List[str] = []
    if expansion is not None:
        if expansion.hop_count >= REDIRECT_MIN_HOPS:
            weight = min(expansion.hop_count * WEIGHT_REDIRECT_PER_HOP, WEIGHT_REDIRECT_CAP)
            hit("redirects", expansion.hop_count, weight, f"Redirects through {expansion.hop_count} hops")
        if expansion.failure_reason is not None:
            warnings.append(f"Expansion incomplete ({expansion.failure_reason.value})")

    findings = reputation or ReputationFindings()
    flagged = [feed.source for feed in findings.feeds if feed.malicious]
    if flagged:
        listed = ", ".join(flagged)
        hit("malicious_feed", flagged, WEIGHT_MALICIOUS_FEED, f"Listed as malicious by {listed}", listed)
    for feed in findings.feeds:
        if feed.status != STATUS_OK:
            warnings.append(f"{feed.source} lookup unavailable")

    age = findings.domain_age
    if age is not None:
        if age.status == STATUS_OK and age.days is not None:
            if age.days < NEW_DOMAIN_DAYS:
                hit("new_domain", age.days, WEIGHT_NEW_DOMAIN, f"Domain registered {age.days} days ago", age.domain)
            elif age.days < YOUNG_DOMAIN_DAYS:
                warnings.append(f"Domain is relatively new ({age.days} days old)")
        elif age.status == STATUS_ERROR:
            warnings.append("Domain age lookup unavailable")

    if label_host:
        shown = _label_host(label_host)
        actual = _bare_host(destination.host)
        if shown and actual and shown != actual and not actual.endswith(f".{shown}"):
            hit(
                "display_mismatch",
                shown,
                WEIGHT_DISPLAY_MISMATCH,
                f"Link text shows {shown} but leads to {actual}",
                f"{shown} -> {actual}",
            )

    ordered = [hits[name] for name in CHECK_ORDER if name in hits]
    score = clamp_score(sum(weight for _, weight, _ in ordered))
    if "dangerous_scheme" in hits:
        score = max(score, DANGEROUS_SCHEME_SCORE_FLOOR)

    chain = expansion.chain if expansion is not None else (original.url,)
    return RiskResult(
        score=score,
        verdict=verdict_for_score(score),
        signals=tuple(signal for signal, _, _ in ordered),
        reasons=tuple(reason for _, _, reason in ordered),
        warnings=tuple(warnings),
        original_url=original.url,
        final_url=expansion.final_url if expansion is not None else destination.url,
        redirect_chain=tuple(chain),
        expansion_failure=expansion.failure_reason.value if expansion is not None and expansion.failure_reason else None,
        stage=stage,
    )


def invalid_result(raw: str) -> RiskResult:
    """Fixed pessimistic result for input that is not an absolute URL."""

    text = (raw or "").strip()
    lowered = text.lower()
    signals: List[Signal] = [Signal(name="invalid_url", value=True, detail=INVALID_URL_REASON)]
    score = INVALID_URL_SCORE
    scheme = next((s for s in sorted(DANGEROUS_SCHEMES) if lowered.startswith(f"{s}:")), None)
    if scheme:
        signals.insert(0, Signal(name="dangerous_scheme", value=True, detail=f"{scheme}:"))
        score = max(score, DANGEROUS_SCHEME_SCORE_FLOOR)
    score = clamp_score(score)
    return RiskResult(
        score=score,
        verdict=verdict_for_score(score),
        signals=tuple(signals),
        reasons=(INVALID_URL_REASON,),
        original_url=text,
        final_url=text,
        redirect_chain=(text,) if text else (),
        stage=STAGE_LOCAL,
    )


__all__ = [
    "VERDICT_SAFE",
    "VERDICT_WARN",
    "VERDICT_BLOCK",
    "STAGE_LOCAL",
    "STAGE_RESOLVED",
    "CHECK_ORDER",
    "ReputationFindings",
    "RiskResult",
    "verdict_for_score",
    "clamp_score",
    "aggregate",
    "invalid_result",
]
