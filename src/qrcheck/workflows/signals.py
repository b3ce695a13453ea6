"""Signal extraction: structural and lexical properties of a URL string.

Pure and synchronous: no I/O, no mutation of inputs. Every check is
independent of the others; :class:`SignalReport` carries the full, fixed set
of observations for one URL.
"""

from __future__ import annotations

import posixpath
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Protocol, Tuple
from urllib.parse import parse_qsl

from .engine_config import (
    ARCHIVE_EXTENSIONS,
    ARCHIVE_PAYLOAD_HINTS,
    BASE64_RUN_MIN_LENGTH,
    BRANDS,
    EXECUTABLE_EXTENSIONS,
    EXTENSION_TLDS,
    HEX_RUN_MIN_LENGTH,
    LOOKALIKE_CHARS,
    PERCENT_ENCODED_MIN_COUNT,
    PERCENT_ENCODED_MIN_DENSITY,
    QUERY_PARAM_CEILING,
    SAFE_SCHEMES,
    SUSPICIOUS_KEYWORDS,
    SUSPICIOUS_TLDS,
    TYPOSQUAT_MAX_DISTANCE,
    TYPOSQUAT_MIN_LABEL_LENGTH,
    UNKNOWN_SHORTENER_MAX_HOST_LENGTH,
    UNKNOWN_SHORTENER_MAX_PATH_LENGTH,
    UNKNOWN_SHORTENER_MIN_PATH_LENGTH,
    URL_LENGTH_CEILING,
)
from .engine_utils import idna_decode, idna_normalize, is_ip_literal, levenshtein, parse_candidate, split_host, top_level_label

SHORTENER_KNOWN = "known"
SHORTENER_UNKNOWN = "unknown"
SHORTENER_NONE = "none"

_PERCENT_RE = re.compile(r"%[0-9A-Fa-f]{2}")
_DOUBLE_ENCODED_RE = re.compile(r"%25[0-9A-Fa-f]{2}")
_ESCAPED_HEX_RE = re.compile(r"\\x[0-9A-Fa-f]{2}")
_HTML_ENTITY_RE = re.compile(r"&#x?[0-9A-Fa-f]+;")
_HEX_RUN_RE = re.compile(r"[0-9A-Fa-f]{%d,}" % HEX_RUN_MIN_LENGTH)
_BASE64_RUN_RE = re.compile(r"[A-Za-z0-9+/_\-]{%d,}={0,2}" % BASE64_RUN_MIN_LENGTH)
_SHORT_CODE_RE = re.compile(r"^/[A-Za-z0-9_\-]+/?$")


class ShortenerLookup(Protocol):
    """Read-only shortener directory capability injected into the extractor."""

    def match(self, host: str) -> Optional[str]: ...

    def tier(self, domain: str) -> str: ...


@dataclass(frozen=True, slots=True)
class Signal:
    """One named observation with a human-readable explanation."""

    name: str
    value: Any
    detail: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "value": self.value, "detail": self.detail}


@dataclass(frozen=True, slots=True)
class LexicalPolicy:
    """Lists consulted by the extractor; defaults come from ``engine_config``."""

    suspicious_tlds: frozenset = SUSPICIOUS_TLDS
    extension_tlds: frozenset = EXTENSION_TLDS
    brands: Tuple[str, ...] = BRANDS
    keywords: Mapping[str, Tuple[str, ...]] = field(default_factory=lambda: dict(SUSPICIOUS_KEYWORDS))
    lookalikes: Mapping[str, str] = field(default_factory=lambda: dict(LOOKALIKE_CHARS))


DEFAULT_POLICY = LexicalPolicy()


@dataclass(frozen=True, slots=True)
class TyposquatMatch:
    brand: str
    distance: int


@dataclass(frozen=True, slots=True)
class ShortenerMatch:
    kind: str = SHORTENER_NONE
    domain: Optional[str] = None
    tier: Optional[str] = None

    @property
    def is_shortener(self) -> bool:
        return self.kind != SHORTENER_NONE


@dataclass(frozen=True, slots=True)
class SignalReport:
    """Every extractor observation for a single URL."""

    url: str
    scheme: str
    host: str
    is_https: bool
    dangerous_scheme: bool
    suspicious_tld: Optional[str] = None
    extension_tld: Optional[str] = None
    punycode: bool = False
    homograph_chars: Tuple[str, ...] = ()
    typosquat: Optional[TyposquatMatch] = None
    ip_host: bool = False
    shortener: ShortenerMatch = ShortenerMatch()
    keywords: Tuple[Tuple[str, str], ...] = ()
    obfuscation: Tuple[str, ...] = ()
    very_long: bool = False
    executable_ext: Optional[str] = None
    archive_ext: Optional[str] = None
    archive_payload: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "scheme": self.scheme,
            "host": self.host,
            "is_https": self.is_https,
            "dangerous_scheme": self.dangerous_scheme,
            "suspicious_tld": self.suspicious_tld,
            "extension_tld": self.extension_tld,
            "punycode": self.punycode,
            "homograph_chars": list(self.homograph_chars),
            "typosquat": (
                {"brand": self.typosquat.brand, "distance": self.typosquat.distance} if self.typosquat else None
            ),
            "ip_host": self.ip_host,
            "shortener": {"kind": self.shortener.kind, "domain": self.shortener.domain, "tier": self.shortener.tier},
            "keywords": [{"category": c, "word": w} for c, w in self.keywords],
            "obfuscation": list(self.obfuscation),
            "very_long": self.very_long,
            "executable_ext": self.executable_ext,
            "archive_ext": self.archive_ext,
            "archive_payload": self.archive_payload,
        }


def _homographs(host: str, lookalikes: Mapping[str, str]) -> Tuple[str, ...]:
    unicode_host = idna_decode(host)
    seen: List[str] = []
    for ch in unicode_host:
        if ch in lookalikes and ch not in seen:
            seen.append(ch)
    return tuple(seen)


def _skeleton(label: str, lookalikes: Mapping[str, str]) -> str:
    return "".join(lookalikes.get(ch, ch) for ch in label)


def _typosquat(host: str, policy: LexicalPolicy) -> Optional[TyposquatMatch]:
    _, domain, _ = split_host(host)
    label = _skeleton(idna_decode(domain), policy.lookalikes)
    if len(label) < TYPOSQUAT_MIN_LABEL_LENGTH:
        return None
    best: Optional[TyposquatMatch] = None
    for brand in policy.brands:
        if label == brand:
            return None
        distance = levenshtein(label, brand)
        if 0 < distance <= TYPOSQUAT_MAX_DISTANCE and (best is None or distance < best.distance):
            best = TyposquatMatch(brand=brand, distance=distance)
    return best


def _looks_like_unknown_shortener(host: str, path: str) -> bool:
    labels = host.split(".")
    if len(labels) != 2 or len(host) > UNKNOWN_SHORTENER_MAX_HOST_LENGTH:
        return False
    if not _SHORT_CODE_RE.match(path or ""):
        return False
    code = path.strip("/")
    if not (UNKNOWN_SHORTENER_MIN_PATH_LENGTH <= len(code) <= UNKNOWN_SHORTENER_MAX_PATH_LENGTH):
        return False
    # Random-looking codes mix case or digits; plain words ("about") do not.
    return any(ch.isdigit() for ch in code) or any(ch.isupper() for ch in code)


def _shortener(host: str, path: str, shorteners: Optional[ShortenerLookup]) -> ShortenerMatch:
    if shorteners is not None:
        domain = shorteners.match(host)
        if domain:
            return ShortenerMatch(kind=SHORTENER_KNOWN, domain=domain, tier=shorteners.tier(domain))
    if _looks_like_unknown_shortener(host, path):
        return ShortenerMatch(kind=SHORTENER_UNKNOWN, domain=host)
    return ShortenerMatch()


def _keywords(text: str, categories: Mapping[str, Tuple[str, ...]]) -> Tuple[Tuple[str, str], ...]:
    lowered = text.lower()
    hits: List[Tuple[str, str]] = []
    for category, words in categories.items():
        for word in words:
            if word.lower() in lowered:
                hits.append((category, word))
    return tuple(hits)


def _obfuscation(tail: str) -> Tuple[str, ...]:
    """Name the obfuscation patterns present in the non-host part of a URL."""

    patterns: List[str] = []
    percent_count = len(_PERCENT_RE.findall(tail))
    if tail and percent_count >= PERCENT_ENCODED_MIN_COUNT and (percent_count * 3) / len(tail) >= PERCENT_ENCODED_MIN_DENSITY:
        patterns.append("percent_encoding")
    if _DOUBLE_ENCODED_RE.search(tail):
        patterns.append("double_encoding")
    if _ESCAPED_HEX_RE.search(tail):
        patterns.append("escaped_hex")
    if _HTML_ENTITY_RE.search(tail):
        patterns.append("html_entities")
    if _HEX_RUN_RE.search(tail):
        patterns.append("hex_run")
    for run in _BASE64_RUN_RE.findall(tail):
        body = run.rstrip("=")
        if _HEX_RUN_RE.fullmatch(body):
            continue
        if any(c.isdigit() for c in body) and any(c.isupper() for c in body) and any(c.islower() for c in body):
            patterns.append("base64_run")
            break
    return tuple(patterns)


def extract_signals(
    url: str,
    shorteners: Optional[ShortenerLookup] = None,
    policy: LexicalPolicy = DEFAULT_POLICY,
) -> SignalReport:
    """Compute the fixed signal set for an absolute URL.

    Raises ``ValueError`` only when ``url`` is not an absolute URL; any
    well-formed input yields a report.
    """

    parsed = parse_candidate(url)
    if parsed is None:
        raise ValueError(f"not an absolute URL: {url!r}")
    text = url.strip()
    scheme = parsed.scheme.lower()
    after_scheme = text.split(":", 1)[1]
    keywords = _keywords(after_scheme, policy.keywords)

    if scheme not in SAFE_SCHEMES:
        return SignalReport(
            url=text,
            scheme=scheme,
            host="",
            is_https=False,
            dangerous_scheme=True,
            keywords=keywords,
            obfuscation=_obfuscation(after_scheme),
            very_long=len(text) > URL_LENGTH_CEILING,
        )

    raw_host = parsed.hostname or ""
    host = idna_normalize(raw_host)
    ip_host = is_ip_literal(raw_host)
    path = parsed.path or ""
    tail = text[text.find("//") + 2 + len(parsed.netloc):] if parsed.netloc else after_scheme

    tld = "" if ip_host else top_level_label(host)
    punycode = not ip_host and ("xn--" in host or any(ord(ch) > 127 for ch in raw_host))

    query_pairs = parse_qsl(parsed.query, keep_blank_values=True)
    very_long = len(text) > URL_LENGTH_CEILING or len(query_pairs) > QUERY_PARAM_CEILING

    ext = posixpath.splitext(posixpath.basename(path.lower()))[1]
    executable_ext = ext if ext in EXECUTABLE_EXTENSIONS else None
    archive_ext = ext if ext in ARCHIVE_EXTENSIONS else None
    query_lower = parsed.query.lower()
    archive_payload = bool(archive_ext) and any(hint in query_lower for hint in ARCHIVE_PAYLOAD_HINTS)

    return SignalReport(
        url=text,
        scheme=scheme,
        host=host,
        is_https=scheme == "https",
        dangerous_scheme=False,
        suspicious_tld=tld if tld in policy.suspicious_tlds else None,
        extension_tld=tld if tld in policy.extension_tlds else None,
        punycode=punycode,
        homograph_chars=() if ip_host else _homographs(host, policy.lookalikes),
        typosquat=None if ip_host else _typosquat(host, policy),
        ip_host=ip_host,
        shortener=ShortenerMatch() if ip_host else _shortener(host, path, shorteners),
        keywords=keywords,
        obfuscation=_obfuscation(tail),
        very_long=very_long,
        executable_ext=executable_ext,
        archive_ext=archive_ext,
        archive_payload=archive_payload,
    )


__all__ = [
    "SHORTENER_KNOWN",
    "SHORTENER_UNKNOWN",
    "SHORTENER_NONE",
    "ShortenerLookup",
    "Signal",
    "LexicalPolicy",
    "DEFAULT_POLICY",
    "TyposquatMatch",
    "ShortenerMatch",
    "SignalReport",
    "extract_signals",
]
