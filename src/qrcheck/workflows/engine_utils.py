"""Shared URL and host helpers used by the engine workflows."""

from __future__ import annotations

import ipaddress
import re
from typing import Collection, Optional, Tuple
from urllib.parse import ParseResult, unquote_plus, urlparse, urlunparse

import tldextract

from .engine_config import (
    DEFAULT_PORTS,
    DISPLAY_VALUE_MAX_CHARS,
    SAFE_SCHEMES,
    SECRET_QUERY_KEY_PATTERN,
)

_SCHEME_RE = re.compile(r"^[a-z][a-z0-9+.\-]*$")
_SECRET_KEY_RE = re.compile(SECRET_QUERY_KEY_PATTERN, re.IGNORECASE)

# Offline extractor: bundled public-suffix snapshot, never fetched at runtime.
_EXTRACT = tldextract.TLDExtract(suffix_list_urls=())


def idna_normalize(host: str) -> str:
    """Return a lowercase, IDNA-normalized host name."""

    h = (host or "").strip().rstrip(".").lower()
    if not h:
        return ""
    try:
        h = h.encode("idna").decode("ascii")
    except UnicodeError:
        pass
    return h


def idna_decode(host: str) -> str:
    """Return the Unicode form of a (possibly punycoded) host name."""

    h = (host or "").strip().rstrip(".").lower()
    if "xn--" not in h:
        return h
    try:
        return h.encode("ascii").decode("idna")
    except UnicodeError:
        return h


def match_domain(host: str, domains: Collection[str]) -> Optional[str]:
    """Return the longest entry of ``domains`` that ``host`` equals or is a subdomain of."""

    h = idna_normalize(host)
    if not h:
        return None
    labels = h.split(".")
    for i in range(len(labels)):
        candidate = ".".join(labels[i:])
        if candidate in domains:
            return candidate
    return None


def split_host(host: str) -> Tuple[str, str, str]:
    """Split a host into ``(subdomain, domain, suffix)`` using the public suffix list."""

    parts = _EXTRACT(host or "")
    return parts.subdomain, parts.domain, parts.suffix


def registrable_domain(host: str) -> str:
    """Return ``domain.suffix`` for a host, or the host itself when no suffix applies."""

    _, domain, suffix = split_host(host)
    if domain and suffix:
        return f"{domain}.{suffix}"
    return idna_normalize(host)


def top_level_label(host: str) -> str:
    """Return the last DNS label of ``host`` (lowercase, no dot)."""

    labels = [label for label in (host or "").lower().rstrip(".").split(".") if label]
    if len(labels) < 2:
        return ""
    return labels[-1]


def is_ip_literal(host: str) -> bool:
    try:
        ipaddress.ip_address((host or "").strip("[]"))
    except ValueError:
        return False
    return True


def levenshtein(a: str, b: str) -> int:
    """Classic edit distance (insert, delete, substitute all cost 1)."""

    if a == b:
        return 0
    if not a:
        return len(b)
    if not b:
        return len(a)
    previous = list(range(len(b) + 1))
    for i, ca in enumerate(a, start=1):
        current = [i]
        for j, cb in enumerate(b, start=1):
            cost = 0 if ca == cb else 1
            current.append(min(previous[j] + 1, current[j - 1] + 1, previous[j - 1] + cost))
        previous = current
    return previous[-1]


def parse_candidate(raw: str) -> Optional[ParseResult]:
    """Parse ``raw`` as an absolute URL; return None when it is not one.

    http(s) URLs must carry a host and a valid port; other schemes only need
    a non-empty body after the colon (``javascript:alert(1)``, ``data:,x``).
    """

    text = (raw or "").strip()
    if not text or any(ch.isspace() for ch in text):
        return None
    try:
        parsed = urlparse(text)
    except ValueError:
        return None
    scheme = parsed.scheme.lower()
    if not scheme or not _SCHEME_RE.match(scheme):
        return None
    if scheme in SAFE_SCHEMES:
        try:
            host = parsed.hostname
            parsed.port
        except ValueError:
            return None
        if not host:
            return None
    elif not text.split(":", 1)[1]:
        return None
    return parsed


def normalize_url(u: str) -> str:
    """Normalize a URL for cache/loop-detection purposes.

    - Drop the fragment
    - Lower-case scheme and host
    - Remove default ports
    - Use ``/`` for an empty http(s) path
    - Leave path and query characters untouched
    """
    raw = (u or "").strip()
    try:
        p = urlparse(raw)
        scheme = p.scheme.lower()
        if scheme not in SAFE_SCHEMES:
            return urlunparse(p._replace(scheme=scheme, fragment=""))
        host = p.hostname or ""
        port = p.port
    except ValueError:
        return raw
    netloc = f"[{host}]" if ":" in host else host
    if port is not None and DEFAULT_PORTS.get(scheme) != port:
        netloc = f"{netloc}:{port}"
    userinfo = p.netloc.rpartition("@")[0] if "@" in p.netloc else ""
    if userinfo:
        netloc = f"{userinfo}@{netloc}"
    path = p.path or "/"
    return urlunparse(p._replace(scheme=scheme, netloc=netloc, path=path, fragment=""))


def redact_url(u: str) -> str:
    """Hide secret-looking query values and shorten long ones for display."""

    try:
        p = urlparse(u)
    except ValueError:
        return u
    if not p.query:
        return u
    parts = []
    for chunk in p.query.split("&"):
        key, sep, value = chunk.partition("=")
        if sep and _SECRET_KEY_RE.search(unquote_plus(key)):
            value = "•••"
        elif len(value) > DISPLAY_VALUE_MAX_CHARS:
            value = f"{value[:4]}…"
        parts.append(f"{key}{sep}{value}")
    return urlunparse(p._replace(query="&".join(parts)))


def sanity_check() -> None:
    assert idna_normalize("ExAmple.COM") == "example.com"
    assert match_domain("go.bit.ly", ["bit.ly"]) == "bit.ly"
    assert levenshtein("paypa1", "paypal") == 1
    assert normalize_url("HTTPS://Example.com:443#top") == "https://example.com/"


sanity_check()

__all__ = [
    "idna_normalize",
    "idna_decode",
    "match_domain",
    "split_host",
    "registrable_domain",
    "top_level_label",
    "is_ip_literal",
    "levenshtein",
    "parse_candidate",
    "normalize_url",
    "redact_url",
    "sanity_check",
]
