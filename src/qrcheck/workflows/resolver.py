"""Bounded redirect-chain expansion with SSRF, loop, hop and deadline guards.

The hop-by-hop state machine lives in :class:`RedirectResolver` and is shared
by every caller; only the HTTP transport is pluggable. Each hop is probed with
``HEAD`` (redirects never auto-followed) and, when ``HEAD`` carries no usable
signal, once more with a ``GET`` restricted to the first body byte.
"""

from __future__ import annotations

import asyncio
import hashlib
import ipaddress
import logging
import socket
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Protocol, Tuple
from urllib.parse import urljoin

import aiohttp
from aiohttp.abc import AbstractResolver

from ..core.keys import K_CHAIN, K_FAILURE_REASON, K_FINAL_URL, K_HOP_COUNT
from .engine_config import (
    DEFAULT_USER_AGENT,
    HDR_LOCATION,
    HDR_RANGE,
    HDR_USER_AGENT,
    HEAD_RETRY_MIN_STATUS,
    MAX_HOPS,
    PER_HOP_TIMEOUT_S,
    SAFE_SCHEMES,
    TOTAL_DEADLINE_S,
)
from .engine_utils import is_ip_literal, normalize_url, parse_candidate
from .ttl_cache import TTLCache

logger = logging.getLogger(__name__)

_NAT64_PREFIX = ipaddress.IPv6Network("64:ff9b::/96")

AddressResolver = Callable[[str], Awaitable[List[str]]]
UpdateListener = Callable[["RedirectExpansion", bool], None]


class ExpansionFailureReason(str, Enum):
    NETWORK_ERROR = "network_error"
    TOO_MANY_REDIRECTS = "too_many_redirects"
    REDIRECT_LOOP = "redirect_loop"
    UNSUPPORTED_SCHEME = "unsupported_scheme"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class RedirectExpansion:
    """Ordered hop chain; first element is the original, last is the destination."""

    chain: Tuple[str, ...]
    failure_reason: Optional[ExpansionFailureReason] = None

    def __post_init__(self) -> None:
        if not self.chain:
            raise ValueError("redirect chain must contain at least the original URL")

    @property
    def final_url(self) -> str:
        return self.chain[-1]

    @property
    def hop_count(self) -> int:
        return len(self.chain) - 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            K_CHAIN: list(self.chain),
            K_FINAL_URL: self.final_url,
            K_HOP_COUNT: self.hop_count,
            K_FAILURE_REASON: self.failure_reason.value if self.failure_reason else None,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "RedirectExpansion":
        reason = payload.get(K_FAILURE_REASON)
        return cls(
            chain=tuple(str(hop) for hop in payload[K_CHAIN]),
            failure_reason=ExpansionFailureReason(reason) if reason else None,
        )


@dataclass(frozen=True)
class ProbeResponse:
    status: int
    location: Optional[str] = None

    @property
    def is_redirect(self) -> bool:
        return 300 <= self.status < 400 and bool(self.location)


class TransportError(Exception):
    """Raised by transports for any non-timeout request failure."""


class Transport(Protocol):
    async def probe(
        self,
        url: str,
        method: str,
        *,
        timeout: float,
        headers: Mapping[str, str],
    ) -> ProbeResponse: ...

    async def close(self) -> None: ...


def is_blocked_address(address: str) -> bool:
    """True for any address that is not globally routable, including embedded IPv4 forms."""

    try:
        ip = ipaddress.ip_address(address.strip("[]"))
    except ValueError:
        return False
    if isinstance(ip, ipaddress.IPv6Address):
        if ip in _NAT64_PREFIX:
            ip = ipaddress.IPv4Address(int(ip) & 0xFFFFFFFF)
        else:
            ip = ip.ipv4_mapped or ip.sixtofour or ip
    return not ip.is_global or ip.is_multicast


async def resolve_host_addresses(host: str) -> List[str]:
    loop = asyncio.get_running_loop()
    infos = await loop.getaddrinfo(host, None, type=socket.SOCK_STREAM)
    return sorted({str(info[4][0]) for info in infos})


class GuardedResolver(AbstractResolver):
    """aiohttp resolver that refuses to hand out non-public addresses.

    Closes the gap between the pre-flight address check and the address the
    connector actually dials.
    """

    def __init__(self, inner: Optional[AbstractResolver] = None) -> None:
        self._inner = inner or aiohttp.ThreadedResolver()

    async def resolve(self, host: str, port: int = 0, family: int = socket.AF_INET) -> List[Dict[str, Any]]:
        results = await self._inner.resolve(host, port, family)
        for item in results:
            if is_blocked_address(str(item.get("host", ""))):
                raise OSError(f"refusing to connect to non-public address for {host}")
        return results

    async def close(self) -> None:
        await self._inner.close()


class AiohttpTransport:
    """Transport backed by a shared ``aiohttp.ClientSession`` (created lazily)."""

    def __init__(self, *, concurrency: int = 32, session: Optional[aiohttp.ClientSession] = None) -> None:
        self._concurrency = concurrency
        self._session = session

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            connector = aiohttp.TCPConnector(limit=self._concurrency, resolver=GuardedResolver())
            self._session = aiohttp.ClientSession(connector=connector)
        return self._session

    async def probe(
        self,
        url: str,
        method: str,
        *,
        timeout: float,
        headers: Mapping[str, str],
    ) -> ProbeResponse:
        session = self._ensure_session()
        try:
            async with session.request(
                method,
                url,
                allow_redirects=False,
                timeout=aiohttp.ClientTimeout(total=timeout),
                headers=dict(headers),
            ) as resp:
                return ProbeResponse(status=resp.status, location=resp.headers.get(HDR_LOCATION))
        except asyncio.TimeoutError:
            raise
        except (aiohttp.ClientError, OSError, ValueError) as exc:
            raise TransportError(str(exc) or exc.__class__.__name__) from exc

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None


class ExpansionHandle:
    """Progressive view of one expansion.

    The published chain only ever grows; :meth:`snapshot` returns the hops
    confirmed so far and :meth:`result` waits for the complete expansion,
    which supersedes every snapshot once available.
    """

    def __init__(self, original_url: str, start_url: str) -> None:
        self.original_url = original_url
        self._chain: List[str] = [start_url]
        self._final: Optional[RedirectExpansion] = None
        self._task: Optional["asyncio.Task[RedirectExpansion]"] = None
        self._listeners: List[UpdateListener] = []
        self.from_cache = False

    @classmethod
    def completed(cls, original_url: str, expansion: RedirectExpansion, *, from_cache: bool = False) -> "ExpansionHandle":
        handle = cls(original_url, expansion.chain[0])
        handle._chain = list(expansion.chain)
        handle._final = expansion
        handle.from_cache = from_cache
        return handle

    @property
    def done(self) -> bool:
        return self._final is not None

    def snapshot(self) -> RedirectExpansion:
        if self._final is not None:
            return self._final
        return RedirectExpansion(chain=tuple(self._chain))

    def subscribe(self, listener: UpdateListener) -> None:
        self._listeners.append(listener)
        if self._final is not None:
            self._notify(listener, self._final, True)

    def _notify(self, listener: UpdateListener, expansion: RedirectExpansion, done: bool) -> None:
        try:
            listener(expansion, done)
        except Exception:
            logger.exception("expansion listener failed for %s", self.original_url)

    def _append(self, hop: str) -> None:
        self._chain.append(hop)
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            self._notify(listener, snapshot, False)

    def _finish(self, reason: Optional[ExpansionFailureReason]) -> RedirectExpansion:
        self._final = RedirectExpansion(chain=tuple(self._chain), failure_reason=reason)
        for listener in list(self._listeners):
            self._notify(listener, self._final, True)
        return self._final

    async def result(self) -> RedirectExpansion:
        if self._final is not None:
            return self._final
        if self._task is None:
            raise RuntimeError(f"expansion of {self.original_url} was never started")
        # Shielded: a caller giving up does not abort the background expansion.
        return await asyncio.shield(self._task)


class RedirectResolver:
    """Expands URLs hop by hop and memoizes completed expansions."""

    def __init__(
        self,
        transport: Optional[Transport] = None,
        *,
        cache: Optional[TTLCache] = None,
        max_hops: int = MAX_HOPS,
        hop_timeout: float = PER_HOP_TIMEOUT_S,
        deadline: float = TOTAL_DEADLINE_S,
        user_agent: str = DEFAULT_USER_AGENT,
        address_resolver: Optional[AddressResolver] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.transport: Transport = transport if transport is not None else AiohttpTransport()
        self.cache = cache
        self.max_hops = max_hops
        self.hop_timeout = hop_timeout
        self.deadline = deadline
        self.user_agent = user_agent
        self._address_resolver = address_resolver or resolve_host_addresses
        self._clock = clock
        self._inflight: Dict[str, ExpansionHandle] = {}

    @staticmethod
    def cache_key(url: str) -> str:
        digest = hashlib.sha256(normalize_url(url).encode("utf-8")).hexdigest()
        return f"expansion:{digest}"

    def _cached(self, key: str) -> Optional[RedirectExpansion]:
        if self.cache is None:
            return None
        payload = self.cache.get(key)
        if payload is None:
            return None
        try:
            return RedirectExpansion.from_dict(payload)
        except (KeyError, TypeError, ValueError):
            logger.warning("discarding malformed cached expansion %s", key)
            self.cache.delete(key)
            return None

    def start(self, url: str, *, bypass_cache: bool = False) -> ExpansionHandle:
        """Begin (or join) an expansion; must be called from a running event loop."""

        key = self.cache_key(url)
        if not bypass_cache:
            cached = self._cached(key)
            if cached is not None:
                logger.debug("expansion cache hit for %s", cached.chain[0])
                return ExpansionHandle.completed(url, cached, from_cache=True)
            inflight = self._inflight.get(key)
            if inflight is not None:
                return inflight
        handle = ExpansionHandle(url, normalize_url(url))
        task = asyncio.get_running_loop().create_task(self._run(handle, key))
        handle._task = task
        self._inflight[key] = handle
        task.add_done_callback(lambda _t, k=key, h=handle: self._forget(k, h))
        return handle

    def _forget(self, key: str, handle: ExpansionHandle) -> None:
        if self._inflight.get(key) is handle:
            self._inflight.pop(key, None)

    async def resolve(self, url: str, *, bypass_cache: bool = False) -> RedirectExpansion:
        return await self.start(url, bypass_cache=bypass_cache).result()

    async def _run(self, handle: ExpansionHandle, key: str) -> RedirectExpansion:
        try:
            reason = await self._walk(handle)
        except Exception:
            logger.exception("unexpected failure expanding %s", handle.original_url)
            reason = ExpansionFailureReason.NETWORK_ERROR
        expansion = handle._finish(reason)
        if reason is not None:
            logger.info(
                "expansion of %s stopped after %d hop(s): %s",
                expansion.chain[0],
                expansion.hop_count,
                reason.value,
            )
        if self.cache is not None:
            self.cache.set(key, expansion.to_dict())
        return expansion

    async def _walk(self, handle: ExpansionHandle) -> Optional[ExpansionFailureReason]:
        started = self._clock()
        visited: set[str] = set()
        hops = 0
        while True:
            current = handle._chain[-1]
            if hops >= self.max_hops:
                return ExpansionFailureReason.TOO_MANY_REDIRECTS

            parsed = parse_candidate(current)
            if parsed is None or parsed.scheme.lower() not in SAFE_SCHEMES:
                return ExpansionFailureReason.UNSUPPORTED_SCHEME

            remaining = self.deadline - (self._clock() - started)
            if remaining <= 0:
                return ExpansionFailureReason.TIMEOUT

            blocked = await self._guard_host(parsed.hostname or "", min(self.hop_timeout, remaining))
            if blocked is not None:
                return blocked

            if current in visited:
                return ExpansionFailureReason.REDIRECT_LOOP
            visited.add(current)

            remaining = self.deadline - (self._clock() - started)
            if remaining <= 0:
                return ExpansionFailureReason.TIMEOUT
            try:
                response = await self._probe(current, min(self.hop_timeout, remaining))
            except asyncio.TimeoutError:
                return ExpansionFailureReason.TIMEOUT
            except TransportError as exc:
                logger.debug("transport error for %s: %s", current, exc)
                return ExpansionFailureReason.NETWORK_ERROR

            if not response.is_redirect:
                return None
            try:
                next_url = normalize_url(urljoin(current, response.location or ""))
            except ValueError:
                return ExpansionFailureReason.NETWORK_ERROR
            handle._append(next_url)
            hops += 1

    async def _guard_host(self, host: str, budget: float) -> Optional[ExpansionFailureReason]:
        """Return a failure reason when ``host`` is, or resolves to, a non-public address."""

        if not host:
            return ExpansionFailureReason.UNSUPPORTED_SCHEME
        if is_ip_literal(host):
            if is_blocked_address(host):
                logger.warning("blocked request to non-public address %s", host)
                return ExpansionFailureReason.NETWORK_ERROR
            return None
        try:
            addresses = await asyncio.wait_for(self._address_resolver(host), timeout=budget)
        except asyncio.TimeoutError:
            return ExpansionFailureReason.TIMEOUT
        except OSError as exc:
            logger.debug("address lookup failed for %s: %s", host, exc)
            return ExpansionFailureReason.NETWORK_ERROR
        if not addresses or any(is_blocked_address(addr) for addr in addresses):
            logger.warning("blocked request to %s (resolves to %s)", host, ", ".join(addresses) or "nothing")
            return ExpansionFailureReason.NETWORK_ERROR
        return None

    async def _probe(self, url: str, budget: float) -> ProbeResponse:
        """HEAD, then one ranged GET when HEAD carries no redirect signal; both share ``budget``."""

        hop_started = self._clock()
        headers = {HDR_USER_AGENT: self.user_agent}
        response = await asyncio.wait_for(
            self.transport.probe(url, "HEAD", timeout=budget, headers=headers),
            timeout=budget,
        )
        if response.is_redirect:
            return response
        if response.status < HEAD_RETRY_MIN_STATUS and not (300 <= response.status < 400):
            return response
        left = budget - (self._clock() - hop_started)
        if left <= 0:
            raise asyncio.TimeoutError()
        return await asyncio.wait_for(
            self.transport.probe(url, "GET", timeout=left, headers={**headers, HDR_RANGE: "bytes=0-0"}),
            timeout=left,
        )

    async def close(self) -> None:
        await self.transport.close()
