"""Scripted stand-ins for the network edges used across the test modules."""

from __future__ import annotations

import asyncio
from typing import Dict, List, Mapping, Optional, Tuple, Union

from qrcheck.workflows.resolver import ProbeResponse, RedirectResolver
from qrcheck.workflows.ttl_cache import TTLCache

HANG = "hang"

Action = Union[ProbeResponse, Exception, str]


class FakeTransport:
    """Answers probes from a route table keyed by ``(method, url)`` or ``url``.

    Unknown URLs answer ``200``. ``HANG`` sleeps until cancelled.
    """

    def __init__(self, routes: Optional[Mapping[object, Action]] = None, *, on_probe=None) -> None:
        self.routes: Dict[object, Action] = dict(routes or {})
        self.calls: List[Tuple[str, str, Dict[str, str]]] = []
        self.closed = False
        self._on_probe = on_probe

    async def probe(self, url: str, method: str, *, timeout: float, headers: Mapping[str, str]) -> ProbeResponse:
        self.calls.append((method, url, dict(headers)))
        if self._on_probe is not None:
            self._on_probe(method, url)
        action = self.routes.get((method, url), self.routes.get(url))
        if action is None:
            return ProbeResponse(status=200)
        if isinstance(action, Exception):
            raise action
        if action == HANG:
            await asyncio.sleep(60)
        return action

    async def close(self) -> None:
        self.closed = True

    def urls(self) -> List[str]:
        return [url for _, url, _ in self.calls]


def fake_dns(mapping: Optional[Mapping[str, object]] = None, default: str = "93.184.216.34"):
    table = dict(mapping or {})

    async def resolve(host: str) -> List[str]:
        value = table.get(host, default)
        if isinstance(value, Exception):
            raise value
        if isinstance(value, str):
            return [value]
        return list(value)

    return resolve


def redirect(location: str, status: int = 301) -> ProbeResponse:
    return ProbeResponse(status=status, location=location)


def make_resolver(
    routes: Optional[Mapping[object, Action]] = None,
    *,
    dns: Optional[Mapping[str, object]] = None,
    cache: Optional[TTLCache] = None,
    **kwargs,
) -> Tuple[RedirectResolver, FakeTransport]:
    transport = kwargs.pop("transport", None) or FakeTransport(routes)
    resolver = RedirectResolver(transport, cache=cache, address_resolver=fake_dns(dns), **kwargs)
    return resolver, transport
