"""FastAPI surface for the inspection engine.

Admission control runs before URL validation: rejected inputs still count
against the client's window.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from .core.keys import (
    K_ANALYSIS,
    K_ERROR,
    K_FAILURE_REASON,
    K_HOP_COUNT,
    K_INPUT_URL,
    K_OK,
    K_REDIRECT_CHAIN,
    K_RESET_TIME,
    K_RESOLVED_URL,
    K_RESULT,
    K_RETRY_AFTER,
)
from .workflows.inspector import InspectionEngine, InvalidCandidateError, validate_candidate
from .workflows.rate_limiter import FixedWindowRateLimiter, RateLimitDecision
from .workflows.settings import EngineSettings

logger = logging.getLogger(__name__)

NO_STORE = {"Cache-Control": "no-store"}
RESOLUTION_ERROR = "Resolution error"


class ResolveRequest(BaseModel):
    url: str


class AnalyzeRequest(BaseModel):
    url: str
    label_host: Optional[str] = None
    bypass_cache: bool = False


class RateLimited(Exception):
    def __init__(self, decision: RateLimitDecision) -> None:
        super().__init__("rate limited")
        self.decision = decision


def client_key(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    real_ip = (request.headers.get("x-real-ip") or "").strip()
    if real_ip:
        return real_ip
    if request.client and request.client.host:
        return request.client.host
    return "unknown"


def enforce_rate_limit(request: Request) -> RateLimitDecision:
    limiter: FixedWindowRateLimiter = request.app.state.limiter
    decision = limiter.check(client_key(request))
    if not decision.allowed:
        raise RateLimited(decision)
    return decision


def _error(status: int, message: str, headers: Optional[Dict[str, str]] = None, **extra: Any) -> JSONResponse:
    return JSONResponse({K_OK: False, K_ERROR: message, **extra}, status_code=status, headers={**NO_STORE, **(headers or {})})


def create_app(
    engine: Optional[InspectionEngine] = None,
    limiter: Optional[FixedWindowRateLimiter] = None,
    settings: Optional[EngineSettings] = None,
) -> FastAPI:
    settings = settings or EngineSettings.from_env()
    engine = engine or InspectionEngine.from_settings(settings)
    limiter = limiter or FixedWindowRateLimiter(settings.rate_limit, settings.rate_window)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("qrcheck server starting (rate limit %s per %ss)", limiter.limit, limiter.window)
        yield
        await app.state.engine.close()

    app = FastAPI(title="qrcheck", lifespan=lifespan)
    app.state.engine = engine
    app.state.limiter = limiter
    app.state.settings = settings

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.cors_origin],
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["content-type"],
    )

    @app.exception_handler(RateLimited)
    async def rate_limited_handler(request: Request, exc: RateLimited) -> JSONResponse:
        decision = exc.decision
        logger.info("rate limited %s until %.0f", client_key(request), decision.reset_at)
        return _error(
            429,
            "Too many requests",
            headers={"Retry-After": str(decision.retry_after)},
            **{K_RESET_TIME: decision.reset_at, K_RETRY_AFTER: decision.retry_after},
        )

    @app.exception_handler(RequestValidationError)
    async def validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        return _error(400, "Invalid request body")

    @app.exception_handler(InvalidCandidateError)
    async def invalid_candidate_handler(request: Request, exc: InvalidCandidateError) -> JSONResponse:
        return _error(400, str(exc))

    @app.exception_handler(Exception)
    async def unexpected_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error("unhandled error on %s", request.url.path, exc_info=exc)
        return _error(500, RESOLUTION_ERROR)

    @app.get("/health")
    async def health(request: Request) -> Dict[str, Any]:
        current: InspectionEngine = request.app.state.engine
        cache = current.resolver.cache
        return {
            "status": "ok",
            "shorteners": len(current.shorteners),
            "cache_entries": len(cache) if cache is not None else 0,
        }

    @app.post("/api/resolve")
    async def resolve(
        body: ResolveRequest,
        request: Request,
        _: RateLimitDecision = Depends(enforce_rate_limit),
    ) -> JSONResponse:
        url = validate_candidate(body.url)
        current: InspectionEngine = request.app.state.engine
        try:
            expansion = await current.resolver.resolve(url)
        except Exception:
            logger.exception("resolution failed for %s", url)
            return _error(500, RESOLUTION_ERROR)
        analysis = {
            K_INPUT_URL: url,
            K_REDIRECT_CHAIN: list(expansion.chain),
            K_RESOLVED_URL: expansion.final_url,
            K_HOP_COUNT: expansion.hop_count,
            K_FAILURE_REASON: expansion.failure_reason.value if expansion.failure_reason else None,
        }
        return JSONResponse({K_OK: True, K_ANALYSIS: analysis}, headers=NO_STORE)

    @app.post("/api/analyze")
    async def analyze(
        body: AnalyzeRequest,
        request: Request,
        _: RateLimitDecision = Depends(enforce_rate_limit),
    ) -> JSONResponse:
        url = validate_candidate(body.url)
        current: InspectionEngine = request.app.state.engine
        try:
            result = await current.analyze(url, bypass_cache=body.bypass_cache, label_host=body.label_host)
        except Exception:
            logger.exception("analysis failed for %s", url)
            return _error(500, RESOLUTION_ERROR)
        return JSONResponse({K_OK: True, K_RESULT: result.to_dict()}, headers=NO_STORE)

    return app


__all__ = ["create_app", "client_key", "ResolveRequest", "AnalyzeRequest"]
