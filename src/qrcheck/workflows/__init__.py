"""High-level exports for the qrcheck workflows."""

from .aggregator import RiskResult, aggregate, invalid_result, verdict_for_score
from .inspector import InspectionEngine, InvalidCandidateError, analyze_url, validate_candidate
from .rate_limiter import FixedWindowRateLimiter, RateLimitDecision
from .resolver import ExpansionFailureReason, RedirectExpansion, RedirectResolver
from .settings import EngineSettings
from .signals import Signal, SignalReport, extract_signals
from .ttl_cache import TTLCache, open_store

__all__ = [
    "RiskResult",
    "aggregate",
    "invalid_result",
    "verdict_for_score",
    "InspectionEngine",
    "InvalidCandidateError",
    "analyze_url",
    "validate_candidate",
    "FixedWindowRateLimiter",
    "RateLimitDecision",
    "ExpansionFailureReason",
    "RedirectExpansion",
    "RedirectResolver",
    "EngineSettings",
    "Signal",
    "SignalReport",
    "extract_signals",
    "TTLCache",
    "open_store",
]
