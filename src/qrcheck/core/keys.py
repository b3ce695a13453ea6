"""Shared payload keys to avoid magic strings across qrcheck surfaces."""

from __future__ import annotations

# Request keys
K_URL = "url"
K_LABEL_HOST = "label_host"
K_BYPASS_CACHE = "bypass_cache"

# Envelope keys
K_OK = "ok"
K_ERROR = "error"
K_ANALYSIS = "analysis"
K_RESULT = "result"
K_RESET_TIME = "reset_time"
K_RETRY_AFTER = "retry_after"

# Resolution payload keys
K_INPUT_URL = "input_url"
K_REDIRECT_CHAIN = "redirect_chain"
K_RESOLVED_URL = "resolved_url"
K_HOP_COUNT = "hop_count"
K_FAILURE_REASON = "failure_reason"

# Expansion (cache) keys
K_CHAIN = "chain"
K_FINAL_URL = "final_url"

# Risk result keys
K_ORIGINAL_URL = "original_url"
K_SCORE = "score"
K_VERDICT = "verdict"
K_SIGNALS = "signals"
K_REASONS = "reasons"
K_WARNINGS = "warnings"
K_STAGE = "stage"
K_EXPANSION_FAILURE = "expansion_failure"
