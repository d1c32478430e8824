# backend/expertmatch/core/config.py
"""
Central config & environment helpers.
- Loads env (.env) early
- Exposes DATABASE_URL, LOG_LEVEL, Gemini key lookup and convenience flags
- Holds DEFAULT_OPTIONS used by the matching engine when no admin-saved
  configuration version exists yet
"""

from __future__ import annotations

import os
from typing import List, Optional, TypedDict

from dotenv import load_dotenv

# Load .env once for the whole app
load_dotenv(override=False)


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


# --- infrastructure ---------------------------------------------------------

DATABASE_URL = (os.getenv("DATABASE_URL") or "sqlite:///./tmp/expertmatch.db").strip()
DB_ECHO = (os.getenv("DB_ECHO") or "false").lower() == "true"
LOG_LEVEL = (os.getenv("LOG_LEVEL") or "INFO").strip().upper()
ADMIN_USER_ID = (os.getenv("MATCHING_ADMIN_USER_ID") or "admin").strip()


# --- API keys ---------------------------------------------------------------

def get_gemini_api_key() -> Optional[str]:
    """
    Returns the Gemini API key or None.
    The key is optional here: only the shortlist rationale uses the LLM and it
    has a deterministic fallback.
    """
    key = (
        os.getenv("GEMINI_API_KEY")
        or os.getenv("GOOGLE_API_KEY")
        or os.getenv("GEMINI_APIKEY")
        or ""
    ).strip()
    if not key:
        return None

    # Ensure downstream libs see the same key
    os.environ["GOOGLE_API_KEY"] = key
    os.environ["GEMINI_API_KEY"] = key
    # Avoid ADC confusion in server envs
    os.environ.pop("GOOGLE_APPLICATION_CREDENTIALS", None)
    return key


# --- Options ------------------------------------------------------------------

class EngineOptions(TypedDict):
    # shortlist
    min_score: float
    max_results: int
    cache_hours: int

    # invitations
    max_invites: int
    sla_hours: int
    rollover_batch_size: int
    draft_quote_validity_days: int

    # automation
    auto_match_window_hours: int

    # locale tie-breaker
    preferred_locales: List[str]


DEFAULT_OPTIONS: EngineOptions = {
    # shortlist
    "min_score": _env_float("MATCHING_MIN_SCORE", 0.65),
    "max_results": _env_int("MATCHING_MAX_RESULTS", 5),
    "cache_hours": _env_int("MATCHING_CACHE_HOURS", 24),

    # invitations
    "max_invites": _env_int("MATCHING_MAX_INVITES", 5),
    "sla_hours": _env_int("MATCHING_SLA_HOURS", 24),
    "rollover_batch_size": _env_int("MATCHING_ROLLOVER_BATCH", 2),
    "draft_quote_validity_days": 7,

    # automation
    "auto_match_window_hours": 48,

    # locale tie-breaker
    "preferred_locales": [],
}


__all__ = [
    "DATABASE_URL",
    "DB_ECHO",
    "LOG_LEVEL",
    "ADMIN_USER_ID",
    "EngineOptions",
    "DEFAULT_OPTIONS",
    "get_gemini_api_key",
]
