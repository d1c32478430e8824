# backend/expertmatch/core/logging.py
"""
loguru wiring.
- One stderr sink at LOG_LEVEL
- Correlation ids (`debug_id`) bound onto records and returned in error envelopes
"""

from __future__ import annotations

import sys
import uuid
from typing import Optional

from loguru import logger

from .config import LOG_LEVEL

_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{function}</cyan> | "
    "{extra[debug_id]} {extra[brief_id]} | "
    "<level>{message}</level>"
)


def configure_logging(level: Optional[str] = None) -> None:
    """Install the single stderr sink. Safe to call more than once."""
    logger.remove()
    logger.configure(extra={"debug_id": "-", "brief_id": "-"})
    logger.add(sys.stderr, level=(level or LOG_LEVEL), format=_FORMAT, backtrace=False, diagnose=False)


def new_debug_id() -> str:
    return uuid.uuid4().hex[:12]


__all__ = ["configure_logging", "new_debug_id", "logger"]
