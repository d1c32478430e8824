# backend/expertmatch/core/utils.py
"""
Generic helpers used across the engine.

Includes:
- time math (naive UTC, the storage convention)
- order-preserving dedupe and casefold helpers
- safe JSON extraction for LLM replies
"""

from __future__ import annotations

import json
import re
from datetime import datetime, timezone
from typing import Any, Iterable, List, Optional

# -------- Time ---------------------------------------------------------------

def now_utc() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)

def iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None

# -------- Strings / lists ----------------------------------------------------

def fold(s: Any) -> str:
    """Case-insensitive comparison key."""
    return str(s or "").strip().lower()

def uniq_preserve(xs: Optional[Iterable[str]]) -> List[str]:
    seen: set[str] = set()
    out: List[str] = []
    for x in xs or []:
        if x is None:
            continue
        k = fold(x)
        if not k or k in seen:
            continue
        seen.add(k)
        out.append(str(x).strip())
    return out

def clip(s: Optional[str], n: int = 1200) -> str:
    if not s:
        return ""
    s = str(s)
    return s if len(s) <= n else s[:n]

def clamp01(x: float) -> float:
    return max(0.0, min(1.0, float(x)))

# -------- JSON ---------------------------------------------------------------

_JSON_OBJECT_RE = re.compile(r"\{.*\}|\[.*\]", re.S)

def json_loose(s: str) -> Any:
    """
    Parse a possibly noisy LLM response and return the first valid JSON object/array.
    """
    text = (s or "").strip()
    if text.startswith("```"):
        text = re.sub(r"^```[\w-]*\s*", "", text)
        text = re.sub(r"\s*```$", "", text).strip()
    try:
        return json.loads(text)
    except ValueError:
        m = _JSON_OBJECT_RE.search(text)
        if m:
            return json.loads(re.sub(r",(\s*[}\]])", r"\1", m.group(0)))
        raise


__all__ = [
    "now_utc", "iso",
    "fold", "uniq_preserve", "clip", "clamp01",
    "json_loose",
]
