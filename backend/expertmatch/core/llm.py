# backend/expertmatch/core/llm.py
"""
Gemini LLM handle (LangChain wrapper).
- Uses ChatGoogleGenerativeAI with model "gemini-2.0-flash", temperature=0
- Reads API key via core.config.get_gemini_api_key()
- Built on first use; returns None when no key is configured so callers can
  take their deterministic fallback path
"""

from __future__ import annotations

from typing import Any, Optional

from langchain_google_genai import ChatGoogleGenerativeAI
from .config import get_gemini_api_key

_llm: Optional[Any] = None


def get_llm() -> Optional[Any]:
    global _llm
    if _llm is not None:
        return _llm
    key = get_gemini_api_key()
    if not key:
        return None
    _llm = ChatGoogleGenerativeAI(
        model="gemini-2.0-flash",
        temperature=0,
        api_key=key,
    )
    return _llm


__all__ = ["get_llm"]
