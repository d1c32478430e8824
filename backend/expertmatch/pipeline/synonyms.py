# backend/expertmatch/pipeline/synonyms.py
"""
Synonym normalizer.

Maps free-text skill/tool/industry tokens onto their canonical term using an
admin-maintained {canonical: [aliases]} dictionary. Pure functions only: the
same code runs inside feature extraction and inside scoring.

Collision policy: when an alias is listed under two canonical terms, the
canonical term that comes first in map iteration order wins.
"""

from __future__ import annotations

from typing import Dict, Iterable, List, Optional

from ..core.utils import fold
from .state import SynonymMap


def build_alias_index(synonyms: Optional[SynonymMap]) -> Dict[str, str]:
    """
    Flatten a synonym map into {folded alias or canonical: canonical}.
    First definition wins, so later canonical keys never steal an alias.
    """
    index: Dict[str, str] = {}
    for canonical, aliases in (synonyms or {}).items():
        key = fold(canonical)
        if not key:
            continue
        index.setdefault(key, str(canonical).strip())
        for alias in aliases or []:
            a = fold(alias)
            if a:
                index.setdefault(a, str(canonical).strip())
    return index


def normalize_term(term: str, synonyms: Optional[SynonymMap]) -> str:
    return build_alias_index(synonyms).get(fold(term), term)


def normalize_terms(terms: Iterable[str], synonyms: Optional[SynonymMap]) -> List[str]:
    """Replace each token by its canonical form when one exists; order is kept."""
    index = build_alias_index(synonyms)
    return [index.get(fold(t), t) for t in terms or []]


__all__ = ["build_alias_index", "normalize_term", "normalize_terms"]
