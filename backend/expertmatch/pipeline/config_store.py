# backend/expertmatch/pipeline/config_store.py
"""
Versioned weight / synonym / settings store.

Entry:
    get_config_snapshot(session) -> ConfigSnapshot   (what every scoring run gets injected)
    get_active_weights(session)  -> raw stored WeightVector
    get_synonyms(session)        -> (tool_synonyms, industry_synonyms)
    update_config(session, ...)  -> ConfigSnapshot   (new active version)
    rollback_config(session, v)  -> ConfigSnapshot   (copies v into a new active version)
    list_versions(session)

Rows are never updated in place except for the is_active flag, so every
version stays available for audit. Stored weights are the raw admin values;
normalization happens in the scorer.
"""

from __future__ import annotations

import copy
import math
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Tuple

from loguru import logger
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.config import DEFAULT_OPTIONS
from ..core.errors import ConfigValidationError, InvariantViolation, NotFoundError
from ..core.utils import iso, now_utc
from ..core.vocabulary import DEFAULT_INDUSTRY_SYNONYMS, DEFAULT_TOOL_SYNONYMS
from ..db.models import MatchingConfigVersion
from .state import DEFAULT_WEIGHTS, FACTORS, MAX_WEIGHT, ConfigSnapshot, SynonymMap, WeightVector

# type, lower bound, upper bound
SETTINGS_BOUNDS: Dict[str, Tuple[type, float, float]] = {
    "min_score": (float, 0.0, 1.0),
    "max_results": (int, 1, 100),
    "cache_hours": (int, 0, 24 * 7),
    "max_invites": (int, 1, 50),
    "sla_hours": (int, 1, 24 * 14),
    "rollover_batch_size": (int, 1, 50),
    "draft_quote_validity_days": (int, 1, 90),
    "auto_match_window_hours": (int, 1, 24 * 30),
}


# ---------- defaults ----------
def default_settings() -> Dict[str, Any]:
    return copy.deepcopy(dict(DEFAULT_OPTIONS))


def default_config() -> ConfigSnapshot:
    """Version 0: bootstrap values used until an admin saves something."""
    return {
        "version": 0,
        "weights": dict(DEFAULT_WEIGHTS),
        "tool_synonyms": copy.deepcopy(DEFAULT_TOOL_SYNONYMS),
        "industry_synonyms": copy.deepcopy(DEFAULT_INDUSTRY_SYNONYMS),
        "settings": default_settings(),
    }


# ---------- validation ----------
def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def validate_weights(weights: Mapping[str, Any]) -> WeightVector:
    if not isinstance(weights, Mapping):
        raise ConfigValidationError("weights must be an object of factor -> number")
    clean: WeightVector = {}
    for factor, value in weights.items():
        if factor not in FACTORS:
            raise ConfigValidationError(f"unknown scoring factor: {factor}")
        if not _is_number(value):
            raise ConfigValidationError(f"weight for {factor} must be a number")
        if value < 0:
            raise ConfigValidationError(f"weight for {factor} must not be negative")
        if value > MAX_WEIGHT:
            raise ConfigValidationError(f"weight for {factor} must be at most {MAX_WEIGHT:g}")
        clean[factor] = float(value)
    return clean


def validate_synonyms(synonyms: Mapping[str, Any], name: str = "synonyms") -> SynonymMap:
    """Expect {canonical: [alias, ...]}; canonical keys and aliases must be non-empty strings."""
    if not isinstance(synonyms, Mapping):
        raise ConfigValidationError(f"{name} must be an object of canonical term -> list of aliases")
    clean: SynonymMap = {}
    for canonical, aliases in synonyms.items():
        if not isinstance(canonical, str) or not canonical.strip():
            raise ConfigValidationError(f"{name}: canonical terms must be non-empty strings")
        if not isinstance(aliases, (list, tuple)):
            raise ConfigValidationError(f"{name}: aliases for '{canonical}' must be a list")
        if not all(isinstance(a, str) and a.strip() for a in aliases):
            raise ConfigValidationError(f"{name}: aliases for '{canonical}' must be non-empty strings")
        clean[canonical.strip()] = [a.strip() for a in aliases]
    return clean


def validate_settings(settings: Mapping[str, Any]) -> Dict[str, Any]:
    if not isinstance(settings, Mapping):
        raise ConfigValidationError("settings must be an object")
    clean: Dict[str, Any] = {}
    for key, value in settings.items():
        if key == "preferred_locales":
            if not isinstance(value, (list, tuple)) or not all(isinstance(v, str) for v in value):
                raise ConfigValidationError("preferred_locales must be a list of strings")
            clean[key] = [v.strip() for v in value if v.strip()]
            continue
        if key not in SETTINGS_BOUNDS:
            raise ConfigValidationError(f"unknown setting: {key}")
        kind, lo, hi = SETTINGS_BOUNDS[key]
        if not _is_number(value) or (kind is int and float(value) != int(value)):
            raise ConfigValidationError(f"{key} must be {'an integer' if kind is int else 'a number'}")
        if not (lo <= value <= hi):
            raise ConfigValidationError(f"{key} must be between {lo:g} and {hi:g}")
        clean[key] = kind(value)
    return clean


# ---------- reads ----------
def _active_row(session: Session) -> Optional[MatchingConfigVersion]:
    q = (
        select(MatchingConfigVersion)
        .where(MatchingConfigVersion.is_active.is_(True))
        .order_by(MatchingConfigVersion.version.desc())
        .limit(1)
    )
    return session.execute(q).scalars().first()


def _row_to_snapshot(row: MatchingConfigVersion) -> ConfigSnapshot:
    settings = default_settings()
    settings.update(row.settings or {})
    return {
        "version": row.version,
        "weights": dict(row.weights or {}),
        "tool_synonyms": copy.deepcopy(row.tool_synonyms or {}),
        "industry_synonyms": copy.deepcopy(row.industry_synonyms or {}),
        "settings": settings,
    }


def get_config_snapshot(session: Session) -> ConfigSnapshot:
    row = _active_row(session)
    return default_config() if row is None else _row_to_snapshot(row)


def get_active_weights(session: Session) -> WeightVector:
    return get_config_snapshot(session)["weights"]


def get_synonyms(session: Session) -> Tuple[SynonymMap, SynonymMap]:
    snap = get_config_snapshot(session)
    return snap["tool_synonyms"], snap["industry_synonyms"]


# ---------- writes ----------
def _insert_active_version(
    session: Session,
    snapshot: ConfigSnapshot,
    created_by: Optional[str],
    note: Optional[str],
    now: datetime,
) -> ConfigSnapshot:
    next_version = int(session.execute(select(func.max(MatchingConfigVersion.version))).scalar() or 0) + 1
    try:
        with session.begin_nested():
            session.execute(
                update(MatchingConfigVersion)
                .where(MatchingConfigVersion.is_active.is_(True))
                .values(is_active=False)
                .execution_options(synchronize_session=False)
            )
            session.add(
                MatchingConfigVersion(
                    version=next_version,
                    weights=snapshot["weights"],
                    tool_synonyms=snapshot["tool_synonyms"],
                    industry_synonyms=snapshot["industry_synonyms"],
                    settings=snapshot["settings"],
                    is_active=True,
                    created_by=created_by,
                    note=note,
                    created_at=now,
                )
            )
    except IntegrityError as e:
        raise InvariantViolation(f"configuration version {next_version} was saved concurrently; retry") from e

    logger.info("matching config v{} active (by {})", next_version, created_by or "-")
    out = copy.deepcopy(snapshot)
    out["version"] = next_version
    return out


def update_config(
    session: Session,
    weights: Optional[Mapping[str, Any]] = None,
    tool_synonyms: Optional[Mapping[str, Any]] = None,
    industry_synonyms: Optional[Mapping[str, Any]] = None,
    settings: Optional[Mapping[str, Any]] = None,
    created_by: Optional[str] = None,
    note: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ConfigSnapshot:
    """
    Validate, then supersede the active version with a new one.
    Weights and settings are merged onto the current values (partial slider
    edits); synonym maps are replaced wholesale when given.
    Raises ConfigValidationError with nothing written on bad input.
    """
    current = get_config_snapshot(session)
    nxt: ConfigSnapshot = copy.deepcopy(current)

    if weights is not None:
        nxt["weights"].update(validate_weights(weights))
        if sum(nxt["weights"].get(f, 0.0) for f in FACTORS) <= 0:
            raise ConfigValidationError("at least one weight must be positive")
    if tool_synonyms is not None:
        nxt["tool_synonyms"] = validate_synonyms(tool_synonyms, "tool_synonyms")
    if industry_synonyms is not None:
        nxt["industry_synonyms"] = validate_synonyms(industry_synonyms, "industry_synonyms")
    if settings is not None:
        nxt["settings"].update(validate_settings(settings))

    return _insert_active_version(session, nxt, created_by, note, now or now_utc())


def rollback_config(session: Session, version: int, created_by: Optional[str] = None, now: Optional[datetime] = None) -> ConfigSnapshot:
    """Re-activate an old version's contents as a brand-new version."""
    row = session.execute(
        select(MatchingConfigVersion).where(MatchingConfigVersion.version == version)
    ).scalars().first()
    if row is None:
        raise NotFoundError(f"configuration version {version} not found")
    return _insert_active_version(
        session, _row_to_snapshot(row), created_by, f"rollback to v{version}", now or now_utc()
    )


def version_to_dict(row: MatchingConfigVersion) -> Dict[str, Any]:
    return {
        "version": row.version,
        "is_active": row.is_active,
        "weights": dict(row.weights or {}),
        "tool_synonyms": dict(row.tool_synonyms or {}),
        "industry_synonyms": dict(row.industry_synonyms or {}),
        "settings": dict(row.settings or {}),
        "created_by": row.created_by,
        "note": row.note,
        "created_at": iso(row.created_at),
    }


def list_versions(session: Session, limit: int = 50) -> List[Dict[str, Any]]:
    q = select(MatchingConfigVersion).order_by(MatchingConfigVersion.version.desc()).limit(limit)
    return [version_to_dict(r) for r in session.execute(q).scalars().all()]


__all__ = [
    "SETTINGS_BOUNDS",
    "default_config", "default_settings",
    "validate_weights", "validate_synonyms", "validate_settings",
    "get_config_snapshot", "get_active_weights", "get_synonyms",
    "update_config", "rollback_config", "list_versions", "version_to_dict",
]
