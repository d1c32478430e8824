from datetime import datetime

import pytest
from sqlalchemy import func, select

from expertmatch.core.errors import ConfigValidationError, NotFoundError
from expertmatch.db.models import MatchingConfigVersion
from expertmatch.db.session import session_scope
from expertmatch.pipeline import config_store
from expertmatch.pipeline.state import DEFAULT_WEIGHTS

NOW = datetime(2025, 3, 3, 9, 0, 0)


def _active_count(session_factory):
    with session_scope(session_factory) as s:
        return s.execute(
            select(func.count()).select_from(MatchingConfigVersion).where(MatchingConfigVersion.is_active.is_(True))
        ).scalar()


def test_bootstrap_defaults_are_version_zero(session_factory):
    with session_scope(session_factory) as s:
        snap = config_store.get_config_snapshot(s)
        tools, industries = config_store.get_synonyms(s)
    assert snap["version"] == 0
    assert snap["weights"] == DEFAULT_WEIGHTS
    assert tools["stripe"] == ["payment", "payments", "stripe connect"]
    assert industries["ecommerce"] == ["e-commerce"]
    assert snap["settings"]["min_score"] == 0.65


def test_update_merges_weights_and_stores_raw_values(session_factory):
    with session_scope(session_factory) as s:
        snap = config_store.update_config(s, weights={"skills": 60, "price": 20}, created_by="admin", now=NOW)
    assert snap["version"] == 1
    with session_scope(session_factory) as s:
        weights = config_store.get_active_weights(s)
    assert weights["skills"] == 60.0
    assert weights["price"] == 20.0
    assert weights["domain"] == DEFAULT_WEIGHTS["domain"]


def test_synonyms_replaced_wholesale_and_settings_merged(session_factory):
    with session_scope(session_factory) as s:
        config_store.update_config(
            s,
            tool_synonyms={"stripe": ["payment"]},
            settings={"max_invites": 2},
            now=NOW,
        )
    with session_scope(session_factory) as s:
        snap = config_store.get_config_snapshot(s)
    assert snap["tool_synonyms"] == {"stripe": ["payment"]}
    assert snap["settings"]["max_invites"] == 2
    assert snap["settings"]["sla_hours"] == 24


@pytest.mark.parametrize(
    "kwargs",
    [
        {"weights": {"charisma": 1}},
        {"weights": {"skills": -1}},
        {"weights": {"skills": "high"}},
        {"weights": {"skills": 101}},
        {"weights": {f: 0 for f in DEFAULT_WEIGHTS}},
        {"tool_synonyms": {"stripe": "payment"}},
        {"industry_synonyms": ["ecommerce"]},
        {"settings": {"min_score": 1.5}},
        {"settings": {"max_invites": 2.5}},
        {"settings": {"colour": "blue"}},
    ],
)
def test_invalid_update_writes_nothing(session_factory, kwargs):
    with pytest.raises(ConfigValidationError):
        with session_scope(session_factory) as s:
            config_store.update_config(s, now=NOW, **kwargs)
    with session_scope(session_factory) as s:
        assert config_store.list_versions(s) == []
        assert config_store.get_config_snapshot(s)["version"] == 0


def test_rollback_creates_a_new_version(session_factory):
    with session_scope(session_factory) as s:
        config_store.update_config(s, weights={"skills": 90}, now=NOW)
    with session_scope(session_factory) as s:
        config_store.update_config(s, weights={"skills": 10}, now=NOW)
    with session_scope(session_factory) as s:
        snap = config_store.rollback_config(s, 1, created_by="admin", now=NOW)
    assert snap["version"] == 3
    assert snap["weights"]["skills"] == 90.0

    with session_scope(session_factory) as s:
        versions = config_store.list_versions(s)
    assert [v["version"] for v in versions] == [3, 2, 1]
    assert [v["is_active"] for v in versions] == [True, False, False]
    assert versions[0]["note"] == "rollback to v1"
    assert _active_count(session_factory) == 1


def test_rollback_unknown_version(session_factory):
    with pytest.raises(NotFoundError):
        with session_scope(session_factory) as s:
            config_store.rollback_config(s, 7, now=NOW)


def test_exactly_one_active_version_after_many_updates(session_factory):
    for i in range(4):
        with session_scope(session_factory) as s:
            config_store.update_config(s, settings={"max_results": i + 1}, now=NOW)
    assert _active_count(session_factory) == 1
    with session_scope(session_factory) as s:
        assert config_store.get_config_snapshot(s)["version"] == 4
