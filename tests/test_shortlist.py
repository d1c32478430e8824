from sqlalchemy.exc import OperationalError

from expertmatch.pipeline.orchestrator import MatchingEngine
from expertmatch.pipeline.shortlist import EMPTY_SUGGESTIONS

from conftest import BRIEF

EXPECTED = ["alice", "dave", "gina", "bob"]


def _ids(res):
    return [c["candidate_id"] for c in res["candidates"]]


def test_ranked_eligible_candidates(engine, brief_id):
    res = engine.compute_shortlist(brief_id)
    assert res["status"] == "ok"
    assert _ids(res) == EXPECTED
    assert res["total_eligible"] == 4
    assert res["total_evaluated"] == 6
    assert res["cached"] is False
    assert res["suggestions"] == []
    scores = [c["score"] for c in res["candidates"]]
    assert scores == sorted(scores, reverse=True)
    assert all(s >= 0.65 for s in scores)
    assert abs(sum(res["weights_used"].values()) - 1.0) < 1e-3


def test_brief_moves_to_matched(engine, brief_id):
    engine.compute_shortlist(brief_id)
    assert engine.brief_overview(brief_id)["brief_status"] == "matched"


def test_second_call_is_served_from_snapshot(engine, brief_id, clock):
    first = engine.compute_shortlist(brief_id)
    clock.advance(hours=23)
    second = engine.compute_shortlist(brief_id)
    assert second["cached"] is True
    assert second["snapshot_id"] == first["snapshot_id"]
    assert _ids(second) == _ids(first)
    assert [c["score"] for c in second["candidates"]] == [c["score"] for c in first["candidates"]]


def test_force_recompute_is_deterministic(engine, brief_id):
    first = engine.compute_shortlist(brief_id)
    again = engine.compute_shortlist(brief_id, force_recompute=True)
    assert again["cached"] is False
    assert again["snapshot_id"] != first["snapshot_id"]
    assert again["candidates"] == first["candidates"]


def test_cache_expires(engine, brief_id, clock):
    engine.compute_shortlist(brief_id)
    clock.advance(hours=25)
    assert engine.compute_shortlist(brief_id)["cached"] is False


def test_different_min_score_or_widen_recomputes(engine, brief_id):
    engine.compute_shortlist(brief_id)
    lower = engine.compute_shortlist(brief_id, min_score=0.5)
    assert lower["cached"] is False
    assert _ids(lower) == EXPECTED + ["erin"]
    assert engine.compute_shortlist(brief_id, min_score=0.5, widen=True)["cached"] is False


def test_config_change_invalidates_cache(engine, brief_id):
    engine.compute_shortlist(brief_id)
    assert engine.update_weights(weights={"availability": 40}, updated_by="admin")["status"] == "ok"
    res = engine.compute_shortlist(brief_id)
    assert res["cached"] is False
    assert res["config_version"] == 1


def test_max_results_truncates_but_counts_all(engine, brief_id):
    res = engine.compute_shortlist(brief_id, max_results=2)
    assert _ids(res) == EXPECTED[:2]
    assert res["total_eligible"] == 4
    # cached snapshot keeps the full eligible list
    res = engine.compute_shortlist(brief_id, max_results=3)
    assert res["cached"] is True
    assert _ids(res) == EXPECTED[:3]


def test_empty_pool_suggests_next_steps(engine):
    brief_id = engine.submit_brief(BRIEF)["brief_id"]
    res = engine.compute_shortlist(brief_id)
    assert res["status"] == "ok"
    assert res["candidates"] == []
    assert res["suggestions"] == EMPTY_SUGGESTIONS
    assert res["message"]
    assert engine.brief_overview(brief_id)["brief_status"] == "submitted"


def test_nobody_clears_a_high_bar(engine, brief_id):
    res = engine.compute_shortlist(brief_id, min_score=0.99)
    assert res["candidates"] == []
    assert res["total_evaluated"] == 6
    assert res["suggestions"] == EMPTY_SUGGESTIONS


def test_unknown_brief(engine, pool):
    res = engine.compute_shortlist("nope")
    assert res["status"] == "error"
    assert res["error_type"] == "not_found"


def test_bad_parameters_are_input_errors(engine, brief_id):
    assert engine.compute_shortlist(brief_id, min_score=1.5)["error_type"] == "input"
    assert engine.compute_shortlist(brief_id, max_results=0)["error_type"] == "input"


class _BrokenPool:
    def list_active_candidates(self):
        raise OperationalError("SELECT * FROM candidate_profiles", {}, Exception("connection refused"))


def test_pool_failure_is_an_infrastructure_error(session_factory, clock, notifier, brief_id):
    broken = MatchingEngine(
        session_factory,
        candidate_pool=lambda s: _BrokenPool(),
        notifier=notifier,
        clock=clock,
        llm_factory=lambda: None,
    )
    res = broken.compute_shortlist(brief_id)
    assert res["status"] == "error"
    assert res["error_type"] == "infrastructure"
    assert len(res["debug_id"]) == 12
    assert res["debug_id"] in res["message"]
    # nothing was persisted, so the brief is still unmatched
    assert broken.brief_overview(brief_id)["brief_status"] == "submitted"
