from datetime import timedelta
from types import SimpleNamespace

from sqlalchemy import select

from expertmatch.db import crud
from expertmatch.db.models import Notification
from expertmatch.db.session import session_scope
from expertmatch.pipeline.orchestrator import MatchingEngine

from conftest import BRIEF, T0


def _invites(engine, brief_id):
    return {i["candidate_id"]: i for i in engine.brief_overview(brief_id)["invitations"]}


def _inv_id(engine, brief_id, candidate_id):
    return _invites(engine, brief_id)[candidate_id]["invitation_id"]


def _small_batches(engine):
    res = engine.update_weights(settings={"max_invites": 2, "rollover_batch_size": 2, "min_score": 0.5})
    assert res["status"] == "ok"


# ---------- sending ----------
def test_invites_top_of_shortlist(engine, brief_id, notifier):
    res = engine.send_invitations(brief_id)
    assert res["status"] == "ok"
    assert [s["candidate_id"] for s in res["sent_to"]] == ["alice", "dave", "gina", "bob"]
    assert res["expires_at"] == (T0 + timedelta(hours=24)).isoformat()
    assert engine.brief_overview(brief_id)["brief_status"] == "invitations_sent"
    assert notifier.types_for("alice") == ["invitation"]


def test_max_invites_caps_the_batch(engine, brief_id):
    res = engine.send_invitations(brief_id, max_invites=2)
    assert res["invitations_sent"] == 2
    assert res["skipped"] == ["gina", "bob"]


def test_no_duplicate_invitations(engine, brief_id):
    engine.send_invitations(brief_id)
    again = engine.send_invitations(brief_id)
    assert again["invitations_sent"] == 0
    assert sorted(again["skipped"]) == ["alice", "bob", "dave", "gina"]

    admin = engine.send_invitations(brief_id, ["erin", "erin", "alice", "zed"])
    assert [s["candidate_id"] for s in admin["sent_to"]] == ["erin"]
    assert sorted(admin["skipped"]) == ["alice", "zed"]
    assert len(engine.brief_overview(brief_id)["invitations"]) == 5


def test_conditional_insert_refuses_the_same_pair(session_factory, brief_id):
    values = {
        "brief_id": brief_id,
        "candidate_id": "alice",
        "status": "sent",
        "source": "admin",
        "round": 0,
        "sent_at": T0,
        "expires_at": T0 + timedelta(hours=24),
    }
    with session_scope(session_factory) as s:
        first = crud.insert_invitation_if_absent(s, values)
        second = crud.insert_invitation_if_absent(s, values)
    assert first is not None
    assert second is None
    with session_scope(session_factory) as s:
        assert len(crud.invitations_for_brief(s, brief_id)) == 1


def test_invites_without_shortlist_compute_one(engine, brief_id):
    res = engine.send_invitations(brief_id, max_invites=1)
    assert [s["candidate_id"] for s in res["sent_to"]] == ["alice"]
    events = [e["type"] for e in engine.brief_overview(brief_id)["events"]]
    assert events == ["brief_submitted", "shortlist_computed", "invitations_sent"]


# ---------- responses vs expiry ----------
def test_accept_before_deadline(engine, brief_id, clock, notifier):
    engine.send_invitations(brief_id, ["alice"])
    clock.advance(hours=23, minutes=59)
    res = engine.respond_to_invitation(_inv_id(engine, brief_id, "alice"), "accept")
    assert res["error_type"] == "input"

    res = engine.respond_to_invitation(_inv_id(engine, brief_id, "alice"), "Accepted")
    assert res["status"] == "ok"
    assert res["draft_quote_id"]
    assert notifier.types_for("client-1") == ["expert_accepted"]

    clock.advance(hours=2)
    sweep = engine.sweep_expired_invitations()
    assert sweep["expired_count"] == 0
    assert _invites(engine, brief_id)["alice"]["status"] == "accepted"


def test_response_at_the_deadline_is_too_late(engine, brief_id, clock):
    engine.send_invitations(brief_id, ["alice"])
    inv_id = _inv_id(engine, brief_id, "alice")
    clock.advance(hours=24)
    res = engine.respond_to_invitation(inv_id, "accepted")
    assert res["status"] == "ignored"
    assert res["message"] == "invitation has expired"

    assert engine.sweep_expired_invitations()["expired_count"] == 1
    assert _invites(engine, brief_id)["alice"]["status"] == "expired"


def test_response_after_sweep_is_ignored(engine, brief_id, clock):
    engine.send_invitations(brief_id, ["alice"])
    inv_id = _inv_id(engine, brief_id, "alice")
    clock.advance(hours=25)
    engine.sweep_expired_invitations()
    res = engine.respond_to_invitation(inv_id, "declined")
    assert res["status"] == "ignored"
    assert res["message"] == "invitation is already expired"


def test_second_response_is_ignored(engine, brief_id):
    engine.send_invitations(brief_id, ["alice"])
    inv_id = _inv_id(engine, brief_id, "alice")
    assert engine.respond_to_invitation(inv_id, "accepted")["status"] == "ok"
    res = engine.respond_to_invitation(inv_id, "declined")
    assert res["status"] == "ignored"
    assert res["invitation_status"] == "accepted"


def test_sweep_is_idempotent(engine, brief_id, clock):
    engine.send_invitations(brief_id, ["alice", "dave"])
    clock.advance(hours=25)
    first = engine.sweep_expired_invitations()
    second = engine.sweep_expired_invitations()
    assert first["expired_count"] == 2
    assert second["expired_count"] == 0
    assert second["rolled_over"] == {}


def test_unknown_invitation_and_bad_response(engine, brief_id):
    assert engine.respond_to_invitation("missing", "accepted")["error_type"] == "not_found"
    engine.send_invitations(brief_id, ["alice"])
    assert engine.respond_to_invitation(_inv_id(engine, brief_id, "alice"), "maybe")["error_type"] == "input"


def test_mark_viewed_once(engine, brief_id, clock):
    engine.send_invitations(brief_id, ["alice"])
    inv_id = _inv_id(engine, brief_id, "alice")
    first = engine.mark_viewed(inv_id)
    clock.advance(hours=1)
    second = engine.mark_viewed(inv_id)
    assert first["updated"] is True
    assert second["updated"] is False
    assert second["viewed_at"] == T0.isoformat()
    assert engine.mark_viewed("missing")["error_type"] == "not_found"


# ---------- declines ----------
def test_last_decline_needs_more_experts(engine, brief_id, notifier):
    engine.send_invitations(brief_id, ["alice", "dave"])
    engine.respond_to_invitation(_inv_id(engine, brief_id, "alice"), "declined")
    assert engine.brief_overview(brief_id)["brief_status"] == "invitations_sent"
    engine.respond_to_invitation(_inv_id(engine, brief_id, "dave"), "declined")
    assert engine.brief_overview(brief_id)["brief_status"] == "needs_more_experts"
    assert notifier.types_for("client-1") == ["needs_more_experts"]


# ---------- rollover ----------
def test_rollover_walks_the_snapshot_then_escalates(engine, brief_id, clock, notifier):
    _small_batches(engine)
    first = engine.send_invitations(brief_id)
    assert [s["candidate_id"] for s in first["sent_to"]] == ["alice", "dave"]

    clock.advance(hours=25)
    sweep = engine.sweep_expired_invitations()
    assert sweep["expired_count"] == 2
    assert sweep["rolled_over"] == {brief_id: ["gina", "bob"]}

    clock.advance(hours=25)
    sweep = engine.sweep_expired_invitations()
    assert sweep["rolled_over"] == {brief_id: ["erin"]}

    clock.advance(hours=25)
    sweep = engine.sweep_expired_invitations()
    assert sweep["expired_count"] == 1
    assert sweep["manual_review"] == [brief_id]

    overview = engine.brief_overview(brief_id)
    assert overview["brief_status"] == "needs_manual_review"
    assert overview["rollover_count"] == 3
    assert "rollover_exhausted" in [e["type"] for e in overview["events"]]
    assert notifier.types_for("admin-1") == ["rollover_exhausted"]
    assert {i["round"] for i in overview["invitations"] if i["source"] == "rollover"} == {1, 2}

    quiet = engine.sweep_expired_invitations()
    assert quiet == {"status": "ok", "expired_count": 0, "rolled_over": {}, "manual_review": []}


def test_declined_candidates_are_not_reinvited(engine, brief_id, clock):
    _small_batches(engine)
    engine.send_invitations(brief_id)
    engine.respond_to_invitation(_inv_id(engine, brief_id, "alice"), "declined")
    clock.advance(hours=25)
    sweep = engine.sweep_expired_invitations()
    assert sweep["expired_count"] == 1
    assert sweep["rolled_over"] == {brief_id: ["gina", "bob"]}


def test_no_rollover_while_an_invitation_is_live(engine, brief_id, clock):
    _small_batches(engine)
    engine.send_invitations(brief_id)
    engine.respond_to_invitation(_inv_id(engine, brief_id, "alice"), "accepted")
    clock.advance(hours=25)
    sweep = engine.sweep_expired_invitations()
    assert sweep["expired_count"] == 1
    assert sweep["rolled_over"] == {}
    assert "gina" not in _invites(engine, brief_id)


def test_rollover_round_is_claimed_once(session_factory, brief_id):
    with session_scope(session_factory) as s:
        assert crud.cas_brief_rollover(s, brief_id, 0, T0) is True
    with session_scope(session_factory) as s:
        assert crud.cas_brief_rollover(s, brief_id, 0, T0) is False
        assert crud.get_brief(s, brief_id).rollover_count == 1


# ---------- allocation ----------
def test_first_acceptance_wins_the_brief(engine, brief_id, notifier):
    engine.send_invitations(brief_id)
    alice = _inv_id(engine, brief_id, "alice")
    dave = _inv_id(engine, brief_id, "dave")
    engine.respond_to_invitation(alice, "accepted")
    engine.respond_to_invitation(dave, "accepted")

    won = engine.create_project_from_acceptance(alice)
    assert won["status"] == "ok"
    assert won["created"] is True
    assert won["declined_others"] == 3

    lost = engine.create_project_from_acceptance(dave)
    assert lost["status"] == "ignored"
    assert lost["message"] == "already allocated"

    again = engine.create_project_from_acceptance(alice)
    assert again == {"status": "ok", "project_id": won["project_id"], "created": False, "declined_others": 0}

    overview = engine.brief_overview(brief_id)
    assert overview["brief_status"] == "project_created"
    assert overview["allocated_candidate_id"] == "alice"
    assert overview["project_id"] == won["project_id"]
    invites = _invites(engine, brief_id)
    assert invites["dave"]["status"] == "declined"
    assert invites["dave"]["decline_reason"] == "already allocated"
    assert "project_created" in notifier.types_for("alice")


def test_allocated_brief_ignores_late_activity(engine, brief_id, clock):
    engine.send_invitations(brief_id)
    alice = _inv_id(engine, brief_id, "alice")
    engine.respond_to_invitation(alice, "accepted")
    engine.create_project_from_acceptance(alice)

    assert engine.respond_to_invitation(_inv_id(engine, brief_id, "gina"), "accepted")["status"] == "ignored"
    assert engine.send_invitations(brief_id, ["erin"])["status"] == "ignored"
    clock.advance(hours=48)
    sweep = engine.sweep_expired_invitations()
    assert sweep["expired_count"] == 0
    assert sweep["rolled_over"] == {}


def test_only_accepted_invitations_become_projects(engine, brief_id):
    engine.send_invitations(brief_id, ["alice"])
    res = engine.create_project_from_acceptance(_inv_id(engine, brief_id, "alice"))
    assert res["error_type"] == "input"


# ---------- brief lifecycle ----------
def test_archived_brief_takes_no_invitations(engine, brief_id):
    assert engine.archive_brief(brief_id)["brief_status"] == "archived"
    res = engine.send_invitations(brief_id, ["alice"])
    assert res["status"] == "ignored"
    assert res["invitations_sent"] == 0
    assert engine.archive_brief(brief_id)["status"] == "ignored"


def test_auto_match_picks_up_recent_unmatched_briefs(engine, pool, clock):
    stale = engine.submit_brief(BRIEF)["brief_id"]
    clock.advance(hours=72)
    fresh = engine.submit_brief(BRIEF)["brief_id"]

    res = engine.auto_match_pending()
    assert res == {"status": "ok", "processed": 1, "matched": 1, "invitations_sent": 4, "failed": []}
    assert engine.brief_overview(fresh)["brief_status"] == "invitations_sent"
    assert engine.brief_overview(stale)["brief_status"] == "submitted"
    assert engine.auto_match_pending()["processed"] == 0


# ---------- notifications ----------
class _FailingNotifier:
    def notify(self, *args, **kwargs):
        raise ConnectionError("mail relay down")


def test_notifier_failure_keeps_state(session_factory, clock, brief_id):
    flaky = MatchingEngine(session_factory, notifier=_FailingNotifier(), clock=clock, llm_factory=lambda: None)
    res = flaky.send_invitations(brief_id, ["alice", "dave"])
    assert res["status"] == "ok"
    assert res["invitations_sent"] == 2
    assert set(_invites(flaky, brief_id)) == {"alice", "dave"}


def test_default_notifier_stores_rows(session_factory, clock, brief_id):
    stored = MatchingEngine(session_factory, clock=clock, llm_factory=lambda: None)
    stored.send_invitations(brief_id, ["alice"])
    with session_scope(session_factory) as s:
        rows = s.execute(select(Notification)).scalars().all()
    assert [(n.user_id, n.type) for n in rows] == [("alice", "invitation")]


# ---------- races the sweep has to survive ----------
def test_expired_invitee_is_declined_on_allocation(engine, brief_id, clock):
    engine.send_invitations(brief_id, ["alice", "dave"])
    alice = _inv_id(engine, brief_id, "alice")
    engine.respond_to_invitation(alice, "accepted")
    clock.advance(hours=25)
    assert engine.sweep_expired_invitations()["expired_count"] == 1
    assert _invites(engine, brief_id)["dave"]["status"] == "expired"

    res = engine.create_project_from_acceptance(alice)
    assert res["declined_others"] == 1
    dave = _invites(engine, brief_id)["dave"]
    assert dave["status"] == "declined"
    assert dave["decline_reason"] == "already allocated"
    assert dave["responded_at"] == clock.now.isoformat()


def test_sweep_skips_invitation_answered_after_it_was_read(engine, brief_id, clock, monkeypatch):
    engine.send_invitations(brief_id, ["alice"])
    alice = _inv_id(engine, brief_id, "alice")
    read_before_answer = [SimpleNamespace(id=alice, brief_id=brief_id, candidate_id="alice")]
    engine.respond_to_invitation(alice, "accepted")

    clock.advance(hours=25)
    monkeypatch.setattr(crud, "find_expired_candidates", lambda session, now: read_before_answer)
    sweep = engine.sweep_expired_invitations()
    assert sweep["expired_count"] == 0
    assert sweep["rolled_over"] == {}
    assert _invites(engine, brief_id)["alice"]["status"] == "accepted"


def _force_status(session_factory, engine, brief_id, status):
    ids = [_inv_id(engine, brief_id, cid) for cid in ("alice", "dave")]
    with session_scope(session_factory) as s:
        for inv_id in ids:
            assert crud.cas_invitation_status(s, inv_id, "sent", status, responded_at=T0)


def test_stranded_brief_with_expired_round_is_rolled_over(engine, session_factory, brief_id):
    _small_batches(engine)
    engine.send_invitations(brief_id)
    # expired by a sweep that never got to roll the brief over
    _force_status(session_factory, engine, brief_id, "expired")

    sweep = engine.sweep_expired_invitations()
    assert sweep["expired_count"] == 0
    assert sweep["rolled_over"] == {brief_id: ["gina", "bob"]}
    assert engine.brief_overview(brief_id)["rollover_count"] == 1


def test_declines_committed_together_do_not_roll_over(engine, session_factory, brief_id, notifier):
    _small_batches(engine)
    engine.send_invitations(brief_id)
    # both declines committed before either saw the other, so neither moved the brief
    _force_status(session_factory, engine, brief_id, "declined")
    assert engine.brief_overview(brief_id)["brief_status"] == "invitations_sent"

    sweep = engine.sweep_expired_invitations()
    assert sweep["rolled_over"] == {}
    overview = engine.brief_overview(brief_id)
    assert overview["brief_status"] == "needs_more_experts"
    assert overview["rollover_count"] == 0
    assert set(_invites(engine, brief_id)) == {"alice", "dave"}
    assert notifier.types_for("client-1") == ["needs_more_experts"]


def test_brief_updated_at_follows_the_clock(engine, session_factory, brief_id, clock):
    clock.advance(hours=2)
    engine.compute_shortlist(brief_id)
    with session_scope(session_factory) as s:
        assert crud.get_brief(s, brief_id).updated_at == clock.now

    clock.advance(hours=3)
    engine.archive_brief(brief_id)
    with session_scope(session_factory) as s:
        assert crud.get_brief(s, brief_id).updated_at == clock.now
