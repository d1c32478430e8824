# backend/expertmatch/pipeline/orchestrator.py
"""
Glue for the matching engine.

Stages:
  1) features.extract_signals     brief -> normalized signals
  2) score.score_candidate        signals x candidate -> MatchResult
  3) shortlist.compute_shortlist  rank, filter, snapshot
  4) invitations.InvitationManager  send / respond / sweep / rollover / allocate

Public entry: MatchingEngine. Every operation:
  - runs in one unit of work (session_scope) with a fresh config snapshot
  - emits queued notifications only after commit
  - returns a dict envelope; errors come back as
        {"status": "error", "error_type": "input"|"not_found"|"conflict"|"infrastructure",
         "message": ..., "debug_id": ...}
    instead of being raised
"""

from __future__ import annotations

from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterator, List, Mapping, Optional, Tuple

from loguru import logger
from sqlalchemy.orm import Session, sessionmaker

from ..core.config import ADMIN_USER_ID
from ..core.errors import InputError, InvariantViolation, NotFoundError
from ..core.llm import get_llm
from ..core.logging import new_debug_id
from ..core.utils import iso, now_utc
from ..db import crud
from ..db.session import default_session_factory, session_scope
from . import config_store
from .features import validate_brief_payload
from .gateways import (
    NotificationOutbox,
    Notifier,
    PoolFactory,
    ProjectFactory,
    SqlCandidatePool,
    SqlNotifier,
    SqlProjectGateway,
)
from .invitations import InvitationManager
from .rationale import generate_rationale
from .score import normalize_weights
from .shortlist import compute_shortlist
from .state import ConfigSnapshot

Envelope = Dict[str, Any]


def error_envelope(error_type: str, message: str, debug_id: str) -> Envelope:
    return {"status": "error", "error_type": error_type, "message": message, "debug_id": debug_id}


class MatchingEngine:
    def __init__(
        self,
        session_factory: Optional[sessionmaker[Session]] = None,
        *,
        candidate_pool: Optional[PoolFactory] = None,
        notifier: Optional[Notifier] = None,
        project_gateway: Optional[ProjectFactory] = None,
        clock: Callable[[], datetime] = now_utc,
        admin_user_id: str = ADMIN_USER_ID,
        llm_factory: Callable[[], Optional[Any]] = get_llm,
    ):
        """
        candidate_pool / project_gateway are factories taking the unit-of-work
        Session; the defaults read and write the same database.
        """
        self.session_factory = session_factory or default_session_factory()
        self.candidate_pool = candidate_pool or SqlCandidatePool
        self.notifier = notifier if notifier is not None else SqlNotifier(self.session_factory)
        self.project_gateway = project_gateway or SqlProjectGateway
        self.clock = clock
        self.admin_user_id = admin_user_id
        self.llm_factory = llm_factory

    # ---------- plumbing ----------
    @contextmanager
    def _unit(self) -> Iterator[Tuple[Session, NotificationOutbox]]:
        outbox = NotificationOutbox()
        with session_scope(self.session_factory) as session:
            yield session, outbox
        outbox.flush(self.notifier)

    def _run(self, op: str, fn: Callable[[], Envelope], brief_id: Optional[str] = None) -> Envelope:
        debug_id = new_debug_id()
        with logger.contextualize(debug_id=debug_id, brief_id=brief_id or "-"):
            try:
                return fn()
            except InputError as e:
                logger.warning("{} rejected: {}", op, e)
                return error_envelope("input", str(e), debug_id)
            except NotFoundError as e:
                logger.warning("{}: {}", op, e)
                return error_envelope("not_found", str(e), debug_id)
            except InvariantViolation as e:
                logger.warning("{} conflict: {}", op, e)
                return error_envelope("conflict", str(e), debug_id)
            except Exception:
                logger.exception("{} failed", op)
                return error_envelope(
                    "infrastructure",
                    f"{op} failed due to an internal error; retry later (debug id {debug_id})",
                    debug_id,
                )

    def _manager(self, session: Session, outbox: NotificationOutbox, config: ConfigSnapshot) -> InvitationManager:
        return InvitationManager(
            session, config, outbox,
            projects=self.project_gateway(session),
            admin_user_id=self.admin_user_id,
        )

    # ---------- briefs ----------
    def submit_brief(self, payload: Mapping[str, Any]) -> Envelope:
        def op() -> Envelope:
            fields = validate_brief_payload(payload)
            now = self.clock()
            with self._unit() as (s, _):
                brief = crud.create_brief(s, fields, created_at=now)
                crud.log_event(s, brief.id, "brief_submitted", {"urgency": brief.urgency}, at=now)
                logger.info("brief {} submitted", brief.id)
                return {"status": "ok", "brief_id": brief.id, "brief_status": brief.status}

        return self._run("submit_brief", op)

    def archive_brief(self, brief_id: str) -> Envelope:
        def op() -> Envelope:
            with self._unit() as (s, outbox):
                config = config_store.get_config_snapshot(s)
                return self._manager(s, outbox, config).archive(brief_id, now=self.clock())

        return self._run("archive_brief", op, brief_id)

    # ---------- shortlist ----------
    def compute_shortlist(
        self,
        brief_id: str,
        min_score: Optional[float] = None,
        max_results: Optional[int] = None,
        widen: bool = False,
        force_recompute: bool = False,
    ) -> Envelope:
        def op() -> Envelope:
            with self._unit() as (s, _):
                config = config_store.get_config_snapshot(s)
                return compute_shortlist(
                    s, brief_id, self.candidate_pool(s), config,
                    now=self.clock(), min_score=min_score, max_results=max_results,
                    widen=bool(widen), force_recompute=bool(force_recompute),
                )

        return self._run("compute_shortlist", op, brief_id)

    def generate_rationale(self, brief_id: str) -> Envelope:
        def op() -> Envelope:
            with self._unit() as (s, _):
                config = config_store.get_config_snapshot(s)
                shortlist = compute_shortlist(s, brief_id, self.candidate_pool(s), config, now=self.clock())
                brief = crud.get_brief(s, brief_id)
                results = shortlist["candidates"]
                profiles = crud.get_candidates(s, [r["candidate_id"] for r in results])
                out = generate_rationale(brief, results, profiles, llm=self.llm_factory())
                return {"status": "ok", "brief_id": brief_id, **out}

        return self._run("generate_rationale", op, brief_id)

    # ---------- invitations ----------
    def send_invitations(
        self, brief_id: str, candidate_ids: Optional[List[str]] = None, max_invites: Optional[int] = None
    ) -> Envelope:
        def op() -> Envelope:
            now = self.clock()
            with self._unit() as (s, outbox):
                config = config_store.get_config_snapshot(s)
                if candidate_ids is None and crud.latest_snapshot(s, brief_id) is None:
                    compute_shortlist(s, brief_id, self.candidate_pool(s), config, now=now)
                return self._manager(s, outbox, config).send_invitations(
                    brief_id, candidate_ids, max_invites, now=now
                )

        return self._run("send_invitations", op, brief_id)

    def respond_to_invitation(self, invitation_id: str, response: str) -> Envelope:
        def op() -> Envelope:
            with self._unit() as (s, outbox):
                config = config_store.get_config_snapshot(s)
                return self._manager(s, outbox, config).respond(invitation_id, response, now=self.clock())

        return self._run("respond_to_invitation", op)

    def mark_viewed(self, invitation_id: str) -> Envelope:
        def op() -> Envelope:
            with self._unit() as (s, outbox):
                config = config_store.get_config_snapshot(s)
                return self._manager(s, outbox, config).mark_viewed(invitation_id, now=self.clock())

        return self._run("mark_viewed", op)

    def sweep_expired_invitations(self) -> Envelope:
        def op() -> Envelope:
            with self._unit() as (s, outbox):
                config = config_store.get_config_snapshot(s)
                return self._manager(s, outbox, config).sweep_expired(now=self.clock())

        return self._run("sweep_expired_invitations", op)

    def create_project_from_acceptance(self, invitation_id: str) -> Envelope:
        def op() -> Envelope:
            with self._unit() as (s, outbox):
                config = config_store.get_config_snapshot(s)
                return self._manager(s, outbox, config).create_project_from_acceptance(
                    invitation_id, now=self.clock()
                )

        return self._run("create_project_from_acceptance", op)

    # ---------- automation ----------
    def auto_match_pending(self) -> Envelope:
        """
        Shortlist and invite every recent `submitted` brief that was never matched.
        Each brief is its own unit of work; one failure does not stop the rest.
        """
        def op() -> Envelope:
            now = self.clock()
            with session_scope(self.session_factory) as s:
                window = int(config_store.get_config_snapshot(s)["settings"].get("auto_match_window_hours", 48))
                brief_ids = [b.id for b in crud.list_pending_briefs(s, now - timedelta(hours=window))]

            processed = matched = sent = 0
            failed: List[str] = []
            for brief_id in brief_ids:
                processed += 1
                with logger.contextualize(brief_id=brief_id):
                    try:
                        with self._unit() as (s, outbox):
                            config = config_store.get_config_snapshot(s)
                            shortlist = compute_shortlist(s, brief_id, self.candidate_pool(s), config, now=now)
                            if not shortlist["candidates"]:
                                continue
                            matched += 1
                            res = self._manager(s, outbox, config).send_invitations(brief_id, now=now)
                            sent += int(res.get("invitations_sent") or 0)
                    except Exception:
                        logger.exception("auto-match failed for {}", brief_id)
                        failed.append(brief_id)

            logger.info("auto-match processed {} briefs, matched {}, sent {} invitations", processed, matched, sent)
            return {"status": "ok", "processed": processed, "matched": matched, "invitations_sent": sent, "failed": failed}

        return self._run("auto_match_pending", op)

    # ---------- configuration ----------
    @staticmethod
    def _config_view(config: ConfigSnapshot) -> Envelope:
        return {
            "status": "ok",
            "version": config["version"],
            "weights": config["weights"],
            "normalized_weights": {f: round(v, 4) for f, v in normalize_weights(config["weights"]).items()},
            "tool_synonyms": config["tool_synonyms"],
            "industry_synonyms": config["industry_synonyms"],
            "settings": config["settings"],
        }

    def get_weights(self) -> Envelope:
        def op() -> Envelope:
            with session_scope(self.session_factory) as s:
                return self._config_view(config_store.get_config_snapshot(s))

        return self._run("get_weights", op)

    def update_weights(
        self,
        weights: Optional[Mapping[str, Any]] = None,
        tool_synonyms: Optional[Mapping[str, Any]] = None,
        industry_synonyms: Optional[Mapping[str, Any]] = None,
        settings: Optional[Mapping[str, Any]] = None,
        updated_by: Optional[str] = None,
        note: Optional[str] = None,
    ) -> Envelope:
        def op() -> Envelope:
            with session_scope(self.session_factory) as s:
                config = config_store.update_config(
                    s, weights, tool_synonyms, industry_synonyms, settings,
                    created_by=updated_by, note=note, now=self.clock(),
                )
                return self._config_view(config)

        return self._run("update_weights", op)

    def rollback_config(self, version: int, updated_by: Optional[str] = None) -> Envelope:
        def op() -> Envelope:
            with session_scope(self.session_factory) as s:
                config = config_store.rollback_config(s, version, created_by=updated_by, now=self.clock())
                return self._config_view(config)

        return self._run("rollback_config", op)

    def list_config_versions(self) -> Envelope:
        def op() -> Envelope:
            with session_scope(self.session_factory) as s:
                return {"status": "ok", "versions": config_store.list_versions(s)}

        return self._run("list_config_versions", op)

    # ---------- reads ----------
    def brief_overview(self, brief_id: str) -> Envelope:
        """Brief status, invitations and audit trail in one read."""
        def op() -> Envelope:
            with session_scope(self.session_factory) as s:
                brief = crud.get_brief(s, brief_id)
                if brief is None:
                    raise NotFoundError(f"brief {brief_id} not found")
                return {
                    "status": "ok",
                    "brief_id": brief.id,
                    "brief_status": brief.status,
                    "rollover_count": brief.rollover_count,
                    "allocated_candidate_id": brief.allocated_candidate_id,
                    "project_id": brief.project_id,
                    "invitations": [
                        {
                            "invitation_id": i.id,
                            "candidate_id": i.candidate_id,
                            "status": i.status,
                            "source": i.source,
                            "round": i.round,
                            "score_at_invite": i.score_at_invite,
                            "decline_reason": i.decline_reason,
                            "sent_at": iso(i.sent_at),
                            "expires_at": iso(i.expires_at),
                            "viewed_at": iso(i.viewed_at),
                            "responded_at": iso(i.responded_at),
                        }
                        for i in crud.invitations_for_brief(s, brief_id)
                    ],
                    "events": [
                        {"type": e.type, "payload": e.payload, "at": iso(e.created_at)}
                        for e in crud.events_for_brief(s, brief_id)
                    ],
                }

        return self._run("brief_overview", op, brief_id)


__all__ = ["MatchingEngine", "error_envelope"]
