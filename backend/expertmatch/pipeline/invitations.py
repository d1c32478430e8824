# backend/expertmatch/pipeline/invitations.py
"""
Invitation lifecycle.

    sent -> accepted | declined | expired

InvitationManager works inside one unit of work (one Session) and never commits.
Every state change is a conditional write so concurrent callers agree on one
winner:

- creation: INSERT ... ON CONFLICT DO NOTHING on UNIQUE(brief_id, candidate_id)
- response: UPDATE ... WHERE status='sent' AND expires_at > now
- expiry:   UPDATE ... WHERE status='sent'
- rollover: UPDATE briefs ... WHERE rollover_count = <seen>
- allocation: UPDATE briefs ... WHERE allocated_candidate_id IS NULL

Losing a race is not an error: the loser logs a warning and returns a no-op result.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional

from loguru import logger
from sqlalchemy.orm import Session

from ..core.config import ADMIN_USER_ID
from ..core.errors import InputError, NotFoundError
from ..core.utils import iso
from ..db import crud
from ..db.models import Brief, Invitation
from .gateways import NotificationOutbox, ProjectGateway
from .state import (
    ALREADY_ALLOCATED,
    BriefStatus,
    ConfigSnapshot,
    InvitationStatus,
)

RESPONSES = (InvitationStatus.ACCEPTED.value, InvitationStatus.DECLINED.value)

# statuses from which sending (more) invitations moves a brief to invitations_sent
_INVITABLE_FROM = (
    BriefStatus.SUBMITTED.value,
    BriefStatus.MATCHED.value,
    BriefStatus.INVITATIONS_SENT.value,
    BriefStatus.NEEDS_MORE_EXPERTS.value,
    BriefStatus.NEEDS_MANUAL_REVIEW.value,
)
_CLOSED = (BriefStatus.PROJECT_CREATED.value, BriefStatus.ARCHIVED.value)


def _noop(message: str, **extra: Any) -> Dict[str, Any]:
    return {"status": "ignored", "message": message, **extra}


class InvitationManager:
    def __init__(
        self,
        session: Session,
        config: ConfigSnapshot,
        outbox: NotificationOutbox,
        projects: Optional[ProjectGateway] = None,
        admin_user_id: str = ADMIN_USER_ID,
    ):
        self.session = session
        self.config = config
        self.settings = dict(config.get("settings") or {})
        self.outbox = outbox
        self.projects = projects
        self.admin_user_id = admin_user_id

    # ---------- helpers ----------
    def _brief(self, brief_id: str) -> Brief:
        brief = crud.get_brief(self.session, brief_id, fresh=True)
        if brief is None:
            raise NotFoundError(f"brief {brief_id} not found")
        return brief

    def _invitation(self, invitation_id: str) -> Invitation:
        inv = crud.get_invitation(self.session, invitation_id, fresh=True)
        if inv is None:
            raise NotFoundError(f"invitation {invitation_id} not found")
        return inv

    def _sla(self) -> timedelta:
        return timedelta(hours=int(self.settings.get("sla_hours", 24)))

    def _needs_more_experts(self, brief: Brief, now: datetime) -> bool:
        """invitations_sent -> needs_more_experts once every invitee has declined."""
        moved = crud.advance_brief_status(
            self.session, brief.id, (BriefStatus.INVITATIONS_SENT.value,), BriefStatus.NEEDS_MORE_EXPERTS.value, now=now
        )
        if moved:
            crud.log_event(self.session, brief.id, "needs_more_experts", {}, at=now)
            self.outbox.queue(
                brief.client_user_id, "needs_more_experts", "Looking for more experts",
                "All invited experts declined. We are finding more matches.", brief.id,
            )
        return moved

    def _insert_batch(
        self,
        brief: Brief,
        candidate_ids: Iterable[str],
        scores: Dict[str, float],
        *,
        source: str,
        round_: int,
        now: datetime,
    ) -> Dict[str, Any]:
        expires_at = now + self._sla()
        already = crud.invited_candidate_ids(self.session, brief.id)
        sent: List[Dict[str, str]] = []
        skipped: List[str] = []
        for cid in candidate_ids:
            if cid in already:
                logger.warning("candidate {} already invited to {}; skipped", cid, brief.id)
                skipped.append(cid)
                continue
            inv_id = crud.insert_invitation_if_absent(
                self.session,
                {
                    "brief_id": brief.id,
                    "candidate_id": cid,
                    "status": InvitationStatus.SENT.value,
                    "source": source,
                    "round": round_,
                    "score_at_invite": scores.get(cid),
                    "sent_at": now,
                    "expires_at": expires_at,
                },
            )
            if inv_id is None:
                logger.warning("concurrent invite for candidate {} on {}; skipped", cid, brief.id)
                skipped.append(cid)
                continue
            already.add(cid)
            sent.append({"candidate_id": cid, "invitation_id": inv_id})
            self.outbox.queue(
                cid,
                "invitation",
                "New project invitation",
                f"You have been invited to a brief: {brief.goal[:120]}. Please respond within {self._sla().total_seconds() / 3600:g} hours.",
                inv_id,
            )
        return {"sent": sent, "skipped": skipped, "expires_at": expires_at}

    # ---------- creation ----------
    def send_invitations(
        self,
        brief_id: str,
        candidate_ids: Optional[List[str]] = None,
        max_invites: Optional[int] = None,
        *,
        now: datetime,
    ) -> Dict[str, Any]:
        """
        candidate_ids=None invites the top of the latest shortlist snapshot;
        an explicit list is an admin override and may name any known candidate.
        """
        brief = self._brief(brief_id)
        cap = int(self.settings.get("max_invites", 5) if max_invites is None else max_invites)
        if cap < 1:
            raise InputError("max_invites must be a positive integer")

        if brief.allocated_candidate_id or brief.status in _CLOSED:
            logger.warning("brief {} is {}; no invitations sent", brief_id, brief.status)
            return _noop(
                f"brief is {brief.status}",
                invitations_sent=0, expires_at=None, sent_to=[], skipped=list(candidate_ids or []),
            )

        snap = crud.latest_snapshot(self.session, brief_id)
        scores = {r.candidate_id: r.score for r in snap.results} if snap else {}

        skipped: List[str] = []
        if candidate_ids is None:
            if snap is None:
                raise InputError("no shortlist computed for this brief yet")
            source = "shortlist"
            ids = [r.candidate_id for r in snap.results[: snap.max_results]]
        else:
            if not isinstance(candidate_ids, (list, tuple)) or not all(isinstance(c, str) for c in candidate_ids):
                raise InputError("candidate_ids must be a list of strings")
            source = "admin"
            requested = list(dict.fromkeys(c.strip() for c in candidate_ids if c.strip()))
            known = crud.known_candidate_ids(self.session, requested)
            for cid in requested:
                if cid not in known:
                    logger.warning("unknown candidate {} skipped for {}", cid, brief_id)
                    skipped.append(cid)
            ids = [c for c in requested if c in known]

        batch = self._insert_batch(brief, ids[:cap], scores, source=source, round_=brief.rollover_count, now=now)
        skipped += batch["skipped"] + ids[cap:]

        if batch["sent"]:
            crud.advance_brief_status(self.session, brief_id, _INVITABLE_FROM, BriefStatus.INVITATIONS_SENT.value, now=now)
            crud.log_event(
                self.session, brief_id, "invitations_sent",
                {"source": source, "candidates": [s["candidate_id"] for s in batch["sent"]], "expires_at": iso(batch["expires_at"])},
                at=now,
            )
            logger.info("sent {} invitations for {}", len(batch["sent"]), brief_id)

        return {
            "status": "ok",
            "brief_id": brief_id,
            "invitations_sent": len(batch["sent"]),
            "expires_at": iso(batch["expires_at"]) if batch["sent"] else None,
            "sent_to": batch["sent"],
            "skipped": skipped,
        }

    # ---------- responses ----------
    def respond(self, invitation_id: str, response: str, *, now: datetime) -> Dict[str, Any]:
        response = (response or "").strip().lower()
        if response not in RESPONSES:
            raise InputError(f"response must be one of {', '.join(RESPONSES)}")
        inv = self._invitation(invitation_id)

        ok = crud.cas_invitation_status(
            self.session, inv.id, InvitationStatus.SENT.value, response,
            not_expired_at=now, responded_at=now,
        )
        if not ok:
            inv = self._invitation(invitation_id)
            reason = "invitation has expired" if inv.status == InvitationStatus.SENT.value else f"invitation is already {inv.status}"
            logger.warning("response {} to invitation {} ignored: {}", response, invitation_id, reason)
            return _noop(reason, invitation_id=invitation_id, invitation_status=inv.status)

        brief = self._brief(inv.brief_id)
        out: Dict[str, Any] = {"status": "ok", "invitation_id": invitation_id, "invitation_status": response}

        if response == InvitationStatus.ACCEPTED.value:
            days = int(self.settings.get("draft_quote_validity_days", 7))
            quote = crud.create_draft_quote(self.session, inv, now + timedelta(days=days))
            out["draft_quote_id"] = quote.id
            crud.log_event(self.session, brief.id, "invitation_accepted", {"invitation_id": inv.id, "candidate_id": inv.candidate_id, "quote_id": quote.id}, at=now)
            self.outbox.queue(
                brief.client_user_id, "expert_accepted", "An expert accepted your brief",
                "An invited expert accepted and is preparing a quote.", brief.id,
            )
        else:
            crud.log_event(self.session, brief.id, "invitation_declined", {"invitation_id": inv.id, "candidate_id": inv.candidate_id}, at=now)
            if crud.count_active_invitations(self.session, brief.id) == 0 and not brief.allocated_candidate_id:
                self._needs_more_experts(brief, now)
        logger.info("invitation {} {}", invitation_id, response)
        return out

    def mark_viewed(self, invitation_id: str, *, now: datetime) -> Dict[str, Any]:
        inv = self._invitation(invitation_id)
        updated = crud.mark_invitation_viewed(self.session, inv.id, now)
        if updated:
            crud.log_event(self.session, inv.brief_id, "invitation_viewed", {"invitation_id": inv.id}, at=now)
        inv = self._invitation(invitation_id)
        return {"status": "ok", "invitation_id": invitation_id, "viewed_at": iso(inv.viewed_at), "updated": updated}

    # ---------- sweep / rollover ----------
    def sweep_expired(self, *, now: datetime) -> Dict[str, Any]:
        """Expire overdue `sent` invitations, then roll over briefs left with nothing active."""
        expired = 0
        touched: List[str] = []
        for inv in crud.find_expired_candidates(self.session, now):
            if not crud.cas_invitation_status(self.session, inv.id, InvitationStatus.SENT.value, InvitationStatus.EXPIRED.value):
                # answered or expired by someone else since we read it
                continue
            expired += 1
            crud.log_event(self.session, inv.brief_id, "invitation_expired", {"invitation_id": inv.id, "candidate_id": inv.candidate_id}, at=now)
            if inv.brief_id not in touched:
                touched.append(inv.brief_id)
        # briefs left in invitations_sent with nothing active: a concurrent sweep
        # expired their last invitation, or their last declines committed together
        for brief_id in crud.stranded_brief_ids(self.session):
            if brief_id in touched:
                continue
            brief = self._brief(brief_id)
            if crud.has_expired_invitation(self.session, brief_id, brief.rollover_count):
                touched.append(brief_id)
            elif self._needs_more_experts(brief, now):
                logger.info("brief {} had only declines left; moved to needs_more_experts", brief_id)

        rolled_over: Dict[str, List[str]] = {}
        manual_review: List[str] = []
        for brief_id in touched:
            outcome = self.rollover(brief_id, now=now)
            if outcome.get("exhausted"):
                manual_review.append(brief_id)
            elif outcome.get("sent_to"):
                rolled_over[brief_id] = [s["candidate_id"] for s in outcome["sent_to"]]

        if expired:
            logger.info("expired {} invitations across {} briefs", expired, len(touched))
        return {"status": "ok", "expired_count": expired, "rolled_over": rolled_over, "manual_review": manual_review}

    def rollover(self, brief_id: str, *, now: datetime) -> Dict[str, Any]:
        brief = self._brief(brief_id)
        if brief.allocated_candidate_id or brief.status in _CLOSED:
            logger.warning("rollover skipped for {}: brief is {}", brief_id, brief.status)
            return _noop(f"brief is {brief.status}")
        if crud.count_active_invitations(self.session, brief_id) > 0:
            return _noop("brief still has active invitations")

        seen = brief.rollover_count
        if not crud.cas_brief_rollover(self.session, brief_id, seen, now):
            logger.info("rollover round {} for {} already claimed", seen + 1, brief_id)
            return _noop("rollover already performed")

        snap = crud.latest_snapshot(self.session, brief_id)
        invited = crud.invited_candidate_ids(self.session, brief_id)
        batch_size = int(self.settings.get("rollover_batch_size", 2))
        untried = [
            r for r in (snap.results if snap else [])
            if r.candidate_id not in invited and r.score >= snap.min_score
        ][:batch_size]

        if not untried:
            crud.advance_brief_status(self.session, brief_id, _INVITABLE_FROM, BriefStatus.NEEDS_MANUAL_REVIEW.value, now=now)
            crud.log_event(self.session, brief_id, "rollover_exhausted", {"round": seen + 1}, at=now)
            self.outbox.queue(
                self.admin_user_id, "rollover_exhausted", "Brief needs manual review",
                f"No untried candidates left for brief {brief_id}.", brief_id,
            )
            logger.warning("rollover exhausted for {}; needs manual review", brief_id)
            return {"status": "ok", "exhausted": True, "sent_to": []}

        scores = {r.candidate_id: r.score for r in untried}
        batch = self._insert_batch(
            brief, [r.candidate_id for r in untried], scores, source="rollover", round_=seen + 1, now=now
        )
        if batch["sent"]:
            crud.advance_brief_status(self.session, brief_id, _INVITABLE_FROM, BriefStatus.INVITATIONS_SENT.value, now=now)
        crud.log_event(
            self.session, brief_id, "rollover",
            {"round": seen + 1, "candidates": [s["candidate_id"] for s in batch["sent"]]},
            at=now,
        )
        logger.info("rollover round {} for {} invited {}", seen + 1, brief_id, len(batch["sent"]))
        return {"status": "ok", "exhausted": False, "sent_to": batch["sent"], "expires_at": iso(batch["expires_at"])}

    # ---------- allocation ----------
    def create_project_from_acceptance(self, invitation_id: str, *, now: datetime) -> Dict[str, Any]:
        if self.projects is None:
            raise RuntimeError("no project gateway configured")
        inv = self._invitation(invitation_id)
        brief = self._brief(inv.brief_id)

        if brief.allocated_candidate_id:
            return self._already_allocated(brief, inv)
        if brief.status == BriefStatus.ARCHIVED.value:
            logger.warning("brief {} is archived; no project created", brief.id)
            return _noop("brief is archived")
        if inv.status != InvitationStatus.ACCEPTED.value:
            raise InputError(f"invitation is {inv.status}; only accepted invitations can become projects")

        if not crud.cas_brief_allocation(self.session, brief.id, inv.candidate_id, now):
            return self._already_allocated(self._brief(inv.brief_id), inv)

        project_id = self.projects.create_project(brief.id, inv.candidate_id)
        crud.update_brief(self.session, brief.id, now=now, project_id=project_id)
        declined = crud.decline_other_invitations(self.session, brief.id, inv.id, ALREADY_ALLOCATED, now)
        crud.log_event(
            self.session, brief.id, "project_created",
            {"project_id": project_id, "invitation_id": inv.id, "candidate_id": inv.candidate_id, "declined_others": declined},
            at=now,
        )
        self.outbox.queue(inv.candidate_id, "project_created", "Project started", "Your quote was accepted and a project was created.", project_id)
        self.outbox.queue(brief.client_user_id, "project_created", "Project created", "Your project is ready to start.", project_id)
        logger.info("brief {} allocated to {}; declined {} other invitations", brief.id, inv.candidate_id, declined)
        return {"status": "ok", "project_id": project_id, "created": True, "declined_others": declined}

    def _already_allocated(self, brief: Brief, inv: Invitation) -> Dict[str, Any]:
        if brief.allocated_candidate_id == inv.candidate_id and brief.project_id:
            return {"status": "ok", "project_id": brief.project_id, "created": False, "declined_others": 0}
        logger.warning("brief {} already allocated to {}", brief.id, brief.allocated_candidate_id)
        return _noop(ALREADY_ALLOCATED, project_id=brief.project_id)

    # ---------- archive ----------
    def archive(self, brief_id: str, *, now: datetime) -> Dict[str, Any]:
        brief = self._brief(brief_id)
        if brief.status == BriefStatus.ARCHIVED.value:
            return _noop("brief is already archived", brief_id=brief_id)
        crud.update_brief(self.session, brief_id, now=now, status=BriefStatus.ARCHIVED.value)
        crud.log_event(self.session, brief_id, "brief_archived", {"previous_status": brief.status}, at=now)
        return {"status": "ok", "brief_id": brief_id, "brief_status": BriefStatus.ARCHIVED.value}


__all__ = ["InvitationManager", "RESPONSES"]
