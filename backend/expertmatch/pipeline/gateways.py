# backend/expertmatch/pipeline/gateways.py
"""
Interfaces to the collaborators the engine calls, plus default SQL-backed versions.

- CandidatePool.list_active_candidates()
- Notifier.notify(user_id, type, title, message, related_id)
- ProjectGateway.create_project(brief_id, candidate_id) -> project id

Notifications are fire-and-forget: they are queued in a NotificationOutbox while
a unit of work runs and only emitted after it commits. A failing notifier is
logged and never undoes matching or invitation state.
"""

from __future__ import annotations

from typing import Callable, List, Optional, Protocol, Tuple

from loguru import logger
from sqlalchemy.orm import Session, sessionmaker

from ..db import crud
from ..db.models import Notification, Project
from ..db.session import session_scope
from .state import CandidateData


class CandidatePool(Protocol):
    def list_active_candidates(self) -> List[CandidateData]: ...


class Notifier(Protocol):
    def notify(self, user_id: str, type_: str, title: str, message: str, related_id: Optional[str] = None) -> None: ...


class ProjectGateway(Protocol):
    def create_project(self, brief_id: str, candidate_id: str) -> str: ...


# ---------- SQL defaults ----------
class SqlCandidatePool:
    def __init__(self, session: Session):
        self.session = session

    def list_active_candidates(self) -> List[CandidateData]:
        return crud.list_active_candidates(self.session)


class SqlProjectGateway:
    """Writes the project row inside the caller's transaction."""

    def __init__(self, session: Session):
        self.session = session

    def create_project(self, brief_id: str, candidate_id: str) -> str:
        brief = crud.get_brief(self.session, brief_id)
        title = (brief.goal if brief else "") or "Project"
        row = Project(
            brief_id=brief_id,
            candidate_id=candidate_id,
            client_user_id=brief.client_user_id if brief else None,
            title=title[:200],
            status="active",
        )
        self.session.add(row)
        self.session.flush()
        return row.id


class SqlNotifier:
    """Stores notifications in their own short transaction."""

    def __init__(self, session_factory: Optional[sessionmaker[Session]] = None):
        self.session_factory = session_factory

    def notify(self, user_id: str, type_: str, title: str, message: str, related_id: Optional[str] = None) -> None:
        with session_scope(self.session_factory) as s:
            s.add(Notification(user_id=user_id, type=type_, title=title, message=message, related_id=related_id))


# ---------- outbox ----------
Pending = Tuple[str, str, str, str, Optional[str]]


class NotificationOutbox:
    def __init__(self) -> None:
        self.pending: List[Pending] = []

    def queue(self, user_id: Optional[str], type_: str, title: str, message: str, related_id: Optional[str] = None) -> None:
        if not user_id:
            return
        self.pending.append((user_id, type_, title, message, related_id))

    def flush(self, notifier: Optional[Notifier]) -> int:
        """Emit everything queued; returns how many were delivered."""
        pending, self.pending = self.pending, []
        if notifier is None:
            return 0
        sent = 0
        for user_id, type_, title, message, related_id in pending:
            try:
                notifier.notify(user_id, type_, title, message, related_id)
                sent += 1
            except Exception:
                logger.exception("notification {} to {} failed; dropped", type_, user_id)
        return sent


PoolFactory = Callable[[Session], CandidatePool]
ProjectFactory = Callable[[Session], ProjectGateway]


__all__ = [
    "CandidatePool", "Notifier", "ProjectGateway",
    "SqlCandidatePool", "SqlProjectGateway", "SqlNotifier",
    "NotificationOutbox", "PoolFactory", "ProjectFactory",
]
