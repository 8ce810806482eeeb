"""Durable scope-to-session bindings backed by SQLModel + SQLite."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime, timedelta
from pathlib import Path

from sqlalchemy import delete as sa_delete
from sqlmodel import Session, col, select

from agent_relay.sessions.models import AgentSession, Scope
from agent_relay.storage.alembic_runner import upgrade_head
from agent_relay.storage.common import as_utc, build_sqlite_engine, utc_now
from agent_relay.storage.sqlmodel_models import DIRECT_THREAD_KEY, AgentSessionRow

logger = logging.getLogger(__name__)


class SessionStateRepository:
    """Persistence facade for the ``agent_sessions`` table.

    Writes are whole-table read-modify-write from a single process; there is
    no cross-process locking.
    """

    def __init__(self, db_path: Path, *, busy_timeout_ms: int = 5_000) -> None:
        self.db_path = db_path
        self.engine = build_sqlite_engine(db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        upgrade_head(self.db_path)

    def load_all(self, *, retention_days: int, now: datetime | None = None) -> list[AgentSession]:
        """Load every binding saved within the retention window.

        Older rows are skipped, not deleted; a later ``save_all`` prunes them.
        """

        cutoff = (now or utc_now()) - timedelta(days=retention_days)
        sessions: list[AgentSession] = []
        skipped = 0
        with Session(self.engine) as session:
            rows = session.exec(select(AgentSessionRow)).all()
        for row in rows:
            saved_at = as_utc(row.saved_at)
            if saved_at < cutoff:
                skipped += 1
                continue
            sessions.append(_to_session(row, saved_at))
        if skipped:
            logger.info("Skipped %d session bindings older than %d days", skipped, retention_days)
        return sessions

    def load(self, scope: Scope) -> AgentSession | None:
        with Session(self.engine) as session:
            row = session.get(
                AgentSessionRow,
                (scope.principal_id, scope.conversation_id, scope.thread_key),
            )
        if row is None:
            return None
        return _to_session(row, as_utc(row.saved_at))

    def save_all(
        self,
        sessions: Iterable[AgentSession],
        *,
        retention_days: int | None = None,
        now: datetime | None = None,
    ) -> int:
        """Upsert bindings for the given sessions; returns rows written.

        Rows for scopes not passed in are kept (evicted scopes must stay
        resumable) unless they fall outside ``retention_days``.
        """

        saved_at = now or utc_now()
        rows = [
            AgentSessionRow(
                principal_id=item.scope.principal_id,
                conversation_id=item.scope.conversation_id,
                thread_key=item.scope.thread_key,
                session_id=item.session_id,
                last_marker=item.last_marker,
                working_directory=str(item.working_directory) if item.working_directory else None,
                saved_at=saved_at,
            )
            for item in sessions
            if item.session_id
        ]
        with Session(self.engine) as session:
            for row in rows:
                session.merge(row)
            if retention_days is not None:
                cutoff = saved_at - timedelta(days=retention_days)
                session.exec(  # type: ignore[call-overload]
                    sa_delete(AgentSessionRow).where(col(AgentSessionRow.saved_at) < cutoff),
                )
            session.commit()
        logger.debug("Saved %d session bindings to %s", len(rows), self.db_path)
        return len(rows)

    def delete(self, scope: Scope) -> bool:
        with Session(self.engine) as session:
            row = session.get(
                AgentSessionRow,
                (scope.principal_id, scope.conversation_id, scope.thread_key),
            )
            if row is None:
                return False
            session.delete(row)
            session.commit()
        return True

    def list_bindings(self) -> list[AgentSession]:
        """All stored bindings, most recently saved first, regardless of age."""

        with Session(self.engine) as session:
            rows = session.exec(
                select(AgentSessionRow).order_by(col(AgentSessionRow.saved_at).desc()),
            ).all()
        return [_to_session(row, as_utc(row.saved_at)) for row in rows]


def _to_session(row: AgentSessionRow, saved_at: datetime) -> AgentSession:
    return AgentSession(
        scope=Scope(
            principal_id=row.principal_id,
            conversation_id=row.conversation_id,
            thread_id=None if row.thread_key == DIRECT_THREAD_KEY else row.thread_key,
        ),
        session_id=row.session_id,
        last_marker=row.last_marker,
        last_activity=saved_at,
        working_directory=Path(row.working_directory) if row.working_directory else None,
    )
