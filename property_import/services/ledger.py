from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable, Sequence
from datetime import UTC, datetime

from ..db.property_store import PropertyStore, StoreError
from ..models.processing_result import SessionSummary
from ..models.session import ImportSession, RowOutcome, SessionStatus, UndoPreview, UndoResult

"""Import session ledger.

Every import run opens one ImportSession. Each created property is linked to
it, which makes the session the audit and undo boundary.

begin() and close() run in their own short transactions. record_outcome(s)
and record_batch_failure() must be called inside the batch transaction the
orchestrator already opened, so a rolled-back batch leaves no trace in the
ledger either.
"""

logger = logging.getLogger(__name__)

__all__ = [
    "LedgerError",
    "SessionNotFoundError",
    "SessionStateError",
    "UndoNotPermittedError",
    "ImportSessionLedger",
]


class LedgerError(Exception):
    pass


class SessionNotFoundError(LedgerError):
    pass


class SessionStateError(LedgerError):
    pass


class UndoNotPermittedError(LedgerError):
    pass


class ImportSessionLedger:
    def __init__(self, store: PropertyStore) -> None:
        self.store = store

    def _in_transaction(self, action, *args):
        self.store.begin()
        try:
            result = action(*args)
        except BaseException:
            self.store.rollback()
            raise
        self.store.commit()
        return result

    def begin(self, user_id: str, total_properties: int) -> str:
        session = ImportSession(
            session_id=str(uuid.uuid4()),
            user_id=user_id,
            created_at=datetime.now(UTC),
            total_properties=total_properties,
        )
        self._in_transaction(self.store.insert_session, session)
        logger.info("import session %s started (%d rows)", session.session_id, total_properties)
        return session.session_id

    def record_outcome(
        self, session_id: str, property_id: str | None, outcome: RowOutcome
    ) -> None:
        self.record_outcomes(session_id, [(property_id, outcome)])

    def record_outcomes(
        self,
        session_id: str,
        outcomes: Iterable[tuple[str | None, RowOutcome]],
    ) -> None:
        """Link created ids and bump counters (caller owns the transaction)."""
        created: list[str] = []
        counts = {RowOutcome.CREATED: 0, RowOutcome.SKIPPED: 0, RowOutcome.FAILED: 0}
        for property_id, outcome in outcomes:
            counts[outcome] += 1
            if outcome is RowOutcome.CREATED:
                if property_id is None:
                    raise LedgerError("created outcome without a property id")
                created.append(property_id)
        if created:
            self.store.link_session_properties(session_id, created)
        if any(counts.values()):
            self.store.add_session_counts(
                session_id,
                success=counts[RowOutcome.CREATED],
                error=counts[RowOutcome.FAILED],
                skipped=counts[RowOutcome.SKIPPED],
            )

    def record_batch_failure(self, session_id: str, count: int) -> None:
        """Charge ``count`` failed rows after a rolled-back batch."""
        if count <= 0:
            return
        self._in_transaction(self.store.add_session_counts, session_id, 0, count, 0)

    def close(
        self,
        session_id: str,
        summary: SessionSummary | None = None,
        status: SessionStatus = SessionStatus.COMPLETED,
    ) -> ImportSession:
        if status not in (SessionStatus.COMPLETED, SessionStatus.FAILED):
            raise SessionStateError(f"cannot close session with status {status.value}")
        session = self.get_session(session_id)
        if session.status is not SessionStatus.IN_PROGRESS:
            raise SessionStateError(
                f"session {session_id} is {session.status.value}, not in_progress"
            )
        self._in_transaction(self.store.set_session_status, session_id, status)
        closed = self.get_session(session_id)
        if summary is not None and closed.success_count != summary.successful:
            logger.warning(
                "session %s ledger success_count=%d differs from run successful=%d",
                session_id,
                closed.success_count,
                summary.successful,
            )
        logger.info("import session %s closed as %s", session_id, status.value)
        return closed

    def get_session(self, session_id: str) -> ImportSession:
        session = self.store.fetch_session(session_id)
        if session is None:
            raise SessionNotFoundError(f"import session not found: {session_id}")
        return session

    def list_sessions(self, user_id: str | None = None) -> list[ImportSession]:
        return self.store.fetch_sessions(user_id)

    def session_properties(self, session_id: str) -> Sequence[str]:
        self.get_session(session_id)
        return self.store.session_property_ids(session_id)

    def preview_undo(self, session_id: str) -> UndoPreview:
        session = self.get_session(session_id)
        owner = self.store.get_user_profile(session.user_id)
        return UndoPreview(
            session=session,
            owner_name=owner.full_name if owner else session.user_id,
            pending_count=self.store.count_active_session_properties(session_id),
        )

    @staticmethod
    def confirmation_message(preview: UndoPreview) -> str:
        created = preview.session.created_at.strftime("%d/%m/%Y %H:%M:%S")
        return (
            f"This will remove {preview.pending_count} properties imported by "
            f"{preview.owner_name} on {created}. This cannot be reversed."
        )

    def undo(self, session_id: str, actor_id: str) -> UndoResult:
        """Soft-delete every still-active property of the session.

        Raises:
            UndoNotPermittedError: actor is unknown or not an admin
            SessionNotFoundError: no such session
            SessionStateError: session is in progress or already undone
        """
        actor = self.store.get_user_profile(actor_id)
        if actor is None or not actor.is_admin:
            raise UndoNotPermittedError(f"user {actor_id} may not undo imports (admin only)")
        session = self.get_session(session_id)
        if not session.can_undo:
            raise SessionStateError(
                f"session {session_id} is {session.status.value}; only completed or failed "
                "sessions can be undone"
            )

        def _undo() -> int:
            # 事前チェック後に別プロセスが状態を変えている可能性がある
            locked = self.store.lock_session(session_id)
            if locked is None:
                raise SessionNotFoundError(f"import session not found: {session_id}")
            if not locked.can_undo:
                raise SessionStateError(
                    f"session {session_id} is {locked.status.value}; only completed or failed "
                    "sessions can be undone"
                )
            count = self.store.soft_delete_session_properties(session_id)
            self.store.set_session_status(session_id, SessionStatus.UNDONE)
            return count

        try:
            undone = self._in_transaction(_undo)
        except StoreError:
            logger.error("undo of session %s failed; nothing was changed", session_id)
            raise
        logger.info("import session %s undone by %s (%d properties)", session_id, actor_id, undone)
        return UndoResult(session_id=session_id, undone_count=undone)
