import logging
import time
from typing import Callable, Iterable

from backend.errors import InternalError, SessionEndedError
from backend.models import AttendanceRecord, EntryStatus, FinalStatus, Session
from backend.services.repository import Repository
from database.db import ATTENDANCE, Conflict, EntityExists, EntityStore

logger = logging.getLogger(__name__)

_WRITE_ATTEMPTS = 5


def final_status_for(record: AttendanceRecord, *, exit_required: bool = True) -> FinalStatus:
    """
    Fold one student's entry/exit/early-leave signals into a final status.

    The rules overlap in the raw data, so their order is the precedence.
    """
    if record.early_leave_at is not None:
        return FinalStatus.EARLY_LEAVE
    if record.entry_status is not None and not record.exit_verified and exit_required:
        return FinalStatus.LEFT_EARLY
    if record.entry_status == EntryStatus.LATE_ENTRY:
        return FinalStatus.LATE
    if record.entry_status == EntryStatus.PRESENT_ENTRY:
        return FinalStatus.PRESENT
    return FinalStatus.ABSENT


class AttendanceBook:
    def __init__(self, store: EntityStore, *, clock: Callable[[], float] = time.time):
        self.repo = Repository(store, ATTENDANCE, AttendanceRecord)
        self.clock = clock

    def get(self, session_id: str, student_id: str) -> AttendanceRecord | None:
        return self.repo.get(session_id, student_id)

    def list_records(self, session_id: str) -> list[AttendanceRecord]:
        return self.repo.list_partition(session_id)

    def _mutate(
        self,
        session_id: str,
        student_id: str,
        change: Callable[[AttendanceRecord], bool],
        *,
        allow_finalized: bool = False,
    ) -> AttendanceRecord:
        for _ in range(_WRITE_ATTEMPTS):
            record = self.repo.get(session_id, student_id)
            if record is None:
                record = AttendanceRecord(session_id=session_id, student_id=student_id)
                change(record)
                try:
                    return self.repo.insert(session_id, student_id, record)
                except EntityExists:
                    continue
            if record.final_status is not None and not allow_finalized:
                raise SessionEndedError("Attendance for this session is already finalized.")
            if not change(record):
                return record
            try:
                return self.repo.update(session_id, student_id, record)
            except Conflict:
                continue
        raise InternalError(
            "Attendance record kept changing during update.",
            {"session_id": session_id, "student_id": student_id},
        )

    def mark_entry(self, session_id: str, student_id: str, status: EntryStatus) -> AttendanceRecord:
        now = self.clock()

        def change(record: AttendanceRecord) -> bool:
            # First credited entry wins.
            if record.entry_status is not None:
                return False
            record.entry_status = status
            record.entry_at = now
            return True

        return self._mutate(session_id, student_id, change)

    def mark_exit_verified(self, session_id: str, student_id: str) -> AttendanceRecord:
        now = self.clock()

        def change(record: AttendanceRecord) -> bool:
            if record.exit_verified:
                return False
            record.exit_verified = True
            record.exit_verified_at = now
            return True

        return self._mutate(session_id, student_id, change)

    def mark_early_leave(self, session_id: str, student_id: str) -> AttendanceRecord:
        now = self.clock()

        def change(record: AttendanceRecord) -> bool:
            if record.early_leave_at is not None:
                return False
            record.early_leave_at = now
            return True

        return self._mutate(session_id, student_id, change)

    def finalize(self, session: Session, roster: Iterable[str] = ()) -> list[AttendanceRecord]:
        """
        Compute and store final statuses for every record in the session.

        Students on the roster without any record are written as ABSENT.
        Re-running over the same records produces the same statuses.
        """
        results: dict[str, AttendanceRecord] = {}
        student_ids = [r.student_id for r in self.repo.list_partition(session.session_id)]
        for student_id in list(dict.fromkeys([*student_ids, *roster])):

            def change(record: AttendanceRecord) -> bool:
                status = final_status_for(record, exit_required=session.exit_required)
                if record.final_status == status:
                    return False
                record.final_status = status
                return True

            results[student_id] = self._mutate(session.session_id, student_id, change, allow_finalized=True)

        logger.info("Finalized %d attendance records for session %s", len(results), session.session_id)
        return list(results.values())
