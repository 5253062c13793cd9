import logging
import time
import uuid
from typing import Callable

from backend.config import AppConfig
from backend.errors import (
    AuthorizationError,
    InsufficientStudentsError,
    InternalError,
    InvalidStateError,
    NotFoundError,
    SessionEndedError,
    ValidationError,
)
from backend.models import (
    AttendanceRecord,
    Caller,
    Chain,
    ChainPhase,
    ChainState,
    Enrollment,
    Role,
    Session,
    SessionConstraints,
    SessionStatus,
    Token,
    TokenStatus,
    TokenType,
)
from backend.services.attendance import AttendanceBook
from backend.services.chains import ChainMachine
from backend.services.repository import Repository
from backend.services.tokens import TokenManager
from database.db import (
    ENROLLMENTS,
    SESSION_PARTITION,
    SESSIONS,
    Conflict,
    EntityExists,
    EntityStore,
    ScanLogRow,
)

logger = logging.getLogger(__name__)

_WRITE_ATTEMPTS = 5


class SessionService:
    """Teacher-facing session controls and student join."""

    def __init__(
        self,
        store: EntityStore,
        config: AppConfig,
        tokens: TokenManager,
        chains: ChainMachine,
        attendance: AttendanceBook,
        *,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.config = config
        self.repo = Repository(store, SESSIONS, Session)
        self.enrollments = Repository(store, ENROLLMENTS, Enrollment)
        self.tokens = tokens
        self.chains = chains
        self.attendance = attendance
        self.clock = clock

    # -----------------------------
    # Lookup / authorization
    # -----------------------------
    def get(self, session_id: str) -> Session | None:
        return self.repo.get(SESSION_PARTITION, session_id)

    def require(self, session_id: str) -> Session:
        session = self.get(session_id)
        if session is None:
            raise NotFoundError("Session not found.", {"session_id": session_id})
        return session

    def require_owned(self, caller: Caller, session_id: str) -> Session:
        if caller.role != Role.TEACHER:
            raise AuthorizationError("Teacher role required.")
        session = self.require(session_id)
        if session.teacher_id != caller.user_id:
            raise AuthorizationError("Unauthorized: You do not own this session.")
        return session

    def require_active(self, caller: Caller, session_id: str) -> Session:
        session = self.require_owned(caller, session_id)
        if session.status != SessionStatus.ACTIVE:
            raise SessionEndedError()
        return session

    def list_for_teacher(self, caller: Caller) -> list[Session]:
        if caller.role != Role.TEACHER:
            raise AuthorizationError("Teacher role required.")
        sessions = [s for s in self.repo.list_partition(SESSION_PARTITION) if s.teacher_id == caller.user_id]
        return sorted(sessions, key=lambda s: s.start_at, reverse=True)

    def _update(self, session: Session, change: Callable[[Session], None]) -> Session:
        for _ in range(_WRITE_ATTEMPTS):
            change(session)
            try:
                return self.repo.update(SESSION_PARTITION, session.session_id, session)
            except Conflict:
                session = self.require(session.session_id)
        raise InternalError("Session kept changing during update.", {"session_id": session.session_id})

    # -----------------------------
    # Lifecycle
    # -----------------------------
    def create(
        self,
        caller: Caller,
        *,
        class_id: str,
        start_at: float,
        end_at: float,
        late_cutoff_minutes: int,
        exit_window_minutes: int = 10,
        owner_transfer: bool | None = None,
        exit_required: bool = True,
        chain_token_ttl_seconds: int | None = None,
        constraints: SessionConstraints | None = None,
    ) -> Session:
        if caller.role != Role.TEACHER:
            raise AuthorizationError("Teacher role required.")
        class_id = class_id.strip()
        if not class_id:
            raise ValidationError("Class ID is required.")
        if end_at <= start_at:
            raise ValidationError("Session end must be after its start.")
        if late_cutoff_minutes < 0 or exit_window_minutes < 0:
            raise ValidationError("Minute windows cannot be negative.")

        session = Session(
            session_id=str(uuid.uuid4()),
            class_id=class_id,
            teacher_id=caller.user_id,
            start_at=start_at,
            end_at=end_at,
            late_cutoff_minutes=late_cutoff_minutes,
            exit_window_minutes=exit_window_minutes,
            owner_transfer=self.config.owner_transfer if owner_transfer is None else owner_transfer,
            exit_required=exit_required,
            chain_token_ttl_seconds=chain_token_ttl_seconds or self.config.chain_token_ttl_seconds,
            constraints=constraints,
            created_at=self.clock(),
        )
        self.repo.insert(SESSION_PARTITION, session.session_id, session)
        logger.info("Session %s created for class %s by %s", session.session_id, class_id, caller.user_id)
        return session

    def join(self, caller: Caller, session_id: str) -> Enrollment:
        if caller.role != Role.STUDENT:
            raise AuthorizationError("Student role required.")
        session = self.require(session_id)
        if session.status != SessionStatus.ACTIVE:
            raise SessionEndedError()
        existing = self.enrollments.get(session_id, caller.user_id)
        if existing:
            return existing
        enrollment = Enrollment(session_id=session_id, student_id=caller.user_id, joined_at=self.clock())
        try:
            return self.enrollments.insert(session_id, caller.user_id, enrollment)
        except EntityExists:
            return self.enrollments.get(session_id, caller.user_id) or enrollment

    def roster(self, session_id: str) -> list[str]:
        return [e.student_id for e in self.enrollments.list_partition(session_id)]

    def end(self, caller: Caller, session_id: str) -> list[AttendanceRecord]:
        session = self.require_active(caller, session_id)

        for _ in range(_WRITE_ATTEMPTS):
            if session.status == SessionStatus.ENDED:
                raise SessionEndedError()
            session.status = SessionStatus.ENDED
            session.ended_at = self.clock()
            session.late_entry_active = False
            session.early_leave_active = False
            try:
                session = self.repo.update(SESSION_PARTITION, session_id, session)
                break
            except Conflict:
                session = self.require(session_id)
        else:
            raise InternalError("Session kept changing while ending.", {"session_id": session_id})

        for token_id in (session.current_late_token_id, session.current_early_token_id):
            if token_id:
                self.tokens.revoke(session_id, token_id)
        for chain in self.chains.list_chains(session_id):
            if chain.state != ChainState.COMPLETED:
                self.chains.complete(session, chain.chain_id, credit_holder=False)

        logger.info("Session %s ended", session_id)
        return self._finalize(session)

    def finalize(self, caller: Caller, session_id: str) -> list[AttendanceRecord]:
        session = self.require_owned(caller, session_id)
        if session.status != SessionStatus.ENDED:
            raise InvalidStateError("Session has not ended yet.")
        return self._finalize(session)

    def _finalize(self, session: Session) -> list[AttendanceRecord]:
        records = self.attendance.finalize(session, self.roster(session.session_id))
        self._update(session, lambda s: setattr(s, "finalized_at", self.clock()))
        return records

    # -----------------------------
    # Rotating windows
    # -----------------------------
    def _start_window(self, caller: Caller, session_id: str, token_type: TokenType) -> Token:
        session = self.require_active(caller, session_id)
        late = token_type == TokenType.LATE_ENTRY
        if (session.late_entry_active if late else session.early_leave_active):
            raise InvalidStateError(f"{token_type.value.replace('_', ' ').title()} window is already active.")

        ttl = self.config.late_rotation_seconds if late else self.config.early_leave_rotation_seconds
        token = self.tokens.issue(session_id, token_type, ttl_seconds=ttl, single_use=False)

        def change(s: Session) -> None:
            if late:
                s.late_entry_active = True
                s.current_late_token_id = token.token_id
            else:
                s.early_leave_active = True
                s.current_early_token_id = token.token_id

        self._update(session, change)
        logger.info("%s window opened for session %s", token_type.value, session_id)
        return token

    def _stop_window(self, caller: Caller, session_id: str, token_type: TokenType) -> Session:
        session = self.require_active(caller, session_id)
        late = token_type == TokenType.LATE_ENTRY
        token_id = session.current_late_token_id if late else session.current_early_token_id

        def change(s: Session) -> None:
            if late:
                s.late_entry_active = False
                s.current_late_token_id = None
            else:
                s.early_leave_active = False
                s.current_early_token_id = None

        session = self._update(session, change)
        if token_id:
            self.tokens.revoke(session_id, token_id)
        logger.info("%s window closed for session %s", token_type.value, session_id)
        return session

    def start_late_entry(self, caller: Caller, session_id: str) -> Token:
        return self._start_window(caller, session_id, TokenType.LATE_ENTRY)

    def stop_late_entry(self, caller: Caller, session_id: str) -> Session:
        return self._stop_window(caller, session_id, TokenType.LATE_ENTRY)

    def start_early_leave(self, caller: Caller, session_id: str) -> Token:
        return self._start_window(caller, session_id, TokenType.EARLY_LEAVE)

    def stop_early_leave(self, caller: Caller, session_id: str) -> Session:
        return self._stop_window(caller, session_id, TokenType.EARLY_LEAVE)

    def current_rotating_token(self, caller: Caller, session_id: str, token_type: TokenType) -> Token:
        session = self.require_active(caller, session_id)
        late = token_type == TokenType.LATE_ENTRY
        active = session.late_entry_active if late else session.early_leave_active
        token_id = session.current_late_token_id if late else session.current_early_token_id
        if not active or not token_id:
            raise InvalidStateError("Window is not active.")
        token = self.tokens.get(session_id, token_id)
        if token is None or token.status != TokenStatus.ACTIVE:
            raise NotFoundError("No active token; it will be replaced on the next rotation.")
        return token

    # -----------------------------
    # Chains
    # -----------------------------
    def eligible_students(self, session_id: str, phase: ChainPhase) -> list[str]:
        if phase == ChainPhase.ENTRY:
            return self.roster(session_id)
        return [
            r.student_id
            for r in self.attendance.list_records(session_id)
            if r.entry_status is not None and r.early_leave_at is None
        ]

    def seed_chains(self, caller: Caller, session_id: str, phase: ChainPhase, count: int) -> list[Chain]:
        session = self.require_active(caller, session_id)
        if count <= 0 or count > self.config.max_chains_per_seed:
            raise ValidationError(f"Chain count must be between 1 and {self.config.max_chains_per_seed}.")
        chains = self.chains.seed(session, phase, self.eligible_students(session_id, phase), count)
        if phase == ChainPhase.EXIT and not session.exit_chain_started:
            self._update(session, lambda s: setattr(s, "exit_chain_started", True))
        return chains

    def reseed_chain(
        self, caller: Caller, session_id: str, chain_id: str, holder_id: str | None = None
    ) -> tuple[Chain, Token]:
        session = self.require_active(caller, session_id)
        chain = self.chains.require(session_id, chain_id)
        candidates = self.eligible_students(session_id, chain.phase)
        if holder_id is None:
            pool = [s for s in candidates if s != chain.last_holder] or candidates
            if not pool:
                raise InsufficientStudentsError("No eligible student to hold the reseeded chain.")
            holder_id = self.chains.rng.choice(pool)
        elif holder_id not in candidates:
            raise ValidationError("Student is not eligible to hold this chain.", {"student_id": holder_id})
        return self.chains.reseed(session, chain_id, holder_id)

    def close_chain(self, caller: Caller, session_id: str, chain_id: str) -> Chain:
        session = self.require_active(caller, session_id)
        return self.chains.complete(session, chain_id)

    def list_chains(self, caller: Caller, session_id: str) -> list[Chain]:
        self.require_owned(caller, session_id)
        return self.chains.list_chains(session_id)

    def chain_history(self, caller: Caller, session_id: str, chain_id: str) -> list[ScanLogRow]:
        self.require_owned(caller, session_id)
        self.chains.require(session_id, chain_id)
        return self.store.list_scan_logs(session_id, chain_id=chain_id)

    def holder_tokens(self, caller: Caller, session_id: str) -> list[Token]:
        if caller.role != Role.STUDENT:
            raise AuthorizationError("Student role required.")
        session = self.require(session_id)
        if session.status != SessionStatus.ACTIVE:
            raise SessionEndedError()
        return self.chains.holder_tokens(session, caller.user_id)

    # -----------------------------
    # Manual marks
    # -----------------------------
    def mark_exit(self, caller: Caller, session_id: str, student_id: str) -> AttendanceRecord:
        """Verify a student's exit by hand, for when the exit chain cannot reach them."""
        self.require_active(caller, session_id)
        if self.enrollments.get(session_id, student_id) is None and self.attendance.get(session_id, student_id) is None:
            raise NotFoundError("Student is not part of this session.", {"student_id": student_id})
        record = self.attendance.mark_exit_verified(session_id, student_id)
        self.chains.notifier.attendance_update(session_id, student_id, "EXIT_VERIFIED")
        logger.info("Exit for %s in session %s marked by %s", student_id, session_id, caller.user_id)
        return record

    # -----------------------------
    # Queries
    # -----------------------------
    def attendance_for(self, caller: Caller, session_id: str) -> list[AttendanceRecord]:
        self.require_owned(caller, session_id)
        return self.attendance.list_records(session_id)

    def my_attendance(self, caller: Caller, session_id: str) -> AttendanceRecord | None:
        self.require(session_id)
        return self.attendance.get(session_id, caller.user_id)

    def scan_logs(self, caller: Caller, session_id: str, limit: int = 500) -> list[ScanLogRow]:
        self.require_owned(caller, session_id)
        return self.store.list_scan_logs(session_id, limit=limit)
