import logging
import time
from typing import Callable

from pydantic import BaseModel

from backend.errors import (
    AppError,
    AuthorizationError,
    IneligibleStudentError,
    InternalError,
    InvalidStateError,
    NotFoundError,
    SessionEndedError,
    ValidationError,
    token_failure_error,
)
from backend.models import (
    FLOW_BY_TOKEN_TYPE,
    RELAY_TOKEN_TYPES,
    Caller,
    ChainState,
    EntryStatus,
    Role,
    ScanFlow,
    ScanMetadata,
    Session,
    SessionStatus,
    Token,
    TokenType,
)
from backend.services.attendance import AttendanceBook
from backend.services.chains import ChainMachine
from backend.services.notifications import Notifier
from backend.services.repository import Repository
from backend.services.tokens import TokenManager
from backend.services.validators import RateLimiter, check_location
from database.db import SESSION_PARTITION, SESSIONS, EntityStore

logger = logging.getLogger(__name__)

SUCCESS = "SUCCESS"


class ScanReceipt(BaseModel):
    success: bool = True
    flow: ScanFlow
    session_id: str
    credited_student: str
    credited_status: str
    chain_id: str | None = None
    new_holder: str | None = None
    seq: int | None = None
    next_token_id: str | None = None
    next_token_tag: str | None = None
    next_token_expires_at: float | None = None


class ScanProcessor:
    """
    Runs one scan as a single all-or-nothing step.

    Every check that can reject a scan for business reasons happens before
    the token is consumed. Once consumption succeeds, later failures can
    only be storage faults, which surface as internal errors; the consumed
    token makes an identical retry fail as USED instead of crediting twice.
    Each attempt, accepted or rejected, leaves one scan log row.
    """

    def __init__(
        self,
        store: EntityStore,
        tokens: TokenManager,
        chains: ChainMachine,
        attendance: AttendanceBook,
        limiter: RateLimiter,
        notifier: Notifier,
        *,
        clock: Callable[[], float] = time.time,
    ):
        self.store = store
        self.sessions = Repository(store, SESSIONS, Session)
        self.tokens = tokens
        self.chains = chains
        self.attendance = attendance
        self.limiter = limiter
        self.notifier = notifier
        self.clock = clock

    def _log(
        self,
        session_id: str,
        flow: ScanFlow | None,
        token_id: str,
        caller: Caller,
        metadata: ScanMetadata,
        result: str,
        *,
        token: Token | None = None,
        error: str | None = None,
    ) -> None:
        entry = {
            "session_id": session_id,
            "flow": flow.value if flow else None,
            "token_id": token_id,
            "chain_id": token.chain_id if token else None,
            "holder_id": token.holder_id if token else None,
            "scanner_id": caller.user_id,
            "device_fingerprint": metadata.device_fingerprint,
            "ip": metadata.ip,
            "bssid": metadata.bssid,
            "gps": metadata.gps.model_dump() if metadata.gps else None,
            "user_agent": metadata.user_agent,
            "result": result,
            "error": error,
            "scanned_at": self.clock(),
        }
        try:
            self.store.append_scan_log(entry)
        except Exception:
            logger.exception("Could not write scan log for token %s in session %s", token_id, session_id)

    def scan(
        self,
        caller: Caller,
        session_id: str,
        token_id: str,
        expected_tag: str,
        metadata: ScanMetadata,
    ) -> ScanReceipt:
        token: Token | None = None
        flow: ScanFlow | None = None
        try:
            if caller.role != Role.STUDENT:
                raise AuthorizationError("Only students can scan attendance codes.")
            if not token_id or not expected_tag:
                raise ValidationError("Missing required fields: token_id, etag.")

            session = self.sessions.get(SESSION_PARTITION, session_id)
            if session is None:
                raise NotFoundError("Session not found.")
            if session.status != SessionStatus.ACTIVE:
                raise SessionEndedError()

            token = self.tokens.get(session_id, token_id)
            if token is not None:
                flow = FLOW_BY_TOKEN_TYPE.get(token.type)
                self._check_audience(session, token, caller)

            violation = self.limiter.check(metadata.device_fingerprint, metadata.ip)
            violation = violation or check_location(session.constraints, metadata.gps, metadata.bssid)
            if violation:
                raise violation

            outcome = self.tokens.validate(session_id, token_id, consumer_id=caller.user_id)
            if outcome.ok:
                outcome = self.tokens.consume(session_id, token_id, expected_tag, caller.user_id)
            if not outcome.ok:
                raise token_failure_error(outcome.failure, {"token_id": token_id})
            token = outcome.token
            flow = FLOW_BY_TOKEN_TYPE[token.type]
        except AppError as exc:
            logger.warning(
                "Scan rejected: session=%s token=%s scanner=%s code=%s",
                session_id,
                token_id,
                caller.user_id,
                exc.code.value,
            )
            self._log(session_id, flow, token_id, caller, metadata, exc.code.value, token=token, error=exc.message)
            raise

        try:
            receipt = self._apply(session, token, flow, caller)
        except AppError as exc:
            logger.error(
                "Scan consumed token %s but could not be applied: %s", token_id, exc.message
            )
            self._log(session_id, flow, token_id, caller, metadata, exc.code.value, token=token, error=exc.message)
            raise
        except Exception as exc:
            logger.exception("Unexpected error applying scan of token %s in session %s", token_id, session_id)
            self._log(session_id, flow, token_id, caller, metadata, "INTERNAL_ERROR", token=token, error=str(exc))
            raise InternalError() from exc

        self._log(session_id, flow, token_id, caller, metadata, SUCCESS, token=token)
        return receipt

    def _check_audience(self, session: Session, token: Token, caller: Caller) -> None:
        scanner_id = caller.user_id
        if token.type in RELAY_TOKEN_TYPES:
            if token.holder_id == scanner_id:
                raise IneligibleStudentError("You cannot scan your own code.")
            chain = self.chains.get(session.session_id, token.chain_id) if token.chain_id else None
            if chain is None:
                raise NotFoundError("Chain not found.")
            if chain.state == ChainState.COMPLETED:
                raise InvalidStateError("This chain has already been closed.")
            if token.type == TokenType.EXIT_CHAIN:
                record = self.attendance.get(session.session_id, scanner_id)
                if record is None or record.entry_status is None or record.early_leave_at is not None:
                    raise IneligibleStudentError("Only students marked present can join the exit chain.")
            return

        if token.type == TokenType.LATE_ENTRY:
            if not session.late_entry_active:
                raise InvalidStateError("Late entry is not open.")
            if self.clock() < session.late_cutoff_at:
                raise InvalidStateError("Late cutoff time has not been reached.")
            record = self.attendance.get(session.session_id, scanner_id)
            if record is not None and record.entry_status is not None:
                raise IneligibleStudentError("Entry is already recorded for this student.")
            return

        if token.type == TokenType.EARLY_LEAVE:
            if not session.early_leave_active:
                raise InvalidStateError("Early leave is not open.")
            record = self.attendance.get(session.session_id, scanner_id)
            if record is not None and record.early_leave_at is not None:
                raise IneligibleStudentError("Early leave is already recorded for this student.")
            return

        raise ValidationError("This code cannot be scanned for attendance.")

    def _apply(self, session: Session, token: Token, flow: ScanFlow, caller: Caller) -> ScanReceipt:
        scanner_id = caller.user_id

        if token.type in RELAY_TOKEN_TYPES:
            previous_holder = token.holder_id
            new_holder = scanner_id if session.owner_transfer else previous_holder
            chain, next_token = self.chains.advance(session, token, scanner_id, new_holder)
            if token.type == TokenType.EXIT_CHAIN:
                self.attendance.mark_exit_verified(session.session_id, scanner_id)
                self.notifier.attendance_update(session.session_id, scanner_id, "EXIT_VERIFIED")
            credited = self.attendance.get(session.session_id, previous_holder)
            if token.type == TokenType.CHAIN:
                status = credited.entry_status.value if credited and credited.entry_status else "PRESENT_ENTRY"
            else:
                status = "EXIT_VERIFIED"
            return ScanReceipt(
                flow=flow,
                session_id=session.session_id,
                credited_student=previous_holder,
                credited_status=status,
                chain_id=chain.chain_id,
                new_holder=chain.last_holder,
                seq=chain.last_seq,
                next_token_id=next_token.token_id,
                next_token_tag=next_token.tag,
                next_token_expires_at=next_token.expires_at,
            )

        if token.type == TokenType.LATE_ENTRY:
            record = self.attendance.mark_entry(session.session_id, scanner_id, EntryStatus.LATE_ENTRY)
            status = record.entry_status.value
        else:
            self.attendance.mark_early_leave(session.session_id, scanner_id)
            status = "EARLY_LEAVE"
        self.notifier.attendance_update(session.session_id, scanner_id, status)
        return ScanReceipt(
            flow=flow,
            session_id=session.session_id,
            credited_student=scanner_id,
            credited_status=status,
        )
