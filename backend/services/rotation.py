import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable

from backend.models import ChainState, Session, SessionStatus, TokenStatus, TokenType
from backend.services.chains import ChainMachine, detect_stall
from backend.services.repository import Repository
from backend.services.tokens import TokenManager
from database.db import SESSION_PARTITION, SESSIONS, Conflict, EntityStore

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    sessions: int = 0
    skipped: list[str] = field(default_factory=list)
    rotated: list[str] = field(default_factory=list)
    stalled: list[str] = field(default_factory=list)
    errors: int = 0

    def as_dict(self) -> dict:
        return {
            "sessions": self.sessions,
            "skipped": self.skipped,
            "rotated": self.rotated,
            "stalled": self.stalled,
            "errors": self.errors,
        }


class RotationScheduler:
    """
    Periodic sweep: replace rotating tokens before they lapse and flag
    stalled chains.

    At most one sweep works on a given session at a time; a tick that finds
    a session already in progress skips it.
    """

    def __init__(
        self,
        store: EntityStore,
        tokens: TokenManager,
        chains: ChainMachine,
        *,
        interval_seconds: int = 60,
        late_rotation_seconds: int = 60,
        early_leave_rotation_seconds: int = 60,
        stall_threshold_seconds: int = 90,
        clock: Callable[[], float] = time.time,
    ):
        self.sessions = Repository(store, SESSIONS, Session)
        self.tokens = tokens
        self.chains = chains
        self.interval_seconds = interval_seconds
        self.late_rotation_seconds = late_rotation_seconds
        self.early_leave_rotation_seconds = early_leave_rotation_seconds
        self.stall_threshold_seconds = stall_threshold_seconds
        self.clock = clock
        self._guard = threading.Lock()
        self._in_progress: set[str] = set()

    def _claim(self, session_id: str) -> bool:
        with self._guard:
            if session_id in self._in_progress:
                return False
            self._in_progress.add(session_id)
            return True

    def _release(self, session_id: str) -> None:
        with self._guard:
            self._in_progress.discard(session_id)

    def sweep(self) -> SweepReport:
        report = SweepReport()
        for session in self.sessions.list_partition(SESSION_PARTITION):
            if session.status != SessionStatus.ACTIVE:
                continue
            if not self._claim(session.session_id):
                report.skipped.append(session.session_id)
                continue
            report.sessions += 1
            try:
                self._sweep_session(session, report)
            except Exception:
                report.errors += 1
                logger.exception("Rotation sweep failed for session %s", session.session_id)
            finally:
                self._release(session.session_id)

        logger.info(
            "Rotation sweep: %d sessions, %d rotated, %d stalled, %d skipped",
            report.sessions,
            len(report.rotated),
            len(report.stalled),
            len(report.skipped),
        )
        return report

    def _sweep_session(self, session: Session, report: SweepReport) -> None:
        if session.late_entry_active:
            token_id = self._rotate(session, TokenType.LATE_ENTRY)
            if token_id:
                report.rotated.append(token_id)
                session = self.sessions.get(SESSION_PARTITION, session.session_id) or session
        if session.early_leave_active:
            token_id = self._rotate(session, TokenType.EARLY_LEAVE)
            if token_id:
                report.rotated.append(token_id)

        now = self.clock()
        for chain in self.chains.list_chains(session.session_id):
            if chain.state != ChainState.ACTIVE:
                continue
            if detect_stall(chain, self.stall_threshold_seconds, now) and self.chains.mark_stalled(chain):
                report.stalled.append(chain.chain_id)

    def _needs_rotation(self, session: Session, token_id: str | None) -> bool:
        if not token_id:
            return True
        token = self.tokens.get(session.session_id, token_id)
        if token is None or token.status != TokenStatus.ACTIVE:
            return True
        return token.expires_at - self.clock() <= self.interval_seconds

    def _rotate(self, session: Session, token_type: TokenType) -> str | None:
        late = token_type == TokenType.LATE_ENTRY
        current_id = session.current_late_token_id if late else session.current_early_token_id
        if not self._needs_rotation(session, current_id):
            return None

        ttl = self.late_rotation_seconds if late else self.early_leave_rotation_seconds
        # The old token is left to expire on its own; a scan may be mid-flight.
        token = self.tokens.issue(session.session_id, token_type, ttl_seconds=ttl, single_use=False)
        if late:
            session.current_late_token_id = token.token_id
        else:
            session.current_early_token_id = token.token_id
        try:
            self.sessions.update(SESSION_PARTITION, session.session_id, session)
        except Conflict:
            # The teacher toggled the window meanwhile; try again next tick.
            self.tokens.revoke(session.session_id, token.token_id)
            return None
        logger.info("Rotated %s token for session %s", token_type.value, session.session_id)
        return token.token_id


class RotationLoop:
    """Background thread invoking `sweep` every interval until stopped."""

    def __init__(self, scheduler: RotationScheduler, interval_seconds: int):
        self.scheduler = scheduler
        self.interval_seconds = interval_seconds
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="rotation-loop", daemon=True)
        self._thread.start()

    def _run(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                self.scheduler.sweep()
            except Exception:
                logger.exception("Rotation sweep crashed")

    def stop(self) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=5)
