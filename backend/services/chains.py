import logging
import random
import secrets
import time
from typing import Callable

from backend.errors import (
    ConflictError,
    InsufficientStudentsError,
    InternalError,
    InvalidStateError,
    NotFoundError,
)
from backend.models import (
    TOKEN_TYPE_BY_PHASE,
    Chain,
    ChainPhase,
    ChainState,
    EntryStatus,
    Session,
    Token,
    TokenStatus,
)
from backend.services.attendance import AttendanceBook
from backend.services.notifications import Notifier
from backend.services.repository import Repository
from backend.services.tokens import TokenManager
from database.db import CHAINS, Conflict, EntityStore

logger = logging.getLogger(__name__)

_WRITE_ATTEMPTS = 5


def detect_stall(chain: Chain, threshold_seconds: float, now: float) -> bool:
    """True when an ACTIVE chain has seen no successful scan for longer than the threshold."""
    return chain.state == ChainState.ACTIVE and now - chain.last_at > threshold_seconds


def generate_chain_id() -> str:
    return secrets.token_urlsafe(16)


def _holds_baton(chain: Chain, token: Token) -> bool:
    return (
        chain.state != ChainState.COMPLETED
        and chain.current_token_id == token.token_id
        and chain.last_seq == token.seq
    )


class ChainMachine:
    """
    Owns chain phase, state, holder and sequence.

    A chain has at most one outstanding token, the one at `current_token_id`,
    whose sequence number equals `last_seq`. Every successful relay moves
    `last_seq` forward by exactly one.
    """

    def __init__(
        self,
        store: EntityStore,
        tokens: TokenManager,
        attendance: AttendanceBook,
        notifier: Notifier,
        *,
        clock: Callable[[], float] = time.time,
        rng: random.Random | None = None,
    ):
        self.repo = Repository(store, CHAINS, Chain)
        self.tokens = tokens
        self.attendance = attendance
        self.notifier = notifier
        self.clock = clock
        self.rng = rng or random.SystemRandom()

    def get(self, session_id: str, chain_id: str) -> Chain | None:
        return self.repo.get(session_id, chain_id)

    def require(self, session_id: str, chain_id: str) -> Chain:
        chain = self.repo.get(session_id, chain_id)
        if chain is None:
            raise NotFoundError("Chain not found.", {"chain_id": chain_id})
        return chain

    def list_chains(self, session_id: str, phase: ChainPhase | None = None) -> list[Chain]:
        chains = self.repo.list_partition(session_id)
        if phase is not None:
            chains = [c for c in chains if c.phase == phase]
        return chains

    def _issue_for(self, session: Session, chain: Chain, holder_id: str, seq: int) -> Token:
        return self.tokens.issue(
            session.session_id,
            TOKEN_TYPE_BY_PHASE[chain.phase],
            ttl_seconds=session.chain_token_ttl_seconds,
            chain_id=chain.chain_id,
            holder_id=holder_id,
            seq=seq,
            single_use=True,
        )

    # -----------------------------
    # Seeding
    # -----------------------------
    def seed(self, session: Session, phase: ChainPhase, candidates: list[str], count: int) -> list[Chain]:
        unique = list(dict.fromkeys(candidates))
        if len(unique) < count:
            raise InsufficientStudentsError(
                f"Insufficient eligible students: requested {count}, available {len(unique)}.",
                {"requested": count, "available": len(unique)},
            )
        selected = self.rng.sample(unique, count)
        now = self.clock()
        chains: list[Chain] = []
        for student_id in selected:
            chain = Chain(
                chain_id=generate_chain_id(),
                session_id=session.session_id,
                phase=phase,
                index=0,
                state=ChainState.ACTIVE,
                last_holder=student_id,
                last_seq=0,
                last_at=now,
                created_at=now,
            )
            token = self._issue_for(session, chain, student_id, 0)
            chain.current_token_id = token.token_id
            self.repo.insert(session.session_id, chain.chain_id, chain)
            self.notifier.chain_update(chain)
            chains.append(chain)
        logger.info("Seeded %d %s chains for session %s", len(chains), phase.value, session.session_id)
        return chains

    # -----------------------------
    # Relay
    # -----------------------------
    def advance(self, session: Session, token: Token, scanner_id: str, new_holder_id: str) -> tuple[Chain, Token]:
        """
        Move the baton after `token` was consumed.

        The chain moves only while `token` is still its current token at the
        token's sequence number. If a reseed, a close or another relay got
        there first, nothing is credited, the freshly issued token is revoked
        and the scan fails with a conflict. Storage failures surface as
        internal errors; the consumed token makes a retried request fail as
        USED.
        """
        chain_id = token.chain_id
        chain = self.require(session.session_id, chain_id)
        next_token: Token | None = None
        moved = False

        for _ in range(_WRITE_ATTEMPTS):
            if not _holds_baton(chain, token):
                break
            if next_token is None:
                next_token = self._issue_for(session, chain, new_holder_id, token.seq + 1)
            chain.last_seq = token.seq + 1
            chain.last_holder = new_holder_id
            chain.last_at = self.clock()
            # A scan landing while the sweep flags a stall revives the chain.
            chain.state = ChainState.ACTIVE
            chain.current_token_id = next_token.token_id
            try:
                chain = self.repo.update(session.session_id, chain_id, chain)
                moved = True
                break
            except Conflict:
                chain = self.require(session.session_id, chain_id)
        else:
            self.tokens.revoke(session.session_id, next_token.token_id)
            raise InternalError(
                "Chain kept changing while the scan was being applied.",
                {"chain_id": chain_id, "scanner_id": scanner_id},
            )

        if not moved:
            if next_token is not None:
                self.tokens.revoke(session.session_id, next_token.token_id)
            logger.warning(
                "Chain %s moved past token %s (seq %d) before scan by %s was applied",
                chain_id,
                token.token_id,
                token.seq,
                scanner_id,
            )
            raise ConflictError(
                "This code was replaced before the scan was applied. Please rescan the current code.",
                {"chain_id": chain_id, "token_id": token.token_id},
            )

        if token.holder_id:
            self._credit_holder(session, chain.phase, token.holder_id)
        self.notifier.chain_update(chain)
        return chain, next_token

    def _credit_holder(self, session: Session, phase: ChainPhase, student_id: str, *, status: EntryStatus | None = None) -> None:
        if phase == ChainPhase.ENTRY:
            record = self.attendance.mark_entry(session.session_id, student_id, status or EntryStatus.PRESENT_ENTRY)
            self.notifier.attendance_update(
                session.session_id, student_id, record.entry_status.value if record.entry_status else None
            )
        else:
            self.attendance.mark_exit_verified(session.session_id, student_id)
            self.notifier.attendance_update(session.session_id, student_id, "EXIT_VERIFIED")

    # -----------------------------
    # Reseed / stall / close
    # -----------------------------
    def reseed(self, session: Session, chain_id: str, new_holder_id: str) -> tuple[Chain, Token]:
        chain = self.require(session.session_id, chain_id)
        if chain.state == ChainState.COMPLETED:
            raise InvalidStateError("Chain is already completed.", {"chain_id": chain_id})

        for _ in range(_WRITE_ATTEMPTS):
            if chain.current_token_id:
                self.tokens.revoke(session.session_id, chain.current_token_id)
            token = self._issue_for(session, chain, new_holder_id, 0)
            chain.index += 1
            chain.state = ChainState.ACTIVE
            chain.last_holder = new_holder_id
            chain.last_seq = 0
            chain.last_at = self.clock()
            chain.current_token_id = token.token_id
            try:
                chain = self.repo.update(session.session_id, chain_id, chain)
                break
            except Conflict:
                # A relay or another reseed won; drop our token and start over.
                self.tokens.revoke(session.session_id, token.token_id)
                chain = self.require(session.session_id, chain_id)
        else:
            raise InternalError("Chain kept changing during reseed.", {"chain_id": chain_id})

        logger.info("Reseeded chain %s (index %d) with holder %s", chain_id, chain.index, new_holder_id)
        self.notifier.chain_update(chain)
        return chain, token

    def mark_stalled(self, chain: Chain) -> Chain | None:
        """Flag a chain STALLED; returns None if it moved since it was read."""
        chain.state = ChainState.STALLED
        try:
            chain = self.repo.update(chain.session_id, chain.chain_id, chain)
        except Conflict:
            return None
        logger.info("Chain %s in session %s stalled", chain.chain_id, chain.session_id)
        self.notifier.stall_alert(chain.session_id, chain.chain_id)
        self.notifier.chain_update(chain)
        return chain

    def complete(self, session: Session, chain_id: str, *, credit_holder: bool = True) -> Chain:
        chain = self.require(session.session_id, chain_id)
        for _ in range(_WRITE_ATTEMPTS):
            if chain.state == ChainState.COMPLETED:
                return chain
            chain.state = ChainState.COMPLETED
            chain.completed_at = self.clock()
            try:
                chain = self.repo.update(session.session_id, chain_id, chain)
                break
            except Conflict:
                chain = self.require(session.session_id, chain_id)
        else:
            raise InternalError("Chain kept changing while closing.", {"chain_id": chain_id})

        if chain.current_token_id:
            self.tokens.revoke(session.session_id, chain.current_token_id)
        if credit_holder and chain.last_holder:
            status = EntryStatus.PRESENT_ENTRY
            if chain.completed_at and chain.completed_at > session.late_cutoff_at:
                status = EntryStatus.LATE_ENTRY
            self._credit_holder(session, chain.phase, chain.last_holder, status=status)
        logger.info("Chain %s in session %s completed", chain_id, session.session_id)
        self.notifier.chain_update(chain)
        return chain

    def holder_tokens(self, session: Session, student_id: str) -> list[Token]:
        """
        Current tokens for every live chain `student_id` holds.

        An expired token is replaced at the same sequence number so the
        holder's QR stays scannable.
        """
        tokens: list[Token] = []
        for chain in self.repo.list_partition(session.session_id):
            if chain.state != ChainState.ACTIVE or chain.last_holder != student_id:
                continue
            token = self.tokens.get(session.session_id, chain.current_token_id) if chain.current_token_id else None
            if token is not None:
                outcome = self.tokens.validate(session.session_id, token.token_id)
                if outcome.ok:
                    tokens.append(outcome.token)
                    continue
                if outcome.token is not None and outcome.token.status == TokenStatus.USED:
                    # Scanned moments ago; the relay is updating the chain.
                    continue
            replacement = self._issue_for(session, chain, student_id, chain.last_seq)
            chain.current_token_id = replacement.token_id
            try:
                self.repo.update(session.session_id, chain.chain_id, chain)
            except Conflict:
                self.tokens.revoke(session.session_id, replacement.token_id)
                continue
            tokens.append(replacement)
        return tokens
