import logging
import secrets
import time
from dataclasses import dataclass
from typing import Callable

from backend.errors import TokenFailure
from backend.models import Token, TokenStatus, TokenType
from backend.services.repository import Repository
from database.db import TOKENS, Conflict, EntityNotFound, EntityStore

logger = logging.getLogger(__name__)

_REVOKE_ATTEMPTS = 3


@dataclass
class TokenOutcome:
    token: Token | None = None
    failure: TokenFailure | None = None

    @property
    def ok(self) -> bool:
        return self.failure is None


def generate_token_id() -> str:
    return secrets.token_urlsafe(32)


class TokenManager:
    """Issues tokens and consumes them exactly once."""

    def __init__(self, store: EntityStore, *, clock: Callable[[], float] = time.time):
        self.repo = Repository(store, TOKENS, Token)
        self.clock = clock

    def issue(
        self,
        session_id: str,
        token_type: TokenType,
        *,
        ttl_seconds: int,
        chain_id: str | None = None,
        holder_id: str | None = None,
        seq: int | None = None,
        single_use: bool = True,
    ) -> Token:
        now = self.clock()
        token = Token(
            token_id=generate_token_id(),
            session_id=session_id,
            type=token_type,
            chain_id=chain_id,
            holder_id=holder_id,
            seq=seq,
            expires_at=now + ttl_seconds,
            single_use=single_use,
            created_at=now,
        )
        return self.repo.insert(session_id, token.token_id, token)

    def get(self, session_id: str, token_id: str) -> Token | None:
        return self.repo.get(session_id, token_id)

    def _expire(self, token: Token) -> Token:
        # Lazy transition; whoever wins the write, the token ends up terminal.
        token.status = TokenStatus.EXPIRED
        try:
            return self.repo.update(token.session_id, token.token_id, token)
        except Conflict:
            return self.repo.get(token.session_id, token.token_id) or token

    def _classify(self, token: Token, now: float, consumer_id: str | None = None) -> TokenOutcome:
        if token.status == TokenStatus.REVOKED:
            return TokenOutcome(token, TokenFailure.REVOKED)
        if token.status == TokenStatus.USED:
            if consumer_id is not None and token.used_by != consumer_id:
                # Someone else committed first.
                return TokenOutcome(token, TokenFailure.CONFLICT)
            return TokenOutcome(token, TokenFailure.USED)
        if token.status == TokenStatus.EXPIRED:
            return TokenOutcome(token, TokenFailure.EXPIRED)
        if now > token.expires_at:
            token = self._expire(token)
            if token.status != TokenStatus.EXPIRED:
                return self._classify(token, now, consumer_id)
            return TokenOutcome(token, TokenFailure.EXPIRED)
        return TokenOutcome(token)

    def validate(self, session_id: str, token_id: str, *, consumer_id: str | None = None) -> TokenOutcome:
        """
        Check existence, status and expiry without consuming.

        With `consumer_id`, a token already used by somebody else is reported
        as CONFLICT rather than USED.
        """
        token = self.repo.get(session_id, token_id)
        if token is None:
            return TokenOutcome(failure=TokenFailure.NOT_FOUND)
        return self._classify(token, self.clock(), consumer_id)

    def consume(self, session_id: str, token_id: str, expected_tag: str, consumer_id: str) -> TokenOutcome:
        outcome = self.validate(session_id, token_id, consumer_id=consumer_id)
        if not outcome.ok:
            return outcome
        token = outcome.token
        if token.tag != expected_tag:
            return TokenOutcome(token, TokenFailure.CONFLICT)
        if not token.single_use:
            # Broadcast tokens stay ACTIVE until they expire or get revoked.
            return TokenOutcome(token)

        token.status = TokenStatus.USED
        token.used_at = self.clock()
        token.used_by = consumer_id
        try:
            token = self.repo.update(session_id, token_id, token)
        except Conflict:
            return TokenOutcome(failure=TokenFailure.CONFLICT)
        except EntityNotFound:
            return TokenOutcome(failure=TokenFailure.NOT_FOUND)
        return TokenOutcome(token)

    def revoke(self, session_id: str, token_id: str) -> bool:
        for _ in range(_REVOKE_ATTEMPTS):
            token = self.repo.get(session_id, token_id)
            if token is None or token.status != TokenStatus.ACTIVE:
                return False
            token.status = TokenStatus.REVOKED
            try:
                self.repo.update(session_id, token_id, token)
                return True
            except Conflict:
                continue
        logger.warning("Could not revoke token %s in session %s after %d attempts", token_id, session_id, _REVOKE_ATTEMPTS)
        return False
