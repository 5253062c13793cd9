import pytest

from backend.errors import ConflictError, InsufficientStudentsError, InvalidStateError
from backend.models import ChainPhase, ChainState, EntryStatus, Token, TokenStatus, TokenType
from backend.services.chains import detect_stall
from backend.services.notifications import CHAIN_UPDATE, STALL_ALERT
from backend.services.repository import Repository
from conftest import open_session, seed_one, teacher
from database.db import TOKENS


def test_seed_creates_chain_with_seq_zero_token(world):
    session = open_session(world, students=["S1"])

    chain, token = seed_one(world, session, "S1")

    assert chain.index == 0
    assert chain.state == ChainState.ACTIVE
    assert chain.last_holder == "S1"
    assert chain.last_seq == 0
    assert token.type == TokenType.CHAIN
    assert token.holder_id == "S1"
    assert token.seq == 0
    assert token.expires_at == world.clock.now + 20
    assert CHAIN_UPDATE in world.sink.topics()


def test_seed_requires_enough_students(world):
    session = open_session(world, students=["S1", "S2"])
    with pytest.raises(InsufficientStudentsError):
        world.chains.seed(session, ChainPhase.ENTRY, ["S1", "S2", "S1"], 3)


def test_seed_picks_distinct_holders(world):
    session = open_session(world)
    chains = world.chains.seed(session, ChainPhase.ENTRY, ["S1", "S2", "S3", "S4"], 3)
    holders = [c.last_holder for c in chains]
    assert len(set(holders)) == 3


def test_relay_credits_previous_holder_and_moves_baton(world):
    session = open_session(world, students=["S1", "S2"])
    chain, token = seed_one(world, session, "S1")
    world.tokens.consume(session.session_id, token.token_id, token.tag, "S2")

    world.clock.advance(5)
    chain, next_token = world.chains.advance(session, token, "S2", "S2")

    record = world.attendance.get(session.session_id, "S1")
    assert record.entry_status == EntryStatus.PRESENT_ENTRY
    assert chain.last_holder == "S2"
    assert chain.last_seq == 1
    assert chain.last_at == world.clock.now
    assert chain.current_token_id == next_token.token_id
    assert next_token.seq == 1
    assert next_token.holder_id == "S2"
    assert world.tokens.validate(session.session_id, next_token.token_id).ok


def test_sequence_increases_by_one_per_relay(world):
    session = open_session(world)
    chain, token = seed_one(world, session, "S1")

    seqs = []
    for holder in ["S2", "S3", "S4", "S5"]:
        chain, token = world.chains.advance(session, token, holder, holder)
        seqs.append((chain.last_seq, token.seq))

    assert seqs == [(1, 1), (2, 2), (3, 3), (4, 4)]


def test_exit_chain_relay_verifies_previous_holder(world):
    session = open_session(world)
    world.attendance.mark_entry(session.session_id, "S1", EntryStatus.PRESENT_ENTRY)
    chain, token = seed_one(world, session, "S1", phase=ChainPhase.EXIT)
    assert token.type == TokenType.EXIT_CHAIN

    world.chains.advance(session, token, "S2", "S2")

    assert world.attendance.get(session.session_id, "S1").exit_verified is True


def test_reseed_bumps_index_and_revokes_old_token(world):
    session = open_session(world)
    chain, first = seed_one(world, session, "S1")
    chain, outstanding = world.chains.advance(session, first, "S2", "S2")

    chain, token = world.chains.reseed(session, chain.chain_id, "S3")

    assert chain.index == 1
    assert chain.last_seq == 0
    assert chain.last_holder == "S3"
    assert chain.state == ChainState.ACTIVE
    assert chain.current_token_id == token.token_id
    assert token.seq == 0
    assert token.holder_id == "S3"
    assert world.tokens.get(session.session_id, outstanding.token_id).status == TokenStatus.REVOKED


def test_detect_stall_threshold(world):
    session = open_session(world)
    chain, _ = seed_one(world, session, "S1")

    assert not detect_stall(chain, 90, chain.last_at + 90)
    assert detect_stall(chain, 90, chain.last_at + 91)

    chain.state = ChainState.COMPLETED
    assert not detect_stall(chain, 90, chain.last_at + 500)


def test_mark_stalled_emits_alert(world):
    session = open_session(world)
    chain, _ = seed_one(world, session, "S1")

    stalled = world.chains.mark_stalled(chain)

    assert stalled.state == ChainState.STALLED
    assert STALL_ALERT in world.sink.topics()


def test_scan_revives_stalled_chain(world):
    session = open_session(world)
    chain, token = seed_one(world, session, "S1")
    world.chains.mark_stalled(chain)

    chain, _ = world.chains.advance(session, token, "S2", "S2")
    assert chain.state == ChainState.ACTIVE


def test_complete_credits_final_holder_and_revokes_token(world):
    session = open_session(world, late_cutoff_minutes=15)
    chain, token = seed_one(world, session, "S1")

    chain = world.chains.complete(session, chain.chain_id)

    assert chain.state == ChainState.COMPLETED
    assert world.tokens.get(session.session_id, token.token_id).status == TokenStatus.REVOKED
    assert world.attendance.get(session.session_id, "S1").entry_status == EntryStatus.PRESENT_ENTRY


def test_complete_after_cutoff_credits_late(world):
    session = open_session(world, late_cutoff_minutes=1)
    chain, _ = seed_one(world, session, "S1")
    world.clock.advance(61)

    world.chains.complete(session, chain.chain_id)

    assert world.attendance.get(session.session_id, "S1").entry_status == EntryStatus.LATE_ENTRY


def test_reseed_completed_chain_is_rejected(world):
    session = open_session(world)
    chain, _ = seed_one(world, session, "S1")
    world.chains.complete(session, chain.chain_id)

    with pytest.raises(InvalidStateError):
        world.chains.reseed(session, chain.chain_id, "S2")


def test_holder_token_reissued_after_expiry_with_same_seq(world):
    session = open_session(world)
    chain, token = seed_one(world, session, "S1")
    world.clock.advance(25)

    tokens = world.chains.holder_tokens(session, "S1")

    assert len(tokens) == 1
    assert tokens[0].token_id != token.token_id
    assert tokens[0].seq == 0
    assert world.chains.get(session.session_id, chain.chain_id).current_token_id == tokens[0].token_id
    assert world.chains.holder_tokens(session, "S2") == []


def test_seed_through_session_service_marks_exit_started(world):
    session = open_session(world, students=["S1", "S2"])
    world.attendance.mark_entry(session.session_id, "S1", EntryStatus.PRESENT_ENTRY)

    chains = world.sessions.seed_chains(teacher(), session.session_id, ChainPhase.EXIT, 1)

    assert chains[0].last_holder == "S1"
    assert world.sessions.get(session.session_id).exit_chain_started is True
    with pytest.raises(InsufficientStudentsError):
        world.sessions.seed_chains(teacher(), session.session_id, ChainPhase.EXIT, 2)


def _active_chain_tokens(world, session, chain_id):
    tokens = Repository(world.store, TOKENS, Token).list_partition(session.session_id)
    return [t.token_id for t in tokens if t.chain_id == chain_id and t.status == TokenStatus.ACTIVE]


def test_relay_after_reseed_is_rejected_without_credit(world):
    session = open_session(world, students=["S1", "S2", "S3"])
    chain, token = seed_one(world, session, "S1")
    world.tokens.consume(session.session_id, token.token_id, token.tag, "S2")
    chain, reseeded = world.chains.reseed(session, chain.chain_id, "S3")

    with pytest.raises(ConflictError):
        world.chains.advance(session, token, "S2", "S2")

    chain = world.chains.get(session.session_id, chain.chain_id)
    assert chain.current_token_id == reseeded.token_id
    assert chain.last_holder == "S3"
    assert chain.last_seq == 0
    assert chain.index == 1
    assert world.tokens.validate(session.session_id, reseeded.token_id).ok
    assert _active_chain_tokens(world, session, chain.chain_id) == [reseeded.token_id]
    assert world.attendance.get(session.session_id, "S1") is None


def test_relay_with_already_advanced_token_is_rejected(world):
    session = open_session(world)
    chain, token = seed_one(world, session, "S1")
    world.tokens.consume(session.session_id, token.token_id, token.tag, "S2")
    chain, current = world.chains.advance(session, token, "S2", "S2")

    with pytest.raises(ConflictError):
        world.chains.advance(session, token, "S3", "S3")

    chain = world.chains.get(session.session_id, chain.chain_id)
    assert chain.last_seq == 1
    assert chain.last_holder == "S2"
    assert _active_chain_tokens(world, session, chain.chain_id) == [current.token_id]


def test_relay_on_closed_chain_is_rejected(world):
    session = open_session(world)
    chain, token = seed_one(world, session, "S1")
    world.chains.complete(session, chain.chain_id, credit_holder=False)

    with pytest.raises(ConflictError):
        world.chains.advance(session, token, "S2", "S2")

    assert world.attendance.get(session.session_id, "S1") is None
    assert _active_chain_tokens(world, session, chain.chain_id) == []


def test_list_chains_filters_by_phase(world):
    session = open_session(world)
    entry = world.chains.seed(session, ChainPhase.ENTRY, ["S1", "S2"], 2)
    exit_chain, _ = seed_one(world, session, "S3", phase=ChainPhase.EXIT)

    assert {c.chain_id for c in world.chains.list_chains(session.session_id)} == {
        c.chain_id for c in entry
    } | {exit_chain.chain_id}
    assert [c.chain_id for c in world.chains.list_chains(session.session_id, ChainPhase.EXIT)] == [
        exit_chain.chain_id
    ]
