import threading

import pytest

from backend.errors import (
    AuthorizationError,
    ConflictError,
    GeofenceViolationError,
    IneligibleStudentError,
    InvalidStateError,
    RateLimitedError,
    SessionEndedError,
    TokenAlreadyUsedError,
    TokenExpiredError,
)
from backend.models import (
    ChainPhase,
    EntryStatus,
    Geofence,
    GpsFix,
    ScanFlow,
    ScanMetadata,
    SessionConstraints,
    TokenStatus,
)
from backend.services.notifications import ATTENDANCE_UPDATE
from conftest import open_session, seed_one, student, teacher


def _meta(student_id: str, **kwargs) -> ScanMetadata:
    return ScanMetadata(device_fingerprint=f"dev-{student_id}", ip=f"10.0.0.{len(student_id)}", **kwargs)


def _scan(world, student_id, session, token, tag=None):
    return world.scans.scan(
        student(student_id), session.session_id, token.token_id, tag or token.tag, _meta(student_id)
    )


def test_entry_relay_credits_holder_and_hands_over(world):
    session = open_session(world, students=["S1", "S2"])
    chain, token = seed_one(world, session, "S1")

    receipt = _scan(world, "S2", session, token)

    assert receipt.success
    assert receipt.flow == ScanFlow.ENTRY_CHAIN
    assert receipt.credited_student == "S1"
    assert receipt.credited_status == "PRESENT_ENTRY"
    assert receipt.new_holder == "S2"
    assert receipt.seq == 1

    chain = world.chains.get(session.session_id, chain.chain_id)
    assert chain.last_holder == "S2"
    assert chain.last_seq == 1
    assert world.attendance.get(session.session_id, "S1").entry_status == EntryStatus.PRESENT_ENTRY
    next_token = world.tokens.get(session.session_id, receipt.next_token_id)
    assert next_token.holder_id == "S2"
    assert next_token.seq == 1
    assert next_token.status == TokenStatus.ACTIVE
    assert ATTENDANCE_UPDATE in world.sink.topics()


def test_second_scanner_gets_conflict(world):
    session = open_session(world, students=["S1", "S2", "S3"])
    chain, token = seed_one(world, session, "S1")

    _scan(world, "S2", session, token)
    with pytest.raises(ConflictError):
        _scan(world, "S3", session, token)

    chain = world.chains.get(session.session_id, chain.chain_id)
    assert chain.last_holder == "S2"
    assert chain.last_seq == 1


def test_simultaneous_scanners_get_one_success(world):
    scanners = [f"S{i}" for i in range(2, 8)]
    session = open_session(world, students=["S1", *scanners])
    chain, token = seed_one(world, session, "S1")
    barrier = threading.Barrier(len(scanners))
    receipts, conflicts, other = [], [], []

    def attempt(student_id):
        barrier.wait()
        try:
            receipts.append(_scan(world, student_id, session, token))
        except ConflictError:
            conflicts.append(student_id)
        except Exception as exc:
            other.append(exc)

    threads = [threading.Thread(target=attempt, args=(s,)) for s in scanners]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=30)

    assert other == []
    assert len(receipts) == 1
    assert len(conflicts) == len(scanners) - 1
    winner = receipts[0].new_holder
    assert winner not in conflicts

    chain = world.chains.get(session.session_id, chain.chain_id)
    assert chain.last_seq == 1
    assert chain.last_holder == winner
    credited = [r.student_id for r in world.attendance.list_records(session.session_id) if r.entry_status]
    assert credited == ["S1"]


def test_identical_retry_is_rejected_as_used(world):
    session = open_session(world, students=["S1", "S2"])
    chain, token = seed_one(world, session, "S1")

    _scan(world, "S2", session, token)
    with pytest.raises(TokenAlreadyUsedError):
        _scan(world, "S2", session, token)
    assert world.chains.get(session.session_id, chain.chain_id).last_seq == 1


def test_stale_tag_is_rejected_without_consuming(world):
    session = open_session(world, students=["S1", "S2"])
    _, token = seed_one(world, session, "S1")

    with pytest.raises(ConflictError):
        _scan(world, "S2", session, token, tag="stale")
    assert world.tokens.get(session.session_id, token.token_id).status == TokenStatus.ACTIVE


def test_holder_cannot_scan_own_code(world):
    session = open_session(world, students=["S1"])
    _, token = seed_one(world, session, "S1")

    with pytest.raises(IneligibleStudentError):
        _scan(world, "S1", session, token)
    assert world.tokens.get(session.session_id, token.token_id).status == TokenStatus.ACTIVE


def test_expired_token_is_rejected(world):
    session = open_session(world, students=["S1", "S2"])
    _, token = seed_one(world, session, "S1")
    world.clock.advance(21)

    with pytest.raises(TokenExpiredError):
        _scan(world, "S2", session, token)


def test_rate_limit_runs_before_consumption(world):
    session = open_session(world, students=["S1", "S2"])
    _, token = seed_one(world, session, "S1")
    for _ in range(10):
        world.limiter.check("dev-S2", "192.168.1.1")

    with pytest.raises(RateLimitedError):
        _scan(world, "S2", session, token)
    assert world.tokens.get(session.session_id, token.token_id).status == TokenStatus.ACTIVE


def test_geofence_violation_leaves_token_active(world):
    constraints = SessionConstraints(geofence=Geofence(latitude=0.0, longitude=0.0, radius_meters=50))
    session = open_session(world, students=["S1", "S2"], constraints=constraints)
    _, token = seed_one(world, session, "S1")

    with pytest.raises(GeofenceViolationError):
        world.scans.scan(
            student("S2"),
            session.session_id,
            token.token_id,
            token.tag,
            _meta("S2", gps=GpsFix(latitude=1.0, longitude=1.0)),
        )
    assert world.tokens.get(session.session_id, token.token_id).status == TokenStatus.ACTIVE


def test_owner_transfer_disabled_keeps_holder(world):
    session = open_session(world, students=["S1", "S2"], owner_transfer=False)
    chain, token = seed_one(world, session, "S1")

    receipt = _scan(world, "S2", session, token)

    assert receipt.new_holder == "S1"
    chain = world.chains.get(session.session_id, chain.chain_id)
    assert chain.last_holder == "S1"
    assert chain.last_seq == 1


def test_only_students_scan(world):
    session = open_session(world, students=["S1"])
    _, token = seed_one(world, session, "S1")

    with pytest.raises(AuthorizationError):
        world.scans.scan(teacher(), session.session_id, token.token_id, token.tag, _meta("T"))


def test_scan_after_session_end_is_rejected(world):
    session = open_session(world, students=["S1", "S2"])
    _, token = seed_one(world, session, "S1")
    world.sessions.end(teacher(), session.session_id)

    with pytest.raises(SessionEndedError):
        _scan(world, "S2", session, token)


def test_completed_chain_token_cannot_be_relayed(world):
    session = open_session(world, students=["S1", "S2"])
    chain, token = seed_one(world, session, "S1")
    world.chains.complete(session, chain.chain_id, credit_holder=False)

    with pytest.raises(InvalidStateError):
        _scan(world, "S2", session, token)


# -----------------------------
# Late entry / early leave / exit
# -----------------------------
def test_late_entry_only_after_cutoff(world):
    session = open_session(world, students=["S3"], late_cutoff_minutes=15)
    token = world.sessions.start_late_entry(teacher(), session.session_id)

    with pytest.raises(InvalidStateError):
        _scan(world, "S3", session, token)


def test_late_entry_credits_scanner(world):
    session = open_session(world, students=["S3", "S4"], late_cutoff_minutes=15)
    world.clock.advance(15 * 60 + 1)
    token = world.sessions.start_late_entry(teacher(), session.session_id)

    receipt = _scan(world, "S3", session, token)
    assert receipt.flow == ScanFlow.LATE_ENTRY
    assert receipt.credited_student == "S3"
    assert receipt.credited_status == "LATE_ENTRY"
    assert world.attendance.get(session.session_id, "S3").entry_status == EntryStatus.LATE_ENTRY

    # Broadcast token: others can use it too, the same student cannot re-enter.
    assert _scan(world, "S4", session, token).credited_student == "S4"
    with pytest.raises(IneligibleStudentError):
        _scan(world, "S3", session, token)


def test_late_entry_closed_window_rejects(world):
    session = open_session(world, students=["S3"], late_cutoff_minutes=0)
    token = world.sessions.start_late_entry(teacher(), session.session_id)
    world.sessions.stop_late_entry(teacher(), session.session_id)

    with pytest.raises(InvalidStateError):
        _scan(world, "S3", session, token)


def test_early_leave_records_scanner_once(world):
    session = open_session(world, students=["S1"])
    world.attendance.mark_entry(session.session_id, "S1", EntryStatus.PRESENT_ENTRY)
    token = world.sessions.start_early_leave(teacher(), session.session_id)

    receipt = _scan(world, "S1", session, token)
    assert receipt.flow == ScanFlow.EARLY_LEAVE
    assert world.attendance.get(session.session_id, "S1").early_leave_at == world.clock.now

    with pytest.raises(IneligibleStudentError):
        _scan(world, "S1", session, token)


def test_exit_chain_verifies_holder_and_scanner(world):
    session = open_session(world, students=["S1", "S2", "S3"])
    for s in ("S1", "S2"):
        world.attendance.mark_entry(session.session_id, s, EntryStatus.PRESENT_ENTRY)
    _, token = seed_one(world, session, "S1", phase=ChainPhase.EXIT)

    receipt = _scan(world, "S2", session, token)

    assert receipt.flow == ScanFlow.EXIT_CHAIN
    assert receipt.credited_status == "EXIT_VERIFIED"
    assert world.attendance.get(session.session_id, "S1").exit_verified
    assert world.attendance.get(session.session_id, "S2").exit_verified


def test_exit_chain_requires_recorded_entry(world):
    session = open_session(world, students=["S1", "S3"])
    world.attendance.mark_entry(session.session_id, "S1", EntryStatus.PRESENT_ENTRY)
    _, token = seed_one(world, session, "S1", phase=ChainPhase.EXIT)

    with pytest.raises(IneligibleStudentError):
        _scan(world, "S3", session, token)


# -----------------------------
# Audit log
# -----------------------------
def test_every_attempt_is_logged(world):
    session = open_session(world, students=["S1", "S2", "S3"])
    chain, token = seed_one(world, session, "S1")

    _scan(world, "S2", session, token)
    with pytest.raises(ConflictError):
        _scan(world, "S3", session, token)

    rows = world.store.list_scan_logs(session.session_id)
    assert [(r["scanner_id"], r["result"]) for r in rows] == [("S2", "SUCCESS"), ("S3", "CONFLICT")]
    assert rows[0]["flow"] == "ENTRY_CHAIN"
    assert rows[0]["holder_id"] == "S1"
    assert rows[0]["device_fingerprint"] == "dev-S2"

    history = world.sessions.chain_history(teacher(), session.session_id, chain.chain_id)
    assert len(history) == 2
