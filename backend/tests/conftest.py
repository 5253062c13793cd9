import random
from types import SimpleNamespace

import pytest

from backend.config import AppConfig
from backend.models import Caller, ChainPhase, Role
from backend.services.attendance import AttendanceBook
from backend.services.chains import ChainMachine
from backend.services.notifications import MemorySink, Notifier
from backend.services.rotation import RotationScheduler
from backend.services.scans import ScanProcessor
from backend.services.sessions import SessionService
from backend.services.tokens import TokenManager
from backend.services.validators import RateLimiter
from database.db import EntityStore
from database.retry import RetryPolicy

T0 = 1_700_000_000.0


class FakeClock:
    def __init__(self, now: float = T0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


def teacher(user_id: str = "t1") -> Caller:
    return Caller(user_id=user_id, role=Role.TEACHER)


def student(user_id: str) -> Caller:
    return Caller(user_id=user_id, role=Role.STUDENT)


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def store(tmp_path):
    s = EntityStore(tmp_path / "qrchain_test.db", RetryPolicy(max_attempts=5, initial_delay=0.01, jitter=False))
    s.create_tables()
    return s


@pytest.fixture()
def world(store, clock, tmp_path):
    config = AppConfig(
        db_path=tmp_path / "qrchain_test.db",
        chain_token_ttl_seconds=20,
        late_rotation_seconds=20,
        early_leave_rotation_seconds=20,
    )
    sink = MemorySink()
    notifier = Notifier(sink)
    tokens = TokenManager(store, clock=clock)
    attendance = AttendanceBook(store, clock=clock)
    chains = ChainMachine(store, tokens, attendance, notifier, clock=clock, rng=random.Random(7))
    limiter = RateLimiter(window_seconds=60, device_max=10, ip_max=50, clock=clock)
    sessions = SessionService(store, config, tokens, chains, attendance, clock=clock)
    scans = ScanProcessor(store, tokens, chains, attendance, limiter, notifier, clock=clock)
    rotation = RotationScheduler(
        store,
        tokens,
        chains,
        interval_seconds=60,
        late_rotation_seconds=config.late_rotation_seconds,
        early_leave_rotation_seconds=config.early_leave_rotation_seconds,
        stall_threshold_seconds=90,
        clock=clock,
    )
    return SimpleNamespace(
        store=store,
        clock=clock,
        config=config,
        sink=sink,
        tokens=tokens,
        attendance=attendance,
        chains=chains,
        limiter=limiter,
        sessions=sessions,
        scans=scans,
        rotation=rotation,
    )


def open_session(world, *, students=(), late_cutoff_minutes: int = 15, **kwargs):
    """Create an ACTIVE session starting now and join `students` to it."""
    session = world.sessions.create(
        teacher(),
        class_id="CS101",
        start_at=world.clock.now,
        end_at=world.clock.now + 3600,
        late_cutoff_minutes=late_cutoff_minutes,
        **kwargs,
    )
    for student_id in students:
        world.sessions.join(student(student_id), session.session_id)
    return session


def seed_one(world, session, holder_id: str, phase: ChainPhase = ChainPhase.ENTRY):
    """Seed a single chain held by `holder_id` and return (chain, token)."""
    chain = world.chains.seed(session, phase, [holder_id], 1)[0]
    token = world.tokens.get(session.session_id, chain.current_token_id)
    return chain, token
