from enum import Enum

from pydantic import BaseModel, Field


class Role(str, Enum):
    STUDENT = "student"
    TEACHER = "teacher"


class SessionStatus(str, Enum):
    ACTIVE = "ACTIVE"
    ENDED = "ENDED"


class TokenType(str, Enum):
    SESSION = "SESSION"
    CHAIN = "CHAIN"
    LATE_ENTRY = "LATE_ENTRY"
    EARLY_LEAVE = "EARLY_LEAVE"
    EXIT_CHAIN = "EXIT_CHAIN"


class TokenStatus(str, Enum):
    ACTIVE = "ACTIVE"
    USED = "USED"
    EXPIRED = "EXPIRED"
    REVOKED = "REVOKED"


class ChainPhase(str, Enum):
    ENTRY = "ENTRY"
    EXIT = "EXIT"


class ChainState(str, Enum):
    ACTIVE = "ACTIVE"
    STALLED = "STALLED"
    COMPLETED = "COMPLETED"


class EntryStatus(str, Enum):
    PRESENT_ENTRY = "PRESENT_ENTRY"
    LATE_ENTRY = "LATE_ENTRY"


class FinalStatus(str, Enum):
    PRESENT = "PRESENT"
    LATE = "LATE"
    LEFT_EARLY = "LEFT_EARLY"
    EARLY_LEAVE = "EARLY_LEAVE"
    ABSENT = "ABSENT"


class ScanFlow(str, Enum):
    ENTRY_CHAIN = "ENTRY_CHAIN"
    LATE_ENTRY = "LATE_ENTRY"
    EARLY_LEAVE = "EARLY_LEAVE"
    EXIT_CHAIN = "EXIT_CHAIN"


RELAY_TOKEN_TYPES = {TokenType.CHAIN, TokenType.EXIT_CHAIN}
ROTATING_TOKEN_TYPES = {TokenType.LATE_ENTRY, TokenType.EARLY_LEAVE}

FLOW_BY_TOKEN_TYPE = {
    TokenType.CHAIN: ScanFlow.ENTRY_CHAIN,
    TokenType.EXIT_CHAIN: ScanFlow.EXIT_CHAIN,
    TokenType.LATE_ENTRY: ScanFlow.LATE_ENTRY,
    TokenType.EARLY_LEAVE: ScanFlow.EARLY_LEAVE,
}

TOKEN_TYPE_BY_PHASE = {
    ChainPhase.ENTRY: TokenType.CHAIN,
    ChainPhase.EXIT: TokenType.EXIT_CHAIN,
}


# -----------------------------
# Entities
# -----------------------------
class Entity(BaseModel):
    # Precondition tag of the stored copy this instance was read from.
    tag: str | None = Field(default=None, exclude=True)

    def body(self) -> dict:
        return self.model_dump(mode="json")


class Geofence(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)
    radius_meters: float = Field(gt=0)


class SessionConstraints(BaseModel):
    geofence: Geofence | None = None
    wifi_allowlist: list[str] = Field(default_factory=list)
    # When set, a scan without a GPS fix / Wi-Fi reading is a violation.
    require_gps: bool = False
    require_wifi: bool = False


class Session(Entity):
    session_id: str
    class_id: str
    teacher_id: str
    start_at: float
    end_at: float
    late_cutoff_minutes: int = 15
    exit_window_minutes: int = 10
    status: SessionStatus = SessionStatus.ACTIVE
    owner_transfer: bool = True
    exit_required: bool = True
    chain_token_ttl_seconds: int = 20
    constraints: SessionConstraints | None = None
    late_entry_active: bool = False
    current_late_token_id: str | None = None
    early_leave_active: bool = False
    current_early_token_id: str | None = None
    exit_chain_started: bool = False
    created_at: float
    ended_at: float | None = None
    finalized_at: float | None = None

    @property
    def late_cutoff_at(self) -> float:
        return self.start_at + self.late_cutoff_minutes * 60


class Token(Entity):
    token_id: str
    session_id: str
    type: TokenType
    chain_id: str | None = None
    holder_id: str | None = None
    seq: int | None = None
    expires_at: float
    status: TokenStatus = TokenStatus.ACTIVE
    single_use: bool = True
    created_at: float
    used_at: float | None = None
    used_by: str | None = None


class Chain(Entity):
    chain_id: str
    session_id: str
    phase: ChainPhase
    index: int = 0
    state: ChainState = ChainState.ACTIVE
    last_holder: str | None = None
    last_seq: int = 0
    last_at: float
    created_at: float
    current_token_id: str | None = None
    completed_at: float | None = None


class AttendanceRecord(Entity):
    session_id: str
    student_id: str
    entry_status: EntryStatus | None = None
    entry_at: float | None = None
    exit_verified: bool = False
    exit_verified_at: float | None = None
    early_leave_at: float | None = None
    final_status: FinalStatus | None = None


class Enrollment(Entity):
    session_id: str
    student_id: str
    joined_at: float


class GpsFix(BaseModel):
    latitude: float
    longitude: float
    accuracy: float | None = None


class ScanMetadata(BaseModel):
    device_fingerprint: str = Field(min_length=1)
    ip: str = "unknown"
    gps: GpsFix | None = None
    bssid: str | None = None
    user_agent: str | None = None


class Caller(BaseModel):
    """Verified identity handed in by the external authenticator."""

    user_id: str
    role: Role
    email: str | None = None
