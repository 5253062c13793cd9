from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field

from backend.errors import NotFoundError
from backend.models import Caller, ChainPhase, SessionConstraints, Token, TokenType
from backend.security import require_caller
from backend.services.sessions import SessionService

router = APIRouter(prefix="/sessions")


def get_sessions(request: Request) -> SessionService:
    return request.app.state.sessions


def token_view(token: Token) -> dict:
    return {
        "token_id": token.token_id,
        "etag": token.tag,
        "type": token.type.value,
        "chain_id": token.chain_id,
        "holder_id": token.holder_id,
        "seq": token.seq,
        "expires_at": token.expires_at,
    }


# -----------------------------
# Models
# -----------------------------
class SessionCreate(BaseModel):
    class_id: str
    start_at: float
    end_at: float
    late_cutoff_minutes: int = 15
    exit_window_minutes: int = 10
    owner_transfer: bool | None = None
    exit_required: bool = True
    chain_token_ttl_seconds: int | None = Field(default=None, gt=0)
    constraints: SessionConstraints | None = None


class SeedRequest(BaseModel):
    phase: ChainPhase = ChainPhase.ENTRY
    count: int = 1


# -----------------------------
# Lifecycle
# -----------------------------
@router.post("")
def create_session(
    payload: SessionCreate,
    caller: Caller = Depends(require_caller),
    sessions: SessionService = Depends(get_sessions),
):
    session = sessions.create(
        caller,
        class_id=payload.class_id,
        start_at=payload.start_at,
        end_at=payload.end_at,
        late_cutoff_minutes=payload.late_cutoff_minutes,
        exit_window_minutes=payload.exit_window_minutes,
        owner_transfer=payload.owner_transfer,
        exit_required=payload.exit_required,
        chain_token_ttl_seconds=payload.chain_token_ttl_seconds,
        constraints=payload.constraints,
    )
    return session.body()


@router.get("")
def list_sessions(caller: Caller = Depends(require_caller), sessions: SessionService = Depends(get_sessions)):
    return [s.body() for s in sessions.list_for_teacher(caller)]


@router.get("/{session_id}")
def session_detail(
    session_id: str,
    caller: Caller = Depends(require_caller),
    sessions: SessionService = Depends(get_sessions),
):
    return sessions.require_owned(caller, session_id).body()


@router.post("/{session_id}/join")
def join_session(
    session_id: str,
    caller: Caller = Depends(require_caller),
    sessions: SessionService = Depends(get_sessions),
):
    return sessions.join(caller, session_id).body()


@router.post("/{session_id}/end")
def end_session(
    session_id: str,
    caller: Caller = Depends(require_caller),
    sessions: SessionService = Depends(get_sessions),
):
    records = sessions.end(caller, session_id)
    return {"session_id": session_id, "attendance": [r.body() for r in records]}


@router.post("/{session_id}/finalize")
def finalize_session(
    session_id: str,
    caller: Caller = Depends(require_caller),
    sessions: SessionService = Depends(get_sessions),
):
    records = sessions.finalize(caller, session_id)
    return {"session_id": session_id, "attendance": [r.body() for r in records]}


# -----------------------------
# Late entry / early leave
# -----------------------------
_WINDOWS = {"late-entry": TokenType.LATE_ENTRY, "early-leave": TokenType.EARLY_LEAVE}


def _window_type(window: str) -> TokenType:
    token_type = _WINDOWS.get(window)
    if token_type is None:
        raise NotFoundError("Unknown window.", {"window": window})
    return token_type


@router.post("/{session_id}/{window}/start")
def start_window(
    session_id: str,
    window: str,
    caller: Caller = Depends(require_caller),
    sessions: SessionService = Depends(get_sessions),
):
    if _window_type(window) == TokenType.LATE_ENTRY:
        token = sessions.start_late_entry(caller, session_id)
    else:
        token = sessions.start_early_leave(caller, session_id)
    return token_view(token)


@router.post("/{session_id}/{window}/stop")
def stop_window(
    session_id: str,
    window: str,
    caller: Caller = Depends(require_caller),
    sessions: SessionService = Depends(get_sessions),
):
    if _window_type(window) == TokenType.LATE_ENTRY:
        session = sessions.stop_late_entry(caller, session_id)
    else:
        session = sessions.stop_early_leave(caller, session_id)
    return session.body()


@router.get("/{session_id}/{window}/token")
def current_window_token(
    session_id: str,
    window: str,
    caller: Caller = Depends(require_caller),
    sessions: SessionService = Depends(get_sessions),
):
    return token_view(sessions.current_rotating_token(caller, session_id, _window_type(window)))


@router.post("/{session_id}/students/{student_id}/exit")
def mark_exit(
    session_id: str,
    student_id: str,
    caller: Caller = Depends(require_caller),
    sessions: SessionService = Depends(get_sessions),
):
    return sessions.mark_exit(caller, session_id, student_id).body()


# -----------------------------
# Queries
# -----------------------------
@router.get("/{session_id}/attendance")
def session_attendance(
    session_id: str,
    caller: Caller = Depends(require_caller),
    sessions: SessionService = Depends(get_sessions),
):
    return [r.body() for r in sessions.attendance_for(caller, session_id)]


@router.get("/{session_id}/attendance/me")
def my_attendance(
    session_id: str,
    caller: Caller = Depends(require_caller),
    sessions: SessionService = Depends(get_sessions),
):
    record = sessions.my_attendance(caller, session_id)
    if record is None:
        return {"session_id": session_id, "student_id": caller.user_id, "found": False}
    return {"found": True, **record.body()}


@router.get("/{session_id}/scans")
def session_scan_logs(
    session_id: str,
    limit: int = 500,
    caller: Caller = Depends(require_caller),
    sessions: SessionService = Depends(get_sessions),
):
    return sessions.scan_logs(caller, session_id, limit=max(1, min(limit, 5000)))


@router.post("/{session_id}/chains/seed")
def seed_chains(
    session_id: str,
    payload: SeedRequest,
    caller: Caller = Depends(require_caller),
    sessions: SessionService = Depends(get_sessions),
):
    chains = sessions.seed_chains(caller, session_id, payload.phase, payload.count)
    return [c.body() for c in chains]
