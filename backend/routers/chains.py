from fastapi import APIRouter, Depends
from pydantic import BaseModel

from backend.models import Caller
from backend.routers.sessions import get_sessions, token_view
from backend.security import require_caller
from backend.services.sessions import SessionService

router = APIRouter(prefix="/sessions/{session_id}")


class ReseedRequest(BaseModel):
    holder_id: str | None = None


@router.get("/chains")
def list_chains(
    session_id: str,
    caller: Caller = Depends(require_caller),
    sessions: SessionService = Depends(get_sessions),
):
    return [c.body() for c in sessions.list_chains(caller, session_id)]


@router.post("/chains/{chain_id}/reseed")
def reseed_chain(
    session_id: str,
    chain_id: str,
    payload: ReseedRequest | None = None,
    caller: Caller = Depends(require_caller),
    sessions: SessionService = Depends(get_sessions),
):
    holder_id = payload.holder_id if payload else None
    chain, token = sessions.reseed_chain(caller, session_id, chain_id, holder_id)
    return {"chain": chain.body(), "token": token_view(token)}


@router.post("/chains/{chain_id}/close")
def close_chain(
    session_id: str,
    chain_id: str,
    caller: Caller = Depends(require_caller),
    sessions: SessionService = Depends(get_sessions),
):
    return sessions.close_chain(caller, session_id, chain_id).body()


@router.get("/chains/{chain_id}/history")
def chain_history(
    session_id: str,
    chain_id: str,
    caller: Caller = Depends(require_caller),
    sessions: SessionService = Depends(get_sessions),
):
    return sessions.chain_history(caller, session_id, chain_id)


@router.get("/holder-tokens")
def holder_tokens(
    session_id: str,
    caller: Caller = Depends(require_caller),
    sessions: SessionService = Depends(get_sessions),
):
    # Polled by the holder's device to render its QR code.
    return [token_view(t) for t in sessions.holder_tokens(caller, session_id)]
