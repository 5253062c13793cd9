from fastapi import APIRouter, Depends, Header, Request
from pydantic import BaseModel, Field

from backend.models import Caller, GpsFix, ScanMetadata
from backend.security import require_caller
from backend.services.scans import ScanProcessor

router = APIRouter()


class ScanRequest(BaseModel):
    session_id: str = Field(min_length=1)
    token_id: str = Field(min_length=1)
    etag: str = Field(min_length=1)
    device_fingerprint: str = Field(min_length=1)
    gps: GpsFix | None = None
    bssid: str | None = None


def get_scanner(request: Request) -> ScanProcessor:
    return request.app.state.scans


def _client_ip(request: Request, forwarded_for: str | None) -> str:
    if forwarded_for:
        first = forwarded_for.split(",")[0].strip()
        if first:
            return first
    return request.client.host if request.client else "unknown"


@router.post("/scan")
def scan(
    payload: ScanRequest,
    request: Request,
    x_forwarded_for: str | None = Header(default=None),
    user_agent: str | None = Header(default=None),
    caller: Caller = Depends(require_caller),
    scanner: ScanProcessor = Depends(get_scanner),
):
    metadata = ScanMetadata(
        device_fingerprint=payload.device_fingerprint,
        ip=_client_ip(request, x_forwarded_for),
        gps=payload.gps,
        bssid=payload.bssid,
        user_agent=user_agent,
    )
    receipt = scanner.scan(caller, payload.session_id, payload.token_id, payload.etag, metadata)
    return receipt.model_dump(mode="json")
