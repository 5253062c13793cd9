from fastapi import APIRouter, Depends, Request

from backend.security import require_internal_key

router = APIRouter()


@router.get("/health")
def health():
    return {"status": "ok"}


@router.get("/config")
def public_config(request: Request):
    config = request.app.state.config
    return {
        "chain_token_ttl_seconds": config.chain_token_ttl_seconds,
        "rotation_interval_seconds": config.rotation_interval_seconds,
        "late_rotation_seconds": config.late_rotation_seconds,
        "early_leave_rotation_seconds": config.early_leave_rotation_seconds,
        "stall_threshold_seconds": config.stall_threshold_seconds,
        "owner_transfer": config.owner_transfer,
        "max_chains_per_seed": config.max_chains_per_seed,
        "rate_limit_window_seconds": config.rate_limit_window_seconds,
        "rate_limit_device_max": config.rate_limit_device_max,
        "rate_limit_ip_max": config.rate_limit_ip_max,
    }


@router.post("/internal/rotation/sweep", dependencies=[Depends(require_internal_key)])
def rotation_sweep(request: Request):
    report = request.app.state.rotation.sweep()
    return report.as_dict()
