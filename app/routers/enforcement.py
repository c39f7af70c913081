from fastapi import APIRouter, Depends, Request

from app.db import SessionLocal
from app.schemas import SweepSummaryResponse
from app.security import require_scheduler_token
from app.services.auto_checkout import SessionFactory, run_auto_checkout_sweep
from app.settings import get_settings

router = APIRouter(prefix="/internal", tags=["enforcement"])


def get_session_factory() -> SessionFactory:
    # Workers open their own sessions, so the sweep takes a factory instead of get_db.
    return SessionLocal


@router.post("/auto-checkout/run", response_model=SweepSummaryResponse)
def run_auto_checkout_endpoint(
    request: Request,
    _token: str = Depends(require_scheduler_token),
    session_factory: SessionFactory = Depends(get_session_factory),
) -> SweepSummaryResponse:
    summary = run_auto_checkout_sweep(
        session_factory,
        max_workers=get_settings().sweep_max_workers,
    )
    request.state.flags = {
        "checkouts_executed": summary.checkouts_executed,
        "errors": summary.errors,
    }
    return SweepSummaryResponse.model_validate(summary.to_dict())
