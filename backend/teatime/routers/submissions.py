"""
Tea Submission API Routes

Countdown, photo submission with verification, cancellation and history.
"""
import logging
from datetime import datetime
from typing import Callable, List

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from .. import config
from ..auth import get_current_user
from ..database import get_db
from ..services.compliance import SubmissionService, fine_amount, donation_amount
from ..services.compliance.errors import ComplianceError
from ..services.compliance.submission_service import serialize_submission
from ..services.compliance.verification import Verifier
from ..services.compliance.window import TeaTimeConfig, has_window_closed
from .common import get_app_verifier, get_clock, get_now, get_tea_time, to_http_exception

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/tea", tags=["tea"])


# =============================================================================
# REQUEST/RESPONSE MODELS
# =============================================================================

class SubmitTeaRequest(BaseModel):
    """Photo taken during the tea-time window."""
    image_ref: str = Field(..., min_length=1, description="Opaque storage handle of the uploaded photo")
    tea_type: str = Field(..., description="Declared tea type")


def _arm_window_timer(request: Request, user_id: str, now: datetime, tea_time: TeaTimeConfig) -> None:
    timer = getattr(request.app.state, "window_timer", None)
    if timer is not None and not has_window_closed(now, now.date(), tea_time):
        timer.arm(user_id, now.date())


async def _run_verification(service, user_id, day, verifier, clock) -> dict:
    progress: List[float] = []
    try:
        outcome = await service.verify_pending(
            user_id, day, verifier, on_progress=progress.append, clock=clock
        )
    except ComplianceError as e:
        raise to_http_exception(e)

    return {
        "submission": serialize_submission(outcome.submission),
        "verification": outcome.result.to_dict(),
        "applied": outcome.applied,
        "progress": progress,
    }


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.get("/config", response_model=dict)
async def get_tea_config(tea_time: TeaTimeConfig = Depends(get_tea_time)):
    """Tea-time settings the app needs for display."""
    return {
        "hour": tea_time.hour,
        "minute": tea_time.minute,
        "submission_window_minutes": tea_time.submission_window_minutes,
        "tea_types": config.TEA_TYPES,
        "charities": config.APPROVED_CHARITIES,
        "currency": config.CURRENCY,
        "base_fine": f"{fine_amount(1):.2f}",
        "donation_for_base_fine": f"{donation_amount(fine_amount(1)):.2f}",
    }


@router.get("/status", response_model=dict)
async def get_status(
    request: Request,
    db: Session = Depends(get_db),
    current_user: str = Depends(get_current_user),
    now: datetime = Depends(get_now),
    tea_time: TeaTimeConfig = Depends(get_tea_time),
):
    """
    Countdown and today's submission state.

    Safe to poll; transitions only fire when the clock crosses a boundary.
    """
    service = SubmissionService(db, tea_time=tea_time)
    result = service.status(current_user, now)
    _arm_window_timer(request, current_user, now, tea_time)
    return result


@router.post("/submissions", response_model=dict)
async def submit_tea(
    body: SubmitTeaRequest,
    request: Request,
    db: Session = Depends(get_db),
    current_user: str = Depends(get_current_user),
    now: datetime = Depends(get_now),
    tea_time: TeaTimeConfig = Depends(get_tea_time),
    verifier: Verifier = Depends(get_app_verifier),
    clock: Callable[[], datetime] = Depends(get_clock),
):
    """
    Submit today's tea photo and wait for verification.

    409 while a previous photo is still being verified.
    """
    service = SubmissionService(db, tea_time=tea_time)
    try:
        submission = service.submit(current_user, body.image_ref, body.tea_type, now)
    except ComplianceError as e:
        raise to_http_exception(e)

    _arm_window_timer(request, current_user, now, tea_time)
    return await _run_verification(service, current_user, submission.date, verifier, clock)


@router.post("/submissions/verify", response_model=dict)
async def retry_verification(
    db: Session = Depends(get_db),
    current_user: str = Depends(get_current_user),
    now: datetime = Depends(get_now),
    tea_time: TeaTimeConfig = Depends(get_tea_time),
    verifier: Verifier = Depends(get_app_verifier),
    clock: Callable[[], datetime] = Depends(get_clock),
):
    """Retry verification after the verifier was unavailable."""
    service = SubmissionService(db, tea_time=tea_time)
    return await _run_verification(service, current_user, now.date(), verifier, clock)


@router.post("/submissions/cancel", response_model=dict)
async def cancel_submission(
    db: Session = Depends(get_db),
    current_user: str = Depends(get_current_user),
    now: datetime = Depends(get_now),
    tea_time: TeaTimeConfig = Depends(get_tea_time),
):
    """Back out of a pending verification, e.g. to retake the photo."""
    service = SubmissionService(db, tea_time=tea_time)
    try:
        submission = service.cancel_pending(current_user, now)
    except ComplianceError as e:
        raise to_http_exception(e)
    return {"submission": serialize_submission(submission)}


@router.get("/history", response_model=dict)
async def get_history(
    limit: int = 30,
    db: Session = Depends(get_db),
    current_user: str = Depends(get_current_user),
):
    """Past daily records, newest first."""
    service = SubmissionService(db)
    submissions = service.history(current_user, limit=limit)
    return {
        "count": len(submissions),
        "submissions": [serialize_submission(s) for s in submissions],
    }


@router.get("/stats", response_model=dict)
async def get_stats(
    db: Session = Depends(get_db),
    current_user: str = Depends(get_current_user),
    now: datetime = Depends(get_now),
):
    """Streak, tea count, misses, fines and donations for the profile screen."""
    service = SubmissionService(db)
    return service.stats(current_user, now)
