"""
Fines API Routes

Fine listing, payment confirmation and donation receipts.
"""
import logging
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, Query
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from ..auth import get_current_user
from ..database import get_db
from ..services.compliance import FineResolver
from ..services.compliance.errors import ComplianceError, ReceiptRejected
from ..services.compliance.fines import serialize_donation, serialize_fine
from ..services.compliance.verification import Verifier
from .common import get_app_verifier, to_http_exception

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/fines", tags=["fines"])


# =============================================================================
# REQUEST MODELS
# =============================================================================

class DonationRequest(BaseModel):
    """Receipt for a donation offered instead of paying the fine."""
    charity_name: str = Field(..., description="Charity from the approved list")
    receipt_ref: str = Field(..., min_length=1, description="Opaque storage handle of the receipt image")
    amount: Decimal = Field(..., gt=0, description="Donated amount, must match the fine's donation amount")


# =============================================================================
# ENDPOINTS
# =============================================================================

@router.get("", response_model=dict)
async def list_fines(
    status: Optional[str] = Query(None, description="'unpaid' for pending fines only"),
    db: Session = Depends(get_db),
    current_user: str = Depends(get_current_user),
):
    """All of the user's fines, newest first."""
    resolver = FineResolver(db)
    if status == "unpaid":
        fines = resolver.get_unpaid_fines(current_user)
    else:
        fines = resolver.get_user_fines(current_user)
    return {"count": len(fines), "fines": [serialize_fine(f) for f in fines]}


@router.get("/donations", response_model=dict)
async def list_donations(
    db: Session = Depends(get_db),
    current_user: str = Depends(get_current_user),
):
    """The user's donation history."""
    donations = FineResolver(db).get_user_donations(current_user)
    return {"count": len(donations), "donations": [serialize_donation(d) for d in donations]}


@router.get("/{fine_id}", response_model=dict)
async def get_fine(
    fine_id: str,
    db: Session = Depends(get_db),
    current_user: str = Depends(get_current_user),
):
    """A fine and the donations offered against it."""
    resolver = FineResolver(db)
    try:
        fine = resolver.get_fine(fine_id, current_user)
    except ComplianceError as e:
        raise to_http_exception(e)
    donations: List = resolver.get_donations_for_fine(fine.id)
    return {
        "fine": serialize_fine(fine),
        "donations": [serialize_donation(d) for d in donations],
    }


@router.post("/{fine_id}/pay", response_model=dict)
async def pay_fine(
    fine_id: str,
    db: Session = Depends(get_db),
    current_user: str = Depends(get_current_user),
):
    """
    Confirm payment of a fine.

    Duplicate confirmations are accepted and change nothing.
    """
    resolver = FineResolver(db)
    try:
        fine = resolver.pay_fine(fine_id, current_user)
    except ComplianceError as e:
        db.rollback()
        raise to_http_exception(e)
    db.commit()
    return {"fine": serialize_fine(fine)}


@router.post("/{fine_id}/donations", response_model=dict)
async def donate_instead(
    fine_id: str,
    body: DonationRequest,
    db: Session = Depends(get_db),
    current_user: str = Depends(get_current_user),
    verifier: Verifier = Depends(get_app_verifier),
):
    """
    Submit a donation receipt and verify it.

    Accepted: the fine is settled as DONATED.
    Rejected (422): the fine stays PENDING; submit a new donation.
    """
    resolver = FineResolver(db)
    try:
        donation = resolver.submit_donation(
            fine_id, body.charity_name, body.receipt_ref, body.amount, user_id=current_user
        )
    except ComplianceError as e:
        db.rollback()
        raise to_http_exception(e)
    db.commit()

    progress: List[float] = []
    try:
        donation, fine, result = await resolver.verify_donation_receipt(
            donation.id, verifier, on_progress=progress.append
        )
    except ComplianceError as e:
        db.rollback()
        raise to_http_exception(e, donation=serialize_donation(donation))
    db.commit()

    if not result.valid:
        raise to_http_exception(
            ReceiptRejected(result.feedback),
            donation=serialize_donation(donation),
            fine=serialize_fine(fine),
        )

    return {
        "fine": serialize_fine(fine),
        "donation": serialize_donation(donation),
        "verification": result.to_dict(),
        "progress": progress,
    }
