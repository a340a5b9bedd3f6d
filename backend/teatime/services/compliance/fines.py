"""
Fine/Donation Resolver

Single source of truth for fine and donation amounts, and the only code
that changes Fine or Donation status.

Fine lifecycle:
    PENDING -> PAID      (payment confirmation, idempotent)
    PENDING -> DONATED   (verified donation receipt)

Donation lifecycle:
    verified NULL -> True | False   (terminal either way)
"""
import logging
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import List, Optional, Tuple
from uuid import uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ... import config
from ...models.db_models import (
    DailySubmissionDB, DonationDB, FineDB, FineStatus, NotificationType, SubmissionState,
)
from ...models.verification import VerificationContext, VerificationRequest, VerificationResult
from .errors import DuplicateFine, InProgress, InvalidRequest, InvalidTransition, NotFound
from .locks import lock_for_update
from .notifications import (
    NotificationEmitter, donation_accepted_message, fine_issued_message, fine_paid_message,
)
from .verification import ProgressCallback, Verifier

logger = logging.getLogger(__name__)

PENNY = Decimal("0.01")


# =============================================================================
# AMOUNTS
# =============================================================================

def _money(value) -> Decimal:
    return Decimal(str(value)).quantize(PENNY, rounding=ROUND_HALF_UP)


def fine_amount(
    offense_count: int,
    base_amount: Decimal = None,
    max_amount: Optional[Decimal] = None,
) -> Decimal:
    """base * 2^(offense_count - 1), optionally capped."""
    if offense_count < 1:
        raise ValueError("offense_count starts at 1")
    base = config.FINE_BASE_AMOUNT if base_amount is None else Decimal(base_amount)
    cap = config.FINE_MAX_AMOUNT if max_amount is None else Decimal(max_amount)

    amount = base * (2 ** (offense_count - 1))
    if cap is not None:
        amount = min(amount, cap)
    return _money(amount)


def donation_amount(fine_total, ratio: Decimal = None) -> Decimal:
    """Donation alternative, a fixed share of the fine regardless of offense count."""
    ratio = config.DONATION_RATIO if ratio is None else Decimal(ratio)
    return _money(Decimal(str(fine_total)) * ratio)


# =============================================================================
# RESOLVER
# =============================================================================

class FineResolver:
    """Creates fines and settles them by payment or donation."""

    def __init__(self, db_session: Session, emitter: NotificationEmitter = None):
        self.db = db_session
        self.emitter = emitter or NotificationEmitter(db_session)

    # =========================================================================
    # LOOKUPS
    # =========================================================================

    def get_fine(self, fine_id: str, user_id: Optional[str] = None, for_update: bool = False) -> FineDB:
        query = self.db.query(FineDB).filter(FineDB.id == fine_id)
        if for_update:
            query = lock_for_update(query)
        fine = query.first()
        if fine is None or (user_id is not None and fine.user_id != user_id):
            raise NotFound("We couldn't find that fine.")
        return fine

    def get_donation(self, donation_id: str, for_update: bool = False) -> DonationDB:
        query = self.db.query(DonationDB).filter(DonationDB.id == donation_id)
        if for_update:
            query = lock_for_update(query)
        donation = query.first()
        if donation is None:
            raise NotFound("We couldn't find that donation.")
        return donation

    def get_user_fines(self, user_id: str) -> List[FineDB]:
        return self.db.query(FineDB).filter(
            FineDB.user_id == user_id
        ).order_by(FineDB.created_at.desc()).all()

    def get_unpaid_fines(self, user_id: str) -> List[FineDB]:
        return self.db.query(FineDB).filter(
            FineDB.user_id == user_id,
            FineDB.status == FineStatus.PENDING,
        ).order_by(FineDB.created_at.desc()).all()

    def get_user_donations(self, user_id: str) -> List[DonationDB]:
        return self.db.query(DonationDB).filter(
            DonationDB.user_id == user_id
        ).order_by(DonationDB.created_at.desc()).all()

    def get_donations_for_fine(self, fine_id: str) -> List[DonationDB]:
        return self.db.query(DonationDB).filter(
            DonationDB.fine_id == fine_id
        ).order_by(DonationDB.created_at).all()

    def next_offense_count(self, user_id: str) -> int:
        """Offense ordinal for the user's next missed day."""
        return self.db.query(FineDB).filter(FineDB.user_id == user_id).count() + 1

    # =========================================================================
    # FINES
    # =========================================================================

    def create_fine(
        self,
        user_id: str,
        missed_submission_id: str,
        offense_count: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> FineDB:
        """
        Issue a fine for a missed day.

        Idempotent per missed submission: a repeat call returns the existing fine.
        """
        try:
            return self._insert_fine(user_id, missed_submission_id, offense_count, now)
        except DuplicateFine as e:
            logger.info(f"Fine already issued for submission {missed_submission_id}: {e.fine.id}")
            return e.fine

    def _insert_fine(self, user_id, missed_submission_id, offense_count, now) -> FineDB:
        existing = self.db.query(FineDB).filter(
            FineDB.missed_submission_id == missed_submission_id
        ).first()
        if existing is not None:
            raise DuplicateFine(existing)

        submission = self.db.query(DailySubmissionDB).filter(
            DailySubmissionDB.id == missed_submission_id
        ).first()
        if submission is None:
            raise NotFound("We couldn't find that day's submission.")
        if submission.state != SubmissionState.MISSED:
            raise InvalidTransition("Fines are only issued for missed days.")

        now = now or datetime.now()
        offense_count = offense_count or self.next_offense_count(user_id)
        amount = fine_amount(offense_count)

        fine = FineDB(
            id=str(uuid4()),
            user_id=user_id,
            missed_submission_id=missed_submission_id,
            amount=amount,
            offense_count=offense_count,
            status=FineStatus.PENDING,
            reason=f"Missed tea time on {submission.date.isoformat()}",
            due_date=now + timedelta(days=config.FINE_DUE_DAYS),
            created_at=now,
        )
        self.db.add(fine)
        try:
            self.db.flush()
        except IntegrityError:
            # Another worker issued it first
            self.db.rollback()
            existing = self.db.query(FineDB).filter(
                FineDB.missed_submission_id == missed_submission_id
            ).one()
            raise DuplicateFine(existing)

        logger.info(f"Fine {fine.id} issued to {user_id}: £{amount} (offense {offense_count})")
        self.emitter.emit(user_id, NotificationType.FINE_ISSUED, fine_issued_message(amount), fine.id)
        return fine

    def pay_fine(self, fine_id: str, user_id: Optional[str] = None, now: Optional[datetime] = None) -> FineDB:
        """Record a payment confirmation. Paying an already-paid fine is a no-op."""
        fine = self.get_fine(fine_id, user_id, for_update=True)

        if fine.status == FineStatus.PAID:
            logger.info(f"Duplicate payment confirmation for fine {fine.id}")
            return fine
        if fine.status != FineStatus.PENDING:
            raise InvalidTransition("This fine has already been settled by donation.")

        fine.status = FineStatus.PAID
        fine.resolved_at = now or datetime.now()
        logger.info(f"Fine {fine.id} paid")
        self.emitter.emit(fine.user_id, NotificationType.FINE_PAID, fine_paid_message(fine.amount), fine.id)
        self.db.flush()
        return fine

    # =========================================================================
    # DONATIONS
    # =========================================================================

    def submit_donation(
        self,
        fine_id: str,
        charity_name: str,
        receipt_ref: str,
        amount,
        user_id: Optional[str] = None,
    ) -> DonationDB:
        """Offer a donation against a pending fine. Does not change the fine's status."""
        fine = self.get_fine(fine_id, user_id, for_update=True)

        if fine.status != FineStatus.PENDING:
            raise InvalidTransition(f"This fine is already {fine.status.value.lower()}.")
        if charity_name not in config.APPROVED_CHARITIES:
            raise InvalidRequest(
                f"{charity_name} is not an authorised charity. "
                f"Choose one of: {', '.join(config.APPROVED_CHARITIES)}."
            )
        if not receipt_ref:
            raise InvalidRequest("Please upload your donation receipt.")

        expected = donation_amount(fine.amount)
        if _money(amount) != expected:
            raise InvalidRequest(f"The donation for this fine must be £{expected:.2f}.")

        pending = self.db.query(DonationDB).filter(
            DonationDB.fine_id == fine.id,
            DonationDB.verified.is_(None),
        ).first()
        if pending is not None:
            raise InProgress("A donation receipt for this fine is already being verified.")

        donation = DonationDB(
            id=str(uuid4()),
            fine_id=fine.id,
            user_id=fine.user_id,
            amount=expected,
            charity_name=charity_name,
            receipt_ref=receipt_ref,
            verified=None,
            created_at=datetime.utcnow(),
        )
        self.db.add(donation)
        self.db.flush()
        logger.info(f"Donation {donation.id} of £{expected} to {charity_name} submitted for fine {fine.id}")
        return donation

    def resolve_donation_verification(
        self,
        donation_id: str,
        verdict: bool,
        feedback: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Tuple[DonationDB, FineDB]:
        """Apply a receipt verdict. Accepted settles the fine; rejected leaves it pending."""
        donation = self.get_donation(donation_id, for_update=True)
        fine = self.get_fine(donation.fine_id, for_update=True)

        if donation.verified is not None:
            raise InvalidTransition("This donation has already been reviewed.")
        if verdict and fine.status != FineStatus.PENDING:
            raise InvalidTransition(f"This fine is already {fine.status.value.lower()}.")

        now = now or datetime.now()
        donation.verified = bool(verdict)
        donation.feedback = feedback
        donation.verified_at = now

        if verdict:
            fine.status = FineStatus.DONATED
            fine.resolved_at = now
            logger.info(f"Donation {donation.id} accepted; fine {fine.id} settled")
            self.emitter.emit(
                fine.user_id,
                NotificationType.DONATION_ACCEPTED,
                donation_accepted_message(donation.amount, donation.charity_name),
                fine.id,
            )
        else:
            logger.warning(f"Donation {donation.id} rejected: {feedback}")

        self.db.flush()
        return donation, fine

    async def verify_donation_receipt(
        self,
        donation_id: str,
        verifier: Verifier,
        on_progress: Optional[ProgressCallback] = None,
    ) -> Tuple[DonationDB, FineDB, VerificationResult]:
        """Ask the verifier about a pending donation receipt and apply its verdict."""
        donation = self.get_donation(donation_id)
        if donation.verified is not None:
            raise InvalidTransition("This donation has already been reviewed.")

        request = VerificationRequest(
            image_ref=donation.receipt_ref,
            context=VerificationContext.DONATION_RECEIPT,
            expected_amount=Decimal(str(donation.amount)),
            charity_name=donation.charity_name,
        )
        result = await verifier.verify(request, on_progress)

        donation, fine = self.resolve_donation_verification(donation_id, result.valid, result.feedback)
        return donation, fine, result


# =============================================================================
# SERIALIZATION
# =============================================================================

def serialize_fine(fine: FineDB) -> dict:
    return {
        "id": fine.id,
        "missed_submission_id": fine.missed_submission_id,
        "amount": f"{_money(fine.amount):.2f}",
        "donation_amount": f"{donation_amount(fine.amount):.2f}",
        "currency": config.CURRENCY,
        "offense_count": fine.offense_count,
        "status": fine.status.value,
        "reason": fine.reason,
        "due_date": fine.due_date.isoformat() if fine.due_date else None,
        "created_at": fine.created_at.isoformat() if fine.created_at else None,
        "resolved_at": fine.resolved_at.isoformat() if fine.resolved_at else None,
    }


def serialize_donation(donation: DonationDB) -> dict:
    return {
        "id": donation.id,
        "fine_id": donation.fine_id,
        "amount": f"{_money(donation.amount):.2f}",
        "charity_name": donation.charity_name,
        "receipt_ref": donation.receipt_ref,
        "verified": donation.verified,
        "feedback": donation.feedback,
        "created_at": donation.created_at.isoformat() if donation.created_at else None,
        "verified_at": donation.verified_at.isoformat() if donation.verified_at else None,
    }
