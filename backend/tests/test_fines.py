"""
Tests for fine amounts, payment and donation settlement.
"""
import asyncio
from datetime import date, datetime, timedelta
from decimal import Decimal

import pytest

from teatime.models.db_models import DonationDB, FineStatus, NotificationDB, NotificationType
from teatime.services.compliance import (
    InProgress, InvalidRequest, InvalidTransition, MockVerifier, NotFound,
    donation_amount, fine_amount,
)
from teatime.services.compliance.fines import serialize_fine


USER_ID = "user-1"
CLOSE = datetime(2024, 6, 3, 17, 10)


@pytest.fixture
def fine(service):
    """First offense, issued at the 2024-06-03 window close."""
    _, fine = service.close_window(USER_ID, date(2024, 6, 3), now=CLOSE)
    return fine


class TestAmounts:

    @pytest.mark.parametrize("offense,expected", [
        (1, Decimal("5.00")),
        (2, Decimal("10.00")),
        (3, Decimal("20.00")),
        (5, Decimal("80.00")),
    ])
    def test_fine_doubles(self, offense, expected):
        assert fine_amount(offense, base_amount=Decimal("5.00")) == expected

    def test_fine_cap(self):
        assert fine_amount(6, base_amount=Decimal("5.00"), max_amount=Decimal("100.00")) == Decimal("100.00")
        assert fine_amount(2, base_amount=Decimal("5.00"), max_amount=Decimal("100.00")) == Decimal("10.00")

    def test_offense_count_starts_at_one(self):
        with pytest.raises(ValueError):
            fine_amount(0)

    @pytest.mark.parametrize("total,expected", [
        (Decimal("5.00"), Decimal("0.50")),
        (Decimal("10.00"), Decimal("1.00")),
        (Decimal("20.00"), Decimal("2.00")),
        (Decimal("0.05"), Decimal("0.01")),
    ])
    def test_donation_is_tenth(self, total, expected):
        assert donation_amount(total) == expected


class TestCreateFine:

    def test_fine_fields(self, fine):
        assert fine.user_id == USER_ID
        assert fine.amount == Decimal("5.00")
        assert fine.offense_count == 1
        assert fine.status == FineStatus.PENDING
        assert fine.due_date == CLOSE + timedelta(days=14)
        assert fine.reason == "Missed tea time on 2024-06-03"

    def test_repeat_create_returns_same_fine(self, fine, resolver):
        again = resolver.create_fine(USER_ID, fine.missed_submission_id)
        assert again.id == fine.id
        assert len(resolver.get_user_fines(USER_ID)) == 1

    def test_only_for_missed_days(self, service, resolver):
        submission = service.refresh(USER_ID, datetime(2024, 6, 3, 17, 3))
        with pytest.raises(InvalidTransition):
            resolver.create_fine(USER_ID, submission.id)

    def test_serialized_amounts(self, fine):
        data = serialize_fine(fine)
        assert data["amount"] == "5.00"
        assert data["donation_amount"] == "0.50"
        assert data["status"] == "PENDING"


class TestPayFine:

    def test_pay(self, fine, resolver, db_session):
        paid = resolver.pay_fine(fine.id, USER_ID, now=CLOSE)

        assert paid.status == FineStatus.PAID
        assert paid.resolved_at == CLOSE
        types = [n.type for n in db_session.query(NotificationDB).all()]
        assert NotificationType.FINE_PAID in types

    def test_pay_twice_is_noop(self, fine, resolver, db_session):
        resolver.pay_fine(fine.id, USER_ID, now=CLOSE)
        again = resolver.pay_fine(fine.id, USER_ID, now=CLOSE + timedelta(hours=1))

        assert again.status == FineStatus.PAID
        assert again.resolved_at == CLOSE
        paid_notices = db_session.query(NotificationDB).filter(
            NotificationDB.type == NotificationType.FINE_PAID
        ).count()
        assert paid_notices == 1

    def test_other_users_fine_not_found(self, fine, resolver):
        with pytest.raises(NotFound):
            resolver.pay_fine(fine.id, "someone-else")

    def test_unpaid_list(self, fine, resolver):
        assert [f.id for f in resolver.get_unpaid_fines(USER_ID)] == [fine.id]
        resolver.pay_fine(fine.id, USER_ID)
        assert resolver.get_unpaid_fines(USER_ID) == []


class TestDonations:

    def test_submit_donation(self, fine, resolver):
        donation = resolver.submit_donation(fine.id, "National Trust", "receipt-1", Decimal("0.50"), USER_ID)

        assert donation.verified is None
        assert donation.amount == Decimal("0.50")
        assert resolver.get_fine(fine.id).status == FineStatus.PENDING

    def test_unapproved_charity(self, fine, resolver):
        with pytest.raises(InvalidRequest):
            resolver.submit_donation(fine.id, "My Mate Dave", "receipt-1", Decimal("0.50"), USER_ID)

    def test_wrong_amount(self, fine, resolver):
        with pytest.raises(InvalidRequest) as exc:
            resolver.submit_donation(fine.id, "National Trust", "receipt-1", Decimal("5.00"), USER_ID)
        assert "£0.50" in exc.value.user_message

    def test_missing_receipt(self, fine, resolver):
        with pytest.raises(InvalidRequest):
            resolver.submit_donation(fine.id, "National Trust", "", Decimal("0.50"), USER_ID)

    def test_second_donation_while_pending(self, fine, resolver):
        resolver.submit_donation(fine.id, "National Trust", "receipt-1", Decimal("0.50"), USER_ID)
        with pytest.raises(InProgress):
            resolver.submit_donation(fine.id, "National Trust", "receipt-2", Decimal("0.50"), USER_ID)

    def test_accepted_receipt_settles_fine(self, fine, resolver, db_session):
        donation = resolver.submit_donation(fine.id, "Cancer Research UK", "receipt-1", Decimal("0.50"), USER_ID)

        donation, settled = resolver.resolve_donation_verification(donation.id, True, "ok", now=CLOSE)

        assert donation.verified is True
        assert settled.status == FineStatus.DONATED
        assert settled.resolved_at == CLOSE
        types = [n.type for n in db_session.query(NotificationDB).all()]
        assert NotificationType.DONATION_ACCEPTED in types

    def test_rejected_receipt_keeps_fine_pending(self, fine, resolver):
        donation = resolver.submit_donation(fine.id, "National Trust", "receipt-1", Decimal("0.50"), USER_ID)

        donation, still_open = resolver.resolve_donation_verification(donation.id, False, "blurry")

        assert donation.verified is False
        assert still_open.status == FineStatus.PENDING
        # A fresh donation is allowed after rejection
        retry = resolver.submit_donation(fine.id, "National Trust", "receipt-2", Decimal("0.50"), USER_ID)
        assert retry.id != donation.id

    def test_reviewed_donation_is_final(self, fine, resolver):
        donation = resolver.submit_donation(fine.id, "National Trust", "receipt-1", Decimal("0.50"), USER_ID)
        resolver.resolve_donation_verification(donation.id, False, "blurry")

        with pytest.raises(InvalidTransition):
            resolver.resolve_donation_verification(donation.id, True, "ok")

    def test_donated_fine_cannot_be_paid(self, fine, resolver):
        donation = resolver.submit_donation(fine.id, "National Trust", "receipt-1", Decimal("0.50"), USER_ID)
        resolver.resolve_donation_verification(donation.id, True, "ok")

        with pytest.raises(InvalidTransition):
            resolver.pay_fine(fine.id, USER_ID)

    def test_paid_fine_cannot_take_donation(self, fine, resolver):
        resolver.pay_fine(fine.id, USER_ID)
        with pytest.raises(InvalidTransition):
            resolver.submit_donation(fine.id, "National Trust", "receipt-1", Decimal("0.50"), USER_ID)


class TestReceiptVerification:

    def test_verifier_sees_expected_amount(self, fine, resolver):
        donation = resolver.submit_donation(fine.id, "National Trust", "receipt-1", Decimal("0.50"), USER_ID)
        verifier = MockVerifier(latency=0, outcome=True)

        donation, settled, result = asyncio.run(resolver.verify_donation_receipt(donation.id, verifier))

        assert result.valid is True
        assert "£0.50" in result.feedback
        assert verifier.calls[0].expected_amount == Decimal("0.50")
        assert verifier.calls[0].charity_name == "National Trust"
        assert settled.status == FineStatus.DONATED

    def test_donated_fine_takes_no_further_donations(self, fine, resolver):
        """£5.00 fine settled by a verified £0.50 donation to the Royal British Legion."""
        donation = resolver.submit_donation(fine.id, "Royal British Legion", "receipt-1", Decimal("0.50"), USER_ID)
        asyncio.run(resolver.verify_donation_receipt(donation.id, MockVerifier(latency=0, outcome=True)))
        assert resolver.get_fine(fine.id).status == FineStatus.DONATED

        with pytest.raises(InvalidTransition):
            resolver.submit_donation(fine.id, "Royal British Legion", "receipt-2", Decimal("0.50"), USER_ID)

    def test_second_offense_donation(self, service, resolver, db_session):
        service.close_window(USER_ID, date(2024, 6, 3), now=CLOSE)
        _, second = service.close_window(USER_ID, date(2024, 6, 4), now=CLOSE + timedelta(days=1))
        assert second.amount == Decimal("10.00")

        donation = resolver.submit_donation(second.id, "Royal British Legion", "receipt-1", Decimal("1.00"), USER_ID)
        asyncio.run(resolver.verify_donation_receipt(donation.id, MockVerifier(latency=0, outcome=True)))

        assert db_session.query(DonationDB).filter(DonationDB.verified.is_(True)).count() == 1
        assert resolver.get_fine(second.id).status == FineStatus.DONATED
