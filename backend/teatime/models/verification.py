"""
Verification request/result objects.

Transient - never persisted. Passed across the Verifier boundary.
"""
from dataclasses import dataclass, asdict
from decimal import Decimal
from enum import Enum
from typing import Optional


class VerificationContext(str, Enum):
    """What the image is expected to show."""
    TEA_SUBMISSION = "TEA_SUBMISSION"  # face and a cup of tea
    DONATION_RECEIPT = "DONATION_RECEIPT"  # charity receipt for an expected amount


@dataclass(frozen=True)
class VerificationRequest:
    image_ref: str
    context: VerificationContext
    expected_amount: Optional[Decimal] = None
    charity_name: Optional[str] = None
    tea_type: Optional[str] = None

    def to_payload(self) -> dict:
        payload = asdict(self)
        payload["context"] = self.context.value
        if self.expected_amount is not None:
            payload["expected_amount"] = f"{self.expected_amount:.2f}"
        return payload


@dataclass(frozen=True)
class VerificationResult:
    valid: bool
    feedback: str

    def to_dict(self) -> dict:
        return {"valid": self.valid, "feedback": self.feedback}
