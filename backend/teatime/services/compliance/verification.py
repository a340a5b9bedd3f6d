"""
Verification Service boundary.

The state machine and the fine resolver only talk to `Verifier`. Two
implementations ship:

- MockVerifier: seedable stand-in with simulated latency and progress,
  used in development and tests.
- HttpVerifier: client for a real image-analysis backend.

`get_verifier()` picks one from VERIFIER_BACKEND.

Progress contract: callers passing `on_progress` observe monotonically
increasing values in [0, 1], ending with 1.0 before the result returns.
"""
import asyncio
import logging
import random
from abc import ABC, abstractmethod
from typing import Callable, Optional

import httpx

from ... import config
from ...models.verification import (
    VerificationContext, VerificationRequest, VerificationResult,
)
from .errors import VerificationUnavailable

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]


class Verifier(ABC):
    """Judges an image against a content policy."""

    @abstractmethod
    async def verify(
        self,
        request: VerificationRequest,
        on_progress: Optional[ProgressCallback] = None,
    ) -> VerificationResult:
        """
        Return a verdict for the request.

        Raises VerificationUnavailable if no verdict could be obtained.
        """


class _ProgressReporter:
    """Clamps and de-duplicates progress so callers only ever see it rise."""

    def __init__(self, callback: Optional[ProgressCallback]):
        self.callback = callback
        self.last = -1.0

    def report(self, value: float) -> None:
        value = min(1.0, max(0.0, value))
        if self.callback is None or value <= self.last:
            return
        self.last = value
        self.callback(value)


# =============================================================================
# MOCK
# =============================================================================

TEA_FAILURE_REASONS = [
    "We can't clearly see your face in the image.",
    "We can't verify that's a cup of tea. Make sure the cup is clearly visible.",
    "The cup appears empty or we can't see the tea inside.",
    "The image is too dark or blurry to verify.",
]

RECEIPT_FAILURE_REASONS = [
    "We couldn't read the donation amount clearly.",
    "The receipt doesn't appear to be from a recognized charity.",
    "The donation date is unclear or missing.",
    "The receipt appears to be for a different amount than required.",
    "The image quality is too low to verify details.",
]

DEFAULT_PASS_RATES = {
    VerificationContext.TEA_SUBMISSION: 0.7,
    VerificationContext.DONATION_RECEIPT: 0.8,
}


class MockVerifier(Verifier):
    """
    Simulated classifier.

    Args:
        latency: total simulated time in seconds
        tick: progress granularity in seconds
        seed: seed for the outcome generator
        outcome: force every verdict to pass (True) or fail (False)
        pass_rates: per-context pass probability when outcome is None
        unavailable: raise VerificationUnavailable instead of answering
        sleep: awaitable used to wait between ticks
    """

    def __init__(
        self,
        latency: float = 2.0,
        tick: float = 0.1,
        seed: Optional[int] = None,
        outcome: Optional[bool] = None,
        pass_rates: Optional[dict] = None,
        unavailable: bool = False,
        sleep=asyncio.sleep,
    ):
        if tick <= 0:
            raise ValueError("tick must be positive")
        self.latency = max(0.0, latency)
        self.tick = tick
        self.rng = random.Random(seed)
        self.outcome = outcome
        self.pass_rates = {**DEFAULT_PASS_RATES, **(pass_rates or {})}
        self.unavailable = unavailable
        self.sleep = sleep
        self.calls = []

    async def verify(self, request, on_progress=None):
        self.calls.append(request)
        progress = _ProgressReporter(on_progress)
        progress.report(0.0)

        steps = max(1, round(self.latency / self.tick)) if self.latency else 0
        for step in range(1, steps + 1):
            await self.sleep(self.latency / steps)
            # Hold back 1.0 until the verdict is ready
            progress.report(min(step / steps, 0.99))

        if self.unavailable:
            raise VerificationUnavailable()

        valid = self.outcome
        if valid is None:
            valid = self.rng.random() < self.pass_rates[request.context]

        result = self._build_result(request, valid)
        progress.report(1.0)
        return result

    def _build_result(self, request: VerificationRequest, valid: bool) -> VerificationResult:
        if request.context == VerificationContext.DONATION_RECEIPT:
            if valid:
                amount = request.expected_amount or 0
                charity = request.charity_name or "charity"
                return VerificationResult(
                    True,
                    f"Receipt verification successful! We've confirmed your donation "
                    f"of £{amount:.2f} to {charity}.",
                )
            reason = self.rng.choice(RECEIPT_FAILURE_REASONS)
            return VerificationResult(
                False,
                f"Verification failed: {reason} Please try uploading a clearer image of your receipt.",
            )

        if valid:
            return VerificationResult(
                True, "Verification successful! We can see your face and a proper cup of tea."
            )
        reason = self.rng.choice(TEA_FAILURE_REASONS)
        return VerificationResult(False, f"Verification failed: {reason} Please try again.")


# =============================================================================
# HTTP BACKEND
# =============================================================================

class HttpVerifier(Verifier):
    """
    Image-analysis backend client.

    Endpoint: POST {base_url}/verify
    Body: VerificationRequest payload
    Response: {"valid": bool, "feedback": str}

    Any 2xx status is accepted. Progress is reported only when the
    request starts (0.0) and when the verdict is parsed (1.0).
    """

    MISSING_REASON = "Verification failed: the verification service did not give a reason."

    def __init__(
        self,
        base_url: str = None,
        token: str = None,
        timeout: float = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.base_url = (base_url or config.VERIFIER_URL).rstrip("/")
        self.token = token if token is not None else config.VERIFIER_TOKEN
        self.timeout = timeout or config.VERIFIER_TIMEOUT
        self.transport = transport
        self.headers = {"Authorization": f"Bearer {self.token}"} if self.token else {}

    async def verify(self, request, on_progress=None):
        progress = _ProgressReporter(on_progress)
        progress.report(0.0)

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(
                    f"{self.base_url}/verify",
                    headers=self.headers,
                    json=request.to_payload(),
                )
        except httpx.HTTPError as e:
            logger.error(f"Verifier request failed: {e}")
            raise VerificationUnavailable() from e

        if not response.is_success:
            logger.error(f"Verifier returned HTTP {response.status_code}: {response.text}")
            raise VerificationUnavailable()

        try:
            body = response.json()
            valid = bool(body["valid"])
        except (ValueError, KeyError, TypeError) as e:
            logger.error(f"Verifier returned malformed body: {response.text}")
            raise VerificationUnavailable() from e

        feedback = (body.get("feedback") or "").strip()
        if not feedback:
            feedback = "Verification successful!" if valid else self.MISSING_REASON

        progress.report(1.0)
        return VerificationResult(valid, feedback)


def get_verifier(backend: str = None) -> Verifier:
    """Build the verifier selected by configuration."""
    backend = (backend or config.VERIFIER_BACKEND).lower()
    if backend == "http":
        return HttpVerifier()
    if backend == "mock":
        return MockVerifier(latency=config.MOCK_VERIFIER_LATENCY, seed=config.MOCK_VERIFIER_SEED)
    raise ValueError(f"Unknown verifier backend: {backend}")
