"""Shared router dependencies and error translation."""
from datetime import datetime
from typing import Callable

from fastapi import HTTPException, Request

from ..services.compliance.errors import (
    ComplianceError, InProgress, InvalidRequest, InvalidTransition, NotFound,
    ReceiptRejected, VerificationUnavailable,
)
from ..services.compliance.verification import Verifier, get_verifier
from ..services.compliance.window import TeaTimeConfig

STATUS_CODES = {
    NotFound: 404,
    InvalidTransition: 409,
    InProgress: 409,
    InvalidRequest: 422,
    ReceiptRejected: 422,
    VerificationUnavailable: 503,
}


def to_http_exception(error: ComplianceError, **extra) -> HTTPException:
    """Plain-language error for the screen that triggered it."""
    status_code = STATUS_CODES.get(type(error), 400)
    detail = {"error": type(error).__name__, "message": error.user_message, **extra}
    return HTTPException(status_code=status_code, detail=detail)


def get_now() -> datetime:
    """Local device time. Overridden in tests."""
    return datetime.now()


def get_clock() -> Callable[[], datetime]:
    """Clock read after a slow step, e.g. when a verdict arrives. Overridden in tests."""
    return datetime.now


def get_tea_time() -> TeaTimeConfig:
    return TeaTimeConfig()


def get_app_verifier(request: Request) -> Verifier:
    verifier = getattr(request.app.state, "verifier", None)
    if verifier is None:
        verifier = get_verifier()
        request.app.state.verifier = verifier
    return verifier
