"""
Tea-Time Compliance Services

Daily submission lifecycle, verification boundary, fines and donations,
notifications and the window scheduler.
"""

from .window import TeaTimeConfig, WindowStatus, evaluate, window_bounds
from .state_machine import SubmissionStateMachine, AutomaticTransitionTriggers
from .verification import Verifier, MockVerifier, HttpVerifier, get_verifier
from .notifications import NotificationEmitter
from .fines import FineResolver, fine_amount, donation_amount
from .submission_service import SubmissionService, VerificationOutcome
from .scheduler import WindowScheduler, WindowCloseTimer
from .errors import (
    ComplianceError, NotFound, InvalidRequest, InvalidTransition, InProgress,
    VerificationUnavailable, DuplicateFine, ReceiptRejected,
)

__all__ = [
    'TeaTimeConfig',
    'WindowStatus',
    'evaluate',
    'window_bounds',
    'SubmissionStateMachine',
    'AutomaticTransitionTriggers',
    'Verifier',
    'MockVerifier',
    'HttpVerifier',
    'get_verifier',
    'NotificationEmitter',
    'FineResolver',
    'fine_amount',
    'donation_amount',
    'SubmissionService',
    'VerificationOutcome',
    'WindowScheduler',
    'WindowCloseTimer',
    # Errors
    'ComplianceError',
    'NotFound',
    'InvalidRequest',
    'InvalidTransition',
    'InProgress',
    'VerificationUnavailable',
    'DuplicateFine',
    'ReceiptRejected',
]
