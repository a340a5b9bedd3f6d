"""
Submission State Machine

Deterministic state machine for a user's daily tea submission.
VERIFIED and MISSED are terminal for the day.
All transitions are logged immutably.
"""
import logging
from datetime import datetime
from typing import Optional, List, Dict, Any, Tuple
from uuid import uuid4

from ...models.db_models import (
    SubmissionState, ActorType, DailySubmissionDB, SubmissionLogDB,
)

logger = logging.getLogger(__name__)


# =============================================================================
# STATE CONFIGURATION
# =============================================================================
#
# AUTHORITY MODEL:
# - USER: submits a photo, backs out of a pending verification
# - SYSTEM: opens and closes the window
# - VERIFIER: returns the verdict for a pending submission
#
# =============================================================================

STATE_CONFIG = {
    SubmissionState.AWAITING_WINDOW: {
        "description": "Before today's tea-time window opens",
        "allowed_transitions": [
            SubmissionState.WINDOW_OPEN,
            SubmissionState.MISSED,
        ],
    },
    SubmissionState.WINDOW_OPEN: {
        "description": "Window open, awaiting a photo",
        "allowed_transitions": [
            SubmissionState.PENDING_VERIFICATION,
            SubmissionState.MISSED,
        ],
    },
    SubmissionState.PENDING_VERIFICATION: {
        "description": "Photo received, verification running",
        "allowed_transitions": [
            SubmissionState.VERIFIED,
            SubmissionState.REJECTED,
            SubmissionState.WINDOW_OPEN,  # User backed out
            SubmissionState.MISSED,
        ],
    },
    SubmissionState.VERIFIED: {
        "description": "Tea verified for today",
        "allowed_transitions": [],  # Terminal state
    },
    SubmissionState.REJECTED: {
        "description": "Photo rejected, may resubmit while the window is open",
        "allowed_transitions": [
            SubmissionState.PENDING_VERIFICATION,
            SubmissionState.MISSED,
        ],
    },
    SubmissionState.MISSED: {
        "description": "Window closed without a verified submission",
        "allowed_transitions": [],  # Terminal state
    },
}


# =============================================================================
# STATE MACHINE
# =============================================================================

class SubmissionStateMachine:
    """
    Deterministic state machine for daily submissions.

    Core Principles:
    - One record per (user, day)
    - Transitions only along STATE_CONFIG
    - Every transition appends to submission_log
    """

    def __init__(self, db_session):
        """Initialize with database session."""
        self.db = db_session

    def get_state_config(self, state: SubmissionState) -> Dict[str, Any]:
        """Get configuration for a state."""
        return STATE_CONFIG.get(state, {})

    def can_transition(
        self,
        from_state: SubmissionState,
        to_state: SubmissionState
    ) -> Tuple[bool, str]:
        """
        Check if a state transition is allowed.

        Returns (allowed, reason)
        """
        config = self.get_state_config(from_state)
        allowed_transitions = config.get("allowed_transitions", [])

        if to_state in allowed_transitions:
            return True, "Transition allowed"

        return False, f"Cannot transition from {from_state.value} to {to_state.value}"

    def transition(
        self,
        submission: DailySubmissionDB,
        to_state: SubmissionState,
        trigger: str,
        actor: ActorType,
    ) -> Tuple[bool, str]:
        """
        Execute a state transition.

        Returns (success, message)
        """
        from_state = submission.state

        allowed, reason = self.can_transition(from_state, to_state)
        if not allowed:
            logger.warning(f"Rejected transition for submission {submission.id}: {reason}")
            return False, reason

        log_entry = SubmissionLogDB(
            id=str(uuid4()),
            submission_id=submission.id,
            from_state=from_state,
            to_state=to_state,
            trigger=trigger,
            actor=actor,
        )
        self.db.add(log_entry)

        submission.state = to_state
        submission.updated_at = datetime.utcnow()

        logger.info(
            f"Submission {submission.id} ({submission.user_id} {submission.date}): "
            f"{from_state.value} -> {to_state.value} [{trigger}]"
        )
        return True, f"Transitioned to {to_state.value}"

    def log_creation(self, submission: DailySubmissionDB, trigger: str = "record_created") -> None:
        """Record the initial state of a freshly created record."""
        self.db.add(SubmissionLogDB(
            id=str(uuid4()),
            submission_id=submission.id,
            from_state=None,
            to_state=submission.state,
            trigger=trigger,
            actor=ActorType.SYSTEM,
        ))

    def is_terminal_state(self, state: SubmissionState) -> bool:
        """Check if a state is terminal (no further transitions)."""
        config = self.get_state_config(state)
        return len(config.get("allowed_transitions", [])) == 0

    def get_next_states(self, state: SubmissionState) -> List[SubmissionState]:
        """Get possible next states from current state."""
        config = self.get_state_config(state)
        return config.get("allowed_transitions", [])


# =============================================================================
# AUTOMATIC TRANSITION TRIGGERS (SYSTEM-AUTHORITATIVE)
# =============================================================================

class AutomaticTransitionTriggers:
    """
    Clock-driven transitions. Execute without user confirmation.
    """

    @staticmethod
    def window_opened(
        state_machine: SubmissionStateMachine,
        submission: DailySubmissionDB
    ) -> Tuple[bool, str]:
        """Triggered when the clock reports the window as open."""
        if submission.state != SubmissionState.AWAITING_WINDOW:
            return False, "Submission not in AWAITING_WINDOW state"

        return state_machine.transition(
            submission=submission,
            to_state=SubmissionState.WINDOW_OPEN,
            trigger="window_opened",
            actor=ActorType.SYSTEM,
        )

    @staticmethod
    def window_closed(
        state_machine: SubmissionStateMachine,
        submission: DailySubmissionDB,
        trigger: Optional[str] = None,
    ) -> Tuple[bool, str]:
        """
        Triggered when the window closes.
        Anything other than VERIFIED becomes MISSED.
        """
        if state_machine.is_terminal_state(submission.state):
            return False, f"Submission already {submission.state.value}"

        return state_machine.transition(
            submission=submission,
            to_state=SubmissionState.MISSED,
            trigger=trigger or "window_closed",
            actor=ActorType.SYSTEM,
        )
