"""
Compliance error taxonomy.

Each error carries a plain-language message suitable for showing at the
point of action (submission screen, fine screen). None of them are fatal.
"""


class ComplianceError(Exception):
    """Base class for lifecycle domain errors."""

    default_message = "Something went wrong. Please try again."

    def __init__(self, message: str = None):
        self.user_message = message or self.default_message
        super().__init__(self.user_message)


class NotFound(ComplianceError):
    default_message = "We couldn't find that record."


class InvalidRequest(ComplianceError):
    """Input failed a policy check (unknown tea type, charity, wrong amount)."""
    default_message = "Please check the details and try again."


class InvalidTransition(ComplianceError):
    """State change not allowed from the current state. Not retried."""
    default_message = "That action isn't available right now."


class InProgress(ComplianceError):
    """A verification is already running for this record."""
    default_message = "Your previous submission is still being verified."


class VerificationUnavailable(ComplianceError):
    """The verifier failed to respond. Recoverable by retry; state is unchanged."""
    default_message = "Verification is unavailable at the moment. Please try again shortly."


class DuplicateFine(ComplianceError):
    """A fine already exists for this missed submission."""
    default_message = "A fine has already been issued for this day."

    def __init__(self, fine, message: str = None):
        self.fine = fine
        super().__init__(message)


class ReceiptRejected(ComplianceError):
    """Donation receipt failed verification. User must submit a new donation."""
    default_message = "Your receipt could not be verified. Please submit a new donation."
