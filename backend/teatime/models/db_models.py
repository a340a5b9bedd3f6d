"""
Teatime Authority - SQLAlchemy ORM Models
Persistent storage for daily submissions, fines, donations and notifications
"""
from datetime import datetime
from enum import Enum
from sqlalchemy import (
    Column, String, Integer, Numeric, DateTime, Date, Text, Boolean,
    ForeignKey, UniqueConstraint, Enum as SQLEnum,
)
from sqlalchemy.orm import relationship
from ..database import Base


# =============================================================================
# ENUMS FOR THE COMPLIANCE LIFECYCLE
# =============================================================================

class SubmissionState(str, Enum):
    """States of a user's daily tea submission."""
    AWAITING_WINDOW = "AWAITING_WINDOW"
    WINDOW_OPEN = "WINDOW_OPEN"
    PENDING_VERIFICATION = "PENDING_VERIFICATION"
    VERIFIED = "VERIFIED"
    REJECTED = "REJECTED"
    MISSED = "MISSED"


class FineStatus(str, Enum):
    """Fine resolution status."""
    PENDING = "PENDING"
    PAID = "PAID"
    DONATED = "DONATED"


class NotificationType(str, Enum):
    """User-visible events emitted on lifecycle transitions."""
    TEA_TIME_REMINDER = "TEA_TIME_REMINDER"
    TEA_WINDOW_OPEN = "TEA_WINDOW_OPEN"
    VERIFIED = "VERIFIED"
    REJECTED = "REJECTED"
    FINE_ISSUED = "FINE_ISSUED"
    FINE_PAID = "FINE_PAID"
    DONATION_ACCEPTED = "DONATION_ACCEPTED"


class ActorType(str, Enum):
    """Who triggered a transition."""
    USER = "USER"
    SYSTEM = "SYSTEM"
    VERIFIER = "VERIFIER"


# =============================================================================
# DAILY SUBMISSIONS
# =============================================================================

class DailySubmissionDB(Base):
    """
    One record per user per local calendar day.
    Created lazily on first query; mutated only by the state machine; never deleted.
    """
    __tablename__ = "daily_submissions"
    __table_args__ = (
        UniqueConstraint("user_id", "date", name="uq_daily_submission_user_date"),
    )

    id = Column(String(36), primary_key=True)  # UUID
    user_id = Column(String(36), nullable=False, index=True)
    date = Column(Date, nullable=False, index=True)  # User-local calendar day

    state = Column(SQLEnum(SubmissionState), nullable=False, default=SubmissionState.AWAITING_WINDOW)

    # Submission details
    tea_type = Column(String(50), nullable=True)  # Set on verified submission
    declared_tea_type = Column(String(50), nullable=True)  # Latest declared, pending verification
    image_ref = Column(String(500), nullable=True)  # Opaque storage handle
    submitted_at = Column(DateTime, nullable=True)
    attempts = Column(Integer, default=0, nullable=False)
    last_feedback = Column(Text, nullable=True)

    reminded_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    # Relationships
    log_entries = relationship("SubmissionLogDB", back_populates="submission", cascade="all, delete-orphan")
    fine = relationship("FineDB", back_populates="missed_submission", uselist=False)


class SubmissionLogDB(Base):
    """
    Immutable log of state machine transitions.
    Append-only - records every state change.
    """
    __tablename__ = "submission_log"

    id = Column(String(36), primary_key=True)  # UUID
    submission_id = Column(String(36), ForeignKey("daily_submissions.id", ondelete="CASCADE"), nullable=False, index=True)

    from_state = Column(SQLEnum(SubmissionState), nullable=True)  # NULL for initial state
    to_state = Column(SQLEnum(SubmissionState), nullable=False)

    trigger = Column(String(100), nullable=False)
    actor = Column(SQLEnum(ActorType), nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow)

    submission = relationship("DailySubmissionDB", back_populates="log_entries")


# =============================================================================
# FINES & DONATIONS
# =============================================================================

class FineDB(Base):
    """Fine issued for a missed day. Immutable once PAID or DONATED."""
    __tablename__ = "fines"

    id = Column(String(36), primary_key=True)  # UUID
    user_id = Column(String(36), nullable=False, index=True)
    missed_submission_id = Column(
        String(36), ForeignKey("daily_submissions.id"), nullable=False, unique=True
    )

    amount = Column(Numeric(10, 2), nullable=False)
    offense_count = Column(Integer, nullable=False)
    status = Column(SQLEnum(FineStatus), nullable=False, default=FineStatus.PENDING)
    reason = Column(String(255), nullable=True)

    due_date = Column(DateTime, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    resolved_at = Column(DateTime, nullable=True)

    missed_submission = relationship("DailySubmissionDB", back_populates="fine")
    donations = relationship("DonationDB", back_populates="fine", order_by="DonationDB.created_at")


class DonationDB(Base):
    """
    Charitable donation offered against a fine.
    verified: NULL = pending, True = accepted, False = rejected (terminal).
    """
    __tablename__ = "donations"

    id = Column(String(36), primary_key=True)  # UUID
    fine_id = Column(String(36), ForeignKey("fines.id"), nullable=False, index=True)
    user_id = Column(String(36), nullable=False, index=True)

    amount = Column(Numeric(10, 2), nullable=False)
    charity_name = Column(String(100), nullable=False)
    receipt_ref = Column(String(500), nullable=False)

    verified = Column(Boolean, nullable=True)
    feedback = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    verified_at = Column(DateTime, nullable=True)

    fine = relationship("FineDB", back_populates="donations")


# =============================================================================
# NOTIFICATIONS
# =============================================================================

class NotificationDB(Base):
    """In-app notification produced by the emitter."""
    __tablename__ = "notifications"

    id = Column(String(36), primary_key=True)  # UUID
    user_id = Column(String(36), nullable=False, index=True)
    type = Column(SQLEnum(NotificationType), nullable=False)
    content = Column(Text, nullable=False)
    related_ref = Column(String(36), nullable=True)
    is_read = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)


# =============================================================================
# SCHEDULER
# =============================================================================

class ScheduledTransitionDB(Base):
    """
    Deferred system transition, e.g. closing a day's window.
    One pending task per submission and task type.
    """
    __tablename__ = "scheduled_transitions"

    id = Column(String(36), primary_key=True)  # UUID

    task_type = Column(String(50), nullable=False)  # window_close
    submission_id = Column(String(36), ForeignKey("daily_submissions.id", ondelete="CASCADE"), nullable=False, index=True)

    scheduled_for = Column(DateTime, nullable=False)
    executed_at = Column(DateTime, nullable=True)

    status = Column(String(20), default="pending")  # pending, completed, failed
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
