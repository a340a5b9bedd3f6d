"""Teatime Authority - Data Models"""
from .db_models import (
    # Enums
    SubmissionState, FineStatus, NotificationType, ActorType,
    # Tables
    DailySubmissionDB, SubmissionLogDB, FineDB, DonationDB,
    NotificationDB, ScheduledTransitionDB,
)

__all__ = [
    "SubmissionState", "FineStatus", "NotificationType", "ActorType",
    "DailySubmissionDB", "SubmissionLogDB", "FineDB", "DonationDB",
    "NotificationDB", "ScheduledTransitionDB",
]
