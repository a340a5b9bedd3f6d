"""Teatime Authority - API Routers"""
from .submissions import router as submissions_router
from .fines import router as fines_router
from .notifications import router as notifications_router
from .scheduler import router as scheduler_router

__all__ = [
    "submissions_router",
    "fines_router",
    "notifications_router",
    "scheduler_router",
]
