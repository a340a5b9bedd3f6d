"""
Tea-time window evaluation.

Pure functions mapping a local timestamp and the configured tea time to
whether the submission window is open and how long until the next one.
Callers own any polling; nothing here has side effects.
"""
import math
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta
from typing import Optional, Tuple

from ...config import TEA_HOUR, TEA_MINUTE, SUBMISSION_WINDOW_MINUTES


@dataclass(frozen=True)
class TeaTimeConfig:
    hour: int = TEA_HOUR
    minute: int = TEA_MINUTE
    submission_window_minutes: int = SUBMISSION_WINDOW_MINUTES

    def __post_init__(self):
        if not 0 <= self.hour <= 23 or not 0 <= self.minute <= 59:
            raise ValueError(f"Invalid tea time {self.hour:02d}:{self.minute:02d}")
        if self.submission_window_minutes <= 0:
            raise ValueError("submission_window_minutes must be positive")


@dataclass(frozen=True)
class WindowStatus:
    window_open: bool
    seconds_until_next_window: int
    # Only meaningful while the window is open
    seconds_until_close: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "window_open": self.window_open,
            "seconds_until_next_window": self.seconds_until_next_window,
            "seconds_until_close": self.seconds_until_close,
        }


def window_bounds(day: date, config: TeaTimeConfig) -> Tuple[datetime, datetime]:
    """
    Return (start, close) for the given local day.

    The close is clamped to midnight so a window never spans two days.
    """
    start = datetime.combine(day, time(config.hour, config.minute))
    close = start + timedelta(minutes=config.submission_window_minutes)
    midnight = datetime.combine(day + timedelta(days=1), time.min)
    return start, min(close, midnight)


def _ceil_seconds(delta: timedelta) -> int:
    return max(0, math.ceil(delta.total_seconds()))


def evaluate(now: datetime, config: TeaTimeConfig) -> WindowStatus:
    """Evaluate the window for a local, naive `now`."""
    start, close = window_bounds(now.date(), config)

    if now <= start:
        next_start = start
    else:
        next_start, _ = window_bounds(now.date() + timedelta(days=1), config)

    window_open = start <= now < close

    return WindowStatus(
        window_open=window_open,
        seconds_until_next_window=_ceil_seconds(next_start - now),
        seconds_until_close=_ceil_seconds(close - now) if window_open else None,
    )


def has_window_closed(now: datetime, day: date, config: TeaTimeConfig) -> bool:
    """True once `now` is at or past the close of `day`'s window."""
    _, close = window_bounds(day, config)
    return now >= close
