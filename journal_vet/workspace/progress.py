"""Advisory processing-progress estimate for journals.

Nothing here changes journal state. The estimate only drives progress bars and
client polling intervals while a journal sits in ``processing``.
"""

from __future__ import annotations

import datetime as dt
import math
from dataclasses import dataclass
from typing import Any, Mapping, Optional

from .models import Journal, JournalStatus, as_utc, utcnow

__all__ = [
    "ProgressEstimate",
    "parse_duration",
    "estimated_processing_seconds",
    "processing_progress",
    "visual_progress",
    "refresh_delay",
    "estimate",
    "MAX_REFRESH_ATTEMPTS",
]

PROCESSING_RATE_DIVISOR = 8.5
DEFAULT_PROCESSING_SECONDS = 70.0
MIN_PROCESSING_SECONDS = 20.0
MIN_VISUAL_PROGRESS = 0.06
MAX_VISUAL_PROGRESS = 0.98

# Client poll schedule (seconds).
REFRESH_INITIAL_DELAY = 20.0
REFRESH_SLOW_DELAY = 18.0
REFRESH_MEDIUM_DELAY = 15.0
REFRESH_FAST_DELAY = 10.0
MAX_REFRESH_ATTEMPTS = 5


def parse_duration(meta: Optional[Mapping[str, Any]]) -> Optional[float]:
    """``meta["duration_sec"]`` as a float, accepting numeric strings."""

    if not isinstance(meta, Mapping):
        return None
    raw = meta.get("duration_sec")
    if isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        value = float(raw)
    elif isinstance(raw, str):
        try:
            value = float(raw.strip())
        except ValueError:
            return None
    else:
        return None
    return value if math.isfinite(value) else None


def estimated_processing_seconds(duration_sec: Optional[float]) -> float:
    if duration_sec is not None and math.isfinite(duration_sec) and duration_sec > 0:
        return max(MIN_PROCESSING_SECONDS, duration_sec / PROCESSING_RATE_DIVISOR)
    return DEFAULT_PROCESSING_SECONDS


def processing_progress(journal: Journal, now: Optional[dt.datetime] = None) -> float:
    """Elapsed time since the last state change over the expected duration.

    Values above 1.0 mean the pipeline is slower than expected.
    """

    updated_at = as_utc(journal.updated_at)
    if updated_at is None:
        return 0.0
    now = now or utcnow()
    elapsed = max(0.0, (now - updated_at).total_seconds())
    expected = estimated_processing_seconds(parse_duration(journal.meta))
    return max(0.0, elapsed / expected)


def visual_progress(progress: float) -> float:
    return min(MAX_VISUAL_PROGRESS, max(MIN_VISUAL_PROGRESS, progress))


def refresh_delay(progress: float, attempt: int) -> float:
    """Seconds a client should wait before polling a processing journal again."""

    if progress >= 0.9:
        return REFRESH_FAST_DELAY
    if progress >= 0.75:
        return REFRESH_MEDIUM_DELAY
    if progress >= 0.5:
        return REFRESH_SLOW_DELAY
    return REFRESH_INITIAL_DELAY if attempt == 0 else REFRESH_SLOW_DELAY


@dataclass(frozen=True, slots=True)
class ProgressEstimate:
    progress: float
    visual: float
    expected_seconds: float
    refresh_after: Optional[float]


def estimate(
    journal: Journal, now: Optional[dt.datetime] = None, attempt: int = 0
) -> Optional[ProgressEstimate]:
    """Progress snapshot for a processing journal, ``None`` for any other state.

    ``attempt`` counts the client's previous polls; once it reaches
    ``MAX_REFRESH_ATTEMPTS`` no further refresh is suggested.
    """

    if journal.status != JournalStatus.PROCESSING:
        return None
    progress = processing_progress(journal, now)
    return ProgressEstimate(
        progress=progress,
        visual=visual_progress(progress),
        expected_seconds=estimated_processing_seconds(parse_duration(journal.meta)),
        refresh_after=(
            refresh_delay(progress, attempt) if attempt < MAX_REFRESH_ATTEMPTS else None
        ),
    )
