"""Split the record space into bounded export windows.

The provider rejects ``createdAt`` ranges wider than a fixed number of days,
so each job covers at most ``max_window_days``. Windows are inclusive on both
ends with one-second resolution: the next window starts one second after the
previous end.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Tuple

from bulkexport.lib.jobs import ExportJob
from bulkexport.lib.time_utils import EPOCH, format_timestamp
from bulkexport.lib.watermark import Watermark

__all__ = ["Window", "gap_limit", "next_window", "resume_point"]

TIME_UNIT = timedelta(seconds=1)


@dataclass(frozen=True)
class Window:
    """One bounded job-creation request."""

    id_lower_bound: int
    window_start: datetime
    window_end: datetime

    def to_filter(self, use_id_filter: bool = True) -> Dict[str, Any]:
        export_filter: Dict[str, Any] = {
            "createdAt": {
                "startAt": format_timestamp(self.window_start),
                "endAt": format_timestamp(self.window_end),
            }
        }
        if use_id_filter:
            export_filter["id"] = {"$gt": self.id_lower_bound}
        return export_filter

    @property
    def width(self) -> timedelta:
        return self.window_end - self.window_start


def next_window(
    watermark: Watermark,
    max_window_days: int,
    now: datetime,
    *,
    epoch: datetime = EPOCH,
    limit: Optional[datetime] = None,
) -> Optional[Window]:
    """Compute the next window after ``watermark``, or None when caught up.

    Pure: the same watermark and clock always yield the same window, so a
    window is requested again only until the watermark moves past it.
    ``limit`` caps the window end so a refill stops short of a window that
    is already pending.
    """
    origin = watermark.max_ingested_timestamp or epoch
    window_start = origin + TIME_UNIT
    if window_start >= now:
        return None

    window_end = min(window_start + timedelta(days=max_window_days), now)
    if limit is not None:
        # the provider needs endAt after startAt, so a one-second gap
        # overlaps the next window by one second
        window_end = min(window_end, max(limit, window_start + TIME_UNIT))
    return Window(
        id_lower_bound=watermark.max_ingested_id,
        window_start=window_start,
        window_end=window_end,
    )


def _windows(pending: Iterable[ExportJob]) -> List[Tuple[datetime, datetime]]:
    return sorted(
        (job.window_start, job.window_end)
        for job in pending
        if job.window_start is not None and job.window_end is not None
    )


def resume_point(
    watermark: Watermark,
    pending: Iterable[ExportJob],
    *,
    epoch: datetime = EPOCH,
) -> Watermark:
    """Watermark to partition from, skipping windows already requested.

    Only the run of pending windows that continues the watermark without a
    gap is skipped. A window whose job was dropped leaves a gap, and
    partitioning resumes there so the window is requested again.
    """
    origin = watermark.max_ingested_timestamp or epoch
    frontier = origin
    for window_start, window_end in _windows(pending):
        if window_start > frontier + TIME_UNIT:
            break
        frontier = max(frontier, window_end)

    if frontier == origin:
        return watermark
    return watermark.advanced(timestamp=frontier)


def gap_limit(
    cursor: Watermark,
    pending: Iterable[ExportJob],
    *,
    epoch: datetime = EPOCH,
) -> Optional[datetime]:
    """Last instant before the next pending window after ``cursor``, if any."""
    origin = cursor.max_ingested_timestamp or epoch
    for window_start, _ in _windows(pending):
        if window_start > origin + TIME_UNIT:
            return window_start - TIME_UNIT
    return None
