"""
Overlap detection between a candidate time window and scheduled recordings.

Conflicts are advisory: callers may warn the user and schedule anyway.
"""
from datetime import datetime
from typing import Iterable, Optional

from recorder.entities import RecordingStatus, ScheduledRecording


def windows_overlap(a_start: datetime, a_end: datetime, b_start: datetime, b_end: datetime) -> bool:
    """Half-open interval overlap test for [a_start, a_end) and [b_start, b_end)."""
    return a_start < b_end and b_start < a_end


def find_conflicts(
    recordings: Iterable[ScheduledRecording],
    start: datetime,
    end: datetime,
    excluding_id: Optional[str] = None,
) -> list[ScheduledRecording]:
    """Return scheduled recordings whose window overlaps [start, end)."""
    return [
        r for r in recordings
        if r.id != excluding_id
        and r.status == RecordingStatus.SCHEDULED
        and windows_overlap(start, end, r.start_time, r.end_time)
    ]


def has_conflict(
    recordings: Iterable[ScheduledRecording],
    start: datetime,
    end: datetime,
    excluding_id: Optional[str] = None,
) -> bool:
    return bool(find_conflicts(recordings, start, end, excluding_id))
