"""
Recordings router: scheduled recordings, conflicts and manual recording endpoints.
"""
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from recorder.entities import (
    DEFAULT_POST_BUFFER_MINUTES,
    DEFAULT_PRE_BUFFER_MINUTES,
    RecordingStatus,
    ScheduledRecording,
    format_datetime,
)
from recorder.errors import SchedulerError
from recording_scheduler import RecordingScheduler
from routers.common import get_scheduler, http_error, not_found, to_naive_utc

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/recordings", tags=["Recordings"])


# ---------------------------------------------------------------------------
# Pydantic models
# ---------------------------------------------------------------------------

class RecordingRequest(BaseModel):
    """Body for creating or editing a scheduled recording."""
    title: str
    channel_id: str
    start_time: datetime
    end_time: datetime
    channel_name: str = ""
    stream_url: str = ""
    description: str = ""
    pre_buffer_minutes: int = DEFAULT_PRE_BUFFER_MINUTES
    post_buffer_minutes: int = DEFAULT_POST_BUFFER_MINUTES
    output_file_path: str = ""
    is_epg_based: bool = False
    epg_program_id: Optional[str] = None
    recorder_args: Optional[str] = None

    def to_recording(self, recording_id: Optional[str] = None) -> ScheduledRecording:
        values = self.model_dump()
        values["start_time"] = to_naive_utc(self.start_time)
        values["end_time"] = to_naive_utc(self.end_time)
        if recording_id:
            values["id"] = recording_id
        return ScheduledRecording(**values)


class ManualRecordingRequest(BaseModel):
    stream_url: str
    title: str
    channel_name: str = ""
    output_path: Optional[str] = None


def recording_to_response(recording: ScheduledRecording) -> dict:
    data = recording.to_dict()
    data.update({
        "status_text": recording.status_text,
        "duration_text": recording.duration_text,
        "time_range_text": recording.time_range_text,
        "adjusted_start": format_datetime(recording.adjusted_start),
        "adjusted_end": format_datetime(recording.adjusted_end),
        "can_cancel": recording.can_cancel,
        "can_edit": recording.can_edit,
    })
    return data


# ---------------------------------------------------------------------------
# Collection
# ---------------------------------------------------------------------------

@router.get("")
async def list_recordings(
    status: Optional[RecordingStatus] = None,
    scheduler: RecordingScheduler = Depends(get_scheduler),
):
    """List recordings of the active session, ordered by start time."""
    return [recording_to_response(r) for r in scheduler.get_recordings(status)]


@router.post("", status_code=201)
async def create_recording(
    request: RecordingRequest,
    scheduler: RecordingScheduler = Depends(get_scheduler),
):
    """Schedule a recording. Overlaps are reported but do not block."""
    logger.debug("[RECORDINGS] POST /api/recordings title=%s", request.title)
    try:
        recording = request.to_recording()
        conflicts = scheduler.get_conflicts(recording.start_time, recording.end_time, recording.id)
        scheduler.schedule_recording(recording)
    except SchedulerError as e:
        raise http_error(e)
    return {
        "id": recording.id,
        "recording": recording_to_response(recording),
        "conflicts": [recording_to_response(c) for c in conflicts],
    }


@router.get("/upcoming")
async def upcoming_recordings(
    hours: float = 24,
    scheduler: RecordingScheduler = Depends(get_scheduler),
):
    """Scheduled recordings starting within the next ``hours``."""
    return [recording_to_response(r) for r in scheduler.get_upcoming_recordings(hours)]


@router.get("/conflicts")
async def check_conflicts(
    start: datetime,
    end: datetime,
    exclude_id: Optional[str] = None,
    scheduler: RecordingScheduler = Depends(get_scheduler),
):
    """Scheduled recordings overlapping [start, end)."""
    start, end = to_naive_utc(start), to_naive_utc(end)
    if start >= end:
        raise HTTPException(status_code=400, detail="Start time must be before end time")
    conflicts = scheduler.get_conflicts(start, end, exclude_id)
    return {
        "has_conflict": bool(conflicts),
        "conflicts": [recording_to_response(c) for c in conflicts],
    }


@router.delete("/completed")
async def delete_completed(scheduler: RecordingScheduler = Depends(get_scheduler)):
    """Remove completed, failed and cancelled recordings."""
    return {"deleted": scheduler.delete_completed_recordings()}


# ---------------------------------------------------------------------------
# Manual recording
# ---------------------------------------------------------------------------

@router.post("/manual", status_code=201)
async def start_manual(
    request: ManualRecordingRequest,
    scheduler: RecordingScheduler = Depends(get_scheduler),
):
    """Start recording a stream immediately, outside the schedule."""
    try:
        handle = await scheduler.start_manual_recording(
            request.stream_url, request.title, request.channel_name, request.output_path,
        )
    except SchedulerError as e:
        raise http_error(e)
    return {"id": handle.recording_id, "output_path": handle.output_path, "pid": handle.pid}


@router.post("/manual/stop")
async def stop_manual(scheduler: RecordingScheduler = Depends(get_scheduler)):
    try:
        stopped = await scheduler.stop_manual_recording()
    except SchedulerError as e:
        raise http_error(e)
    return {"stopped": stopped}


# ---------------------------------------------------------------------------
# Single recording
# ---------------------------------------------------------------------------

@router.get("/{recording_id}")
async def get_recording(recording_id: str, scheduler: RecordingScheduler = Depends(get_scheduler)):
    recording = scheduler.get_recording(recording_id)
    if recording is None:
        raise not_found("Recording", recording_id)
    return recording_to_response(recording)


@router.put("/{recording_id}")
async def update_recording(
    recording_id: str,
    request: RecordingRequest,
    scheduler: RecordingScheduler = Depends(get_scheduler),
):
    """Edit a recording that has not started yet."""
    try:
        recording = scheduler.update_recording(request.to_recording(recording_id))
    except KeyError:
        raise not_found("Recording", recording_id)
    except SchedulerError as e:
        raise http_error(e)
    return recording_to_response(recording)


@router.post("/{recording_id}/cancel")
async def cancel_recording(recording_id: str, scheduler: RecordingScheduler = Depends(get_scheduler)):
    """Cancel a scheduled or in-progress recording."""
    try:
        recording = scheduler.cancel_recording(recording_id)
    except SchedulerError as e:
        raise http_error(e)
    if recording is None:
        raise not_found("Recording", recording_id)
    return recording_to_response(recording)
