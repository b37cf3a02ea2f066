"""
Series router: recurring series rules and on-demand EPG refresh.
"""
import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel

from recorder.entities import (
    DEFAULT_POST_BUFFER_MINUTES,
    DEFAULT_PRE_BUFFER_MINUTES,
    SeriesMatchMode,
    SeriesRecording,
)
from recorder.errors import SchedulerError
from recording_scheduler import RecordingScheduler
from routers.common import get_scheduler, http_error, not_found
from routers.recordings import recording_to_response

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/series", tags=["Series"])


class SeriesRequest(BaseModel):
    """Body for creating or editing a series rule."""
    series_name: str
    channel_id: str
    channel_name: str = ""
    stream_url: str = ""
    match_mode: SeriesMatchMode = SeriesMatchMode.CONTAINS
    only_new_episodes: bool = True
    pre_buffer_minutes: int = DEFAULT_PRE_BUFFER_MINUTES
    post_buffer_minutes: int = DEFAULT_POST_BUFFER_MINUTES
    custom_recorder_args: Optional[str] = None
    output_directory: Optional[str] = None
    is_active: bool = True

    def to_rule(self, series_id: Optional[str] = None) -> SeriesRecording:
        values = self.model_dump()
        if series_id:
            values["id"] = series_id
        return SeriesRecording(**values)


def series_to_response(rule: SeriesRecording) -> dict:
    data = rule.to_dict()
    data.update({
        "status_text": rule.status_text,
        "next_recording_display": rule.next_recording_display(),
    })
    return data


@router.get("")
async def list_series(active_only: bool = False, scheduler: RecordingScheduler = Depends(get_scheduler)):
    return [series_to_response(s) for s in scheduler.get_series_recordings(active_only)]


@router.post("", status_code=201)
async def create_series(request: SeriesRequest, scheduler: RecordingScheduler = Depends(get_scheduler)):
    """Add a series rule. Episodes are scheduled on the next refresh."""
    try:
        rule = request.to_rule()
        scheduler.add_series_recording(rule)
    except SchedulerError as e:
        raise http_error(e)
    return series_to_response(rule)


@router.get("/{series_id}")
async def get_series(series_id: str, scheduler: RecordingScheduler = Depends(get_scheduler)):
    rule = scheduler.get_series_recording(series_id)
    if rule is None:
        raise not_found("Series", series_id)
    data = series_to_response(rule)
    data["recordings"] = [recording_to_response(r) for r in scheduler.store.children_of(series_id)]
    return data


@router.put("/{series_id}")
async def update_series(
    series_id: str,
    request: SeriesRequest,
    scheduler: RecordingScheduler = Depends(get_scheduler),
):
    try:
        rule = scheduler.update_series_recording(request.to_rule(series_id))
    except KeyError:
        raise not_found("Series", series_id)
    except SchedulerError as e:
        raise http_error(e)
    return series_to_response(rule)


@router.delete("/{series_id}")
async def delete_series(series_id: str, scheduler: RecordingScheduler = Depends(get_scheduler)):
    """Remove a rule; its upcoming scheduled recordings are cancelled."""
    cancelled = scheduler.remove_series_recording(series_id)
    if cancelled is None:
        raise not_found("Series", series_id)
    return {"status": "deleted", "cancelled_recordings": cancelled}


@router.post("/{series_id}/refresh")
async def refresh_series(series_id: str, scheduler: RecordingScheduler = Depends(get_scheduler)):
    """Fetch EPG for the rule's channel now and schedule any new episodes."""
    logger.debug("[SERIES] POST /api/series/%s/refresh", series_id)
    try:
        scheduled = await scheduler.refresh_series(series_id)
    except SchedulerError as e:
        raise http_error(e)
    if scheduled is None:
        raise not_found("Series", series_id)
    return {"scheduled": [recording_to_response(r) for r in scheduled]}
