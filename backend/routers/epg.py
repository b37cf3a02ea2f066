"""
EPG router: pushes fresh guide data for a channel into the series matcher.
"""
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from recorder.entities import EpgEntry
from recording_scheduler import RecordingScheduler
from routers.common import get_scheduler, to_naive_utc
from routers.recordings import recording_to_response

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/epg", tags=["EPG"])


class EpgEntryRequest(BaseModel):
    """A single guide program."""
    title: str
    start_time: datetime
    end_time: datetime
    description: str = ""
    program_id: Optional[str] = None


class EpgIngestRequest(BaseModel):
    entries: list[EpgEntryRequest]


@router.post("/{channel_id}")
async def ingest_epg(
    channel_id: str,
    request: EpgIngestRequest,
    scheduler: RecordingScheduler = Depends(get_scheduler),
):
    """Match a batch of guide entries for one channel against active series rules."""
    logger.debug("[EPG] POST /api/epg/%s with %d entries", channel_id, len(request.entries))
    if not channel_id.strip():
        raise HTTPException(status_code=400, detail="Channel id is required")

    entries = [
        EpgEntry(
            channel_id=channel_id,
            title=item.title,
            description=item.description,
            start_time=to_naive_utc(item.start_time),
            end_time=to_naive_utc(item.end_time),
            program_id=item.program_id,
        )
        for item in request.entries
    ]
    scheduled = scheduler.ingest_epg(channel_id, entries)
    return {
        "received": len(entries),
        "scheduled": [recording_to_response(r) for r in scheduled],
    }
