"""
Journal router: scheduler activity history.
"""
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, HTTPException

import journal
from routers.common import to_naive_utc

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/journal", tags=["Journal"])


@router.get("")
async def get_journal(
    page: int = 1,
    page_size: int = 50,
    category: Optional[str] = None,
    action_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    search: Optional[str] = None,
    user_initiated: Optional[bool] = None,
):
    """Query journal entries, newest first."""
    if page < 1 or page_size < 1 or page_size > 500:
        raise HTTPException(status_code=400, detail="Invalid pagination parameters")
    return journal.get_entries(
        page=page,
        page_size=page_size,
        category=category,
        action_type=action_type,
        entity_id=entity_id,
        date_from=to_naive_utc(date_from),
        date_to=to_naive_utc(date_to),
        search=search,
        user_initiated=user_initiated,
    )


@router.get("/stats")
async def get_journal_stats():
    return journal.get_stats()


@router.get("/entity/{entity_id}")
async def get_entity_history(entity_id: str, limit: int = 100):
    """Lifecycle of one recording or series rule, oldest first."""
    return {"entity_id": entity_id, "entries": journal.get_entity_history(entity_id, limit)}


@router.delete("/purge")
async def purge_journal(days: int = 30):
    """Delete entries older than ``days``."""
    if days < 1:
        raise HTTPException(status_code=400, detail="days must be at least 1")
    return {"deleted": journal.purge_old_entries(days)}
