"""
Journal service layer.

Every recording and series lifecycle change the scheduler makes is written
here so users can see why a recording was missed, failed or never scheduled.
The scheduler receives ``log_entry`` as a plain callable.
"""
import json
import logging
from datetime import datetime, timedelta
from typing import Optional, Any
from sqlalchemy import func, desc
from sqlalchemy.orm import Query, Session

from database import get_session
from models import JournalEntry

logger = logging.getLogger(__name__)

DEFAULT_RETENTION_DAYS = 30


def log_entry(
    category: str,
    action_type: str,
    entity_name: str,
    description: str,
    entity_id: Optional[str] = None,
    before_value: Optional[dict] = None,
    after_value: Optional[dict] = None,
    user_initiated: bool = True,
) -> Optional[JournalEntry]:
    """
    Write one journal entry.

    Args:
        category: "recording", "series" or "session"
        action_type: What happened ("scheduled", "started", "missed", ...)
        entity_name: Program title, series name or session key
        description: Human-readable detail
        entity_id: Recording or series id
        before_value: Previous state (optional)
        after_value: New state (optional)
        user_initiated: True for API calls, False for the polling loops

    Returns:
        The stored JournalEntry, or None if the write failed. Journal
        failures never propagate into scheduling.
    """
    session: Session = get_session()
    try:
        entry = JournalEntry(
            timestamp=datetime.utcnow(),
            category=category,
            action_type=action_type,
            entity_id=str(entity_id) if entity_id is not None else None,
            entity_name=entity_name[:255],
            description=description,
            before_value=json.dumps(before_value) if before_value else None,
            after_value=json.dumps(after_value) if after_value else None,
            user_initiated=user_initiated,
        )
        session.add(entry)
        session.commit()
        logger.debug(f"[JOURNAL] {category}/{action_type} - {entity_name}")
        return entry
    except Exception as e:
        session.rollback()
        logger.error(f"[JOURNAL] Failed to log entry {category}/{action_type}: {e}")
        return None
    finally:
        session.close()


def _filtered(
    session: Session,
    category: Optional[str] = None,
    action_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    search: Optional[str] = None,
    user_initiated: Optional[bool] = None,
) -> Query:
    query = session.query(JournalEntry)
    if category:
        query = query.filter(JournalEntry.category == category)
    if action_type:
        query = query.filter(JournalEntry.action_type == action_type)
    if entity_id:
        query = query.filter(JournalEntry.entity_id == entity_id)
    if date_from:
        query = query.filter(JournalEntry.timestamp >= date_from)
    if date_to:
        query = query.filter(JournalEntry.timestamp <= date_to)
    if search:
        pattern = f"%{search}%"
        query = query.filter(
            (JournalEntry.entity_name.ilike(pattern)) |
            (JournalEntry.description.ilike(pattern))
        )
    if user_initiated is not None:
        query = query.filter(JournalEntry.user_initiated == user_initiated)
    return query


def get_entries(
    page: int = 1,
    page_size: int = 50,
    **filters,
) -> dict[str, Any]:
    """
    Query journal entries, newest first.

    Keyword filters: category, action_type, entity_id, date_from, date_to,
    search (entity name or description) and user_initiated.

    Returns:
        Dict with count, page, page_size, total_pages, and results
    """
    session: Session = get_session()
    try:
        query = _filtered(session, **filters)
        total_count = query.count()
        total_pages = (total_count + page_size - 1) // page_size if total_count > 0 else 1

        entries = (
            query.order_by(desc(JournalEntry.timestamp))
            .offset((page - 1) * page_size)
            .limit(page_size)
            .all()
        )
        return {
            "count": total_count,
            "page": page,
            "page_size": page_size,
            "total_pages": total_pages,
            "results": [entry.to_dict() for entry in entries],
        }
    finally:
        session.close()


def get_entity_history(entity_id: str, limit: int = 100) -> list[dict]:
    """Lifecycle of a single recording or series rule, oldest first."""
    session: Session = get_session()
    try:
        entries = (
            _filtered(session, entity_id=entity_id)
            .order_by(JournalEntry.timestamp, JournalEntry.id)
            .limit(limit)
            .all()
        )
        return [entry.to_dict() for entry in entries]
    finally:
        session.close()


def get_stats() -> dict[str, Any]:
    """
    Summary counts for the journal.

    Returns:
        Dict with total_entries, by_category, by_action_type, and date_range
    """
    session: Session = get_session()
    try:
        total_count = session.query(func.count(JournalEntry.id)).scalar() or 0

        by_category = dict(
            session.query(JournalEntry.category, func.count(JournalEntry.id))
            .group_by(JournalEntry.category)
            .all()
        )
        by_action_type = dict(
            session.query(JournalEntry.action_type, func.count(JournalEntry.id))
            .group_by(JournalEntry.action_type)
            .all()
        )

        oldest, newest = session.query(
            func.min(JournalEntry.timestamp), func.max(JournalEntry.timestamp)
        ).one()

        return {
            "total_entries": total_count,
            "by_category": by_category,
            "by_action_type": by_action_type,
            "date_range": {
                "oldest": oldest.isoformat() + "Z" if oldest else None,
                "newest": newest.isoformat() + "Z" if newest else None,
            },
        }
    finally:
        session.close()


def purge_old_entries(days: int = DEFAULT_RETENTION_DAYS) -> int:
    """
    Delete journal entries older than ``days``.

    Returns:
        Number of entries deleted
    """
    session: Session = get_session()
    try:
        cutoff_date = datetime.utcnow() - timedelta(days=days)
        deleted_count = (
            session.query(JournalEntry)
            .filter(JournalEntry.timestamp < cutoff_date)
            .delete()
        )
        session.commit()
        logger.info(f"[JOURNAL] Purged {deleted_count} entries older than {days} days")
        return deleted_count
    finally:
        session.close()
