"""
SQLAlchemy ORM models for the scheduler activity journal.
"""
import json
from datetime import datetime

from sqlalchemy import Column, Integer, String, Text, Boolean, DateTime, Index

from database import Base


class JournalEntry(Base):
    """
    Represents a single entry in the activity journal.
    Tracks recording lifecycle changes and series rule edits.
    """
    __tablename__ = "journal_entries"

    id = Column(Integer, primary_key=True, autoincrement=True)
    timestamp = Column(DateTime, default=datetime.utcnow, nullable=False)
    category = Column(String(20), nullable=False)  # "recording", "series", "session"
    action_type = Column(String(30), nullable=False)  # "scheduled", "started", "failed", etc.
    entity_id = Column(String(64), nullable=True)  # Recording or series id
    entity_name = Column(String(255), nullable=False)  # Title or series name
    description = Column(Text, nullable=False)
    before_value = Column(Text, nullable=True)  # JSON of previous state
    after_value = Column(Text, nullable=True)  # JSON of new state
    user_initiated = Column(Boolean, default=True, nullable=False)  # API call vs poller

    # Indexes for common queries
    __table_args__ = (
        Index("idx_journal_timestamp", timestamp.desc()),
        Index("idx_journal_category", category),
        Index("idx_journal_action_type", action_type),
    )

    def to_dict(self) -> dict:
        """Convert to dictionary for API responses."""
        return {
            "id": self.id,
            "timestamp": self.timestamp.isoformat() + "Z" if self.timestamp else None,
            "category": self.category,
            "action_type": self.action_type,
            "entity_id": self.entity_id,
            "entity_name": self.entity_name,
            "description": self.description,
            "before_value": json.loads(self.before_value) if self.before_value else None,
            "after_value": json.loads(self.after_value) if self.after_value else None,
            "user_initiated": self.user_initiated,
        }

    def __repr__(self) -> str:
        return f"<JournalEntry(id={self.id}, category={self.category}, action={self.action_type})>"
