"""Append-only log of consumer lifecycle actions with SHA-256 hash chain."""

import uuid
from datetime import datetime, timezone

from sqlalchemy import Column, DateTime, Index, Integer, String, Text

from consumerauth.database import Base


def utcnow():
    return datetime.now(timezone.utc)


class ConsumerLogEntry(Base):
    __tablename__ = "consumer_log"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    consumer_key = Column(String(32), nullable=False)
    action = Column(String(32), nullable=False)
    performer_id = Column(Integer, nullable=False)
    performer_name = Column(String(255), default="")
    target_user_id = Column(Integer, nullable=True)  # consumer owner
    comment = Column(Text, default="")
    prev_hash = Column(String(64), nullable=True)
    entry_hash = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        Index("idx_consumer_log_consumer", "consumer_key"),
        Index("idx_consumer_log_action", "action"),
        Index("idx_consumer_log_created", "created_at"),
        Index("idx_consumer_log_hash", "entry_hash"),
    )
