from datetime import datetime

from sqlalchemy import Column, DateTime, JSON, String

from deploygate.db import Base


class StateSnapshot(Base):
    """One full-state JSON blob per registry (webhooks, approvals)."""

    __tablename__ = "state_snapshots"

    key = Column(String(128), primary_key=True)
    blob = Column(JSON, nullable=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
