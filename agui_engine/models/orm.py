"""
Database models using SQLAlchemy 2.0 async style.
"""

from sqlalchemy import Column, String, Integer, Float, Text, ForeignKey, Index
from sqlalchemy.orm import relationship
from datetime import datetime
import json

from agui_engine.models.database import Base


class RunRecord(Base):
    """
    Archived run with its final status.
    """

    __tablename__ = "runs"

    run_id = Column(String, primary_key=True)
    thread_id = Column(String, nullable=False)
    parent_run_id = Column(String, nullable=True)
    status = Column(String(50), nullable=False)  # RunStatus enum value
    event_count = Column(Integer, nullable=False, default=0)
    error = Column(Text, nullable=True)
    error_code = Column(String(100), nullable=True)
    created_at = Column(Float, nullable=False, default=lambda: datetime.now().timestamp())
    finished_at = Column(Float, nullable=True)

    # Relationships
    events = relationship(
        "RunEventRecord",
        back_populates="run",
        cascade="all, delete-orphan",
        order_by="RunEventRecord.sequence_number",
    )

    __table_args__ = (
        Index("idx_runs_thread", "thread_id"),
        Index("idx_runs_status_created", "status", "created_at"),
    )

    def to_dict(self):
        """Convert to dictionary"""
        return {
            "run_id": self.run_id,
            "thread_id": self.thread_id,
            "parent_run_id": self.parent_run_id,
            "status": self.status,
            "event_count": self.event_count,
            "error": self.error,
            "error_code": self.error_code,
            "created_at": self.created_at,
            "finished_at": self.finished_at,
        }


class RunEventRecord(Base):
    """
    Append-only event log of a run.
    Provides replay and audit trail.
    """

    __tablename__ = "run_events"

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(String, ForeignKey("runs.run_id"), nullable=False)
    event_type = Column(String(100), nullable=False)
    event_data = Column(Text, nullable=False)  # Encoded event JSON
    occurred_at = Column(Float, nullable=False, default=lambda: datetime.now().timestamp())
    sequence_number = Column(Integer, nullable=False, default=0)  # Event ordering per run

    # Relationship
    run = relationship("RunRecord", back_populates="events")

    __table_args__ = (
        Index("idx_run_events_run_sequence", "run_id", "sequence_number"),
        Index("idx_run_events_type", "event_type"),
    )

    def to_dict(self):
        """Convert to dictionary"""
        return {
            "sequence_number": self.sequence_number,
            "event_type": self.event_type,
            "event_data": self.event_data_dict,
            "occurred_at": self.occurred_at,
        }

    @property
    def event_data_dict(self):
        """Get event data as dictionary"""
        if isinstance(self.event_data, str):
            return json.loads(self.event_data)
        return self.event_data
