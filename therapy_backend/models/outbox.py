"""Outbox rows describing therapist changes still to be applied to the search index."""

from sqlalchemy import JSON, Column, DateTime, Integer, String, Text, func

from therapy_backend.database import Base


class SearchOutboxEvent(Base):
    __tablename__ = 'search_outbox'

    id = Column(Integer, primary_key=True)
    # No foreign key: delete events outlive the therapist row.
    therapist_id = Column(Integer, nullable=False, index=True)
    event_type = Column(String(20), nullable=False)
    name = Column(String, nullable=True)
    status = Column(String(20), nullable=True)
    changed_fields = Column(JSON, nullable=False, default=list)
    attempts = Column(Integer, nullable=False, default=0)
    next_attempt_at = Column(DateTime, nullable=True, index=True)
    last_error = Column(Text, nullable=True)
    # Set once attempts are exhausted; the worker no longer picks the row up.
    dead_lettered_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
