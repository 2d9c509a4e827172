"""SQLAlchemy database models for the automation engine."""

from sqlalchemy import JSON, Column, DateTime, ForeignKey, Integer, String, Text
from sqlalchemy.orm import relationship

from .database import Base


class DefinitionModel(Base):
    """One version of a workflow definition."""
    __tablename__ = "workflow_definitions"

    id = Column(String, primary_key=True)
    version = Column(Integer, primary_key=True)
    tenant_id = Column(String, index=True)
    name = Column(String, nullable=False)
    description = Column(Text)
    state = Column(String, nullable=False)  # draft, active, paused, archived
    definition = Column(JSON, nullable=False)  # Complete definition including nodes and edges
    created_at = Column(DateTime, nullable=False)
    updated_at = Column(DateTime, nullable=False)


class RunModel(Base):
    """Database model for workflow runs."""
    __tablename__ = "workflow_runs"

    id = Column(String, primary_key=True)
    definition_id = Column(String, nullable=False, index=True)
    definition_version = Column(Integer, nullable=False)
    tenant_id = Column(String, index=True)
    origin = Column(String, nullable=False)  # event, schedule
    parent_run_id = Column(String)
    status = Column(String, nullable=False)  # pending, evaluating, completed, failed, cancelled
    event = Column(JSON)
    context = Column(JSON)
    error = Column(JSON)
    created_at = Column(DateTime, nullable=False)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)

    outcomes = relationship(
        "NodeOutcomeModel",
        back_populates="run",
        order_by="NodeOutcomeModel.id",
        cascade="all, delete-orphan"
    )


class NodeOutcomeModel(Base):
    """Append-only node outcome history of a run."""
    __tablename__ = "node_outcomes"

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(String, ForeignKey("workflow_runs.id"), nullable=False, index=True)
    node_id = Column(String, nullable=False)
    node_type = Column(String, nullable=False)
    status = Column(String, nullable=False)  # skipped, matched, failed, executed
    timestamp = Column(DateTime, nullable=False)
    detail = Column(Text)
    fire_at = Column(DateTime)
    result = Column(JSON)
    error = Column(JSON)

    run = relationship("RunModel", back_populates="outcomes")


class ContinuationModel(Base):
    """Suspended schedule branch keyed by (run_id, node_id)."""
    __tablename__ = "continuations"

    run_id = Column(String, ForeignKey("workflow_runs.id"), primary_key=True)
    node_id = Column(String, primary_key=True)
    fire_at = Column(DateTime, nullable=False)
    state = Column(String, nullable=False)  # pending, resumed, cancelled, error
    detail = Column(Text)
    created_at = Column(DateTime, nullable=False)


class ProcessedEventModel(Base):
    """Event ids already ingested, for at-least-once delivery."""
    __tablename__ = "processed_events"

    event_id = Column(String, primary_key=True)
    processed_at = Column(DateTime, nullable=False)
