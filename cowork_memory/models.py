"""
CoworkMemory Models - Storage schema for memory atoms and their side logs.

Tables:
- memory_atoms: Durable memory atoms (one fact / preference / instruction each)
- memory_query_logs: One row per retrieval query with the ranked atom ids
- memory_feedback: Append-only user feedback on retrieved atoms
- memory_consolidation_runs: Status and statistics of consolidation passes
- engine_settings: Small key/value store for per-project engine state
"""

from sqlalchemy import Column, Integer, BigInteger, String, Text, JSON, Boolean, Float, Index
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


class MemoryAtomRecord(Base):
    """
    A memory atom is the minimal durable unit of long-term memory.

    Atom types:
    - instructions: Standing guidance for the agent
    - preference: User preferences (tone, tooling, style)
    - context: Project facts and decisions
    - semantic: Everything else (learnings, custom groups)

    Timestamps are integer epoch milliseconds. The provenance ``source_ref``
    field carries the engine's encoded metadata blob (see codec.py).
    """
    __tablename__ = "memory_atoms"

    id = Column(String, primary_key=True)
    project_id = Column(String, nullable=False, default="default")
    session_id = Column(String, nullable=True)
    run_id = Column(String, nullable=True)

    atom_type = Column(String, nullable=False, default="semantic")
    content = Column(Text, nullable=False)
    summary = Column(Text, nullable=True)
    keywords = Column(JSON, default=list)
    provenance = Column(JSON, default=dict)

    confidence = Column(Float, nullable=False, default=0.5)
    sensitivity = Column(String, nullable=False, default="normal")

    # Pinned atoms are never merged away, deleted or decayed by consolidation
    pinned = Column(Boolean, nullable=False, default=False)

    created_at = Column(BigInteger, nullable=False)
    updated_at = Column(BigInteger, nullable=False)
    expires_at = Column(BigInteger, nullable=True)

    __table_args__ = (
        Index('ix_memory_atoms_project', 'project_id'),
        Index('ix_memory_atoms_session', 'session_id'),
        Index('ix_memory_atoms_updated_at', 'updated_at'),
    )


class MemoryQueryLog(Base):
    """A retrieval query and the atoms it returned, for later feedback."""
    __tablename__ = "memory_query_logs"

    id = Column(String, primary_key=True)
    session_id = Column(String, nullable=True)
    project_id = Column(String, nullable=False, default="default")
    query_text = Column(Text, nullable=False)
    options = Column(JSON, default=dict)
    result_atom_ids = Column(JSON, default=list)
    latency_ms = Column(Integer, nullable=True)
    created_at = Column(BigInteger, nullable=False)

    __table_args__ = (
        Index('ix_memory_query_logs_session', 'session_id'),
        Index('ix_memory_query_logs_created_at', 'created_at'),
    )


class MemoryFeedbackRecord(Base):
    """User feedback on one atom in one query result (pin, unpin, hide, ...)."""
    __tablename__ = "memory_feedback"

    id = Column(String, primary_key=True)
    session_id = Column(String, nullable=True)
    query_id = Column(String, nullable=False)
    atom_id = Column(String, nullable=False)
    feedback_type = Column(String, nullable=False)
    note = Column(Text, nullable=True)
    created_at = Column(BigInteger, nullable=False)

    __table_args__ = (
        Index('ix_memory_feedback_query', 'query_id'),
        Index('ix_memory_feedback_atom', 'atom_id'),
    )


class ConsolidationRun(Base):
    """
    History of consolidation passes.

    A row is inserted as ``running`` before the pass starts and moved to
    ``completed`` (with serialized statistics) or ``failed`` (with the
    error text) when it ends.
    """
    __tablename__ = "memory_consolidation_runs"

    id = Column(String, primary_key=True)
    project_id = Column(String, nullable=False, default="default")
    status = Column(String, nullable=False)
    stats = Column(JSON, default=dict)
    started_at = Column(BigInteger, nullable=False)
    completed_at = Column(BigInteger, nullable=True)
    error = Column(Text, nullable=True)

    __table_args__ = (
        Index('ix_memory_consolidation_project', 'project_id'),
        Index('ix_memory_consolidation_started_at', 'started_at'),
    )


class EngineSetting(Base):
    """Plain key/value settings row."""
    __tablename__ = "engine_settings"

    key = Column(String, primary_key=True)
    value = Column(Text, nullable=True)
