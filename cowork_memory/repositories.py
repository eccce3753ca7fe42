"""
Repositories - async persistence for atoms, settings, query/feedback logs and
consolidation runs.

Every method opens its own session through ``DatabaseManager.get_session`` so
each write is committed (durable) before the call returns.
"""

import logging
from typing import Any, Dict, List, Optional

from sqlalchemy import select, delete, func, or_, desc, String, cast

from .database import DatabaseManager
from .entities import MemoryAtom, MemoryFeedback, MemoryQueryResult, Provenance
from .models import (
    ConsolidationRun,
    EngineSetting,
    MemoryAtomRecord,
    MemoryFeedbackRecord,
    MemoryQueryLog,
)

logger = logging.getLogger(__name__)


def _record_to_atom(record: MemoryAtomRecord) -> MemoryAtom:
    return MemoryAtom(
        id=record.id,
        project_id=record.project_id,
        session_id=record.session_id,
        run_id=record.run_id,
        atom_type=record.atom_type,
        content=record.content,
        summary=record.summary,
        keywords=list(record.keywords or []),
        provenance=Provenance.from_dict(record.provenance),
        confidence=record.confidence,
        sensitivity=record.sensitivity or "normal",
        pinned=bool(record.pinned),
        created_at=record.created_at,
        updated_at=record.updated_at,
        expires_at=record.expires_at,
    )


def _apply_atom(record: MemoryAtomRecord, atom: MemoryAtom) -> None:
    record.project_id = atom.project_id
    record.session_id = atom.session_id
    record.run_id = atom.run_id
    record.atom_type = atom.atom_type
    record.content = atom.content
    record.summary = atom.summary
    record.keywords = list(atom.keywords or [])
    record.provenance = atom.provenance.to_dict()
    record.confidence = atom.confidence
    record.sensitivity = atom.sensitivity
    record.pinned = atom.pinned
    record.created_at = atom.created_at
    record.updated_at = atom.updated_at
    record.expires_at = atom.expires_at


def _escape_like(text: str) -> str:
    return text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


class AtomRepository:
    """Durable key/value store of memory atoms, keyed by id."""

    def __init__(self, db: DatabaseManager):
        self.db = db

    async def upsert(self, atom: MemoryAtom) -> MemoryAtom:
        async with self.db.get_session() as session:
            record = await session.get(MemoryAtomRecord, atom.id)
            if record is None:
                record = MemoryAtomRecord(id=atom.id)
                session.add(record)
            _apply_atom(record, atom)
        return atom

    async def find_by_id(self, atom_id: str) -> Optional[MemoryAtom]:
        async with self.db.get_session() as session:
            record = await session.get(MemoryAtomRecord, atom_id)
            return _record_to_atom(record) if record else None

    async def list_by_project(
        self,
        project_id: str,
        limit: Optional[int] = None,
        offset: int = 0
    ) -> List[MemoryAtom]:
        """Atoms of a project, most recently updated first. No limit means all."""
        async with self.db.get_session() as session:
            query = (
                select(MemoryAtomRecord)
                .where(MemoryAtomRecord.project_id == project_id)
                .order_by(desc(MemoryAtomRecord.updated_at), MemoryAtomRecord.id)
                .offset(offset)
            )
            if limit is not None:
                query = query.limit(limit)
            result = await session.execute(query)
            return [_record_to_atom(r) for r in result.scalars().all()]

    async def list_by_session(self, session_id: str) -> List[MemoryAtom]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(MemoryAtomRecord)
                .where(MemoryAtomRecord.session_id == session_id)
                .order_by(desc(MemoryAtomRecord.updated_at))
            )
            return [_record_to_atom(r) for r in result.scalars().all()]

    async def count_by_project(self, project_id: str) -> int:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(func.count(MemoryAtomRecord.id))
                .where(MemoryAtomRecord.project_id == project_id)
            )
            return result.scalar() or 0

    async def search(self, project_id: str, query: str, limit: Optional[int] = 20) -> List[MemoryAtom]:
        """Case-insensitive substring match over content, summary and keywords."""
        term = f"%{_escape_like(query.lower())}%"
        async with self.db.get_session() as session:
            statement = (
                select(MemoryAtomRecord)
                .where(
                    MemoryAtomRecord.project_id == project_id,
                    or_(
                        func.lower(MemoryAtomRecord.content).like(term, escape="\\"),
                        func.lower(MemoryAtomRecord.summary).like(term, escape="\\"),
                        func.lower(cast(MemoryAtomRecord.keywords, String)).like(term, escape="\\"),
                    ),
                )
                .order_by(desc(MemoryAtomRecord.pinned), desc(MemoryAtomRecord.updated_at))
            )
            if limit is not None:
                statement = statement.limit(limit)
            result = await session.execute(statement)
            return [_record_to_atom(r) for r in result.scalars().all()]

    async def delete(self, atom_id: str) -> bool:
        async with self.db.get_session() as session:
            result = await session.execute(
                delete(MemoryAtomRecord).where(MemoryAtomRecord.id == atom_id)
            )
            return result.rowcount > 0


class SettingsStore:
    """String key/value settings."""

    def __init__(self, db: DatabaseManager):
        self.db = db

    async def get(self, key: str) -> Optional[str]:
        async with self.db.get_session() as session:
            record = await session.get(EngineSetting, key)
            return record.value if record else None

    async def set(self, key: str, value: str) -> None:
        async with self.db.get_session() as session:
            record = await session.get(EngineSetting, key)
            if record is None:
                session.add(EngineSetting(key=key, value=value))
            else:
                record.value = value


class QueryLogRepository:
    """Query history and the append-only feedback log."""

    def __init__(self, db: DatabaseManager):
        self.db = db

    async def log_query(self, result: MemoryQueryResult, project_id: str = "default") -> None:
        async with self.db.get_session() as session:
            session.add(MemoryQueryLog(
                id=result.query_id,
                session_id=result.session_id,
                project_id=project_id,
                query_text=result.query,
                options=result.options.to_dict(),
                result_atom_ids=[atom.id for atom in result.atoms],
                latency_ms=result.latency_ms,
                created_at=result.created_at,
            ))

    async def find_by_id(self, query_id: str) -> Optional[Dict[str, Any]]:
        async with self.db.get_session() as session:
            record = await session.get(MemoryQueryLog, query_id)
            return self._query_to_dict(record) if record else None

    async def list_recent_by_session(self, session_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(MemoryQueryLog)
                .where(MemoryQueryLog.session_id == session_id)
                .order_by(desc(MemoryQueryLog.created_at))
                .limit(limit)
            )
            return [self._query_to_dict(r) for r in result.scalars().all()]

    async def add_feedback(self, feedback: MemoryFeedback) -> MemoryFeedback:
        async with self.db.get_session() as session:
            session.add(MemoryFeedbackRecord(
                id=feedback.id,
                session_id=feedback.session_id,
                query_id=feedback.query_id,
                atom_id=feedback.atom_id,
                feedback_type=feedback.feedback,
                note=feedback.note,
                created_at=feedback.created_at,
            ))
        return feedback

    async def list_feedback_for_query(self, query_id: str) -> List[MemoryFeedback]:
        return await self._list_feedback(MemoryFeedbackRecord.query_id == query_id)

    async def list_feedback_for_atom(self, atom_id: str) -> List[MemoryFeedback]:
        return await self._list_feedback(MemoryFeedbackRecord.atom_id == atom_id)

    async def _list_feedback(self, condition) -> List[MemoryFeedback]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(MemoryFeedbackRecord)
                .where(condition)
                .order_by(desc(MemoryFeedbackRecord.created_at))
            )
            return [
                MemoryFeedback(
                    id=r.id,
                    session_id=r.session_id,
                    query_id=r.query_id,
                    atom_id=r.atom_id,
                    feedback=r.feedback_type,
                    note=r.note,
                    created_at=r.created_at,
                )
                for r in result.scalars().all()
            ]

    @staticmethod
    def _query_to_dict(record: MemoryQueryLog) -> Dict[str, Any]:
        return {
            "id": record.id,
            "session_id": record.session_id,
            "project_id": record.project_id,
            "query": record.query_text,
            "options": record.options or {},
            "result_atom_ids": list(record.result_atom_ids or []),
            "latency_ms": record.latency_ms,
            "created_at": record.created_at,
        }


class ConsolidationRunRepository:
    """Side log of consolidation runs: running -> completed | failed."""

    def __init__(self, db: DatabaseManager):
        self.db = db

    async def start(self, run_id: str, project_id: str, started_at: int) -> None:
        async with self.db.get_session() as session:
            session.add(ConsolidationRun(
                id=run_id,
                project_id=project_id,
                status="running",
                stats={},
                started_at=started_at,
            ))

    async def complete(self, run_id: str, stats: Dict[str, Any], completed_at: int) -> None:
        async with self.db.get_session() as session:
            record = await session.get(ConsolidationRun, run_id)
            if record is None:
                logger.warning(f"Consolidation run {run_id} vanished before completion")
                return
            record.status = "completed"
            record.stats = stats
            record.completed_at = completed_at

    async def fail(self, run_id: str, error: str, completed_at: int) -> None:
        async with self.db.get_session() as session:
            record = await session.get(ConsolidationRun, run_id)
            if record is None:
                logger.warning(f"Consolidation run {run_id} vanished before failure was recorded")
                return
            record.status = "failed"
            record.error = error
            record.completed_at = completed_at

    async def list_recent(self, project_id: str, limit: int = 20) -> List[Dict[str, Any]]:
        async with self.db.get_session() as session:
            result = await session.execute(
                select(ConsolidationRun)
                .where(ConsolidationRun.project_id == project_id)
                .order_by(desc(ConsolidationRun.started_at))
                .limit(limit)
            )
            return [
                {
                    "id": r.id,
                    "project_id": r.project_id,
                    "status": r.status,
                    "stats": r.stats or {},
                    "started_at": r.started_at,
                    "completed_at": r.completed_at,
                    "error": r.error,
                }
                for r in result.scalars().all()
            ]
