"""
MemoryEngine - the public surface of the memory system for one project.

Wires the dedup gate, hybrid scorer, query orchestrator, feedback processor
and consolidation engine to the SQLite-backed repositories, and serializes
writes per project:

    db = DatabaseManager(settings.get_storage_path())
    engine = MemoryEngine(db, working_dir="/path/to/project")
    await engine.initialize()
    memory = await engine.create(CreateMemoryInput(
        title="Lint first", content="Run lint before merging.", group="learnings"
    ))
"""

import asyncio
import logging
import uuid
from typing import Any, Callable, Dict, List, Optional, Union

from .codec import atom_to_memory, derive_title, memory_to_atom, now_ms, to_iso
from .config import Settings, settings
from .consolidation import ConsolidationEngine, PolicyInput
from .database import DatabaseManager
from .dedup import DedupGate
from .entities import (
    DEFAULT_GROUPS,
    MEMORY_SOURCES,
    ConsolidationBudget,
    ConsolidationResult,
    CreateMemoryInput,
    Memory,
    MemoryFeedback,
    MemoryQueryOptions,
    MemoryQueryResult,
    MemorySearchOptions,
    ScoredMemory,
    UpdateMemoryInput,
    clamp01,
)
from .feedback import FeedbackProcessor
from .logging_config import with_request_id
from .project import ProjectState, project_id_for
from .query import QueryOptionsInput, QueryOrchestrator
from .repositories import (
    AtomRepository,
    ConsolidationRunRepository,
    QueryLogRepository,
    SettingsStore,
)
from .scorer import HybridScorer, ScoringWeights

logger = logging.getLogger(__name__)

# One lock per project id, shared by every engine instance in the process
_project_locks: Dict[str, asyncio.Lock] = {}


def project_lock(project_id: str) -> asyncio.Lock:
    lock = _project_locks.get(project_id)
    if lock is None:
        lock = _project_locks[project_id] = asyncio.Lock()
    return lock


class EngineNotInitializedError(RuntimeError):
    """A public engine method was called before ``initialize()``."""


class MemoryEngine:
    """
    Create, retrieve, rank, consolidate and annotate the memories of one project.

    Mutations (create, update, delete, group changes, feedback, consolidation)
    hold the project lock. Reads do not; ``read`` bumps access counters only
    when the lock is free, so bookkeeping never waits on a consolidation run
    and never overwrites a concurrent write.
    """

    def __init__(
        self,
        db: DatabaseManager,
        working_dir: str = ".",
        project_id: Optional[str] = None,
        config: Optional[Settings] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.db = db
        self.working_dir = working_dir
        self.project_id = project_id or project_id_for(working_dir)
        self.config = config or settings
        self.now = clock or now_ms

        self.atoms = AtomRepository(db)
        self.store = SettingsStore(db)
        self.query_log = QueryLogRepository(db)
        self.runs = ConsolidationRunRepository(db)

        self.dedup = DedupGate(self.config.dedup_similarity_threshold)
        self.scorer = HybridScorer(min_score=self.config.min_relevance)
        self.feedback = FeedbackProcessor(self.atoms, self.query_log, self.project_id, now=self.now)
        self.orchestrator = QueryOrchestrator(
            self.atoms,
            self.query_log,
            self.project_id,
            scorer=self.scorer,
            defaults=self._default_query_options(),
            now=self.now,
        )

        self.state = ProjectState(project_id=self.project_id)
        self._initialized = False

    def _default_query_options(self) -> MemoryQueryOptions:
        return MemoryQueryOptions(
            limit=self.config.default_query_limit,
            lexical_weight=self.config.lexical_weight,
            dense_weight=self.config.dense_weight,
            graph_weight=self.config.graph_weight,
            rerank_weight=self.config.rerank_weight,
        )

    def _default_weights(self) -> ScoringWeights:
        return ScoringWeights(
            lexical=self.config.lexical_weight,
            dense=self.config.dense_weight,
            graph=self.config.graph_weight,
            rerank=self.config.rerank_weight,
        )

    # =========================================================================
    # Lifecycle
    # =========================================================================

    @property
    def initialized(self) -> bool:
        return self._initialized

    @property
    def lock(self) -> asyncio.Lock:
        return project_lock(self.project_id)

    async def initialize(self) -> None:
        if self._initialized:
            return
        await self.db.init_db()
        self.state = await ProjectState.load(self.store, self.project_id)
        self._initialized = True
        logger.info(f"Memory engine ready for project {self.project_id}")

    async def close(self) -> None:
        await self.db.close()
        self._initialized = False

    def _ensure_initialized(self) -> None:
        if not self._initialized:
            raise EngineNotInitializedError("MemoryEngine not initialized. Call initialize() first.")

    async def _reload_state(self) -> ProjectState:
        self.state = await ProjectState.load(self.store, self.project_id)
        return self.state

    async def _register_group(self, group: str) -> None:
        state = await self._reload_state()
        if state.register_group(group):
            await state.save(self.store)

    async def _project_memories(self, include_restricted: bool = True) -> List[Memory]:
        atoms = await self.atoms.list_by_project(self.project_id)
        return [
            atom_to_memory(atom) for atom in atoms
            if include_restricted or atom.sensitivity != "restricted"
        ]

    async def _find_own(self, memory_id: str):
        atom = await self.atoms.find_by_id(memory_id)
        if atom is None or atom.project_id != self.project_id:
            return None
        return atom

    # =========================================================================
    # Create / read / update / delete
    # =========================================================================

    @with_request_id
    async def create(self, data: CreateMemoryInput) -> Memory:
        """
        Store a memory, or merge it into an existing duplicate.

        Returns:
            The new memory, or the existing one after the merge

        Raises:
            ValueError: blank content or group, or unknown source
        """
        self._ensure_initialized()
        if not data.content or not data.content.strip():
            raise ValueError("Memory content must not be blank")
        if not data.group or not data.group.strip():
            raise ValueError("Memory group must not be blank")
        if data.source not in MEMORY_SOURCES:
            raise ValueError(f"Unknown memory source '{data.source}'")

        async with self.lock:
            return await self._create_unlocked(data)

    async def _create_unlocked(self, data: CreateMemoryInput) -> Memory:
        group = data.group.strip()
        atoms = await self.atoms.list_by_project(self.project_id)

        duplicate = self.dedup.find_duplicate(atoms, data.content, group)
        if duplicate is not None:
            updated = await self._update_unlocked(duplicate.id, self.dedup.plan_merge(duplicate, data))
            logger.info(f"Merged new memory into existing {duplicate.id}")
            return updated or duplicate

        if data.confidence is not None:
            confidence = clamp01(data.confidence)
        else:
            confidence = 0.7 if data.source == "auto" else 1.0

        stamp = to_iso(self.now())
        memory = Memory(
            id=str(uuid.uuid4()),
            title=(data.title or "").strip() or derive_title(data.content),
            content=data.content,
            group=group,
            tags=list(dict.fromkeys(data.tags or [])),
            source=data.source,
            confidence=confidence,
            created_at=stamp,
            updated_at=stamp,
            access_count=0,
            last_accessed_at=stamp,
            related_session_ids=[],
            related_memory_ids=list(data.related_memory_ids or []),
        )
        await self.atoms.upsert(memory_to_atom(memory, self.project_id))
        await self._register_group(group)

        logger.info(f"Created memory {memory.id} in group '{group}'")
        return memory

    async def upsert_auto_memory(self, data: CreateMemoryInput) -> Memory:
        """``create`` with the source forced to ``auto``."""
        return await self.create(CreateMemoryInput(
            title=data.title,
            content=data.content,
            group=data.group,
            source="auto",
            tags=data.tags,
            confidence=data.confidence,
            related_memory_ids=data.related_memory_ids,
        ))

    async def read(self, memory_id: str) -> Optional[Memory]:
        """Fetch a memory and record the access. Unknown ids return None."""
        self._ensure_initialized()
        atom = await self._find_own(memory_id)
        if atom is None:
            return None

        memory = atom_to_memory(atom)
        memory.access_count += 1
        memory.last_accessed_at = to_iso(self.now())

        if self.lock.locked():
            logger.debug(f"Skipping access bookkeeping for {memory_id}: project busy")
            return memory

        async with self.lock:
            current = await self._find_own(memory_id)
            if current is None:
                return memory
            tracked = atom_to_memory(current)
            tracked.access_count += 1
            tracked.last_accessed_at = memory.last_accessed_at
            await self.atoms.upsert(memory_to_atom(tracked, self.project_id, existing=current))
            return tracked

    @with_request_id
    async def update(self, memory_id: str, updates: UpdateMemoryInput) -> Optional[Memory]:
        """Apply ``updates``; unknown ids return None."""
        self._ensure_initialized()
        async with self.lock:
            return await self._update_unlocked(memory_id, updates)

    async def _update_unlocked(self, memory_id: str, updates: UpdateMemoryInput) -> Optional[Memory]:
        atom = await self._find_own(memory_id)
        if atom is None:
            return None

        memory = atom_to_memory(atom)
        if updates.title is not None:
            memory.title = updates.title
        if updates.content is not None:
            if not updates.content.strip():
                raise ValueError("Memory content must not be blank")
            memory.content = updates.content
        if updates.tags is not None:
            memory.tags = list(dict.fromkeys(updates.tags))
        if updates.add_related_memory_ids:
            memory.related_memory_ids = list(dict.fromkeys(
                memory.related_memory_ids + list(updates.add_related_memory_ids)
            ))
        if updates.remove_related_memory_ids:
            removed = set(updates.remove_related_memory_ids)
            memory.related_memory_ids = [rid for rid in memory.related_memory_ids if rid not in removed]
        if updates.group and updates.group.strip():
            memory.group = updates.group.strip()
        memory.updated_at = to_iso(self.now())

        await self.atoms.upsert(memory_to_atom(memory, self.project_id, existing=atom))
        await self._register_group(memory.group)
        return memory

    @with_request_id
    async def delete(self, memory_id: str) -> bool:
        self._ensure_initialized()
        async with self.lock:
            if await self._find_own(memory_id) is None:
                return False
            deleted = await self.atoms.delete(memory_id)
        if deleted:
            logger.info(f"Deleted memory {memory_id}")
        return deleted

    async def add_related_session(self, memory_id: str, session_id: str) -> Optional[Memory]:
        """Link a session to a memory once; unknown ids return None."""
        self._ensure_initialized()
        async with self.lock:
            atom = await self._find_own(memory_id)
            if atom is None:
                return None
            memory = atom_to_memory(atom)
            if session_id in memory.related_session_ids:
                return memory
            memory.related_session_ids.append(session_id)
            memory.updated_at = to_iso(self.now())
            await self.atoms.upsert(memory_to_atom(memory, self.project_id, existing=atom))
            return memory

    # =========================================================================
    # Groups
    # =========================================================================

    async def create_group(self, name: str) -> str:
        self._ensure_initialized()
        group = (name or "").strip()
        if not group:
            raise ValueError("Group name must not be blank")
        async with self.lock:
            await self._register_group(group)
        return group

    async def delete_group(self, name: str) -> int:
        """
        Remove a custom group and every memory in it.

        Returns:
            Number of memories deleted

        Raises:
            ValueError: ``name`` is one of the default groups
        """
        self._ensure_initialized()
        if name in DEFAULT_GROUPS:
            raise ValueError(f"Cannot delete default group: {name}")

        async with self.lock:
            deleted = 0
            for memory in await self._project_memories():
                if memory.group == name and await self.atoms.delete(memory.id):
                    deleted += 1
            state = await self._reload_state()
            if state.unregister_group(name):
                await state.save(self.store)

        logger.info(f"Deleted group '{name}' with {deleted} memories")
        return deleted

    async def list_groups(self) -> List[str]:
        self._ensure_initialized()
        state = await self._reload_state()
        return list(DEFAULT_GROUPS) + list(state.custom_groups)

    async def get_memories_by_group(self, group: str) -> List[Memory]:
        self._ensure_initialized()
        return [m for m in await self._project_memories() if m.group == group]

    # =========================================================================
    # Retrieval
    # =========================================================================

    async def get_all(self) -> List[Memory]:
        self._ensure_initialized()
        return await self._project_memories()

    async def search(self, options: Optional[MemorySearchOptions] = None) -> List[Memory]:
        """Substring search plus group / tag / source / confidence filters."""
        self._ensure_initialized()
        options = options or MemorySearchOptions()

        query = (options.query or "").strip()
        if query:
            atoms = await self.atoms.search(self.project_id, query, limit=None)
        else:
            atoms = await self.atoms.list_by_project(self.project_id)

        results: List[Memory] = []
        for atom in atoms:
            memory = atom_to_memory(atom)
            if options.groups and memory.group not in options.groups:
                continue
            if options.source and memory.source != options.source:
                continue
            if options.min_confidence is not None and memory.confidence < options.min_confidence:
                continue
            if options.tags and not any(tag in memory.tags for tag in options.tags):
                continue
            results.append(memory)
            if options.limit and len(results) >= options.limit:
                break
        return results

    async def get_relevant_memories(self, context: str, limit: int = 5) -> List[ScoredMemory]:
        """Hybrid-scored memories for free-text context; failures yield []."""
        self._ensure_initialized()
        try:
            memories = await self._project_memories(include_restricted=False)
            return self.scorer.score(memories, context, self._default_weights(), limit)
        except Exception:
            logger.exception(f"Relevance lookup failed for project {self.project_id}")
            return []

    async def find_similar(self, memory_id: str, limit: int = 5) -> List[ScoredMemory]:
        self._ensure_initialized()
        target = await self._find_own(memory_id)
        if target is None:
            return []
        memories = await self._project_memories(include_restricted=False)
        return self.scorer.find_similar(atom_to_memory(target), memories, self._default_weights(), limit)

    @with_request_id
    async def deep_query(
        self,
        session_id: Optional[str],
        query: str,
        options: QueryOptionsInput = None,
    ) -> MemoryQueryResult:
        self._ensure_initialized()
        return await self.orchestrator.deep_query(session_id, query, options)

    async def build_memory_prompt_section(self, context: Optional[str] = None) -> str:
        """Markdown block of memories for a system prompt; '' when there are none."""
        self._ensure_initialized()
        memories: List[Union[Memory, ScoredMemory]]
        if context:
            memories = list(await self.get_relevant_memories(context, 5))
        else:
            memories = list(await self._project_memories(include_restricted=False))
        if not memories:
            return ""

        lines = [
            "## Relevant Memories",
            "",
            "The following memories from previous interactions may be relevant:",
            "",
        ]
        for memory in memories:
            score_info = ""
            if isinstance(memory, ScoredMemory):
                score_info = f" (relevance: {memory.relevance_score * 100:.0f}%)"
            lines.append(f"### {memory.title}{score_info}")
            lines.append(f"*Group: {memory.group} | Tags: {', '.join(memory.tags) or 'none'}*")
            lines.append("")
            lines.append(memory.content)
            lines.append("")
        return "\n".join(lines) + "\n"

    # =========================================================================
    # Feedback
    # =========================================================================

    @with_request_id
    async def apply_feedback(
        self,
        session_id: Optional[str],
        query_id: str,
        atom_id: str,
        feedback: str,
        note: Optional[str] = None,
    ) -> MemoryFeedback:
        self._ensure_initialized()
        async with self.lock:
            return await self.feedback.apply(session_id, query_id, atom_id, feedback, note)

    async def list_feedback(
        self,
        query_id: Optional[str] = None,
        atom_id: Optional[str] = None,
    ) -> List[MemoryFeedback]:
        self._ensure_initialized()
        if query_id:
            return await self.query_log.list_feedback_for_query(query_id)
        if atom_id:
            return await self.query_log.list_feedback_for_atom(atom_id)
        return []

    # =========================================================================
    # Consolidation
    # =========================================================================

    def _default_budget(self) -> Optional[ConsolidationBudget]:
        if self.config.consolidation_max_atoms is None and self.config.consolidation_max_seconds is None:
            return None
        return ConsolidationBudget(
            max_atoms=self.config.consolidation_max_atoms,
            max_seconds=self.config.consolidation_max_seconds,
        )

    @with_request_id
    async def consolidate_memory(
        self,
        policy: PolicyInput = None,
        budget: Optional[ConsolidationBudget] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ConsolidationResult:
        """
        Run one consolidation pass and record it in the run log.

        Raises:
            Whatever the pass raised, after the run is marked failed
        """
        self._ensure_initialized()
        run_id = f"mcon_{uuid.uuid4().hex[:8]}"

        async with self.lock:
            await self.runs.start(run_id, self.project_id, self.now())
            consolidator = ConsolidationEngine(
                list_atoms=lambda: self.atoms.list_by_project(self.project_id),
                upsert_atom=self.atoms.upsert,
                delete_atom=self.atoms.delete,
                now=self.now,
            )
            try:
                result = await consolidator.run(
                    policy,
                    run_id=run_id,
                    budget=budget or self._default_budget(),
                    cancel_event=cancel_event,
                )
            except Exception as e:
                logger.error(f"Consolidation {run_id} failed: {e}")
                await self.runs.fail(run_id, str(e) or type(e).__name__, self.now())
                raise

            await self.runs.complete(run_id, result.to_dict(), result.completed_at)
            state = await self._reload_state()
            state.last_consolidation_run_ms = result.completed_at
            await state.save(self.store)
            return result

    async def maybe_run_periodic_consolidation(
        self,
        enabled: Optional[bool] = None,
        interval_minutes: Optional[float] = None,
        force: bool = False,
        policy: PolicyInput = None,
    ) -> Optional[ConsolidationResult]:
        """
        Consolidate if enabled and the interval has elapsed since the last run.

        ``force`` runs regardless. Returns None when nothing ran.
        """
        self._ensure_initialized()
        if enabled is None:
            enabled = self.config.consolidation_enabled
        if interval_minutes is None:
            interval_minutes = self.config.consolidation_interval_minutes

        if not force:
            if not enabled:
                return None
            last_run = (await self._reload_state()).last_consolidation_run_ms
            if last_run is not None and self.now() - last_run < interval_minutes * 60_000:
                return None

        return await self.consolidate_memory(policy)

    async def list_consolidation_runs(self, limit: int = 20) -> List[Dict[str, Any]]:
        self._ensure_initialized()
        return await self.runs.list_recent(self.project_id, limit)

    # =========================================================================
    # Status
    # =========================================================================

    async def stats(self) -> Dict[str, Any]:
        self._ensure_initialized()
        state = await self._reload_state()
        memories = await self._project_memories()
        by_group: Dict[str, int] = {}
        for memory in memories:
            by_group[memory.group] = by_group.get(memory.group, 0) + 1
        return {
            "project_id": self.project_id,
            "working_dir": self.working_dir,
            "database": str(self.db.db_path),
            "total_memories": len(memories),
            "by_group": by_group,
            "groups": list(DEFAULT_GROUPS) + list(state.custom_groups),
            "last_consolidation_run": (
                to_iso(state.last_consolidation_run_ms)
                if state.last_consolidation_run_ms is not None else None
            ),
        }
