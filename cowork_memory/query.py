"""
Query orchestrator: scores a project's memories for a query and logs the result.
"""

import logging
import time
import uuid
from typing import Any, Callable, List, Mapping, Optional, Union

from .codec import atom_to_memory, now_ms
from .entities import (
    MemoryQueryEvidence,
    MemoryQueryOptions,
    MemoryQueryResult,
    ScoredMemory,
    clamp,
    clamp01,
)
from .repositories import AtomRepository, QueryLogRepository
from .scorer import HybridScorer, ScoringWeights

logger = logging.getLogger(__name__)

MAX_QUERY_LIMIT = 50
MAX_EVIDENCE_TAGS = 3

QueryOptionsInput = Union[MemoryQueryOptions, Mapping[str, Any], None]


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def resolve_query_options(
    options: QueryOptionsInput = None,
    defaults: Optional[MemoryQueryOptions] = None,
) -> MemoryQueryOptions:
    """Clamp limit to [1, 50] and each weight to [0, 1]; invalid values take defaults."""
    defaults = defaults or MemoryQueryOptions()
    if options is None:
        raw: Mapping[str, Any] = {}
    elif isinstance(options, MemoryQueryOptions):
        raw = options.to_dict()
    else:
        raw = options

    def weight(name: str) -> float:
        value = raw.get(name)
        return clamp01(value) if _is_number(value) else getattr(defaults, name)

    limit = raw.get("limit")
    include_sensitive = raw.get("include_sensitive")
    return MemoryQueryOptions(
        limit=int(clamp(int(limit), 1, MAX_QUERY_LIMIT)) if _is_number(limit) else defaults.limit,
        include_sensitive=(
            include_sensitive if isinstance(include_sensitive, bool) else defaults.include_sensitive
        ),
        lexical_weight=weight("lexical_weight"),
        dense_weight=weight("dense_weight"),
        graph_weight=weight("graph_weight"),
        rerank_weight=weight("rerank_weight"),
    )


def build_evidence(memory: ScoredMemory) -> MemoryQueryEvidence:
    reasons = [f"group:{memory.group}", f"confidence:{memory.confidence:.2f}"]
    reasons.extend(f"tag:{tag}" for tag in memory.tags[:MAX_EVIDENCE_TAGS])
    return MemoryQueryEvidence(atom_id=memory.id, score=memory.relevance_score, reasons=reasons)


class QueryOrchestrator:
    """Runs a deep query against one project."""

    def __init__(
        self,
        atoms: AtomRepository,
        query_log: QueryLogRepository,
        project_id: str,
        scorer: Optional[HybridScorer] = None,
        defaults: Optional[MemoryQueryOptions] = None,
        now: Optional[Callable[[], int]] = None,
    ):
        self.atoms = atoms
        self.query_log = query_log
        self.project_id = project_id
        self.scorer = scorer or HybridScorer()
        self.defaults = defaults or MemoryQueryOptions()
        self.now = now or now_ms

    async def deep_query(
        self,
        session_id: Optional[str],
        query: str,
        options: QueryOptionsInput = None,
    ) -> MemoryQueryResult:
        """
        Rank the project's atoms for ``query``.

        Restricted atoms are left out unless ``include_sensitive`` is set.
        Failures while loading or scoring are logged and produce an empty
        result; the query is still logged.
        """
        started = time.perf_counter()
        created_at = self.now()
        resolved = resolve_query_options(options, self.defaults)

        ranked: List[ScoredMemory] = []
        atoms_by_id = {}
        try:
            atoms = await self.atoms.list_by_project(self.project_id)
            candidates = [
                atom for atom in atoms
                if resolved.include_sensitive or atom.sensitivity != "restricted"
            ]
            atoms_by_id = {atom.id: atom for atom in candidates}
            weights = ScoringWeights(
                lexical=resolved.lexical_weight,
                dense=resolved.dense_weight,
                graph=resolved.graph_weight,
                rerank=resolved.rerank_weight,
            )
            ranked = self.scorer.score(
                [atom_to_memory(atom) for atom in candidates],
                query,
                weights,
                resolved.limit,
            )
        except Exception:
            logger.exception(f"Deep query failed for project {self.project_id}")
            ranked = []

        result = MemoryQueryResult(
            query_id=f"mq_{uuid.uuid4().hex[:12]}",
            session_id=session_id,
            query=query,
            options=resolved,
            evidence=[build_evidence(memory) for memory in ranked],
            atoms=[atoms_by_id[memory.id] for memory in ranked],
            total_candidates=len(atoms_by_id),
            latency_ms=int((time.perf_counter() - started) * 1000),
            created_at=created_at,
        )

        try:
            await self.query_log.log_query(result, self.project_id)
        except Exception:
            logger.exception(f"Failed to log query {result.query_id}")

        logger.debug(
            f"Query {result.query_id}: {len(result.atoms)} of {result.total_candidates} "
            f"candidates in {result.latency_ms}ms"
        )
        return result
