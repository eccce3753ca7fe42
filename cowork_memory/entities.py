"""
Domain types for the memory engine.

Two views of the same data live here:

- ``MemoryAtom`` is the storage unit, shaped exactly like a row of the
  ``memory_atoms`` table (epoch-millisecond timestamps, provenance record).
- ``Memory`` is the engine's richer logical view (group, access counters,
  related ids, ISO timestamps), rebuilt from an atom plus its decoded
  metadata blob by ``codec.atom_to_memory``.

The remaining dataclasses are the inputs and results of the public engine
operations.
"""

import math
from dataclasses import dataclass, field, asdict
from typing import Any, Dict, List, Optional

# Groups every project has; anything else is a custom group
DEFAULT_GROUPS = ("preferences", "learnings", "context", "instructions")

ATOM_TYPES = ("instructions", "preference", "context", "semantic")

SENSITIVITY_LEVELS = ("normal", "restricted")

MEMORY_SOURCES = ("auto", "manual")

FEEDBACK_TYPES = frozenset({
    "positive",
    "negative",
    "pin",
    "unpin",
    "hide",             # marks the atom restricted; excluded from retrieval
    "report_conflict",
})

CONSOLIDATION_STRATEGIES = ("aggressive", "balanced", "conservative")


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def clamp01(value: Any) -> float:
    """Clamp to [0, 1]; non-numeric and non-finite values become 0."""
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    if not math.isfinite(number):
        return 0.0
    return clamp(number, 0.0, 1.0)


@dataclass
class Provenance:
    """Who created an atom and why. ``source_ref`` carries the metadata blob."""
    source: str = "assistant"  # user | assistant
    source_ref: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    created_by: str = "memory_engine"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "Provenance":
        data = data or {}
        return cls(
            source=data.get("source") or "assistant",
            source_ref=data.get("source_ref"),
            tags=list(data.get("tags") or []),
            created_by=data.get("created_by") or "memory_engine",
        )


@dataclass
class MemoryAtom:
    id: str
    project_id: str
    atom_type: str
    content: str
    confidence: float
    created_at: int
    updated_at: int
    session_id: Optional[str] = None
    run_id: Optional[str] = None
    summary: Optional[str] = None
    keywords: List[str] = field(default_factory=list)
    provenance: Provenance = field(default_factory=Provenance)
    sensitivity: str = "normal"
    pinned: bool = False
    expires_at: Optional[int] = None

    def __post_init__(self):
        self.confidence = clamp01(self.confidence)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class Memory:
    id: str
    title: str
    content: str
    group: str
    tags: List[str] = field(default_factory=list)
    source: str = "manual"  # auto | manual
    confidence: float = 1.0
    created_at: str = ""
    updated_at: str = ""
    access_count: int = 0
    last_accessed_at: str = ""
    related_session_ids: List[str] = field(default_factory=list)
    related_memory_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ScoredMemory(Memory):
    relevance_score: float = 0.0


@dataclass
class CreateMemoryInput:
    title: str
    content: str
    group: str
    source: str = "manual"
    tags: Optional[List[str]] = None
    confidence: Optional[float] = None
    related_memory_ids: Optional[List[str]] = None


@dataclass
class UpdateMemoryInput:
    title: Optional[str] = None
    content: Optional[str] = None
    group: Optional[str] = None
    tags: Optional[List[str]] = None
    add_related_memory_ids: Optional[List[str]] = None
    remove_related_memory_ids: Optional[List[str]] = None


@dataclass
class MemorySearchOptions:
    query: str = ""
    groups: Optional[List[str]] = None
    tags: Optional[List[str]] = None
    source: Optional[str] = None
    limit: Optional[int] = None
    min_confidence: Optional[float] = None


@dataclass
class MemoryQueryOptions:
    limit: int = 8
    include_sensitive: bool = False
    lexical_weight: float = 0.35
    dense_weight: float = 0.4
    graph_weight: float = 0.15
    rerank_weight: float = 0.1

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class MemoryQueryEvidence:
    atom_id: str
    score: float
    reasons: List[str] = field(default_factory=list)


@dataclass
class MemoryQueryResult:
    query_id: str
    session_id: Optional[str]
    query: str
    options: MemoryQueryOptions
    evidence: List[MemoryQueryEvidence]
    atoms: List[MemoryAtom]
    total_candidates: int
    latency_ms: int
    created_at: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class MemoryFeedback:
    id: str
    session_id: Optional[str]
    query_id: str
    atom_id: str
    feedback: str
    created_at: int
    note: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class ConsolidationPolicy:
    strategy: str = "balanced"
    redundancy_threshold: float = 0.9
    decay_factor: float = 0.92
    min_confidence: float = 0.15
    stale_after_hours: float = 24 * 14


@dataclass
class ConsolidationBudget:
    """Bounds for one consolidation pass; ``None`` means unbounded."""
    max_atoms: Optional[int] = None
    max_seconds: Optional[float] = None


@dataclass
class ConsolidationResult:
    run_id: str
    strategy: str
    started_at: int
    completed_at: int
    before_count: int
    after_count: int
    merged_count: int
    removed_count: int
    decayed_count: int
    preserved_pinned_count: int
    redundancy_reduction: float
    recall_retention: float
    truncated: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
