"""
Memory consolidation: merge redundant atoms, decay stale ones, protect pinned ones.

One pass over a project's atoms:

1. **Priority sort** -- pinned first, then higher confidence, then most
   recently updated. Earlier atoms become the survivors later ones are
   compared against.
2. **Merge** -- an atom whose normalized content equals a survivor's, or
   whose token Jaccard similarity reaches ``redundancy_threshold``, is
   merged into the higher-priority one and the other is deleted. Two
   pinned atoms are never compared, and a pinned atom is never deleted.
3. **Decay** -- unpinned survivors not updated within ``stale_after_hours``
   have confidence multiplied by ``decay_factor``, floored at
   ``min_confidence``. Only strict decreases are written.

Every merge and decay refreshes ``updated_at``, so an immediate second run
finds nothing to do.

The pass talks to storage through three async callables so it can run
against the repository or an in-memory dict in tests::

    engine = ConsolidationEngine(list_atoms, upsert_atom, delete_atom)
    result = await engine.run({"decay_factor": 0.9})
"""

import asyncio
import logging
import time
import uuid
from collections import defaultdict
from dataclasses import dataclass, replace
from typing import Any, Awaitable, Callable, Dict, Iterator, List, Mapping, Optional, Set, Tuple, Union

from .codec import now_ms
from .entities import (
    CONSOLIDATION_STRATEGIES,
    ConsolidationBudget,
    ConsolidationPolicy,
    ConsolidationResult,
    MemoryAtom,
    Provenance,
    clamp,
)
from .similarity import jaccard, normalize, token_set

logger = logging.getLogger(__name__)

CONSOLIDATOR_ID = "memory_consolidator_v1"
MERGED_TAG = "consolidated:merged"
DECAYED_TAG = "consolidated:decayed"

DEFAULT_POLICY = ConsolidationPolicy()

_HOUR_MS = 60 * 60 * 1000
_EPSILON = 1e-6
_YIELD_EVERY = 200

PolicyInput = Union[ConsolidationPolicy, Mapping[str, Any], None]


def _number(value: Any) -> Optional[float]:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    return float(value)


def resolve_policy(policy: PolicyInput = None) -> ConsolidationPolicy:
    """Clamp every field into range; missing or invalid fields take defaults."""
    if policy is None:
        raw: Mapping[str, Any] = {}
    elif isinstance(policy, ConsolidationPolicy):
        raw = policy.__dict__
    else:
        raw = policy

    strategy = raw.get("strategy")
    threshold = _number(raw.get("redundancy_threshold"))
    decay = _number(raw.get("decay_factor"))
    floor = _number(raw.get("min_confidence"))
    stale = _number(raw.get("stale_after_hours"))

    return ConsolidationPolicy(
        strategy=strategy if strategy in CONSOLIDATION_STRATEGIES else DEFAULT_POLICY.strategy,
        redundancy_threshold=(
            clamp(threshold, 0.6, 0.99) if threshold is not None else DEFAULT_POLICY.redundancy_threshold
        ),
        decay_factor=clamp(decay, 0.5, 0.999) if decay is not None else DEFAULT_POLICY.decay_factor,
        min_confidence=clamp(floor, 0.05, 0.95) if floor is not None else DEFAULT_POLICY.min_confidence,
        stale_after_hours=(
            clamp(stale, 1, 24 * 365) if stale is not None and stale > 0 else DEFAULT_POLICY.stale_after_hours
        ),
    )


def priority_key(atom: MemoryAtom) -> Tuple[bool, float, int]:
    return (not atom.pinned, -atom.confidence, -atom.updated_at)


def pick_primary(a: MemoryAtom, b: MemoryAtom) -> MemoryAtom:
    """The atom that sorts first by priority; ``a`` on ties."""
    return a if priority_key(a) <= priority_key(b) else b


def _union(*lists: List[str]) -> List[str]:
    seen: Dict[str, None] = {}
    for values in lists:
        for value in values or []:
            seen.setdefault(value, None)
    return list(seen)


def merge_atoms(primary: MemoryAtom, duplicate: MemoryAtom, now: int) -> MemoryAtom:
    """Fold ``duplicate`` into ``primary``; the result keeps primary's id and content."""
    primary_summary = primary.summary or ""
    duplicate_summary = duplicate.summary or ""
    summary = primary.summary if primary_summary and len(primary_summary) >= len(duplicate_summary) \
        else (duplicate.summary or primary.summary)

    return replace(
        primary,
        summary=summary,
        confidence=max(primary.confidence, duplicate.confidence),
        keywords=_union(primary.keywords, duplicate.keywords),
        provenance=Provenance(
            source=primary.provenance.source or duplicate.provenance.source or "assistant",
            source_ref=primary.provenance.source_ref or duplicate.provenance.source_ref,
            tags=_union(primary.provenance.tags, duplicate.provenance.tags, [MERGED_TAG]),
            created_by=CONSOLIDATOR_ID,
        ),
        updated_at=now,
    )


def decay_atom(atom: MemoryAtom, confidence: float, now: int) -> MemoryAtom:
    return replace(
        atom,
        confidence=confidence,
        updated_at=now,
        provenance=Provenance(
            source=atom.provenance.source or "assistant",
            source_ref=atom.provenance.source_ref,
            tags=_union(atom.provenance.tags, [DECAYED_TAG]),
            created_by=CONSOLIDATOR_ID,
        ),
    )


@dataclass
class _Survivor:
    atom: MemoryAtom
    normalized: str
    tokens: Set[str]


class SurvivorIndex:
    """
    Accepted survivors with an inverted index by (atom type, token) and by
    (atom type, normalized content).

    ``candidates`` returns positions in acceptance order, so scanning them
    finds the same first match as scanning every survivor of the type. Any
    pair that can reach the redundancy threshold shares a token or has equal
    normalized content. Postings are only ever added; callers re-check
    similarity, so a stale posting costs one comparison.
    """

    def __init__(self):
        self._survivors: List[_Survivor] = []
        self._by_token: Dict[Tuple[str, str], Set[int]] = defaultdict(set)
        self._by_content: Dict[Tuple[str, str], Set[int]] = defaultdict(set)

    def __len__(self) -> int:
        return len(self._survivors)

    def __iter__(self) -> Iterator[_Survivor]:
        return iter(self._survivors)

    def __getitem__(self, position: int) -> _Survivor:
        return self._survivors[position]

    def add(self, survivor: _Survivor) -> None:
        self._survivors.append(survivor)
        self.reindex(len(self._survivors) - 1)

    def reindex(self, position: int) -> None:
        survivor = self._survivors[position]
        atom_type = survivor.atom.atom_type
        for token in survivor.tokens:
            self._by_token[(atom_type, token)].add(position)
        if survivor.normalized:
            self._by_content[(atom_type, survivor.normalized)].add(position)

    def candidates(self, atom_type: str, normalized: str, tokens: Set[str]) -> List[int]:
        positions: Set[int] = set()
        for token in tokens:
            positions |= self._by_token.get((atom_type, token), set())
        if normalized:
            positions |= self._by_content.get((atom_type, normalized), set())
        return sorted(positions)


def _survivor_for(atom: MemoryAtom) -> _Survivor:
    return _Survivor(atom=atom, normalized=normalize(atom.content), tokens=token_set(atom.content))


class ConsolidationEngine:
    """Runs merge + decay passes over one project's atoms."""

    def __init__(
        self,
        list_atoms: Callable[[], Awaitable[List[MemoryAtom]]],
        upsert_atom: Callable[[MemoryAtom], Awaitable[Any]],
        delete_atom: Callable[[str], Awaitable[bool]],
        now: Optional[Callable[[], int]] = None,
    ):
        self.list_atoms = list_atoms
        self.upsert_atom = upsert_atom
        self.delete_atom = delete_atom
        self.now = now or now_ms

    async def run(
        self,
        policy: PolicyInput = None,
        run_id: Optional[str] = None,
        budget: Optional[ConsolidationBudget] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> ConsolidationResult:
        """
        Consolidate the atom set.

        Args:
            policy: Partial or full policy; clamped and defaulted
            run_id: Identifier for the run (generated if omitted)
            budget: Optional size / time bound for the merge pass
            cancel_event: Set it to stop the run between atoms

        Returns:
            ConsolidationResult. ``truncated`` is True when the budget or a
            cancellation cut the run short; writes already made are kept.
        """
        resolved = resolve_policy(policy)
        run_id = run_id or f"mcon_{uuid.uuid4().hex[:8]}"
        now = self.now()
        started_at = now
        clock_start = time.monotonic()
        budget = budget or ConsolidationBudget()

        def cancelled() -> bool:
            return cancel_event is not None and cancel_event.is_set()

        def out_of_budget(examined: int) -> bool:
            if budget.max_atoms is not None and examined >= budget.max_atoms:
                return True
            if budget.max_seconds is not None and time.monotonic() - clock_start >= budget.max_seconds:
                return True
            return False

        atoms = await self.list_atoms()
        before_count = len(atoms)
        preserved_pinned_count = sum(1 for atom in atoms if atom.pinned)

        ordered = sorted(atoms, key=priority_key)
        survivors = SurvivorIndex()
        removed_ids: Set[str] = set()
        merged_count = 0
        removed_count = 0
        decayed_count = 0
        truncated = False

        for examined, atom in enumerate(ordered):
            if examined and examined % _YIELD_EVERY == 0:
                await asyncio.sleep(0)

            if cancelled() or out_of_budget(examined):
                truncated = True
                for rest in ordered[examined:]:
                    if rest.id not in removed_ids:
                        survivors.add(_survivor_for(rest))
                logger.info(f"Consolidation {run_id} stopped after {examined} of {before_count} atoms")
                break

            if atom.id in removed_ids:
                continue

            current = _survivor_for(atom)
            match: Optional[int] = None
            for position in survivors.candidates(atom.atom_type, current.normalized, current.tokens):
                candidate = survivors[position]
                if candidate.atom.pinned and atom.pinned:
                    continue
                exact = bool(current.normalized) and current.normalized == candidate.normalized
                similarity = 1.0 if exact else jaccard(current.tokens, candidate.tokens)
                if similarity >= resolved.redundancy_threshold:
                    match = position
                    break

            if match is None:
                survivors.add(current)
                continue

            survivor = survivors[match]
            primary = pick_primary(survivor.atom, atom)
            secondary = atom if primary is survivor.atom else survivor.atom

            if secondary.pinned:
                survivors.add(current)
                continue

            merged = merge_atoms(primary, secondary, now)
            await self.upsert_atom(merged)
            if await self.delete_atom(secondary.id):
                removed_ids.add(secondary.id)
                removed_count += 1
            merged_count += 1

            if primary is atom:
                survivor.atom = merged
                survivor.normalized = current.normalized
                survivor.tokens = current.tokens
                survivors.reindex(match)
            else:
                survivor.atom = merged

        if not cancelled():
            stale_cutoff = now - resolved.stale_after_hours * _HOUR_MS
            for survivor in survivors:
                if cancelled():
                    truncated = True
                    break
                atom = survivor.atom
                if atom.pinned or atom.updated_at >= stale_cutoff:
                    continue

                decayed = max(resolved.min_confidence, atom.confidence * resolved.decay_factor)
                if decayed >= atom.confidence - _EPSILON:
                    continue

                await self.upsert_atom(decay_atom(atom, decayed, now))
                decayed_count += 1

        after_count = max(0, before_count - removed_count)
        orphaned_removals = max(0, removed_count - merged_count)

        result = ConsolidationResult(
            run_id=run_id,
            strategy=resolved.strategy,
            started_at=started_at,
            completed_at=self.now(),
            before_count=before_count,
            after_count=after_count,
            merged_count=merged_count,
            removed_count=removed_count,
            decayed_count=decayed_count,
            preserved_pinned_count=preserved_pinned_count,
            redundancy_reduction=removed_count / before_count if before_count else 0.0,
            recall_retention=max(0.0, 1 - orphaned_removals / before_count) if before_count else 1.0,
            truncated=truncated,
        )
        logger.info(
            f"Consolidation {run_id} ({resolved.strategy}): {before_count} -> {after_count} atoms, "
            f"merged={merged_count} decayed={decayed_count}"
        )
        return result
