"""Tests for the consolidation engine (merge, decay, pinned protection)."""

import asyncio

import pytest

from cowork_memory.consolidation import (
    CONSOLIDATOR_ID,
    DECAYED_TAG,
    MERGED_TAG,
    ConsolidationEngine,
    SurvivorIndex,
    merge_atoms,
    pick_primary,
    resolve_policy,
)
from cowork_memory.entities import ConsolidationBudget, ConsolidationPolicy, MemoryAtom, Provenance

from conftest import HOUR_MS, FakeClock

NOW = 1_700_000_000_000


def make_atom(atom_id, content, confidence=0.8, pinned=False, updated_at=NOW,
              atom_type="semantic", keywords=None, summary=None, tags=None) -> MemoryAtom:
    return MemoryAtom(
        id=atom_id,
        project_id="proj_test",
        atom_type=atom_type,
        content=content,
        confidence=confidence,
        created_at=updated_at,
        updated_at=updated_at,
        summary=summary,
        keywords=keywords or [],
        provenance=Provenance(source="user", tags=tags or []),
        pinned=pinned,
    )


class InMemoryAtoms:
    """Dict-backed stand-in for the atom repository."""

    def __init__(self, atoms, refuse_delete=False):
        self.atoms = {atom.id: atom for atom in atoms}
        self.refuse_delete = refuse_delete
        self.writes = 0

    async def list_atoms(self):
        return list(self.atoms.values())

    async def upsert(self, atom):
        self.writes += 1
        self.atoms[atom.id] = atom
        return atom

    async def delete(self, atom_id):
        if self.refuse_delete:
            return False
        return self.atoms.pop(atom_id, None) is not None


def build(store: InMemoryAtoms, clock=None) -> ConsolidationEngine:
    return ConsolidationEngine(store.list_atoms, store.upsert, store.delete, now=clock or (lambda: NOW))


class TestResolvePolicy:

    def test_defaults(self):
        assert resolve_policy(None) == ConsolidationPolicy(
            strategy="balanced",
            redundancy_threshold=0.9,
            decay_factor=0.92,
            min_confidence=0.15,
            stale_after_hours=336,
        )

    def test_clamps_out_of_range_values(self):
        policy = resolve_policy({
            "redundancy_threshold": 2,
            "decay_factor": 0.1,
            "min_confidence": 0,
            "stale_after_hours": 100_000,
        })
        assert policy.redundancy_threshold == 0.99
        assert policy.decay_factor == 0.5
        assert policy.min_confidence == 0.05
        assert policy.stale_after_hours == 8760

    def test_invalid_values_fall_back(self):
        policy = resolve_policy({
            "strategy": "reckless",
            "redundancy_threshold": "high",
            "decay_factor": True,
            "stale_after_hours": 0,
        })
        assert policy.strategy == "balanced"
        assert policy.redundancy_threshold == 0.9
        assert policy.decay_factor == 0.92
        assert policy.stale_after_hours == 336

    def test_accepts_policy_object(self):
        policy = resolve_policy(ConsolidationPolicy(strategy="aggressive", redundancy_threshold=0.5))
        assert policy.strategy == "aggressive"
        assert policy.redundancy_threshold == 0.6


class TestMergeHelpers:

    def test_pick_primary_prefers_pinned_then_confidence_then_recency(self):
        pinned = make_atom("p", "x", confidence=0.1, pinned=True)
        strong = make_atom("s", "x", confidence=0.9)
        recent = make_atom("r", "x", confidence=0.9, updated_at=NOW + 1)
        assert pick_primary(strong, pinned) is pinned
        assert pick_primary(strong, make_atom("w", "x", confidence=0.2)) is strong
        assert pick_primary(strong, recent) is recent

    def test_pick_primary_tie_keeps_first(self):
        a = make_atom("a", "x")
        b = make_atom("b", "x")
        assert pick_primary(a, b) is a

    def test_merge_atoms(self):
        primary = make_atom("a", "Run lint", confidence=0.6, keywords=["lint"], summary="Lint", tags=["t1"])
        duplicate = make_atom("b", "run lint", confidence=0.9, keywords=["lint", "ci"],
                              summary="Lint before merge", tags=["t2"])
        merged = merge_atoms(primary, duplicate, NOW + 10)

        assert merged.id == "a"
        assert merged.content == "Run lint"
        assert merged.keywords == ["lint", "ci"]
        assert merged.summary == "Lint before merge"
        assert merged.confidence == 0.9
        assert merged.updated_at == NOW + 10
        assert merged.provenance.tags == ["t1", "t2", MERGED_TAG]
        assert merged.provenance.created_by == CONSOLIDATOR_ID

    def test_survivor_index_only_returns_sharing_candidates(self):
        from cowork_memory.consolidation import _survivor_for

        index = SurvivorIndex()
        index.add(_survivor_for(make_atom("a", "run lint before merge")))
        index.add(_survivor_for(make_atom("b", "prefer concise answers")))
        index.add(_survivor_for(make_atom("c", "lint the docs", atom_type="context")))

        assert index.candidates("semantic", "lint everything", {"lint", "everything"}) == [0]
        assert index.candidates("context", "lint", {"lint"}) == [2]
        assert index.candidates("semantic", "nothing shared", {"nothing", "shared"}) == []


class TestMergePass:

    @pytest.mark.asyncio
    async def test_exact_duplicates_merge_into_higher_confidence(self):
        store = InMemoryAtoms([
            make_atom("low", "Run lint before merge!", confidence=0.5, keywords=["ci"]),
            make_atom("high", "run lint before merge", confidence=0.9, keywords=["lint"]),
            make_atom("other", "Prefer concise answers in chat", confidence=0.7),
        ])
        result = await build(store).run()

        assert set(store.atoms) == {"high", "other"}
        survivor = store.atoms["high"]
        assert survivor.keywords == ["lint", "ci"]
        assert MERGED_TAG in survivor.provenance.tags
        assert survivor.confidence == 0.9

        assert result.before_count == 3
        assert result.after_count == 2
        assert result.merged_count == 1
        assert result.removed_count == 1
        assert result.redundancy_reduction == pytest.approx(1 / 3)
        assert result.recall_retention == 1.0
        assert result.truncated is False

    @pytest.mark.asyncio
    async def test_near_duplicates_above_threshold_merge(self):
        store = InMemoryAtoms([
            make_atom("a", "always run lint typecheck tests before merge", confidence=0.92),
            make_atom("b", "before merge always run tests typecheck lint", confidence=0.6),
        ])
        result = await build(store).run()
        assert result.merged_count == 1
        assert list(store.atoms) == ["a"]

    @pytest.mark.asyncio
    async def test_below_threshold_is_kept(self):
        store = InMemoryAtoms([
            make_atom("a", "run lint before merge"),
            make_atom("b", "run tests before merge"),
        ])
        result = await build(store).run()
        assert result.merged_count == 0
        assert set(store.atoms) == {"a", "b"}

    @pytest.mark.asyncio
    async def test_lower_threshold_merges_more(self):
        store = InMemoryAtoms([
            make_atom("a", "run lint before every merge", confidence=0.9),
            make_atom("b", "run lint before merge", confidence=0.5),
        ])
        result = await build(store).run({"redundancy_threshold": 0.6})
        assert result.merged_count == 1
        assert set(store.atoms) == {"a"}

    @pytest.mark.asyncio
    async def test_different_atom_types_never_merge(self):
        store = InMemoryAtoms([
            make_atom("a", "run lint before merge", atom_type="semantic"),
            make_atom("b", "run lint before merge", atom_type="instructions"),
        ])
        result = await build(store).run()
        assert result.merged_count == 0
        assert len(store.atoms) == 2

    @pytest.mark.asyncio
    async def test_cluster_collapses_to_one(self):
        store = InMemoryAtoms([
            make_atom(f"dup{i}", "Run lint before merge", confidence=0.5 + i / 10) for i in range(4)
        ])
        result = await build(store).run()
        assert list(store.atoms) == ["dup3"]
        assert result.merged_count == 3
        assert result.removed_count == 3
        assert result.after_count == 1

    @pytest.mark.asyncio
    async def test_failed_delete_counts_merge_but_not_removal(self):
        store = InMemoryAtoms([
            make_atom("a", "run lint before merge", confidence=0.9),
            make_atom("b", "run lint before merge", confidence=0.5),
        ], refuse_delete=True)
        result = await build(store).run()
        assert result.merged_count == 1
        assert result.removed_count == 0
        assert result.after_count == 2
        assert result.recall_retention == 1.0

    @pytest.mark.asyncio
    async def test_empty_project(self):
        result = await build(InMemoryAtoms([])).run()
        assert result.before_count == 0
        assert result.after_count == 0
        assert result.redundancy_reduction == 0.0
        assert result.recall_retention == 1.0

    @pytest.mark.asyncio
    async def test_run_id_format(self):
        result = await build(InMemoryAtoms([])).run()
        assert result.run_id.startswith("mcon_")
        assert len(result.run_id) == len("mcon_") + 8


class TestPinnedProtection:

    @pytest.mark.asyncio
    async def test_two_pinned_duplicates_are_untouched(self):
        store = InMemoryAtoms([
            make_atom("a", "run lint before merge", pinned=True),
            make_atom("b", "run lint before merge", pinned=True),
        ])
        result = await build(store).run()
        assert result.merged_count == 0
        assert set(store.atoms) == {"a", "b"}
        assert store.writes == 0
        assert result.preserved_pinned_count == 2

    @pytest.mark.asyncio
    async def test_pinned_wins_over_higher_confidence(self):
        store = InMemoryAtoms([
            make_atom("pinned", "run lint before merge", confidence=0.2, pinned=True),
            make_atom("loose", "run lint before merge", confidence=0.95),
        ])
        result = await build(store).run()
        assert set(store.atoms) == {"pinned"}
        assert store.atoms["pinned"].pinned is True
        assert store.atoms["pinned"].confidence == 0.95
        assert result.preserved_pinned_count == 1

    @pytest.mark.asyncio
    async def test_pinned_atoms_never_decay(self):
        stale = NOW - 1000 * HOUR_MS
        store = InMemoryAtoms([make_atom("p", "keep me", confidence=0.5, pinned=True, updated_at=stale)])
        result = await build(store).run({"decay_factor": 0.5})
        assert result.decayed_count == 0
        assert store.atoms["p"].confidence == 0.5

    @pytest.mark.asyncio
    @pytest.mark.parametrize("policy", [
        None,
        {"redundancy_threshold": 0.6, "decay_factor": 0.5, "stale_after_hours": 1},
        {"strategy": "aggressive", "redundancy_threshold": 0.99},
    ])
    async def test_pinned_count_never_drops(self, policy):
        stale = NOW - 500 * HOUR_MS
        atoms = [
            make_atom("p1", "run lint before merge", pinned=True, updated_at=stale),
            make_atom("p2", "run lint before merge", pinned=True, updated_at=stale),
            make_atom("u1", "run lint before merge", confidence=0.99, updated_at=stale),
            make_atom("p3", "prefer concise answers", pinned=True, updated_at=stale),
            make_atom("u2", "prefer concise answers please", confidence=0.3, updated_at=stale),
        ]
        store = InMemoryAtoms(atoms)
        await build(store).run(policy)
        pinned = {a.id for a in store.atoms.values() if a.pinned}
        assert pinned == {"p1", "p2", "p3"}


class TestDecay:

    @pytest.mark.asyncio
    async def test_decay_then_floor(self):
        clock = FakeClock(NOW)
        policy = {"decay_factor": 0.9, "min_confidence": 0.4, "stale_after_hours": 336}
        store = InMemoryAtoms([make_atom("a", "old fact", confidence=0.5, updated_at=NOW - 400 * HOUR_MS)])
        consolidator = build(store, clock)

        first = await consolidator.run(policy)
        assert first.decayed_count == 1
        assert store.atoms["a"].confidence == pytest.approx(0.45)
        assert store.atoms["a"].updated_at == NOW
        assert DECAYED_TAG in store.atoms["a"].provenance.tags

        again = await consolidator.run(policy)
        assert again.decayed_count == 0
        assert again.merged_count == 0
        assert store.atoms["a"].confidence == pytest.approx(0.45)

        clock.advance(hours=400)
        await consolidator.run(policy)
        assert store.atoms["a"].confidence == pytest.approx(0.405)

        clock.advance(hours=400)
        await consolidator.run(policy)
        assert store.atoms["a"].confidence == pytest.approx(0.4)

        clock.advance(hours=400)
        floored = await consolidator.run(policy)
        assert floored.decayed_count == 0
        assert store.atoms["a"].confidence == pytest.approx(0.4)

    @pytest.mark.asyncio
    async def test_fresh_atoms_do_not_decay(self):
        store = InMemoryAtoms([make_atom("a", "fresh", confidence=0.5, updated_at=NOW - HOUR_MS)])
        result = await build(store).run()
        assert result.decayed_count == 0
        assert store.writes == 0

    @pytest.mark.asyncio
    async def test_confidence_stays_within_bounds(self):
        stale = NOW - 10_000 * HOUR_MS
        store = InMemoryAtoms([
            make_atom(f"a{i}", f"distinct fact number {word}", confidence=c, updated_at=stale)
            for i, (c, word) in enumerate([(1.0, "alpha"), (0.3, "bravo"), (0.05, "charlie")])
        ])
        before = {a.id: a.confidence for a in store.atoms.values()}
        await build(store).run({"decay_factor": 0.5, "min_confidence": 0.2})
        for atom in store.atoms.values():
            assert 0.0 <= atom.confidence <= 1.0
            assert atom.confidence <= before[atom.id]
            assert atom.confidence >= min(0.2, before[atom.id])

    @pytest.mark.asyncio
    async def test_merged_atoms_are_not_decayed_in_same_run(self):
        stale = NOW - 1000 * HOUR_MS
        store = InMemoryAtoms([
            make_atom("a", "run lint before merge", confidence=0.9, updated_at=stale),
            make_atom("b", "run lint before merge", confidence=0.5, updated_at=stale),
        ])
        result = await build(store).run()
        assert result.merged_count == 1
        assert result.decayed_count == 0
        assert store.atoms["a"].confidence == 0.9


class TestBudgetAndCancel:

    @pytest.mark.asyncio
    async def test_atom_budget_truncates_merge_pass(self):
        store = InMemoryAtoms([
            make_atom("a", "run lint before merge", confidence=0.9),
            make_atom("b", "run lint before merge", confidence=0.5),
            make_atom("c", "run lint before merge", confidence=0.4),
        ])
        result = await build(store).run(budget=ConsolidationBudget(max_atoms=1))
        assert result.truncated is True
        assert result.merged_count == 0
        assert set(store.atoms) == {"a", "b", "c"}

    @pytest.mark.asyncio
    async def test_budget_exhaustion_still_decays(self):
        stale = NOW - 1000 * HOUR_MS
        store = InMemoryAtoms([
            make_atom("a", "first fact", confidence=0.9, updated_at=stale),
            make_atom("b", "second fact", confidence=0.5, updated_at=stale),
        ])
        result = await build(store).run(budget=ConsolidationBudget(max_atoms=1))
        assert result.truncated is True
        assert result.decayed_count == 2

    @pytest.mark.asyncio
    async def test_time_budget_of_zero_stops_immediately(self):
        store = InMemoryAtoms([
            make_atom("a", "run lint before merge", confidence=0.9),
            make_atom("b", "run lint before merge", confidence=0.5),
        ])
        result = await build(store).run(budget=ConsolidationBudget(max_seconds=0))
        assert result.truncated is True
        assert result.merged_count == 0

    @pytest.mark.asyncio
    async def test_generous_budget_completes(self):
        store = InMemoryAtoms([
            make_atom("a", "run lint before merge", confidence=0.9),
            make_atom("b", "run lint before merge", confidence=0.5),
        ])
        result = await build(store).run(budget=ConsolidationBudget(max_atoms=100, max_seconds=60))
        assert result.truncated is False
        assert result.merged_count == 1

    @pytest.mark.asyncio
    async def test_cancel_skips_merge_and_decay(self):
        stale = NOW - 1000 * HOUR_MS
        store = InMemoryAtoms([
            make_atom("a", "run lint before merge", confidence=0.9, updated_at=stale),
            make_atom("b", "run lint before merge", confidence=0.5, updated_at=stale),
        ])
        cancel = asyncio.Event()
        cancel.set()
        result = await build(store).run(cancel_event=cancel)
        assert result.truncated is True
        assert result.merged_count == 0
        assert result.decayed_count == 0
        assert store.writes == 0
        assert result.after_count == 2
