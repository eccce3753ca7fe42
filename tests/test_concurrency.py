"""Tests for concurrent access to one project's memories.

Covers duplicate-safe concurrent creates, writes racing a consolidation
run, and access bookkeeping while the project lock is held.
"""

import asyncio

import pytest

from cowork_memory.codec import atom_to_memory
from cowork_memory.engine import MemoryEngine, project_lock
from cowork_memory.entities import CreateMemoryInput


def _input(content: str, group: str = "learnings") -> CreateMemoryInput:
    return CreateMemoryInput(title="", content=content, group=group)


class TestProjectLock:

    def test_same_project_shares_lock(self):
        assert project_lock("proj_shared") is project_lock("proj_shared")
        assert project_lock("proj_shared") is not project_lock("proj_other")

    @pytest.mark.asyncio
    async def test_engines_on_same_project_share_lock(self, engine, temp_storage):
        other = MemoryEngine(engine.db, working_dir=temp_storage)
        assert other.lock is engine.lock


class TestConcurrentCreate:

    @pytest.mark.asyncio
    async def test_identical_creates_yield_one_memory(self, engine):
        tasks = [engine.create(_input("Run lint before merge.")) for _ in range(10)]
        results = await asyncio.gather(*tasks)

        assert len({m.id for m in results}) == 1
        assert len(await engine.get_all()) == 1

    @pytest.mark.asyncio
    async def test_distinct_creates_all_stored(self, engine):
        tasks = [
            engine.create(_input(f"Concurrent fact number {word}"))
            for word in ["alpha", "bravo", "charlie", "delta", "echo"]
        ]
        results = await asyncio.gather(*tasks)

        assert len({m.id for m in results}) == 5
        assert len(await engine.get_all()) == 5

    @pytest.mark.asyncio
    async def test_creates_racing_consolidation(self, engine):
        for word in ["alpha", "bravo", "charlie"]:
            await engine.create(_input(f"Seed fact {word}"))

        tasks = [engine.consolidate_memory()]
        tasks += [engine.create(_input(f"Racing fact {word}")) for word in ["delta", "echo", "foxtrot"]]
        results = await asyncio.gather(*tasks)

        assert results[0].truncated is False
        contents = sorted(m.content for m in await engine.get_all())
        assert contents == sorted(
            [f"Seed fact {w}" for w in ["alpha", "bravo", "charlie"]]
            + [f"Racing fact {w}" for w in ["delta", "echo", "foxtrot"]]
        )


class TestReadBookkeeping:

    @pytest.mark.asyncio
    async def test_read_does_not_wait_for_lock(self, engine):
        memory = await engine.create(_input("Run lint before merge."))

        async with engine.lock:
            fetched = await asyncio.wait_for(engine.read(memory.id), timeout=5)
            assert fetched.access_count == 1

        stored = await engine.read(memory.id)
        assert stored.access_count == 1

    @pytest.mark.asyncio
    async def test_concurrent_reads_never_overcount(self, engine):
        memory = await engine.create(_input("Run lint before merge."))

        results = await asyncio.gather(*[engine.read(memory.id) for _ in range(5)])
        assert all(r.access_count >= 1 for r in results)

        atom = await engine.atoms.find_by_id(memory.id)
        assert 1 <= atom_to_memory(atom).access_count <= 5

    @pytest.mark.asyncio
    async def test_read_during_consolidation_keeps_run_result(self, engine, clock):
        memory = await engine.create(_input("Old fact worth decaying.", group="context"))
        clock.advance(hours=1000)

        consolidation, fetched = await asyncio.gather(
            engine.consolidate_memory({"decay_factor": 0.5}),
            engine.read(memory.id),
        )
        assert consolidation.decayed_count == 1
        assert fetched is not None
        assert (await engine.atoms.find_by_id(memory.id)).confidence == pytest.approx(0.5)
