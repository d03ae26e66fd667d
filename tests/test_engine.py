"""Tests for the synchronization engine."""

from __future__ import annotations

import asyncio
from pathlib import Path

import httpx
import pytest

from omenka.assist import AssistClient, AssistRequest, AssistServiceError
from omenka.config import AssistConfig, OmenkaConfig, ProjectConfig, RemoteConfig
from omenka.model import BlockType, create_default_project
from omenka.storage.cache import LocalCache
from omenka.storage.remote import MemoryRemoteStore, RemoteStoreError
from omenka.sync.engine import EngineState, SaveStatus, SyncEngine

DEBOUNCE = 0.02


@pytest.fixture
def remote() -> MemoryRemoteStore:
    return MemoryRemoteStore()


@pytest.fixture
def cache(tmp_path: Path) -> LocalCache:
    return LocalCache(tmp_path / "cache")


@pytest.fixture
def engine(remote: MemoryRemoteStore, cache: LocalCache) -> SyncEngine:
    return SyncEngine(remote, cache, debounce_seconds=DEBOUNCE)


def _request(payload: str = "A girl in Lagos") -> AssistRequest:
    return AssistRequest(
        module_id="synopsis-generator",
        system_instruction="You are a script consultant.",
        module_instruction="Write a synopsis.",
        payload=payload,
    )


class TestInitialLoad:
    @pytest.mark.asyncio
    async def test_remote_is_authoritative(self, engine, remote, cache):
        a, b = create_default_project(), create_default_project()
        await remote.upsert("u1", a)
        await remote.upsert("u1", b)
        cache.scoped("u1").save_all([create_default_project()])
        upserts_before = remote.count("upsert")

        await engine.load("u1")
        await engine.drain()

        assert engine.state is EngineState.READY
        assert [p.id for p in engine.projects] == [b.id, a.id]
        assert engine.active_id == b.id
        assert remote.count("upsert") == upserts_before
        assert cache.scoped("u1").load_all() == engine.projects

    @pytest.mark.asyncio
    async def test_empty_remote_falls_back_to_cache(self, engine, remote, cache):
        cached = [create_default_project(), create_default_project(), create_default_project()]
        cache.scoped("u1").save_all(cached)

        await engine.load("u1")
        assert engine.projects == cached
        assert engine.active_id == cached[0].id

        await engine.drain()
        assert {p.id for p in await remote.list("u1")} == {p.id for p in cached}

    @pytest.mark.asyncio
    async def test_cold_start_synthesizes_default(self, engine, remote):
        await engine.load("u1")

        assert engine.state is EngineState.READY
        assert len(engine.projects) == 1
        only = engine.projects[0]
        assert engine.active_id == only.id
        assert len(only.content) == 1
        assert only.content[0].type is BlockType.SCENE_HEADING

        await engine.drain()
        assert [p.id for p in await remote.list("u1")] == [only.id]

    @pytest.mark.asyncio
    async def test_remote_failure_uses_cache_without_push(self, engine, remote, cache):
        cached = [create_default_project()]
        cache.scoped("u1").save_all(cached)
        remote.fail_with = RemoteStoreError("offline")

        await engine.load("u1")
        await engine.drain()

        assert engine.state is EngineState.READY
        assert engine.projects == cached
        assert remote.count("upsert") == 0

    @pytest.mark.asyncio
    async def test_remote_failure_cold_start(self, engine, remote):
        remote.fail_with = RuntimeError("boom")
        await engine.load("u1")
        assert engine.state is EngineState.READY
        assert len(engine.projects) == 1

    @pytest.mark.asyncio
    async def test_owner_cache_does_not_leak(self, engine, cache):
        cache.scoped("alice").save_all([create_default_project()])
        await engine.load("bob")
        alice_ids = {p.id for p in cache.scoped("alice").load_all()}
        assert not alice_ids & {p.id for p in engine.projects}

    @pytest.mark.asyncio
    async def test_duplicate_ids_collapsed(self, engine, cache):
        p = create_default_project()
        cache.scoped("u1").save_all([p, p])
        await engine.load("u1")
        assert engine.projects == [p]


    @pytest.mark.asyncio
    async def test_slow_seed_does_not_overwrite_newer_commit(self, engine, remote):
        await engine.load("u1")
        seeded = engine.active_id
        remote.delay = 0.08
        await asyncio.sleep(0.01)  # seed upsert now in flight with the loaded state
        remote.delay = 0
        engine.update_metadata_field("title", "FRESH")

        await engine.drain()

        stored = {p.id: p for p in await remote.list("u1")}
        assert stored[seeded].metadata.title == "FRESH"
        assert remote.upserted[-1].metadata.title == "FRESH"
        assert engine.save_status is SaveStatus.SAVED

    @pytest.mark.asyncio
    async def test_owners_with_same_cache_slug_stay_apart(self, engine, remote, cache):
        remote.fail_with = RemoteStoreError("offline")
        await engine.load("user:1")
        engine.update_metadata_field("title", "SECRET OF USER:1")
        await engine.close()

        other = SyncEngine(remote, cache, debounce_seconds=DEBOUNCE)
        await other.load("user1")
        assert all(p.metadata.title != "SECRET OF USER:1" for p in other.projects)


class TestMutations:
    @pytest.mark.asyncio
    async def test_applied_immediately_and_cached(self, engine, cache):
        await engine.load("u1")
        await engine.drain()
        block = engine.active.content[0]

        assert engine.update_block_content(block.id, "EXT. MARKET - DAY") is True

        assert engine.active.content[0].content == "EXT. MARKET - DAY"
        assert engine.save_status is SaveStatus.IDLE
        assert cache.scoped("u1").load_all() == engine.projects
        await engine.drain()

    @pytest.mark.asyncio
    async def test_noop_does_not_dirty(self, engine, remote):
        await engine.load("u1")
        await engine.drain()
        only = engine.active.content[0]
        upserts = remote.count("upsert")

        assert engine.remove_block(only.id) is False
        assert engine.update_block_content("missing", "x") is False
        await engine.drain()

        assert engine.save_status is SaveStatus.SAVED
        assert remote.count("upsert") == upserts

    @pytest.mark.asyncio
    async def test_every_operation(self, engine):
        await engine.load("u1")
        first = engine.active.content[0]

        engine.insert_block_after(first.id)
        second = engine.active.content[1]
        assert second.type is BlockType.ACTION
        engine.change_block_type(second.id, BlockType.CHARACTER)
        engine.update_metadata_field("title", "ADA'S WAY")
        engine.remove_block(first.id)

        assert engine.active.metadata.title == "ADA'S WAY"
        assert [b.type for b in engine.active.content] == [BlockType.CHARACTER]
        await engine.drain()

    @pytest.mark.asyncio
    async def test_ignored_without_active_project(self, engine):
        assert engine.update_block_content("b", "x") is False


class TestDebouncedCommit:
    @pytest.mark.asyncio
    async def test_rapid_edits_coalesce(self, engine, remote):
        await engine.load("u1")
        await engine.drain()
        block_id = engine.active.content[0].id
        upserts = remote.count("upsert")

        for i in range(5):
            engine.update_block_content(block_id, f"draft {i}")
        assert engine.commit_pending
        await engine.drain()

        assert remote.count("upsert") == upserts + 1
        assert remote.upserted[-1].content[0].content == "draft 4"
        assert engine.save_status is SaveStatus.SAVED

    @pytest.mark.asyncio
    async def test_saving_while_in_flight(self, engine, remote):
        await engine.load("u1")
        await engine.drain()
        remote.delay = 0.05
        engine.update_metadata_field("title", "X")

        await asyncio.sleep(DEBOUNCE + 0.02)
        assert engine.save_status is SaveStatus.SAVING
        await engine.drain()
        assert engine.save_status is SaveStatus.SAVED

    @pytest.mark.asyncio
    async def test_failure_sets_error_and_retry_recovers(self, engine, remote):
        await engine.load("u1")
        await engine.drain()
        remote.fail_with = RemoteStoreError("offline")

        engine.update_metadata_field("title", "OFFLINE")
        await engine.drain()
        assert engine.save_status is SaveStatus.ERROR
        assert engine.active.metadata.title == "OFFLINE"

        remote.fail_with = None
        assert await engine.retry() is True
        assert engine.save_status is SaveStatus.SAVED
        assert remote.upserted[-1].metadata.title == "OFFLINE"

    @pytest.mark.asyncio
    async def test_edit_during_flight_stays_dirty(self, remote, cache):
        engine = SyncEngine(remote, cache, debounce_seconds=0.1)
        await engine.load("u1")
        await engine.drain()
        remote.delay = 0.06
        engine.update_metadata_field("title", "ONE")
        await asyncio.sleep(0.12)  # first write in flight until ~0.16

        engine.update_metadata_field("title", "TWO")
        await asyncio.sleep(0.07)
        # first write resolved, second not dispatched until ~0.22
        assert engine.save_status is SaveStatus.IDLE

        await engine.drain()
        assert engine.save_status is SaveStatus.SAVED
        assert remote.upserted[-1].metadata.title == "TWO"

    @pytest.mark.asyncio
    async def test_flush(self, engine, remote):
        await engine.load("u1")
        await engine.drain()
        engine.update_metadata_field("title", "NOW")
        await engine.flush()
        assert not engine.commit_pending
        assert remote.upserted[-1].metadata.title == "NOW"

    @pytest.mark.asyncio
    async def test_close_cancels_pending(self, engine, remote):
        await engine.load("u1")
        await engine.drain()
        upserts = remote.count("upsert")
        engine.update_metadata_field("title", "LOST")
        await engine.close()
        await asyncio.sleep(DEBOUNCE * 2)
        assert remote.count("upsert") == upserts


class TestSelection:
    @pytest.mark.asyncio
    async def test_select_flushes_previous_project(self, engine, remote, cache):
        a, b = create_default_project(), create_default_project()
        cache.scoped("u1").save_all([a, b])
        await engine.load("u1")
        await engine.drain()

        engine.update_metadata_field("title", "EDITED A")
        assert engine.select(b.id) is True
        assert engine.active_id == b.id
        assert not engine.commit_pending
        await engine.drain()

        assert remote.upserted[-1].id == a.id
        assert remote.upserted[-1].metadata.title == "EDITED A"

    @pytest.mark.asyncio
    async def test_select_unknown_ignored(self, engine):
        await engine.load("u1")
        active = engine.active_id
        assert engine.select("missing") is False
        assert engine.active_id == active


class TestLifecycle:
    @pytest.mark.asyncio
    async def test_create_prepends_and_upserts_immediately(self, engine, remote):
        await engine.load("u1")
        await engine.drain()
        upserts = remote.count("upsert")

        created = await engine.create_project()

        assert engine.projects[0] is created
        assert engine.active_id == created.id
        assert remote.count("upsert") == upserts + 1
        assert engine.save_status is SaveStatus.SAVED

    @pytest.mark.asyncio
    async def test_create_requires_owner(self, engine):
        with pytest.raises(RuntimeError):
            await engine.create_project()

    @pytest.mark.asyncio
    async def test_delete_reassigns_active(self, engine, remote):
        await engine.load("u1")
        await engine.create_project()
        await engine.drain()
        doomed = engine.active_id

        assert await engine.delete_project() is True

        assert len(engine.projects) == 1
        assert engine.active_id == engine.projects[0].id
        assert ("remove", "u1", doomed) in remote.calls
        assert doomed not in {p.id for p in await remote.list("u1")}

    @pytest.mark.asyncio
    async def test_delete_last_project(self, engine, cache):
        await engine.load("u1")
        await engine.delete_project()
        assert engine.projects == []
        assert engine.active_id is None
        assert engine.active is None
        assert cache.scoped("u1").load_all() == []
        await engine.drain()

    @pytest.mark.asyncio
    async def test_delete_failure_is_not_rolled_back(self, engine, remote):
        await engine.load("u1")
        await engine.create_project()
        await engine.drain()
        doomed = engine.active_id
        remote.fail_with = RemoteStoreError("offline")

        await engine.delete_project()

        assert engine.get(doomed) is None
        assert engine.save_status is SaveStatus.ERROR

    @pytest.mark.asyncio
    async def test_delete_unknown(self, engine):
        await engine.load("u1")
        assert await engine.delete_project("missing") is False


    @pytest.mark.asyncio
    async def test_delete_other_project_keeps_pending_edit_dirty(self, remote, cache):
        engine = SyncEngine(remote, cache, debounce_seconds=5)
        await engine.load("u1")
        await engine.drain()
        other = engine.active_id
        await engine.create_project()
        engine.update_metadata_field("title", "UNSENT")

        assert await engine.delete_project(other) is True

        assert engine.commit_pending
        assert engine.save_status is SaveStatus.IDLE
        await engine.flush()
        assert engine.save_status is SaveStatus.SAVED
        assert remote.upserted[-1].metadata.title == "UNSENT"

    @pytest.mark.asyncio
    async def test_failed_project_stays_dirty_after_other_write(self, engine, remote):
        await engine.load("u1")
        await engine.drain()
        failed = engine.active_id
        remote.fail_with = RemoteStoreError("offline")
        engine.update_metadata_field("title", "OFFLINE")
        await engine.drain()
        assert engine.save_status is SaveStatus.ERROR

        remote.fail_with = None
        await engine.create_project()
        assert engine.save_status is SaveStatus.IDLE

        assert await engine.retry() is True
        assert engine.save_status is SaveStatus.SAVED
        stored = {p.id: p for p in await remote.list("u1")}
        assert stored[failed].metadata.title == "OFFLINE"


class TestOwnerSwitch:
    @pytest.mark.asyncio
    async def test_switch_cancels_pending_commit(self, engine, remote):
        await engine.load("u1")
        await engine.drain()
        engine.update_metadata_field("title", "UNSENT")

        await engine.load("u2")
        await engine.drain()

        assert all(p.metadata.title != "UNSENT" for p in remote.upserted)
        assert all(p.metadata.title != "UNSENT" for p in engine.projects)
        assert engine.owner_id == "u2"

    @pytest.mark.asyncio
    async def test_stale_write_does_not_touch_status(self, engine, remote):
        await engine.load("u1")
        await engine.drain()
        remote.delay = 0.05
        engine.update_metadata_field("title", "STALE")
        await asyncio.sleep(DEBOUNCE + 0.01)  # write for u1 now in flight
        remote.fail_with = RemoteStoreError("offline")

        await engine.load("u2")
        await engine.drain()

        assert engine.state is EngineState.READY
        assert engine.save_status is SaveStatus.SAVED


class TestAssist:
    @pytest.mark.asyncio
    async def test_disabled_changes_nothing(self, remote, cache):
        engine = SyncEngine(remote, cache, assist=AssistClient(AssistConfig(enabled=False)))
        await engine.load("u1")
        before = engine.active

        result = await engine.assist(_request())

        assert result.disabled is True
        assert engine.active is before

    @pytest.mark.asyncio
    async def test_inserts_generated_text(self, remote, cache):
        transport = httpx.MockTransport(lambda request: httpx.Response(200, json={"text": "A synopsis."}))
        client = AssistClient(
            AssistConfig(enabled=True, endpoint="https://ai.example/api/ai"),
            http_client=httpx.AsyncClient(transport=transport),
        )
        engine = SyncEngine(remote, cache, assist=client, debounce_seconds=DEBOUNCE)
        await engine.load("u1")

        result = await engine.assist(_request())

        assert result.text == "A synopsis."
        last = engine.active.content[-1]
        assert last.type is BlockType.ACTION
        assert last.content == "A synopsis."
        assert engine.save_status is SaveStatus.IDLE
        await engine.drain()

    @pytest.mark.asyncio
    async def test_service_error_propagates(self, remote, cache):
        transport = httpx.MockTransport(lambda request: httpx.Response(500, text="quota exceeded"))
        client = AssistClient(
            AssistConfig(enabled=True, endpoint="https://ai.example/api/ai"),
            http_client=httpx.AsyncClient(transport=transport),
        )
        engine = SyncEngine(remote, cache, assist=client)
        await engine.load("u1")
        before = engine.active

        with pytest.raises(AssistServiceError, match="quota exceeded"):
            await engine.assist(_request())
        assert engine.active is before


class TestFromConfig:
    def test_in_process_remote_by_default(self, tmp_path: Path):
        config = OmenkaConfig(project=ProjectConfig(default_author="Kemi"))
        config.cache.dir = tmp_path
        config.sync.debounce_ms = 800
        engine = SyncEngine.from_config(config)
        assert isinstance(engine.remote, MemoryRemoteStore)
        assert engine.debounce_seconds == 0.8

    @pytest.mark.asyncio
    async def test_default_author_from_config(self, tmp_path: Path):
        config = OmenkaConfig(project=ProjectConfig(default_author="Kemi"))
        config.cache.dir = tmp_path
        engine = SyncEngine.from_config(config)
        await engine.load("u1")
        assert engine.active.metadata.author == "Kemi"
        await engine.close()

    def test_http_remote_when_url_set(self, tmp_path: Path):
        from omenka.storage.http import HttpRemoteStore

        config = OmenkaConfig(remote=RemoteConfig(url="https://docs.example"))
        config.cache.dir = tmp_path
        engine = SyncEngine.from_config(config)
        assert isinstance(engine.remote, HttpRemoteStore)
