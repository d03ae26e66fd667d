"""Synchronization engine — owns the in-memory project collection.

Responsibilities:
1. Initial load: remote first, local cache fallback, default synthesis last
2. Apply document mutations to the active project synchronously
3. Mirror every collection change to the local cache immediately
4. Debounce remote upserts of the active project
5. Report save status (idle | saving | saved | error)
6. Project lifecycle: create (immediate upsert), delete (immediate remove)

Every dispatched remote write carries a tag naming the owner generation
and project it targeted. Results whose tag is no longer current are
discarded, so a stale write cannot overwrite the status of a newer one.
"""

from __future__ import annotations

import asyncio
import itertools
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from enum import Enum
from functools import partial
from typing import TYPE_CHECKING

from omenka import model
from omenka.assist import AssistConfigError, AssistRequest, AssistResult
from omenka.model import BlockType, Project
from omenka.storage.cache import LocalCache
from omenka.sync.debounce import Debouncer

if TYPE_CHECKING:
    from omenka.assist import AssistClient
    from omenka.config import OmenkaConfig
    from omenka.storage.remote import RemoteStore

logger = logging.getLogger(__name__)

DEFAULT_DEBOUNCE_SECONDS = 1.0


class EngineState(str, Enum):
    LOADING = "loading"
    READY = "ready"


class SaveStatus(str, Enum):
    IDLE = "idle"  # dirty, not yet confirmed remotely
    SAVING = "saving"
    SAVED = "saved"
    ERROR = "error"


@dataclass(frozen=True)
class WriteTag:
    """Identity of one dispatched remote write."""

    generation: int
    owner_id: str
    project_id: str
    seq: int


class SyncEngine:
    """One editing session for one owner at a time."""

    def __init__(
        self,
        remote: RemoteStore,
        cache: LocalCache,
        *,
        assist: AssistClient | None = None,
        debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
        project_factory: Callable[[], Project] = model.create_default_project,
    ) -> None:
        self.remote = remote
        self.assist_client = assist
        self.debounce_seconds = debounce_seconds
        self._base_cache = cache
        self._cache: LocalCache | None = None
        self._project_factory = project_factory

        self.owner_id: str | None = None
        self.projects: list[Project] = []
        self.active_id: str | None = None
        self.state = EngineState.LOADING
        self.save_status = SaveStatus.SAVED

        self._debouncer = Debouncer()
        self._generation = 0
        self._seq = itertools.count(1)
        self._latest: WriteTag | None = None
        self._edit_seq = 0
        self._dirty: dict[str, int] = {}  # project id → last unconfirmed edit
        self._inflight: dict[int, tuple[str, int]] = {}  # write seq → (project id, edit covered)
        self._lanes: dict[str, asyncio.Lock] = {}  # per-project write serialization
        self._tasks: set[asyncio.Future] = set()

    @classmethod
    def from_config(
        cls,
        config: OmenkaConfig,
        remote: RemoteStore | None = None,
        assist: AssistClient | None = None,
    ) -> SyncEngine:
        """Build an engine wired to the stores and assist client the config names."""
        if remote is None:
            if config.remote.url:
                from omenka.storage.http import HttpRemoteStore

                remote = HttpRemoteStore(
                    config.remote.url, token=config.remote.token, timeout=config.remote.timeout
                )
            else:
                from omenka.storage.remote import MemoryRemoteStore

                logger.warning("No remote URL configured; using an in-process remote store")
                remote = MemoryRemoteStore()
        if assist is None:
            from omenka.assist import AssistClient

            assist = AssistClient(config.assist)

        return cls(
            remote,
            LocalCache(config.cache.dir, config.cache.key),
            assist=assist,
            debounce_seconds=config.sync.debounce_seconds,
            project_factory=partial(
                model.create_default_project,
                author=config.project.default_author,
                country=config.project.default_country,
            ),
        )

    # ── Queries ───────────────────────────────────────────────

    @property
    def active(self) -> Project | None:
        for project in self.projects:
            if project.id == self.active_id:
                return project
        return None

    @property
    def commit_pending(self) -> bool:
        return self._debouncer.pending

    def get(self, project_id: str) -> Project | None:
        for project in self.projects:
            if project.id == project_id:
                return project
        return None

    # ── Initial load ──────────────────────────────────────────

    async def load(self, owner_id: str) -> None:
        """(Re)load the collection for ``owner_id``.

        Call on every owner identity change. Always ends in READY with at
        least one project, whatever the remote store does.
        """
        self._debouncer.cancel()
        self._generation += 1
        generation = self._generation

        self.owner_id = owner_id
        self._cache = self._base_cache.scoped(owner_id)
        self.state = EngineState.LOADING
        self.projects = []
        self.active_id = None
        self.save_status = SaveStatus.SAVED
        self._latest = None
        self._dirty.clear()
        self._inflight.clear()
        logger.info("Loading projects for owner %s", owner_id)

        remote_projects: list[Project] | None = None
        try:
            remote_projects = await self.remote.list(owner_id)
        except Exception as e:
            logger.warning("Remote list failed for %s, falling back to local cache: %s", owner_id, e)

        if generation != self._generation:
            logger.debug("Load for %s superseded", owner_id)
            return

        try:
            if remote_projects:
                projects = _unique(remote_projects)
                source = "remote"
            else:
                projects = _unique(self._cache.load_all())
                source = "cache"
                if not projects:
                    projects = [self._project_factory()]
                    source = "default"
                if remote_projects is not None:
                    # Remote reachable but empty: seed it so it becomes authoritative
                    self._spawn(self._seed_remote(list(projects), generation))

            self._set_projects(projects)
            self.active_id = projects[0].id
            logger.info("Loaded %d project(s) for %s from %s", len(projects), owner_id, source)
        except Exception:
            logger.exception("Project load failed for %s", owner_id)
            if not self.projects:
                fallback = self._project_factory()
                self._set_projects([fallback])
                self.active_id = fallback.id
        finally:
            if generation == self._generation:
                self.state = EngineState.READY

    async def _seed_remote(self, projects: list[Project], generation: int) -> None:
        owner_id = self.owner_id
        for seeded in projects:
            async with self._lane(seeded.id):
                if generation != self._generation:
                    return
                # Latest state, so a seed queued behind a commit never rolls it back
                project = self.get(seeded.id)
                if project is None:
                    continue  # deleted since load
                try:
                    await self.remote.upsert(owner_id, project)
                except Exception as e:
                    logger.warning("Seeding remote with project %s failed: %s", project.id, e)

    # ── Mutations on the active project ───────────────────────

    def update_metadata_field(self, name: str, value) -> bool:
        return self._apply(lambda p: model.update_metadata_field(p, name, value))

    def update_block_content(self, block_id: str, text: str) -> bool:
        return self._apply(lambda p: model.update_block_content(p, block_id, text))

    def change_block_type(self, block_id: str, block_type: BlockType | str) -> bool:
        return self._apply(lambda p: model.change_block_type(p, block_id, block_type))

    def insert_block_after(self, after_id: str) -> bool:
        return self._apply(lambda p: model.insert_block_after(p, after_id))

    def remove_block(self, block_id: str) -> bool:
        return self._apply(lambda p: model.remove_block(p, block_id))

    def _apply(self, updater: Callable[[Project], Project]) -> bool:
        """Replace the active project with ``updater(active)``.

        Returns False when there is nothing to change.
        """
        active = self.active
        if self.state is not EngineState.READY or active is None:
            return False
        updated = updater(active)
        if updated is active:
            return False

        self.projects = [updated if p.id == active.id else p for p in self.projects]
        self._edit_seq += 1
        self._dirty[active.id] = self._edit_seq
        self.save_status = SaveStatus.IDLE
        self._write_cache()
        call = self._debouncer.schedule(self.debounce_seconds, self._commit_active)
        self._track(call.task)
        return True

    # ── Remote commits ────────────────────────────────────────

    async def _commit_active(self) -> None:
        project = self.active
        if project is not None:
            await self._upsert(project)

    async def _upsert(self, project: Project) -> bool:
        return await self._dispatch(project.id, partial(self.remote.upsert, self.owner_id, project))

    async def _dispatch(self, project_id: str, call: Callable[[], Awaitable[None]]) -> bool:
        """Run one remote write and fold its outcome into save status.

        Writes to the same project run one at a time in dispatch order. A
        successful write confirms every edit of its project made before it
        was dispatched.
        """
        tag = WriteTag(self._generation, self.owner_id or "", project_id, next(self._seq))
        self._inflight[tag.seq] = (project_id, self._edit_seq)
        self._latest = tag
        self._settle()
        try:
            async with self._lane(project_id):
                await call()
        except Exception as e:
            logger.error("Remote write for project %s failed: %s", project_id, e)
            if tag.generation == self._generation:
                self._inflight.pop(tag.seq, None)
                if self._is_current(tag):
                    self.save_status = SaveStatus.ERROR
                elif self.save_status is not SaveStatus.ERROR:
                    self._settle()
            return False

        if tag.generation != self._generation:
            logger.debug("Discarding stale write result for %s", project_id)
            return True
        _, covered = self._inflight.pop(tag.seq, (project_id, 0))
        if self._dirty.get(project_id, 0) <= covered:
            self._dirty.pop(project_id, None)
        if self._is_current(tag) or self.save_status is not SaveStatus.ERROR:
            self._settle()
        return True

    def _is_current(self, tag: WriteTag) -> bool:
        return tag == self._latest and tag.generation == self._generation

    def _settle(self) -> None:
        """Derive save status from pending commits, dirty projects and in-flight writes."""
        if self._debouncer.pending or any(
            not self._covered(project_id, edit) for project_id, edit in self._dirty.items()
        ):
            self.save_status = SaveStatus.IDLE
        elif self._inflight:
            self.save_status = SaveStatus.SAVING
        else:
            self.save_status = SaveStatus.SAVED

    def _covered(self, project_id: str, edit: int) -> bool:
        return any(pid == project_id and seen >= edit for pid, seen in self._inflight.values())

    def _lane(self, project_id: str) -> asyncio.Lock:
        if project_id not in self._lanes:
            self._lanes[project_id] = asyncio.Lock()
        return self._lanes[project_id]

    async def flush(self) -> None:
        """Commit the active project now if a debounced commit is pending."""
        if self._debouncer.cancel():
            await self._commit_active()

    async def retry(self) -> bool:
        """Manual retry path: re-send the active project and every unconfirmed one.

        Returns True only if all of them were written.
        """
        self._debouncer.cancel()
        targets = [p for p in self.projects if p.id == self.active_id or p.id in self._dirty]
        if not targets:
            return False
        ok = True
        for project in targets:
            ok = await self._upsert(project) and ok
        return ok

    # ── Selection and project lifecycle ───────────────────────

    def select(self, project_id: str) -> bool:
        """Make ``project_id`` active. Unknown ids are ignored."""
        if project_id == self.active_id or self.get(project_id) is None:
            return False
        self._flush_in_background()
        self.active_id = project_id
        return True

    async def create_project(self) -> Project:
        """Prepend a fresh project, make it active and upsert it right away."""
        if self.owner_id is None:
            raise RuntimeError("No owner loaded. Call load() first.")
        self._flush_in_background()
        project = self._project_factory()
        self._set_projects([project, *self.projects])
        self.active_id = project.id
        logger.info("Created project %s", project.id)
        await self._upsert(project)
        return project

    async def delete_project(self, project_id: str | None = None) -> bool:
        """Delete a project (the active one by default). Confirmation is the caller's job.

        The local removal stands even if the remote delete fails.
        """
        target = project_id or self.active_id
        if target is None or self.get(target) is None:
            return False

        if target == self.active_id:
            self._debouncer.cancel()
        self._dirty.pop(target, None)
        self._set_projects([p for p in self.projects if p.id != target])
        if self.active_id == target:
            self.active_id = self.projects[0].id if self.projects else None
        logger.info("Deleted project %s", target)

        await self._dispatch(target, partial(self.remote.remove, self.owner_id, target))
        return True

    def _flush_in_background(self) -> None:
        if self._debouncer.cancel():
            project = self.active
            if project is not None:
                self._spawn(self._upsert(project))

    # ── Assist ────────────────────────────────────────────────

    async def assist(self, request: AssistRequest, after_id: str | None = None) -> AssistResult:
        """Generate text and insert it as an action block in the active project.

        The block goes after ``after_id`` or, if that is missing, after the
        last block. Service errors propagate to the caller.
        """
        if self.assist_client is None:
            raise AssistConfigError("No assist client configured")
        result = await self.assist_client.generate(request)
        if result.disabled or not result.text:
            return result

        active = self.active
        if active is None:
            return result
        anchor = after_id if after_id and active.block_index(after_id) != -1 else active.content[-1].id
        self._apply(
            lambda p: model.insert_block_after(
                p, anchor, content=result.text, block_type=BlockType.ACTION
            )
        )
        return result

    # ── Lifecycle ─────────────────────────────────────────────

    async def drain(self) -> None:
        """Wait for pending commits and in-flight writes to settle."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def close(self) -> None:
        """Cancel any pending commit and discard the results of in-flight writes."""
        self._debouncer.cancel()
        self._generation += 1
        await self.drain()
        close = getattr(self.remote, "close", None)
        if close and callable(close):
            await close()

    # ── Internals ─────────────────────────────────────────────

    def _set_projects(self, projects: list[Project]) -> None:
        self.projects = projects
        self._write_cache()

    def _write_cache(self) -> None:
        if self._cache is None:
            return
        try:
            self._cache.save_all(self.projects)
        except OSError as e:
            logger.error("Local cache write failed: %s", e)

    def _spawn(self, coro: Awaitable[None]) -> None:
        self._track(asyncio.ensure_future(coro))

    def _track(self, task: asyncio.Future) -> None:
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)


def _unique(projects: list[Project]) -> list[Project]:
    """Drop later duplicates of a project id, keeping order."""
    seen: set[str] = set()
    result = []
    for project in projects:
        if project.id not in seen:
            seen.add(project.id)
            result.append(project)
    return result
