"""Remote store protocol and the in-process implementation."""

from __future__ import annotations

import asyncio
import itertools
import logging
from typing import Protocol, runtime_checkable

from omenka.model import Project

logger = logging.getLogger(__name__)

# Server-assigned ordering field. Stripped before documents reach the model.
SERVER_TIMESTAMP_FIELD = "updatedAt"


class RemoteStoreError(Exception):
    """A remote list/upsert/remove call failed (transport or server error)."""


@runtime_checkable
class RemoteStore(Protocol):
    """Per-owner collection of project documents keyed by project id."""

    async def list(self, owner_id: str) -> list[Project]:
        """All projects of ``owner_id``, most recently written first."""
        ...

    async def upsert(self, owner_id: str, project: Project) -> None:
        """Create or replace the stored fields of ``project``. Idempotent."""
        ...

    async def remove(self, owner_id: str, project_id: str) -> None:
        """Delete ``project_id``. Deleting an absent id is not an error."""
        ...


def documents_to_projects(documents: list[dict]) -> list[Project]:
    """Convert stored documents to Projects, dropping the server timestamp.

    Documents that fail to parse are skipped with a warning so one bad
    record cannot hide the rest of the collection.
    """
    projects: list[Project] = []
    for doc in documents:
        data = {k: v for k, v in doc.items() if k != SERVER_TIMESTAMP_FIELD}
        try:
            projects.append(Project.from_dict(data))
        except ValueError as e:
            logger.warning("Skipping malformed remote document %s: %s", doc.get("id"), e)
    return projects


class MemoryRemoteStore:
    """Remote store held in process memory.

    Used when no remote URL is configured, and as the store in tests.
    ``fail_with`` makes every subsequent call raise it; ``delay`` adds
    latency to every call.
    """

    def __init__(self, delay: float = 0.0) -> None:
        self.delay = delay
        self.fail_with: Exception | None = None
        self.calls: list[tuple[str, str, str]] = []  # (op, owner_id, project_id)
        self.upserted: list[Project] = []
        self._docs: dict[str, dict[str, dict]] = {}
        self._clock = itertools.count(1)

    async def _enter(self, op: str, owner_id: str, project_id: str = "") -> None:
        self.calls.append((op, owner_id, project_id))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_with is not None:
            raise self.fail_with

    async def list(self, owner_id: str) -> list[Project]:
        await self._enter("list", owner_id)
        docs = sorted(
            self._docs.get(owner_id, {}).values(),
            key=lambda d: d[SERVER_TIMESTAMP_FIELD],
            reverse=True,
        )
        return documents_to_projects(docs)

    async def upsert(self, owner_id: str, project: Project) -> None:
        await self._enter("upsert", owner_id, project.id)
        collection = self._docs.setdefault(owner_id, {})
        doc = collection.setdefault(project.id, {})
        doc.update(project.to_dict())
        doc[SERVER_TIMESTAMP_FIELD] = next(self._clock)
        self.upserted.append(project)

    async def remove(self, owner_id: str, project_id: str) -> None:
        await self._enter("remove", owner_id, project_id)
        self._docs.get(owner_id, {}).pop(project_id, None)

    def count(self, op: str) -> int:
        return sum(1 for call in self.calls if call[0] == op)
