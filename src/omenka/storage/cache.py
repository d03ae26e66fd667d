"""Local snapshot cache — the full project list as one JSON file.

Used for instant load and offline fallback. A missing or unreadable
snapshot reads as an empty list, never as an error.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import re
import tempfile
from pathlib import Path

from omenka.model import Project

logger = logging.getLogger(__name__)

DEFAULT_KEY = "omenka.projects.v1"


def _slugify(name: str) -> str:
    """Minimal slug: strip illegal filename chars, spaces to hyphens."""
    slug = re.sub(r'[<>:"/\\|?*\n\r\t]', "", name)
    slug = slug.strip().replace(" ", "-")
    return slug or "unnamed"


def _owner_key(owner_id: str) -> str:
    """Readable slug plus a digest of the raw id, so distinct owners never share a file."""
    digest = hashlib.sha256(owner_id.encode("utf-8")).hexdigest()[:16]
    return f"{_slugify(owner_id)}-{digest}"


class LocalCache:
    """Single named snapshot entry stored under ``root``."""

    def __init__(self, root: Path, key: str = DEFAULT_KEY) -> None:
        self.root = root
        self.key = key

    @property
    def path(self) -> Path:
        return self.root / f"{self.key}.json"

    def scoped(self, owner_id: str) -> LocalCache:
        """Return the snapshot entry belonging to one owner."""
        return LocalCache(self.root, f"{self.key}.{_owner_key(owner_id)}")

    def load_all(self) -> list[Project]:
        """Return the last saved snapshot, or [] if absent or malformed."""
        try:
            raw = self.path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return []
        except OSError as e:
            logger.warning("Cannot read cache %s: %s", self.path, e)
            return []
        if not raw.strip():
            return []

        try:
            data = json.loads(raw)
            if not isinstance(data, list):
                raise ValueError(f"expected a list, got {type(data).__name__}")
            return [Project.from_dict(item) for item in data]
        except ValueError as e:
            # json.JSONDecodeError is a ValueError too
            logger.warning("Ignoring malformed cache %s: %s", self.path, e)
            return []

    def save_all(self, projects: list[Project]) -> None:
        """Overwrite the snapshot. Readers never see a partial file."""
        self.root.mkdir(parents=True, exist_ok=True)
        payload = json.dumps([p.to_dict() for p in projects], ensure_ascii=False)
        fd, tmp = tempfile.mkstemp(dir=self.root, prefix=f".{self.key}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
            os.replace(tmp, self.path)
        except BaseException:
            Path(tmp).unlink(missing_ok=True)
            raise
        logger.debug("Cached %d project(s) to %s", len(projects), self.path)

    def clear(self) -> None:
        self.path.unlink(missing_ok=True)
