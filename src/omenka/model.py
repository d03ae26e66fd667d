"""Screenplay document model — Project/Block entities and pure mutations.

Every mutation takes a Project and returns a Project. Nothing here performs
I/O or holds shared state. Lookups that miss (stale block ids from a UI that
raced with a removal) return the input unchanged instead of raising.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from enum import Enum


class BlockType(str, Enum):
    SCENE_HEADING = "scene-heading"
    ACTION = "action"
    CHARACTER = "character"
    PARENTHETICAL = "parenthetical"
    DIALOGUE = "dialogue"
    TRANSITION = "transition"
    SHOT = "shot"


class Country(str, Enum):
    NIGERIA = "Nigeria"
    SIERRA_LEONE = "Sierra Leone"


# Type given to a block inserted after a block of the key type.
_SUCCESSOR = {
    BlockType.SCENE_HEADING: BlockType.ACTION,
    BlockType.CHARACTER: BlockType.DIALOGUE,
    BlockType.PARENTHETICAL: BlockType.DIALOGUE,
    BlockType.DIALOGUE: BlockType.CHARACTER,
    BlockType.TRANSITION: BlockType.SCENE_HEADING,
}

METADATA_FIELDS = ("title", "author", "draft_date", "country", "logline")

DEFAULT_TITLE = "UNTITLED SCREENPLAY"
DEFAULT_AUTHOR = "Omenka Writer"
DEFAULT_HEADING = "INT. LIVING ROOM - DAY"


def new_id() -> str:
    return uuid.uuid4().hex[:12]


def now_iso() -> str:
    """Current UTC time as ISO-8601 with millisecond precision and a Z suffix."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_iso(value: str) -> datetime:
    """Parse a timestamp written by now_iso() (or any ISO-8601 string)."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def next_block_type(previous: BlockType) -> BlockType:
    """Type for a block inserted after one of type ``previous``."""
    return _SUCCESSOR.get(previous, BlockType.ACTION)


@dataclass(frozen=True)
class Block:
    """One typed paragraph of the screenplay."""

    id: str
    type: BlockType
    content: str = ""

    def to_dict(self) -> dict:
        return {"id": self.id, "type": self.type.value, "content": self.content}

    @classmethod
    def from_dict(cls, data: dict) -> Block:
        try:
            return cls(
                id=str(data["id"]),
                type=BlockType(data["type"]),
                content=str(data.get("content", "")),
            )
        except (KeyError, TypeError) as e:
            raise ValueError(f"Malformed block: {data!r}") from e


@dataclass(frozen=True)
class Metadata:
    title: str = DEFAULT_TITLE
    author: str = DEFAULT_AUTHOR
    draft_date: str = ""
    country: Country = Country.NIGERIA
    logline: str | None = None

    def to_dict(self) -> dict:
        data = {
            "title": self.title,
            "author": self.author,
            "draftDate": self.draft_date,
            "country": self.country.value,
        }
        if self.logline is not None:
            data["logline"] = self.logline
        return data

    @classmethod
    def from_dict(cls, data: dict) -> Metadata:
        try:
            logline = data.get("logline")
            return cls(
                title=str(data["title"]),
                author=str(data.get("author", "")),
                draft_date=str(data.get("draftDate", "")),
                country=Country(data.get("country", Country.NIGERIA.value)),
                logline=None if logline is None else str(logline),
            )
        except (KeyError, TypeError, AttributeError) as e:
            raise ValueError(f"Malformed metadata: {data!r}") from e


@dataclass(frozen=True)
class Project:
    """A screenplay: metadata plus a non-empty ordered sequence of blocks."""

    id: str
    metadata: Metadata
    content: tuple[Block, ...] = field(default_factory=tuple)
    last_modified_iso: str = field(default_factory=now_iso)

    def block_index(self, block_id: str) -> int:
        """Position of ``block_id`` in reading order, or -1."""
        for i, block in enumerate(self.content):
            if block.id == block_id:
                return i
        return -1

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "metadata": self.metadata.to_dict(),
            "content": [b.to_dict() for b in self.content],
            "lastModifiedISO": self.last_modified_iso,
        }

    @classmethod
    def from_dict(cls, data: dict) -> Project:
        """Build a Project from its JSON shape. Raises ValueError if malformed."""
        if not isinstance(data, dict):
            raise ValueError(f"Malformed project: {data!r}")
        try:
            blocks = tuple(Block.from_dict(b) for b in data["content"])
            project = cls(
                id=str(data["id"]),
                metadata=Metadata.from_dict(data["metadata"]),
                content=blocks,
                last_modified_iso=str(data["lastModifiedISO"]),
            )
        except (KeyError, TypeError, AttributeError) as e:
            raise ValueError(f"Malformed project: {data!r}") from e
        if not project.content:
            raise ValueError(f"Project {project.id} has no blocks")
        return project


def _touch(project: Project, **changes) -> Project:
    """Apply ``changes`` and stamp a timestamp never earlier than the input's."""
    stamp = now_iso()
    try:
        if parse_iso(stamp) < parse_iso(project.last_modified_iso):
            stamp = project.last_modified_iso
    except ValueError:
        pass
    return replace(project, last_modified_iso=stamp, **changes)


# ── Mutations ─────────────────────────────────────────────


def update_metadata_field(project: Project, name: str, value) -> Project:
    """Replace one metadata field.

    ``name`` is one of METADATA_FIELDS. The camelCase ``draftDate`` used on
    the wire is accepted as well.
    """
    if name == "draftDate":
        name = "draft_date"
    if name not in METADATA_FIELDS:
        raise ValueError(f"Unknown metadata field: {name!r}")
    if name == "country":
        value = Country(value)
    elif name == "logline":
        value = None if value is None else str(value)
    else:
        value = str(value)
    return _touch(project, metadata=replace(project.metadata, **{name: value}))


def update_block_content(project: Project, block_id: str, text: str) -> Project:
    idx = project.block_index(block_id)
    if idx == -1:
        return project
    blocks = list(project.content)
    blocks[idx] = replace(blocks[idx], content=text)
    return _touch(project, content=tuple(blocks))


def change_block_type(project: Project, block_id: str, block_type: BlockType | str) -> Project:
    idx = project.block_index(block_id)
    if idx == -1:
        return project
    blocks = list(project.content)
    blocks[idx] = replace(blocks[idx], type=BlockType(block_type))
    return _touch(project, content=tuple(blocks))


def insert_block_after(
    project: Project,
    after_id: str,
    *,
    content: str = "",
    block_type: BlockType | None = None,
) -> Project:
    """Insert a new block right after ``after_id``.

    Without an explicit ``block_type`` the new block's type follows from the
    preceding block's type (see next_block_type).
    """
    idx = project.block_index(after_id)
    if idx == -1:
        return project
    new_type = block_type or next_block_type(project.content[idx].type)
    blocks = list(project.content)
    blocks.insert(idx + 1, Block(id=new_id(), type=new_type, content=content))
    return _touch(project, content=tuple(blocks))


def remove_block(project: Project, block_id: str) -> Project:
    """Delete a block. The last remaining block is never removed."""
    if len(project.content) <= 1:
        return project
    idx = project.block_index(block_id)
    if idx == -1:
        return project
    return _touch(project, content=project.content[:idx] + project.content[idx + 1 :])


def create_default_project(
    author: str = DEFAULT_AUTHOR,
    country: Country | str = Country.NIGERIA,
) -> Project:
    """First-run template: one scene heading and templated metadata."""
    return Project(
        id=new_id(),
        metadata=Metadata(
            title=DEFAULT_TITLE,
            author=author,
            draft_date=date.today().isoformat(),
            country=Country(country),
        ),
        content=(Block(id=new_id(), type=BlockType.SCENE_HEADING, content=DEFAULT_HEADING),),
        last_modified_iso=now_iso(),
    )
