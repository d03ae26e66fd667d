"""Markdown export — YAML front matter for metadata, one paragraph per block."""

from __future__ import annotations

from pathlib import Path

import frontmatter
import yaml

from omenka.model import BlockType, Block, Project


def _render_block(block: Block) -> str:
    text = block.content.strip()
    if block.type in (BlockType.SCENE_HEADING, BlockType.CHARACTER, BlockType.TRANSITION):
        return text.upper()
    if block.type is BlockType.PARENTHETICAL:
        if not (text.startswith("(") and text.endswith(")")):
            text = f"({text})"
        return text
    if block.type is BlockType.SHOT:
        return f"SHOT: {text}"
    return text


def to_markdown(project: Project) -> str:
    meta = project.metadata
    fields = {
        "id": project.id,
        "title": meta.title,
        "author": meta.author,
        "draftDate": meta.draft_date,
        "country": meta.country.value,
        "lastModified": project.last_modified_iso,
    }
    if meta.logline:
        fields["logline"] = meta.logline
    body = "\n\n".join(_render_block(b) for b in project.content if b.content.strip())
    return frontmatter.dumps(frontmatter.Post(body, **fields)) + "\n"


def write_markdown(project: Project, path: Path) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(to_markdown(project), encoding="utf-8")
    return path


def read_metadata(path: Path) -> dict:
    """Front matter of an exported file, or {} if it has none."""
    try:
        post = frontmatter.load(str(path))
        return dict(post.metadata)
    except (OSError, ValueError, yaml.YAMLError):
        # UnicodeDecodeError is a ValueError
        return {}
