"""Local CLI REPL for development and testing.

Blocks and projects are addressed by their 1-based position as printed by
``show`` and ``list``.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
import shlex
import sys
from pathlib import Path
from typing import TYPE_CHECKING

from omenka.assist import AssistError, AssistRequest
from omenka.export import write_markdown
from omenka.model import BlockType

if TYPE_CHECKING:
    from omenka.sync.engine import SyncEngine

logger = logging.getLogger(__name__)

HELP = """\
list                 projects, newest first
open N               make project N active
new                  create a project
delete               delete the active project (asks first)
show                 blocks of the active project
title TEXT           set the title
set FIELD VALUE      set a metadata field (author, draft_date, country, logline)
edit N TEXT          replace the text of block N
type N TYPE          change the type of block N
add N                insert a block after block N
rm N                 remove block N
assist PROMPT        generate a synopsis and insert it after the last block
export PATH          write the active project as Markdown
status               save status
retry                re-send the active project
quit"""

SYNOPSIS_REQUEST = {
    "module_id": "synopsis-generator",
    "system_instruction": "You are an expert Hollywood script consultant.",
    "module_instruction": "Generate a dramatic 3-sentence screenplay synopsis based on the payload.",
}


def _pick(items: list, arg: str):
    try:
        idx = int(arg) - 1
    except ValueError:
        return None
    if 0 <= idx < len(items):
        return items[idx]
    return None


def format_project(engine: SyncEngine) -> str:
    project = engine.active
    if project is None:
        return "(no active project)"
    lines = [f"{project.metadata.title} by {project.metadata.author} [{project.metadata.country.value}]"]
    for i, block in enumerate(project.content, 1):
        lines.append(f"{i:>3}. {block.type.value:<14} {block.content}")
    return "\n".join(lines)


def format_list(engine: SyncEngine) -> str:
    if not engine.projects:
        return "(no projects)"
    lines = []
    for i, project in enumerate(engine.projects, 1):
        marker = "*" if project.id == engine.active_id else " "
        lines.append(f"{marker}{i:>2}. {project.metadata.title}  ({project.last_modified_iso})")
    return "\n".join(lines)


async def run_command(engine: SyncEngine, line: str, confirm=None) -> str:
    """Execute one REPL command against ``engine`` and return the text to print.

    ``confirm`` is asked before destructive actions; without it they are refused.
    It may return a bool or an awaitable bool.
    """
    try:
        parts = shlex.split(line)
    except ValueError as e:
        return f"Parse error: {e}"
    if not parts:
        return ""
    cmd, args = parts[0].lower(), parts[1:]
    rest = " ".join(args[1:])
    project = engine.active
    blocks = list(project.content) if project else []

    if cmd == "help":
        return HELP
    if cmd == "list":
        return format_list(engine)
    if cmd == "show":
        return format_project(engine)
    if cmd == "status":
        return engine.save_status.value
    if cmd == "open":
        target = _pick(engine.projects, args[0]) if args else None
        if target is None:
            return "No such project."
        engine.select(target.id)
        return format_project(engine)
    if cmd == "new":
        created = await engine.create_project()
        return f"Created {created.metadata.title} ({engine.save_status.value})"
    if cmd == "delete":
        if project is None:
            return "No active project."
        if confirm is None:
            return "Cancelled."
        answer = confirm(f"Delete '{project.metadata.title}' permanently?")
        if inspect.isawaitable(answer):
            answer = await answer
        if not answer:
            return "Cancelled."
        await engine.delete_project(project.id)
        return f"Deleted ({engine.save_status.value})"
    if cmd == "retry":
        ok = await engine.retry()
        return "Saved." if ok else f"Retry failed ({engine.save_status.value})"
    if cmd == "title":
        if not args:
            return "Usage: title TEXT"
        engine.update_metadata_field("title", " ".join(args))
        return "OK"
    if cmd == "set":
        if len(args) < 2:
            return "Usage: set FIELD VALUE"
        try:
            engine.update_metadata_field(args[0], rest)
        except ValueError as e:
            return str(e)
        return "OK"
    if cmd in ("edit", "type", "add", "rm"):
        block = _pick(blocks, args[0]) if args else None
        if block is None:
            return "No such block."
        if cmd == "edit":
            engine.update_block_content(block.id, rest)
        elif cmd == "type":
            try:
                engine.change_block_type(block.id, BlockType(rest))
            except ValueError:
                return f"Unknown type. One of: {', '.join(t.value for t in BlockType)}"
        elif cmd == "add":
            engine.insert_block_after(block.id)
        elif not engine.remove_block(block.id):
            return "Cannot remove the only block."
        return format_project(engine)
    if cmd == "assist":
        if not args:
            return "Usage: assist PROMPT"
        try:
            result = await engine.assist(AssistRequest(payload=" ".join(args), **SYNOPSIS_REQUEST))
        except AssistError as e:
            return f"AI generation failed: {e}"
        if result.disabled:
            return result.text
        return format_project(engine)
    if cmd == "export":
        if project is None or not args:
            return "Usage: export PATH"
        path = write_markdown(project, Path(args[0]).expanduser())
        return f"Wrote {path}"
    return f"Unknown command: {cmd} (try 'help')"


class CLIConnector:
    """Interactive REPL — reads from stdin, writes to stdout."""

    def __init__(self, engine: SyncEngine) -> None:
        self.engine = engine
        self._running = False

    async def start(self) -> None:
        self._running = True
        loop = asyncio.get_event_loop()

        print("Omenka Studio (type 'help', 'quit' or Ctrl+C to exit)")
        print("-" * 48)
        print(format_list(self.engine))

        while self._running:
            try:
                line = await loop.run_in_executor(None, self._read_input, "\n> ")
            except (EOFError, KeyboardInterrupt):
                print("\nBye!")
                break

            if line is None or line.strip().lower() in ("exit", "quit"):
                print("Bye!")
                break

            text = line.strip()
            if not text:
                continue

            output = await run_command(self.engine, text, confirm=self._confirm)
            if output:
                print(output)

    async def _confirm(self, question: str) -> bool:
        loop = asyncio.get_event_loop()
        answer = await loop.run_in_executor(None, self._read_input, f"{question} [y/N] ")
        return (answer or "").strip().lower() in ("y", "yes")

    def _read_input(self, prompt: str) -> str | None:
        try:
            sys.stdout.write(prompt)
            sys.stdout.flush()
            raw = sys.stdin.buffer.readline()
            if not raw:
                return None
            return raw.decode("utf-8", errors="replace").rstrip("\n")
        except EOFError:
            return None

    async def stop(self) -> None:
        self._running = False
