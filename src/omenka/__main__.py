"""Entry point: python -m omenka

Starts the interactive REPL for the configured owner. Pending edits are
flushed to the remote store on exit.
"""

from __future__ import annotations

import asyncio
import logging
import sys

from omenka.config import OmenkaConfig, load_config


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


async def _run(config: OmenkaConfig) -> None:
    from omenka.connectors.cli import CLIConnector
    from omenka.sync.engine import SyncEngine

    engine = SyncEngine.from_config(config)
    await engine.load(config.owner_id)

    cli = CLIConnector(engine)
    try:
        await cli.start()
    finally:
        await engine.flush()
        await engine.close()


def main() -> None:
    if len(sys.argv) > 1 and sys.argv[1] not in ("edit", "repl"):
        print("Usage: python -m omenka [edit]")
        print("  edit   — Interactive editor REPL (default)")
        sys.exit(1)

    config = load_config()
    _setup_logging(config.log_level)

    try:
        asyncio.run(_run(config))
    except KeyboardInterrupt:
        pass


if __name__ == "__main__":
    main()
