"""CLI for inspecting and recovering coordination records."""

from __future__ import annotations

import argparse
import asyncio
from pathlib import Path
from typing import Optional

from distsync.core.models import EventType
from distsync.core.runtime import CoordinationRuntime
from distsync.core.settings import CoordinationSettings
from distsync.utils.logging import get_logger


logger = get_logger("AdminCLI")


def _load_settings(path: Optional[Path]) -> CoordinationSettings:
    if path is None:
        return CoordinationSettings.from_env()
    return CoordinationSettings.from_file(path)


def _handle(runtime: CoordinationRuntime, kind: str, key: str, limit: int):
    if kind == "lock":
        return runtime.locks.create(key)
    if kind == "semaphore":
        return runtime.semaphores.create(key, limit=limit)
    return runtime.shared_locks.create(key, limit=limit)


async def _state(runtime: CoordinationRuntime, args: argparse.Namespace) -> None:
    state = await _handle(runtime, args.kind, args.key, args.limit).get_state()
    logger.info("%s %s: %s", args.kind, args.key, state)


async def _force_release(runtime: CoordinationRuntime, args: argparse.Namespace) -> None:
    handle = _handle(runtime, args.kind, args.key, args.limit)
    if args.kind == "semaphore":
        released = await handle.force_release_all()
    else:
        released = await handle.force_release()
    logger.info("Force release of %s %s: %s", args.kind, args.key, "done" if released else "nothing held")


async def _watch(runtime: CoordinationRuntime, args: argparse.Namespace) -> None:
    if runtime.message_bus is None:
        logger.error("No message bus configured; set bus to memory or redis")
        return
    providers = {"lock": runtime.locks, "semaphore": runtime.semaphores, "shared-lock": runtime.shared_locks}
    provider = providers[args.kind]
    async for envelope in provider.subscribe(list(EventType), key=args.key):
        logger.info("%s %s %s %s", envelope.created_at.isoformat(), envelope.type.value, envelope.key, envelope.payload)


async def main() -> None:
    parser = argparse.ArgumentParser(description="Inspect and recover distsync coordination records.")
    parser.add_argument("--config", type=Path, default=None, help="Path to coordination YAML")
    sub = parser.add_subparsers(dest="command", required=True)
    for name in ("state", "force-release", "watch"):
        cmd = sub.add_parser(name)
        cmd.add_argument("kind", choices=["lock", "semaphore", "shared-lock"])
        cmd.add_argument("key", nargs="?" if name == "watch" else None)
        cmd.add_argument("--limit", type=int, default=1, help="Limit used when creating semaphore handles")
    args = parser.parse_args()

    runtime = CoordinationRuntime(_load_settings(args.config))
    commands = {"state": _state, "force-release": _force_release, "watch": _watch}
    async with runtime:
        try:
            await commands[args.command](runtime, args)
        except KeyboardInterrupt:
            logger.info("Received shutdown signal")


if __name__ == "__main__":
    asyncio.run(main())
