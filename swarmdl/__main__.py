#!/usr/bin/env python3
"""swarmdl - download a torrent from the command line."""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

from swarmdl.config import get_config, init_config
from swarmdl.exceptions import ConfigurationError, MetadataError
from swarmdl.logging_config import get_logger
from swarmdl.models import Config, TorrentSnapshot, TorrentStatus
from swarmdl.session import AsyncSessionManager

logger = get_logger("swarmdl.cli")

FINISHED = {TorrentStatus.COMPLETED.value, TorrentStatus.SEEDING.value}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="swarmdl", description="swarmdl - A BitTorrent download engine")
    parser.add_argument("torrent", help="Path to a .torrent file")
    parser.add_argument(
        "-o",
        "--output",
        default=".",
        help="Output directory (default: current directory)",
    )
    parser.add_argument("--config", help="Path to swarmdl.toml")
    parser.add_argument(
        "--interval",
        type=float,
        default=2.0,
        help="Seconds between progress lines (default: 2)",
    )
    parser.add_argument(
        "--seed",
        action="store_true",
        help="Keep seeding after the download completes (overrides strategy.seed_after_complete)",
    )
    return parser


def session_config(args: argparse.Namespace) -> Config:
    """The global config with seeding switched on or off by ``--seed``."""
    config = get_config()
    strategy = config.strategy.model_copy(update={"seed_after_complete": args.seed})
    return config.model_copy(update={"strategy": strategy})


async def run(args: argparse.Namespace) -> int:
    manager = AsyncSessionManager(config=session_config(args))
    try:
        session = await manager.add_torrent(Path(args.torrent).read_bytes(), args.output)
    except MetadataError as e:
        logger.error("Cannot load %s: %s", args.torrent, e)
        await manager.stop()
        return 1

    done = asyncio.Event()

    def report(snapshot: TorrentSnapshot) -> None:
        print(json.dumps(snapshot.to_view()), flush=True)
        if snapshot.status == TorrentStatus.ERROR.value:
            done.set()
        elif snapshot.status in FINISHED and not args.seed:
            done.set()

    try:
        await session.start()
        await session.reporter.start(args.interval, report)
        await done.wait()
    finally:
        await session.reporter.stop()
        print(json.dumps(session.snapshot().to_view()), flush=True)
        await manager.stop()

    if session.status is TorrentStatus.ERROR:
        logger.error("Download failed: %s", session.error_message)
        return 1
    return 0


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the swarmdl CLI."""
    args = build_parser().parse_args(argv)
    try:
        init_config(args.config)
    except ConfigurationError as e:
        print(f"swarmdl: {e}", file=sys.stderr)
        return 2
    if not Path(args.torrent).is_file():
        print(f"swarmdl: no such file: {args.torrent}", file=sys.stderr)
        return 2

    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        return 130


if __name__ == "__main__":
    sys.exit(main())
