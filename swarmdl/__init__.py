"""swarmdl - an asyncio BitTorrent download engine."""

from __future__ import annotations

__version__ = "0.1.0"

from swarmdl.exceptions import (
    ConnectError,
    MetadataError,
    SwarmError,
    TrackerError,
)
from swarmdl.models import TorrentInfo, TorrentSnapshot, TorrentStatus
from swarmdl.session import AsyncSessionManager, AsyncTorrentSession
from swarmdl.torrent import TorrentParser

__all__ = [
    "AsyncSessionManager",
    "AsyncTorrentSession",
    "ConnectError",
    "MetadataError",
    "SwarmError",
    "TorrentInfo",
    "TorrentParser",
    "TorrentSnapshot",
    "TorrentStatus",
    "TrackerError",
    "__version__",
]
