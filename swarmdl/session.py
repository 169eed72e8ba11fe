"""Torrent session lifecycle.

An ``AsyncTorrentSession`` owns everything needed to download one torrent:
storage, piece manager, tracker client and peer connections. It drives the
status state machine shown to the UI. ``AsyncSessionManager`` keeps several
sessions side by side and hands out their ids.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Callable

from swarmdl.async_peer_connection import AsyncPeerConnection, AsyncPeerConnectionManager
from swarmdl.catalog import TorrentCatalog
from swarmdl.config import get_config
from swarmdl.exceptions import DiskError, TrackerError
from swarmdl.file_assembler import AsyncFileAssembler
from swarmdl.logging_config import LoggingContext, get_logger, set_correlation_id
from swarmdl.models import PeerInfo, TorrentStatus, TrackerEvent
from swarmdl.piece_manager import AsyncPieceManager
from swarmdl.reporter import ProgressReporter
from swarmdl.torrent import TorrentParser
from swarmdl.tracker import AsyncTrackerClient, generate_peer_id

if TYPE_CHECKING:
    from swarmdl.models import Config, TorrentInfo, TorrentSnapshot

# How often known but unconnected peers are retried between announces
RECONNECT_INTERVAL = 30.0


@dataclass
class TorrentSessionInfo:
    """Identity and lifecycle state of a torrent session."""

    session_id: int
    info_hash: bytes
    name: str
    output_dir: str
    added_time: float
    status: TorrentStatus = TorrentStatus.PENDING
    error_message: str | None = None


class AsyncTorrentSession:
    """One torrent's lifecycle with async operations."""

    def __init__(
        self,
        torrent_info: TorrentInfo,
        output_dir: str | Path = ".",
        session_id: int = 0,
        config: Config | None = None,
        tracker: AsyncTrackerClient | None = None,
    ) -> None:
        """Initialize the session; nothing runs until ``start()``.

        Args:
            torrent_info: Parsed torrent metadata
            output_dir: Where the downloaded files are placed
            session_id: Id shown in snapshots
            config: Configuration, defaults to the global config
            tracker: Tracker client, created from the config when omitted
        """
        self.config = config or get_config()
        self.torrent_info = torrent_info
        self.output_dir = Path(output_dir)
        self.info = TorrentSessionInfo(
            session_id=session_id,
            info_hash=torrent_info.info_hash,
            name=torrent_info.name,
            output_dir=str(output_dir),
            added_time=time.time(),
        )

        self.peer_id = generate_peer_id()
        self.file_assembler = AsyncFileAssembler(
            torrent_info,
            self.output_dir,
            disk_workers=self.config.disk.disk_workers,
        )
        self.piece_manager = AsyncPieceManager(torrent_info, self.file_assembler, self.config)
        self.tracker = tracker or AsyncTrackerClient(
            peer_id=self.peer_id,
            port=self.config.network.listen_port,
            config=self.config.tracker,
        )
        self.peer_manager = AsyncPeerConnectionManager(
            torrent_info,
            self.piece_manager,
            self.peer_id,
            self.config,
        )
        self.reporter = ProgressReporter(self)

        self.piece_manager.on_piece_verified = self._on_piece_verified
        self.piece_manager.on_download_complete = self._on_download_complete
        self.peer_manager.on_peer_connected = self._on_peer_connected
        self.peer_manager.on_peer_disconnected = self._on_peer_disconnected

        self.known_peers: dict[str, PeerInfo] = {}
        self.ever_had_peers = False
        self.ever_connected = False
        self.listen_port: int | None = None
        self.uploaded = 0

        self._started = False
        self._stopped = False
        self._announced = False
        self._announce_task: asyncio.Task | None = None
        self._background: set[asyncio.Task] = set()

        # Callbacks
        self.on_status_change: Callable[[AsyncTorrentSession], None] | None = None
        self.on_complete: Callable[[AsyncTorrentSession], None] | None = None

        self.logger = get_logger(__name__)

    @property
    def session_id(self) -> int:
        return self.info.session_id

    @property
    def status(self) -> TorrentStatus:
        return self.info.status

    @property
    def error_message(self) -> str | None:
        return self.info.error_message

    def snapshot(self) -> TorrentSnapshot:
        """Current view-model snapshot."""
        return self.reporter.snapshot()

    def _set_status(self, status: TorrentStatus, error: str | None = None) -> None:
        if error is not None:
            self.info.error_message = error
        if status is self.info.status:
            return
        self.logger.info(
            "Torrent %s: %s -> %s%s",
            self.info.name,
            self.info.status.value,
            status.value,
            f" ({error})" if error else "",
        )
        self.info.status = status
        if self.on_status_change is not None:
            self.on_status_change(self)

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    # Lifecycle

    async def start(self) -> None:
        """Prepare storage and begin announcing and connecting."""
        if self._started:
            return
        self._started = True

        try:
            await self.file_assembler.start()
        except DiskError as e:
            self.logger.error("Cannot start %s: %s", self.info.name, e)
            self._set_status(TorrentStatus.ERROR, e.message)
            return

        await self.tracker.start()
        await self.peer_manager.start()
        if self.config.network.enable_incoming:
            try:
                self.listen_port = await self.peer_manager.start_listening()
            except OSError as e:
                self.logger.warning("Cannot listen for inbound peers: %s", e)

        if self.piece_manager.is_complete:
            self._on_download_complete()

        self._announce_task = asyncio.create_task(self._announce_loop())
        self.logger.info("Started torrent session: %s", self.info.name)

    async def stop(self) -> None:
        """Cancel tasks, announce stopped, drop peers and close files."""
        if self._stopped:
            return
        self._stopped = True

        if self._announce_task is not None:
            self._announce_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._announce_task
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

        if self._announced:
            await self._announce_stopped()

        await self.peer_manager.stop()
        await self.piece_manager.stop()
        await self.file_assembler.stop()
        await self.tracker.stop()
        self.logger.info("Stopped torrent session: %s", self.info.name)

    async def pause(self) -> None:
        """Stop requesting blocks; peers stay connected unless configured otherwise."""
        self.peer_manager.set_paused(True)
        self._set_status(TorrentStatus.PAUSED)

    async def resume(self) -> None:
        """Return from Paused to the state implied by progress."""
        if self.info.status is not TorrentStatus.PAUSED:
            return
        self.peer_manager.set_paused(False)
        self._set_status(self._implied_status())
        if (
            self._started
            and not self._stopped
            and (self._announce_task is None or self._announce_task.done())
        ):
            self._announce_task = asyncio.create_task(self._announce_loop())

    def _implied_status(self) -> TorrentStatus:
        if self.piece_manager.is_complete:
            if self.config.strategy.seed_after_complete:
                return TorrentStatus.SEEDING
            return TorrentStatus.COMPLETED
        if self.ever_connected:
            return TorrentStatus.DOWNLOADING
        return TorrentStatus.PENDING

    # Tracker

    @property
    def downloaded(self) -> int:
        return self.piece_manager.bytes_downloaded

    @property
    def left(self) -> int:
        return self.torrent_info.total_length - self.piece_manager.verified_bytes

    async def _announce_loop(self) -> None:
        """Announce periodically and connect to the peers returned."""
        set_correlation_id(f"t{self.info.session_id}")
        event = TrackerEvent.EMPTY if self._announced else TrackerEvent.STARTED

        while not self._stopped:
            need_peers = not self.ever_had_peers and not self.piece_manager.is_complete
            try:
                response = await self.tracker.announce_with_retry(
                    self.torrent_info,
                    event=event,
                    uploaded=self.total_uploaded(),
                    downloaded=self.downloaded,
                    left=self.left,
                    require_peers=need_peers,
                )
            except TrackerError as e:
                if need_peers:
                    self._set_status(TorrentStatus.ERROR, f"Tracker unavailable: {e.message}")
                    return
                self.logger.warning("Announce for %s failed, keeping current peers: %s", self.info.name, e)
                interval = self.config.tracker.default_interval
            else:
                self._announced = True
                event = TrackerEvent.EMPTY
                for peer in response.peers:
                    self.known_peers[str(peer)] = peer
                if response.peers:
                    self.ever_had_peers = True
                if self.info.status is not TorrentStatus.PAUSED and not self.piece_manager.is_complete:
                    await self.peer_manager.connect_to_peers(response.peers)
                interval = max(response.interval, response.min_interval or 0) or self.config.tracker.default_interval

            await self._wait_and_reconnect(interval)

    async def _wait_and_reconnect(self, interval: float) -> None:
        """Sleep until the next announce, retrying known peers meanwhile."""
        deadline = time.monotonic() + interval
        while not self._stopped:
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            await asyncio.sleep(min(RECONNECT_INTERVAL, remaining))
            if (
                self.info.status is not TorrentStatus.PAUSED
                and not self.piece_manager.is_complete
                and self.known_peers
            ):
                await self.peer_manager.connect_to_peers(list(self.known_peers.values()))

    async def _announce_completed(self) -> None:
        try:
            await self.tracker.announce(
                self.torrent_info,
                event=TrackerEvent.COMPLETED,
                uploaded=self.total_uploaded(),
                downloaded=self.downloaded,
                left=0,
            )
        except TrackerError as e:
            self.logger.warning("Completed announce for %s failed: %s", self.info.name, e)

    async def _announce_stopped(self) -> None:
        try:
            await asyncio.wait_for(
                self.tracker.announce(
                    self.torrent_info,
                    event=TrackerEvent.STOPPED,
                    uploaded=self.total_uploaded(),
                    downloaded=self.downloaded,
                    left=self.left,
                ),
                timeout=self.config.tracker.timeout,
            )
        except (TrackerError, asyncio.TimeoutError) as e:
            self.logger.info("Stopped announce for %s failed: %s", self.info.name, e)

    # Callbacks from the peer and piece layers

    def total_uploaded(self) -> int:
        return self.uploaded + sum(c.stats.bytes_uploaded for c in self.peer_manager.connections.values())

    def _on_peer_connected(self, connection: AsyncPeerConnection) -> None:
        self.ever_connected = True
        if self.info.status is TorrentStatus.PENDING:
            self._set_status(TorrentStatus.DOWNLOADING)

    def _on_peer_disconnected(self, connection: AsyncPeerConnection) -> None:
        self.uploaded += connection.stats.bytes_uploaded

    def _on_piece_verified(self, piece_index: int) -> None:
        self._spawn(self.peer_manager.broadcast_have(piece_index))

    def _on_download_complete(self) -> None:
        self.logger.info("Download complete: %s", self.info.name)
        if self.info.status not in (TorrentStatus.PAUSED, TorrentStatus.ERROR):
            self._set_status(TorrentStatus.COMPLETED)
        if self.on_complete is not None:
            self.on_complete(self)
        self._spawn(self._finish_download())

    async def _finish_download(self) -> None:
        if self._announced:
            await self._announce_completed()
        if self.config.strategy.seed_after_complete:
            if self.info.status is TorrentStatus.COMPLETED:
                self._set_status(TorrentStatus.SEEDING)
        else:
            await self.peer_manager.disconnect_all()


class AsyncSessionManager:
    """Runs several torrent sessions and assigns their ids."""

    def __init__(self, config: Config | None = None, catalog: TorrentCatalog | None = None):
        """Initialize the manager.

        Args:
            config: Configuration, defaults to the global config
            catalog: Persistent id/status table; opened from
                ``catalog.path`` when omitted and a path is configured
        """
        self.config = config or get_config()
        if catalog is None and self.config.catalog.path:
            catalog = TorrentCatalog(self.config.catalog.path)
        self.catalog = catalog
        self.sessions: dict[int, AsyncTorrentSession] = {}
        self.parser = TorrentParser()
        self._next_id = 1
        self.logger = get_logger(__name__)

    async def add_torrent(self, torrent_data: bytes, output_dir: str | Path = ".") -> AsyncTorrentSession:
        """Parse a torrent and create a Pending session for it.

        Raises:
            MetadataError: If the torrent cannot be parsed; no session is created
        """
        torrent_info = self.parser.parse(torrent_data)
        for session in self.sessions.values():
            if session.info.info_hash == torrent_info.info_hash:
                self.logger.info("Torrent %s is already added as #%d", torrent_info.name, session.session_id)
                return session

        if self.catalog is not None:
            session_id = self.catalog.add(torrent_info)
        else:
            session_id = self._next_id
            self._next_id += 1

        session = AsyncTorrentSession(torrent_info, output_dir, session_id, self.config)
        session.on_status_change = self._on_status_change
        self.sessions[session_id] = session
        self._on_status_change(session)
        self.logger.info("Added torrent #%d: %s", session_id, torrent_info.name)
        return session

    def get_session(self, session_id: int) -> AsyncTorrentSession | None:
        return self.sessions.get(session_id)

    async def start_torrent(self, session_id: int) -> bool:
        session = self.sessions.get(session_id)
        if session is None:
            return False
        await session.start()
        return True

    async def pause_torrent(self, session_id: int) -> bool:
        session = self.sessions.get(session_id)
        if session is None:
            return False
        await session.pause()
        return True

    async def resume_torrent(self, session_id: int) -> bool:
        session = self.sessions.get(session_id)
        if session is None:
            return False
        await session.resume()
        return True

    async def remove_torrent(self, session_id: int) -> bool:
        """Stop a session and forget it; downloaded files are kept."""
        session = self.sessions.pop(session_id, None)
        if session is None:
            return False
        await session.stop()
        if self.catalog is not None:
            self.catalog.remove(session_id)
        self.logger.info("Removed torrent #%d: %s", session_id, session.info.name)
        return True

    def snapshots(self) -> list[TorrentSnapshot]:
        """Snapshots of every session, ordered by id."""
        return [self.sessions[i].snapshot() for i in sorted(self.sessions)]

    async def stop(self) -> None:
        """Stop every session and close the catalog."""
        sessions = list(self.sessions.values())
        with LoggingContext("session shutdown", self.logger, sessions=len(sessions)):
            if sessions:
                await asyncio.gather(*(s.stop() for s in sessions), return_exceptions=True)
        if self.catalog is not None:
            self.catalog.close()

    def _on_status_change(self, session: AsyncTorrentSession) -> None:
        if self.catalog is not None:
            self.catalog.update_status(session.session_id, session.status)
