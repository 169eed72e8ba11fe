"""Async peer connection management.

One asyncio task per peer connection reads messages and feeds the piece
manager; a maintenance task per manager handles choking, keep-alives and
request and peer timeouts.
"""

from __future__ import annotations

import asyncio
import contextlib
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Awaitable, Callable, Iterable

from swarmdl.config import get_config
from swarmdl.exceptions import ConnectError, HandshakeError, MessageError, ProtocolError
from swarmdl.logging_config import get_logger
from swarmdl.models import PeerInfo
from swarmdl.peer import (
    HANDSHAKE_LENGTH,
    BitfieldMessage,
    CancelMessage,
    ChokeMessage,
    Handshake,
    HaveMessage,
    InterestedMessage,
    KeepAliveMessage,
    NotInterestedMessage,
    PeerMessage,
    PieceMessage,
    RequestMessage,
    UnchokeMessage,
    UnknownMessage,
    read_message,
)
from swarmdl.piece_manager import BlockRequest, SubmitResult
from swarmdl.utils.bitfield import expected_length, parse_bitfield

if TYPE_CHECKING:
    from swarmdl.models import Config, TorrentInfo
    from swarmdl.piece_manager import AsyncPieceManager

# Requests for more than this are ignored
MAX_REQUEST_LENGTH = 1 << 17
MAINTENANCE_TICK = 1.0


class ConnectionState(Enum):
    """States of a peer connection."""

    CONNECTING = "connecting"
    HANDSHAKING = "handshaking"
    ACTIVE = "active"
    CLOSED = "closed"


@dataclass
class PeerStats:
    """Transfer statistics for a peer connection."""

    bytes_downloaded: int = 0
    bytes_uploaded: int = 0
    download_rate: float = 0.0  # bytes/second
    upload_rate: float = 0.0
    last_activity: float = field(default_factory=time.monotonic)
    last_sent: float = field(default_factory=time.monotonic)
    _window_down: int = 0
    _window_up: int = 0
    _window_start: float = field(default_factory=time.monotonic)

    def record_download(self, n: int) -> None:
        self.bytes_downloaded += n
        self._window_down += n

    def record_upload(self, n: int) -> None:
        self.bytes_uploaded += n
        self._window_up += n

    def update_rates(self, now: float) -> None:
        elapsed = now - self._window_start
        if elapsed <= 0:
            return
        self.download_rate = self._window_down / elapsed
        self.upload_rate = self._window_up / elapsed
        self._window_down = 0
        self._window_up = 0
        self._window_start = now


@dataclass
class AsyncPeerConnection:
    """State of one peer connection."""

    peer_info: PeerInfo
    reader: asyncio.StreamReader | None = None
    writer: asyncio.StreamWriter | None = None
    state: ConnectionState = ConnectionState.CONNECTING
    inbound: bool = False

    # Pieces the remote peer has
    peer_pieces: set[int] = field(default_factory=set)
    # Our requests to the peer -> time sent
    outstanding_requests: dict[BlockRequest, float] = field(default_factory=dict)
    # Requests from the peer still waiting to be served
    pending_uploads: set[tuple[int, int, int]] = field(default_factory=set)
    max_pipeline_depth: int = 16

    am_choking: bool = True
    am_interested: bool = False
    peer_choking: bool = True
    peer_interested: bool = False

    stats: PeerStats = field(default_factory=PeerStats)
    connection_task: asyncio.Task | None = None
    write_lock: asyncio.Lock = field(default_factory=asyncio.Lock)

    def __str__(self) -> str:
        return f"AsyncPeerConnection({self.peer_info}, state={self.state.value})"

    @property
    def key(self) -> str:
        return str(self.peer_info)

    def is_active(self) -> bool:
        return self.state is ConnectionState.ACTIVE

    def has_timed_out(self, timeout: float, now: float | None = None) -> bool:
        """Whether nothing was received for ``timeout`` seconds."""
        now = time.monotonic() if now is None else now
        return now - self.stats.last_activity > timeout

    def can_request(self) -> bool:
        return (
            self.is_active()
            and not self.peer_choking
            and len(self.outstanding_requests) < self.max_pipeline_depth
        )


class AsyncPeerConnectionManager:
    """Manages the peer connections of one torrent."""

    def __init__(
        self,
        torrent_info: TorrentInfo,
        piece_manager: AsyncPieceManager,
        peer_id: bytes,
        config: Config | None = None,
    ):
        """Initialize the connection manager.

        Args:
            torrent_info: Torrent whose swarm we join
            piece_manager: Source of requests and sink for received blocks
            peer_id: Our 20-byte peer id
            config: Configuration, defaults to the global config
        """
        self.torrent_info = torrent_info
        self.piece_manager = piece_manager
        self.our_peer_id = peer_id
        self.config = config or get_config()
        self.network = self.config.network

        self.connections: dict[str, AsyncPeerConnection] = {}
        self._connecting: set[str] = set()
        self.paused = False

        self._maintenance_task: asyncio.Task | None = None
        self._server: asyncio.AbstractServer | None = None
        self._background: set[asyncio.Task] = set()
        self._last_choke_update = 0.0

        # Callbacks
        self.on_peer_connected: Callable[[AsyncPeerConnection], None] | None = None
        self.on_peer_disconnected: Callable[[AsyncPeerConnection], None] | None = None

        self.piece_manager.on_block_cancelled = self._on_block_cancelled

        self._handlers: dict[type, Callable[[AsyncPeerConnection, PeerMessage], Awaitable[None]]] = {
            KeepAliveMessage: self._handle_keep_alive,
            ChokeMessage: self._handle_choke,
            UnchokeMessage: self._handle_unchoke,
            InterestedMessage: self._handle_interested,
            NotInterestedMessage: self._handle_not_interested,
            HaveMessage: self._handle_have,
            BitfieldMessage: self._handle_bitfield,
            RequestMessage: self._handle_request,
            PieceMessage: self._handle_piece,
            CancelMessage: self._handle_cancel,
            UnknownMessage: self._handle_unknown,
        }

        self.logger = get_logger(__name__)

    async def start(self) -> None:
        """Start the choke/timeout maintenance task."""
        if self._maintenance_task is None:
            self._maintenance_task = asyncio.create_task(self._maintenance_loop())

    async def stop(self) -> None:
        """Stop listening, stop maintenance and disconnect every peer."""
        server, self._server = self._server, None
        if server is not None:
            server.close()
        if self._maintenance_task is not None:
            self._maintenance_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._maintenance_task
            self._maintenance_task = None
        await self.disconnect_all()
        if server is not None:
            await server.wait_closed()
        for task in list(self._background):
            task.cancel()
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    @property
    def peer_count(self) -> int:
        return len(self.connections)

    def get_connected_peers(self) -> list[AsyncPeerConnection]:
        return [c for c in self.connections.values() if c.is_active()]

    # Connection setup

    async def connect_to_peers(self, peers: Iterable[PeerInfo]) -> int:
        """Connect to new peers concurrently, up to ``max_peers_per_torrent``.

        Returns:
            Number of connections established
        """
        if self.paused:
            return 0
        budget = self.network.max_peers_per_torrent - len(self.connections) - len(self._connecting)
        targets = []
        for peer in peers:
            if budget <= 0:
                break
            if str(peer) in self.connections or str(peer) in self._connecting:
                continue
            targets.append(peer)
            budget -= 1
        if not targets:
            return 0

        results = await asyncio.gather(
            *(self.connect(peer) for peer in targets),
            return_exceptions=True,
        )
        connected = 0
        for peer, result in zip(targets, results):
            if isinstance(result, AsyncPeerConnection):
                connected += 1
            elif isinstance(result, ConnectError):
                self.logger.debug("Failed to connect to %s: %s", peer, result)
            elif isinstance(result, BaseException):
                self.logger.warning("Unexpected error connecting to %s: %r", peer, result)
        return connected

    async def connect(self, peer_info: PeerInfo) -> AsyncPeerConnection:
        """Open an outbound connection and complete the handshake.

        Raises:
            ConnectError: If the TCP connect or the handshake fails, or the
                peer serves a different torrent
        """
        key = str(peer_info)
        self._connecting.add(key)
        writer = None
        try:
            try:
                reader, writer = await asyncio.wait_for(
                    asyncio.open_connection(peer_info.ip, peer_info.port),
                    timeout=self.network.connection_timeout,
                )
            except (OSError, asyncio.TimeoutError) as e:
                msg = f"Cannot connect to {peer_info}: {e!r}"
                raise ConnectError(msg) from e

            connection = AsyncPeerConnection(peer_info, reader, writer, ConnectionState.HANDSHAKING)
            try:
                remote = await asyncio.wait_for(
                    self._exchange_handshake(reader, writer, send_first=True),
                    timeout=self.network.handshake_timeout,
                )
            except (OSError, asyncio.TimeoutError, asyncio.IncompleteReadError, HandshakeError) as e:
                msg = f"Handshake with {peer_info} failed: {e!r}"
                raise ConnectError(msg) from e

            connection.peer_info.peer_id = remote.peer_id
            try:
                await self._activate(connection)
            except (ConnectionError, OSError) as e:
                await self._disconnect_peer(connection)
                msg = f"Peer {peer_info} dropped during setup: {e!r}"
                raise ConnectError(msg) from e
            return connection
        except ConnectError:
            if writer is not None:
                writer.close()
            raise
        finally:
            self._connecting.discard(key)

    async def _exchange_handshake(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter,
        send_first: bool,
    ) -> Handshake:
        """Swap handshakes with a peer; callers bound this by ``handshake_timeout``.

        The dialling side sends first, the accepting side answers only a
        handshake for our torrent.
        """
        if send_first:
            await self._send_handshake(writer)
        handshake = Handshake.decode(await reader.readexactly(HANDSHAKE_LENGTH))
        if handshake.info_hash != self.torrent_info.info_hash:
            msg = f"Info hash mismatch: got {handshake.info_hash.hex()}"
            raise HandshakeError(msg)
        if not send_first:
            await self._send_handshake(writer)
        return handshake

    async def _send_handshake(self, writer: asyncio.StreamWriter) -> None:
        writer.write(Handshake(self.torrent_info.info_hash, self.our_peer_id).encode())
        await writer.drain()

    async def _activate(self, connection: AsyncPeerConnection) -> None:
        """Register a handshaken connection and start its message task."""
        connection.state = ConnectionState.ACTIVE
        connection.max_pipeline_depth = self.network.pipeline_depth
        self.connections[connection.key] = connection

        if self.piece_manager.verified_pieces:
            await self._send_message(connection, BitfieldMessage(self.piece_manager.bitfield()))
        if not self.piece_manager.is_complete:
            connection.am_interested = True
            await self._send_message(connection, InterestedMessage())

        connection.connection_task = asyncio.create_task(self._handle_peer_messages(connection))
        self.logger.info("Connected to peer %s%s", connection.peer_info, " (inbound)" if connection.inbound else "")
        if self.on_peer_connected is not None:
            self.on_peer_connected(connection)

    async def start_listening(self, port: int | None = None, host: str = "0.0.0.0") -> int:  # nosec B104
        """Accept inbound connections for this torrent.

        Returns:
            The port actually bound
        """
        port = self.network.listen_port if port is None else port
        self._server = await asyncio.start_server(self._handle_inbound, host, port)
        bound = self._server.sockets[0].getsockname()[1]
        self.logger.info("Listening for peers on %s:%d", host, bound)
        return bound

    async def _handle_inbound(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        peername = writer.get_extra_info("peername") or ("unknown", 0)
        if self.paused or len(self.connections) >= self.network.max_peers_per_torrent:
            writer.close()
            return
        try:
            remote = await asyncio.wait_for(
                self._exchange_handshake(reader, writer, send_first=False),
                timeout=self.network.handshake_timeout,
            )
        except (OSError, asyncio.TimeoutError, asyncio.IncompleteReadError, HandshakeError) as e:
            self.logger.debug("Rejected inbound peer %s: %r", peername, e)
            writer.close()
            return

        peer_info = PeerInfo(ip=str(peername[0]), port=int(peername[1]) or 1, peer_id=remote.peer_id)
        if str(peer_info) in self.connections:
            writer.close()
            return
        connection = AsyncPeerConnection(peer_info, reader, writer, ConnectionState.HANDSHAKING, inbound=True)
        try:
            await self._activate(connection)
        except (ConnectionError, OSError) as e:
            self.logger.debug("Inbound peer %s dropped during setup: %r", peer_info, e)
            await self._disconnect_peer(connection)

    # Message loop

    async def _handle_peer_messages(self, connection: AsyncPeerConnection) -> None:
        """Read and dispatch messages until the connection ends."""
        reader = connection.reader
        try:
            while connection.is_active() and reader is not None:
                message = await read_message(reader)
                connection.stats.last_activity = time.monotonic()
                await self._handlers[type(message)](connection, message)
        except (asyncio.IncompleteReadError, ConnectionError, OSError) as e:
            self.logger.debug("Peer %s closed the connection: %r", connection.peer_info, e)
        except ProtocolError as e:
            self.logger.warning("Dropping peer %s for protocol violation: %s", connection.peer_info, e)
        finally:
            await self._disconnect_peer(connection)

    async def _handle_keep_alive(self, connection: AsyncPeerConnection, message: PeerMessage) -> None:
        pass

    async def _handle_unknown(self, connection: AsyncPeerConnection, message: PeerMessage) -> None:
        self.logger.debug("Ignoring message id %d from %s", message.message_id, connection.peer_info)

    async def _handle_choke(self, connection: AsyncPeerConnection, message: PeerMessage) -> None:
        connection.peer_choking = True
        connection.outstanding_requests.clear()
        released = await self.piece_manager.release_requests(connection.key)
        self.logger.debug("Choked by %s, released %d requests", connection.peer_info, released)

    async def _handle_unchoke(self, connection: AsyncPeerConnection, message: PeerMessage) -> None:
        connection.peer_choking = False
        await self._fill_pipeline(connection)

    async def _handle_interested(self, connection: AsyncPeerConnection, message: PeerMessage) -> None:
        connection.peer_interested = True
        if connection.am_choking:
            await self._update_choking()

    async def _handle_not_interested(self, connection: AsyncPeerConnection, message: PeerMessage) -> None:
        connection.peer_interested = False

    async def _handle_have(self, connection: AsyncPeerConnection, message: HaveMessage) -> None:
        if not 0 <= message.piece_index < self.torrent_info.num_pieces:
            msg = f"Have for invalid piece {message.piece_index}"
            raise MessageError(msg)
        connection.peer_pieces.add(message.piece_index)
        await self.piece_manager.add_peer_have(connection.key, message.piece_index)
        await self._update_interest(connection)
        await self._fill_pipeline(connection)

    async def _handle_bitfield(self, connection: AsyncPeerConnection, message: BitfieldMessage) -> None:
        num_pieces = self.torrent_info.num_pieces
        if len(message.bitfield) != expected_length(num_pieces):
            msg = f"Bitfield is {len(message.bitfield)} bytes, expected {expected_length(num_pieces)}"
            raise MessageError(msg)
        connection.peer_pieces = parse_bitfield(message.bitfield, num_pieces)
        await self.piece_manager.add_peer_pieces(connection.key, connection.peer_pieces)
        await self._update_interest(connection)
        await self._fill_pipeline(connection)

    async def _handle_request(self, connection: AsyncPeerConnection, message: RequestMessage) -> None:
        if connection.am_choking:
            return
        if message.length > MAX_REQUEST_LENGTH:
            self.logger.debug("Ignoring oversized request of %d bytes from %s", message.length, connection.peer_info)
            return
        ident = (message.piece_index, message.begin, message.length)
        connection.pending_uploads.add(ident)
        block = await self.piece_manager.get_block(message.piece_index, message.begin, message.length)
        if block is None or ident not in connection.pending_uploads:
            connection.pending_uploads.discard(ident)
            return
        connection.pending_uploads.discard(ident)
        await self._send_message(connection, PieceMessage(message.piece_index, message.begin, block))
        connection.stats.record_upload(len(block))

    async def _handle_cancel(self, connection: AsyncPeerConnection, message: CancelMessage) -> None:
        connection.pending_uploads.discard((message.piece_index, message.begin, message.length))

    async def _handle_piece(self, connection: AsyncPeerConnection, message: PieceMessage) -> None:
        request = BlockRequest(message.piece_index, message.begin, len(message.block))
        connection.outstanding_requests.pop(request, None)
        result = await self.piece_manager.submit_block(
            message.piece_index,
            message.begin,
            message.block,
            peer_key=connection.key,
        )
        if result in (SubmitResult.ACCEPTED, SubmitResult.VERIFIED, SubmitResult.CORRUPT):
            connection.stats.record_download(len(message.block))
        else:
            self.logger.debug(
                "Block %d:%d from %s %s",
                message.piece_index,
                message.begin,
                connection.peer_info,
                result.value,
            )
        if connection.is_active():
            await self._fill_pipeline(connection)

    # Outbound traffic

    async def _send_message(self, connection: AsyncPeerConnection, message: PeerMessage) -> None:
        if connection.writer is None or connection.state is ConnectionState.CLOSED:
            return
        async with connection.write_lock:
            connection.writer.write(message.encode())
            await connection.writer.drain()
        connection.stats.last_sent = time.monotonic()

    async def _safe_send(self, connection: AsyncPeerConnection, message: PeerMessage) -> None:
        """Send, dropping the peer instead of raising on a dead socket."""
        try:
            await self._send_message(connection, message)
        except (ConnectionError, OSError) as e:
            self.logger.debug("Send to %s failed: %r", connection.peer_info, e)
            await self._disconnect_peer(connection)

    async def _fill_pipeline(self, connection: AsyncPeerConnection) -> None:
        """Keep up to ``pipeline_depth`` requests outstanding."""
        while not self.paused and connection.can_request():
            request = await self.piece_manager.next_block_for(connection.key, connection.peer_pieces)
            if request is None:
                return
            connection.outstanding_requests[request] = time.monotonic()
            await self._send_message(
                connection,
                RequestMessage(request.piece_index, request.begin, request.length),
            )

    async def _update_interest(self, connection: AsyncPeerConnection) -> None:
        interesting = self.piece_manager.is_interesting(connection.peer_pieces)
        if interesting and not connection.am_interested:
            connection.am_interested = True
            await self._send_message(connection, InterestedMessage())
        elif not interesting and connection.am_interested:
            connection.am_interested = False
            await self._send_message(connection, NotInterestedMessage())

    def _on_block_cancelled(self, peer_key: str, request: BlockRequest) -> None:
        """Called by the piece manager when an endgame duplicate lost the race."""
        connection = self.connections.get(peer_key)
        if connection is None:
            return
        connection.outstanding_requests.pop(request, None)
        self._spawn(
            self._safe_send(connection, CancelMessage(request.piece_index, request.begin, request.length)),
        )

    def _spawn(self, coro) -> None:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)

    async def broadcast_have(self, piece_index: int) -> None:
        """Tell every peer about a newly verified piece."""
        for connection in self.get_connected_peers():
            await self._safe_send(connection, HaveMessage(piece_index))
            if connection.is_active():
                await self._update_interest(connection)

    def set_paused(self, paused: bool) -> None:
        """Stop or restart issuing requests."""
        self.paused = paused
        if paused and self.network.drop_peers_on_pause:
            self._spawn(self.disconnect_all())
        elif not paused:
            for connection in self.get_connected_peers():
                self._spawn(self._fill_pipeline(connection))

    # Choking and timeouts

    async def _maintenance_loop(self) -> None:
        while True:
            await asyncio.sleep(min(MAINTENANCE_TICK, self.network.unchoke_interval))
            try:
                await self._run_maintenance()
            except (ConnectionError, OSError) as e:
                self.logger.debug("Maintenance pass hit a socket error: %r", e)

    async def _run_maintenance(self) -> None:
        now = time.monotonic()

        for peer_key, request in await self.piece_manager.expire_requests(self.network.request_timeout):
            connection = self.connections.get(peer_key)
            if connection is not None and connection.outstanding_requests.pop(request, None) is not None:
                await self._safe_send(
                    connection,
                    CancelMessage(request.piece_index, request.begin, request.length),
                )

        for connection in list(self.connections.values()):
            if connection.has_timed_out(self.network.peer_timeout, now):
                self.logger.info("Peer %s timed out", connection.peer_info)
                await self._disconnect_peer(connection)
            elif now - connection.stats.last_sent >= self.network.keep_alive_interval:
                await self._safe_send(connection, KeepAliveMessage())
            if connection.is_active():
                await self._fill_pipeline(connection)

        if now - self._last_choke_update >= self.network.unchoke_interval:
            await self._update_choking()

    async def _update_choking(self) -> None:
        """Unchoke the interested peers that upload to us fastest."""
        now = time.monotonic()
        self._last_choke_update = now
        peers = self.get_connected_peers()
        for connection in peers:
            connection.stats.update_rates(now)

        seeding = self.piece_manager.is_complete
        interested = sorted(
            (c for c in peers if c.peer_interested),
            key=lambda c: c.stats.upload_rate if seeding else c.stats.download_rate,
            reverse=True,
        )
        unchoke = {c.key for c in interested[: self.network.max_upload_slots]}

        for connection in peers:
            if connection.key in unchoke and connection.am_choking:
                connection.am_choking = False
                await self._safe_send(connection, UnchokeMessage())
            elif connection.key not in unchoke and not connection.am_choking:
                connection.am_choking = True
                connection.pending_uploads.clear()
                await self._safe_send(connection, ChokeMessage())

    # Teardown

    async def _disconnect_peer(self, connection: AsyncPeerConnection) -> None:
        if connection.state is ConnectionState.CLOSED:
            return
        connection.state = ConnectionState.CLOSED
        if self.connections.get(connection.key) is connection:
            del self.connections[connection.key]

        task = connection.connection_task
        if task is not None and task is not asyncio.current_task() and not task.done():
            task.cancel()
        if connection.writer is not None:
            connection.writer.close()
            with contextlib.suppress(ConnectionError, OSError):
                await connection.writer.wait_closed()

        connection.outstanding_requests.clear()
        await self.piece_manager.remove_peer(connection.key)
        self.logger.debug("Disconnected from %s", connection.peer_info)
        if self.on_peer_disconnected is not None:
            self.on_peer_disconnected(connection)

    async def disconnect_peer(self, peer_info: PeerInfo) -> None:
        connection = self.connections.get(str(peer_info))
        if connection is not None:
            await self._disconnect_peer(connection)

    async def disconnect_all(self) -> None:
        connections = list(self.connections.values())
        for connection in connections:
            await self._disconnect_peer(connection)
        tasks = [c.connection_task for c in connections if c.connection_task is not None]
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
