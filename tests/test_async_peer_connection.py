"""Tests for the peer connection manager over loopback sockets."""

import asyncio
import time

import pytest
import pytest_asyncio

from swarmdl.async_peer_connection import (
    AsyncPeerConnection,
    AsyncPeerConnectionManager,
    ConnectionState,
)
from swarmdl.exceptions import ConnectError
from swarmdl.file_assembler import AsyncFileAssembler
from swarmdl.models import Config, NetworkConfig, PeerInfo
from swarmdl.peer import InterestedMessage, RequestMessage
from swarmdl.piece_manager import AsyncPieceManager
from swarmdl.torrent import TorrentParser
from swarmdl.tracker import generate_peer_id

pytestmark = pytest.mark.integration

BLOCK = 1024
PIECE = 2 * BLOCK
CONTENT = bytes((i * 13) % 256 for i in range(2 * PIECE + 904))


@pytest.fixture
def config():
    return Config(network=NetworkConfig(block_size_kib=1, connection_timeout=2.0, handshake_timeout=2.0))


@pytest.fixture
def torrent(torrent_builder):
    return TorrentParser().parse(torrent_builder(name="data.bin", content=CONTENT, piece_length=PIECE))


@pytest_asyncio.fixture
async def leecher(torrent, config, output_dir):
    """A connection manager with real storage and an empty piece manager."""
    assembler = AsyncFileAssembler(torrent, output_dir)
    await assembler.start()
    piece_manager = AsyncPieceManager(torrent, assembler, config)
    manager = AsyncPeerConnectionManager(torrent, piece_manager, generate_peer_id(), config)
    await manager.start()
    yield manager
    await manager.stop()
    await piece_manager.stop()
    await assembler.stop()


def completion_event(piece_manager) -> asyncio.Event:
    done = asyncio.Event()
    piece_manager.on_download_complete = done.set
    return done


@pytest.mark.asyncio
async def test_download_from_seeder(leecher, torrent, output_dir, make_seeder):
    seeder = await make_seeder(torrent, CONTENT)
    try:
        done = completion_event(leecher.piece_manager)
        connection = await leecher.connect(seeder.peer_info)
        assert connection.is_active()
        assert connection.peer_info.peer_id == seeder.peer_id

        await asyncio.wait_for(done.wait(), timeout=10)

        assert (output_dir / "data.bin").read_bytes() == CONTENT
        assert leecher.piece_manager.progress() == 1.0
        assert seeder.handshake.info_hash == torrent.info_hash
        assert seeder.handshake.peer_id == leecher.our_peer_id
        assert isinstance(seeder.received[0], InterestedMessage)
        requests = [m for m in seeder.received if type(m) is RequestMessage]
        assert all(r.length <= BLOCK for r in requests)
        assert connection.stats.bytes_downloaded == len(CONTENT)

        await leecher.disconnect_peer(seeder.peer_info)
        assert leecher.peer_count == 0
    finally:
        await leecher.stop()


@pytest.mark.asyncio
async def test_info_hash_mismatch_rejected(leecher, torrent, make_seeder):
    seeder = await make_seeder(torrent, CONTENT, info_hash=b"\xff" * 20)
    with pytest.raises(ConnectError, match="mismatch"):
        await leecher.connect(seeder.peer_info)
    assert leecher.peer_count == 0


@pytest.mark.asyncio
async def test_connection_refused(leecher):
    server = await asyncio.start_server(lambda r, w: None, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    server.close()
    await server.wait_closed()

    with pytest.raises(ConnectError):
        await leecher.connect(PeerInfo(ip="127.0.0.1", port=port))
    assert await leecher.connect_to_peers([PeerInfo(ip="127.0.0.1", port=port)]) == 0


@pytest.mark.asyncio
async def test_silent_peer_times_out_during_handshake(torrent):
    config = Config(network=NetworkConfig(block_size_kib=1, connection_timeout=2.0, handshake_timeout=0.2))
    piece_manager = AsyncPieceManager(torrent, config=config)
    manager = AsyncPeerConnectionManager(torrent, piece_manager, generate_peer_id(), config)
    accepted = []
    # Accepts the connection and never answers
    server = await asyncio.start_server(lambda r, w: accepted.append(w), "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    try:
        started = time.monotonic()
        with pytest.raises(ConnectError, match="Handshake"):
            await manager.connect(PeerInfo(ip="127.0.0.1", port=port))
        assert time.monotonic() - started < 1.5
        assert manager.peer_count == 0
    finally:
        for writer in accepted:
            writer.close()
        server.close()
        await server.wait_closed()
        await manager.stop()
        await piece_manager.stop()


@pytest.mark.asyncio
async def test_bad_bitfield_drops_peer(leecher, torrent, make_seeder):
    seeder = await make_seeder(torrent, CONTENT, bitfield=b"\xff\xff\xff")
    dropped = asyncio.Event()
    leecher.on_peer_disconnected = lambda connection: dropped.set()
    try:
        await leecher.connect(seeder.peer_info)
        await asyncio.wait_for(dropped.wait(), timeout=5)
        assert leecher.peer_count == 0
        assert leecher.piece_manager.peer_availability == {}
    finally:
        await leecher.stop()


@pytest.mark.asyncio
async def test_connect_to_peers_respects_limit(torrent, make_seeder):
    config = Config(network=NetworkConfig(block_size_kib=1, max_peers_per_torrent=1))
    piece_manager = AsyncPieceManager(torrent, config=config)
    manager = AsyncPeerConnectionManager(torrent, piece_manager, generate_peer_id(), config)
    seeders = [await make_seeder(torrent, CONTENT) for _ in range(2)]
    try:
        connected = await manager.connect_to_peers([s.peer_info for s in seeders])
        assert connected == 1
        assert manager.peer_count == 1
        # Already connected peers are skipped
        assert await manager.connect_to_peers([seeders[0].peer_info]) == 0
    finally:
        await manager.stop()
        await piece_manager.stop()


@pytest.mark.asyncio
async def test_paused_manager_does_not_connect(leecher, torrent, make_seeder):
    seeder = await make_seeder(torrent, CONTENT)
    leecher.set_paused(True)
    assert await leecher.connect_to_peers([seeder.peer_info]) == 0


@pytest.mark.asyncio
async def test_inbound_seeder_to_outbound_leecher(leecher, torrent, config, tmp_path):
    """Two managers talk to each other: one seeds from disk, one downloads."""
    seed_dir = tmp_path / "seed"
    seed_dir.mkdir()
    (seed_dir / "data.bin").write_bytes(CONTENT)
    seed_assembler = AsyncFileAssembler(torrent, seed_dir)
    await seed_assembler.start()
    seed_pieces = AsyncPieceManager(torrent, seed_assembler, config)
    # Load the seed's pieces through the normal verify path
    for index in range(torrent.num_pieces):
        while (request := await seed_pieces.next_block_for("local", [index])) is not None:
            data = await seed_assembler.read_block(request.piece_index, request.begin, request.length)
            await seed_pieces.submit_block(request.piece_index, request.begin, data, peer_key="local")
    assert seed_pieces.is_complete

    seed_manager = AsyncPeerConnectionManager(torrent, seed_pieces, generate_peer_id(), config)
    await seed_manager.start()
    port = await seed_manager.start_listening(port=0, host="127.0.0.1")
    try:
        done = completion_event(leecher.piece_manager)
        await leecher.connect(PeerInfo(ip="127.0.0.1", port=port))
        await asyncio.wait_for(done.wait(), timeout=10)

        assert leecher.piece_manager.is_complete
        # Let the seed's message task record the last upload
        await asyncio.sleep(0.1)
        inbound = seed_manager.get_connected_peers()
        assert len(inbound) == 1
        assert inbound[0].inbound
        assert inbound[0].stats.bytes_uploaded == len(CONTENT)
    finally:
        await leecher.stop()
        await seed_manager.stop()
        await seed_pieces.stop()
        await seed_assembler.stop()


@pytest.mark.asyncio
async def test_choking_prefers_fastest_interested_peers(torrent, config):
    piece_manager = AsyncPieceManager(torrent, config=config)
    manager = AsyncPeerConnectionManager(torrent, piece_manager, generate_peer_id(), config)
    try:
        start = time.monotonic() - 10
        for i in range(6):
            connection = AsyncPeerConnection(PeerInfo(ip="10.0.0.1", port=7000 + i), state=ConnectionState.ACTIVE)
            connection.peer_interested = i != 5
            connection.stats._window_start = start
            connection.stats.record_download((i + 1) * 1000)
            manager.connections[connection.key] = connection

        await manager._update_choking()

        unchoked = {c.peer_info.port for c in manager.connections.values() if not c.am_choking}
        # The fastest peer (7005) is not interested, so the next four win
        assert unchoked == {7001, 7002, 7003, 7004}
    finally:
        manager.connections.clear()
        await manager.stop()
        await piece_manager.stop()
