"""Pytest configuration and shared fixtures for swarmdl tests."""

from __future__ import annotations

import asyncio
import hashlib
import logging

import pytest
import pytest_asyncio

from swarmdl.bencode import encode
from swarmdl.config import reset_config, set_config
from swarmdl.models import Config, PeerInfo
from swarmdl.peer import BitfieldMessage, Handshake, PieceMessage, RequestMessage, UnchokeMessage, read_message
from swarmdl.torrent import TorrentParser
from swarmdl.utils.bitfield import pack_bitfield

ANNOUNCE = "http://tracker.test/announce"


def pytest_configure(config):
    """Register project markers to avoid warnings when ini isn't loaded."""
    markers = [
        ("integration", "marks tests that use loopback sockets"),
        ("slow", "marks tests as slow"),
    ]
    for name, desc in markers:
        config.addinivalue_line("markers", f"{name}: {desc}")


@pytest.fixture(autouse=True)
def _clean_swarmdl_env(monkeypatch):
    """Keep SWARMDL_* variables from the developer's shell out of tests."""
    import os

    for name in list(os.environ):
        if name.startswith("SWARMDL_"):
            monkeypatch.delenv(name, raising=False)


@pytest.fixture(autouse=True)
def default_config():
    """Install a default Config for every test and drop it afterwards."""
    reset_config()
    config = Config()
    set_config(config)
    yield config
    reset_config()


@pytest.fixture(autouse=True)
def cleanup_logging():
    """Remove handlers installed by setup_logging() during a test."""
    yield
    for logger_name in list(logging.Logger.manager.loggerDict.keys()):
        logger = logging.getLogger(logger_name)
        if not isinstance(logger, logging.Logger):
            continue
        for handler in logger.handlers[:]:
            handler.close()
            logger.removeHandler(handler)
    # dictConfig stops propagation, which would hide records from caplog
    root = logging.getLogger("swarmdl")
    root.propagate = True
    root.setLevel(logging.NOTSET)


def piece_hashes(content: bytes, piece_length: int) -> bytes:
    return b"".join(
        hashlib.sha1(content[i : i + piece_length]).digest()  # nosec B324
        for i in range(0, len(content), piece_length)
    )


def build_torrent(
    name: str = "a.txt",
    content: bytes = b"0123456789",
    piece_length: int = 10,
    files: list[tuple[list[str], int]] | None = None,
    announce: str = ANNOUNCE,
    **extra,
) -> bytes:
    """Build raw metainfo bytes.

    ``content`` is the concatenation of all files. With ``files`` given,
    the torrent is multi-file and each entry is (path segments, length).
    """
    info: dict = {
        "name": name,
        "piece length": piece_length,
        "pieces": piece_hashes(content, piece_length),
    }
    if files is None:
        info["length"] = len(content)
    else:
        info["files"] = [{"path": path, "length": length} for path, length in files]
    meta = {"announce": announce, "info": info}
    meta.update(extra)
    return encode(meta)


@pytest.fixture
def torrent_builder():
    """The build_torrent helper, for tests that need custom metainfo."""
    return build_torrent


@pytest.fixture
def single_file_torrent():
    """A 10-byte single-file torrent with one piece."""
    return TorrentParser().parse(build_torrent())


@pytest.fixture
def sample_content():
    """100 bytes of content cut into 16-byte pieces (7 pieces, last one short)."""
    return bytes(range(100))


@pytest.fixture
def multi_piece_torrent(sample_content):
    return TorrentParser().parse(build_torrent(name="data.bin", content=sample_content, piece_length=16))


@pytest.fixture
def output_dir(tmp_path):
    out = tmp_path / "downloads"
    out.mkdir()
    return out


class FakeSeeder:
    """Minimal remote peer that has every piece and serves requests."""

    def __init__(self, torrent_info, content: bytes, bitfield: bytes | None = None, info_hash: bytes | None = None):
        self.info_hash = info_hash or torrent_info.info_hash
        self.piece_length = torrent_info.piece_length
        self.content = content
        self.peer_id = b"-FAKE00-" + b"x" * 12
        num_pieces = torrent_info.num_pieces
        self.bitfield = bitfield if bitfield is not None else pack_bitfield(range(num_pieces), num_pieces)
        self.received: list = []
        self.handshake: Handshake | None = None
        self.server: asyncio.AbstractServer | None = None
        self.writers: set[asyncio.StreamWriter] = set()
        self.port = 0

    async def start(self) -> None:
        self.server = await asyncio.start_server(self._handle, "127.0.0.1", 0)
        self.port = self.server.sockets[0].getsockname()[1]

    async def stop(self) -> None:
        if self.server is None:
            return
        self.server.close()
        for writer in list(self.writers):
            writer.close()
        await self.server.wait_closed()
        self.server = None

    @property
    def peer_info(self) -> PeerInfo:
        return PeerInfo(ip="127.0.0.1", port=self.port)

    def compact_peer(self) -> bytes:
        return bytes([127, 0, 0, 1]) + self.port.to_bytes(2, "big")

    async def _handle(self, reader, writer) -> None:
        self.writers.add(writer)
        try:
            self.handshake = Handshake.decode(await reader.readexactly(68))
            writer.write(Handshake(self.info_hash, self.peer_id).encode())
            writer.write(BitfieldMessage(self.bitfield).encode())
            writer.write(UnchokeMessage().encode())
            await writer.drain()
            while True:
                message = await read_message(reader)
                self.received.append(message)
                if type(message) is RequestMessage:
                    start = message.piece_index * self.piece_length + message.begin
                    block = self.content[start : start + message.length]
                    writer.write(PieceMessage(message.piece_index, message.begin, block).encode())
                    await writer.drain()
        except (asyncio.IncompleteReadError, ConnectionError):
            pass
        finally:
            self.writers.discard(writer)
            writer.close()


@pytest_asyncio.fixture
async def make_seeder():
    """Factory for started FakeSeeders; all are stopped at teardown."""
    seeders = []

    async def factory(torrent_info, content, **kwargs) -> FakeSeeder:
        seeder = FakeSeeder(torrent_info, content, **kwargs)
        await seeder.start()
        seeders.append(seeder)
        return seeder

    yield factory
    for seeder in seeders:
        await seeder.stop()
