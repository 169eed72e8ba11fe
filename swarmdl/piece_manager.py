"""Piece management: block scheduling, verification and progress.

Implements rarest-first piece selection, endgame duplicate requests,
per-peer availability tracking and SHA-1 verification on a thread pool.
All piece and block state is guarded by a single ``asyncio.Lock``; hashing
and disk I/O run outside it.
"""

from __future__ import annotations

import asyncio
import hashlib
import time
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Callable, Iterable

from swarmdl.config import get_config
from swarmdl.exceptions import DiskError, VerificationError
from swarmdl.logging_config import get_logger, log_exception
from swarmdl.utils.bitfield import pack_bitfield

if TYPE_CHECKING:
    from swarmdl.file_assembler import AsyncFileAssembler
    from swarmdl.models import Config, TorrentInfo


class BlockState(Enum):
    """States of a block download."""

    MISSING = "missing"
    REQUESTED = "requested"
    HAVE = "have"


class SubmitResult(str, Enum):
    """Outcome of handing a received block to the piece manager."""

    ACCEPTED = "accepted"
    VERIFIED = "verified"
    CORRUPT = "corrupt"
    WRITE_FAILED = "write_failed"
    REJECTED_STALE = "rejected_stale"
    REJECTED_OUT_OF_RANGE = "rejected_out_of_range"


@dataclass(frozen=True)
class BlockRequest:
    """A block to request from a peer."""

    piece_index: int
    begin: int
    length: int


@dataclass
class PieceBlock:
    """A block within a piece."""

    piece_index: int
    begin: int
    length: int
    state: BlockState = BlockState.MISSING
    data: bytes = b""
    # peer key -> time the request was handed out
    requested_from: dict[str, float] = field(default_factory=dict)

    def as_request(self) -> BlockRequest:
        return BlockRequest(self.piece_index, self.begin, self.length)


@dataclass
class PieceData:
    """A piece with all its blocks."""

    piece_index: int
    length: int
    expected_hash: bytes
    block_size: int
    blocks: list[PieceBlock] = field(default_factory=list)
    verified: bool = False
    verifying: bool = False

    def __post_init__(self):
        if not self.blocks:
            self.blocks = [
                PieceBlock(self.piece_index, begin, min(self.block_size, self.length - begin))
                for begin in range(0, self.length, self.block_size)
            ]

    def block_at(self, begin: int) -> PieceBlock | None:
        if begin < 0 or begin % self.block_size:
            return None
        idx = begin // self.block_size
        if idx >= len(self.blocks):
            return None
        return self.blocks[idx]

    def is_complete(self) -> bool:
        return all(b.state is BlockState.HAVE for b in self.blocks)

    def get_data(self) -> bytes:
        """Concatenate block data; the piece must be complete."""
        if not self.is_complete():
            msg = f"Piece {self.piece_index} is not complete"
            raise ValueError(msg)
        return b"".join(block.data for block in self.blocks)

    def reset(self) -> None:
        """Return every block to missing and drop buffered data."""
        for block in self.blocks:
            block.state = BlockState.MISSING
            block.data = b""
            block.requested_from.clear()


def _sha1_matches(data: bytes, expected: bytes) -> bool:
    return hashlib.sha1(data).digest() == expected  # nosec B324 - SHA-1 required by BEP 3


class AsyncPieceManager:
    """Piece manager with rarest-first selection and endgame mode."""

    def __init__(
        self,
        torrent_info: TorrentInfo,
        file_assembler: AsyncFileAssembler | None = None,
        config: Config | None = None,
    ):
        """Initialize the piece manager.

        Args:
            torrent_info: Parsed torrent metadata
            file_assembler: Storage for verified pieces; without it verified
                data is discarded, which only tests rely on
            config: Configuration, defaults to the global config
        """
        self.torrent_info = torrent_info
        self.file_assembler = file_assembler
        self.config = config or get_config()

        self.num_pieces = torrent_info.num_pieces
        self.total_length = torrent_info.total_length
        block_size = self.config.network.block_size_kib * 1024
        self.pieces: list[PieceData] = [
            PieceData(i, torrent_info.piece_size(i), torrent_info.pieces[i], block_size)
            for i in range(self.num_pieces)
        ]

        self.lock = asyncio.Lock()
        self.verified_pieces: set[int] = set()
        self.verified_bytes = 0
        self.bytes_downloaded = 0
        self.corruption_count = 0

        # Rarity: how many connected peers have each piece
        self.peer_availability: dict[str, set[int]] = {}
        self.piece_frequency: Counter[int] = Counter()

        self.max_inflight = self.config.strategy.max_inflight_requests
        self.endgame_duplicates = self.config.strategy.endgame_duplicates
        self.inflight = 0
        self.endgame_mode = False

        self.hash_executor = ThreadPoolExecutor(
            max_workers=self.config.disk.hash_workers,
            thread_name_prefix="swarmdl-hash",
        )
        self._store_tasks: set[asyncio.Task] = set()

        # Callbacks
        self.on_piece_verified: Callable[[int], None] | None = None
        self.on_download_complete: Callable[[], None] | None = None
        self.on_block_cancelled: Callable[[str, BlockRequest], None] | None = None

        self.logger = get_logger(__name__)

    @property
    def is_complete(self) -> bool:
        return len(self.verified_pieces) == self.num_pieces

    def progress(self) -> float:
        """Fraction of the torrent's bytes that are verified."""
        if self.total_length == 0:
            return 1.0
        return self.verified_bytes / self.total_length

    def has_piece(self, piece_index: int) -> bool:
        return piece_index in self.verified_pieces

    def bitfield(self) -> bytes:
        """Pack the verified set into a wire bitfield."""
        return pack_bitfield(self.verified_pieces, self.num_pieces)

    def is_interesting(self, peer_pieces: Iterable[int]) -> bool:
        """Whether the peer has any piece we have not verified."""
        return any(i not in self.verified_pieces for i in peer_pieces)

    # Availability

    async def add_peer_pieces(self, peer_key: str, pieces: Iterable[int]) -> None:
        """Record a peer's full piece set (from a bitfield)."""
        valid = {i for i in pieces if 0 <= i < self.num_pieces}
        async with self.lock:
            old = self.peer_availability.get(peer_key, set())
            self.piece_frequency.subtract(old)
            self.piece_frequency.update(valid)
            self.peer_availability[peer_key] = valid

    async def add_peer_have(self, peer_key: str, piece_index: int) -> None:
        """Record one piece announced by a peer."""
        if not 0 <= piece_index < self.num_pieces:
            return
        async with self.lock:
            pieces = self.peer_availability.setdefault(peer_key, set())
            if piece_index not in pieces:
                pieces.add(piece_index)
                self.piece_frequency[piece_index] += 1

    async def remove_peer(self, peer_key: str) -> None:
        """Forget a disconnected peer and release its requests."""
        async with self.lock:
            pieces = self.peer_availability.pop(peer_key, set())
            self.piece_frequency.subtract(pieces)
            self._release_locked(peer_key)

    # Scheduling

    async def next_block_for(
        self,
        peer_key: str,
        peer_pieces: Iterable[int] | None = None,
    ) -> BlockRequest | None:
        """Pick the next block to request from a peer.

        Pieces are taken rarest first, ties broken by index, and only among
        pieces the peer has. Once no block is missing anywhere, blocks that
        are already requested may be handed to a second owner (endgame).

        Args:
            peer_key: Identity of the requesting connection
            peer_pieces: Pieces the peer has, defaults to its recorded set

        Returns:
            The block now marked requested, or None if the peer has nothing
            useful or the in-flight cap is reached
        """
        async with self.lock:
            if self.inflight >= self.max_inflight:
                return None
            pieces = self.peer_availability.get(peer_key, set()) if peer_pieces is None else peer_pieces
            candidates = sorted(
                (
                    i
                    for i in pieces
                    if 0 <= i < self.num_pieces
                    and not self.pieces[i].verified
                    and not self.pieces[i].verifying
                ),
                key=lambda i: (self.piece_frequency[i], i),
            )
            now = time.monotonic()

            for index in candidates:
                for block in self.pieces[index].blocks:
                    if block.state is BlockState.MISSING:
                        return self._assign_locked(block, peer_key, now)

            if not self._endgame_locked():
                return None
            for index in candidates:
                for block in self.pieces[index].blocks:
                    if (
                        block.state is BlockState.REQUESTED
                        and peer_key not in block.requested_from
                        and len(block.requested_from) < self.endgame_duplicates
                    ):
                        return self._assign_locked(block, peer_key, now)
            return None

    def _assign_locked(self, block: PieceBlock, peer_key: str, now: float) -> BlockRequest:
        block.state = BlockState.REQUESTED
        block.requested_from[peer_key] = now
        self.inflight += 1
        return block.as_request()

    def _endgame_locked(self) -> bool:
        missing = False
        requested = False
        for piece in self.pieces:
            if piece.verified or piece.verifying:
                continue
            for block in piece.blocks:
                if block.state is BlockState.MISSING:
                    missing = True
                    break
                if block.state is BlockState.REQUESTED:
                    requested = True
            if missing:
                break
        endgame = requested and not missing
        if endgame and not self.endgame_mode:
            self.logger.info("Entering endgame mode for %s", self.torrent_info.name)
        self.endgame_mode = endgame
        return endgame

    async def release_requests(self, peer_key: str) -> int:
        """Return every block requested from a peer to missing.

        Returns:
            Number of requests released
        """
        async with self.lock:
            return self._release_locked(peer_key)

    def _release_locked(self, peer_key: str) -> int:
        released = 0
        for piece in self.pieces:
            for block in piece.blocks:
                if block.requested_from.pop(peer_key, None) is not None:
                    released += 1
                    self._drop_owner_locked(block)
        return released

    def _drop_owner_locked(self, block: PieceBlock) -> None:
        self.inflight -= 1
        if block.state is BlockState.REQUESTED and not block.requested_from:
            block.state = BlockState.MISSING

    async def cancel_request(self, peer_key: str, piece_index: int, begin: int) -> bool:
        """Withdraw one outstanding request of a peer."""
        async with self.lock:
            if not 0 <= piece_index < self.num_pieces:
                return False
            block = self.pieces[piece_index].block_at(begin)
            if block is None or block.requested_from.pop(peer_key, None) is None:
                return False
            self._drop_owner_locked(block)
            return True

    async def expire_requests(self, timeout: float) -> list[tuple[str, BlockRequest]]:
        """Release requests outstanding for longer than ``timeout`` seconds.

        Returns:
            The expired (peer key, request) pairs
        """
        cutoff = time.monotonic() - timeout
        expired = []
        async with self.lock:
            for piece in self.pieces:
                for block in piece.blocks:
                    for peer_key, requested_at in list(block.requested_from.items()):
                        if requested_at <= cutoff:
                            del block.requested_from[peer_key]
                            self._drop_owner_locked(block)
                            expired.append((peer_key, block.as_request()))
        if expired:
            self.logger.debug("Expired %d stale requests", len(expired))
        return expired

    # Data path

    async def submit_block(
        self,
        piece_index: int,
        begin: int,
        data: bytes,
        peer_key: str | None = None,
    ) -> SubmitResult:
        """Accept a block received from a peer.

        A block completing its piece triggers SHA-1 verification on the hash
        pool and, on success, a write through the file assembler.

        Args:
            piece_index: Piece the block belongs to
            begin: Byte offset of the block in the piece
            data: Block payload
            peer_key: Connection that delivered the block

        Returns:
            The SubmitResult describing what happened to the block
        """
        cancels: list[tuple[str, BlockRequest]] = []
        piece_data: bytes | None = None
        async with self.lock:
            if not 0 <= piece_index < self.num_pieces:
                return SubmitResult.REJECTED_OUT_OF_RANGE
            piece = self.pieces[piece_index]
            block = piece.block_at(begin)
            if block is None or len(data) != block.length:
                return SubmitResult.REJECTED_OUT_OF_RANGE
            if piece.verified or piece.verifying or block.state is not BlockState.REQUESTED:
                return SubmitResult.REJECTED_STALE

            cancels = [(key, block.as_request()) for key in block.requested_from if key != peer_key]
            self.inflight -= len(block.requested_from)
            block.requested_from.clear()
            block.state = BlockState.HAVE
            block.data = bytes(data)
            self.bytes_downloaded += len(data)

            if piece.is_complete():
                piece.verifying = True
                piece_data = piece.get_data()

        if self.on_block_cancelled is not None:
            for key, request in cancels:
                self.on_block_cancelled(key, request)

        if piece_data is None:
            return SubmitResult.ACCEPTED

        task = asyncio.create_task(self._verify_and_store(piece_index, piece_data))
        self._store_tasks.add(task)
        task.add_done_callback(self._store_tasks.discard)
        # Shielded so a cancelled peer task does not abandon a half-written piece
        return await asyncio.shield(task)

    async def _verify_and_store(self, piece_index: int, data: bytes) -> SubmitResult:
        piece = self.pieces[piece_index]
        loop = asyncio.get_running_loop()
        matches = await loop.run_in_executor(
            self.hash_executor,
            _sha1_matches,
            data,
            piece.expected_hash,
        )
        if not matches:
            async with self.lock:
                piece.reset()
                piece.verifying = False
                self.corruption_count += 1
            log_exception(
                self.logger,
                VerificationError(
                    f"Piece {piece_index} failed hash check",
                    details={"piece": piece_index, "corruptions": self.corruption_count},
                ),
                "Discarding piece",
            )
            return SubmitResult.CORRUPT

        if self.file_assembler is not None:
            try:
                await self.file_assembler.write_piece_to_file(piece_index, data)
            except DiskError as e:
                async with self.lock:
                    piece.reset()
                    piece.verifying = False
                log_exception(self.logger, e, f"Failed to store piece {piece_index}")
                return SubmitResult.WRITE_FAILED

        async with self.lock:
            piece.verifying = False
            piece.verified = True
            for block in piece.blocks:
                block.data = b""
            self.verified_pieces.add(piece_index)
            self.verified_bytes += piece.length
            complete = self.is_complete

        self.logger.debug("Verified piece %d (%.1f%%)", piece_index, self.progress() * 100)
        if self.on_piece_verified is not None:
            self.on_piece_verified(piece_index)
        if complete and self.on_download_complete is not None:
            self.on_download_complete()
        return SubmitResult.VERIFIED

    async def mark_corrupt(self, piece_index: int) -> bool:
        """Drop a verified piece so it is downloaded again.

        This is the only way progress can go down.
        """
        async with self.lock:
            if piece_index not in self.verified_pieces:
                return False
            piece = self.pieces[piece_index]
            piece.verified = False
            piece.reset()
            self.verified_pieces.discard(piece_index)
            self.verified_bytes -= piece.length
            self.corruption_count += 1
        self.logger.warning("Piece %d marked corrupt, progress now %.3f", piece_index, self.progress())
        return True

    async def get_block(self, piece_index: int, begin: int, length: int) -> bytes | None:
        """Read a block of a verified piece for uploading.

        Returns:
            The block, or None if the piece is not verified or unreadable
        """
        if piece_index not in self.verified_pieces or self.file_assembler is None:
            return None
        try:
            return await self.file_assembler.read_block(piece_index, begin, length)
        except DiskError as e:
            self.logger.warning("Cannot serve block %d:%d: %s", piece_index, begin, e)
            return None

    async def drain(self) -> None:
        """Wait for in-flight verifications and writes to finish."""
        while self._store_tasks:
            await asyncio.gather(*list(self._store_tasks), return_exceptions=True)

    async def stop(self) -> None:
        """Finish pending writes and shut the hash pool down."""
        await self.drain()
        self.hash_executor.shutdown(wait=False)
