"""Async file assembler.

Maps verified pieces onto the byte ranges of the output files and performs
all disk I/O on a thread pool so the event loop never blocks.
"""

from __future__ import annotations

import asyncio
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from pathlib import Path
from typing import IO

from swarmdl.config import get_config
from swarmdl.exceptions import DiskError
from swarmdl.logging_config import get_logger
from swarmdl.models import TorrentInfo


@dataclass(frozen=True)
class FileSegment:
    """The part of one file covered by one piece."""

    file_path: Path
    start_offset: int  # within the file
    end_offset: int
    piece_index: int
    piece_offset: int  # within the piece

    @property
    def length(self) -> int:
        return self.end_offset - self.start_offset


class AsyncFileAssembler:
    """Writes verified pieces to, and reads blocks from, the output files."""

    def __init__(
        self,
        torrent_info: TorrentInfo,
        output_dir: str | Path = ".",
        disk_workers: int | None = None,
    ):
        """Initialize the assembler.

        Args:
            torrent_info: Parsed torrent metadata
            output_dir: Directory receiving the file (single-file) or the
                torrent's directory (multi-file)
            disk_workers: Thread pool size, defaults to ``disk.disk_workers``
        """
        self.torrent_info = torrent_info
        self.output_dir = Path(output_dir)
        self.disk_workers = disk_workers or get_config().disk.disk_workers

        self.file_paths = self._build_file_paths()
        self.file_segments = self._build_file_segments()
        self._segments_by_piece: dict[int, list[FileSegment]] = {}
        for segment in self.file_segments:
            self._segments_by_piece.setdefault(segment.piece_index, []).append(segment)

        self._handles: dict[Path, IO[bytes]] = {}
        # Serialises seek+write pairs across pool threads
        self._io_lock = threading.Lock()
        self._executor: ThreadPoolExecutor | None = None
        self.written_pieces: set[int] = set()

        self.logger = get_logger(__name__)

    def _build_file_paths(self) -> list[Path]:
        """Output paths of every file; each must stay inside ``output_dir``.

        Raises:
            DiskError: If a name or path segment points outside the output directory
        """
        info = self.torrent_info
        if info.is_multi_file:
            root = self.output_dir / info.name
            paths = [root.joinpath(*f.path) for f in info.files]
        else:
            paths = [self.output_dir / info.name]

        base = self.output_dir.resolve()
        for path in paths:
            resolved = path.resolve()
            if resolved == base or not resolved.is_relative_to(base):
                msg = f"File path {path} escapes the output directory {self.output_dir}"
                raise DiskError(msg)
        return paths

    def _build_file_segments(self) -> list[FileSegment]:
        """Split every piece along file boundaries."""
        info = self.torrent_info
        segments = []
        for file_info, file_path in zip(info.files, self.file_paths):
            if file_info.length == 0:
                continue
            first_piece = file_info.offset // info.piece_length
            last_piece = (file_info.end - 1) // info.piece_length
            for piece_index in range(first_piece, last_piece + 1):
                piece_start = piece_index * info.piece_length
                piece_end = piece_start + info.piece_size(piece_index)
                overlap_start = max(piece_start, file_info.offset)
                overlap_end = min(piece_end, file_info.end)
                segments.append(
                    FileSegment(
                        file_path=file_path,
                        start_offset=overlap_start - file_info.offset,
                        end_offset=overlap_end - file_info.offset,
                        piece_index=piece_index,
                        piece_offset=overlap_start - piece_start,
                    ),
                )
        return segments

    def segments_for_piece(self, piece_index: int) -> list[FileSegment]:
        return self._segments_by_piece.get(piece_index, [])

    async def start(self) -> None:
        """Create output directories and empty files, and start the pool.

        Raises:
            DiskError: If the output location cannot be prepared
        """
        if self._executor is None:
            self._executor = ThreadPoolExecutor(
                max_workers=self.disk_workers,
                thread_name_prefix="swarmdl-disk",
            )
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(self._executor, self._prepare_files)
        self.logger.debug("Prepared %d output files under %s", len(self.file_paths), self.output_dir)

    def _prepare_files(self) -> None:
        try:
            for file_info, path in zip(self.torrent_info.files, self.file_paths):
                path.parent.mkdir(parents=True, exist_ok=True)
                if file_info.length == 0:
                    path.touch(exist_ok=True)
        except OSError as e:
            msg = f"Cannot prepare output files in {self.output_dir}: {e}"
            raise DiskError(msg) from e

    async def stop(self) -> None:
        """Close file handles and shut the pool down."""
        executor, self._executor = self._executor, None
        if executor is not None:
            await asyncio.get_running_loop().run_in_executor(executor, self._close_handles)
            executor.shutdown(wait=True)
        else:
            self._close_handles()

    def _close_handles(self) -> None:
        with self._io_lock:
            for path, handle in self._handles.items():
                try:
                    handle.close()
                except OSError as e:
                    self.logger.warning("Failed to close %s: %s", path, e)
            self._handles.clear()

    def _handle(self, path: Path) -> IO[bytes]:
        handle = self._handles.get(path)
        if handle is None:
            path.parent.mkdir(parents=True, exist_ok=True)
            mode = "r+b" if path.exists() else "w+b"
            handle = open(path, mode)  # noqa: SIM115 - closed in stop()
            self._handles[path] = handle
        return handle

    async def write_piece_to_file(self, piece_index: int, piece_data: bytes) -> None:
        """Write a verified piece to every file range it covers.

        Raises:
            DiskError: If writing fails
        """
        if len(piece_data) != self.torrent_info.piece_size(piece_index):
            msg = f"Piece {piece_index} has {len(piece_data)} bytes, expected {self.torrent_info.piece_size(piece_index)}"
            raise DiskError(msg)
        segments = self.segments_for_piece(piece_index)
        await self._run(self._write_segments, segments, piece_data)
        self.written_pieces.add(piece_index)

    def _write_segments(self, segments: list[FileSegment], piece_data: bytes) -> None:
        view = memoryview(piece_data)
        with self._io_lock:
            for segment in segments:
                handle = self._handle(segment.file_path)
                handle.seek(segment.start_offset)
                handle.write(view[segment.piece_offset : segment.piece_offset + segment.length])
                handle.flush()

    async def read_block(self, piece_index: int, begin: int, length: int) -> bytes:
        """Read ``length`` bytes of a piece starting at ``begin``.

        Raises:
            DiskError: If the range is invalid or reading fails
        """
        if begin < 0 or length < 0 or begin + length > self.torrent_info.piece_size(piece_index):
            msg = f"Block {piece_index}:{begin}+{length} is outside the piece"
            raise DiskError(msg)
        return await self._run(self._read_range, piece_index, begin, length)

    async def read_piece(self, piece_index: int) -> bytes:
        """Read a whole piece back from disk."""
        return await self.read_block(piece_index, 0, self.torrent_info.piece_size(piece_index))

    def _read_range(self, piece_index: int, begin: int, length: int) -> bytes:
        end = begin + length
        out = bytearray()
        with self._io_lock:
            for segment in self.segments_for_piece(piece_index):
                seg_start = segment.piece_offset
                seg_end = seg_start + segment.length
                lo, hi = max(begin, seg_start), min(end, seg_end)
                if lo >= hi:
                    continue
                handle = self._handle(segment.file_path)
                handle.seek(segment.start_offset + (lo - seg_start))
                chunk = handle.read(hi - lo)
                if len(chunk) != hi - lo:
                    msg = f"Short read from {segment.file_path}"
                    raise DiskError(msg)
                out += chunk
        return bytes(out)

    async def _run(self, func, *args):
        if self._executor is None:
            msg = "File assembler is not started"
            raise DiskError(msg)
        try:
            return await asyncio.get_running_loop().run_in_executor(self._executor, func, *args)
        except OSError as e:
            msg = f"Disk I/O failed: {e}"
            raise DiskError(msg, details={"errno": e.errno}) from e

