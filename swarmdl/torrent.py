"""Torrent file parsing for swarmdl.

This module turns raw ``.torrent`` bytes into a validated ``TorrentInfo``
and computes the info hash over the exact bytes of the ``info`` dictionary.
"""

from __future__ import annotations

import hashlib
from pathlib import Path
from typing import Any

from pydantic import ValidationError as PydanticValidationError

from swarmdl.bencode import decode_with_spans
from swarmdl.exceptions import BencodeError, MetadataError
from swarmdl.logging_config import get_logger
from swarmdl.models import FileInfo, TorrentInfo

HASH_LENGTH = 20


def _text(value: Any, field: str) -> str:
    if not isinstance(value, bytes):
        msg = f"Field {field!r} must be a string"
        raise MetadataError(msg)
    return value.decode("utf-8", errors="replace")


def _path_segment(value: Any, field: str) -> str:
    """A single file or directory name that cannot leave its parent."""
    part = _text(value, field)
    if part in ("", ".", "..") or any(c in part for c in "/\\\x00"):
        msg = f"Unsafe {field}: {part!r}"
        raise MetadataError(msg)
    return part


def _non_negative_int(value: Any, field: str) -> int:
    if not isinstance(value, int) or value < 0:
        msg = f"Field {field!r} must be a non-negative integer"
        raise MetadataError(msg)
    return value


class TorrentParser:
    """Parser for BitTorrent metainfo files."""

    def __init__(self) -> None:
        self.logger = get_logger(__name__)

    def parse(self, torrent_data: bytes) -> TorrentInfo:
        """Parse raw torrent bytes.

        Args:
            torrent_data: Bencoded metainfo

        Returns:
            TorrentInfo with files, piece hashes and info hash

        Raises:
            MetadataError: If the data is not bencode or misses required
                fields, or if its lengths are inconsistent
        """
        try:
            decoded, raw_values = decode_with_spans(torrent_data)
        except BencodeError as e:
            msg = f"Torrent is not valid bencode: {e.message}"
            raise MetadataError(msg) from e

        self._validate_torrent(decoded)
        result = self._extract_torrent_data(decoded, raw_values[b"info"])
        self.logger.debug(
            "Parsed torrent %s: %d files, %d pieces",
            result.name,
            len(result.files),
            result.num_pieces,
        )
        return result

    def parse_file(self, torrent_path: str | Path) -> TorrentInfo:
        """Read a local torrent file and parse it."""
        path = Path(torrent_path)
        try:
            data = path.read_bytes()
        except OSError as e:
            msg = f"Cannot read torrent file {path}: {e}"
            raise MetadataError(msg) from e
        return self.parse(data)

    def _validate_torrent(self, data: Any) -> None:
        """Validate the top-level structure."""
        if not isinstance(data, dict):
            msg = "Torrent must be a dictionary"
            raise MetadataError(msg)

        for key in (b"announce", b"info"):
            if key not in data:
                msg = f"Missing required key in torrent: {key.decode()}"
                raise MetadataError(msg)

        info = data[b"info"]
        if not isinstance(info, dict):
            msg = "Invalid info dictionary in torrent"
            raise MetadataError(msg)

        if b"name" not in info:
            msg = "Missing name in torrent info"
            raise MetadataError(msg)
        if b"length" not in info and b"files" not in info:
            msg = "Torrent must specify either length (single file) or files (multi-file)"
            raise MetadataError(msg)

        piece_length = info.get(b"piece length")
        if not isinstance(piece_length, int) or piece_length <= 0:
            msg = "Piece length must be a positive integer"
            raise MetadataError(msg)

        pieces = info.get(b"pieces")
        if not isinstance(pieces, bytes):
            msg = "Missing pieces in torrent info"
            raise MetadataError(msg)
        if len(pieces) % HASH_LENGTH != 0:
            msg = f"Invalid pieces data length: {len(pieces)} bytes (should be multiple of {HASH_LENGTH})"
            raise MetadataError(msg)

    def _extract_torrent_data(self, data: dict[bytes, Any], raw_info: bytes) -> TorrentInfo:
        """Build the TorrentInfo model."""
        info = data[b"info"]
        info_hash = hashlib.sha1(raw_info).digest()  # nosec B324 - protocol-defined

        name = _path_segment(info[b"name"], "name")
        files = self._extract_file_info(info, name)
        pieces_data = info[b"pieces"]
        piece_hashes = [
            pieces_data[i : i + HASH_LENGTH] for i in range(0, len(pieces_data), HASH_LENGTH)
        ]

        creation_date = data.get(b"creation date")
        try:
            return TorrentInfo(
                name=name,
                info_hash=info_hash,
                announce=_text(data[b"announce"], "announce"),
                announce_list=self._extract_announce_list(data.get(b"announce-list")),
                comment=_text(data[b"comment"], "comment") if b"comment" in data else None,
                created_by=_text(data[b"created by"], "created by") if b"created by" in data else None,
                creation_date=creation_date if isinstance(creation_date, int) else None,
                is_private=info.get(b"private") == 1,
                files=files,
                is_multi_file=b"files" in info,
                total_length=sum(f.length for f in files),
                piece_length=info[b"piece length"],
                pieces=piece_hashes,
            )
        except PydanticValidationError as e:
            msg = f"Inconsistent torrent metadata: {e.errors()[0]['msg']}"
            raise MetadataError(msg, details={"errors": e.errors()}) from e

    def _extract_file_info(self, info: dict[bytes, Any], name: str) -> list[FileInfo]:
        """Lay files out back to back in the torrent's byte space."""
        if b"files" not in info:
            length = _non_negative_int(info[b"length"], "length")
            return [FileInfo(path=[name], length=length, offset=0)]

        entries = info[b"files"]
        if not isinstance(entries, list) or not entries:
            msg = "Files list must be a non-empty list"
            raise MetadataError(msg)

        files = []
        offset = 0
        for entry in entries:
            if not isinstance(entry, dict):
                msg = "File entry must be a dictionary"
                raise MetadataError(msg)
            length = _non_negative_int(entry.get(b"length"), "length")
            path = entry.get(b"path")
            if not isinstance(path, list) or not path:
                msg = "File path must be a non-empty list"
                raise MetadataError(msg)
            parts = [_path_segment(part, "path") for part in path]
            files.append(FileInfo(path=parts, length=length, offset=offset))
            offset += length
        return files

    def _extract_announce_list(self, value: Any) -> list[list[str]] | None:
        if not isinstance(value, list):
            return None
        tiers = []
        for tier in value:
            if isinstance(tier, list):
                urls = [url.decode("utf-8", errors="replace") for url in tier if isinstance(url, bytes)]
                if urls:
                    tiers.append(urls)
        return tiers or None
