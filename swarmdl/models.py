"""Pydantic models for swarmdl.

Provides validated data models for torrent metadata, tracker responses,
view snapshots and configuration.
"""

from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class LogLevel(str, Enum):
    """Logging levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class TorrentStatus(str, Enum):
    """Lifecycle status of a torrent session, as shown to the UI."""

    PENDING = "Pending"
    DOWNLOADING = "Downloading"
    SEEDING = "Seeding"
    PAUSED = "Paused"
    ERROR = "Error"
    COMPLETED = "Completed"


class TrackerEvent(str, Enum):
    """Announce event values."""

    STARTED = "started"
    STOPPED = "stopped"
    COMPLETED = "completed"
    EMPTY = ""


class MessageType(int, Enum):
    """BitTorrent message types."""

    CHOKE = 0
    UNCHOKE = 1
    INTERESTED = 2
    NOT_INTERESTED = 3
    HAVE = 4
    BITFIELD = 5
    REQUEST = 6
    PIECE = 7
    CANCEL = 8


class PeerInfo(BaseModel):
    """Peer address information."""

    ip: str = Field(..., description="Peer IP address or host name")
    port: int = Field(..., ge=1, le=65535, description="Peer port number")
    peer_id: bytes | None = Field(None, description="Peer ID")

    @field_validator("ip")
    @classmethod
    def validate_ip(cls, v):
        """Validate IP address is non-empty."""
        if not v:
            msg = "IP address cannot be empty"
            raise ValueError(msg)
        return v

    def __str__(self) -> str:
        """String representation of peer info."""
        return f"{self.ip}:{self.port}"

    def __hash__(self) -> int:
        """Hash peer info for use as dictionary key."""
        return hash((self.ip, self.port))

    def __eq__(self, other) -> bool:
        """Peers are equal when their addresses match."""
        if not isinstance(other, PeerInfo):
            return False
        return self.ip == other.ip and self.port == other.port


class TrackerResponse(BaseModel):
    """Tracker response data."""

    interval: int = Field(..., ge=0, description="Announce interval in seconds")
    min_interval: int | None = Field(None, ge=0, description="Minimum announce interval")
    peers: list[PeerInfo] = Field(default_factory=list, description="List of peers")
    complete: int | None = Field(None, ge=0, description="Number of seeders")
    incomplete: int | None = Field(None, ge=0, description="Number of leechers")
    tracker_id: str | None = Field(None, description="Tracker ID")
    warning_message: str | None = Field(None, description="Warning message")


class FileInfo(BaseModel):
    """One file of a torrent, placed in the flat piece-addressed space."""

    path: list[str] = Field(..., min_length=1, description="Path segments")
    length: int = Field(..., ge=0, description="File length in bytes")
    offset: int = Field(..., ge=0, description="Byte offset of the file in the torrent")

    @property
    def name(self) -> str:
        """Last path segment."""
        return self.path[-1]

    @property
    def end(self) -> int:
        """Offset one past the last byte of this file."""
        return self.offset + self.length


class TorrentInfo(BaseModel):
    """Parsed torrent metadata."""

    name: str = Field(..., description="Torrent name")
    info_hash: bytes = Field(..., min_length=20, max_length=20, description="Info hash")
    announce: str = Field(..., description="Announce URL")
    announce_list: list[list[str]] | None = Field(None, description="Announce list")
    comment: str | None = Field(None, description="Torrent comment")
    created_by: str | None = Field(None, description="Created by")
    creation_date: int | None = Field(None, description="Creation date")
    is_private: bool = Field(default=False, description="Private flag (BEP 27)")

    files: list[FileInfo] = Field(..., min_length=1, description="File list")
    is_multi_file: bool = Field(..., description="Whether info carried a files list")
    total_length: int = Field(..., ge=0, description="Total length in bytes")

    piece_length: int = Field(..., gt=0, description="Piece length in bytes")
    pieces: list[bytes] = Field(default_factory=list, description="Piece hashes")

    @model_validator(mode="after")
    def validate_layout(self) -> TorrentInfo:
        """Check length and piece-count invariants."""
        if sum(f.length for f in self.files) != self.total_length:
            msg = "Sum of file lengths does not match total length"
            raise ValueError(msg)
        expected = -(-self.total_length // self.piece_length)
        if len(self.pieces) != expected:
            msg = f"Expected {expected} piece hashes, got {len(self.pieces)}"
            raise ValueError(msg)
        return self

    @property
    def num_pieces(self) -> int:
        """Number of pieces."""
        return len(self.pieces)

    @property
    def file_names(self) -> list[str]:
        """Display names of the files."""
        return [f.name for f in self.files]

    def piece_size(self, index: int) -> int:
        """Length of a piece; the last piece may be short."""
        if index == self.num_pieces - 1:
            return self.total_length - index * self.piece_length
        return self.piece_length


class TorrentSnapshot(BaseModel):
    """View-model snapshot consumed by the presentation layer."""

    model_config = ConfigDict(populate_by_name=True, use_enum_values=True)

    id: int = Field(..., description="Session id")
    torrent_name: str = Field(..., alias="torrentName")
    file_names: list[str] = Field(default_factory=list, alias="fileNames")
    progress: float = Field(..., ge=0.0, le=1.0)
    is_multi_file: bool = Field(..., alias="isMultiFile")
    total_length: int = Field(..., ge=0, alias="totalLength")
    status: TorrentStatus

    def to_view(self) -> dict[str, Any]:
        """Dump with the presentation layer's field names."""
        return self.model_dump(by_alias=True)


class NetworkConfig(BaseModel):
    """Network configuration."""

    listen_port: int = Field(default=6881, ge=1024, le=65535, description="Listen port")
    enable_incoming: bool = Field(default=False, description="Accept inbound peer connections")
    max_peers_per_torrent: int = Field(default=30, ge=1, le=1000, description="Maximum peers per torrent")
    pipeline_depth: int = Field(default=16, ge=1, le=128, description="Request pipeline depth")
    block_size_kib: int = Field(default=16, ge=1, le=64, description="Block size in KiB")
    connection_timeout: float = Field(default=10.0, ge=0.1, le=300.0, description="TCP connect timeout in seconds")
    handshake_timeout: float = Field(default=10.0, ge=0.1, le=300.0, description="Handshake timeout in seconds")
    request_timeout: float = Field(default=30.0, ge=0.1, le=600.0, description="Outstanding request timeout")
    peer_timeout: float = Field(default=120.0, ge=1.0, le=3600.0, description="Drop peers silent for this long")
    keep_alive_interval: float = Field(default=90.0, ge=1.0, le=3600.0, description="Keep-alive interval in seconds")
    max_upload_slots: int = Field(default=4, ge=1, le=100, description="Unchoked peer slots")
    unchoke_interval: float = Field(default=10.0, ge=0.1, le=600.0, description="Choke re-evaluation interval")
    drop_peers_on_pause: bool = Field(default=False, description="Disconnect peers when paused")


class TrackerConfig(BaseModel):
    """Tracker client configuration."""

    timeout: float = Field(default=15.0, ge=0.1, le=300.0, description="HTTP timeout in seconds")
    max_retries: int = Field(default=5, ge=1, le=100, description="Announce attempts before giving up")
    backoff_base: float = Field(default=1.0, ge=0.0, le=600.0, description="Initial retry delay")
    backoff_max: float = Field(default=60.0, ge=0.0, le=3600.0, description="Maximum retry delay")
    default_interval: int = Field(default=1800, ge=1, description="Interval when the tracker sends none")
    numwant: int = Field(default=50, ge=0, le=1000, description="Peers requested per announce")


class StrategyConfig(BaseModel):
    """Piece selection strategy configuration."""

    max_inflight_requests: int = Field(default=512, ge=1, le=100000, description="Global cap on outstanding requests")
    endgame_duplicates: int = Field(default=2, ge=1, le=10, description="Peers a block may be requested from in endgame")
    seed_after_complete: bool = Field(default=True, description="Keep serving after completion")


class DiskConfig(BaseModel):
    """Disk configuration."""

    disk_workers: int = Field(default=2, ge=1, le=32, description="Disk I/O worker threads")
    hash_workers: int = Field(default=2, ge=1, le=32, description="Hash verification worker threads")


class ObservabilityConfig(BaseModel):
    """Observability configuration."""

    log_level: LogLevel = Field(default=LogLevel.INFO, description="Log level")
    log_file: str | None = Field(None, description="Log file path")
    structured_logging: bool = Field(default=False, description="Use JSON log lines")
    log_correlation_id: bool = Field(default=True, description="Include correlation IDs")


class CatalogConfig(BaseModel):
    """Torrent catalog configuration."""

    path: str | None = Field(None, description="SQLite catalog path; None keeps ids in memory")


class Config(BaseModel):
    """Main configuration model."""

    network: NetworkConfig = Field(default_factory=NetworkConfig, description="Network configuration")
    tracker: TrackerConfig = Field(default_factory=TrackerConfig, description="Tracker configuration")
    strategy: StrategyConfig = Field(default_factory=StrategyConfig, description="Strategy configuration")
    disk: DiskConfig = Field(default_factory=DiskConfig, description="Disk configuration")
    observability: ObservabilityConfig = Field(
        default_factory=ObservabilityConfig,
        description="Observability configuration",
    )
    catalog: CatalogConfig = Field(default_factory=CatalogConfig, description="Catalog configuration")

    @model_validator(mode="after")
    def validate_config(self):
        """Validate cross-field consistency."""
        if self.tracker.backoff_max < self.tracker.backoff_base:
            msg = "tracker.backoff_max must be >= tracker.backoff_base"
            raise ValueError(msg)
        return self
