"""Exception hierarchy for swarmdl.

Every engine error derives from SwarmError so callers can catch the whole
family in one place, while the subclasses keep tracker, peer, piece and
metadata failures distinguishable.
"""

from __future__ import annotations

from typing import Any


class SwarmError(Exception):
    """Base exception for all swarmdl errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} (Details: {self.details})"
        return self.message


class ValidationError(SwarmError):
    """Data validation errors."""


class BencodeError(ValidationError):
    """Bencode encoding/decoding errors."""


class MalformedEncodingError(BencodeError):
    """Input bytes are not valid bencode."""


class BencodeEncodeError(BencodeError):
    """Value cannot be represented in bencode."""


class MetadataError(ValidationError):
    """Torrent file is unparsable or internally inconsistent."""


class ConfigurationError(ValidationError):
    """Configuration validation errors."""


class NetworkError(SwarmError):
    """Network-related errors."""


class TrackerError(NetworkError):
    """Tracker communication errors."""


class ConnectError(NetworkError):
    """Peer connection could not be established."""


class ProtocolError(SwarmError):
    """BitTorrent peer protocol violations."""


class HandshakeError(ProtocolError):
    """Handshake protocol errors."""


class MessageError(ProtocolError):
    """Message parsing/serialization errors."""


class VerificationError(SwarmError):
    """Piece hash mismatch."""


class DiskError(SwarmError):
    """Disk I/O related errors."""
