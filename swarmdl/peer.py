"""Peer wire protocol messages.

This module implements the BitTorrent handshake and the length-prefixed
peer messages, plus a buffering decoder for byte streams and a reader
helper for ``asyncio.StreamReader``.
"""

from __future__ import annotations

import asyncio
import struct
from typing import ClassVar

from swarmdl.exceptions import HandshakeError, MessageError
from swarmdl.models import MessageType

HANDSHAKE_LENGTH = 68
# Largest frame we accept: a 1 MiB bitfield or block plus headers
MAX_MESSAGE_LENGTH = (1 << 20) + 13

_LENGTH = struct.Struct("!I")
_HEADER = struct.Struct("!IB")


class Handshake:
    """BitTorrent handshake message."""

    PROTOCOL_STRING: bytes = b"BitTorrent protocol"
    RESERVED_BYTES: bytes = b"\x00" * 8

    def __init__(self, info_hash: bytes, peer_id: bytes, reserved: bytes = RESERVED_BYTES) -> None:
        """Initialize handshake.

        Args:
            info_hash: 20-byte SHA-1 hash of info dictionary
            peer_id: 20-byte peer ID
            reserved: 8 extension bytes
        """
        if len(info_hash) != 20:
            msg = f"Info hash must be 20 bytes, got {len(info_hash)}"
            raise HandshakeError(msg)
        if len(peer_id) != 20:
            msg = f"Peer ID must be 20 bytes, got {len(peer_id)}"
            raise HandshakeError(msg)
        self.info_hash = info_hash
        self.peer_id = peer_id
        self.reserved = reserved

    def encode(self) -> bytes:
        """Encode handshake to bytes.

        Format: <pstrlen><pstr><reserved><info_hash><peer_id>, 68 bytes total.
        """
        return (
            bytes([len(self.PROTOCOL_STRING)])
            + self.PROTOCOL_STRING
            + self.reserved
            + self.info_hash
            + self.peer_id
        )

    @classmethod
    def decode(cls, data: bytes) -> Handshake:
        """Decode handshake from bytes.

        Raises:
            HandshakeError: If the data is not a 68-byte BitTorrent handshake
        """
        if len(data) != HANDSHAKE_LENGTH:
            msg = f"Handshake must be {HANDSHAKE_LENGTH} bytes, got {len(data)}"
            raise HandshakeError(msg)
        if data[0] != len(cls.PROTOCOL_STRING):
            msg = f"Invalid protocol length: {data[0]}"
            raise HandshakeError(msg)
        if data[1:20] != cls.PROTOCOL_STRING:
            msg = f"Invalid protocol string: {data[1:20]!r}"
            raise HandshakeError(msg)
        # Reserved bits are ignored; no extensions are negotiated
        return cls(data[28:48], data[48:68], reserved=data[20:28])


class PeerMessage:
    """Base class for peer messages."""

    message_id: ClassVar[int] = -1
    payload_format: ClassVar[struct.Struct | None] = None

    def encode(self) -> bytes:
        """Encode the full frame, length prefix included."""
        payload = self._payload()
        return _HEADER.pack(len(payload) + 1, self.message_id) + payload

    def _payload(self) -> bytes:
        return b""

    @classmethod
    def decode(cls, data: bytes) -> PeerMessage:
        """Decode a full frame, length prefix included.

        Raises:
            MessageError: If the frame is truncated or has the wrong id
        """
        if len(data) < _HEADER.size:
            msg = f"Message too short: {len(data)} bytes"
            raise MessageError(msg)
        length, message_id = _HEADER.unpack_from(data)
        if length != len(data) - 4:
            msg = f"Length prefix {length} does not match frame size {len(data) - 4}"
            raise MessageError(msg)
        if message_id != cls.message_id:
            msg = f"Expected message id {cls.message_id}, got {message_id}"
            raise MessageError(msg)
        return cls.from_payload(bytes(data[5:]))

    @classmethod
    def from_payload(cls, payload: bytes) -> PeerMessage:
        """Build the message from the bytes after the id."""
        if payload:
            msg = f"{cls.__name__} takes no payload, got {len(payload)} bytes"
            raise MessageError(msg)
        return cls()

    def __eq__(self, other) -> bool:
        return type(self) is type(other) and self.__dict__ == other.__dict__

    def __repr__(self) -> str:
        fields = ", ".join(
            f"{key}={len(value)}B" if isinstance(value, bytes) else f"{key}={value}"
            for key, value in self.__dict__.items()
        )
        return f"{type(self).__name__}({fields})"


class KeepAliveMessage(PeerMessage):
    """Keep-alive message (length = 0)."""

    def encode(self) -> bytes:
        return _LENGTH.pack(0)

    @classmethod
    def decode(cls, data: bytes) -> KeepAliveMessage:
        if len(data) != 4 or _LENGTH.unpack(data)[0] != 0:
            msg = "Keep-alive must be four zero bytes"
            raise MessageError(msg)
        return cls()


class ChokeMessage(PeerMessage):
    message_id = MessageType.CHOKE


class UnchokeMessage(PeerMessage):
    message_id = MessageType.UNCHOKE


class InterestedMessage(PeerMessage):
    message_id = MessageType.INTERESTED


class NotInterestedMessage(PeerMessage):
    message_id = MessageType.NOT_INTERESTED


class HaveMessage(PeerMessage):
    """Announces one newly verified piece."""

    message_id = MessageType.HAVE
    payload_format = struct.Struct("!I")

    def __init__(self, piece_index: int):
        self.piece_index = piece_index

    def _payload(self) -> bytes:
        return self.payload_format.pack(self.piece_index)

    @classmethod
    def from_payload(cls, payload: bytes) -> HaveMessage:
        return cls(*_unpack(cls, payload))


class BitfieldMessage(PeerMessage):
    """Packed set of the pieces a peer holds."""

    message_id = MessageType.BITFIELD

    def __init__(self, bitfield: bytes):
        self.bitfield = bitfield

    def _payload(self) -> bytes:
        return self.bitfield

    @classmethod
    def from_payload(cls, payload: bytes) -> BitfieldMessage:
        return cls(payload)


class RequestMessage(PeerMessage):
    """Asks for ``length`` bytes of a piece starting at ``begin``."""

    message_id = MessageType.REQUEST
    payload_format = struct.Struct("!III")

    def __init__(self, piece_index: int, begin: int, length: int):
        self.piece_index = piece_index
        self.begin = begin
        self.length = length

    def _payload(self) -> bytes:
        return self.payload_format.pack(self.piece_index, self.begin, self.length)

    @classmethod
    def from_payload(cls, payload: bytes) -> RequestMessage:
        return cls(*_unpack(cls, payload))


class CancelMessage(RequestMessage):
    """Withdraws an earlier request."""

    message_id = MessageType.CANCEL


class PieceMessage(PeerMessage):
    """Carries one block of piece data."""

    message_id = MessageType.PIECE
    payload_format = struct.Struct("!II")

    def __init__(self, piece_index: int, begin: int, block: bytes):
        self.piece_index = piece_index
        self.begin = begin
        self.block = block

    def _payload(self) -> bytes:
        return self.payload_format.pack(self.piece_index, self.begin) + self.block

    @classmethod
    def from_payload(cls, payload: bytes) -> PieceMessage:
        if len(payload) < cls.payload_format.size:
            msg = f"Piece message too short: {len(payload)} bytes"
            raise MessageError(msg)
        piece_index, begin = cls.payload_format.unpack_from(payload)
        return cls(piece_index, begin, payload[cls.payload_format.size :])


class UnknownMessage(PeerMessage):
    """Message with an id this client does not implement; it is skipped."""

    def __init__(self, message_id: int, payload: bytes = b""):
        self.message_id = message_id
        self.payload = payload

    def _payload(self) -> bytes:
        return self.payload


MESSAGE_TYPES: dict[int, type[PeerMessage]] = {
    cls.message_id: cls
    for cls in (
        ChokeMessage,
        UnchokeMessage,
        InterestedMessage,
        NotInterestedMessage,
        HaveMessage,
        BitfieldMessage,
        RequestMessage,
        PieceMessage,
        CancelMessage,
    )
}


def _unpack(cls: type[PeerMessage], payload: bytes) -> tuple[int, ...]:
    fmt = cls.payload_format
    if fmt is None or len(payload) != fmt.size:
        msg = f"{cls.__name__} payload must be {fmt.size if fmt else 0} bytes, got {len(payload)}"
        raise MessageError(msg)
    return fmt.unpack(payload)


def decode_body(body: bytes) -> PeerMessage:
    """Decode a message body (everything after the length prefix)."""
    if not body:
        return KeepAliveMessage()
    message_cls = MESSAGE_TYPES.get(body[0])
    if message_cls is None:
        return UnknownMessage(body[0], bytes(body[1:]))
    return message_cls.from_payload(bytes(body[1:]))


class MessageDecoder:
    """Incremental decoder that splits a byte stream into messages."""

    def __init__(self, max_message_length: int = MAX_MESSAGE_LENGTH):
        self.max_message_length = max_message_length
        self.buffer = bytearray()

    def feed(self, data: bytes) -> list[PeerMessage]:
        """Buffer ``data`` and return every message completed by it.

        Raises:
            MessageError: On an oversized frame or a malformed message
        """
        self.buffer.extend(data)
        messages = []
        while len(self.buffer) >= 4:
            (length,) = _LENGTH.unpack_from(self.buffer)
            if length > self.max_message_length:
                msg = f"Message length {length} exceeds limit {self.max_message_length}"
                raise MessageError(msg)
            if len(self.buffer) < 4 + length:
                break
            body = bytes(self.buffer[4 : 4 + length])
            del self.buffer[: 4 + length]
            messages.append(decode_body(body))
        return messages


async def read_message(
    reader: asyncio.StreamReader,
    max_message_length: int = MAX_MESSAGE_LENGTH,
) -> PeerMessage:
    """Read exactly one message from a stream.

    Raises:
        MessageError: On an oversized frame or a malformed message
        asyncio.IncompleteReadError: If the stream ends mid-message
    """
    (length,) = _LENGTH.unpack(await reader.readexactly(4))
    if length > max_message_length:
        msg = f"Message length {length} exceeds limit {max_message_length}"
        raise MessageError(msg)
    body = await reader.readexactly(length) if length else b""
    return decode_body(body)
