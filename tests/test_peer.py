"""Tests for peer wire messages."""

import asyncio
import struct

import pytest

from swarmdl.exceptions import HandshakeError, MessageError
from swarmdl.models import MessageType
from swarmdl.peer import (
    HANDSHAKE_LENGTH,
    BitfieldMessage,
    CancelMessage,
    ChokeMessage,
    Handshake,
    HaveMessage,
    InterestedMessage,
    KeepAliveMessage,
    MessageDecoder,
    NotInterestedMessage,
    PieceMessage,
    RequestMessage,
    UnchokeMessage,
    UnknownMessage,
    decode_body,
    read_message,
)

INFO_HASH = bytes(range(20))
PEER_ID = b"-SD0100-000000000001"


class TestHandshake:
    def test_encode_layout(self):
        data = Handshake(INFO_HASH, PEER_ID).encode()
        assert len(data) == HANDSHAKE_LENGTH
        assert data[0] == 19
        assert data[1:20] == b"BitTorrent protocol"
        assert data[20:28] == b"\x00" * 8
        assert data[28:48] == INFO_HASH
        assert data[48:68] == PEER_ID

    def test_decode(self):
        data = Handshake(INFO_HASH, PEER_ID, reserved=b"\x00" * 5 + b"\x10\x00\x05").encode()
        handshake = Handshake.decode(data)
        assert handshake.info_hash == INFO_HASH
        assert handshake.peer_id == PEER_ID
        # Extension bits are accepted and ignored
        assert handshake.reserved == b"\x00" * 5 + b"\x10\x00\x05"

    @pytest.mark.parametrize(
        "data",
        [
            b"\x13BitTorrent protocol" + b"\x00" * 47,
            b"\x12BitTorrent protocol" + b"\x00" * 48,
            b"\x13BitTorrent protocoX" + b"\x00" * 48,
        ],
    )
    def test_decode_invalid(self, data):
        with pytest.raises(HandshakeError):
            Handshake.decode(data)

    def test_field_lengths_checked(self):
        with pytest.raises(HandshakeError):
            Handshake(b"short", PEER_ID)
        with pytest.raises(HandshakeError):
            Handshake(INFO_HASH, b"short")


class TestMessages:
    def test_keep_alive(self):
        assert KeepAliveMessage().encode() == b"\x00\x00\x00\x00"
        assert KeepAliveMessage.decode(b"\x00\x00\x00\x00") == KeepAliveMessage()

    @pytest.mark.parametrize(
        ("cls", "message_id"),
        [
            (ChokeMessage, 0),
            (UnchokeMessage, 1),
            (InterestedMessage, 2),
            (NotInterestedMessage, 3),
        ],
    )
    def test_state_messages(self, cls, message_id):
        data = cls().encode()
        assert data == struct.pack("!IB", 1, message_id)
        assert cls.decode(data) == cls()

    def test_have(self):
        data = HaveMessage(42).encode()
        assert data == struct.pack("!IBI", 5, MessageType.HAVE, 42)
        assert HaveMessage.decode(data).piece_index == 42

    def test_bitfield(self):
        data = BitfieldMessage(b"\xff\x80").encode()
        assert data == struct.pack("!IB", 3, MessageType.BITFIELD) + b"\xff\x80"
        assert BitfieldMessage.decode(data).bitfield == b"\xff\x80"

    def test_request_and_cancel(self):
        request = RequestMessage(1, 16384, 16384)
        assert request.encode() == struct.pack("!IBIII", 13, 6, 1, 16384, 16384)
        cancel = CancelMessage(1, 16384, 16384)
        assert cancel.encode() == struct.pack("!IBIII", 13, 8, 1, 16384, 16384)
        assert CancelMessage.decode(cancel.encode()) == cancel
        assert request != cancel

    def test_piece(self):
        message = PieceMessage(3, 32, b"block-data")
        data = message.encode()
        assert data[:13] == struct.pack("!IBII", 19, 7, 3, 32)
        decoded = PieceMessage.decode(data)
        assert (decoded.piece_index, decoded.begin, decoded.block) == (3, 32, b"block-data")

    def test_wrong_id(self):
        with pytest.raises(MessageError):
            HaveMessage.decode(ChokeMessage().encode())

    def test_length_prefix_mismatch(self):
        with pytest.raises(MessageError):
            HaveMessage.decode(struct.pack("!IBI", 9, 4, 1))

    def test_wrong_payload_size(self):
        with pytest.raises(MessageError):
            decode_body(bytes([MessageType.HAVE]) + b"\x00\x01")
        with pytest.raises(MessageError):
            decode_body(bytes([MessageType.CHOKE]) + b"\x00")
        with pytest.raises(MessageError):
            decode_body(bytes([MessageType.PIECE]) + b"\x00\x00")

    def test_unknown_id_is_kept(self):
        message = decode_body(bytes([20]) + b"ext")
        assert isinstance(message, UnknownMessage)
        assert message.message_id == 20
        assert message.payload == b"ext"

    def test_empty_body_is_keep_alive(self):
        assert isinstance(decode_body(b""), KeepAliveMessage)


class TestMessageDecoder:
    def test_split_and_coalesced_frames(self):
        stream = (
            KeepAliveMessage().encode()
            + UnchokeMessage().encode()
            + HaveMessage(7).encode()
            + PieceMessage(0, 0, b"x" * 100).encode()
        )
        decoder = MessageDecoder()
        messages = []
        for i in range(0, len(stream), 7):
            messages.extend(decoder.feed(stream[i : i + 7]))
        assert [type(m) for m in messages] == [KeepAliveMessage, UnchokeMessage, HaveMessage, PieceMessage]
        assert messages[3].block == b"x" * 100
        assert not decoder.buffer

    def test_oversized_frame(self):
        decoder = MessageDecoder(max_message_length=64)
        with pytest.raises(MessageError):
            decoder.feed(struct.pack("!I", 65))


class TestReadMessage:
    @pytest.mark.asyncio
    async def test_reads_one_message_at_a_time(self):
        reader = asyncio.StreamReader()
        reader.feed_data(HaveMessage(1).encode() + KeepAliveMessage().encode())
        reader.feed_eof()
        assert await read_message(reader) == HaveMessage(1)
        assert isinstance(await read_message(reader), KeepAliveMessage)
        with pytest.raises(asyncio.IncompleteReadError):
            await read_message(reader)

    @pytest.mark.asyncio
    async def test_rejects_oversized(self):
        reader = asyncio.StreamReader()
        reader.feed_data(struct.pack("!I", 1 << 24))
        with pytest.raises(MessageError):
            await read_message(reader)
