"""Bencoding module for BitTorrent protocol.

Implements the four bencode types: integers (``i42e``), byte strings
(``4:spam``), lists (``l...e``) and dictionaries (``d...e``). Decoding is
strict about malformed input; encoding always produces the canonical form
(dictionary keys sorted by raw bytes, integers without leading zeros).
"""

from __future__ import annotations

from typing import Any

from swarmdl.exceptions import BencodeEncodeError, MalformedEncodingError

_DIGITS = b"0123456789"


class BencodeDecoder:
    """Decoder for bencoded data."""

    def __init__(self, data: bytes, strict_order: bool = False) -> None:
        """Initialize decoder.

        Args:
            data: Bencoded bytes
            strict_order: Reject dictionaries whose keys are not sorted
        """
        if not isinstance(data, (bytes, bytearray, memoryview)):
            msg = f"Cannot decode {type(data).__name__}, expected bytes"
            raise MalformedEncodingError(msg)
        self.data = bytes(data)
        self.pos = 0
        self.strict_order = strict_order
        # Raw byte spans of top-level dictionary values, filled by decode()
        self.spans: dict[bytes, tuple[int, int]] = {}

    def decode(self) -> Any:
        """Decode a single complete value.

        Raises:
            MalformedEncodingError: If the input is truncated, malformed or
                followed by trailing bytes
        """
        self.pos = 0
        self.spans = {}
        value = self._decode_value(depth=0)
        if self.pos != len(self.data):
            msg = f"Trailing data after value at offset {self.pos}"
            raise MalformedEncodingError(msg)
        return value

    def _peek(self) -> int:
        if self.pos >= len(self.data):
            msg = "Unexpected end of data"
            raise MalformedEncodingError(msg)
        return self.data[self.pos]

    def _decode_value(self, depth: int) -> Any:
        token = self._peek()
        if token == ord("i"):
            return self._decode_int()
        if token == ord("l"):
            return self._decode_list(depth)
        if token == ord("d"):
            return self._decode_dict(depth)
        if token in _DIGITS:
            return self._decode_bytes()
        msg = f"Invalid token {chr(token)!r} at offset {self.pos}"
        raise MalformedEncodingError(msg)

    def _decode_int(self) -> int:
        start = self.pos + 1
        end = self.data.find(b"e", start)
        if end == -1:
            msg = f"Unterminated integer at offset {self.pos}"
            raise MalformedEncodingError(msg)
        raw = self.data[start:end]
        digits = raw[1:] if raw.startswith(b"-") else raw
        if not digits or any(c not in _DIGITS for c in digits):
            msg = f"Invalid integer {raw!r} at offset {self.pos}"
            raise MalformedEncodingError(msg)
        if (digits.startswith(b"0") and len(digits) > 1) or raw == b"-0":
            msg = f"Non-canonical integer {raw!r} at offset {self.pos}"
            raise MalformedEncodingError(msg)
        self.pos = end + 1
        return int(raw)

    def _decode_bytes(self) -> bytes:
        colon = self.data.find(b":", self.pos)
        if colon == -1:
            msg = f"Unterminated string length at offset {self.pos}"
            raise MalformedEncodingError(msg)
        raw_len = self.data[self.pos : colon]
        if not raw_len or any(c not in _DIGITS for c in raw_len):
            msg = f"Invalid string length {raw_len!r} at offset {self.pos}"
            raise MalformedEncodingError(msg)
        if raw_len.startswith(b"0") and len(raw_len) > 1:
            msg = f"Non-canonical string length {raw_len!r} at offset {self.pos}"
            raise MalformedEncodingError(msg)
        length = int(raw_len)
        start = colon + 1
        end = start + length
        if end > len(self.data):
            msg = f"String of length {length} truncated at offset {self.pos}"
            raise MalformedEncodingError(msg)
        self.pos = end
        return self.data[start:end]

    def _decode_list(self, depth: int) -> list[Any]:
        self.pos += 1
        result = []
        while self._peek() != ord("e"):
            result.append(self._decode_value(depth + 1))
        self.pos += 1
        return result

    def _decode_dict(self, depth: int) -> dict[bytes, Any]:
        self.pos += 1
        result: dict[bytes, Any] = {}
        last_key: bytes | None = None
        while self._peek() != ord("e"):
            if self._peek() not in _DIGITS:
                msg = f"Dictionary key must be a string at offset {self.pos}"
                raise MalformedEncodingError(msg)
            key = self._decode_bytes()
            if self.strict_order and last_key is not None and key < last_key:
                msg = f"Dictionary key {key!r} out of order"
                raise MalformedEncodingError(msg)
            last_key = key
            value_start = self.pos
            result[key] = self._decode_value(depth + 1)
            if depth == 0:
                self.spans[key] = (value_start, self.pos)
        self.pos += 1
        return result

    def raw_value(self, key: bytes) -> bytes | None:
        """Return the exact source bytes of a top-level dictionary value."""
        span = self.spans.get(key)
        if span is None:
            return None
        return self.data[span[0] : span[1]]


class BencodeEncoder:
    """Encoder producing canonical bencode."""

    def encode(self, value: Any) -> bytes:
        """Encode a value to bencode.

        Raises:
            BencodeEncodeError: If the value contains an unsupported type
        """
        out = bytearray()
        self._encode_into(value, out)
        return bytes(out)

    def _encode_into(self, value: Any, out: bytearray) -> None:
        # bool is an int subclass but has no bencode form
        if isinstance(value, bool):
            msg = "Cannot encode bool"
            raise BencodeEncodeError(msg)
        if isinstance(value, int):
            out += b"i%de" % value
        elif isinstance(value, (bytes, bytearray, memoryview)):
            raw = bytes(value)
            out += b"%d:" % len(raw)
            out += raw
        elif isinstance(value, str):
            self._encode_into(value.encode("utf-8"), out)
        elif isinstance(value, (list, tuple)):
            out += b"l"
            for item in value:
                self._encode_into(item, out)
            out += b"e"
        elif isinstance(value, dict):
            items = []
            for key, item in value.items():
                if isinstance(key, str):
                    key = key.encode("utf-8")
                elif not isinstance(key, bytes):
                    msg = f"Dictionary key must be bytes or str, got {type(key).__name__}"
                    raise BencodeEncodeError(msg)
                items.append((key, item))
            items.sort(key=lambda kv: kv[0])
            out += b"d"
            for key, item in items:
                self._encode_into(key, out)
                self._encode_into(item, out)
            out += b"e"
        else:
            msg = f"Cannot encode type {type(value).__name__}"
            raise BencodeEncodeError(msg)


def decode(data: bytes, strict_order: bool = False) -> Any:
    """Decode bencoded bytes into Python values."""
    return BencodeDecoder(data, strict_order=strict_order).decode()


def decode_with_spans(data: bytes) -> tuple[Any, dict[bytes, bytes]]:
    """Decode and also return raw source bytes of each top-level dict value.

    Used to hash the ``info`` dictionary exactly as it appears in the file.
    """
    decoder = BencodeDecoder(data)
    value = decoder.decode()
    raw = {key: decoder.data[start:end] for key, (start, end) in decoder.spans.items()}
    return value, raw


def encode(value: Any) -> bytes:
    """Encode a Python value into canonical bencode."""
    return BencodeEncoder().encode(value)


__all__ = [
    "BencodeDecoder",
    "BencodeEncodeError",
    "BencodeEncoder",
    "decode",
    "decode_with_spans",
    "encode",
]
