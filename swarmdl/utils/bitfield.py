"""Bitfield packing and parsing for piece availability."""

from __future__ import annotations

from typing import Iterable


def parse_bitfield(bitfield: bytes, num_pieces: int) -> set[int]:
    """Parse a bitfield into a set of piece indices (bits set to 1).

    Bits are numbered big-endian within each byte; spare bits past
    ``num_pieces`` are ignored.
    """
    pieces: set[int] = set()
    if not bitfield or num_pieces <= 0:
        return pieces
    for byte_idx, byte_val in enumerate(bitfield):
        if not byte_val:
            continue
        for bit_idx in range(8):
            piece_idx = byte_idx * 8 + bit_idx
            if piece_idx >= num_pieces:
                return pieces
            if byte_val & (1 << (7 - bit_idx)):
                pieces.add(piece_idx)
    return pieces


def pack_bitfield(pieces: Iterable[int], num_pieces: int) -> bytes:
    """Pack piece indices into a ``ceil(num_pieces / 8)`` byte bitfield."""
    out = bytearray((num_pieces + 7) // 8)
    for index in pieces:
        if 0 <= index < num_pieces:
            out[index // 8] |= 1 << (7 - index % 8)
    return bytes(out)


def expected_length(num_pieces: int) -> int:
    """Byte length of a bitfield covering ``num_pieces``."""
    return (num_pieces + 7) // 8


def count_bits(bitfield: bytes) -> int:
    """Count the number of set bits in a bitfield."""
    if not bitfield:
        return 0
    return sum(bin(b).count("1") for b in bitfield)
