"""Shared helpers used by the tracker, peer and piece layers."""

from __future__ import annotations

from swarmdl.utils.backoff import ExponentialBackoff
from swarmdl.utils.bitfield import count_bits, pack_bitfield, parse_bitfield

__all__ = [
    "ExponentialBackoff",
    "count_bits",
    "pack_bitfield",
    "parse_bitfield",
]
