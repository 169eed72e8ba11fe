"""Tests for bitfield and backoff helpers."""

from swarmdl.utils import ExponentialBackoff, count_bits, pack_bitfield, parse_bitfield
from swarmdl.utils.bitfield import expected_length


class TestBitfield:
    def test_parse_big_endian_bits(self):
        assert parse_bitfield(b"\xa0", 8) == {0, 2}
        assert parse_bitfield(b"\x00\x01", 16) == {15}

    def test_spare_bits_ignored(self):
        # 10 pieces; the trailing six bits of byte two are spare
        assert parse_bitfield(b"\xff\xff", 10) == set(range(10))

    def test_pack(self):
        assert pack_bitfield({0, 2}, 8) == b"\xa0"
        assert pack_bitfield({9}, 10) == b"\x00\x40"
        assert pack_bitfield({99}, 10) == b"\x00\x00"

    def test_pack_parse_agree(self):
        pieces = {0, 3, 8, 12, 20}
        assert parse_bitfield(pack_bitfield(pieces, 21), 21) == pieces

    def test_lengths_and_counts(self):
        assert expected_length(0) == 0
        assert expected_length(8) == 1
        assert expected_length(9) == 2
        assert count_bits(b"\xf0\x01") == 5
        assert count_bits(b"") == 0


class TestExponentialBackoff:
    def test_grows_and_caps(self):
        backoff = ExponentialBackoff(base_delay=1.0, multiplier=2.0, max_delay=5.0, jitter=0.0)
        assert [backoff.next_delay(i) for i in range(5)] == [1.0, 2.0, 4.0, 5.0, 5.0]

    def test_jitter_stays_in_bounds(self):
        backoff = ExponentialBackoff(base_delay=2.0, max_delay=60.0, jitter=0.1)
        for _ in range(50):
            assert 1.8 <= backoff.next_delay(0) <= 2.2

    def test_delays_between_attempts(self):
        backoff = ExponentialBackoff(base_delay=1.0, max_delay=10.0, jitter=0.0)
        assert list(backoff.delays(4)) == [1.0, 2.0, 4.0]
        assert list(backoff.delays(1)) == []
