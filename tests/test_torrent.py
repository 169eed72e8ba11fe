"""Tests for metainfo parsing."""

import hashlib

import pytest

from swarmdl.bencode import decode_with_spans, encode
from swarmdl.exceptions import MetadataError
from swarmdl.models import TorrentStatus
from swarmdl.session import AsyncTorrentSession
from swarmdl.torrent import TorrentParser


class TestSingleFile:
    def test_a_txt_scenario(self, torrent_builder, output_dir):
        """Single file a.txt of 10 bytes in one 10-byte piece."""
        raw = torrent_builder(name="a.txt", content=b"0123456789", piece_length=10)
        info = TorrentParser().parse(raw)

        assert info.name == "a.txt"
        assert info.is_multi_file is False
        assert info.total_length == 10
        assert info.num_pieces == 1
        assert info.file_names == ["a.txt"]

        session = AsyncTorrentSession(info, output_dir, session_id=1)
        view = session.snapshot().to_view()
        assert view == {
            "id": 1,
            "torrentName": "a.txt",
            "fileNames": ["a.txt"],
            "progress": 0.0,
            "isMultiFile": False,
            "totalLength": 10,
            "status": "Pending",
        }
        assert session.status is TorrentStatus.PENDING

    def test_info_hash_is_sha1_of_raw_info(self, torrent_builder):
        raw = torrent_builder()
        _, spans = decode_with_spans(raw)
        info = TorrentParser().parse(raw)
        assert info.info_hash == hashlib.sha1(spans[b"info"]).digest()

    def test_info_hash_uses_source_key_order(self):
        # Info keys deliberately out of canonical order
        pieces = hashlib.sha1(b"abc").digest()
        raw_info = b"d4:name1:x6:lengthi3e12:piece lengthi4e6:pieces20:" + pieces + b"e"
        raw = b"d8:announce5:http:4:info" + raw_info + b"e"
        info = TorrentParser().parse(raw)
        assert info.info_hash == hashlib.sha1(raw_info).digest()

    def test_optional_fields(self, torrent_builder):
        raw = torrent_builder(
            **{
                "comment": "hello",
                "created by": "tests",
                "creation date": 1700000000,
                "announce-list": [["http://a.test/announce"], ["http://b.test/announce", "udp://c.test:80"]],
            },
        )
        info = TorrentParser().parse(raw)
        assert info.comment == "hello"
        assert info.created_by == "tests"
        assert info.creation_date == 1700000000
        assert info.announce_list == [
            ["http://a.test/announce"],
            ["http://b.test/announce", "udp://c.test:80"],
        ]

    def test_last_piece_is_short(self, multi_piece_torrent):
        assert multi_piece_torrent.num_pieces == 7
        assert multi_piece_torrent.piece_size(0) == 16
        assert multi_piece_torrent.piece_size(6) == 4

    def test_empty_file(self, torrent_builder):
        info = TorrentParser().parse(torrent_builder(content=b"", piece_length=16))
        assert info.total_length == 0
        assert info.num_pieces == 0


class TestMultiFile:
    def test_files_laid_out_back_to_back(self, torrent_builder):
        content = b"a" * 5 + b"b" * 20 + b"c" * 7
        raw = torrent_builder(
            name="bundle",
            content=content,
            piece_length=8,
            files=[(["one.txt"], 5), (["sub", "two.txt"], 20), (["three.txt"], 7)],
        )
        info = TorrentParser().parse(raw)

        assert info.is_multi_file is True
        assert info.total_length == 32
        assert info.num_pieces == 4
        assert [f.offset for f in info.files] == [0, 5, 25]
        assert info.files[1].path == ["sub", "two.txt"]
        assert info.file_names == ["one.txt", "two.txt", "three.txt"]

    def test_single_entry_files_list_is_multi_file(self, torrent_builder):
        raw = torrent_builder(name="dir", content=b"x" * 4, piece_length=4, files=[(["x.bin"], 4)])
        assert TorrentParser().parse(raw).is_multi_file is True

    @pytest.mark.parametrize(
        "bad_path",
        [[".."], ["a", ".", "b"], [""], [], ["a/../../../escaped.txt"], ["/abs"], ["a\\..\\b"], ["nul\x00"]],
    )
    def test_unsafe_paths_rejected(self, torrent_builder, bad_path):
        raw = torrent_builder(name="dir", content=b"x" * 4, piece_length=4, files=[(bad_path, 4)])
        with pytest.raises(MetadataError):
            TorrentParser().parse(raw)

    @pytest.mark.parametrize("bad_name", ["..", "/tmp/abs.txt", "up/../../x", ""])
    def test_unsafe_names_rejected(self, torrent_builder, bad_name):
        with pytest.raises(MetadataError, match="Unsafe name"):
            TorrentParser().parse(torrent_builder(name=bad_name))
        with pytest.raises(MetadataError, match="Unsafe name"):
            TorrentParser().parse(torrent_builder(name=bad_name, content=b"x" * 4, files=[(["x.bin"], 4)]))


class TestInvalidMetadata:
    def test_not_bencode(self):
        with pytest.raises(MetadataError, match="not valid bencode"):
            TorrentParser().parse(b"this is not a torrent")

    def test_not_a_dict(self):
        with pytest.raises(MetadataError):
            TorrentParser().parse(encode([1, 2, 3]))

    @pytest.mark.parametrize("missing", ["announce", "info"])
    def test_missing_top_level_key(self, missing):
        meta = {"announce": "http://t.test/", "info": {"name": "x", "length": 1, "piece length": 1, "pieces": b"\0" * 20}}
        del meta[missing]
        with pytest.raises(MetadataError, match=missing):
            TorrentParser().parse(encode(meta))

    @pytest.mark.parametrize(
        "info",
        [
            {"length": 1, "piece length": 1, "pieces": b"\0" * 20},
            {"name": "x", "piece length": 1, "pieces": b"\0" * 20},
            {"name": "x", "length": 1, "piece length": 0, "pieces": b"\0" * 20},
            {"name": "x", "length": 1, "piece length": 1},
            {"name": "x", "length": 1, "piece length": 1, "pieces": b"\0" * 19},
            {"name": "x", "length": -1, "piece length": 1, "pieces": b""},
        ],
    )
    def test_bad_info_dict(self, info):
        with pytest.raises(MetadataError):
            TorrentParser().parse(encode({"announce": "http://t.test/", "info": info}))

    def test_hash_count_must_match_length(self):
        # 3 pieces worth of data but only one hash
        info = {"name": "x", "length": 30, "piece length": 10, "pieces": b"\0" * 20}
        with pytest.raises(MetadataError, match="piece hashes"):
            TorrentParser().parse(encode({"announce": "http://t.test/", "info": info}))

    def test_parse_file_missing(self, tmp_path):
        with pytest.raises(MetadataError):
            TorrentParser().parse_file(tmp_path / "nope.torrent")

    def test_parse_file(self, tmp_path, torrent_builder):
        path = tmp_path / "a.torrent"
        path.write_bytes(torrent_builder())
        assert TorrentParser().parse_file(path).name == "a.txt"
