"""Tests for pairing image files with their .xmp sidecars."""
import os

import pytest

from core.sidecar_pairing import list_photo_directory, pair_photos, read_sidecar, sidecar_path_for


class TestSidecarPathFor:
    def test_replaces_extension(self):
        assert sidecar_path_for("/photos/a.cr2") == "/photos/a.xmp"

    def test_upper_case_extension(self):
        assert sidecar_path_for("/photos/IMG_0001.CR3") == "/photos/IMG_0001.xmp"

    def test_multiple_dots(self):
        assert sidecar_path_for("/photos/my.file.tiff") == "/photos/my.file.xmp"


class TestPairPhotos:
    def test_basic_pairing(self, tmp_path):
        (tmp_path / "a.cr2").write_bytes(b"raw")
        (tmp_path / "a.xmp").write_text("<x>A</x>", encoding="utf-8")
        (tmp_path / "b.jpg").write_bytes(b"\xff\xd8")

        pairs = pair_photos(str(tmp_path))
        assert pairs == [
            (str(tmp_path / "a.cr2"), "<x>A</x>"),
            (str(tmp_path / "b.jpg"), None),
        ]

    def test_orphan_sidecar_ignored(self, tmp_path):
        (tmp_path / "lonely.xmp").write_text("<x/>", encoding="utf-8")
        (tmp_path / "b.jpg").write_bytes(b"\xff\xd8")
        assert pair_photos(str(tmp_path)) == [(str(tmp_path / "b.jpg"), None)]

    def test_extension_match_is_case_insensitive(self, tmp_path):
        (tmp_path / "A.NEF").write_bytes(b"raw")
        (tmp_path / "A.XMP").write_text("<x/>", encoding="utf-8")
        assert pair_photos(str(tmp_path)) == [(str(tmp_path / "A.NEF"), "<x/>")]

    def test_base_name_match_is_exact(self, tmp_path):
        (tmp_path / "a.cr2").write_bytes(b"raw")
        (tmp_path / "A.xmp").write_text("<x/>", encoding="utf-8")
        assert pair_photos(str(tmp_path)) == [(str(tmp_path / "a.cr2"), None)]

    def test_byte_wise_order(self, tmp_path):
        for name in ("b.jpg", "B.jpg", "a.jpg", "_z.jpg"):
            (tmp_path / name).write_bytes(b"\xff\xd8")
        names = [os.path.basename(p) for p, _ in pair_photos(str(tmp_path))]
        assert names == ["B.jpg", "_z.jpg", "a.jpg", "b.jpg"]

    def test_hidden_and_ignored_files_skipped(self, tmp_path):
        (tmp_path / ".secret.jpg").write_bytes(b"\xff\xd8")
        (tmp_path / "._a.jpg").write_bytes(b"\xff\xd8")
        (tmp_path / "a.jpg").write_bytes(b"\xff\xd8")
        pairs = pair_photos(str(tmp_path), ignore_patterns=["._*"])
        assert [os.path.basename(p) for p, _ in pairs] == ["a.jpg"]

    def test_non_image_files_skipped(self, tmp_path):
        (tmp_path / "notes.txt").write_text("x")
        (tmp_path / "sub.jpg").mkdir()
        assert pair_photos(str(tmp_path)) == []

    def test_allowed_extensions_restrict_images(self, tmp_path):
        (tmp_path / "a.jpg").write_bytes(b"\xff\xd8")
        (tmp_path / "b.png").write_bytes(b"\x89PNG")
        pairs = pair_photos(str(tmp_path), allowed_extensions=["PNG"])
        assert [os.path.basename(p) for p, _ in pairs] == ["b.png"]

    def test_undecodable_sidecar_treated_as_absent(self, tmp_path):
        (tmp_path / "a.cr2").write_bytes(b"raw")
        (tmp_path / "a.xmp").write_bytes(b"\xff\xfe\x00bad")
        (tmp_path / "b.cr2").write_bytes(b"raw")
        (tmp_path / "b.xmp").write_text("<ok/>", encoding="utf-8")

        listing = list_photo_directory(str(tmp_path))
        assert listing.pairs() == [
            (str(tmp_path / "a.cr2"), None),
            (str(tmp_path / "b.cr2"), "<ok/>"),
        ]
        assert listing.unreadable_sidecars == {"a"}

    def test_missing_directory_gives_empty_listing(self, tmp_path):
        assert pair_photos(str(tmp_path / "nope")) == []


class TestDirectoryListing:
    def test_companions(self, tmp_path):
        for name in ("a.cr2", "a.jpg", "a.acr", "b.cr2"):
            (tmp_path / name).write_bytes(b"x")
        listing = list_photo_directory(str(tmp_path))
        a = str(tmp_path / "a.cr2")
        b = str(tmp_path / "b.cr2")
        assert listing.has_companion(a, {".jpg", ".jpeg"})
        assert listing.has_acr(a)
        assert not listing.has_companion(b, {".jpg", ".jpeg"})
        assert not listing.has_acr(b)


class TestReadSidecar:
    def test_reads_utf8(self, tmp_path):
        path = tmp_path / "a.xmp"
        path.write_text("<x>Zoë</x>", encoding="utf-8")
        assert read_sidecar(str(path)) == "<x>Zoë</x>"

    def test_missing_file(self, tmp_path):
        assert read_sidecar(str(tmp_path / "missing.xmp")) is None
