"""Tests for the photoindex command-line shell."""
import pytest
from PIL import Image

from cli.photoindex import build_parser, main, run
from core.library import PhotoLibrary


def _run(library, *argv):
    return run(build_parser().parse_args(list(argv)), library)


class TestCommands:
    def test_add_root_then_roots(self, library, photo_tree, capsys):
        assert _run(library, "add-root", str(photo_tree)) == 0
        assert _run(library, "roots") == 0
        out = capsys.readouterr().out.splitlines()
        assert out == [str(photo_tree), str(photo_tree)]

    def test_remove_unknown_root(self, library, photo_tree, capsys):
        assert _run(library, "remove-root", str(photo_tree)) == 1
        assert "not a root" in capsys.readouterr().err

    def test_tree_markers(self, library, photo_tree, capsys):
        library.add_root(str(photo_tree))
        capsys.readouterr()
        _run(library, "tree")
        lines = capsys.readouterr().out.splitlines()
        assert lines[0] == f"- {photo_tree}"
        assert "  - 2024" in lines
        assert "      february" in lines
        assert "    + trips" in lines

    def test_tree_depth(self, library, photo_tree, capsys):
        library.add_root(str(photo_tree))
        _run(library, "tree", "--depth", "1")
        lines = capsys.readouterr().out.splitlines()
        assert len(lines) == 3

    def test_ls(self, library, photo_tree, capsys):
        _run(library, "ls", str(photo_tree / "2024" / "january"))
        lines = capsys.readouterr().out.splitlines()
        assert [line.split()[-1] for line in lines] == ["a.cr2", "b.jpg", "c.cr2"]
        assert lines[0].startswith("RJ- **")
        assert "Review" in lines[0]

    def test_ls_filters(self, library, photo_tree, capsys):
        _run(library, "ls", str(photo_tree / "2024" / "january"), "--label", "No Label")
        lines = capsys.readouterr().out.splitlines()
        assert [line.split()[-1] for line in lines] == ["b.jpg", "c.cr2"]

    def test_rate(self, library, photo_tree, capsys):
        target = photo_tree / "2024" / "january" / "c.cr2"
        assert _run(library, "rate", "5", str(target)) == 0
        assert "1 photo(s) rated 5" in capsys.readouterr().out
        assert 'xmp:Rating="5"' in (target.parent / "c.xmp").read_text(encoding="utf-8")

    def test_rate_unlisted_file(self, library, photo_tree, capsys):
        hidden = photo_tree / "2024" / "january" / "a.jpg"
        assert _run(library, "rate", "3", str(hidden)) == 0
        captured = capsys.readouterr()
        assert "not a listed photo" in captured.err
        assert "0 photo(s)" in captured.out

    def test_label_and_clear(self, library, photo_tree, capsys):
        target = photo_tree / "2024" / "january" / "b.jpg"
        _run(library, "label", "Select", str(target))
        assert "labelled 'Select'" in capsys.readouterr().out
        _run(library, "label", str(target))
        assert "1 photo(s) cleared" in capsys.readouterr().out

    def test_label_without_files(self, library, capsys):
        assert _run(library, "label", "Select") == 2


class TestMain:
    def test_roots_with_fresh_config(self, tmp_path, monkeypatch, capsys):
        monkeypatch.setenv("HOME", str(tmp_path))
        assert main(["--config", str(tmp_path / "config.yaml"), "roots"]) == 0
        assert str(tmp_path) not in capsys.readouterr().err
        assert (tmp_path / ".photoindex" / "settings.db").exists()

    def test_denied_root_reports_unavailable(self, tmp_path, monkeypatch, capsys):
        monkeypatch.setenv("HOME", str(tmp_path))
        code = main(["--config", str(tmp_path / "config.yaml"), "add-root", str(tmp_path / "missing")])
        assert code == 1
        assert "folder unavailable" in capsys.readouterr().err

    def test_rejects_bad_rating(self):
        with pytest.raises(SystemExit):
            build_parser().parse_args(["rate", "9", "a.jpg"])


class TestCopyAndThumbnail:
    def test_copy(self, library, photo_tree, tmp_path, capsys):
        dest = tmp_path / "export"
        dest.mkdir()
        jan = photo_tree / "2024" / "january"
        assert _run(library, "copy", str(dest), str(jan / "a.cr2"), str(jan / "b.jpg")) == 0
        assert "3 file(s) copied, 0 already present" in capsys.readouterr().out
        assert sorted(p.name for p in dest.iterdir()) == ["a.cr2", "a.jpg", "b.jpg"]

    def test_copy_into_missing_folder(self, library, photo_tree, tmp_path, capsys):
        target = photo_tree / "2024" / "january" / "b.jpg"
        assert _run(library, "copy", str(tmp_path / "nowhere"), str(target)) == 2
        assert "not a folder" in capsys.readouterr().err

    def test_thumbnail_written(self, config, settings, tmp_path, capsys):
        folder = tmp_path / "pics"
        folder.mkdir()
        Image.new("RGB", (300, 200), (200, 30, 30)).save(folder / "red.jpg", "JPEG")
        output = tmp_path / "thumb.jpg"
        lib = PhotoLibrary(config, settings, watch=False, prefetch_thumbnails=False)
        try:
            assert _run(lib, "thumbnail", str(folder / "red.jpg"), str(output)) == 0
        finally:
            lib.close()
        assert str(output) in capsys.readouterr().out
        with Image.open(output) as thumb:
            assert max(thumb.size) <= 64

    def test_thumbnail_of_undecodable_file(self, config, settings, tmp_path, capsys):
        folder = tmp_path / "pics"
        folder.mkdir()
        (folder / "broken.jpg").write_bytes(b"not a jpeg")
        lib = PhotoLibrary(config, settings, watch=False, prefetch_thumbnails=False)
        try:
            assert _run(lib, "thumbnail", str(folder / "broken.jpg"), str(tmp_path / "t.jpg")) == 1
        finally:
            lib.close()
        assert "no thumbnail" in capsys.readouterr().err
