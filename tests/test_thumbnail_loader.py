"""Tests for the pooled thumbnail loader."""
import io
import threading

import pytest
from PIL import Image

from plugins.thumbnail_loader import ThumbnailLoader


def _write_jpeg(path, size=(400, 200), color=(200, 30, 30)):
    Image.new("RGB", size, color).save(path, "JPEG")
    return str(path)


@pytest.fixture()
def loader():
    tl = ThumbnailLoader(size=64, max_workers=2)
    yield tl
    tl.shutdown()


class TestDecode:
    def test_jpeg_thumbnail_fits_size(self, loader, tmp_path):
        path = _write_jpeg(tmp_path / "a.jpg")
        image = loader.request(path).result(5)
        assert image.mode == "RGB"
        assert max(image.size) <= 64
        assert image.size[0] > image.size[1]

    def test_unreadable_file_gives_none(self, loader, tmp_path):
        bad = tmp_path / "bad.jpg"
        bad.write_bytes(b"not an image")
        assert loader.request(str(bad)).result(5) is None

    def test_raw_without_decoder_gives_none(self, loader, tmp_path):
        raw = tmp_path / "a.cr2"
        raw.write_bytes(b"raw")
        assert loader.request(str(raw)).result(5) is None

    def test_raw_uses_embedded_preview(self, tmp_path):
        buf = io.BytesIO()
        Image.new("RGB", (300, 300), (0, 0, 255)).save(buf, "JPEG")

        class Decoder:
            def extract_preview(self, path):
                return buf.getvalue()

        raw = tmp_path / "a.nef"
        raw.write_bytes(b"raw")
        tl = ThumbnailLoader(size=32, max_workers=1, raw_decoder=Decoder())
        try:
            image = tl.request(str(raw)).result(5)
        finally:
            tl.shutdown()
        assert image.size == (32, 32)


class TestScheduling:
    def test_cached_result_is_reused(self, loader, tmp_path, monkeypatch):
        path = _write_jpeg(tmp_path / "a.jpg")
        first = loader.request(path).result(5)

        calls = []
        monkeypatch.setattr(loader, "_decode", lambda p: calls.append(p))
        second = loader.request(path)
        assert second.done()
        assert second.result() is first
        assert calls == []

    def test_concurrent_requests_share_one_decode(self, loader, tmp_path, monkeypatch):
        gate = threading.Event()
        calls = []

        def slow_decode(path):
            calls.append(path)
            gate.wait(5)
            return Image.new("RGB", (8, 8))

        monkeypatch.setattr(loader, "_decode", slow_decode)
        futures = [loader.request("/p/a.jpg") for _ in range(5)]
        gate.set()
        assert all(f is futures[0] for f in futures)
        futures[0].result(5)
        assert calls == ["/p/a.jpg"]

    def test_cancel_all_keeps_late_results_out_of_cache(self, tmp_path, monkeypatch):
        tl = ThumbnailLoader(size=16, max_workers=1)
        started = threading.Event()
        gate = threading.Event()

        def slow_decode(path):
            started.set()
            gate.wait(5)
            return Image.new("RGB", (8, 8))

        monkeypatch.setattr(tl, "_decode", slow_decode)
        try:
            running = tl.request("/p/a.jpg")
            queued = tl.request("/p/b.jpg")
            assert started.wait(5)

            assert tl.cancel_all() == 1
            assert queued.cancelled()
            gate.set()
            running.result(5)
            assert "/p/a.jpg" not in tl._cache
        finally:
            tl.shutdown()

    def test_evict_drops_cached_image(self, loader, tmp_path):
        path = _write_jpeg(tmp_path / "a.jpg")
        loader.request(path).result(5)
        assert path in loader._cache
        loader.evict(path)
        assert path not in loader._cache

    def test_cache_is_bounded(self, tmp_path):
        tl = ThumbnailLoader(size=16, max_workers=1, max_cached=2)
        try:
            paths = [_write_jpeg(tmp_path / f"{i}.jpg", size=(20, 20)) for i in range(3)]
            for p in paths:
                tl.request(p).result(5)
            assert list(tl._cache) == paths[1:]
        finally:
            tl.shutdown()
