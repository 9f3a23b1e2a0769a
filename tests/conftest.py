"""
Shared pytest fixtures for photoindex tests.
"""
import os
import sys
import threading

# Ensure project root is on path for all tests
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

import pytest

from core.settings_store import SettingsStore


class MockConfigManager:
    """Minimal ConfigManager substitute that accepts a plain dict.

    Only implements the dotted ``get`` used by the library. The watcher is
    off by default so tests never start an observer thread.
    """

    def __init__(self, overrides: dict | None = None):
        self._cfg: dict = {
            "library": {
                "depth_limit": 2,
                "max_workers": 2,
                "ignore_patterns": ["._*"],
                "hide_raw_companion_jpegs": True,
            },
            "watcher": {"enabled": False, "debounce_seconds": 0.05},
            "thumbnails": {"size": 64, "max_workers": 1},
        }
        for key, value in (overrides or {}).items():
            node = self._cfg
            parts = key.split(".")
            for part in parts[:-1]:
                node = node.setdefault(part, {})
            node[parts[-1]] = value

    def get(self, key: str, default=None):
        keys = key.split(".")
        val = self._cfg
        for k in keys:
            if isinstance(val, dict):
                val = val.get(k)
            else:
                return default
        return val if val is not None else default


class FakeThumbnailLoader:
    """Records every call in order so tests can check cancel-before-request."""

    def __init__(self):
        self.calls = []
        self._lock = threading.Lock()

    def request(self, path):
        with self._lock:
            self.calls.append(("request", path))

    def cancel_all(self):
        with self._lock:
            self.calls.append(("cancel_all", None))
        return 0

    def evict(self, path):
        with self._lock:
            self.calls.append(("evict", path))

    def shutdown(self):
        pass


class FakeAccessBackend:
    """Always-succeeding backend that counts start/stop calls per path."""

    def __init__(self, denied=()):
        self.denied = set(denied)
        self.started = []
        self.stopped = []

    def create_token(self, path):
        return path.encode("utf-8")

    def resolve_token(self, token):
        return token.decode("utf-8")

    def start_access(self, path):
        if path in self.denied:
            return False
        self.started.append(path)
        return True

    def stop_access(self, path):
        self.stopped.append(path)


@pytest.fixture()
def config():
    return MockConfigManager()


@pytest.fixture()
def settings(tmp_path):
    store = SettingsStore(str(tmp_path / "state" / "settings.db"))
    yield store
    store.close()


@pytest.fixture()
def photo_tree(tmp_path):
    """
    photos/
      2024/
        january/   a.cr2 a.xmp a.jpg b.jpg c.cr2 orphan.xmp
        february/
      2025/
        trips/
          alps/
      .hidden/
    """
    root = tmp_path / "photos"
    jan = root / "2024" / "january"
    jan.mkdir(parents=True)
    (root / "2024" / "february").mkdir()
    (root / "2025" / "trips" / "alps").mkdir(parents=True)
    (root / ".hidden").mkdir()

    (jan / "a.cr2").write_bytes(b"raw")
    (jan / "a.jpg").write_bytes(b"\xff\xd8")
    (jan / "b.jpg").write_bytes(b"\xff\xd8")
    (jan / "c.cr2").write_bytes(b"raw")
    (jan / "a.xmp").write_text(
        '<x:xmpmeta xmlns:x="adobe:ns:meta/">\n'
        ' <rdf:RDF xmlns:rdf="http://www.w3.org/1999/02/22-rdf-syntax-ns#">\n'
        '  <rdf:Description rdf:about="" xmlns:xmp="http://ns.adobe.com/xap/1.0/"'
        ' xmlns:aux="http://ns.adobe.com/exif/1.0/aux/"'
        ' xmp:Rating="2" xmp:Label="Review" aux:Lens="EF 50mm"/>\n'
        ' </rdf:RDF>\n'
        '</x:xmpmeta>\n',
        encoding="utf-8",
    )
    (jan / "orphan.xmp").write_text("<x:xmpmeta/>", encoding="utf-8")
    return root


@pytest.fixture()
def library(config, settings):
    """A PhotoLibrary wired with fake collaborators."""
    from core.library import PhotoLibrary

    lib = PhotoLibrary(
        config,
        settings,
        access_backend=FakeAccessBackend(),
        thumbnail_loader=FakeThumbnailLoader(),
    )
    yield lib
    lib.close()
