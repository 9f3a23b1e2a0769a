import logging
import os
import threading
from typing import Callable, Iterable, List, Optional, Set

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from core.formats import ACR_EXTENSION, SIDECAR_EXTENSION, extension_of, is_image

logger = logging.getLogger(__name__)


class FolderWatcher(FileSystemEventHandler):
    """
    Watches every root recursively and reports changed paths in debounced batches.

    Only photo files and directories matter; sidecar writes (.xmp, .acr) are
    ignored because the library makes them itself.  The callback runs on a
    timer thread and receives the set of paths touched since the last batch.
    """

    def __init__(self, callback: Callable[[Set[str]], None], debounce_seconds: float = 2.0):
        super().__init__()
        self.callback = callback
        self.debounce_seconds = debounce_seconds
        self.observer = Observer()
        self._watch_paths: List[str] = []
        self._lock = threading.Lock()
        self._changed: Set[str] = set()
        self._timer: Optional[threading.Timer] = None

    @property
    def watch_paths(self) -> List[str]:
        return list(self._watch_paths)

    def set_paths(self, paths: Iterable[str]) -> None:
        """Replace the watched roots, restarting the observer when they changed."""
        paths = list(paths)
        if set(paths) == set(self._watch_paths) and self.observer.is_alive():
            return
        logger.info(f"Watch paths changed from {self._watch_paths} to {paths}.")
        self._watch_paths = paths
        self.stop()
        self.start()

    def start(self) -> None:
        if self.observer.is_alive():
            self._stop_observer()
        self.observer = Observer()

        scheduled = 0
        for path in self._watch_paths:
            if not os.path.isdir(path):
                logger.warning(f"Watch path does not exist: {path}")
                continue
            self.observer.schedule(self, path=path, recursive=True)
            scheduled += 1

        if scheduled:
            self.observer.start()
            logger.info(f"Watching {scheduled} root(s) for changes.")

    def _stop_observer(self) -> None:
        self.observer.stop()
        self.observer.join(timeout=1.0)
        if self.observer.is_alive():
            logger.warning("Watchdog observer thread did not stop gracefully.")

    def stop(self) -> None:
        with self._lock:
            if self._timer is not None:
                self._timer.cancel()
                self._timer = None
            self._changed.clear()
        if self.observer.is_alive():
            self._stop_observer()

    @staticmethod
    def is_relevant(path: str, is_directory: bool) -> bool:
        name = os.path.basename(path)
        if name.startswith("."):
            return False
        if is_directory:
            return True
        if extension_of(path) in (SIDECAR_EXTENSION, ACR_EXTENSION):
            return False
        return is_image(path)

    def dispatch(self, event):
        """Collect created/deleted/moved photos and folders; modifications are ignored."""
        if event.event_type not in ("created", "deleted", "moved"):
            return

        paths = [event.src_path]
        if event.event_type == "moved":
            paths.append(event.dest_path)

        relevant = {os.fsdecode(p) for p in paths if self.is_relevant(os.fsdecode(p), event.is_directory)}
        if not relevant:
            return
        logger.debug(f"Watchdog: {event.event_type} {sorted(relevant)}")
        self._queue(relevant)

    def _queue(self, paths: Set[str]) -> None:
        with self._lock:
            self._changed.update(paths)
            if self._timer is not None:
                self._timer.cancel()
            self._timer = threading.Timer(self.debounce_seconds, self._flush)
            self._timer.daemon = True
            self._timer.start()

    def _flush(self) -> None:
        with self._lock:
            changed, self._changed = self._changed, set()
            self._timer = None
        if not changed:
            return
        try:
            self.callback(changed)
        except Exception as e:
            # why: runs on the timer thread; a failing callback must not kill future batches
            logger.error(f"Watchdog: change callback failed: {e}", exc_info=True)
