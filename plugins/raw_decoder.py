import logging
import queue
import threading
from concurrent.futures import Future
from dataclasses import dataclass
from typing import Any, Optional, Protocol

from .exiftool_process import ExifToolProcess, is_exiftool_available

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RawInfo:
    """Coarse EXIF fields read from a RAW file."""
    rating: Optional[int] = None
    width: Optional[int] = None
    height: Optional[int] = None
    make: Optional[str] = None
    model: Optional[str] = None


class RawDecoder(Protocol):
    def extract_preview(self, path: str) -> Optional[bytes]: ...

    def extract_info(self, path: str) -> Optional[RawInfo]: ...


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class ExifToolRawDecoder:
    """Reads embedded previews and basic EXIF through one persistent exiftool process."""

    PREVIEW_TAGS = ("-JpgFromRaw", "-PreviewImage")

    def __init__(self, process: Optional[ExifToolProcess] = None):
        self._process = process or ExifToolProcess()

    def is_available(self) -> bool:
        return is_exiftool_available()

    def extract_preview(self, path: str) -> Optional[bytes]:
        for tag in self.PREVIEW_TAGS:
            try:
                data = self._process.execute([tag, "-b", path])
            except (OSError, RuntimeError, TimeoutError) as e:
                logger.warning("Failed to extract %s from %s: %s", tag, path, e)
                continue
            if data:
                return data
        logger.debug("No embedded preview in %s", path)
        return None

    def extract_info(self, path: str) -> Optional[RawInfo]:
        try:
            rows = self._process.execute_json(
                ["-n", "-Rating", "-ImageWidth", "-ImageHeight", "-Make", "-Model", path]
            )
        except (OSError, RuntimeError, TimeoutError) as e:
            logger.warning("Failed to read EXIF from %s: %s", path, e)
            return None
        if not rows:
            return None
        row = rows[0]
        return RawInfo(
            rating=_as_int(row.get("Rating")),
            width=_as_int(row.get("ImageWidth")),
            height=_as_int(row.get("ImageHeight")),
            make=row.get("Make"),
            model=row.get("Model"),
        )

    def close(self) -> None:
        self._process.close()


class SerializedRawDecoder:
    """Single access point for a non-reentrant decoder.

    Every call is queued and executed on one worker thread; the caller
    blocks on its own result.  At most one decode is in flight at any time,
    and the wrapped decoder is closed by the worker itself after its last
    decode.
    """

    _STOP = object()

    def __init__(self, decoder: RawDecoder):
        self._decoder = decoder
        self._queue: "queue.Queue[Any]" = queue.Queue()
        self._lock = threading.Lock()
        self._closed = False
        self._thread = threading.Thread(target=self._worker, name="raw-decoder", daemon=True)
        self._thread.start()

    def _worker(self) -> None:
        while True:
            item = self._queue.get()
            if item is self._STOP:
                break
            future, method, path = item
            if not future.set_running_or_notify_cancel():
                continue
            try:
                future.set_result(getattr(self._decoder, method)(path))
            except Exception as e:  # why: a failing decode must not kill the only worker
                logger.error("RAW decoder %s failed for %s: %s", method, path, e)
                future.set_exception(e)
        self._fail_leftovers()
        close = getattr(self._decoder, "close", None)
        if close is not None:
            close()

    def _fail_leftovers(self) -> None:
        while True:
            try:
                item = self._queue.get_nowait()
            except queue.Empty:
                return
            if item is self._STOP:
                continue
            future = item[0]
            if future.set_running_or_notify_cancel():
                future.set_exception(RuntimeError("RAW decoder is closed"))

    def _call(self, method: str, path: str):
        future: Future = Future()
        with self._lock:
            if self._closed:
                raise RuntimeError("RAW decoder is closed")
            self._queue.put((future, method, path))
        return future.result()

    def extract_preview(self, path: str) -> Optional[bytes]:
        return self._call("extract_preview", path)

    def extract_info(self, path: str) -> Optional[RawInfo]:
        return self._call("extract_info", path)

    def close(self, timeout: float = 5.0) -> None:
        """Finish queued requests, then stop the worker, which closes the wrapped decoder."""
        with self._lock:
            if self._closed:
                return
            self._closed = True
            self._queue.put(self._STOP)
        self._thread.join(timeout)
        if self._thread.is_alive():
            logger.warning("RAW decoder still busy after %.1fs; it will close when the current decode ends", timeout)
