import io
import logging
import threading
from collections import OrderedDict
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Dict, Optional

from PIL import Image, ImageOps

from core.formats import is_raw

logger = logging.getLogger(__name__)


class ThumbnailLoader:
    """
    Decodes thumbnails on a worker pool.

    Concurrent requests for the same path share one Future.  ``cancel_all()``
    is called when the selected folder changes: queued work is cancelled and
    anything already decoding finishes without entering the cache.
    """

    def __init__(self, size: int = 256, max_workers: int = 4, raw_decoder=None,
                 max_cached: int = 2000):
        self.size = size
        self.raw_decoder = raw_decoder
        self.max_cached = max_cached
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="thumbnail")
        self._lock = threading.Lock()
        self._pending: Dict[str, Future] = {}
        self._cache: "OrderedDict[str, Image.Image]" = OrderedDict()
        self._epoch = 0

    def request(self, path: str) -> "Future[Optional[Image.Image]]":
        with self._lock:
            cached = self._cache.get(path)
            if cached is not None:
                self._cache.move_to_end(path)
                done: Future = Future()
                done.set_result(cached)
                return done
            future = self._pending.get(path)
            if future is not None:
                return future
            future = self._executor.submit(self._load, path, self._epoch)
            self._pending[path] = future
        future.add_done_callback(lambda f, p=path: self._finished(p, f))
        return future

    def _finished(self, path: str, future: Future) -> None:
        with self._lock:
            if self._pending.get(path) is future:
                del self._pending[path]

    def _load(self, path: str, epoch: int) -> Optional[Image.Image]:
        image = self._decode(path)
        if image is None:
            return None
        with self._lock:
            if epoch == self._epoch:
                self._cache[path] = image
                while len(self._cache) > self.max_cached:
                    self._cache.popitem(last=False)
        return image

    def _decode(self, path: str) -> Optional[Image.Image]:
        try:
            if is_raw(path):
                if self.raw_decoder is None:
                    return None
                data = self.raw_decoder.extract_preview(path)
                if not data:
                    return None
                source = Image.open(io.BytesIO(data))
            else:
                source = Image.open(path)
            with source:
                source.draft("RGB", (self.size, self.size))
                image = ImageOps.exif_transpose(source).convert("RGB")
            image.thumbnail((self.size, self.size))
            return image
        except (OSError, ValueError) as e:
            logger.warning(f"Could not create thumbnail for {path}: {e}")
            return None

    def cancel_all(self) -> int:
        with self._lock:
            self._epoch += 1
            pending = list(self._pending.values())
            self._pending.clear()
        cancelled = sum(1 for f in pending if f.cancel())
        logger.debug(f"Cancelled {cancelled} of {len(pending)} pending thumbnail requests")
        return cancelled

    def evict(self, path: str) -> None:
        with self._lock:
            self._cache.pop(path, None)
            future = self._pending.pop(path, None)
        if future is not None:
            future.cancel()

    def shutdown(self) -> None:
        self.cancel_all()
        self._executor.shutdown(wait=False, cancel_futures=True)
