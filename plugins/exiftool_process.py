"""
Long-running exiftool process (``-stay_open`` mode).

Each request is terminated with a numbered ``-execute<N>`` so the matching
``{ready<N>}`` sentinel can be found even in binary output such as an
embedded JPEG preview.  The process is not thread-safe; callers share it
through ``SerializedRawDecoder``.
"""
import json
import functools
import logging
import select
import subprocess
import time
from typing import Any, Dict, List, Optional

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT = 30.0


@functools.lru_cache(maxsize=1)
def is_exiftool_available() -> bool:
    """True if exiftool is on PATH. Cached after the first call."""
    try:
        subprocess.run(["exiftool", "-ver"], capture_output=True, check=True, timeout=5)
        return True
    except (subprocess.CalledProcessError, FileNotFoundError, subprocess.TimeoutExpired):
        logger.warning("exiftool not found; RAW previews and in-camera info are disabled.")
        return False


class ExifToolProcess:
    def __init__(self, executable: str = "exiftool", timeout: float = DEFAULT_TIMEOUT) -> None:
        self.executable = executable
        self.timeout = timeout
        self._process: Optional[subprocess.Popen] = None
        self._counter = 0

    def __enter__(self) -> "ExifToolProcess":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    def _ensure_started(self) -> subprocess.Popen:
        if self._process is None or self._process.poll() is not None:
            self._process = subprocess.Popen(
                [self.executable, "-stay_open", "True", "-@", "-"],
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.DEVNULL,
            )
            self._counter = 0
            logger.debug("exiftool process started (pid %s)", self._process.pid)
        return self._process

    def execute(self, args: List[str]) -> bytes:
        """Run one request; on a broken pipe or timeout restart once and retry."""
        try:
            return self._run(args)
        except (OSError, RuntimeError, TimeoutError) as e:
            logger.warning("exiftool request failed (%s); restarting process.", e)
            self._kill()
            return self._run(args)

    def execute_json(self, args: List[str]) -> List[Dict[str, Any]]:
        output = self.execute(["-json", *args])
        if not output.strip():
            return []
        try:
            return json.loads(output.decode("utf-8", errors="replace"))
        except ValueError as e:
            logger.warning("exiftool returned invalid JSON: %s", e)
            return []

    def _run(self, args: List[str]) -> bytes:
        process = self._ensure_started()
        self._counter += 1
        sentinel = f"{{ready{self._counter}}}\n".encode()

        request = "\n".join(args) + f"\n-execute{self._counter}\n"
        process.stdin.write(request.encode("utf-8"))  # type: ignore[union-attr]
        process.stdin.flush()                          # type: ignore[union-attr]

        output = bytearray()
        deadline = time.monotonic() + self.timeout
        while not output.endswith(sentinel):
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise TimeoutError(f"exiftool did not answer within {self.timeout}s")
            ready, _, _ = select.select([process.stdout], [], [], remaining)
            if not ready:
                continue
            chunk = process.stdout.read1(65536)  # type: ignore[union-attr]
            if not chunk:
                raise RuntimeError("exiftool closed its output")
            output.extend(chunk)
        return bytes(output[:-len(sentinel)])

    def _kill(self) -> None:
        if self._process is None:
            return
        try:
            self._process.kill()
            self._process.wait(timeout=2)
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.debug("exiftool kill: %s", e)
        self._process = None

    def close(self) -> None:
        """Ask exiftool to exit, then force it."""
        if self._process is None:
            return
        try:
            self._process.stdin.write(b"-stay_open\nFalse\n")  # type: ignore[union-attr]
            self._process.stdin.flush()                         # type: ignore[union-attr]
            self._process.wait(timeout=5)
        except (OSError, ValueError, subprocess.TimeoutExpired) as e:
            logger.debug("exiftool did not exit cleanly: %s", e)
        self._kill()
