# core/access.py
"""Long-lived access grants for user-chosen root folders.

A grant pairs an opaque, persistable token with an active access session.
Sessions are reference counted per path by ``AccessGrantRegistry``; the
platform specifics live behind ``AccessBackend`` so that tests (and
platforms without sandboxing) can plug in their own.
"""
import os
import json
import logging
import threading
from typing import Dict, Optional, Protocol, Set

from core.errors import (
    AccessDeniedError,
    PathMissingError,
    StaleTokenError,
    TokenCreationError,
)

logger = logging.getLogger(__name__)


class AccessBackend(Protocol):
    def create_token(self, path: str) -> bytes: ...

    def resolve_token(self, token: bytes) -> str: ...

    def start_access(self, path: str) -> bool: ...

    def stop_access(self, path: str) -> None: ...


class PosixAccessBackend:
    """Tokens remember the directory's device and inode so a moved or replaced folder is detected."""

    TOKEN_VERSION = 1

    def create_token(self, path: str) -> bytes:
        try:
            st = os.stat(path)
        except OSError as e:
            raise TokenCreationError(path, str(e)) from e
        payload = {"v": self.TOKEN_VERSION, "path": path, "dev": st.st_dev, "ino": st.st_ino}
        return json.dumps(payload, sort_keys=True).encode("utf-8")

    def resolve_token(self, token: bytes) -> str:
        try:
            payload = json.loads(token.decode("utf-8"))
            path = payload["path"]
            dev, ino = payload["dev"], payload["ino"]
        except (UnicodeDecodeError, ValueError, KeyError, TypeError, AttributeError) as e:
            raise StaleTokenError(None, f"undecodable token: {e}") from e

        try:
            st = os.stat(path)
        except FileNotFoundError as e:
            raise PathMissingError(path) from e
        except OSError as e:
            raise AccessDeniedError(path, str(e)) from e

        if (st.st_dev, st.st_ino) != (dev, ino):
            raise StaleTokenError(path, "folder was moved or replaced")
        return path

    def start_access(self, path: str) -> bool:
        return os.path.isdir(path) and os.access(path, os.R_OK | os.X_OK)

    def stop_access(self, path: str) -> None:
        # Plain POSIX permissions need no explicit revocation.
        pass


class Grant:
    """An active access session on one root. ``release()`` is idempotent."""

    def __init__(self, registry: "AccessGrantRegistry", path: str, token: bytes):
        self._registry = registry
        self.path = path
        self.token = token
        self.released = False

    def release(self) -> bool:
        """End the session. Returns False if it had already been released."""
        return self._registry.release(self)

    def __repr__(self):
        state = "released" if self.released else "active"
        return f"Grant({self.path!r}, {state})"


class AccessGrantRegistry:
    """Acquires, restores and releases grants; serialised per path, parallel across paths."""

    def __init__(self, backend: Optional[AccessBackend] = None):
        self.backend: AccessBackend = backend or PosixAccessBackend()
        self._lock = threading.Lock()
        self._path_locks: Dict[str, threading.Lock] = {}
        self._sessions: Dict[str, int] = {}
        self._outstanding: Set[Grant] = set()

    def _path_lock(self, path: str) -> threading.Lock:
        with self._lock:
            return self._path_locks.setdefault(path, threading.Lock())

    def acquire(self, path: str) -> Grant:
        """Create a new token for *path* and start an access session on it."""
        path = os.path.abspath(path)
        with self._path_lock(path):
            if not self.backend.start_access(path):
                logger.warning(f"Access denied for {path}")
                raise AccessDeniedError(path)
            try:
                token = self.backend.create_token(path)
            except TokenCreationError:
                self.backend.stop_access(path)
                raise
            return self._open(path, token)

    def restore(self, token: bytes) -> Grant:
        """Re-derive an active session from a persisted token."""
        path = self.backend.resolve_token(token)
        with self._path_lock(path):
            if not self.backend.start_access(path):
                logger.warning(f"Access denied while restoring {path}")
                raise AccessDeniedError(path)
            return self._open(path, token)

    def _open(self, path: str, token: bytes) -> Grant:
        grant = Grant(self, path, token)
        with self._lock:
            count = self._sessions[path] = self._sessions.get(path, 0) + 1
            self._outstanding.add(grant)
        logger.debug(f"Access session opened for {path} ({count} active)")
        return grant

    def release(self, grant: Grant) -> bool:
        with self._path_lock(grant.path):
            if grant.released:
                return False
            grant.released = True
            with self._lock:
                self._outstanding.discard(grant)
                remaining = self._sessions.get(grant.path, 0) - 1
                if remaining > 0:
                    self._sessions[grant.path] = remaining
                else:
                    self._sessions.pop(grant.path, None)
            if remaining <= 0:
                self.backend.stop_access(grant.path)
        logger.debug(f"Access session released for {grant.path}")
        return True

    def release_all(self) -> int:
        """Release every outstanding grant; safe to call from process teardown."""
        with self._lock:
            grants = list(self._outstanding)
        return sum(1 for grant in grants if grant.release())

    def active_sessions(self, path: str) -> int:
        with self._lock:
            return self._sessions.get(os.path.abspath(path), 0)
