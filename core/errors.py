# core/errors.py
"""Exception taxonomy for the library engine.

Only ``AccessError`` ever reaches the UI shell.  ``ScanError`` and
``CodecError`` are raised and caught inside their own layers so that a
missing folder or a non-standard sidecar degrades instead of failing.
"""
from typing import Optional


class AccessError(Exception):
    """A root folder could not be granted or restored."""

    reason = "folder unavailable"

    def __init__(self, path: Optional[str], detail: str = ""):
        self.path = path
        self.detail = detail
        message = f"{self.reason}: {path}" if path else self.reason
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class AccessDeniedError(AccessError):
    """The permission system (or the user) refused access to the folder."""

    reason = "access denied"


class TokenCreationError(AccessError):
    """A persistable access token could not be created for the folder."""

    reason = "could not create access token"


class StaleTokenError(AccessError):
    """A persisted token no longer refers to the folder it was created for."""

    reason = "stale access token"


class PathMissingError(AccessError):
    """The folder a token refers to no longer exists."""

    reason = "folder missing"


class ScanError(OSError):
    """Listing a directory failed. Never propagated past the folder tree."""


class CodecError(ValueError):
    """Structural XML handling of a sidecar failed. Never propagated past the codec."""
