# core/sidecar_pairing.py
import os
import logging
import fnmatch
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Set, Tuple

from core.formats import (
    ACR_EXTENSION,
    IMAGE_EXTENSIONS,
    SIDECAR_EXTENSION,
    base_name,
    extension_of,
)

logger = logging.getLogger(__name__)


@dataclass
class DirectoryListing:
    """One pass over a directory, split into images, sidecar texts and companion files.

    *sidecars* maps a base name to the decoded text of ``<base>.xmp``; a base
    name that has a sidecar file which could not be read is listed in
    *unreadable_sidecars* instead.  *extensions_by_base* records every
    extension seen for a base name so callers can detect RAW+JPEG pairs
    and ``.acr`` files without listing the directory again.
    """
    directory: str
    images: List[str] = field(default_factory=list)
    sidecars: Dict[str, str] = field(default_factory=dict)
    unreadable_sidecars: Set[str] = field(default_factory=set)
    extensions_by_base: Dict[str, Set[str]] = field(default_factory=dict)

    def pairs(self) -> List[Tuple[str, Optional[str]]]:
        return [(path, self.sidecars.get(base_name(path))) for path in self.images]

    def has_companion(self, image_path: str, extensions: Iterable[str]) -> bool:
        seen = self.extensions_by_base.get(base_name(image_path), set())
        return any(ext in seen for ext in extensions)

    def has_acr(self, image_path: str) -> bool:
        return self.has_companion(image_path, (ACR_EXTENSION,))


def sidecar_path_for(image_path: str) -> str:
    """``/dir/a.cr2`` -> ``/dir/a.xmp``"""
    directory = os.path.dirname(image_path)
    return os.path.join(directory, base_name(image_path) + SIDECAR_EXTENSION)


def read_sidecar(path: str) -> Optional[str]:
    """Strict UTF-8 text of a sidecar, or None when it cannot be read."""
    try:
        with open(path, "r", encoding="utf-8", errors="strict") as f:
            return f.read()
    except (OSError, UnicodeDecodeError) as e:
        logger.warning(f"Unreadable sidecar {path}: {e}")
        return None


def _is_ignored(name: str, ignore_patterns: Iterable[str]) -> bool:
    if name.startswith("."):
        return True
    return any(fnmatch.fnmatch(name, pattern) for pattern in ignore_patterns)


def list_photo_directory(directory: str,
                         allowed_extensions: Iterable[str] = IMAGE_EXTENSIONS,
                         ignore_patterns: Iterable[str] = ()) -> DirectoryListing:
    """List *directory* once and read the sidecars of the images found in it.

    Orphaned sidecars (no image with the same base name) are never read.
    A directory that cannot be listed gives an empty listing.
    """
    allowed = {ext.lower() if ext.startswith(".") else "." + ext.lower() for ext in allowed_extensions}
    ignore_patterns = list(ignore_patterns)
    listing = DirectoryListing(directory=directory)
    sidecar_files: Dict[str, str] = {}

    try:
        with os.scandir(directory) as entries:
            for entry in entries:
                if _is_ignored(entry.name, ignore_patterns):
                    continue
                try:
                    if not entry.is_file():
                        continue
                except OSError:
                    continue
                ext = extension_of(entry.name)
                base = base_name(entry.name)
                listing.extensions_by_base.setdefault(base, set()).add(ext)
                if ext == SIDECAR_EXTENSION:
                    sidecar_files[base] = entry.path
                elif ext in allowed:
                    listing.images.append(entry.path)
    except OSError as e:
        logger.warning(f"Could not list {directory}: {e}")
        return listing

    # Byte-wise file name order, independent of locale.
    listing.images.sort(key=lambda p: os.path.basename(p).encode("utf-8", "surrogateescape"))

    wanted = {base_name(p) for p in listing.images}
    for base, path in sidecar_files.items():
        if base not in wanted:
            continue
        text = read_sidecar(path)
        if text is None:
            listing.unreadable_sidecars.add(base)
        else:
            listing.sidecars[base] = text

    logger.debug(f"Listed {directory}: {len(listing.images)} images, {len(listing.sidecars)} sidecars")
    return listing


def pair_photos(directory: str,
                allowed_extensions: Iterable[str] = IMAGE_EXTENSIONS,
                ignore_patterns: Iterable[str] = ()) -> List[Tuple[str, Optional[str]]]:
    """Ordered ``(image_path, sidecar_text or None)`` pairs for one directory."""
    return list_photo_directory(directory, allowed_extensions, ignore_patterns).pairs()
