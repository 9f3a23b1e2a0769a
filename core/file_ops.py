# core/file_ops.py
"""Trash or copy photos together with the files that belong to them.

For a RAW image that is the companion JPEG(s), the ``.xmp`` sidecar and the
``.acr`` Camera Raw settings sharing its base name; for any other image only
its sidecar.  Extensions match case-insensitively.
"""
import logging
import os
import shutil
from typing import Dict, List, Optional

from core.formats import ACR_EXTENSION, JPEG_EXTENSIONS, SIDECAR_EXTENSION, base_name, extension_of, is_raw

logger = logging.getLogger(__name__)


def _same_base_entries(image_path: str) -> List[str]:
    """Other files in the image's folder sharing its base name, sorted by name."""
    directory = os.path.dirname(image_path) or "."
    image_name = os.path.basename(image_path)
    base = base_name(image_path)
    try:
        with os.scandir(directory) as entries:
            names = [
                e.name for e in entries
                if e.name != image_name and base_name(e.name) == base and e.is_file()
            ]
    except OSError as e:
        logger.warning(f"Could not list {directory}: {e}")
        return []
    return [os.path.join(directory, name) for name in sorted(names)]


def companion_files(image_path: str) -> List[str]:
    """Existing files that travel with *image_path* when it is trashed."""
    wanted = {SIDECAR_EXTENSION}
    if is_raw(image_path):
        wanted |= {ACR_EXTENSION} | JPEG_EXTENSIONS
    return [p for p in _same_base_entries(image_path) if extension_of(p) in wanted]


def companion_jpeg(image_path: str) -> Optional[str]:
    """The first JPEG sharing a RAW image's base name, if any."""
    if not is_raw(image_path):
        return None
    for path in _same_base_entries(image_path):
        if extension_of(path) in JPEG_EXTENSIONS:
            return path
    return None


def copy_photos(file_paths: List[str], destination: str) -> Dict[str, object]:
    """Copy each image, and a RAW image's companion JPEG, into *destination*.

    Files already present at the destination are skipped, never overwritten.
    Copying stops at the first failure; ``error`` then names it.
    """
    sources = []
    for path in file_paths:
        sources.append(path)
        jpeg = companion_jpeg(path)
        if jpeg is not None:
            sources.append(jpeg)

    copied, skipped = 0, 0
    error = None
    for source in sources:
        target = os.path.join(destination, os.path.basename(source))
        if os.path.exists(target):
            logger.debug(f"Skipping {source}: {target} exists")
            skipped += 1
            continue
        try:
            shutil.copy2(source, target)
        except OSError as e:
            error = f"Failed to copy {os.path.basename(source)}: {e}"
            logger.error(error)
            break
        copied += 1

    logger.info(f"Copy to {destination}: {copied} copied, {skipped} skipped of {len(sources)}")
    return {"copied": copied, "skipped": skipped, "total": len(sources), "error": error}


def _get_send2trash():
    from send2trash import send2trash
    return send2trash


def _trash_one(send, path: str) -> bool:
    try:
        send(path)
        return True
    except OSError as e:
        if "Directory not found" not in str(e):
            logger.warning(f"Failed to trash {path}: {e}")
            return False
        home_trash = os.path.expanduser("~/.Trash")
        try:
            os.makedirs(home_trash, exist_ok=True)
            shutil.move(path, home_trash)
            return True
        except Exception as fallback_e:  # why: shutil.move raises shutil.Error (not OSError) on cross-device failure
            logger.warning(f"Home trash fallback also failed for {path}: {fallback_e}")
            return False
    except Exception as e:  # why: send2trash raises platform-specific exceptions beyond OSError
        logger.warning(f"Failed to trash {path}: {e}")
        return False


def trash_photos(file_paths: List[str]) -> Dict[str, int]:
    """Trash each image and its companions. Failures are counted, never raised.

    Companions are only trashed once their image is gone, so a failed image
    keeps its sidecar.
    """
    send = _get_send2trash()
    succeeded, failed, companions = 0, 0, 0

    for path in file_paths:
        extra = companion_files(path)
        if not _trash_one(send, path):
            failed += 1
            continue
        succeeded += 1
        for companion in extra:
            if _trash_one(send, companion):
                companions += 1
                logger.debug(f"Trashed companion: {companion}")

    logger.info(f"send2trash: {succeeded} trashed ({companions} companions), {failed} failed out of {len(file_paths)}")
    return {"succeeded": succeeded, "failed": failed, "companions": companions}
