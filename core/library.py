# core/library.py
"""The library façade consumed by the UI shell (and the CLI).

It owns the root registry, the folder tree index, the current selection and
the photo listing of the selected folder, and it is the only place where
sidecar files are written.  All public methods are meant to be called from
one orchestration thread; blocking I/O is pushed onto worker pools and the
results are swapped in under a lock.
"""
import os
import shutil
import atexit
import logging
import tempfile
import threading
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Set, Union

from core.access import AccessBackend, AccessGrantRegistry
from core.errors import AccessError, PathMissingError, StaleTokenError
from core.file_ops import copy_photos, trash_photos
from core.folder_tree import FolderNode, FolderTreeIndex, Unloaded, find_node
from core.formats import (
    IMAGE_EXTENSIONS,
    JPEG_EXTENSIONS,
    RAW_EXTENSIONS,
    base_name,
    is_jpeg,
    is_raw,
)
from core.photo_record import (
    PhotoRecord,
    SortOption,
    available_labels,
    filter_photos,
    sort_photos,
)
from core.roots import RootRegistry
from core.settings_store import SORT_OPTION_KEY, SettingsStore
from core.sidecar_pairing import list_photo_directory, read_sidecar, sidecar_path_for
from core.xmp_codec import create_document, parse_document, update_label, update_rating
from filewatcher.watcher import FolderWatcher
from plugins.thumbnail_loader import ThumbnailLoader

logger = logging.getLogger(__name__)

FolderRef = Union[FolderNode, str]


_umask_lock = threading.Lock()


def _current_umask() -> int:
    # os.umask can only be read by setting it
    with _umask_lock:
        mask = os.umask(0o022)
        os.umask(mask)
    return mask


def _atomic_write(path: str, text: str) -> None:
    """Write *text* next to *path* and rename it into place.

    The result keeps the mode of the file it replaces; a new file gets the
    umask-derived mode a plain ``open()`` would give it (mkstemp uses 0600).
    """
    directory = os.path.dirname(path) or "."
    fd, tmp_path = tempfile.mkstemp(dir=directory, prefix=f".{os.path.basename(path)}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(text)
            f.flush()
            os.fsync(f.fileno())
        if os.path.exists(path):
            shutil.copymode(path, tmp_path)
        else:
            os.chmod(tmp_path, 0o666 & ~_current_umask())
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise


class PhotoLibrary:
    def __init__(self, config, settings: SettingsStore,
                 access_backend: Optional[AccessBackend] = None,
                 thumbnail_loader=None, raw_decoder=None, watch: Optional[bool] = None,
                 prefetch_thumbnails: Optional[bool] = None):
        self.config = config
        self.settings = settings
        self.raw_decoder = raw_decoder
        self._owns_thumbnail_loader = thumbnail_loader is None
        if thumbnail_loader is None:
            thumbnail_loader = ThumbnailLoader(
                size=config.get("thumbnails.size", 256),
                max_workers=config.get("thumbnails.max_workers", 4),
                raw_decoder=raw_decoder,
            )
        self.thumbnail_loader = thumbnail_loader
        if prefetch_thumbnails is None:
            prefetch_thumbnails = config.get("thumbnails.prefetch", True)
        self.prefetch_thumbnails = bool(prefetch_thumbnails)
        self.grants = AccessGrantRegistry(access_backend)

        max_workers = config.get("library.max_workers", 4)
        self.ignore_patterns = list(config.get("library.ignore_patterns", ["._*"]))
        self.hide_raw_companion_jpegs = bool(config.get("library.hide_raw_companion_jpegs", True))
        self.tree_index = FolderTreeIndex(
            depth_limit=config.get("library.depth_limit", 2),
            max_workers=max_workers,
            ignore_patterns=self.ignore_patterns,
        )
        self._io_executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="library-io")

        self._roots = RootRegistry()
        self._expanded: Set[str] = set(settings.get_expanded_paths())

        self._selection_lock = threading.Lock()
        self._selection_generation = 0
        self._selected_path: Optional[str] = None
        self._photos: List[PhotoRecord] = []
        self._sort_option = self._load_sort_option()

        self._changes_lock = threading.Lock()
        self._pending_changes: Set[str] = set()
        self._copying = 0
        self._watcher: Optional[FolderWatcher] = None
        if config.get("watcher.enabled", True) if watch is None else watch:
            self._watcher = FolderWatcher(self._on_fs_changes, config.get("watcher.debounce_seconds", 2.0))

        self._closed = False
        atexit.register(self.close)

    # ------------------------------------------------------------------
    # Roots
    # ------------------------------------------------------------------

    @property
    def roots(self) -> List[FolderNode]:
        return self._roots.nodes

    def restore(self) -> List[AccessError]:
        """Re-open persisted roots. Returns the access errors met on the way, one per root.

        Missing and stale roots are dropped from the persisted bookmarks;
        a root that is merely denied right now stays bookmarked.
        """
        errors: List[AccessError] = []
        kept = []
        for path, token in self.settings.get_bookmarks():
            if path in self._roots:
                kept.append((path, token))
                continue
            try:
                grant = self.grants.restore(token)
            except (PathMissingError, StaleTokenError) as e:
                logger.warning(f"Dropping root {path}: {e}")
                errors.append(e)
                continue
            except AccessError as e:
                logger.warning(f"Root {path} unavailable: {e}")
                errors.append(e)
                kept.append((path, token))
                continue

            node = self.tree_index.submit_build(grant.path, token).result()
            self._roots.add(node, grant)
            self._reexpand(node)
            kept.append((grant.path, token))
            logger.info(f"Restored root {grant.path}")

        self.settings.set_bookmarks(kept)
        self._update_watcher()

        last = self.settings.get_last_selection()
        if last:
            node = find_node(last, self._roots.nodes)
            if node is not None:
                self.select(node)
            else:
                logger.debug(f"Last selection {last} not found in any root")
        return errors

    def add_root(self, path: str) -> FolderNode:
        """Acquire a grant for *path*, then scan it. Raises AccessError; nothing is added on failure."""
        path = os.path.abspath(path)
        existing = self._roots.get(path)
        if existing is not None:
            return existing.node

        grant = self.grants.acquire(path)
        try:
            node = self.tree_index.submit_build(grant.path, grant.token).result()
        except BaseException:
            grant.release()
            raise
        self._roots.add(node, grant)
        self._persist_roots()
        self._update_watcher()
        logger.info(f"Added root {grant.path}")
        return node

    def remove_root(self, path: str) -> bool:
        """Drop a root and release its grant. A second call for the same path does nothing."""
        entry = self._roots.remove(path)
        if entry is None:
            logger.debug(f"remove_root: {path} is not a root")
            return False

        self.tree_index.discard_pending(entry.path)
        entry.grant.release()

        prefix = entry.path.rstrip(os.sep) + os.sep
        self._expanded = {p for p in self._expanded if p != entry.path and not p.startswith(prefix)}
        self.settings.set_expanded_paths(self._expanded)

        selected = self._selected_path
        if selected and (selected == entry.path or selected.startswith(prefix)):
            self._clear_selection()

        self._persist_roots()
        self._update_watcher()
        logger.info(f"Removed root {entry.path}")
        return True

    def _persist_roots(self) -> None:
        self.settings.set_bookmarks([(entry.path, entry.grant.token) for entry in self._roots])

    def _update_watcher(self) -> None:
        if self._watcher is not None:
            self._watcher.set_paths([entry.path for entry in self._roots])

    # ------------------------------------------------------------------
    # Tree
    # ------------------------------------------------------------------

    def load_children(self, node: FolderNode) -> List[FolderNode]:
        children = self.tree_index.expand_on_demand(node)
        if node.is_loaded:
            self._expanded.add(node.path)
            self.settings.set_expanded_paths(self._expanded)
        return children

    def collapse(self, node: FolderNode) -> None:
        self.tree_index.discard_pending(node.path)
        if node.path in self._expanded:
            self._expanded.discard(node.path)
            self.settings.set_expanded_paths(self._expanded)

    @property
    def expanded_paths(self) -> Set[str]:
        return set(self._expanded)

    def _reexpand(self, root: FolderNode) -> None:
        """Expand remembered nodes that sit below the scanned depth."""
        stack = [root]
        while stack:
            node = stack.pop()
            if node.path in self._expanded and isinstance(node.children, Unloaded):
                self.tree_index.expand_on_demand(node)
            stack.extend(node.loaded_children)

    # ------------------------------------------------------------------
    # Selection and listing
    # ------------------------------------------------------------------

    @property
    def selected_folder(self) -> Optional[FolderNode]:
        if self._selected_path is None:
            return None
        return find_node(self._selected_path, self._roots.nodes)

    @property
    def selected_path(self) -> Optional[str]:
        return self._selected_path

    def select(self, folder: FolderRef) -> List[PhotoRecord]:
        """Make *folder* the selection and swap in its listing in one step."""
        path = folder.path if isinstance(folder, FolderNode) else os.path.abspath(folder)
        with self._selection_lock:
            self._selection_generation += 1
            generation = self._selection_generation
            self._selected_path = path

        # Thumbnails of the old folder must not compete with the new one.
        self.thumbnail_loader.cancel_all()

        photos = self._io_executor.submit(self._list_photos, path).result()

        with self._selection_lock:
            if generation != self._selection_generation:
                logger.debug(f"Listing of {path} superseded by a newer selection")
                return []
            self._photos = photos

        self.settings.set_last_selection(path)
        logger.info(f"Selected {path} ({len(photos)} photos)")
        self._prefetch_thumbnails(photos)
        return list(photos)

    def _clear_selection(self) -> None:
        with self._selection_lock:
            self._selection_generation += 1
            self._selected_path = None
            self._photos = []
        self.thumbnail_loader.cancel_all()
        self.settings.set_last_selection(None)

    def _prefetch_thumbnails(self, photos: Iterable[PhotoRecord]) -> None:
        if not self.prefetch_thumbnails:
            return
        for photo in photos:
            self.thumbnail_loader.request(photo.path)

    def thumbnail(self, photo: PhotoRecord) -> Future:
        """Future of the decoded thumbnail image (None when undecodable)."""
        return self.thumbnail_loader.request(photo.path)

    def _list_photos(self, directory: str) -> List[PhotoRecord]:
        listing = list_photo_directory(directory, IMAGE_EXTENSIONS, self.ignore_patterns)
        records = []
        for image in listing.images:
            has_raw = listing.has_companion(image, RAW_EXTENSIONS)
            if self.hide_raw_companion_jpegs and is_jpeg(image) and has_raw:
                logger.debug(f"Hiding {image}: RAW companion present")
                continue
            record = PhotoRecord.from_file(
                image,
                parse_document(listing.sidecars.get(base_name(image))),
                has_jpg=is_raw(image) and listing.has_companion(image, JPEG_EXTENSIONS),
                has_acr=listing.has_acr(image),
            )
            if record.is_raw and self.raw_decoder is not None:
                record = record.with_camera_info(self._raw_info(image))
            records.append(record)
        return sort_photos(records, self._sort_option)

    def _raw_info(self, path: str):
        try:
            return self.raw_decoder.extract_info(path)
        except Exception as e:  # why: decoder failures only cost the in-camera fields of one photo
            logger.warning(f"RAW info unavailable for {path}: {e}")
            return None

    def photos_in_selected_folder(self) -> List[PhotoRecord]:
        with self._selection_lock:
            return list(self._photos)

    def reload_selected_folder(self) -> List[PhotoRecord]:
        if self._selected_path is None:
            return []
        return self.select(self._selected_path)

    def _current(self, photo: PhotoRecord) -> PhotoRecord:
        with self._selection_lock:
            for record in self._photos:
                if record.id == photo.id:
                    return record
        return photo

    def _replace_record(self, updated: PhotoRecord) -> None:
        with self._selection_lock:
            for i, record in enumerate(self._photos):
                if record.id == updated.id:
                    self._photos[i] = updated
                    return

    # ------------------------------------------------------------------
    # Metadata edits (write-through)
    # ------------------------------------------------------------------

    def _rewrite_sidecar(self, photo: PhotoRecord, mutate: Callable[[str], str],
                         create: Optional[Callable[[], str]]) -> Optional[PhotoRecord]:
        """Apply *mutate* to the sidecar on disk, or write *create()* if there is none."""
        photo = self._current(photo)
        sidecar = sidecar_path_for(photo.path)
        if os.path.exists(sidecar):
            text = read_sidecar(sidecar)
            if text is None:
                logger.warning(f"Skipping {photo.path}: sidecar exists but cannot be read")
                return None
            new_text = mutate(text)
        elif create is not None:
            new_text = create()
        else:
            return None

        try:
            _atomic_write(sidecar, new_text)
        except OSError as e:
            logger.error(f"Failed to write sidecar {sidecar}: {e}")
            return None
        logger.info(f"Wrote sidecar {sidecar}")

        updated = photo.with_metadata(parse_document(new_text))
        self._replace_record(updated)
        return updated

    def _created_at(self, photo: PhotoRecord) -> datetime:
        return datetime.fromtimestamp(photo.date_created).astimezone()

    def apply_rating(self, rating: int, photos: Iterable[PhotoRecord]) -> List[PhotoRecord]:
        """Set the rating of every photo, creating sidecars where missing."""
        if isinstance(rating, bool) or not isinstance(rating, int) or not 0 <= rating <= 5:
            raise ValueError(f"rating must be an integer in [0..5], got {rating!r}")
        updated = []
        for photo in photos:
            current = self._current(photo)
            record = self._rewrite_sidecar(
                current,
                lambda text: update_rating(text, rating),
                lambda: create_document(rating, current.label, created=self._created_at(current)),
            )
            if record is not None:
                updated.append(record)
        return updated

    def apply_label(self, label: Optional[str], photos: Iterable[PhotoRecord]) -> List[PhotoRecord]:
        """Set (or with None/"" clear) the label of every photo."""
        updated = []
        for photo in photos:
            current = self._current(photo)
            create = None
            if label:
                create = lambda: create_document(current.rating, label, created=self._created_at(current))
            record = self._rewrite_sidecar(current, lambda text: update_label(text, label), create)
            if record is not None:
                updated.append(record)
        return updated

    def toggle_label(self, label: str, photos: Iterable[PhotoRecord]) -> List[PhotoRecord]:
        """Photos that already carry *label* lose it; the others get it."""
        updated = []
        for photo in photos:
            current = self._current(photo)
            target = None if current.label == label else label
            updated.extend(self.apply_label(target, [current]))
        return updated

    def remove_labels(self, photos: Iterable[PhotoRecord]) -> List[PhotoRecord]:
        updated = []
        for photo in photos:
            record = self._rewrite_sidecar(photo, lambda text: update_label(text, None), None)
            if record is not None:
                updated.append(record)
        return updated

    def toggle_marked_for_removal(self, photo: PhotoRecord) -> PhotoRecord:
        current = self._current(photo)
        updated = current.with_marked_for_removal(not current.marked_for_removal)
        self._replace_record(updated)
        return updated

    def trash_marked(self) -> Dict[str, int]:
        marked = [p for p in self.photos_in_selected_folder() if p.marked_for_removal]
        if not marked:
            return {"succeeded": 0, "failed": 0, "companions": 0}
        result = trash_photos([p.path for p in marked])

        gone = {p.id for p in marked if not os.path.exists(p.path)}
        with self._selection_lock:
            self._photos = [p for p in self._photos if p.id not in gone]
        for photo in marked:
            if photo.id in gone:
                self.thumbnail_loader.evict(photo.path)
        return result

    def copy_to(self, photos: Iterable[PhotoRecord], folder: FolderRef) -> Dict[str, object]:
        """Copy photos (and companion JPEGs of RAW files) into *folder*.

        Change processing is held back while the copy runs so the half-copied
        destination is never rescanned; the destination is queued afterwards.
        """
        destination = folder.path if isinstance(folder, FolderNode) else os.path.abspath(folder)
        with self._changes_lock:
            self._copying += 1
        try:
            return copy_photos([p.path for p in photos], destination)
        finally:
            with self._changes_lock:
                self._copying -= 1
                self._pending_changes.add(destination)

    # ------------------------------------------------------------------
    # Filtering and sorting
    # ------------------------------------------------------------------

    def _load_sort_option(self) -> SortOption:
        stored = self.settings.get_json(SORT_OPTION_KEY, SortOption.NAME.value)
        try:
            return SortOption(stored)
        except ValueError:
            return SortOption.NAME

    @property
    def sort_option(self) -> SortOption:
        return self._sort_option

    def set_sort_option(self, option: Union[SortOption, str]) -> None:
        self._sort_option = SortOption(option)
        self.settings.set_json(SORT_OPTION_KEY, self._sort_option.value)
        with self._selection_lock:
            self._photos = sort_photos(self._photos, self._sort_option)

    def filtered_photos(self, labels: Optional[Iterable[str]] = None,
                        ratings: Optional[Iterable[int]] = None) -> List[PhotoRecord]:
        return filter_photos(self.photos_in_selected_folder(), labels, ratings, self._sort_option)

    def available_labels(self) -> List[str]:
        return available_labels(self.photos_in_selected_folder())

    # ------------------------------------------------------------------
    # Live changes
    # ------------------------------------------------------------------

    def _on_fs_changes(self, paths: Set[str]) -> None:
        with self._changes_lock:
            self._pending_changes.update(paths)

    def has_pending_changes(self) -> bool:
        with self._changes_lock:
            return bool(self._pending_changes)

    def process_pending_changes(self) -> bool:
        """Apply queued filesystem changes: rescan touched roots, reload the selection if needed."""
        with self._changes_lock:
            if self._copying:
                logger.debug("Change processing paused while copying")
                return False
            changed, self._pending_changes = self._pending_changes, set()
        if not changed:
            return False

        rebuilt = set()
        for path in changed:
            entry = self._roots.root_for(path)
            if entry is None or entry.path in rebuilt:
                continue
            node = self.tree_index.build_tree(entry.path, entry.grant.token)
            self._roots.replace_node(entry.path, node)
            self._reexpand(node)
            rebuilt.add(entry.path)
        logger.info(f"Processed {len(changed)} change(s), rescanned {len(rebuilt)} root(s)")

        selected = self._selected_path
        if selected and any(p == selected or os.path.dirname(p) == selected for p in changed):
            if os.path.isdir(selected):
                self.reload_selected_folder()
            else:
                self._clear_selection()
        return True

    # ------------------------------------------------------------------

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        atexit.unregister(self.close)
        if self._watcher is not None:
            self._watcher.stop()
        released = self.grants.release_all()
        self.tree_index.shutdown()
        self._io_executor.shutdown(wait=False, cancel_futures=True)
        if self._owns_thumbnail_loader:
            self.thumbnail_loader.shutdown()
        logger.info(f"Library closed ({released} grant(s) released)")
