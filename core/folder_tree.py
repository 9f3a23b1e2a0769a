# core/folder_tree.py
"""Lazily populated folder tree under each root.

Every node's ``children`` is one of three explicit states:

* ``NoChildren`` - a leaf, nothing to expand;
* ``Unloaded``   - known to contain at least one subdirectory, not scanned yet;
* ``Loaded``     - scanned, with the subfolders in display order.

``build_tree`` scans breadth-first down to a depth limit and only probes
the nodes on the boundary ("does it contain any subdirectory?"), so adding
a very large root costs O(boundary width) rather than O(subtree).
"""
import os
import locale
import logging
import fnmatch
import threading
from collections import deque
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Deque, Dict, Iterable, List, Optional, Tuple, Union

from core.errors import ScanError

logger = logging.getLogger(__name__)

DEFAULT_DEPTH_LIMIT = 2


@dataclass(frozen=True)
class NoChildren:
    pass


@dataclass(frozen=True)
class Unloaded:
    pass


@dataclass(frozen=True)
class Loaded:
    nodes: Tuple["FolderNode", ...]


Children = Union[NoChildren, Unloaded, Loaded]

NO_CHILDREN = NoChildren()
UNLOADED = Unloaded()


@dataclass(eq=False)
class FolderNode:
    path: str
    children: Children = UNLOADED
    # Only set on roots.
    access_token: Optional[bytes] = None

    @property
    def name(self) -> str:
        return os.path.basename(self.path.rstrip(os.sep)) or self.path

    @property
    def is_expandable(self) -> bool:
        return not isinstance(self.children, NoChildren)

    @property
    def is_loaded(self) -> bool:
        return isinstance(self.children, Loaded)

    @property
    def loaded_children(self) -> List["FolderNode"]:
        if isinstance(self.children, Loaded):
            return list(self.children.nodes)
        return []

    def __repr__(self):
        state = type(self.children).__name__
        return f"FolderNode({self.path!r}, {state})"


def folder_sort_key(name: str) -> Tuple[str, str]:
    """Locale-aware, case-insensitive order; the raw name breaks ties deterministically."""
    return (locale.strxfrm(name.casefold()), name)


def _is_ignored(name: str, ignore_patterns: Iterable[str]) -> bool:
    if name.startswith("."):
        return True
    return any(fnmatch.fnmatch(name, pattern) for pattern in ignore_patterns)


def list_subdirectories(path: str, ignore_patterns: Iterable[str] = ()) -> List[str]:
    """Visible subdirectories of *path*, sorted. Raises ScanError if the listing fails."""
    found = []
    try:
        with os.scandir(path) as entries:
            for entry in entries:
                if _is_ignored(entry.name, ignore_patterns):
                    continue
                try:
                    # Symlinked folders are not followed, so the tree cannot cycle.
                    if entry.is_dir(follow_symlinks=False):
                        found.append(entry.name)
                except OSError:
                    continue
    except OSError as e:
        raise ScanError(e.errno, f"cannot list {path}: {e.strerror or e}") from e
    found.sort(key=folder_sort_key)
    return [os.path.join(path, name) for name in found]


def has_subdirectory(path: str, ignore_patterns: Iterable[str] = ()) -> bool:
    """Cheap check used on the depth boundary: stops at the first visible subdirectory."""
    try:
        with os.scandir(path) as entries:
            for entry in entries:
                if _is_ignored(entry.name, ignore_patterns):
                    continue
                try:
                    if entry.is_dir(follow_symlinks=False):
                        return True
                except OSError:
                    continue
    except OSError as e:
        logger.debug(f"Boundary probe failed for {path}: {e}")
    return False


def build_tree(root_path: str, depth_limit: int = DEFAULT_DEPTH_LIMIT,
               access_token: Optional[bytes] = None,
               ignore_patterns: Iterable[str] = ()) -> FolderNode:
    """Breadth-first scan of *root_path*; nodes at *depth_limit* are probed, not listed."""
    ignore_patterns = list(ignore_patterns)
    depth_limit = max(1, depth_limit)
    root = FolderNode(root_path, access_token=access_token)

    queue: Deque[Tuple[FolderNode, int]] = deque([(root, 0)])
    while queue:
        node, depth = queue.popleft()
        try:
            subdirs = list_subdirectories(node.path, ignore_patterns)
        except ScanError as e:
            logger.warning(f"Scan failed, treating as empty: {e}")
            node.children = NO_CHILDREN
            continue

        if not subdirs:
            node.children = NO_CHILDREN
            continue

        nodes = []
        for sub in subdirs:
            child = FolderNode(sub)
            if depth + 1 < depth_limit:
                queue.append((child, depth + 1))
            else:
                child.children = UNLOADED if has_subdirectory(sub, ignore_patterns) else NO_CHILDREN
            nodes.append(child)
        node.children = Loaded(tuple(nodes))

    logger.debug(f"Built tree for {root_path} (depth {depth_limit})")
    return root


def find_node(path: str, tree: Union[FolderNode, Iterable[FolderNode], None]) -> Optional[FolderNode]:
    """Depth-first search over loaded nodes. Absence is not an error."""
    if tree is None:
        return None
    stack = [tree] if isinstance(tree, FolderNode) else list(reversed(list(tree)))
    while stack:
        node = stack.pop()
        if node.path == path:
            return node
        stack.extend(reversed(node.loaded_children))
    return None


class FolderTreeIndex:
    """Runs scans on a bounded pool and coalesces concurrent expansions of the same path.

    ``discard_pending(path)`` marks in-flight expansions at or below *path*
    as superseded; their results are dropped instead of being attached.
    """

    def __init__(self, depth_limit: int = DEFAULT_DEPTH_LIMIT, max_workers: int = 4,
                 ignore_patterns: Iterable[str] = ()):
        self.depth_limit = depth_limit
        self.ignore_patterns = list(ignore_patterns)
        self._executor = ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="folder-scan")
        self._lock = threading.Lock()
        self._in_flight: Dict[str, Future] = {}
        self._generations: Dict[str, int] = {}

    def build_tree(self, root_path: str, access_token: Optional[bytes] = None) -> FolderNode:
        return build_tree(root_path, self.depth_limit, access_token, self.ignore_patterns)

    def submit_build(self, root_path: str, access_token: Optional[bytes] = None) -> "Future[FolderNode]":
        return self._executor.submit(self.build_tree, root_path, access_token)

    def expand_on_demand(self, node: FolderNode) -> List[FolderNode]:
        """Scan *node* again and attach the result; blocks until the scan is done."""
        path = node.path
        with self._lock:
            generation = self._generations.get(path, 0)
            future = self._in_flight.get(path)
            if future is None:
                future = self._executor.submit(self.build_tree, path)
                self._in_flight[path] = future
            else:
                logger.debug(f"Joining in-flight expansion of {path}")

        try:
            subtree = future.result()
        finally:
            with self._lock:
                if self._in_flight.get(path) is future:
                    del self._in_flight[path]

        with self._lock:
            if self._generations.get(path, 0) != generation:
                logger.debug(f"Expansion of {path} superseded, result discarded")
                return []
            node.children = subtree.children
        return node.loaded_children

    def discard_pending(self, path: str) -> None:
        prefix = path.rstrip(os.sep) + os.sep
        with self._lock:
            superseded = {p for p in self._in_flight if p.startswith(prefix)}
            superseded.add(path)
            for pending in superseded:
                self._generations[pending] = self._generations.get(pending, 0) + 1

    def is_expanding(self, path: str) -> bool:
        with self._lock:
            return path in self._in_flight

    def shutdown(self) -> None:
        self._executor.shutdown(wait=False, cancel_futures=True)
