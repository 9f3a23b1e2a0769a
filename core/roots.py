# core/roots.py
import os
import logging
from typing import Iterator, List, Optional

from core.access import Grant
from core.folder_tree import FolderNode

logger = logging.getLogger(__name__)


class RootEntry:
    """A root node together with the grant that keeps it reachable."""

    def __init__(self, node: FolderNode, grant: Grant):
        self.node = node
        self.grant = grant

    @property
    def path(self) -> str:
        return self.node.path


class RootRegistry:
    """Ordered roots; no two share a path. Only the façade's thread mutates it."""

    def __init__(self):
        self._entries: List[RootEntry] = []

    def __iter__(self) -> Iterator[RootEntry]:
        return iter(list(self._entries))

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, path: str) -> bool:
        return self.get(path) is not None

    @property
    def nodes(self) -> List[FolderNode]:
        return [entry.node for entry in self._entries]

    def get(self, path: str) -> Optional[RootEntry]:
        path = os.path.abspath(path)
        for entry in self._entries:
            if entry.path == path:
                return entry
        return None

    def add(self, node: FolderNode, grant: Grant) -> RootEntry:
        if node.path in self:
            raise ValueError(f"root already registered: {node.path}")
        entry = RootEntry(node, grant)
        self._entries.append(entry)
        return entry

    def replace_node(self, path: str, node: FolderNode) -> None:
        entry = self.get(path)
        if entry is not None:
            entry.node = node

    def remove(self, path: str) -> Optional[RootEntry]:
        entry = self.get(path)
        if entry is not None:
            self._entries.remove(entry)
        return entry

    def root_for(self, path: str) -> Optional[RootEntry]:
        """The root whose folder contains *path* (or is it)."""
        path = os.path.abspath(path)
        for entry in self._entries:
            if path == entry.path or path.startswith(entry.path.rstrip(os.sep) + os.sep):
                return entry
        return None
