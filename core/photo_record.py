# core/photo_record.py
"""Photo records for the selected folder plus the pure filter/sort/label helpers over them."""
import os
import re
import time
import uuid
import locale
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Iterable, List, Optional, Sequence

from core.formats import is_raw
from core.xmp_codec import MetadataDocument

NO_LABEL = "No Label"
TO_DELETE = "To Delete"
STANDARD_LABELS = ("Select", "Second", "Approved", "Review", "To Do")

LABEL_COLORS = {
    NO_LABEL: "secondary",
    "Select": "red",
    "Second": "yellow",
    "Approved": "green",
    "Review": "blue",
    "To Do": "purple",
    TO_DELETE: "orange",
}


class SortOption(Enum):
    NAME = "name"
    DATE_CREATED = "date"


@dataclass(frozen=True)
class PhotoRecord:
    path: str
    date_created: float
    metadata: Optional[MetadataDocument] = None
    marked_for_removal: bool = False
    is_raw: bool = False
    has_jpg: bool = False
    has_acr: bool = False
    in_camera_rating: Optional[int] = None
    width: Optional[int] = None
    height: Optional[int] = None
    camera_make: Optional[str] = None
    camera_model: Optional[str] = None
    file_size: Optional[int] = None
    # Per-session identity; survives every with_* copy below.
    id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def name(self) -> str:
        return os.path.basename(self.path)

    @property
    def label(self) -> Optional[str]:
        return self.metadata.label if self.metadata else None

    @property
    def rating(self) -> int:
        return self.metadata.rating if self.metadata else 0

    def with_metadata(self, metadata: Optional[MetadataDocument]) -> "PhotoRecord":
        return replace(self, metadata=metadata)

    def with_marked_for_removal(self, marked: bool) -> "PhotoRecord":
        return replace(self, marked_for_removal=marked)

    def with_camera_info(self, info) -> "PhotoRecord":
        if info is None:
            return self
        return replace(
            self,
            in_camera_rating=info.rating,
            width=info.width,
            height=info.height,
            camera_make=info.make,
            camera_model=info.model,
        )

    @classmethod
    def from_file(cls, path: str, metadata: Optional[MetadataDocument] = None, **kwargs) -> "PhotoRecord":
        """Stat *path* for its creation date (birth time, then mtime, then now) and size."""
        try:
            st = os.stat(path)
        except OSError:
            return cls(path=path, date_created=time.time(), metadata=metadata, is_raw=is_raw(path), **kwargs)
        created = getattr(st, "st_birthtime", None) or st.st_mtime or time.time()
        return cls(
            path=path,
            date_created=created,
            metadata=metadata,
            is_raw=is_raw(path),
            file_size=st.st_size,
            **kwargs,
        )


def effective_rating(photo: PhotoRecord) -> int:
    """Sidecar rating when set, otherwise the rating the camera stored in the file."""
    if photo.metadata and photo.metadata.rating > 0:
        return photo.metadata.rating
    return photo.in_camera_rating or 0


_DIGITS_RE = re.compile(r"(\d+)")


def natural_name_key(name: str):
    """IMG_2.CR2 sorts before IMG_10.CR2; text parts compare case-insensitively per locale."""
    parts = []
    for i, chunk in enumerate(_DIGITS_RE.split(name)):
        if i % 2:
            parts.append((0, int(chunk)))
        elif chunk:
            parts.append((1, locale.strxfrm(chunk.casefold())))
    return (tuple(parts), name)


def sort_photos(photos: Iterable[PhotoRecord], option: SortOption = SortOption.NAME) -> List[PhotoRecord]:
    if option == SortOption.DATE_CREATED:
        return sorted(photos, key=lambda p: (p.date_created, p.name))
    return sorted(photos, key=lambda p: natural_name_key(p.name))


def _matches_labels(photo: PhotoRecord, labels: Sequence[str]) -> bool:
    if photo.marked_for_removal:
        return TO_DELETE in labels
    label = photo.label or ""
    if not label:
        return NO_LABEL in labels
    return label in labels


def filter_photos(photos: Iterable[PhotoRecord],
                  labels: Optional[Iterable[str]] = None,
                  ratings: Optional[Iterable[int]] = None,
                  sort: SortOption = SortOption.NAME) -> List[PhotoRecord]:
    """Empty or None filters let everything through."""
    labels = list(labels or [])
    ratings = set(ratings or [])
    result = list(photos)
    if labels:
        result = [p for p in result if _matches_labels(p, labels)]
    if ratings:
        result = [p for p in result if effective_rating(p) in ratings]
    return sort_photos(result, sort)


def available_labels(photos: Iterable[PhotoRecord]) -> List[str]:
    present = set()
    any_marked = False
    for photo in photos:
        if photo.marked_for_removal:
            any_marked = True
        if photo.label:
            present.add(photo.label)

    result = []
    # "No Label" is only a useful filter once some photo carries a label.
    if present:
        result.append(NO_LABEL)
    result.extend(label for label in STANDARD_LABELS if label in present)
    result.extend(sorted(present - set(STANDARD_LABELS)))
    if any_marked:
        result.append(TO_DELETE)
    return result


def label_color(label: Optional[str]) -> str:
    return LABEL_COLORS.get(label or NO_LABEL, "secondary")
