# core/formats.py
"""Fixed allow-lists of photo and sidecar extensions (lowercase, with dots)."""
import os
from typing import FrozenSet

RAW_EXTENSIONS: FrozenSet[str] = frozenset({
    ".arw",   # Sony
    ".srf",   # Sony
    ".sr2",   # Sony
    ".orf",   # Olympus / OM System
    ".rw2",   # Panasonic
    ".raw",   # Panasonic / Leica legacy
    ".rwl",   # Leica
    ".cr2",   # Canon
    ".cr3",   # Canon
    ".crw",   # Canon legacy
    ".nef",   # Nikon
    ".nrw",   # Nikon compact RAW
    ".raf",   # Fujifilm
    ".pef",   # Pentax
    ".ptx",   # Pentax
    ".dng",   # Adobe / universal
    ".3fr",   # Hasselblad
    ".fff",   # Hasselblad
    ".iiq",   # Phase One
    ".mef",   # Mamiya
    ".mos",   # Leaf
    ".x3f",   # Sigma
    ".srw",   # Samsung
    ".dcr",   # Kodak
    ".kdc",   # Kodak
    ".k25",   # Kodak
    ".kc2",   # Kodak
    ".mrw",   # Minolta
    ".erf",   # Epson
    ".bay",   # Casio
    ".ndd",   # Nikon
    ".sti",   # Sinar
    ".r3d",   # RED
})

JPEG_EXTENSIONS: FrozenSet[str] = frozenset({".jpg", ".jpeg"})

OTHER_RASTER_EXTENSIONS: FrozenSet[str] = frozenset({".png", ".heic", ".tiff", ".tif"})

IMAGE_EXTENSIONS: FrozenSet[str] = RAW_EXTENSIONS | JPEG_EXTENSIONS | OTHER_RASTER_EXTENSIONS

SIDECAR_EXTENSION = ".xmp"

# Adobe Camera Raw settings file written next to RAW images by some tools.
ACR_EXTENSION = ".acr"


def extension_of(path: str) -> str:
    return os.path.splitext(path)[1].lower()


def base_name(path: str) -> str:
    """File name without directory and without its last extension."""
    return os.path.splitext(os.path.basename(path))[0]


def is_raw(path: str) -> bool:
    return extension_of(path) in RAW_EXTENSIONS


def is_jpeg(path: str) -> bool:
    return extension_of(path) in JPEG_EXTENSIONS


def is_image(path: str) -> bool:
    return extension_of(path) in IMAGE_EXTENSIONS
