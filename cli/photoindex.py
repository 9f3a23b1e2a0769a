#!/usr/bin/env python3
"""Command-line shell over the photo library: roots, folder tree, listings and sidecar edits."""
import argparse
import locale
import logging
import os
import sys
from collections import defaultdict
from typing import Dict, List, Optional

from config.config_manager import ConfigManager
from core.errors import AccessError
from core.folder_tree import FolderNode, Loaded, Unloaded
from core.library import PhotoLibrary
from core.photo_record import PhotoRecord, SortOption, effective_rating
from core.settings_store import SettingsStore
from plugins.exiftool_process import is_exiftool_available
from plugins.raw_decoder import ExifToolRawDecoder, SerializedRawDecoder

logger = logging.getLogger(__name__)


def setup_logging(log_level: str) -> None:
    numeric_level = getattr(logging, log_level.upper(), logging.INFO)
    log_dir = os.path.expanduser("~/.photoindex")
    os.makedirs(log_dir, exist_ok=True)
    log_path = os.path.join(log_dir, "photoindex.log")
    logging.basicConfig(
        level=numeric_level,
        format="%(asctime)s [%(levelname)s] %(name)s - %(message)s",
        handlers=[
            logging.FileHandler(log_path, mode="a"),
            logging.StreamHandler(sys.stdout)
        ]
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="photoindex", description=__doc__)
    parser.add_argument("--config", help="Path to config.yaml")
    parser.add_argument("--log-level", help="Override logging_level from the config")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("roots", help="List root folders")

    p = sub.add_parser("add-root", help="Grant access to a folder and add it as a root")
    p.add_argument("path")

    p = sub.add_parser("remove-root", help="Remove a root folder")
    p.add_argument("path")

    p = sub.add_parser("tree", help="Print the folder tree of every root")
    p.add_argument("--depth", type=int, default=None, help="Only print this many levels")

    p = sub.add_parser("ls", help="List the photos of a folder")
    p.add_argument("folder")
    p.add_argument("--label", action="append", default=[], help="Filter by label (repeatable)")
    p.add_argument("--rating", type=int, action="append", default=[], help="Filter by rating (repeatable)")
    p.add_argument("--sort", choices=[o.value for o in SortOption], default=None)

    p = sub.add_parser("rate", help="Set the rating (0-5) of photo files")
    p.add_argument("rating", type=int, choices=range(0, 6))
    p.add_argument("files", nargs="+")

    p = sub.add_parser("label", help="Set the label of photo files; without LABEL the label is cleared")
    p.add_argument("items", nargs="+", metavar="[LABEL] FILE")

    p = sub.add_parser("copy", help="Copy photo files (with companion JPEGs of RAW files) into a folder")
    p.add_argument("destination")
    p.add_argument("files", nargs="+")

    p = sub.add_parser("thumbnail", help="Write the thumbnail of a photo file as JPEG")
    p.add_argument("file")
    p.add_argument("output")
    return parser


def _print_tree(node: FolderNode, max_depth: Optional[int], depth: int = 0) -> None:
    if isinstance(node.children, Loaded):
        marker = "-"
    elif isinstance(node.children, Unloaded):
        marker = "+"
    else:
        marker = " "
    print(f"{'  ' * depth}{marker} {node.name if depth else node.path}")
    if max_depth is not None and depth >= max_depth:
        return
    for child in node.loaded_children:
        _print_tree(child, max_depth, depth + 1)


def _format_photo(photo: PhotoRecord) -> str:
    stars = "*" * effective_rating(photo)
    flags = "".join([
        "R" if photo.is_raw else "-",
        "J" if photo.has_jpg else "-",
        "D" if photo.marked_for_removal else "-",
    ])
    return f"{flags} {stars:<5} {photo.label or '':<10} {photo.name}"


def _records_for(library: PhotoLibrary, files: List[str]) -> List[PhotoRecord]:
    """Records for *files*, listing each containing folder once."""
    by_folder: Dict[str, List[str]] = defaultdict(list)
    for f in files:
        path = os.path.abspath(f)
        by_folder[os.path.dirname(path)].append(path)

    records = []
    for folder, paths in by_folder.items():
        listing = {p.path: p for p in library.select(folder)}
        for path in paths:
            record = listing.get(path)
            if record is None:
                print(f"not a listed photo: {path}", file=sys.stderr)
            else:
                records.append(record)
    return records


def run(args, library: PhotoLibrary) -> int:
    if args.command == "add-root":
        library.restore()
        node = library.add_root(args.path)
        print(node.path)
        return 0

    if args.command == "remove-root":
        library.restore()
        if not library.remove_root(args.path):
            print(f"not a root: {args.path}", file=sys.stderr)
            return 1
        return 0

    if args.command in ("roots", "tree"):
        errors = library.restore()
        for error in errors:
            print(f"folder unavailable: {error.path or error}", file=sys.stderr)
        for root in library.roots:
            if args.command == "roots":
                print(root.path)
            else:
                _print_tree(root, args.depth)
        return 0

    if args.command == "ls":
        if args.sort:
            library.set_sort_option(args.sort)
        library.select(args.folder)
        for photo in library.filtered_photos(args.label, args.rating):
            print(_format_photo(photo))
        return 0

    if args.command == "rate":
        updated = library.apply_rating(args.rating, _records_for(library, args.files))
        print(f"{len(updated)} photo(s) rated {args.rating}")
        return 0

    if args.command == "label":
        items = args.items
        label = None
        if not os.path.exists(items[0]):
            label, items = items[0], items[1:]
        if not items:
            print("no files given", file=sys.stderr)
            return 2
        updated = library.apply_label(label, _records_for(library, items))
        print(f"{len(updated)} photo(s) {'labelled ' + repr(label) if label else 'cleared'}")
        return 0

    if args.command == "copy":
        if not os.path.isdir(args.destination):
            print(f"not a folder: {args.destination}", file=sys.stderr)
            return 2
        result = library.copy_to(_records_for(library, args.files), args.destination)
        print(f"{result['copied']} file(s) copied, {result['skipped']} already present")
        if result["error"]:
            print(result["error"], file=sys.stderr)
            return 1
        return 0

    if args.command == "thumbnail":
        records = _records_for(library, [args.file])
        if not records:
            return 1
        image = library.thumbnail(records[0]).result()
        if image is None:
            print(f"no thumbnail for {args.file}", file=sys.stderr)
            return 1
        image.save(args.output, "JPEG")
        print(args.output)
        return 0

    return 2


def main(argv=None) -> int:
    args = build_parser().parse_args(argv)
    config = ConfigManager(args.config)
    setup_logging(args.log_level or config.logging_level)
    try:
        locale.setlocale(locale.LC_COLLATE, "")
    except locale.Error as e:
        logger.debug(f"Keeping default collation: {e}")

    raw_decoder = None
    if args.command in ("ls", "thumbnail") and is_exiftool_available():
        raw_decoder = SerializedRawDecoder(ExifToolRawDecoder())

    settings = SettingsStore(config.settings_path)
    library = PhotoLibrary(config, settings, raw_decoder=raw_decoder, watch=False, prefetch_thumbnails=False)
    try:
        return run(args, library)
    except AccessError as e:
        print(f"folder unavailable: {e.path or e}", file=sys.stderr)
        return 1
    finally:
        library.close()
        if raw_decoder is not None:
            raw_decoder.close()
        settings.close()


if __name__ == "__main__":
    sys.exit(main())
