# core/xmp_codec.py
"""Attribute-oriented, format-preserving editor for XMP sidecar documents.

A sidecar is a small XML document whose interesting data lives in the
attributes of its first ``rdf:Description`` element.  Reading is done with
regular expressions so that slightly broken files still yield whatever can
be recovered.  Writing goes through one mutation entry point with two
strategies: a structural edit of the parsed ElementTree, and a textual
edit used when the document does not parse.  Every mutation stamps
``xmp:MetadataDate`` and ends with the canonical formatting pass, so a
freshly created document and an edited one share the same layout.

No function in this module raises for malformed input; ``ValueError`` is
reserved for invalid arguments (rating out of range, bad attribute name).
"""
import html
import logging
import re
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional, Tuple

from core.errors import CodecError

logger = logging.getLogger(__name__)

RDF_NS = "http://www.w3.org/1999/02/22-rdf-syntax-ns#"
XML_NS = "http://www.w3.org/XML/1998/namespace"
DESCRIPTION_QNAME = f"{{{RDF_NS}}}Description"

RATING_ATTR = "xmp:Rating"
LABEL_ATTR = "xmp:Label"
METADATA_DATE_ATTR = "xmp:MetadataDate"

MIN_RATING = 0
MAX_RATING = 5

# Prefixes we may declare on the fly when an edit introduces one the
# document has not declared yet.
KNOWN_NAMESPACES: Dict[str, str] = {
    "x": "adobe:ns:meta/",
    "rdf": RDF_NS,
    "xmp": "http://ns.adobe.com/xap/1.0/",
    "tiff": "http://ns.adobe.com/tiff/1.0/",
    "exif": "http://ns.adobe.com/exif/1.0/",
    "dc": "http://purl.org/dc/elements/1.1/",
    "aux": "http://ns.adobe.com/exif/1.0/aux/",
    "exifEX": "http://cipa.jp/exif/1.0/",
    "photoshop": "http://ns.adobe.com/photoshop/1.0/",
    "xmpMM": "http://ns.adobe.com/xap/1.0/mm/",
    "stEvt": "http://ns.adobe.com/xap/1.0/sType/ResourceEvent#",
    "crd": "http://ns.adobe.com/camera-raw-defaults/1.0/",
    "crs": "http://ns.adobe.com/camera-raw-settings/1.0/",
}

XMP_TEMPLATE = """<x:xmpmeta xmlns:x="adobe:ns:meta/" x:xmptk="Adobe XMP Core 7.0-c000 1.000000, 0000/00/00-00:00:00">
 <rdf:RDF xmlns:rdf="http://www.w3.org/1999/02/22-rdf-syntax-ns#">
  <rdf:Description rdf:about=""
    xmlns:xmp="http://ns.adobe.com/xap/1.0/"
    xmlns:tiff="http://ns.adobe.com/tiff/1.0/"
    xmlns:exif="http://ns.adobe.com/exif/1.0/"
    xmlns:dc="http://purl.org/dc/elements/1.1/"
    xmlns:aux="http://ns.adobe.com/exif/1.0/aux/"
    xmlns:exifEX="http://cipa.jp/exif/1.0/"
    xmlns:photoshop="http://ns.adobe.com/photoshop/1.0/"
    xmlns:xmpMM="http://ns.adobe.com/xap/1.0/mm/"
    xmlns:stEvt="http://ns.adobe.com/xap/1.0/sType/ResourceEvent#"
    xmlns:crd="http://ns.adobe.com/camera-raw-defaults/1.0/"
    xmlns:crs="http://ns.adobe.com/camera-raw-settings/1.0/"
   xmp:Rating="0"
   xmp:CreatorTool="photoindex"
   xmp:ModifyDate="{created}"
   xmp:CreateDate="{created}"
   xmp:MetadataDate="{created}"
   xmp:Label="">
  </rdf:Description>
 </rdf:RDF>
</x:xmpmeta>
"""

_ATTRIBUTE_NAME_RE = re.compile(r"^[A-Za-z_][\w.-]*:[A-Za-z_][\w.-]*$")
_ATTRIBUTE_RE = re.compile(r"""([A-Za-z_][\w.-]*:[A-Za-z_][\w.-]*)\s*=\s*(?:"([^"]*)"|'([^']*)')""")
_DESCRIPTION_TAG_RE = re.compile(r"""<rdf:Description\b(?:[^>"']|"[^"]*"|'[^']*')*>""")
_FIRST_START_TAG_RE = re.compile(r"""<[A-Za-z_][\w.:-]*(?:[^<>"']|"[^"]*"|'[^']*')*""")
_ROOT_START_RE = re.compile(r"<([A-Za-z_][\w.:-]*)")

# Indentation used by the textual fallback for inserted attributes; the
# formatting pass replaces it whenever the result parses.
_FALLBACK_ATTRIBUTE_INDENT = "\n   "


def _now() -> datetime:
    return datetime.now().astimezone()


def timestamp(moment: Optional[datetime] = None) -> str:
    """ISO-8601 with seconds precision and a numeric UTC offset, e.g. 2026-02-02T00:43:19+02:00."""
    moment = moment or _now()
    if moment.tzinfo is None:
        moment = moment.astimezone()
    return moment.isoformat(timespec="seconds")


# ---------------------------------------------------------------------------
# Read side
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class MetadataDocument:
    """Immutable snapshot of one sidecar: its verbatim text plus the structured view."""

    source: str = field(repr=False)
    attributes: Mapping[str, str] = field(repr=False, compare=False, hash=False)
    rating: int = 0
    label: Optional[str] = None
    creator: Optional[str] = None
    rights: Optional[str] = None
    create_date: Optional[str] = None
    modify_date: Optional[str] = None
    metadata_date: Optional[str] = None
    camera_model: Optional[str] = None
    lens: Optional[str] = None
    focal_length: Optional[str] = None
    aperture: Optional[str] = None
    shutter_speed: Optional[str] = None
    iso: Optional[str] = None
    exposure_bias: Optional[str] = None

    def attribute(self, name: str) -> Optional[str]:
        return self.attributes.get(name)

    def set_attribute(self, name: str, value: str) -> "MetadataDocument":
        return _snapshot(set_attribute(self.source, name, value))

    def remove_attribute(self, name: str) -> "MetadataDocument":
        return _snapshot(remove_attribute(self.source, name))

    def with_rating(self, rating: int) -> "MetadataDocument":
        return _snapshot(update_rating(self.source, rating))

    def with_label(self, label: Optional[str]) -> "MetadataDocument":
        return _snapshot(update_label(self.source, label))


def parse_document(text: Optional[str]) -> Optional[MetadataDocument]:
    """Build a MetadataDocument from sidecar text; None for empty input."""
    if not text or not text.strip():
        return None

    attributes = _description_attributes(text)
    creator = _nested_list_item(text, "dc:creator") or attributes.get("dc:creator")
    rights = _nested_list_item(text, "dc:rights") or attributes.get("dc:rights")
    iso = _nested_list_item(text, "exif:ISOSpeedRatings") or attributes.get("exif:ISOSpeedRatings")

    return MetadataDocument(
        source=text,
        attributes=MappingProxyType(attributes),
        rating=_parse_rating(attributes.get(RATING_ATTR)),
        label=attributes.get(LABEL_ATTR) or None,
        creator=creator,
        rights=rights,
        create_date=attributes.get("xmp:CreateDate"),
        modify_date=attributes.get("xmp:ModifyDate"),
        metadata_date=attributes.get(METADATA_DATE_ATTR),
        camera_model=attributes.get("tiff:Model"),
        lens=attributes.get("aux:Lens"),
        focal_length=attributes.get("exif:FocalLength"),
        aperture=attributes.get("exif:FNumber"),
        shutter_speed=attributes.get("exif:ExposureTime"),
        iso=iso,
        exposure_bias=attributes.get("exif:ExposureBiasValue"),
    )


def extract_label(text: Optional[str]) -> Optional[str]:
    if not text:
        return None
    return _description_attributes(text).get(LABEL_ATTR) or None


def extract_rating(text: Optional[str]) -> int:
    if not text:
        return MIN_RATING
    return _parse_rating(_description_attributes(text).get(RATING_ATTR))


def _snapshot(text: str) -> MetadataDocument:
    doc = parse_document(text)
    if doc is None:
        # Mutations always produce text; an empty result means the input was empty too.
        raise ValueError("cannot build a metadata snapshot from empty text")
    return doc


def _description_attributes(text: str) -> Dict[str, str]:
    """All prefixed attributes of the first rdf:Description opening tag."""
    match = _DESCRIPTION_TAG_RE.search(text)
    if match:
        tag = match.group(0)
    else:
        # Unterminated tag: take everything up to the next element.
        start = text.find("<rdf:Description")
        if start == -1:
            return {}
        end = text.find("<", start + 1)
        tag = text[start:end if end != -1 else len(text)]

    attributes: Dict[str, str] = {}
    for attr in _ATTRIBUTE_RE.finditer(tag):
        raw = attr.group(2) if attr.group(2) is not None else attr.group(3)
        attributes[attr.group(1)] = html.unescape(raw)
    return attributes


def _nested_list_item(text: str, element: str) -> Optional[str]:
    """Text of the first rdf:li inside <element>, whatever the container (Seq, Bag, Alt)."""
    name = re.escape(element)
    pattern = re.compile(
        rf"<{name}\b[^>]*>(?:(?!</{name}>).)*?<rdf:li\b[^>]*>([^<]+)</rdf:li>",
        re.DOTALL,
    )
    match = pattern.search(text)
    if not match:
        return None
    value = html.unescape(match.group(1)).strip()
    return value or None


def _parse_rating(raw: Optional[str]) -> int:
    if raw is None:
        return MIN_RATING
    try:
        value = int(float(raw.strip()))
    except ValueError:
        return MIN_RATING
    return min(max(value, MIN_RATING), MAX_RATING)


# ---------------------------------------------------------------------------
# Write side: public operations
# ---------------------------------------------------------------------------

def set_attribute(text: str, name: str, value: str) -> str:
    """Set (or add) an attribute on the description element and stamp xmp:MetadataDate."""
    if value is None:
        raise ValueError("set_attribute needs a value; use remove_attribute to delete")
    return _mutate(text, name, str(value))


def remove_attribute(text: str, name: str) -> str:
    """Remove an attribute (no-op if absent) and stamp xmp:MetadataDate."""
    return _mutate(text, name, None)


def update_rating(text: str, rating: int) -> str:
    # A zero rating means "unrated" but is still written out.
    if isinstance(rating, bool) or not isinstance(rating, int) or not MIN_RATING <= rating <= MAX_RATING:
        raise ValueError(f"rating must be an integer in [{MIN_RATING}..{MAX_RATING}], got {rating!r}")
    return set_attribute(text, RATING_ATTR, str(rating))


def update_label(text: str, label: Optional[str]) -> str:
    if label:
        return set_attribute(text, LABEL_ATTR, label)
    return remove_attribute(text, LABEL_ATTR)


def create_document(rating: int = 0, label: Optional[str] = None,
                    created: Optional[datetime] = None) -> str:
    """New sidecar text from the template, shaped by the same mutations used for edits."""
    content = XMP_TEMPLATE.format(created=timestamp(created))
    content = update_rating(content, rating)
    return update_label(content, label)


def format_document(text: str) -> str:
    """Canonical layout; returns the input unchanged if it cannot be parsed."""
    try:
        return _render(_parse_xml(text))
    except CodecError as e:
        logger.debug("Formatting skipped, document kept as-is: %s", e)
        return text


# ---------------------------------------------------------------------------
# Write side: the two strategies behind _mutate
# ---------------------------------------------------------------------------

def _mutate(text: str, name: str, value: Optional[str]) -> str:
    if not _ATTRIBUTE_NAME_RE.match(name or ""):
        raise ValueError(f"attribute name must be prefix:local, got {name!r}")
    try:
        return _structural_edit(text, name, value)
    except CodecError as e:
        logger.debug("Structural edit of %s failed (%s); using textual fallback", name, e)
    return format_document(_textual_edit(text, name, value))


def _structural_edit(text: str, name: str, value: Optional[str]) -> str:
    parsed = _parse_xml(text)
    description = _find_description(parsed.root)
    if description is None:
        raise CodecError("no rdf:Description element")

    _apply(parsed, description, name, value)
    if name != METADATA_DATE_ATTR or value is None:
        _apply(parsed, description, METADATA_DATE_ATTR, timestamp())
    return _render(parsed)


def _apply(parsed: "_ParsedXml", description: ET.Element, name: str, value: Optional[str]) -> None:
    key = parsed.expand(name, description)
    if value is None:
        description.attrib.pop(key, None)
    else:
        # Existing keys keep their position; new keys land at the end of the tag.
        description.set(key, value)


def _textual_edit(text: str, name: str, value: Optional[str]) -> str:
    if value is None:
        text = _textual_remove(text, name)
    else:
        text = _textual_set(text, name, value)
    if name != METADATA_DATE_ATTR or value is None:
        text = _textual_set(text, METADATA_DATE_ATTR, timestamp())
    return text


def _attribute_pattern(name: str, leading_space: bool = False) -> "re.Pattern[str]":
    prefix = r"\s*" if leading_space else ""
    return re.compile(prefix + r"(?<![\w:.-])" + re.escape(name) + r"""\s*=\s*(?:"[^"]*"|'[^']*')""")


def _textual_set(text: str, name: str, value: str) -> str:
    tag = _DESCRIPTION_TAG_RE.search(text)
    start, end = (tag.start(), tag.end()) if tag else (0, len(text))
    replacement = f'{name}="{_escape_attribute(value)}"'

    existing = _attribute_pattern(name).search(text, start, end)
    if existing:
        return text[:existing.start()] + replacement + text[existing.end():]

    offset = _insertion_offset(text, tag)
    return text[:offset] + _FALLBACK_ATTRIBUTE_INDENT + replacement + text[offset:]


def _textual_remove(text: str, name: str) -> str:
    tag = _DESCRIPTION_TAG_RE.search(text)
    start, end = (tag.start(), tag.end()) if tag else (0, len(text))
    existing = _attribute_pattern(name, leading_space=True).search(text, start, end)
    if not existing:
        return text
    return text[:existing.start()] + text[existing.end():]


def _insertion_offset(text: str, tag: Optional["re.Match[str]"]) -> int:
    """Where a new attribute goes: just before the description tag closes, or a best guess."""
    if tag:
        return tag.end() - (2 if tag.group(0).endswith("/>") else 1)

    start = text.find("<rdf:Description")
    if start != -1:
        # Unterminated tag: stop before the next element and any trailing whitespace.
        end = text.find("<", start + 1)
        end = len(text) if end == -1 else end
        while end > start and text[end - 1].isspace():
            end -= 1
        if text[end - 1] == ">":
            end -= 2 if text[end - 2:end] == "/>" else 1
        return end

    first = _FIRST_START_TAG_RE.search(text)
    if first:
        end = first.end()
        if text[end - 1:end] == "/":
            end -= 1
        return end
    return len(text)


# ---------------------------------------------------------------------------
# Structural parsing and canonical rendering
# ---------------------------------------------------------------------------

class _TreeTarget:
    """XMLParser target that builds a tree and records which element declared which namespace."""

    def __init__(self):
        self._builder = ET.TreeBuilder(insert_comments=True, insert_pis=True)
        self._pending: List[Tuple[str, str]] = []
        self.declarations: Dict[int, List[Tuple[str, str]]] = {}

    def start_ns(self, prefix, uri):
        self._pending.append((prefix, uri))

    def end_ns(self, prefix):
        pass

    def start(self, tag, attrs):
        element = self._builder.start(tag, attrs)
        if self._pending:
            self.declarations[id(element)] = self._pending
            self._pending = []
        return element

    def end(self, tag):
        return self._builder.end(tag)

    def data(self, data):
        self._builder.data(data)

    def comment(self, text):
        return self._builder.comment(text)

    def pi(self, target, text=None):
        return self._builder.pi(target, text)

    def close(self):
        return self._builder.close()


class _ParsedXml:
    """A parsed root element plus the verbatim text around it and its namespace bookkeeping."""

    def __init__(self, prolog: str, root: ET.Element, epilog: str,
                 declarations: Dict[int, List[Tuple[str, str]]]):
        self.prolog = prolog
        self.root = root
        self.epilog = epilog
        self.declarations = declarations
        self.uri_for_prefix: Dict[str, str] = {"xml": XML_NS}
        self.prefix_for_uri: Dict[str, str] = {XML_NS: "xml"}
        for pairs in declarations.values():
            for prefix, uri in pairs:
                self.uri_for_prefix.setdefault(prefix, uri)
                self.prefix_for_uri.setdefault(uri, prefix)

    def expand(self, qualified: str, declare_on: ET.Element) -> str:
        prefix, local = qualified.split(":", 1)
        uri = self.uri_for_prefix.get(prefix)
        if uri is None:
            uri = KNOWN_NAMESPACES.get(prefix)
            if uri is None:
                raise CodecError(f"undeclared namespace prefix {prefix!r}")
            self.declarations.setdefault(id(declare_on), []).append((prefix, uri))
            self.uri_for_prefix[prefix] = uri
            self.prefix_for_uri.setdefault(uri, prefix)
        return f"{{{uri}}}{local}"

    def qualify(self, name: str) -> str:
        if not name.startswith("{"):
            return name
        uri, local = name[1:].split("}", 1)
        prefix = self.prefix_for_uri.get(uri)
        if prefix is None:
            raise CodecError(f"no prefix bound to namespace {uri!r}")
        return f"{prefix}:{local}" if prefix else local


def _parse_xml(text: str) -> _ParsedXml:
    if not text or not text.strip():
        raise CodecError("empty document")

    start = _ROOT_START_RE.search(text)
    if not start:
        raise CodecError("no root element")
    root_name = start.group(1)

    close = text.rfind(f"</{root_name}")
    if close != -1:
        end = text.find(">", close)
        if end == -1:
            raise CodecError("unterminated root closing tag")
        end += 1
    else:
        opening = _FIRST_START_TAG_RE.match(text, start.start())
        if not opening or not text.startswith("/>", opening.end() - 1):
            raise CodecError("root element is never closed")
        end = opening.end() + 1

    target = _TreeTarget()
    parser = ET.XMLParser(target=target)
    try:
        parser.feed(text[start.start():end])
        root = parser.close()
    except ET.ParseError as e:
        raise CodecError(str(e)) from e
    return _ParsedXml(text[:start.start()], root, text[end:], target.declarations)


def _find_description(root: ET.Element) -> Optional[ET.Element]:
    for element in root.iter(DESCRIPTION_QNAME):
        return element
    return None


def _render(parsed: _ParsedXml) -> str:
    """Stable indentation, description attributes one per line in canonical order."""
    for element in parsed.root.iter():
        if len(element) == 0 and element.text is not None and not element.text.strip():
            element.text = None
    ET.indent(parsed.root, space=" ")

    out: List[str] = []
    _write(parsed.root, parsed, _find_description(parsed.root), 0, out)

    prolog = parsed.prolog.strip()
    epilog = parsed.epilog.strip()
    head = prolog + "\n" if prolog else ""
    tail = "\n" + epilog if epilog else ""
    return head + "".join(out) + tail + "\n"


def _canonical_order(item: Tuple[str, str]) -> Tuple[int, str]:
    name = item[0]
    is_declaration = name == "xmlns" or name.startswith("xmlns:")
    return (0 if is_declaration else 1, name)


def _write(element: ET.Element, parsed: _ParsedXml, description: Optional[ET.Element],
           depth: int, out: List[str]) -> None:
    if element.tag is ET.Comment:
        out.append(f"<!--{element.text or ''}-->")
    elif element.tag is ET.ProcessingInstruction:
        out.append(f"<?{element.text or ''}?>")
    else:
        name = parsed.qualify(element.tag)
        attributes = [
            (f"xmlns:{prefix}" if prefix else "xmlns", uri)
            for prefix, uri in parsed.declarations.get(id(element), [])
        ]
        attributes.extend((parsed.qualify(key), value) for key, value in element.attrib.items())

        if element is description:
            separator = "\n" + " " * (depth + 4)
            attributes.sort(key=_canonical_order)
        else:
            separator = " "
        rendered = "".join(f'{separator}{key}="{_escape_attribute(value)}"' for key, value in attributes)

        if len(element) == 0 and not element.text:
            out.append(f"<{name}{rendered}/>")
        else:
            out.append(f"<{name}{rendered}>")
            if element.text:
                out.append(_escape_text(element.text))
            for child in element:
                _write(child, parsed, description, depth + 1, out)
            out.append(f"</{name}>")

    if element.tail:
        out.append(_escape_text(element.tail))


def _escape_text(value: str) -> str:
    return value.replace("&", "&amp;").replace("<", "&lt;").replace(">", "&gt;")


def _escape_attribute(value: str) -> str:
    return (_escape_text(value)
            .replace('"', "&quot;")
            .replace("\n", "&#10;")
            .replace("\r", "&#13;")
            .replace("\t", "&#09;"))
