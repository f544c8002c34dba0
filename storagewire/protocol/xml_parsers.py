"""
Functions for parsing storage service XML responses.

Listing responses can be large, so they are read through
:class:`XmlCursor`, a forward-only cursor over ``lxml.etree.iterparse``
events that throws consumed elements away.  Listing parsers are driven by
:class:`ListingSpec` tables instead of one hand written loop per response
type.  Elements the tables do not know are skipped as a whole subtree,
which keeps the parsers working when the service adds new fields.

The small documents (Atom entities, persisted continuation tokens) are
parsed in one go with ``etree.fromstring``.
"""

import io
import logging
from collections import deque
from dataclasses import dataclass
from email.utils import parsedate_to_datetime
from enum import Enum
from typing import (
    Any,
    BinaryIO,
    Callable,
    Deque,
    Dict,
    Iterator,
    List,
    Mapping,
    Optional,
    Tuple,
    Union,
)

from lxml import etree

from storagewire.lib import error
from storagewire.lib.cancellation import CancellationToken, check
from storagewire.lib.namespace import ns

from .continuation import continuation_from_marker
from .entity import (
    PARTITION_KEY,
    ROW_KEY,
    TIMESTAMP,
    Entity,
    decode_property,
    etag_from_timestamp,
    parse_datetime,
)
from .types import (
    BlobEntry,
    BlobPrefixEntry,
    ContainerEntry,
    ContinuationToken,
    DirectoryEntry,
    EdmType,
    FileEntry,
    FileHandle,
    FileRange,
    PageRange,
    QueueEntry,
    ShareEntry,
    TokenKind,
)

log = logging.getLogger(__name__)

Source = Union[bytes, bytearray, BinaryIO]


class CursorState(Enum):
    AT_START = "at-start"
    IN_ELEMENT = "in-element"
    AT_END = "at-end"


def _localname(elem: etree._Element) -> str:
    return etree.QName(elem).localname


class XmlCursor:
    """
    Forward-only reader over the start/end events of an XML document.

    The cursor always points at the next unconsumed event.  Element
    content is only available through :meth:`read_element_text`; once an
    element's end event has been consumed the element is cleared, so
    memory use does not grow with the document.

    Args:
        source: The document, as bytes or a binary stream
        huge_tree: Lift lxml's safety limits for very large documents
        cancellation: Checked whenever an element is entered
    """

    def __init__(
        self,
        source: Source,
        huge_tree: bool = False,
        cancellation: Optional[CancellationToken] = None,
    ) -> None:
        if isinstance(source, (bytes, bytearray)):
            source = io.BytesIO(bytes(source))
        self._events = etree.iterparse(
            source,
            events=("start", "end"),
            huge_tree=huge_tree,
            resolve_entities=False,
            remove_comments=True,
            remove_pis=True,
        )
        self._lookahead: Deque[Tuple[str, etree._Element]] = deque()
        self._exhausted = False
        self.cancellation = cancellation
        self.depth = 0
        self.state = CursorState.AT_START

    def _peek(self, n: int = 0) -> Optional[Tuple[str, etree._Element]]:
        while len(self._lookahead) <= n and not self._exhausted:
            try:
                self._lookahead.append(next(self._events))
            except StopIteration:
                self._exhausted = True
            except etree.XMLSyntaxError as exc:
                raise error.MalformedWireValue(reason=f"malformed XML: {exc}") from exc
        if len(self._lookahead) <= n:
            return None
        return self._lookahead[n]

    def _advance(self) -> Tuple[str, etree._Element]:
        item = self._peek()
        if item is None:
            raise error.MalformedWireValue(reason="unexpected end of XML document")
        self._lookahead.popleft()
        event, elem = item
        if event == "start":
            check(self.cancellation)
            self.depth += 1
            self.state = CursorState.IN_ELEMENT
        else:
            self.depth -= 1
            if self.depth == 0:
                self.state = CursorState.AT_END
            elem.clear(keep_tail=True)
            parent = elem.getparent()
            if parent is not None:
                while elem.getprevious() is not None:
                    del parent[0]
        return item

    @property
    def local_name(self) -> Optional[str]:
        """Local name of the element the next event belongs to."""
        item = self._peek()
        return _localname(item[1]) if item else None

    def is_start_element(self, name: Optional[str] = None) -> bool:
        item = self._peek()
        if item is None or item[0] != "start":
            return False
        return name is None or _localname(item[1]) == name

    def is_end_element(self) -> bool:
        item = self._peek()
        return item is not None and item[0] == "end"

    def is_empty_element(self) -> bool:
        """True for a start event of an element with neither text nor children."""
        item = self._peek()
        if item is None or item[0] != "start":
            return False
        following = self._peek(1)
        if following is None or following[0] != "end" or following[1] is not item[1]:
            return False
        return not item[1].text

    def attribute(self, name: str) -> Optional[str]:
        item = self._peek()
        if item is None or item[0] != "start":
            return None
        return item[1].get(name)

    def attributes(self) -> Dict[str, str]:
        item = self._peek()
        if item is None or item[0] != "start":
            return {}
        return {etree.QName(k).localname: v for k, v in item[1].attrib.items()}

    def read_to_following(self, name: str) -> bool:
        """
        Advance to the next start element called ``name``.

        Returns:
            False if the document ends first
        """
        while True:
            item = self._peek()
            if item is None:
                return False
            if item[0] == "start" and _localname(item[1]) == name:
                return True
            self._advance()

    def read_start_element(self, name: Optional[str] = None) -> str:
        item = self._peek()
        if item is None or item[0] != "start":
            raise error.MalformedWireValue(reason="expected a start element")
        found = _localname(item[1])
        if name is not None and found != name:
            raise error.MalformedWireValue(reason=f"expected <{name}>, found <{found}>")
        self._advance()
        return found

    def read_end_element(self) -> None:
        if not self.is_end_element():
            raise error.MalformedWireValue(reason="expected an end element")
        self._advance()

    def read_element_text(self) -> str:
        """
        Consume a text-only element and return its text ("" when empty).

        Raises:
            MalformedWireValue: the element has child elements
        """
        item = self._peek()
        if item is None or item[0] != "start":
            raise error.MalformedWireValue(reason="expected a start element")
        elem = item[1]
        self._advance()
        following = self._peek()
        if following is None or following[0] != "end" or following[1] is not elem:
            raise error.MalformedWireValue(
                reason=f"element <{_localname(elem)}> has unexpected child elements"
            )
        text = elem.text or ""
        self._advance()
        return text

    def skip_subtree(self) -> None:
        """
        Consume the current element including everything inside it.  At
        an end event only that event is consumed.
        """
        item = self._peek()
        if item is None:
            raise error.MalformedWireValue(reason="unexpected end of XML document")
        if item[0] == "end":
            self._advance()
            return
        elem = item[1]
        while True:
            event, node = self._advance()
            if event == "end" and node is elem:
                return


## Scalar field readers.  Values are parsed independently of the locale:
## integers as plain decimal, dates as RFC 1123 or ISO 8601.


def _parse_date(text: str):
    try:
        return parsedate_to_datetime(text)
    except (TypeError, ValueError):
        pass
    return parse_datetime(text)


def _parse_bool(text: str) -> bool:
    value = text.strip().lower()
    if value not in ("true", "false"):
        raise ValueError(f"not a boolean: {text!r}")
    return value == "true"


Reader = Callable[[XmlCursor], Any]


def _scalar(convert: Callable[[str], Any]) -> Reader:
    def reader(cursor: XmlCursor) -> Any:
        name = cursor.local_name
        text = cursor.read_element_text()
        try:
            return convert(text)
        except (TypeError, ValueError) as exc:
            raise error.MalformedWireValue(
                reason=f"bad value {text!r} in <{name}>"
            ) from exc

    return reader


TEXT = _scalar(str)
INT = _scalar(lambda text: int(text.strip()))
BOOL = _scalar(_parse_bool)
DATE = _scalar(_parse_date)


## Placeholder the service writes for metadata keys that are not valid XML names
INVALID_METADATA_NAME = "x-ms-invalid-name"


def read_metadata(cursor: XmlCursor) -> Dict[str, str]:
    """
    ``<Metadata><key>value</key>...</Metadata>`` as a dict.  Empty
    elements and the invalid-name placeholder are skipped.
    """
    metadata: Dict[str, str] = {}
    cursor.read_start_element()
    while not cursor.is_end_element():
        name = cursor.local_name
        if cursor.is_empty_element():
            cursor.skip_subtree()
            continue
        value = cursor.read_element_text()
        if name != INVALID_METADATA_NAME:
            metadata[name] = value
    cursor.read_end_element()
    return metadata


## A field table maps element names to ("dotted.attribute", reader), or to
## a nested table for wrapper elements like <Properties>.
Fields = Mapping[str, Any]


@dataclass(frozen=True)
class ItemSpec:
    factory: Callable[[], Any]
    fields: Fields


@dataclass(frozen=True)
class ListingSpec:
    """
    Shape of one listing response.

    Attributes:
        root: Document element, e.g. "EnumerationResults"
        collection: Element wrapping the items ("Shares", "Entries"), or
            None when the items sit directly under the root
        items: Item element name -> ItemSpec
        token_kind: Service the NextMarker continuation belongs to
    """

    root: str
    collection: Optional[str]
    items: Mapping[str, ItemSpec]
    token_kind: TokenKind = TokenKind.BLOB


def _assign(target: Any, path: str, value: Any) -> None:
    *parents, attr = path.split(".")
    for parent in parents:
        target = getattr(target, parent)
    setattr(target, attr, value)


def _read_record(cursor: XmlCursor, target: Any, fields: Fields) -> None:
    cursor.read_start_element()
    while not cursor.is_end_element():
        name = cursor.local_name
        spec = fields.get(name)
        if spec is None:
            log.debug("skipping unknown element <%s>", name)
            cursor.skip_subtree()
        elif cursor.is_empty_element():
            cursor.skip_subtree()
        elif isinstance(spec, Mapping):
            _read_record(cursor, target, spec)
        else:
            path, reader = spec
            _assign(target, path, reader(cursor))
    cursor.read_end_element()


_LISTING_FIELDS: Dict[str, Tuple[str, Reader]] = {
    "Marker": ("_marker", TEXT),
    "NextMarker": ("_next_marker", TEXT),
    "Prefix": ("_prefix", TEXT),
    "MaxResults": ("_max_results", INT),
}


class ListingResult:
    """
    Lazily parsed listing.

    ``items`` is a one-shot iterator yielding entries in document order
    while the document is being read.  The page level fields (marker,
    next marker, prefix, max results, root attributes and the
    continuation token) are only known once the parser has passed them,
    so reading any of them parses the rest of the document first.  Items
    that were not yet iterated at that point are kept and still come out
    of ``items`` afterwards.
    """

    def __init__(self, cursor: XmlCursor, spec: ListingSpec) -> None:
        self.spec = spec
        self._marker: Optional[str] = None
        self._next_marker: Optional[str] = None
        self._prefix: Optional[str] = None
        self._max_results: Optional[int] = None
        self._attributes: Dict[str, str] = {}
        self._leftover: Deque[Any] = deque()
        self._source = self._parse(cursor)
        self.items: Iterator[Any] = self._iterate()

    def __iter__(self) -> Iterator[Any]:
        return self.items

    def _iterate(self) -> Iterator[Any]:
        while True:
            if self._leftover:
                yield self._leftover.popleft()
                continue
            try:
                item = next(self._source)
            except StopIteration:
                return
            yield item

    def _drain(self) -> None:
        for item in self._source:
            self._leftover.append(item)

    def _parse(self, cursor: XmlCursor) -> Iterator[Any]:
        spec = self.spec
        if not cursor.read_to_following(spec.root):
            raise error.MalformedWireValue(reason=f"response has no <{spec.root}> element")
        self._attributes = cursor.attributes()
        cursor.read_start_element()
        while not cursor.is_end_element():
            name = cursor.local_name
            if cursor.is_empty_element():
                cursor.skip_subtree()
            elif spec.collection is None and name in spec.items:
                yield self._read_item(cursor, name)
            elif name == spec.collection:
                yield from self._read_collection(cursor)
            elif name in _LISTING_FIELDS:
                attr, reader = _LISTING_FIELDS[name]
                setattr(self, attr, reader(cursor))
            else:
                log.debug("skipping unknown element <%s> in <%s>", name, spec.root)
                cursor.skip_subtree()
        cursor.read_end_element()

    def _read_collection(self, cursor: XmlCursor) -> Iterator[Any]:
        cursor.read_start_element()
        while not cursor.is_end_element():
            name = cursor.local_name
            if cursor.is_empty_element() or name not in self.spec.items:
                if name not in self.spec.items:
                    log.debug("skipping unknown element <%s> in <%s>", name, self.spec.collection)
                cursor.skip_subtree()
                continue
            yield self._read_item(cursor, name)
        cursor.read_end_element()

    def _read_item(self, cursor: XmlCursor, name: str) -> Any:
        item_spec = self.spec.items[name]
        item = item_spec.factory()
        _read_record(cursor, item, item_spec.fields)
        return item

    @property
    def marker(self) -> Optional[str]:
        self._drain()
        return self._marker

    @property
    def next_marker(self) -> Optional[str]:
        self._drain()
        return self._next_marker

    @property
    def prefix(self) -> Optional[str]:
        self._drain()
        return self._prefix

    @property
    def max_results(self) -> Optional[int]:
        self._drain()
        return self._max_results

    @property
    def attributes(self) -> Dict[str, str]:
        """Attributes of the document element (ServiceEndpoint etc)."""
        self._drain()
        return self._attributes

    @property
    def continuation(self) -> Optional[ContinuationToken]:
        """Token for the next page, None when this was the last page."""
        return continuation_from_marker(self.next_marker, self.spec.token_kind)


def parse_listing(
    source: Source,
    spec: ListingSpec,
    cancellation: Optional[CancellationToken] = None,
    huge_tree: bool = False,
) -> ListingResult:
    """
    Start parsing a listing response.

    Nothing is read until the items (or a page level field) of the
    returned :class:`ListingResult` are accessed.

    Raises (while iterating):
        MalformedWireValue: broken XML or unparseable field values
        OperationCanceled: ``cancellation`` fired; the stream is abandoned
    """
    return ListingResult(XmlCursor(source, huge_tree=huge_tree, cancellation=cancellation), spec)


SHARES = ListingSpec(
    root="EnumerationResults",
    collection="Shares",
    items={
        "Share": ItemSpec(
            ShareEntry,
            {
                "Name": ("name", TEXT),
                "Snapshot": ("snapshot", TEXT),
                "Properties": {
                    "Last-Modified": ("properties.last_modified", DATE),
                    "Etag": ("properties.etag", TEXT),
                    "Quota": ("properties.quota", INT),
                },
                "Metadata": ("metadata", read_metadata),
            },
        )
    },
    token_kind=TokenKind.FILE,
)

FILES_AND_DIRECTORIES = ListingSpec(
    root="EnumerationResults",
    collection="Entries",
    items={
        "File": ItemSpec(
            FileEntry,
            {
                "Name": ("name", TEXT),
                "Properties": {"Content-Length": ("length", INT)},
            },
        ),
        "Directory": ItemSpec(
            DirectoryEntry,
            {
                "Name": ("name", TEXT),
                "Properties": {
                    "Last-Modified": ("last_modified", DATE),
                    "Etag": ("etag", TEXT),
                },
            },
        ),
    },
    token_kind=TokenKind.FILE,
)

FILE_RANGES = ListingSpec(
    root="Ranges",
    collection=None,
    items={"Range": ItemSpec(FileRange, {"Start": ("start", INT), "End": ("end", INT)})},
    token_kind=TokenKind.FILE,
)

_PAGE_RANGE_FIELDS = {"Start": ("start", INT), "End": ("end", INT)}

PAGE_RANGES = ListingSpec(
    root="PageList",
    collection=None,
    items={
        "PageRange": ItemSpec(PageRange, _PAGE_RANGE_FIELDS),
        "ClearRange": ItemSpec(lambda: PageRange(is_clear=True), _PAGE_RANGE_FIELDS),
    },
)

HANDLES = ListingSpec(
    root="EnumerationResults",
    collection="Entries",
    items={
        "Handle": ItemSpec(
            FileHandle,
            {
                "HandleId": ("handle_id", TEXT),
                "Path": ("path", TEXT),
                "FileId": ("file_id", INT),
                "ParentId": ("parent_id", INT),
                "SessionId": ("session_id", INT),
                "ClientIp": ("client_ip", TEXT),
                "OpenTime": ("open_time", DATE),
                "LastReconnectTime": ("last_reconnect_time", DATE),
            },
        )
    },
    token_kind=TokenKind.FILE,
)

CONTAINERS = ListingSpec(
    root="EnumerationResults",
    collection="Containers",
    items={
        "Container": ItemSpec(
            ContainerEntry,
            {
                "Name": ("name", TEXT),
                "Properties": {
                    "Last-Modified": ("last_modified", DATE),
                    "Etag": ("etag", TEXT),
                    "LeaseStatus": ("lease_status", TEXT),
                    "PublicAccess": ("public_access", TEXT),
                },
                "Metadata": ("metadata", read_metadata),
            },
        )
    },
)

BLOBS = ListingSpec(
    root="EnumerationResults",
    collection="Blobs",
    items={
        "Blob": ItemSpec(
            BlobEntry,
            {
                "Name": ("name", TEXT),
                "Snapshot": ("snapshot", TEXT),
                "Deleted": ("deleted", BOOL),
                "Properties": {
                    "Last-Modified": ("last_modified", DATE),
                    "Etag": ("etag", TEXT),
                    "Content-Length": ("content_length", INT),
                    "Content-Type": ("content_type", TEXT),
                    "BlobType": ("blob_type", TEXT),
                },
                "Metadata": ("metadata", read_metadata),
            },
        ),
        "BlobPrefix": ItemSpec(BlobPrefixEntry, {"Name": ("name", TEXT)}),
    },
)

QUEUES = ListingSpec(
    root="EnumerationResults",
    collection="Queues",
    items={
        "Queue": ItemSpec(
            QueueEntry,
            {"Name": ("name", TEXT), "Metadata": ("metadata", read_metadata)},
        )
    },
    token_kind=TokenKind.QUEUE,
)


def parse_list_shares(
    source: Source, cancellation=None, huge_tree: bool = False
) -> ListingResult:
    return parse_listing(source, SHARES, cancellation, huge_tree)


def parse_list_files_and_directories(
    source: Source, cancellation=None, huge_tree: bool = False
) -> ListingResult:
    """Items are :class:`FileEntry` and :class:`DirectoryEntry` in document order."""
    return parse_listing(source, FILES_AND_DIRECTORIES, cancellation, huge_tree)


def parse_list_file_ranges(
    source: Source, cancellation=None, huge_tree: bool = False
) -> ListingResult:
    return parse_listing(source, FILE_RANGES, cancellation, huge_tree)


def parse_list_page_ranges(
    source: Source, cancellation=None, huge_tree: bool = False
) -> ListingResult:
    """Items are :class:`PageRange`; ClearRange elements have ``is_clear`` set."""
    return parse_listing(source, PAGE_RANGES, cancellation, huge_tree)


def parse_list_handles(
    source: Source, cancellation=None, huge_tree: bool = False
) -> ListingResult:
    return parse_listing(source, HANDLES, cancellation, huge_tree)


def parse_list_containers(
    source: Source, cancellation=None, huge_tree: bool = False
) -> ListingResult:
    return parse_listing(source, CONTAINERS, cancellation, huge_tree)


def parse_list_blobs(
    source: Source, cancellation=None, huge_tree: bool = False
) -> ListingResult:
    """Items are :class:`BlobEntry` and, for delimiter listings, :class:`BlobPrefixEntry`."""
    return parse_listing(source, BLOBS, cancellation, huge_tree)


def parse_list_queues(
    source: Source, cancellation=None, huge_tree: bool = False
) -> ListingResult:
    return parse_listing(source, QUEUES, cancellation, huge_tree)


## Atom entity payloads


def _fromstring(body: Union[bytes, str], huge_tree: bool = False) -> etree._Element:
    if isinstance(body, str):
        body = body.encode("utf-8")
    parser = etree.XMLParser(huge_tree=huge_tree, resolve_entities=False)
    try:
        return etree.fromstring(body, parser)
    except etree.XMLSyntaxError as exc:
        raise error.MalformedWireValue(reason=f"malformed XML: {exc}") from exc


def _entity_from_atom(entry: etree._Element) -> Entity:
    properties = entry.find("%s/%s" % (ns("atom", "content"), ns("m", "properties")))
    if properties is None:
        raise error.MalformedWireValue(reason="Atom entry without m:properties")

    entity = Entity()
    entity.etag = entry.get(ns("m", "etag"))
    raw_timestamp = None
    for child in properties:
        if not isinstance(child.tag, str):
            continue
        name = _localname(child)
        raw = None if child.get(ns("m", "null")) == "true" else (child.text or "")
        if name == PARTITION_KEY:
            entity.partition_key = raw or ""
        elif name == ROW_KEY:
            entity.row_key = raw or ""
        elif name == TIMESTAMP:
            raw_timestamp = raw
            if raw is not None:
                entity.timestamp = decode_property(raw, EdmType.DATETIME, property_name=name).value
        else:
            type_name = child.get(ns("m", "type"))
            try:
                ## untyped Atom properties are strings
                edm_type = EdmType.from_wire(type_name) if type_name else EdmType.STRING
            except ValueError as exc:
                raise error.MalformedWireValue(reason=str(exc)) from exc
            entity.properties[name] = decode_property(raw, edm_type, property_name=name)
    if entity.etag is None and raw_timestamp:
        entity.etag = etag_from_timestamp(raw_timestamp)
    return entity


def parse_atom_entry(body: Union[bytes, str], huge_tree: bool = False) -> Entity:
    """Entity from a legacy Atom ``<entry>`` document."""
    root = _fromstring(body, huge_tree)
    if root.tag != ns("atom", "entry"):
        raise error.MalformedWireValue(reason=f"expected an Atom entry, got {root.tag}")
    return _entity_from_atom(root)


def parse_atom_feed(body: Union[bytes, str], huge_tree: bool = False) -> List[Entity]:
    """Entities of a legacy Atom ``<feed>``; a lone ``<entry>`` gives one entity."""
    root = _fromstring(body, huge_tree)
    if root.tag == ns("atom", "entry"):
        return [_entity_from_atom(root)]
    if root.tag != ns("atom", "feed"):
        raise error.MalformedWireValue(reason=f"expected an Atom feed, got {root.tag}")
    return [_entity_from_atom(entry) for entry in root.iterfind(ns("atom", "entry"))]


## Persisted continuation tokens

TOKEN_VERSION = "2.0"

_TOKEN_FIELDS = {
    "NextPartitionKey": "next_partition_key",
    "NextRowKey": "next_row_key",
    "NextTableName": "next_table_name",
    "NextMarker": "next_marker",
}


def continuation_from_xml(body: Union[bytes, str]) -> ContinuationToken:
    """
    Read a token written by :func:`continuation_to_xml`.

    The ``<ContinuationToken>`` element may be the document element or the
    only child of a wrapper element.

    Raises:
        MalformedWireValue: wrong version, unknown type or unexpected elements
    """
    root = _fromstring(body)
    if _localname(root) != "ContinuationToken":
        root = next(
            (c for c in root if isinstance(c.tag, str) and _localname(c) == "ContinuationToken"),
            None,
        )
        if root is None:
            raise error.MalformedWireValue(reason="no <ContinuationToken> element")

    version = None
    kind = None
    values: Dict[str, Optional[str]] = {}
    for child in root:
        if not isinstance(child.tag, str):
            continue
        name = _localname(child)
        if name == "Version":
            version = child.text
        elif name == "Type":
            try:
                kind = TokenKind(child.text)
            except ValueError as exc:
                raise error.MalformedWireValue(
                    reason=f"unknown continuation type {child.text!r}"
                ) from exc
        elif name in _TOKEN_FIELDS:
            values[_TOKEN_FIELDS[name]] = child.text or ""
        elif name == "TargetLocation":
            ## location routing belongs to the executor
            continue
        else:
            raise error.MalformedWireValue(
                reason=f"unexpected element <{name}> in continuation token"
            )
    if version != TOKEN_VERSION:
        raise error.MalformedWireValue(reason=f"unsupported continuation token version {version!r}")
    if kind is None:
        raise error.MalformedWireValue(reason="continuation token without a type")
    return ContinuationToken(kind=kind, **values)
