"""
Core protocol types for the Sans-I/O storage wire layer.

These dataclasses represent HTTP requests and responses at the protocol level,
independent of any I/O implementation, plus the typed results the parsers
produce.
"""

import io
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, BinaryIO, Dict, List, Optional


class WireMethod(Enum):
    """HTTP methods used by the storage services."""

    GET = "GET"
    PUT = "PUT"
    POST = "POST"
    DELETE = "DELETE"
    MERGE = "MERGE"


class EdmType(Enum):
    """Entity data model type tags, valued by their wire names."""

    STRING = "Edm.String"
    BINARY = "Edm.Binary"
    BOOLEAN = "Edm.Boolean"
    DATETIME = "Edm.DateTime"
    DOUBLE = "Edm.Double"
    GUID = "Edm.Guid"
    INT32 = "Edm.Int32"
    INT64 = "Edm.Int64"

    @classmethod
    def from_wire(cls, name: str) -> "EdmType":
        """
        Look up a type by its wire name.

        Raises:
            ValueError: for an unknown type name
        """
        try:
            return cls(name)
        except ValueError:
            raise ValueError(f"unknown EDM type {name!r}") from None


class PayloadFormat(Enum):
    """JSON verbosity levels, valued by their Accept header values."""

    NO_METADATA = "application/json;odata=nometadata"
    MINIMAL_METADATA = "application/json;odata=minimalmetadata"
    FULL_METADATA = "application/json;odata=fullmetadata"

    @classmethod
    def from_content_type(cls, content_type: Optional[str]) -> "PayloadFormat":
        """
        Select the JSON variant from a Content-Type header.

        Content types without an ``odata=`` parameter are minimal metadata,
        which is what the service sends by default.
        """
        ct = (content_type or "").replace(" ", "").lower()
        if "odata=nometadata" in ct:
            return cls.NO_METADATA
        if "odata=fullmetadata" in ct:
            return cls.FULL_METADATA
        return cls.MINIMAL_METADATA


def lookup_header(headers: Dict[str, str], name: str) -> Optional[str]:
    if name in headers:
        return headers[name]
    lname = name.lower()
    for key, value in headers.items():
        if key.lower() == lname:
            return value
    return None


@dataclass(frozen=True)
class WireRequest:
    """
    Represents an HTTP request to be made.

    This is a pure data structure with no I/O.  It describes what request
    should be made, but does not make it.  Signing, timeouts and retries
    are added by the executor.

    Attributes:
        method: HTTP method
        url: Full URL for the request
        headers: HTTP headers as dict
        body: Request body as bytes (optional)
    """

    method: WireMethod
    url: str
    headers: Dict[str, str] = field(default_factory=dict)
    body: Optional[bytes] = None

    def header(self, name: str) -> Optional[str]:
        return lookup_header(self.headers, name)


@dataclass(frozen=True)
class WireResponse:
    """
    Represents an HTTP response received.

    Attributes:
        status: HTTP status code
        headers: HTTP headers as dict
        body: Response body as bytes
        raw: Unread body stream of a streamed response, in which case
            ``body`` stays empty.  It can be consumed once.
    """

    status: int
    headers: Dict[str, str]
    body: bytes = b""
    raw: Optional[BinaryIO] = field(default=None, compare=False, repr=False)

    @property
    def ok(self) -> bool:
        """True if status indicates success (2xx)."""
        return 200 <= self.status < 300

    @property
    def reason(self) -> str:
        """Return a reason phrase for the status code."""
        return REASONS.get(self.status, "Unknown")

    def header(self, name: str) -> Optional[str]:
        """Case-insensitive header lookup."""
        return lookup_header(self.headers, name)

    @property
    def content_type(self) -> str:
        return self.header("Content-Type") or ""

    @property
    def etag(self) -> Optional[str]:
        return self.header("ETag")

    def stream(self) -> BinaryIO:
        """Forward-only reader over the body, the live stream when there is one."""
        if self.raw is not None:
            return self.raw
        return io.BytesIO(self.body)


REASONS: Dict[int, str] = {
    200: "OK",
    201: "Created",
    202: "Accepted",
    204: "No Content",
    206: "Partial Content",
    304: "Not Modified",
    400: "Bad Request",
    403: "Forbidden",
    404: "Not Found",
    405: "Method Not Allowed",
    409: "Conflict",
    412: "Precondition Failed",
    413: "Request Entity Too Large",
    500: "Internal Server Error",
    503: "Service Unavailable",
}


class TokenKind(Enum):
    """Which service a continuation token belongs to."""

    TABLE = "Table"
    BLOB = "Blob"
    FILE = "File"
    QUEUE = "Queue"


@dataclass(frozen=True)
class ContinuationToken:
    """
    Opaque cursor handed back by a paginated listing.

    A token must be passed back unmodified to fetch the next page.  Table
    listings fill the three ``next_*`` key fields, marker-style listings
    fill ``next_marker``.  ``None`` instead of a token means the listing
    is complete.
    """

    kind: TokenKind
    next_partition_key: Optional[str] = None
    next_row_key: Optional[str] = None
    next_table_name: Optional[str] = None
    next_marker: Optional[str] = None

    def as_query(self) -> Dict[str, str]:
        """Query string parameters that continue the listing."""
        if self.kind is TokenKind.TABLE:
            params = {}
            if self.next_partition_key is not None:
                params["NextPartitionKey"] = self.next_partition_key
            if self.next_row_key is not None:
                params["NextRowKey"] = self.next_row_key
            if self.next_table_name is not None:
                params["NextTableName"] = self.next_table_name
            return params
        return {"marker": self.next_marker} if self.next_marker is not None else {}


@dataclass
class ExtendedErrorInfo:
    """
    Structured error payload returned by the service.

    Attributes:
        code: Service error code, e.g. "EntityAlreadyExists"
        message: Human readable message.  Batch errors prefix it with the
            zero-based index of the failing operation, "3:..."
        details: Additional name/value details (inner error etc.)
    """

    code: Optional[str] = None
    message: Optional[str] = None
    details: Dict[str, str] = field(default_factory=dict)


@dataclass
class TableResult:
    """
    Outcome of one table operation (single, or one slot of a batch).

    Attributes:
        http_status_code: Status of the operation (inner status for batches)
        result: Materialized entity; for operations without an echoed body
            this is the caller's own entity object
        etag: ETag returned for the operation
        error: Extended error payload, when the service sent one
    """

    http_status_code: int = 0
    result: Any = None
    etag: Optional[str] = None
    error: Optional[ExtendedErrorInfo] = None


@dataclass
class TableQuerySegment:
    """One page of a table query, with the cursor for the next page."""

    entities: List[Any] = field(default_factory=list)
    continuation: Optional[ContinuationToken] = None


# Listing item types.  Fields absent from the XML keep these defaults.


@dataclass
class ShareProperties:
    last_modified: Optional[datetime] = None
    etag: Optional[str] = None
    quota: int = 0


@dataclass
class ShareEntry:
    name: Optional[str] = None
    snapshot: Optional[str] = None
    properties: ShareProperties = field(default_factory=ShareProperties)
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass
class FileEntry:
    name: Optional[str] = None
    length: int = 0


@dataclass
class DirectoryEntry:
    name: Optional[str] = None
    last_modified: Optional[datetime] = None
    etag: Optional[str] = None


@dataclass
class FileRange:
    start: int = 0
    end: int = 0


@dataclass
class PageRange:
    start: int = 0
    end: int = 0
    is_clear: bool = False


@dataclass
class FileHandle:
    handle_id: Optional[str] = None
    path: Optional[str] = None
    file_id: int = 0
    parent_id: int = 0
    session_id: int = 0
    client_ip: Optional[str] = None
    open_time: Optional[datetime] = None
    last_reconnect_time: Optional[datetime] = None


@dataclass
class ContainerEntry:
    name: Optional[str] = None
    last_modified: Optional[datetime] = None
    etag: Optional[str] = None
    lease_status: Optional[str] = None
    public_access: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass
class BlobEntry:
    name: Optional[str] = None
    snapshot: Optional[str] = None
    deleted: bool = False
    last_modified: Optional[datetime] = None
    etag: Optional[str] = None
    content_length: int = 0
    content_type: Optional[str] = None
    blob_type: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)


@dataclass
class BlobPrefixEntry:
    name: Optional[str] = None


@dataclass
class QueueEntry:
    name: Optional[str] = None
    metadata: Dict[str, str] = field(default_factory=dict)
