"""
Entity group transactions ("batches") for the table service.

A batch is one ``POST <base>/$batch`` request with a ``multipart/mixed``
body.  Mutations are wrapped in a single changeset, which the service
applies atomically; a lone Retrieve is sent as a plain query part.  The
response mirrors the request: one ``application/http`` part per
sub-operation, in request order.

Response grammar understood by :func:`iter_multipart` (CRLF or bare LF)::

    --<boundary>
    Content-Type: multipart/mixed; boundary=<changeset boundary>   (nested)
    <blank line>
    --<changeset boundary>
    Content-Type: application/http
    Content-Transfer-Encoding: binary
    <blank line>
    HTTP/1.1 <status> <reason>
    <header>: <value>
    <blank line>
    <optional body>
    --<changeset boundary>--
    --<boundary>--
"""

import logging
import re
import uuid
from contextlib import closing
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Union
from urllib.parse import quote

from storagewire.lib import error
from storagewire.lib.buffers import BufferPool
from storagewire.lib.cancellation import CancellationToken, check
from storagewire.lib.python_utilities import to_normal_str, to_wire

from .entity import Entity, timestamp_from_etag
from .json_codec import EntityDecoder, failed_index, parse_error_payload, serialize_entity
from .types import ExtendedErrorInfo, PayloadFormat, TableResult, WireMethod, lookup_header

log = logging.getLogger(__name__)

MAX_BATCH_OPERATIONS = 100
DATA_SERVICE_VERSION = "3.0;"

default_buffer_pool = BufferPool()


class TableOperationType(Enum):
    INSERT = "Insert"
    DELETE = "Delete"
    REPLACE = "Replace"
    MERGE = "Merge"
    INSERT_OR_REPLACE = "InsertOrReplace"
    INSERT_OR_MERGE = "InsertOrMerge"
    RETRIEVE = "Retrieve"


## Method of a sub-operation inside a batch.  Outside of batches MERGE is
## tunnelled through POST, see TableProtocol.
BATCH_METHODS: Dict[TableOperationType, WireMethod] = {
    TableOperationType.INSERT: WireMethod.POST,
    TableOperationType.DELETE: WireMethod.DELETE,
    TableOperationType.REPLACE: WireMethod.PUT,
    TableOperationType.MERGE: WireMethod.MERGE,
    TableOperationType.INSERT_OR_REPLACE: WireMethod.PUT,
    TableOperationType.INSERT_OR_MERGE: WireMethod.MERGE,
    TableOperationType.RETRIEVE: WireMethod.GET,
}

_CONDITIONAL = (TableOperationType.DELETE, TableOperationType.REPLACE, TableOperationType.MERGE)
_BODILESS = (TableOperationType.DELETE, TableOperationType.RETRIEVE)


def _key_literal(key: str) -> str:
    return "'%s'" % key.replace("'", "''")


def entity_path(table_name: str, partition_key: str, row_key: str) -> str:
    """``table(PartitionKey='pk',RowKey='rk')``, escaped for use in a URL."""
    path = "%s(PartitionKey=%s,RowKey=%s)" % (
        table_name,
        _key_literal(partition_key),
        _key_literal(row_key),
    )
    return quote(path, safe="'(),=")


@dataclass
class TableOperation:
    """
    One table operation, either on its own or as part of a batch.

    Use the factory classmethods; they enforce that conditional operations
    carry an ETag (``"*"`` matches any version).
    """

    operation_type: TableOperationType
    entity: Optional[Entity] = None
    echo_content: bool = False
    retrieve_partition_key: Optional[str] = None
    retrieve_row_key: Optional[str] = None
    select_columns: Optional[List[str]] = None

    @staticmethod
    def _require_etag(kind: TableOperationType, entity: Entity) -> None:
        if not entity.etag:
            raise ValueError(
                f"{kind.value} requires an ETag on the entity, use '*' to match any version"
            )

    @classmethod
    def insert(cls, entity: Entity, echo_content: bool = False) -> "TableOperation":
        return cls(TableOperationType.INSERT, entity, echo_content=echo_content)

    @classmethod
    def delete(cls, entity: Entity) -> "TableOperation":
        cls._require_etag(TableOperationType.DELETE, entity)
        return cls(TableOperationType.DELETE, entity)

    @classmethod
    def replace(cls, entity: Entity) -> "TableOperation":
        cls._require_etag(TableOperationType.REPLACE, entity)
        return cls(TableOperationType.REPLACE, entity)

    @classmethod
    def merge(cls, entity: Entity) -> "TableOperation":
        cls._require_etag(TableOperationType.MERGE, entity)
        return cls(TableOperationType.MERGE, entity)

    @classmethod
    def insert_or_replace(cls, entity: Entity) -> "TableOperation":
        return cls(TableOperationType.INSERT_OR_REPLACE, entity)

    @classmethod
    def insert_or_merge(cls, entity: Entity) -> "TableOperation":
        return cls(TableOperationType.INSERT_OR_MERGE, entity)

    @classmethod
    def retrieve(
        cls,
        partition_key: str,
        row_key: str,
        select_columns: Optional[Iterable[str]] = None,
    ) -> "TableOperation":
        return cls(
            TableOperationType.RETRIEVE,
            retrieve_partition_key=partition_key,
            retrieve_row_key=row_key,
            select_columns=list(select_columns) if select_columns is not None else None,
        )

    @property
    def partition_key(self) -> str:
        if self.entity is not None:
            return self.entity.partition_key
        return self.retrieve_partition_key or ""

    @property
    def row_key(self) -> str:
        if self.entity is not None:
            return self.entity.row_key
        return self.retrieve_row_key or ""

    @property
    def has_body(self) -> bool:
        return self.operation_type not in _BODILESS

    def request_url(self, base_url: str, table_name: str) -> str:
        """Absolute URL the operation addresses."""
        base = base_url.rstrip("/")
        if self.operation_type is TableOperationType.INSERT:
            return "%s/%s" % (base, quote(table_name))
        url = "%s/%s" % (base, entity_path(table_name, self.partition_key, self.row_key))
        if self.operation_type is TableOperationType.RETRIEVE and self.select_columns:
            url += "?$select=" + quote(",".join(self.select_columns), safe=",")
        return url

    def request_headers(self, payload_format: PayloadFormat) -> Dict[str, str]:
        headers = {
            "Accept": payload_format.value,
            "DataServiceVersion": DATA_SERVICE_VERSION,
        }
        if self.has_body:
            headers["Content-Type"] = "application/json"
        if self.operation_type in _CONDITIONAL:
            headers["If-Match"] = self.entity.etag
        if self.operation_type is TableOperationType.INSERT:
            headers["Prefer"] = "return-content" if self.echo_content else "return-no-content"
        return headers

    def request_body(self) -> Optional[bytes]:
        if not self.has_body:
            return None
        return serialize_entity(
            self.entity, include_keys=self.operation_type is TableOperationType.INSERT
        )


def validate_batch(operations: Sequence[TableOperation]) -> None:
    """
    Raises:
        BatchValidationError: empty batch, more than 100 operations, a
            Retrieve next to other operations, or more than one
            PartitionKey
    """
    if not operations:
        raise error.BatchValidationError(reason="a batch needs at least one operation")
    if len(operations) > MAX_BATCH_OPERATIONS:
        raise error.BatchValidationError(
            reason=f"a batch holds at most {MAX_BATCH_OPERATIONS} operations, got {len(operations)}"
        )
    if len(operations) > 1 and any(
        op.operation_type is TableOperationType.RETRIEVE for op in operations
    ):
        raise error.BatchValidationError(
            reason="a Retrieve must be the only operation of its batch"
        )
    keys = {op.partition_key for op in operations}
    if len(keys) > 1:
        raise error.BatchValidationError(
            reason="all operations of a batch must share one PartitionKey"
        )


class TableBatch:
    """Ordered operations sent as one entity group transaction."""

    def __init__(self, operations: Optional[Iterable[TableOperation]] = None) -> None:
        self.operations: List[TableOperation] = list(operations or [])

    def add(self, operation: TableOperation) -> "TableBatch":
        self.operations.append(operation)
        return self

    def insert(self, entity: Entity, echo_content: bool = False) -> "TableBatch":
        return self.add(TableOperation.insert(entity, echo_content))

    def delete(self, entity: Entity) -> "TableBatch":
        return self.add(TableOperation.delete(entity))

    def replace(self, entity: Entity) -> "TableBatch":
        return self.add(TableOperation.replace(entity))

    def merge(self, entity: Entity) -> "TableBatch":
        return self.add(TableOperation.merge(entity))

    def insert_or_replace(self, entity: Entity) -> "TableBatch":
        return self.add(TableOperation.insert_or_replace(entity))

    def insert_or_merge(self, entity: Entity) -> "TableBatch":
        return self.add(TableOperation.insert_or_merge(entity))

    def retrieve(self, partition_key: str, row_key: str, select_columns=None) -> "TableBatch":
        return self.add(TableOperation.retrieve(partition_key, row_key, select_columns))

    def validate(self) -> None:
        validate_batch(self.operations)

    def __len__(self) -> int:
        return len(self.operations)

    def __iter__(self) -> Iterator[TableOperation]:
        return iter(self.operations)

    def __getitem__(self, index: int) -> TableOperation:
        return self.operations[index]


@dataclass(frozen=True)
class EncodedBatch:
    body: bytes
    content_type: str
    batch_id: str


def _operation_part(
    op: TableOperation,
    base_url: str,
    table_name: str,
    payload_format: PayloadFormat,
    content_id: Optional[int],
) -> bytes:
    lines = ["Content-Type: application/http", "Content-Transfer-Encoding: binary"]
    if content_id is not None:
        lines.append("Content-ID: %d" % content_id)
    lines.append("")
    lines.append(
        "%s %s HTTP/1.1"
        % (BATCH_METHODS[op.operation_type].value, op.request_url(base_url, table_name))
    )
    body = op.request_body()
    headers = op.request_headers(payload_format)
    if body is not None:
        headers["Content-Length"] = str(len(body))
    lines.extend("%s: %s" % (name, value) for name, value in headers.items())
    lines.append("")
    return to_wire("\n".join(lines) + "\n") + (body or b"") + b"\r\n"


def encode_batch(
    table_name: str,
    operations: Sequence[TableOperation],
    base_url: str,
    payload_format: PayloadFormat = PayloadFormat.MINIMAL_METADATA,
    batch_id: Optional[str] = None,
    changeset_id: Optional[str] = None,
) -> EncodedBatch:
    """
    Build the multipart body of a batch request.

    Args:
        table_name: Table all operations address
        operations: The sub-operations, in order
        base_url: Table service endpoint, e.g. https://acct.table.core.windows.net
        payload_format: Accept value of every part
        batch_id, changeset_id: Boundary identifiers, random when None

    Returns:
        The body plus the Content-Type header value carrying the boundary

    Raises:
        BatchValidationError: see :func:`validate_batch`
    """
    validate_batch(operations)
    batch_boundary = "batch_%s" % (batch_id or uuid.uuid4())
    out = []

    if len(operations) == 1 and operations[0].operation_type is TableOperationType.RETRIEVE:
        ## queries are not allowed inside a changeset
        out.append(to_wire("--%s\n" % batch_boundary))
        out.append(_operation_part(operations[0], base_url, table_name, payload_format, None))
    else:
        changeset_boundary = "changeset_%s" % (changeset_id or uuid.uuid4())
        out.append(
            to_wire(
                "--%s\nContent-Type: multipart/mixed; boundary=%s\n\n"
                % (batch_boundary, changeset_boundary)
            )
        )
        for content_id, op in enumerate(operations):
            out.append(to_wire("--%s\n" % changeset_boundary))
            out.append(_operation_part(op, base_url, table_name, payload_format, content_id))
        out.append(to_wire("--%s--\n" % changeset_boundary))
    out.append(to_wire("--%s--\n" % batch_boundary))

    log.debug("encoded batch %s with %d operation(s)", batch_boundary, len(operations))
    return EncodedBatch(
        body=b"".join(out),
        content_type="multipart/mixed; boundary=%s" % batch_boundary,
        batch_id=batch_boundary,
    )


## Response side


@dataclass
class BatchPart:
    """One inner HTTP response of a batch response."""

    status: int
    reason: str
    headers: Dict[str, str]
    body: Union[bytes, bytearray] = b""

    def header(self, name: str) -> Optional[str]:
        return lookup_header(self.headers, name)


_BLANK_LINE_RE = re.compile(rb"\r?\n\r?\n")
_STATUS_LINE_RE = re.compile(r"^HTTP/\d\.\d\s+(\d{3})(?:\s+(.*))?$")
_BOUNDARY_PARAM_RE = re.compile(r"boundary=\"?([^\";]+)\"?", re.IGNORECASE)


def boundary_from_content_type(content_type: Optional[str]) -> Optional[str]:
    m = _BOUNDARY_PARAM_RE.search(content_type or "")
    return m.group(1).strip() if m else None


def _sniff_boundary(data: bytes) -> str:
    for line in data.splitlines():
        line = line.strip()
        if line.startswith(b"--"):
            return to_normal_str(line[2:])
        if line:
            break
    raise error.MalformedWireValue(reason="batch response does not start with a boundary line")


def _delimiter_re(boundary: str):
    return re.compile(
        rb"(?:^|\r?\n)--" + re.escape(boundary.encode("utf-8")) + rb"(--)?[ \t]*(?:\r?\n|$)"
    )


def _split_head(segment: bytes):
    if segment.startswith(b"\r\n") or segment.startswith(b"\n"):
        return b"", segment.split(b"\n", 1)[1]
    m = _BLANK_LINE_RE.search(segment)
    if m is None:
        return segment, b""
    return segment[: m.start()], segment[m.end() :]


def _parse_headers(block: bytes) -> Dict[str, str]:
    headers: Dict[str, str] = {}
    for line in to_normal_str(block).splitlines():
        if not line.strip():
            continue
        name, sep, value = line.partition(":")
        if not sep:
            raise error.MalformedWireValue(
                reason=f"malformed header line {line!r} in batch response"
            )
        headers[name.strip()] = value.strip()
    return headers


def iter_multipart(
    data: Union[bytes, bytearray],
    boundary: Optional[str] = None,
    buffer_pool: Optional[BufferPool] = None,
    cancellation: Optional[CancellationToken] = None,
) -> Iterator[BatchPart]:
    """
    Yield the inner HTTP responses of a multipart batch response.

    Nested changesets are followed.  Each part's body lives in a buffer
    borrowed from ``buffer_pool``, which is handed back when the consumer
    asks for the next part, so a part must be fully consumed before
    advancing.

    Raises:
        MalformedWireValue: missing boundaries or malformed inner responses
        OperationCanceled: ``cancellation`` fired between two parts
    """
    pool = buffer_pool or default_buffer_pool
    data = bytes(data)
    if boundary is None:
        boundary = _sniff_boundary(data)
    matches = list(_delimiter_re(boundary).finditer(data))
    if not matches:
        raise error.MalformedWireValue(reason=f"boundary {boundary!r} not found in batch response")

    for this, following in zip(matches, matches[1:] + [None]):
        if this.group(1):
            return
        if following is None:
            raise error.MalformedWireValue(
                reason=f"multipart section {boundary!r} is not terminated"
            )
        check(cancellation)
        segment = data[this.end() : following.start()]
        head, rest = _split_head(segment)
        part_headers = _parse_headers(head)
        content_type = lookup_header(part_headers, "Content-Type") or ""
        if content_type.lower().startswith("multipart/"):
            inner = boundary_from_content_type(content_type)
            if inner is None:
                raise error.MalformedWireValue(reason="nested multipart section without a boundary")
            yield from iter_multipart(rest, inner, pool, cancellation)
            continue
        if "application/http" not in content_type.lower():
            error.weirdness("batch part with content type %r" % content_type)

        status_block, body = _split_head(rest)
        status_line, _, header_block = to_normal_str(status_block).partition("\n")
        m = _STATUS_LINE_RE.match(status_line.strip())
        if m is None:
            raise error.MalformedWireValue(
                reason=f"bad status line {status_line!r} in batch response"
            )
        with pool.borrowed() as buffer:
            buffer.extend(body)
            yield BatchPart(
                status=int(m.group(1)),
                reason=(m.group(2) or "").strip(),
                headers=_parse_headers(header_block.encode("utf-8")),
                body=buffer,
            )


def parse_multipart(
    data: Union[bytes, bytearray],
    boundary: Optional[str] = None,
    cancellation: Optional[CancellationToken] = None,
) -> List[BatchPart]:
    """Like :func:`iter_multipart`, but returns all parts with their own copy of the body."""
    parts = []
    for part in iter_multipart(data, boundary, BufferPool(max_pooled=1), cancellation):
        parts.append(BatchPart(part.status, part.reason, part.headers, bytes(part.body)))
    return parts


## Outcomes


@dataclass
class ItemResults:
    """
    The service executed the batch; one TableResult per operation.

    ``failures`` holds a :class:`~storagewire.lib.error.PerItemFailure`
    for every sub-operation that got an unexpected status; their slots in
    ``results`` carry the status and error payload.
    """

    results: List[TableResult]
    failures: List[error.PerItemFailure] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.failures

    def raise_for_outcome(self) -> List[TableResult]:
        if self.failures:
            raise self.failures[0]
        return self.results


@dataclass
class ChangesetFailed:
    """The whole changeset was rolled back; there are no per-item results."""

    error: error.ChangesetFatal

    @property
    def ok(self) -> bool:
        return False

    def raise_for_outcome(self) -> List[TableResult]:
        raise self.error


BatchOutcome = Union[ItemResults, ChangesetFailed]


def expected_status(op: TableOperation) -> int:
    if op.operation_type is TableOperationType.INSERT:
        return 201 if op.echo_content else 204
    if op.operation_type is TableOperationType.RETRIEVE:
        return 200
    return 204


def is_changeset_fatal(op: TableOperation, status: int) -> bool:
    """
    Statuses that make the service roll back the whole changeset: a
    conflicting insert, a missing entity for anything but a Retrieve, or
    a failed precondition.
    """
    if status == 412:
        return True
    if op.operation_type is TableOperationType.INSERT:
        return status == 409
    if op.operation_type is TableOperationType.RETRIEVE:
        return False
    return status == 404


def _status_message(info: Optional[ExtendedErrorInfo], status: int) -> str:
    if info is not None and info.message:
        return info.message.split("\n", 1)[0]
    return str(status)


def apply_success(
    op: TableOperation,
    status: int,
    etag: Optional[str],
    body: bytes,
    content_type: Optional[str],
    decoder: EntityDecoder,
) -> TableResult:
    """
    Fill a TableResult for a sub-operation that got its expected status.

    The ETag is copied into the caller's entity.  An Insert without echo
    derives the entity Timestamp from that ETag; an echoed Insert and a
    Retrieve materialize the response body.
    """
    result = TableResult(http_status_code=status, result=op.entity, etag=etag)
    kind = op.operation_type

    echoed = kind is TableOperationType.INSERT and op.echo_content
    if kind is TableOperationType.RETRIEVE or echoed:
        payload_format = PayloadFormat.from_content_type(content_type)
        decoded = decoder.decode_entity_bytes(body, payload_format, etag)
        result.etag = decoded.etag
        if kind is TableOperationType.RETRIEVE:
            result.result = decoded
        else:
            error.assert_(
                decoded.partition_key == op.entity.partition_key
                and decoded.row_key == op.entity.row_key
            )
            op.entity.etag = decoded.etag
            op.entity.timestamp = decoded.timestamp
            op.entity.properties = decoded.properties
        return result

    if etag is not None and op.entity is not None:
        op.entity.etag = etag
        if kind is TableOperationType.INSERT:
            op.entity.timestamp = timestamp_from_etag(etag)
    return result


def decode_batch_response(
    data: Union[bytes, bytearray],
    operations: Sequence[TableOperation],
    decoder: Optional[EntityDecoder] = None,
    boundary: Optional[str] = None,
    buffer_pool: Optional[BufferPool] = None,
    cancellation: Optional[CancellationToken] = None,
) -> BatchOutcome:
    """
    Decode a batch response body against the operations that produced it.

    Parts are matched to operations by position.  A Retrieve answered with
    404 gives a result with that status and no entity.  Statuses that roll
    back the changeset give :class:`ChangesetFailed` and stop decoding;
    any other unexpected status is recorded as a per-item failure, with
    the index taken from the ``<n>:`` prefix of the service's error
    message when there is one.

    Args:
        data: The multipart response body
        operations: The operations of the request, in request order
        decoder: Entity decoder for Retrieve and echoed Insert bodies
        boundary: Boundary from the response Content-Type; sniffed from
            the body if None
        buffer_pool: Pool to stage part bodies in
        cancellation: Checked between parts

    Raises:
        MalformedWireValue: unparseable multipart, more parts than
            operations, or too few parts without any failure explaining it
        OperationCanceled: ``cancellation`` fired
    """
    decoder = decoder or EntityDecoder()
    count = len(operations)
    slots: List[Optional[TableResult]] = [None] * count
    failures: List[error.PerItemFailure] = []

    position = -1
    with closing(iter_multipart(data, boundary, buffer_pool, cancellation)) as parts:
        for position, part in enumerate(parts):
            if position >= count:
                raise error.MalformedWireValue(
                    reason=f"batch response has more parts than the {count} operation(s) sent"
                )
            op = operations[position]
            status = part.status
            etag = part.header("ETag")
            log.debug(
                "batch part %d (%s): %d %s", position, op.operation_type.value, status, part.reason
            )

            if status == expected_status(op):
                slots[position] = apply_success(
                    op, status, etag, bytes(part.body), part.header("Content-Type"), decoder
                )
                continue
            if op.operation_type is TableOperationType.RETRIEVE and status == 404:
                slots[position] = TableResult(http_status_code=404, result=None)
                continue

            info = parse_error_payload(bytes(part.body))
            index = failed_index(info)
            if index is None or not 0 <= index < count:
                index = position
            if is_changeset_fatal(operations[index], status):
                log.debug("batch changeset rolled back by status %d at element %d", status, index)
                return ChangesetFailed(
                    error.ChangesetFatal(
                        reason=_status_message(info, status), status=status, extended_error=info
                    )
                )
            failures.append(
                error.PerItemFailure(
                    index,
                    reason="unexpected response code %d for element %d in the batch: %s"
                    % (status, index, _status_message(info, status)),
                    status=status,
                    extended_error=info,
                )
            )
            if slots[index] is None:
                slots[index] = TableResult(
                    http_status_code=status, result=None, etag=etag, error=info
                )

    if None in slots:
        if not failures:
            raise error.MalformedWireValue(
                reason="batch response has %d part(s) for %d operation(s)" % (position + 1, count)
            )
        ## the service stops at the first failing operation of a changeset
        slots = [slot if slot is not None else TableResult() for slot in slots]
    return ItemResults(results=slots, failures=failures)


def decode_batch_response_or_raise(
    data: Union[bytes, bytearray],
    operations: Sequence[TableOperation],
    decoder: Optional[EntityDecoder] = None,
    boundary: Optional[str] = None,
    buffer_pool: Optional[BufferPool] = None,
    cancellation: Optional[CancellationToken] = None,
) -> List[TableResult]:
    """
    Like :func:`decode_batch_response`, but raises ChangesetFatal or the
    first PerItemFailure instead of returning them.
    """
    return decode_batch_response(
        data, operations, decoder, boundary, buffer_pool, cancellation
    ).raise_for_outcome()
