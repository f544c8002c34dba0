"""
Sans-I/O storage wire protocol implementation.

This module provides protocol-level operations without any I/O.
It builds requests and parses responses as pure data transformations.

The protocol layer is organized into:
- types: Core data structures (WireRequest, WireResponse, result types)
- entity: The typed entity property model and its wire conversions
- json_codec: JSON entity payloads, query responses and error payloads
- xml_parsers: Streaming listing parsers, Atom entities, persisted tokens
- xml_builders: Atom entity bodies, persisted tokens
- batch: Multipart entity group transactions
- continuation: Continuation token extraction
- operations: TableProtocol and FileProtocol combining builders and parsers

Example usage:

    from storagewire.protocol import TableProtocol, TableOperation

    protocol = TableProtocol(base_url="https://acct.table.core.windows.net")

    # Build a request (no I/O)
    request = protocol.batch_request("people", operations)

    # Execute via your preferred I/O (sync or mock)
    response = your_http_client.execute(request)

    # Parse response (no I/O)
    outcome = protocol.parse_batch_response(operations, response)
    results = outcome.raise_for_outcome()
"""

from .types import (
    # Enums
    EdmType,
    PayloadFormat,
    TokenKind,
    WireMethod,
    # Request/Response
    WireRequest,
    WireResponse,
    # Result types
    BlobEntry,
    BlobPrefixEntry,
    ContainerEntry,
    ContinuationToken,
    DirectoryEntry,
    ExtendedErrorInfo,
    FileEntry,
    FileHandle,
    FileRange,
    PageRange,
    QueueEntry,
    ShareEntry,
    ShareProperties,
    TableQuerySegment,
    TableResult,
)
from .entity import (
    Entity,
    EntityProperty,
    EntityShape,
    Int64,
    ShapeCache,
    decode_property,
    encode_property,
    etag_from_timestamp,
    shape_for,
    timestamp_from_etag,
)
from .json_codec import (
    EntityDecoder,
    decode_query_response,
    entity_to_json,
    parse_error_payload,
    serialize_entity,
)
from .continuation import continuation_from_headers, continuation_from_marker
from .xml_parsers import (
    ListingResult,
    ListingSpec,
    XmlCursor,
    continuation_from_xml,
    parse_atom_entry,
    parse_atom_feed,
    parse_list_blobs,
    parse_list_containers,
    parse_list_file_ranges,
    parse_list_files_and_directories,
    parse_list_handles,
    parse_list_page_ranges,
    parse_list_queues,
    parse_list_shares,
    parse_listing,
)
from .xml_builders import build_atom_entry, continuation_to_xml
from .batch import (
    BatchOutcome,
    ChangesetFailed,
    EncodedBatch,
    ItemResults,
    TableBatch,
    TableOperation,
    TableOperationType,
    decode_batch_response,
    decode_batch_response_or_raise,
    encode_batch,
    parse_multipart,
)
from .operations import FileProtocol, TableProtocol

__all__ = [
    # Enums
    "EdmType",
    "PayloadFormat",
    "TokenKind",
    "WireMethod",
    # Request/Response
    "WireRequest",
    "WireResponse",
    # Result types
    "BlobEntry",
    "BlobPrefixEntry",
    "ContainerEntry",
    "ContinuationToken",
    "DirectoryEntry",
    "ExtendedErrorInfo",
    "FileEntry",
    "FileHandle",
    "FileRange",
    "PageRange",
    "QueueEntry",
    "ShareEntry",
    "ShareProperties",
    "TableQuerySegment",
    "TableResult",
    # Entity model
    "Entity",
    "EntityProperty",
    "EntityShape",
    "Int64",
    "ShapeCache",
    "decode_property",
    "encode_property",
    "etag_from_timestamp",
    "shape_for",
    "timestamp_from_etag",
    # JSON
    "EntityDecoder",
    "decode_query_response",
    "entity_to_json",
    "parse_error_payload",
    "serialize_entity",
    # Continuation
    "continuation_from_headers",
    "continuation_from_marker",
    "continuation_from_xml",
    "continuation_to_xml",
    # XML
    "ListingResult",
    "ListingSpec",
    "XmlCursor",
    "build_atom_entry",
    "parse_atom_entry",
    "parse_atom_feed",
    "parse_list_blobs",
    "parse_list_containers",
    "parse_list_file_ranges",
    "parse_list_files_and_directories",
    "parse_list_handles",
    "parse_list_page_ranges",
    "parse_list_queues",
    "parse_list_shares",
    "parse_listing",
    # Batch
    "BatchOutcome",
    "ChangesetFailed",
    "EncodedBatch",
    "ItemResults",
    "TableBatch",
    "TableOperation",
    "TableOperationType",
    "decode_batch_response",
    "decode_batch_response_or_raise",
    "encode_batch",
    "parse_multipart",
    # Protocol
    "FileProtocol",
    "TableProtocol",
]
