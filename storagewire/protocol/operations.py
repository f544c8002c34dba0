"""
Storage protocol operations combining request building and response parsing.

These classes provide a high-level interface to the table and file
services while remaining completely I/O-free.  Signing, retries and the
transport belong to whoever executes the requests.
"""

import logging
from typing import Dict, Iterable, List, Optional, Sequence, Union
from urllib.parse import quote, urlencode

from storagewire.lib import error
from storagewire.lib.buffers import BufferPool
from storagewire.lib.cancellation import CancellationToken

from .batch import (
    BatchOutcome,
    TableOperation,
    TableOperationType,
    apply_success,
    boundary_from_content_type,
    decode_batch_response,
    encode_batch,
    expected_status,
)
from .continuation import continuation_from_headers
from .entity import Entity
from .json_codec import EntityDecoder, decode_query_response, parse_error_payload, load_json
from .types import (
    ContinuationToken,
    PayloadFormat,
    TableQuerySegment,
    TableResult,
    WireMethod,
    WireRequest,
    WireResponse,
)
from .xml_parsers import (
    ListingResult,
    parse_list_file_ranges,
    parse_list_files_and_directories,
    parse_list_handles,
    parse_list_shares,
)

log = logging.getLogger(__name__)

API_VERSION = "2019-07-07"


def _raise_for_status(response: WireResponse, expected: Iterable[int]) -> None:
    if response.status in expected:
        return
    info = parse_error_payload(response.body)
    raise error.UnexpectedStatus(
        reason=error.errmsg(response),
        status=response.status,
        extended_error=info,
    )


def _marker(marker: Union[ContinuationToken, str, None]) -> Optional[str]:
    if isinstance(marker, ContinuationToken):
        return marker.next_marker
    return marker


def _with_query(url: str, params: Dict[str, str]) -> str:
    if not params:
        return url
    return "%s?%s" % (url, urlencode(params, quote_via=quote, safe="$,"))


class TableProtocol:
    """
    Sans-I/O table service protocol handler.

    Example:
        protocol = TableProtocol(base_url="https://acct.table.core.windows.net")

        request = protocol.insert_request("people", entity)
        response = io.execute(request)
        result = protocol.parse_operation_response(TableOperation.insert(entity), response)
    """

    def __init__(
        self,
        base_url: str = "",
        payload_format: PayloadFormat = PayloadFormat.MINIMAL_METADATA,
        decoder: Optional[EntityDecoder] = None,
    ):
        """
        Args:
            base_url: Table service endpoint
            payload_format: JSON verbosity asked for in Accept headers
            decoder: Entity decoder (resolver / shape), a plain one if None
        """
        self.base_url = base_url.rstrip("/") if base_url else ""
        self.payload_format = payload_format
        self.decoder = decoder or EntityDecoder()

    @classmethod
    def from_config(cls, config, decoder: Optional[EntityDecoder] = None) -> "TableProtocol":
        """Build a handler from a :class:`~storagewire.config.ProtocolConfig`."""
        if decoder is None:
            decoder = EntityDecoder(use_shape_cache=config.use_shape_cache)
        return cls(base_url=config.base_url, payload_format=config.payload_format, decoder=decoder)

    def _base_headers(self) -> Dict[str, str]:
        return {
            "Accept": self.payload_format.value,
            "DataServiceVersion": "3.0;",
            "MaxDataServiceVersion": "3.0;NetFx",
            "x-ms-version": API_VERSION,
        }

    # =========================================================================
    # Single operations
    # =========================================================================

    def operation_request(self, table_name: str, operation: TableOperation) -> WireRequest:
        """
        Build the request for one table operation outside a batch.

        Merge and InsertOrMerge are sent as POST with ``X-HTTP-Method: MERGE``.
        """
        kind = operation.operation_type
        headers = {**self._base_headers(), **operation.request_headers(self.payload_format)}
        if kind in (TableOperationType.MERGE, TableOperationType.INSERT_OR_MERGE):
            method = WireMethod.POST
            headers["X-HTTP-Method"] = "MERGE"
        elif kind is TableOperationType.INSERT:
            method = WireMethod.POST
        elif kind is TableOperationType.DELETE:
            method = WireMethod.DELETE
        elif kind is TableOperationType.RETRIEVE:
            method = WireMethod.GET
        else:
            method = WireMethod.PUT
        return WireRequest(
            method=method,
            url=operation.request_url(self.base_url, table_name),
            headers=headers,
            body=operation.request_body(),
        )

    def insert_request(
        self, table_name: str, entity: Entity, echo_content: bool = False
    ) -> WireRequest:
        return self.operation_request(table_name, TableOperation.insert(entity, echo_content))

    def delete_request(self, table_name: str, entity: Entity) -> WireRequest:
        return self.operation_request(table_name, TableOperation.delete(entity))

    def replace_request(self, table_name: str, entity: Entity) -> WireRequest:
        return self.operation_request(table_name, TableOperation.replace(entity))

    def merge_request(self, table_name: str, entity: Entity) -> WireRequest:
        return self.operation_request(table_name, TableOperation.merge(entity))

    def insert_or_replace_request(self, table_name: str, entity: Entity) -> WireRequest:
        return self.operation_request(table_name, TableOperation.insert_or_replace(entity))

    def insert_or_merge_request(self, table_name: str, entity: Entity) -> WireRequest:
        return self.operation_request(table_name, TableOperation.insert_or_merge(entity))

    def retrieve_request(
        self,
        table_name: str,
        partition_key: str,
        row_key: str,
        select_columns: Optional[Iterable[str]] = None,
    ) -> WireRequest:
        return self.operation_request(
            table_name, TableOperation.retrieve(partition_key, row_key, select_columns)
        )

    def parse_operation_response(
        self, operation: TableOperation, response: WireResponse
    ) -> TableResult:
        """
        Parse the response of a single operation.

        The status is classified like a batch part.  A Retrieve answered
        with 404 gives a result without entity.

        Raises:
            UnexpectedStatus: any other status than the expected one
        """
        if (
            operation.operation_type is TableOperationType.RETRIEVE
            and response.status == 404
        ):
            return TableResult(http_status_code=404, result=None)
        _raise_for_status(response, (expected_status(operation),))
        return apply_success(
            operation,
            response.status,
            response.etag,
            response.body,
            response.content_type,
            self.decoder,
        )

    # =========================================================================
    # Batches
    # =========================================================================

    def batch_request(
        self,
        table_name: str,
        operations: Sequence[TableOperation],
        batch_id: Optional[str] = None,
        changeset_id: Optional[str] = None,
    ) -> WireRequest:
        """
        Build an entity group transaction request.

        Raises:
            BatchValidationError: the operations can not form one batch
        """
        encoded = encode_batch(
            table_name,
            operations,
            self.base_url,
            self.payload_format,
            batch_id=batch_id,
            changeset_id=changeset_id,
        )
        headers = {**self._base_headers(), "Content-Type": encoded.content_type}
        headers["Accept"] = "multipart/mixed"
        return WireRequest(
            method=WireMethod.POST,
            url="%s/$batch" % self.base_url,
            headers=headers,
            body=encoded.body,
        )

    def parse_batch_response(
        self,
        operations: Sequence[TableOperation],
        response: WireResponse,
        buffer_pool: Optional[BufferPool] = None,
        cancellation: Optional[CancellationToken] = None,
    ) -> BatchOutcome:
        """
        Parse a batch response into ItemResults or ChangesetFailed.

        Raises:
            UnexpectedStatus: the batch request as a whole was rejected
        """
        _raise_for_status(response, (202,))
        return decode_batch_response(
            response.body,
            operations,
            self.decoder,
            boundary=boundary_from_content_type(response.content_type),
            buffer_pool=buffer_pool,
            cancellation=cancellation,
        )

    # =========================================================================
    # Queries
    # =========================================================================

    def query_request(
        self,
        table_name: str,
        filter: Optional[str] = None,
        top: Optional[int] = None,
        select: Optional[Iterable[str]] = None,
        continuation: Optional[ContinuationToken] = None,
    ) -> WireRequest:
        """
        Build a table query.

        Args:
            table_name: Table to query
            filter: OData ``$filter`` expression
            top: Maximum number of entities on this page
            select: Property names to project
            continuation: Token of the previous page, passed back unmodified
        """
        params: Dict[str, str] = {}
        if filter:
            params["$filter"] = filter
        if top is not None:
            params["$top"] = str(top)
        if select:
            params["$select"] = ",".join(select)
        if continuation is not None:
            params.update(continuation.as_query())
        return WireRequest(
            method=WireMethod.GET,
            url=_with_query("%s/%s()" % (self.base_url, quote(table_name)), params),
            headers=self._base_headers(),
        )

    def parse_query_response(self, response: WireResponse) -> TableQuerySegment:
        """
        Raises:
            UnexpectedStatus: status other than 200
            MalformedWireValue: broken query payload
        """
        _raise_for_status(response, (200,))
        entities = decode_query_response(
            response.body,
            PayloadFormat.from_content_type(response.content_type),
            self.decoder,
        )
        return TableQuerySegment(
            entities=entities, continuation=continuation_from_headers(response.headers)
        )

    def list_tables_request(
        self,
        top: Optional[int] = None,
        continuation: Optional[ContinuationToken] = None,
    ) -> WireRequest:
        params: Dict[str, str] = {}
        if top is not None:
            params["$top"] = str(top)
        if continuation is not None:
            params.update(continuation.as_query())
        return WireRequest(
            method=WireMethod.GET,
            url=_with_query("%s/Tables" % self.base_url, params),
            headers=self._base_headers(),
        )

    def parse_list_tables_response(self, response: WireResponse) -> TableQuerySegment:
        """Table names of one page, with the NextTableName continuation."""
        _raise_for_status(response, (200,))
        document = load_json(response.body)
        if not isinstance(document, dict) or not isinstance(document.get("value"), list):
            raise error.MalformedWireValue(reason="table listing has no 'value' array")
        names: List[str] = [
            row.get("TableName") for row in document["value"] if isinstance(row, dict)
        ]
        return TableQuerySegment(
            entities=names, continuation=continuation_from_headers(response.headers)
        )


class FileProtocol:
    """
    Sans-I/O file service protocol handler for the listing operations.

    Listing bodies are parsed lazily, see :class:`ListingResult`.  When the
    response carries a live body stream, the XML is read from the network as
    the items are consumed.
    """

    def __init__(self, base_url: str = "", huge_tree: bool = False):
        self.base_url = base_url.rstrip("/") if base_url else ""
        self.huge_tree = huge_tree

    @classmethod
    def from_config(cls, config) -> "FileProtocol":
        return cls(base_url=config.base_url, huge_tree=config.huge_tree)

    def _base_headers(self) -> Dict[str, str]:
        return {"x-ms-version": API_VERSION}

    def _path_url(self, *segments: str) -> str:
        path = "/".join(quote(s.strip("/")) for s in segments if s and s.strip("/"))
        return "%s/%s" % (self.base_url, path) if path else "%s/" % self.base_url

    @staticmethod
    def _paging(params: Dict[str, str], prefix, marker, max_results) -> Dict[str, str]:
        if prefix:
            params["prefix"] = prefix
        marker = _marker(marker)
        if marker:
            params["marker"] = marker
        if max_results is not None:
            params["maxresults"] = str(max_results)
        return params

    def list_shares_request(
        self,
        prefix: Optional[str] = None,
        marker: Union[ContinuationToken, str, None] = None,
        max_results: Optional[int] = None,
        include_metadata: bool = False,
        include_snapshots: bool = False,
    ) -> WireRequest:
        params = self._paging({"comp": "list"}, prefix, marker, max_results)
        include = []
        if include_metadata:
            include.append("metadata")
        if include_snapshots:
            include.append("snapshots")
        if include:
            params["include"] = ",".join(include)
        return WireRequest(
            method=WireMethod.GET,
            url=_with_query(self._path_url(), params),
            headers=self._base_headers(),
        )

    def list_directory_request(
        self,
        share: str,
        directory: str = "",
        prefix: Optional[str] = None,
        marker: Union[ContinuationToken, str, None] = None,
        max_results: Optional[int] = None,
    ) -> WireRequest:
        params = self._paging({"restype": "directory", "comp": "list"}, prefix, marker, max_results)
        return WireRequest(
            method=WireMethod.GET,
            url=_with_query(self._path_url(share, directory), params),
            headers=self._base_headers(),
        )

    def list_ranges_request(
        self,
        share: str,
        path: str,
        start: Optional[int] = None,
        end: Optional[int] = None,
    ) -> WireRequest:
        headers = self._base_headers()
        if start is not None:
            headers["x-ms-range"] = "bytes=%d-%s" % (start, "" if end is None else end)
        return WireRequest(
            method=WireMethod.GET,
            url=_with_query(self._path_url(share, path), {"comp": "rangelist"}),
            headers=headers,
        )

    def list_handles_request(
        self,
        share: str,
        path: str = "",
        marker: Union[ContinuationToken, str, None] = None,
        max_results: Optional[int] = None,
        recursive: bool = False,
    ) -> WireRequest:
        params = self._paging({"comp": "listhandles"}, None, marker, max_results)
        headers = self._base_headers()
        if recursive:
            headers["x-ms-recursive"] = "true"
        return WireRequest(
            method=WireMethod.GET,
            url=_with_query(self._path_url(share, path), params),
            headers=headers,
        )

    def parse_list_shares_response(
        self, response: WireResponse, cancellation: Optional[CancellationToken] = None
    ) -> ListingResult:
        _raise_for_status(response, (200,))
        return parse_list_shares(response.stream(), cancellation, self.huge_tree)

    def parse_list_directory_response(
        self, response: WireResponse, cancellation: Optional[CancellationToken] = None
    ) -> ListingResult:
        _raise_for_status(response, (200,))
        return parse_list_files_and_directories(response.stream(), cancellation, self.huge_tree)

    def parse_list_ranges_response(
        self, response: WireResponse, cancellation: Optional[CancellationToken] = None
    ) -> ListingResult:
        _raise_for_status(response, (200,))
        return parse_list_file_ranges(response.stream(), cancellation, self.huge_tree)

    def parse_list_handles_response(
        self, response: WireResponse, cancellation: Optional[CancellationToken] = None
    ) -> ListingResult:
        _raise_for_status(response, (200,))
        return parse_list_handles(response.stream(), cancellation, self.huge_tree)
