"""
Continuation tokens: where they come from on the wire.

Table listings report the next page in response headers, marker-style
listings (blobs, files, queues) in a ``<NextMarker>`` element.  A page
without any of those is the last page, and the functions below return
None for it; callers must not be able to confuse "no more data" with an
empty page that has a successor.
"""

import logging
from typing import Mapping, Optional

from .types import ContinuationToken, TokenKind

log = logging.getLogger(__name__)

NEXT_PARTITION_KEY_HEADER = "x-ms-continuation-NextPartitionKey"
NEXT_ROW_KEY_HEADER = "x-ms-continuation-NextRowKey"
NEXT_TABLE_NAME_HEADER = "x-ms-continuation-NextTableName"


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    lname = name.lower()
    for key, value in headers.items():
        if key.lower() == lname:
            ## an empty header value means the same as no header
            return value or None
    return None


def continuation_from_headers(headers: Mapping[str, str]) -> Optional[ContinuationToken]:
    """
    Build a table continuation token from response headers.

    Any one of NextPartitionKey, NextRowKey or NextTableName makes a token;
    the values are kept exactly as received.
    """
    pk = _header(headers, NEXT_PARTITION_KEY_HEADER)
    rk = _header(headers, NEXT_ROW_KEY_HEADER)
    table = _header(headers, NEXT_TABLE_NAME_HEADER)
    if pk is None and rk is None and table is None:
        return None
    log.debug("continuation in headers: pk=%r rk=%r table=%r", pk, rk, table)
    return ContinuationToken(
        kind=TokenKind.TABLE,
        next_partition_key=pk,
        next_row_key=rk,
        next_table_name=table,
    )


def continuation_from_marker(
    marker: Optional[str], kind: TokenKind = TokenKind.BLOB
) -> Optional[ContinuationToken]:
    """Token for a ``NextMarker`` value; empty or missing marker gives None."""
    if not marker:
        return None
    return ContinuationToken(kind=kind, next_marker=marker)


def continuation_headers(token: Optional[ContinuationToken]) -> dict:
    """
    The inverse of :func:`continuation_from_headers`, for code that wants to
    replay a token the way it was received.
    """
    if token is None or token.kind is not TokenKind.TABLE:
        return {}
    headers = {}
    if token.next_partition_key is not None:
        headers[NEXT_PARTITION_KEY_HEADER] = token.next_partition_key
    if token.next_row_key is not None:
        headers[NEXT_ROW_KEY_HEADER] = token.next_row_key
    if token.next_table_name is not None:
        headers[NEXT_TABLE_NAME_HEADER] = token.next_table_name
    return headers
