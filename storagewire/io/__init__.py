"""
I/O layer for the storage wire protocol.

This module provides a sync implementation for executing WireRequest
objects and returning WireResponse objects.

The I/O layer only handles HTTP transport, bounded by the caller's
cancellation deadline, and can hand listing bodies over as live streams.
All protocol logic (payload building/parsing) is in storagewire.protocol.
Signing requests and retrying them is left to the caller.

Example:
    from storagewire.protocol import FileProtocol
    from storagewire.io import SyncIO

    protocol = FileProtocol(base_url="https://acct.file.core.windows.net")
    with SyncIO() as io:
        request = protocol.list_shares_request(prefix="logs")
        response = io.execute(request, stream=True)
        for share in protocol.parse_list_shares_response(response):
            print(share.name)
"""

from .base import SyncIOProtocol
from .sync import SyncIO

__all__ = [
    # Protocols
    "SyncIOProtocol",
    # Implementations
    "SyncIO",
]
