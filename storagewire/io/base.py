"""
Interface of the transports that execute wire requests.
"""

from typing import Optional, Protocol, runtime_checkable

from storagewire.lib.cancellation import CancellationToken
from storagewire.protocol.types import WireRequest, WireResponse


@runtime_checkable
class SyncIOProtocol(Protocol):
    """
    What the protocol handlers need from a transport: run one
    :class:`WireRequest`, give back one :class:`WireResponse`.
    """

    def execute(
        self,
        request: WireRequest,
        cancellation: Optional[CancellationToken] = None,
        stream: bool = False,
    ) -> WireResponse:
        """
        Args:
            request: The request to send, already signed if the service
                needs it
            cancellation: Token whose deadline bounds the transport timeout
            stream: Leave a successful body unread in ``WireResponse.raw``
                for the listing parsers

        Raises:
            OperationCanceled: the token fired before or while sending
        """
        ...

    def close(self) -> None:
        ...
