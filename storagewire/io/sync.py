"""
Blocking transport on top of requests.
"""

import logging
from typing import Optional

import requests

from storagewire.lib import error
from storagewire.lib.cancellation import CancellationToken, check
from storagewire.protocol.types import WireRequest, WireResponse

log = logging.getLogger(__name__)


class SyncIO:
    """
    Executes :class:`WireRequest` objects over a ``requests.Session``.

    It neither signs nor retries.  A cancellation token is checked before
    sending, and its deadline caps the transport timeout; a timeout caused
    by the deadline surfaces as :class:`OperationCanceled`, which callers
    may retry.

    Example:
        with SyncIO() as io:
            request = protocol.list_directory_request("share", "logs")
            response = io.execute(request, stream=True)
            for entry in protocol.parse_list_directory_response(response):
                print(entry.name)
    """

    def __init__(
        self,
        session: Optional[requests.Session] = None,
        timeout: float = 30.0,
        verify: bool = True,
    ):
        self._owns_session = session is None
        self.session = session or requests.Session()
        self.timeout = timeout
        self.verify = verify

    @classmethod
    def from_config(cls, config, session: Optional[requests.Session] = None) -> "SyncIO":
        return cls(session=session, timeout=config.timeout)

    def _timeout(self, cancellation: Optional[CancellationToken]) -> float:
        remaining = cancellation.remaining() if cancellation is not None else None
        if remaining is None:
            return self.timeout
        return min(self.timeout, remaining)

    def execute(
        self,
        request: WireRequest,
        cancellation: Optional[CancellationToken] = None,
        stream: bool = False,
    ) -> WireResponse:
        """
        Send ``request`` and convert the answer.

        With ``stream`` set, a 2xx body is left unread in
        ``WireResponse.raw`` so a listing can be parsed while it arrives.
        Error bodies are always read, the error payload parser needs them.

        Raises:
            OperationCanceled: the token was cancelled, or its deadline
                passed before the service answered
        """
        check(cancellation)
        timeout = self._timeout(cancellation)
        log.debug("%s %s (timeout %.1fs)", request.method.value, request.url, timeout)
        try:
            response = self.session.request(
                method=request.method.value,
                url=request.url,
                headers=request.headers,
                data=request.body,
                timeout=timeout,
                verify=self.verify,
                stream=stream,
            )
        except requests.Timeout as exc:
            if cancellation is not None and cancellation.is_cancelled:
                raise error.OperationCanceled(
                    url=request.url, reason="deadline exceeded while waiting for the service"
                ) from exc
            raise

        headers = dict(response.headers)
        if stream and 200 <= response.status_code < 300:
            response.raw.decode_content = True
            return WireResponse(status=response.status_code, headers=headers, raw=response.raw)
        return WireResponse(status=response.status_code, headers=headers, body=response.content)

    def close(self) -> None:
        """Close the session if we created it."""
        if self._owns_session and self.session:
            self.session.close()

    def __enter__(self) -> "SyncIO":
        return self

    def __exit__(self, *args) -> None:
        self.close()
