#!/usr/bin/env python
import logging
import os
from typing import Any
from typing import Optional

from storagewire import __version__

## Environmental variables prepended with "PYTHON_STORAGEWIRE" are used for debug purposes,
## one of DEBUG_PDB, DEBUG, DEVELOPMENT, PRODUCTION
debugmode = os.environ.get("PYTHON_STORAGEWIRE_DEBUGMODE")
if not debugmode:
    if "dev" in __version__ or __version__ == "(unknown)":
        debugmode = "DEVELOPMENT"
    else:
        debugmode = "PRODUCTION"

log = logging.getLogger("storagewire")
if debugmode.startswith("DEBUG"):
    log.setLevel(logging.DEBUG)
else:
    log.setLevel(logging.WARNING)


def errmsg(r) -> str:
    """Utility for formatting an error response to an error string"""
    body = r.body
    if isinstance(body, (bytes, bytearray)):
        body = body.decode("utf-8", errors="replace")
    return "%s %s\n\n%s" % (r.status, r.reason, body)


def weirdness(*reasons):
    from storagewire.lib.debug import xmlstring

    reason = " : ".join([xmlstring(x) for x in reasons])
    log.warning(f"Deviation from expectations found: {reason}")
    if debugmode == "DEBUG_PDB":
        log.error(f"Dropping into debugger due to {reason}")
        import pdb

        pdb.set_trace()


def assert_(condition: object) -> None:
    try:
        assert condition
    except AssertionError:
        if debugmode == "PRODUCTION":
            log.error(
                "Deviation from expectations found.  %s" % ERR_FRAGMENT, exc_info=True
            )
        elif debugmode == "DEBUG_PDB":
            log.error("Deviation from expectations found.  Dropping into debugger")
            import pdb

            pdb.set_trace()
        else:
            raise


ERR_FRAGMENT: str = (
    "Please consider raising an issue on the storagewire issue tracker.  Include this "
    "error, the traceback if any, and the x-ms-version header of the response"
)


class StorageWireError(Exception):
    """
    Base class for everything the wire layer raises.

    ``retryable`` tells the surrounding executor whether a fresh attempt
    may succeed.  The wire layer itself never retries.
    """

    url: Optional[str] = None
    reason: str = "no reason"
    retryable: bool = False
    status: Optional[int] = None
    extended_error: Any = None

    def __init__(
        self,
        url: Optional[str] = None,
        reason: Optional[str] = None,
        status: Optional[int] = None,
        extended_error: Any = None,
    ) -> None:
        if url:
            self.url = url
        if reason:
            self.reason = reason
        if status is not None:
            self.status = status
        if extended_error is not None:
            self.extended_error = extended_error
        super().__init__(self.reason)

    def __str__(self) -> str:
        return "%s at '%s', reason %s" % (
            self.__class__.__name__,
            self.url,
            self.reason,
        )


class MalformedWireValue(StorageWireError):
    """
    A value on the wire could not be parsed as the type it claims (or is
    resolved) to have, or the payload structure itself is broken.
    """

    pass


class ResolverFailure(StorageWireError):
    """
    The caller-supplied type resolver raised.  The original exception is
    chained as ``__cause__``.
    """

    pass


class UnexpectedStatus(StorageWireError):
    """
    A single (non-batch) operation got a status code that does not match
    its operation kind.
    """

    pass


class ChangesetFatal(StorageWireError):
    """
    The whole changeset was rolled back by the service.  No partial result
    exists for the batch.
    """

    pass


class PerItemFailure(StorageWireError):
    """
    One sub-operation of a batch returned an unexpected status code.
    ``index`` is the zero-based position of the offending operation.
    """

    index: int = -1

    def __init__(self, index: int, *args, **kwargs) -> None:
        self.index = index
        super().__init__(*args, **kwargs)

    def __str__(self) -> str:
        return "%s at '%s', element %s in the batch, reason %s" % (
            self.__class__.__name__,
            self.url,
            self.index,
            self.reason,
        )


class OperationCanceled(StorageWireError):
    """
    Cooperative cancellation (or the caller's deadline) was observed at a
    structural checkpoint.
    """

    retryable = True


class BatchValidationError(StorageWireError):
    """The batch can not be encoded as given."""

    pass


def is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, StorageWireError) and exc.retryable
