#!/usr/bin/env python
import logging

__version__ = "0.4.0"

from .protocol import TableProtocol
from .protocol import FileProtocol

# Silence notification of no default logging handler
log = logging.getLogger("storagewire")


class NullHandler(logging.Handler):
    def emit(self, record) -> None:
        pass


log.addHandler(NullHandler())

__all__ = ["__version__", "TableProtocol", "FileProtocol"]
