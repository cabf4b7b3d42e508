"""Output channel receiving raw text produced by test workers."""

import logging
from typing import Protocol

log = logging.getLogger(__name__)


class OutputChannel(Protocol):
    """Fire-and-forget text sink shown to the user."""

    def append(self, message: str) -> None:
        """Append a chunk of text."""


class LogOutputChannel:
    """Output channel that writes every chunk to a logger."""

    def __init__(self, logger: logging.Logger = log) -> None:
        self._logger = logger

    def append(self, message: str) -> None:
        self._logger.info("%s", message.rstrip("\n"))
