"""In-order publish/subscribe channels used to talk to the host."""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Protocol

log = logging.getLogger(__name__)


class Disposable(Protocol):
    """Something that can be released exactly once."""

    def dispose(self) -> None:
        """Release the resource."""


@dataclass(frozen=True)
class Subscription:
    """Disposable returned by ``EventChannel.subscribe``."""

    _dispose: Callable[[], None]

    def dispose(self) -> None:
        self._dispose()


class EventChannel[T]:
    """Delivers every fired event, in order, to all current listeners."""

    def __init__(self) -> None:
        self._listeners: list[Callable[[T], None]] = []

    def subscribe(self, listener: Callable[[T], None]) -> Disposable:
        self._listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return Subscription(_unsubscribe)

    def fire(self, event: T) -> None:
        for listener in list(self._listeners):
            try:
                listener(event)
            except Exception:
                log.exception("Event listener %r failed", listener)

    def dispose(self) -> None:
        self._listeners.clear()
