"""Typed orchestrator events and the in-process bus that fans them out.

Every event is a small dataclass tagged with a ``kind`` string. Components
receive one shared :class:`EventBus` at construction time and call
:meth:`EventBus.emit`; listeners are either plain callbacks or async
iterators obtained from :meth:`EventBus.listen`.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Any, AsyncIterator, Callable, ClassVar, Optional, Union

from .logging_utils import JsonlLogger

logger = logging.getLogger("runtimeworks.events")


@dataclass
class _Event:
    kind: ClassVar[str] = "event"

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["event"] = self.kind
        return payload


@dataclass
class InstallProgress(_Event):
    kind: ClassVar[str] = "install-progress"
    stage: str
    message: str
    progress: int
    model: Optional[str] = None


@dataclass
class ModelPullComplete(_Event):
    kind: ClassVar[str] = "model-pull-complete"
    model: str


@dataclass
class ModelWarmedUp(_Event):
    kind: ClassVar[str] = "model-warmed-up"
    model: str


@dataclass
class StateChanged(_Event):
    kind: ClassVar[str] = "state-changed"
    installed: bool
    running: bool
    models: int
    loaded_models: list[str] = field(default_factory=list)


@dataclass
class DownloadFailed(_Event):
    kind: ClassVar[str] = "download-error"
    url: str
    error: str
    model_id: Optional[str] = None


@dataclass
class InstallationComplete(_Event):
    kind: ClassVar[str] = "installation-complete"


@dataclass
class ErrorEvent(_Event):
    kind: ClassVar[str] = "error"
    error_type: str
    error: str
    model: Optional[str] = None


Event = Union[
    InstallProgress,
    ModelPullComplete,
    ModelWarmedUp,
    StateChanged,
    DownloadFailed,
    InstallationComplete,
    ErrorEvent,
]
EventCallback = Callable[[Event], None]


class EventBus:
    def __init__(self) -> None:
        self._callbacks: list[EventCallback] = []
        self._queues: list[asyncio.Queue[Event]] = []

    def subscribe(self, callback: EventCallback) -> Callable[[], None]:
        """Register ``callback``; the returned function removes it again."""
        self._callbacks.append(callback)

        def _unsubscribe() -> None:
            self.unsubscribe(callback)

        return _unsubscribe

    def unsubscribe(self, callback: EventCallback) -> None:
        try:
            self._callbacks.remove(callback)
        except ValueError:
            pass

    def emit(self, event: Event) -> None:
        for callback in list(self._callbacks):
            try:
                callback(event)
            except Exception:  # noqa: BLE001
                logger.exception(
                    "[events] Listener %r failed handling %s", callback, event.kind
                )
        for queue in list(self._queues):
            queue.put_nowait(event)

    async def listen(self) -> AsyncIterator[Event]:
        """Yield every event emitted after the iterator starts."""
        queue: asyncio.Queue[Event] = asyncio.Queue()
        self._queues.append(queue)
        try:
            while True:
                yield await queue.get()
        finally:
            self._queues.remove(queue)


class EventJournal:
    """Bus listener that appends each event to a JSONL file."""

    def __init__(self, path: str, max_bytes: int = 25_000_000):
        self._writer = JsonlLogger(path, max_bytes)

    def __call__(self, event: Event) -> None:
        record = event.to_dict()
        record["ts"] = time.time()
        self._writer.log(record)
