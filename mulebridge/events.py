import asyncio
import logging
from typing import Awaitable, Callable, Optional, Protocol, Union

from pydantic import BaseModel

log = logging.getLogger(__name__)


class DownloadAdded(BaseModel):
    event: str = "downloadAdded"
    hash: str
    filename: str
    size: Optional[int] = None
    username: Optional[str] = None
    client_type: str
    category: Optional[str] = None


class DownloadFinished(BaseModel):
    event: str = "downloadFinished"
    hash: str
    filename: str
    size: Optional[int] = None
    client_type: str
    downloaded: int = 0
    uploaded: int = 0
    ratio: float = 0.0
    tracker_domain: Optional[str] = None
    category: Optional[str] = None
    path: Optional[str] = None
    multi_file: bool = False


Event = Union[DownloadAdded, DownloadFinished]
Handler = Callable[[Event], Union[None, Awaitable[None]]]


class EventSink(Protocol):
    async def emit(self, event: Event) -> None: ...


class EventBus:
    """
    Fan lifecycle events out to subscribers (websocket broadcast, notification
    scripts...). A failing subscriber is logged and never affects the emitter.
    """

    def __init__(self):
        self._handlers: dict[str, list[Handler]] = {}

    def subscribe(self, event_name: str, handler: Handler):
        self._handlers.setdefault(event_name, []).append(handler)

    def unsubscribe(self, event_name: str, handler: Handler):
        handlers = self._handlers.get(event_name, [])
        if handler in handlers:
            handlers.remove(handler)

    async def emit(self, event: Event) -> None:
        for handler in list(self._handlers.get(event.event, [])):
            try:
                result = handler(event)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                log.warning("Event handler for %s failed: %s", event.event, e)

