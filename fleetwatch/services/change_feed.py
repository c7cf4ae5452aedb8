import asyncio

from fleetwatch.core.logging import get_logger
from fleetwatch.schemas.telemetry import ChangeEvent

log = get_logger()

_CLOSED = object()


class ChangeSubscription:
    """One listener on a ChangeFeed; async-iterates ChangeEvents until closed."""

    def __init__(self, feed: "ChangeFeed") -> None:
        self._feed = feed
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def pending(self) -> int:
        return self._queue.qsize()

    def _push(self, event: ChangeEvent) -> None:
        if not self._closed:
            self._queue.put_nowait(event)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._feed._detach(self)
        self._queue.put_nowait(_CLOSED)

    def __aiter__(self) -> "ChangeSubscription":
        return self

    async def __anext__(self) -> ChangeEvent:
        item = await self._queue.get()
        if item is _CLOSED:
            raise StopAsyncIteration
        return item


class ChangeFeed:
    """In-process fan-out of store change notifications."""

    def __init__(self) -> None:
        self._subscriptions: set[ChangeSubscription] = set()

    def subscribe(self) -> ChangeSubscription:
        sub = ChangeSubscription(self)
        self._subscriptions.add(sub)
        log.debug("change_feed.subscribed", subscribers=len(self._subscriptions))
        return sub

    def publish(self, event: ChangeEvent) -> None:
        for sub in list(self._subscriptions):
            sub._push(event)

    def _detach(self, sub: ChangeSubscription) -> None:
        self._subscriptions.discard(sub)
        log.debug("change_feed.unsubscribed", subscribers=len(self._subscriptions))

    def __len__(self) -> int:
        return len(self._subscriptions)
