"""
Streamed chat delivery.

A producer task drains the provider's fragment sequence into a bounded
queue; the caller consumes ChatEvents from the other end. The queue bound
gives backpressure, and cancelling the producer is how an abort stops the
relay.
"""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Callable, Dict, List, Optional, Union

import structlog

from .errors import GatewayError

logger = structlog.get_logger()

DEFAULT_QUEUE_SIZE = 32


class ChatEventType(Enum):
    FRAGMENT = "fragment"
    DONE = "done"
    ERROR = "error"


@dataclass(frozen=True)
class ChatEvent:
    """One item delivered to the chat caller."""
    type: ChatEventType
    content: str = ""
    error: Optional[GatewayError] = None

    @classmethod
    def fragment(cls, content: str) -> "ChatEvent":
        return cls(ChatEventType.FRAGMENT, content=content)

    @classmethod
    def done(cls) -> "ChatEvent":
        return cls(ChatEventType.DONE)

    @classmethod
    def failure(cls, error: GatewayError) -> "ChatEvent":
        return cls(ChatEventType.ERROR, error=error)

    @property
    def is_terminal(self) -> bool:
        return self.type is not ChatEventType.FRAGMENT

    def to_dict(self) -> Dict[str, Any]:
        if self.type is ChatEventType.FRAGMENT:
            return {"content": self.content}
        if self.type is ChatEventType.DONE:
            return {"done": True}
        return self.error.to_dict()


class _EndOfStream:
    pass


@dataclass(frozen=True)
class _ProducerFailure:
    error: BaseException


class _ConsumerStalled(Exception):
    pass


_END = _EndOfStream()

ChannelItem = Union[str, _EndOfStream, _ProducerFailure]


class FragmentChannel:
    """Producer task plus bounded queue between the provider and the caller.

    ``put_timeout`` bounds how long the producer waits for the caller to make
    room in the queue. When it expires the producer releases the provider
    stream and the caller receives a failure once the queue is drained.
    """

    def __init__(
        self,
        source: AsyncIterator[str],
        maxsize: int = DEFAULT_QUEUE_SIZE,
        put_timeout: Optional[float] = None,
    ):
        self._source = source
        self._queue: "asyncio.Queue[ChannelItem]" = asyncio.Queue(maxsize=maxsize)
        self._put_timeout = put_timeout
        self._task: Optional[asyncio.Task] = None
        self._stalled: Optional[_ProducerFailure] = None

    def start(self) -> None:
        if self._task is None:
            self._task = asyncio.create_task(self._produce())

    @property
    def done(self) -> bool:
        return self._task is not None and self._task.done()

    async def _put(self, item: ChannelItem) -> None:
        if self._put_timeout is None:
            await self._queue.put(item)
            return
        try:
            await asyncio.wait_for(self._queue.put(item), self._put_timeout)
        except asyncio.TimeoutError:
            raise _ConsumerStalled() from None

    async def _produce(self) -> None:
        try:
            try:
                async for fragment in self._source:
                    await self._put(fragment)
            except _ConsumerStalled:
                raise
            except Exception as e:
                await self._put(_ProducerFailure(e))
                return
            finally:
                aclose = getattr(self._source, "aclose", None)
                if aclose is not None:
                    await aclose()
            await self._put(_END)
        except _ConsumerStalled:
            logger.warning("chat_stream_stalled", put_timeout=self._put_timeout)
            self._stalled = _ProducerFailure(
                asyncio.TimeoutError("Caller stopped reading the chat stream")
            )

    async def receive(self) -> ChannelItem:
        """Next fragment, or the end or failure marker."""
        self.start()
        if self._stalled is not None and self._queue.empty():
            return self._stalled
        return await self._queue.get()

    async def cancel(self) -> None:
        """Stop the producer and release the provider stream."""
        if self._task is not None and not self._task.done():
            self._task.cancel()
            await asyncio.gather(self._task, return_exceptions=True)


class ChatStream:
    """Caller side of one streamed chat exchange.

    ``conversation_id`` is known before iteration starts. Iterating yields
    fragment events followed by exactly one terminal event (done or error).
    Closing the stream early discards the partial reply. Leaving an
    ``async for`` loop early closes the stream once the loop's iterator is
    released, so an abandoned stream never keeps the provider connection.
    """

    def __init__(
        self,
        conversation_id: str,
        credits_cost,
        channel: FragmentChannel,
        on_complete: Callable[[str], None],
        on_failure: Callable[[BaseException], GatewayError],
    ):
        self.conversation_id = conversation_id
        self.credits_cost = credits_cost
        self._channel = channel
        self._on_complete = on_complete
        self._on_failure = on_failure
        self._parts: List[str] = []
        self._finished = False

    @property
    def text(self) -> str:
        """Text relayed so far."""
        return "".join(self._parts)

    @property
    def finished(self) -> bool:
        return self._finished

    def __aiter__(self) -> AsyncIterator[ChatEvent]:
        return self._events()

    async def _events(self) -> AsyncIterator[ChatEvent]:
        try:
            while not self._finished:
                yield await self._next_event()
        finally:
            await self.aclose()

    async def _next_event(self) -> ChatEvent:
        item = await self._channel.receive()

        if isinstance(item, str):
            self._parts.append(item)
            return ChatEvent.fragment(item)

        self._finished = True
        if isinstance(item, _ProducerFailure):
            return ChatEvent.failure(self._on_failure(item.error))

        try:
            # sqlite writes happen off the event loop
            await asyncio.to_thread(self._on_complete, self.text)
        except GatewayError as e:
            return ChatEvent.failure(e)
        return ChatEvent.done()

    async def aclose(self) -> None:
        """Abort delivery. Nothing further is persisted."""
        if self._finished:
            return
        self._finished = True
        await self._channel.cancel()
        logger.info(
            "chat_stream_aborted",
            conversation_id=self.conversation_id,
            discarded_chars=len(self.text),
        )

    async def collect(self) -> List[ChatEvent]:
        """Drain the stream into a list of events."""
        return [event async for event in self]

    async def __aenter__(self) -> "ChatStream":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.aclose()
