"""进程内广播通道。

每个订阅者拥有独立的无界 asyncio.Queue；close() 向所有队列投递结束标记，
订阅者读到标记后迭代结束。关闭后的 publish 被静默丢弃。
"""

import asyncio
from typing import AsyncIterator, Generic, List, TypeVar

T = TypeVar("T")

_CLOSED = object()


class Subscription(Generic[T]):
    """单个订阅者的异步迭代器。"""

    def __init__(self, channel: "BroadcastChannel[T]", queue: asyncio.Queue):
        self._channel = channel
        self._queue = queue

    def __aiter__(self) -> AsyncIterator[T]:
        return self

    async def __anext__(self) -> T:
        item = await self._queue.get()
        if item is _CLOSED:
            self.close()
            raise StopAsyncIteration
        return item

    def close(self) -> None:
        self._channel._unsubscribe(self._queue)

    async def collect(self) -> List[T]:
        """读取到通道关闭为止的全部条目。"""
        return [item async for item in self]


class BroadcastChannel(Generic[T]):
    def __init__(self) -> None:
        self._queues: List[asyncio.Queue] = []
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def subscribe(self) -> Subscription[T]:
        queue: asyncio.Queue = asyncio.Queue()
        if self._closed:
            queue.put_nowait(_CLOSED)
        else:
            self._queues.append(queue)
        return Subscription(self, queue)

    def publish(self, item: T) -> bool:
        if self._closed:
            return False
        for queue in self._queues:
            queue.put_nowait(item)
        return True

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        for queue in self._queues:
            queue.put_nowait(_CLOSED)
        self._queues.clear()

    def _unsubscribe(self, queue: asyncio.Queue) -> None:
        try:
            self._queues.remove(queue)
        except ValueError:
            pass
