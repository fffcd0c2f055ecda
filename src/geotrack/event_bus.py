from __future__ import annotations

import asyncio
import itertools
import logging
from collections import defaultdict
from typing import Any, AsyncIterator, Callable, DefaultDict

logger = logging.getLogger(__name__)

Callback = Callable[[Any], None]

STREAM_QUEUE_SIZE = 100


class EventBus:
    def __init__(self) -> None:
        self._topic_to_queues: DefaultDict[str, list[asyncio.Queue[Any]]] = defaultdict(list)
        self._topic_to_callbacks: DefaultDict[str, dict[int, Callback]] = defaultdict(dict)
        self._handle_to_topic: dict[int, str] = {}
        self._handles = itertools.count(1)
        self._lock = asyncio.Lock()

    def subscribe(self, topic: str, callback: Callback) -> int:
        handle = next(self._handles)
        self._topic_to_callbacks[topic][handle] = callback
        self._handle_to_topic[handle] = topic
        return handle

    def unsubscribe(self, handle: int) -> None:
        topic = self._handle_to_topic.pop(handle, None)
        if topic is not None:
            self._topic_to_callbacks[topic].pop(handle, None)

    def subscriber_count(self, topic: str) -> int:
        return len(self._topic_to_callbacks.get(topic, {})) + len(self._topic_to_queues.get(topic, []))

    async def publish(self, topic: str, event: Any) -> None:
        async with self._lock:
            queues = list(self._topic_to_queues.get(topic, []))
        callbacks = list(self._topic_to_callbacks.get(topic, {}).items())
        for handle, callback in callbacks:
            # Skip listeners that left while this event was being delivered
            if handle not in self._handle_to_topic:
                continue
            try:
                callback(event)
            except Exception:
                logger.exception("Subscriber %d on %s failed", handle, topic)
        for queue in queues:
            try:
                queue.put_nowait(event)
            except asyncio.QueueFull:
                logger.warning("Stream on %s is full; dropping event", topic)

    async def stream(self, topic: str, max_queue_size: int = STREAM_QUEUE_SIZE) -> AsyncIterator[Any]:
        queue: asyncio.Queue[Any] = asyncio.Queue(maxsize=max_queue_size)
        async with self._lock:
            self._topic_to_queues[topic].append(queue)
        try:
            while True:
                event = await queue.get()
                yield event
        finally:
            async with self._lock:
                if queue in self._topic_to_queues.get(topic, []):
                    self._topic_to_queues[topic].remove(queue)
