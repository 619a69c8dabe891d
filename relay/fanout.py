"""
Broadcast fanout — one upstream frame to every ready downstream consumer.

Each consumer gets a bounded queue drained by its own writer task, so a slow
or stuck socket never blocks the upstream read loop. When a queue is full the
frame is dropped for that consumer only.
"""
import asyncio
import enum
import logging

from relay.frames import serialize

logger = logging.getLogger("fanout")

DEFAULT_QUEUE_SIZE = 1000
FLUSH_TIMEOUT = 5.0


class Readiness(enum.Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


class Consumer:
    """
    Wraps a downstream WebSocket. The transport owns the socket lifecycle;
    this only reads its readiness and writes to it.
    """

    def __init__(self, ws, name: str, queue_size: int = DEFAULT_QUEUE_SIZE):
        self.ws = ws
        self.name = name
        self.queue: asyncio.Queue[str] = asyncio.Queue(maxsize=queue_size)
        self._task: asyncio.Task | None = None
        # Stats
        self.sent: int = 0
        self.dropped: int = 0
        self.failed: int = 0

    @property
    def readiness(self) -> Readiness:
        if getattr(self.ws, "closed", False):
            return Readiness.CLOSED
        if not getattr(self.ws, "prepared", True):
            return Readiness.CONNECTING
        return Readiness.OPEN

    def start(self):
        if self._task is None:
            self._task = asyncio.create_task(self._write_loop(), name=f"writer:{self.name}")

    def offer(self, text: str) -> bool:
        try:
            self.queue.put_nowait(text)
            return True
        except asyncio.QueueFull:
            self.dropped += 1
            if self.dropped == 1 or self.dropped % 100 == 0:
                logger.warning(f"[{self.name}] queue full, dropped {self.dropped} frame(s)")
            return False

    async def _write_loop(self):
        while True:
            text = await self.queue.get()
            try:
                if self.readiness is Readiness.OPEN:
                    await self.ws.send_str(text)
                    self.sent += 1
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.failed += 1
                if self.failed == 1 or self.failed % 100 == 0:
                    logger.warning(f"[{self.name}] send failed ({self.failed} total): {e}")
            finally:
                self.queue.task_done()

    async def flush(self, timeout: float = FLUSH_TIMEOUT):
        try:
            await asyncio.wait_for(self.queue.join(), timeout)
        except asyncio.TimeoutError:
            logger.warning(f"[{self.name}] flush timed out with {self.queue.qsize()} queued")

    async def stop(self):
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None


class Fanout:
    """Registry of downstream consumers plus the broadcast operation."""

    def __init__(self, queue_size: int = DEFAULT_QUEUE_SIZE):
        self.queue_size = queue_size
        self._consumers: dict[int, Consumer] = {}
        self._next_id = 0
        # Stats
        self.frames_broadcast: int = 0
        self.deliveries: int = 0

    @property
    def consumers(self) -> list[Consumer]:
        return list(self._consumers.values())

    @property
    def active_count(self) -> int:
        return len(self._consumers)

    def register(self, ws) -> Consumer:
        self._next_id += 1
        consumer = Consumer(ws, name=f"consumer-{self._next_id}", queue_size=self.queue_size)
        self._consumers[id(ws)] = consumer
        consumer.start()
        logger.info(f"[{consumer.name}] registered ({self.active_count} connected)")
        return consumer

    async def unregister(self, ws):
        consumer = self._consumers.pop(id(ws), None)
        if consumer is None:
            return
        await consumer.stop()
        logger.info(f"[{consumer.name}] unregistered ({self.active_count} connected)")

    def broadcast(self, frame, decoded=None) -> int:
        """
        Queue a frame for every consumer whose socket is open.
        Returns how many consumers accepted it. Never raises on a bad consumer.
        """
        payload = frame.raw
        if decoded is not None:
            payload = dict(payload)
            payload["decoded"] = decoded.to_dict()
        text = serialize(payload)

        delivered = 0
        for consumer in self.consumers:
            if consumer.readiness is not Readiness.OPEN:
                continue
            if consumer.offer(text):
                delivered += 1

        self.frames_broadcast += 1
        self.deliveries += delivered
        if delivered:
            logger.debug(f"Broadcast {frame.kind} to {delivered} consumer(s)")
        return delivered

    async def close_all(self):
        """Flush queued writes, then close every consumer socket."""
        consumers = self.consumers
        self._consumers.clear()
        for consumer in consumers:
            if consumer.readiness is Readiness.OPEN:
                await consumer.flush()
            await consumer.stop()
            try:
                await consumer.ws.close()
            except Exception as e:
                logger.debug(f"[{consumer.name}] close failed: {e}")
        if consumers:
            logger.info(f"Closed {len(consumers)} consumer connection(s)")
