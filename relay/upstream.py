"""
Upstream stream controller — owns the single Geyser Subscribe stream.

Lifecycle:
  connect()  GetVersion probe; any RPC error here is fatal (FAILED)
  open()     one long-lived bidirectional stream, reused for every write;
             starts the read loop and the keepalive loop
  apply()    IDLE/STREAMING → SUBSCRIBING → STREAMING:
             write an empty request (clears the old filter), then the new
             filter. No ack is awaited between the two writes.

Frames are read strictly in arrival order and handed to the fanout. Pongs
and server pings are consumed here. A broken stream is reported, never
silently reconnected.
"""
import asyncio
import enum
import logging
import time

from relay.decoder import decode_transaction
from relay.errors import (
    ConnectionSetupFailure,
    DecodeError,
    UpstreamStreamError,
)
from relay.frames import (
    AccountUpdate,
    Ping,
    Pong,
    SlotUpdate,
    TransactionUpdate,
    parse_frame,
)
from relay.subscriptions import (
    DEFAULT_COMMITMENT,
    empty_request,
    ping_request,
)

logger = logging.getLogger("upstream")

PING_INTERVAL = 30          # seconds
CONNECT_TIMEOUT = 10        # seconds, GetVersion probe
INT32_MAX = 2**31 - 1       # ping id is int32 on the wire


class StreamState(enum.Enum):
    IDLE = "idle"
    SUBSCRIBING = "subscribing"
    STREAMING = "streaming"
    FAILED = "failed"


class UpstreamController:
    def __init__(
        self,
        registry,
        fanout,
        endpoint: str = "",
        token: str | None = None,
        commitment: str = DEFAULT_COMMITMENT,
        ping_interval: float = PING_INTERVAL,
        forward_decoded: bool = False,
        stub=None,
        request_encoder=None,
        update_decoder=None,
    ):
        self.registry = registry
        self.fanout = fanout
        self.endpoint = endpoint
        self.token = token
        self.commitment = commitment
        self.ping_interval = ping_interval
        self.forward_decoded = forward_decoded
        self.state = StreamState.IDLE

        self._stub = stub
        self._channel = None
        self._metadata = None
        self._encode = request_encoder
        self._decode_update = update_decoder
        self._call = None
        self._reader: asyncio.Task | None = None
        self._pinger: asyncio.Task | None = None
        # Serializes every write: filter generations never interleave
        self._lock = asyncio.Lock()
        self._active_request: dict | None = None

        # Keepalive tracking (observational only)
        self.last_ping_id: int = 0
        self.last_pong_id: int | None = None
        self.last_pong_at: float = 0.0

        # Stats
        self.frames_received: int = 0
        self.frames_dropped: int = 0
        self.frames_by_kind: dict[str, int] = {}
        self.writes: int = 0

    # ── Setup ────────────────────────────────────────────────

    async def connect(self):
        """Open the channel and verify the source answers. Raises ConnectionSetupFailure."""
        from relay import geyser
        from relay.frames import message_to_dict

        if self._encode is None:
            self._encode = geyser.encode_request
        if self._decode_update is None:
            self._decode_update = message_to_dict

        logger.info(f"Testing gRPC connection to {self.endpoint}...")
        try:
            self._channel = geyser.open_channel(self.endpoint, self.token)
            self._metadata = geyser.call_metadata(self.endpoint, self.token)
            self._stub = geyser.make_stub(self._channel)
            version = await self._stub.GetVersion(
                geyser.version_request(),
                metadata=self._metadata,
                timeout=CONNECT_TIMEOUT,
            )
        except Exception as e:
            self.state = StreamState.FAILED
            details = e.details() if hasattr(e, "details") else str(e)
            raise ConnectionSetupFailure(f"gRPC connection failed: {details}") from e

        logger.info(f"gRPC connection successful | Yellowstone version: {version.version}")

    async def open(self):
        """Open the one Subscribe stream and start reading from it."""
        if self._call is not None:
            return
        if self._stub is None:
            raise UpstreamStreamError("not connected")
        if self._encode is None:
            self._encode = lambda request: request
        if self._decode_update is None:
            self._decode_update = lambda update: update

        self._call = self._stub.Subscribe(metadata=self._metadata)
        self._reader = asyncio.create_task(self._read_loop(), name="upstream_reader")
        self._pinger = asyncio.create_task(self._ping_loop(), name="upstream_keepalive")
        logger.info("Upstream stream opened")

    async def run(self):
        """Run until the upstream stream fails or ends. Raises UpstreamStreamError."""
        await self.open()
        await self._reader

    async def close(self):
        for task in (self._pinger, self._reader):
            if task is not None and not task.done():
                task.cancel()
                try:
                    await task
                except (asyncio.CancelledError, UpstreamStreamError):
                    pass
        self._pinger = None
        self._reader = None
        if self._call is not None:
            self._call.cancel()
            self._call = None
        if self._channel is not None:
            await self._channel.close()
            self._channel = None
        if self.state is not StreamState.FAILED:
            self.state = StreamState.IDLE
        logger.info("Upstream stream closed")

    # ── Subscription ─────────────────────────────────────────

    async def apply(self, token_watches):
        """
        Make a new token set take effect upstream.
        Unsubscribe-then-resubscribe, serialized against other writes.
        """
        async with self._lock:
            if self._call is None:
                raise UpstreamStreamError("upstream stream is not open")

            # Committed to the registry only once both writes went through
            subscription = self.registry.prepare(token_watches)
            request = subscription.to_request(self.commitment)

            self.state = StreamState.SUBSCRIBING
            logger.info("Unsubscribing from all streams...")
            await self._write(empty_request())
            self._active_request = None

            await self._write(request)
            self.registry.commit(subscription)
            self._active_request = request
            self.state = StreamState.STREAMING
            logger.info(f"Subscribed to {len(subscription.labels)} token(s)")
            return subscription

    async def _write(self, request: dict):
        try:
            await self._call.write(self._encode(request))
            self.writes += 1
        except Exception as e:
            self.state = StreamState.IDLE
            raise UpstreamStreamError(f"upstream write failed: {e}") from e

    # ── Keepalive ────────────────────────────────────────────

    def _next_ping_id(self) -> int:
        ping_id = int(time.time()) % INT32_MAX
        if ping_id <= self.last_ping_id:
            ping_id = self.last_ping_id + 1
        return ping_id

    async def send_ping(self) -> int:
        if self.last_ping_id and self.last_pong_id != self.last_ping_id:
            logger.warning(f"No pong for ping {self.last_ping_id}")

        ping_id = self._next_ping_id()
        async with self._lock:
            if self._call is None:
                raise UpstreamStreamError("upstream stream is not open")
            await self._write(ping_request(ping_id, self._active_request))
        self.last_ping_id = ping_id
        logger.debug(f"Ping sent: {ping_id}")
        return ping_id

    async def _ping_loop(self):
        while True:
            await asyncio.sleep(self.ping_interval)
            try:
                await self.send_ping()
            except UpstreamStreamError as e:
                logger.warning(f"Keepalive ping failed: {e}")

    def _on_pong(self, frame: Pong):
        self.last_pong_id = frame.id
        self.last_pong_at = time.time()
        logger.debug(f"Pong received: {frame.id}")

    # ── Read loop ────────────────────────────────────────────

    async def _read_loop(self):
        try:
            async for update in self._call:
                self.handle_update(update)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            self.state = StreamState.IDLE
            logger.error(f"Upstream stream error: {e}")
            raise UpstreamStreamError(str(e)) from e

        self.state = StreamState.IDLE
        logger.error("Upstream stream ended by server")
        raise UpstreamStreamError("upstream stream closed")

    def handle_update(self, update):
        """Route one inbound update. Decode errors stay scoped to this frame."""
        self.frames_received += 1
        try:
            frame = parse_frame(self._decode_update(update))
        except (DecodeError, TypeError, ValueError, AttributeError) as e:
            self.frames_dropped += 1
            logger.warning(f"Dropped malformed frame: {type(e).__name__}: {e}")
            return

        self.frames_by_kind[frame.kind] = self.frames_by_kind.get(frame.kind, 0) + 1

        if isinstance(frame, Pong):
            self._on_pong(frame)
            return
        if isinstance(frame, Ping):
            logger.debug("Server ping received")
            return

        decoded = None
        if isinstance(frame, TransactionUpdate):
            decoded = self._decode(frame)
        elif isinstance(frame, AccountUpdate):
            logger.debug(f"Account update received for: {frame.pubkey}")
        elif isinstance(frame, SlotUpdate):
            logger.debug(f"Slot update: {frame.slot}")
        else:
            logger.debug(f"Unknown update type received: {frame.update_kind}")

        self.fanout.broadcast(frame, decoded if self.forward_decoded else None)

    def _decode(self, frame: TransactionUpdate):
        try:
            decoded = decode_transaction(frame.payload, frame.slot)
        except (DecodeError, TypeError, ValueError) as e:
            logger.warning(f"Transaction decode failed at slot {frame.slot}: {e}")
            return None

        transfers = sum(1 for ix in decoded.instructions if ix.is_transfer)
        logger.debug(
            f"Transaction received: {decoded.signature[:16]}... slot={decoded.slot} "
            f"ok={decoded.success} ixs={len(decoded.instructions)} transfers={transfers}"
        )
        return decoded
