"""
Geyser Relay — Main Orchestrator.

Streams filtered Solana account / transaction / slot updates from one
Yellowstone gRPC source to any number of WebSocket consumers. Consumers
pick the watched tokens at runtime with a subscribe message.

Usage:
    python main.py                      # reads .env
    LOG_LEVEL=DEBUG python main.py      # per-frame logging
"""
import asyncio
import logging
import signal as signal_module
import sys

import config
from relay.errors import ConnectionSetupFailure
from relay.fanout import Fanout
from relay.server import RelayServer
from relay.subscriptions import SubscriptionRegistry
from relay.upstream import UpstreamController

# ── Logging ──
logging.basicConfig(
    level=getattr(logging, config.LOG_LEVEL, logging.INFO),
    format="%(asctime)s | %(name)-14s | %(levelname)-5s | %(message)s",
    datefmt="%H:%M:%S",
    stream=sys.stdout,
)
logger = logging.getLogger("main")
logging.getLogger("grpc").setLevel(logging.WARNING)
logging.getLogger("aiohttp.access").setLevel(logging.WARNING)
logging.getLogger("asyncio").setLevel(logging.WARNING)


class GeyserRelay:
    """Main application — wires registry, upstream, fanout and server together."""

    def __init__(self):
        self.registry = SubscriptionRegistry()
        self.fanout = Fanout(queue_size=config.CONSUMER_QUEUE_SIZE)
        self.upstream = UpstreamController(
            registry=self.registry,
            fanout=self.fanout,
            endpoint=config.YELLOWSTONE_ENDPOINT,
            token=config.YELLOWSTONE_TOKEN or None,
            commitment=config.COMMITMENT,
            ping_interval=config.PING_INTERVAL_SECONDS,
            forward_decoded=config.FORWARD_DECODED,
        )
        self.server = RelayServer(
            controller=self.upstream,
            fanout=self.fanout,
            host=config.WEBSOCKET_HOST,
            port=config.WEBSOCKET_PORT,
        )
        self._stop_event = asyncio.Event()

    async def start(self) -> int:
        logger.info("=" * 60)
        logger.info("  GEYSER RELAY")
        logger.info(f"  Upstream:   {config.YELLOWSTONE_ENDPOINT}")
        logger.info(f"  Commitment: {config.COMMITMENT}")
        logger.info(f"  WebSocket:  {config.WEBSOCKET_HOST}:{config.WEBSOCKET_PORT}")
        logger.info(f"  Decoded:    {'forwarded' if config.FORWARD_DECODED else 'local only'}")
        logger.info("=" * 60)

        # Test gRPC connection before accepting consumers
        try:
            await self.upstream.connect()
        except ConnectionSetupFailure as e:
            logger.error(str(e))
            logger.error("Check YELLOWSTONE_ENDPOINT and YELLOWSTONE_TOKEN in .env")
            logger.error("Server startup aborted due to gRPC connection failure")
            await self.upstream.close()
            return 1

        await self.upstream.open()
        await self.server.start()
        logger.info("Relay is ready to accept connections")

        shutdown = asyncio.create_task(self._stop_event.wait(), name="shutdown")
        tasks = [
            asyncio.create_task(self.upstream.run(), name="upstream"),
            asyncio.create_task(self._stats_loop(), name="stats"),
            shutdown,
        ]

        done, pending = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        exit_code = 0
        for task in done:
            if task is shutdown or task.cancelled():
                continue
            if task.exception():
                logger.error(f"Task {task.get_name()} crashed: {task.exception()}")
                exit_code = 1
        for task in pending:
            task.cancel()

        await self.stop()
        return exit_code

    def request_stop(self):
        self._stop_event.set()

    async def stop(self):
        logger.info("Shutting down...")
        await self.server.stop()
        await self.upstream.close()
        logger.info("Goodbye.")

    async def _stats_loop(self):
        while True:
            await asyncio.sleep(config.STATS_INTERVAL_SECONDS)
            up = self.upstream
            dropped = sum(c.dropped for c in self.fanout.consumers)
            logger.info(
                f"[stats] state={up.state.value} consumers={self.fanout.active_count} "
                f"received={up.frames_received} broadcast={self.fanout.frames_broadcast} "
                f"deliveries={self.fanout.deliveries} malformed={up.frames_dropped} "
                f"queue_drops={dropped} last_pong={up.last_pong_id}"
            )
            if up.frames_by_kind:
                logger.info(f"[stats] by kind: {up.frames_by_kind}")


async def main() -> int:
    relay = GeyserRelay()
    loop = asyncio.get_running_loop()
    for sig in (signal_module.SIGINT, signal_module.SIGTERM):
        loop.add_signal_handler(sig, relay.request_stop)
    return await relay.start()


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
