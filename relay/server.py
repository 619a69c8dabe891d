"""
Downstream WebSocket server (aiohttp).

Client → relay:  {"type": "subscribe", "tokens": [{"mint": .., "creator": ..}]}
Relay  → client: upstream frames as JSON, in arrival order, no envelope.

Malformed messages are logged and dropped; the connection stays open and no
error frame is sent back.
"""
import json
import logging

import aiohttp
from aiohttp import web

from relay.errors import MalformedDownstreamMessage, UpstreamStreamError
from relay.subscriptions import TokenWatch

logger = logging.getLogger("ws_server")

HEARTBEAT = 30  # seconds, WebSocket-level ping to consumers


def parse_message(data: str | bytes) -> dict:
    if isinstance(data, bytes):
        try:
            data = data.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedDownstreamMessage(f"not UTF-8: {e}") from e
    try:
        message = json.loads(data)
    except json.JSONDecodeError as e:
        raise MalformedDownstreamMessage(f"invalid JSON: {e}") from e
    if not isinstance(message, dict):
        raise MalformedDownstreamMessage("message must be a JSON object")
    if "type" not in message:
        raise MalformedDownstreamMessage("missing 'type'")
    return message


def parse_token_watches(message: dict) -> list[TokenWatch]:
    tokens = message.get("tokens")
    if not isinstance(tokens, list):
        raise MalformedDownstreamMessage("'tokens' must be a list")
    watches = []
    for i, token in enumerate(tokens):
        if not isinstance(token, dict):
            raise MalformedDownstreamMessage(f"tokens[{i}] must be an object")
        mint = token.get("mint")
        creator = token.get("creator")
        if not isinstance(mint, str) or not isinstance(creator, str):
            raise MalformedDownstreamMessage(f"tokens[{i}] needs string 'mint' and 'creator'")
        watches.append(TokenWatch(mint=mint, creator=creator))
    return watches


class RelayServer:
    """Accepts consumer sockets, registers them with the fanout, handles subscribes."""

    def __init__(self, controller, fanout, host: str = "0.0.0.0", port: int = 8080):
        self.controller = controller
        self.fanout = fanout
        self.host = host
        self.port = port
        self._runner: web.AppRunner | None = None
        # Stats
        self.messages_received: int = 0
        self.messages_rejected: int = 0

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/", self.handle_ws)
        return app

    async def start(self):
        logger.info(f"Starting WebSocket server on port {self.port}")
        self._runner = web.AppRunner(self.build_app())
        await self._runner.setup()
        site = web.TCPSite(self._runner, self.host, self.port)
        await site.start()
        logger.info(f"WebSocket server started on {self.host}:{self.port}")

    async def stop(self):
        await self.fanout.close_all()
        if self._runner is not None:
            await self._runner.cleanup()
            self._runner = None
        logger.info("WebSocket server stopped")

    async def handle_ws(self, request: web.Request) -> web.WebSocketResponse:
        ws = web.WebSocketResponse(heartbeat=HEARTBEAT)
        await ws.prepare(request)
        consumer = self.fanout.register(ws)
        logger.info(f"[{consumer.name}] connected from {request.remote}")

        try:
            async for msg in ws:
                if msg.type in (aiohttp.WSMsgType.TEXT, aiohttp.WSMsgType.BINARY):
                    await self.handle_message(msg.data, consumer.name)
                elif msg.type == aiohttp.WSMsgType.ERROR:
                    logger.warning(f"[{consumer.name}] socket error: {ws.exception()}")
        finally:
            await self.fanout.unregister(ws)
            logger.info(f"[{consumer.name}] disconnected")
        return ws

    async def handle_message(self, data, source: str = "consumer"):
        self.messages_received += 1
        try:
            message = parse_message(data)
            if message["type"] != "subscribe":
                logger.info(f"[{source}] Received unknown message type: {message['type']}")
                return
            watches = parse_token_watches(message)
        except MalformedDownstreamMessage as e:
            self.messages_rejected += 1
            logger.error(f"[{source}] Error parsing message: {e}")
            return

        logger.info(f"[{source}] Received subscription request for {len(watches)} token(s)")
        try:
            await self.controller.apply(watches)
        except UpstreamStreamError as e:
            logger.error(f"[{source}] Subscription update failed: {e}")
