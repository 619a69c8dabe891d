"""
Tests for the subscription registry, fanout, upstream controller and the
downstream message handling — plus the two-consumer end-to-end scenario.
Run: python3 test_relay.py
"""
import asyncio
import json
import sys

from aiohttp import test_utils as aiohttp_test_utils

# Ensure project root is on path
sys.path.insert(0, ".")

from relay.errors import MalformedDownstreamMessage, UpstreamStreamError
from relay.fanout import Fanout, Readiness
from relay.frames import SlotUpdate, serialize
from relay.server import RelayServer, parse_message, parse_token_watches
from relay.subscriptions import (
    SubscriptionRegistry,
    TokenWatch,
    empty_request,
    ping_request,
)
from relay.upstream import StreamState, UpstreamController


# ══════════════════════════════════════════════════════════════
#  FAKES
# ══════════════════════════════════════════════════════════════


class FakeCall:
    """Stands in for a grpc.aio stream-stream call."""

    def __init__(self, fail_writes: bool = False):
        self.writes: list = []
        self.fail_writes = fail_writes
        self.cancelled = False
        self._updates: asyncio.Queue = asyncio.Queue()

    async def write(self, request):
        if self.fail_writes:
            raise ConnectionError("stream reset")
        self.writes.append(request)

    def push(self, update):
        self._updates.put_nowait(update)

    def end(self):
        self._updates.put_nowait(None)

    def __aiter__(self):
        return self

    async def __anext__(self):
        update = await self._updates.get()
        if update is None:
            raise StopAsyncIteration
        return update

    def cancel(self):
        self.cancelled = True


class FakeStub:
    def __init__(self, **call_kwargs):
        self.call = FakeCall(**call_kwargs)
        self.subscribe_calls = 0

    def Subscribe(self, metadata=None):
        self.subscribe_calls += 1
        return self.call


class FakeWebSocket:
    def __init__(self, prepared: bool = True, closed: bool = False, fail: bool = False):
        self.prepared = prepared
        self.closed = closed
        self.fail = fail
        self.sent: list[str] = []

    async def send_str(self, text: str):
        if self.fail:
            raise ConnectionResetError("peer gone")
        self.sent.append(text)

    async def close(self):
        self.closed = True


def identity(value):
    return value


def make_controller(stub=None, fanout=None, forward_decoded=False):
    return UpstreamController(
        registry=SubscriptionRegistry(),
        fanout=fanout or Fanout(),
        stub=stub or FakeStub(),
        ping_interval=3600,
        forward_decoded=forward_decoded,
        request_encoder=identity,
        update_decoder=identity,
    )


def slot_update(n: int) -> dict:
    return {"filters": ["slots"], "slot": {"slot": n, "parent": n - 1, "status": "SLOT_CONFIRMED"}}


async def drain(fanout: Fanout):
    for consumer in fanout.consumers:
        await consumer.flush(timeout=1)


passed = 0
failed = 0


def run(coro):
    return asyncio.run(coro)


def run_test(name, func):
    global passed, failed
    try:
        func()
        print(f"  PASS  {name}")
        passed += 1
    except Exception as e:
        print(f"  FAIL  {name}: {e}")
        failed += 1


# ══════════════════════════════════════════════════════════════
#  SUBSCRIPTION REGISTRY
# ══════════════════════════════════════════════════════════════


def test_registry_labels_in_order():
    registry = SubscriptionRegistry()
    watches = [TokenWatch(f"M{i}", f"C{i}") for i in range(3)]
    subscription = registry.replace(watches)
    assert subscription.labels == ["token_0", "token_1", "token_2"]
    assert subscription.accounts["token_1"] == ["M1", "C1"]
    assert registry.current is subscription


def test_registry_request_shape():
    registry = SubscriptionRegistry()
    watches = [TokenWatch("M1", "C1"), TokenWatch("M2", "C2")]
    request = registry.replace(watches).to_request()
    assert len(request["accounts"]) == 2
    assert request["accounts"]["token_0"] == {"account": ["M1", "C1"], "owner": [], "filters": []}
    assert list(request["transactions"]) == ["token_txs"]
    tx_filter = request["transactions"]["token_txs"]
    assert tx_filter["accountInclude"] == ["M1", "C1", "M2", "C2"]
    assert tx_filter["vote"] is False
    assert tx_filter["failed"] is False
    assert tx_filter["accountExclude"] == [] and tx_filter["accountRequired"] == []
    assert request["commitment"] == "CONFIRMED"


def test_registry_duplicates_preserved():
    registry = SubscriptionRegistry()
    subscription = registry.replace([TokenWatch("X", "X"), TokenWatch("X", "Y")])
    assert subscription.to_request()["transactions"]["token_txs"]["accountInclude"] == ["X", "X", "X", "Y"]


def test_registry_replace_is_total():
    registry = SubscriptionRegistry()
    registry.replace([TokenWatch("A", "B"), TokenWatch("C", "D")])
    second = registry.replace([TokenWatch("E", "F")])
    assert second.labels == ["token_0"]
    assert second.addresses == ["E", "F"]
    assert second.generation == 2


def test_registry_empty_set():
    request = SubscriptionRegistry().replace([]).to_request()
    assert request["accounts"] == {}
    assert list(request["transactions"]) == ["token_txs"]
    assert request["transactions"]["token_txs"]["accountInclude"] == []


def test_registry_one_tx_filter_for_any_size():
    registry = SubscriptionRegistry()
    for k in range(4):
        request = registry.replace([TokenWatch(f"M{i}", f"C{i}") for i in range(k)]).to_request()
        assert len(request["accounts"]) == k
        assert len(request["transactions"]) == 1


def test_registry_prepare_does_not_commit():
    registry = SubscriptionRegistry()
    first = registry.replace([TokenWatch("A", "B")])
    pending = registry.prepare([TokenWatch("C", "D")])
    assert registry.current is first
    assert pending.generation == 2
    registry.commit(pending)
    assert registry.current is pending


def test_ping_request_keeps_filter():
    base = SubscriptionRegistry().replace([TokenWatch("M", "C")]).to_request()
    request = ping_request(77, base)
    assert request["ping"] == {"id": 77}
    assert request["accounts"] == base["accounts"]
    assert "ping" not in base
    assert ping_request(1)["accounts"] == {}


# ══════════════════════════════════════════════════════════════
#  FANOUT
# ══════════════════════════════════════════════════════════════


def test_fanout_only_open_consumers():
    async def scenario():
        fanout = Fanout()
        open_ws = FakeWebSocket()
        closed_ws = FakeWebSocket(closed=True)
        connecting_ws = FakeWebSocket(prepared=False)
        for ws in (open_ws, closed_ws, connecting_ws):
            fanout.register(ws)

        frame = SlotUpdate(slot=5, parent=4, status="SLOT_CONFIRMED", raw=slot_update(5))
        delivered = fanout.broadcast(frame)
        await drain(fanout)

        assert delivered == 1
        assert open_ws.sent == [serialize(slot_update(5))]
        assert closed_ws.sent == [] and connecting_ws.sent == []
        await fanout.close_all()

    run(scenario())


def test_fanout_readiness():
    async def scenario():
        fanout = Fanout()
        consumer = fanout.register(FakeWebSocket(prepared=False))
        assert consumer.readiness is Readiness.CONNECTING
        consumer.ws.prepared = True
        assert consumer.readiness is Readiness.OPEN
        consumer.ws.closed = True
        assert consumer.readiness is Readiness.CLOSED
        await fanout.close_all()

    run(scenario())


def test_fanout_closed_before_broadcast():
    async def scenario():
        fanout = Fanout()
        ws = FakeWebSocket()
        fanout.register(ws)
        ws.closed = True
        frame = SlotUpdate(slot=1, parent=None, status="SLOT_PROCESSED", raw=slot_update(1))
        assert fanout.broadcast(frame) == 0
        await drain(fanout)
        assert ws.sent == []
        await fanout.close_all()

    run(scenario())


def test_fanout_write_failure_isolated():
    async def scenario():
        fanout = Fanout()
        bad = FakeWebSocket(fail=True)
        good = FakeWebSocket()
        bad_consumer = fanout.register(bad)
        fanout.register(good)

        for n in (1, 2):
            fanout.broadcast(SlotUpdate(slot=n, parent=None, status="SLOT_PROCESSED", raw=slot_update(n)))
        await drain(fanout)

        assert len(good.sent) == 2
        assert bad_consumer.failed == 2
        await fanout.close_all()

    run(scenario())


def test_fanout_queue_full_drops():
    async def scenario():
        fanout = Fanout(queue_size=1)
        ws = FakeWebSocket()
        consumer = fanout.register(ws)
        frame = SlotUpdate(slot=1, parent=None, status="SLOT_PROCESSED", raw=slot_update(1))
        # No await between broadcasts: the writer task cannot drain yet
        results = [fanout.broadcast(frame) for _ in range(3)]
        assert results == [1, 0, 0]
        assert consumer.dropped == 2
        await drain(fanout)
        assert len(ws.sent) == 1
        await fanout.close_all()

    run(scenario())


def test_fanout_close_all_releases_sockets():
    async def scenario():
        fanout = Fanout()
        sockets = [FakeWebSocket(), FakeWebSocket()]
        for ws in sockets:
            fanout.register(ws)
        fanout.broadcast(SlotUpdate(slot=1, parent=None, status="SLOT_PROCESSED", raw=slot_update(1)))
        await fanout.close_all()
        assert all(ws.closed for ws in sockets)
        assert all(len(ws.sent) == 1 for ws in sockets), "queued writes are flushed before close"
        assert fanout.active_count == 0

    run(scenario())


# ══════════════════════════════════════════════════════════════
#  UPSTREAM CONTROLLER
# ══════════════════════════════════════════════════════════════


def test_controller_unsubscribe_then_subscribe():
    async def scenario():
        stub = FakeStub()
        controller = make_controller(stub)
        assert controller.state is StreamState.IDLE
        await controller.open()
        await controller.apply([TokenWatch("M1", "C1")])

        writes = stub.call.writes
        assert len(writes) == 2
        assert writes[0] == empty_request()
        assert writes[1]["accounts"]["token_0"]["account"] == ["M1", "C1"]
        assert controller.state is StreamState.STREAMING
        await controller.close()

    run(scenario())


def test_controller_resubscribe_reuses_stream():
    async def scenario():
        stub = FakeStub()
        controller = make_controller(stub)
        await controller.open()
        await controller.apply([TokenWatch("M1", "C1")])
        await controller.apply([TokenWatch("M2", "C2"), TokenWatch("M3", "C3")])

        writes = stub.call.writes
        assert len(writes) == 4
        assert writes[2] == empty_request()
        assert list(writes[3]["accounts"]) == ["token_0", "token_1"]
        assert writes[3]["transactions"]["token_txs"]["accountInclude"] == ["M2", "C2", "M3", "C3"]
        assert stub.subscribe_calls == 1, "one long-lived stream for every write"
        await controller.close()

    run(scenario())


def test_controller_applies_serialized():
    async def scenario():
        stub = FakeStub()
        controller = make_controller(stub)
        await controller.open()
        await asyncio.gather(
            controller.apply([TokenWatch("A", "A")]),
            controller.apply([TokenWatch("B", "B")]),
        )
        writes = stub.call.writes
        # clear, A, clear, B (not clear, clear, A, B)
        assert writes[0] == empty_request() and writes[2] == empty_request()
        assert writes[1]["accounts"]["token_0"]["account"] == ["A", "A"]
        assert writes[3]["accounts"]["token_0"]["account"] == ["B", "B"]
        await controller.close()

    run(scenario())


def test_controller_apply_without_stream():
    async def scenario():
        controller = make_controller()
        try:
            await controller.apply([TokenWatch("M", "C")])
        except UpstreamStreamError:
            return
        raise AssertionError("apply before open() must fail")

    run(scenario())


def test_controller_write_failure():
    async def scenario():
        controller = make_controller(FakeStub(fail_writes=True))
        await controller.open()
        try:
            await controller.apply([TokenWatch("M", "C")])
        except UpstreamStreamError:
            assert controller.state is StreamState.IDLE
        else:
            raise AssertionError("write failure must surface as UpstreamStreamError")
        finally:
            await controller.close()

    run(scenario())


def test_controller_pong_consumed():
    async def scenario():
        fanout = Fanout()
        ws = FakeWebSocket()
        fanout.register(ws)
        stub = FakeStub()
        controller = make_controller(stub, fanout)
        await controller.open()

        stub.call.push({"pong": {"id": 99}})
        stub.call.push({"ping": {}})
        stub.call.push(slot_update(10))
        stub.call.end()
        try:
            await controller.run()
        except UpstreamStreamError:
            pass
        await drain(fanout)

        assert controller.last_pong_id == 99
        assert [json.loads(t) for t in ws.sent] == [slot_update(10)]
        await controller.close()
        await fanout.close_all()

    run(scenario())


def test_controller_stream_end_reported():
    async def scenario():
        stub = FakeStub()
        controller = make_controller(stub)
        await controller.open()
        await controller.apply([TokenWatch("M", "C")])
        stub.call.end()
        try:
            await controller.run()
        except UpstreamStreamError:
            assert controller.state is StreamState.IDLE
        else:
            raise AssertionError("stream end must be reported")
        await controller.close()

    run(scenario())


def test_controller_malformed_frame_dropped():
    async def scenario():
        fanout = Fanout()
        ws = FakeWebSocket()
        fanout.register(ws)
        controller = make_controller(fanout=fanout)
        bad_account = {"account": {"account": {"pubkey": b"\x01" * 5, "owner": bytes(32)}, "slot": 3}}
        controller.handle_update(bad_account)
        controller.handle_update(slot_update(4))
        await drain(fanout)
        assert controller.frames_dropped == 1
        assert len(ws.sent) == 1
        await fanout.close_all()

    run(scenario())


def test_controller_frame_error_keeps_stream_alive():
    async def scenario():
        fanout = Fanout()
        ws = FakeWebSocket()
        fanout.register(ws)
        stub = FakeStub()

        def decoder(update):
            if update == "broken":
                raise AttributeError("field descriptor has no attribute")
            return update

        controller = UpstreamController(
            registry=SubscriptionRegistry(),
            fanout=fanout,
            stub=stub,
            ping_interval=3600,
            request_encoder=identity,
            update_decoder=decoder,
        )
        await controller.open()
        stub.call.push("broken")
        stub.call.push({"account": {"account": {"pubkey": 12345}, "slot": 1}})
        stub.call.push({"account": {"account": {"pubkey": [300] * 32}, "slot": 1}})
        stub.call.push(slot_update(5))
        await asyncio.sleep(0.05)

        assert not controller._reader.done()
        assert controller.frames_dropped == 3
        await drain(fanout)
        assert [json.loads(t) for t in ws.sent] == [slot_update(5)]
        await controller.close()
        await fanout.close_all()

    run(scenario())


def test_controller_write_failure_keeps_registry():
    async def scenario():
        stub = FakeStub()
        controller = make_controller(stub)
        await controller.open()
        first = await controller.apply([TokenWatch("M1", "C1")])

        stub.call.fail_writes = True
        try:
            await controller.apply([TokenWatch("M2", "C2")])
        except UpstreamStreamError:
            pass
        else:
            raise AssertionError("write failure must surface as UpstreamStreamError")
        assert controller.registry.current is first
        assert controller.registry.current.addresses == ["M1", "C1"]
        await controller.close()

    run(scenario())


def test_controller_undecodable_transaction_still_forwarded():
    async def scenario():
        fanout = Fanout()
        ws = FakeWebSocket()
        fanout.register(ws)
        controller = make_controller(fanout=fanout)
        update = {"transaction": {"slot": 8, "transaction": {
            "signature": bytes(64),
            "transaction": {"message": {"accountKeys": [bytes(31)]}},
        }}}
        controller.handle_update(update)
        await drain(fanout)
        assert len(ws.sent) == 1
        await fanout.close_all()

    run(scenario())


def test_controller_forward_decoded():
    async def scenario():
        fanout = Fanout()
        ws = FakeWebSocket()
        fanout.register(ws)
        controller = make_controller(fanout=fanout, forward_decoded=True)
        update = {"transaction": {"slot": 8, "transaction": {
            "signature": bytes(64),
            "transaction": {"message": {"accountKeys": [bytes(32)], "instructions": [
                {"data": bytes([2, 0, 0, 0]) + (7).to_bytes(8, "little")},
            ]}},
        }}}
        controller.handle_update(update)
        await drain(fanout)
        message = json.loads(ws.sent[0])
        assert message["decoded"]["instructions"][0]["classification"] == "SolTransfer"
        assert message["decoded"]["instructions"][0]["amount"] == 7
        assert message["transaction"]["slot"] == 8
        await fanout.close_all()

    run(scenario())


def test_controller_ping_ids_increase():
    async def scenario():
        stub = FakeStub()
        controller = make_controller(stub)
        await controller.open()
        await controller.apply([TokenWatch("M", "C")])
        first = await controller.send_ping()
        second = await controller.send_ping()
        assert second > first
        ping = stub.call.writes[-1]
        assert ping["ping"] == {"id": second}
        assert ping["accounts"]["token_0"]["account"] == ["M", "C"], "ping keeps the filter in effect"
        await controller.close()

    run(scenario())


# ══════════════════════════════════════════════════════════════
#  DOWNSTREAM MESSAGES
# ══════════════════════════════════════════════════════════════


class RecordingController:
    def __init__(self):
        self.applied: list = []

    async def apply(self, watches):
        self.applied.append(watches)


def test_parse_subscribe_message():
    message = parse_message('{"type": "subscribe", "tokens": [{"mint": "M", "creator": "C"}]}')
    assert parse_token_watches(message) == [TokenWatch("M", "C")]


def test_parse_malformed_messages():
    for raw in ("not json", "[1, 2]", '{"tokens": []}', b"\xff\xfe"):
        try:
            parse_message(raw)
        except MalformedDownstreamMessage:
            continue
        raise AssertionError(f"{raw!r} should be malformed")
    for message in ({"type": "subscribe"}, {"type": "subscribe", "tokens": [{"mint": "M"}]}):
        try:
            parse_token_watches(message)
        except MalformedDownstreamMessage:
            continue
        raise AssertionError(f"{message!r} should be malformed")


def test_server_ignores_unknown_and_malformed():
    async def scenario():
        controller = RecordingController()
        server = RelayServer(controller, Fanout())
        await server.handle_message('{"type": "unsubscribe"}')
        await server.handle_message("{{{")
        await server.handle_message('{"type": "subscribe", "tokens": "nope"}')
        assert controller.applied == []
        assert server.messages_rejected == 2
        await server.handle_message('{"type": "subscribe", "tokens": [{"mint": "M", "creator": "C"}]}')
        assert controller.applied == [[TokenWatch("M", "C")]]

    run(scenario())


def test_server_websocket_round_trip():
    async def scenario():
        fanout = Fanout()
        controller = RecordingController()
        server = RelayServer(controller, fanout)
        async with aiohttp_test_utils.TestClient(aiohttp_test_utils.TestServer(server.build_app())) as client:
            ws = await client.ws_connect("/")
            await ws.send_str(json.dumps({"type": "subscribe", "tokens": [{"mint": "M", "creator": "C"}]}))
            for _ in range(100):
                if controller.applied:
                    break
                await asyncio.sleep(0.01)
            assert controller.applied == [[TokenWatch("M", "C")]]
            assert fanout.active_count == 1

            fanout.broadcast(SlotUpdate(slot=3, parent=2, status="SLOT_CONFIRMED", raw=slot_update(3)))
            assert await ws.receive_json(timeout=2) == slot_update(3)
            await ws.close()
        await fanout.close_all()

    run(scenario())


# ══════════════════════════════════════════════════════════════
#  END TO END
# ══════════════════════════════════════════════════════════════


def test_two_consumers_end_to_end():
    async def scenario():
        fanout = Fanout()
        stub = FakeStub()
        controller = make_controller(stub, fanout)
        server = RelayServer(controller, fanout)
        await controller.open()

        ws_a, ws_b = FakeWebSocket(), FakeWebSocket()
        fanout.register(ws_a)
        fanout.register(ws_b)

        await server.handle_message(json.dumps({
            "type": "subscribe",
            "tokens": [{"mint": "M1", "creator": "C1"}],
        }))
        request = stub.call.writes[1]
        assert request["accounts"]["token_0"]["account"] == ["M1", "C1"]
        assert request["transactions"]["token_txs"]["accountInclude"] == ["M1", "C1"]

        emitted = [slot_update(n) for n in range(100, 105)]
        for update in emitted:
            stub.call.push(update)
        stub.call.end()
        try:
            await controller.run()
        except UpstreamStreamError:
            pass
        await drain(fanout)

        for ws in (ws_a, ws_b):
            assert [json.loads(t) for t in ws.sent] == emitted, "every frame, in emitted order"
        await controller.close()
        await fanout.close_all()

    run(scenario())


# ══════════════════════════════════════════════════════════════
#  RUN ALL TESTS
# ══════════════════════════════════════════════════════════════

if __name__ == "__main__":
    print("\n── Subscription Registry Tests ──")
    run_test("registry_labels_in_order", test_registry_labels_in_order)
    run_test("registry_request_shape", test_registry_request_shape)
    run_test("registry_duplicates_preserved", test_registry_duplicates_preserved)
    run_test("registry_replace_is_total", test_registry_replace_is_total)
    run_test("registry_empty_set", test_registry_empty_set)
    run_test("registry_one_tx_filter_for_any_size", test_registry_one_tx_filter_for_any_size)
    run_test("registry_prepare_does_not_commit", test_registry_prepare_does_not_commit)
    run_test("ping_request_keeps_filter", test_ping_request_keeps_filter)

    print("\n── Fanout Tests ──")
    run_test("fanout_only_open_consumers", test_fanout_only_open_consumers)
    run_test("fanout_readiness", test_fanout_readiness)
    run_test("fanout_closed_before_broadcast", test_fanout_closed_before_broadcast)
    run_test("fanout_write_failure_isolated", test_fanout_write_failure_isolated)
    run_test("fanout_queue_full_drops", test_fanout_queue_full_drops)
    run_test("fanout_close_all_releases_sockets", test_fanout_close_all_releases_sockets)

    print("\n── Upstream Controller Tests ──")
    run_test("controller_unsubscribe_then_subscribe", test_controller_unsubscribe_then_subscribe)
    run_test("controller_resubscribe_reuses_stream", test_controller_resubscribe_reuses_stream)
    run_test("controller_applies_serialized", test_controller_applies_serialized)
    run_test("controller_apply_without_stream", test_controller_apply_without_stream)
    run_test("controller_write_failure", test_controller_write_failure)
    run_test("controller_pong_consumed", test_controller_pong_consumed)
    run_test("controller_stream_end_reported", test_controller_stream_end_reported)
    run_test("controller_malformed_frame_dropped", test_controller_malformed_frame_dropped)
    run_test("controller_frame_error_keeps_stream_alive", test_controller_frame_error_keeps_stream_alive)
    run_test("controller_write_failure_keeps_registry", test_controller_write_failure_keeps_registry)
    run_test("controller_undecodable_transaction_still_forwarded",
             test_controller_undecodable_transaction_still_forwarded)
    run_test("controller_forward_decoded", test_controller_forward_decoded)
    run_test("controller_ping_ids_increase", test_controller_ping_ids_increase)

    print("\n── Downstream Message Tests ──")
    run_test("parse_subscribe_message", test_parse_subscribe_message)
    run_test("parse_malformed_messages", test_parse_malformed_messages)
    run_test("server_ignores_unknown_and_malformed", test_server_ignores_unknown_and_malformed)
    run_test("server_websocket_round_trip", test_server_websocket_round_trip)

    print("\n── End-to-End Tests ──")
    run_test("two_consumers_end_to_end", test_two_consumers_end_to_end)

    print(f"\n{'='*50}")
    print(f"Results: {passed} passed, {failed} failed out of {passed + failed}")
    if failed:
        sys.exit(1)
    else:
        print("All tests passed!")
