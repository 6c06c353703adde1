"""
Tests for the streaming session and reconnect supervisor
"""
import asyncio

import pytest

from binance_connect.errors import (
    ErrorKind,
    NotConnectedError,
    RequestCancelledError,
    RequestTimeoutError,
    SessionTerminatedError,
    StreamRequestError,
)
from binance_connect.ws.messages import ControlMethod, StreamError, StreamEvent
from binance_connect.ws.session import StreamingSession
from helpers import next_item, wait_until

URL = "wss://stream.binance.com:9443/stream"
STREAMS = ["btcusdt@aggTrade", "ethusdt@trade", "bnbusdt@kline_1m"]


def trade_frame(stream: str, price: str = "1.0") -> dict:
    symbol = stream.split("@", 1)[0].upper()
    return {"stream": stream, "data": {"e": "trade", "E": 1, "s": symbol, "p": price}}


@pytest.fixture
def make_session(clock, ws_transport):
    sessions = []

    def factory(**kwargs):
        options = {
            "clock": clock,
            "reconnect_initial_delay": 1.0,
            "reconnect_jitter": 0.0,
            "sweep_interval": None,
            "request_timeout": 1.0,
        }
        options.update(kwargs)
        session = StreamingSession(URL, ws_transport, **options)
        sessions.append(session)
        return session

    yield factory


async def ready_session(factory, **kwargs):
    session = factory(**kwargs)
    await session.start()
    await session.wait_ready(timeout=2.0)
    return session


class TestSubscribe:
    """Test subscribe/unsubscribe"""

    @pytest.mark.asyncio
    async def test_subscribe_sends_command_and_waits_for_ack(self, make_session, ws_transport):
        session = await ready_session(make_session)

        await session.subscribe("btcusdt@aggTrade")

        conn = ws_transport.latest
        assert conn.commands("SUBSCRIBE") == [
            {"method": "SUBSCRIBE", "params": ["btcusdt@aggTrade"], "id": 1}
        ]
        assert "btcusdt@aggTrade" in session.supervisor.confirmed
        await session.close()

    @pytest.mark.asyncio
    async def test_subscribe_twice_sends_once(self, make_session, ws_transport):
        session = await ready_session(make_session)

        await session.subscribe("btcusdt@aggTrade")
        await session.subscribe("btcusdt@aggTrade")

        assert len(ws_transport.latest.commands("SUBSCRIBE")) == 1
        assert session.subscriptions() == {"btcusdt@aggTrade"}
        await session.close()

    @pytest.mark.asyncio
    async def test_concurrent_subscribes_share_one_command(self, make_session, ws_transport):
        ws_transport.auto_ack = False
        session = await ready_session(make_session)
        conn = ws_transport.latest

        tasks = [asyncio.create_task(session.subscribe("btcusdt@aggTrade")) for _ in range(3)]
        await wait_until(lambda: len(conn.commands("SUBSCRIBE")) == 1)
        await asyncio.sleep(0.01)
        conn.respond(conn.commands("SUBSCRIBE")[0])
        await asyncio.gather(*tasks)

        assert len(conn.commands("SUBSCRIBE")) == 1
        await session.close()

    @pytest.mark.asyncio
    async def test_subscribe_before_ready_is_replayed(self, make_session, ws_transport):
        session = make_session()

        await session.subscribe("btcusdt@aggTrade")
        await session.start()
        await session.wait_ready(timeout=2.0)

        assert ws_transport.latest.subscribed_streams() == ["btcusdt@aggTrade"]
        await session.close()

    @pytest.mark.asyncio
    async def test_rejected_subscribe(self, make_session, ws_transport):
        session = await ready_session(make_session)
        ws_transport.latest.rejected["bad@stream"] = (2, "Invalid request: unknown stream")

        with pytest.raises(StreamRequestError):
            await session.subscribe("bad@stream")

        assert "bad@stream" not in session.subscriptions()
        await session.close()

    @pytest.mark.asyncio
    async def test_unsubscribe(self, make_session, ws_transport):
        session = await ready_session(make_session)
        await session.subscribe("btcusdt@aggTrade")

        await session.unsubscribe("btcusdt@aggTrade")
        await session.unsubscribe("btcusdt@aggTrade")

        conn = ws_transport.latest
        assert len(conn.commands("UNSUBSCRIBE")) == 1
        assert conn.server_subscriptions == set()
        assert session.registry.state_of("btcusdt@aggTrade") is None
        await session.close()


class TestControlRequests:
    """Test control requests and correlation"""

    @pytest.mark.asyncio
    async def test_list_subscriptions(self, make_session):
        session = await ready_session(make_session)
        for stream in STREAMS:
            await session.subscribe(stream)

        assert await session.list_subscriptions() == sorted(STREAMS)
        await session.close()

    @pytest.mark.asyncio
    async def test_properties(self, make_session):
        session = await ready_session(make_session)

        await session.set_property("combined", False)

        assert await session.get_property("combined") is False
        await session.close()

    @pytest.mark.asyncio
    async def test_request_timeout_leaves_no_pending_entry(self, make_session, ws_transport):
        ws_transport.auto_ack = False
        session = await ready_session(make_session)

        with pytest.raises(RequestTimeoutError):
            await session.request(ControlMethod.LIST_SUBSCRIPTIONS, timeout=0.05)

        assert len(session.pending) == 0
        await session.close()

    @pytest.mark.asyncio
    async def test_late_response_reported_as_unexpected(self, make_session, ws_transport):
        ws_transport.auto_ack = False
        session = await ready_session(make_session)
        conn = ws_transport.latest

        with pytest.raises(RequestTimeoutError):
            await session.request(ControlMethod.LIST_SUBSCRIPTIONS, timeout=0.05)
        conn.respond(conn.commands("LIST_SUBSCRIPTIONS")[0])

        item = await next_item(session.events())
        assert isinstance(item, StreamError)
        assert item.error_type == "UnexpectedResponseError"
        assert not item.fatal
        await session.close()

    @pytest.mark.asyncio
    async def test_pending_request_cancelled_on_disconnect(self, make_session, ws_transport):
        ws_transport.auto_ack = False
        session = await ready_session(make_session)

        request = asyncio.create_task(session.request(ControlMethod.LIST_SUBSCRIPTIONS))
        await wait_until(lambda: len(session.pending) == 1)
        ws_transport.latest.drop()

        with pytest.raises(RequestCancelledError):
            await request
        await session.close()

    @pytest.mark.asyncio
    async def test_request_while_disconnected(self, make_session):
        session = make_session()

        with pytest.raises(NotConnectedError):
            await session.request(ControlMethod.LIST_SUBSCRIPTIONS)
        await session.close()


class TestEvents:
    """Test the event sequence"""

    @pytest.mark.asyncio
    async def test_events_in_receipt_order(self, make_session, ws_transport):
        session = await ready_session(make_session)
        for stream in STREAMS:
            await session.subscribe(stream)

        conn = ws_transport.latest
        for i, stream in enumerate(STREAMS * 2):
            conn.feed(trade_frame(stream, price=str(i)))

        events = session.events()
        received = [await next_item(events) for _ in range(6)]

        assert [e.stream for e in received] == STREAMS * 2
        assert [e.payload["p"] for e in received] == [str(i) for i in range(6)]
        assert all(e.connection_id == 1 for e in received)
        await session.close()

    @pytest.mark.asyncio
    async def test_malformed_frame_does_not_end_sequence(self, make_session, ws_transport):
        session = await ready_session(make_session)
        conn = ws_transport.latest
        conn.feed("{broken")
        conn.feed(trade_frame("btcusdt@trade"))

        events = session.events()
        first = await next_item(events)
        second = await next_item(events)

        assert isinstance(first, StreamError) and first.kind == ErrorKind.PROTOCOL
        assert isinstance(second, StreamEvent)
        await session.close()

    @pytest.mark.asyncio
    async def test_close_ends_sequence(self, make_session):
        session = await ready_session(make_session)
        events = session.events()

        await session.close()

        with pytest.raises(StopAsyncIteration):
            await next_item(events)
        with pytest.raises(SessionTerminatedError):
            await session.subscribe("btcusdt@trade")


class TestReconnect:
    """Test reconnect and replay"""

    @pytest.mark.asyncio
    async def test_drop_with_three_subscriptions(self, make_session, ws_transport):
        session = await ready_session(make_session)
        for stream in STREAMS:
            await session.subscribe(stream)
        first = ws_transport.latest
        events = session.events()

        first.drop()
        await wait_until(lambda: len(ws_transport.connections) == 2 and session.is_ready)

        second = ws_transport.latest
        subscribes = second.commands("SUBSCRIBE")
        assert len(subscribes) == 3
        assert sorted(second.subscribed_streams()) == sorted(STREAMS)
        assert all(len(command["params"]) == 1 for command in subscribes)

        loss = await next_item(events)
        assert isinstance(loss, StreamError)
        assert loss.kind == ErrorKind.TRANSPORT
        assert not loss.fatal

        await wait_until(lambda: session.supervisor.confirmed == set(STREAMS))
        second.feed(trade_frame("ethusdt@trade"))
        event = await next_item(events)
        assert isinstance(event, StreamEvent)
        assert event.stream == "ethusdt@trade"
        assert event.connection_id == 2
        await session.close()

    @pytest.mark.asyncio
    async def test_replay_completes_before_ready(self, make_session, ws_transport):
        session = await ready_session(make_session)
        for stream in STREAMS:
            await session.subscribe(stream)
        counts_at_ready = []
        mark_ready = session.supervisor.ready.set

        def recording_set():
            counts_at_ready.append(len(ws_transport.latest.commands("SUBSCRIBE")))
            mark_ready()

        session.supervisor.ready.set = recording_set
        ws_transport.latest.drop()
        await wait_until(lambda: len(ws_transport.connections) == 2 and session.is_ready)

        assert counts_at_ready == [3]
        await session.close()

    @pytest.mark.asyncio
    async def test_data_held_until_replay_sent(self, make_session, ws_transport):
        session = await ready_session(make_session)
        for stream in STREAMS:
            await session.subscribe(stream)
        events = session.events()
        subscribes_at_emit = []
        emit = session.supervisor.emit

        async def recording_emit(item):
            if isinstance(item, StreamEvent):
                subscribes_at_emit.append(len(ws_transport.latest.commands("SUBSCRIBE")))
            await emit(item)

        session.supervisor.emit = recording_emit
        ws_transport.send_delay = 0.01
        ws_transport.preload = [trade_frame("btcusdt@aggTrade")]
        ws_transport.latest.drop()

        loss = await next_item(events)
        event = await next_item(events)

        assert isinstance(loss, StreamError)
        assert isinstance(event, StreamEvent)
        assert event.connection_id == 2
        assert subscribes_at_emit == [3]
        await session.close()

    @pytest.mark.asyncio
    async def test_unsubscribe_during_replay_not_resubscribed(self, make_session, ws_transport):
        session = make_session()
        for stream in STREAMS + ["xrpusdt@trade"]:
            await session.subscribe(stream)
        ws_transport.send_delay = 0.02

        await session.start()
        await wait_until(lambda: bool(ws_transport.connections) and bool(ws_transport.latest.sent))
        await session.unsubscribe("xrpusdt@trade")
        await session.wait_ready(timeout=2.0)

        conn = ws_transport.latest
        assert "xrpusdt@trade" not in conn.subscribed_streams()
        assert conn.server_subscriptions == set(STREAMS)
        assert session.subscriptions() == set(STREAMS)
        await session.close()

    @pytest.mark.asyncio
    async def test_rejected_resubscribe_dropped(self, make_session, ws_transport):
        session = make_session()
        await session.subscribe("btcusdt@trade")
        await session.subscribe("invalid@stream")
        ws_transport.rejected = {"invalid@stream": (2, "Invalid request")}
        events = session.events()

        await session.start()
        error = await next_item(events)

        assert isinstance(error, StreamError)
        assert error.stream == "invalid@stream"
        assert error.kind == ErrorKind.REJECTED
        assert session.subscriptions() == {"btcusdt@trade"}
        await session.close()

    @pytest.mark.asyncio
    async def test_unsubscribe_while_disconnected_not_replayed(self, make_session, ws_transport):
        session = await ready_session(make_session)
        for stream in STREAMS:
            await session.subscribe(stream)
        ws_transport.always_fail = True
        ws_transport.latest.drop()
        await wait_until(lambda: not session.is_ready)

        await session.unsubscribe("ethusdt@trade")
        ws_transport.always_fail = False

        await wait_until(lambda: len(ws_transport.connections) == 2 and session.is_ready)
        assert sorted(ws_transport.latest.subscribed_streams()) == ["bnbusdt@kline_1m", "btcusdt@aggTrade"]
        await session.close()

    @pytest.mark.asyncio
    async def test_backoff_between_failed_connects(self, make_session, ws_transport, clock):
        ws_transport.fail_next = 2

        await ready_session(make_session)

        assert ws_transport.connect_attempts == 3
        assert clock.sleeps[:2] == [1.0, 2.0]

    @pytest.mark.asyncio
    async def test_repeated_drops_back_off(self, make_session, ws_transport, clock):
        session = await ready_session(make_session)

        for count in range(2, 6):
            ws_transport.latest.drop()
            await wait_until(lambda: len(ws_transport.connections) == count and session.is_ready)

        assert clock.sleeps == [1.0, 2.0, 4.0, 8.0]
        await session.close()

    @pytest.mark.asyncio
    async def test_stable_connection_resets_backoff(self, make_session, ws_transport, clock):
        session = await ready_session(make_session)
        ws_transport.latest.drop()
        await wait_until(lambda: len(ws_transport.connections) == 2 and session.is_ready)

        clock.advance(60)
        ws_transport.latest.drop()
        await wait_until(lambda: len(ws_transport.connections) == 3 and session.is_ready)

        assert clock.sleeps == [1.0]
        await session.close()

    @pytest.mark.asyncio
    async def test_repeated_drops_count_against_attempts(self, make_session, ws_transport):
        session = await ready_session(make_session, max_reconnect_attempts=3)

        for count in (2, 3):
            ws_transport.latest.drop()
            await wait_until(lambda: len(ws_transport.connections) == count and session.is_ready)
        ws_transport.latest.drop()
        await asyncio.wait_for(session.supervisor.terminated.wait(), 2.0)

        items = [item async for item in session.events()]
        assert [item.fatal for item in items] == [False, False, False, True]
        assert items[-1].error_type == "SessionTerminatedError"
        assert len(ws_transport.connections) == 3
        assert session.is_closed

    @pytest.mark.asyncio
    async def test_exhausted_reconnects_terminate_session(self, make_session, ws_transport, clock):
        session = await ready_session(make_session, max_reconnect_attempts=2)
        await session.subscribe("btcusdt@trade")
        events = session.events()

        # Stayed up long enough to start a fresh cycle
        clock.advance(60)
        ws_transport.always_fail = True
        ws_transport.latest.drop()

        loss = await next_item(events)
        terminal = await next_item(events)

        assert not loss.fatal
        assert terminal.fatal
        assert terminal.kind == ErrorKind.TRANSPORT
        assert terminal.error_type == "SessionTerminatedError"
        with pytest.raises(StopAsyncIteration):
            await next_item(events)
        assert session.is_closed
        assert ws_transport.connect_attempts == 3

    @pytest.mark.asyncio
    async def test_wait_ready_fails_when_never_connected(self, make_session, ws_transport):
        ws_transport.always_fail = True
        session = make_session(max_reconnect_attempts=3)

        with pytest.raises(SessionTerminatedError):
            await session.wait_ready(timeout=2.0)


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
