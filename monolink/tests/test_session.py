"""Tests for monolink.core.session — device handshake and message relay."""

import asyncio
import itertools
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from monolink.core.config import SessionConfig
from monolink.core.device import DeviceDescriptor, EncDelta, EncKey, GridKey, Tilt
from monolink.core.errors import TransportConnectionRefusedError
from monolink.core.osc import encode_message
from monolink.core.session import DeviceSession, HandshakeField, SessionState
from monolink.core.transport import OscSender


def make_session(model: str = "monome 128", **config) -> DeviceSession:
    """Session whose outbound messages are captured instead of sent."""
    descriptor = DeviceDescriptor.from_announcement(
        "m1000123", model, 13001, daemon_host="127.0.0.1", daemon_port=12002
    )
    session = DeviceSession(descriptor, SessionConfig(**config))
    sender = MagicMock(spec=OscSender)
    sender.host = "127.0.0.1"
    sender.port = 13001
    sender.send = AsyncMock()
    session._sender = sender
    return session


def sent(session: DeviceSession) -> list[tuple]:
    """Outbound messages as (address, *args)."""
    return [call.args for call in session._sender.send.call_args_list]


def sent_addresses(session: DeviceSession) -> list[str]:
    return [args[0] for args in sent(session)]


async def deliver(session: DeviceSession, address: str, *args) -> None:
    await session.receiver.deliver(encode_message(address, *args))


ACKS = {
    "port": ("/sys/port", 0),  # port value filled in per session
    "host": ("/sys/host", "127.0.0.1"),
    "size": ("/sys/size", 16, 8),
    "rotation": ("/sys/rotation", 0),
}


async def ack(session: DeviceSession, name: str) -> None:
    address, *args = ACKS[name]
    if name == "port":
        args = [session.port]
    await deliver(session, address, *args)


@pytest_asyncio.fixture
async def session():
    s = make_session()
    await s.start()
    yield s
    await s.stop()


class TestStart:
    @pytest.mark.asyncio
    async def test_initial_state(self):
        s = make_session()
        assert s.state is SessionState.DISCONNECTED
        assert not s.initialized

    @pytest.mark.asyncio
    async def test_start_sends_own_port(self, session):
        assert sent(session) == [("/sys/port", session.port)]
        assert session.port > 0
        assert session.state is SessionState.AWAITING_PORT
        assert session.pending == {
            HandshakeField.PORT,
            HandshakeField.HOST,
            HandshakeField.SIZE,
            HandshakeField.ROTATION,
        }

    @pytest.mark.asyncio
    async def test_start_twice_is_noop(self, session):
        await session.start()
        assert sent_addresses(session) == ["/sys/port"]

    @pytest.mark.asyncio
    async def test_start_failure_closes_receiver(self):
        s = make_session()
        s._sender.send.side_effect = TransportConnectionRefusedError(
            "refused", "127.0.0.1", 13001
        )
        with pytest.raises(TransportConnectionRefusedError):
            await s.start()
        assert not s.receiver.is_listening
        assert s.state is SessionState.DISCONNECTED


class TestHandshake:
    @pytest.mark.asyncio
    async def test_in_order_sequence(self, session):
        """port → host → info, with state following along."""
        await ack(session, "port")
        assert session.state is SessionState.AWAITING_HOST
        assert sent(session)[-1] == ("/sys/host", session.host)

        await ack(session, "host")
        assert session.state is SessionState.AWAITING_INFO
        assert sent(session)[-1] == ("/sys/info",)

        await ack(session, "size")
        await ack(session, "rotation")
        assert session.state is SessionState.CONNECTED
        assert session.initialized
        assert session.connected
        assert session.size == (16, 8)
        assert session.descriptor.size == (16, 8)
        assert session.rotation == 0
        assert session.reported_destination == ("127.0.0.1", session.port)

    @pytest.mark.asyncio
    async def test_host_not_requested_before_port(self, session):
        await ack(session, "size")
        await ack(session, "rotation")
        assert sent_addresses(session) == ["/sys/port"]
        assert session.state is SessionState.AWAITING_PORT

    @pytest.mark.asyncio
    @pytest.mark.parametrize("order", list(itertools.permutations(ACKS)))
    async def test_any_ack_order_initializes_once(self, order):
        s = make_session()
        initialized = MagicMock()
        s.on("initialized", initialized)
        await s.start()
        try:
            for name in order:
                await ack(s, name)
            # Duplicates after completion change nothing.
            for name in order:
                await ack(s, name)

            assert initialized.call_count == 1
            assert s.state is SessionState.CONNECTED
            assert s.pending == frozenset()
            addresses = sent_addresses(s)
            assert addresses.count("/sys/info") == 1
            assert addresses.count("/sys/host") <= 1
        finally:
            await s.stop()

    @pytest.mark.asyncio
    async def test_duplicate_port_ack_sends_host_once(self, session):
        await ack(session, "port")
        await ack(session, "port")
        await ack(session, "size")
        assert sent_addresses(session).count("/sys/host") == 1

    @pytest.mark.asyncio
    async def test_info_sent_once_on_repeated_acks(self, session):
        await ack(session, "port")
        await ack(session, "host")
        await ack(session, "host")
        await ack(session, "port")
        assert sent_addresses(session).count("/sys/info") == 1

    @pytest.mark.asyncio
    async def test_failed_info_request_on_final_ack_still_initializes(self, session):
        initialized = MagicMock()
        session.on("initialized", initialized)
        await ack(session, "size")
        await ack(session, "rotation")
        await ack(session, "host")
        session._sender.send.side_effect = TransportConnectionRefusedError(
            "refused", "127.0.0.1", 13001
        )

        await ack(session, "port")

        assert sent_addresses(session)[-1] == "/sys/info"
        assert session.pending == frozenset()
        assert session.initialized
        assert session.state is SessionState.CONNECTED
        initialized.assert_called_once()

    @pytest.mark.asyncio
    async def test_failed_host_request_keeps_host_pending(self, session):
        session._sender.send.side_effect = TransportConnectionRefusedError(
            "refused", "127.0.0.1", 13001
        )
        await ack(session, "port")
        assert session.pending == {
            HandshakeField.HOST,
            HandshakeField.SIZE,
            HandshakeField.ROTATION,
        }
        assert not session.initialized
        assert session.state is SessionState.AWAITING_HOST

    @pytest.mark.asyncio
    async def test_sys_id_recorded(self, session):
        await deliver(session, "/sys/id", "m9999")
        assert session.device_id == "m9999"

    @pytest.mark.asyncio
    async def test_malformed_ack_ignored(self, session):
        await deliver(session, "/sys/size", 16)
        await deliver(session, "/sys/port", "not a port")
        assert HandshakeField.SIZE in session.pending
        assert HandshakeField.PORT in session.pending

    @pytest.mark.asyncio
    async def test_track_prefix_requires_prefix(self):
        s = make_session(track_prefix=True)
        await s.start()
        try:
            for name in ACKS:
                await ack(s, name)
            assert not s.initialized
            assert s.pending == {HandshakeField.PREFIX}

            await deliver(s, "/sys/prefix", "/monome")
            assert s.initialized
        finally:
            await s.stop()


class TestLinkState:
    @pytest.mark.asyncio
    async def test_connect_before_handshake(self, session):
        connected = MagicMock()
        session.on("connected", connected)
        await deliver(session, "/sys/connect")
        connected.assert_called_once()
        assert session.connected
        # Does not satisfy the handshake
        assert not session.initialized
        assert session.state is SessionState.AWAITING_PORT

    @pytest.mark.asyncio
    async def test_disconnect(self, session):
        disconnected = MagicMock()
        session.on("disconnected", disconnected)
        for name in ACKS:
            await ack(session, name)
        await deliver(session, "/sys/disconnect")
        disconnected.assert_called_once()
        assert not session.connected
        assert session.initialized
        assert session.state is SessionState.DISCONNECTED

    @pytest.mark.asyncio
    async def test_reconnect_after_disconnect(self, session):
        for name in ACKS:
            await ack(session, name)
        await deliver(session, "/sys/disconnect")
        await deliver(session, "/sys/connect")
        assert session.connected
        assert session.state is SessionState.CONNECTED

    @pytest.mark.asyncio
    async def test_acks_still_count_after_connect(self, session):
        await deliver(session, "/sys/connect")
        for name in ACKS:
            await ack(session, name)
        assert session.initialized


class TestPrefix:
    @pytest.mark.asyncio
    async def test_default_prefix_subscribed(self, session):
        key = MagicMock()
        session.on("key", key)
        await deliver(session, "/monome/grid/key", 1, 2, 1)
        key.assert_called_once_with(GridKey(x=1, y=2, state=1))

    @pytest.mark.asyncio
    async def test_prefix_change_moves_handlers(self, session):
        key = MagicMock()
        session.on("key", key)

        await deliver(session, "/sys/prefix", "/foo")
        assert session.prefix == "/foo"

        await deliver(session, "/monome/grid/key", 0, 0, 1)
        key.assert_not_called()

        await deliver(session, "/foo/grid/key", 3, 4, 0)
        key.assert_called_once_with(GridKey(x=3, y=4, state=0))

    @pytest.mark.asyncio
    async def test_prefix_change_leaves_no_stale_addresses(self, session):
        await deliver(session, "/sys/prefix", "/foo")
        addresses = session.receiver.registry.addresses()
        assert "/foo/grid/key" in addresses
        assert "/foo/tilt" in addresses
        assert not any(a.startswith("/monome/") for a in addresses)

    @pytest.mark.asyncio
    async def test_same_prefix_twice(self, session):
        key = MagicMock()
        session.on("key", key)
        await deliver(session, "/sys/prefix", "/monome")
        await deliver(session, "/sys/prefix", "/monome")
        await deliver(session, "/monome/grid/key", 0, 0, 1)
        key.assert_called_once()

    @pytest.mark.asyncio
    async def test_invalid_prefix_ignored(self, session):
        await deliver(session, "/sys/prefix", "nope")
        assert session.prefix == "/monome"

    @pytest.mark.asyncio
    async def test_configured_prefix(self):
        s = make_session(prefix="/app")
        key = MagicMock()
        s.on("key", key)
        await s.start()
        try:
            await deliver(s, "/app/grid/key", 1, 1, 1)
            key.assert_called_once()
        finally:
            await s.stop()

    @pytest.mark.asyncio
    async def test_raw_subscription_survives_prefix_change(self, session):
        raw = MagicMock()
        session.subscribe("/monome/grid/led/level/map", raw)
        await deliver(session, "/sys/prefix", "/foo")
        await deliver(session, "/monome/grid/led/level/map", 0, 0)
        raw.assert_called_once_with(0, 0)


class TestApplicationEvents:
    @pytest.mark.asyncio
    async def test_tilt(self, session):
        tilt = MagicMock()
        session.on("tilt", tilt)
        await deliver(session, "/monome/tilt", 0, 127, 130, 128)
        tilt.assert_called_once_with(Tilt(n=0, x=127, y=130, z=128))

    @pytest.mark.asyncio
    async def test_bad_key_args_dropped(self, session):
        key = MagicMock()
        session.on("key", key)
        await deliver(session, "/monome/grid/key", 1, 2)
        key.assert_not_called()

    @pytest.mark.asyncio
    async def test_arc_subscriptions(self):
        s = make_session(model="monome arc 4")
        key, delta = MagicMock(), MagicMock()
        s.on("key", key)
        s.on("delta", delta)
        await s.start()
        try:
            await deliver(s, "/monome/enc/delta", 2, -5)
            await deliver(s, "/monome/enc/key", 1, 1)
            await deliver(s, "/monome/grid/key", 1, 1, 1)
        finally:
            await s.stop()
        delta.assert_called_once_with(EncDelta(n=2, delta=-5))
        key.assert_called_once_with(EncKey(n=1, state=1))

    @pytest.mark.asyncio
    async def test_on_message_sees_everything(self, session):
        seen = []
        session.on_message(lambda address, *args: seen.append((address, *args)))
        await deliver(session, "/monome/grid/key", 1, 2, 1)
        await deliver(session, "/sys/connect")
        assert seen == [("/monome/grid/key", 1, 2, 1), ("/sys/connect",)]


class TestSending:
    @pytest.mark.asyncio
    async def test_send_prefixed(self, session):
        await session.send_prefixed("/grid/led/all", 1)
        assert sent(session)[-1] == ("/monome/grid/led/all", 1)

    @pytest.mark.asyncio
    async def test_send_prefixed_follows_prefix(self, session):
        await deliver(session, "/sys/prefix", "/foo")
        await session.send_prefixed("/grid/led/set", 1, 2, 1)
        assert sent(session)[-1] == ("/foo/grid/led/set", 1, 2, 1)

    @pytest.mark.asyncio
    async def test_set_rotation(self, session):
        await session.set_rotation(180)
        assert sent(session)[-1] == ("/sys/rotation", 180)

    @pytest.mark.asyncio
    async def test_set_prefix(self, session):
        await session.set_prefix("/bar")
        assert sent(session)[-1] == ("/sys/prefix", "/bar")
        # Only moves when the device confirms
        assert session.prefix == "/monome"

    @pytest.mark.asyncio
    async def test_send_error_surfaces(self, session):
        session._sender.send.side_effect = TransportConnectionRefusedError(
            "refused", "127.0.0.1", 13001
        )
        with pytest.raises(TransportConnectionRefusedError):
            await session.send("/monome/grid/led/all", 0)


class TestWatchdog:
    @pytest.mark.asyncio
    async def test_timeout_fires_when_device_silent(self):
        s = make_session(handshake_timeout=0.05)
        timed_out = asyncio.Event()
        s.on("timeout", timed_out.set)
        await s.start()
        try:
            await asyncio.wait_for(timed_out.wait(), 2.0)
            assert s.state is SessionState.AWAITING_PORT
        finally:
            await s.stop()

    @pytest.mark.asyncio
    async def test_no_timeout_after_initialized(self):
        s = make_session(handshake_timeout=0.05)
        timeout = MagicMock()
        s.on("timeout", timeout)
        await s.start()
        try:
            for name in ACKS:
                await ack(s, name)
            await asyncio.sleep(0.1)
        finally:
            await s.stop()
        timeout.assert_not_called()

    @pytest.mark.asyncio
    async def test_no_watchdog_by_default(self, session):
        assert session._watchdog is None


class TestStop:
    @pytest.mark.asyncio
    async def test_stop_is_idempotent(self):
        s = make_session()
        await s.stop()
        await s.start()
        await s.stop()
        await s.stop()
        assert s.state is SessionState.DISCONNECTED
        assert not s.connected
        assert not s.receiver.is_listening

    @pytest.mark.asyncio
    async def test_no_dispatch_after_stop(self):
        s = make_session()
        key = MagicMock()
        s.on("key", key)
        await s.start()
        await s.stop()
        await deliver(s, "/monome/grid/key", 1, 1, 1)
        key.assert_not_called()

    @pytest.mark.asyncio
    async def test_acks_after_stop_ignored(self):
        s = make_session()
        initialized = MagicMock()
        s.on("initialized", initialized)
        await s.start()
        await ack(s, "port")
        await s.stop()
        await s._acknowledge(HandshakeField.HOST)
        initialized.assert_not_called()

    @pytest.mark.asyncio
    async def test_repr(self):
        s = make_session()
        assert repr(s) == "DeviceSession(m1000123, disconnected)"
