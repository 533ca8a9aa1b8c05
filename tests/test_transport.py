"""Tests for the WhatsApp connection manager state machine."""

import asyncio
import os

import pytest

from leadflow.transport import (
    ConnectionStatus,
    TransportConnectionManager,
    TransportEvent,
    TransportEventType,
    TransportNotConnected,
    TwilioWhatsAppSession,
    reconnect_delay,
)

from conftest import FakeWhatsApp, RecordingSleep


def _manager(whatsapp, sleep=None, **kwargs):
    return TransportConnectionManager(whatsapp.factory, sleep=sleep or RecordingSleep(), **kwargs)


def test_reconnect_delay_doubles_up_to_a_minute():
    assert [reconnect_delay(n) for n in range(1, 8)] == [5, 10, 20, 40, 60, 60, 60]


def test_start_connects_on_first_attempt():
    whatsapp = FakeWhatsApp()
    sleep = RecordingSleep()
    manager = _manager(whatsapp, sleep)

    async def _run():
        connected = await manager.start()
        status = manager.status()
        await manager.stop()
        return connected, status

    connected, status = asyncio.run(_run())

    assert connected
    assert status.status == "connected"
    assert status.is_ready
    assert not status.has_pending_auth_challenge
    assert sleep.calls == []
    assert len(whatsapp.sessions) == 1


def test_start_retries_with_fixed_delays():
    whatsapp = FakeWhatsApp()
    whatsapp.open_failures = 2
    sleep = RecordingSleep()
    manager = _manager(whatsapp, sleep)

    async def _run():
        connected = await manager.start()
        await manager.stop()
        return connected

    assert asyncio.run(_run())
    assert sleep.calls == [5, 15]
    assert len(whatsapp.sessions) == 3
    # Failed sessions are closed before the next attempt.
    assert whatsapp.sessions[0].closed and whatsapp.sessions[1].closed


def test_start_gives_up_after_three_attempts():
    whatsapp = FakeWhatsApp()
    whatsapp.open_failures = 5
    sleep = RecordingSleep()
    manager = _manager(whatsapp, sleep)

    async def _run():
        connected = await manager.start()
        status = manager.connection_status
        await manager.stop()
        return connected, status

    connected, status = asyncio.run(_run())

    assert not connected
    assert status == ConnectionStatus.DISCONNECTED
    assert sleep.calls == [5, 15]
    assert len(whatsapp.sessions) == 3


def test_send_raw_fails_fast_when_disconnected():
    manager = _manager(FakeWhatsApp())

    with pytest.raises(TransportNotConnected):
        asyncio.run(manager.send_raw("5511999999999", "Oi"))


def test_send_raw_uses_the_live_session():
    whatsapp = FakeWhatsApp()
    manager = _manager(whatsapp)

    async def _run():
        await manager.start()
        await manager.send_raw("5511999999999", "Oi")
        await manager.stop()

    asyncio.run(_run())
    assert whatsapp.sent == [("5511999999999", "Oi")]


def test_drop_triggers_reconnect_with_backoff():
    whatsapp = FakeWhatsApp()
    sleep = RecordingSleep()
    manager = _manager(whatsapp, sleep)

    async def _run():
        await manager.start()
        whatsapp.open_failures = 2
        whatsapp.sessions[-1].drop()
        await manager.wait_idle()
        await manager._reconnect_task
        connected = manager.is_connected
        attempt = manager.reconnect_attempt
        await manager.stop()
        return connected, attempt

    connected, attempt = asyncio.run(_run())

    assert connected
    assert attempt == 0
    assert sleep.calls == [5, 10, 20]
    assert len(whatsapp.sessions) == 4


def test_auth_failure_reconnects_with_the_same_backoff():
    whatsapp = FakeWhatsApp()
    sleep = RecordingSleep()
    manager = _manager(whatsapp, sleep)

    async def _run():
        await manager.start()
        whatsapp.open_failures = 1
        whatsapp.sessions[-1].emit(TransportEvent(TransportEventType.AUTH_FAILURE, "session expired"))
        await manager.wait_idle()
        await manager._reconnect_task
        connected = manager.is_connected
        attempt = manager.reconnect_attempt
        await manager.stop()
        return connected, attempt

    connected, attempt = asyncio.run(_run())

    assert connected
    assert attempt == 0
    assert sleep.calls == [5, 10]
    assert len(whatsapp.sessions) == 3


def test_events_keep_flowing_after_a_disconnect():
    whatsapp = FakeWhatsApp()
    manager = _manager(whatsapp)

    async def _run():
        await manager.start()
        whatsapp.sessions[-1].drop()
        await manager.wait_idle()
        await manager._reconnect_task
        session = whatsapp.sessions[-1]
        session.emit(TransportEvent(TransportEventType.AUTH_CHALLENGE, "qr-payload"))
        await manager.wait_idle()
        challenge = manager.current_auth_challenge
        await manager.stop()
        return challenge

    assert asyncio.run(_run()) == "qr-payload"


def test_reconnect_gives_up_after_ten_attempts():
    whatsapp = FakeWhatsApp()
    sleep = RecordingSleep()
    manager = _manager(whatsapp, sleep)

    async def _run():
        await manager.start()
        whatsapp.open_failures = 100
        whatsapp.sessions[-1].drop()
        await manager.wait_idle()
        await manager._reconnect_task
        status = manager.connection_status
        await manager.stop()
        return status

    assert asyncio.run(_run()) == ConnectionStatus.DISCONNECTED
    assert sleep.calls == [5, 10, 20, 40, 60, 60, 60, 60, 60, 60]


def test_auth_challenge_is_exposed_until_ready():
    whatsapp = FakeWhatsApp()
    manager = _manager(whatsapp)

    async def _run():
        await manager.start()
        session = whatsapp.sessions[-1]
        session.emit(TransportEvent(TransportEventType.AUTH_CHALLENGE, "qr-payload"))
        await manager.wait_idle()
        pending = manager.status().has_pending_auth_challenge
        session.emit(TransportEvent(TransportEventType.READY))
        await manager.wait_idle()
        cleared = manager.current_auth_challenge is None
        await manager.stop()
        return pending, cleared

    pending, cleared = asyncio.run(_run())
    assert pending
    assert cleared


def test_connected_listeners_run_on_every_connect():
    whatsapp = FakeWhatsApp()
    manager = _manager(whatsapp)
    calls = []

    async def listener():
        calls.append(manager.connection_status)

    manager.add_connected_listener(listener)

    async def _run():
        await manager.start()
        await manager.wait_idle()
        whatsapp.sessions[-1].drop()
        await manager.wait_idle()
        await manager._reconnect_task
        await manager.wait_idle()
        await manager.stop()

    asyncio.run(_run())
    assert calls == [ConnectionStatus.CONNECTED, ConnectionStatus.CONNECTED]


def test_cleanup_removes_stale_lock_files(tmp_path):
    session_dir = tmp_path / "session"
    session_dir.mkdir()
    for name in ("SingletonLock", "SingletonSocket", "SingletonCookie", "Preferences"):
        (session_dir / name).write_text("x")

    manager = _manager(FakeWhatsApp(), session_path=str(tmp_path))
    asyncio.run(manager.cleanup_stale_session())

    assert sorted(os.listdir(session_dir)) == ["Preferences"]


def test_cleanup_without_session_path_is_a_noop():
    manager = _manager(FakeWhatsApp())
    asyncio.run(manager.cleanup_stale_session())


def test_twilio_address_format():
    assert TwilioWhatsAppSession._address("5511999999999") == "whatsapp:+5511999999999"
    assert TwilioWhatsAppSession._address("whatsapp:+5511999999999") == "whatsapp:+5511999999999"


def test_unconfigured_twilio_session_refuses_to_open():
    manager = TransportConnectionManager(lambda: TwilioWhatsAppSession("", "", ""), sleep=RecordingSleep())

    async def _run():
        connected = await manager.start()
        await manager.stop()
        return connected

    assert not asyncio.run(_run())
