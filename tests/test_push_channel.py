"""Tests for PushChannel subscription bookkeeping."""

import asyncio
from unittest.mock import MagicMock

import pytest
from conftest import FakeTransport

from optrack.services.push_channel import PushChannel


def test_without_transport_is_never_connected():
    channel = PushChannel(None)
    channel.subscribe("ProcessingProgress", MagicMock())
    channel.add_connection_listener(MagicMock())
    assert channel.is_connected is False
    channel.close()


def test_connection_flag_follows_transport():
    transport = FakeTransport(connected=False)
    channel = PushChannel(transport)
    assert channel.is_connected is False
    transport.set_connected(True)
    assert channel.is_connected is True


def test_handler_receives_payload():
    transport = FakeTransport()
    handler = MagicMock()
    channel = PushChannel(transport)
    channel.subscribe("ProcessingProgress", handler)

    transport.emit("ProcessingProgress", {"percentComplete": 5})

    handler.assert_called_once_with({"percentComplete": 5})


def test_handler_exception_is_logged_not_raised():
    transport = FakeTransport()
    channel = PushChannel(transport)
    channel.subscribe("ProcessingProgress", MagicMock(side_effect=ValueError("bad payload")))

    transport.emit("ProcessingProgress", {})


@pytest.mark.asyncio
async def test_async_handler_is_scheduled():
    transport = FakeTransport()
    received = []

    async def handler(payload):
        received.append(payload)

    channel = PushChannel(transport)
    channel.subscribe("DepotMappingProgress", handler)
    transport.emit("DepotMappingProgress", {"progressPercent": 10})
    await asyncio.sleep(0)
    await asyncio.sleep(0)

    assert received == [{"progressPercent": 10}]


def test_close_unregisters_everything():
    transport = FakeTransport()
    channel = PushChannel(transport)
    handler = MagicMock()
    listener = MagicMock()
    channel.subscribe("ProcessingProgress", handler)
    channel.add_connection_listener(listener)

    channel.close()
    transport.emit("ProcessingProgress", {})
    transport.set_connected(False)

    handler.assert_not_called()
    listener.assert_not_called()
    assert transport.handlers["ProcessingProgress"] == []
    assert transport.listeners == []
