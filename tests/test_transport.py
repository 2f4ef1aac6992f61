"""
Tests for transport channels
=============================
"""

import asyncio
import pytest
import sys
from pathlib import Path
from unittest import mock

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from core.errors import DeviceConnectionError
from modules.transport.channel import (
    MICROBIT_VID, SerialChannel, SimulatedChannel, create_channel, encode_line, find_device_port,
)


class TestSimulatedChannel:
    """Test suite for the send guard, exercised through the simulated backend."""

    def test_send_while_disconnected(self):
        channel = SimulatedChannel()
        assert asyncio.run(channel.send("ID1")) is False
        assert channel.sent == []
        assert channel.dropped_count == 1

    def test_send_after_connect(self):
        async def scenario():
            channel = SimulatedChannel()
            await channel.connect()
            ok = await channel.send("ID1")
            return channel, ok

        channel, ok = asyncio.run(scenario())
        assert ok is True
        assert channel.sent == ["ID1"]
        assert channel.sent_count == 1

    def test_single_send_in_flight(self):
        async def scenario():
            channel = SimulatedChannel(write_delay_s=0.05)
            await channel.connect()
            results = await asyncio.gather(channel.send("ID1"), channel.send("ID2"))
            return channel, results

        channel, results = asyncio.run(scenario())
        assert sorted(results) == [False, True]
        assert len(channel.sent) == 1
        assert not channel.is_busy

    def test_sequential_sends_all_delivered(self):
        async def scenario():
            channel = SimulatedChannel(write_delay_s=0.001)
            await channel.connect()
            for payload in ("ID1", "ID2", "stop"):
                assert await channel.send(payload)
            return channel

        channel = asyncio.run(scenario())
        assert channel.sent == ["ID1", "ID2", "stop"]

    def test_disconnect_clears_state(self):
        async def scenario():
            channel = SimulatedChannel()
            await channel.connect()
            await channel.disconnect()
            return channel, await channel.send("ID1")

        channel, ok = asyncio.run(scenario())
        assert ok is False
        assert not channel.is_connected
        assert not channel.is_busy

    def test_disconnect_waits_for_inflight_write(self):
        async def scenario():
            channel = SimulatedChannel(write_delay_s=0.05)
            await channel.connect()
            sending = asyncio.ensure_future(channel.send("ID1"))
            await asyncio.sleep(0.01)
            assert channel.is_busy
            await channel.disconnect()
            done = sending.done()
            return channel, done, await sending

        channel, done, ok = asyncio.run(scenario())
        assert done
        assert ok is True
        assert channel.sent == ["ID1"]
        assert not channel.is_connected
        assert not channel.is_busy

    def test_no_send_starts_while_disconnecting(self):
        async def scenario():
            channel = SimulatedChannel(write_delay_s=0.05)
            await channel.connect()
            first = asyncio.ensure_future(channel.send("ID1"))
            await asyncio.sleep(0.01)
            closing = asyncio.ensure_future(channel.disconnect())
            await asyncio.sleep(0)
            late = await channel.send("ID2")
            await closing
            return channel, await first, late

        channel, first, late = asyncio.run(scenario())
        assert first is True
        assert late is False
        assert channel.sent == ["ID1"]

    def test_disconnect_gives_up_on_stuck_write(self):
        async def scenario():
            channel = SimulatedChannel(write_delay_s=0.5, drain_timeout_s=0.02)
            await channel.connect()
            sending = asyncio.ensure_future(channel.send("ID1"))
            await asyncio.sleep(0.01)
            await channel.disconnect()
            busy_after = channel.is_busy
            sending.cancel()
            return channel, busy_after

        channel, busy_after = asyncio.run(scenario())
        assert not channel.is_connected
        assert not busy_after

    def test_connect_is_idempotent(self):
        async def scenario():
            channel = SimulatedChannel()
            await channel.connect()
            await channel.connect()
            return channel

        assert asyncio.run(scenario()).is_connected


class TestSerialChannel:
    """Test suite for the pyserial backend with the port mocked out."""

    def test_write_is_newline_terminated(self):
        async def scenario():
            channel = SerialChannel({"port": "/dev/ttyACM0", "baudrate": 115200})
            await channel.connect()
            ok = await channel.send("T100I0M0R0P0")
            await channel.disconnect()
            return channel, ok

        with mock.patch("modules.transport.channel.serial.Serial") as serial_cls:
            channel, ok = asyncio.run(scenario())

        assert ok is True
        handle = serial_cls.return_value
        handle.write.assert_called_once_with(b"T100I0M0R0P0\n")
        handle.close.assert_called_once()
        assert serial_cls.call_args.kwargs["port"] == "/dev/ttyACM0"
        assert not channel.is_connected

    def test_write_error_returns_false(self):
        async def scenario():
            channel = SerialChannel({"port": "/dev/ttyACM0"})
            await channel.connect()
            return channel, await channel.send("ID1")

        with mock.patch("modules.transport.channel.serial.Serial") as serial_cls:
            serial_cls.return_value.write.side_effect = OSError("device unplugged")
            channel, ok = asyncio.run(scenario())

        assert ok is False
        assert not channel.is_busy

    def test_no_device_found(self):
        channel = SerialChannel({"port": None})
        with mock.patch("modules.transport.channel.find_device_port", return_value=None):
            with pytest.raises(DeviceConnectionError):
                asyncio.run(channel.connect())
        assert not channel.is_connected

    def test_open_failure_wrapped(self):
        channel = SerialChannel({"port": "/dev/does-not-exist"})
        with mock.patch("modules.transport.channel.serial.Serial",
                        side_effect=OSError("no such device")):
            with pytest.raises(DeviceConnectionError):
                asyncio.run(channel.connect())
        assert not channel.is_connected


class TestHelpers:
    """Test suite for module-level helpers."""

    def test_encode_line(self):
        assert encode_line("ID3") == b"ID3\n"

    def test_find_device_by_vid(self):
        ports = [("/dev/ttyS0", "Serial port", None), ("/dev/ttyACM0", "USB device", MICROBIT_VID)]
        with mock.patch("modules.transport.channel.list_serial_ports", return_value=ports):
            assert find_device_port() == "/dev/ttyACM0"

    def test_find_device_by_description(self):
        ports = [("COM4", "mbed Serial Port (COM4)", 0x1234)]
        with mock.patch("modules.transport.channel.list_serial_ports", return_value=ports):
            assert find_device_port() == "COM4"

    def test_find_device_none(self):
        with mock.patch("modules.transport.channel.list_serial_ports", return_value=[]):
            assert find_device_port() is None

    def test_create_channel(self):
        assert isinstance(create_channel({"kind": "simulated"}), SimulatedChannel)
        assert isinstance(create_channel({"kind": "serial", "port": "COM3"}), SerialChannel)
        with pytest.raises(ValueError):
            create_channel({"kind": "carrier-pigeon"})


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
