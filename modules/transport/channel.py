"""
Line-oriented transport channels towards the microcontroller.

Every channel enforces at-most-one-in-flight: a send that arrives while the
previous write is still pending is dropped, never queued, so a slow or dead
link cannot build up a backlog. Sending while disconnected is an immediate
``False``; neither case raises.

Backends:
    SerialChannel     USB / UART serial via pyserial (micro:bit, Arduino, ...)
    SimulatedChannel  logs payloads only; used when no device is configured
"""

import asyncio
import logging

import serial
from serial.tools import list_ports

from core.errors import DeviceConnectionError, TransportUnavailableError

logger = logging.getLogger(__name__)

LINE_TERMINATOR = "\n"

# ARM mbed / BBC micro:bit USB vendor id
MICROBIT_VID = 0x0D28
_DEVICE_HINTS = ("micro:bit", "microbit", "mbed")


def encode_line(payload: str) -> bytes:
    """UTF-8 payload terminated by a newline."""
    return (payload + LINE_TERMINATOR).encode("utf-8")


class TransportChannel:
    """Base class: connection lifecycle plus the single-in-flight send guard.

    Subclasses implement ``_open()``, ``_close()`` and ``_write(data)``.
    """

    def __init__(self, name: str = "channel", drain_timeout_s: float = 2.0):
        self._name = name
        self._drain_timeout_s = drain_timeout_s
        self._connected = False
        self._sending = False
        self._inflight = None
        self._sent_count = 0
        self._dropped_count = 0

    async def connect(self):
        """Open the link. Raises DeviceConnectionError on failure."""
        if self._connected:
            return
        try:
            await self._open()
        except DeviceConnectionError:
            self._reset_state()
            raise
        except Exception as e:
            self._reset_state()
            raise DeviceConnectionError(f"Connection to {self._name} failed: {e}") from e
        self._connected = True
        logger.info("Transport connected: %s", self._name)

    async def disconnect(self):
        """Close the link and clear all channel state.

        A write already in flight is allowed to finish (up to
        ``drain_timeout_s``) before the link is closed under it.
        """
        was_connected = self._connected
        self._connected = False  # no new sends from here on
        inflight = self._inflight
        if inflight is not None and not inflight.done():
            done, _ = await asyncio.wait([inflight], timeout=self._drain_timeout_s)
            if not done:
                logger.warning("Closing %s with a write still in flight", self._name)
        try:
            await self._close()
        except Exception as e:
            logger.warning("Error while closing %s: %s", self._name, e)
        finally:
            self._reset_state()
        if was_connected:
            logger.info("Transport disconnected: %s", self._name)

    async def send(self, payload: str) -> bool:
        """Attempt to write one payload line. Returns True if it was written."""
        try:
            self._check_available()
        except TransportUnavailableError as e:
            self._dropped_count += 1
            logger.debug("Dropped %r: %s", payload, e)
            return False

        self._sending = True
        finished = asyncio.get_running_loop().create_future()
        self._inflight = finished
        try:
            await self._write(encode_line(payload))
            self._sent_count += 1
            logger.debug("Sent %r via %s", payload, self._name)
            return True
        except Exception as e:
            logger.error("Error sending %r via %s: %s", payload, self._name, e)
            return False
        finally:
            finished.set_result(None)
            # A reconnect may already have started another write
            if self._inflight is finished:
                self._inflight = None
                self._sending = False

    def _check_available(self):
        if not self._connected:
            raise TransportUnavailableError(f"{self._name} is not connected")
        if self._sending:
            raise TransportUnavailableError(f"{self._name} has a send in flight")

    def _reset_state(self):
        self._connected = False
        self._sending = False
        self._inflight = None

    async def _open(self):
        raise NotImplementedError

    async def _close(self):
        raise NotImplementedError

    async def _write(self, data: bytes):
        raise NotImplementedError

    @property
    def name(self) -> str:
        return self._name

    @property
    def is_connected(self) -> bool:
        return self._connected

    @property
    def is_busy(self) -> bool:
        return self._sending

    @property
    def sent_count(self) -> int:
        return self._sent_count

    @property
    def dropped_count(self) -> int:
        return self._dropped_count


class SerialChannel(TransportChannel):
    """pyserial-backed channel. Blocking I/O runs in the default executor."""

    def __init__(self, config: dict):
        self._port = config.get("port") or None
        self._baudrate = config.get("baudrate", 115200)
        self._write_timeout = config.get("write_timeout", 1.0)
        self._serial = None
        super().__init__(name=f"serial:{self._port or 'auto'}",
                         drain_timeout_s=config.get("drain_timeout_s", 2.0))

    async def _open(self):
        loop = asyncio.get_running_loop()
        port = self._port or await loop.run_in_executor(None, find_device_port)
        if port is None:
            raise DeviceConnectionError("No micro:bit-like serial device found")
        try:
            self._serial = await loop.run_in_executor(None, self._open_port, port)
        except serial.SerialException as e:
            raise DeviceConnectionError(f"Cannot open {port}: {e}") from e
        self._name = f"serial:{port}"

    def _open_port(self, port: str):
        return serial.Serial(
            port=port,
            baudrate=self._baudrate,
            timeout=0,
            write_timeout=self._write_timeout,
        )

    async def _close(self):
        if self._serial is not None:
            handle, self._serial = self._serial, None
            loop = asyncio.get_running_loop()
            await loop.run_in_executor(None, handle.close)

    async def _write(self, data: bytes):
        if self._serial is None:
            raise TransportUnavailableError("serial port is closed")
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, self._write_blocking, data)

    def _write_blocking(self, data: bytes):
        self._serial.write(data)
        self._serial.flush()


class SimulatedChannel(TransportChannel):
    """Log-only channel. Keeps every payload it 'sent' for inspection."""

    def __init__(self, write_delay_s: float = 0.0, history_size: int = 1000,
                 drain_timeout_s: float = 2.0):
        super().__init__(name="simulated", drain_timeout_s=drain_timeout_s)
        self._write_delay_s = write_delay_s
        self._history_size = history_size
        self.sent = []

    async def _open(self):
        pass

    async def _close(self):
        pass

    async def _write(self, data: bytes):
        if self._write_delay_s:
            await asyncio.sleep(self._write_delay_s)
        line = data.decode("utf-8").rstrip(LINE_TERMINATOR)
        self.sent.append(line)
        if len(self.sent) > self._history_size:
            self.sent = self.sent[-self._history_size:]
        logger.info("[SIMULATED] -> %s", line)


def list_serial_ports() -> list:
    """(device, description, vid) for every serial port on the host."""
    return [(p.device, p.description or "", p.vid) for p in list_ports.comports()]


def find_device_port():
    """First port that looks like a micro:bit, or None."""
    for device, description, vid in list_serial_ports():
        desc = description.lower()
        if vid == MICROBIT_VID or any(hint in desc for hint in _DEVICE_HINTS):
            logger.info("Auto-detected device on %s (%s)", device, description)
            return device
    return None


def create_channel(config: dict) -> TransportChannel:
    """Build the channel described by the ``transport`` config section."""
    kind = config.get("kind", "simulated")
    if kind == "serial":
        return SerialChannel(config)
    if kind == "simulated":
        return SimulatedChannel(write_delay_s=config.get("simulated_delay_s", 0.0),
                                drain_timeout_s=config.get("drain_timeout_s", 2.0))
    raise ValueError(f"Unknown transport kind: {kind!r}")
