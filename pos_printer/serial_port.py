"""
Serial (cable) connection management for thermal printers.
"""

import asyncio
import logging
from typing import Optional

import serial  # type: ignore
from serial.tools import list_ports  # type: ignore

from .base import TransportDriver
from .exceptions import ConnectError, ConnectionLostError, DeviceNotFoundError
from .models import PrinterHandle, TransportType
from .probe import CandidateProbe, ProbeExhausted

logger = logging.getLogger(__name__)

BAUD_RATES = (9600, 115200, 38400, 19200, 4800)

# Printer vendors and common USB-serial bridge chips
SERIAL_VENDOR_IDS = (
    0x04b8,  # Epson
    0x04f9,  # Brother
    0x03f0,  # HP
    0x04e8,  # Samsung
    0x0fe6,  # Citizen
    0x0519,  # Star Micronics
    0x04e2,  # Bixolon
    0x0bda,  # Realtek
    0x0403,  # FTDI
    0x067b,  # Prolific
    0x1a86,  # QinHeng CH340/CH341
)


class SerialConnection(TransportDriver):
    """Drives printers attached to a serial port."""

    transport = TransportType.SERIAL

    def __init__(self, config: dict = None):
        super().__init__(config)
        self.timeout = self.config.get('timeout', 10)
        self.write_timeout = self.config.get('write_timeout', self.timeout)

    async def connect(self, printer_id: str, display_name: str,
                      port: Optional[str] = None, **_) -> PrinterHandle:
        port = port or self.config.get('port')
        return await asyncio.to_thread(self._connect_blocking, printer_id, display_name, port)

    def _connect_blocking(self, printer_id: str, display_name: str, port: Optional[str]) -> PrinterHandle:
        device = port or self._detect_port()
        logger.info(f"[Serial] Opening {device} for '{printer_id}'...")

        try:
            baud_rate, connection = CandidateProbe('baud rate', BAUD_RATES).run(
                lambda rate: serial.Serial(device, baudrate=rate, bytesize=8, parity='N',
                                           stopbits=1, timeout=self.timeout,
                                           write_timeout=self.write_timeout)
            )
        except ProbeExhausted as e:
            logger.error(f"[Serial] Failed to open {device} at any baud rate")
            raise ConnectError(
                "Failed to connect to printer at any baud rate",
                context={'port': device, 'error': str(e)}
            )

        logger.info(f"[Serial] Connected at {baud_rate} baud")
        self._probe_capability(connection)
        return PrinterHandle(
            id=printer_id,
            display_name=display_name,
            transport=TransportType.SERIAL,
            native_device=connection,
            baud_rate=baud_rate,
        )

    def _detect_port(self) -> str:
        """
        Pick the first enumerated port from a known printer or USB-serial vendor.

        Raises:
            DeviceNotFoundError: If no such port is present
        """
        for info in list_ports.comports():
            if info.vid in SERIAL_VENDOR_IDS:
                logger.info(f"[Serial] Detected {info.device} (VID={info.vid:04x})")
                return info.device
        raise DeviceNotFoundError("No serial printer port found")

    def _probe_capability(self, connection) -> None:
        try:
            logger.debug(f"[Serial] CTS line: {connection.cts}")
        except Exception as e:
            logger.debug(f"[Serial] Capability probe failed (continuing): {e}")

    async def send(self, handle: PrinterHandle, data: bytes) -> None:
        await asyncio.to_thread(self._send_blocking, handle, data)

    def _send_blocking(self, handle: PrinterHandle, data: bytes) -> None:
        connection = handle.native_device
        try:
            connection.write(data)
            connection.flush()
        except (serial.SerialException, OSError) as e:
            logger.error(f"[Serial] Write to '{handle.id}' failed: {e}")
            handle.connected = False
            raise ConnectionLostError(
                "Serial port closed or errored",
                context={'printer_id': handle.id, 'error': str(e)}
            )
        logger.info(f"[Serial] Sent {len(data)} bytes to '{handle.id}'")

    async def is_alive(self, handle: PrinterHandle) -> bool:
        connection = handle.native_device
        return bool(connection is not None and connection.is_open)

    async def disconnect(self, handle: PrinterHandle) -> None:
        connection = handle.native_device
        if connection is not None:
            try:
                await asyncio.to_thread(connection.close)
            except Exception as e:
                logger.debug(f"[Serial] Error closing port: {e}")
        handle.native_device = None
        handle.connected = False
        logger.info(f"[Serial] Printer '{handle.id}' disconnected")
