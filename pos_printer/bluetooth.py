"""
Bluetooth LE connection management for thermal printers.
Handles device discovery, GATT connection and print channel lookup.
"""

import asyncio
import logging
from typing import Dict, List, Optional

from bleak import BleakClient, BleakScanner  # type: ignore
from bleak.exc import BleakError  # type: ignore

from .base import TransportDriver
from .exceptions import ChannelNotFoundError, ConnectError, ConnectionLostError, DeviceNotFoundError
from .models import PrinterHandle, TransportType
from .probe import CandidateProbe, ProbeExhausted

logger = logging.getLogger(__name__)


def _uuid16(short: str) -> str:
    return f"0000{short}-0000-1000-8000-00805f9b34fb"


PRINTER_SERVICE_UUIDS = {
    _uuid16('18f0'),  # generic printer service
    _uuid16('ae30'),  # vendor printer service
    _uuid16('ff00'),
    _uuid16('180f'),  # battery service, advertised by many printers
}

NAME_PREFIXES = (
    'Printer', 'POS', 'Thermal', 'Receipt', 'HP', 'Canon', 'Epson', 'Brother',
    'Zebra', 'Star', 'Citizen', 'TSC', 'Godex', 'Datamax', 'Bluetooth', 'BT',
)

# (service, characteristic), vendor channels first
CHANNEL_CANDIDATES = (
    (_uuid16('ae30'), _uuid16('ae01')),
    (_uuid16('ae30'), _uuid16('ae31')),
    (_uuid16('18f0'), _uuid16('2af1')),
    (_uuid16('ff00'), _uuid16('ff02')),
    ('49535343-fe7d-4ae5-8fa9-9fafd205e455', '49535343-8841-43f4-a8d4-ecbe34729bb3'),
)

MANUFACTURER_NAME_UUID = _uuid16('2a29')
WRITE_PROPERTIES = ('write', 'write-without-response')


def is_printer_advertisement(device, advertisement) -> bool:
    """Whether an advertisement looks like a receipt printer."""
    service_uuids = {u.lower() for u in (advertisement.service_uuids or [])}
    if service_uuids & PRINTER_SERVICE_UUIDS:
        return True
    name = device.name or advertisement.local_name or ''
    return any(name.startswith(prefix) for prefix in NAME_PREFIXES)


class BluetoothConnection(TransportDriver):
    """Drives Bluetooth LE printers through a writable GATT characteristic."""

    transport = TransportType.BLUETOOTH

    def __init__(self, config: dict = None):
        """
        Initialize Bluetooth driver.

        Args:
            config: ``bluetooth`` section of the configuration
        """
        super().__init__(config)
        self.scan_timeout = self.config.get('scan_timeout', 10)
        self.chunk_size = self.config.get('chunk_size', 180)

    async def scan_devices(self, timeout: Optional[float] = None) -> List[Dict]:
        """
        Scan for nearby printer-like devices.

        Returns:
            List of devices with format [{"name": str, "address": str, "rssi": int, "is_printer": bool}]
        """
        timeout = timeout or self.scan_timeout
        logger.info(f"[Bluetooth] Scanning for devices ({timeout}s)...")
        found = await BleakScanner.discover(timeout=timeout, return_adv=True)

        devices = []
        for device, advertisement in found.values():
            devices.append({
                'address': device.address,
                'name': device.name or advertisement.local_name or 'Unknown Device',
                'rssi': advertisement.rssi,
                'is_printer': is_printer_advertisement(device, advertisement),
            })
        logger.info(f"[Bluetooth] Found {len(devices)} devices")
        return devices

    async def connect(self, printer_id: str, display_name: str,
                      address: Optional[str] = None, **_) -> PrinterHandle:
        address = address or self.config.get('address')
        if address:
            logger.info(f"[Bluetooth] Looking up {address}...")
            device = await BleakScanner.find_device_by_address(address, timeout=self.scan_timeout)
        else:
            logger.info("[Bluetooth] Discovering printers by service and name filters...")
            device = await BleakScanner.find_device_by_filter(is_printer_advertisement,
                                                              timeout=self.scan_timeout)
        if device is None:
            raise DeviceNotFoundError(
                "No Bluetooth printer found. Make sure it is powered on and in range",
                context={'address': address} if address else None
            )

        handle = PrinterHandle(
            id=printer_id,
            display_name=display_name,
            transport=TransportType.BLUETOOTH,
        )

        def _on_disconnect(_client):
            logger.warning(f"[Bluetooth] '{printer_id}' dropped its GATT connection")
            handle.connected = False

        client = BleakClient(device, disconnected_callback=_on_disconnect)
        try:
            await client.connect()
        except (BleakError, asyncio.TimeoutError, OSError) as e:
            logger.error(f"[Bluetooth] Failed to connect to GATT server: {e}")
            raise ConnectError(
                "Failed to connect to GATT server",
                context={'address': device.address, 'error': str(e)}
            )
        handle.native_device = client

        try:
            handle.channel = self._find_channel(client)
        except ChannelNotFoundError:
            await self._close(client)
            raise

        await self._probe_capability(client)
        logger.info(f"[Bluetooth] Connected '{printer_id}' to {device.address} via {handle.channel[1]}")
        return handle

    def _find_channel(self, client) -> tuple:
        """
        Locate the characteristic that accepts print data.

        Returns:
            Tuple of (service uuid, characteristic uuid, write with response)

        Raises:
            ChannelNotFoundError: If no known or writable characteristic exists
        """
        services = client.services

        def lookup(pair):
            service = services.get_service(pair[0])
            if service is None:
                raise LookupError(f"service {pair[0]} missing")
            characteristic = service.get_characteristic(pair[1])
            if characteristic is None:
                raise LookupError(f"characteristic {pair[1]} missing")
            return characteristic

        try:
            pair, characteristic = CandidateProbe('GATT channel', CHANNEL_CANDIDATES).run(lookup)
            return pair[0], pair[1], 'write-without-response' not in characteristic.properties
        except ProbeExhausted as e:
            logger.debug(f"[Bluetooth] No vendor channel, trying generic fallback: {e}")

        for service in services:
            for characteristic in service.characteristics:
                if any(p in characteristic.properties for p in WRITE_PROPERTIES):
                    logger.info(f"[Bluetooth] Using generic writable characteristic {characteristic.uuid}")
                    return (service.uuid, characteristic.uuid,
                            'write-without-response' not in characteristic.properties)

        raise ChannelNotFoundError(
            "Connected, but no printer data channel found. Device may not be a supported printer",
            context={'address': client.address}
        )

    async def _probe_capability(self, client) -> None:
        try:
            manufacturer = await client.read_gatt_char(MANUFACTURER_NAME_UUID)
            logger.debug(f"[Bluetooth] Manufacturer: {bytes(manufacturer).decode('utf-8', 'replace')}")
        except Exception as e:
            logger.debug(f"[Bluetooth] Capability probe failed (continuing): {e}")

    async def send(self, handle: PrinterHandle, data: bytes) -> None:
        client = handle.native_device
        if client is None or not client.is_connected:
            handle.connected = False
            raise ConnectionLostError("Bluetooth connection lost", context={'printer_id': handle.id})

        _, characteristic, with_response = handle.channel
        try:
            for offset in range(0, len(data), self.chunk_size):
                await client.write_gatt_char(characteristic, data[offset:offset + self.chunk_size],
                                             response=with_response)
        except (BleakError, OSError) as e:
            logger.error(f"[Bluetooth] Write to '{handle.id}' failed: {e}")
            handle.connected = False
            raise ConnectionLostError(
                "Bluetooth write failed",
                context={'printer_id': handle.id, 'error': str(e)}
            )
        logger.info(f"[Bluetooth] Sent {len(data)} bytes to '{handle.id}'")

    async def is_alive(self, handle: PrinterHandle) -> bool:
        client = handle.native_device
        return bool(handle.connected and client is not None and client.is_connected)

    async def disconnect(self, handle: PrinterHandle) -> None:
        if handle.native_device is not None:
            await self._close(handle.native_device)
        handle.native_device = None
        handle.connected = False
        logger.info(f"[Bluetooth] Printer '{handle.id}' disconnected")

    async def _close(self, client) -> None:
        try:
            await client.disconnect()
        except Exception as e:
            logger.debug(f"[Bluetooth] Error during disconnect: {e}")
