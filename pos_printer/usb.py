"""
USB connection management for thermal printers.
Handles device lookup, configuration and interface claiming, and bulk transfers.
"""

import asyncio
import logging
import time
from typing import Optional

import usb.core  # type: ignore
import usb.util  # type: ignore

from .base import TransportDriver
from .exceptions import ConnectError, ConnectionLostError, DeviceNotFoundError, TransferFailedError
from .models import PrinterHandle, TransportType
from .probe import CandidateProbe, ProbeExhausted

logger = logging.getLogger(__name__)

# Thermal printer and USB printer-class vendors
KNOWN_VENDOR_IDS = (
    0x04b8,  # Epson
    0x0519,  # Star Micronics
    0x1504,  # Bixolon
    0x0fe6,  # ICS / Gprinter
    0x0416,  # Winbond (common clones)
    0x0dd4,  # Custom Engineering
    0x1fc9,  # NXP based generics
    0x04f9,  # Brother
    0x28e9,  # GD32 based generics
)

CONFIGURATION_CANDIDATES = (1, 2)
INTERFACE_CANDIDATES = (0, 1, 2, 3, 4)
ENDPOINT_CANDIDATES = (2, 1, 3, 4, 5)
CHUNK_SIZE = 64


class USBConnection(TransportDriver):
    """Drives USB printers through raw bulk OUT transfers."""

    transport = TransportType.USB

    def __init__(self, config: dict = None):
        """
        Initialize USB driver.

        Args:
            config: ``usb`` section of the configuration
        """
        super().__init__(config)
        self.timeout_ms = self.config.get('timeout_ms', 5000)
        self.send_timeout = self.config.get('send_timeout', 20)

    async def connect(self, printer_id: str, display_name: str,
                      vendor_id: Optional[int] = None, product_id: Optional[int] = None,
                      **_) -> PrinterHandle:
        vendor_id = vendor_id or self.config.get('vendor_id')
        product_id = product_id or self.config.get('product_id')
        return await asyncio.to_thread(self._connect_blocking, printer_id, display_name,
                                       vendor_id, product_id)

    def _connect_blocking(self, printer_id, display_name, vendor_id, product_id) -> PrinterHandle:
        device = self._find_device(vendor_id, product_id)
        logger.info(f"[USB] Found device {device.idVendor:04x}:{device.idProduct:04x} for '{printer_id}'")

        handle = PrinterHandle(
            id=printer_id,
            display_name=display_name,
            transport=TransportType.USB,
            native_device=device,
        )

        try:
            configuration, _ = CandidateProbe('USB configuration', CONFIGURATION_CANDIDATES).run(
                lambda value: self._select_configuration(device, value)
            )
            handle.configuration = configuration
            self.claim_any_interface(handle)
        except (ProbeExhausted, ConnectionLostError) as e:
            logger.error(f"[USB] Could not prepare device for '{printer_id}': {e}")
            self._dispose(device)
            raise ConnectError(
                f"Failed to open USB printer {device.idVendor:04x}:{device.idProduct:04x}",
                context={'printer_id': printer_id, 'error': str(e)}
            )

        self._probe_capability(device)
        logger.info(
            f"[USB] Connected '{printer_id}' (configuration={handle.configuration}, "
            f"interface={handle.claimed_interface})"
        )
        return handle

    def _find_device(self, vendor_id: Optional[int], product_id: Optional[int]):
        """
        Locate the printer on the bus.

        Raises:
            DeviceNotFoundError: If no matching device is attached
        """
        if vendor_id and product_id:
            device = usb.core.find(idVendor=vendor_id, idProduct=product_id)
            context = {'vendor_id': hex(vendor_id), 'product_id': hex(product_id)}
        else:
            logger.info(f"[USB] Auto-detecting printer among {len(KNOWN_VENDOR_IDS)} known vendors...")
            device = usb.core.find(custom_match=lambda d: d.idVendor in KNOWN_VENDOR_IDS)
            context = {'vendor_ids': len(KNOWN_VENDOR_IDS)}

        if device is None:
            raise DeviceNotFoundError("No USB printer found", context=context)
        return device

    def _select_configuration(self, device, value: int) -> None:
        try:
            active = device.get_active_configuration()
            if active.bConfigurationValue == value:
                return
        except usb.core.USBError:
            pass  # not configured yet
        device.set_configuration(value)

    def claim_interface(self, handle: PrinterHandle, number: int) -> None:
        """
        Claim one interface, detaching the kernel driver if it holds it.

        Claiming an interface this process already holds succeeds.
        """
        device = handle.native_device
        try:
            if device.is_kernel_driver_active(number):
                device.detach_kernel_driver(number)
                logger.debug(f"[USB] Detached kernel driver from interface {number}")
        except NotImplementedError:
            pass  # not available on this platform
        usb.util.claim_interface(device, number)
        handle.claimed_interface = number

    def claim_any_interface(self, handle: PrinterHandle) -> int:
        """
        Claim the first interface from the ordered candidate list.

        Raises:
            ConnectionLostError: If no interface can be claimed
        """
        try:
            number, _ = CandidateProbe('USB interface', INTERFACE_CANDIDATES).run(
                lambda n: self.claim_interface(handle, n)
            )
        except ProbeExhausted as e:
            raise ConnectionLostError(
                "Could not claim any USB interface",
                context={'printer_id': handle.id, 'error': str(e)}
            )
        return number

    def reopen(self, handle: PrinterHandle) -> None:
        """
        Re-acquire the device object after it stopped answering.

        Raises:
            ConnectionLostError: If the device is no longer attached
        """
        old = handle.native_device
        vendor_id, product_id = old.idVendor, old.idProduct
        bus, address = getattr(old, 'bus', None), getattr(old, 'address', None)
        self._dispose(old)

        # Same port first, then anywhere on the bus if it was re-enumerated
        device = usb.core.find(idVendor=vendor_id, idProduct=product_id,
                               custom_match=lambda d: d.bus == bus and d.address == address)
        if device is None:
            device = usb.core.find(idVendor=vendor_id, idProduct=product_id)
        if device is None:
            handle.connected = False
            raise ConnectionLostError(
                "USB printer is no longer attached",
                context={'printer_id': handle.id, 'vendor_id': hex(vendor_id), 'product_id': hex(product_id)}
            )

        if handle.configuration is not None:
            try:
                self._select_configuration(device, handle.configuration)
            except usb.core.USBError as e:
                logger.debug(f"[USB] Could not restore configuration {handle.configuration}: {e}")
        handle.native_device = device
        logger.info(f"[USB] Re-opened device for '{handle.id}'")

    def _probe_capability(self, device) -> None:
        try:
            manufacturer = usb.util.get_string(device, device.iManufacturer)
            logger.debug(f"[USB] Manufacturer: {manufacturer}")
        except Exception as e:
            logger.debug(f"[USB] Capability probe failed (continuing): {e}")

    async def send(self, handle: PrinterHandle, data: bytes) -> None:
        await asyncio.to_thread(self._send_blocking, handle, data)

    def _send_blocking(self, handle: PrinterHandle, data: bytes) -> None:
        device = handle.native_device
        deadline = time.monotonic() + self.send_timeout
        probe = CandidateProbe('USB endpoint', ENDPOINT_CANDIDATES, remembered=handle.working_endpoint)
        try:
            endpoint, _ = probe.run(lambda ep: self._transfer(device, ep, data, deadline))
            handle.working_endpoint = endpoint
            logger.info(f"[USB] Sent {len(data)} bytes to '{handle.id}' on endpoint {endpoint}")
            return
        except ProbeExhausted as e:
            logger.warning(f"[USB] Single transfer failed on all endpoints, trying chunked transfer: {e}")

        preferred = handle.working_endpoint or ENDPOINT_CANDIDATES[0]
        try:
            for offset in range(0, len(data), CHUNK_SIZE):
                self._transfer(device, preferred, data[offset:offset + CHUNK_SIZE], deadline)
        except Exception as e:
            logger.error(f"[USB] Chunked transfer on endpoint {preferred} failed: {e}")
            raise TransferFailedError(
                "USB transfer failed on every endpoint",
                context={'printer_id': handle.id, 'endpoint': preferred, 'error': str(e)},
                fallback_available=True
            )
        handle.working_endpoint = preferred
        logger.info(f"[USB] Sent {len(data)} bytes to '{handle.id}' in {CHUNK_SIZE}-byte chunks")

    def _transfer(self, device, endpoint: int, data: bytes, deadline: float) -> None:
        remaining_ms = int((deadline - time.monotonic()) * 1000)
        if remaining_ms <= 0:
            raise usb.core.USBError(f"Send deadline of {self.send_timeout}s exceeded")
        written = device.write(endpoint, data, min(self.timeout_ms, remaining_ms))
        if written != len(data):
            raise usb.core.USBError(f"Short write on endpoint {endpoint}: {written}/{len(data)} bytes")

    async def is_alive(self, handle: PrinterHandle) -> bool:
        return await asyncio.to_thread(self._is_alive_blocking, handle)

    def _is_alive_blocking(self, handle: PrinterHandle) -> bool:
        if handle.native_device is None:
            return False
        try:
            handle.native_device.get_active_configuration()
            return True
        except usb.core.USBError as e:
            logger.warning(f"[USB] Device for '{handle.id}' not queryable: {e}")
            return False

    async def disconnect(self, handle: PrinterHandle) -> None:
        await asyncio.to_thread(self._disconnect_blocking, handle)

    def _disconnect_blocking(self, handle: PrinterHandle) -> None:
        device = handle.native_device
        if device is not None and handle.claimed_interface is not None:
            try:
                usb.util.release_interface(device, handle.claimed_interface)
                logger.debug(f"[USB] Released interface {handle.claimed_interface}")
            except Exception as e:
                logger.debug(f"[USB] Error releasing interface: {e}")
        self._dispose(device)
        handle.native_device = None
        handle.claimed_interface = None
        handle.connected = False
        logger.info(f"[USB] Printer '{handle.id}' disconnected")

    def _dispose(self, device) -> None:
        if device is None:
            return
        try:
            usb.util.dispose_resources(device)
        except Exception as e:
            logger.debug(f"[USB] Error during cleanup: {e}")
