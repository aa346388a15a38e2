"""
Pre-send health checks and in-place recovery of printer handles.

USB handles are repaired automatically by re-opening the device and
re-claiming an interface. Bluetooth and serial handles need the operator
to reconnect, since pairing and port selection cannot be automated.
"""

import asyncio
import logging

from .exceptions import ConnectionLostError
from .models import PrinterHandle, TransportType

logger = logging.getLogger(__name__)


class HealthManager:
    """Verifies a handle is usable right before every send."""

    def __init__(self, registry):
        self.registry = registry

    async def ensure_usable(self, handle: PrinterHandle) -> None:
        """
        Make sure the handle can accept a send.

        Raises:
            ConnectionLostError: If the handle cannot be made usable
        """
        if handle.transport == TransportType.PREVIEW:
            return
        if handle.transport == TransportType.USB:
            await self._recover_usb(handle)
            return

        driver = self.registry.drivers[handle.transport]
        if not await driver.is_alive(handle):
            handle.connected = False
            logger.warning(f"[Health] '{handle.id}' is no longer connected, operator must reconnect")
            raise ConnectionLostError(
                f"{handle.transport.value} printer connection lost, reconnect required",
                context={'printer_id': handle.id}
            )

    async def _recover_usb(self, handle: PrinterHandle) -> None:
        driver = self.registry.drivers[TransportType.USB]

        if not await driver.is_alive(handle):
            logger.info(f"[Health] Re-opening USB device for '{handle.id}'")
            await asyncio.to_thread(driver.reopen, handle)

        previous = handle.claimed_interface
        if previous is not None:
            try:
                await asyncio.to_thread(driver.claim_interface, handle, previous)
                handle.connected = True
                return
            except Exception as e:
                logger.info(f"[Health] Interface {previous} unavailable for '{handle.id}' ({e}), probing others")

        try:
            number = await asyncio.to_thread(driver.claim_any_interface, handle)
        except ConnectionLostError:
            handle.connected = False
            raise
        logger.info(f"[Health] '{handle.id}' now using interface {number}")
        handle.connected = True
