"""
Registry of live printer handles, one per logical printer id.
"""

import logging
from typing import Dict, List, Optional

from .base import TransportDriver
from .models import PrinterHandle, TransportType

logger = logging.getLogger(__name__)


class ConnectionRegistry:
    """Owns every live PrinterHandle and releases it through its driver."""

    def __init__(self, drivers: Dict[TransportType, TransportDriver]):
        self.drivers = drivers
        self._handles: Dict[str, PrinterHandle] = {}

    def get(self, printer_id: str) -> Optional[PrinterHandle]:
        return self._handles.get(printer_id)

    def handles(self) -> List[PrinterHandle]:
        return list(self._handles.values())

    def is_connected(self, printer_id: str) -> bool:
        handle = self._handles.get(printer_id)
        return bool(handle and handle.connected)

    async def add(self, handle: PrinterHandle) -> None:
        """Register a handle, releasing any previous handle for the same id."""
        previous = self._handles.get(handle.id)
        if previous is not None and previous is not handle:
            logger.info(f"[Registry] Replacing existing handle for '{handle.id}'")
            await self._release(previous)
        self._handles[handle.id] = handle
        logger.info(f"[Registry] '{handle.id}' registered ({handle.transport.value})")

    def remove(self, printer_id: str) -> Optional[PrinterHandle]:
        """Forget a handle without releasing its native device."""
        return self._handles.pop(printer_id, None)

    async def disconnect(self, printer_id: str) -> None:
        """Release and forget a printer. Unknown ids are ignored."""
        handle = self.remove(printer_id)
        if handle is None:
            logger.debug(f"[Registry] Disconnect for unknown printer '{printer_id}' ignored")
            return
        await self._release(handle)

    async def disconnect_all(self) -> None:
        for printer_id in list(self._handles):
            await self.disconnect(printer_id)

    async def _release(self, handle: PrinterHandle) -> None:
        try:
            await self.drivers[handle.transport].disconnect(handle)
        except Exception as e:
            logger.warning(f"[Registry] Error releasing '{handle.id}': {e}")
        handle.connected = False
