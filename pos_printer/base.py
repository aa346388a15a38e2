"""
Common contract for transport drivers.
"""

from abc import ABC, abstractmethod

from .models import PrinterHandle, TransportType


class TransportDriver(ABC):
    """Uniform connect/send/disconnect contract over one hardware API."""

    transport: TransportType

    def __init__(self, config: dict = None):
        self.config = config or {}

    @abstractmethod
    async def connect(self, printer_id: str, display_name: str, **selector) -> PrinterHandle:
        """
        Open the device and return a live handle.

        Raises:
            ConnectError: If the device cannot be found or opened
        """

    @abstractmethod
    async def send(self, handle: PrinterHandle, data: bytes) -> None:
        """
        Write an encoded command stream to the printer.

        Raises:
            SendError: If the data could not be delivered
        """

    @abstractmethod
    async def disconnect(self, handle: PrinterHandle) -> None:
        """Release the native device. Never raises."""

    @abstractmethod
    async def is_alive(self, handle: PrinterHandle) -> bool:
        """Whether the native connection still looks usable."""
