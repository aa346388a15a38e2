import asyncio
from typing import Any, List, Optional

import pytest
import usb.backend.libusb1  # type: ignore

from pos_printer.base import TransportDriver
from pos_printer.health import HealthManager
from pos_printer.manager import PrinterManager
from pos_printer.models import PrinterHandle, TransportType
from pos_printer.preview import PreviewConnection
from pos_printer.print_queue import PrintQueue
from pos_printer.registry import ConnectionRegistry


class FakeDriver(TransportDriver):
    """Driver double that records every call instead of touching hardware."""

    def __init__(self, transport: TransportType, delay: float = 0, fail_with: Optional[Exception] = None):
        super().__init__({})
        self.transport = transport
        self.delay = delay
        self.fail_with = fail_with
        self.connect_error: Optional[Exception] = None
        self.on_send = None
        self.sent: List[Any] = []
        self.released: List[str] = []

    async def connect(self, printer_id, display_name, **selector):
        if self.connect_error is not None:
            raise self.connect_error
        return PrinterHandle(id=printer_id, display_name=display_name,
                             transport=self.transport, native_device=object())

    async def send(self, handle, data):
        if self.on_send is not None:
            self.on_send(handle)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_with is not None:
            raise self.fail_with
        self.sent.append((handle.id, data))

    async def disconnect(self, handle):
        self.released.append(handle.id)
        handle.connected = False

    async def is_alive(self, handle):
        return handle.connected

    # USB recovery hooks used by the health manager
    def reopen(self, handle):
        pass

    def claim_interface(self, handle, number):
        handle.claimed_interface = number

    def claim_any_interface(self, handle):
        handle.claimed_interface = 0
        return 0


@pytest.fixture(autouse=True)
def libusb_available(monkeypatch):
    monkeypatch.setattr(usb.backend.libusb1, 'get_backend', lambda *args, **kwargs: object())


@pytest.fixture
def fake_drivers(tmp_path):
    return {
        TransportType.BLUETOOTH: FakeDriver(TransportType.BLUETOOTH),
        TransportType.USB: FakeDriver(TransportType.USB),
        TransportType.SERIAL: FakeDriver(TransportType.SERIAL),
        TransportType.PREVIEW: PreviewConnection({'output_dir': str(tmp_path / 'previews')}),
    }


@pytest.fixture
def registry(fake_drivers):
    return ConnectionRegistry(fake_drivers)


@pytest.fixture
def print_queue(registry):
    return PrintQueue(registry, HealthManager(registry), history_size=10, transport_timeout=5)


@pytest.fixture
def manager(fake_drivers):
    printer_manager = PrinterManager(
        config_path=None,
        config={'print_queue': {'transport_timeout': 5}},
        drivers=fake_drivers,
    )
    yield printer_manager
    printer_manager.shutdown()
