"""Tests for the Bluetooth LE driver with bleak mocked out."""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest
from bleak.exc import BleakError  # type: ignore

from pos_printer.bluetooth import (
    BluetoothConnection, CHANNEL_CANDIDATES, _uuid16, is_printer_advertisement,
)
from pos_printer.exceptions import ChannelNotFoundError, ConnectError, ConnectionLostError, DeviceNotFoundError
from pos_printer.models import PrinterHandle, TransportType


class FakeService:

    def __init__(self, uuid, characteristics):
        self.uuid = uuid
        self.characteristics = characteristics

    def get_characteristic(self, uuid):
        for characteristic in self.characteristics:
            if characteristic.uuid == uuid:
                return characteristic
        return None


class FakeServices:

    def __init__(self, *services):
        self._services = list(services)

    def get_service(self, uuid):
        for service in self._services:
            if service.uuid == uuid:
                return service
        return None

    def __iter__(self):
        return iter(self._services)


def characteristic(uuid, *properties):
    return SimpleNamespace(uuid=uuid, properties=list(properties))


def make_client(services):
    client = MagicMock()
    client.address = 'AA:BB:CC:DD:EE:FF'
    client.services = services
    client.is_connected = True
    client.connect = AsyncMock()
    client.disconnect = AsyncMock()
    client.write_gatt_char = AsyncMock()
    client.read_gatt_char = AsyncMock(return_value=bytearray(b'ACME'))
    return client


def make_scanner(device):
    scanner = MagicMock()
    scanner.find_device_by_address = AsyncMock(return_value=device)
    scanner.find_device_by_filter = AsyncMock(return_value=device)
    return scanner


VENDOR_SERVICES = FakeServices(
    FakeService(_uuid16('18f0'), [characteristic(_uuid16('2af1'), 'write', 'write-without-response')]),
)


class TestChannelLookup:

    def test_known_channel_is_used(self):
        service, char, with_response = BluetoothConnection()._find_channel(make_client(VENDOR_SERVICES))
        assert (service, char) == CHANNEL_CANDIDATES[2]
        assert with_response is False

    def test_candidate_order_wins_over_service_order(self):
        services = FakeServices(
            FakeService(_uuid16('18f0'), [characteristic(_uuid16('2af1'), 'write')]),
            FakeService(_uuid16('ae30'), [characteristic(_uuid16('ae01'), 'write')]),
        )
        service, char, with_response = BluetoothConnection()._find_channel(make_client(services))
        assert (service, char) == CHANNEL_CANDIDATES[0]
        assert with_response is True

    def test_generic_writable_fallback(self):
        services = FakeServices(
            FakeService(_uuid16('180a'), [characteristic(_uuid16('2a29'), 'read')]),
            FakeService('0000abcd-0000-1000-8000-00805f9b34fb',
                        [characteristic('0000abce-0000-1000-8000-00805f9b34fb', 'write')]),
        )
        _, char, _ = BluetoothConnection()._find_channel(make_client(services))
        assert char == '0000abce-0000-1000-8000-00805f9b34fb'

    def test_no_writable_characteristic(self):
        services = FakeServices(FakeService(_uuid16('180a'), [characteristic(_uuid16('2a29'), 'read')]))
        with pytest.raises(ChannelNotFoundError):
            BluetoothConnection()._find_channel(make_client(services))


class TestConnect:

    async def test_connect_by_filter(self):
        device = SimpleNamespace(address='AA:BB:CC:DD:EE:FF', name='POS-80')
        client = make_client(VENDOR_SERVICES)
        scanner = make_scanner(device)

        with patch('pos_printer.bluetooth.BleakScanner', scanner), \
                patch('pos_printer.bluetooth.BleakClient', return_value=client):
            handle = await BluetoothConnection().connect('counter-1', 'Counter')

        scanner.find_device_by_filter.assert_awaited_once()
        assert handle.native_device is client
        assert handle.channel[1] == _uuid16('2af1')
        assert handle.transport == TransportType.BLUETOOTH

    async def test_connect_by_address(self):
        device = SimpleNamespace(address='11:22:33:44:55:66', name=None)
        scanner = make_scanner(device)

        with patch('pos_printer.bluetooth.BleakScanner', scanner), \
                patch('pos_printer.bluetooth.BleakClient', return_value=make_client(VENDOR_SERVICES)):
            await BluetoothConnection().connect('counter-1', 'Counter', address='11:22:33:44:55:66')

        assert scanner.find_device_by_address.await_args.args[0] == '11:22:33:44:55:66'

    async def test_no_device(self):
        with patch('pos_printer.bluetooth.BleakScanner', make_scanner(None)):
            with pytest.raises(DeviceNotFoundError):
                await BluetoothConnection().connect('counter-1', 'Counter')

    async def test_gatt_failure_is_connect_error(self):
        device = SimpleNamespace(address='AA:BB:CC:DD:EE:FF', name='POS-80')
        client = make_client(VENDOR_SERVICES)
        client.connect.side_effect = BleakError("Connection refused")

        with patch('pos_printer.bluetooth.BleakScanner', make_scanner(device)), \
                patch('pos_printer.bluetooth.BleakClient', return_value=client):
            with pytest.raises(ConnectError) as excinfo:
                await BluetoothConnection().connect('counter-1', 'Counter')

        assert excinfo.value.reason == 'connect_failed'

    async def test_missing_channel_closes_client(self):
        device = SimpleNamespace(address='AA:BB:CC:DD:EE:FF', name='Headphones')
        client = make_client(FakeServices())

        with patch('pos_printer.bluetooth.BleakScanner', make_scanner(device)), \
                patch('pos_printer.bluetooth.BleakClient', return_value=client):
            with pytest.raises(ChannelNotFoundError):
                await BluetoothConnection().connect('counter-1', 'Counter')

        client.disconnect.assert_awaited_once()

    async def test_disconnect_callback_marks_handle(self):
        device = SimpleNamespace(address='AA:BB:CC:DD:EE:FF', name='POS-80')
        client = make_client(VENDOR_SERVICES)

        with patch('pos_printer.bluetooth.BleakScanner', make_scanner(device)), \
                patch('pos_printer.bluetooth.BleakClient', return_value=client) as client_cls:
            handle = await BluetoothConnection().connect('counter-1', 'Counter')

        client_cls.call_args.kwargs['disconnected_callback'](client)
        assert not handle.connected


class TestSend:

    def make_handle(self, client):
        return PrinterHandle(id='counter-1', display_name='Counter', transport=TransportType.BLUETOOTH,
                             native_device=client, channel=(_uuid16('18f0'), _uuid16('2af1'), False))

    async def test_writes_in_chunks(self):
        client = make_client(VENDOR_SERVICES)

        await BluetoothConnection({'chunk_size': 4}).send(self.make_handle(client), b'0123456789')

        chunks = [c.args[1] for c in client.write_gatt_char.await_args_list]
        assert chunks == [b'0123', b'4567', b'89']
        assert all(c.kwargs['response'] is False for c in client.write_gatt_char.await_args_list)

    async def test_dropped_link_is_connection_lost(self):
        client = make_client(VENDOR_SERVICES)
        client.is_connected = False
        handle = self.make_handle(client)

        with pytest.raises(ConnectionLostError):
            await BluetoothConnection().send(handle, b'data')

        client.write_gatt_char.assert_not_awaited()
        assert not handle.connected

    async def test_write_error_is_connection_lost(self):
        client = make_client(VENDOR_SERVICES)
        client.write_gatt_char.side_effect = BleakError("Not connected")

        with pytest.raises(ConnectionLostError):
            await BluetoothConnection().send(self.make_handle(client), b'data')


def test_printer_advertisement_filter():
    adv = SimpleNamespace(service_uuids=[], local_name=None)
    assert is_printer_advertisement(SimpleNamespace(name='POS-5805'), adv)
    assert not is_printer_advertisement(SimpleNamespace(name='Pixel Buds'), adv)

    adv = SimpleNamespace(service_uuids=[_uuid16('18F0').upper()], local_name=None)
    assert is_printer_advertisement(SimpleNamespace(name=None), adv)


async def test_scan_reports_printer_flag():
    found = {
        'AA': (SimpleNamespace(address='AA', name='Thermal-58'),
               SimpleNamespace(local_name=None, rssi=-60, service_uuids=[])),
        'BB': (SimpleNamespace(address='BB', name=None),
               SimpleNamespace(local_name=None, rssi=-80, service_uuids=[])),
    }
    scanner = MagicMock()
    scanner.discover = AsyncMock(return_value=found)

    with patch('pos_printer.bluetooth.BleakScanner', scanner):
        devices = await BluetoothConnection().scan_devices(timeout=1)

    assert devices == [
        {'address': 'AA', 'name': 'Thermal-58', 'rssi': -60, 'is_printer': True},
        {'address': 'BB', 'name': 'Unknown Device', 'rssi': -80, 'is_printer': False},
    ]
