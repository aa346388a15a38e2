"""Tests for environment capability checks."""

import pytest
import usb.backend.libusb1  # type: ignore

from pos_printer import capabilities
from pos_printer.exceptions import UnsupportedEnvironmentError


def test_usb_and_serial_need_secure_context():
    assert capabilities.check_usb(secure_context=True).supported
    assert not capabilities.check_usb(secure_context=False).supported
    assert not capabilities.check_serial(secure_context=False).supported
    assert capabilities.check_serial(secure_context=True).supported


def test_usb_needs_libusb(monkeypatch):
    monkeypatch.setattr(usb.backend.libusb1, 'get_backend', lambda *args, **kwargs: None)
    result = capabilities.check_usb()
    assert not result.supported
    assert 'libusb' in result.message


def test_bluetooth_platforms(monkeypatch):
    monkeypatch.setattr(capabilities.platform, 'system', lambda: 'Linux')
    assert capabilities.check_bluetooth().supported

    monkeypatch.setattr(capabilities.platform, 'system', lambda: 'Emscripten')
    assert not capabilities.check_bluetooth().supported


def test_preview_always_supported():
    assert capabilities.check_preview().supported


def test_require_raises_typed_error():
    with pytest.raises(UnsupportedEnvironmentError) as excinfo:
        capabilities.require('serial', secure_context=False)
    assert excinfo.value.reason == 'unsupported_environment'


def test_environment_report_covers_every_transport():
    report = capabilities.environment_report(secure_context=False)
    assert set(report) == {'bluetooth', 'usb', 'serial', 'preview'}
    assert report['preview'] == {'supported': True, 'message': 'ready to use'}
    assert report['usb']['supported'] is False
