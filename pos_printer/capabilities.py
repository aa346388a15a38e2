"""
Environment capability checks per transport.

Each check returns ``Supported`` or ``Unsupported(reason)`` and is run once
when a connection is requested.
"""

import logging
import platform
from dataclasses import dataclass
from typing import Union

import usb.backend.libusb1  # type: ignore

from .exceptions import UnsupportedEnvironmentError

logger = logging.getLogger(__name__)

BLUETOOTH_PLATFORMS = ('Linux', 'Darwin', 'Windows')


@dataclass(frozen=True)
class Supported:
    transport: str
    supported: bool = True
    message: str = 'ready to use'


@dataclass(frozen=True)
class Unsupported:
    transport: str
    reason: str
    supported: bool = False

    @property
    def message(self) -> str:
        return self.reason


Capability = Union[Supported, Unsupported]


def check_bluetooth() -> Capability:
    system = platform.system()
    if system not in BLUETOOTH_PLATFORMS:
        return Unsupported('bluetooth', f"Bluetooth LE is not supported on {system or 'this platform'}")
    return Supported('bluetooth')


def check_usb(secure_context: bool = True) -> Capability:
    if not secure_context:
        return Unsupported('usb', 'USB access requires HTTPS or a local connection')
    if usb.backend.libusb1.get_backend() is None:
        return Unsupported('usb', 'libusb backend not available. Install libusb-1.0')
    return Supported('usb')


def check_serial(secure_context: bool = True) -> Capability:
    if not secure_context:
        return Unsupported('serial', 'Serial access requires HTTPS or a local connection')
    return Supported('serial')


def check_preview() -> Capability:
    return Supported('preview')


CHECKS = {
    'bluetooth': lambda secure_context: check_bluetooth(),
    'usb': check_usb,
    'serial': check_serial,
    'preview': lambda secure_context: check_preview(),
}


def require(transport: str, secure_context: bool = True) -> None:
    """
    Raise if the transport cannot be used in this environment.

    Raises:
        UnsupportedEnvironmentError: If the capability check fails
    """
    result = CHECKS[transport](secure_context)
    if not result.supported:
        logger.warning(f"[Capabilities] {transport} unavailable: {result.message}")
        raise UnsupportedEnvironmentError(result.message, context={'transport': transport})


def environment_report(secure_context: bool = True) -> dict:
    """Capability of every transport, keyed by transport name."""
    report = {}
    for transport, check in CHECKS.items():
        result = check(secure_context)
        report[transport] = {'supported': result.supported, 'message': result.message}
    return report
