"""
Unified printer management interface.
Provides a single entry point for connecting printers and dispatching print
jobs across Bluetooth, USB, serial and preview transports.
"""

import asyncio
import copy
import json
import logging
import threading
from typing import Dict, List, Optional

from . import capabilities
from .bluetooth import BluetoothConnection
from .exceptions import InvalidConfigurationError, PrinterNotConnectedError
from .health import HealthManager
from .models import JobStatus, PrinterHandle, PrintJob, TransportType
from .preview import PreviewConnection
from .print_queue import PrintQueue
from .registry import ConnectionRegistry
from .serial_port import SerialConnection
from .usb import USBConnection

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = {
    'server': {'host': '0.0.0.0', 'port': 5000, 'debug': False},
    'logging': {'level': 'INFO'},
    'print_queue': {'history_size': 100, 'transport_timeout': 30},
    'bluetooth': {'scan_timeout': 10, 'chunk_size': 180, 'address': None},
    'usb': {'vendor_id': None, 'product_id': None, 'timeout_ms': 5000, 'send_timeout': 20},
    'serial': {'port': None, 'timeout': 10, 'write_timeout': 10},
    'preview': {'output_dir': 'previews', 'font_size': 18, 'line_width': 42},
    'printers': [],
}


def _merge(base: dict, override: dict) -> dict:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def load_config(config_path: Optional[str]) -> dict:
    """
    Load configuration from file, filling gaps with defaults.

    Args:
        config_path: Path to configuration file, or None for defaults only

    Raises:
        InvalidConfigurationError: If config cannot be loaded
    """
    if config_path is None:
        return copy.deepcopy(DEFAULT_CONFIG)
    try:
        with open(config_path, 'r') as f:
            loaded = json.load(f)
    except Exception as e:
        logger.error(f"[Manager] Failed to load configuration: {e}")
        raise InvalidConfigurationError(
            f"Failed to load configuration from {config_path}",
            context={'path': config_path, 'error': str(e)}
        )
    if not isinstance(loaded, dict):
        raise InvalidConfigurationError(
            "Configuration must be a JSON object",
            context={'path': config_path, 'type': type(loaded).__name__}
        )
    logger.debug(f"[Manager] Configuration loaded from {config_path}")
    return _merge(DEFAULT_CONFIG, loaded)


class PrinterManager:
    """
    Process-wide printer service.

    Owns the connection registry, the print queue and a private asyncio
    event loop running in one background thread. The public methods are
    synchronous and safe to call from any thread (e.g. Flask request
    handlers); they hand the work to the loop and wait for the result.
    """

    def __init__(self, config_path: Optional[str] = 'config.json', config: Optional[dict] = None,
                 drivers: Optional[Dict[TransportType, object]] = None):
        """
        Initialize printer manager with configuration.

        Args:
            config_path: Path to configuration file
            config: Configuration dictionary, used instead of reading config_path
            drivers: Transport drivers keyed by transport type, defaults to the real ones
        """
        self.config_path = config_path
        self.config = _merge(DEFAULT_CONFIG, config) if config is not None else load_config(config_path)

        if drivers is None:
            drivers = {
                TransportType.BLUETOOTH: BluetoothConnection(self.config['bluetooth']),
                TransportType.USB: USBConnection(self.config['usb']),
                TransportType.SERIAL: SerialConnection(self.config['serial']),
                TransportType.PREVIEW: PreviewConnection(self.config['preview']),
            }
        self.registry = ConnectionRegistry(drivers)
        self.health = HealthManager(self.registry)

        queue_config = self.config['print_queue']
        self.queue = PrintQueue(
            self.registry,
            self.health,
            history_size=queue_config['history_size'],
            transport_timeout=queue_config['transport_timeout'],
        )

        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(target=self._loop.run_forever, name='print-dispatch', daemon=True)
        self._thread.start()

        logger.info("[Manager] " + "=" * 60)
        logger.info("[Manager] PrinterManager Initialization")
        logger.info(f"[Manager] Transports: {', '.join(t.value for t in drivers)}")
        logger.info(f"[Manager] Transport timeout: {queue_config['transport_timeout']}s")
        logger.info("[Manager] " + "=" * 60)

    def _run(self, coro, timeout: Optional[float] = None):
        future = asyncio.run_coroutine_threadsafe(coro, self._loop)
        return future.result(timeout)

    async def _call(self, fn, *args):
        """Run a plain function on the loop thread, where registry and queue state lives."""
        return fn(*args)

    def _save_config(self):
        """Save current configuration to file."""
        if not self.config_path:
            return
        try:
            with open(self.config_path, 'w') as f:
                json.dump(self.config, f, indent=2)
            logger.info("[Manager] Configuration saved successfully")
        except Exception as e:
            logger.error(f"[Manager] Failed to save configuration: {e}")

    # Connections

    async def _connect(self, transport: TransportType, printer_id: str, display_name: str,
                       secure_context: bool, selector: dict) -> bool:
        capabilities.require(transport.value, secure_context)
        driver = self.registry.drivers[transport]
        handle = await driver.connect(printer_id, display_name, **selector)
        await self.registry.add(handle)
        return True

    def _connect_sync(self, transport: TransportType, printer_id: str, display_name: str,
                      secure_context: bool, **selector) -> bool:
        logger.info(f"[Manager] Connecting '{printer_id}' via {transport.value}...")
        try:
            self._run(self._connect(transport, printer_id, display_name, secure_context, selector))
        except Exception as e:
            logger.error(f"[Manager] {transport.value} connection for '{printer_id}' failed: {e}")
            raise
        self._remember_printer(transport, printer_id, display_name, selector)
        return True

    def _remember_printer(self, transport: TransportType, printer_id: str, display_name: str, selector: dict):
        entry = {'id': printer_id, 'name': display_name, 'type': transport.value}
        entry.update({k: v for k, v in selector.items() if v is not None})
        saved = [p for p in self.config['printers'] if p.get('id') != printer_id]
        saved.append(entry)
        self.config['printers'] = saved
        self._save_config()

    def restore_saved_printers(self) -> Dict[str, bool]:
        """
        Reconnect every printer remembered in the configuration.

        Returns:
            Mapping of printer id to whether it reconnected
        """
        connectors = {
            'bluetooth': self.connect_bluetooth,
            'usb': self.connect_usb,
            'serial': self.connect_serial,
            'preview': self.connect_preview,
        }
        results = {}
        for entry in list(self.config['printers']):
            entry = dict(entry)
            printer_id = entry.pop('id', None)
            connector = connectors.get(entry.pop('type', None))
            if not printer_id or connector is None:
                logger.warning(f"[Manager] Skipping invalid saved printer entry: {entry}")
                continue
            name = entry.pop('name', printer_id)
            try:
                results[printer_id] = connector(printer_id, name, **entry)
            except Exception as e:
                logger.warning(f"[Manager] Could not restore '{printer_id}': {e}")
                results[printer_id] = False
        return results

    def connect_bluetooth(self, printer_id: str, display_name: str, address: Optional[str] = None,
                          secure_context: bool = True) -> bool:
        """
        Connect a Bluetooth LE printer.

        Args:
            printer_id: Logical printer id, e.g. "kitchen-1"
            display_name: Human readable name
            address: Device address, discovered by filters when omitted

        Returns:
            True if connection successful

        Raises:
            ConnectError: Typed failure (unsupported environment, not found, no channel)
        """
        return self._connect_sync(TransportType.BLUETOOTH, printer_id, display_name, secure_context,
                                  address=address)

    def connect_usb(self, printer_id: str, display_name: str, vendor_id: Optional[int] = None,
                    product_id: Optional[int] = None, secure_context: bool = True) -> bool:
        """Connect a USB printer. See connect_bluetooth() for return and errors."""
        return self._connect_sync(TransportType.USB, printer_id, display_name, secure_context,
                                  vendor_id=vendor_id, product_id=product_id)

    def connect_serial(self, printer_id: str, display_name: str, port: Optional[str] = None,
                       secure_context: bool = True) -> bool:
        """Connect a serial printer. See connect_bluetooth() for return and errors."""
        return self._connect_sync(TransportType.SERIAL, printer_id, display_name, secure_context,
                                  port=port)

    def connect_preview(self, printer_id: str, display_name: str) -> bool:
        return self._connect_sync(TransportType.PREVIEW, printer_id, display_name, True)

    def disconnect(self, printer_id: str):
        """Disconnect a printer. Unknown or already disconnected ids are ignored."""
        self._run(self.registry.disconnect(printer_id))
        logger.info(f"[Manager] Printer '{printer_id}' disconnected")

    def is_connected(self, printer_id: str) -> bool:
        return self._run(self._call(self.registry.is_connected, printer_id))

    def get_printer(self, printer_id: str) -> Optional[PrinterHandle]:
        return self._run(self._call(self.registry.get, printer_id))

    def get_connected_printers(self) -> List[PrinterHandle]:
        handles = self._run(self._call(self.registry.handles))
        return [handle for handle in handles if handle.connected]

    def scan_bluetooth_devices(self, timeout: int = 10) -> List[Dict]:
        """
        Scan for nearby Bluetooth devices.

        Returns:
            List of devices, empty if the scan failed
        """
        try:
            capabilities.require(TransportType.BLUETOOTH.value)
            driver = self.registry.drivers[TransportType.BLUETOOTH]
            devices = self._run(driver.scan_devices(timeout))
            logger.info(f"[Manager] Bluetooth scan found {len(devices)} devices")
            return devices
        except Exception as e:
            logger.error(f"[Manager] Bluetooth scan failed: {e}")
            return []

    def environment_status(self, secure_context: bool = True) -> dict:
        return capabilities.environment_report(secure_context)

    # Printing

    def print(self, printer_id: str, content: str) -> str:
        """
        Queue content for printing.

        Returns:
            Job id; poll get_job() or wait_for_job() for the outcome
        """
        job = self._run(self.queue.submit(printer_id, content))
        return job.id

    def get_job(self, job_id: str) -> PrintJob:
        return self._run(self._call(self.queue.get, job_id))

    def wait_for_job(self, job_id: str, timeout: Optional[float] = None) -> PrintJob:
        return self._run(self.queue.wait(job_id), timeout)

    def cancel_job(self, job_id: str) -> bool:
        return self._run(self._call(self.queue.cancel, job_id))

    def queue_status(self) -> dict:
        return self._run(self._call(self.queue.status))

    def print_preview_fallback(self, job_id: str, preview_id: str, display_name: str = 'Preview') -> str:
        """
        Re-print a failed job on a preview printer.

        Args:
            job_id: A job that failed with a transfer error
            preview_id: Preview printer id, connected on demand

        Returns:
            Id of the new preview job

        Raises:
            JobNotFoundError: If the job is unknown
            PrinterNotConnectedError: If preview_id names a hardware printer
            ValueError: If the job has not failed
        """
        job = self.get_job(job_id)
        if job.status != JobStatus.FAILED:
            raise ValueError(f"Job {job_id} is {job.status.value}, only failed jobs can fall back to preview")

        handle = self.get_printer(preview_id)
        if handle is None or not handle.connected:
            self.connect_preview(preview_id, display_name)
        elif handle.transport != TransportType.PREVIEW:
            raise PrinterNotConnectedError(
                "Fallback target is not a preview printer",
                context={'printer_id': preview_id, 'transport': handle.transport.value}
            )

        logger.info(f"[Manager] Falling back to preview '{preview_id}' for job {job_id}")
        return self.print(preview_id, job.content)

    def get_status(self) -> dict:
        return self._run(self._call(self._status_snapshot))

    def _status_snapshot(self) -> dict:
        return {
            'printers': [handle.to_dict() for handle in self.registry.handles()],
            'queue': self.queue.status(),
        }

    def shutdown(self):
        """Release every printer and stop the event loop."""
        try:
            self._run(self._shutdown(), timeout=30)
        except Exception as e:
            logger.debug(f"[Manager] Error during cleanup: {e}")
        self._loop.call_soon_threadsafe(self._loop.stop)
        self._thread.join(timeout=5)
        logger.info("[Manager] Shutdown complete")

    async def _shutdown(self):
        await self.queue.join()
        await self.registry.disconnect_all()
