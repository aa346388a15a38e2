import ipaddress
import logging
import os

from flask import Flask, request, jsonify, send_file  # type: ignore
from flask_cors import CORS  # type: ignore

from pos_printer.exceptions import PrinterError, JobNotFoundError
from pos_printer.manager import PrinterManager

logger = logging.getLogger(__name__)

CONNECTION_TYPES = ('bluetooth', 'usb', 'serial', 'preview')

ERROR_STATUS = {
    'unsupported_environment': 403,
    'device_not_found': 404,
    'job_not_found': 404,
    'channel_not_found': 422,
    'printer_not_connected': 409,
    'invalid_configuration': 400,
}


def _parse_int(value):
    """Accept ints or strings like "0x04b8" / "1208"."""
    if value is None or isinstance(value, int):
        return value
    return int(str(value), 0)


class Router:

    def __init__(self, printer_manager: PrinterManager):
        """Initialize Flask app and routes."""
        self.printer_manager = printer_manager

        # Create Flask app instance
        self.app = Flask(__name__)
        CORS(self.app)

        # Register routes with decorators
        self._register_routes()

    def _register_routes(self):
        """Register all Flask routes with decorators."""
        self.app.route('/api/printers', methods=['GET'])(self.list_printers)
        self.app.route('/api/printers/environment', methods=['GET'])(self.get_environment)
        self.app.route('/api/printers/bluetooth/scan', methods=['GET'])(self.scan_bluetooth)
        self.app.route('/api/printers/<printer_id>', methods=['GET'])(self.get_printer)
        self.app.route('/api/printers/<printer_id>/connect', methods=['POST'])(self.connect_printer)
        self.app.route('/api/printers/<printer_id>/disconnect', methods=['POST'])(self.disconnect_printer)
        self.app.route('/api/print', methods=['POST'])(self.print_content)
        self.app.route('/api/jobs/<job_id>', methods=['GET'])(self.get_job)
        self.app.route('/api/jobs/<job_id>/cancel', methods=['POST'])(self.cancel_job)
        self.app.route('/api/jobs/<job_id>/preview', methods=['POST'])(self.preview_fallback)
        self.app.route('/api/previews/<job_id>', methods=['GET'])(self.get_preview)
        self.app.route('/api/previews/<job_id>/print', methods=['GET'])(self.get_preview_page)
        self.app.route('/api/queue', methods=['GET'])(self.get_queue_status)

    def _is_secure_context(self) -> bool:
        """HTTPS requests and requests from this machine are trusted."""
        if request.is_secure:
            return True
        try:
            return ipaddress.ip_address(request.remote_addr or '').is_loopback
        except ValueError:
            return False

    def _error_response(self, error: PrinterError, default_status: int = 500):
        status = ERROR_STATUS.get(error.reason, default_status)
        return jsonify({'success': False, 'error': str(error), 'reason': error.reason}), status

    def list_printers(self):
        """
        Get printers currently held by the registry.

        Returns:
            JSON array of printer handles
        """
        printers = self.printer_manager.get_connected_printers()
        return jsonify([p.to_dict() for p in printers]), 200

    def get_environment(self):
        """Report which transports can be used from this request."""
        return jsonify(self.printer_manager.environment_status(self._is_secure_context())), 200

    def scan_bluetooth(self):
        """
        Scan for nearby Bluetooth devices.

        Query Parameters:
            - timeout: Scan duration in seconds (default: 10)

        Returns:
            JSON with list of discovered devices
        """
        timeout = request.args.get('timeout', 10, type=int)

        # Limit timeout to reasonable range
        timeout = max(5, min(timeout, 30))

        devices = self.printer_manager.scan_bluetooth_devices(timeout)
        return jsonify({
            'success': True,
            'devices': devices,
            'count': len(devices)
        }), 200

    def get_printer(self, printer_id):
        handle = self.printer_manager.get_printer(printer_id)
        if handle is None:
            return jsonify({'error': 'Printer not found'}), 404
        return jsonify(handle.to_dict()), 200

    def connect_printer(self, printer_id):
        """
        Connect a printer under a logical id.

        Body:
            - type: 'bluetooth', 'usb', 'serial' or 'preview'
            - name: Display name (default: printer id)
            - address: Bluetooth address (optional)
            - vendor_id / product_id: USB ids (optional)
            - port: Serial port (optional)

        Returns:
            JSON with connection status
        """
        data = request.get_json(silent=True) or {}
        conn_type = data.get('type')
        name = data.get('name') or printer_id

        if conn_type not in CONNECTION_TYPES:
            return jsonify({
                'success': False,
                'error': f'Invalid type. Must be one of: {", ".join(CONNECTION_TYPES)}'
            }), 400

        logger.info(f"API: {conn_type} connect request for '{printer_id}'")
        secure = self._is_secure_context()

        try:
            if conn_type == 'bluetooth':
                self.printer_manager.connect_bluetooth(printer_id, name, address=data.get('address'),
                                                       secure_context=secure)
            elif conn_type == 'usb':
                self.printer_manager.connect_usb(printer_id, name,
                                                 vendor_id=_parse_int(data.get('vendor_id')),
                                                 product_id=_parse_int(data.get('product_id')),
                                                 secure_context=secure)
            elif conn_type == 'serial':
                self.printer_manager.connect_serial(printer_id, name, port=data.get('port'),
                                                    secure_context=secure)
            else:
                self.printer_manager.connect_preview(printer_id, name)
        except ValueError as e:
            return jsonify({'success': False, 'error': f'Invalid device id: {e}'}), 400
        except PrinterError as e:
            logger.error(f"API: Connection failed for '{printer_id}': {e}")
            return self._error_response(e)

        return jsonify({
            'success': True,
            'printer': self.printer_manager.get_printer(printer_id).to_dict()
        }), 200

    def disconnect_printer(self, printer_id):
        self.printer_manager.disconnect(printer_id)
        return jsonify({'success': True, 'message': 'Printer disconnected'}), 200

    def print_content(self):
        """
        Queue receipt text for printing.

        Body:
            - printer_id: Target printer
            - content: Plain text receipt

        Returns:
            JSON with the job id
        """
        data = request.get_json(silent=True) or {}
        printer_id = data.get('printer_id')
        content = data.get('content')

        if not printer_id or not isinstance(content, str):
            return jsonify({'error': 'printer_id and content are required'}), 400

        job_id = self.printer_manager.print(printer_id, content)
        return jsonify({'success': True, 'job_id': job_id}), 202

    def get_job(self, job_id):
        try:
            job = self.printer_manager.get_job(job_id)
        except JobNotFoundError as e:
            return self._error_response(e)
        return jsonify(job.to_dict()), 200

    def cancel_job(self, job_id):
        try:
            cancelled = self.printer_manager.cancel_job(job_id)
        except JobNotFoundError as e:
            return self._error_response(e)
        if not cancelled:
            return jsonify({'success': False, 'error': 'Job already started'}), 409
        return jsonify({'success': True}), 200

    def preview_fallback(self, job_id):
        """
        Re-print a failed job on a preview printer.

        Body:
            - printer_id: Preview printer id (default: "preview")
        """
        data = request.get_json(silent=True) or {}
        preview_id = data.get('printer_id') or 'preview'
        try:
            new_job_id = self.printer_manager.print_preview_fallback(job_id, preview_id)
        except ValueError as e:
            return jsonify({'success': False, 'error': str(e)}), 409
        except PrinterError as e:
            return self._error_response(e)
        return jsonify({'success': True, 'job_id': new_job_id}), 202

    def _preview_document(self, job_id):
        job = self.printer_manager.get_job(job_id)
        return job.preview

    def get_preview(self, job_id):
        """Serve the PNG rendering of a preview job."""
        try:
            document = self._preview_document(job_id)
        except JobNotFoundError as e:
            return self._error_response(e)
        if document is None or not document.path or not os.path.exists(document.path):
            return jsonify({'error': 'Preview not found'}), 404
        return send_file(os.path.abspath(document.path), mimetype='image/png')

    def get_preview_page(self, job_id):
        """Serve a page that opens the system print dialog for a preview job."""
        try:
            document = self._preview_document(job_id)
        except JobNotFoundError as e:
            return self._error_response(e)
        if document is None:
            return jsonify({'error': 'Preview not found'}), 404
        return document.to_html(), 200, {'Content-Type': 'text/html; charset=utf-8'}

    def get_queue_status(self):
        return jsonify(self.printer_manager.queue_status()), 200
