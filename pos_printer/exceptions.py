"""
Custom exceptions for printer connectivity and print dispatch.

Every error carries a machine-readable ``reason`` code. Failed print jobs
record that code so callers can tell "no printer", "wrong printer" and
"printer busy/unreachable" apart.
"""


class PrinterError(Exception):
    """Base exception for all printer-related errors."""

    reason = 'printer_error'

    def __init__(self, message: str, context: dict = None):
        """
        Initialize printer error.

        Args:
            message: Error message
            context: Optional dictionary with additional error context
        """
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def __str__(self):
        if self.context:
            context_str = ", ".join(f"{k}={v}" for k, v in self.context.items())
            return f"{self.message} ({context_str})"
        return self.message


class ConnectError(PrinterError):
    """Base for errors raised while establishing a printer connection."""
    reason = 'connect_failed'


class SendError(PrinterError):
    """Base for errors raised while sending data to a connected printer."""
    reason = 'send_failed'


class UnsupportedEnvironmentError(ConnectError):
    """Raised when a transport's hardware API is missing or the request context is not trusted."""
    reason = 'unsupported_environment'


class DeviceNotFoundError(ConnectError):
    """Raised when no matching device is discovered during connect."""
    reason = 'device_not_found'


class ChannelNotFoundError(ConnectError):
    """Raised when a Bluetooth device has no usable print data channel."""
    reason = 'channel_not_found'


class ConnectionLostError(SendError):
    """
    Raised when a hardware link dropped after a successful connect.

    This is the error the health manager raises when a handle cannot be
    made usable again without operator action.
    """
    reason = 'connection_lost'


UnrecoverableError = ConnectionLostError


class TransferFailedError(SendError):
    """Raised when a send failed after exhausting every endpoint and chunking fallback."""
    reason = 'transfer_failed'

    def __init__(self, message: str, context: dict = None, fallback_available: bool = False):
        super().__init__(message, context)
        self.fallback_available = fallback_available


class PrinterNotConnectedError(PrinterError):
    """Raised when a job targets a printer id with no live handle."""
    reason = 'printer_not_connected'


class JobNotFoundError(PrinterError):
    """Raised when a job id is unknown to the queue."""
    reason = 'job_not_found'


class InvalidConfigurationError(PrinterError):
    """Raised when printer configuration is invalid."""
    reason = 'invalid_configuration'
