"""
Printer handle and print job records.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class TransportType(str, Enum):
    BLUETOOTH = 'bluetooth'
    USB = 'usb'
    SERIAL = 'serial'
    PREVIEW = 'preview'


class JobStatus(str, Enum):
    PENDING = 'pending'
    PRINTING = 'printing'
    COMPLETED = 'completed'
    FAILED = 'failed'

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


_TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.PRINTING, JobStatus.FAILED},
    JobStatus.PRINTING: {JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
}


@dataclass
class PrinterHandle:
    """Identity and live hardware binding of one logical printer."""

    id: str
    display_name: str
    transport: TransportType
    connected: bool = True
    native_device: Any = field(default=None, repr=False)
    claimed_interface: Optional[int] = None
    working_endpoint: Optional[int] = None
    configuration: Optional[int] = None
    baud_rate: Optional[int] = None
    channel: Optional[tuple] = None
    connected_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'name': self.display_name,
            'transport': self.transport.value,
            'connected': self.connected,
            'claimed_interface': self.claimed_interface,
            'working_endpoint': self.working_endpoint,
            'configuration': self.configuration,
            'baud_rate': self.baud_rate,
            'channel': list(self.channel) if self.channel else None,
            'connected_at': self.connected_at.isoformat(),
        }


@dataclass
class PrintJob:
    """A unit of dispatch work. Only the print queue changes its status."""

    printer_id: str
    content: str
    id: str = field(default_factory=lambda: f"job_{uuid.uuid4().hex}")
    status: JobStatus = JobStatus.PENDING
    created_at: datetime = field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    reason: Optional[str] = None
    error: Optional[str] = None
    preview: Any = field(default=None, repr=False)

    def transition(self, status: JobStatus) -> None:
        """
        Move the job forward.

        Raises:
            ValueError: If the transition would go backwards or leave a terminal state
        """
        if status not in _TRANSITIONS[self.status]:
            raise ValueError(f"Invalid job transition {self.status.value} -> {status.value}")
        self.status = status
        if status == JobStatus.PRINTING:
            self.started_at = utcnow()
        elif status.is_terminal:
            self.finished_at = utcnow()

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'printer_id': self.printer_id,
            'status': self.status.value,
            'created_at': self.created_at.isoformat(),
            'started_at': self.started_at.isoformat() if self.started_at else None,
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
            'reason': self.reason,
            'error': self.error,
            'has_preview': self.preview is not None,
        }
