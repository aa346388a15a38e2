"""
FIFO print queue with a single drain task.

Jobs for every printer share one queue and run strictly one at a time, so
two transports are never driven concurrently from this process.
"""

import asyncio
import logging
from collections import OrderedDict, deque
from typing import Deque, Dict, List, Optional

from .encoder import encode
from .exceptions import ConnectionLostError, JobNotFoundError, PrinterError, PrinterNotConnectedError
from .models import JobStatus, PrintJob

logger = logging.getLogger(__name__)


class PrintQueue:
    """Serializes print requests and records each job's terminal state."""

    def __init__(self, registry, health, history_size: int = 100, transport_timeout: Optional[float] = 30.0):
        """
        Args:
            registry: ConnectionRegistry used to resolve printer ids at execution time
            health: HealthManager consulted before every send
            history_size: Number of finished jobs kept for status queries
            transport_timeout: Seconds allowed per transport call, None for no limit
        """
        self.registry = registry
        self.health = health
        self.history_size = history_size
        self.transport_timeout = transport_timeout

        self._pending: Deque[PrintJob] = deque()
        self._active: Dict[str, PrintJob] = {}
        self._history: "OrderedDict[str, PrintJob]" = OrderedDict()
        self._finished: Dict[str, asyncio.Event] = {}
        self._running = False
        self._drain_task: Optional[asyncio.Task] = None
        self._in_flight: Optional[asyncio.Future] = None

    async def submit(self, printer_id: str, content: str) -> PrintJob:
        """Queue a job and make sure the drain task is running."""
        job = PrintJob(printer_id=printer_id, content=content)
        self._pending.append(job)
        self._active[job.id] = job
        self._finished[job.id] = asyncio.Event()
        logger.info(f"[Queue] Job {job.id} queued for '{printer_id}' ({len(self._pending)} pending)")

        if not self._running:
            self._running = True
            self._drain_task = asyncio.get_running_loop().create_task(self._drain())
        return job

    async def _drain(self) -> None:
        try:
            while self._pending:
                job = self._pending.popleft()
                await self._execute(job)
                self._retire(job)
        finally:
            self._running = False

    async def _execute(self, job: PrintJob) -> None:
        job.transition(JobStatus.PRINTING)
        logger.info(f"[Queue] Printing job {job.id} on '{job.printer_id}'")

        handle = self.registry.get(job.printer_id)
        if handle is None or not handle.connected:
            self._fail(job, PrinterNotConnectedError(
                "Printer not connected", context={'printer_id': job.printer_id}
            ))
            return

        try:
            await self._bounded(self.health.ensure_usable(handle))
            driver = self.registry.drivers[handle.transport]
            result = await self._bounded(driver.send(handle, encode(job.content)))
        except asyncio.TimeoutError:
            job.reason = 'transfer_timeout'
            job.error = f"Printer did not respond within {self.transport_timeout}s"
            job.transition(JobStatus.FAILED)
            logger.error(f"[Queue] Job {job.id} timed out, waiting for the transport to settle")
            await self._settle()
            return
        except ConnectionLostError as e:
            self._fail(job, e)
            if self.registry.get(job.printer_id) is handle:
                await self.registry.disconnect(job.printer_id)
            return
        except PrinterError as e:
            self._fail(job, e)
            return
        except Exception as e:
            logger.exception(f"[Queue] Unexpected error in job {job.id}")
            job.reason = 'internal_error'
            job.error = str(e)
            job.transition(JobStatus.FAILED)
            return

        if result is not None:
            job.preview = result
        job.transition(JobStatus.COMPLETED)
        logger.info(f"[Queue] Job {job.id} completed")

    async def _bounded(self, coro):
        """
        Await a transport call for at most transport_timeout seconds.

        On timeout the call is left running (a worker thread cannot be
        interrupted) and kept in ``_in_flight`` until _settle() collects it.
        """
        if self.transport_timeout is None:
            return await coro
        task = asyncio.ensure_future(coro)
        done, _ = await asyncio.wait({task}, timeout=self.transport_timeout)
        if task not in done:
            self._in_flight = task
            raise asyncio.TimeoutError
        return task.result()

    async def _settle(self) -> None:
        """Wait for a timed out transport call so the next job never overlaps it."""
        task, self._in_flight = self._in_flight, None
        if task is None:
            return
        await asyncio.wait({task})
        if not task.cancelled() and task.exception() is not None:
            logger.warning(f"[Queue] Timed out transport call ended with: {task.exception()}")

    def _fail(self, job: PrintJob, error: PrinterError) -> None:
        job.reason = error.reason
        job.error = str(error)
        job.transition(JobStatus.FAILED)
        logger.error(f"[Queue] Job {job.id} failed ({error.reason}): {error}")

    def _retire(self, job: PrintJob) -> None:
        self._active.pop(job.id, None)
        self._history[job.id] = job
        self._finished[job.id].set()
        while len(self._history) > self.history_size:
            evicted_id, evicted = self._history.popitem(last=False)
            self._finished.pop(evicted_id, None)
            if evicted.preview is not None:
                evicted.preview.discard()

    def get(self, job_id: str) -> PrintJob:
        """
        Look up an active or recently finished job.

        Raises:
            JobNotFoundError: If the id is unknown or already evicted from history
        """
        job = self._active.get(job_id) or self._history.get(job_id)
        if job is None:
            raise JobNotFoundError("Print job not found", context={'job_id': job_id})
        return job

    def jobs(self) -> List[PrintJob]:
        return list(self._history.values()) + list(self._active.values())

    def status(self) -> dict:
        counts = {status.value: 0 for status in JobStatus}
        for job in self.jobs():
            counts[job.status.value] += 1
        return counts

    def cancel(self, job_id: str) -> bool:
        """
        Drop a job that has not started yet.

        Returns:
            True if the job was cancelled, False if it already started or finished
        """
        job = self.get(job_id)
        if job.status != JobStatus.PENDING:
            return False
        self._pending.remove(job)
        job.reason = 'cancelled'
        job.error = 'Cancelled before printing'
        job.transition(JobStatus.FAILED)
        self._retire(job)
        logger.info(f"[Queue] Job {job.id} cancelled")
        return True

    async def wait(self, job_id: str) -> PrintJob:
        """Wait until the job reaches a terminal state."""
        job = self.get(job_id)
        event = self._finished.get(job_id)
        if event is not None:
            await event.wait()
        return job

    async def join(self) -> None:
        """Wait until the queue is empty."""
        while self._running and self._drain_task is not None:
            await asyncio.shield(self._drain_task)
