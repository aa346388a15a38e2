"""Tests for the FIFO print queue."""

import asyncio
import os
import threading
import time

import pytest

from pos_printer.encoder import encode
from pos_printer.exceptions import ConnectionLostError, JobNotFoundError
from pos_printer.models import JobStatus, PrinterHandle, TransportType


async def connect(registry, printer_id, transport):
    handle = await registry.drivers[transport].connect(printer_id, printer_id.title())
    await registry.add(handle)
    return handle


async def test_jobs_print_in_submission_order(registry, print_queue):
    await connect(registry, 'kitchen-1', TransportType.BLUETOOTH)
    await connect(registry, 'bar-1', TransportType.SERIAL)

    first = await print_queue.submit('kitchen-1', 'A')
    second = await print_queue.submit('bar-1', 'B')
    third = await print_queue.submit('kitchen-1', 'C')
    await print_queue.join()

    assert registry.drivers[TransportType.BLUETOOTH].sent == [('kitchen-1', encode('A')), ('kitchen-1', encode('C'))]
    assert registry.drivers[TransportType.SERIAL].sent == [('bar-1', encode('B'))]
    assert first.finished_at <= second.started_at
    assert second.finished_at <= third.started_at
    assert all(job.status == JobStatus.COMPLETED for job in (first, second, third))


async def test_only_one_job_printing_at_a_time(registry, print_queue):
    seen = []
    for transport in (TransportType.BLUETOOTH, TransportType.SERIAL):
        driver = registry.drivers[transport]
        driver.delay = 0.01
        driver.on_send = lambda handle: seen.append(print_queue.status()['printing'])
    await connect(registry, 'kitchen-1', TransportType.BLUETOOTH)
    await connect(registry, 'bar-1', TransportType.SERIAL)

    for index in range(6):
        await print_queue.submit('kitchen-1' if index % 2 else 'bar-1', f'order {index}')
    await print_queue.join()

    assert seen == [1] * 6


async def test_unknown_printer_fails_without_touching_drivers(registry, print_queue):
    job = await print_queue.submit('never-connected', 'hello')
    await print_queue.join()

    assert job.status == JobStatus.FAILED
    assert job.reason == 'printer_not_connected'
    for transport in (TransportType.BLUETOOTH, TransportType.USB, TransportType.SERIAL):
        assert registry.drivers[transport].sent == []


async def test_failure_does_not_stop_the_queue(registry, print_queue):
    registry.drivers[TransportType.SERIAL].fail_with = ConnectionLostError("Serial port closed or errored")
    await connect(registry, 'bar-1', TransportType.SERIAL)
    await connect(registry, 'kitchen-1', TransportType.BLUETOOTH)

    failed = await print_queue.submit('bar-1', 'A')
    printed = await print_queue.submit('kitchen-1', 'B')
    await print_queue.join()

    assert failed.status == JobStatus.FAILED
    assert failed.reason == 'connection_lost'
    assert printed.status == JobStatus.COMPLETED


async def test_unexpected_exception_is_internal_error(registry, print_queue):
    registry.drivers[TransportType.BLUETOOTH].fail_with = RuntimeError("boom")
    await connect(registry, 'kitchen-1', TransportType.BLUETOOTH)

    job = await print_queue.submit('kitchen-1', 'A')
    await print_queue.join()

    assert job.reason == 'internal_error'
    assert 'boom' in job.error


async def test_slow_transport_times_out(registry, print_queue):
    print_queue.transport_timeout = 0.05
    registry.drivers[TransportType.BLUETOOTH].delay = 1
    await connect(registry, 'kitchen-1', TransportType.BLUETOOTH)
    await connect(registry, 'bar-1', TransportType.SERIAL)

    slow = await print_queue.submit('kitchen-1', 'A')
    fast = await print_queue.submit('bar-1', 'B')
    await print_queue.join()

    assert slow.status == JobStatus.FAILED
    assert slow.reason == 'transfer_timeout'
    assert fast.status == JobStatus.COMPLETED


async def test_disconnected_handle_fails_job(registry, print_queue):
    handle = await connect(registry, 'kitchen-1', TransportType.BLUETOOTH)
    handle.connected = False

    job = await print_queue.submit('kitchen-1', 'A')
    await print_queue.join()

    assert job.reason == 'printer_not_connected'


async def test_health_check_runs_before_send(registry, print_queue):
    handle = await connect(registry, 'counter-1', TransportType.SERIAL)
    registry.drivers[TransportType.SERIAL].is_alive = _never_alive

    job = await print_queue.submit('counter-1', 'A')
    await print_queue.join()

    assert job.reason == 'connection_lost'
    assert not handle.connected
    assert registry.drivers[TransportType.SERIAL].sent == []
    assert registry.drivers[TransportType.SERIAL].released == ['counter-1']
    assert registry.get('counter-1') is None


async def _never_alive(handle):
    return False


async def test_preview_document_attached_to_job(registry, print_queue):
    await connect(registry, 'billing-1', TransportType.PREVIEW)

    job = await print_queue.submit('billing-1', 'TOTAL: 100')
    await print_queue.wait(job.id)

    assert job.status == JobStatus.COMPLETED
    assert 'TOTAL: 100' in job.preview.lines


async def test_cancel_pending_job(registry, print_queue):
    registry.drivers[TransportType.BLUETOOTH].delay = 0.05
    await connect(registry, 'kitchen-1', TransportType.BLUETOOTH)

    first = await print_queue.submit('kitchen-1', 'A')
    second = await print_queue.submit('kitchen-1', 'B')

    assert print_queue.cancel(second.id)
    await print_queue.join()

    assert first.status == JobStatus.COMPLETED
    assert second.status == JobStatus.FAILED
    assert second.reason == 'cancelled'
    assert registry.drivers[TransportType.BLUETOOTH].sent == [('kitchen-1', encode('A'))]
    assert not print_queue.cancel(first.id)


async def test_history_is_bounded(registry, print_queue):
    await connect(registry, 'kitchen-1', TransportType.BLUETOOTH)

    jobs = [await print_queue.submit('kitchen-1', str(n)) for n in range(15)]
    await print_queue.join()

    assert print_queue.status()['completed'] == 10
    with pytest.raises(JobNotFoundError):
        print_queue.get(jobs[0].id)
    assert print_queue.get(jobs[-1].id) is jobs[-1]


async def test_queue_restarts_after_draining(registry, print_queue):
    await connect(registry, 'kitchen-1', TransportType.BLUETOOTH)

    first = await print_queue.submit('kitchen-1', 'A')
    await print_queue.join()
    second = await print_queue.submit('kitchen-1', 'B')
    await print_queue.join()

    assert first.status == second.status == JobStatus.COMPLETED


async def test_get_unknown_job(print_queue):
    with pytest.raises(JobNotFoundError):
        print_queue.get('job_missing')


def test_handle_snapshot():
    handle = PrinterHandle(id='kitchen-1', display_name='Kitchen', transport=TransportType.USB,
                           claimed_interface=1, working_endpoint=3)
    snapshot = handle.to_dict()
    assert snapshot['transport'] == 'usb'
    assert snapshot['working_endpoint'] == 3
    assert 'native_device' not in snapshot


async def test_timed_out_write_finishes_before_next_job(registry, print_queue):
    print_queue.transport_timeout = 0.05
    lock = threading.Lock()
    writes = {'active': 0, 'peak': 0}

    def blocking_write():
        with lock:
            writes['active'] += 1
            writes['peak'] = max(writes['peak'], writes['active'])
        time.sleep(0.3)
        with lock:
            writes['active'] -= 1

    async def send(handle, data):
        await asyncio.to_thread(blocking_write)

    for transport in (TransportType.BLUETOOTH, TransportType.SERIAL):
        registry.drivers[transport].send = send
    await connect(registry, 'kitchen-1', TransportType.BLUETOOTH)
    await connect(registry, 'kitchen-2', TransportType.SERIAL)

    first = await print_queue.submit('kitchen-1', 'A')
    second = await print_queue.submit('kitchen-2', 'B')
    await print_queue.join()

    assert (first.reason, second.reason) == ('transfer_timeout', 'transfer_timeout')
    assert writes['peak'] == 1
    assert writes['active'] == 0


async def test_lost_connection_releases_handle(registry, print_queue):
    driver = registry.drivers[TransportType.BLUETOOTH]
    driver.fail_with = ConnectionLostError("Bluetooth write failed")
    await connect(registry, 'kitchen-1', TransportType.BLUETOOTH)

    job = await print_queue.submit('kitchen-1', 'A')
    await print_queue.join()

    assert job.reason == 'connection_lost'
    assert driver.released == ['kitchen-1']
    assert registry.get('kitchen-1') is None


async def test_evicted_preview_images_are_deleted(registry, print_queue):
    await connect(registry, 'billing-1', TransportType.PREVIEW)

    jobs = [await print_queue.submit('billing-1', f'TOTAL: {n}') for n in range(12)]
    await print_queue.join()

    output_dir = registry.drivers[TransportType.PREVIEW].output_dir
    assert sorted(os.listdir(output_dir)) == sorted(os.path.basename(job.preview.path) for job in jobs[2:])
    assert jobs[0].preview.path is None
