"""Tests for the admission controller."""
import asyncio

import pytest

from app.services.admission import AdmissionController


def test_limit_must_be_positive() -> None:
    with pytest.raises(ValueError):
        AdmissionController(0)


async def test_admits_up_to_limit() -> None:
    admission = AdmissionController(2)

    await admission.acquire()
    assert not admission.saturated
    await admission.acquire()

    assert admission.active == 2
    assert admission.saturated


async def test_waiters_served_in_order() -> None:
    admission = AdmissionController(1)
    await admission.acquire()
    order: list[int] = []

    async def worker(n: int) -> None:
        async with admission.slot():
            order.append(n)

    tasks = [asyncio.create_task(worker(n)) for n in range(3)]
    await asyncio.sleep(0)
    assert admission.waiting == 3

    admission.release()
    await asyncio.gather(*tasks)

    assert order == [0, 1, 2]
    assert admission.active == 0


async def test_never_exceeds_limit() -> None:
    admission = AdmissionController(2)
    running = 0
    peak = 0

    async def job() -> None:
        nonlocal running, peak
        async with admission.slot():
            running += 1
            peak = max(peak, running)
            await asyncio.sleep(0.01)
            running -= 1

    await asyncio.gather(*(job() for _ in range(8)))

    assert peak == 2
    assert admission.active == 0


async def test_cancelled_waiter_leaves_queue() -> None:
    admission = AdmissionController(1)
    await admission.acquire()
    waiter = asyncio.create_task(admission.acquire())
    await asyncio.sleep(0)

    waiter.cancel()
    with pytest.raises(asyncio.CancelledError):
        await waiter

    assert admission.waiting == 0
    admission.release()
    assert admission.active == 0


async def test_with_slot_releases_on_error() -> None:
    admission = AdmissionController(1)

    async def boom() -> None:
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError, match="boom"):
        await admission.with_slot(boom)

    assert admission.active == 0


async def test_with_slot_returns_result() -> None:
    admission = AdmissionController(1)

    async def add(a: int, b: int) -> int:
        return a + b

    assert await admission.with_slot(add, 2, b=3) == 5


def test_release_without_acquire() -> None:
    with pytest.raises(RuntimeError):
        AdmissionController(1).release()
