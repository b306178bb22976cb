import asyncio

import pytest

from distributor.config import EngineSettings
from distributor.models import Task
from distributor.scheduler import BatchPacer, _sleep_unless, make_batches


def _tasks(*ids):
    return [Task(id=i, job_id="j", recipient=f"r{i}", amount=1) for i in ids]


def test_batches_are_ordered_and_disjoint():
    batches = make_batches(_tasks(5, 1, 4, 2, 3), 2)

    assert [[t.id for t in b] for b in batches] == [[1, 2], [3, 4], [5]]


def test_batches_never_exceed_size():
    batches = make_batches(_tasks(*range(1, 24)), 5)

    assert all(len(b) <= 5 for b in batches)
    assert sum(len(b) for b in batches) == 23


def test_empty_and_invalid_sizes():
    assert make_batches([], 3) == []
    with pytest.raises(ValueError):
        make_batches(_tasks(1), 0)


def test_pause_derived_from_relay_rate_ceiling():
    s = EngineSettings()
    # 2 calls per task * 15 tasks = 30 calls, exactly one 10s window
    assert s.pause_for(15) == pytest.approx(10.0)
    assert s.pause_for(20) == pytest.approx(2 * 20 * 10.0 / 30)


def test_explicit_pause_wins():
    assert EngineSettings(batch_pause=0.5).pause_for(20) == 0.5


@pytest.mark.asyncio
async def test_sleep_returns_early_on_event():
    event = asyncio.Event()
    asyncio.get_running_loop().call_later(0.01, event.set)

    await asyncio.wait_for(_sleep_unless(event, 30), timeout=2)

    assert event.is_set()


def test_pacer_counts_time_since_last_batch():
    now = [10.0]
    pacer = BatchPacer(2.0, clock=lambda: now[0])

    assert pacer.remaining() == 0.0
    pacer.mark()
    now[0] = 10.5
    assert pacer.remaining() == pytest.approx(1.5)
    now[0] = 13.0
    assert pacer.remaining() == 0.0


@pytest.mark.asyncio
async def test_pacer_wait_is_cut_short_by_wake():
    pacer = BatchPacer(30.0)
    pacer.mark()
    wake = asyncio.Event()
    wake.set()

    await asyncio.wait_for(pacer.wait(wake), timeout=1)
