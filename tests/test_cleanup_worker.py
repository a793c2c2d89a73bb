import asyncio

from warden.service.cleanup_worker import SessionCleanupWorker, create_cleanup_worker


class _CountingLedger:
    def __init__(self, results):
        self.results = list(results)
        self.calls = 0

    async def cleanup_expired_sessions(self) -> int:
        self.calls += 1
        outcome = self.results.pop(0) if self.results else 0
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


async def test_run_once_reports_deletions(stack, make_user, clock):
    user = make_user()
    await stack.sessions.create_session(user.id, "soon-expired", None)
    worker = SessionCleanupWorker(stack.sessions, interval=60)
    clock.advance(hours=25)
    assert await worker.run_once() == 1
    assert worker.last_deleted == 1
    assert await worker.run_once() == 0


async def test_start_and_stop():
    ledger = _CountingLedger([3])
    worker = await create_cleanup_worker(ledger, interval=3600)
    assert worker.running
    await asyncio.sleep(0)
    await asyncio.sleep(0)
    await worker.stop()
    assert not worker.running
    assert ledger.calls == 1
    assert worker.last_deleted == 3


async def test_start_twice_is_noop():
    worker = SessionCleanupWorker(_CountingLedger([]), interval=3600)
    await worker.start()
    first_task = worker._task
    await worker.start()
    assert worker._task is first_task
    await worker.stop()


async def test_loop_survives_errors():
    ledger = _CountingLedger([RuntimeError("store down"), 2])
    worker = SessionCleanupWorker(ledger, interval=0)
    await worker.start()
    for _ in range(10):
        await asyncio.sleep(0)
        if ledger.calls >= 2:
            break
    await worker.stop()
    assert ledger.calls >= 2
    assert worker.last_deleted in (0, 2)


async def test_create_without_autostart():
    worker = await create_cleanup_worker(_CountingLedger([]), auto_start=False)
    assert not worker.running


def test_backoff_never_shortens_the_interval():
    worker = SessionCleanupWorker(_CountingLedger([]), interval=3600)
    delays = [worker._next_delay(errors) for errors in range(0, 12)]
    assert delays[:4] == [3600, 3600, 3600, 3600]
    assert delays[4] == 7200
    assert all(delay >= 3600 for delay in delays)
    assert max(delays) == 3600 * 8


def test_backoff_for_short_intervals_is_capped():
    worker = SessionCleanupWorker(_CountingLedger([]), interval=10)
    assert worker._next_delay(4) == 20
    assert worker._next_delay(20) == 300
