"""Tests for NotificationWorker: success, duplicates, retry, dead-letter, reclaim, infra failures, run loop."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from notifier.delivery import IdempotencyGuard, ProcessOutcome, WorkerState
from notifier.events import Event
from notifier.producer import publish
from notifier.stores import Stores, open_sqlite_stores

from support import FAR_FUTURE_MS, GROUP, QUEUE, STREAM, dead_letters, make_promoter, make_worker


class Recorder:
    """Processor that fails the first `failures` calls and records every event it sees."""

    def __init__(self, failures: int = 0) -> None:
        self.failures = failures
        self.seen: list[Event] = []

    async def __call__(self, event: Event) -> None:
        self.seen.append(event)
        if len(self.seen) <= self.failures:
            raise RuntimeError("smtp unavailable")


async def _pending(stores: Stores) -> int:
    return (await stores.log.pending_summary(STREAM, GROUP)).count


class TestWorkerSuccess:
    """Happy path and duplicate deliveries."""

    @pytest.mark.asyncio
    async def test_processes_marks_and_acks(self, stores: Stores) -> None:
        processor = Recorder()
        worker = make_worker(stores, processor)
        _, event = await publish(stores.log, STREAM, "USER_REGISTERED", {"email": "a@example.com"})

        report = await worker.run_once()

        assert report.consumed == [ProcessOutcome.PROCESSED]
        assert report.reclaimed == []
        assert [e.event_id for e in processor.seen] == [event.event_id]
        assert processor.seen[0].payload == {"email": "a@example.com"}
        assert await IdempotencyGuard(stores.lock).is_processed(event.event_id)
        assert not await stores.lock.exists(f"processing:{event.event_id}")
        assert await _pending(stores) == 0

    @pytest.mark.asyncio
    async def test_empty_read_is_not_an_error(self, stores: Stores) -> None:
        worker = make_worker(stores, Recorder())
        report = await worker.run_once()
        assert report.outcomes == []
        assert worker.state is WorkerState.IDLE

    @pytest.mark.asyncio
    async def test_duplicate_delivery_is_skipped_and_acked(self, stores: Stores) -> None:
        processor = Recorder()
        worker = make_worker(stores, processor)
        _, event = await publish(stores.log, STREAM, "USER_REGISTERED", {})
        await worker.run_once()

        await stores.log.append(STREAM, event.to_fields())
        report = await worker.run_once()

        assert report.consumed == [ProcessOutcome.SKIPPED_PROCESSED]
        assert len(processor.seen) == 1
        assert await _pending(stores) == 0

    @pytest.mark.asyncio
    async def test_in_flight_event_is_skipped_without_retry(self, stores: Stores) -> None:
        processor = Recorder()
        worker = make_worker(stores, processor)
        _, event = await publish(stores.log, STREAM, "USER_REGISTERED", {})
        other = IdempotencyGuard(stores.lock)
        assert await other.should_process(event.event_id)

        report = await worker.run_once()

        assert report.consumed == [ProcessOutcome.SKIPPED_IN_FLIGHT]
        assert processor.seen == []
        assert await stores.delay.range_by_score(QUEUE, FAR_FUTURE_MS) == []
        assert await _pending(stores) == 0


class TestWorkerRetryAndDeadLetter:
    """Failures go through the delay queue and end in the dead-letter stream."""

    @pytest.mark.asyncio
    async def test_fails_twice_then_succeeds(self, stores: Stores) -> None:
        processor = Recorder(failures=2)
        worker = make_worker(stores, processor, max_retries=3)
        promoter = make_promoter(stores)
        _, event = await publish(stores.log, STREAM, "USER_REGISTERED", {"email": "b@example.com"})

        outcomes = []
        promoted = 0
        for _ in range(3):
            outcomes.extend((await worker.run_once()).outcomes)
            promoted += await promoter.promote_due(now=FAR_FUTURE_MS)

        assert outcomes == [
            ProcessOutcome.RETRY_SCHEDULED,
            ProcessOutcome.RETRY_SCHEDULED,
            ProcessOutcome.PROCESSED,
        ]
        assert promoted == 2
        assert [e.retry_count for e in processor.seen] == [0, 1, 2]
        assert {e.event_id for e in processor.seen} == {event.event_id}
        assert await IdempotencyGuard(stores.lock).is_processed(event.event_id)
        assert await dead_letters(stores) == []
        assert await stores.delay.range_by_score(QUEUE, FAR_FUTURE_MS) == []
        assert await _pending(stores) == 0

    @pytest.mark.asyncio
    async def test_exhausted_retries_are_dead_lettered_verbatim(self, stores: Stores) -> None:
        processor = Recorder(failures=100)
        worker = make_worker(stores, processor, max_retries=3)
        promoter = make_promoter(stores)
        _, event = await publish(stores.log, STREAM, "USER_REGISTERED", {"email": "c@example.com"})

        outcomes = []
        for _ in range(4):
            outcomes.extend((await worker.run_once()).outcomes)
            await promoter.promote_due(now=FAR_FUTURE_MS)

        assert outcomes == [ProcessOutcome.RETRY_SCHEDULED] * 3 + [ProcessOutcome.DEAD_LETTERED]
        assert [e.retry_count for e in processor.seen] == [0, 1, 2, 3]

        dead = await dead_letters(stores)
        assert len(dead) == 1
        expected = event.with_retry().with_retry().with_retry()
        assert dead[0].fields == expected.to_fields()
        assert dead[0].fields["retryCount"] == "3"

        assert await stores.delay.range_by_score(QUEUE, FAR_FUTURE_MS) == []
        assert not await IdempotencyGuard(stores.lock).is_processed(event.event_id)
        assert not await stores.lock.exists(f"processing:{event.event_id}")
        assert await _pending(stores) == 0
        # Nothing left to deliver after escalation
        assert (await worker.run_once()).outcomes == []

    @pytest.mark.asyncio
    async def test_processor_returning_false_is_a_failure(self, stores: Stores) -> None:
        processor = AsyncMock(return_value=False)
        worker = make_worker(stores, processor)
        await publish(stores.log, STREAM, "USER_REGISTERED", {})

        report = await worker.run_once()

        assert report.consumed == [ProcessOutcome.RETRY_SCHEDULED]
        assert len(await stores.delay.range_by_score(QUEUE, FAR_FUTURE_MS)) == 1

    @pytest.mark.asyncio
    async def test_retry_is_not_redelivered_before_due(self, stores: Stores) -> None:
        worker = make_worker(stores, Recorder(failures=1))
        promoter = make_promoter(stores)
        await publish(stores.log, STREAM, "USER_REGISTERED", {})
        await worker.run_once()

        assert await promoter.promote_due(now=0) == 0
        assert (await worker.run_once()).outcomes == []


class TestWorkerReclaim:
    """Entries left unacknowledged by a crashed consumer."""

    @pytest.mark.asyncio
    async def test_crashed_consumer_entry_is_processed_exactly_once(
        self, stores: Stores
    ) -> None:
        _, event = await publish(stores.log, STREAM, "USER_REGISTERED", {})
        # Delivered to a consumer that dies before acking
        claimed = await stores.log.read_group(GROUP, "worker-crashed", STREAM, 1, 0)
        assert len(claimed) == 1

        processor = Recorder()
        worker = make_worker(stores, processor, consumer="worker-2", min_idle_ms=100)

        report = await worker.run_once()
        assert report.outcomes == []
        assert await _pending(stores) == 1

        await asyncio.sleep(0.2)
        report = await worker.run_once()
        assert report.reclaimed == [ProcessOutcome.PROCESSED]
        assert [e.event_id for e in processor.seen] == [event.event_id]
        assert await _pending(stores) == 0

        await asyncio.sleep(0.2)
        assert (await worker.run_once()).outcomes == []
        assert len(processor.seen) == 1

    @pytest.mark.asyncio
    async def test_reclaimed_failure_is_retried_and_acked(self, stores: Stores) -> None:
        await publish(stores.log, STREAM, "USER_REGISTERED", {})
        await stores.log.read_group(GROUP, "worker-crashed", STREAM, 1, 0)
        worker = make_worker(stores, Recorder(failures=1), consumer="worker-2", min_idle_ms=50)

        await asyncio.sleep(0.1)
        report = await worker.run_once()

        assert report.reclaimed == [ProcessOutcome.RETRY_SCHEDULED]
        assert await _pending(stores) == 0
        assert len(await stores.delay.range_by_score(QUEUE, FAR_FUTURE_MS)) == 1

    @pytest.mark.asyncio
    async def test_consumer_crashed_holding_lock_is_processed_after_lock_expires(
        self, stores: Stores
    ) -> None:
        _, event = await publish(stores.log, STREAM, "USER_REGISTERED", {})
        await stores.log.read_group(GROUP, "worker-crashed", STREAM, 1, 0)
        # The crashed consumer took the processing lock before dying
        assert await IdempotencyGuard(stores.lock, lock_ttl=1).should_process(event.event_id)

        processor = Recorder()
        worker = make_worker(stores, processor, consumer="worker-2", min_idle_ms=50)
        promoter = make_promoter(stores)

        await asyncio.sleep(0.1)
        report = await worker.run_once()
        assert report.reclaimed == [ProcessOutcome.LEFT_PENDING]
        assert processor.seen == []
        assert await _pending(stores) == 1

        await asyncio.sleep(1.2)
        outcomes = []
        for _ in range(3):
            outcomes.extend((await worker.run_once()).outcomes)
            await promoter.promote_due(now=FAR_FUTURE_MS)
            await asyncio.sleep(0.1)

        assert outcomes == [ProcessOutcome.PROCESSED]
        assert [e.event_id for e in processor.seen] == [event.event_id]
        assert await IdempotencyGuard(stores.lock).is_processed(event.event_id)
        assert await _pending(stores) == 0

    @pytest.mark.asyncio
    async def test_reclaimed_duplicate_of_finished_event_is_acked(self, stores: Stores) -> None:
        """A live owner that finishes while its entry sits reclaimed lets the copy go."""
        _, event = await publish(stores.log, STREAM, "USER_REGISTERED", {})
        await stores.log.read_group(GROUP, "worker-slow", STREAM, 1, 0)
        slow_owner = IdempotencyGuard(stores.lock)
        assert await slow_owner.should_process(event.event_id)

        processor = Recorder()
        worker = make_worker(stores, processor, consumer="worker-2", min_idle_ms=50)

        await asyncio.sleep(0.1)
        assert (await worker.run_once()).reclaimed == [ProcessOutcome.LEFT_PENDING]

        await slow_owner.complete(event.event_id)
        await asyncio.sleep(0.1)
        assert (await worker.run_once()).reclaimed == [ProcessOutcome.SKIPPED_PROCESSED]
        assert processor.seen == []
        assert await _pending(stores) == 0


class TestWorkerInfrastructureFailures:
    """Store errors abort the entry without ack; the loop carries on."""

    @pytest.mark.asyncio
    async def test_lock_store_failure_leaves_entry_pending(self, stores: Stores) -> None:
        broken = AsyncMock()
        broken.exists.side_effect = ConnectionError("lock store unreachable")
        processor = Recorder()
        worker = make_worker(stores, processor, guard=IdempotencyGuard(broken), min_idle_ms=50)
        await publish(stores.log, STREAM, "USER_REGISTERED", {})

        report = await worker.run_once()

        assert report.consumed == [ProcessOutcome.ABORTED]
        assert processor.seen == []
        assert await _pending(stores) == 1

        # A healthy worker picks it up once it has been idle long enough
        healthy = make_worker(stores, processor, consumer="worker-2", min_idle_ms=50)
        await asyncio.sleep(0.1)
        assert (await healthy.run_once()).reclaimed == [ProcessOutcome.PROCESSED]
        assert await _pending(stores) == 0

    @pytest.mark.asyncio
    async def test_malformed_entry_is_aborted_without_ack(self, stores: Stores) -> None:
        processor = Recorder()
        worker = make_worker(stores, processor)
        await stores.log.append(STREAM, {"email": "no-id@example.com"})

        report = await worker.run_once()

        assert report.consumed == [ProcessOutcome.ABORTED]
        assert processor.seen == []
        assert await _pending(stores) == 1

    @pytest.mark.asyncio
    async def test_run_loop_survives_store_errors(self, stores: Stores) -> None:
        worker = make_worker(stores, Recorder(), error_backoff=0.01)
        calls = 0

        async def flaky_reclaim(consumer: str) -> list:
            nonlocal calls
            calls += 1
            raise ConnectionError("log store unreachable")

        worker._reclaimer.reclaim = flaky_reclaim  # type: ignore[method-assign]
        await worker.start()
        await asyncio.sleep(0.1)
        await worker.stop()

        assert calls >= 2
        assert worker.state is WorkerState.STOPPED


class TestWorkerRunLoop:
    """start/stop lifecycle."""

    @pytest.mark.asyncio
    async def test_run_loop_processes_until_stopped(self, stores: Stores) -> None:
        processor = Recorder()
        worker = make_worker(stores, processor, block_ms=20)
        await worker.start()

        _, event = await publish(stores.log, STREAM, "USER_REGISTERED", {})
        for _ in range(50):
            await asyncio.sleep(0.02)
            if processor.seen:
                break
        await worker.stop()

        assert [e.event_id for e in processor.seen] == [event.event_id]
        assert worker.state is WorkerState.STOPPED
        assert await _pending(stores) == 0

    @pytest.mark.asyncio
    async def test_external_stop_event(self, stores: Stores) -> None:
        worker = make_worker(stores, Recorder(), block_ms=20)
        stop = asyncio.Event()
        task = asyncio.create_task(worker.run(stop))
        await asyncio.sleep(0.05)
        stop.set()
        await asyncio.wait_for(task, timeout=2)
        assert worker.state is WorkerState.STOPPED


class TestWorkersSharingAGroup:
    """Two workers on separate connections to the same database."""

    @pytest.mark.asyncio
    async def test_each_event_processed_once_across_workers(
        self, stores: Stores, db_path
    ) -> None:
        second = open_sqlite_stores(db_path, poll_interval=0.01)
        processed: list[str] = []

        async def record(event: Event) -> None:
            processed.append(event.event_id)

        workers = [
            make_worker(stores, record, consumer="worker-a"),
            make_worker(second, record, consumer="worker-b"),
        ]
        published = [
            (await publish(stores.log, STREAM, "USER_REGISTERED", {"n": str(i)}))[1].event_id
            for i in range(6)
        ]
        # Duplicates of the first three events on the log as well
        for event_id in published[:3]:
            await stores.log.append(
                STREAM, Event(event_type="USER_REGISTERED", event_id=event_id).to_fields()
            )
        try:
            for _ in range(10):
                await asyncio.gather(*(w.run_once() for w in workers))
        finally:
            await second.close()

        assert sorted(processed) == sorted(published)
        assert await _pending(stores) == 0
