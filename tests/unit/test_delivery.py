"""Unit tests for the delivery pipeline."""

import asyncio
from unittest import TestCase

import pytest

from chunking.models import Chunk
from indexing.delivery import DeliveryPipeline, DeliveryState, make_batch_id
from indexing.locks import DedupLockRegistry
from indexing.progress import ProgressTracker
from indexing.retry import RetryPolicy
from merkle.snapshot import Status
from storage.gateway import StorageGateway
from tests.fixtures.fakes import FakeBackend, FakeEmbedder
from transport.errors import ResourceLockedError, TransientServiceError

KEY = 'me_box_workspace'


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


class ClockSleep:
    """Records delays and advances the fake clock instead of sleeping."""

    def __init__(self, clock):
        self.clock = clock
        self.delays = []

    async def __call__(self, seconds):
        self.delays.append(seconds)
        self.clock.now += seconds
        await asyncio.sleep(0)


def make_chunks(count, path='src/a.py'):
    return [Chunk.create(path, i, i, f'value_{i} = {i}', parser='readline') for i in range(1, count + 1)]


class DeliveryTestCase(TestCase):

    def setUp(self):
        self.embedder = FakeEmbedder()
        self.backend = FakeBackend()
        self.gateway = StorageGateway(self.backend, dimension=8)
        self.clock = FakeClock()
        self.sleep = ClockSleep(self.clock)
        self.tracker = ProgressTracker()

    def make_pipeline(self, **kwargs):
        options = dict(
            progress_tracker=self.tracker,
            batch_size=3,
            max_concurrent_batches=2,
            retry_policy=RetryPolicy(max_attempts=3, jitter=0),
            lock_registry=DedupLockRegistry(ttl=30, sweep_interval=10, clock=self.clock),
            poll_interval=5,
            max_polls=3,
            sleep=self.sleep,
            clock=self.clock,
        )
        options.update(kwargs)
        return DeliveryPipeline(self.embedder, self.gateway, KEY, 'me', 'box', **options)

    def deliver(self, pipeline, chunks, register=True):
        if register:
            self.tracker.register_chunks(chunks[0].file_path, chunks)

        async def go():
            try:
                return await pipeline.deliver(chunks)
            finally:
                await pipeline.shutdown(1, close_clients=False)

        return asyncio.run(go())


class TestBatching(DeliveryTestCase):
    """Batch formation and the concurrency bound."""

    def test_batches_of_fixed_size_in_order(self):
        pipeline = self.make_pipeline()
        chunks = make_chunks(7)
        jobs = pipeline.make_batches(chunks)
        assert [len(job.items) for job in jobs] == [3, 3, 1]
        assert [item.chunk_id for job in jobs for item in job.items] == [c.id for c in chunks]

    def test_batch_id_is_order_independent(self):
        assert make_batch_id(['b', 'a']) == make_batch_id(['a', 'b'])
        assert make_batch_id(['a']) != make_batch_id(['a', 'b'])
        assert len(make_batch_id(['a'])) == 16

    def test_third_batch_waits_for_a_slot(self):
        self.embedder.delay = 0.05
        chunks = make_chunks(7)
        report = self.deliver(self.make_pipeline(), chunks)

        assert self.embedder.max_in_flight == 2
        assert [len(call) for call in self.embedder.calls] == [3, 3, 1]
        assert self.embedder.calls[2] == [chunks[6].id]
        assert report.batches_attempted == 3
        assert report.batches_succeeded == 3
        assert report.chunks_stored == 7
        assert len(self.backend.documents(KEY)) == 7

    def test_empty_input(self):
        report = asyncio.run(self.make_pipeline().deliver([]))
        assert report.total_chunks == 0
        assert report.success_rate == 100.0


class TestPartialFailure(DeliveryTestCase):
    """One bad chunk never sinks its batch."""

    def test_rejected_request_isolates_bad_chunk(self):
        chunks = make_chunks(5)
        chunks[1] = Chunk.create('src/a.py', 2, 2, 'POISON', parser='readline')
        self.embedder.reject_marker = 'POISON'

        report = self.deliver(self.make_pipeline(batch_size=5), chunks)

        assert report.chunks_failed == 1
        assert report.chunks_stored == 4
        failed = report.failed_outcomes()
        assert [o.chunk_id for o in failed] == [chunks[1].id]
        assert 'Invalid chunk content' in failed[0].error
        assert chunks[1].id not in self.backend.documents(KEY)
        assert self.tracker.get_overall_progress()['chunks']['failed'] == 1
        assert self.sleep.delays == []

    def test_item_permanent_error(self):
        chunks = make_chunks(4)
        self.embedder.fail_chunk(chunks[2].id, 'unsupported language', persistent=True)

        report = self.deliver(self.make_pipeline(), chunks)

        assert report.chunks_stored == 3
        outcome = next(o for o in report.outcomes if o.chunk_id == chunks[2].id)
        assert outcome.state is DeliveryState.FAILED
        assert outcome.attempts == 1
        assert len(self.embedder.calls) == 2

    def test_transient_item_error_retried(self):
        chunks = make_chunks(3)
        self.embedder.fail_chunk(chunks[0].id, 'upstream timeout')

        report = self.deliver(self.make_pipeline(), chunks)

        assert report.chunks_stored == 3
        outcome = next(o for o in report.outcomes if o.chunk_id == chunks[0].id)
        assert outcome.attempts == 2
        assert self.embedder.calls[1] == [chunks[0].id]
        assert self.sleep.delays == [1]

    def test_transient_exhaustion_fails_only_that_chunk(self):
        chunks = make_chunks(3)
        self.embedder.fail_chunk(chunks[1].id, 'upstream timeout', persistent=True)

        report = self.deliver(self.make_pipeline(), chunks)

        assert report.chunks_stored == 2
        assert report.chunks_failed == 1
        outcome = report.failed_outcomes()[0]
        assert outcome.attempts == 3
        assert 'after 3 attempts' in outcome.error
        assert self.sleep.delays == [1, 2]
        assert self.tracker.get_failed_chunks()[0]['chunk_id'] == chunks[1].id

    def test_request_level_transient_error(self):
        chunks = make_chunks(2)
        self.embedder.request_errors = [TransientServiceError('Service temporarily unavailable', 503)]

        report = self.deliver(self.make_pipeline(), chunks)

        assert report.chunks_stored == 2
        assert len(self.embedder.calls) == 2

    def test_unexpected_batch_error_reaches_tracker(self):
        chunks = make_chunks(3)
        pipeline = self.make_pipeline()

        async def broken_stage(job):
            raise RuntimeError('unexpected')

        pipeline._embed_stage = broken_stage
        report = self.deliver(pipeline, chunks)

        assert report.chunks_failed == 3
        assert {o.error for o in report.outcomes} == {'Delivery did not finish'}
        assert self.tracker.is_complete()
        assert self.tracker.get_overall_progress()['chunks']['failed'] == 3

    def test_store_failure_retried(self):
        chunks = make_chunks(2)
        self.backend.upsert_errors = [TransientServiceError('write timeout', 504)]

        report = self.deliver(self.make_pipeline(), chunks)

        assert report.chunks_stored == 2
        assert len(self.backend.upserts) == 1
        assert len(self.embedder.calls) == 1


class TestLocks(DeliveryTestCase):
    """Chunks the service reports busy wait for the lock TTL."""

    def test_locked_chunk_waits_full_ttl(self):
        chunks = make_chunks(2)
        self.embedder.fail_chunk(chunks[0].id, 'Task is running')
        pipeline = self.make_pipeline()

        report = self.deliver(pipeline, chunks)

        assert report.chunks_stored == 2
        assert self.sleep.delays == [30]
        assert len(pipeline.locks) == 0

    def test_store_lock_uses_locked_retry(self):
        chunks = make_chunks(1)
        self.backend.upsert_errors = [ResourceLockedError('collection busy', 423)]
        pipeline = self.make_pipeline()

        report = self.deliver(pipeline, chunks)

        assert report.chunks_stored == 1
        assert self.sleep.delays == [30]
        # One embed attempt plus two store attempts
        assert report.outcomes[0].attempts == 3

    def test_lock_status_and_clear(self):
        pipeline = self.make_pipeline()
        pipeline.locks.record('c1', 'me', 'box')
        status = pipeline.get_lock_status()
        assert status['active'] == 1
        assert status['pending_async_requests'] == 0
        assert pipeline.clear_lock('c1') == 1
        assert pipeline.get_lock_status()['active'] == 0


class TestAsyncRequests(DeliveryTestCase):
    """Accepted requests are polled until they finish."""

    def test_polls_after_estimate(self):
        self.embedder.async_polls = 2
        self.embedder.estimated_ms = 10000
        chunks = make_chunks(2)
        pipeline = self.make_pipeline()

        report = self.deliver(pipeline, chunks)

        assert report.chunks_stored == 2
        assert self.sleep.delays == [pytest.approx(8.0), 5]
        assert self.embedder.polls == ['req-1', 'req-1']
        assert pipeline.pending_async_requests == []

    def test_poll_budget_exhausted(self):
        self.embedder.async_polls = 100
        chunks = make_chunks(1)

        report = self.deliver(self.make_pipeline(max_polls=2, retry_policy=RetryPolicy(max_attempts=1)), chunks)

        assert report.chunks_failed == 1
        assert 'timed out after 2 polls' in report.outcomes[0].error
        assert len(self.embedder.polls) == 2


class TestDegradedStorage(DeliveryTestCase):

    def test_buffered_writes_count_as_stored(self):
        self.gateway = StorageGateway(None)
        chunks = make_chunks(4)

        report = self.deliver(self.make_pipeline(), chunks)

        assert report.chunks_stored == 4
        assert report.chunks_buffered == 4
        assert all(o.buffered for o in report.outcomes)
        assert self.gateway.buffered_count(KEY) == 4
        assert self.tracker.is_complete()


class TestShutdown(DeliveryTestCase):

    def test_shutdown_cancels_after_grace_period(self):
        self.embedder.delay = 5
        chunks = make_chunks(9)
        self.tracker.register_chunks('src/a.py', chunks)
        pipeline = self.make_pipeline()

        async def go():
            task = asyncio.create_task(pipeline.deliver(chunks))
            await asyncio.sleep(0.05)
            await pipeline.shutdown(grace_period=0.05)
            return await task

        report = asyncio.run(go())

        assert report.chunks_failed == 9
        assert {o.error for o in report.outcomes} == {'Cancelled during shutdown'}
        assert report.batches_attempted == 2
        assert self.embedder.closed
        assert self.backend.closed
        assert self.tracker.is_complete()

    def test_no_new_batches_after_shutdown(self):
        pipeline = self.make_pipeline()
        asyncio.run(pipeline.shutdown(1, close_clients=False))

        report = self.deliver(pipeline, make_chunks(2))
        assert report.chunks_failed == 2
        assert self.embedder.calls == []
