"""
Tests for the batch job queue.
"""

import threading

import pytest

from docusight.errors import EnrichmentError, UnknownEntity
from docusight.models.jobs import BatchOperation, JobStatus
from docusight.pipeline import BatchJobQueue


@pytest.fixture
def queue():
    q = BatchJobQueue(max_workers=2, max_queue_size=10)
    yield q
    q.shutdown(wait=True)


class TestBatchJobQueue:
    """Test batch scheduling and per-item results."""

    def test_all_items_succeed(self, queue):
        queue.register_handler(BatchOperation.TAG, lambda asset_id, params: f"{asset_id}:{params['tag']}")
        job = queue.submit(BatchOperation.TAG, ['a', 'b', 'c'], parameters={'tag': 'x'})
        job = queue.wait(job.id, timeout=10)
        assert job.status is JobStatus.COMPLETED
        assert [r.result for r in job.results] == ['a:x', 'b:x', 'c:x']
        assert job.errors == []
        assert job.progress == 100.0

    def test_failing_item_does_not_affect_siblings(self, queue):
        """One failing item leaves the others successful and the job completed."""
        def handler(asset_id, params):
            if asset_id == 'asset-2':
                raise EnrichmentError("Cannot decode image", asset_id)
            return {'status': 'ready'}

        queue.register_handler(BatchOperation.ANALYZE, handler)
        job = queue.submit(BatchOperation.ANALYZE, ['asset-1', 'asset-2', 'asset-3'])
        job = queue.wait(job.id, timeout=10)

        assert job.status is JobStatus.COMPLETED
        assert job.results[0].result == {'status': 'ready'}
        assert job.results[1] is None
        assert job.results[2].result == {'status': 'ready'}
        assert [(e.asset_id, e.code) for e in job.errors] == [('asset-2', 'ENRICHMENT_FAILED')]
        assert job.progress == 100.0

    def test_unexpected_exception_uses_type_name(self, queue):
        def handler(asset_id, params):
            raise RuntimeError("disk full")

        queue.register_handler(BatchOperation.EXPORT, handler)
        job = queue.wait(queue.submit(BatchOperation.EXPORT, ['a']).id, timeout=10)
        assert job.errors[0].code == 'RuntimeError'
        assert job.errors[0].error == 'disk full'

    def test_empty_job_completes_immediately(self, queue):
        queue.register_handler(BatchOperation.DELETE, lambda asset_id, params: True)
        job = queue.submit(BatchOperation.DELETE, [])
        assert job.status is JobStatus.COMPLETED
        assert job.progress == 100.0

    def test_missing_handler_is_a_queue_fault(self, queue):
        job = queue.submit(BatchOperation.MOVE, ['a'])
        assert job.status is JobStatus.FAILED
        assert 'No handler' in job.fault

    def test_full_queue_is_a_queue_fault(self):
        q = BatchJobQueue(max_workers=1, max_queue_size=1)
        gate = threading.Event()
        started = threading.Event()

        def handler(asset_id, params):
            started.set()
            gate.wait(10)
            return asset_id

        try:
            q.register_handler(BatchOperation.TAG, handler)
            # Two items keep the dispatcher inside the first job while 'a' runs
            first = q.submit(BatchOperation.TAG, ['a', 'a2'])
            assert started.wait(10)
            second = q.submit(BatchOperation.TAG, ['b'])
            third = q.submit(BatchOperation.TAG, ['c'])
            assert second.status is JobStatus.QUEUED
            assert third.status is JobStatus.FAILED
            assert 'full' in third.fault
        finally:
            gate.set()
            q.wait(first.id, timeout=10)
            q.wait(second.id, timeout=10)
            q.shutdown()

    def test_cancel_stops_undispatched_items(self):
        q = BatchJobQueue(max_workers=1)
        gate = threading.Event()
        started = threading.Event()

        def handler(asset_id, params):
            started.set()
            gate.wait(10)
            return asset_id

        try:
            q.register_handler(BatchOperation.TAG, handler)
            job = q.submit(BatchOperation.TAG, ['a', 'b', 'c'])
            assert started.wait(10)
            assert q.cancel(job.id) is True
            gate.set()
            job = q.wait(job.id, timeout=10)
        finally:
            gate.set()
            q.shutdown()

        assert job.status is JobStatus.COMPLETED
        assert job.cancelled
        assert job.results[0].result == 'a'
        assert sorted(e.asset_id for e in job.errors) == ['b', 'c']
        assert {e.code for e in job.errors} == {'CANCELLED'}
        assert job.progress == 100.0
        assert q.cancel(job.id) is False

    def test_priority_order(self):
        q = BatchJobQueue(max_workers=1)
        gate = threading.Event()
        started = threading.Event()
        order = []

        def blocker(asset_id, params):
            started.set()
            gate.wait(10)
            return asset_id

        def recorder(asset_id, params):
            order.append(asset_id)
            return asset_id

        try:
            q.register_handler(BatchOperation.EXPORT, blocker)
            q.register_handler(BatchOperation.TAG, recorder)
            blocking = q.submit(BatchOperation.EXPORT, ['block-1', 'block-2'])
            assert started.wait(10)
            low = q.submit(BatchOperation.TAG, ['low'], priority='low')
            urgent = q.submit(BatchOperation.TAG, ['urgent'], priority='urgent')
            normal = q.submit(BatchOperation.TAG, ['normal'])
            gate.set()
            for job in (blocking, low, urgent, normal):
                q.wait(job.id, timeout=10)
        finally:
            gate.set()
            q.shutdown()

        assert order == ['urgent', 'normal', 'low']

    def test_unknown_job(self, queue):
        with pytest.raises(UnknownEntity):
            queue.get('batch_missing')

    def test_stats_and_cleanup(self, queue):
        queue.register_handler(BatchOperation.TAG, lambda asset_id, params: asset_id)
        job = queue.wait(queue.submit(BatchOperation.TAG, ['a']).id, timeout=10)
        stats = queue.get_stats()
        assert stats['completed_jobs'] == 1
        assert stats['total_items_processed'] == 1
        assert stats['active_jobs'] == 0

        queue.cleanup_old_jobs(max_age_hours=0)
        with pytest.raises(UnknownEntity):
            queue.get(job.id)
