"""
Batch job queue for DocuSight

Runs an operation over a list of assets with progress tracking. Jobs are
taken from a priority queue by a dispatcher thread and their items run on
a worker pool; items are independent, so one failing item never affects
another.
"""

import copy
import logging
import queue
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, Callable, Dict, List, Optional

from ..errors import DocuSightError, QueueFault, UnknownEntity
from ..models.jobs import (
    PRIORITIES, BatchError, BatchItemResult, BatchJob, BatchOperation, JobStatus,
)
from ..models.media import utcnow

logger = logging.getLogger(__name__)

# handler(asset_id, parameters) -> result
ItemHandler = Callable[[str, Dict[str, Any]], Any]


class _JobState:
    """Bookkeeping kept beside a BatchJob while it is live."""

    def __init__(self, job: BatchJob):
        self.job = job
        self.lock = threading.RLock()
        self.done = threading.Event()
        self.futures: List[Future] = []
        self.dispatched: set = set()


class BatchJobQueue:
    """
    Manages batch operations over assets.

    Features:
    - Priority-based queuing (urgent, high, normal, low)
    - Concurrent item processing with configurable workers
    - Per-item results and errors, progress tracking
    - Cancellation of undispatched items
    """

    def __init__(self, max_workers: int = 4, max_queue_size: int = 100):
        self.max_workers = max_workers
        self.max_queue_size = max_queue_size

        self._jobs: Dict[str, _JobState] = {}
        self._handlers: Dict[BatchOperation, ItemHandler] = {}
        self._job_queue = queue.PriorityQueue(maxsize=max_queue_size)
        self._sequence = 0
        self._lock = threading.RLock()
        # One slot per worker; items reach the pool only when a slot frees
        self._slots = threading.BoundedSemaphore(max_workers)

        self.executor = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="BatchWorker"
        )

        self.running = True
        self.worker_thread = threading.Thread(
            target=self._worker_loop,
            name="BatchJobDispatcher",
            daemon=True
        )
        self.worker_thread.start()

        self.stats = {
            'total_jobs': 0,
            'completed_jobs': 0,
            'failed_jobs': 0,
            'cancelled_jobs': 0,
            'total_items_processed': 0,
            'total_items_failed': 0,
            'total_processing_time': 0.0
        }

        logger.info(f"BatchJobQueue initialized with {max_workers} workers")

    def register_handler(self, operation: BatchOperation, handler: ItemHandler) -> None:
        with self._lock:
            self._handlers[operation] = handler

    def submit(self, operation: BatchOperation, asset_ids: List[str], priority: str = 'normal',
               parameters: Optional[Dict[str, Any]] = None) -> BatchJob:
        """
        Submit a batch job.

        Queue faults do not raise; the returned job is already ``failed``
        with the fault recorded.

        Args:
            operation: Operation to run on each asset
            asset_ids: Assets to process
            priority: urgent, high, normal or low
            parameters: Operation parameters (tags, collection id, ...)

        Returns:
            Snapshot of the submitted job
        """
        job = BatchJob(
            id=f"batch_{uuid.uuid4().hex[:12]}",
            operation=operation,
            asset_ids=list(asset_ids),
            priority=priority if priority in PRIORITIES else 'normal',
            parameters=dict(parameters or {}),
        )
        state = _JobState(job)

        with self._lock:
            self._jobs[job.id] = state
            self.stats['total_jobs'] += 1
            self._sequence += 1
            try:
                if not self.running:
                    raise QueueFault("Batch queue is shut down")
                if operation not in self._handlers:
                    raise QueueFault(f"No handler registered for {operation.value}")
                self._job_queue.put_nowait((PRIORITIES[job.priority], self._sequence, job.id))
            except queue.Full:
                self._fault(state, QueueFault(f"Batch queue is full ({self.max_queue_size} jobs)"))
            except QueueFault as e:
                self._fault(state, e)
            else:
                logger.info(f"Submitted {operation.value} job {job.id} with {job.total} items "
                            f"at {job.priority} priority")

        if not job.asset_ids and job.status is JobStatus.QUEUED:
            self._finish(state)
        return self.get(job.id)

    def _fault(self, state: _JobState, error: QueueFault) -> None:
        with state.lock:
            state.job.status = JobStatus.FAILED
            state.job.fault = str(error)
            state.job.completed_at = utcnow()
        self.stats['failed_jobs'] += 1
        state.done.set()
        logger.error(f"Job {state.job.id} failed: {error}")

    def get(self, job_id: str) -> BatchJob:
        """Snapshot of a job's current state."""
        state = self._state(job_id)
        with state.lock:
            return copy.deepcopy(state.job)

    def _state(self, job_id: str) -> _JobState:
        with self._lock:
            state = self._jobs.get(job_id)
        if state is None:
            raise UnknownEntity(f"Unknown job: {job_id}")
        return state

    def list_jobs(self) -> List[BatchJob]:
        with self._lock:
            states = list(self._jobs.values())
        jobs = []
        for state in states:
            with state.lock:
                jobs.append(copy.deepcopy(state.job))
        return sorted(jobs, key=lambda j: j.created_at)

    def wait(self, job_id: str, timeout: Optional[float] = None) -> BatchJob:
        """Block until the job is terminal (or the timeout passes)."""
        state = self._state(job_id)
        state.done.wait(timeout)
        return self.get(job_id)

    def cancel(self, job_id: str) -> bool:
        """
        Cancel a batch job.

        Items not yet dispatched become terminal errors with code
        ``CANCELLED``; items already running finish normally.

        Returns:
            True if cancelled, False if the job was already terminal
        """
        state = self._state(job_id)
        with state.lock:
            job = state.job
            if job.status.is_terminal:
                return False
            job.cancelled = True
            for index, asset_id in enumerate(job.asset_ids):
                if index in state.dispatched:
                    continue
                state.dispatched.add(index)
                job.errors.append(BatchError(asset_id, "Job cancelled", code="CANCELLED"))
            self.stats['cancelled_jobs'] += 1
            logger.info(f"Cancelled batch job {job_id}")
        self._maybe_finish(state)
        return True

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            active_jobs = sum(1 for state in self._jobs.values()
                              if not state.job.status.is_terminal)
            return {
                **self.stats,
                'active_jobs': active_jobs,
                'queue_size': self._job_queue.qsize(),
                'max_workers': self.max_workers
            }

    def cleanup_old_jobs(self, max_age_hours: int = 24):
        """Forget terminal jobs older than the given age."""
        now = utcnow()
        with self._lock:
            to_remove = [job_id for job_id, state in self._jobs.items()
                         if state.job.completed_at and
                         (now - state.job.completed_at).total_seconds() > max_age_hours * 3600]
            for job_id in to_remove:
                del self._jobs[job_id]
        if to_remove:
            logger.info(f"Cleaned up {len(to_remove)} old batch jobs")

    def shutdown(self, wait: bool = True):
        """Stop accepting jobs, cancel pending ones and stop the workers."""
        logger.info("Shutting down BatchJobQueue...")
        self.running = False

        with self._lock:
            job_ids = [job_id for job_id, state in self._jobs.items()
                       if not state.job.status.is_terminal]
        for job_id in job_ids:
            self.cancel(job_id)

        self.executor.shutdown(wait=wait)
        if wait and self.worker_thread.is_alive():
            self.worker_thread.join(timeout=5.0)
        logger.info("BatchJobQueue shutdown complete")

    # ------------------------------------------------------------------
    # Workers
    # ------------------------------------------------------------------

    def _worker_loop(self):
        """Dispatcher loop: pops jobs in priority order."""
        while self.running:
            try:
                try:
                    _, _, job_id = self._job_queue.get(timeout=0.2)
                except queue.Empty:
                    continue
                with self._lock:
                    state = self._jobs.get(job_id)
                if state is not None:
                    self._process_job(state)
            except Exception as e:
                logger.error(f"Worker loop error: {e}")

    def _process_job(self, state: _JobState):
        job = state.job
        with state.lock:
            if job.status.is_terminal:
                return
            job.status = JobStatus.PROCESSING
            job.started_at = utcnow()
            handler = self._handlers[job.operation]
            logger.info(f"Starting {job.operation.value} job {job.id}")

        for index, asset_id in enumerate(job.asset_ids):
            self._slots.acquire()
            with state.lock:
                if job.cancelled or index in state.dispatched:
                    self._slots.release()
                    continue
                state.dispatched.add(index)
                try:
                    future = self.executor.submit(self._process_item, state, handler, index, asset_id)
                except RuntimeError as e:
                    # Executor shut down underneath us
                    self._slots.release()
                    job.errors.append(BatchError(asset_id, str(e), code="CANCELLED"))
                    continue
                state.futures.append(future)

        self._maybe_finish(state)

    def _process_item(self, state: _JobState, handler: ItemHandler, index: int, asset_id: str):
        job = state.job
        start_time = time.time()
        try:
            result = handler(asset_id, job.parameters)
        except DocuSightError as e:
            self._record_error(state, asset_id, str(e), getattr(e, 'code', type(e).__name__))
        except Exception as e:
            logger.error(f"Failed to process {asset_id} in job {job.id}: {e}")
            self._record_error(state, asset_id, str(e), type(e).__name__)
        else:
            processing_time = time.time() - start_time
            with state.lock:
                job.results[index] = BatchItemResult(asset_id, result, processing_time)
            with self._lock:
                self.stats['total_items_processed'] += 1
                self.stats['total_processing_time'] += processing_time
            logger.debug(f"Processed {asset_id} in {processing_time:.2f}s")
        finally:
            self._slots.release()
        self._maybe_finish(state)

    def _record_error(self, state: _JobState, asset_id: str, message: str, code: str) -> None:
        with state.lock:
            state.job.errors.append(BatchError(asset_id, message, code=code))
        with self._lock:
            self.stats['total_items_failed'] += 1

    def _maybe_finish(self, state: _JobState) -> None:
        with state.lock:
            job = state.job
            if job.status.is_terminal or job.terminal_items < job.total:
                return
        self._finish(state)

    def _finish(self, state: _JobState) -> None:
        with state.lock:
            job = state.job
            if job.status.is_terminal:
                return
            job.status = JobStatus.COMPLETED
            job.completed_at = utcnow()
            if job.started_at is None:
                job.started_at = job.completed_at
        with self._lock:
            self.stats['completed_jobs'] += 1
        state.done.set()
        logger.info(f"Completed {job.operation.value} job {job.id}: "
                    f"{job.succeeded} succeeded, {len(job.errors)} failed")
