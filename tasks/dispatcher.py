# tasks/dispatcher.py
"""
Worker dispatcher

Claims jobs from one or more queues and runs them on a bounded thread pool.
A job is only claimed when a pool slot is free, so the number of active jobs
held by this process never exceeds ``concurrency``. Queue transitions happen
on the claiming and finishing edges; no queue lock is held while a handler
talks to an external service.
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, Optional, Sequence

from core.exceptions import JobNotFound, PipelineError, StoreUnavailable, UnsupportedJobKind
from core.job_queue import JobQueue, describe_error
from core.jobs import DEFAULT_QUEUE, Job, JobKind
from tasks.handlers import Handler

logger = logging.getLogger(__name__)


class WorkerDispatcher:
    """
    Args:
        job_queue: queue to claim from and report to
        handlers: exhaustive ``JobKind`` to handler map
        queue_names: queues polled in order
        concurrency: simultaneously active jobs in this process
        poll_interval: idle wait between claim passes, in seconds
    """

    def __init__(self,
                 job_queue: JobQueue,
                 handlers: Dict[JobKind, Handler],
                 queue_names: Sequence[str] = (DEFAULT_QUEUE,),
                 concurrency: int = 5,
                 poll_interval: float = 1.0):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")

        self.job_queue = job_queue
        self.handlers = handlers
        self.queue_names = list(queue_names)
        self.concurrency = concurrency
        self.poll_interval = poll_interval

        self._slots = threading.BoundedSemaphore(concurrency)
        self._active = 0
        self._active_lock = threading.Lock()
        self._stop = threading.Event()
        self._loop_thread = None
        self._executor = None

    @property
    def is_running(self) -> bool:
        return self._loop_thread is not None and self._loop_thread.is_alive()

    @property
    def active_count(self) -> int:
        with self._active_lock:
            return self._active

    @property
    def workers_running(self) -> int:
        return self.concurrency if self.is_running else 0

    def start(self) -> None:
        if self.is_running:
            return
        self._stop.clear()
        self._executor = ThreadPoolExecutor(max_workers=self.concurrency,
                                            thread_name_prefix='job-worker')
        self._loop_thread = threading.Thread(target=self._run_loop, name='job-dispatcher', daemon=True)
        self._loop_thread.start()
        logger.info(f"Dispatcher started on {', '.join(self.queue_names)} with concurrency {self.concurrency}")

    def stop(self, wait: bool = True) -> None:
        """Stop claiming; with ``wait`` let in-flight jobs finish first"""
        self._stop.set()
        if self._loop_thread is not None:
            self._loop_thread.join()
            self._loop_thread = None
        if self._executor is not None:
            self._executor.shutdown(wait=wait)
            self._executor = None
        logger.info("Dispatcher stopped")

    def process_next(self) -> Optional[Job]:
        """
        Claim and run one job synchronously

        Returns the job as last seen by the dispatcher, or None when nothing
        was claimable.
        """
        job = self._claim_any()
        if job is None:
            return None
        return self.execute(job)

    def execute(self, job: Job) -> Optional[Job]:
        """Run the handler for a claimed job and report the outcome"""
        token = job.claim_token
        with self._active_lock:
            self._active += 1

        try:
            try:
                result = self._run_handler(job)
            except JobNotFound as e:
                logger.warning(f"Dropping job {job.id}: {str(e)}")
                return None
            except UnsupportedJobKind as e:
                logger.critical(f"No handler for job {job.id}: {str(e)}")
                return self._fail(job, e, retryable=False)
            except PipelineError as e:
                logger.error(f"Job {job.id} ({job.kind}) failed: {str(e)}")
                return self._fail(job, e, retryable=e.retryable)
            except Exception as e:
                logger.error(f"Unexpected error in job {job.id} ({job.kind}): {str(e)}", exc_info=True)
                return self._fail(job, e, retryable=True)

            try:
                return self.job_queue.complete(job.id, result, claim_token=token)
            except JobNotFound as e:
                logger.warning(f"Dropping result of job {job.id}: {str(e)}")
            except StoreUnavailable as e:
                # Job stays active; health reporting surfaces it as stuck
                logger.error(f"Queue store unavailable while finishing job {job.id}: {str(e)}")
            return None
        finally:
            with self._active_lock:
                self._active -= 1

    def _run_handler(self, job: Job):
        token = job.claim_token
        self.job_queue.update_progress(job.id, 10, claim_token=token)

        try:
            handler = self.handlers[JobKind(job.kind)]
        except (ValueError, KeyError):
            raise UnsupportedJobKind(job.kind)

        return handler(job, lambda value: self.job_queue.update_progress(job.id, value, claim_token=token))

    def _fail(self, job: Job, error: BaseException, retryable: bool) -> Optional[Job]:
        try:
            return self.job_queue.fail(job.id, describe_error(error), claim_token=job.claim_token,
                                       retryable=retryable)
        except JobNotFound as e:
            logger.warning(f"Dropping failure report for job {job.id}: {str(e)}")
        except StoreUnavailable as e:
            logger.error(f"Queue store unavailable while failing job {job.id}: {str(e)}")
        return None

    def _run_loop(self) -> None:
        while not self._stop.is_set():
            claimed = self._claim_pass()
            if not claimed:
                self._stop.wait(self.poll_interval)

    def _claim_pass(self) -> int:
        claimed = 0
        for queue_name in self.queue_names:
            while not self._stop.is_set() and self._slots.acquire(blocking=False):
                try:
                    job = self.job_queue.claim_next(queue_name, worker_capacity=1)
                except StoreUnavailable as e:
                    self._slots.release()
                    logger.error(f"Cannot claim from {queue_name}: {str(e)}")
                    return claimed
                if job is None:
                    self._slots.release()
                    break
                claimed += 1
                self._submit(job)
            if self._stop.is_set():
                break
        return claimed

    def _submit(self, job: Job) -> None:
        future = self._executor.submit(self.execute, job)
        future.add_done_callback(lambda _: self._slots.release())

    def drain(self, limit: Optional[int] = None) -> int:
        """Run claimable jobs synchronously until none are left; returns how many ran"""
        processed = 0
        while limit is None or processed < limit:
            job = self._claim_any()
            if job is None:
                break
            self.execute(job)
            processed += 1
        return processed

    def _claim_any(self) -> Optional[Job]:
        for queue_name in self.queue_names:
            job = self.job_queue.claim_next(queue_name, worker_capacity=1)
            if job is not None:
                return job
        return None
