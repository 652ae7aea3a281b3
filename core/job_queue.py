# core/job_queue.py
"""
Durable priority job queue with retry and exponential backoff

The queue is the single source of truth for job state. Jobs live in the
``queue_jobs`` table and move through::

    delayed -> waiting -> active -> completed
                            |
                            +-> failed (terminal)
                            +-> delayed (retry with backoff)

Claims, completions and failures are conditional UPDATEs, so two workers
(threads or processes) can never hold the same job. Within one process the
store transitions are additionally serialized by a lock; that lock is only
held for the duration of a database transaction, never while a handler runs.
"""

import json
import logging
import threading
import uuid
from contextlib import contextmanager
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterator, List, Optional, Union

from sqlalchemy import func, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DBAPIError, DisconnectionError, OperationalError
from sqlalchemy.orm import Session, sessionmaker

from core.database_models import Base, QueueControl, QueueJob
from core.exceptions import (
    InvalidJobOptions, JobNotFound, PipelineError, StoreUnavailable
)
from core.jobs import (
    DEFAULT_QUEUE, BackoffPolicy, Job, JobKind, JobOptions, JobState, Progress,
    new_job_id
)
from core.queue_events import QueueEventPublisher

logger = logging.getLogger(__name__)


CLEANABLE_STATES = (JobState.COMPLETED, JobState.FAILED, JobState.WAITING, JobState.DELAYED)


class QueueStats(dict):
    """Point-in-time job counts for one queue"""

    @classmethod
    def empty(cls) -> "QueueStats":
        return cls(waiting=0, active=0, completed=0, failed=0, delayed=0, paused=0)


class JobQueue:
    """
    SQL-backed job queue

    Args:
        engine: SQLAlchemy engine for the queue tables
        publisher: lifecycle event publisher (logging only when omitted)
        clock: returns the current naive UTC time; injectable for tests
        backlog_threshold: waiting-job count reported as unhealthy
    """

    def __init__(self,
                 engine: Engine,
                 publisher: Optional[QueueEventPublisher] = None,
                 clock: Optional[Callable[[], datetime]] = None,
                 backlog_threshold: int = 1000):
        self.engine = engine
        self.session_factory = sessionmaker(bind=engine, expire_on_commit=False)
        self.publisher = publisher or QueueEventPublisher()
        self.clock = clock or datetime.utcnow
        self.backlog_threshold = backlog_threshold
        self._lock = threading.RLock()

    def create_tables(self) -> None:
        """Create queue tables (deployments use migrations instead)"""
        try:
            Base.metadata.create_all(
                self.engine, tables=[QueueJob.__table__, QueueControl.__table__]
            )
        except (OperationalError, DisconnectionError) as e:
            raise StoreUnavailable(f"Queue store unreachable: {e}") from e

    def close(self) -> None:
        self.engine.dispose()

    @contextmanager
    def _transaction(self) -> Iterator[Session]:
        with self._lock:
            session = self.session_factory()
            try:
                yield session
                session.commit()
            except (OperationalError, DisconnectionError) as e:
                session.rollback()
                logger.error(f"Queue store unavailable: {str(e)}")
                raise StoreUnavailable(f"Queue store unreachable: {e}") from e
            except DBAPIError as e:
                session.rollback()
                if e.connection_invalidated:
                    raise StoreUnavailable(f"Queue store connection lost: {e}") from e
                raise
            except Exception:
                session.rollback()
                raise
            finally:
                session.close()

    # Submission

    def enqueue(self,
                kind: Union[str, JobKind],
                payload: Dict[str, Any],
                options: Union[JobOptions, Dict[str, Any], None] = None,
                queue_name: str = DEFAULT_QUEUE) -> Job:
        """
        Add a job to ``queue_name``

        The job starts ``delayed`` when a positive delay is requested and
        ``waiting`` otherwise.

        Raises:
            InvalidJobOptions: unknown kind, bad options or non-JSON payload
            StoreUnavailable: the backing database cannot be reached
        """
        row = self._build_row(kind, payload, options, queue_name)

        with self._transaction() as session:
            session.add(row)
            session.flush()
            job = self._to_job(row)

        self.publisher.publish(queue_name, job.state.value, job.id,
                               kind=job.kind, priority=job.priority)
        return job

    def enqueue_bulk(self, jobs: List[Dict[str, Any]]) -> List[Union[Job, PipelineError]]:
        """
        Enqueue several jobs, each in its own transaction

        Each item is ``{"kind", "payload", "options"?, "queue"?}``. The result
        list is index-aligned with the input: a ``Job`` for every accepted item
        and the raised error for every rejected one.
        """
        results: List[Union[Job, PipelineError]] = []
        for spec in jobs:
            try:
                if not isinstance(spec, dict):
                    raise InvalidJobOptions("bulk item must be an object")
                results.append(self.enqueue(
                    spec.get('kind'),
                    spec.get('payload'),
                    spec.get('options'),
                    queue_name=spec.get('queue') or DEFAULT_QUEUE,
                ))
            except (InvalidJobOptions, StoreUnavailable) as e:
                logger.warning(f"Bulk enqueue item rejected: {str(e)}")
                results.append(e)
        return results

    # Claiming and state transitions

    def claim_next(self, queue_name: str = DEFAULT_QUEUE, worker_capacity: int = 1) -> Optional[Job]:
        """
        Claim the next eligible job

        Due delayed jobs are promoted first. Among waiting jobs the lowest
        priority number wins, then the earliest enqueued. Returns ``None`` on
        an empty or paused queue, or when the caller has no free capacity.
        """
        if worker_capacity <= 0:
            return None

        now = self.clock()
        token = uuid.uuid4().hex
        job = None

        with self._transaction() as session:
            if self._is_paused(session, queue_name):
                return None

            promoted = self._promote_due(session, queue_name, now)

            while job is None:
                candidate = session.execute(
                    select(QueueJob.id)
                    .where(QueueJob.queue_name == queue_name,
                           QueueJob.state == JobState.WAITING.value)
                    .order_by(QueueJob.priority.asc(), QueueJob.seq.asc())
                    .limit(1)
                ).scalar_one_or_none()
                if candidate is None:
                    break

                claimed = session.execute(
                    update(QueueJob)
                    .where(QueueJob.id == candidate,
                           QueueJob.state == JobState.WAITING.value)
                    .values(state=JobState.ACTIVE.value, claim_token=token,
                            started_at=now, progress=0, updated_at=now)
                    .execution_options(synchronize_session=False)
                )
                if claimed.rowcount == 1:
                    job = self._to_job(self._load(session, candidate))
                # Otherwise another worker won the race; try the next candidate

        for job_id in promoted:
            self.publisher.publish(queue_name, JobState.WAITING.value, job_id)
        if job is not None:
            self.publisher.publish(queue_name, JobState.ACTIVE.value, job.id,
                                   kind=job.kind, attempt=job.attempt + 1)
        return job

    def complete(self, job_id: str, result: Optional[Dict[str, Any]] = None,
                 claim_token: Optional[str] = None) -> Job:
        """
        Transition an active job to ``completed``

        Raises:
            JobNotFound: the job is not active (under ``claim_token`` when given)
        """
        now = self.clock()
        with self._transaction() as session:
            row = self._active_row(session, job_id, claim_token)
            self._transition(session, row, claim_token,
                             state=JobState.COMPLETED.value,
                             attempt=row.attempt + 1,
                             result=_json_safe(result),
                             error=None,
                             progress=_final_progress(row.progress),
                             claim_token=None,
                             finished_at=now,
                             updated_at=now)
            job = self._to_job(self._load(session, job_id))

        self.publisher.publish(job.queue_name, JobState.COMPLETED.value, job.id,
                               attempt=job.attempt)
        return job

    def fail(self, job_id: str, error: Union[BaseException, Dict[str, Any], str],
             claim_token: Optional[str] = None, retryable: bool = True) -> Job:
        """
        Record a failed attempt

        The attempt counter goes up by one. A retryable failure with attempts
        left moves the job to ``delayed`` for ``base * 2^attempts_before``
        milliseconds (capped by the backoff policy); anything else is terminal.

        Raises:
            JobNotFound: the job is not active (under ``claim_token`` when given)
        """
        now = self.clock()
        error_info = describe_error(error)

        with self._transaction() as session:
            row = self._active_row(session, job_id, claim_token)
            attempts_before = row.attempt
            attempts = attempts_before + 1

            if retryable and attempts < row.max_attempts:
                backoff = BackoffPolicy.from_dict(row.backoff)
                delay_ms = backoff.next_delay_ms(attempts_before)
                self._transition(session, row, claim_token,
                                 state=JobState.DELAYED.value,
                                 attempt=attempts,
                                 last_error=error_info,
                                 claim_token=None,
                                 run_at=now + timedelta(milliseconds=delay_ms),
                                 updated_at=now)
                event = 'retrying'
            else:
                delay_ms = None
                self._transition(session, row, claim_token,
                                 state=JobState.FAILED.value,
                                 attempt=attempts,
                                 error=error_info,
                                 last_error=error_info,
                                 result=None,
                                 claim_token=None,
                                 finished_at=now,
                                 updated_at=now)
                event = JobState.FAILED.value
            job = self._to_job(self._load(session, job_id))

        self.publisher.publish(job.queue_name, event, job.id, attempt=job.attempt,
                               delayMs=delay_ms, error=error_info.get('message'))
        return job

    def update_progress(self, job_id: str, progress: Progress,
                        claim_token: Optional[str] = None) -> Job:
        """
        Report progress for an active job

        Integer progress is clamped to 0-100 and never moves backwards;
        ``{"completed", "total"}`` pairs replace the previous value.
        """
        value = _validate_progress(progress)
        now = self.clock()

        with self._transaction() as session:
            row = self._active_row(session, job_id, claim_token)
            if isinstance(value, int) and isinstance(row.progress, int):
                value = max(value, row.progress)
            self._transition(session, row, claim_token, progress=value, updated_at=now)
            job = self._to_job(self._load(session, job_id))

        self.publisher.publish(job.queue_name, 'progress', job.id, progress=value)
        return job

    # Inspection and maintenance

    def get_job(self, job_id: str) -> Optional[Job]:
        with self._transaction() as session:
            row = self._find(session, job_id)
            return self._to_job(row) if row is not None else None

    def stats(self, queue_name: str = DEFAULT_QUEUE) -> QueueStats:
        """Job counts per state; eventually consistent with concurrent workers"""
        stats = QueueStats.empty()
        with self._transaction() as session:
            rows = session.execute(
                select(QueueJob.state, func.count())
                .where(QueueJob.queue_name == queue_name)
                .group_by(QueueJob.state)
            ).all()
            for state, count in rows:
                stats[state] = count
            stats['paused'] = 1 if self._is_paused(session, queue_name) else 0
        return stats

    def retry_failed(self, queue_name: str = DEFAULT_QUEUE, limit: int = 100) -> int:
        """Reset up to ``limit`` terminally failed jobs to fresh waiting jobs"""
        if limit <= 0:
            return 0

        now = self.clock()
        with self._transaction() as session:
            rows = session.execute(
                select(QueueJob)
                .where(QueueJob.queue_name == queue_name,
                       QueueJob.state == JobState.FAILED.value)
                .order_by(QueueJob.finished_at.asc(), QueueJob.seq.asc())
                .limit(limit)
            ).scalars().all()
            for row in rows:
                row.state = JobState.WAITING.value
                row.attempt = 0
                row.progress = 0
                row.result = None
                row.error = None
                row.last_error = None
                row.claim_token = None
                row.started_at = None
                row.finished_at = None
                row.run_at = now
                row.updated_at = now
            retried = [row.id for row in rows]

        for job_id in retried:
            self.publisher.publish(queue_name, JobState.WAITING.value, job_id, retried=True)
        logger.info(f"Re-enqueued {len(retried)} failed jobs in queue {queue_name}")
        return len(retried)

    def promote_job(self, job_id: str) -> Job:
        """Make a delayed job eligible immediately"""
        now = self.clock()
        with self._transaction() as session:
            row = self._find(session, job_id)
            if row is None or row.state != JobState.DELAYED.value:
                raise JobNotFound(job_id, "is not delayed")
            row.state = JobState.WAITING.value
            row.run_at = now
            row.updated_at = now
            session.flush()
            job = self._to_job(row)

        self.publisher.publish(job.queue_name, JobState.WAITING.value, job.id, promoted=True)
        return job

    def remove_job(self, job_id: str) -> bool:
        """Delete a job that is not currently active"""
        with self._transaction() as session:
            row = self._find(session, job_id)
            if row is None:
                return False
            if row.state == JobState.ACTIVE.value:
                logger.warning(f"Refusing to remove active job {job_id}")
                return False
            session.delete(row)
        return True

    def clean(self, queue_name: str, grace_seconds: float,
              state: Union[str, JobState] = JobState.COMPLETED, limit: int = 100) -> List[str]:
        """
        Purge jobs in ``state`` older than the grace period

        Terminal jobs age from when they finished, waiting and delayed jobs
        from when they were enqueued. Active jobs are never purged.
        """
        state = JobState(state)
        if state not in CLEANABLE_STATES:
            raise InvalidJobOptions(f"Cannot clean jobs in state {state.value}")

        cutoff = self.clock() - timedelta(seconds=grace_seconds)
        age_column = QueueJob.finished_at if state in (JobState.COMPLETED, JobState.FAILED) \
            else QueueJob.created_at

        with self._transaction() as session:
            rows = session.execute(
                select(QueueJob)
                .where(QueueJob.queue_name == queue_name,
                       QueueJob.state == state.value,
                       age_column <= cutoff)
                .order_by(QueueJob.seq.asc())
                .limit(limit)
            ).scalars().all()
            removed = [row.id for row in rows]
            for row in rows:
                session.delete(row)

        if removed:
            logger.info(f"Cleaned {len(removed)} {state.value} jobs from queue {queue_name}")
        return removed

    def pause(self, queue_name: str = DEFAULT_QUEUE) -> None:
        self._set_paused(queue_name, True)
        logger.info(f"Queue {queue_name} paused")

    def resume(self, queue_name: str = DEFAULT_QUEUE) -> None:
        self._set_paused(queue_name, False)
        logger.info(f"Queue {queue_name} resumed")

    def is_paused(self, queue_name: str = DEFAULT_QUEUE) -> bool:
        with self._transaction() as session:
            return self._is_paused(session, queue_name)

    def health(self, queue_name: str = DEFAULT_QUEUE, workers_running: Optional[int] = 0) -> Dict[str, Any]:
        """
        Health signals for operators

        Stuck jobs (active with no running worker) are reported, not resolved.
        """
        try:
            stats = self.stats(queue_name)
        except StoreUnavailable as e:
            return {
                'isHealthy': False,
                'stats': QueueStats.empty(),
                'workers': 0,
                'errors': [f"Health check failed: {str(e)}"],
            }

        errors = []
        if stats['failed'] > stats['completed'] * 0.1:
            errors.append('High failure rate detected')
        if workers_running is not None and stats['active'] > 0 and workers_running <= 0:
            errors.append('Active jobs detected but no running workers')
        if stats['waiting'] > self.backlog_threshold:
            errors.append('Too many waiting jobs')

        return {
            'isHealthy': not errors,
            'stats': stats,
            'workers': workers_running,
            'errors': errors,
        }

    # Internal helpers

    def _build_row(self, kind, payload, options, queue_name: str) -> QueueJob:
        job_kind = JobKind.parse(kind)
        if not isinstance(payload, dict):
            raise InvalidJobOptions("payload must be an object")
        try:
            json.dumps(payload)
        except (TypeError, ValueError) as e:
            raise InvalidJobOptions(f"payload is not JSON-serializable: {e}")

        opts = options if isinstance(options, JobOptions) else JobOptions.from_dict(options)
        now = self.clock()
        delayed = opts.delay_ms > 0

        return QueueJob(
            id=new_job_id(),
            queue_name=queue_name,
            kind=job_kind.value,
            payload=payload,
            priority=opts.priority,
            state=(JobState.DELAYED if delayed else JobState.WAITING).value,
            attempt=0,
            max_attempts=opts.max_attempts,
            backoff=opts.backoff.to_dict(),
            progress=0,
            run_at=now + timedelta(milliseconds=opts.delay_ms),
            created_at=now,
            updated_at=now,
        )

    def _promote_due(self, session: Session, queue_name: str, now: datetime) -> List[str]:
        due = session.execute(
            select(QueueJob.id)
            .where(QueueJob.queue_name == queue_name,
                   QueueJob.state == JobState.DELAYED.value,
                   QueueJob.run_at <= now)
        ).scalars().all()
        if due:
            session.execute(
                update(QueueJob)
                .where(QueueJob.id.in_(due),
                       QueueJob.state == JobState.DELAYED.value)
                .values(state=JobState.WAITING.value, updated_at=now)
                .execution_options(synchronize_session=False)
            )
        return list(due)

    def _find(self, session: Session, job_id: str) -> Optional[QueueJob]:
        return session.execute(
            select(QueueJob)
            .where(QueueJob.id == job_id)
            .execution_options(populate_existing=True)
        ).scalar_one_or_none()

    def _load(self, session: Session, job_id: str) -> QueueJob:
        row = self._find(session, job_id)
        if row is None:
            raise JobNotFound(job_id)
        return row

    def _active_row(self, session: Session, job_id: str, claim_token: Optional[str]) -> QueueJob:
        row = self._find(session, job_id)
        if row is None:
            raise JobNotFound(job_id)
        if row.state != JobState.ACTIVE.value:
            raise JobNotFound(job_id, f"is not active (state={row.state})")
        if claim_token is not None and row.claim_token != claim_token:
            raise JobNotFound(job_id, "is not active under this claim")
        return row

    def _transition(self, session: Session, row: QueueJob,
                    claim_token: Optional[str], /, **values: Any) -> None:
        """Conditional update guarded by the claim and the observed attempt"""
        conditions = [
            QueueJob.id == row.id,
            QueueJob.state == JobState.ACTIVE.value,
            QueueJob.attempt == row.attempt,
        ]
        if claim_token is not None:
            conditions.append(QueueJob.claim_token == claim_token)

        changed = session.execute(
            update(QueueJob)
            .where(*conditions)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if changed.rowcount != 1:
            raise JobNotFound(row.id, "changed state concurrently")

    def _is_paused(self, session: Session, queue_name: str) -> bool:
        control = session.get(QueueControl, queue_name)
        return bool(control and control.paused)

    def _set_paused(self, queue_name: str, paused: bool) -> None:
        with self._transaction() as session:
            control = session.get(QueueControl, queue_name)
            if control is None:
                session.add(QueueControl(queue_name=queue_name, paused=paused))
            else:
                control.paused = paused

    @staticmethod
    def _to_job(row: QueueJob) -> Job:
        return Job(
            id=row.id,
            queue_name=row.queue_name,
            kind=row.kind,
            payload=row.payload or {},
            priority=row.priority,
            state=JobState(row.state),
            attempt=row.attempt,
            max_attempts=row.max_attempts,
            backoff=BackoffPolicy.from_dict(row.backoff),
            progress=row.progress if row.progress is not None else 0,
            result=row.result,
            error=row.error,
            last_error=row.last_error,
            run_at=row.run_at,
            created_at=row.created_at,
            started_at=row.started_at,
            finished_at=row.finished_at,
            claim_token=row.claim_token,
        )


def describe_error(error: Union[BaseException, Dict[str, Any], str]) -> Dict[str, Any]:
    """Serializable description of a handler failure"""
    if isinstance(error, dict):
        return _json_safe(error)
    if isinstance(error, BaseException):
        info = {'type': type(error).__name__, 'message': str(error)}
        raw_text = getattr(error, 'raw_text', None)
        if raw_text is not None:
            info['rawText'] = raw_text
        return info
    return {'type': 'Error', 'message': str(error)}


def _validate_progress(progress: Progress) -> Progress:
    if isinstance(progress, bool):
        raise InvalidJobOptions("progress must be an integer or {completed, total}")
    if isinstance(progress, int):
        return min(max(progress, 0), 100)
    if isinstance(progress, dict):
        completed, total = progress.get('completed'), progress.get('total')
        if not isinstance(completed, int) or not isinstance(total, int):
            raise InvalidJobOptions("progress requires integer completed and total")
        return _json_safe(progress)
    raise InvalidJobOptions("progress must be an integer or {completed, total}")


def _final_progress(progress: Optional[Progress]) -> Progress:
    if isinstance(progress, dict) and isinstance(progress.get('total'), int):
        return {**progress, 'completed': progress['total']}
    return 100


def _json_safe(value: Any) -> Any:
    """Round-trip through JSON so stored results never hold live objects"""
    if value is None:
        return None
    return json.loads(json.dumps(value, default=str))
