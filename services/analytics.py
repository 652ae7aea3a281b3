# services/analytics.py
"""
Pipeline analytics: best-effort event recording and pandas reporting

Handlers record generation and delivery events through ``EventRecorder``,
which never blocks a job and never fails one. Events are buffered in memory
and written to ``analytics_events`` in batches by a background thread.
``EventAnalytics`` reads them back into DataFrames for reporting.
"""

import json
import logging
import queue
import threading
import time
from datetime import datetime
from typing import Any, Dict, List, Optional

import pandas as pd
from sqlalchemy import select, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DisconnectionError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import sessionmaker

from core.database_models import AnalyticsEvent, Base
from core.exceptions import StoreUnavailable
from core.jobs import Event

logger = logging.getLogger(__name__)


class EventRecorder:
    """
    Non-blocking analytics sink

    Args:
        engine: SQLAlchemy engine holding ``analytics_events``
        max_buffer: events held in memory before new ones are dropped
        batch_size: rows per insert
        flush_interval: seconds the writer waits to fill a batch
        autostart: start the background writer immediately
    """

    def __init__(self, engine: Engine, max_buffer: int = 10000, batch_size: int = 100,
                 flush_interval: float = 1.0, autostart: bool = True):
        self.engine = engine
        self.session_factory = sessionmaker(bind=engine)
        self.batch_size = batch_size
        self.flush_interval = flush_interval
        self.dropped = 0

        self._queue = queue.Queue(maxsize=max_buffer)
        self._stop = threading.Event()
        self._thread = None
        if autostart:
            self.start()

    def create_tables(self) -> None:
        Base.metadata.create_all(self.engine, tables=[AnalyticsEvent.__table__])
        logger.info("Analytics tables initialized")

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name='event-recorder', daemon=True)
        self._thread.start()

    def record(self, event: Event) -> bool:
        """Buffer an event; returns False if it had to be dropped"""
        try:
            self._queue.put_nowait(event)
            return True
        except queue.Full:
            self.dropped += 1
            logger.warning(f"Analytics buffer full, dropping event {event.event_name}")
            return False

    def track(self, event_name: str, user_id: Optional[str] = None,
              properties: Optional[Dict[str, Any]] = None,
              session_id: Optional[str] = None) -> bool:
        return self.record(Event(
            event_name=event_name,
            user_id=user_id,
            session_id=session_id,
            properties=properties or {},
        ))

    def flush(self, timeout: float = 5.0) -> bool:
        """
        Wait until every buffered event has been written (or dropped on error)

        Returns False when ``timeout`` expires first.
        """
        if self._thread is None or not self._thread.is_alive():
            while self._write_next_batch(block=False):
                pass
            return True

        deadline = time.monotonic() + timeout
        with self._queue.all_tasks_done:
            while self._queue.unfinished_tasks:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    return False
                self._queue.all_tasks_done.wait(remaining)
        return True

    def close(self, timeout: float = 5.0) -> None:
        """Stop the writer after draining what is buffered"""
        self.flush(timeout)
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Event recorder closed")

    def health_check(self) -> bool:
        try:
            with self.engine.connect() as connection:
                connection.execute(text('SELECT 1'))
            return True
        except SQLAlchemyError as e:
            logger.error(f"Analytics health check failed: {str(e)}")
            return False

    def _run(self) -> None:
        while not self._stop.is_set():
            self._write_next_batch(block=True)
        # Drain whatever arrived during shutdown
        while self._write_next_batch(block=False):
            pass

    def _write_next_batch(self, block: bool) -> bool:
        batch = []
        try:
            batch.append(self._queue.get(block=block, timeout=self.flush_interval if block else None))
        except queue.Empty:
            return False

        while len(batch) < self.batch_size:
            try:
                batch.append(self._queue.get_nowait())
            except queue.Empty:
                break

        try:
            self._insert(batch)
        finally:
            for _ in batch:
                self._queue.task_done()
        return True

    def _insert(self, events: List[Event]) -> None:
        session = self.session_factory()
        try:
            session.add_all([
                AnalyticsEvent(
                    event_name=event.event_name,
                    user_id=event.user_id,
                    session_id=event.session_id,
                    timestamp=event.timestamp,
                    properties=json.dumps(event.properties, default=str),
                )
                for event in events
            ])
            session.commit()
            logger.debug(f"Wrote {len(events)} analytics events")
        except SQLAlchemyError as e:
            session.rollback()
            logger.error(f"Failed to write {len(events)} analytics events: {str(e)}")
        finally:
            session.close()


class EventAnalytics:
    """Reporting over recorded events"""

    def __init__(self, engine: Engine):
        self.engine = engine

    def load_events(self, event_name: Optional[str] = None, user_id: Optional[str] = None,
                    since: Optional[datetime] = None) -> pd.DataFrame:
        """Events as a DataFrame with ``properties`` decoded to dicts"""
        query = select(
            AnalyticsEvent.event_name,
            AnalyticsEvent.user_id,
            AnalyticsEvent.session_id,
            AnalyticsEvent.timestamp,
            AnalyticsEvent.properties,
        ).order_by(AnalyticsEvent.timestamp, AnalyticsEvent.id)
        if event_name:
            query = query.where(AnalyticsEvent.event_name == event_name)
        if user_id:
            query = query.where(AnalyticsEvent.user_id == user_id)
        if since:
            query = query.where(AnalyticsEvent.timestamp >= since)

        try:
            with self.engine.connect() as connection:
                df = pd.read_sql(query, connection)
        except (OperationalError, DisconnectionError) as e:
            logger.error(f"Analytics store unavailable: {str(e)}")
            raise StoreUnavailable(f"Analytics store unreachable: {e}") from e

        if not df.empty:
            df['timestamp'] = pd.to_datetime(df['timestamp'])
            df['properties'] = df['properties'].apply(lambda raw: json.loads(raw) if raw else {})
        return df

    def event_counts(self, since: Optional[datetime] = None) -> pd.DataFrame:
        """Event totals per name and day"""
        df = self.load_events(since=since)
        if df.empty:
            return pd.DataFrame(columns=['event_name', 'date', 'count'])

        df['date'] = df['timestamp'].dt.date
        return (df.groupby(['event_name', 'date'])
                  .size()
                  .reset_index(name='count')
                  .sort_values(['date', 'event_name'])
                  .reset_index(drop=True))

    def delivery_summary(self, user_id: Optional[str] = None) -> Dict[str, Any]:
        """Sent/failed totals and success rate from ``email_sent`` events"""
        df = self.load_events(event_name='email_sent', user_id=user_id)
        if df.empty:
            return {'total': 0, 'sent': 0, 'failed': 0, 'success_rate': 0.0}

        statuses = df['properties'].apply(lambda props: props.get('status'))
        total = len(df)
        sent = int((statuses == 'success').sum())
        return {
            'total': total,
            'sent': sent,
            'failed': total - sent,
            'success_rate': round(sent / total * 100, 2),
        }
