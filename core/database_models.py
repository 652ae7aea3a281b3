from datetime import datetime
from sqlalchemy import (
    Column, Integer, String, DateTime, JSON, Text, Boolean, Index, create_engine
)
from sqlalchemy.engine import Engine
from sqlalchemy.orm import declarative_base
from sqlalchemy.pool import StaticPool

Base = declarative_base()

class QueueJob(Base):
    __tablename__ = 'queue_jobs'

    seq = Column(Integer, primary_key=True, autoincrement=True)  # Enqueue order, FIFO tie-break
    id = Column(String(32), nullable=False, unique=True, index=True)
    queue_name = Column(String(100), nullable=False)
    kind = Column(String(50), nullable=False)
    payload = Column(JSON, nullable=False)
    priority = Column(Integer, nullable=False, default=0)
    state = Column(String(20), nullable=False)  # delayed, waiting, active, completed, failed
    attempt = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    backoff = Column(JSON)  # {"type", "delay", "maxDelay"} in milliseconds
    progress = Column(JSON)  # int 0-100 or {"completed", "total"}
    result = Column(JSON)
    error = Column(JSON)  # Set once, on terminal failure
    last_error = Column(JSON)  # Most recent retryable failure
    claim_token = Column(String(32))
    run_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    started_at = Column(DateTime)
    finished_at = Column(DateTime)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index('ix_queue_jobs_claim', 'queue_name', 'state', 'priority', 'seq'),
        Index('ix_queue_jobs_due', 'queue_name', 'state', 'run_at'),
    )

class QueueControl(Base):
    __tablename__ = 'queue_controls'

    queue_name = Column(String(100), primary_key=True)
    paused = Column(Boolean, nullable=False, default=False)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

class EmailTemplateRecord(Base):
    __tablename__ = 'email_templates'

    name = Column(String(64), primary_key=True)
    subject_template = Column(String(255), nullable=False)
    html_content = Column(Text)
    text_content = Column(Text)
    variables = Column(JSON)  # Variables the template expects, for operators
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

class AnalyticsEvent(Base):
    __tablename__ = 'analytics_events'

    id = Column(Integer, primary_key=True, autoincrement=True)  # Insertion order
    event_name = Column(String(100), nullable=False, index=True)
    user_id = Column(String(100), index=True)
    session_id = Column(String(100))
    timestamp = Column(DateTime, nullable=False, index=True)
    properties = Column(Text)  # JSON string
    created_at = Column(DateTime, default=datetime.utcnow)


def create_database_engine(database_url: str, echo: bool = False, **engine_options) -> Engine:
    """
    Create the SQLAlchemy engine shared by the job queue and the event recorder

    SQLite connections are shared across worker threads; an in-memory SQLite
    database is pinned to a single connection so every thread sees it.
    """
    options = {'echo': echo, 'future': True}
    if database_url.startswith('sqlite'):
        options['connect_args'] = {'check_same_thread': False}
        if ':memory:' in database_url or database_url in ('sqlite://', 'sqlite:///'):
            options['poolclass'] = StaticPool
    else:
        options.update({
            'pool_size': 10,
            'max_overflow': 20,
            'pool_pre_ping': True,  # Verify connections before use
            'pool_recycle': 3600,
        })
    options.update(engine_options)
    return create_engine(database_url, **options)
