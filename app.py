# app.py
"""
Flask application factory for the campaign email pipeline

The HTTP surface is the submission and inspection side of the job queue:
campaign requests are enqueued here and processed by ``tasks/worker.py``.
This module also owns the wiring shared by the API and the worker
(logging, Redis, database engine, queue, template registry and analytics).
"""

import logging
import logging.handlers
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import redis
from flask import Flask, jsonify, request
from sqlalchemy.engine import Engine
from werkzeug.exceptions import HTTPException

from api.analytics import analytics_bp
from api.jobs import jobs_bp
from api.templates import templates_bp
from config.settings import get_config
from core.database_models import create_database_engine
from core.exceptions import InvalidJobOptions, JobNotFound, StoreUnavailable, TemplateNotFound
from core.job_queue import JobQueue
from core.jobs import DEFAULT_QUEUE
from core.queue_events import QueueEventPublisher
from core.template_engine import DatabaseTemplateRegistry, TemplateRegistry
from services.analytics import EventAnalytics, EventRecorder
from services.campaigns import CampaignService

logger = logging.getLogger(__name__)


def setup_logging(level: str = 'INFO', log_file: Optional[str] = None) -> None:
    """
    Configure process-wide logging

    A stream handler always; a rotating file handler when ``log_file`` is set.
    """
    log_level = getattr(logging, str(level).upper(), logging.INFO)

    detailed_formatter = logging.Formatter(
        fmt='%(asctime)s %(name)-20s %(levelname)-8s %(funcName)-15s:%(lineno)-4d %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )

    root = logging.getLogger()
    root.handlers.clear()
    root.setLevel(log_level)

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(detailed_formatter)
    root.addHandler(stream_handler)

    if log_file:
        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=10*1024*1024,  # 10MB
            backupCount=5
        )
        file_handler.setFormatter(detailed_formatter)
        root.addHandler(file_handler)

    # Suppress verbose third-party logs
    logging.getLogger('werkzeug').setLevel(logging.WARNING)
    logging.getLogger('httpx').setLevel(logging.WARNING)
    logging.getLogger('aiosmtplib').setLevel(logging.WARNING)


def create_redis_client(redis_url: Optional[str]) -> Optional[redis.Redis]:
    """
    Redis client for queue lifecycle events

    Events are best-effort, so an unreachable Redis disables publishing
    instead of stopping the process.
    """
    if not redis_url:
        logger.info("Redis not configured, queue events are logged only")
        return None

    client = redis.Redis.from_url(
        redis_url,
        decode_responses=True,
        socket_connect_timeout=5,
        socket_timeout=5,
        retry_on_timeout=True,
        health_check_interval=30
    )
    try:
        client.ping()
        logger.info("Redis events client connected successfully")
    except (redis.RedisError, OSError) as e:
        logger.error(f"Redis connection failed, queue events are logged only: {e}")
        return None
    return client


@dataclass
class Pipeline:
    """Shared handles for one process"""
    engine: Engine
    job_queue: JobQueue
    recorder: EventRecorder
    campaigns: CampaignService
    templates: TemplateRegistry
    analytics: EventAnalytics
    redis_client: Optional[redis.Redis] = None

    def close(self) -> None:
        self.recorder.close()
        if self.redis_client is not None:
            self.redis_client.close()
        self.job_queue.close()


def build_pipeline(config, engine: Optional[Engine] = None,
                   redis_client: Optional[redis.Redis] = None,
                   clock=None) -> Pipeline:
    """Construct the queue, template registry and analytics from a config object"""
    engine = engine or create_database_engine(config.DATABASE_URL, echo=config.DATABASE_ECHO)
    if redis_client is None:
        redis_client = create_redis_client(config.REDIS_URL)

    job_queue = JobQueue(
        engine,
        publisher=QueueEventPublisher(redis_client),
        clock=clock,
        backlog_threshold=config.QUEUE_BACKLOG_THRESHOLD,
    )
    recorder = EventRecorder(
        engine,
        max_buffer=config.ANALYTICS_BUFFER_SIZE,
        batch_size=config.ANALYTICS_BATCH_SIZE,
    )

    templates = DatabaseTemplateRegistry(engine)

    if config.CREATE_TABLES:
        job_queue.create_tables()
        recorder.create_tables()
        templates.create_tables()

    return Pipeline(
        engine=engine,
        job_queue=job_queue,
        recorder=recorder,
        campaigns=CampaignService(job_queue),
        templates=templates,
        analytics=EventAnalytics(engine),
        redis_client=redis_client,
    )


def configure_error_handlers(app: Flask) -> None:
    """JSON error responses for API clients"""

    @app.errorhandler(InvalidJobOptions)
    def invalid_job(error):
        app.logger.warning(f"Rejected job submission from {request.remote_addr}: {error}")
        return jsonify({
            'error': 'Bad Request',
            'message': str(error),
            'status_code': 400
        }), 400

    @app.errorhandler(TemplateNotFound)
    @app.errorhandler(JobNotFound)
    def missing_resource(error):
        return jsonify({
            'error': 'Not Found',
            'message': str(error),
            'status_code': 404
        }), 404

    @app.errorhandler(StoreUnavailable)
    def store_unavailable(error):
        app.logger.error(f"Queue store unavailable: {error}")
        return jsonify({
            'error': 'Service Unavailable',
            'message': 'Job store is unreachable, try again later',
            'status_code': 503
        }), 503

    @app.errorhandler(404)
    def not_found(error):
        return jsonify({
            'error': 'Not Found',
            'message': 'The requested resource was not found',
            'status_code': 404
        }), 404

    @app.errorhandler(Exception)
    def handle_exception(e):
        """Handle unexpected exceptions"""
        if isinstance(e, HTTPException):
            return jsonify({
                'error': e.name,
                'message': e.description,
                'status_code': e.code
            }), e.code

        app.logger.error(f"Unhandled exception: {e}", exc_info=True)
        return jsonify({
            'error': 'Internal Server Error',
            'message': 'An unexpected error occurred',
            'status_code': 500
        }), 500


def configure_health_checks(app: Flask, pipeline: Pipeline) -> None:

    @app.route('/health')
    def health_check():
        """Queue and analytics health for load balancers and operators"""
        queue_health = pipeline.job_queue.health(
            request.args.get('queue', DEFAULT_QUEUE), workers_running=None
        )
        analytics_healthy = pipeline.recorder.health_check()
        healthy = queue_health['isHealthy'] and analytics_healthy

        body = {
            'status': 'healthy' if healthy else 'unhealthy',
            'services': {
                'queue': queue_health,
                'analytics': analytics_healthy,
            },
            'timestamp': datetime.utcnow().isoformat(),
            'version': app.config.get('VERSION', '1.0.0'),
        }
        return jsonify(body), 200 if healthy else 503


def create_app(config_name: str = None, pipeline: Optional[Pipeline] = None) -> Flask:
    """
    Flask application factory

    Args:
        config_name: 'development', 'testing' or 'production'
        pipeline: prebuilt queue handles (tests); built from config when omitted

    Returns:
        Configured Flask application instance
    """
    app = Flask(__name__)
    config = get_config(config_name)
    app.config.from_object(config)

    if not app.testing:
        setup_logging(app.config['LOG_LEVEL'], app.config.get('LOG_FILE'))
    app.logger.info(f"Starting campaign pipeline API ({config.__name__})")

    pipeline = pipeline or build_pipeline(config)
    app.extensions['pipeline'] = pipeline

    app.register_blueprint(jobs_bp, url_prefix='/api')
    app.register_blueprint(templates_bp, url_prefix='/api')
    app.register_blueprint(analytics_bp, url_prefix='/api')
    configure_error_handlers(app)
    configure_health_checks(app, pipeline)

    app.logger.info("Flask application factory completed successfully")
    return app


if __name__ == '__main__':
    # Development server
    create_app('development').run(host='0.0.0.0', port=5000, debug=True)
