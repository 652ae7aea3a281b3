# tasks/worker.py
"""
Worker process entry point

Builds the pipeline from configuration, runs the dispatcher, logs a health
snapshot on a fixed interval, purges finished jobs past their retention
period and shuts down gracefully on SIGINT/SIGTERM.

    python -m tasks.worker --queues email-processing --concurrency 5
"""

import argparse
import logging
import signal
import sys
import threading
from datetime import datetime
from typing import Any, Dict, List, Optional

from app import Pipeline, build_pipeline, setup_logging
from config.settings import get_config
from core.exceptions import InvalidJobOptions, StoreUnavailable
from core.jobs import JobState
from core.rate_limiter import RateLimiter
from services.content_generator import BedrockTextClient, ContentGenerator
from services.delivery_gateway import DeliveryGateway, SMTPConfig
from tasks.dispatcher import WorkerDispatcher
from tasks.handlers import JobHandlers

logger = logging.getLogger(__name__)


class Worker:
    """One worker process: dispatcher plus housekeeping"""

    def __init__(self, pipeline: Pipeline, dispatcher: WorkerDispatcher,
                 health_interval: float = 30, retention_seconds: float = 7 * 24 * 3600):
        self.pipeline = pipeline
        self.dispatcher = dispatcher
        self.health_interval = health_interval
        self.retention_seconds = retention_seconds
        self._shutdown = threading.Event()

    def health_snapshot(self) -> Dict[str, Any]:
        queues = {
            name: self.pipeline.job_queue.health(name, workers_running=self.dispatcher.workers_running)
            for name in self.dispatcher.queue_names
        }
        analytics = self.pipeline.recorder.health_check()
        healthy = analytics and all(queue['isHealthy'] for queue in queues.values())
        return {
            'status': 'healthy' if healthy else 'unhealthy',
            'services': {'queue': queues, 'analytics': analytics},
            'timestamp': datetime.utcnow().isoformat(),
        }

    def purge_expired(self) -> int:
        """Delete finished jobs older than the retention period"""
        removed = 0
        for name in self.dispatcher.queue_names:
            for state in (JobState.COMPLETED, JobState.FAILED):
                try:
                    removed += len(self.pipeline.job_queue.clean(
                        name, self.retention_seconds, state, limit=1000
                    ))
                except StoreUnavailable as e:
                    logger.error(f"Retention purge skipped for {name}: {str(e)}")
                    return removed
        return removed

    def housekeeping(self) -> None:
        snapshot = self.health_snapshot()
        if snapshot['status'] == 'healthy':
            logger.info(f"Health check: {snapshot['status']}")
        else:
            errors = {name: queue['errors'] for name, queue in snapshot['services']['queue'].items()}
            logger.warning(f"Health check: {snapshot['status']} "
                           f"(analytics={snapshot['services']['analytics']}, queues={errors})")
        self.purge_expired()

    def request_shutdown(self, signum=None, frame=None) -> None:
        logger.info("Shutting down worker gracefully...")
        self._shutdown.set()

    def run(self) -> None:
        """Process jobs until a shutdown is requested"""
        self.dispatcher.start()
        logger.info("Worker started successfully")
        try:
            while not self._shutdown.wait(self.health_interval):
                self.housekeeping()
        finally:
            self.dispatcher.stop(wait=True)
            self.pipeline.close()
            logger.info("Worker shutdown complete")

    def run_once(self) -> int:
        """Process every claimable job once, then stop"""
        try:
            processed = self.dispatcher.drain()
            logger.info(f"Processed {processed} jobs")
            return processed
        finally:
            self.pipeline.close()


def build_generator(config) -> ContentGenerator:
    """Content generator for the configured text provider"""
    provider = config.CONTENT_PROVIDER
    if provider == 'bedrock':
        text_client = BedrockTextClient(region=config.AWS_REGION,
                                        model_id=config.BEDROCK_MODEL_ID,
                                        timeout=config.BEDROCK_TIMEOUT)
    elif provider == 'openai':
        text_client = None
    else:
        raise ValueError(f"Unknown content provider: {provider}")

    logger.info(f"Generating campaign text with {provider}")
    return ContentGenerator(
        api_key=config.OPENAI_API_KEY,
        organization=config.OPENAI_ORGANIZATION,
        model=config.OPENAI_MODEL,
        image_model=config.OPENAI_IMAGE_MODEL,
        timeout=config.OPENAI_TIMEOUT,
        text_client=text_client,
    )


def build_worker(config, queue_names: Optional[List[str]] = None,
                 concurrency: Optional[int] = None,
                 pipeline: Optional[Pipeline] = None,
                 generator: Optional[ContentGenerator] = None,
                 gateway: Optional[DeliveryGateway] = None) -> Worker:
    """Wire the external services, handlers and dispatcher for one process"""
    pipeline = pipeline or build_pipeline(config)

    if gateway is None:
        templates = pipeline.templates
        if config.TEMPLATES_PATH:
            templates.load_file(config.TEMPLATES_PATH)
        gateway = DeliveryGateway(
            smtp_config=SMTPConfig(
                host=config.SMTP_HOST,
                port=config.SMTP_PORT,
                username=config.SMTP_USERNAME,
                password=config.SMTP_PASSWORD,
                timeout=config.SMTP_TIMEOUT,
                validate_certs=config.SMTP_VALIDATE_CERTS,
                domain=config.SMTP_DOMAIN,
            ),
            templates=templates,
            rate_limiter=RateLimiter(config.RATE_LIMIT_MAX, config.RATE_LIMIT_WINDOW_MS),
        )
    if generator is None:
        generator = build_generator(config)

    handlers = JobHandlers(generator, gateway, pipeline.recorder, campaigns=pipeline.campaigns)
    dispatcher = WorkerDispatcher(
        pipeline.job_queue,
        handlers.handler_map(),
        queue_names=queue_names or config.QUEUE_NAMES,
        concurrency=concurrency or config.WORKER_CONCURRENCY,
        poll_interval=config.QUEUE_POLL_INTERVAL,
    )
    return Worker(pipeline, dispatcher,
                  health_interval=config.HEALTH_INTERVAL_SECONDS,
                  retention_seconds=config.JOB_RETENTION_SECONDS)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description='Campaign email pipeline worker')
    parser.add_argument('--env', default=None,
                        help='configuration name: development, testing or production')
    parser.add_argument('--queues', default=None,
                        help='comma-separated queue names to process')
    parser.add_argument('--concurrency', type=int, default=None,
                        help='simultaneously active jobs in this process')
    parser.add_argument('--once', action='store_true',
                        help='process claimable jobs once and exit')
    parser.add_argument('--log-level', default=None)
    args = parser.parse_args(argv)

    if args.concurrency is not None and args.concurrency < 1:
        parser.error('--concurrency must be at least 1')
    if args.queues is not None:
        args.queues = [name.strip() for name in args.queues.split(',') if name.strip()]
        if not args.queues:
            parser.error('--queues needs at least one queue name')
    return args


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    config = get_config(args.env)
    setup_logging(args.log_level or config.LOG_LEVEL, config.LOG_FILE)

    try:
        worker = build_worker(config, queue_names=args.queues, concurrency=args.concurrency)
    except (StoreUnavailable, InvalidJobOptions, ValueError) as e:
        logger.critical(f"Cannot start worker: {str(e)}")
        return 1

    if args.once:
        worker.run_once()
        return 0

    signal.signal(signal.SIGINT, worker.request_shutdown)
    signal.signal(signal.SIGTERM, worker.request_shutdown)
    worker.run()
    return 0


if __name__ == '__main__':
    sys.exit(main())
