# core/queue_events.py
"""
Job lifecycle notifications

Every queue transition is logged and, when a Redis client is configured,
published on ``queue:<name>:events`` so dashboards can follow job progress
without polling the database.
"""

import json
import logging
from datetime import datetime
from typing import Any, Optional

import redis

logger = logging.getLogger(__name__)


class QueueEventPublisher:
    """Best-effort publisher for queue lifecycle events"""

    def __init__(self, redis_client: Optional[redis.Redis] = None):
        self.redis_client = redis_client

    @staticmethod
    def channel(queue_name: str) -> str:
        return f"queue:{queue_name}:events"

    def publish(self, queue_name: str, event: str, job_id: str, **data: Any) -> None:
        """Log the transition and fan it out; never raises"""
        if event == 'failed':
            logger.error(f"Job {job_id} failed in queue {queue_name}: {data.get('error')}")
        elif event == 'progress':
            logger.debug(f"Job {job_id} progress in queue {queue_name}: {data.get('progress')}")
        else:
            logger.info(f"Job {job_id} is {event} in queue {queue_name}")

        if self.redis_client is None:
            return

        try:
            self.redis_client.publish(self.channel(queue_name), json.dumps({
                'timestamp': datetime.utcnow().isoformat(),
                'event': event,
                'jobId': job_id,
                'data': data,
            }, default=str))
        except (redis.RedisError, OSError) as e:
            logger.warning(f"Failed to publish queue event {event} for job {job_id}: {str(e)}")
