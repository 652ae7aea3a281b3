# services/campaigns.py
"""
Submission helpers for campaign jobs

Each job kind has its own scheduling defaults; callers can still override any
option per job.
"""

import logging
from typing import Any, Dict, List, Optional

from core.job_queue import JobQueue
from core.jobs import (
    DEFAULT_QUEUE, BackoffPolicy, Job, JobKind, JobOptions
)

logger = logging.getLogger(__name__)


KIND_DEFAULTS: Dict[JobKind, JobOptions] = {
    JobKind.SEND_SINGLE: JobOptions(priority=1, max_attempts=3, backoff=BackoffPolicy(delay_ms=5000)),
    JobKind.SEND_BULK: JobOptions(priority=2, max_attempts=2, backoff=BackoffPolicy(delay_ms=10000)),
    JobKind.SEND_TEMPLATE: JobOptions(priority=1, max_attempts=3, backoff=BackoffPolicy(delay_ms=5000)),
    JobKind.GENERATE_CONTENT: JobOptions(priority=1, max_attempts=3, backoff=BackoffPolicy(delay_ms=5000)),
}


def options_for(kind: JobKind, overrides: Optional[Dict[str, Any]] = None) -> JobOptions:
    """Kind defaults with per-job overrides applied"""
    return JobOptions.from_dict(overrides, defaults=KIND_DEFAULTS.get(kind))


class CampaignService:
    """Thin submission layer over the job queue"""

    def __init__(self, job_queue: JobQueue, queue_name: str = DEFAULT_QUEUE):
        self.job_queue = job_queue
        self.queue_name = queue_name

    def submit(self, kind, payload: Dict[str, Any],
               options: Optional[Dict[str, Any]] = None,
               queue_name: Optional[str] = None) -> Job:
        job_kind = JobKind.parse(kind)
        return self.job_queue.enqueue(job_kind, payload, options_for(job_kind, options),
                                      queue_name=queue_name or self.queue_name)

    def generate_email(self, email_type: str, audience_type: str, goal: str,
                       user_id: str, custom_prompt: Optional[str] = None,
                       delivery: Optional[Dict[str, Any]] = None,
                       options: Optional[Dict[str, Any]] = None) -> Job:
        payload = {
            'emailType': email_type,
            'audienceType': audience_type,
            'goal': goal,
            'userId': user_id,
        }
        if custom_prompt:
            payload['customPrompt'] = custom_prompt
        if delivery:
            payload['delivery'] = delivery
        return self.submit(JobKind.GENERATE_CONTENT, payload, options)

    def send_single(self, envelope: Dict[str, Any], user_id: Optional[str] = None,
                    options: Optional[Dict[str, Any]] = None) -> Job:
        payload = {'envelope': envelope}
        if user_id:
            payload['userId'] = user_id
        return self.submit(JobKind.SEND_SINGLE, payload, options)

    def send_bulk(self, email_content: Dict[str, Any], recipients: List[Dict[str, Any]],
                  sender: Any, tags: Optional[Dict[str, str]] = None,
                  configuration_set: Optional[str] = None,
                  options: Optional[Dict[str, Any]] = None) -> Job:
        payload = {
            'emailContent': email_content,
            'recipients': recipients,
            'from': sender,
        }
        if tags:
            payload['tags'] = tags
        if configuration_set:
            payload['configurationSet'] = configuration_set
        return self.submit(JobKind.SEND_BULK, payload, options)

    def send_template(self, template_name: str, template_data: Dict[str, Any],
                      recipients: List[Dict[str, Any]], sender: Any,
                      user_id: Optional[str] = None,
                      options: Optional[Dict[str, Any]] = None) -> Job:
        payload = {
            'templateName': template_name,
            'templateData': template_data,
            'recipients': recipients,
            'from': sender,
        }
        if user_id:
            payload['userId'] = user_id
        return self.submit(JobKind.SEND_TEMPLATE, payload, options)
