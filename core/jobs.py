# core/jobs.py
"""
Job, content and delivery records shared by the queue, the dispatcher and
the external service wrappers

Wire format (queue submission payloads, job status responses) uses camelCase
keys; Python attributes use snake_case.
"""

import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from core.exceptions import InvalidJobOptions


DEFAULT_QUEUE = 'email-processing'

DEFAULT_MAX_ATTEMPTS = 3
DEFAULT_BACKOFF_DELAY_MS = 2000
DEFAULT_BACKOFF_CAP_MS = 300000  # 5 minutes


class JobKind(Enum):
    """Kinds of deferred work handled by the worker dispatcher"""
    GENERATE_CONTENT = "generate-content"
    SEND_SINGLE = "send-single"
    SEND_BULK = "send-bulk"
    SEND_TEMPLATE = "send-template"

    @classmethod
    def parse(cls, value: Union[str, "JobKind"]) -> "JobKind":
        if isinstance(value, cls):
            return value
        try:
            return cls(value)
        except ValueError:
            raise InvalidJobOptions(f"Unknown job kind: {value!r}")


class JobState(Enum):
    """Job lifecycle states"""
    DELAYED = "delayed"
    WAITING = "waiting"
    ACTIVE = "active"
    COMPLETED = "completed"
    FAILED = "failed"


TERMINAL_STATES = (JobState.COMPLETED, JobState.FAILED)

Progress = Union[int, Dict[str, Any]]


@dataclass(frozen=True)
class BackoffPolicy:
    """Retry delay policy; delays are in milliseconds"""
    type: str = "exponential"
    delay_ms: int = DEFAULT_BACKOFF_DELAY_MS
    max_delay_ms: int = DEFAULT_BACKOFF_CAP_MS

    def next_delay_ms(self, attempts_before: int) -> int:
        """
        Delay before the next attempt after a failure

        Args:
            attempts_before: attempts already counted before the failing one
        """
        if self.type == "fixed":
            delay = self.delay_ms
        else:
            delay = self.delay_ms * (2 ** max(attempts_before, 0))
        return min(delay, self.max_delay_ms)

    def to_dict(self) -> Dict[str, Any]:
        return {'type': self.type, 'delay': self.delay_ms, 'maxDelay': self.max_delay_ms}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "BackoffPolicy":
        if not data:
            return cls()
        if not isinstance(data, dict):
            raise InvalidJobOptions("backoff must be an object")

        backoff_type = data.get('type', 'exponential')
        if backoff_type not in ('exponential', 'fixed'):
            raise InvalidJobOptions(f"Unsupported backoff type: {backoff_type!r}")

        delay = _non_negative_int(data.get('delay', DEFAULT_BACKOFF_DELAY_MS), 'backoff.delay')
        if 'maxDelay' not in data:
            return cls(type=backoff_type, delay_ms=delay, max_delay_ms=max(DEFAULT_BACKOFF_CAP_MS, delay))

        cap = _non_negative_int(data['maxDelay'], 'backoff.maxDelay')
        if cap < delay:
            raise InvalidJobOptions("backoff.maxDelay must not be smaller than backoff.delay")
        return cls(type=backoff_type, delay_ms=delay, max_delay_ms=cap)


@dataclass(frozen=True)
class JobOptions:
    """Per-job scheduling options supplied at enqueue time"""
    priority: int = 0
    delay_ms: int = 0
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    backoff: BackoffPolicy = field(default_factory=BackoffPolicy)

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]],
                  defaults: Optional["JobOptions"] = None) -> "JobOptions":
        """
        Build options from a submission payload, falling back to ``defaults``
        for every key the payload leaves out. Unknown keys are ignored so the
        wire format can grow optional fields.
        """
        base = defaults or cls()
        if data is None:
            return base
        if not isinstance(data, dict):
            raise InvalidJobOptions("options must be an object")

        priority = data.get('priority', base.priority)
        if isinstance(priority, bool) or not isinstance(priority, int):
            raise InvalidJobOptions("priority must be an integer")

        delay = _non_negative_int(data.get('delay', base.delay_ms), 'delay')

        max_attempts = data.get('maxAttempts', data.get('attempts', base.max_attempts))
        if isinstance(max_attempts, bool) or not isinstance(max_attempts, int) or max_attempts < 1:
            raise InvalidJobOptions("maxAttempts must be a positive integer")

        backoff = BackoffPolicy.from_dict(data['backoff']) if 'backoff' in data else base.backoff

        return cls(priority=priority, delay_ms=delay, max_attempts=max_attempts, backoff=backoff)


@dataclass
class Job:
    """Snapshot of a queued job as returned by the job queue"""
    id: str
    queue_name: str
    kind: str
    payload: Dict[str, Any]
    priority: int
    state: JobState
    attempt: int
    max_attempts: int
    backoff: BackoffPolicy
    progress: Progress = 0
    result: Optional[Dict[str, Any]] = None
    error: Optional[Dict[str, Any]] = None
    last_error: Optional[Dict[str, Any]] = None
    run_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None
    claim_token: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    def to_dict(self) -> Dict[str, Any]:
        """Status representation exposed to pollers"""
        return {
            'id': self.id,
            'queue': self.queue_name,
            'kind': self.kind,
            'payload': self.payload,
            'priority': self.priority,
            'state': self.state.value,
            'attempt': self.attempt,
            'maxAttempts': self.max_attempts,
            'backoff': self.backoff.to_dict(),
            'progress': self.progress,
            'result': self.result,
            'error': self.error,
            'lastError': self.last_error,
            'runAt': _iso(self.run_at),
            'createdAt': _iso(self.created_at),
            'startedAt': _iso(self.started_at),
            'finishedAt': _iso(self.finished_at),
        }


def new_job_id() -> str:
    return uuid.uuid4().hex


@dataclass(frozen=True)
class ContentMetadata:
    """Provenance stamp recorded when content is generated"""
    generated_at: str
    email_type: str
    audience_type: str
    goal: str
    user_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'generatedAt': self.generated_at,
            'emailType': self.email_type,
            'audienceType': self.audience_type,
            'goal': self.goal,
            'userId': self.user_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ContentMetadata":
        return cls(
            generated_at=data.get('generatedAt', ''),
            email_type=data.get('emailType', ''),
            audience_type=data.get('audienceType', ''),
            goal=data.get('goal', ''),
            user_id=data.get('userId'),
        )


@dataclass(frozen=True)
class EmailContent:
    """Generated campaign content, read-only once created"""
    subject: str
    preheader_text: str
    body_html: str
    cta_text: str
    footer_html: str
    metadata: ContentMetadata
    hook: str = ""
    hero_image_url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'subject': self.subject,
            'preheaderText': self.preheader_text,
            'bodyHtml': self.body_html,
            'ctaText': self.cta_text,
            'footerHtml': self.footer_html,
            'hook': self.hook,
            'heroImageUrl': self.hero_image_url,
            'metadata': self.metadata.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "EmailContent":
        if not isinstance(data, dict) or 'subject' not in data or 'bodyHtml' not in data:
            raise InvalidJobOptions("emailContent requires subject and bodyHtml")
        return cls(
            subject=data['subject'],
            preheader_text=data.get('preheaderText', ''),
            body_html=data['bodyHtml'],
            cta_text=data.get('ctaText', ''),
            footer_html=data.get('footerHtml', ''),
            hook=data.get('hook', ''),
            hero_image_url=data.get('heroImageUrl'),
            metadata=ContentMetadata.from_dict(data.get('metadata') or {}),
        )


@dataclass(frozen=True)
class DeliveryOutcome:
    """Per-recipient send result"""
    recipient_id: str
    status: str  # "success" or "failed"
    message_id: Optional[str] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == 'success'

    def to_dict(self) -> Dict[str, Any]:
        data = {'recipientId': self.recipient_id, 'status': self.status}
        if self.succeeded:
            data['messageId'] = self.message_id
        else:
            data['error'] = self.error
        return data


def aggregate_outcomes(outcomes: List[DeliveryOutcome]) -> Dict[str, Any]:
    """Job result for any send-* job"""
    sent = sum(1 for outcome in outcomes if outcome.succeeded)
    return {
        'sent': sent,
        'failed': len(outcomes) - sent,
        'results': [outcome.to_dict() for outcome in outcomes],
    }


@dataclass(frozen=True)
class Event:
    """Analytics record, append-only"""
    event_name: str
    user_id: Optional[str] = None
    session_id: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.utcnow)
    properties: Dict[str, Any] = field(default_factory=dict)


def _non_negative_int(value: Any, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise InvalidJobOptions(f"{name} must be a non-negative integer")
    return value


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None
