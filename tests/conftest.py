from datetime import datetime, timedelta
from typing import Any, Dict, Generator, List, Optional

import pytest

from app import Pipeline, create_app
from core.database_models import create_database_engine
from core.exceptions import DeliveryTransportError
from core.job_queue import JobQueue
from core.jobs import ContentMetadata, EmailContent
from core.template_engine import DatabaseTemplateRegistry
from services.analytics import EventAnalytics, EventRecorder
from services.campaigns import CampaignService
from services.delivery_gateway import BulkResult, Envelope, SendResult


class FakeClock:
    """Naive UTC clock that only moves when told to"""

    def __init__(self, start: Optional[datetime] = None) -> None:
        self.now = start or datetime(2024, 1, 1, 12, 0, 0)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, ms: int = 0, seconds: float = 0) -> None:
        self.now += timedelta(milliseconds=ms, seconds=seconds)


class FakeGenerator:
    """Stands in for ContentGenerator; raises queued errors before succeeding"""

    def __init__(self, errors: Optional[List[Exception]] = None, hero_image_url: Optional[str] = None) -> None:
        self.errors = list(errors or [])
        self.hero_image_url = hero_image_url
        self.calls: List[Dict[str, Any]] = []

    def generate_email(self, email_type: str, audience_type: str, goal: str,
                       custom_prompt: Optional[str] = None, user_id: Optional[str] = None) -> EmailContent:
        self.calls.append({'emailType': email_type, 'audienceType': audience_type,
                           'goal': goal, 'customPrompt': custom_prompt, 'userId': user_id})
        if self.errors:
            raise self.errors.pop(0)
        hero = self.hero_image_url
        if hero is None and email_type in ('launch', 'newsletter'):
            hero = 'https://images.example.com/hero.png'
        return EmailContent(
            subject='Meet the new dashboard',
            preheader_text='Everything in one place',
            body_html='<p>Our new dashboard is live.</p>',
            cta_text='Try it now',
            footer_html='<p>Unsubscribe any time.</p>',
            hook='Big news',
            hero_image_url=hero,
            metadata=ContentMetadata(
                generated_at='2024-01-01T12:00:00',
                email_type=email_type,
                audience_type=audience_type,
                goal=goal,
                user_id=user_id,
            ),
        )


class FakeGateway:
    """
    Stands in for DeliveryGateway

    ``transport_errors`` calls raise DeliveryTransportError first; addresses in
    ``reject`` come back as failed sends.
    """

    def __init__(self, transport_errors: int = 0, reject: Optional[List[str]] = None) -> None:
        self.transport_errors = transport_errors
        self.reject = set(reject or [])
        self.sent: List[Envelope] = []
        self.bulk_calls: List[Dict[str, Any]] = []

    def send_single(self, envelope: Envelope) -> SendResult:
        if self.transport_errors > 0:
            self.transport_errors -= 1
            raise DeliveryTransportError("SMTP session dropped: connection reset")
        self.sent.append(envelope)
        address = envelope.to[0]['email'] if isinstance(envelope.to[0], dict) else envelope.to[0]
        if address in self.reject:
            return SendResult(status='failed', error='550 mailbox unavailable')
        return SendResult(status='success', message_id=f'<msg-{len(self.sent)}@example.com>')

    def send_bulk(self, template_name: str, destinations: List[Dict[str, Any]], sender: Any,
                  default_template_data: Optional[Dict[str, Any]] = None,
                  tags: Optional[Dict[str, str]] = None) -> BulkResult:
        if self.transport_errors > 0:
            self.transport_errors -= 1
            raise DeliveryTransportError("SMTP connection failed")
        self.bulk_calls.append({'template': template_name, 'destinations': destinations,
                                'from': sender, 'defaults': default_template_data})
        results = []
        for index, destination in enumerate(destinations):
            if destination['to'][0]['email'] in self.reject:
                results.append(SendResult(status='failed', error='550 mailbox unavailable'))
            else:
                results.append(SendResult(status='success', message_id=f'<bulk-{index}@example.com>'))
        return BulkResult(results=results)


class FakeSMTP:
    """Async SMTP client double used through DeliveryGateway's smtp_factory"""

    def __init__(self, config=None, connect_error: Optional[Exception] = None,
                 send_errors: Optional[Dict[str, Exception]] = None) -> None:
        self.config = config
        self.connect_error = connect_error
        self.send_errors = send_errors or {}
        self.messages: List[Any] = []
        self.calls: List[str] = []

    async def connect(self) -> None:
        self.calls.append('connect')
        if self.connect_error is not None:
            raise self.connect_error

    async def starttls(self) -> None:
        self.calls.append('starttls')

    async def login(self, username: str, password: str) -> None:
        self.calls.append('login')

    async def send_message(self, msg, recipients=None):
        self.calls.append('send_message')
        for recipient in recipients or []:
            if recipient in self.send_errors:
                raise self.send_errors[recipient]
        self.messages.append((msg, recipients))
        return {}, '250 OK'

    async def quit(self) -> None:
        self.calls.append('quit')


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def engine():
    engine = create_database_engine('sqlite://')
    yield engine
    engine.dispose()


@pytest.fixture
def job_queue(engine, clock) -> JobQueue:
    queue = JobQueue(engine, clock=clock)
    queue.create_tables()
    return queue


@pytest.fixture
def recorder(engine) -> Generator[EventRecorder, None, None]:
    # Synchronous writes keep the shared in-memory connection on one thread
    recorder = EventRecorder(engine, autostart=False)
    recorder.create_tables()
    yield recorder
    recorder.close()


@pytest.fixture
def campaigns(job_queue) -> CampaignService:
    return CampaignService(job_queue)


@pytest.fixture
def templates(engine) -> DatabaseTemplateRegistry:
    registry = DatabaseTemplateRegistry(engine)
    registry.create_tables()
    return registry


@pytest.fixture
def pipeline(engine, job_queue, recorder, campaigns, templates) -> Pipeline:
    return Pipeline(engine=engine, job_queue=job_queue, recorder=recorder, campaigns=campaigns,
                    templates=templates, analytics=EventAnalytics(engine))


@pytest.fixture
def generator() -> FakeGenerator:
    return FakeGenerator()


@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def app(pipeline):
    return create_app('testing', pipeline=pipeline)


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def content_dict() -> Dict[str, Any]:
    return {
        'subject': 'Spring sale',
        'preheaderText': 'Up to 40% off',
        'bodyHtml': '<p>Everything must go.</p>',
        'ctaText': 'Shop now',
        'footerHtml': '<p>Unsubscribe</p>',
        'metadata': {
            'generatedAt': '2024-01-01T12:00:00',
            'emailType': 'promotional',
            'audienceType': 'returning',
            'goal': 'sales',
            'userId': 'user-1',
        },
    }
