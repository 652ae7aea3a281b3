import pytest

from core.exceptions import DeliveryTransportError, InvalidJobOptions
from core.jobs import BackoffPolicy, Job, JobKind, JobState
from services.analytics import EventAnalytics
from tasks.handlers import JobHandlers, compose_email_html

from conftest import FakeGateway


def make_job(kind: JobKind, payload: dict) -> Job:
    return Job(id='job-1', queue_name='email-processing', kind=kind.value, payload=payload,
               priority=0, state=JobState.ACTIVE, attempt=0, max_attempts=3,
               backoff=BackoffPolicy(), claim_token='token')


class ProgressLog(list):
    def __call__(self, value) -> None:
        self.append(value)


@pytest.fixture
def handlers(generator, gateway, recorder, campaigns) -> JobHandlers:
    return JobHandlers(generator, gateway, recorder, campaigns=campaigns)


def events(engine, name):
    return EventAnalytics(engine).load_events(event_name=name)


def test_handler_map_covers_every_kind(handlers) -> None:
    assert set(handlers.handler_map()) == set(JobKind)


def test_generate_content_returns_email_and_records_events(handlers, generator, recorder, engine) -> None:
    progress = ProgressLog()
    job = make_job(JobKind.GENERATE_CONTENT, {
        'emailType': 'launch', 'audienceType': 'new', 'goal': 'signups',
        'userId': 'user-1', 'customPrompt': 'Mention the beta',
    })

    result = handlers.generate_content(job, progress)

    assert result['subject'] == 'Meet the new dashboard'
    assert result['heroImageUrl'] == 'https://images.example.com/hero.png'
    assert result['metadata']['emailType'] == 'launch'
    assert 'deliveryJobId' not in result
    assert progress == [70]
    assert generator.calls[0]['customPrompt'] == 'Mention the beta'

    recorder.flush()
    assert len(events(engine, 'email_generation_started')) == 1
    completed = events(engine, 'email_generation_completed')
    assert completed.iloc[0]['properties']['hasImage'] is True
    assert completed.iloc[0]['user_id'] == 'user-1'


def test_generate_content_chains_delivery(handlers, job_queue) -> None:
    job = make_job(JobKind.GENERATE_CONTENT, {
        'emailType': 'promotional', 'audienceType': 'returning', 'goal': 'sales', 'userId': 'user-1',
        'delivery': {
            'recipients': [{'id': 'r1', 'email': 'ada@example.com', 'name': 'Ada'}],
            'from': 'news@example.com',
            'tags': {'campaign': 'spring'},
        },
    })

    result = handlers.generate_content(job, ProgressLog())

    delivery = job_queue.get_job(result['deliveryJobId'])
    assert delivery.kind == 'send-bulk'
    assert delivery.priority == 2
    assert delivery.payload['emailContent']['subject'] == result['subject']
    assert delivery.payload['tags'] == {'campaign': 'spring'}


def test_generate_content_validates_payload(handlers, generator) -> None:
    with pytest.raises(InvalidJobOptions):
        handlers.generate_content(make_job(JobKind.GENERATE_CONTENT, {'emailType': 'launch'}), ProgressLog())
    with pytest.raises(InvalidJobOptions):
        handlers.generate_content(make_job(JobKind.GENERATE_CONTENT, {
            'emailType': 'launch', 'audienceType': 'new', 'goal': 'signups',
            'delivery': {'recipients': [], 'from': 'news@example.com'},
        }), ProgressLog())
    assert generator.calls == []


def test_send_single(handlers, gateway, recorder, engine) -> None:
    job = make_job(JobKind.SEND_SINGLE, {
        'envelope': {'from': 'news@example.com', 'to': ['ada@example.com'],
                     'subject': 'Hi', 'text': 'Hello'},
        'userId': 'user-1',
    })

    result = handlers.send_single(job, ProgressLog())

    assert result['sent'] == 1
    assert result['failed'] == 0
    assert result['results'][0]['recipientId'] == 'ada@example.com'
    assert len(gateway.sent) == 1

    recorder.flush()
    sent = events(engine, 'email_sent')
    assert sent.iloc[0]['properties']['status'] == 'success'


def test_send_single_requires_envelope(handlers) -> None:
    with pytest.raises(InvalidJobOptions):
        handlers.send_single(make_job(JobKind.SEND_SINGLE, {}), ProgressLog())


def test_send_bulk_reports_per_recipient_outcomes(generator, recorder, campaigns, engine, content_dict) -> None:
    gateway = FakeGateway(reject=['bob@example.com'])
    handlers = JobHandlers(generator, gateway, recorder, campaigns=campaigns)
    progress = ProgressLog()
    job = make_job(JobKind.SEND_BULK, {
        'emailContent': content_dict,
        'recipients': [
            {'id': 'r1', 'email': 'ada@example.com', 'name': 'Ada'},
            {'id': 'r2', 'email': 'bob@example.com', 'name': 'Bob'},
            {'id': 'r3', 'email': 'not-an-address'},
        ],
        'from': {'email': 'news@example.com', 'name': 'News'},
        'tags': {'campaign': 'spring'},
    })

    result = handlers.send_bulk(job, progress)

    assert result['sent'] == 1
    assert result['failed'] == 2
    assert [r['recipientId'] for r in result['results']] == ['r1', 'r2', 'r3']
    assert result['results'][0]['messageId']
    assert result['results'][1]['error'] == '550 mailbox unavailable'
    assert progress[-1] == {'completed': 3, 'total': 3}
    assert len(gateway.sent) == 2

    first = gateway.sent[0]
    assert first.tags == {'campaign_type': 'promotional', 'user_id': 'user-1',
                          'recipient_id': 'r1', 'campaign': 'spring'}
    assert first.html.startswith('<p>Everything must go.</p>')
    assert 'Everything must go.' in first.text

    recorder.flush()
    assert len(events(engine, 'email_sent')) == 3


def test_send_bulk_transport_failure_propagates(generator, recorder, content_dict) -> None:
    handlers = JobHandlers(generator, FakeGateway(transport_errors=1), recorder)
    job = make_job(JobKind.SEND_BULK, {
        'emailContent': content_dict,
        'recipients': [{'id': 'r1', 'email': 'ada@example.com'}],
        'from': 'news@example.com',
    })

    with pytest.raises(DeliveryTransportError):
        handlers.send_bulk(job, ProgressLog())


def test_send_template_makes_one_bulk_call(generator, recorder, engine) -> None:
    gateway = FakeGateway(reject=['bob@example.com'])
    handlers = JobHandlers(generator, gateway, recorder)
    job = make_job(JobKind.SEND_TEMPLATE, {
        'templateName': 'welcome',
        'templateData': {'company': 'Acme'},
        'recipients': [
            {'id': 'r1', 'email': 'ada@example.com', 'name': 'Ada', 'customData': {'plan': 'pro'}},
            {'id': 'r2', 'email': 'bob@example.com', 'name': 'Bob'},
        ],
        'from': 'news@example.com',
        'userId': 'user-1',
    })

    result = handlers.send_template(job, ProgressLog())

    assert result['sent'] == 1
    assert result['failed'] == 1
    assert len(gateway.bulk_calls) == 1
    destination = gateway.bulk_calls[0]['destinations'][0]
    assert destination['templateData'] == {
        'company': 'Acme', 'recipient_name': 'Ada', 'recipient_email': 'ada@example.com', 'plan': 'pro',
    }

    recorder.flush()
    bulk = events(engine, 'bulk_email_sent')
    assert bulk.iloc[0]['properties'] == {
        'template_name': 'welcome', 'recipient_count': 2, 'success_count': 1, 'failed_count': 1,
    }


def test_compose_email_html_places_hero_image_first(generator) -> None:
    content = generator.generate_email('launch', 'new', 'signups')

    html = compose_email_html(content)

    assert html.index('hero.png') < html.index('Our new dashboard is live.')
    assert html.endswith('<footer><p>Unsubscribe any time.</p></footer>')
