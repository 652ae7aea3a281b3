# tasks/handlers.py
"""
Kind-specific job handlers

Each handler receives the claimed job and a progress callback, calls out to
the content generator or the delivery gateway, records analytics events and
returns the JSON result stored on the job. Per-recipient delivery failures
are part of the result; only transport and upstream failures raise.
"""

import logging
from typing import Any, Callable, Dict, List, Optional

from core.exceptions import InvalidJobOptions
from core.jobs import DeliveryOutcome, EmailContent, Job, JobKind, Progress, aggregate_outcomes
from core.template_engine import html_to_text
from services.analytics import EventRecorder
from services.campaigns import CampaignService
from services.content_generator import ContentGenerator
from services.delivery_gateway import DeliveryGateway, Envelope, address_email

logger = logging.getLogger(__name__)


ProgressCallback = Callable[[Progress], None]
Handler = Callable[[Job, ProgressCallback], Dict[str, Any]]


def compose_email_html(content: EmailContent) -> str:
    """Full HTML body for a generated email"""
    parts = []
    if content.hero_image_url:
        parts.append(f'<img src="{content.hero_image_url}" alt="" width="600" style="max-width: 100%;">')
    parts.append(content.body_html)
    if content.footer_html:
        parts.append(f'<footer>{content.footer_html}</footer>')
    return '\n'.join(parts)


def _require(payload: Dict[str, Any], *keys: str) -> None:
    missing = [key for key in keys if payload.get(key) in (None, '', [])]
    if missing:
        raise InvalidJobOptions(f"payload is missing {', '.join(missing)}")


def _recipient_list(payload: Dict[str, Any]) -> List[Dict[str, Any]]:
    recipients = payload.get('recipients')
    if not isinstance(recipients, list) or not recipients:
        raise InvalidJobOptions("recipients must be a non-empty list")
    if not all(isinstance(recipient, dict) for recipient in recipients):
        raise InvalidJobOptions("each recipient must be an object")
    return recipients


def _recipient_id(recipient: Dict[str, Any]) -> str:
    return str(recipient.get('id') or recipient.get('email') or '')


class JobHandlers:
    """
    Handler set bound to the external services of one worker process

    Args:
        generator: content generator used by ``generate-content``
        gateway: delivery gateway used by every ``send-*`` kind
        recorder: analytics sink
        campaigns: submission layer used to chain delivery after generation
    """

    def __init__(self, generator: ContentGenerator, gateway: DeliveryGateway,
                 recorder: EventRecorder, campaigns: Optional[CampaignService] = None):
        self.generator = generator
        self.gateway = gateway
        self.recorder = recorder
        self.campaigns = campaigns

    def handler_map(self) -> Dict[JobKind, Handler]:
        return {
            JobKind.GENERATE_CONTENT: self.generate_content,
            JobKind.SEND_SINGLE: self.send_single,
            JobKind.SEND_BULK: self.send_bulk,
            JobKind.SEND_TEMPLATE: self.send_template,
        }

    def generate_content(self, job: Job, progress: ProgressCallback) -> Dict[str, Any]:
        payload = job.payload
        _require(payload, 'emailType', 'audienceType', 'goal')
        email_type = payload['emailType']
        audience_type = payload['audienceType']
        goal = payload['goal']
        user_id = payload.get('userId')
        delivery = payload.get('delivery')
        if delivery is not None:
            if not isinstance(delivery, dict):
                raise InvalidJobOptions("delivery must be an object")
            _recipient_list(delivery)
            _require(delivery, 'from')

        logger.info(f"Generating {email_type} email for {audience_type} users with goal: {goal}")
        self.recorder.track('email_generation_started', user_id=user_id, properties={
            'emailType': email_type, 'audienceType': audience_type, 'goal': goal,
        })

        content = self.generator.generate_email(
            email_type, audience_type, goal,
            custom_prompt=payload.get('customPrompt'),
            user_id=user_id,
        )
        progress(70)

        self.recorder.track('email_generation_completed', user_id=user_id, properties={
            'emailType': email_type,
            'audienceType': audience_type,
            'goal': goal,
            'hasImage': bool(content.hero_image_url),
            'contentLength': len(content.body_html),
        })

        result = content.to_dict()
        if delivery is not None:
            if self.campaigns is None:
                raise InvalidJobOptions("delivery chaining is not configured for this worker")
            delivery_job = self.campaigns.send_bulk(
                result,
                delivery['recipients'],
                delivery['from'],
                tags=delivery.get('tags'),
                configuration_set=delivery.get('configurationSet'),
                options=delivery.get('options'),
            )
            logger.info(f"Chained delivery job {delivery_job.id} for generated content {job.id}")
            result['deliveryJobId'] = delivery_job.id
        return result

    def send_single(self, job: Job, progress: ProgressCallback) -> Dict[str, Any]:
        envelope = Envelope.from_dict(job.payload.get('envelope'))
        user_id = job.payload.get('userId')

        sent = self.gateway.send_single(envelope)
        recipient = address_email(envelope.to[0])
        outcome = DeliveryOutcome(recipient_id=recipient, status=sent.status,
                                  message_id=sent.message_id, error=sent.error)

        self.recorder.track('email_sent', user_id=user_id, properties={
            'recipient_email': recipient,
            'message_id': sent.message_id,
            'status': sent.status,
        })
        return aggregate_outcomes([outcome])

    def send_bulk(self, job: Job, progress: ProgressCallback) -> Dict[str, Any]:
        payload = job.payload
        _require(payload, 'emailContent', 'from')
        content = EmailContent.from_dict(payload['emailContent'])
        recipients = _recipient_list(payload)
        total = len(recipients)

        html_body = compose_email_html(content)
        text_body = html_to_text(html_body)
        metadata = content.metadata

        logger.info(f"Sending email to {total} recipients")
        outcomes = []
        for index, recipient in enumerate(recipients):
            recipient_id = _recipient_id(recipient)
            tags = {
                'campaign_type': metadata.email_type,
                'user_id': metadata.user_id,
                'recipient_id': recipient_id,
                **(payload.get('tags') or {}),
            }
            try:
                envelope = Envelope.from_dict({
                    'from': payload['from'],
                    'to': [{'email': recipient.get('email'), 'name': recipient.get('name') or ''}],
                    'subject': content.subject,
                    'html': html_body,
                    'text': text_body,
                    'tags': tags,
                    'configurationSet': payload.get('configurationSet'),
                })
                sent = self.gateway.send_single(envelope)
                outcome = DeliveryOutcome(recipient_id=recipient_id, status=sent.status,
                                          message_id=sent.message_id, error=sent.error)
            except InvalidJobOptions as e:
                outcome = DeliveryOutcome(recipient_id=recipient_id, status='failed', error=str(e))

            outcomes.append(outcome)
            self.recorder.track('email_sent', user_id=metadata.user_id, properties={
                'recipient_email': recipient.get('email'),
                'email_type': metadata.email_type,
                'message_id': outcome.message_id,
                'status': outcome.status,
            })
            progress({'completed': index + 1, 'total': total})

        result = aggregate_outcomes(outcomes)
        logger.info(f"Email sending completed: {result['sent']} successful, {result['failed']} failed")
        return result

    def send_template(self, job: Job, progress: ProgressCallback) -> Dict[str, Any]:
        payload = job.payload
        _require(payload, 'templateName', 'from')
        template_name = payload['templateName']
        template_data = payload.get('templateData') or {}
        recipients = _recipient_list(payload)

        logger.info(f"Sending template {template_name} to {len(recipients)} recipients")
        destinations = [
            {
                'to': [{'email': recipient.get('email'), 'name': recipient.get('name') or ''}],
                'templateData': {
                    **template_data,
                    'recipient_name': recipient.get('name'),
                    'recipient_email': recipient.get('email'),
                    **(recipient.get('customData') or {}),
                },
            }
            for recipient in recipients
        ]

        bulk = self.gateway.send_bulk(template_name, destinations, payload['from'],
                                      default_template_data=template_data)
        outcomes = [
            DeliveryOutcome(recipient_id=_recipient_id(recipient), status=sent.status,
                            message_id=sent.message_id, error=sent.error)
            for recipient, sent in zip(recipients, bulk.results)
        ]
        result = aggregate_outcomes(outcomes)

        self.recorder.track('bulk_email_sent', user_id=payload.get('userId'), properties={
            'template_name': template_name,
            'recipient_count': len(recipients),
            'success_count': result['sent'],
            'failed_count': result['failed'],
        })
        return result
