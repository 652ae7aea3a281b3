# services/delivery_gateway.py
"""
Outbound email delivery over SMTP

Messages are built with the standard library ``email`` package and sent with
aiosmtplib. A bulk send renders every destination from a registered template
and delivers the whole batch over one SMTP session.

Failure model:
- the server rejecting one message (5xx/4xx reply, refused recipients) is a
  per-message ``failed`` result
- the connection failing (connect, TLS, login, timeout, disconnect) raises
  ``DeliveryTransportError`` so the job can be retried
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, field
from email.mime.multipart import MIMEMultipart
from email.message import Message
from email.mime.text import MIMEText
from email.utils import formataddr, formatdate
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

import aiosmtplib

from core.exceptions import DeliveryTransportError, InvalidJobOptions, TemplateRenderError
from core.rate_limiter import RateLimiter
from core.template_engine import TemplateRegistry

logger = logging.getLogger(__name__)


Address = Union[str, Dict[str, str]]


@dataclass
class SMTPConfig:
    host: str = 'localhost'
    port: int = 587
    username: Optional[str] = None
    password: Optional[str] = None
    timeout: float = 60.0
    validate_certs: bool = True
    domain: str = 'localhost'  # Message-ID domain

    @property
    def use_tls(self) -> bool:
        return self.port == 465  # Implicit TLS for port 465

    @property
    def start_tls(self) -> bool:
        return self.port == 587


@dataclass
class Envelope:
    """One outbound message"""
    sender: Address
    to: List[Address]
    subject: str
    html: Optional[str] = None
    text: Optional[str] = None
    cc: List[Address] = field(default_factory=list)
    bcc: List[Address] = field(default_factory=list)
    reply_to: Optional[Address] = None
    tags: Dict[str, str] = field(default_factory=dict)
    configuration_set: Optional[str] = None

    def validate(self) -> None:
        if not self.to:
            raise InvalidJobOptions("envelope needs at least one recipient")
        if not self.subject:
            raise InvalidJobOptions("envelope subject is required")
        if not self.html and not self.text:
            raise InvalidJobOptions("envelope needs an html or text body")
        for address in [self.sender] + list(self.to) + list(self.cc) + list(self.bcc):
            if not address_email(address):
                raise InvalidJobOptions(f"invalid address: {address!r}")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Envelope":
        if not isinstance(data, dict):
            raise InvalidJobOptions("envelope must be an object")
        content = data.get('content') or {}
        envelope = cls(
            sender=data.get('from'),
            to=list(data.get('to') or []),
            cc=list(data.get('cc') or []),
            bcc=list(data.get('bcc') or []),
            reply_to=data.get('replyTo'),
            subject=data.get('subject', content.get('subject')),
            html=data.get('html', content.get('html')),
            text=data.get('text', content.get('text')),
            tags={str(k): str(v) for k, v in (data.get('tags') or {}).items() if v is not None},
            configuration_set=data.get('configurationSet'),
        )
        envelope.validate()
        return envelope


@dataclass
class SendResult:
    status: str  # "success" or "failed"
    message_id: Optional[str] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == 'success'

    def to_dict(self) -> Dict[str, Any]:
        data = {'status': self.status}
        if self.message_id:
            data['messageId'] = self.message_id
        if self.error:
            data['error'] = self.error
        return data


@dataclass
class BulkResult:
    results: List[SendResult]

    def to_dict(self) -> Dict[str, Any]:
        return {'results': [result.to_dict() for result in self.results]}


def address_email(address: Optional[Address]) -> Optional[str]:
    if isinstance(address, dict):
        address = address.get('email')
    if not isinstance(address, str) or '@' not in address:
        return None
    return address.strip()


def format_address(address: Address) -> str:
    if isinstance(address, dict):
        return formataddr((address.get('name') or '', address['email']))
    return address


class DeliveryGateway:
    """
    SMTP-backed email provider

    Args:
        smtp_config: server and credentials
        templates: registry used by ``send_bulk``
        rate_limiter: consulted once per provider call
        smtp_factory: builds the SMTP client; replaced in tests
    """

    def __init__(self,
                 smtp_config: Optional[SMTPConfig] = None,
                 templates: Optional[TemplateRegistry] = None,
                 rate_limiter: Optional[RateLimiter] = None,
                 smtp_factory: Optional[Callable[[SMTPConfig], Any]] = None):
        self.smtp_config = smtp_config or SMTPConfig()
        self.templates = templates or TemplateRegistry()
        self.rate_limiter = rate_limiter
        self.smtp_factory = smtp_factory or self._default_smtp

    def send_single(self, envelope: Envelope) -> SendResult:
        """
        Send one message

        Raises:
            InvalidJobOptions: malformed envelope
            DeliveryTransportError: the SMTP session could not be used
        """
        envelope.validate()
        msg = self.build_message(envelope)
        self._throttle()
        results = asyncio.run(self._deliver([(msg, self._recipients(envelope))]))
        return results[0]

    def send_bulk(self,
                  template_name: str,
                  destinations: List[Dict[str, Any]],
                  sender: Address,
                  default_template_data: Optional[Dict[str, Any]] = None,
                  tags: Optional[Dict[str, str]] = None) -> BulkResult:
        """
        Send a registered template to many destinations in one session

        Each destination is ``{"to": [...], "templateData": {...}}``; its
        data is layered over ``default_template_data``. A destination whose
        template fails to render is reported failed without affecting the
        others. The result list is index-aligned with ``destinations``.

        Raises:
            TemplateNotFound: ``template_name`` is not registered
            DeliveryTransportError: the SMTP session could not be used
        """
        template = self.templates.get_template(template_name)
        results: List[Optional[SendResult]] = [None] * len(destinations)
        batch: List[Tuple[Message, List[str]]] = []
        slots: List[int] = []

        for index, destination in enumerate(destinations):
            try:
                envelope = self._template_envelope(template, destination, sender,
                                                   default_template_data or {}, tags or {})
            except (TemplateRenderError, InvalidJobOptions) as e:
                logger.warning(f"Skipping destination {index} for template {template_name}: {str(e)}")
                results[index] = SendResult(status='failed', error=str(e))
                continue
            batch.append((self.build_message(envelope), self._recipients(envelope)))
            slots.append(index)

        if batch:
            self._throttle()
            for index, result in zip(slots, asyncio.run(self._deliver(batch))):
                results[index] = result

        sent = sum(1 for result in results if result.succeeded)
        logger.info(f"Bulk send of {template_name}: {sent} sent, {len(results) - sent} failed")
        return BulkResult(results=results)

    def build_message(self, envelope: Envelope) -> Message:
        """MIME message for an envelope; single-part when only one body is given"""
        if envelope.html and envelope.text:
            msg = MIMEMultipart('alternative')
            msg.attach(MIMEText(envelope.text, 'plain', 'utf-8'))
            msg.attach(MIMEText(envelope.html, 'html', 'utf-8'))
        elif envelope.html:
            msg = MIMEText(envelope.html, 'html', 'utf-8')
        else:
            msg = MIMEText(envelope.text, 'plain', 'utf-8')

        msg['Subject'] = envelope.subject
        msg['From'] = format_address(envelope.sender)
        msg['To'] = ', '.join(format_address(address) for address in envelope.to)
        if envelope.cc:
            msg['Cc'] = ', '.join(format_address(address) for address in envelope.cc)
        if envelope.reply_to:
            msg['Reply-To'] = format_address(envelope.reply_to)
        msg['Date'] = formatdate(localtime=True)
        msg['Message-ID'] = f"<{uuid.uuid4()}@{self.smtp_config.domain}>"

        # Tracking and identification headers
        for name, value in envelope.tags.items():
            msg[f'X-Tag-{name}'] = value
        if envelope.configuration_set:
            msg['X-Configuration-Set'] = envelope.configuration_set
        msg['X-Mailer'] = 'Campaign Pipeline'
        return msg

    def _template_envelope(self, template, destination, sender, default_data, tags) -> Envelope:
        if not isinstance(destination, dict):
            raise InvalidJobOptions("destination must be an object")
        target = destination.get('destination', destination)
        data = {**default_data, **(destination.get('templateData') or {})}

        rendered = self.templates.engine.render_template(template, data)
        envelope = Envelope(
            sender=sender,
            to=list(target.get('to') or []),
            cc=list(target.get('cc') or []),
            bcc=list(target.get('bcc') or []),
            subject=rendered.subject,
            html=rendered.html,
            text=rendered.text,
            tags=dict(tags),
        )
        envelope.validate()
        return envelope

    @staticmethod
    def _recipients(envelope: Envelope) -> List[str]:
        return [address_email(address) for address in list(envelope.to) + envelope.cc + envelope.bcc]

    def _throttle(self) -> None:
        if self.rate_limiter is not None:
            self.rate_limiter.acquire()

    @staticmethod
    def _default_smtp(config: SMTPConfig) -> aiosmtplib.SMTP:
        return aiosmtplib.SMTP(
            hostname=config.host,
            port=config.port,
            timeout=config.timeout,
            use_tls=config.use_tls,
            start_tls=False,
            validate_certs=config.validate_certs
        )

    async def _deliver(self, batch: List[Tuple[Message, List[str]]]) -> List[SendResult]:
        config = self.smtp_config
        smtp = self.smtp_factory(config)

        # 1. Connect, upgrade and authenticate
        try:
            await smtp.connect()
            if config.start_tls:
                await smtp.starttls()
            if config.username and config.password:
                await smtp.login(config.username, config.password)
        except (aiosmtplib.SMTPException, OSError, asyncio.TimeoutError) as e:
            logger.error(f"SMTP session to {config.host}:{config.port} failed: {str(e)}")
            raise DeliveryTransportError(f"SMTP connection failed: {e}") from e

        # 2. Send each message, classifying server replies per message
        results = []
        try:
            for msg, recipients in batch:
                results.append(await self._send_one(smtp, msg, recipients))
        finally:
            try:
                await smtp.quit()
            except (aiosmtplib.SMTPException, OSError, asyncio.TimeoutError) as e:
                logger.debug(f"SMTP quit failed: {str(e)}")
        return results

    async def _send_one(self, smtp, msg, recipients: List[str]) -> SendResult:
        message_id = msg['Message-ID']
        try:
            errors, response = await smtp.send_message(msg, recipients=recipients)
        except (aiosmtplib.SMTPServerDisconnected, aiosmtplib.SMTPConnectError,
                aiosmtplib.SMTPTimeoutError, asyncio.TimeoutError, OSError) as e:
            raise DeliveryTransportError(f"SMTP session dropped: {e}") from e
        except aiosmtplib.SMTPRecipientsRefused as e:
            refused = ', '.join(refusal.recipient for refusal in e.recipients)
            return SendResult(status='failed', error=f"All recipients refused: {refused}")
        except aiosmtplib.SMTPResponseException as e:
            return SendResult(status='failed', error=f"{e.code} {e.message}")

        if errors:
            logger.warning(f"Message {message_id} partially refused: {sorted(errors)}")
        return SendResult(status='success', message_id=message_id)
