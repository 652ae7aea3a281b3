# core/template_engine.py
"""
Template registry and secure rendering for campaign email

Named templates (subject, HTML part, text part) are rendered per recipient
with Jinja2. Rendered and generated HTML is sanitized with bleach before it
leaves the process, and a plain-text alternative is derived with
BeautifulSoup whenever a template has no text part of its own.
"""

import html
import json
import logging
import re
import threading
import urllib.parse
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterator, List, Optional, Set

import bleach
from bleach.css_sanitizer import CSSSanitizer
from bs4 import BeautifulSoup
from jinja2 import Environment, StrictUndefined, meta, select_autoescape
from jinja2.exceptions import TemplateError, TemplateSyntaxError, UndefinedError
from markupsafe import Markup
from sqlalchemy import select
from sqlalchemy.engine import Engine
from sqlalchemy.exc import DisconnectionError, IntegrityError, OperationalError
from sqlalchemy.orm import Session, sessionmaker

from core.database_models import Base, EmailTemplateRecord
from core.exceptions import (
    InvalidJobOptions, StoreUnavailable, TemplateNotFound, TemplateRenderError
)

logger = logging.getLogger(__name__)


# Email-safe HTML tags
EMAIL_SAFE_TAGS = [
    'p', 'br', 'strong', 'em', 'b', 'i', 'u', 's', 'sub', 'sup',
    'h1', 'h2', 'h3', 'h4', 'h5', 'h6',
    'ul', 'ol', 'li', 'dl', 'dt', 'dd',
    'a', 'img', 'figure', 'figcaption',
    'table', 'thead', 'tbody', 'tfoot', 'tr', 'td', 'th', 'caption',
    'div', 'span', 'section', 'article', 'header', 'footer',
    'hr', 'blockquote', 'pre', 'code',
    'center'  # Legacy email client support
]

EMAIL_SAFE_ATTRIBUTES = {
    '*': ['class', 'id', 'style', 'title', 'dir', 'lang'],
    'a': ['href', 'title', 'rel', 'target'],
    'img': ['src', 'alt', 'width', 'height', 'border', 'align', 'title'],
    'table': ['border', 'cellpadding', 'cellspacing', 'width', 'align', 'bgcolor'],
    'td': ['colspan', 'rowspan', 'width', 'height', 'align', 'valign', 'bgcolor'],
    'th': ['colspan', 'rowspan', 'width', 'height', 'align', 'valign', 'bgcolor'],
    'tr': ['align', 'valign', 'bgcolor'],
    'div': ['align'],
    'p': ['align'],
}

EMAIL_SAFE_CSS = [
    'color', 'background-color', 'background',
    'font-family', 'font-size', 'font-weight', 'font-style',
    'text-align', 'text-decoration', 'text-transform',
    'margin', 'margin-top', 'margin-bottom', 'margin-left', 'margin-right',
    'padding', 'padding-top', 'padding-bottom', 'padding-left', 'padding-right',
    'border', 'border-color', 'border-style', 'border-width',
    'width', 'height', 'max-width', 'min-width',
    'display', 'line-height', 'vertical-align'
]

TEMPLATE_NAME_PATTERN = re.compile(r'^[A-Za-z0-9_-]{1,64}$')


@dataclass
class EmailTemplate:
    """Registered provider-side template"""
    name: str
    subject: str
    html: Optional[str] = None
    text: Optional[str] = None
    created_at: datetime = field(default_factory=datetime.utcnow)
    updated_at: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'name': self.name,
            'subject': self.subject,
            'html': self.html,
            'text': self.text,
            'createdAt': self.created_at.isoformat(),
            'updatedAt': self.updated_at.isoformat(),
        }


@dataclass
class RenderedEmail:
    subject: str
    html: Optional[str]
    text: Optional[str]
    variables_used: Set[str] = field(default_factory=set)


class SecureTemplateEngine:
    """
    Jinja2 rendering with HTML sanitization for email content

    Undefined variables raise instead of rendering blank, so a template
    missing per-recipient data fails that recipient rather than shipping a
    half-filled email.
    """

    def __init__(self, max_template_size: int = 1024 * 1024):  # 1MB limit
        self.max_template_size = max_template_size

        self.env = Environment(
            autoescape=select_autoescape(['html', 'xml'], default_for_string=True),
            undefined=StrictUndefined,
            trim_blocks=True,
            lstrip_blocks=True,
            cache_size=100
        )
        self.text_env = Environment(
            autoescape=False,
            undefined=StrictUndefined,
            cache_size=100
        )
        for env in (self.env, self.text_env):
            env.filters['url_encode'] = urllib.parse.quote
            env.filters['email_safe'] = self._email_safe_filter

        self.html_cleaner = bleach.Cleaner(
            tags=EMAIL_SAFE_TAGS,
            attributes=EMAIL_SAFE_ATTRIBUTES,
            css_sanitizer=CSSSanitizer(allowed_css_properties=EMAIL_SAFE_CSS,
                                       allowed_svg_properties=[]),
            strip=True,  # Strip disallowed tags instead of escaping
            strip_comments=True
        )

    def sanitize_html(self, html_content: str) -> str:
        """Strip scripts, event handlers and unsafe markup from HTML"""
        if not html_content:
            return ""
        return self.html_cleaner.clean(html_content)

    def render_string(self, template_content: str, variables: Dict[str, Any],
                      as_html: bool = True) -> str:
        """
        Render one template string

        Raises:
            TemplateRenderError: syntax error, undefined variable or oversize input
        """
        if template_content is None:
            return ""
        if len(template_content.encode('utf-8')) > self.max_template_size:
            raise TemplateRenderError(f"Template size exceeds limit of {self.max_template_size} bytes")

        env = self.env if as_html else self.text_env
        try:
            rendered = env.from_string(template_content).render(**variables)
        except UndefinedError as e:
            raise TemplateRenderError(f"Template variable error: {str(e)}")
        except TemplateSyntaxError as e:
            raise TemplateRenderError(f"Template syntax error: {str(e)}")
        except TemplateError as e:
            raise TemplateRenderError(f"Template rendering failed: {str(e)}")

        return self.sanitize_html(rendered) if as_html else rendered

    def render_template(self, template: EmailTemplate, variables: Dict[str, Any]) -> RenderedEmail:
        """Render subject, HTML and text parts of a registered template"""
        subject = self.render_string(template.subject, variables, as_html=False).strip()
        html_part = self.render_string(template.html, variables) if template.html else None
        if template.text:
            text_part = self.render_string(template.text, variables, as_html=False)
        else:
            text_part = html_to_text(html_part) if html_part else None

        return RenderedEmail(
            subject=subject,
            html=html_part,
            text=text_part,
            variables_used=self.required_variables(template),
        )

    def required_variables(self, template: EmailTemplate) -> Set[str]:
        names = set()
        for source in (template.subject, template.html, template.text):
            if source:
                names |= meta.find_undeclared_variables(self.env.parse(source))
        return names

    def validate_template(self, template: EmailTemplate) -> None:
        """Parse every part; raises InvalidJobOptions on a syntax error"""
        for part_name in ('subject', 'html', 'text'):
            source = getattr(template, part_name)
            if not source:
                continue
            try:
                self.env.parse(source)
            except TemplateSyntaxError as e:
                raise InvalidJobOptions(
                    f"Template {template.name} {part_name} has a syntax error "
                    f"on line {e.lineno}: {e.message}"
                )

    @staticmethod
    def _email_safe_filter(value: Any) -> Markup:
        value = html.escape(value if isinstance(value, str) else str(value))
        return Markup(value.replace('\n', '<br>'))


class TemplateRegistry:
    """
    Thread-safe store of named email templates

    Handlers running on different dispatcher threads share one registry.
    Templates live in process memory; ``DatabaseTemplateRegistry`` keeps them
    in the shared database instead.
    """

    def __init__(self, engine: Optional[SecureTemplateEngine] = None):
        self.engine = engine or SecureTemplateEngine()
        self._templates: Dict[str, EmailTemplate] = {}
        self._lock = threading.RLock()

    def create_template(self, name: str, subject: str,
                        html: Optional[str] = None, text: Optional[str] = None) -> EmailTemplate:
        template = self._build(name, subject, html, text)
        self._put(template, replace=False)
        logger.info(f"Template {name} created")
        return template

    def update_template(self, name: str, subject: Optional[str] = None,
                        html: Optional[str] = None, text: Optional[str] = None) -> EmailTemplate:
        with self._lock:
            current = self._get(name)
            if current is None:
                raise TemplateNotFound(f"Template {name} does not exist")
            template = self._build(
                name,
                subject if subject is not None else current.subject,
                html if html is not None else current.html,
                text if text is not None else current.text,
            )
            template.created_at = current.created_at
            self._put(template, replace=True)
        logger.info(f"Template {name} updated")
        return template

    def get_template(self, name: str) -> EmailTemplate:
        template = self._get(name)
        if template is None:
            raise TemplateNotFound(f"Template {name} does not exist")
        return template

    def delete_template(self, name: str) -> bool:
        removed = self._pop(name)
        if removed:
            logger.info(f"Template {name} deleted")
        return removed

    def list_templates(self) -> List[EmailTemplate]:
        return self._all()

    def render(self, name: str, variables: Dict[str, Any]) -> RenderedEmail:
        return self.engine.render_template(self.get_template(name), variables)

    def load_file(self, path: str) -> int:
        """
        Register templates from a JSON file

        The file maps template names to ``{"subject", "html"?, "text"?}``.
        Existing templates with the same name are replaced.

        Returns:
            Number of templates loaded
        """
        try:
            with open(path, 'r', encoding='utf-8') as f:
                definitions = json.load(f)
        except (OSError, ValueError) as e:
            raise InvalidJobOptions(f"Cannot load templates from {path}: {e}")

        if not isinstance(definitions, dict):
            raise InvalidJobOptions(f"Template file {path} must map names to templates")

        templates = []
        for name, definition in definitions.items():
            if not isinstance(definition, dict):
                raise InvalidJobOptions(f"Template {name} must be an object")
            templates.append(self._build(name, definition.get('subject'),
                                         definition.get('html'), definition.get('text')))
        for template in templates:
            self._put(template, replace=True)

        logger.info(f"Loaded {len(templates)} templates from {path}")
        return len(templates)

    def _build(self, name, subject, html_part, text_part) -> EmailTemplate:
        if not isinstance(name, str) or not TEMPLATE_NAME_PATTERN.match(name):
            raise InvalidJobOptions(f"Invalid template name: {name!r}")
        if not subject or not isinstance(subject, str):
            raise InvalidJobOptions("Template subject is required")
        if not html_part and not text_part:
            raise InvalidJobOptions("Template needs an html or text part")
        for part in (html_part, text_part):
            if part is not None and not isinstance(part, str):
                raise InvalidJobOptions("Template parts must be strings")

        template = EmailTemplate(name=name, subject=subject, html=html_part, text=text_part)
        self.engine.validate_template(template)
        return template

    # Storage

    def _get(self, name: str) -> Optional[EmailTemplate]:
        with self._lock:
            return self._templates.get(name)

    def _put(self, template: EmailTemplate, replace: bool) -> None:
        with self._lock:
            if not replace and template.name in self._templates:
                raise InvalidJobOptions(f"Template {template.name} already exists")
            self._templates[template.name] = template

    def _pop(self, name: str) -> bool:
        with self._lock:
            return self._templates.pop(name, None) is not None

    def _all(self) -> List[EmailTemplate]:
        with self._lock:
            return sorted(self._templates.values(), key=lambda t: t.name)


class DatabaseTemplateRegistry(TemplateRegistry):
    """
    Template registry kept in the ``email_templates`` table

    The API process and the workers share one database, so a template created
    over HTTP is rendered by the next ``send-template`` job on any worker.

    Raises:
        StoreUnavailable: the database cannot be reached
    """

    def __init__(self, bind: Engine, engine: Optional[SecureTemplateEngine] = None):
        super().__init__(engine)
        self.bind = bind
        self.session_factory = sessionmaker(bind=bind, expire_on_commit=False)

    def create_tables(self) -> None:
        try:
            Base.metadata.create_all(self.bind, tables=[EmailTemplateRecord.__table__])
        except (OperationalError, DisconnectionError) as e:
            raise StoreUnavailable(f"Template store unreachable: {e}") from e

    @contextmanager
    def _session(self) -> Iterator[Session]:
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except (OperationalError, DisconnectionError) as e:
            session.rollback()
            logger.error(f"Template store unavailable: {str(e)}")
            raise StoreUnavailable(f"Template store unreachable: {e}") from e
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    def _get(self, name: str) -> Optional[EmailTemplate]:
        with self._session() as session:
            record = session.get(EmailTemplateRecord, name)
            return self._from_record(record) if record is not None else None

    def _put(self, template: EmailTemplate, replace: bool) -> None:
        try:
            with self._session() as session:
                record = session.get(EmailTemplateRecord, template.name)
                if record is None:
                    record = EmailTemplateRecord(name=template.name, created_at=template.created_at)
                    session.add(record)
                elif not replace:
                    raise InvalidJobOptions(f"Template {template.name} already exists")
                record.subject_template = template.subject
                record.html_content = template.html
                record.text_content = template.text
                record.variables = sorted(self.engine.required_variables(template))
                record.updated_at = template.updated_at
        except IntegrityError:
            raise InvalidJobOptions(f"Template {template.name} already exists")

    def _pop(self, name: str) -> bool:
        with self._session() as session:
            record = session.get(EmailTemplateRecord, name)
            if record is None:
                return False
            session.delete(record)
        return True

    def _all(self) -> List[EmailTemplate]:
        with self._session() as session:
            records = session.execute(
                select(EmailTemplateRecord).order_by(EmailTemplateRecord.name)
            ).scalars().all()
            return [self._from_record(record) for record in records]

    @staticmethod
    def _from_record(record: EmailTemplateRecord) -> EmailTemplate:
        return EmailTemplate(
            name=record.name,
            subject=record.subject_template,
            html=record.html_content,
            text=record.text_content,
            created_at=record.created_at,
            updated_at=record.updated_at,
        )


def html_to_text(html_content: str) -> str:
    """
    Convert HTML to plain text with proper formatting for email
    """
    if not html_content:
        return ""

    soup = BeautifulSoup(html_content, 'html.parser')

    for br in soup.find_all('br'):
        br.replace_with('\n')

    for p in soup.find_all('p'):
        p.insert_after('\n\n')

    for header in soup.find_all(['h1', 'h2', 'h3', 'h4', 'h5', 'h6']):
        header.insert_before('\n')
        header.insert_after('\n')

    for li in soup.find_all('li'):
        li.insert_before('- ')
        li.insert_after('\n')

    # Links keep their target visible
    for link in soup.find_all('a', href=True):
        link_text = link.get_text()
        href = link['href']
        if href != link_text:
            link.replace_with(f"{link_text} ({href})")

    text = soup.get_text()
    text = re.sub(r'\n\s*\n', '\n\n', text)
    text = re.sub(r'[ \t]+', ' ', text)
    return text.strip()
