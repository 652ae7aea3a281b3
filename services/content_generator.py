# services/content_generator.py
"""
Marketing email generation over Claude on Amazon Bedrock or the OpenAI API

Text comes back as JSON following the schema in ``build_email_prompt``;
``parse_email_content`` turns it into an ``EmailContent`` with sanitized
body HTML. Launch and newsletter campaigns also get a hero image, which is
always generated by OpenAI.
"""

import json
import logging
import re
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Dict, Optional

import boto3
from botocore.config import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError
from openai import OpenAI, OpenAIError

from core.exceptions import GenerationError, MalformedContentError
from core.jobs import ContentMetadata, EmailContent
from core.template_engine import SecureTemplateEngine

logger = logging.getLogger(__name__)


HERO_IMAGE_EMAIL_TYPES = ('launch', 'newsletter')

FENCED_JSON_PATTERN = re.compile(r'```(?:json)?\s*(.*?)```', re.DOTALL | re.IGNORECASE)


@dataclass
class GeneratedText:
    content: str
    model: str
    finish_reason: str = 'unknown'
    usage: Dict[str, int] = field(default_factory=dict)


@dataclass
class GeneratedImage:
    url: Optional[str]
    revised_prompt: Optional[str] = None


def build_email_prompt(email_type: str, audience_type: str, goal: str,
                       custom_prompt: Optional[str] = None) -> str:
    """Prompt asking for a campaign email as a single JSON object"""
    extra = f"Additional requirements: {custom_prompt}" if custom_prompt else ""
    return f"""
Create a compelling marketing email for {email_type} campaign.
Target audience: {audience_type}
Primary goal: {goal}

{extra}

Structure the response as JSON with the following format:
{{
  "subject": "Email subject line",
  "preheader": "Preview text",
  "content": {{
    "hook": "Opening hook",
    "body": "Main email body in HTML format",
    "cta": "Call to action text",
    "footer": "Footer content"
  }}
}}

Make it engaging, personalized, and optimized for conversions.
""".strip()


def build_image_prompt(email_type: str) -> str:
    return (f"Create a professional, modern hero image for a {email_type} email campaign. "
            f"Style: clean, corporate, engaging, high-quality.")


def extract_json_text(text: str) -> str:
    """Return the JSON document in ``text``, unwrapping a fenced code block"""
    match = FENCED_JSON_PATTERN.search(text or '')
    if match:
        return match.group(1).strip()
    return (text or '').strip()


def parse_email_content(text: str, metadata: ContentMetadata,
                        hero_image_url: Optional[str] = None,
                        sanitizer: Optional[SecureTemplateEngine] = None) -> EmailContent:
    """
    Validate generated text against the email schema

    Raises:
        MalformedContentError: not JSON, or required fields missing
    """
    try:
        data = json.loads(extract_json_text(text))
    except (TypeError, ValueError) as e:
        raise MalformedContentError(f"Generated content is not valid JSON: {e}", raw_text=text)

    if not isinstance(data, dict):
        raise MalformedContentError("Generated content must be a JSON object", raw_text=text)

    content = data.get('content')
    if not isinstance(content, dict):
        raise MalformedContentError("Generated content is missing the content object", raw_text=text)

    missing = [key for key in ('subject', 'preheader') if not isinstance(data.get(key), str)]
    missing += [f"content.{key}" for key in ('hook', 'body', 'cta', 'footer')
                if not isinstance(content.get(key), str)]
    if missing:
        raise MalformedContentError(
            f"Generated content is missing fields: {', '.join(missing)}", raw_text=text
        )

    sanitizer = sanitizer or SecureTemplateEngine()
    return EmailContent(
        subject=data['subject'].strip(),
        preheader_text=data['preheader'],
        body_html=sanitizer.sanitize_html(content['body']),
        cta_text=content['cta'],
        footer_html=sanitizer.sanitize_html(content['footer']),
        hook=content['hook'],
        hero_image_url=hero_image_url,
        metadata=metadata,
    )


class BedrockTextClient:
    """
    Claude text generation through the Bedrock runtime ``invoke_model`` API

    Args:
        client: preconfigured ``bedrock-runtime`` client; built with boto3 when omitted
        region: AWS region for the default client
        model_id: Bedrock model identifier
        timeout: read timeout in seconds
    """

    anthropic_version = 'bedrock-2023-05-31'

    def __init__(self,
                 client=None,
                 region: Optional[str] = None,
                 model_id: str = 'anthropic.claude-3-7-sonnet-20250219-v1:0',
                 timeout: float = 60.0,
                 top_p: float = 0.9):
        self.client = client or boto3.client(
            'bedrock-runtime',
            region_name=region,
            config=BotoConfig(read_timeout=timeout, retries={'total_max_attempts': 1}),
        )
        self.model_id = model_id
        self.top_p = top_p

    def generate(self, prompt: str, max_tokens: int = 2048, temperature: float = 0.7) -> GeneratedText:
        """
        Raises:
            GenerationError: API failure, unreadable response or no text block
        """
        body = {
            'anthropic_version': self.anthropic_version,
            'max_tokens': max_tokens,
            'temperature': temperature,
            'top_p': self.top_p,
            'messages': [{'role': 'user', 'content': [{'type': 'text', 'text': prompt}]}],
        }

        logger.info(f"Generating text with Bedrock model {self.model_id}")
        try:
            response = self.client.invoke_model(
                modelId=self.model_id,
                contentType='application/json',
                accept='application/json',
                body=json.dumps(body),
            )
            payload = json.loads(response['body'].read())
        except (BotoCoreError, ClientError) as e:
            logger.error(f"Bedrock text generation failed: {str(e)}")
            raise GenerationError(f"Failed to generate text: {e}") from e
        except ValueError as e:
            raise GenerationError(f"Bedrock returned an unreadable response: {e}") from e

        blocks = payload.get('content') or []
        text = next((block.get('text') for block in blocks if block.get('type') == 'text'), None)
        if not text:
            raise GenerationError("No content in response")

        usage = payload.get('usage') or {}
        input_tokens = usage.get('input_tokens', 0)
        output_tokens = usage.get('output_tokens', 0)
        return GeneratedText(
            content=text,
            model=self.model_id,
            finish_reason=payload.get('stop_reason') or 'unknown',
            usage={
                'prompt_tokens': input_tokens,
                'completion_tokens': output_tokens,
                'total_tokens': input_tokens + output_tokens,
            },
        )


class ContentGenerator:
    """
    Campaign text and image generation

    Text goes to ``text_client`` when one is given (Claude on Bedrock) and to
    OpenAI chat completions otherwise. Images always come from OpenAI.

    Args:
        client: preconfigured ``OpenAI`` client; built from ``api_key`` when omitted
        text_client: alternative text provider such as ``BedrockTextClient``
        api_key: OpenAI API key
        organization: optional OpenAI organization id
        model: chat completion model
        image_model: image generation model
        timeout: per-request timeout in seconds
    """

    def __init__(self,
                 client: Optional[OpenAI] = None,
                 api_key: Optional[str] = None,
                 organization: Optional[str] = None,
                 model: str = 'gpt-4o',
                 image_model: str = 'dall-e-3',
                 timeout: float = 60.0,
                 sanitizer: Optional[SecureTemplateEngine] = None,
                 text_client: Optional[BedrockTextClient] = None):
        self.client = client or OpenAI(api_key=api_key, organization=organization,
                                       timeout=timeout, max_retries=0)
        self.text_client = text_client
        self.model = model
        self.image_model = image_model
        self.sanitizer = sanitizer or SecureTemplateEngine()

    def generate(self, prompt: str, max_tokens: int = 2048, temperature: float = 0.7) -> GeneratedText:
        """
        Single-turn completion

        Raises:
            GenerationError: API failure or an empty completion
        """
        if self.text_client is not None:
            return self.text_client.generate(prompt, max_tokens=max_tokens, temperature=temperature)

        logger.info(f"Generating text with model {self.model}")
        try:
            response = self.client.chat.completions.create(
                model=self.model,
                messages=[{'role': 'user', 'content': prompt}],
                max_tokens=max_tokens,
                temperature=temperature,
            )
        except OpenAIError as e:
            logger.error(f"Text generation failed: {str(e)}")
            raise GenerationError(f"Failed to generate text: {e}") from e

        choice = response.choices[0] if response.choices else None
        if choice is None or not choice.message or not choice.message.content:
            raise GenerationError("No content in response")

        usage = {}
        if response.usage is not None:
            usage = {
                'prompt_tokens': response.usage.prompt_tokens or 0,
                'completion_tokens': response.usage.completion_tokens or 0,
                'total_tokens': response.usage.total_tokens or 0,
            }

        return GeneratedText(
            content=choice.message.content,
            model=response.model or self.model,
            finish_reason=choice.finish_reason or 'unknown',
            usage=usage,
        )

    def generate_image(self, prompt: str, size: str = '1024x1024', quality: str = 'hd') -> GeneratedImage:
        """
        Raises:
            GenerationError: API failure or no image in the response
        """
        logger.info(f"Generating image with model {self.image_model}")
        try:
            response = self.client.images.generate(
                model=self.image_model,
                prompt=prompt,
                size=size,
                quality=quality,
                style='vivid',
                n=1,
            )
        except OpenAIError as e:
            logger.error(f"Image generation failed: {str(e)}")
            raise GenerationError(f"Failed to generate image: {e}") from e

        if not response.data:
            raise GenerationError("No image in response")
        image = response.data[0]
        return GeneratedImage(url=image.url, revised_prompt=getattr(image, 'revised_prompt', None))

    def generate_email(self, email_type: str, audience_type: str, goal: str,
                       custom_prompt: Optional[str] = None,
                       user_id: Optional[str] = None) -> EmailContent:
        """
        Generate a complete campaign email

        Raises:
            GenerationError: text generation failed (retryable)
            MalformedContentError: the model ignored the JSON schema
        """
        prompt = build_email_prompt(email_type, audience_type, goal, custom_prompt)
        generated = self.generate(prompt)

        metadata = ContentMetadata(
            generated_at=datetime.utcnow().isoformat(),
            email_type=email_type,
            audience_type=audience_type,
            goal=goal,
            user_id=user_id,
        )
        content = parse_email_content(generated.content, metadata, sanitizer=self.sanitizer)

        if email_type in HERO_IMAGE_EMAIL_TYPES:
            content = replace(content, hero_image_url=self._hero_image(email_type))
        return content

    def _hero_image(self, email_type: str) -> Optional[str]:
        # A missing hero image never fails the email
        try:
            return self.generate_image(build_image_prompt(email_type)).url
        except GenerationError as e:
            logger.warning(f"Hero image skipped for {email_type} email: {str(e)}")
            return None
