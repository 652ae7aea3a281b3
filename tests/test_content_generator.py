import io
import json
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError
from openai import OpenAIError

from core.exceptions import GenerationError, MalformedContentError
from core.jobs import ContentMetadata
from services.content_generator import (
    BedrockTextClient, ContentGenerator, build_email_prompt, extract_json_text, parse_email_content
)


EMAIL_JSON = {
    'subject': ' Launch day is here ',
    'preheader': 'Say hello to Pulse',
    'content': {
        'hook': 'It is finally ready.',
        'body': '<p>Pulse ships today.</p><script>track()</script>',
        'cta': 'Get started',
        'footer': '<p>Unsubscribe</p>',
    },
}


def completion(text, model='gpt-4o'):
    return SimpleNamespace(
        choices=[SimpleNamespace(message=SimpleNamespace(content=text), finish_reason='stop')],
        model=model,
        usage=SimpleNamespace(prompt_tokens=12, completion_tokens=34, total_tokens=46),
    )


def image_response(url='https://images.example.com/hero.png'):
    return SimpleNamespace(data=[SimpleNamespace(url=url, revised_prompt='a hero image')])


@pytest.fixture
def client() -> MagicMock:
    client = MagicMock()
    client.chat.completions.create.return_value = completion(json.dumps(EMAIL_JSON))
    client.images.generate.return_value = image_response()
    return client


@pytest.fixture
def metadata() -> ContentMetadata:
    return ContentMetadata(generated_at='2024-01-01T12:00:00', email_type='launch',
                           audience_type='new', goal='signups', user_id='user-1')


def test_prompt_describes_campaign_and_schema() -> None:
    prompt = build_email_prompt('launch', 'new', 'signups', custom_prompt='Mention the beta')

    assert 'Create a compelling marketing email for launch campaign.' in prompt
    assert 'Target audience: new' in prompt
    assert 'Primary goal: signups' in prompt
    assert 'Additional requirements: Mention the beta' in prompt
    assert '"preheader": "Preview text"' in prompt


def test_extract_json_unwraps_fenced_block() -> None:
    assert extract_json_text('Here you go:\n```json\n{"a": 1}\n```') == '{"a": 1}'
    assert extract_json_text('  {"a": 1} ') == '{"a": 1}'


def test_parse_email_content_sanitizes_body(metadata) -> None:
    content = parse_email_content('```json\n' + json.dumps(EMAIL_JSON) + '\n```', metadata)

    assert content.subject == 'Launch day is here'
    assert content.preheader_text == 'Say hello to Pulse'
    assert content.cta_text == 'Get started'
    assert content.hook == 'It is finally ready.'
    assert '<script' not in content.body_html
    assert '<p>Pulse ships today.</p>' in content.body_html
    assert content.metadata == metadata


@pytest.mark.parametrize('text', [
    'Sure! Here is a great email.',
    json.dumps(['not', 'an', 'object']),
    json.dumps({'subject': 'x', 'preheader': 'y'}),
    json.dumps({'subject': 'x', 'preheader': 'y', 'content': {'hook': 'h', 'body': 'b', 'cta': 'c'}}),
])
def test_parse_email_content_rejects_schema_violations(text, metadata) -> None:
    with pytest.raises(MalformedContentError) as excinfo:
        parse_email_content(text, metadata)

    assert excinfo.value.raw_text == text
    assert excinfo.value.retryable is False


def test_generate_returns_text_and_usage(client) -> None:
    generator = ContentGenerator(client=client)

    generated = generator.generate('Write something', max_tokens=100)

    assert generated.model == 'gpt-4o'
    assert generated.finish_reason == 'stop'
    assert generated.usage == {'prompt_tokens': 12, 'completion_tokens': 34, 'total_tokens': 46}
    kwargs = client.chat.completions.create.call_args.kwargs
    assert kwargs['messages'] == [{'role': 'user', 'content': 'Write something'}]
    assert kwargs['max_tokens'] == 100


def test_generate_wraps_api_errors(client) -> None:
    client.chat.completions.create.side_effect = OpenAIError('rate limited')
    generator = ContentGenerator(client=client)

    with pytest.raises(GenerationError) as excinfo:
        generator.generate('Write something')
    assert excinfo.value.retryable is True


def test_generate_rejects_empty_completion(client) -> None:
    client.chat.completions.create.return_value = completion('')
    generator = ContentGenerator(client=client)

    with pytest.raises(GenerationError):
        generator.generate('Write something')


def test_generate_image(client) -> None:
    generator = ContentGenerator(client=client, image_model='dall-e-3')

    image = generator.generate_image('A hero image')

    assert image.url == 'https://images.example.com/hero.png'
    kwargs = client.images.generate.call_args.kwargs
    assert kwargs['model'] == 'dall-e-3'
    assert kwargs['size'] == '1024x1024'
    assert kwargs['quality'] == 'hd'


def test_launch_email_gets_hero_image(client) -> None:
    generator = ContentGenerator(client=client)

    content = generator.generate_email('launch', 'new', 'signups', user_id='user-1')

    assert content.hero_image_url == 'https://images.example.com/hero.png'
    assert content.metadata.email_type == 'launch'
    assert content.metadata.user_id == 'user-1'
    client.images.generate.assert_called_once()


def test_promotional_email_has_no_hero_image(client) -> None:
    generator = ContentGenerator(client=client)

    content = generator.generate_email('promotional', 'returning', 'sales')

    assert content.hero_image_url is None
    client.images.generate.assert_not_called()


def test_image_failure_does_not_fail_the_email(client) -> None:
    client.images.generate.side_effect = OpenAIError('content policy')
    generator = ContentGenerator(client=client)

    content = generator.generate_email('newsletter', 'all', 'engagement')

    assert content.hero_image_url is None
    assert content.subject == 'Launch day is here'


def test_malformed_generation_skips_image_request(client) -> None:
    client.chat.completions.create.return_value = completion('I cannot help with that.')
    generator = ContentGenerator(client=client)

    with pytest.raises(MalformedContentError):
        generator.generate_email('launch', 'new', 'signups')
    client.images.generate.assert_not_called()


def bedrock_response(text, stop_reason='end_turn'):
    payload = {
        'content': [{'type': 'text', 'text': text}],
        'stop_reason': stop_reason,
        'usage': {'input_tokens': 20, 'output_tokens': 80},
    }
    return {'body': io.BytesIO(json.dumps(payload).encode('utf-8'))}


def test_bedrock_client_invokes_claude() -> None:
    runtime = MagicMock()
    runtime.invoke_model.return_value = bedrock_response('{"subject": "Hi"}')
    bedrock = BedrockTextClient(client=runtime, model_id='anthropic.claude-test')

    generated = bedrock.generate('Write an email', max_tokens=512, temperature=0.2)

    assert generated.content == '{"subject": "Hi"}'
    assert generated.model == 'anthropic.claude-test'
    assert generated.finish_reason == 'end_turn'
    assert generated.usage == {'prompt_tokens': 20, 'completion_tokens': 80, 'total_tokens': 100}

    kwargs = runtime.invoke_model.call_args.kwargs
    assert kwargs['modelId'] == 'anthropic.claude-test'
    body = json.loads(kwargs['body'])
    assert body['anthropic_version'] == 'bedrock-2023-05-31'
    assert body['max_tokens'] == 512
    assert body['temperature'] == 0.2
    assert body['messages'] == [{'role': 'user', 'content': [{'type': 'text', 'text': 'Write an email'}]}]


def test_bedrock_errors_become_generation_errors() -> None:
    runtime = MagicMock()
    runtime.invoke_model.side_effect = ClientError(
        {'Error': {'Code': 'ThrottlingException', 'Message': 'slow down'}}, 'InvokeModel'
    )
    with pytest.raises(GenerationError) as excinfo:
        BedrockTextClient(client=runtime).generate('Write an email')
    assert excinfo.value.retryable is True

    runtime = MagicMock()
    runtime.invoke_model.return_value = {'body': io.BytesIO(b'{"content": []}')}
    with pytest.raises(GenerationError):
        BedrockTextClient(client=runtime).generate('Write an email')


def test_text_client_replaces_openai_text_but_not_images(client) -> None:
    runtime = MagicMock()
    runtime.invoke_model.return_value = bedrock_response(json.dumps(EMAIL_JSON))
    generator = ContentGenerator(client=client, text_client=BedrockTextClient(client=runtime))

    content = generator.generate_email('launch', 'new', 'signups', user_id='user-1')

    assert content.subject == 'Launch day is here'
    assert content.hero_image_url == 'https://images.example.com/hero.png'
    runtime.invoke_model.assert_called_once()
    client.chat.completions.create.assert_not_called()
    client.images.generate.assert_called_once()
