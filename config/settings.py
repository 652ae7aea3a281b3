# config/settings.py
"""
Environment-based configuration for the API and the worker process
"""

import os


def _env_int(name: str, default: int) -> int:
    return int(os.environ.get(name, default))


def _env_bool(name: str, default: bool) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


class BaseConfig:
    """Settings shared by every environment"""

    VERSION = os.environ.get('APP_VERSION', '1.0.0')
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')
    LOG_FILE = os.environ.get('LOG_FILE')

    # Storage
    DATABASE_URL = os.environ.get('DATABASE_URL', 'sqlite:///campaign_pipeline.db')
    DATABASE_ECHO = _env_bool('DATABASE_ECHO', False)
    REDIS_URL = os.environ.get('REDIS_URL', 'redis://localhost:6379/0')
    CREATE_TABLES = _env_bool('CREATE_TABLES', True)

    # Queue
    QUEUE_NAMES = [name.strip() for name in os.environ.get('QUEUE_NAMES', 'email-processing').split(',') if name.strip()]
    QUEUE_BACKLOG_THRESHOLD = _env_int('QUEUE_BACKLOG_THRESHOLD', 1000)
    QUEUE_POLL_INTERVAL = float(os.environ.get('QUEUE_POLL_INTERVAL', 1.0))
    JOB_RETENTION_SECONDS = _env_int('JOB_RETENTION_SECONDS', 7 * 24 * 3600)

    # Worker
    WORKER_CONCURRENCY = _env_int('WORKER_CONCURRENCY', 5)
    RATE_LIMIT_MAX = _env_int('RATE_LIMIT_MAX', 100)
    RATE_LIMIT_WINDOW_MS = _env_int('RATE_LIMIT_WINDOW_MS', 60000)
    HEALTH_INTERVAL_SECONDS = _env_int('HEALTH_INTERVAL_SECONDS', 30)

    # Analytics
    ANALYTICS_BUFFER_SIZE = _env_int('ANALYTICS_BUFFER_SIZE', 10000)
    ANALYTICS_BATCH_SIZE = _env_int('ANALYTICS_BATCH_SIZE', 100)

    # SMTP delivery
    SMTP_HOST = os.environ.get('SMTP_HOST', 'localhost')
    SMTP_PORT = _env_int('SMTP_PORT', 587)
    SMTP_USERNAME = os.environ.get('SMTP_USERNAME')
    SMTP_PASSWORD = os.environ.get('SMTP_PASSWORD')
    SMTP_TIMEOUT = float(os.environ.get('SMTP_TIMEOUT', 60))
    SMTP_VALIDATE_CERTS = _env_bool('SMTP_VALIDATE_CERTS', True)
    SMTP_DOMAIN = os.environ.get('SMTP_DOMAIN', 'localhost')
    TEMPLATES_PATH = os.environ.get('TEMPLATES_PATH')  # JSON file of named templates

    # Content generation
    OPENAI_API_KEY = os.environ.get('OPENAI_API_KEY')
    OPENAI_ORGANIZATION = os.environ.get('OPENAI_ORGANIZATION')
    OPENAI_MODEL = os.environ.get('OPENAI_MODEL', 'gpt-4o')
    OPENAI_IMAGE_MODEL = os.environ.get('OPENAI_IMAGE_MODEL', 'dall-e-3')
    OPENAI_TIMEOUT = float(os.environ.get('OPENAI_TIMEOUT', 60))

    # Text provider: 'bedrock' (Claude) or 'openai'; images always use OpenAI
    CONTENT_PROVIDER = os.environ.get('CONTENT_PROVIDER', 'bedrock').strip().lower()
    AWS_REGION = os.environ.get('AWS_REGION', 'us-east-1')
    BEDROCK_MODEL_ID = os.environ.get('BEDROCK_MODEL_ID', 'anthropic.claude-3-7-sonnet-20250219-v1:0')
    BEDROCK_TIMEOUT = float(os.environ.get('BEDROCK_TIMEOUT', 60))


class DevelopmentConfig(BaseConfig):
    DEBUG = True
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'DEBUG')


class TestingConfig(BaseConfig):
    TESTING = True
    DATABASE_URL = 'sqlite://'
    REDIS_URL = ''
    LOG_LEVEL = 'WARNING'
    LOG_FILE = None
    CREATE_TABLES = True


class ProductionConfig(BaseConfig):
    DEBUG = False
    CREATE_TABLES = _env_bool('CREATE_TABLES', False)  # Migrations own the schema


CONFIGS = {
    'development': DevelopmentConfig,
    'testing': TestingConfig,
    'production': ProductionConfig,
}


def get_config(name: str = None):
    """Config class for ``name`` (defaults to ``APP_ENV``, then production)"""
    name = name or os.environ.get('APP_ENV', 'production')
    try:
        return CONFIGS[name]
    except KeyError:
        raise ValueError(f"Unknown configuration: {name}")
