# core/exceptions.py
"""
Error taxonomy for the campaign email pipeline

Every error carries a ``retryable`` flag that the worker dispatcher uses to
decide between a backoff retry and a terminal failure.
"""

from typing import Optional


class PipelineError(Exception):
    """Base exception for queue, generation and delivery operations"""
    retryable = True


class StoreUnavailable(PipelineError):
    """Queue backing store cannot be reached"""
    pass


class JobNotFound(PipelineError):
    """Job does not exist or is not active under the given claim"""
    retryable = False

    def __init__(self, job_id: str, reason: str = "not found"):
        self.job_id = job_id
        self.reason = reason
        super().__init__(f"Job {job_id} {reason}")


class InvalidJobOptions(PipelineError):
    """Job submission payload or options are malformed"""
    retryable = False


class UnsupportedJobKind(PipelineError):
    """No handler is registered for the job kind"""
    retryable = False

    def __init__(self, kind: str):
        self.kind = kind
        super().__init__(f"Unsupported job kind: {kind}")


class GenerationError(PipelineError):
    """Upstream text or image generation failed"""
    pass


class MalformedContentError(PipelineError):
    """Generated text does not match the expected email JSON schema"""
    retryable = False

    def __init__(self, message: str, raw_text: Optional[str] = None):
        self.raw_text = raw_text
        super().__init__(message)


class DeliveryTransportError(PipelineError):
    """Email provider unreachable or the session dropped mid-send"""
    pass


class TemplateNotFound(PipelineError):
    retryable = False


class TemplateRenderError(PipelineError):
    retryable = False
