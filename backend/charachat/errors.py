"""
Domain errors

Generation errors are raised by the safety gate and converted to a fixed
apology by the character engine. Retrieval never raises; a failed lookup is
reported through RAGContext.degraded instead.
"""


class CharachatError(Exception):
    """Base class for all service errors"""
    pass


class NotFoundError(CharachatError):
    """Referenced character or record does not exist"""

    def __init__(self, entity: str, entity_id):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} not found: {entity_id}")


class MessageValidationError(CharachatError):
    """User message was empty or otherwise unusable"""
    pass


class GenerationError(CharachatError):
    """Base class for errors raised by the generation safety gate"""
    status_code = 502

    def __init__(self, message: str, request_id: str = None):
        self.request_id = request_id
        super().__init__(message)


class TooManyConcurrentError(GenerationError):
    status_code = 429
    retry_after = 30


class PromptTooLongError(GenerationError):
    status_code = 413


class GenerationTimeoutError(GenerationError):
    status_code = 504


class UpstreamError(GenerationError):
    """The text-generation backend failed or returned garbage"""
    status_code = 502


class MemoryPressureError(GenerationError):
    """Process memory is above the hard ceiling; new generations are refused"""
    status_code = 503
    retry_after = 60
