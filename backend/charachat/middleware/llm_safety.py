"""
Request-level guards for generation endpoints.

Generation routes depend on require_generation_capacity, which refuses the
request before any work is done when the safety gate is at its concurrency
cap (429) or the process is above the hard memory ceiling (503). Gate errors
raised later are converted with generation_http_exception.
"""
from fastapi import Depends, HTTPException, status
import logging

from ..dependencies import get_safety_gate
from ..errors import (
    GenerationError,
    GenerationTimeoutError,
    MemoryPressureError,
    PromptTooLongError,
    TooManyConcurrentError,
)
from ..services.llm.safety import GenerationSafetyGate

logger = logging.getLogger(__name__)


def generation_http_exception(error: GenerationError) -> HTTPException:
    """Map a gate error to the HTTP status the client should see"""
    headers = None
    if isinstance(error, TooManyConcurrentError):
        code = status.HTTP_429_TOO_MANY_REQUESTS
        headers = {"Retry-After": str(error.retry_after)}
    elif isinstance(error, MemoryPressureError):
        code = status.HTTP_503_SERVICE_UNAVAILABLE
        headers = {"Retry-After": str(error.retry_after)}
    elif isinstance(error, PromptTooLongError):
        code = status.HTTP_413_REQUEST_ENTITY_TOO_LARGE
    elif isinstance(error, GenerationTimeoutError):
        code = status.HTTP_504_GATEWAY_TIMEOUT
    else:
        code = status.HTTP_502_BAD_GATEWAY
    return HTTPException(status_code=code, detail=str(error), headers=headers)


async def require_generation_capacity(
    gate: GenerationSafetyGate = Depends(get_safety_gate),
) -> GenerationSafetyGate:
    try:
        gate.check_admission()
    except GenerationError as e:
        logger.warning(f"[SAFETY] Request refused before generation: {e}")
        raise generation_http_exception(e)
    return gate
