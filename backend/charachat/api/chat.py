from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session
from typing import Any, Dict, Optional
from pydantic import BaseModel, Field
import asyncio
import json
import logging

from ..database import get_db
from ..dependencies import get_character_engine
from ..errors import MessageValidationError, NotFoundError
from ..middleware.llm_safety import require_generation_capacity
from ..services.character_engine import CharacterEngine

logger = logging.getLogger(__name__)

router = APIRouter()

_STREAM_DONE = object()


class ChatMessageRequest(BaseModel):
    message: str = Field(..., max_length=10000)
    user_id: str = Field(..., min_length=1)
    conversation_id: Optional[str] = None


class StrategyComparisonRequest(BaseModel):
    message: str = Field(..., min_length=1)
    user_id: str = "preview"


def _raise_for_engine_error(error: Exception):
    if isinstance(error, NotFoundError):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(error))
    if isinstance(error, MessageValidationError):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(error))
    raise error


# --- Engine-wide routes (declared before the per-character ones) ---

@router.get("/config")
async def get_chat_config(engine: CharacterEngine = Depends(get_character_engine)):
    return engine.get_config()


@router.patch("/config")
async def update_chat_config(
    changes: Dict[str, Any],
    engine: CharacterEngine = Depends(get_character_engine),
):
    try:
        engine.update_config(**changes)
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return engine.get_config()


@router.get("/health")
async def chat_health(engine: CharacterEngine = Depends(get_character_engine)):
    return engine.health_check()


# --- Messages ---

@router.post("/{character_id}/messages")
async def send_message(
    character_id: str,
    request: ChatMessageRequest,
    db: Session = Depends(get_db),
    engine: CharacterEngine = Depends(get_character_engine),
    _gate=Depends(require_generation_capacity),
):
    """Generate one character reply. Generation failures come back as an apology, not an error."""
    try:
        response = await engine.generate_character_response(
            db,
            character_id,
            request.message,
            request.user_id,
            conversation_id=request.conversation_id,
        )
    except (NotFoundError, MessageValidationError) as e:
        _raise_for_engine_error(e)
    return response.to_dict()


@router.post("/{character_id}/stream")
async def stream_message(
    character_id: str,
    request: ChatMessageRequest,
    db: Session = Depends(get_db),
    engine: CharacterEngine = Depends(get_character_engine),
    _gate=Depends(require_generation_capacity),
):
    """
    Stream a character reply as server-sent events.

    Events: start, content (one per chunk), complete (with the sanitized
    reply), error; the stream always ends with [DONE].
    """
    if not request.message.strip():
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Message cannot be empty")

    queue: asyncio.Queue = asyncio.Queue()

    async def on_chunk(chunk: str):
        await queue.put({"type": "content", "chunk": chunk})

    async def run_generation():
        try:
            response = await engine.generate_streaming_character_response(
                db,
                character_id,
                request.message,
                request.user_id,
                on_chunk,
                conversation_id=request.conversation_id,
            )
            await queue.put({"type": "complete", **response.to_dict()})
        except (NotFoundError, MessageValidationError) as e:
            await queue.put({"type": "error", "message": str(e)})
        except Exception as e:
            logger.error(f"[ENGINE] Stream failed for {character_id}: {e}", exc_info=True)
            await queue.put({"type": "error", "message": str(e)})
        finally:
            await queue.put(_STREAM_DONE)

    async def stream_generator():
        yield f"data: {json.dumps({'type': 'start', 'character_id': character_id})}\n\n"
        task = asyncio.create_task(run_generation())
        try:
            while True:
                event = await queue.get()
                if event is _STREAM_DONE:
                    break
                yield f"data: {json.dumps(event)}\n\n"
            yield "data: [DONE]\n\n"
        finally:
            if not task.done():
                task.cancel()

    return StreamingResponse(
        stream_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "X-Accel-Buffering": "no",
        },
    )


@router.post("/{character_id}/strategies")
async def compare_prompt_strategies(
    character_id: str,
    request: StrategyComparisonRequest,
    db: Session = Depends(get_db),
    engine: CharacterEngine = Depends(get_character_engine),
):
    """Preview every prompt strategy for a message without generating"""
    try:
        return await engine.test_prompt_strategies(db, character_id, request.message, request.user_id)
    except NotFoundError as e:
        _raise_for_engine_error(e)


# --- History ---

@router.get("/{character_id}/history/{user_id}")
async def get_history(
    character_id: str,
    user_id: str,
    limit: Optional[int] = None,
    engine: CharacterEngine = Depends(get_character_engine),
):
    turns = engine.get_conversation_history(character_id, user_id, limit=limit)
    return {"character_id": character_id, "user_id": user_id, "messages": [t.to_dict() for t in turns]}


@router.delete("/{character_id}/history/{user_id}")
async def clear_history(
    character_id: str,
    user_id: str,
    engine: CharacterEngine = Depends(get_character_engine),
):
    removed = await engine.clear_conversation_history(character_id, user_id)
    return {"cleared": removed}


@router.delete("/{character_id}/history")
async def clear_history_for_character(
    character_id: str,
    engine: CharacterEngine = Depends(get_character_engine),
):
    removed = await engine.clear_conversation_history_for_character(character_id)
    return {"cleared": removed}
