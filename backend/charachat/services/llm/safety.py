"""
Generation Safety Gate

Every call to the text generation backend goes through here. The gate
enforces:

- a cap on concurrent generations (admission is check-and-insert with no
  await in between, so it is atomic on the event loop)
- a maximum prompt length, summed over messages for chat requests
- a per-request deadline via asyncio.wait_for
- removal from the active table on every exit path

It also reports process resource usage, warns on memory pressure from a
background monitor loop, and offers an emergency stop that clears the
active table and optionally runs a command to kill the model process.
"""

import asyncio
import inspect
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

import psutil

from ...config import settings
from ...errors import (
    GenerationError,
    GenerationTimeoutError,
    MemoryPressureError,
    PromptTooLongError,
    TooManyConcurrentError,
    UpstreamError,
)
from .client import PromptOrMessages

logger = logging.getLogger(__name__)

ChunkCallback = Callable[[str], Union[None, Awaitable[None]]]


class RequestStatus(str, Enum):
    QUEUED = "queued"
    ACTIVE = "active"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    FAILED = "failed"


@dataclass
class GenerationRequest:
    request_id: str
    prompt_or_messages: PromptOrMessages
    model: Optional[str]
    temperature: Optional[float]
    max_tokens: int
    started_at: datetime = field(default_factory=datetime.utcnow)
    status: RequestStatus = RequestStatus.QUEUED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "request_id": self.request_id,
            "model": self.model,
            "status": self.status.value,
            "started_at": self.started_at.isoformat(),
            "elapsed_seconds": round((datetime.utcnow() - self.started_at).total_seconds(), 2),
            "prompt_length": prompt_length(self.prompt_or_messages),
        }


@dataclass
class GenerationResult:
    text: str
    tokens_used: int
    request_id: str
    duration_ms: float


def prompt_length(prompt_or_messages: PromptOrMessages) -> int:
    if isinstance(prompt_or_messages, str):
        return len(prompt_or_messages)
    return sum(len(message.get("content") or "") for message in prompt_or_messages)


class GenerationSafetyGate:
    """Bounded, time-limited access to a text generation backend"""

    def __init__(
        self,
        backend,
        max_concurrent: int = 3,
        max_prompt_length: int = 5000,
        timeout_seconds: float = 60.0,
        max_tokens: int = 2048,
        memory_notice_mb: int = 1024,
        memory_soft_mb: int = 1536,
        memory_hard_mb: int = 2048,
        monitor_interval_seconds: float = 5.0,
        stop_command: str = "",
    ):
        self.backend = backend
        self.max_concurrent = max_concurrent
        self.max_prompt_length = max_prompt_length
        self.timeout_seconds = timeout_seconds
        self.max_tokens = max_tokens
        self.memory_notice_mb = memory_notice_mb
        self.memory_soft_mb = memory_soft_mb
        self.memory_hard_mb = memory_hard_mb
        self.monitor_interval_seconds = monitor_interval_seconds
        self.stop_command = stop_command

        self._active: Dict[str, GenerationRequest] = {}
        self._process = psutil.Process()
        self._started = time.time()
        self._memory_notice_logged = False
        self.counters = {
            "total": 0,
            "completed": 0,
            "failed": 0,
            "timed_out": 0,
            "rejected": 0,
            "emergency_stops": 0,
        }

    @classmethod
    def from_settings(cls, backend, config=settings) -> "GenerationSafetyGate":
        return cls(
            backend,
            max_concurrent=config.safety_max_concurrent,
            max_prompt_length=config.safety_max_prompt_length,
            timeout_seconds=config.safety_timeout_seconds,
            max_tokens=config.llm_max_tokens,
            memory_notice_mb=config.safety_memory_notice_mb,
            memory_soft_mb=config.safety_memory_soft_mb,
            memory_hard_mb=config.safety_memory_hard_mb,
            monitor_interval_seconds=config.safety_monitor_interval_seconds,
            stop_command=config.emergency_stop_command,
        )

    @property
    def active_count(self) -> int:
        return len(self._active)

    def active_request_ids(self) -> List[str]:
        return list(self._active)

    # --- Admission ---

    def check_admission(self) -> None:
        """Raise if a new generation would be refused right now"""
        if len(self._active) >= self.max_concurrent:
            raise TooManyConcurrentError(
                f"Too many concurrent requests. Max {self.max_concurrent} allowed."
            )
        rss_mb = self.memory_rss_mb()
        if rss_mb > self.memory_hard_mb:
            raise MemoryPressureError(
                f"Server memory usage too high ({rss_mb:.0f}MB). Please try again later."
            )

    def _admit(
        self,
        prompt_or_messages: PromptOrMessages,
        model: Optional[str],
        temperature: Optional[float],
        max_tokens: Optional[int],
        request_id: Optional[str],
    ) -> GenerationRequest:
        # Synchronous on purpose: the cap check and the insert must not be split by an await
        request_id = request_id or f"req_{uuid.uuid4().hex[:12]}"
        if len(self._active) >= self.max_concurrent:
            self.counters["rejected"] += 1
            logger.warning(f"[SAFETY] Rejected {request_id}: {len(self._active)}/{self.max_concurrent} active")
            raise TooManyConcurrentError(
                f"Too many concurrent requests. Max {self.max_concurrent} allowed.", request_id
            )

        length = prompt_length(prompt_or_messages)
        if length > self.max_prompt_length:
            self.counters["rejected"] += 1
            raise PromptTooLongError(
                f"Prompt too long ({length} chars). Max {self.max_prompt_length} characters allowed.", request_id
            )

        request = GenerationRequest(
            request_id=request_id,
            prompt_or_messages=prompt_or_messages,
            model=model,
            temperature=temperature,
            max_tokens=min(max_tokens or self.max_tokens, self.max_tokens),
        )
        self._active[request_id] = request
        request.status = RequestStatus.ACTIVE
        self.counters["total"] += 1
        logger.info(f"[SAFETY] Starting {request_id} ({len(self._active)}/{self.max_concurrent} active)")
        return request

    def _finish(self, request: GenerationRequest, status: RequestStatus) -> None:
        request.status = status
        key = {
            RequestStatus.COMPLETED: "completed",
            RequestStatus.TIMED_OUT: "timed_out",
            RequestStatus.FAILED: "failed",
        }[status]
        self.counters[key] += 1

    async def _guarded(self, request: GenerationRequest, make_work: Callable[[], Awaitable]) -> Any:
        started = time.perf_counter()
        try:
            result = await asyncio.wait_for(make_work(), timeout=self.timeout_seconds)
            self._finish(request, RequestStatus.COMPLETED)
            logger.info(f"[SAFETY] {request.request_id} completed in {(time.perf_counter() - started) * 1000:.0f}ms")
            return result
        except asyncio.TimeoutError:
            self._finish(request, RequestStatus.TIMED_OUT)
            logger.error(f"[SAFETY] {request.request_id} timed out after {self.timeout_seconds}s")
            raise GenerationTimeoutError(
                f"LLM request timed out after {self.timeout_seconds}s. Please try a shorter prompt or check system resources.",
                request.request_id,
            )
        except asyncio.CancelledError:
            self._finish(request, RequestStatus.FAILED)
            raise
        except GenerationError:
            self._finish(request, RequestStatus.FAILED)
            raise
        except Exception as e:
            self._finish(request, RequestStatus.FAILED)
            logger.error(f"[SAFETY] {request.request_id} failed: {e}")
            raise UpstreamError(f"Text generation failed: {e}", request.request_id) from e
        finally:
            self._active.pop(request.request_id, None)

    # --- Generation ---

    async def safe_generate(
        self,
        prompt_or_messages: PromptOrMessages,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        request_id: Optional[str] = None,
    ) -> GenerationResult:
        request = self._admit(prompt_or_messages, model, temperature, max_tokens, request_id)
        started = time.perf_counter()
        result = await self._guarded(
            request,
            lambda: self.backend.generate(
                prompt_or_messages,
                model=model,
                temperature=temperature,
                max_tokens=request.max_tokens,
            ),
        )
        if result is None or not isinstance(result.text, str):
            raise UpstreamError("Backend returned no text", request.request_id)
        return GenerationResult(
            text=result.text,
            tokens_used=result.tokens_used,
            request_id=request.request_id,
            duration_ms=(time.perf_counter() - started) * 1000,
        )

    async def safe_generate_stream(
        self,
        prompt_or_messages: PromptOrMessages,
        on_chunk: Optional[ChunkCallback] = None,
        model: Optional[str] = None,
        temperature: Optional[float] = None,
        max_tokens: Optional[int] = None,
        request_id: Optional[str] = None,
    ) -> GenerationResult:
        """Stream chunks to on_chunk under the same admission and deadline rules"""
        request = self._admit(prompt_or_messages, model, temperature, max_tokens, request_id)
        started = time.perf_counter()
        pieces: List[str] = []

        async def consume():
            async for chunk in self.backend.stream(
                prompt_or_messages,
                model=model,
                temperature=temperature,
                max_tokens=request.max_tokens,
            ):
                pieces.append(chunk)
                if on_chunk is not None:
                    outcome = on_chunk(chunk)
                    if inspect.isawaitable(outcome):
                        await outcome

        await self._guarded(request, consume)
        return GenerationResult(
            text="".join(pieces),
            tokens_used=0,
            request_id=request.request_id,
            duration_ms=(time.perf_counter() - started) * 1000,
        )

    # --- Monitoring ---

    def memory_rss_mb(self) -> float:
        return self._process.memory_info().rss / (1024 * 1024)

    def check_memory(self) -> float:
        rss_mb = self.memory_rss_mb()
        if rss_mb > self.memory_soft_mb:
            logger.warning(
                f"[SAFETY] High memory usage: {rss_mb:.0f}MB "
                f"(soft limit {self.memory_soft_mb}MB, hard limit {self.memory_hard_mb}MB)"
            )
        elif rss_mb > self.memory_notice_mb and not self._memory_notice_logged:
            logger.warning(f"[SAFETY] Memory usage above {self.memory_notice_mb}MB: {rss_mb:.0f}MB")
            self._memory_notice_logged = True
        return rss_mb

    async def monitor(self) -> None:
        """Periodic memory check; runs until cancelled"""
        logger.info(f"[SAFETY] Resource monitor started (every {self.monitor_interval_seconds}s)")
        while True:
            await asyncio.sleep(self.monitor_interval_seconds)
            try:
                self.check_memory()
            except psutil.Error as e:
                logger.error(f"[SAFETY] Memory check failed: {e}")

    def get_resource_usage(self) -> Dict[str, Any]:
        with self._process.oneshot():
            memory = self._process.memory_info()
            memory_percent = self._process.memory_percent()
            threads = self._process.num_threads()
        system = psutil.virtual_memory()
        mb = 1024 * 1024
        return {
            "memory": {
                "rss_mb": round(memory.rss / mb, 1),
                "vms_mb": round(memory.vms / mb, 1),
                "percent": round(memory_percent, 2),
                "threads": threads,
            },
            "system_memory": {
                "total_mb": round(system.total / mb, 1),
                "available_mb": round(system.available / mb, 1),
                "percent": system.percent,
            },
            "active_requests": len(self._active),
            "active_request_ids": self.active_request_ids(),
            "request_queue": [r.to_dict() for r in self._active.values()],
            "counters": dict(self.counters),
            "limits": {
                "max_concurrent": self.max_concurrent,
                "max_prompt_length": self.max_prompt_length,
                "timeout_seconds": self.timeout_seconds,
                "max_tokens": self.max_tokens,
                "memory_soft_mb": self.memory_soft_mb,
                "memory_hard_mb": self.memory_hard_mb,
            },
            "uptime_seconds": round(time.time() - self._started, 1),
            "timestamp": datetime.utcnow().isoformat(),
        }

    # --- Emergency stop ---

    async def emergency_stop(self) -> Dict[str, Any]:
        """
        Forget every in-flight request and, if configured, run the stop
        command against the model process. Exit codes 0 and 1 both count as
        success (1 usually means nothing matched).
        """
        cleared = list(self._active)
        for request in self._active.values():
            request.status = RequestStatus.FAILED
        self._active.clear()
        self.counters["emergency_stops"] += 1
        logger.warning(f"[SAFETY] Emergency stop: cleared {len(cleared)} active request(s)")

        errors = []
        command_ran = False
        if self.stop_command:
            try:
                process = await asyncio.create_subprocess_shell(
                    self.stop_command,
                    stdout=asyncio.subprocess.PIPE,
                    stderr=asyncio.subprocess.PIPE,
                )
                _, stderr = await asyncio.wait_for(process.communicate(), timeout=10)
                command_ran = True
                if process.returncode not in (0, 1):
                    errors.append(
                        f"Stop command exited with {process.returncode}: {stderr.decode(errors='replace').strip()}"
                    )
            except (OSError, asyncio.TimeoutError) as e:
                errors.append(f"Stop command failed: {e}")
            if errors:
                logger.error(f"[SAFETY] Emergency stop errors: {errors}")

        return {
            "stopped": len(cleared),
            "cleared_request_ids": cleared,
            "stop_command_ran": command_ran,
            "errors": errors,
            "timestamp": datetime.utcnow().isoformat(),
        }
