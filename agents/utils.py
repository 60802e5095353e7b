"""LLM client and helper functions shared by the Coder, Critics and Fixer.

This module provides:
- RetryPolicy: Exponential backoff parameters for per-call retries
- LLMClient: Streams a call through the StreamMonitor, retries retryable
  failures, emits metrics events, and re-asks the model when its answer
  cannot be decoded
- extract_assert_tags: Pull assertion tags out of test-runner output
"""

import asyncio
import re
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any, TypeVar

import structlog

from agents.errors import DecodeError, ModelCallError
from agents.prompts import DECODE_REPAIR_PROMPT
from agents.streaming import (
    LiteLLMTransport,
    ModelRequest,
    ModelTransport,
    StreamLimits,
    StreamMonitor,
)
from config import Settings, settings
from events.bus import EventBus
from events.types import AgentEvent, EventType, LLMMetrics
from models.schemas import ModelConfig

logger = structlog.get_logger()

T = TypeVar("T")


@dataclass(frozen=True)
class RetryPolicy:
    """Backoff parameters for retrying a failed model call.

    Attributes:
        max_retries: Retries after the first attempt
        base_delay_seconds: Delay before the first retry
        backoff_cap_seconds: Upper bound for any single delay
    """

    max_retries: int = 5
    base_delay_seconds: float = 1.0
    backoff_cap_seconds: float = 4.0

    def delay_for(self, attempt: int) -> float:
        """Delay after the given 0-based failed attempt."""
        return min(self.base_delay_seconds * (2**attempt), self.backoff_cap_seconds)

    @classmethod
    def from_settings(cls, settings: Settings) -> "RetryPolicy":
        return cls(
            max_retries=settings.llm_max_retries,
            base_delay_seconds=settings.llm_retry_delay_seconds,
            backoff_cap_seconds=settings.llm_retry_backoff_cap_seconds,
        )


@dataclass
class LLMResponse:
    """Structured response from a streamed model call.

    Attributes:
        content: The full concatenated response text
        finish_reason: Why the model stopped, if the transport said
        metrics: Size and latency metrics
    """

    content: str
    finish_reason: str | None
    metrics: LLMMetrics


class LLMClient:
    """Streams model calls with a watchdog, retries, and event emission.

    Every call runs through a ``StreamMonitor``. Runaway output, timeouts,
    truncation and retryable transport errors are retried with exponential
    backoff, re-issuing the identical request. Non-retryable transport
    errors propagate immediately.

    Attributes:
        transport: Where chunks come from (LiteLLM by default)
        limits: Watchdog limits applied to each call
        retry_policy: Backoff parameters
        decode_retries: Re-asks allowed when a response cannot be decoded
        event_bus: Optional EventBus for metrics and progress events
        run_id: Run the emitted events belong to
    """

    def __init__(
        self,
        transport: ModelTransport | None = None,
        limits: StreamLimits | None = None,
        retry_policy: RetryPolicy | None = None,
        decode_retries: int | None = None,
        event_bus: EventBus | None = None,
        run_id: str | None = None,
        progress_interval: int | None = None,
    ) -> None:
        self.transport = transport or LiteLLMTransport(settings.llm_request_timeout_seconds)
        self.limits = limits or StreamLimits.from_settings(settings)
        self.retry_policy = retry_policy or RetryPolicy.from_settings(settings)
        self.decode_retries = (
            decode_retries if decode_retries is not None else settings.llm_retry_attempts
        )
        self.event_bus = event_bus
        self.run_id = run_id
        self.monitor = StreamMonitor(
            self.transport,
            self.limits,
            progress_interval=progress_interval or settings.stream_progress_interval,
        )

    async def call(
        self,
        messages: list[dict[str, Any]],
        model_config: ModelConfig,
        agent_id: str | None = None,
        agent_role: str | None = None,
        json_mode: bool = True,
    ) -> LLMResponse:
        """Make one model call, retrying retryable failures.

        Args:
            messages: Chat messages with 'role' and 'content'
            model_config: Model, temperature and token cap for this call
            agent_id: Caller identity for logs and events
            agent_role: Caller role for events ("coder", "critic", "fixer")
            json_mode: Ask the provider for a JSON object response

        Returns:
            LLMResponse with the full text and metrics

        Raises:
            ModelCallError: Non-retryable failure, or retries exhausted
        """
        request = ModelRequest(messages=messages, model_config=model_config, json_mode=json_mode)
        max_retries = self.retry_policy.max_retries

        async def on_progress(chunks: int, chars: int) -> None:
            await self._publish(
                EventType.STREAM_PROGRESS,
                agent_id,
                agent_role,
                {"chunks": chunks, "chars": chars},
            )

        for attempt in range(max_retries + 1):
            try:
                result = await self.monitor.run(request, on_progress=on_progress)
            except ModelCallError as e:
                if not e.retryable:
                    logger.error(
                        "llm_call_failed_no_retry",
                        model=model_config.model,
                        agent_id=agent_id,
                        error_type=type(e).__name__,
                        error=str(e),
                    )
                    await self._emit_error(agent_id, agent_role, e, attempt)
                    raise

                if attempt >= max_retries:
                    logger.error(
                        "llm_call_failed_all_retries",
                        model=model_config.model,
                        agent_id=agent_id,
                        attempts=max_retries + 1,
                        error_type=type(e).__name__,
                        error=str(e),
                    )
                    await self._emit_error(agent_id, agent_role, e, attempt)
                    raise

                delay = self.retry_policy.delay_for(attempt)
                logger.warning(
                    "llm_call_retry",
                    model=model_config.model,
                    agent_id=agent_id,
                    attempt=attempt + 1,
                    max_retries=max_retries,
                    error_type=type(e).__name__,
                    error=str(e),
                    retry_delay=delay,
                )
                await self._publish(
                    EventType.LLM_CALL_RETRY,
                    agent_id,
                    agent_role,
                    {
                        "error_type": type(e).__name__,
                        "error": str(e),
                        "attempt": attempt + 1,
                    },
                )
                await self._async_sleep(delay)
                continue

            metrics = LLMMetrics(
                model=model_config.model,
                chars=result.chars,
                chunks=result.chunks,
                latency_ms=result.latency_ms,
            )
            logger.info(
                "llm_call_complete",
                model=metrics.model,
                agent_id=agent_id,
                chars=metrics.chars,
                chunks=metrics.chunks,
                latency_ms=metrics.latency_ms,
                attempt=attempt + 1,
            )
            await self._publish(
                EventType.LLM_CALL_COMPLETE,
                agent_id,
                agent_role,
                metrics.model_dump(),
            )
            return LLMResponse(
                content=result.text,
                finish_reason=result.finish_reason,
                metrics=metrics,
            )

        # range() always runs at least once and every branch returns or raises
        raise AssertionError("unreachable")

    async def call_and_decode(
        self,
        messages: list[dict[str, Any]],
        model_config: ModelConfig,
        decode: Callable[[str], T],
        agent_id: str | None = None,
        agent_role: str | None = None,
    ) -> T:
        """Call the model and decode its answer, re-asking on malformed output.

        On a DecodeError the bad answer is appended to the conversation
        together with a repair instruction, and the model is asked again, up
        to ``decode_retries`` times.

        Raises:
            DecodeError: The answer was still undecodable after all re-asks
            ModelCallError: A model call failed
        """
        conversation = list(messages)
        for attempt in range(self.decode_retries + 1):
            response = await self.call(
                conversation,
                model_config,
                agent_id=agent_id,
                agent_role=agent_role,
            )
            try:
                return decode(response.content)
            except DecodeError as e:
                if attempt >= self.decode_retries:
                    logger.error(
                        "decode_failed",
                        agent_id=agent_id,
                        field=e.field,
                        error=str(e),
                        attempts=attempt + 1,
                    )
                    raise
                logger.warning(
                    "decode_repair_requested",
                    agent_id=agent_id,
                    field=e.field,
                    error=str(e),
                    attempt=attempt + 1,
                )
                conversation = [
                    *conversation,
                    {"role": "assistant", "content": response.content},
                    {"role": "user", "content": DECODE_REPAIR_PROMPT.format(error=e)},
                ]

        raise AssertionError("unreachable")

    async def _emit_error(
        self,
        agent_id: str | None,
        agent_role: str | None,
        error: Exception,
        attempt: int,
    ) -> None:
        await self._publish(
            EventType.AGENT_ERROR,
            agent_id,
            agent_role,
            {
                "error_type": type(error).__name__,
                "error": str(error),
                "attempt": attempt + 1,
                "phase": "llm_call",
            },
        )

    async def _publish(
        self,
        event_type: EventType,
        agent_id: str | None,
        agent_role: str | None,
        data: dict[str, Any],
    ) -> None:
        if self.event_bus and self.run_id:
            await self.event_bus.publish(
                AgentEvent(
                    type=event_type,
                    run_id=self.run_id,
                    agent_id=agent_id,
                    agent_role=agent_role,
                    data=data,
                )
            )

    async def _async_sleep(self, seconds: float) -> None:
        """Async sleep for retry delay.

        Extracted to a method for easier testing/mocking.
        """
        await asyncio.sleep(seconds)


def extract_assert_tags(text: str, pattern: str = settings.assert_tag_pattern) -> tuple[str, ...]:
    """Return the distinct assertion tags in ``text``, in order of appearance."""
    seen: dict[str, None] = {}
    for match in re.finditer(pattern, text):
        seen.setdefault(match.group(0), None)
    return tuple(seen)

