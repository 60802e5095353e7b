"""Streaming model transport and the watchdog that monitors it.

The transport yields raw text chunks. ``StreamMonitor`` consumes them while
enforcing three guards:

- Runaway output: a run of consecutive whitespace characters longer than the
  configured threshold aborts the call, long before the transport's own
  length cutoff would.
- Inter-chunk timeout: the transport went silent.
- Overall deadline: the call as a whole took too long.

Progress notifications go to an optional observer. Observer failures are
logged and never change the result.
"""

import asyncio
import time
from collections.abc import AsyncIterator, Awaitable, Callable
from dataclasses import dataclass
from typing import Any, Protocol

import structlog
from litellm import acompletion
from litellm.exceptions import (
    APIConnectionError,
    APIError,
    AuthenticationError,
    BadRequestError,
    InternalServerError,
    NotFoundError,
    PermissionDeniedError,
    RateLimitError,
    ServiceUnavailableError,
    Timeout,
)

from agents.errors import (
    ResponseTimeoutError,
    RunawayOutputError,
    TransportError,
    TruncatedResponseError,
)
from config import Settings
from models.schemas import ModelConfig

logger = structlog.get_logger()

ProgressObserver = Callable[[int, int], Awaitable[None]]


@dataclass(frozen=True)
class StreamChunk:
    """One piece of a streamed response.

    Attributes:
        text: Text delta carried by this chunk (may be empty)
        finish_reason: Set on the final chunk ("stop", "length", ...)
    """

    text: str
    finish_reason: str | None = None


@dataclass(frozen=True)
class ModelRequest:
    """Everything a transport needs for one call."""

    messages: list[dict[str, Any]]
    model_config: ModelConfig
    json_mode: bool = True


@dataclass(frozen=True)
class StreamResult:
    """A completed stream.

    Attributes:
        text: Concatenation of every chunk's text
        chunks: Number of chunks received
        finish_reason: Finish reason reported by the transport, if any
        latency_ms: Wall-clock duration of the call
    """

    text: str
    chunks: int
    finish_reason: str | None
    latency_ms: int

    @property
    def chars(self) -> int:
        return len(self.text)


class ModelTransport(Protocol):
    """Anything that can stream a chat completion."""

    def stream(self, request: ModelRequest) -> AsyncIterator[StreamChunk]: ...


class LiteLLMTransport:
    """Streams chat completions through ``litellm.acompletion``.

    Provider errors are translated into ``TransportError`` with the same
    retry split the rest of the codebase uses: rate limits, outages, server
    errors, timeouts and connection failures are retryable; authentication,
    permission, unknown-model and bad requests are not. Any other litellm
    ``APIError`` is treated as retryable. The provider stream is closed
    however iteration ends.
    """

    def __init__(self, request_timeout_seconds: float | None = None) -> None:
        self.request_timeout_seconds = request_timeout_seconds

    async def stream(self, request: ModelRequest) -> AsyncIterator[StreamChunk]:
        kwargs: dict[str, Any] = {
            "model": request.model_config.model,
            "messages": request.messages,
            "temperature": request.model_config.temperature,
            "max_tokens": request.model_config.max_tokens,
            "stream": True,
        }
        if request.json_mode:
            kwargs["response_format"] = {"type": "json_object"}
        if self.request_timeout_seconds:
            kwargs["timeout"] = self.request_timeout_seconds

        try:
            response = await acompletion(**kwargs)
            try:
                async for part in response:
                    if not part.choices:
                        continue
                    choice = part.choices[0]
                    yield StreamChunk(
                        text=(choice.delta.content if choice.delta else None) or "",
                        finish_reason=choice.finish_reason,
                    )
            finally:
                aclose = getattr(response, "aclose", None)
                if aclose is not None:
                    await aclose()
        except (
            RateLimitError,
            ServiceUnavailableError,
            InternalServerError,
            Timeout,
            APIConnectionError,
        ) as e:
            raise TransportError(f"{type(e).__name__}: {e}", retryable=True) from e
        except (
            AuthenticationError,
            PermissionDeniedError,
            NotFoundError,
            BadRequestError,
        ) as e:
            raise TransportError(f"{type(e).__name__}: {e}", retryable=False) from e
        except APIError as e:
            # Any other provider failure (5xx or unclassified)
            raise TransportError(f"{type(e).__name__}: {e}", retryable=True) from e


@dataclass(frozen=True)
class StreamLimits:
    """Watchdog limits for one streamed call.

    Attributes:
        max_response_chars: Length cap enforced by the monitor
        chunk_timeout_seconds: Maximum silence between two chunks
        deadline_seconds: Overall wall-clock budget for the call
        runaway_whitespace_threshold: Longest tolerated whitespace run;
            must be smaller than ``max_response_chars``
    """

    max_response_chars: int = 12000
    chunk_timeout_seconds: float = 30.0
    deadline_seconds: float = 120.0
    runaway_whitespace_threshold: int = 400

    def __post_init__(self) -> None:
        if self.runaway_whitespace_threshold >= self.max_response_chars:
            raise ValueError(
                "runaway_whitespace_threshold must be smaller than max_response_chars"
            )

    @classmethod
    def from_settings(cls, settings: Settings) -> "StreamLimits":
        return cls(
            max_response_chars=settings.max_response_chars,
            chunk_timeout_seconds=settings.stream_chunk_timeout_seconds,
            deadline_seconds=settings.llm_request_timeout_seconds,
            runaway_whitespace_threshold=settings.runaway_whitespace_threshold,
        )


def scan_whitespace_run(current_run: int, text: str) -> tuple[int, int]:
    """Advance the whitespace-run counter over ``text``.

    Returns:
        (peak, new_run): the longest run seen while reading ``text`` given a
        run of ``current_run`` carried over from earlier chunks, and the run
        still open at the end of ``text``.
    """
    stripped = text.lstrip()
    if not stripped:
        run = current_run + len(text)
        return run, run

    leading = len(text) - len(stripped)
    peak = current_run + leading
    trailing = len(stripped) - len(stripped.rstrip())

    longest_inner = 0
    run = 0
    for ch in stripped.rstrip():
        if ch.isspace():
            run += 1
            longest_inner = max(longest_inner, run)
        else:
            run = 0

    return max(peak, longest_inner, trailing), trailing


class StreamMonitor:
    """Consumes a transport stream under the configured limits.

    Usage:
        >>> monitor = StreamMonitor(LiteLLMTransport(), StreamLimits())
        >>> result = await monitor.run(request)
        >>> result.text
    """

    def __init__(
        self,
        transport: ModelTransport,
        limits: StreamLimits,
        progress_interval: int = 25,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.transport = transport
        self.limits = limits
        self.progress_interval = max(progress_interval, 1)
        self._clock = clock

    async def run(
        self,
        request: ModelRequest,
        on_progress: ProgressObserver | None = None,
    ) -> StreamResult:
        """Stream one response to completion.

        Raises:
            RunawayOutputError: Whitespace run exceeded the threshold
            ResponseTimeoutError: Inter-chunk timeout or overall deadline
            TruncatedResponseError: Length cap hit or non-"stop" finish
            TransportError: The transport itself failed
        """
        limits = self.limits
        start = self._clock()
        deadline = start + limits.deadline_seconds

        parts: list[str] = []
        chars = 0
        chunks = 0
        whitespace_run = 0
        finish_reason: str | None = None

        iterator = aiter(self.transport.stream(request))
        try:
            while True:
                remaining = deadline - self._clock()
                if remaining <= 0:
                    raise ResponseTimeoutError("deadline", self._clock() - start)

                wait = min(limits.chunk_timeout_seconds, remaining)
                try:
                    chunk = await asyncio.wait_for(anext(iterator), timeout=wait)
                except StopAsyncIteration:
                    break
                except TimeoutError:
                    reason = (
                        "deadline" if remaining <= limits.chunk_timeout_seconds else "inter_chunk"
                    )
                    raise ResponseTimeoutError(reason, self._clock() - start) from None

                chunks += 1
                if chunk.text:
                    parts.append(chunk.text)
                    chars += len(chunk.text)

                    # Runaway check runs before the length cap
                    peak, whitespace_run = scan_whitespace_run(whitespace_run, chunk.text)
                    if peak > limits.runaway_whitespace_threshold:
                        raise RunawayOutputError(
                            whitespace_run=peak,
                            threshold=limits.runaway_whitespace_threshold,
                            chars_received=chars,
                        )
                    if chars > limits.max_response_chars:
                        raise TruncatedResponseError(
                            f"response exceeded {limits.max_response_chars} characters"
                        )

                if chunk.finish_reason:
                    finish_reason = chunk.finish_reason

                if on_progress is not None and chunks % self.progress_interval == 0:
                    await self._notify(on_progress, chunks, chars)
        finally:
            aclose = getattr(iterator, "aclose", None)
            if aclose is not None:
                await aclose()

        if finish_reason is not None and finish_reason != "stop":
            raise TruncatedResponseError(f"response ended with finish_reason={finish_reason!r}")

        return StreamResult(
            text="".join(parts),
            chunks=chunks,
            finish_reason=finish_reason,
            latency_ms=int((self._clock() - start) * 1000),
        )

    async def _notify(self, observer: ProgressObserver, chunks: int, chars: int) -> None:
        try:
            await observer(chunks, chars)
        except Exception as e:
            logger.warning(
                "stream_progress_observer_failed",
                error_type=type(e).__name__,
                error=str(e),
            )
