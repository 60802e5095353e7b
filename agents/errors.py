"""Error taxonomy for model calls, decoding and review aggregation.

Per-call failures (``ModelCallError`` and its subclasses) carry a
``retryable`` flag read by the LLM client's retry policy. Terminal run
outcomes are not exceptions; see ``models.schemas.LoopOutcome``.
"""

from typing import Literal


class CriticLoopError(Exception):
    """Base class for all errors raised by the critic loop."""


class DecodeError(CriticLoopError):
    """A model response did not contain the expected field in a usable shape."""

    def __init__(self, message: str, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class ModelCallError(CriticLoopError):
    """A single streamed model call failed."""

    retryable: bool = True


class RunawayOutputError(ModelCallError):
    """The stream degenerated into an uninterrupted run of whitespace."""

    def __init__(self, whitespace_run: int, threshold: int, chars_received: int) -> None:
        super().__init__(
            f"runaway output: {whitespace_run} consecutive whitespace characters "
            f"(threshold {threshold}) after {chars_received} characters"
        )
        self.whitespace_run = whitespace_run
        self.threshold = threshold
        self.chars_received = chars_received


class ResponseTimeoutError(ModelCallError):
    """No chunk arrived in time, or the call overran its deadline."""

    def __init__(
        self,
        reason: Literal["inter_chunk", "deadline"],
        elapsed_seconds: float,
    ) -> None:
        super().__init__(f"model call timed out ({reason}) after {elapsed_seconds:.1f}s")
        self.reason = reason
        self.elapsed_seconds = elapsed_seconds


class TransportError(ModelCallError):
    """The transport failed to deliver a response."""

    def __init__(self, message: str, *, retryable: bool = True) -> None:
        super().__init__(message)
        self.retryable = retryable


class TruncatedResponseError(TransportError):
    """The response hit a length cap or ended with a non-stop finish reason."""


class AllCriticsFailedError(CriticLoopError):
    """Every member of the review panel failed after its own retries."""

    def __init__(self, panel_size: int, errors: list[BaseException]) -> None:
        super().__init__(f"all {panel_size} critics failed")
        self.panel_size = panel_size
        self.errors = errors
