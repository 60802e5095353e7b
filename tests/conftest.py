"""Shared test fixtures for the critic loop tests.

Provides scripted model transports, fake collaborators for the loop graph,
and an isolated EventBus so tests never touch a real LLM API or compiler.
"""

import asyncio
import json
import sys
from collections.abc import AsyncIterator, Awaitable, Callable
from types import SimpleNamespace
from typing import Any

import pytest

# Ensure the project root is on sys.path so that absolute imports
# like ``from agents.decoder import ...`` resolve correctly when running
# pytest from the repository root.
_project_root = str(__import__("pathlib").Path(__file__).resolve().parent.parent)
if _project_root not in sys.path:
    sys.path.insert(0, _project_root)

from agents.errors import AllCriticsFailedError, TransportError  # noqa: E402
from agents.streaming import (  # noqa: E402
    ModelRequest,
    ModelTransport,
    StreamChunk,
    StreamLimits,
)
from agents.utils import LLMClient, RetryPolicy  # noqa: E402
from events.bus import EventBus, reset_event_bus  # noqa: E402
from events.types import AgentEvent  # noqa: E402
from models.schemas import (  # noqa: E402
    AggregatedVerdict,
    Artifact,
    CriticReport,
    ModelConfig,
    Problem,
    RepairFeedback,
    TestResult,
    Verdict,
)

# ---------------------------------------------------------------------------
# Event Bus
# ---------------------------------------------------------------------------


@pytest.fixture()
def event_bus() -> EventBus:
    """Return a fresh EventBus instance for each test."""
    reset_event_bus()
    bus = EventBus()
    return bus


async def collect_events(event_bus: EventBus, run_id: str) -> list[AgentEvent]:
    """Subscribe to a run and drain all buffered events after graph.run()."""
    queue = event_bus.subscribe(run_id)
    events: list[AgentEvent] = []
    while not queue.empty():
        events.append(queue.get_nowait())
    return events


# ---------------------------------------------------------------------------
# Scripted transport
# ---------------------------------------------------------------------------

# One scripted call: a list of chunks (floats are pauses in seconds,
# exceptions are raised mid-stream), or an exception raised up front.
Script = list[StreamChunk | float | BaseException] | BaseException


def text_stream(
    text: str,
    chunk_size: int = 8,
    finish_reason: str | None = "stop",
) -> list[StreamChunk | float | BaseException]:
    """Split ``text`` into chunks, marking the last one with ``finish_reason``."""
    pieces = [text[i : i + chunk_size] for i in range(0, len(text), chunk_size)] or [""]
    chunks: list[StreamChunk | float | BaseException] = [StreamChunk(p) for p in pieces[:-1]]
    chunks.append(StreamChunk(pieces[-1], finish_reason=finish_reason))
    return chunks


class ScriptedTransport:
    """Replays scripted streams in order, recording every request.

    Attributes:
        requests: Every request received, in order
        closed: Number of streams that were closed or cancelled early
    """

    def __init__(self, scripts: list[Script] | None = None) -> None:
        self._scripts: list[Script] = list(scripts or [])
        self.requests: list[ModelRequest] = []
        self.closed = 0

    def add(self, *scripts: Script) -> None:
        self._scripts.extend(scripts)

    async def stream(self, request: ModelRequest) -> AsyncIterator[StreamChunk]:
        self.requests.append(request)
        if not self._scripts:
            raise IndexError("No more scripted streams available")
        script = self._scripts.pop(0)
        if isinstance(script, BaseException):
            raise script

        finished = False
        try:
            for item in script:
                if isinstance(item, BaseException):
                    raise item
                if isinstance(item, float):
                    await asyncio.sleep(item)
                    continue
                yield item
            finished = True
        finally:
            if not finished:
                self.closed += 1


class RoutingTransport(ScriptedTransport):
    """Routes scripted streams by the role of the calling agent.

    The critic panel runs several calls concurrently, so ordering across
    roles is not deterministic. Each role has its own script list; the role
    is read from the request's system prompt.

    Args:
        routes: Dict mapping role ("coder", "critic", "fixer") to scripts.
    """

    def __init__(self, routes: dict[str, list[Script]]) -> None:
        super().__init__()
        self._routes: dict[str, list[Script]] = {k: list(v) for k, v in routes.items()}
        self.roles: list[str] = []

    @staticmethod
    def role_of(request: ModelRequest) -> str:
        system = request.messages[0]["content"]
        if "`correct`" in system:
            return "critic"
        if "coding goal" in system:
            return "fixer"
        return "coder"

    async def stream(self, request: ModelRequest) -> AsyncIterator[StreamChunk]:
        role = self.role_of(request)
        self.roles.append(role)
        self._scripts = self._routes[role]
        async for chunk in super().stream(request):
            yield chunk


# ---------------------------------------------------------------------------
# litellm stand-ins
# ---------------------------------------------------------------------------


def provider_part(
    content: str | None = None,
    finish_reason: str | None = None,
    *,
    with_delta: bool = True,
) -> SimpleNamespace:
    """One streamed completion part shaped like litellm's ModelResponseStream."""
    delta = SimpleNamespace(content=content) if with_delta else None
    return SimpleNamespace(
        choices=[SimpleNamespace(delta=delta, finish_reason=finish_reason)]
    )


class ProviderStream:
    """The async iterator ``acompletion(stream=True)`` returns.

    Exceptions in ``parts`` are raised mid-stream.

    Attributes:
        closed: Whether ``aclose`` was awaited
    """

    def __init__(self, parts: list[Any]) -> None:
        self.parts = list(parts)
        self.closed = False

    def __aiter__(self) -> AsyncIterator[Any]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[Any]:
        for part in self.parts:
            if isinstance(part, BaseException):
                raise part
            yield part

    async def aclose(self) -> None:
        self.closed = True


def fake_acompletion(
    result: ProviderStream | BaseException,
    calls: list[dict[str, Any]] | None = None,
) -> Callable[..., Awaitable[ProviderStream]]:
    """Replacement for ``litellm.acompletion`` that records its kwargs."""

    async def _acompletion(**kwargs: Any) -> ProviderStream:
        if calls is not None:
            calls.append(kwargs)
        if isinstance(result, BaseException):
            raise result
        return result

    return _acompletion


def make_llm_client(
    transport: ModelTransport,
    event_bus: EventBus | None = None,
    run_id: str | None = None,
    max_retries: int = 2,
    decode_retries: int = 1,
    limits: StreamLimits | None = None,
) -> LLMClient:
    """LLMClient over a test transport that never really sleeps."""
    client = LLMClient(
        transport=transport,
        limits=limits
        or StreamLimits(
            max_response_chars=2000,
            chunk_timeout_seconds=1.0,
            deadline_seconds=5.0,
            runaway_whitespace_threshold=100,
        ),
        retry_policy=RetryPolicy(max_retries=max_retries, base_delay_seconds=0.01),
        decode_retries=decode_retries,
        event_bus=event_bus,
        run_id=run_id,
        progress_interval=1000,
    )
    client.sleeps = []  # type: ignore[attr-defined]

    async def _no_sleep(seconds: float) -> None:
        client.sleeps.append(seconds)  # type: ignore[attr-defined]

    client._async_sleep = _no_sleep  # type: ignore[method-assign]
    return client


MODEL_CONFIG = ModelConfig(model="mock-model")
PROBLEM = Problem(text="Write a function that adds two numbers.", source="inline")


def critic_answer(correct: bool, corrections: list[str] | None = None) -> str:
    return json.dumps({"correct": correct, "corrections": corrections})


def code_answer(code: str) -> str:
    return json.dumps({"code": code})


# ---------------------------------------------------------------------------
# Fake collaborators for the loop graph
# ---------------------------------------------------------------------------


def accepted_verdict() -> AggregatedVerdict:
    report = CriticReport(critic="Design Critic 1", verdict=Verdict.ACCEPTED)
    return AggregatedVerdict(all_accepted=True, reports=(report,))


def rejected_verdict(*corrections: str) -> AggregatedVerdict:
    report = CriticReport(
        critic="Design Critic 1",
        verdict=Verdict.REJECTED,
        corrections=corrections,
    )
    return AggregatedVerdict(
        all_accepted=False,
        merged_corrections=corrections,
        reports=(report,),
    )


class FakeCoder:
    def __init__(self, result: Artifact | BaseException | None = None) -> None:
        self.result = result if result is not None else Artifact(code="fn main() {}")
        self.calls = 0

    async def draft(self, problem: Problem) -> Artifact:
        self.calls += 1
        if isinstance(self.result, BaseException):
            raise self.result
        return self.result


class FakePanel:
    """Returns scripted verdicts; the last entry repeats once the script runs out.

    An ``AllCriticsFailedError`` entry is raised instead of returned.
    """

    size = 3

    def __init__(self, verdicts: list[AggregatedVerdict | BaseException]) -> None:
        self.verdicts = list(verdicts)
        self.reviewed: list[Artifact] = []

    async def review(
        self,
        problem: Problem,
        artifact: Artifact,
        run_id: str | None = None,
    ) -> AggregatedVerdict:
        self.reviewed.append(artifact)
        verdict = self.verdicts.pop(0) if len(self.verdicts) > 1 else self.verdicts[0]
        if isinstance(verdict, BaseException):
            raise verdict
        return verdict


class BlockingPanel:
    """A panel whose review never finishes until cancelled."""

    size = 3

    def __init__(self) -> None:
        self.started = asyncio.Event()
        self.cancelled = False

    async def review(
        self,
        problem: Problem,
        artifact: Artifact,
        run_id: str | None = None,
    ) -> AggregatedVerdict:
        self.started.set()
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        raise AssertionError("unreachable")


class FakeFixer:
    """Revises the artifact, or raises the configured error."""

    def __init__(self, error: BaseException | None = None) -> None:
        self.error = error
        self.feedback: list[RepairFeedback] = []

    async def repair(
        self,
        problem: Problem,
        artifact: Artifact,
        feedback: RepairFeedback,
    ) -> Artifact:
        self.feedback.append(feedback)
        if self.error is not None:
            raise self.error
        return artifact.revise(f"{artifact.code}\n// revision {artifact.revision + 1}")


class BlockingFixer:
    """A fixer whose repair never finishes until cancelled."""

    def __init__(self) -> None:
        self.started = asyncio.Event()
        self.cancelled = False

    async def repair(
        self,
        problem: Problem,
        artifact: Artifact,
        feedback: RepairFeedback,
    ) -> Artifact:
        self.started.set()
        try:
            await asyncio.Event().wait()
        except asyncio.CancelledError:
            self.cancelled = True
            raise
        raise AssertionError("unreachable")


class FakeTester:
    """Returns scripted results; the last entry repeats once the script runs out."""

    def __init__(self, results: list[TestResult | BaseException] | None = None) -> None:
        self.results = list(results or [TestResult(passed=True)])
        self.tested: list[Artifact] = []

    async def run(self, artifact: Artifact) -> TestResult:
        self.tested.append(artifact)
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, BaseException):
            raise result
        return result


def all_failed() -> AllCriticsFailedError:
    return AllCriticsFailedError(3, [TransportError("down")] * 3)


def event_types(events: list[AgentEvent]) -> list[Any]:
    return [e.type for e in events]
