"""Tests for agents/utils.py -- LLM client retries, decode repair and helpers."""

import pytest

from agents.decoder import decode_field
from agents.errors import DecodeError, RunawayOutputError, TransportError
from agents.streaming import StreamChunk
from agents.utils import LLMClient, RetryPolicy, extract_assert_tags
from events.bus import EventBus
from events.types import EventType
from tests.conftest import (
    MODEL_CONFIG,
    ScriptedTransport,
    collect_events,
    make_llm_client,
    text_stream,
)

MESSAGES = [
    {"role": "system", "content": "Return JSON."},
    {"role": "user", "content": "Add two numbers."},
]

RUNAWAY = [StreamChunk(" " * 60) for _ in range(5)]


def _decode_code(text: str) -> str:
    return decode_field(text, "code", "string")  # type: ignore[return-value]


# =========================================================================
# RetryPolicy
# =========================================================================


class TestRetryPolicy:
    """Exponential backoff with a cap."""

    def test_delays_double_until_cap(self) -> None:
        policy = RetryPolicy(max_retries=5, base_delay_seconds=1.0, backoff_cap_seconds=4.0)
        assert [policy.delay_for(a) for a in range(5)] == [1.0, 2.0, 4.0, 4.0, 4.0]


# =========================================================================
# LLMClient.call
# =========================================================================


class TestLLMClientCall:
    """Streaming calls with bounded retries."""

    async def test_success_first_try(self) -> None:
        transport = ScriptedTransport([text_stream('{"code": "x"}')])
        client = make_llm_client(transport)

        response = await client.call(MESSAGES, MODEL_CONFIG, agent_id="coder")

        assert response.content == '{"code": "x"}'
        assert response.metrics.model == "mock-model"
        assert response.metrics.chars == len('{"code": "x"}')
        assert len(transport.requests) == 1
        assert transport.requests[0].json_mode is True

    async def test_runaway_is_retried_with_same_request(self) -> None:
        transport = ScriptedTransport([RUNAWAY, text_stream('{"code": "x"}')])
        client = make_llm_client(transport)

        response = await client.call(MESSAGES, MODEL_CONFIG)

        assert response.content == '{"code": "x"}'
        assert len(transport.requests) == 2
        assert transport.requests[0] == transport.requests[1]
        assert client.sleeps == [0.01]  # type: ignore[attr-defined]

    async def test_retries_exhausted_raises_last_error(self) -> None:
        transport = ScriptedTransport([RUNAWAY, RUNAWAY, RUNAWAY])
        client = make_llm_client(transport, max_retries=2)

        with pytest.raises(RunawayOutputError):
            await client.call(MESSAGES, MODEL_CONFIG)

        assert len(transport.requests) == 3
        assert client.sleeps == [0.01, 0.02]  # type: ignore[attr-defined]

    async def test_non_retryable_error_is_not_retried(self) -> None:
        transport = ScriptedTransport([TransportError("bad key", retryable=False)])
        client = make_llm_client(transport)

        with pytest.raises(TransportError):
            await client.call(MESSAGES, MODEL_CONFIG)

        assert len(transport.requests) == 1
        assert client.sleeps == []  # type: ignore[attr-defined]

    async def test_backoff_uses_async_sleep(self) -> None:
        """Teacher-style mocking: replace _async_sleep on a plain client."""
        transport = ScriptedTransport([TransportError("503"), text_stream("{}")])
        client = LLMClient(
            transport=transport,
            retry_policy=RetryPolicy(max_retries=1, base_delay_seconds=3.0),
        )
        slept: list[float] = []

        async def fake_sleep(seconds: float) -> None:
            slept.append(seconds)

        client._async_sleep = fake_sleep  # type: ignore[method-assign]
        await client.call(MESSAGES, MODEL_CONFIG)
        assert slept == [3.0]


class TestLLMClientEvents:
    """Observer events emitted by the client."""

    async def test_complete_and_retry_events(self, event_bus: EventBus) -> None:
        transport = ScriptedTransport([TransportError("503"), text_stream("{}")])
        client = make_llm_client(transport, event_bus=event_bus, run_id="run_llm")

        await client.call(MESSAGES, MODEL_CONFIG, agent_id="coder", agent_role="coder")

        events = await collect_events(event_bus, "run_llm")
        types = [e.type for e in events]
        assert types == [EventType.LLM_CALL_RETRY, EventType.LLM_CALL_COMPLETE]
        assert events[0].data["error_type"] == "TransportError"
        assert events[1].agent_id == "coder"

    async def test_agent_error_event_on_final_failure(self, event_bus: EventBus) -> None:
        transport = ScriptedTransport([TransportError("denied", retryable=False)])
        client = make_llm_client(transport, event_bus=event_bus, run_id="run_llm")

        with pytest.raises(TransportError):
            await client.call(MESSAGES, MODEL_CONFIG)

        events = await collect_events(event_bus, "run_llm")
        assert [e.type for e in events] == [EventType.AGENT_ERROR]

    async def test_no_events_without_run_id(self, event_bus: EventBus) -> None:
        transport = ScriptedTransport([text_stream("{}")])
        client = make_llm_client(transport, event_bus=event_bus)
        await client.call(MESSAGES, MODEL_CONFIG)
        assert event_bus.get_event_history("run_llm") == []


# =========================================================================
# LLMClient.call_and_decode
# =========================================================================


class TestCallAndDecode:
    """Malformed answers are re-asked with a repair instruction."""

    async def test_decodes_first_answer(self) -> None:
        transport = ScriptedTransport([text_stream('{"code": "fn main() {}"}')])
        client = make_llm_client(transport)

        code = await client.call_and_decode(MESSAGES, MODEL_CONFIG, decode=_decode_code)

        assert code == "fn main() {}"

    async def test_repair_reasks_with_bad_answer(self) -> None:
        transport = ScriptedTransport(
            [text_stream("Sorry, here is the code: fn main() {}"), text_stream('{"code": "ok"}')]
        )
        client = make_llm_client(transport, decode_retries=1)

        code = await client.call_and_decode(MESSAGES, MODEL_CONFIG, decode=_decode_code)

        assert code == "ok"
        second = transport.requests[1].messages
        assert len(second) == len(MESSAGES) + 2
        assert second[-2] == {
            "role": "assistant",
            "content": "Sorry, here is the code: fn main() {}",
        }
        assert second[-1]["role"] == "user"
        assert "could not be used" in second[-1]["content"]

    async def test_decode_error_after_all_repairs(self) -> None:
        transport = ScriptedTransport([text_stream("nope"), text_stream("still nope")])
        client = make_llm_client(transport, decode_retries=1)

        with pytest.raises(DecodeError):
            await client.call_and_decode(MESSAGES, MODEL_CONFIG, decode=_decode_code)

        assert len(transport.requests) == 2

    async def test_original_messages_are_not_mutated(self) -> None:
        transport = ScriptedTransport([text_stream("nope"), text_stream('{"code": "x"}')])
        client = make_llm_client(transport, decode_retries=1)
        messages = list(MESSAGES)

        await client.call_and_decode(messages, MODEL_CONFIG, decode=_decode_code)

        assert messages == MESSAGES


# =========================================================================
# extract_assert_tags
# =========================================================================


class TestExtractAssertTags:
    """Assertion tags pulled from test output."""

    def test_tags_in_order_without_duplicates(self) -> None:
        output = (
            "---- tests::t1 stdout ----\n"
            "thread 'tests::t1' panicked at 'AT-b2c3: wrong sum'\n"
            "---- tests::t2 stdout ----\n"
            "thread 'tests::t2' panicked at 'AT-a1b2: overflow'\n"
            "AT-b2c3 again\n"
        )
        assert extract_assert_tags(output) == ("AT-b2c3", "AT-a1b2")

    def test_no_tags(self) -> None:
        assert extract_assert_tags("error[E0425]: cannot find value `x`") == ()

    def test_custom_pattern(self) -> None:
        assert extract_assert_tags("TAG_1 and TAG_2", r"TAG_\d") == ("TAG_1", "TAG_2")
