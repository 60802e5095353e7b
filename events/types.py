"""Event type definitions for the critic loop's observer channel.

Every meaningful state change of a run produces an event. Events are
advisory: nothing in the loop reads them back, so a missing or dropped
event never changes the outcome of a run.
"""

import time
from enum import StrEnum
from typing import Any

from pydantic import BaseModel, Field


class EventType(StrEnum):
    """All event types in the critic loop.

    Events are categorized by:
    - Run lifecycle: Start, completion, cancellation and closing
    - Graph structure: Node state changes of the orchestration loop
    - Model calls: Completion, retries, errors and streaming progress
    - Review and test: Critic verdicts, panel consensus and test results
    """

    # Run lifecycle
    RUN_STARTED = "run_started"
    RUN_COMPLETE = "run_complete"
    RUN_CANCELLED = "run_cancelled"
    RUN_CLOSED = "run_closed"

    # Graph structure
    GRAPH_NODE_ACTIVE = "graph_node_active"
    GRAPH_NODE_COMPLETE = "graph_node_complete"

    # Model calls
    LLM_CALL_COMPLETE = "llm_call_complete"
    LLM_CALL_RETRY = "llm_call_retry"
    AGENT_ERROR = "agent_error"
    STREAM_PROGRESS = "stream_progress"

    # Review and test
    CRITIC_VERDICT = "critic_verdict"
    REVIEW_COMPLETE = "review_complete"
    TEST_RESULT = "test_result"
    ITERATION_RECORDED = "iteration_recorded"


class AgentEvent(BaseModel):
    """An event emitted during a run.

    Payload schemas by event type:

    GRAPH_NODE_ACTIVE / GRAPH_NODE_COMPLETE:
        - node_id: str - Which loop state was entered or left

    LLM_CALL_COMPLETE:
        - model: str - Model used
        - chars: int - Length of the streamed response
        - chunks: int - Number of chunks received
        - latency_ms: int - Latency in milliseconds

    LLM_CALL_RETRY / AGENT_ERROR:
        - error_type: str - Exception class name
        - error: str - Exception message
        - attempt: int - Attempt that failed (1-based)

    STREAM_PROGRESS:
        - chunks: int - Chunks received so far
        - chars: int - Characters received so far

    CRITIC_VERDICT:
        - verdict: str - "accepted", "rejected" or "non_vote"
        - corrections: int - Number of corrections reported

    REVIEW_COMPLETE:
        - all_accepted: bool
        - corrections: int - Merged correction count
        - non_votes: int

    TEST_RESULT:
        - passed: bool
        - timed_out: bool

    ITERATION_RECORDED:
        - index: int - Iteration counter before the repair
        - revision: int - Revision of the artifact that triggered the repair
    """

    type: EventType
    timestamp: float = Field(default_factory=time.time)
    run_id: str
    agent_id: str | None = None
    agent_role: str | None = None
    data: dict[str, Any] = Field(default_factory=dict)


class LLMMetrics(BaseModel):
    """Size and latency metrics for a single streamed model call.

    Attributes:
        model: The model identifier
        chars: Characters in the completed response
        chunks: Chunks received from the transport
        latency_ms: Time taken for the call in milliseconds
    """

    model: str
    chars: int
    chunks: int
    latency_ms: int
