"""Agents, model plumbing and the critic loop graph.

This module exports the key components needed to run the loop:
- Tolerant decoding of model answers
- Streaming monitor and transports for model calls
- LLM client utilities with retry logic and decode repair
- Coder, critic panel and fixer agents
- The critic loop graph
"""

from agents.coder import CoderAgent
from agents.critics import CriticAgent, CriticPanel, aggregate_reports, assign_styles
from agents.decoder import decode_field, extract_json_value, select_payload
from agents.errors import (
    AllCriticsFailedError,
    CriticLoopError,
    DecodeError,
    ModelCallError,
    ResponseTimeoutError,
    RunawayOutputError,
    TransportError,
    TruncatedResponseError,
)
from agents.fixer import FixerAgent
from agents.loop_graph import (
    CriticLoopGraph,
    LoopState,
    create_critic_loop_graph,
    create_initial_state,
)
from agents.streaming import (
    LiteLLMTransport,
    ModelRequest,
    ModelTransport,
    StreamChunk,
    StreamLimits,
    StreamMonitor,
)
from agents.utils import LLMClient, LLMResponse, RetryPolicy, extract_assert_tags

__all__ = [
    # Decoding
    "decode_field",
    "extract_json_value",
    "select_payload",
    # Errors
    "CriticLoopError",
    "DecodeError",
    "ModelCallError",
    "RunawayOutputError",
    "ResponseTimeoutError",
    "TransportError",
    "TruncatedResponseError",
    "AllCriticsFailedError",
    # Streaming
    "LiteLLMTransport",
    "ModelRequest",
    "ModelTransport",
    "StreamChunk",
    "StreamLimits",
    "StreamMonitor",
    # Utils
    "LLMClient",
    "LLMResponse",
    "RetryPolicy",
    "extract_assert_tags",
    # Agents
    "CoderAgent",
    "CriticAgent",
    "CriticPanel",
    "FixerAgent",
    "aggregate_reports",
    "assign_styles",
    # Loop Graph
    "CriticLoopGraph",
    "LoopState",
    "create_critic_loop_graph",
    "create_initial_state",
]
