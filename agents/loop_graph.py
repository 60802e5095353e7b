"""Critic loop LangGraph implementation.

This module drives one run of the generate-review-repair loop as a cyclic
LangGraph:

    START -> draft -> [review | END]
    review -> [test | repair | exhausted]
    test   -> [END | repair | exhausted]
    repair -> review
    exhausted -> END

1. DRAFT: The Coder writes revision 0. A failure here ends the run as
   FatalTransportError; there is nothing to repair yet.
2. REVIEW: The critic panel votes. Consensus goes on to testing, anything
   else goes to repair with the merged corrections. If every critic failed
   the loop repairs with empty feedback.
3. TEST: The tester compiles and runs the artifact's own tests. A pass ends
   the run as Converged; a failure goes to repair with the diagnostic and
   the assertion tags found in it.
4. REPAIR: Records the iteration, then asks the Fixer for the next revision.
   A Fixer failure keeps the current artifact.

The iteration budget is checked on the way into repair: once the counter
has reached ``max_iterations`` the run ends as ExhaustedBudget. An
IterationRecord is written only on entering repair, so ``len(records)``
always equals the iteration counter, and a run cancelled mid-review
leaves no record for the cancelled attempt.

Events emitted:
- RUN_STARTED / RUN_COMPLETE / RUN_CANCELLED
- GRAPH_NODE_ACTIVE / GRAPH_NODE_COMPLETE: Entering and leaving a node
- TEST_RESULT: After each test run
- ITERATION_RECORDED: When an iteration is appended to the log
"""

import asyncio
import uuid
from typing import Any, Literal, TypedDict

import structlog
from langgraph.graph import END, START, StateGraph

from agents.coder import CoderAgent
from agents.critics import CriticPanel
from agents.errors import AllCriticsFailedError, DecodeError, ModelCallError
from agents.fixer import FixerAgent
from agents.streaming import LiteLLMTransport, ModelTransport, StreamLimits
from agents.utils import LLMClient, RetryPolicy, extract_assert_tags
from config import Settings, settings
from events.bus import EventBus
from events.types import AgentEvent, EventType
from models.schemas import (
    AggregatedVerdict,
    Artifact,
    CorrectionFeedback,
    IterationRecord,
    LoopOutcome,
    ModelConfig,
    OutcomeKind,
    PanelMode,
    Problem,
    RepairFeedback,
    TestFeedback,
    TestResult,
)
from sandbox.tester import RustTester, Tester

logger = structlog.get_logger()

LoopStatus = Literal[
    "drafting",
    "reviewing",
    "testing",
    "repairing",
    "converged",
    "exhausted_budget",
    "fatal",
]


class LoopState(TypedDict):
    """State for the critic loop graph.

    Attributes:
        problem: The task statement
        artifact: The single live artifact (None until drafted)
        iteration: Completed trips through repair
        max_iterations: Iteration budget
        records: Append-only iteration log
        feedback: Feedback for the next repair
        verdict: Latest panel verdict, if the last review produced one
        test_result: Latest test result, if the last stage was testing
        note: Free-form note carried into the next iteration record
        status: Current loop status
        error: Why the run failed fatally
        run_id: Run identifier for events
    """

    problem: Problem
    artifact: Artifact | None
    iteration: int
    max_iterations: int
    records: list[IterationRecord]
    feedback: RepairFeedback | None
    verdict: AggregatedVerdict | None
    test_result: TestResult | None
    note: str
    status: LoopStatus
    error: str | None
    run_id: str


def create_initial_state(problem: Problem, run_id: str, max_iterations: int) -> LoopState:
    """Create the initial state for a critic loop run."""
    return LoopState(
        problem=problem,
        artifact=None,
        iteration=0,
        max_iterations=max_iterations,
        records=[],
        feedback=None,
        verdict=None,
        test_result=None,
        note="",
        status="drafting",
        error=None,
        run_id=run_id,
    )


def _require_artifact(state: LoopState, node: str) -> Artifact:
    artifact = state["artifact"]
    if artifact is None:
        raise ValueError(f"{node} node reached without an artifact")
    return artifact


class CriticLoopGraph:
    """The generate-review-repair loop as a LangGraph state machine.

    Usage:
        >>> graph = CriticLoopGraph(coder, panel, fixer, tester, event_bus, run_id="run_1")
        >>> outcome = await graph.run(problem)
        >>> outcome.kind
        <OutcomeKind.CONVERGED: 'converged'>
    """

    AGENT_ROLE = "Critic Loop"

    def __init__(
        self,
        coder: CoderAgent,
        panel: CriticPanel,
        fixer: FixerAgent,
        tester: Tester,
        event_bus: EventBus,
        run_id: str,
        max_iterations: int = 10,
        assert_tag_pattern: str = settings.assert_tag_pattern,
    ) -> None:
        """Initialize the loop graph.

        Args:
            coder: Drafts the first artifact
            panel: Reviews every revision
            fixer: Produces revisions from feedback
            tester: Builds and runs the artifact's tests
            event_bus: Event bus for emitting events
            run_id: Identifier for this run's events
            max_iterations: Iteration budget
            assert_tag_pattern: Regex for assertion tags in test output
        """
        if max_iterations < 0:
            raise ValueError("max_iterations must be non-negative")
        self.coder = coder
        self.panel = panel
        self.fixer = fixer
        self.tester = tester
        self.event_bus = event_bus
        self.run_id = run_id
        self.max_iterations = max_iterations
        self.assert_tag_pattern = assert_tag_pattern
        self._compiled_graph = self._build_graph()

    def _build_graph(self) -> Any:
        """Build and compile the LangGraph StateGraph."""
        graph = StateGraph(LoopState)

        graph.add_node("draft", self._draft)
        graph.add_node("review", self._review)
        graph.add_node("test", self._test)
        graph.add_node("repair", self._repair)
        graph.add_node("exhausted", self._exhausted)

        graph.add_edge(START, "draft")
        graph.add_conditional_edges(
            "draft",
            self._route_after_draft,
            {"review": "review", "end": END},
        )
        graph.add_conditional_edges(
            "review",
            self._route_after_review,
            {"test": "test", "repair": "repair", "exhausted": "exhausted"},
        )
        graph.add_conditional_edges(
            "test",
            self._route_after_test,
            {"end": END, "repair": "repair", "exhausted": "exhausted"},
        )
        graph.add_edge("repair", "review")
        graph.add_edge("exhausted", END)

        return graph.compile()

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    async def _publish(self, event_type: EventType, data: dict[str, Any]) -> None:
        await self.event_bus.publish(
            AgentEvent(
                type=event_type,
                run_id=self.run_id,
                agent_id="critic_loop",
                agent_role=self.AGENT_ROLE,
                data=data,
            )
        )

    async def _emit_node_active(self, node_name: str) -> None:
        """Emit GRAPH_NODE_ACTIVE event."""
        await self._publish(EventType.GRAPH_NODE_ACTIVE, {"node_id": node_name})

    async def _emit_node_complete(self, node_name: str) -> None:
        """Emit GRAPH_NODE_COMPLETE event."""
        await self._publish(EventType.GRAPH_NODE_COMPLETE, {"node_id": node_name})

    # ------------------------------------------------------------------
    # Nodes
    # ------------------------------------------------------------------

    async def _draft(self, state: LoopState) -> dict[str, Any]:
        await self._emit_node_active("draft")
        try:
            artifact = await self.coder.draft(state["problem"])
        except (ModelCallError, DecodeError) as e:
            logger.error(
                "draft_failed",
                run_id=state["run_id"],
                error_type=type(e).__name__,
                error=str(e),
            )
            await self._emit_node_complete("draft")
            return {"status": "fatal", "error": f"{type(e).__name__}: {e}"}

        await self._emit_node_complete("draft")
        return {"artifact": artifact, "status": "reviewing"}

    async def _review(self, state: LoopState) -> dict[str, Any]:
        await self._emit_node_active("review")
        artifact = _require_artifact(state, "review")

        try:
            verdict = await self.panel.review(state["problem"], artifact, run_id=state["run_id"])
        except AllCriticsFailedError as e:
            logger.warning(
                "review_no_votes",
                run_id=state["run_id"],
                iteration=state["iteration"],
                panel_size=e.panel_size,
            )
            await self._emit_node_complete("review")
            return {
                "verdict": None,
                "test_result": None,
                "feedback": CorrectionFeedback(),
                "note": f"all {e.panel_size} critics failed",
                "status": "repairing",
            }

        await self._emit_node_complete("review")
        if verdict.all_accepted:
            return {"verdict": verdict, "test_result": None, "status": "testing"}
        return {
            "verdict": verdict,
            "test_result": None,
            "feedback": CorrectionFeedback(corrections=verdict.merged_corrections),
            "note": "",
            "status": "repairing",
        }

    async def _test(self, state: LoopState) -> dict[str, Any]:
        await self._emit_node_active("test")
        artifact = _require_artifact(state, "test")

        try:
            result = await self.tester.run(artifact)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            # A tester that could not finish counts as a failed test run
            logger.error(
                "tester_error",
                run_id=state["run_id"],
                error_type=type(e).__name__,
                error=str(e),
            )
            result = TestResult(passed=False, diagnostic=f"Tester error: {type(e).__name__}: {e}")

        await self._publish(
            EventType.TEST_RESULT,
            {"passed": result.passed, "timed_out": result.timed_out, "revision": artifact.revision},
        )
        await self._emit_node_complete("test")

        if result.passed:
            return {"test_result": result, "status": "converged"}
        return {
            "test_result": result,
            "feedback": TestFeedback(
                diagnostic=result.diagnostic,
                assert_tags=extract_assert_tags(result.diagnostic, self.assert_tag_pattern),
            ),
            "verdict": None,
            "note": "",
            "status": "repairing",
        }

    async def _repair(self, state: LoopState) -> dict[str, Any]:
        await self._emit_node_active("repair")
        artifact = _require_artifact(state, "repair")
        iteration = state["iteration"]
        feedback = state["feedback"] or CorrectionFeedback()

        record = IterationRecord(
            index=iteration,
            artifact=artifact,
            verdict=state["verdict"],
            test_result=state["test_result"],
            note=state["note"],
        )

        try:
            revised = await self.fixer.repair(state["problem"], artifact, feedback)
        except (ModelCallError, DecodeError) as e:
            logger.warning(
                "repair_failed_keeping_artifact",
                run_id=state["run_id"],
                iteration=iteration,
                error_type=type(e).__name__,
                error=str(e),
            )
            revised = artifact

        # Published only once the record is committed to the returned state
        await self._publish(
            EventType.ITERATION_RECORDED,
            {"index": record.index, "revision": artifact.revision},
        )

        logger.info(
            "iteration_complete",
            run_id=state["run_id"],
            iteration=iteration + 1,
            max_iterations=state["max_iterations"],
            revision=revised.revision,
        )
        await self._emit_node_complete("repair")
        return {
            "artifact": revised,
            "records": [*state["records"], record],
            "iteration": iteration + 1,
            "feedback": None,
            "verdict": None,
            "test_result": None,
            "note": "",
            "status": "reviewing",
        }

    async def _exhausted(self, state: LoopState) -> dict[str, Any]:
        logger.warning(
            "iteration_budget_exhausted",
            run_id=state["run_id"],
            iterations=state["iteration"],
            max_iterations=state["max_iterations"],
        )
        return {"status": "exhausted_budget"}

    # ------------------------------------------------------------------
    # Routing
    # ------------------------------------------------------------------

    def _route_after_draft(self, state: LoopState) -> Literal["review", "end"]:
        return "end" if state["status"] == "fatal" else "review"

    def _route_into_repair(self, state: LoopState) -> Literal["repair", "exhausted"]:
        if state["iteration"] >= state["max_iterations"]:
            return "exhausted"
        return "repair"

    def _route_after_review(self, state: LoopState) -> Literal["test", "repair", "exhausted"]:
        if state["status"] == "testing":
            return "test"
        return self._route_into_repair(state)

    def _route_after_test(self, state: LoopState) -> Literal["end", "repair", "exhausted"]:
        if state["status"] == "converged":
            return "end"
        return self._route_into_repair(state)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    def _recursion_limit(self) -> int:
        # draft + up to (review, test, repair) per iteration + final review/test/exhausted
        return 4 * (self.max_iterations + 1) + 5

    async def run(self, problem: Problem) -> LoopOutcome:
        """Run the loop to one of its three terminal outcomes.

        Raises:
            asyncio.CancelledError: If the run is cancelled; in-flight model
                calls are cancelled with it and no partial result is kept.
        """
        initial_state = create_initial_state(problem, self.run_id, self.max_iterations)
        await self._publish(
            EventType.RUN_STARTED,
            {
                "panel_size": self.panel.size,
                "max_iterations": self.max_iterations,
                "source": problem.source,
            },
        )
        logger.info(
            "run_started",
            run_id=self.run_id,
            panel_size=self.panel.size,
            max_iterations=self.max_iterations,
        )

        try:
            final_state = await self._compiled_graph.ainvoke(
                initial_state,
                config={"recursion_limit": self._recursion_limit()},
            )
        except asyncio.CancelledError:
            logger.warning("run_cancelled", run_id=self.run_id)
            await self._publish(EventType.RUN_CANCELLED, {})
            raise

        outcome = build_outcome(final_state)
        logger.info(
            "run_complete",
            run_id=self.run_id,
            outcome=outcome.kind.value,
            iterations=outcome.iterations,
        )
        await self._publish(
            EventType.RUN_COMPLETE,
            {"outcome": outcome.kind.value, "iterations": outcome.iterations},
        )
        return outcome


def build_outcome(state: LoopState) -> LoopOutcome:
    """Turn a terminal graph state into a LoopOutcome."""
    status = state["status"]
    if status == "converged":
        kind = OutcomeKind.CONVERGED
    elif status == "exhausted_budget":
        kind = OutcomeKind.EXHAUSTED_BUDGET
    elif status == "fatal":
        kind = OutcomeKind.FATAL_TRANSPORT_ERROR
    else:
        raise ValueError(f"loop stopped in non-terminal status {status!r}")

    return LoopOutcome(
        kind=kind,
        artifact=state["artifact"],
        iterations=state["iteration"],
        records=tuple(state["records"]),
        error=state.get("error"),
    )


def create_critic_loop_graph(
    event_bus: EventBus,
    run_id: str | None = None,
    config: Settings = settings,
    transport: ModelTransport | None = None,
    tester: Tester | None = None,
    num_critics: int | None = None,
    panel_mode: PanelMode | None = None,
    max_iterations: int | None = None,
) -> CriticLoopGraph:
    """Factory function to create a fully wired critic loop.

    Explicit arguments override the corresponding ``config`` values.

    Example:
        >>> from events.bus import get_event_bus
        >>>
        >>> graph = create_critic_loop_graph(get_event_bus(), num_critics=5)
        >>> outcome = await graph.run(load_problem("problems/fizzbuzz.txt"))
    """
    run_id = run_id or f"run_{uuid.uuid4().hex[:12]}"
    llm_client = LLMClient(
        transport=transport or LiteLLMTransport(config.llm_request_timeout_seconds),
        limits=StreamLimits.from_settings(config),
        retry_policy=RetryPolicy.from_settings(config),
        decode_retries=config.llm_retry_attempts,
        event_bus=event_bus,
        run_id=run_id,
        progress_interval=config.stream_progress_interval,
    )

    def model_config(model: str) -> ModelConfig:
        return ModelConfig(
            model=model,
            temperature=config.llm_temperature,
            max_tokens=config.llm_max_tokens,
        )

    return CriticLoopGraph(
        coder=CoderAgent(llm_client, model_config(config.coder_model)),
        panel=CriticPanel.build(
            num_critics if num_critics is not None else config.num_critics,
            panel_mode or PanelMode(config.critic_style),
            llm_client,
            model_config(config.critic_model),
            event_bus=event_bus,
        ),
        fixer=FixerAgent(llm_client, model_config(config.fixer_model)),
        tester=tester or RustTester(config.rustc_path, config.tester_timeout_seconds),
        event_bus=event_bus,
        run_id=run_id,
        max_iterations=max_iterations if max_iterations is not None else config.max_iterations,
        assert_tag_pattern=config.assert_tag_pattern,
    )
