"""Critic agents and the review panel that aggregates their verdicts.

A panel issues N review calls concurrently and reduces them to a single
AggregatedVerdict:

- A critic whose call fails (transport or decode error, after its own
  retries) is a non-vote. If every critic fails, the panel raises
  AllCriticsFailedError.
- The artifact is accepted only if every critic that reported accepted it.
- Corrections from rejecting critics are concatenated in panel order, each
  critic's list kept in its own order. Nothing is deduplicated.

Events emitted:
- CRITIC_VERDICT: One per panel member, including non-votes
- REVIEW_COMPLETE: Once per review round with the consensus
"""

import asyncio
from dataclasses import dataclass

import structlog

from agents.decoder import decode_payload_field, select_payload
from agents.errors import AllCriticsFailedError, DecodeError, ModelCallError
from agents.prompts import get_critic_prompt, join_sections
from agents.utils import LLMClient
from events.bus import EventBus
from events.types import AgentEvent, EventType
from models.schemas import (
    AggregatedVerdict,
    Artifact,
    CriticReport,
    CriticStyle,
    ModelConfig,
    PanelMode,
    Problem,
    Verdict,
)

logger = structlog.get_logger()

# Round-robin order for specialized panels
SPECIALIZED_STYLES: tuple[CriticStyle, ...] = (
    CriticStyle.DESIGN,
    CriticStyle.CORRECTNESS,
    CriticStyle.SYNTAX,
)


@dataclass(frozen=True)
class ReviewDecision:
    """The decoded body of one critic answer."""

    correct: bool
    corrections: tuple[str, ...]


def decode_review(raw_text: str) -> ReviewDecision:
    """Decode a critic answer of the form ``{"correct": ..., "corrections": [...]}``.

    ``correct`` is required. ``corrections`` may be absent, null or "None".

    Raises:
        DecodeError: If the answer has no usable ``correct`` field, or
            ``corrections`` has an unusable shape.
    """
    payload = select_payload(raw_text, "correct")
    correct = decode_payload_field(payload, "correct", "boolean")
    corrections = decode_payload_field(payload, "corrections", "string_list", optional=True)
    return ReviewDecision(correct=bool(correct), corrections=tuple(corrections or ()))


def assign_styles(size: int, mode: PanelMode) -> list[CriticStyle]:
    """Styles for a panel of ``size`` members, in panel order."""
    if size < 1:
        raise ValueError("panel size must be at least 1")
    if mode == PanelMode.GENERAL:
        return [CriticStyle.GENERAL] * size
    return [SPECIALIZED_STYLES[i % len(SPECIALIZED_STYLES)] for i in range(size)]


def aggregate_reports(
    reports: list[CriticReport],
    non_votes: int = 0,
) -> AggregatedVerdict:
    """Reduce successful reports (in panel order) to one verdict.

    Raises:
        ValueError: If ``reports`` is empty; a panel with no successful
            report is AllCriticsFailed, not a verdict.
    """
    if not reports:
        raise ValueError("cannot aggregate an empty set of reports")

    merged: list[str] = []
    for report in reports:
        if report.verdict == Verdict.REJECTED:
            merged.extend(report.corrections)

    return AggregatedVerdict(
        all_accepted=all(r.verdict == Verdict.ACCEPTED for r in reports),
        merged_corrections=tuple(merged),
        reports=tuple(reports),
        non_votes=non_votes,
    )


class CriticAgent:
    """Reviews an artifact from a single perspective."""

    def __init__(
        self,
        name: str,
        style: CriticStyle,
        llm_client: LLMClient,
        model_config: ModelConfig,
    ) -> None:
        self.name = name
        self.style = style
        self.llm_client = llm_client
        self.model_config = model_config

    async def review(self, problem: Problem, artifact: Artifact) -> CriticReport:
        """Review one artifact.

        Raises:
            ModelCallError: The model call failed after retries
            DecodeError: The answer never decoded into a verdict
        """
        messages = [
            {"role": "system", "content": get_critic_prompt(self.style)},
            {"role": "user", "content": join_sections(problem.text, artifact.code)},
        ]
        decision = await self.llm_client.call_and_decode(
            messages,
            self.model_config,
            decode=decode_review,
            agent_id=self.name,
            agent_role="critic",
        )
        return CriticReport(
            critic=self.name,
            verdict=Verdict.ACCEPTED if decision.correct else Verdict.REJECTED,
            corrections=decision.corrections,
        )


class CriticPanel:
    """N critics reviewing concurrently, joined into one AggregatedVerdict.

    Usage:
        >>> panel = CriticPanel.build(3, PanelMode.SPECIALIZED, llm_client, model_config)
        >>> verdict = await panel.review(problem, artifact, run_id="run_1")
    """

    def __init__(self, critics: list[CriticAgent], event_bus: EventBus | None = None) -> None:
        if not critics:
            raise ValueError("a critic panel needs at least one critic")
        self.critics = critics
        self.event_bus = event_bus

    @classmethod
    def build(
        cls,
        size: int,
        mode: PanelMode,
        llm_client: LLMClient,
        model_config: ModelConfig,
        event_bus: EventBus | None = None,
    ) -> "CriticPanel":
        """Create a panel with names like "Syntax Critic 3"."""
        critics = [
            CriticAgent(
                name=f"{style.value.capitalize()} Critic {i + 1}",
                style=style,
                llm_client=llm_client,
                model_config=model_config,
            )
            for i, style in enumerate(assign_styles(size, mode))
        ]
        return cls(critics, event_bus=event_bus)

    @property
    def size(self) -> int:
        return len(self.critics)

    async def review(
        self,
        problem: Problem,
        artifact: Artifact,
        run_id: str | None = None,
    ) -> AggregatedVerdict:
        """Run every critic concurrently and aggregate the results.

        Cancelling this coroutine cancels every in-flight critic call;
        nothing received so far is aggregated.

        Raises:
            AllCriticsFailedError: If no critic returned a report
        """
        outcomes = await asyncio.gather(
            *(self._review_one(critic, problem, artifact, run_id) for critic in self.critics)
        )

        reports = [o for o in outcomes if isinstance(o, CriticReport)]
        errors = [o for o in outcomes if not isinstance(o, CriticReport)]

        if not reports:
            logger.error(
                "all_critics_failed",
                run_id=run_id,
                panel_size=self.size,
                revision=artifact.revision,
            )
            raise AllCriticsFailedError(self.size, errors)

        verdict = aggregate_reports(reports, non_votes=len(errors))
        logger.info(
            "review_complete",
            run_id=run_id,
            revision=artifact.revision,
            all_accepted=verdict.all_accepted,
            corrections=len(verdict.merged_corrections),
            non_votes=verdict.non_votes,
        )
        await self._publish(
            run_id,
            EventType.REVIEW_COMPLETE,
            None,
            {
                "all_accepted": verdict.all_accepted,
                "corrections": len(verdict.merged_corrections),
                "non_votes": verdict.non_votes,
            },
        )
        return verdict

    async def _review_one(
        self,
        critic: CriticAgent,
        problem: Problem,
        artifact: Artifact,
        run_id: str | None,
    ) -> CriticReport | Exception:
        try:
            report = await critic.review(problem, artifact)
        except (ModelCallError, DecodeError) as e:
            logger.warning(
                "critic_non_vote",
                run_id=run_id,
                critic=critic.name,
                error_type=type(e).__name__,
                error=str(e),
            )
            await self._publish(
                run_id,
                EventType.CRITIC_VERDICT,
                critic.name,
                {"verdict": "non_vote", "corrections": 0},
            )
            return e

        logger.debug(
            "critic_verdict",
            run_id=run_id,
            critic=critic.name,
            verdict=report.verdict.value,
            corrections=len(report.corrections),
        )
        await self._publish(
            run_id,
            EventType.CRITIC_VERDICT,
            critic.name,
            {"verdict": report.verdict.value, "corrections": len(report.corrections)},
        )
        return report

    async def _publish(
        self,
        run_id: str | None,
        event_type: EventType,
        agent_id: str | None,
        data: dict,
    ) -> None:
        if self.event_bus and run_id:
            await self.event_bus.publish(
                AgentEvent(
                    type=event_type,
                    run_id=run_id,
                    agent_id=agent_id,
                    agent_role="critic",
                    data=data,
                )
            )
