"""Fixer agent: revises an artifact from review or test feedback."""

import structlog

from agents.coder import decode_code
from agents.prompts import get_fixer_prompt, join_sections
from agents.utils import LLMClient
from models.schemas import (
    Artifact,
    CorrectionFeedback,
    ModelConfig,
    Problem,
    RepairFeedback,
    TestFeedback,
)

logger = structlog.get_logger()

NO_CORRECTIONS_NOTE = (
    "No specific corrections were reported. Review the program against the "
    "goal and fix any problem you find."
)


def format_feedback(feedback: RepairFeedback) -> str:
    """Render feedback as the last section of the Fixer's user message.

    Correction lists are separated by ``------`` lines, one correction per
    section. Test feedback leads with the failing assertion tags, followed
    by the raw diagnostic.
    """
    if isinstance(feedback, TestFeedback):
        lines = ["The tests failed."]
        if feedback.assert_tags:
            lines.append(f"Failing assertion tags: {', '.join(feedback.assert_tags)}")
        lines.append("")
        lines.append(feedback.diagnostic.strip() or "(no output)")
        return "\n".join(lines)

    if isinstance(feedback, CorrectionFeedback) and feedback.corrections:
        return join_sections(*feedback.corrections)

    return NO_CORRECTIONS_NOTE


class FixerAgent:
    """Produces the next revision of an artifact."""

    def __init__(
        self,
        llm_client: LLMClient,
        model_config: ModelConfig,
        agent_id: str = "fixer",
    ) -> None:
        self.llm_client = llm_client
        self.model_config = model_config
        self.agent_id = agent_id

    async def repair(
        self,
        problem: Problem,
        artifact: Artifact,
        feedback: RepairFeedback,
    ) -> Artifact:
        """Return ``artifact.revise(...)`` with the Fixer's corrected code.

        Raises:
            ModelCallError: The model call failed after retries
            DecodeError: The answer never contained usable code
        """
        messages = [
            {"role": "system", "content": get_fixer_prompt()},
            {
                "role": "user",
                "content": join_sections(problem.text, artifact.code, format_feedback(feedback)),
            },
        ]
        code = await self.llm_client.call_and_decode(
            messages,
            self.model_config,
            decode=decode_code,
            agent_id=self.agent_id,
            agent_role="fixer",
        )
        revised = artifact.revise(code)
        logger.info(
            "repair_complete",
            agent_id=self.agent_id,
            revision=revised.revision,
            feedback_kind=type(feedback).__name__,
        )
        return revised
