"""Coder agent: drafts the first artifact for a problem."""

import structlog

from agents.decoder import decode_field
from agents.errors import DecodeError
from agents.prompts import get_coder_prompt
from agents.utils import LLMClient
from models.schemas import Artifact, ModelConfig, Problem

logger = structlog.get_logger()


def decode_code(raw_text: str) -> str:
    """Decode the ``code`` field of a Coder or Fixer answer.

    Raises:
        DecodeError: If the field is missing, malformed, or blank.
    """
    code = decode_field(raw_text, "code", "string")
    if not isinstance(code, str) or not code.strip():
        raise DecodeError("field 'code' is empty", field="code")
    return code


class CoderAgent:
    """Turns a problem statement into a complete program with tests."""

    def __init__(
        self,
        llm_client: LLMClient,
        model_config: ModelConfig,
        agent_id: str = "coder",
    ) -> None:
        self.llm_client = llm_client
        self.model_config = model_config
        self.agent_id = agent_id

    async def draft(self, problem: Problem) -> Artifact:
        """Draft revision 0 of the artifact.

        Raises:
            ModelCallError: The model call failed after retries
            DecodeError: The answer never contained usable code
        """
        messages = [
            {"role": "system", "content": get_coder_prompt()},
            {"role": "user", "content": problem.text},
        ]
        code = await self.llm_client.call_and_decode(
            messages,
            self.model_config,
            decode=decode_code,
            agent_id=self.agent_id,
            agent_role="coder",
        )
        logger.info("draft_complete", agent_id=self.agent_id, chars=len(code))
        return Artifact(code=code)
