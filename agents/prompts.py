"""System prompts for the Coder, Critic and Fixer roles.

This module contains the prompt templates used by the critic loop:
- CODER_PROMPT: Drafts a complete program with embedded tests
- FIXER_PROMPT: Revises a program from critic corrections or test failures
- CRITIC_BASE_PROMPT + CRITIC_CRITERIA: One review perspective per critic style
- DECODE_REPAIR_PROMPT: Re-ask sent when an answer could not be decoded
- SECTION_SEPARATOR: Divider between goal, code and feedback in user messages
"""

from models.schemas import CriticStyle

SECTION_SEPARATOR = "\n\n------\n\n"

# Shared by every role: the answer is parsed as JSON, never shown to a human
_JSON_CONTRACT = """\
## Output Contract
- Return a single JSON object and nothing else.
- Do not wrap the JSON in code fences and add no commentary outside it."""

CODER_PROMPT = """\
Write the requested program. Add no explanations. Just return the code with \
complete tests.

## Requirements
- The code is piped directly to the Rust compiler (`rustc --test`), so it must \
be a single self-contained source file that compiles as-is.
- Any clarifying explanation belongs in the code as `//` comments.
- Include tests that demonstrate that the code solves the requested problem.
- Give every assertion a message that starts with a unique tag of the form \
`AT-xxxx` (four or more letters or digits), for example \
`assert_eq!(add(2, 2), 4, "AT-a1b2: add(2, 2) should be 4");`. Failing tests \
are reported back by these tags.

## Response Format
Return JSON with one field named `code` holding the complete source text:
{"code": "<program and tests>"}"""

FIXER_PROMPT = """\
You will be given a coding goal, then a program that attempts to solve it, \
then one or more suggested corrections or a failing test report. Each of these \
is separated by a line of `------`.

## How to Revise
- For each suggested correction, first decide whether it is a legitimate \
criticism. Correct the program only for the legitimate ones.
- For a failing test report, fix the cause of every listed failure. Failing \
assertions are identified by their `AT-xxxx` tags.
- Keep the existing assertion tags on assertions you keep, and tag any new \
assertion with a fresh unique `AT-xxxx` tag.
- Ensure the program still includes tests demonstrating that the original \
coding goal is solved.
- Add no explanations outside `//` comments.

## Response Format
Return JSON with one field named `code` holding the complete corrected source:
{"code": "<corrected program and tests>"}"""

CRITIC_BASE_PROMPT = """\
Here is a coding problem and a proposed solution separated by a line \
containing `------`. Evaluate the code based on the criteria below. Make no \
comments or explanations.

## Response Format
Return JSON with two fields:
1. `correct`: `true` if the code is correct, else `false`.
2. `corrections`: a list of the errors found, one string per error, or `null` \
if there are none.
{"correct": false, "corrections": ["<first error>", "<second error>"]}"""

CRITIC_CRITERIA: dict[CriticStyle, str] = {
    CriticStyle.DESIGN: """\
## Evaluation Criteria
Evaluate the _design_ of the solution, considering the following questions:
1. Is this the right design to solve the problem?
2. Does the method chosen meet the constraints of the problem?
3. Does it use the correct algorithms and data structures to solve the problem?""",
    CriticStyle.CORRECTNESS: """\
## Evaluation Criteria
Evaluate the _correctness_ of the solution, considering the following questions:
1. Does the code correctly implement the intended solution approach?
2. Does the code generate the expected output?
3. Does the output meet the original problem constraints?
4. Are there enough tests to demonstrate the correctness of the solution?
5. Do the tests correctly capture situations that validate or invalidate the solution?""",
    CriticStyle.SYNTAX: """\
## Evaluation Criteria
Evaluate the _syntax_ of the solution, considering the following questions:
1. Are there any syntactic errors?
2. Will the code and tests compile and run?
3. Are there any language errors such as borrowing violations or lifetime problems?
4. Are there any cleanups needed such as unused variables or imports?""",
    CriticStyle.GENERAL: """\
## Evaluation Criteria
Evaluate the solution as a whole, considering the following questions:
1. Does the code solve the given problem within its constraints?
2. Will the code and its tests compile and run?
3. Do the tests demonstrate that the problem is solved?""",
}

DECODE_REPAIR_PROMPT = """\
Your previous answer could not be used: {error}.
Reply again with only the JSON object described in your instructions, using \
exactly the field names given there."""


def compose_prompt_sections(*sections: str) -> str:
    """Compose prompt sections into a single deterministic system prompt."""
    cleaned = [section.strip() for section in sections if section and section.strip()]
    return "\n\n".join(cleaned)


def get_coder_prompt() -> str:
    return compose_prompt_sections(CODER_PROMPT, _JSON_CONTRACT)


def get_fixer_prompt() -> str:
    return compose_prompt_sections(FIXER_PROMPT, _JSON_CONTRACT)


def get_critic_prompt(style: CriticStyle) -> str:
    """Get the full critic prompt for a review style.

    Args:
        style: The perspective the critic reviews from

    Returns:
        The base review instructions followed by the style's criteria
    """
    return compose_prompt_sections(CRITIC_BASE_PROMPT, CRITIC_CRITERIA[style], _JSON_CONTRACT)


def join_sections(*sections: str) -> str:
    """Join user-message sections with the ``------`` divider."""
    return SECTION_SEPARATOR.join(section.strip() for section in sections)
