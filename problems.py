"""Problem-file loading."""

from pathlib import Path

import structlog

from models.schemas import Problem

logger = structlog.get_logger()


def strip_comment_lines(text: str) -> str:
    """Drop every line whose first non-blank character is ``#``."""
    kept = [line for line in text.splitlines() if not line.lstrip().startswith("#")]
    return "\n".join(kept).strip()


def load_problem(path: str | Path) -> Problem:
    """Read a problem statement from a UTF-8 text file.

    Lines starting with ``#`` (after optional indentation) are comments and
    are removed before the text reaches any model.

    Raises:
        OSError: If the file cannot be read
        ValueError: If nothing but comments and whitespace remain
    """
    path = Path(path)
    text = strip_comment_lines(path.read_text(encoding="utf-8"))
    if not text:
        raise ValueError(f"problem file {path} is empty after removing comments")

    logger.info("problem_loaded", path=str(path), chars=len(text))
    return Problem(text=text, source=str(path))
