"""Pydantic schemas for the values that flow through the critic loop.

Every model here is frozen: an Artifact is replaced wholesale on each repair,
never edited in place, so earlier revisions stay intact for the iteration log.
All models use Pydantic v2 validation.
"""

from enum import StrEnum

from pydantic import BaseModel, ConfigDict, Field


class CriticStyle(StrEnum):
    """Review perspectives a critic can be prompted with."""

    DESIGN = "design"
    CORRECTNESS = "correctness"
    SYNTAX = "syntax"
    GENERAL = "general"


class PanelMode(StrEnum):
    """How review styles are assigned across the critic panel."""

    SPECIALIZED = "specialized"
    GENERAL = "general"


class Verdict(StrEnum):
    """A single critic's decision on an artifact."""

    ACCEPTED = "accepted"
    REJECTED = "rejected"


class OutcomeKind(StrEnum):
    """Terminal outcomes of one orchestration run."""

    CONVERGED = "converged"
    EXHAUSTED_BUDGET = "exhausted_budget"
    FATAL_TRANSPORT_ERROR = "fatal_transport_error"


class ModelConfig(BaseModel):
    """Model parameters threaded explicitly into each collaborator call."""

    model_config = ConfigDict(frozen=True, protected_namespaces=())

    model: str = Field(
        description="LiteLLM model identifier",
        examples=["gpt-4o", "anthropic/claude-3-5-sonnet-20240620"],
    )
    temperature: float = Field(
        default=0.1,
        ge=0.0,
        le=2.0,
        description="Sampling temperature (0.0-2.0)",
    )
    max_tokens: int = Field(
        default=2048,
        gt=0,
        description="Token cap requested from the transport",
    )


class Problem(BaseModel):
    """The task statement, read once at startup."""

    model_config = ConfigDict(frozen=True)

    text: str = Field(min_length=1, description="Problem text without comment lines")
    source: str | None = Field(
        default=None,
        description="Where the problem was loaded from",
    )


class Artifact(BaseModel):
    """A complete candidate solution: code plus its embedded tests."""

    model_config = ConfigDict(frozen=True)

    code: str = Field(description="Full source text of the candidate")
    revision: int = Field(
        default=0,
        ge=0,
        description="0 for the Coder's draft, +1 for every Fixer revision",
    )

    def revise(self, code: str) -> "Artifact":
        """Return the next revision carrying ``code``."""
        return Artifact(code=code, revision=self.revision + 1)


class CriticReport(BaseModel):
    """One critic's decoded review."""

    model_config = ConfigDict(frozen=True)

    critic: str = Field(description="Panel member name", examples=["Syntax Critic 3"])
    verdict: Verdict
    corrections: tuple[str, ...] = Field(
        default=(),
        description="Issues reported by the critic, in the critic's order",
    )


class AggregatedVerdict(BaseModel):
    """Consensus of the critic panel for one review round."""

    model_config = ConfigDict(frozen=True)

    all_accepted: bool
    merged_corrections: tuple[str, ...] = Field(
        default=(),
        description="Corrections of every rejecting critic, in panel order; not deduplicated",
    )
    reports: tuple[CriticReport, ...] = Field(default=())
    non_votes: int = Field(default=0, ge=0, description="Panel members that failed")


class TestResult(BaseModel):
    """Structured outcome of compiling and running the artifact's tests."""

    __test__ = False  # not a pytest test class

    model_config = ConfigDict(frozen=True)

    passed: bool
    diagnostic: str = Field(
        default="",
        description="Raw compiler or test-runner output when the run failed",
    )
    timed_out: bool = False


class CorrectionFeedback(BaseModel):
    """Repair feedback from a rejecting critic panel."""

    model_config = ConfigDict(frozen=True)

    corrections: tuple[str, ...] = ()


class TestFeedback(BaseModel):
    """Repair feedback from a failing test run."""

    __test__ = False

    model_config = ConfigDict(frozen=True)

    diagnostic: str
    assert_tags: tuple[str, ...] = Field(
        default=(),
        description="Assertion tags found in the diagnostic, in order of appearance",
    )


RepairFeedback = CorrectionFeedback | TestFeedback


class IterationRecord(BaseModel):
    """Append-only log entry written whenever the loop enters repair."""

    model_config = ConfigDict(frozen=True)

    index: int = Field(ge=0)
    artifact: Artifact
    verdict: AggregatedVerdict | None = None
    test_result: TestResult | None = None
    note: str = ""


class LoopOutcome(BaseModel):
    """Terminal result of one orchestration run."""

    model_config = ConfigDict(frozen=True)

    kind: OutcomeKind
    artifact: Artifact | None = Field(
        default=None,
        description="The verified artifact when converged, else the last one held",
    )
    iterations: int = Field(ge=0)
    records: tuple[IterationRecord, ...] = ()
    error: str | None = None

    @property
    def converged(self) -> bool:
        return self.kind == OutcomeKind.CONVERGED
