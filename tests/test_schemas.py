"""Tests for models/schemas.py -- the values passed between loop components.

Validates construction, validation rules, enum values and immutability.
"""

import pytest
from pydantic import ValidationError

from models.schemas import (
    AggregatedVerdict,
    Artifact,
    CorrectionFeedback,
    CriticStyle,
    IterationRecord,
    LoopOutcome,
    ModelConfig,
    OutcomeKind,
    PanelMode,
    Problem,
    TestFeedback,
    TestResult,
)

# =========================================================================
# Enums
# =========================================================================


class TestEnums:
    """String enum values are part of the CLI and event payloads."""

    def test_critic_styles(self) -> None:
        assert [s.value for s in CriticStyle] == ["design", "correctness", "syntax", "general"]

    def test_panel_modes(self) -> None:
        assert PanelMode("general") is PanelMode.GENERAL
        assert PanelMode("specialized") is PanelMode.SPECIALIZED

    def test_outcome_kinds(self) -> None:
        assert OutcomeKind.CONVERGED == "converged"
        assert OutcomeKind.EXHAUSTED_BUDGET == "exhausted_budget"
        assert OutcomeKind.FATAL_TRANSPORT_ERROR == "fatal_transport_error"


# =========================================================================
# ModelConfig
# =========================================================================


class TestModelConfig:
    """LLM configuration validation."""

    def test_defaults(self) -> None:
        cfg = ModelConfig(model="gpt-4o")
        assert cfg.temperature == 0.1
        assert cfg.max_tokens == 2048

    def test_temperature_bounds(self) -> None:
        with pytest.raises(ValidationError):
            ModelConfig(model="gpt-4o", temperature=2.5)
        with pytest.raises(ValidationError):
            ModelConfig(model="gpt-4o", temperature=-0.1)

    def test_max_tokens_positive(self) -> None:
        with pytest.raises(ValidationError):
            ModelConfig(model="gpt-4o", max_tokens=0)


# =========================================================================
# Problem and Artifact
# =========================================================================


class TestProblem:
    """Problem text must be present."""

    def test_empty_text_rejected(self) -> None:
        with pytest.raises(ValidationError):
            Problem(text="")

    def test_source_optional(self) -> None:
        assert Problem(text="add numbers").source is None


class TestArtifact:
    """Artifacts are immutable revisions."""

    def test_draft_is_revision_zero(self) -> None:
        assert Artifact(code="fn main() {}").revision == 0

    def test_revise_increments_revision(self) -> None:
        draft = Artifact(code="a")
        revised = draft.revise("b")
        assert revised == Artifact(code="b", revision=1)
        assert draft.code == "a"

    def test_frozen(self) -> None:
        artifact = Artifact(code="a")
        with pytest.raises(ValidationError):
            artifact.code = "b"  # type: ignore[misc]

    def test_negative_revision_rejected(self) -> None:
        with pytest.raises(ValidationError):
            Artifact(code="a", revision=-1)


# =========================================================================
# Feedback, records and outcomes
# =========================================================================


class TestRepairFeedback:
    """The two kinds of repair feedback."""

    def test_correction_feedback_defaults_empty(self) -> None:
        assert CorrectionFeedback().corrections == ()

    def test_test_feedback_tags(self) -> None:
        feedback = TestFeedback(diagnostic="boom", assert_tags=("AT-abcd",))
        assert feedback.assert_tags == ("AT-abcd",)

    def test_list_input_is_stored_as_tuple(self) -> None:
        feedback = CorrectionFeedback(corrections=["x", "y"])  # type: ignore[arg-type]
        assert feedback.corrections == ("x", "y")


class TestIterationRecord:
    """Log entries written on entering repair."""

    def test_index_non_negative(self) -> None:
        with pytest.raises(ValidationError):
            IterationRecord(index=-1, artifact=Artifact(code="a"))

    def test_optional_parts(self) -> None:
        record = IterationRecord(index=0, artifact=Artifact(code="a"))
        assert record.verdict is None
        assert record.test_result is None
        assert record.note == ""

    def test_holds_verdict_and_test_result(self) -> None:
        record = IterationRecord(
            index=2,
            artifact=Artifact(code="a", revision=2),
            verdict=AggregatedVerdict(all_accepted=True),
            test_result=TestResult(passed=False, diagnostic="panic"),
        )
        assert record.verdict is not None and record.verdict.all_accepted
        assert record.test_result is not None and not record.test_result.passed


class TestLoopOutcome:
    """Terminal outcome values."""

    def test_converged_property(self) -> None:
        outcome = LoopOutcome(
            kind=OutcomeKind.CONVERGED,
            artifact=Artifact(code="a"),
            iterations=0,
        )
        assert outcome.converged is True

    def test_fatal_without_artifact(self) -> None:
        outcome = LoopOutcome(
            kind=OutcomeKind.FATAL_TRANSPORT_ERROR,
            iterations=0,
            error="TransportError: 503",
        )
        assert outcome.artifact is None
        assert outcome.converged is False

    def test_negative_non_votes_rejected(self) -> None:
        with pytest.raises(ValidationError):
            AggregatedVerdict(all_accepted=True, non_votes=-1)
