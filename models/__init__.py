"""Models module for the shared Pydantic data types.

This module exposes every value that crosses a component boundary.
"""

from models.schemas import (
    AggregatedVerdict,
    Artifact,
    CorrectionFeedback,
    CriticReport,
    CriticStyle,
    IterationRecord,
    LoopOutcome,
    ModelConfig,
    OutcomeKind,
    PanelMode,
    Problem,
    RepairFeedback,
    TestFeedback,
    TestResult,
    Verdict,
)

__all__ = [
    "AggregatedVerdict",
    "Artifact",
    "CorrectionFeedback",
    "CriticReport",
    "CriticStyle",
    "IterationRecord",
    "LoopOutcome",
    "ModelConfig",
    "OutcomeKind",
    "PanelMode",
    "Problem",
    "RepairFeedback",
    "TestFeedback",
    "TestResult",
    "Verdict",
]
