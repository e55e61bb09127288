"""Models module containing Pydantic schemas for definitions and decisions."""

from models.schemas import (
    Checklist,
    ChecklistItem,
    Cohort,
    Conditions,
    DefinitionsDocument,
    Experiment,
    ExperimentAnalysis,
    ExperimentAssignment,
    ExperimentResult,
    ExperimentVariant,
    Flow,
    FlowBranch,
    FlowExecution,
    FlowProgress,
    FlowStep,
    GuideStep,
    PredicateExpression,
    Segment,
    SegmentCondition,
    SegmentRule,
    StepsDocument,
    TargetingRule,
    UserProfile,
    ValidationReport,
)

__all__ = [
    "Checklist",
    "ChecklistItem",
    "Cohort",
    "Conditions",
    "DefinitionsDocument",
    "Experiment",
    "ExperimentAnalysis",
    "ExperimentAssignment",
    "ExperimentResult",
    "ExperimentVariant",
    "Flow",
    "FlowBranch",
    "FlowExecution",
    "FlowProgress",
    "FlowStep",
    "GuideStep",
    "PredicateExpression",
    "Segment",
    "SegmentCondition",
    "SegmentRule",
    "StepsDocument",
    "TargetingRule",
    "UserProfile",
    "ValidationReport",
]
