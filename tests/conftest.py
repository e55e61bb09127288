"""Pytest configuration and fixtures."""

from __future__ import annotations

import os
import random
import sys
from pathlib import Path
from typing import Any

import pytest

project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

os.environ.setdefault("LOG_LEVEL", "WARNING")

from config.settings import Settings  # noqa: E402
from decision_engine.callbacks import CallbackRegistry  # noqa: E402
from decision_engine.experiments import ExperimentEngine  # noqa: E402
from decision_engine.flows import FlowEngine  # noqa: E402
from decision_engine.predicates import PredicateEvaluator  # noqa: E402
from decision_engine.segmentation import SegmentationEngine  # noqa: E402
from models.schemas import (  # noqa: E402
    Experiment,
    ExperimentGoal,
    ExperimentVariant,
    Flow,
    FlowBranch,
    FlowStep,
    GuideStep,
    Segment,
    SegmentCondition,
    SegmentRule,
)


def make_condition(
    field: str,
    operator: str,
    value: Any = None,
    category: str = "user",
) -> SegmentCondition:
    """Factory for creating SegmentCondition test fixtures."""
    return SegmentCondition(type=category, field=field, operator=operator, value=value)


def make_segment(
    segment_id: str,
    *rules: list[SegmentCondition],
    logic: str = "AND",
    priority: int = 0,
    enabled: bool = True,
) -> Segment:
    """Factory for creating Segment test fixtures; each positional arg is one rule."""
    return Segment(
        id=segment_id,
        name=segment_id.replace("-", " ").title(),
        rules=[SegmentRule(conditions=conditions, logic=logic) for conditions in rules],
        priority=priority,
        enabled=enabled,
    )


def make_experiment(
    experiment_id: str = "exp1",
    weights: tuple[float, ...] = (50.0, 50.0),
    control_index: int | None = 0,
    goals: list[ExperimentGoal] | None = None,
    **settings: Any,
) -> Experiment:
    """Factory for creating Experiment test fixtures with variants named A, B, C..."""
    variants = [
        ExperimentVariant(
            id=chr(ord("A") + i),
            name=f"Variant {chr(ord('A') + i)}",
            weight=weight,
            config={"variant": chr(ord("A") + i)},
            is_control=i == control_index,
        )
        for i, weight in enumerate(weights)
    ]
    return Experiment(
        id=experiment_id,
        name=f"Experiment {experiment_id}",
        variants=variants,
        goals=goals if goals is not None else [ExperimentGoal(id="signup", is_primary=True)],
        settings=settings,
    )


def make_flow_step(
    step_id: str,
    order: float,
    branches: list[FlowBranch] | None = None,
) -> FlowStep:
    """Factory for creating FlowStep test fixtures."""
    return FlowStep(step_id=step_id, order=order, branches=branches or [])


def make_flow(
    flow_id: str = "onboarding",
    steps: list[FlowStep] | None = None,
    start_step_id: str | None = None,
    **settings: Any,
) -> Flow:
    """Factory for creating Flow test fixtures (defaults to steps s1, s2, s3)."""
    steps = steps or [make_flow_step("s1", 1), make_flow_step("s2", 2), make_flow_step("s3", 3)]
    return Flow(
        id=flow_id,
        name=flow_id.title(),
        steps=steps,
        start_step_id=start_step_id or steps[0].step_id,
        settings=settings,
    )


def make_guide_step(step_id: str, when: dict[str, Any], **extra: Any) -> GuideStep:
    """Factory for creating GuideStep test fixtures."""
    return GuideStep.model_validate(
        {
            "id": step_id,
            "type": extra.pop("type", "tooltip"),
            "content": {"title": step_id, "body": f"Help for {step_id}"},
            "when": when,
            **extra,
        }
    )


@pytest.fixture
def settings() -> Settings:
    """Explicit settings independent of the environment."""
    return Settings(
        log_level="WARNING",
        max_regex_length=500,
        default_minimum_sample_size=100,
        default_required_confidence=95.0,
        persist_assignments=True,
    )


@pytest.fixture
def callbacks() -> CallbackRegistry:
    """Empty callback registry."""
    return CallbackRegistry()


@pytest.fixture
def evaluator(settings: Settings) -> PredicateEvaluator:
    """Predicate evaluator with test settings."""
    return PredicateEvaluator(settings=settings)


@pytest.fixture
def segmentation(callbacks: CallbackRegistry) -> SegmentationEngine:
    """Segmentation engine sharing the test registry."""
    return SegmentationEngine(callbacks=callbacks)


@pytest.fixture
def experiments(settings: Settings, segmentation: SegmentationEngine) -> ExperimentEngine:
    """Experiment engine wired to segmentation with a seeded random source."""
    return ExperimentEngine(settings=settings, segmentation=segmentation, rng=random.Random(7))


@pytest.fixture
def flows(callbacks: CallbackRegistry) -> FlowEngine:
    """Flow engine sharing the test registry."""
    return FlowEngine(callbacks=callbacks)


@pytest.fixture
def definitions_data() -> dict[str, Any]:
    """A small but complete definitions document."""
    return {
        "version": "1.0",
        "cohorts": [{"id": "beta", "name": "Beta testers", "user_ids": ["u-1"]}],
        "segments": [
            {
                "id": "power-users",
                "name": "Power users",
                "rules": [
                    {
                        "conditions": [
                            {
                                "type": "behavior",
                                "field": "session_count",
                                "operator": "greaterThanOrEqual",
                                "value": 10,
                            }
                        ]
                    }
                ],
            }
        ],
        "experiments": [
            {
                "id": "exp1",
                "name": "Checkout button",
                "status": "running",
                "variants": [
                    {"id": "control", "weight": 50, "is_control": True},
                    {"id": "green", "weight": 50, "config": {"color": "green"}},
                ],
                "goals": [{"id": "purchase", "is_primary": True}],
            }
        ],
        "flows": [
            {
                "id": "onboarding",
                "start_step_id": "welcome",
                "steps": [
                    {"step_id": "welcome", "order": 1},
                    {"step_id": "profile", "order": 2},
                    {"step_id": "done", "order": 3},
                ],
            }
        ],
        "checklists": [
            {
                "id": "setup",
                "title": "Setup",
                "items": [
                    {"id": "invite", "title": "Invite a teammate", "required": True},
                    {"id": "connect", "title": "Connect a source"},
                ],
            }
        ],
        "steps": [
            {
                "id": "billing-help",
                "type": "banner",
                "content": {"title": "Payment failed", "body": "Update your card."},
                "when": {"error_id": "PAYMENT_DECLINED", "path_regex": "^/billing"},
            }
        ],
    }
