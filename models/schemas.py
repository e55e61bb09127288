"""Pydantic schemas for definitions, profiles, decisions and engine state."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Literal

from pydantic import BaseModel, Field, computed_field, model_validator


def utcnow() -> datetime:
    """Timezone-aware current time used for every engine timestamp."""
    return datetime.now(timezone.utc)


def round_half_up(value: float) -> int:
    """Round like a percentage display does (0.5 always rounds up)."""
    return int(value + 0.5) if value >= 0 else -int(-value + 0.5)


# =============================================================================
# Predicate & Condition Schemas
# =============================================================================

PredicateOp = Literal[
    "equals",
    "notEquals",
    "contains",
    "greaterThan",
    "lessThan",
    "and",
    "or",
    "not",
]


class PredicateExpression(BaseModel):
    """A node of a boolean expression tree evaluated against a context."""

    op: PredicateOp | None = Field(
        default=None,
        description="Operator tag; a node without one never matches",
    )
    field: str | None = Field(default=None, description="Dot path into the context")
    value: Any = Field(default=None, description="Comparison value for leaf operators")
    operands: list[PredicateExpression | None] | None = Field(
        default=None, description="Child expressions for and/or/not"
    )


class Conditions(BaseModel):
    """Activation conditions for a piece of guidance content (all must hold)."""

    error_id: str | list[str] | None = Field(
        default=None, description="Accepted telemetry error id(s)"
    )
    path_regex: str | None = Field(default=None, description="Regex tested against route.path")
    custom_expr: PredicateExpression | None = Field(
        default=None, description="Predicate tree over the full context"
    )

    def is_empty(self) -> bool:
        """True when no condition is specified at all."""
        return not (self.error_id or self.path_regex or self.custom_expr)


# =============================================================================
# Guide Step Schemas
# =============================================================================

StepType = Literal["tooltip", "banner", "modal"]


class StepContent(BaseModel):
    """Content handed to the rendering layer."""

    title: str | None = Field(default=None, description="Optional heading")
    body: str = Field(description="Body text or HTML")
    allow_html: bool = Field(default=False, description="Body must be sanitized before display")


class CallToAction(BaseModel):
    """Call-to-action button attached to a step."""

    label: str = Field(description="Button label")
    callback_id: str = Field(description="Registered callback invoked on click")
    dismiss_on_click: bool = Field(default=True, description="Dismiss the step after the click")


class StepActions(BaseModel):
    """Callback ids bound to step lifecycle events."""

    on_show: str | None = Field(default=None)
    on_dismiss: str | None = Field(default=None)
    cta: CallToAction | None = Field(default=None)


class TelemetryHooks(BaseModel):
    """Telemetry event names emitted on step lifecycle events."""

    on_show_event: str | None = Field(default=None)
    on_dismiss_event: str | None = Field(default=None)
    on_cta_click_event: str | None = Field(default=None)


class GuideStep(BaseModel):
    """A guidance content item and the conditions that activate it."""

    id: str = Field(min_length=1, description="Unique step id")
    type: StepType = Field(description="Presentation type")
    selector: str | None = Field(default=None, description="Anchor selector for tooltips")
    content: StepContent
    when: Conditions = Field(default_factory=Conditions)
    actions: StepActions | None = Field(default=None)
    telemetry: TelemetryHooks | None = Field(default=None)


class StepsDocument(BaseModel):
    """Versioned collection of guide steps."""

    version: str = Field(default="1.0")
    steps: list[GuideStep] = Field(default_factory=list)


# =============================================================================
# Segmentation Schemas
# =============================================================================

AttributeCategory = Literal["user", "company", "behavior", "cohort"]

SegmentOperator = Literal[
    "equals",
    "notEquals",
    "contains",
    "notContains",
    "greaterThan",
    "lessThan",
    "greaterThanOrEqual",
    "lessThanOrEqual",
    "in",
    "notIn",
    "exists",
    "notExists",
]

COHORT_OPERATORS = frozenset({"equals", "in", "notEquals", "notIn"})


class SegmentCondition(BaseModel):
    """One attribute test inside a segment rule."""

    type: AttributeCategory = Field(description="Attribute category the field lives in")
    field: str = Field(default="", description="Dot path into the category bag")
    operator: SegmentOperator
    value: Any = Field(default=None, description="Comparison value (cohort id for cohort tests)")

    @model_validator(mode="after")
    def _check_shape(self) -> SegmentCondition:
        if self.type == "cohort":
            if self.operator not in COHORT_OPERATORS:
                raise ValueError(
                    f"cohort conditions support equals/in/notEquals/notIn, got {self.operator!r}"
                )
            if not isinstance(self.value, str) or not self.value:
                raise ValueError("cohort conditions need the cohort id as a string value")
        elif not self.field:
            raise ValueError(f"{self.type} conditions need a field path")
        return self


class SegmentRule(BaseModel):
    """Conditions combined with AND (default) or OR."""

    conditions: list[SegmentCondition] = Field(default_factory=list)
    logic: Literal["AND", "OR"] = Field(default="AND")


class Segment(BaseModel):
    """Named audience: matches when any of its rules matches."""

    id: str = Field(min_length=1)
    name: str = Field(default="")
    description: str | None = Field(default=None)
    rules: list[SegmentRule] = Field(default_factory=list)
    priority: int = Field(default=0)
    enabled: bool = Field(default=True)


class UserProfile(BaseModel):
    """Attributes, derived segments and cohort membership for one user."""

    user_id: str = Field(
        min_length=1, description="Profile key: a user id, or a session id for anonymous visitors"
    )
    user: dict[str, Any] = Field(default_factory=dict)
    company: dict[str, Any] = Field(default_factory=dict)
    behavior: dict[str, Any] = Field(default_factory=dict)
    segments: set[str] = Field(default_factory=set, description="Derived segment ids")
    cohorts: set[str] = Field(default_factory=set, description="Cohort ids the user belongs to")
    metadata: dict[str, Any] = Field(default_factory=dict)


class Cohort(BaseModel):
    """Imperatively managed membership set."""

    id: str = Field(min_length=1)
    name: str = Field(default="")
    description: str | None = Field(default=None)
    user_ids: set[str] = Field(default_factory=set)
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    metadata: dict[str, Any] = Field(default_factory=dict)


class TargetingRule(BaseModel):
    """Audience gate built from segments, cohorts and a registered predicate."""

    segments: list[str] = Field(default_factory=list, description="Include if in ANY")
    cohorts: list[str] = Field(default_factory=list, description="Include if in ANY")
    exclude_segments: list[str] = Field(default_factory=list, description="Veto if in ANY")
    exclude_cohorts: list[str] = Field(default_factory=list, description="Veto if in ANY")
    custom_logic_id: str | None = Field(
        default=None, description="Registered predicate called with the profile"
    )


# =============================================================================
# Experiment Schemas
# =============================================================================

ExperimentStatus = Literal["draft", "running", "paused", "completed", "archived"]


class ExperimentVariant(BaseModel):
    """One treatment arm of an experiment."""

    id: str = Field(min_length=1)
    name: str = Field(default="")
    description: str | None = Field(default=None)
    weight: float = Field(ge=0.0, le=100.0, description="Allocation percentage")
    config: dict[str, Any] = Field(default_factory=dict, description="Variant configuration")
    is_control: bool = Field(default=False)

    @property
    def display_name(self) -> str:
        return self.name or self.id


class ExperimentGoal(BaseModel):
    """A tracked outcome."""

    id: str = Field(min_length=1)
    name: str = Field(default="")
    type: Literal["conversion", "engagement", "revenue", "custom"] = Field(default="conversion")
    metric: str = Field(default="", description="Event name or metric to track")
    target_value: float | None = Field(default=None)
    is_primary: bool = Field(default=False)


class ExperimentTargeting(BaseModel):
    """Who may enter an experiment."""

    segments: list[str] = Field(default_factory=list)
    cohorts: list[str] = Field(default_factory=list)
    exclude_segments: list[str] = Field(default_factory=list)
    exclude_cohorts: list[str] = Field(default_factory=list)
    user_percentage: float | None = Field(
        default=None, ge=0.0, le=100.0, description="Share of eligible users admitted"
    )
    custom_logic_id: str | None = Field(default=None)

    def as_rule(self) -> TargetingRule:
        return TargetingRule(
            segments=self.segments,
            cohorts=self.cohorts,
            exclude_segments=self.exclude_segments,
            exclude_cohorts=self.exclude_cohorts,
            custom_logic_id=self.custom_logic_id,
        )


class ExperimentSettings(BaseModel):
    """Per-experiment knobs; None falls back to engine settings."""

    auto_winner: bool = Field(default=False)
    required_confidence: float | None = Field(default=None, ge=50.0, le=99.99)
    minimum_sample_size: int | None = Field(default=None, ge=0)
    minimum_duration_ms: int | None = Field(default=None, ge=0)
    traffic_ramp_up: bool = Field(default=False)
    persist_assignment: bool | None = Field(default=None)
    timeout_ms: int | None = Field(default=None, ge=0, description="Declared only; not enforced")
    storage_key: str | None = Field(default=None)


class Experiment(BaseModel):
    """Experiment definition plus its lifecycle status."""

    id: str = Field(min_length=1)
    name: str = Field(default="")
    description: str | None = Field(default=None)
    hypothesis: str | None = Field(default=None)
    variants: list[ExperimentVariant] = Field(default_factory=list)
    status: ExperimentStatus = Field(default="draft")
    start_date: datetime | None = Field(default=None)
    end_date: datetime | None = Field(default=None)
    target_sample_size: int | None = Field(default=None, ge=0)
    goals: list[ExperimentGoal] = Field(default_factory=list)
    targeting: ExperimentTargeting | None = Field(default=None)
    settings: ExperimentSettings = Field(default_factory=ExperimentSettings)
    metadata: dict[str, Any] = Field(default_factory=dict)

    @property
    def control(self) -> ExperimentVariant | None:
        return next((v for v in self.variants if v.is_control), None)

    @property
    def primary_goal(self) -> ExperimentGoal | None:
        return next((g for g in self.goals if g.is_primary), self.goals[0] if self.goals else None)

    def get_variant(self, variant_id: str) -> ExperimentVariant | None:
        return next((v for v in self.variants if v.id == variant_id), None)


class ExperimentAssignment(BaseModel):
    """Variant chosen for one identity."""

    experiment_id: str
    variant_id: str
    user_id: str | None = Field(default=None)
    session_id: str | None = Field(default=None)
    assigned_at: datetime = Field(default_factory=utcnow)
    persistent: bool = Field(default=True)


class ExperimentResult(BaseModel):
    """Derived per-variant counts and conversion rates (0-100)."""

    experiment_id: str
    variant_id: str
    participant_count: int = Field(default=0)
    goal_conversions: dict[str, int] = Field(default_factory=dict)
    conversion_rates: dict[str, float] = Field(default_factory=dict)


class SignificanceResult(BaseModel):
    """Outcome of a two-proportion z-test."""

    z_score: float
    p_value: float


class VariantComparison(BaseModel):
    """A non-control variant measured against control on the primary goal."""

    variant_id: str
    control_rate: float = Field(description="Control conversion rate (0-100)")
    variant_rate: float = Field(description="Variant conversion rate (0-100)")
    lift: float = Field(description="Percent improvement over control")
    z_score: float
    p_value: float
    significant: bool


class ExperimentAnalysis(BaseModel):
    """Verdict of an experiment's significance analysis."""

    experiment_id: str
    status: Literal["insufficient_data", "running", "significant", "no_significant_difference"]
    results: list[ExperimentResult] = Field(default_factory=list)
    comparisons: list[VariantComparison] = Field(default_factory=list)
    winner: str | None = Field(default=None)
    confidence: float | None = Field(default=None)
    statistical_significance: bool = Field(default=False)
    recommended_action: Literal["continue", "stop", "scale_winner", "inconclusive"] | None = None
    insights: list[str] = Field(default_factory=list)
    generated_at: datetime = Field(default_factory=utcnow)


class VariantPerformance(BaseModel):
    """Primary-goal summary row for one variant."""

    variant_id: str
    variant_name: str
    participants: int
    conversions: int
    conversion_rate: float
    lift: float | None = Field(default=None)


# =============================================================================
# Flow Schemas
# =============================================================================

FlowAction = Literal["completed", "skipped", "clicked", "dismissed"]
FlowExecutionStatus = Literal["active", "paused", "aborted", "completed"]


class BranchCondition(BaseModel):
    """When a branch is taken."""

    type: Literal["event", "userAction", "customLogic"]
    event_name: str | None = Field(default=None, description="Unsupported extension point")
    action: FlowAction | None = Field(default=None)
    custom_logic_id: str | None = Field(default=None)


class FlowBranch(BaseModel):
    """Conditional edge to another step of the same flow."""

    condition: BranchCondition
    target_step_id: str
    priority: int = Field(default=0, description="Higher priority branches are tried first")


class FlowCompletionCriteria(BaseModel):
    """Declared completion criteria for a step (data for the host)."""

    type: Literal["viewed", "clicked", "dismissed", "timeout", "custom"]
    timeout_ms: int | None = Field(default=None, ge=0)
    custom_check_id: str | None = Field(default=None)


class FlowStep(BaseModel):
    """A step of a flow, ordered by `order`."""

    step_id: str = Field(min_length=1)
    order: float
    required: bool = Field(default=False)
    completion_criteria: FlowCompletionCriteria | None = Field(default=None)
    branches: list[FlowBranch] = Field(default_factory=list)
    delay_ms: int | None = Field(default=None, ge=0)
    metadata: dict[str, Any] = Field(default_factory=dict)


class FlowSettings(BaseModel):
    """Navigation permissions and callback ids."""

    allow_skip: bool = Field(default=False)
    allow_back: bool = Field(default=False)
    show_progress: bool = Field(default=True)
    persist_progress: bool = Field(default=False)
    auto_advance: bool = Field(default=False)
    auto_advance_delay_ms: int | None = Field(default=None, ge=0)
    max_retries: int | None = Field(default=None, ge=0)
    timeout_ms: int | None = Field(default=None, ge=0, description="Declared only; not enforced")
    on_complete: str | None = Field(default=None, description="Callback id")
    on_abort: str | None = Field(default=None, description="Callback id")


class Flow(BaseModel):
    """Directed step graph with a designated start step."""

    id: str = Field(min_length=1)
    name: str = Field(default="")
    description: str | None = Field(default=None)
    steps: list[FlowStep] = Field(default_factory=list)
    start_step_id: str
    end_step_id: str | None = Field(default=None)
    settings: FlowSettings = Field(default_factory=FlowSettings)
    metadata: dict[str, Any] = Field(default_factory=dict)


class FlowExecutionContext(BaseModel):
    """Where an execution is and where it has been."""

    flow_id: str
    current_step_id: str
    previous_steps: list[str] = Field(default_factory=list, description="Back-navigation stack")
    completed_steps: set[str] = Field(default_factory=set)
    skipped_steps: set[str] = Field(default_factory=set)
    user_data: dict[str, Any] = Field(default_factory=dict)
    start_time: datetime = Field(default_factory=utcnow)
    last_update_time: datetime = Field(default_factory=utcnow)


class FlowExecution(BaseModel):
    """One user's run through a flow."""

    flow_id: str
    execution_id: str
    context: FlowExecutionContext
    status: FlowExecutionStatus = Field(default="active")
    start_time: datetime = Field(default_factory=utcnow)
    end_time: datetime | None = Field(default=None)
    duration_ms: int | None = Field(default=None)

    @property
    def is_terminal(self) -> bool:
        return self.status in ("completed", "aborted")


class FlowProgress(BaseModel):
    """Progress snapshot of an execution."""

    flow_id: str
    execution_id: str
    total_steps: int
    completed_steps: int
    current_step_index: int
    percent_complete: int
    is_complete: bool
    status: FlowExecutionStatus


class ChecklistItem(BaseModel):
    """A checklist entry; `step_id` is for display only."""

    id: str = Field(min_length=1)
    title: str
    description: str | None = Field(default=None)
    step_id: str | None = Field(default=None)
    completed: bool = Field(default=False)
    required: bool = Field(default=False)
    order: int = Field(default=0)


class Checklist(BaseModel):
    """Ordered items; progress figures derive from item state."""

    id: str = Field(min_length=1)
    title: str = Field(default="")
    items: list[ChecklistItem] = Field(default_factory=list)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def completed(self) -> int:
        return sum(1 for item in self.items if item.completed)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def required(self) -> int:
        return sum(1 for item in self.items if item.required)

    @computed_field  # type: ignore[prop-decorator]
    @property
    def progress(self) -> int:
        if not self.items:
            return 0
        return round_half_up(self.completed / len(self.items) * 100)


# =============================================================================
# Definitions Document Schemas
# =============================================================================


class DefinitionsDocument(BaseModel):
    """Everything a deployment defines, as one JSON-compatible document."""

    version: str = Field(default="1.0")
    segments: list[Segment] = Field(default_factory=list)
    cohorts: list[Cohort] = Field(default_factory=list)
    experiments: list[Experiment] = Field(default_factory=list)
    flows: list[Flow] = Field(default_factory=list)
    checklists: list[Checklist] = Field(default_factory=list)
    steps: list[GuideStep] = Field(default_factory=list)


class ValidationReport(BaseModel):
    """Result of validating a definitions document."""

    valid: bool
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


PredicateExpression.model_rebuild()
