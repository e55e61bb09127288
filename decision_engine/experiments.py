"""Experiment lifecycle, variant assignment and significance analysis."""

from __future__ import annotations

import logging
import random
import uuid
from collections import defaultdict
from collections.abc import Iterable, Mapping
from typing import Any

from pydantic import ValidationError

from config.settings import Settings, get_settings
from decision_engine.errors import DefinitionError, format_validation_errors
from decision_engine.segmentation import SegmentationEngine
from decision_engine.statistics import (
    BUCKET_COUNT,
    assignment_bucket,
    string_hash,
    two_proportion_z_test,
)
from models.schemas import (
    Experiment,
    ExperimentAnalysis,
    ExperimentAssignment,
    ExperimentResult,
    ExperimentStatus,
    ExperimentVariant,
    VariantComparison,
    VariantPerformance,
    utcnow,
)

WEIGHT_TOLERANCE = 0.01


def select_variant(variants: list[ExperimentVariant], point: float) -> ExperimentVariant:
    """
    Walk cumulative weights in definition order and pick the first variant
    whose cumulative weight exceeds `point`; falls back to the control.
    """
    cumulative = 0.0
    for variant in variants:
        cumulative += variant.weight
        if point < cumulative:
            return variant
    return next((v for v in variants if v.is_control), variants[0])


def validate_experiment(experiment: Experiment) -> list[str]:
    """Definition errors for an experiment (empty when valid)."""
    errors: list[str] = []
    if len(experiment.variants) < 2:
        errors.append("Experiment must have at least 2 variants")

    seen: set[str] = set()
    for variant in experiment.variants:
        if variant.id in seen:
            errors.append(f"Duplicate variant id: {variant.id}")
        seen.add(variant.id)

    total_weight = sum(v.weight for v in experiment.variants)
    if abs(total_weight - 100) > WEIGHT_TOLERANCE:
        errors.append(f"Variant weights must sum to 100, got {total_weight:g}")

    control_count = sum(1 for v in experiment.variants if v.is_control)
    if control_count != 1:
        errors.append(f"Experiment must have exactly one control variant, got {control_count}")

    goal_ids = [g.id for g in experiment.goals]
    if len(goal_ids) != len(set(goal_ids)):
        errors.append("Goal ids must be unique")

    return errors


class ExperimentEngine:
    """
    Runs A/B experiments in memory.

    Participant counts are derived from stored assignments, so replacing an
    assignment never double counts. Goal conversions are counted per
    (experiment, variant, goal).
    """

    def __init__(
        self,
        settings: Settings | None = None,
        segmentation: SegmentationEngine | None = None,
        rng: random.Random | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.segmentation = segmentation
        self.logger = logger or logging.getLogger(__name__)
        self.rng = rng or random.Random()
        self._experiments: dict[str, Experiment] = {}
        self._assignments: dict[str, ExperimentAssignment] = {}
        self._goal_events: dict[str, dict[str, dict[str, int]]] = defaultdict(
            lambda: defaultdict(lambda: defaultdict(int))
        )

    # =========================================================================
    # Experiment Management
    # =========================================================================

    def create_experiment(self, definition: Experiment | Mapping[str, Any]) -> Experiment:
        """Validate and store an experiment in draft status."""
        experiment = self._parse_experiment(definition)
        if experiment.id in self._experiments:
            raise DefinitionError("Experiment already exists", "experiment", experiment.id)

        errors = validate_experiment(experiment)
        if errors:
            raise DefinitionError("; ".join(errors), "experiment", experiment.id, errors)

        experiment.status = "draft"
        self._experiments[experiment.id] = experiment
        self.logger.info(
            "Experiment %s created with %d variants", experiment.id, len(experiment.variants)
        )
        return experiment

    @staticmethod
    def _parse_experiment(definition: Experiment | Mapping[str, Any]) -> Experiment:
        if isinstance(definition, Experiment):
            return definition.model_copy(deep=True)
        try:
            return Experiment.model_validate(definition)
        except ValidationError as e:
            errors = format_validation_errors(e)
            raise DefinitionError(
                "; ".join(errors), "experiment", str(definition.get("id") or ""), errors
            ) from e

    def get_experiment(self, experiment_id: str) -> Experiment | None:
        return self._experiments.get(experiment_id)

    def get_all_experiments(self) -> list[Experiment]:
        return list(self._experiments.values())

    def get_active_experiments(self) -> list[Experiment]:
        return [e for e in self._experiments.values() if e.status == "running"]

    def update_experiment_status(self, experiment_id: str, status: ExperimentStatus) -> bool:
        """Change status, stamping start/end dates the first time they apply."""
        experiment = self._experiments.get(experiment_id)
        if experiment is None:
            return False

        previous = experiment.status
        experiment.status = status
        if status == "running" and experiment.start_date is None:
            experiment.start_date = utcnow()
        if status == "completed" and experiment.end_date is None:
            experiment.end_date = utcnow()

        self.logger.info("Experiment %s: %s -> %s", experiment_id, previous, status)
        return True

    def start_experiment(self, experiment_id: str) -> bool:
        return self.update_experiment_status(experiment_id, "running")

    def pause_experiment(self, experiment_id: str) -> bool:
        return self.update_experiment_status(experiment_id, "paused")

    def stop_experiment(self, experiment_id: str) -> bool:
        return self.update_experiment_status(experiment_id, "completed")

    def archive_experiment(self, experiment_id: str) -> bool:
        return self.update_experiment_status(experiment_id, "archived")

    # =========================================================================
    # Variant Assignment
    # =========================================================================

    @staticmethod
    def _assignment_key(
        experiment_id: str, user_id: str | None, session_id: str | None
    ) -> str | None:
        if user_id:
            return f"{experiment_id}:user:{user_id}"
        if session_id:
            return f"{experiment_id}:session:{session_id}"
        return None

    def _persists(self, experiment: Experiment) -> bool:
        if experiment.settings.persist_assignment is not None:
            return experiment.settings.persist_assignment
        return self.settings.persist_assignments

    def assign_variant(
        self,
        experiment_id: str,
        user_id: str | None = None,
        session_id: str | None = None,
    ) -> ExperimentAssignment | None:
        """
        Assign (or recall) a variant for a user or session.

        Returns None unless the experiment is running and the identity passes
        the experiment's targeting. With a user id the choice is a pure
        function of (user_id, experiment_id); otherwise it is random.
        """
        experiment = self._experiments.get(experiment_id)
        if experiment is None or experiment.status != "running":
            return None

        key = self._assignment_key(experiment_id, user_id, session_id)
        persistent = self._persists(experiment)

        existing = self._assignments.get(key) if key else None
        if existing is not None and persistent:
            return existing

        if not self._is_eligible(experiment, user_id, session_id):
            self.logger.debug("Identity not eligible for experiment %s", experiment_id)
            return None

        if user_id:
            variant = select_variant(
                experiment.variants, assignment_bucket(user_id, experiment_id)
            )
        else:
            variant = select_variant(experiment.variants, self.rng.random() * BUCKET_COUNT)

        assignment = ExperimentAssignment(
            experiment_id=experiment_id,
            variant_id=variant.id,
            user_id=user_id,
            session_id=session_id,
            persistent=persistent,
        )
        self._assignments[key or f"{experiment_id}:anonymous:{uuid.uuid4().hex}"] = assignment
        return assignment

    def _is_eligible(
        self, experiment: Experiment, user_id: str | None, session_id: str | None
    ) -> bool:
        targeting = experiment.targeting
        if targeting is None:
            return True

        rule = targeting.as_rule()
        has_audience = bool(
            rule.segments
            or rule.cohorts
            or rule.exclude_segments
            or rule.exclude_cohorts
            or rule.custom_logic_id
        )
        if has_audience:
            profile_key = user_id or session_id
            if not profile_key:
                return False
            if self.segmentation is None:
                self.logger.warning(
                    "Experiment %s has audience targeting but no segmentation engine",
                    experiment.id,
                )
                return False
            if not self.segmentation.evaluate_targeting(profile_key, rule):
                return False

        if targeting.user_percentage is not None:
            identity = user_id or session_id
            if identity:
                point = string_hash(f"{experiment.id}:traffic:{identity}") % BUCKET_COUNT
            else:
                point = self.rng.random() * BUCKET_COUNT
            if point >= targeting.user_percentage:
                return False

        return True

    def get_assignment(
        self,
        experiment_id: str,
        user_id: str | None = None,
        session_id: str | None = None,
    ) -> ExperimentAssignment | None:
        key = self._assignment_key(experiment_id, user_id, session_id)
        return self._assignments.get(key) if key else None

    def get_variant_config(
        self,
        experiment_id: str,
        user_id: str | None = None,
        session_id: str | None = None,
    ) -> dict[str, Any] | None:
        assignment = self.get_assignment(experiment_id, user_id, session_id)
        experiment = self._experiments.get(experiment_id)
        if assignment is None or experiment is None:
            return None
        variant = experiment.get_variant(assignment.variant_id)
        return variant.config if variant else None

    # =========================================================================
    # Event Tracking
    # =========================================================================

    def track_goal_event(
        self,
        experiment_id: str,
        goal_id: str,
        user_id: str | None = None,
        session_id: str | None = None,
    ) -> bool:
        """Count a conversion for the identity's variant; a no-op without an assignment."""
        assignment = self.get_assignment(experiment_id, user_id, session_id)
        if assignment is None:
            return False

        experiment = self._experiments.get(experiment_id)
        if experiment is None or experiment.status != "running":
            return False

        if not any(g.id == goal_id for g in experiment.goals):
            self.logger.debug("Ignoring unknown goal %s for experiment %s", goal_id, experiment_id)
            return False

        self._goal_events[experiment_id][assignment.variant_id][goal_id] += 1
        return True

    def get_participant_count(self, experiment_id: str, variant_id: str | None = None) -> int:
        return sum(
            1
            for a in self._assignments.values()
            if a.experiment_id == experiment_id
            and (variant_id is None or a.variant_id == variant_id)
        )

    # =========================================================================
    # Results & Analysis
    # =========================================================================

    def get_results(self, experiment_id: str) -> list[ExperimentResult]:
        experiment = self._experiments.get(experiment_id)
        if experiment is None:
            return []

        results = []
        for variant in experiment.variants:
            participants = self.get_participant_count(experiment_id, variant.id)
            counters = self._goal_events.get(experiment_id, {}).get(variant.id, {})
            conversions = {g.id: counters.get(g.id, 0) for g in experiment.goals}
            rates = {
                goal_id: (count / participants * 100 if participants > 0 else 0.0)
                for goal_id, count in conversions.items()
            }
            results.append(
                ExperimentResult(
                    experiment_id=experiment_id,
                    variant_id=variant.id,
                    participant_count=participants,
                    goal_conversions=conversions,
                    conversion_rates=rates,
                )
            )
        return results

    def _required_confidence(self, experiment: Experiment) -> float:
        if experiment.settings.required_confidence is not None:
            return experiment.settings.required_confidence
        return self.settings.default_required_confidence

    def _minimum_sample_size(self, experiment: Experiment) -> int:
        if experiment.settings.minimum_sample_size is not None:
            return experiment.settings.minimum_sample_size
        return self.settings.default_minimum_sample_size

    def analyze_experiment(self, experiment_id: str) -> ExperimentAnalysis | None:
        """
        Compare every non-control variant with control on the primary goal.

        The winner is the significant variant with the largest positive lift;
        significance means p below 1 - required_confidence / 100.
        """
        experiment = self._experiments.get(experiment_id)
        if experiment is None:
            return None

        results = self.get_results(experiment_id)
        total = sum(r.participant_count for r in results)
        minimum = self._minimum_sample_size(experiment)
        if total < minimum:
            return ExperimentAnalysis(
                experiment_id=experiment_id,
                status="insufficient_data",
                results=results,
                insights=[f"Need at least {minimum} participants, currently have {total}"],
            )

        goal = experiment.primary_goal
        if goal is None:
            return ExperimentAnalysis(
                experiment_id=experiment_id,
                status="insufficient_data",
                results=results,
                insights=["No goals defined for experiment"],
            )

        control = experiment.control
        control_result = next(r for r in results if r.variant_id == control.id)
        control_rate = control_result.conversion_rates[goal.id]
        required_confidence = self._required_confidence(experiment)
        alpha = 1 - required_confidence / 100

        comparisons: list[VariantComparison] = []
        insights: list[str] = []
        winner: str | None = None
        best_lift = 0.0

        for result in results:
            if result.variant_id == control.id:
                continue

            variant_rate = result.conversion_rates[goal.id]
            lift = (variant_rate - control_rate) / control_rate * 100 if control_rate > 0 else 0.0
            test = two_proportion_z_test(
                control_result.goal_conversions[goal.id],
                control_result.participant_count,
                result.goal_conversions[goal.id],
                result.participant_count,
            )
            significant = test.p_value < alpha

            if significant and lift > best_lift:
                best_lift = lift
                winner = result.variant_id

            comparisons.append(
                VariantComparison(
                    variant_id=result.variant_id,
                    control_rate=control_rate,
                    variant_rate=variant_rate,
                    lift=lift,
                    z_score=test.z_score,
                    p_value=test.p_value,
                    significant=significant,
                )
            )
            name = experiment.get_variant(result.variant_id).display_name
            insights.append(
                f"{name}: {variant_rate:.2f}% conversion "
                f"({'+' if lift > 0 else ''}{lift:.1f}% vs control)"
                + (" - significant" if significant else "")
            )

        return ExperimentAnalysis(
            experiment_id=experiment_id,
            status="significant" if winner else "no_significant_difference",
            results=results,
            comparisons=comparisons,
            winner=winner,
            confidence=required_confidence if winner else None,
            statistical_significance=winner is not None,
            recommended_action="scale_winner" if winner else "continue",
            insights=insights,
        )

    def get_variant_performance(self, experiment_id: str) -> list[VariantPerformance]:
        """Primary-goal performance per variant; lift is None for control."""
        experiment = self._experiments.get(experiment_id)
        if experiment is None or experiment.primary_goal is None:
            return []

        goal = experiment.primary_goal
        control = experiment.control
        results = self.get_results(experiment_id)
        control_rate = next(
            (r.conversion_rates[goal.id] for r in results if r.variant_id == control.id), 0.0
        )

        rows = []
        for result in results:
            variant = experiment.get_variant(result.variant_id)
            rate = result.conversion_rates[goal.id]
            lift = None
            if result.variant_id != control.id:
                lift = (rate - control_rate) / control_rate * 100 if control_rate > 0 else 0.0
            rows.append(
                VariantPerformance(
                    variant_id=result.variant_id,
                    variant_name=variant.display_name,
                    participants=result.participant_count,
                    conversions=result.goal_conversions[goal.id],
                    conversion_rate=rate,
                    lift=lift,
                )
            )
        return rows

    # =========================================================================
    # Auto Winner Selection
    # =========================================================================

    def check_auto_winner(self, experiment_id: str) -> str | None:
        """Stop the experiment and return the winner once one is significant."""
        experiment = self._experiments.get(experiment_id)
        if experiment is None or not experiment.settings.auto_winner:
            return None

        analysis = self.analyze_experiment(experiment_id)
        if analysis is None or analysis.status != "significant" or not analysis.winner:
            return None

        self.stop_experiment(experiment_id)
        self.logger.info("Experiment %s auto-selected winner %s", experiment_id, analysis.winner)
        return analysis.winner

    # =========================================================================
    # Data Export
    # =========================================================================

    def export_data(self) -> dict[str, Any]:
        """Plain JSON-compatible snapshot of definitions, assignments and counters."""
        return {
            "experiments": [e.model_dump(mode="json") for e in self._experiments.values()],
            "assignments": [a.model_dump(mode="json") for a in self._assignments.values()],
            "goal_events": [
                {
                    "experiment_id": experiment_id,
                    "variant_id": variant_id,
                    "goal_id": goal_id,
                    "count": count,
                }
                for experiment_id, variants in self._goal_events.items()
                for variant_id, goals in variants.items()
                for goal_id, count in goals.items()
            ],
            "results": [
                {
                    "experiment_id": experiment_id,
                    "results": [r.model_dump(mode="json") for r in self.get_results(experiment_id)],
                }
                for experiment_id in self._experiments
            ],
        }

    def restore_assignments(
        self, records: Iterable[ExperimentAssignment | Mapping[str, Any]]
    ) -> int:
        """Load previously exported assignments; returns how many were restored."""
        restored = 0
        for record in records:
            assignment = (
                record
                if isinstance(record, ExperimentAssignment)
                else ExperimentAssignment.model_validate(record)
            )
            key = self._assignment_key(
                assignment.experiment_id, assignment.user_id, assignment.session_id
            )
            if key is None:
                key = f"{assignment.experiment_id}:anonymous:{uuid.uuid4().hex}"
            self._assignments[key] = assignment
            restored += 1
        return restored

    def restore_data(self, data: Mapping[str, Any]) -> None:
        """Rebuild engine state from `export_data` output."""
        for definition in data.get("experiments", []):
            experiment = self._parse_experiment(definition)
            errors = validate_experiment(experiment)
            if errors:
                raise DefinitionError("; ".join(errors), "experiment", experiment.id, errors)
            self._experiments[experiment.id] = experiment

        self.restore_assignments(data.get("assignments", []))

        for row in data.get("goal_events", []):
            self._goal_events[row["experiment_id"]][row["variant_id"]][row["goal_id"]] = int(
                row["count"]
            )

    def clear_data(self) -> None:
        self._experiments.clear()
        self._assignments.clear()
        self._goal_events.clear()
