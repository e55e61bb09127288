"""Loading, validating and wiring a definitions document."""

from __future__ import annotations

import json
import logging
import random
from collections.abc import Mapping
from pathlib import Path
from typing import Any

from pydantic import ValidationError

from config.settings import Settings, get_settings
from decision_engine.callbacks import CallbackRegistry
from decision_engine.errors import DefinitionError, format_validation_errors
from decision_engine.experiments import ExperimentEngine, validate_experiment
from decision_engine.flows import FlowEngine, validate_flow
from decision_engine.guides import GuideEngine, TelemetrySink
from decision_engine.predicates import PredicateEvaluator, lint_conditions
from decision_engine.segmentation import SegmentationEngine, validate_segment
from models.schemas import DefinitionsDocument, ValidationReport

logger = logging.getLogger(__name__)


def _duplicate_ids(ids: list[str]) -> list[str]:
    seen: set[str] = set()
    duplicates: list[str] = []
    for entity_id in ids:
        if entity_id in seen and entity_id not in duplicates:
            duplicates.append(entity_id)
        seen.add(entity_id)
    return duplicates


def _check_document(
    document: DefinitionsDocument, settings: Settings
) -> tuple[list[str], list[str]]:
    errors: list[str] = []
    warnings: list[str] = []

    collections = {
        "segments": [s.id for s in document.segments],
        "cohorts": [c.id for c in document.cohorts],
        "experiments": [e.id for e in document.experiments],
        "flows": [f.id for f in document.flows],
        "checklists": [c.id for c in document.checklists],
        "steps": [s.id for s in document.steps],
    }
    for name, ids in collections.items():
        for duplicate in _duplicate_ids(ids):
            errors.append(f"{name}: duplicate id {duplicate!r}")

    segment_ids = set(collections["segments"])
    cohort_ids = set(collections["cohorts"])

    for i, segment in enumerate(document.segments):
        errors.extend(f"segments.{i}: {msg}" for msg in validate_segment(segment))
        for rule in segment.rules:
            for condition in rule.conditions:
                if condition.type == "cohort" and condition.value not in cohort_ids:
                    warnings.append(
                        f"segments.{i}: cohort {condition.value!r} is not defined in this document"
                    )

    for i, experiment in enumerate(document.experiments):
        errors.extend(f"experiments.{i}: {msg}" for msg in validate_experiment(experiment))
        targeting = experiment.targeting
        if targeting is None:
            continue
        for segment_id in targeting.segments + targeting.exclude_segments:
            if segment_id not in segment_ids:
                warnings.append(
                    f"experiments.{i}.targeting: segment {segment_id!r} is not defined"
                )
        for cohort_id in targeting.cohorts + targeting.exclude_cohorts:
            if cohort_id not in cohort_ids:
                warnings.append(f"experiments.{i}.targeting: cohort {cohort_id!r} is not defined")

    for i, flow in enumerate(document.flows):
        errors.extend(f"flows.{i}: {msg}" for msg in validate_flow(flow))

    for i, checklist in enumerate(document.checklists):
        for duplicate in _duplicate_ids([item.id for item in checklist.items]):
            errors.append(f"checklists.{i}: duplicate item id {duplicate!r}")

    for i, step in enumerate(document.steps):
        warnings.extend(
            lint_conditions(step.when, f"steps.{i}.when", settings.max_regex_length, logger)
        )

    return errors, warnings


def validate_definitions(
    data: Mapping[str, Any] | DefinitionsDocument,
    settings: Settings | None = None,
) -> ValidationReport:
    """
    Validate a definitions document without building any engine.

    Schema problems and broken engine invariants are errors; conditions
    that can never match are warnings.
    """
    settings = settings or get_settings()
    if isinstance(data, DefinitionsDocument):
        document = data
    else:
        try:
            document = DefinitionsDocument.model_validate(data)
        except ValidationError as e:
            return ValidationReport(valid=False, errors=format_validation_errors(e))

    errors, warnings = _check_document(document, settings)
    return ValidationReport(valid=not errors, errors=errors, warnings=warnings)


def load_definitions(path: str | Path, settings: Settings | None = None) -> DefinitionsDocument:
    """Read and validate a JSON definitions document."""
    path = Path(path)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise DefinitionError(f"Malformed JSON: {e}", "document", str(path)) from e

    report = validate_definitions(data, settings)
    for warning in report.warnings:
        logger.warning("%s: %s", path, warning)
    if not report.valid:
        raise DefinitionError("; ".join(report.errors), "document", str(path), report.errors)

    return DefinitionsDocument.model_validate(data)


class DecisioningEngines:
    """The engines built from one document, sharing a callback registry."""

    def __init__(
        self,
        callbacks: CallbackRegistry,
        predicates: PredicateEvaluator,
        segmentation: SegmentationEngine,
        experiments: ExperimentEngine,
        flows: FlowEngine,
        guides: GuideEngine,
    ) -> None:
        self.callbacks = callbacks
        self.predicates = predicates
        self.segmentation = segmentation
        self.experiments = experiments
        self.flows = flows
        self.guides = guides

    def export_data(self) -> dict[str, Any]:
        return {
            "segmentation": self.segmentation.export_data(),
            "experiments": self.experiments.export_data(),
            "flows": self.flows.export_data(),
        }

    def clear_data(self) -> None:
        self.segmentation.clear_data()
        self.experiments.clear_data()
        self.flows.clear_data()


def build_engines(
    document: DefinitionsDocument | Mapping[str, Any],
    settings: Settings | None = None,
    callbacks: CallbackRegistry | None = None,
    telemetry: TelemetrySink | None = None,
    rng: random.Random | None = None,
    log: logging.Logger | None = None,
) -> DecisioningEngines:
    """
    Create every engine and load the document's definitions into them.

    Experiments keep the status recorded in the document; cohorts keep
    their member lists.
    """
    settings = settings or get_settings()
    log = log or logger
    if not isinstance(document, DefinitionsDocument):
        report = validate_definitions(document, settings)
        if not report.valid:
            raise DefinitionError("; ".join(report.errors), "document", None, report.errors)
        document = DefinitionsDocument.model_validate(document)

    if callbacks is None:
        callbacks = CallbackRegistry(log)
    segmentation = SegmentationEngine(callbacks=callbacks, logger=log)
    experiments = ExperimentEngine(
        settings=settings, segmentation=segmentation, rng=rng, logger=log
    )
    flows = FlowEngine(callbacks=callbacks, logger=log)
    guides = GuideEngine(
        document.steps, callbacks=callbacks, telemetry=telemetry, settings=settings, logger=log
    )

    for cohort in document.cohorts:
        segmentation.create_cohort(cohort.id, cohort.name, cohort.description, cohort.user_ids)
    for segment in document.segments:
        segmentation.define_segment(segment)

    for experiment in document.experiments:
        experiments.create_experiment(experiment)
        if experiment.status != "draft":
            experiments.update_experiment_status(experiment.id, experiment.status)

    for flow in document.flows:
        flows.define_flow(flow)
    for checklist in document.checklists:
        flows.create_checklist(checklist.id, checklist.title, checklist.items)

    return DecisioningEngines(
        callbacks=callbacks,
        predicates=PredicateEvaluator(settings=settings, logger=log),
        segmentation=segmentation,
        experiments=experiments,
        flows=flows,
        guides=guides,
    )
