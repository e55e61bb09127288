"""Decision engine module for predicate, segmentation, experiment and flow decisions."""

from decision_engine.callbacks import CallbackRegistry
from decision_engine.definitions import (
    DecisioningEngines,
    build_engines,
    load_definitions,
    validate_definitions,
)
from decision_engine.errors import DefinitionError, EngineError, UnknownEntityError
from decision_engine.experiments import ExperimentEngine
from decision_engine.flows import FlowEngine
from decision_engine.guides import GuideEngine, TelemetrySink
from decision_engine.predicates import PredicateEvaluator, evaluate_conditions, evaluate_predicate
from decision_engine.segmentation import SegmentationEngine

__all__ = [
    "CallbackRegistry",
    "DecisioningEngines",
    "DefinitionError",
    "EngineError",
    "ExperimentEngine",
    "FlowEngine",
    "GuideEngine",
    "PredicateEvaluator",
    "SegmentationEngine",
    "TelemetrySink",
    "UnknownEntityError",
    "build_engines",
    "evaluate_conditions",
    "evaluate_predicate",
    "load_definitions",
    "validate_definitions",
]
