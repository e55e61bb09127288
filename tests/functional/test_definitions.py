"""Functional tests for definitions documents and engine wiring."""

from __future__ import annotations

import copy
import json
import logging
from pathlib import Path
from typing import Any

import pytest

from config.settings import Settings
from decision_engine import build_engines, load_definitions, validate_definitions
from decision_engine.callbacks import CallbackRegistry
from decision_engine.errors import DefinitionError


def write_document(directory: Path, data: Any) -> Path:
    path = directory / "definitions.json"
    path.write_text(json.dumps(data), encoding="utf-8")
    return path


class TestValidateDefinitions:
    """Test document validation."""

    def test_valid_document(self, definitions_data: dict, settings: Settings) -> None:
        """Test: The sample document has no errors or warnings."""
        report = validate_definitions(definitions_data, settings)
        assert report.valid
        assert report.errors == []
        assert report.warnings == []

    def test_json_round_trip_same_report(self, definitions_data: dict, settings: Settings) -> None:
        """Test: Serializing a document does not change its verdict."""
        definitions_data["steps"].append(
            {"id": "bad", "type": "tooltip", "content": {"body": "x"}, "when": {}}
        )
        original = validate_definitions(definitions_data, settings)
        round_tripped = validate_definitions(json.loads(json.dumps(definitions_data)), settings)
        assert original == round_tripped

    def test_schema_errors(self, definitions_data: dict, settings: Settings) -> None:
        """Test: Schema violations are reported with their location."""
        definitions_data["experiments"][0]["variants"][0]["weight"] = 150
        report = validate_definitions(definitions_data, settings)
        assert not report.valid
        assert report.errors[0].startswith("experiments.0.variants.0.weight")

    def test_engine_invariant_errors(self, definitions_data: dict, settings: Settings) -> None:
        """Test: Broken engine invariants are errors prefixed by location."""
        definitions_data["experiments"][0]["variants"][1]["weight"] = 60
        definitions_data["flows"][0]["start_step_id"] = "missing"
        definitions_data["segments"][0]["rules"] = []
        report = validate_definitions(definitions_data, settings)

        assert not report.valid
        assert "experiments.0: Variant weights must sum to 100, got 110" in report.errors
        assert "flows.0: Start step 'missing' not found in flow steps" in report.errors
        assert "segments.0: Segment must have at least one rule" in report.errors

    def test_duplicate_ids(self, definitions_data: dict, settings: Settings) -> None:
        """Test: Ids must be unique within each collection."""
        definitions_data["flows"].append(copy.deepcopy(definitions_data["flows"][0]))
        definitions_data["checklists"][0]["items"].append({"id": "invite", "title": "Again"})
        report = validate_definitions(definitions_data, settings)
        assert "flows: duplicate id 'onboarding'" in report.errors
        assert "checklists.0: duplicate item id 'invite'" in report.errors

    def test_warnings_do_not_invalidate(self, definitions_data: dict, settings: Settings) -> None:
        """Test: Unmatchable conditions and dangling references are warnings."""
        definitions_data["experiments"][0]["targeting"] = {"segments": ["ghosts"]}
        definitions_data["steps"].append(
            {"id": "never", "type": "modal", "content": {"body": "x"}, "when": {}}
        )
        definitions_data["steps"].append(
            {
                "id": "redos",
                "type": "modal",
                "content": {"body": "x"},
                "when": {"path_regex": "(a+)+"},
            }
        )
        report = validate_definitions(definitions_data, settings)

        assert report.valid
        assert report.warnings == [
            "experiments.0.targeting: segment 'ghosts' is not defined",
            "steps.1.when: empty conditions, the step can never activate",
            "steps.2.when.path_regex: pattern rejected by the regex guard",
        ]


class TestLoadDefinitions:
    """Test reading documents from disk."""

    def test_load_valid(self, tmp_path: Path, definitions_data: dict, settings: Settings) -> None:
        """Test: A valid file loads into a document."""
        document = load_definitions(write_document(tmp_path, definitions_data), settings)
        assert [e.id for e in document.experiments] == ["exp1"]
        assert document.steps[0].when.error_id == "PAYMENT_DECLINED"

    def test_malformed_json(self, tmp_path: Path, settings: Settings) -> None:
        """Test: Unparseable JSON raises DefinitionError."""
        path = tmp_path / "broken.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(DefinitionError, match="Malformed JSON"):
            load_definitions(path, settings)

    def test_invalid_document(
        self, tmp_path: Path, definitions_data: dict, settings: Settings
    ) -> None:
        """Test: Documents with errors raise with every error attached."""
        definitions_data["flows"][0]["start_step_id"] = "missing"
        with pytest.raises(DefinitionError) as exc_info:
            load_definitions(write_document(tmp_path, definitions_data), settings)
        assert exc_info.value.entity_type == "document"
        assert len(exc_info.value.errors) == 1

    def test_warnings_logged(
        self,
        tmp_path: Path,
        definitions_data: dict,
        settings: Settings,
        caplog: pytest.LogCaptureFixture,
    ) -> None:
        """Test: Warnings are logged while loading."""
        definitions_data["steps"][0]["when"] = {}
        with caplog.at_level(logging.WARNING):
            load_definitions(write_document(tmp_path, definitions_data), settings)
        assert "empty conditions" in caplog.text


class TestBuildEngines:
    """Test wiring engines from a document."""

    def test_engines_loaded(
        self, definitions_data: dict, settings: Settings, callbacks: CallbackRegistry
    ) -> None:
        """Test: Every definition lands in its engine with a shared registry."""
        engines = build_engines(definitions_data, settings=settings, callbacks=callbacks)

        assert engines.callbacks is callbacks
        assert engines.flows.callbacks is callbacks
        assert engines.segmentation.callbacks is callbacks
        assert engines.guides.callbacks is callbacks
        assert engines.experiments.segmentation is engines.segmentation

        assert engines.segmentation.is_user_in_cohort("beta", "u-1")
        assert engines.segmentation.get_segment("power-users") is not None
        assert engines.experiments.get_experiment("exp1").status == "running"
        assert engines.flows.get_checklist("setup").required == 1

    def test_engines_usable(self, definitions_data: dict, settings: Settings) -> None:
        """Test: The built engines answer decisioning questions."""
        engines = build_engines(definitions_data, settings=settings)

        assignment = engines.experiments.assign_variant("exp1", user_id="u-42")
        assert assignment.variant_id in ("control", "green")

        engines.segmentation.set_profile("u-7", {"behavior": {"session_count": 12}})
        assert engines.segmentation.get_user_segments("u-7") == ["power-users"]

        execution_id = engines.flows.start_flow("onboarding")
        assert engines.flows.advance_flow(execution_id, "completed").step_id == "profile"

        active = engines.guides.resolve_active_steps(
            {"error_id": "PAYMENT_DECLINED"}, {"path": "/billing"}
        )
        assert [step.id for step in active] == ["billing-help"]

        exported = engines.export_data()
        assert set(exported) == {"segmentation", "experiments", "flows"}

        engines.clear_data()
        assert engines.experiments.get_all_experiments() == []

    def test_invalid_document_rejected(self, definitions_data: dict, settings: Settings) -> None:
        """Test: build_engines refuses documents with errors."""
        definitions_data["experiments"][0]["variants"][0]["is_control"] = False
        with pytest.raises(DefinitionError, match="exactly one control"):
            build_engines(definitions_data, settings=settings)
