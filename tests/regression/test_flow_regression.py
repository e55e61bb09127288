"""Regression tests for end-to-end flow walks."""

from __future__ import annotations

from syrupy.assertion import SnapshotAssertion

from conftest import make_flow, make_flow_step
from config.settings import Settings
from decision_engine import build_engines
from decision_engine.flows import FlowEngine
from models.schemas import BranchCondition, FlowBranch


class TestFlowWalkRegression:
    """Regression tests for complete flow executions."""

    def test_three_step_walk_from_document(
        self, definitions_data: dict, settings: Settings
    ) -> None:
        """Regression: welcome -> profile -> done completes at 100%."""
        engines = build_engines(definitions_data, settings=settings)
        flows = engines.flows
        completed: list[str] = []
        flows.on_flow_complete("onboarding", lambda flow_id, context: completed.append(flow_id))

        execution_id = flows.start_flow("onboarding")
        visited = [flows.get_current_step(execution_id).step_id]
        for _ in range(len(definitions_data["flows"][0]["steps"])):
            step = flows.advance_flow(execution_id, "completed")
            if step is not None:
                visited.append(step.step_id)

        progress = flows.get_flow_progress(execution_id)
        assert visited == ["welcome", "profile", "done"]
        assert progress.percent_complete == 100
        assert progress.is_complete
        assert completed == ["onboarding"]
        assert flows.get_flow_completion_rate("onboarding") == 100

    def test_branch_priority_is_stable(self) -> None:
        """Regression: Equal-priority branches resolve in declaration order every time."""
        branches = [
            FlowBranch(
                condition=BranchCondition(type="userAction", action="clicked"),
                target_step_id=target,
                priority=3,
            )
            for target in ("s3", "s2")
        ]
        flows = FlowEngine()
        flows.define_flow(
            make_flow(
                steps=[
                    make_flow_step("s1", 1, branches),
                    make_flow_step("s2", 2),
                    make_flow_step("s3", 3),
                ]
            )
        )
        targets = set()
        for _ in range(20):
            execution_id = flows.start_flow("onboarding")
            targets.add(flows.advance_flow(execution_id, "clicked").step_id)
        assert targets == {"s3"}

    def test_skipped_steps_do_not_count_as_progress(self, snapshot: SnapshotAssertion) -> None:
        """Regression: Progress counts completed steps only."""
        flows = FlowEngine()
        flows.define_flow(make_flow(allow_skip=True))
        execution_id = flows.start_flow("onboarding")
        flows.skip_current_step(execution_id)
        flows.advance_flow(execution_id, "completed")
        flows.skip_current_step(execution_id)

        progress = flows.get_flow_progress(execution_id)
        assert progress.is_complete
        assert progress.completed_steps == 1
        assert progress.percent_complete == 33
        assert snapshot == progress.model_dump(exclude={"execution_id"})

        execution = flows.get_flow_execution(progress.execution_id)
        assert snapshot == execution.model_dump(
            include={
                "flow_id": True,
                "status": True,
                "context": {
                    "current_step_id",
                    "previous_steps",
                    "completed_steps",
                    "skipped_steps",
                },
            }
        )
