"""Multi-step flow execution with branching, navigation and checklists."""

from __future__ import annotations

import logging
import uuid
from collections import defaultdict
from collections.abc import Callable, Iterable, Mapping
from typing import Any

from pydantic import ValidationError

from decision_engine.callbacks import CallbackRegistry
from decision_engine.errors import DefinitionError, UnknownEntityError, format_validation_errors
from models.schemas import (
    Checklist,
    ChecklistItem,
    Flow,
    FlowAction,
    FlowBranch,
    FlowExecution,
    FlowExecutionContext,
    FlowProgress,
    FlowStep,
    round_half_up,
    utcnow,
)

StepListener = Callable[[str, FlowExecutionContext], None]
FlowListener = Callable[[str, FlowExecutionContext], None]


def validate_flow(flow: Flow) -> list[str]:
    """Definition errors for a flow (empty when valid)."""
    errors: list[str] = []
    if not flow.steps:
        errors.append("Flow must have at least one step")
        return errors

    step_ids = [s.step_id for s in flow.steps]
    duplicates = sorted({s for s in step_ids if step_ids.count(s) > 1})
    if duplicates:
        errors.append(f"Duplicate step ids: {', '.join(duplicates)}")

    known = set(step_ids)
    if flow.start_step_id not in known:
        errors.append(f"Start step {flow.start_step_id!r} not found in flow steps")
    if flow.end_step_id is not None and flow.end_step_id not in known:
        errors.append(f"End step {flow.end_step_id!r} not found in flow steps")

    for step in flow.steps:
        for branch in step.branches:
            if branch.target_step_id not in known:
                errors.append(
                    f"Branch target {branch.target_step_id!r} in step {step.step_id!r} not found"
                )
            condition = branch.condition
            if condition.type == "userAction" and condition.action is None:
                errors.append(f"userAction branch in step {step.step_id!r} has no action")
            if condition.type == "customLogic" and not condition.custom_logic_id:
                errors.append(f"customLogic branch in step {step.step_id!r} has no custom_logic_id")

    return errors


class FlowEngine:
    """
    Advances executions through flow definitions.

    Executions move active -> paused <-> active and end as aborted or
    completed; terminal executions are never mutated again.
    """

    def __init__(
        self,
        callbacks: CallbackRegistry | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.logger = logger or logging.getLogger(__name__)
        self.callbacks = callbacks if callbacks is not None else CallbackRegistry(self.logger)
        self._flows: dict[str, Flow] = {}
        self._step_index: dict[str, dict[str, int]] = {}
        self._executions: dict[str, FlowExecution] = {}
        self._checklists: dict[str, Checklist] = {}
        self._step_listeners: dict[str, list[StepListener]] = defaultdict(list)
        self._flow_listeners: dict[str, list[FlowListener]] = defaultdict(list)

    # =========================================================================
    # Flow Definitions
    # =========================================================================

    def define_flow(self, flow: Flow | Mapping[str, Any]) -> Flow:
        """Validate and store a flow; its step id -> index map is built here."""
        flow = self._parse_flow(flow)
        if flow.id in self._flows:
            raise DefinitionError("Flow already exists", "flow", flow.id)

        errors = validate_flow(flow)
        if errors:
            raise DefinitionError("; ".join(errors), "flow", flow.id, errors)

        self._flows[flow.id] = flow
        self._step_index[flow.id] = {s.step_id: i for i, s in enumerate(flow.steps)}
        self.logger.info("Flow %s defined with %d steps", flow.id, len(flow.steps))
        return flow

    @staticmethod
    def _parse_flow(flow: Flow | Mapping[str, Any]) -> Flow:
        if isinstance(flow, Flow):
            return flow.model_copy(deep=True)
        try:
            return Flow.model_validate(flow)
        except ValidationError as e:
            errors = format_validation_errors(e)
            raise DefinitionError(
                "; ".join(errors), "flow", str(flow.get("id") or ""), errors
            ) from e

    def get_flow(self, flow_id: str) -> Flow | None:
        return self._flows.get(flow_id)

    def get_all_flows(self) -> list[Flow]:
        return list(self._flows.values())

    def remove_flow(self, flow_id: str) -> None:
        """Abort the flow's open executions, then forget the definition."""
        self.stop_flow(flow_id)
        self._flows.pop(flow_id, None)
        self._step_index.pop(flow_id, None)

    def _get_step(self, flow_id: str, step_id: str) -> FlowStep | None:
        index = self._step_index.get(flow_id, {}).get(step_id)
        if index is None:
            return None
        return self._flows[flow_id].steps[index]

    # =========================================================================
    # Flow Execution
    # =========================================================================

    def start_flow(self, flow_id: str, user_data: Mapping[str, Any] | None = None) -> str:
        """Create an active execution positioned at the start step."""
        flow = self._flows.get(flow_id)
        if flow is None:
            raise UnknownEntityError("flow", flow_id)

        now = utcnow()
        execution_id = f"flow_{flow_id}_{uuid.uuid4().hex[:12]}"
        context = FlowExecutionContext(
            flow_id=flow_id,
            current_step_id=flow.start_step_id,
            user_data=dict(user_data or {}),
            start_time=now,
            last_update_time=now,
        )
        self._executions[execution_id] = FlowExecution(
            flow_id=flow_id,
            execution_id=execution_id,
            context=context,
            start_time=now,
        )
        self.logger.debug("Started %s at step %s", execution_id, flow.start_step_id)
        return execution_id

    def get_current_step(self, execution_id: str) -> FlowStep | None:
        execution = self._executions.get(execution_id)
        if execution is None:
            return None
        return self._get_step(execution.flow_id, execution.context.current_step_id)

    def advance_flow(self, execution_id: str, action: FlowAction | None = None) -> FlowStep | None:
        """
        Record the outcome of the current step and move to the next one.

        Returns the new current step, or None when the flow completed or the
        execution is unknown or not active.
        """
        execution = self._executions.get(execution_id)
        if execution is None or execution.status != "active":
            return None

        flow = self._flows.get(execution.flow_id)
        current = self.get_current_step(execution_id)
        if flow is None or current is None:
            return None

        context = execution.context
        if action == "completed":
            context.completed_steps.add(current.step_id)
            context.skipped_steps.discard(current.step_id)
        elif action == "skipped":
            context.skipped_steps.add(current.step_id)
            context.completed_steps.discard(current.step_id)

        context.previous_steps.append(current.step_id)
        context.last_update_time = utcnow()

        self._fire_step_listeners(current.step_id, context)

        next_step = None
        if current.step_id != flow.end_step_id:
            next_step = self._determine_next_step(flow, current, context, action)

        if next_step is None:
            self._complete(execution, flow)
            return None

        context.current_step_id = next_step.step_id
        return next_step

    def _determine_next_step(
        self,
        flow: Flow,
        current: FlowStep,
        context: FlowExecutionContext,
        action: FlowAction | None,
    ) -> FlowStep | None:
        # sorted() is stable, so equal priorities keep declaration order
        for branch in sorted(current.branches, key=lambda b: -b.priority):
            if self._evaluate_branch(branch, context, action):
                self.logger.debug(
                    "Branch from %s to %s taken", current.step_id, branch.target_step_id
                )
                return self._get_step(flow.id, branch.target_step_id)

        following = [s for s in flow.steps if s.order > current.order]
        if not following:
            return None
        return min(following, key=lambda s: s.order)

    def _evaluate_branch(
        self,
        branch: FlowBranch,
        context: FlowExecutionContext,
        action: FlowAction | None,
    ) -> bool:
        condition = branch.condition
        if condition.type == "userAction":
            return action is not None and condition.action == action
        if condition.type == "customLogic":
            return self.callbacks.check(condition.custom_logic_id, context)
        if condition.type == "event":
            self.logger.debug(
                "Event branch conditions are not supported (event %r)", condition.event_name
            )
        return False

    def go_to_previous_step(self, execution_id: str) -> FlowStep | None:
        """Pop the back-navigation stack when the flow allows going back."""
        execution = self._executions.get(execution_id)
        if execution is None or execution.status != "active":
            return None

        flow = self._flows.get(execution.flow_id)
        if flow is None or not flow.settings.allow_back:
            return None
        if not execution.context.previous_steps:
            return None

        previous_id = execution.context.previous_steps.pop()
        step = self._get_step(flow.id, previous_id)
        if step is None:
            return None

        execution.context.current_step_id = previous_id
        execution.context.last_update_time = utcnow()
        return step

    def skip_current_step(self, execution_id: str) -> FlowStep | None:
        execution = self._executions.get(execution_id)
        if execution is None or execution.status != "active":
            return None

        flow = self._flows.get(execution.flow_id)
        if flow is None or not flow.settings.allow_skip:
            return None

        return self.advance_flow(execution_id, "skipped")

    def pause_flow(self, execution_id: str) -> bool:
        execution = self._executions.get(execution_id)
        if execution is None or execution.status != "active":
            return False
        execution.status = "paused"
        return True

    def resume_flow(self, execution_id: str) -> bool:
        execution = self._executions.get(execution_id)
        if execution is None or execution.status != "paused":
            return False
        execution.status = "active"
        return True

    def stop_flow(self, flow_id: str) -> int:
        """Abort every active execution of a flow; returns how many. Paused ones are left alone."""
        open_ids = [
            execution_id
            for execution_id, execution in self._executions.items()
            if execution.flow_id == flow_id and execution.status == "active"
        ]
        for execution_id in open_ids:
            self.abort_flow(execution_id)
        return len(open_ids)

    def abort_flow(self, execution_id: str) -> bool:
        execution = self._executions.get(execution_id)
        if execution is None or execution.is_terminal:
            return False

        self._finish(execution, "aborted")
        flow = self._flows.get(execution.flow_id)
        if flow is not None and flow.settings.on_abort:
            self.callbacks.invoke(flow.settings.on_abort, execution.flow_id, execution.context)
        return True

    def _finish(self, execution: FlowExecution, status: str) -> None:
        execution.status = status
        execution.end_time = utcnow()
        elapsed = execution.end_time - execution.start_time
        execution.duration_ms = int(elapsed.total_seconds() * 1000)
        self.logger.info(
            "Flow execution %s %s after %d ms",
            execution.execution_id,
            status,
            execution.duration_ms,
        )

    def _complete(self, execution: FlowExecution, flow: Flow) -> None:
        self._finish(execution, "completed")
        for listener in list(self._flow_listeners.get(flow.id, [])):
            try:
                listener(flow.id, execution.context)
            except Exception:
                self.logger.exception("Flow-complete listener for %s raised", flow.id)
        if flow.settings.on_complete:
            self.callbacks.invoke(flow.settings.on_complete, flow.id, execution.context)

    def _fire_step_listeners(self, step_id: str, context: FlowExecutionContext) -> None:
        for listener in list(self._step_listeners.get(step_id, [])):
            try:
                listener(step_id, context)
            except Exception:
                self.logger.exception("Step-complete listener for %s raised", step_id)

    # =========================================================================
    # Progress Tracking
    # =========================================================================

    def get_flow_progress(self, execution_id: str) -> FlowProgress | None:
        execution = self._executions.get(execution_id)
        if execution is None:
            return None
        flow = self._flows.get(execution.flow_id)
        if flow is None:
            return None

        total = len(flow.steps)
        completed = len(execution.context.completed_steps)
        index = self._step_index[flow.id].get(execution.context.current_step_id, -1)
        return FlowProgress(
            flow_id=flow.id,
            execution_id=execution_id,
            total_steps=total,
            completed_steps=completed,
            current_step_index=index,
            percent_complete=round_half_up(completed / total * 100) if total else 0,
            is_complete=execution.status == "completed",
            status=execution.status,
        )

    def get_flow_execution(self, execution_id: str) -> FlowExecution | None:
        return self._executions.get(execution_id)

    def get_all_executions(self, flow_id: str | None = None) -> list[FlowExecution]:
        return [
            e for e in self._executions.values() if flow_id is None or e.flow_id == flow_id
        ]

    def get_active_executions(self) -> list[FlowExecution]:
        return [e for e in self._executions.values() if e.status == "active"]

    # =========================================================================
    # Checklist Management
    # =========================================================================

    def create_checklist(
        self,
        checklist_id: str,
        title: str,
        items: Iterable[ChecklistItem | Mapping[str, Any]],
    ) -> Checklist:
        """Store a checklist with every item reset to not completed."""
        try:
            parsed = [
                item.model_copy() if isinstance(item, ChecklistItem)
                else ChecklistItem.model_validate(item)
                for item in items
            ]
        except ValidationError as e:
            errors = format_validation_errors(e)
            raise DefinitionError("; ".join(errors), "checklist", checklist_id, errors) from e

        item_ids = [item.id for item in parsed]
        if len(item_ids) != len(set(item_ids)):
            raise DefinitionError("Checklist item ids must be unique", "checklist", checklist_id)

        for item in parsed:
            item.completed = False
        parsed.sort(key=lambda item: item.order)

        checklist = Checklist(id=checklist_id, title=title, items=parsed)
        self._checklists[checklist_id] = checklist
        return checklist

    def get_checklist(self, checklist_id: str) -> Checklist | None:
        return self._checklists.get(checklist_id)

    def update_checklist_item(
        self, checklist_id: str, item_id: str, completed: bool
    ) -> Checklist | None:
        checklist = self._checklists.get(checklist_id)
        if checklist is None:
            return None
        item = next((i for i in checklist.items if i.id == item_id), None)
        if item is None:
            return None
        item.completed = completed
        return checklist

    def reset_checklist(self, checklist_id: str) -> Checklist | None:
        checklist = self._checklists.get(checklist_id)
        if checklist is None:
            return None
        for item in checklist.items:
            item.completed = False
        return checklist

    # =========================================================================
    # Listeners
    # =========================================================================

    def on_step_complete(self, step_id: str, listener: StepListener) -> None:
        """Call `listener(step_id, context)` whenever an execution leaves the step."""
        self._step_listeners[step_id].append(listener)

    def on_flow_complete(self, flow_id: str, listener: FlowListener) -> None:
        """Call `listener(flow_id, context)` once per completed execution."""
        self._flow_listeners[flow_id].append(listener)

    # =========================================================================
    # Analytics
    # =========================================================================

    def get_flow_completion_rate(self, flow_id: str) -> int:
        executions = self.get_all_executions(flow_id)
        if not executions:
            return 0
        completed = sum(1 for e in executions if e.status == "completed")
        return round_half_up(completed / len(executions) * 100)

    def get_average_flow_duration(self, flow_id: str) -> int:
        durations = [
            e.duration_ms for e in self.get_all_executions(flow_id) if e.duration_ms is not None
        ]
        if not durations:
            return 0
        return round_half_up(sum(durations) / len(durations))

    def get_step_drop_off_rate(self, flow_id: str, step_id: str) -> int:
        """Percent of executions that never completed or sat on the step."""
        executions = self.get_all_executions(flow_id)
        if not executions:
            return 0
        reached = sum(
            1
            for e in executions
            if step_id in e.context.completed_steps or e.context.current_step_id == step_id
        )
        return round_half_up((len(executions) - reached) / len(executions) * 100)

    # =========================================================================
    # Data Export
    # =========================================================================

    def export_data(self) -> dict[str, Any]:
        """Plain JSON-compatible snapshot of flows, executions and checklists."""
        return {
            "flows": [f.model_dump(mode="json") for f in self._flows.values()],
            "executions": [e.model_dump(mode="json") for e in self._executions.values()],
            "checklists": [c.model_dump(mode="json") for c in self._checklists.values()],
        }

    def restore_executions(
        self, records: Iterable[FlowExecution | Mapping[str, Any]]
    ) -> int:
        """Load exported executions whose flow is defined; returns how many."""
        restored = 0
        for record in records:
            execution = (
                record.model_copy(deep=True)
                if isinstance(record, FlowExecution)
                else FlowExecution.model_validate(record)
            )
            if execution.flow_id not in self._flows:
                self.logger.warning(
                    "Skipping execution %s of unknown flow %s",
                    execution.execution_id,
                    execution.flow_id,
                )
                continue
            self._executions[execution.execution_id] = execution
            restored += 1
        return restored

    def clear_data(self) -> None:
        self._flows.clear()
        self._step_index.clear()
        self._executions.clear()
        self._checklists.clear()
        self._step_listeners.clear()
        self._flow_listeners.clear()
