"""Resolution and lifecycle handling for guide steps."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable, Mapping
from typing import Any, Protocol

from config.settings import Settings, get_settings
from decision_engine.callbacks import CallbackRegistry
from decision_engine.predicates import PredicateEvaluator
from models.schemas import GuideStep, StepsDocument


class TelemetrySink(Protocol):
    """Transport for telemetry events; implemented by the host."""

    def emit(self, event_name: str, payload: dict[str, Any]) -> None: ...


class GuideEngine:
    """
    Decides which guide steps are active for a context and drives their
    show/dismiss/CTA lifecycle.
    """

    def __init__(
        self,
        steps: StepsDocument | Iterable[GuideStep | Mapping[str, Any]],
        callbacks: CallbackRegistry | None = None,
        telemetry: TelemetrySink | None = None,
        settings: Settings | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.logger = logger or logging.getLogger(__name__)
        self.callbacks = callbacks if callbacks is not None else CallbackRegistry(self.logger)
        self.telemetry = telemetry
        self.evaluator = PredicateEvaluator(settings=self.settings, logger=self.logger)

        if isinstance(steps, StepsDocument):
            self._steps = list(steps.steps)
        else:
            self._steps = [
                s if isinstance(s, GuideStep) else GuideStep.model_validate(s) for s in steps
            ]
        self._active_step_ids: set[str] = set()
        self.logger.info("GuideEngine initialized with %d steps", len(self._steps))

    def get_steps(self) -> list[GuideStep]:
        return list(self._steps)

    def resolve_active_steps(
        self,
        telemetry: Mapping[str, Any],
        route: Mapping[str, Any],
        custom: Mapping[str, Any] | None = None,
    ) -> list[GuideStep]:
        """Steps whose conditions hold for the assembled context, in definition order."""
        context: dict[str, Any] = {"telemetry": telemetry, "route": route, **(custom or {})}

        active = []
        for step in self._steps:
            if self.evaluator.evaluate_conditions(step.when, context):
                self.logger.debug("Step %s resolved", step.id)
                active.append(step)
            else:
                self.logger.debug("Step %s filtered: conditions not met", step.id)

        self.logger.debug("Resolved %d active steps", len(active))
        return active

    def get_active_step_ids(self) -> list[str]:
        return sorted(self._active_step_ids)

    def register_callback(self, callback_id: str, fn: Callable[..., Any]) -> None:
        self.callbacks.register(callback_id, fn)

    def invoke_callback(self, callback_id: str, context: Mapping[str, Any] | None = None) -> bool:
        return self.callbacks.invoke(callback_id, dict(context or {}))

    def _emit(self, event_name: str | None, step: GuideStep) -> None:
        if not event_name or self.telemetry is None:
            return
        try:
            self.telemetry.emit(event_name, {"step_id": step.id, "step_type": step.type})
        except Exception:
            self.logger.exception("Telemetry sink failed to emit %s", event_name)

    def on_step_show(self, step: GuideStep) -> None:
        self._active_step_ids.add(step.id)
        self.logger.info("Step shown: %s", step.id)

        if step.actions and step.actions.on_show:
            self.invoke_callback(step.actions.on_show, {"step_id": step.id})
        if step.telemetry:
            self._emit(step.telemetry.on_show_event, step)

    def on_step_dismiss(self, step: GuideStep) -> None:
        self._active_step_ids.discard(step.id)
        self.logger.info("Step dismissed: %s", step.id)

        if step.actions and step.actions.on_dismiss:
            self.invoke_callback(step.actions.on_dismiss, {"step_id": step.id})
        if step.telemetry:
            self._emit(step.telemetry.on_dismiss_event, step)

    def on_cta_click(self, step: GuideStep) -> None:
        """Emit the click event, run the CTA callback, then dismiss unless told not to."""
        cta = step.actions.cta if step.actions else None
        self.logger.info("CTA clicked for step: %s", step.id)

        if step.telemetry:
            self._emit(step.telemetry.on_cta_click_event, step)
        if cta is not None:
            self.invoke_callback(cta.callback_id, {"step_id": step.id})
        if cta is None or cta.dismiss_on_click:
            self.on_step_dismiss(step)
