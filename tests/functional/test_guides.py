"""Functional tests for guide step resolution and lifecycle."""

from __future__ import annotations

import logging
from typing import Any

import pytest

from conftest import make_guide_step
from config.settings import Settings
from decision_engine.callbacks import CallbackRegistry
from decision_engine.guides import GuideEngine
from models.schemas import StepsDocument


class RecordingSink:
    """Telemetry sink that keeps every emitted event."""

    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    def emit(self, event_name: str, payload: dict[str, Any]) -> None:
        self.events.append((event_name, payload))


class FailingSink:
    def emit(self, event_name: str, payload: dict[str, Any]) -> None:
        raise ConnectionError("collector unavailable")


HOOKS = {
    "on_show_event": "guide_shown",
    "on_dismiss_event": "guide_dismissed",
    "on_cta_click_event": "guide_cta",
}


@pytest.fixture
def sink() -> RecordingSink:
    return RecordingSink()


@pytest.fixture
def guide_steps() -> list:
    return [
        make_guide_step("payment-tip", {"error_id": "PAYMENT_DECLINED"}, telemetry=HOOKS),
        make_guide_step("billing-banner", {"path_regex": "^/billing"}, type="banner"),
        make_guide_step(
            "pro-modal",
            {
                "path_regex": "^/billing",
                "custom_expr": {"op": "equals", "field": "user.plan", "value": "pro"},
            },
            type="modal",
        ),
        make_guide_step("never", {}),
    ]


@pytest.fixture
def guides(
    guide_steps: list, callbacks: CallbackRegistry, sink: RecordingSink, settings: Settings
) -> GuideEngine:
    return GuideEngine(guide_steps, callbacks=callbacks, telemetry=sink, settings=settings)


class TestResolution:
    """Test active step resolution."""

    def test_resolves_in_definition_order(self, guides: GuideEngine) -> None:
        """Test: Matching steps come back in definition order."""
        active = guides.resolve_active_steps(
            {"error_id": "PAYMENT_DECLINED"},
            {"path": "/billing/cards"},
            {"user": {"plan": "pro"}},
        )
        assert [step.id for step in active] == ["payment-tip", "billing-banner", "pro-modal"]

    def test_custom_context_required_for_expression(self, guides: GuideEngine) -> None:
        """Test: custom_expr steps need the custom context to match."""
        active = guides.resolve_active_steps({}, {"path": "/billing"})
        assert [step.id for step in active] == ["billing-banner"]

    def test_nothing_matches(self, guides: GuideEngine) -> None:
        """Test: An unrelated context activates nothing."""
        assert guides.resolve_active_steps({"error_id": "OTHER"}, {"path": "/home"}) == []

    def test_accepts_steps_document(self, settings: Settings, guide_steps: list) -> None:
        """Test: A StepsDocument can be passed directly."""
        engine = GuideEngine(StepsDocument(steps=guide_steps), settings=settings)
        assert [s.id for s in engine.get_steps()] == [s.id for s in guide_steps]

    def test_accepts_mappings(self, settings: Settings) -> None:
        """Test: Raw mappings are validated into steps."""
        engine = GuideEngine(
            [
                {
                    "id": "raw",
                    "type": "tooltip",
                    "content": {"body": "hi"},
                    "when": {"error_id": "E"},
                }
            ],
            settings=settings,
        )
        assert engine.resolve_active_steps({"error_id": "E"}, {})[0].id == "raw"


class TestLifecycle:
    """Test show, dismiss and CTA handling."""

    def test_show_and_dismiss(
        self, guides: GuideEngine, callbacks: CallbackRegistry, sink: RecordingSink
    ) -> None:
        """Test: Show and dismiss track active ids and emit telemetry."""
        step = guides.get_steps()[0]
        guides.on_step_show(step)
        assert guides.get_active_step_ids() == ["payment-tip"]

        guides.on_step_dismiss(step)
        assert guides.get_active_step_ids() == []
        assert sink.events == [
            ("guide_shown", {"step_id": "payment-tip", "step_type": "tooltip"}),
            ("guide_dismissed", {"step_id": "payment-tip", "step_type": "tooltip"}),
        ]

    def test_action_callbacks(self, settings: Settings, callbacks: CallbackRegistry) -> None:
        """Test: on_show and on_dismiss callbacks receive the step id."""
        calls: list[tuple[str, dict]] = []
        callbacks.register("shown", lambda context: calls.append(("shown", context)))
        callbacks.register("gone", lambda context: calls.append(("gone", context)))
        step = make_guide_step(
            "tip", {"error_id": "E"}, actions={"on_show": "shown", "on_dismiss": "gone"}
        )
        engine = GuideEngine([step], callbacks=callbacks, settings=settings)

        engine.on_step_show(step)
        engine.on_step_dismiss(step)
        assert calls == [("shown", {"step_id": "tip"}), ("gone", {"step_id": "tip"})]

    def test_cta_click_dismisses(
        self, settings: Settings, callbacks: CallbackRegistry, sink: RecordingSink
    ) -> None:
        """Test: A CTA click runs its callback and dismisses by default."""
        clicks: list[dict] = []
        callbacks.register("upgrade", clicks.append)
        step = make_guide_step(
            "upsell",
            {"error_id": "E"},
            actions={"cta": {"label": "Upgrade", "callback_id": "upgrade"}},
            telemetry=HOOKS,
        )
        engine = GuideEngine([step], callbacks=callbacks, telemetry=sink, settings=settings)
        engine.on_step_show(step)
        engine.on_cta_click(step)

        assert clicks == [{"step_id": "upsell"}]
        assert engine.get_active_step_ids() == []
        assert [name for name, _ in sink.events] == ["guide_shown", "guide_cta", "guide_dismissed"]

    def test_cta_click_can_keep_step(self, settings: Settings, callbacks: CallbackRegistry) -> None:
        """Test: dismiss_on_click=False keeps the step active."""
        callbacks.register("noop", lambda context: None)
        step = make_guide_step(
            "sticky",
            {"error_id": "E"},
            actions={"cta": {"label": "Go", "callback_id": "noop", "dismiss_on_click": False}},
        )
        engine = GuideEngine([step], callbacks=callbacks, settings=settings)
        engine.on_step_show(step)
        engine.on_cta_click(step)
        assert engine.get_active_step_ids() == ["sticky"]

    def test_click_without_cta_dismisses(self, guides: GuideEngine) -> None:
        """Test: Clicking a step without a CTA dismisses it."""
        step = guides.get_steps()[1]
        guides.on_step_show(step)
        guides.on_cta_click(step)
        assert guides.get_active_step_ids() == []

    def test_unknown_callback_is_logged(
        self, guides: GuideEngine, caplog: pytest.LogCaptureFixture
    ) -> None:
        """Test: Invoking an unregistered callback returns False with a warning."""
        with caplog.at_level(logging.WARNING):
            assert not guides.invoke_callback("missing")
        assert "Callback not found: missing" in caplog.text

    def test_raising_callback_is_contained(self, guides: GuideEngine) -> None:
        """Test: A raising callback does not propagate."""

        def broken(context: dict) -> None:
            raise RuntimeError("boom")

        guides.register_callback("broken", broken)
        assert not guides.invoke_callback("broken", {"step_id": "x"})

    def test_failing_sink_is_contained(
        self, settings: Settings, caplog: pytest.LogCaptureFixture
    ) -> None:
        """Test: Sink failures are logged and the step is still shown."""
        step = make_guide_step("tip", {"error_id": "E"}, telemetry=HOOKS)
        engine = GuideEngine([step], telemetry=FailingSink(), settings=settings)
        with caplog.at_level(logging.ERROR):
            engine.on_step_show(step)
        assert engine.get_active_step_ids() == ["tip"]
        assert "failed to emit guide_shown" in caplog.text
