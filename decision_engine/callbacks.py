"""Registry of host-supplied callables referenced from definitions by id."""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import Any


class CallbackRegistry:
    """
    Maps string ids to host callables.

    Definitions only ever carry ids. The callable is looked up when it is
    needed, so re-registering an id takes effect immediately and nothing
    callable ends up in serialized state.
    """

    def __init__(self, logger: logging.Logger | None = None) -> None:
        self.logger = logger or logging.getLogger(__name__)
        self._callbacks: dict[str, Callable[..., Any]] = {}

    def register(self, callback_id: str, fn: Callable[..., Any]) -> None:
        """Register (or replace) the callable for an id."""
        if not callable(fn):
            raise TypeError(f"Callback {callback_id!r} must be callable")
        self._callbacks[callback_id] = fn

    def unregister(self, callback_id: str) -> None:
        self._callbacks.pop(callback_id, None)

    def get(self, callback_id: str) -> Callable[..., Any] | None:
        return self._callbacks.get(callback_id)

    def __contains__(self, callback_id: object) -> bool:
        return callback_id in self._callbacks

    def __len__(self) -> int:
        return len(self._callbacks)

    def invoke(self, callback_id: str, *args: Any, **kwargs: Any) -> bool:
        """
        Call a registered callback for its side effects.

        Returns False when the id is unknown or the callback raised; the
        error is logged and never propagated to the engine.
        """
        fn = self._callbacks.get(callback_id)
        if fn is None:
            self.logger.warning("Callback not found: %s", callback_id)
            return False
        try:
            fn(*args, **kwargs)
        except Exception:
            self.logger.exception("Error invoking callback %s", callback_id)
            return False
        return True

    def check(self, predicate_id: str, *args: Any) -> bool:
        """Evaluate a registered predicate; unknown or raising predicates are False."""
        fn = self._callbacks.get(predicate_id)
        if fn is None:
            self.logger.warning("Custom logic not registered: %s", predicate_id)
            return False
        try:
            return bool(fn(*args))
        except Exception:
            self.logger.exception("Custom logic %s raised; treating as no match", predicate_id)
            return False
