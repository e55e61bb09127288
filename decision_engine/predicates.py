"""Safe evaluation of predicate expressions and step activation conditions.

Nothing here executes host code: expressions are data trees whose leaves
compare a context field against a literal value.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from config.settings import Settings, get_settings
from decision_engine.operators import compare, get_field_value
from decision_engine.regex_guard import safe_regex_test, validate_regex_pattern
from models.schemas import Conditions, PredicateExpression

MAX_PREDICATE_DEPTH = 50

LEAF_OPERATORS = frozenset({"equals", "notEquals", "contains", "greaterThan", "lessThan"})


class _DepthLimitExceeded(Exception):
    """Unwinds a whole evaluation once any branch nests too deeply."""


class PredicateEvaluator:
    """Evaluates predicate trees and condition sets against a context."""

    def __init__(
        self,
        settings: Settings | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.logger = logger or logging.getLogger(__name__)

    def evaluate(
        self,
        expr: PredicateExpression | None,
        context: Mapping[str, Any],
        depth: int = 0,
    ) -> bool:
        """
        Evaluate an expression tree.

        Missing fields, type mismatches and malformed operands evaluate to
        False for their branch. A tree nested deeper than MAX_PREDICATE_DEPTH
        evaluates to False as a whole, whatever combinators sit above the
        offending node.
        """
        try:
            return self._evaluate(expr, context, depth)
        except _DepthLimitExceeded:
            self.logger.error(
                "Predicate evaluation depth limit (%d) exceeded. "
                "This may indicate a circular or excessively nested condition.",
                MAX_PREDICATE_DEPTH,
            )
            return False

    def _evaluate(
        self,
        expr: PredicateExpression | None,
        context: Mapping[str, Any],
        depth: int,
    ) -> bool:
        if depth > MAX_PREDICATE_DEPTH:
            raise _DepthLimitExceeded

        if expr is None or expr.op is None:
            self.logger.warning("Predicate expression without an operator: %r", expr)
            return False

        if expr.op in LEAF_OPERATORS:
            if not expr.field:
                return False
            return compare(expr.op, get_field_value(context, expr.field), expr.value)

        operands = expr.operands or []

        if expr.op == "and":
            if not operands:
                return False
            return all(self._evaluate_operand(op, context, depth, "and") for op in operands)

        if expr.op == "or":
            if not operands:
                return False
            return any(self._evaluate_operand(op, context, depth, "or") for op in operands)

        if expr.op == "not":
            if len(operands) != 1:
                return False
            operand = operands[0]
            if operand is None or operand.op is None:
                self.logger.warning('Invalid operand in "not" expression: %r', operand)
                return False
            return not self._evaluate(operand, context, depth + 1)

        return False

    def _evaluate_operand(
        self,
        operand: PredicateExpression | None,
        context: Mapping[str, Any],
        depth: int,
        combinator: str,
    ) -> bool:
        if operand is None or operand.op is None:
            self.logger.warning('Invalid operand in "%s" expression: %r', combinator, operand)
            return False
        return self._evaluate(operand, context, depth + 1)

    def evaluate_conditions(
        self,
        conditions: Conditions | None,
        context: Mapping[str, Any],
    ) -> bool:
        """
        Evaluate step activation conditions; every specified condition must hold.

        An absent or empty condition set never activates.
        """
        if conditions is None:
            return False

        if conditions.is_empty():
            self.logger.warning(
                "Empty conditions object - step will never match. "
                "Please specify at least one condition."
            )
            return False

        if conditions.error_id:
            accepted = (
                conditions.error_id
                if isinstance(conditions.error_id, list)
                else [conditions.error_id]
            )
            context_error_id = get_field_value(context, "telemetry.error_id")
            if not context_error_id or context_error_id not in accepted:
                return False

        if conditions.path_regex:
            path = get_field_value(context, "route.path")
            verdict = safe_regex_test(
                conditions.path_regex,
                path if isinstance(path, str) else "",
                max_length=self.settings.max_regex_length,
                log=self.logger,
            )
            if not verdict:
                return False

        if conditions.custom_expr is not None:
            return self.evaluate(conditions.custom_expr, context)

        return True


def lint_expression(expr: PredicateExpression | None, location: str = "custom_expr") -> list[str]:
    """List definition problems in an expression tree without evaluating it."""
    problems: list[str] = []
    pending: list[tuple[PredicateExpression | None, str, int]] = [(expr, location, 0)]

    while pending:
        node, where, depth = pending.pop()
        if depth > MAX_PREDICATE_DEPTH:
            problems.append(f"{where}: nested deeper than {MAX_PREDICATE_DEPTH} levels")
            break
        if node is None or node.op is None:
            problems.append(f"{where}: operand has no operator and will never match")
            continue
        if node.op in LEAF_OPERATORS and not node.field:
            problems.append(f"{where}: '{node.op}' needs a field and will never match")
        if node.op in ("and", "or") and not node.operands:
            problems.append(f"{where}: '{node.op}' without operands is always false")
        if node.op == "not" and len(node.operands or []) != 1:
            problems.append(f"{where}: 'not' needs exactly one operand")
        for index, child in enumerate(node.operands or []):
            pending.append((child, f"{where}.operands.{index}", depth + 1))

    return problems


def lint_conditions(
    conditions: Conditions | None,
    location: str,
    max_regex_length: int,
    log: logging.Logger | None = None,
) -> list[str]:
    """Definition warnings for a step's activation conditions."""
    if conditions is None or conditions.is_empty():
        return [f"{location}: empty conditions, the step can never activate"]

    warnings: list[str] = []
    if conditions.path_regex and not validate_regex_pattern(
        conditions.path_regex, max_length=max_regex_length, log=log
    ):
        warnings.append(f"{location}.path_regex: pattern rejected by the regex guard")
    if conditions.custom_expr is not None:
        warnings.extend(lint_expression(conditions.custom_expr, f"{location}.custom_expr"))
    return warnings


def evaluate_predicate(
    expr: PredicateExpression | None,
    context: Mapping[str, Any],
    depth: int = 0,
) -> bool:
    """Evaluate an expression tree with default settings."""
    return PredicateEvaluator().evaluate(expr, context, depth)


def evaluate_conditions(conditions: Conditions | None, context: Mapping[str, Any]) -> bool:
    """Evaluate a condition set with default settings."""
    return PredicateEvaluator().evaluate_conditions(conditions, context)
