"""
Condition Rule Trees
====================

Boolean rule trees over flat case snapshots.

A rule node is either a leaf ``{field, operator, value}`` or a group of
children joined by AND/OR. Stored trees use the query-builder shape::

    {"logicalOperator": "AND",
     "rules": [{"field": "status", "operator": "equals", "value": "open"},
               {"logicalOperator": "OR", "rules": [...]}]}

A bare list is read as an AND group. Trees are parsed once, when the policy
is loaded; evaluation never fails. A leaf whose field is missing from the
snapshot, or whose operator does not fit the field's type, evaluates to
False and is logged at debug level.
"""

import numbers
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional, Tuple, Union

from sla_engine.core import ConditionEvaluationMismatch, InvalidRule
from sla_engine.shared.infrastructure.logging import get_logger
from sla_engine.tracking.domain.calendar import ensure_utc

logger = get_logger(__name__)


class Combinator(str, Enum):
    AND = "AND"
    OR = "OR"


class Operator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    GREATER_THAN = "greater_than"
    GREATER_THAN_OR_EQUAL = "greater_than_or_equal"
    LESS_THAN = "less_than"
    LESS_THAN_OR_EQUAL = "less_than_or_equal"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    IS_EMPTY = "is_empty"
    IS_NOT_EMPTY = "is_not_empty"
    IN = "in"
    NOT_IN = "not_in"


_OPERATOR_ALIASES = {
    "==": Operator.EQUALS,
    "!=": Operator.NOT_EQUALS,
    ">": Operator.GREATER_THAN,
    ">=": Operator.GREATER_THAN_OR_EQUAL,
    "<": Operator.LESS_THAN,
    "<=": Operator.LESS_THAN_OR_EQUAL,
}


@dataclass(frozen=True)
class RuleLeaf:
    """Single comparison against one snapshot field."""
    field: str
    operator: Operator
    value: Any = None


@dataclass(frozen=True)
class RuleGroup:
    """Children joined by one combinator, evaluated left to right."""
    combinator: Combinator
    children: Tuple["RuleNode", ...]


RuleNode = Union[RuleLeaf, RuleGroup]


# ========== Parsing ==========

def _freeze(value: Any) -> Any:
    if isinstance(value, (list, set, frozenset)):
        return tuple(value)
    return value


def _parse_operator(raw: Any) -> Operator:
    if isinstance(raw, Operator):
        return raw
    if isinstance(raw, str):
        if raw in _OPERATOR_ALIASES:
            return _OPERATOR_ALIASES[raw]
        try:
            return Operator(raw.strip().lower())
        except ValueError:
            pass
    raise InvalidRule(f"Unknown rule operator: {raw!r}")


def _parse_combinator(raw: Any) -> Combinator:
    if isinstance(raw, Combinator):
        return raw
    if isinstance(raw, str) and raw.strip().upper() in Combinator.__members__:
        return Combinator(raw.strip().upper())
    raise InvalidRule(f"Unknown rule combinator: {raw!r}")


def parse_rule_tree(raw: Any) -> Optional[RuleNode]:
    """
    Parse a stored rule tree.

    Returns:
        The parsed tree, or None when the stored value holds no rules

    Raises:
        InvalidRule: On unknown operators/combinators or unrecognised nodes
    """
    if raw is None or isinstance(raw, (RuleLeaf, RuleGroup)):
        return raw

    if isinstance(raw, (list, tuple)):
        return _group(Combinator.AND, raw)

    if isinstance(raw, Mapping):
        if "rules" in raw or "children" in raw:
            items = raw.get("rules", raw.get("children")) or []
            combinator = raw.get("logicalOperator", raw.get("combinator", "AND"))
            return _group(_parse_combinator(combinator), items)

        if "field" in raw:
            field_name = raw["field"]
            if not isinstance(field_name, str) or not field_name:
                raise InvalidRule(f"Rule field must be a non-empty string: {field_name!r}")
            return RuleLeaf(
                field=field_name,
                operator=_parse_operator(raw.get("operator")),
                value=_freeze(raw.get("value")),
            )

        if not raw:
            return None

    raise InvalidRule(f"Unrecognised rule node: {raw!r}")


def _group(combinator: Combinator, items: Any) -> Optional[RuleGroup]:
    if not isinstance(items, (list, tuple)):
        raise InvalidRule(f"Rule group children must be a list: {items!r}")
    children = tuple(
        child for child in (parse_rule_tree(item) for item in items)
        if child is not None
    )
    if not children:
        return None
    return RuleGroup(combinator=combinator, children=children)


# ========== Operator implementations ==========
# Each raises TypeError when the operands do not fit the operator.

def _orderable(actual: Any, expected: Any) -> Tuple[Any, Any]:
    if isinstance(actual, numbers.Real) and not isinstance(actual, bool):
        if isinstance(expected, str):
            try:
                expected = float(expected)
            except ValueError:
                raise TypeError(f"cannot order a number against {expected!r}")
        if isinstance(expected, numbers.Real) and not isinstance(expected, bool):
            return actual, expected
        raise TypeError(f"cannot order a number against {type(expected).__name__}")

    if isinstance(actual, datetime):
        if isinstance(expected, str):
            try:
                expected = datetime.fromisoformat(expected.replace("Z", "+00:00"))
            except ValueError:
                raise TypeError(f"cannot order a datetime against {expected!r}")
        if isinstance(expected, datetime):
            return ensure_utc(actual), ensure_utc(expected)
        raise TypeError(f"cannot order a datetime against {type(expected).__name__}")

    raise TypeError(f"ordering needs a number or datetime field, got {type(actual).__name__}")


def _as_collection(value: Any) -> Tuple[Any, ...]:
    if isinstance(value, (list, tuple, set, frozenset)):
        return tuple(value)
    raise TypeError(f"expected a list of values, got {type(value).__name__}")


def _equals(actual: Any, expected: Any) -> bool:
    return _freeze(actual) == expected


def _contains(actual: Any, expected: Any) -> bool:
    if isinstance(actual, str):
        if not isinstance(expected, str):
            raise TypeError("substring check needs a string value")
        return expected in actual
    return expected in _as_collection(actual)


def _starts_with(actual: Any, expected: Any) -> bool:
    if not isinstance(actual, str) or not isinstance(expected, str):
        raise TypeError("starts_with needs string operands")
    return actual.startswith(expected)


def _ends_with(actual: Any, expected: Any) -> bool:
    if not isinstance(actual, str) or not isinstance(expected, str):
        raise TypeError("ends_with needs string operands")
    return actual.endswith(expected)


def _is_empty(actual: Any, _expected: Any) -> bool:
    if actual is None:
        return True
    if isinstance(actual, str):
        return not actual.strip()
    if isinstance(actual, (list, tuple, set, frozenset, dict)):
        return len(actual) == 0
    return False


def _is_in(actual: Any, expected: Any) -> bool:
    options = _as_collection(expected)
    if isinstance(actual, (list, tuple, set, frozenset)):
        return any(item in options for item in actual)
    return actual in options


def _greater_than(a: Any, e: Any) -> bool:
    a, e = _orderable(a, e)
    return a > e


def _greater_equal(a: Any, e: Any) -> bool:
    a, e = _orderable(a, e)
    return a >= e


def _less_than(a: Any, e: Any) -> bool:
    a, e = _orderable(a, e)
    return a < e


def _less_equal(a: Any, e: Any) -> bool:
    a, e = _orderable(a, e)
    return a <= e


_OPERATIONS: Dict[Operator, Callable[[Any, Any], bool]] = {
    Operator.EQUALS: _equals,
    Operator.NOT_EQUALS: lambda a, e: not _equals(a, e),
    Operator.GREATER_THAN: _greater_than,
    Operator.GREATER_THAN_OR_EQUAL: _greater_equal,
    Operator.LESS_THAN: _less_than,
    Operator.LESS_THAN_OR_EQUAL: _less_equal,
    Operator.CONTAINS: _contains,
    Operator.NOT_CONTAINS: lambda a, e: not _contains(a, e),
    Operator.STARTS_WITH: _starts_with,
    Operator.ENDS_WITH: _ends_with,
    Operator.IS_EMPTY: _is_empty,
    Operator.IS_NOT_EMPTY: lambda a, e: not _is_empty(a, e),
    Operator.IN: _is_in,
    Operator.NOT_IN: lambda a, e: not _is_in(a, e),
}

_MISSING = object()


class ConditionEvaluator:
    """
    Evaluates rule trees against case snapshots.

    Stateless; one instance can be shared by every timer.
    """

    def evaluate(
        self,
        node: Optional[RuleNode],
        snapshot: Mapping[str, Any],
        default: bool = False
    ) -> bool:
        """
        Evaluate a tree, short-circuiting left to right.

        Args:
            node: Parsed tree, or None for "no rules"
            snapshot: Flat case field map
            default: Result for an absent tree

        Returns:
            bool: Whether the tree matches
        """
        if node is None:
            return default
        if isinstance(node, RuleGroup):
            results = (self.evaluate(child, snapshot) for child in node.children)
            if node.combinator is Combinator.AND:
                return all(results)
            return any(results)
        return self._evaluate_leaf(node, snapshot)

    def _evaluate_leaf(self, leaf: RuleLeaf, snapshot: Mapping[str, Any]) -> bool:
        actual = snapshot.get(leaf.field, _MISSING)
        if actual is _MISSING:
            self._log_mismatch(ConditionEvaluationMismatch(
                leaf.field, leaf.operator.value, "field not present on snapshot", leaf.value
            ))
            return False

        try:
            return bool(_OPERATIONS[leaf.operator](actual, leaf.value))
        except TypeError as exc:
            self._log_mismatch(ConditionEvaluationMismatch(
                leaf.field, leaf.operator.value, str(exc), leaf.value
            ))
            return False

    @staticmethod
    def _log_mismatch(mismatch: ConditionEvaluationMismatch) -> None:
        logger.debug(
            mismatch.message,
            extra={"rule_field": mismatch.field, "rule_operator": mismatch.operator}
        )
