"""
Tracking Domain Layer
=====================

Domain layer for the tracking module.

Contains:
- Entities: Objects with identity (TimerInstance, TimerEvent, ViolationRecord)
- Value Objects: Immutable objects defined by attributes (TrackingPolicy,
  BusinessCalendar, rule trees, EscalationCommand, CaseEvent)
- Domain Services: Stateless logic (ConditionEvaluator)

This layer has no dependencies on infrastructure - pure Python business logic.
"""

from sla_engine.tracking.domain.calendar import BusinessCalendar, ensure_utc
from sla_engine.tracking.domain.entities import (
    CaseEvent,
    EscalationCommand,
    TimerEvent,
    TimerInstance,
    ViolationRecord,
    classify_severity,
)
from sla_engine.tracking.domain.rules import (
    Combinator,
    ConditionEvaluator,
    Operator,
    RuleGroup,
    RuleLeaf,
    RuleNode,
    parse_rule_tree,
)
from sla_engine.tracking.domain.value_objects import (
    CalendarSettings,
    EscalationAction,
    TrackingPolicy,
    WorkingHours,
)

__all__ = [
    # Entities
    "CaseEvent",
    "TimerInstance",
    "TimerEvent",
    "ViolationRecord",
    "EscalationCommand",
    "classify_severity",
    # Calendar
    "BusinessCalendar",
    "ensure_utc",
    # Rules
    "Combinator",
    "Operator",
    "RuleLeaf",
    "RuleGroup",
    "RuleNode",
    "ConditionEvaluator",
    "parse_rule_tree",
    # Value Objects
    "CalendarSettings",
    "EscalationAction",
    "TrackingPolicy",
    "WorkingHours",
]
