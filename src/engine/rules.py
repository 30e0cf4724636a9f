"""Violation rules per geofence rule type.

Only a containment change can be a violation:

    rule        outside->inside    inside->outside
    FORBIDDEN   violation_enter    -
    STAY_IN     -                  violation_exit
    STANDARD    violation_enter    violation_exit

Every crossing also yields an event log entry; crossings that are not
violations are logged as plain enter/exit.
"""

from __future__ import annotations

from engine.models import EventType, RuleType, ViolationKind

# (rule, entered) -> violation; entered=False means the vehicle left
_TRANSITIONS: dict[tuple[RuleType, bool], ViolationKind] = {
    (RuleType.FORBIDDEN, True): ViolationKind.VIOLATION_ENTER,
    (RuleType.STAY_IN, False): ViolationKind.VIOLATION_EXIT,
    (RuleType.STANDARD, True): ViolationKind.VIOLATION_ENTER,
    (RuleType.STANDARD, False): ViolationKind.VIOLATION_EXIT,
}


def evaluate(rule_type: RuleType, was_inside: bool, is_inside: bool) -> ViolationKind | None:
    """Return the violation a containment transition causes, if any."""
    if was_inside == is_inside:
        return None
    return _TRANSITIONS.get((rule_type, is_inside))


def describe(kind: ViolationKind) -> str:
    """Verb used in alert messages."""
    return "entered" if kind is ViolationKind.VIOLATION_ENTER else "left"


def event_type(rule_type: RuleType, was_inside: bool, is_inside: bool) -> EventType | None:
    """Event log entry for a transition: the violation if any, else plain enter/exit."""
    if was_inside == is_inside:
        return None
    kind = evaluate(rule_type, was_inside, is_inside)
    if kind is ViolationKind.VIOLATION_ENTER:
        return EventType.VIOLATION_ENTER
    if kind is ViolationKind.VIOLATION_EXIT:
        return EventType.VIOLATION_EXIT
    return EventType.ENTER if is_inside else EventType.EXIT
