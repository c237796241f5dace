"""
Condition evaluation for automation rules

Two rule shapes are supported:
- Legacy rules: fixed ratio/seeding/unregistered triggers plus limits
- Expression rules: a structured condition tree per sub-action

Everything here is pure: evaluation reads the snapshot and never calls the client.
"""

import re
import time
from typing import Any, Dict, List, Optional

from qbt_automations.errors import RuleValidationError
from qbt_automations.models import (
    ActivityAction, Condition, DeleteMode, ExpressionActions, LegacyActions,
    TagAction, TagActionMode, TagMatchMode, TorrentSnapshot
)

MAX_DEPTH = 20

STRING = 'string'
NUMBER = 'number'
BOOLEAN = 'boolean'

# Field name -> (type, snapshot getter)
FIELDS = {
    'NAME': (STRING, lambda t, now: t.name),
    'HASH': (STRING, lambda t, now: t.hash),
    'CATEGORY': (STRING, lambda t, now: t.category),
    'TAGS': (STRING, lambda t, now: ', '.join(t.tags)),
    'SAVE_PATH': (STRING, lambda t, now: t.save_path),
    'CONTENT_PATH': (STRING, lambda t, now: t.content_path),
    'STATE': (STRING, lambda t, now: t.state),
    'TRACKER': (STRING, lambda t, now: t.tracker),
    'SIZE': (NUMBER, lambda t, now: t.size),
    'RATIO': (NUMBER, lambda t, now: t.ratio),
    'PROGRESS': (NUMBER, lambda t, now: t.progress),
    'SEEDING_TIME': (NUMBER, lambda t, now: t.seeding_time),
    'ADDED_ON': (NUMBER, lambda t, now: t.added_on),
    'COMPLETION_ON': (NUMBER, lambda t, now: t.completion_on),
    'LAST_ACTIVITY': (NUMBER, lambda t, now: t.last_activity),
    'NUM_SEEDS': (NUMBER, lambda t, now: t.num_seeds),
    'NUM_LEECHS': (NUMBER, lambda t, now: t.num_leechs),
    'AGE': (NUMBER, lambda t, now: max(0, int(now) - t.added_on) if t.added_on > 0 else 0),
    'PRIVATE': (BOOLEAN, lambda t, now: t.private),
    'IS_UNREGISTERED': (BOOLEAN, lambda t, now: t.is_unregistered),
}

STRING_OPERATORS = [
    'EQUAL', 'NOT_EQUAL', 'CONTAINS', 'NOT_CONTAINS', 'STARTS_WITH', 'ENDS_WITH', 'MATCHES'
]
NUMBER_OPERATORS = [
    'EQUAL', 'NOT_EQUAL', 'GREATER_THAN', 'GREATER_THAN_OR_EQUAL',
    'LESS_THAN', 'LESS_THAN_OR_EQUAL', 'BETWEEN'
]
BOOLEAN_OPERATORS = ['EQUAL', 'NOT_EQUAL']

OPERATORS_BY_TYPE = {
    STRING: STRING_OPERATORS,
    NUMBER: NUMBER_OPERATORS,
    BOOLEAN: BOOLEAN_OPERATORS,
}

EPSILON = 1e-9


# ============================================================================
# Expression evaluation
# ============================================================================

def condition_uses_field(condition: Optional[Condition], field: str) -> bool:
    """Check whether a condition tree references a field anywhere"""
    if condition is None:
        return False
    if condition.field == field:
        return True
    return any(condition_uses_field(child, field) for child in condition.conditions)


def evaluate(condition: Optional[Condition], snapshot: TorrentSnapshot,
             now: Optional[float] = None, depth: int = 0) -> bool:
    """
    Evaluate a condition tree against a torrent snapshot

    A missing condition is true. Children of a group are evaluated left to
    right and short-circuit. Trees deeper than MAX_DEPTH evaluate to False.

    Args:
        condition: Root of the condition tree (or None)
        snapshot: Torrent to test
        now: Unix time used for time-relative fields (defaults to time.time())
        depth: Current recursion depth

    Returns:
        True if the condition holds
    """
    if condition is None:
        return True
    if depth > MAX_DEPTH:
        return False
    if now is None:
        now = time.time()

    if condition.is_group:
        if condition.operator == 'AND':
            result = all(evaluate(child, snapshot, now, depth + 1) for child in condition.conditions)
        else:
            result = any(evaluate(child, snapshot, now, depth + 1) for child in condition.conditions)
    else:
        result = _evaluate_leaf(condition, snapshot, now)

    return not result if condition.negate else result


def _evaluate_leaf(condition: Condition, snapshot: TorrentSnapshot, now: float) -> bool:
    field = FIELDS.get(condition.field or '')
    if field is None:
        return False

    field_type, getter = field
    actual = getter(snapshot, now)

    if field_type == STRING:
        return _compare_string(condition, actual or '')
    if field_type == NUMBER:
        return _compare_number(condition, actual)
    return _compare_bool(condition, bool(actual))


def _compiled(condition: Condition):
    if condition._compiled is None:
        condition._compiled = re.compile(str(condition.value), re.IGNORECASE)
    return condition._compiled


def _compare_string(condition: Condition, actual: str) -> bool:
    op = condition.operator

    if op == 'MATCHES' or condition.regex:
        try:
            found = _compiled(condition).search(actual) is not None
        except re.error:
            return False
        return not found if op in ('NOT_EQUAL', 'NOT_CONTAINS') else found

    actual_l = actual.lower()
    expected = str(condition.value).lower()

    # TAGS equality is membership in the tag list
    if condition.field == 'TAGS' and op in ('EQUAL', 'NOT_EQUAL'):
        tags = [t.strip() for t in actual_l.split(',') if t.strip()]
        found = expected.strip() in tags
        return found if op == 'EQUAL' else not found

    if op == 'EQUAL':
        return actual_l == expected
    if op == 'NOT_EQUAL':
        return actual_l != expected
    if op == 'CONTAINS':
        return expected in actual_l
    if op == 'NOT_CONTAINS':
        return expected not in actual_l
    if op == 'STARTS_WITH':
        return actual_l.startswith(expected)
    if op == 'ENDS_WITH':
        return actual_l.endswith(expected)
    return False


def _to_float(value: Any) -> Optional[float]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return float(str(value).strip())
    except (TypeError, ValueError):
        return None


def _compare_number(condition: Condition, actual: Any) -> bool:
    actual = float(actual or 0)
    op = condition.operator

    if op == 'BETWEEN':
        low = _to_float(condition.min_value)
        high = _to_float(condition.max_value)
        if low is None or high is None:
            return False
        return low <= actual <= high

    expected = _to_float(condition.value)
    if expected is None:
        return False

    if op == 'EQUAL':
        return abs(actual - expected) < EPSILON
    if op == 'NOT_EQUAL':
        return abs(actual - expected) >= EPSILON
    if op == 'GREATER_THAN':
        return actual > expected
    if op == 'GREATER_THAN_OR_EQUAL':
        return actual >= expected
    if op == 'LESS_THAN':
        return actual < expected
    if op == 'LESS_THAN_OR_EQUAL':
        return actual <= expected
    return False


def _compare_bool(condition: Condition, actual: bool) -> bool:
    expected = str(condition.value).strip().lower() in ('true', '1')
    if condition.operator == 'EQUAL':
        return actual == expected
    if condition.operator == 'NOT_EQUAL':
        return actual != expected
    return False


# ============================================================================
# Validation
# ============================================================================

def validate_condition(condition: Optional[Condition], rule_name: str = '<rule>'):
    """
    Validate a condition tree

    Args:
        condition: Root of the condition tree (None is valid)
        rule_name: Rule name used in error messages

    Raises:
        RuleValidationError: On unknown fields/operators, bad regexes,
            non-numeric values for numeric fields, BETWEEN without bounds,
            or trees deeper than MAX_DEPTH
    """
    if condition is None:
        return
    if condition.depth() > MAX_DEPTH:
        raise RuleValidationError(rule_name, f"condition nesting exceeds maximum depth of {MAX_DEPTH}")
    _validate_node(condition, rule_name)


def _validate_node(condition: Condition, rule_name: str):
    if condition.is_group:
        for child in condition.conditions:
            _validate_node(child, rule_name)
        return

    if not condition.field:
        raise RuleValidationError(
            rule_name,
            f"condition with operator '{condition.operator or '(none)'}' has no field"
        )

    field = FIELDS.get(condition.field)
    if field is None:
        raise RuleValidationError(
            rule_name,
            f"unknown field '{condition.field}' (valid: {', '.join(sorted(FIELDS))})"
        )

    field_type = field[0]
    valid_operators = OPERATORS_BY_TYPE[field_type]
    if condition.operator not in valid_operators:
        raise RuleValidationError(
            rule_name,
            f"operator '{condition.operator}' not supported for {condition.field} "
            f"(valid: {', '.join(valid_operators)})"
        )

    if field_type == STRING and (condition.operator == 'MATCHES' or condition.regex):
        try:
            re.compile(str(condition.value))
        except re.error as e:
            raise RuleValidationError(rule_name, f"invalid regex '{condition.value}': {e}")

    if field_type == NUMBER:
        if condition.operator == 'BETWEEN':
            low = _to_float(condition.min_value)
            high = _to_float(condition.max_value)
            if low is None or high is None:
                raise RuleValidationError(rule_name, f"BETWEEN on {condition.field} needs numeric minValue and maxValue")
            if low > high:
                raise RuleValidationError(rule_name, f"BETWEEN on {condition.field} has minValue > maxValue")
        elif _to_float(condition.value) is None:
            raise RuleValidationError(
                rule_name,
                f"value '{condition.value}' for {condition.field} is not numeric"
            )


# ============================================================================
# Rule-level evaluation
# ============================================================================

class DeleteIntent:
    """A triggered delete, carrying the activity naming for it"""

    def __init__(self, mode: str, action: str, reason: str, details: Optional[Dict[str, Any]] = None,
                 rule=None):
        self.mode = mode
        self.action = action
        self.reason = reason
        self.details = dict(details or {})
        self.rule = rule

    @property
    def delete_files(self) -> bool:
        return self.mode in (DeleteMode.DELETE_WITH_FILES, DeleteMode.PRESERVE_CROSS_SEEDS)

    def __repr__(self) -> str:
        return f"<DeleteIntent {self.action} mode={self.mode}>"


class LegacyDecision:
    """Outcome of evaluating one legacy rule against one torrent"""

    def __init__(self):
        self.delete: Optional[DeleteIntent] = None
        self.upload_kib: Optional[int] = None
        self.download_kib: Optional[int] = None
        self.share_ratio: Optional[float] = None
        self.share_seeding_minutes: Optional[int] = None

    @property
    def triggered(self) -> bool:
        return (
            self.delete is not None
            or self.upload_kib is not None
            or self.download_kib is not None
            or self.share_ratio is not None
            or self.share_seeding_minutes is not None
        )


def evaluate_legacy(actions: LegacyActions, snapshot: TorrentSnapshot,
                    now: Optional[float] = None) -> LegacyDecision:
    """
    Evaluate a legacy rule

    Unregistered deletion is checked first. Ratio and seeding triggers only
    delete completed torrents when a delete mode is set. If nothing is
    deleted, the configured limits apply instead.

    Args:
        actions: Legacy action block of the rule
        snapshot: Torrent to test
        now: Unix time (defaults to time.time())

    Returns:
        LegacyDecision
    """
    if now is None:
        now = time.time()

    decision = LegacyDecision()

    if actions.delete_unregistered and snapshot.is_unregistered:
        min_age = actions.delete_unregistered_min_age or 0
        age = int(now) - snapshot.added_on if snapshot.added_on > 0 else 0
        if min_age <= 0 or age >= min_age:
            mode = actions.delete_mode if actions.delete_mode != DeleteMode.NONE else DeleteMode.DELETE
            decision.delete = DeleteIntent(
                mode=mode,
                action=ActivityAction.DELETED_UNREGISTERED,
                reason='unregistered',
                details={'deleteMode': mode}
            )
            return decision

    ratio_met = bool(actions.ratio_limit and actions.ratio_limit > 0
                     and snapshot.ratio >= actions.ratio_limit)
    seeding_met = bool(actions.seeding_time_limit_minutes and actions.seeding_time_limit_minutes > 0
                       and snapshot.seeding_time >= actions.seeding_time_limit_minutes * 60)

    if (ratio_met or seeding_met) and actions.delete_mode != DeleteMode.NONE and snapshot.progress >= 1.0:
        details = {'deleteMode': actions.delete_mode}
        if ratio_met and seeding_met:
            action, reason = ActivityAction.DELETED_SEEDING, 'ratio and seeding time limits reached'
        elif ratio_met:
            action, reason = ActivityAction.DELETED_RATIO, 'ratio limit reached'
        else:
            action, reason = ActivityAction.DELETED_SEEDING, 'seeding time limit reached'

        if ratio_met:
            details['ratio'] = round(snapshot.ratio, 4)
            details['ratioLimit'] = actions.ratio_limit
        if seeding_met:
            details['seedingMinutes'] = snapshot.seeding_time // 60
            details['seedingLimitMinutes'] = actions.seeding_time_limit_minutes

        decision.delete = DeleteIntent(mode=actions.delete_mode, action=action, reason=reason, details=details)
        return decision

    decision.upload_kib = actions.upload_limit_kib
    decision.download_kib = actions.download_limit_kib
    if actions.ratio_limit and actions.ratio_limit > 0:
        decision.share_ratio = actions.ratio_limit
    if actions.seeding_time_limit_minutes and actions.seeding_time_limit_minutes > 0:
        decision.share_seeding_minutes = actions.seeding_time_limit_minutes

    return decision


def evaluate_expression(actions: ExpressionActions, snapshot: TorrentSnapshot,
                        now: Optional[float] = None) -> List[Any]:
    """
    Evaluate the sub-actions of an expression rule

    A sub-action fires iff it is enabled and its condition holds. Deletes only
    fire for completed torrents. A 'full' tag action whose condition does not
    hold fires as a 'remove' of its tags, so the managed tags follow the condition.

    Args:
        actions: Expression action block of the rule
        snapshot: Torrent to test
        now: Unix time (defaults to time.time())

    Returns:
        Fired sub-actions in evaluation order
    """
    if now is None:
        now = time.time()

    fired = []
    for action in actions.sub_actions():
        if not action.enabled:
            continue

        matched = evaluate(action.condition, snapshot, now)

        if isinstance(action, TagAction):
            if not action.tags:
                continue
            if matched:
                fired.append(action)
            elif action.mode == TagActionMode.FULL:
                fired.append(TagAction(enabled=True, mode=TagActionMode.REMOVE, tags=action.tags))
            continue

        if not matched:
            continue
        if action.kind == 'delete' and (action.mode == DeleteMode.NONE or snapshot.progress < 1.0):
            continue

        fired.append(action)

    return fired


def validate_rule(rule) -> None:
    """
    Validate a rule before it is stored or evaluated

    Raises:
        RuleValidationError: If the rule is malformed
    """
    name = rule.name or '<unnamed>'
    if not rule.name:
        raise RuleValidationError(name, "'name' is required")

    if rule.scope.tag_match_mode not in TagMatchMode.all():
        raise RuleValidationError(
            name, f"invalid tagMatchMode '{rule.scope.tag_match_mode}' (valid: {', '.join(TagMatchMode.all())})"
        )

    if not rule.is_expression:
        actions = rule.actions
        if actions.delete_mode not in DeleteMode.all():
            raise RuleValidationError(
                name, f"invalid deleteMode '{actions.delete_mode}' (valid: {', '.join(DeleteMode.all())})"
            )
        for field, value in (('uploadLimitKiB', actions.upload_limit_kib),
                             ('downloadLimitKiB', actions.download_limit_kib),
                             ('ratioLimit', actions.ratio_limit),
                             ('seedingTimeLimitMinutes', actions.seeding_time_limit_minutes),
                             ('deleteUnregisteredMinAge', actions.delete_unregistered_min_age)):
            if value is not None and value < 0:
                raise RuleValidationError(name, f"'{field}' must not be negative")
        return

    actions = rule.actions
    if not actions.schema_version.strip():
        raise RuleValidationError(name, "'conditions.schemaVersion' must not be empty")

    if actions.delete is not None and actions.delete.mode not in DeleteMode.all():
        raise RuleValidationError(
            name, f"invalid delete mode '{actions.delete.mode}' (valid: {', '.join(DeleteMode.all())})"
        )
    if actions.tag is not None:
        if actions.tag.mode not in TagActionMode.all():
            raise RuleValidationError(
                name, f"invalid tag mode '{actions.tag.mode}' (valid: {', '.join(TagActionMode.all())})"
            )
        if actions.tag.enabled and not actions.tag.tags:
            raise RuleValidationError(name, "tag action needs at least one tag")
    if actions.speed_limits is not None:
        for field, value in (('uploadKiB', actions.speed_limits.upload_kib),
                             ('downloadKiB', actions.speed_limits.download_kib)):
            if value is not None and value < 0:
                raise RuleValidationError(name, f"'speedLimits.{field}' must not be negative")

    for action in actions.sub_actions():
        validate_condition(action.condition, name)
