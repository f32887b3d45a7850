"""
Rule evaluator - decides whether a rule's condition tree matches an event.

Pure: reads only the EventContext, never raises. Unknown or malformed leaves
evaluate to False; an empty rule list never matches.
"""
import logging
from typing import Any, Optional, Union

from crmbridge.schemas.sync_rule import CONDITION_TYPES, ConditionTree
from crmbridge.schemas.webhook_payloads import EventContext, PROVIDER_LPTRACKER
from crmbridge.services.field_mapper import custom_field_value, is_empty

logger = logging.getLogger(__name__)

# Rule-builder event names -> webhook actions they cover
EVENT_TYPE_ALIASES = {
    "lead_created": ("add",),
    "lead_status_changed": ("status",),
    "lead_updated": ("update",),
    "lptracker_lead_status_updated": ("lead_status_updated",),
}


def _as_str(value: Any) -> Optional[str]:
    if is_empty(value):
        return None
    return str(value)


def pipeline_id(context: EventContext) -> Optional[str]:
    """AmoCRM pipeline id, or the LPTracker project id."""
    lead = context.lead or {}
    if context.provider == PROVIDER_LPTRACKER:
        detail = lead.get("project_id")
    else:
        detail = lead.get("pipeline_id")
    return _as_str(detail) or _as_str(context.webhook_fields.get("pipeline_id"))


def status_id(context: EventContext) -> Optional[str]:
    """AmoCRM status id, or the LPTracker funnel stage id."""
    lead = context.lead or {}
    if context.provider == PROVIDER_LPTRACKER:
        detail = lead.get("funnel", lead.get("stage_id"))
        if isinstance(detail, dict):
            detail = detail.get("id")
    else:
        detail = lead.get("status_id")
    return _as_str(detail) or _as_str(context.webhook_fields.get("status_id"))


def event_type_matches(context: EventContext, expected: Any) -> bool:
    """
    Compare a condition value with the delivery's action.

    Accepts the raw action ("add", "status", "update") or one of the
    rule-builder event names mapped in EVENT_TYPE_ALIASES.
    """
    expected = _as_str(expected)
    if expected is None or not context.action:
        return False
    action = context.action.lower()
    expected = expected.lower()
    if expected == action:
        return True
    return action in EVENT_TYPE_ALIASES.get(expected, ())


def field_value(context: EventContext, field: Any) -> Any:
    """Custom field value: lead first, then each contact, then the LPTracker flat list."""
    lead = context.lead or {}
    value = custom_field_value(lead.get("custom_fields_values"), field)
    if not is_empty(value):
        return value
    for contact in context.contacts:
        value = custom_field_value(contact.get("custom_fields_values"), field)
        if not is_empty(value):
            return value
    return custom_field_value(context.custom_fields, field)


def evaluate_condition(condition: Any, context: EventContext) -> bool:
    if hasattr(condition, "model_dump"):
        condition = condition.model_dump()
    if not isinstance(condition, dict):
        return False

    kind = condition.get("type")
    expected = condition.get("value")
    if kind not in CONDITION_TYPES:
        logger.debug("Unknown condition type %r treated as non-matching", kind)
        return False

    if kind == "pipeline":
        return pipeline_id(context) == _as_str(expected)
    if kind == "status":
        return status_id(context) == _as_str(expected)
    if kind == "event_type":
        return event_type_matches(context, expected)

    if kind in ("field_equals", "field_contains", "field_not_empty"):
        field = condition.get("field")
        if is_empty(field):
            return False
        actual = field_value(context, field)
        if kind == "field_not_empty":
            return not is_empty(actual)
        if is_empty(actual):
            return False
        if kind == "field_equals":
            return str(actual) == str(expected)
        return not is_empty(expected) and str(expected) in str(actual)
    return False


def matches(conditions: Union[ConditionTree, dict, None], context: EventContext) -> bool:
    """True if the tree matches; AND unless the operator is OR."""
    try:
        if isinstance(conditions, ConditionTree):
            conditions = conditions.model_dump()
        if not isinstance(conditions, dict):
            return False
        leaves = conditions.get("rules")
        if not isinstance(leaves, list) or not leaves:
            return False

        operator = str(conditions.get("operator") or "AND").upper()
        results = [evaluate_condition(leaf, context) for leaf in leaves]
        if operator == "OR":
            return any(results)
        return all(results)
    except Exception as e:
        logger.warning("Condition evaluation failed, treating as non-match: %s", str(e))
        return False
