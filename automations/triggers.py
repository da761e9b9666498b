"""
Trigger matching — does an event satisfy an automation's trigger config?

Each trigger kind filters on a different payload key. A filter left empty
matches every event of that kind.
"""
from __future__ import annotations

from typing import Any, Optional

from models.schemas import InboundEvent, TriggerConfig, TriggerType

# Event type spellings that mean the same trigger.
TRIGGER_ALIASES: dict[str, str] = {
    "order.stage_changed": TriggerType.STAGE_CHANGED.value,
    "order.stage.changed": TriggerType.STAGE_CHANGED.value,
    "whatsapp.message_received": TriggerType.MESSAGE_RECEIVED.value,
    "whatsapp.keyword_match": TriggerType.KEYWORD_MATCH.value,
}


def normalize_trigger_type(event_type: str) -> str:
    return TRIGGER_ALIASES.get(event_type, event_type)


def _payload_value(payload: dict[str, Any], *keys: str) -> Optional[str]:
    for key in keys:
        value = payload.get(key)
        if value is not None and value != "":
            return str(value)
    return None


def _filter_matches(expected: Optional[str], actual: Optional[str]) -> bool:
    return not expected or expected == actual


def matches_trigger_config(trigger_type: str, config: TriggerConfig, event: InboundEvent) -> bool:
    """Check the kind-specific filter of an automation against an event."""
    payload = event.payload
    trigger_type = normalize_trigger_type(trigger_type)

    if trigger_type == TriggerType.STAGE_CHANGED.value:
        return (
            _filter_matches(config.pipeline_id, _payload_value(payload, "pipeline_id"))
            and _filter_matches(
                config.stage_id, _payload_value(payload, "stage", "stage_id", "new_stage_id")
            )
        )

    if trigger_type == TriggerType.ORDER_CREATED.value:
        return (
            _filter_matches(config.pipeline_id, _payload_value(payload, "pipeline_id"))
            and _filter_matches(config.stage_id, _payload_value(payload, "stage", "stage_id"))
        )

    if trigger_type in (TriggerType.TAG_ASSIGNED.value, TriggerType.TAG_REMOVED.value):
        return _filter_matches(config.tag_id, _payload_value(payload, "tag_id"))

    if trigger_type == TriggerType.FIELD_CHANGED.value:
        return _filter_matches(config.field_name, _payload_value(payload, "field_name"))

    if trigger_type == TriggerType.KEYWORD_MATCH.value:
        if not config.keywords:
            return True
        keywords = [k.lower() for k in config.keywords]
        matched = _payload_value(payload, "keyword_matched")
        if matched:
            return matched.lower() in keywords
        content = (_payload_value(payload, "message_content", "text") or "").lower()
        return any(k in content for k in keywords)

    if trigger_type == TriggerType.TASK_OVERDUE.value:
        return _filter_matches(config.pipeline_id, _payload_value(payload, "pipeline_id"))

    return True
