"""
Variable resolver and event-context builder.

Templates reference the event context with ``{{path}}`` placeholders
(``{{contact.name}}``, ``{{order.total_value}}``). Unresolved placeholders
render as an empty string and are reported back to the caller instead of
raising, so an action can log a warning and still run.
"""
from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Optional

from models.schemas import InboundEvent
from utils.conditions import UNDEFINED, get_nested_value

_PLACEHOLDER = re.compile(r"\{\{\s*([^{}]+?)\s*\}\}")


@dataclass
class ResolvedTemplate:
    text: str
    unresolved: list[str] = field(default_factory=list)


def _render(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str, ensure_ascii=False)
    return str(value)


def resolve_template(template: str, context: dict[str, Any]) -> ResolvedTemplate:
    """Substitute every ``{{path}}`` in template from context."""
    unresolved: list[str] = []

    def replace(match: re.Match) -> str:
        path = match.group(1)
        value = get_nested_value(context, path)
        if value is UNDEFINED:
            if path not in unresolved:
                unresolved.append(path)
            return ""
        return _render(value)

    return ResolvedTemplate(text=_PLACEHOLDER.sub(replace, template), unresolved=unresolved)


def resolve_params(value: Any, context: dict[str, Any], unresolved: Optional[list[str]] = None) -> tuple[Any, list[str]]:
    """Resolve placeholders recursively through dicts, lists and strings."""
    if unresolved is None:
        unresolved = []
    if isinstance(value, str):
        rendered = resolve_template(value, context)
        unresolved.extend(p for p in rendered.unresolved if p not in unresolved)
        return rendered.text, unresolved
    if isinstance(value, dict):
        return {k: resolve_params(v, context, unresolved)[0] for k, v in value.items()}, unresolved
    if isinstance(value, list):
        return [resolve_params(v, context, unresolved)[0] for v in value], unresolved
    return value, unresolved


# ──────────────────────────────────────────────────────────────
#  Event context
# ──────────────────────────────────────────────────────────────

# Flat payload keys emitted by CRM events, mapped onto context namespaces.
_PAYLOAD_PATHS: dict[str, str] = {
    "order_name": "order.name",
    "total_value": "order.total_value",
    "stage": "order.stage_id",
    "stage_id": "order.stage_id",
    "new_stage_id": "order.stage_id",
    "stage_name": "order.stage_name",
    "previous_stage_id": "order.previous_stage_id",
    "previous_stage_name": "order.previous_stage_name",
    "pipeline_id": "order.pipeline_id",
    "pipeline_name": "order.pipeline_name",
    "contact_name": "contact.name",
    "contact_phone": "contact.phone",
    "contact_email": "contact.email",
    "contact_city": "contact.city",
    "tag_id": "tag.id",
    "tag_name": "tag.name",
    "message_id": "message.id",
    "message_content": "message.content",
    "text": "message.content",
    "keyword_matched": "message.keyword_matched",
    "phone": "message.phone",
    "task_id": "task.id",
    "task_title": "task.title",
    "task_description": "task.description",
    "task_due_date": "task.due_date",
    "field_name": "field.name",
    "previous_value": "field.previous_value",
    "new_value": "field.new_value",
    "entity_type": "entity.type",
    "entity_id": "entity.id",
    "phase": "session.phase",
    "timer_id": "session.timer_id",
}

_NAMESPACES = ("order", "contact", "tag", "message", "conversation", "task", "field", "entity", "session")


def _set_path(target: dict[str, Any], path: str, value: Any) -> None:
    head, _, leaf = path.rpartition(".")
    node = target
    for part in head.split(".") if head else []:
        node = node.setdefault(part, {})
    node.setdefault(leaf, value)


def _merge(target: dict[str, Any], source: dict[str, Any]) -> None:
    for key, value in source.items():
        if isinstance(value, dict) and isinstance(target.get(key), dict):
            _merge(target[key], value)
        else:
            target[key] = value


def build_event_context(event: InboundEvent, enrichment: Optional[dict[str, Any]] = None) -> dict[str, Any]:
    """Build the lookup context for conditions and templates.

    The raw payload keys stay at the top level; well-known keys are also
    exposed under their namespace (``stage`` → ``order.stage_id``), nested
    payload dicts named after a namespace are merged in, and ``enrichment``
    (joined entity data) is merged last.
    """
    ctx: dict[str, Any] = {k: v for k, v in event.payload.items() if k not in _NAMESPACES}
    ctx["event"] = {
        "id": event.id,
        "type": event.type,
        "cascade_depth": event.cascade_depth,
        "occurred_at": event.occurred_at.isoformat(),
    }
    ctx["workspace"] = {"id": event.workspace_id}
    for ns in _NAMESPACES:
        ctx[ns] = {}

    if event.order_id:
        ctx["order"]["id"] = event.order_id
    if event.contact_id:
        ctx["contact"]["id"] = event.contact_id
    if event.conversation_id:
        ctx["conversation"]["id"] = event.conversation_id

    for ns in _NAMESPACES:
        nested = event.payload.get(ns)
        if isinstance(nested, dict):
            _merge(ctx[ns], nested)
        elif ns == "message" and isinstance(nested, str):
            ctx["message"]["content"] = nested

    for key, path in _PAYLOAD_PATHS.items():
        if key in event.payload and event.payload[key] is not None:
            _set_path(ctx, path, event.payload[key])

    if enrichment:
        _merge(ctx, enrichment)
    return ctx
