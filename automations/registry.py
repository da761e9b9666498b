"""
Automation Registry — validates automations at save time and persists them.

Malformed rules are rejected here, once, rather than at every evaluation:
unknown action types, too many actions, condition trees that are too deep
or too wide, delays beyond the cap, and per-workspace count limits.
"""
from __future__ import annotations

import structlog
from typing import Any

from automations.triggers import normalize_trigger_type
from config.settings import AutomationConfig
from core.errors import AutomationValidationError
from database.store_base import BaseAutomationStore
from models.schemas import Automation, ConditionGroup, TriggerType, UnknownAction

logger = structlog.get_logger()

_KNOWN_TRIGGERS = {t.value for t in TriggerType}


def validate_condition_tree(group: ConditionGroup, limits: AutomationConfig) -> list[str]:
    errors = []
    depth = group.depth()
    if depth > limits.max_condition_depth:
        errors.append(
            f"condition tree depth {depth} exceeds limit {limits.max_condition_depth}"
        )
    fanout = group.max_fanout()
    if fanout > limits.max_condition_fanout:
        errors.append(
            f"condition group fan-out {fanout} exceeds limit {limits.max_condition_fanout}"
        )
    return errors


def validate_automation(automation: Automation, limits: AutomationConfig) -> list[str]:
    """Return a list of problems; empty means the automation is runnable."""
    errors = []

    trigger = normalize_trigger_type(automation.trigger_type)
    if trigger not in _KNOWN_TRIGGERS:
        errors.append(f"unknown trigger type '{automation.trigger_type}'")

    if not automation.actions:
        errors.append("automation has no actions")
    if len(automation.actions) > limits.max_actions_per_automation:
        errors.append(
            f"{len(automation.actions)} actions exceeds limit "
            f"{limits.max_actions_per_automation}"
        )

    max_delay = limits.max_delay_days * 86400
    for action in automation.actions:
        if isinstance(action, UnknownAction):
            errors.append(f"action {action.ordinal}: unsupported type '{action.type}'")
        if action.delay and action.delay.to_seconds() > max_delay:
            errors.append(
                f"action {action.ordinal}: delay exceeds {limits.max_delay_days} days"
            )

    if automation.conditions is not None:
        errors.extend(validate_condition_tree(automation.conditions, limits))

    return errors


class AutomationRegistry:
    """Save-time gatekeeper in front of the automation store."""

    def __init__(self, store: BaseAutomationStore, limits: AutomationConfig):
        self.store = store
        self.limits = limits

    async def save(self, automation: Automation) -> Automation:
        automation.trigger_type = normalize_trigger_type(automation.trigger_type)
        errors = validate_automation(automation, self.limits)

        existing = await self.store.get_automation(automation.workspace_id, automation.id)
        if existing is None:
            count = len(await self.store.list_automations(automation.workspace_id))
            if count >= self.limits.max_automations_per_workspace:
                errors.append(
                    f"workspace already has {count} automations "
                    f"(limit {self.limits.max_automations_per_workspace})"
                )

        if errors:
            logger.warning("automation_rejected",
                           automation_id=automation.id,
                           workspace_id=automation.workspace_id,
                           errors=errors)
            raise AutomationValidationError(
                f"Automation '{automation.name}' is invalid: {'; '.join(errors)}",
                errors=errors,
                automation_id=automation.id,
            )

        saved = await self.store.save_automation(automation)
        logger.info("automation_saved",
                    automation_id=saved.id,
                    workspace_id=saved.workspace_id,
                    trigger=saved.trigger_type,
                    actions=len(saved.actions))
        return saved

    async def load_from_config(self, raw_automations: list[dict[str, Any]]) -> int:
        """Register automations declared in settings.yaml. Invalid ones are skipped."""
        loaded = 0
        for raw in raw_automations:
            try:
                await self.save(Automation.model_validate(raw))
                loaded += 1
            except (AutomationValidationError, ValueError) as e:
                logger.warning("automation_config_skipped",
                               automation_id=raw.get("id"), error=str(e))
        logger.info("automations_loaded", count=loaded)
        return loaded

    async def set_enabled(self, workspace_id: str, automation_id: str, enabled: bool) -> Automation:
        automation = await self.store.get_automation(workspace_id, automation_id)
        if automation is None:
            raise AutomationValidationError(
                f"Automation {automation_id} not found", automation_id=automation_id,
            )
        automation.enabled = enabled
        saved = await self.store.save_automation(automation)
        logger.info("automation_toggled", automation_id=automation_id, enabled=enabled)
        return saved
