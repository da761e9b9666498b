"""
Automation Runner — runs every applicable automation for one inbound event.

Per automation:
  1. trigger config filter + condition tree (pure, no I/O)
       false → "skipped" summary, no execution row is written
  2. execution row (status=running) written before any side effect; it is
     keyed by (automation, event id), so a redelivered event finds it again
  3. actions run strictly in ordinal order through the ActionExecutor; the
     automation is re-read before each one and a disabled automation stops
  4. the first failed action halts the chain; the rest are logged "skipped"
  5. execution finished as success / partial / failed

A finished execution found for the same event is not run again; its stored
outcome is returned as a duplicate. A running one (crash mid-way) resumes
under the same id, and actions with a terminal log are served from cache.

Delayed actions park the execution: it stays running, nothing later in the
chain runs, and an ``automation.resume`` event is published for the moment
the delay ends. That event carries the execution id and the original
conversation/order/contact, so it is serialized with the source event's key
and picks the chain up from the first action without a terminal log.
"""
from __future__ import annotations

import time
from typing import Any, Optional

import structlog

from automations.executor import ActionExecutor, resume_at_of
from automations.registry import validate_automation
from automations.triggers import matches_trigger_config, normalize_trigger_type
from backend.datastore import CrmDataStore
from config.settings import AutomationConfig
from core.errors import AutomationValidationError, OrchestrationError
from database.store_base import BaseAutomationStore
from job_queue.event_bus import EventBus
from models.schemas import (
    ActionOutcome, ActionOutcomeStatus, Automation, AutomationExecution,
    ExecutionStatus, ExecutionSummary, InboundEvent, utcnow,
)
from utils.conditions import evaluate_conditions
from utils.variables import build_event_context

logger = structlog.get_logger()

AUTOMATION_RESUME = "automation.resume"


def derive_status(outcomes: list[ActionOutcome], total: int) -> ExecutionStatus:
    succeeded = sum(1 for o in outcomes if o.succeeded)
    if succeeded == total:
        return ExecutionStatus.SUCCESS
    if succeeded == 0:
        return ExecutionStatus.FAILED
    return ExecutionStatus.PARTIAL


class AutomationRunner:

    def __init__(
        self,
        store: BaseAutomationStore,
        executor: ActionExecutor,
        limits: Optional[AutomationConfig] = None,
        datastore: Optional[CrmDataStore] = None,
        bus: Optional[EventBus] = None,
    ):
        self.store = store
        self.executor = executor
        self.limits = limits or AutomationConfig()
        self.datastore = datastore
        self.bus = bus

    async def run(self, event: InboundEvent) -> list[ExecutionSummary]:
        """Evaluate and execute all enabled automations matching the event."""
        if event.type == AUTOMATION_RESUME:
            summary = await self.resume(event)
            return [summary] if summary is not None else []

        trigger = normalize_trigger_type(event.type)

        if event.cascade_depth >= self.limits.max_cascade_depth:
            logger.warning("cascade_depth_exceeded",
                           event_id=event.id,
                           event_type=event.type,
                           depth=event.cascade_depth)
            return []

        automations = await self.store.list_enabled_automations(event.workspace_id, trigger)
        if not automations:
            return []
        if len(automations) > self.limits.max_automations_per_workspace:
            logger.warning("automation_fanout_capped",
                           workspace_id=event.workspace_id,
                           matched=len(automations),
                           limit=self.limits.max_automations_per_workspace)
            automations = automations[:self.limits.max_automations_per_workspace]

        context = build_event_context(event, await self._enrich(event))

        summaries = []
        for automation in automations:
            try:
                summary = await self._run_automation(automation, event, context)
            except AutomationValidationError as e:
                logger.warning("automation_skipped_invalid",
                               automation_id=automation.id,
                               event_id=event.id,
                               errors=e.errors)
                summary = ExecutionSummary(
                    automation_id=automation.id,
                    status=ExecutionStatus.SKIPPED,
                    error_message=str(e),
                )
            except Exception as e:
                # One broken automation must not block the others for this event.
                logger.error("automation_run_error",
                             automation_id=automation.id,
                             event_id=event.id,
                             error=str(e),
                             exc_info=True)
                summary = ExecutionSummary(
                    automation_id=automation.id,
                    status=ExecutionStatus.FAILED,
                    error_message=str(e),
                )
            summaries.append(summary)
        return summaries

    async def resume(self, event: InboundEvent) -> Optional[ExecutionSummary]:
        """Continue a parked execution once its delay has ended."""
        execution_id = event.payload.get("execution_id")
        execution = await self.store.get_execution(event.workspace_id, execution_id) if execution_id else None
        if execution is None or execution.is_finished:
            logger.info("execution_resume_ignored",
                        event_id=event.id,
                        execution_id=execution_id,
                        reason="missing" if execution is None else "finished")
            return None

        automation = await self.store.get_automation(execution.workspace_id, execution.automation_id)
        if automation is None:
            error_message = "automation deleted while waiting"
            await self.store.finish_execution(
                execution.id, ExecutionStatus.FAILED, utcnow(), error_message=error_message,
            )
            logger.warning("execution_resume_orphaned",
                           execution_id=execution.id,
                           automation_id=execution.automation_id)
            return ExecutionSummary(
                automation_id=execution.automation_id,
                execution_id=execution.id,
                status=ExecutionStatus.FAILED,
                error_message=error_message,
            )

        source = InboundEvent.model_validate(execution.trigger_event)
        logger.info("execution_resumed", execution_id=execution.id, event_id=source.id)
        context = build_event_context(source, await self._enrich(source))
        return await self._execute_actions(automation, source, context, execution)

    async def _enrich(self, event: InboundEvent) -> dict[str, Any]:
        """Join order/contact records from the data store into the context."""
        if self.datastore is None:
            return {}
        enrichment: dict[str, Any] = {}
        try:
            if event.order_id:
                order = await self.datastore.get_order(event.workspace_id, event.order_id)
                if order:
                    enrichment["order"] = order
            if event.contact_id:
                contact = await self.datastore.get_contact(event.workspace_id, event.contact_id)
                if contact:
                    enrichment["contact"] = contact
        except OrchestrationError as e:
            logger.warning("context_enrichment_failed", event_id=event.id, error=str(e))
        return enrichment

    async def _run_automation(
        self, automation: Automation, event: InboundEvent, context: dict[str, Any],
    ) -> ExecutionSummary:
        if not automation.enabled:
            return ExecutionSummary(automation_id=automation.id, status=ExecutionStatus.SKIPPED)

        if not matches_trigger_config(automation.trigger_type, automation.trigger_config, event):
            return ExecutionSummary(automation_id=automation.id, status=ExecutionStatus.SKIPPED)

        errors = validate_automation(automation, self.limits)
        if errors:
            raise AutomationValidationError(
                f"Automation {automation.id} is malformed", errors=errors,
            )

        if not evaluate_conditions(automation.conditions, context):
            logger.debug("automation_conditions_false",
                         automation_id=automation.id, event_id=event.id)
            return ExecutionSummary(automation_id=automation.id, status=ExecutionStatus.SKIPPED)

        execution = await self.store.find_execution(event.workspace_id, automation.id, event.id)
        if execution is not None and execution.is_finished:
            logger.info("execution_duplicate_suppressed",
                        automation_id=automation.id,
                        execution_id=execution.id,
                        event_id=event.id)
            return ExecutionSummary(
                automation_id=automation.id,
                execution_id=execution.id,
                status=execution.status,
                outcomes=[
                    ActionOutcome.from_log(log, cached=True)
                    for log in execution.action_logs if log.is_terminal
                ],
                error_message=execution.error_message,
                duplicate=True,
            )
        if execution is None:
            execution = await self.store.create_execution(AutomationExecution(
                workspace_id=event.workspace_id,
                automation_id=automation.id,
                triggering_event_id=event.id,
                trigger_event=event.model_dump(mode="json"),
                cascade_depth=event.cascade_depth,
            ))
        else:
            logger.info("execution_resumed", execution_id=execution.id, event_id=event.id)

        return await self._execute_actions(automation, event, context, execution)

    async def _execute_actions(
        self,
        automation: Automation,
        event: InboundEvent,
        context: dict[str, Any],
        execution: AutomationExecution,
    ) -> ExecutionSummary:
        started = time.monotonic()
        context = {**context, "actions": {}}
        outcomes: list[ActionOutcome] = []
        halt_reason: Optional[str] = None

        for action in automation.actions:
            if halt_reason is None:
                current = await self.store.get_automation(automation.workspace_id, automation.id)
                if current is None or not current.enabled:
                    halt_reason = "automation disabled during execution"
                    logger.warning("automation_disabled_mid_execution",
                                   automation_id=automation.id,
                                   execution_id=execution.id,
                                   ordinal=action.ordinal)

            if halt_reason is not None:
                skipped = await self.executor.skip(action, context, execution.id, halt_reason)
                if skipped.cached:
                    # Finished before the halt, e.g. ahead of a delay.
                    outcomes.append(skipped)
                continue

            outcome = await self.executor.execute(action, context, execution.id)
            outcomes.append(outcome)
            if outcome.status == ActionOutcomeStatus.WAITING:
                await self._park(automation, event, execution, outcome)
                return ExecutionSummary(
                    automation_id=automation.id,
                    execution_id=execution.id,
                    status=ExecutionStatus.RUNNING,
                    outcomes=outcomes,
                )
            # Later actions can read earlier results as {{actions.<ordinal>.<key>}}.
            context["actions"][str(action.ordinal)] = outcome.result or {}

            if outcome.status == ActionOutcomeStatus.FAILED:
                halt_reason = f"action {action.ordinal} failed"

        status = derive_status(outcomes, len(automation.actions))
        error_message = None
        failed = next((o for o in outcomes if o.status == ActionOutcomeStatus.FAILED), None)
        if failed is not None:
            error_message = f"action {failed.ordinal} ({failed.action_type}): {failed.error}"
        elif halt_reason is not None:
            error_message = halt_reason

        duration_ms = int((time.monotonic() - started) * 1000)
        await self.store.finish_execution(
            execution.id, status, utcnow(), error_message=error_message, duration_ms=duration_ms,
        )
        logger.info("automation_executed",
                    automation_id=automation.id,
                    execution_id=execution.id,
                    event_id=event.id,
                    status=status.value,
                    actions=len(outcomes),
                    duration_ms=duration_ms)

        return ExecutionSummary(
            automation_id=automation.id,
            execution_id=execution.id,
            status=status,
            outcomes=outcomes,
            error_message=error_message,
        )

    async def _park(
        self,
        automation: Automation,
        event: InboundEvent,
        execution: AutomationExecution,
        outcome: ActionOutcome,
    ):
        resume_at = resume_at_of(outcome)
        logger.info("execution_waiting",
                    automation_id=automation.id,
                    execution_id=execution.id,
                    ordinal=outcome.ordinal,
                    resume_at=resume_at.isoformat())
        if self.bus is None:
            # Only a redelivery of the source event can pick the execution up again.
            logger.warning("execution_waiting_without_bus", execution_id=execution.id)
            return
        await self.bus.publish_delayed(InboundEvent(
            id=f"{execution.id}:{outcome.ordinal}",
            type=AUTOMATION_RESUME,
            workspace_id=event.workspace_id,
            conversation_id=event.conversation_id,
            contact_id=event.contact_id,
            order_id=event.order_id,
            payload={"execution_id": execution.id, "automation_id": automation.id},
            cascade_depth=event.cascade_depth,
        ), resume_at)
