"""
Action Executor — performs one automation action against the collaborators.

Idempotency key: (execution_id, action.ordinal). If a terminal ActionLog
already exists for the key, the cached outcome is returned and no side effect
is repeated; this is what makes at-least-once event redelivery safe.

Retry policy:
  TransientExternalError  → retried with bounded exponential backoff (tenacity);
                            every non-final attempt is logged as "retried"
  anything else           → fails immediately, logged as the terminal attempt

Delays: an action with a ``delay`` is not slept on. The first call records a
"waiting" log carrying ``resume_at`` and returns; the caller parks the
execution and comes back later under the same execution id. Once
``resume_at`` has passed the action runs normally.

Errors never escape ``execute``; they are folded into the returned outcome.
"""
from __future__ import annotations

import asyncio
import time
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional

import httpx
import structlog
from tenacity import (
    AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential,
)

from backend.datastore import CrmDataStore
from backend.http import send_request
from backend.messaging import MessagingClient
from config.settings import AutomationConfig, RetryConfig
from core.errors import (
    AutomationValidationError, OrchestrationError, TransientExternalError,
)
from database.store_base import BaseAutomationStore
from job_queue.event_bus import EventBus
from models.schemas import (
    ActionLog, ActionOutcome, ActionOutcomeStatus, ActionType, BaseAction,
    ErrorKind, InboundEvent, UnknownAction, utcnow,
)
from utils.variables import resolve_params

logger = structlog.get_logger()

Handler = Callable[[BaseAction, dict[str, Any], dict[str, Any]], Awaitable[dict[str, Any]]]


def _ns(context: dict[str, Any], namespace: str) -> dict[str, Any]:
    value = context.get(namespace)
    return value if isinstance(value, dict) else {}


def resume_at_of(log_or_outcome) -> datetime:
    """When a waiting action may run, from its log or outcome result."""
    return datetime.fromisoformat(log_or_outcome.result["resume_at"])


class ActionExecutor:

    def __init__(
        self,
        store: BaseAutomationStore,
        messaging: MessagingClient,
        datastore: CrmDataStore,
        bus: Optional[EventBus] = None,
        retry: Optional[RetryConfig] = None,
        limits: Optional[AutomationConfig] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.messaging = messaging
        self.datastore = datastore
        self.bus = bus
        self.retry = retry or RetryConfig()
        self.limits = limits or AutomationConfig()
        self._http_client = http_client
        self._sleep = sleep
        self._clock = clock
        self._handlers: dict[str, Handler] = {
            ActionType.SEND_MESSAGE.value: self._send_message,
            ActionType.SEND_TEMPLATE.value: self._send_template,
            ActionType.ADD_TAG.value: self._add_tag,
            ActionType.REMOVE_TAG.value: self._remove_tag,
            ActionType.CHANGE_STAGE.value: self._change_stage,
            ActionType.UPDATE_FIELD.value: self._update_field,
            ActionType.CREATE_TASK.value: self._create_task,
            ActionType.CREATE_ORDER.value: self._create_order,
            ActionType.WEBHOOK.value: self._webhook,
            ActionType.WAIT.value: self._wait,
            ActionType.PUBLISH_EVENT.value: self._publish_event,
        }

    # ──────────────────────────────────────────────────────────
    #  Entry point
    # ──────────────────────────────────────────────────────────

    async def execute(self, action: BaseAction, context: dict[str, Any], execution_id: str) -> ActionOutcome:
        """Run one action (or replay its cached terminal outcome)."""
        cached = await self.store.get_terminal_action_log(execution_id, action.ordinal)
        if cached is not None:
            logger.info("action_duplicate_suppressed",
                        execution_id=execution_id,
                        ordinal=action.ordinal,
                        outcome=cached.outcome.value)
            return ActionOutcome.from_log(cached, cached=True)

        # Attempts logged before a crash keep their numbers.
        prior = [
            log for log in await self.store.list_action_logs(execution_id)
            if log.ordinal == action.ordinal
        ]
        attempt_base = max((log.attempt for log in prior), default=0)

        started = time.monotonic()
        if action.delay and action.delay.amount > 0:
            waiting = await self._check_delay(action, context, execution_id, prior, started)
            if waiting is not None:
                return waiting

        attempts = attempt_base
        try:
            if isinstance(action, UnknownAction):
                attempts += 1
                raise AutomationValidationError(
                    f"Unsupported action type '{action.type}'", action_type=action.type,
                )
            handler = self._handlers[action.type]
            params, unresolved = resolve_params(action.params(), context)
            if unresolved:
                logger.warning("unresolved_variables",
                               execution_id=execution_id,
                               ordinal=action.ordinal,
                               action_type=action.type,
                               paths=unresolved)

            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.retry.max_attempts),
                wait=wait_exponential(
                    multiplier=self.retry.base_delay_seconds,
                    max=self.retry.max_delay_seconds,
                ),
                retry=retry_if_exception_type(TransientExternalError),
                sleep=self._sleep,
                reraise=True,
            ):
                with attempt:
                    attempts = attempt_base + attempt.retry_state.attempt_number
                    try:
                        result = await handler(action, params, context)
                    except TransientExternalError as e:
                        if attempt.retry_state.attempt_number < self.retry.max_attempts:
                            await self._append_log(
                                action, context, execution_id, attempts,
                                ActionOutcomeStatus.RETRIED, started,
                                error=str(e), error_kind=e.kind,
                            )
                            logger.warning("action_retrying",
                                           execution_id=execution_id,
                                           ordinal=action.ordinal,
                                           attempt=attempts,
                                           error=str(e))
                        raise

        except OrchestrationError as e:
            log = await self._append_log(
                action, context, execution_id, attempts, ActionOutcomeStatus.FAILED,
                started, error=str(e), error_kind=e.kind,
            )
            logger.error("action_failed",
                         execution_id=execution_id,
                         ordinal=action.ordinal,
                         action_type=action.type,
                         error_kind=e.kind.value,
                         attempts=attempts,
                         error=str(e))
            return ActionOutcome.from_log(log)

        except Exception as e:
            log = await self._append_log(
                action, context, execution_id, max(attempts, attempt_base + 1),
                ActionOutcomeStatus.FAILED, started,
                error=f"{type(e).__name__}: {e}", error_kind=ErrorKind.INTERNAL,
            )
            logger.error("action_crashed",
                         execution_id=execution_id,
                         ordinal=action.ordinal,
                         action_type=action.type,
                         error=str(e),
                         exc_info=True)
            return ActionOutcome.from_log(log)

        log = await self._append_log(
            action, context, execution_id, attempts, ActionOutcomeStatus.SUCCESS,
            started, result=result,
        )
        logger.info("action_executed",
                    execution_id=execution_id,
                    ordinal=action.ordinal,
                    action_type=action.type,
                    attempts=attempts,
                    duration_ms=log.duration_ms)
        return ActionOutcome.from_log(log)

    async def skip(self, action: BaseAction, context: dict[str, Any], execution_id: str, reason: str) -> ActionOutcome:
        """Record an action that will not run in this execution."""
        cached = await self.store.get_terminal_action_log(execution_id, action.ordinal)
        if cached is not None:
            return ActionOutcome.from_log(cached, cached=True)
        log = await self._append_log(
            action, context, execution_id, 0, ActionOutcomeStatus.SKIPPED,
            time.monotonic(), error=reason,
        )
        return ActionOutcome.from_log(log)

    # ──────────────────────────────────────────────────────────
    #  Helpers
    # ──────────────────────────────────────────────────────────

    async def _append_log(
        self,
        action: BaseAction,
        context: dict[str, Any],
        execution_id: str,
        attempt: int,
        outcome: ActionOutcomeStatus,
        started: float,
        error: Optional[str] = None,
        error_kind: Optional[ErrorKind] = None,
        result: Optional[dict[str, Any]] = None,
    ) -> ActionLog:
        log = ActionLog(
            execution_id=execution_id,
            workspace_id=_ns(context, "workspace").get("id", ""),
            ordinal=action.ordinal,
            action_type=action.type,
            attempt=attempt,
            outcome=outcome,
            error=error,
            error_kind=error_kind,
            result=result,
            duration_ms=int((time.monotonic() - started) * 1000),
        )
        return await self.store.append_action_log(log)

    async def _check_delay(
        self,
        action: BaseAction,
        context: dict[str, Any],
        execution_id: str,
        prior: list[ActionLog],
        started: float,
    ) -> Optional[ActionOutcome]:
        """A waiting outcome while the delay runs, None once it has elapsed."""
        now = self._clock()
        recorded = next((log for log in prior if log.outcome == ActionOutcomeStatus.WAITING), None)
        if recorded is None:
            resume_at = now + action.delay.to_timedelta()
            log = await self._append_log(
                action, context, execution_id, 0, ActionOutcomeStatus.WAITING,
                started, result={"resume_at": resume_at.isoformat()},
            )
            logger.info("action_waiting",
                        execution_id=execution_id,
                        ordinal=action.ordinal,
                        resume_at=resume_at.isoformat())
            return ActionOutcome.from_log(log)

        if resume_at_of(recorded) > now:
            return ActionOutcome.from_log(recorded)
        return None

    @staticmethod
    def _workspace_id(context: dict[str, Any]) -> str:
        return _ns(context, "workspace").get("id", "")

    @staticmethod
    def _recipient(context: dict[str, Any]) -> str:
        """Conversation to message: the event's, else the one linked to the order/contact."""
        candidates = [
            _ns(context, "conversation").get("id"),
            _ns(context, "order").get("conversation_id"),
            _ns(context, "contact").get("conversation_id"),
            _ns(context, "contact").get("id"),
            _ns(context, "order").get("contact_id"),
        ]
        for candidate in candidates:
            if candidate:
                return str(candidate)
        raise AutomationValidationError("No conversation or contact to message")

    @staticmethod
    def _entity_id(context: dict[str, Any], entity_type: str) -> str:
        entity_id = _ns(context, entity_type).get("id")
        if not entity_id:
            raise AutomationValidationError(
                f"Event has no {entity_type} to act on", entity_type=entity_type,
            )
        return str(entity_id)

    async def _emit(self, event_type: str, context: dict[str, Any], payload: dict[str, Any], order_id: str = None):
        """Re-publish the effect of an action so other automations can react."""
        if self.bus is None:
            return
        event = InboundEvent(
            type=event_type,
            workspace_id=self._workspace_id(context),
            conversation_id=_ns(context, "conversation").get("id"),
            contact_id=_ns(context, "contact").get("id"),
            order_id=order_id or _ns(context, "order").get("id"),
            payload=payload,
            cascade_depth=int(_ns(context, "event").get("cascade_depth", 0)) + 1,
        )
        await self.bus.publish(event)

    # ──────────────────────────────────────────────────────────
    #  Handlers
    # ──────────────────────────────────────────────────────────

    async def _send_message(self, action, params, context) -> dict[str, Any]:
        if not params["text"].strip():
            raise AutomationValidationError("Rendered message is empty")
        return await self.messaging.send_message(
            self._workspace_id(context), self._recipient(context), params["text"],
        )

    async def _send_template(self, action, params, context) -> dict[str, Any]:
        return await self.messaging.send_template(
            self._workspace_id(context),
            self._recipient(context),
            params["template_name"],
            language=params["language"],
            variables=params["variables"],
        )

    async def _add_tag(self, action, params, context) -> dict[str, Any]:
        entity_id = self._entity_id(context, params["entity_type"])
        result = await self.datastore.add_tag(
            self._workspace_id(context), params["entity_type"], entity_id, params["tag_name"],
        )
        await self._emit("tag.assigned", context, {
            "tag_name": params["tag_name"],
            "entity_type": params["entity_type"],
            "entity_id": entity_id,
        })
        return result

    async def _remove_tag(self, action, params, context) -> dict[str, Any]:
        entity_id = self._entity_id(context, params["entity_type"])
        result = await self.datastore.remove_tag(
            self._workspace_id(context), params["entity_type"], entity_id, params["tag_name"],
        )
        await self._emit("tag.removed", context, {
            "tag_name": params["tag_name"],
            "entity_type": params["entity_type"],
            "entity_id": entity_id,
        })
        return result

    async def _change_stage(self, action, params, context) -> dict[str, Any]:
        order_id = self._entity_id(context, "order")
        result = await self.datastore.move_order_to_stage(
            self._workspace_id(context), order_id, params["stage_id"], params["pipeline_id"],
        )
        await self._emit("stage.changed", context, {
            "stage_id": params["stage_id"],
            "previous_stage_id": result.get("previous_stage_id"),
            "pipeline_id": params["pipeline_id"] or _ns(context, "order").get("pipeline_id"),
        }, order_id=order_id)
        return result

    async def _update_field(self, action, params, context) -> dict[str, Any]:
        entity_id = self._entity_id(context, params["entity_type"])
        result = await self.datastore.update_field(
            self._workspace_id(context), params["entity_type"], entity_id,
            params["field_name"], params["value"],
        )
        await self._emit("field.changed", context, {
            "field_name": params["field_name"],
            "entity_type": params["entity_type"],
            "entity_id": entity_id,
            "previous_value": result.get("previous_value"),
            "new_value": params["value"],
        })
        return result

    async def _create_task(self, action, params, context) -> dict[str, Any]:
        due_at = None
        if action.due_in is not None:
            due_at = (utcnow() + timedelta(seconds=action.due_in.to_seconds())).isoformat()
        return await self.datastore.create_task(self._workspace_id(context), {
            "title": params["title"],
            "description": params["description"],
            "priority": params["priority"],
            "due_at": due_at,
            "assigned_to": params["assign_to_user_id"],
            "contact_id": _ns(context, "contact").get("id"),
            "order_id": _ns(context, "order").get("id"),
        })

    async def _create_order(self, action, params, context) -> dict[str, Any]:
        products = list(params["products"])
        if action.copy_products:
            products = list(_ns(context, "order").get("products") or []) + products
        result = await self.datastore.create_order(self._workspace_id(context), {
            "pipeline_id": params["pipeline_id"] or _ns(context, "order").get("pipeline_id"),
            "stage_id": params["stage_id"] or None,
            "name": params["name"],
            "description": params["description"],
            "products": products,
            "contact_id": _ns(context, "contact").get("id"),
            "conversation_id": _ns(context, "conversation").get("id"),
            "source_order_id": _ns(context, "order").get("id"),
        })
        order_id = result.get("order_id")
        await self._emit("order.created", context, {
            "pipeline_id": params["pipeline_id"],
            "stage_id": params["stage_id"],
            "order_name": params["name"],
        }, order_id=order_id)
        return result

    async def _webhook(self, action, params, context) -> dict[str, Any]:
        client = self._http_client or httpx.AsyncClient(
            timeout=self.limits.webhook_timeout_seconds,
        )
        try:
            body = await send_request(
                client, "POST", params["url"], "webhook",
                json=params["payload"] or {
                    "event": _ns(context, "event"),
                    "workspace": _ns(context, "workspace"),
                },
                headers=params["headers"],
                timeout=self.limits.webhook_timeout_seconds,
            )
        finally:
            if client is not self._http_client:
                await client.aclose()
        return {"response": body}

    async def _wait(self, action, params, context) -> dict[str, Any]:
        waited = action.delay.to_seconds() if action.delay else 0
        return {"waited_seconds": waited}

    async def _publish_event(self, action, params, context) -> dict[str, Any]:
        if self.bus is None:
            raise AutomationValidationError("No event bus configured for publish_event")
        await self._emit(params["event_type"], context, params["payload"])
        return {"event_type": params["event_type"]}
