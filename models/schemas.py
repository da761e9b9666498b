"""
Core data models for the automation & session orchestration engine.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_id() -> str:
    return str(uuid.uuid4())


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class TriggerType(str, Enum):
    ORDER_CREATED = "order.created"
    STAGE_CHANGED = "stage.changed"
    TAG_ASSIGNED = "tag.assigned"
    TAG_REMOVED = "tag.removed"
    CONTACT_CREATED = "contact.created"
    FIELD_CHANGED = "field.changed"
    MESSAGE_RECEIVED = "message.received"
    KEYWORD_MATCH = "message.keyword_match"
    TASK_COMPLETED = "task.completed"
    TASK_OVERDUE = "task.overdue"
    SESSION_TIMEOUT = "session.timeout"


class ConditionOperator(str, Enum):
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"
    IS_SET = "is_set"
    IS_NOT_SET = "is_not_set"
    IN_SET = "in_set"


class LogicOperator(str, Enum):
    AND = "AND"
    OR = "OR"


class ActionType(str, Enum):
    SEND_MESSAGE = "send_message"
    SEND_TEMPLATE = "send_template"
    ADD_TAG = "add_tag"
    REMOVE_TAG = "remove_tag"
    CHANGE_STAGE = "change_stage"
    UPDATE_FIELD = "update_field"
    CREATE_TASK = "create_task"
    CREATE_ORDER = "create_order"
    WEBHOOK = "webhook"
    WAIT = "wait"
    PUBLISH_EVENT = "publish_event"


class ExecutionStatus(str, Enum):
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"
    PARTIAL = "partial"
    SKIPPED = "skipped"


class ActionOutcomeStatus(str, Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"
    RETRIED = "retried"           # non-terminal: a transient attempt that will be retried
    WAITING = "waiting"           # non-terminal: delay recorded, resumes at result["resume_at"]


TERMINAL_OUTCOMES = {
    ActionOutcomeStatus.SUCCESS,
    ActionOutcomeStatus.FAILED,
    ActionOutcomeStatus.SKIPPED,
}


class ErrorKind(str, Enum):
    VALIDATION = "validation_error"
    TRANSIENT = "transient_external_error"
    PERMANENT = "permanent_external_error"
    STALE_SESSION = "stale_session"
    DUPLICATE_SUPPRESSED = "duplicate_suppressed"
    INTERNAL = "internal_error"


class SessionPhase(str, Enum):
    IDLE = "idle"
    COLLECTING_DATA = "collecting_data"
    OFFERING_PACK = "offering_pack"
    CLOSING = "closing"
    CLOSED = "closed"


class TimerStatus(str, Enum):
    PENDING = "pending"
    FIRING = "firing"             # claimed, callback not yet completed
    FIRED = "fired"
    CANCELLED = "cancelled"


# ──────────────────────────────────────────────────────────────
#  Inbound Event: what the bus delivers
# ──────────────────────────────────────────────────────────────

def conversation_lock_key(workspace_id: str, conversation_id: str) -> str:
    """Limiter key shared by inbound events and timer firings for one conversation."""
    return f"{workspace_id}:conversation:{conversation_id}"


class InboundEvent(BaseModel):
    """A typed business event consumed from (or re-published to) the bus."""
    id: str = Field(default_factory=_new_id)
    type: str
    workspace_id: str
    conversation_id: Optional[str] = None
    contact_id: Optional[str] = None
    order_id: Optional[str] = None
    payload: dict[str, Any] = {}
    cascade_depth: int = 0                    # how many automation hops produced this event
    occurred_at: datetime = Field(default_factory=utcnow)

    @property
    def lock_key(self) -> str:
        """Key used by the concurrency limiter; one in-flight handler per key."""
        if self.conversation_id:
            return conversation_lock_key(self.workspace_id, self.conversation_id)
        if self.order_id:
            return f"{self.workspace_id}:order:{self.order_id}"
        if self.contact_id:
            return f"{self.workspace_id}:contact:{self.contact_id}"
        return f"{self.workspace_id}:event:{self.id}"


# ──────────────────────────────────────────────────────────────
#  Conditions: recursive AND/OR tree
# ──────────────────────────────────────────────────────────────

_LEGACY_OPERATORS = {
    "eq": "equals",
    "neq": "not_equals",
    "gt": "greater_than",
    "lt": "less_than",
    "exists": "is_set",
    "not_exists": "is_not_set",
    "in": "in_set",
}


class Condition(BaseModel):
    """Leaf comparison: {variable path, operator, literal value}."""
    type: Literal["condition"] = "condition"
    field: str
    operator: ConditionOperator
    value: Any = None

    @field_validator("operator", mode="before")
    @classmethod
    def _legacy_operator(cls, v):
        if isinstance(v, str):
            return _LEGACY_OPERATORS.get(v, v)
        return v


class ConditionGroup(BaseModel):
    type: Literal["group"] = "group"
    logic: LogicOperator = LogicOperator.AND
    conditions: list[
        Annotated[Union[Condition, ConditionGroup], Field(discriminator="type")]
    ] = []

    @model_validator(mode="before")
    @classmethod
    def _tag_children(cls, data):
        # Stored trees often omit the "type" tag; infer it from the shape.
        if not isinstance(data, dict):
            return data
        data = dict(data)
        if "logic" not in data and data.get("operator") in ("AND", "OR", "and", "or"):
            data["logic"] = data.pop("operator")
        if isinstance(data.get("logic"), str):
            data["logic"] = data["logic"].upper()
        children = []
        for child in data.get("conditions") or []:
            if isinstance(child, dict) and "type" not in child:
                tag = "group" if "conditions" in child else "condition"
                child = {**child, "type": tag}
            children.append(child)
        data["conditions"] = children
        return data

    def depth(self) -> int:
        nested = [c.depth() for c in self.conditions if isinstance(c, ConditionGroup)]
        return 1 + max(nested, default=0)

    def max_fanout(self) -> int:
        nested = [c.max_fanout() for c in self.conditions if isinstance(c, ConditionGroup)]
        return max([len(self.conditions), *nested])


ConditionGroup.model_rebuild()


# ──────────────────────────────────────────────────────────────
#  Actions: closed tagged variants plus an "unknown" fallback
# ──────────────────────────────────────────────────────────────

_DELAY_UNITS = {
    "seconds": 1,
    "minutes": 60,
    "hours": 3600,
    "days": 86400,
}


class DelayConfig(BaseModel):
    amount: int = Field(ge=0)
    unit: Literal["seconds", "minutes", "hours", "days"] = "minutes"

    def to_seconds(self) -> int:
        return self.amount * _DELAY_UNITS[self.unit]

    def to_timedelta(self) -> timedelta:
        return timedelta(seconds=self.to_seconds())


class BaseAction(BaseModel):
    ordinal: int = 0
    delay: Optional[DelayConfig] = None

    def params(self) -> dict[str, Any]:
        """Action-specific parameters (may reference {{variables}})."""
        return self.model_dump(exclude={"type", "ordinal", "delay"})


class SendMessageAction(BaseAction):
    type: Literal["send_message"] = "send_message"
    text: str


class SendTemplateAction(BaseAction):
    type: Literal["send_template"] = "send_template"
    template_name: str
    language: str = "es"
    variables: dict[str, str] = {}


class AddTagAction(BaseAction):
    type: Literal["add_tag"] = "add_tag"
    tag_name: str
    entity_type: Literal["contact", "order"] = "contact"


class RemoveTagAction(BaseAction):
    type: Literal["remove_tag"] = "remove_tag"
    tag_name: str
    entity_type: Literal["contact", "order"] = "contact"


class ChangeStageAction(BaseAction):
    type: Literal["change_stage"] = "change_stage"
    stage_id: str
    pipeline_id: str = ""


class UpdateFieldAction(BaseAction):
    type: Literal["update_field"] = "update_field"
    entity_type: Literal["contact", "order"] = "contact"
    field_name: str
    value: str = ""


class CreateTaskAction(BaseAction):
    type: Literal["create_task"] = "create_task"
    title: str
    description: str = ""
    priority: Literal["low", "medium", "high", "urgent"] = "medium"
    due_in: Optional[DelayConfig] = None
    assign_to_user_id: Optional[str] = None


class CreateOrderAction(BaseAction):
    type: Literal["create_order"] = "create_order"
    pipeline_id: str = ""
    stage_id: str = ""
    name: str = ""
    description: str = ""
    products: list[dict[str, Any]] = []
    copy_products: bool = False


class WebhookAction(BaseAction):
    type: Literal["webhook"] = "webhook"
    url: str
    headers: dict[str, str] = {}
    payload: dict[str, Any] = {}


class WaitAction(BaseAction):
    type: Literal["wait"] = "wait"


class PublishEventAction(BaseAction):
    type: Literal["publish_event"] = "publish_event"
    event_type: str
    payload: dict[str, Any] = {}


class UnknownAction(BaseAction):
    """Legacy or unsupported action payload kept verbatim; always fails validation."""
    type: str
    raw: dict[str, Any] = {}


AutomationAction = Union[
    SendMessageAction,
    SendTemplateAction,
    AddTagAction,
    RemoveTagAction,
    ChangeStageAction,
    UpdateFieldAction,
    CreateTaskAction,
    CreateOrderAction,
    WebhookAction,
    WaitAction,
    PublishEventAction,
    UnknownAction,
]

ACTION_MODELS: dict[str, type[BaseAction]] = {
    ActionType.SEND_MESSAGE.value: SendMessageAction,
    ActionType.SEND_TEMPLATE.value: SendTemplateAction,
    ActionType.ADD_TAG.value: AddTagAction,
    ActionType.REMOVE_TAG.value: RemoveTagAction,
    ActionType.CHANGE_STAGE.value: ChangeStageAction,
    ActionType.UPDATE_FIELD.value: UpdateFieldAction,
    ActionType.CREATE_TASK.value: CreateTaskAction,
    ActionType.CREATE_ORDER.value: CreateOrderAction,
    ActionType.WEBHOOK.value: WebhookAction,
    ActionType.WAIT.value: WaitAction,
    ActionType.PUBLISH_EVENT.value: PublishEventAction,
}


def parse_action(raw: Any) -> BaseAction:
    """Turn a stored action payload into its typed variant.

    Accepts both the flat shape ``{"type": ..., "text": ...}`` and the legacy
    ``{"type": ..., "params": {...}}`` shape. Unknown types, or payloads that
    do not fit their variant, become ``UnknownAction``.
    """
    if isinstance(raw, BaseAction):
        return raw
    data = dict(raw)
    params = data.pop("params", None)
    if isinstance(params, dict):
        data = {**params, **data}
    model = ACTION_MODELS.get(data.get("type"))
    if model is not None:
        try:
            return model.model_validate(data)
        except ValueError:
            pass
    return UnknownAction(
        type=str(data.get("type", "unknown")),
        ordinal=data.get("ordinal", 0) if isinstance(data.get("ordinal"), int) else 0,
        raw=dict(raw),
    )


# ──────────────────────────────────────────────────────────────
#  Automation rules
# ──────────────────────────────────────────────────────────────

class TriggerConfig(BaseModel):
    """Kind-specific filter; an empty field matches every event."""
    pipeline_id: Optional[str] = None
    stage_id: Optional[str] = None
    tag_id: Optional[str] = None
    field_name: Optional[str] = None
    keywords: list[str] = []


class Automation(BaseModel):
    id: str = Field(default_factory=_new_id)
    workspace_id: str
    name: str
    description: str = ""
    enabled: bool = True
    trigger_type: str
    trigger_config: TriggerConfig = Field(default_factory=TriggerConfig)
    conditions: Optional[ConditionGroup] = None
    actions: list[AutomationAction] = []
    folder_id: Optional[str] = None
    position: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    @field_validator("actions", mode="before")
    @classmethod
    def _parse_actions(cls, v):
        return [parse_action(a) for a in (v or [])]

    @model_validator(mode="after")
    def _order_actions(self):
        # Ordinals are contiguous 0..n-1. Unnumbered lists take their list order.
        ordinals = [a.ordinal for a in self.actions]
        if ordinals and all(o == 0 for o in ordinals):
            for index, action in enumerate(self.actions):
                action.ordinal = index
        elif sorted(ordinals) != list(range(len(ordinals))):
            raise ValueError(
                f"action ordinals must be contiguous 0..{len(ordinals) - 1}, got {ordinals}"
            )
        else:
            self.actions.sort(key=lambda a: a.ordinal)
        return self


# ──────────────────────────────────────────────────────────────
#  Execution history
# ──────────────────────────────────────────────────────────────

class ActionLog(BaseModel):
    """One row per action attempt within an execution."""
    id: str = Field(default_factory=_new_id)
    execution_id: str
    workspace_id: str
    ordinal: int
    action_type: str
    attempt: int = 1
    outcome: ActionOutcomeStatus
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    result: Optional[dict[str, Any]] = None
    duration_ms: int = 0
    created_at: datetime = Field(default_factory=utcnow)

    @property
    def is_terminal(self) -> bool:
        return self.outcome in TERMINAL_OUTCOMES


class AutomationExecution(BaseModel):
    id: str = Field(default_factory=_new_id)
    workspace_id: str
    automation_id: str
    triggering_event_id: str
    trigger_event: dict[str, Any] = {}
    status: ExecutionStatus = ExecutionStatus.RUNNING
    cascade_depth: int = 0
    error_message: Optional[str] = None
    duration_ms: Optional[int] = None
    started_at: datetime = Field(default_factory=utcnow)
    finished_at: Optional[datetime] = None
    action_logs: list[ActionLog] = []

    @property
    def is_finished(self) -> bool:
        return self.finished_at is not None


class ExecutionPage(BaseModel):
    items: list[AutomationExecution] = []
    total: int = 0
    limit: int = 50
    offset: int = 0


class ActionOutcome(BaseModel):
    """Result of running (or replaying) one action."""
    ordinal: int
    action_type: str
    status: ActionOutcomeStatus
    attempts: int = 0
    result: Optional[dict[str, Any]] = None
    error: Optional[str] = None
    error_kind: Optional[ErrorKind] = None
    duration_ms: int = 0
    cached: bool = False                      # served from a terminal ActionLog

    @property
    def succeeded(self) -> bool:
        return self.status == ActionOutcomeStatus.SUCCESS

    @classmethod
    def from_log(cls, log: ActionLog, cached: bool = False) -> ActionOutcome:
        return cls(
            ordinal=log.ordinal,
            action_type=log.action_type,
            status=log.outcome,
            attempts=log.attempt,
            result=log.result,
            error=log.error,
            error_kind=ErrorKind.DUPLICATE_SUPPRESSED if cached else log.error_kind,
            duration_ms=log.duration_ms,
            cached=cached,
        )


class ExecutionSummary(BaseModel):
    automation_id: str
    execution_id: Optional[str] = None        # None when no execution row was written
    status: ExecutionStatus
    outcomes: list[ActionOutcome] = []
    error_message: Optional[str] = None
    duplicate: bool = False


# ──────────────────────────────────────────────────────────────
#  Conversation sales session & timers
# ──────────────────────────────────────────────────────────────

class ConversationSession(BaseModel):
    conversation_id: str
    workspace_id: str
    contact_id: Optional[str] = None
    phase: SessionPhase = SessionPhase.IDLE
    collected_fields: dict[str, str] = {}
    offered_packs: list[str] = []
    selected_pack: Optional[str] = None
    order_id: Optional[str] = None
    active_timer_id: Optional[str] = None
    last_timer_id: Optional[str] = None       # timer whose firing produced the current phase
    last_trigger: Optional[str] = None
    closed_reason: Optional[str] = None
    version: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)

    def missing_fields(self, required: list[str]) -> list[str]:
        return [f for f in required if not str(self.collected_fields.get(f, "")).strip()]


class TimerHandle(BaseModel):
    id: str = Field(default_factory=_new_id)
    workspace_id: str
    conversation_id: str
    phase: SessionPhase
    deadline: datetime
    status: TimerStatus = TimerStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)
    resolved_at: Optional[datetime] = None

    @property
    def is_pending(self) -> bool:
        return self.status == TimerStatus.PENDING
