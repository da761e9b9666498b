"""
CRM data-store collaborator — typed mutations on contacts, orders, tags, tasks.

The orchestration core never writes CRM tables directly; every automation
side effect on business records goes through this interface.
"""
from __future__ import annotations

import abc
import uuid
import structlog
from typing import Any, Optional

from backend.http import HttpCollaborator
from config.settings import CollaboratorConfig
from core.errors import PermanentExternalError

logger = structlog.get_logger()


class CrmDataStore(abc.ABC):
    """Abstract base for CRM data-store collaborators."""

    @abc.abstractmethod
    async def add_tag(self, workspace_id: str, entity_type: str, entity_id: str, tag_name: str) -> dict[str, Any]:
        ...

    @abc.abstractmethod
    async def remove_tag(self, workspace_id: str, entity_type: str, entity_id: str, tag_name: str) -> dict[str, Any]:
        ...

    @abc.abstractmethod
    async def move_order_to_stage(
        self, workspace_id: str, order_id: str, stage_id: str, pipeline_id: str = "",
    ) -> dict[str, Any]:
        """Returns {"order_id", "previous_stage_id", "stage_id"}."""
        ...

    @abc.abstractmethod
    async def update_field(
        self, workspace_id: str, entity_type: str, entity_id: str, field_name: str, value: Any,
    ) -> dict[str, Any]:
        ...

    @abc.abstractmethod
    async def create_task(self, workspace_id: str, task: dict[str, Any]) -> dict[str, Any]:
        ...

    @abc.abstractmethod
    async def create_order(self, workspace_id: str, order: dict[str, Any]) -> dict[str, Any]:
        """Returns at least {"order_id"}."""
        ...

    @abc.abstractmethod
    async def get_order(self, workspace_id: str, order_id: str) -> Optional[dict[str, Any]]:
        ...

    @abc.abstractmethod
    async def get_contact(self, workspace_id: str, contact_id: str) -> Optional[dict[str, Any]]:
        ...

    async def close(self):
        return None


class RestCrmDataStore(HttpCollaborator, CrmDataStore):
    """CRM data store over REST."""

    collaborator_name = "datastore"

    def _entity_path(self, workspace_id: str, entity_type: str, entity_id: str) -> str:
        return f"/workspaces/{workspace_id}/{entity_type}s/{entity_id}"

    async def add_tag(self, workspace_id: str, entity_type: str, entity_id: str, tag_name: str) -> dict[str, Any]:
        return await self._request(
            "POST", self._entity_path(workspace_id, entity_type, entity_id) + "/tags",
            json={"tag_name": tag_name},
        )

    async def remove_tag(self, workspace_id: str, entity_type: str, entity_id: str, tag_name: str) -> dict[str, Any]:
        return await self._request(
            "DELETE", self._entity_path(workspace_id, entity_type, entity_id) + f"/tags/{tag_name}",
        )

    async def move_order_to_stage(
        self, workspace_id: str, order_id: str, stage_id: str, pipeline_id: str = "",
    ) -> dict[str, Any]:
        return await self._request(
            "PATCH", self._entity_path(workspace_id, "order", order_id) + "/stage",
            json={"stage_id": stage_id, "pipeline_id": pipeline_id or None},
        )

    async def update_field(
        self, workspace_id: str, entity_type: str, entity_id: str, field_name: str, value: Any,
    ) -> dict[str, Any]:
        return await self._request(
            "PATCH", self._entity_path(workspace_id, entity_type, entity_id),
            json={"fields": {field_name: value}},
        )

    async def create_task(self, workspace_id: str, task: dict[str, Any]) -> dict[str, Any]:
        return await self._request("POST", f"/workspaces/{workspace_id}/tasks", json=task)

    async def create_order(self, workspace_id: str, order: dict[str, Any]) -> dict[str, Any]:
        result = await self._request("POST", f"/workspaces/{workspace_id}/orders", json=order)
        result.setdefault("order_id", result.get("id"))
        return result

    async def get_order(self, workspace_id: str, order_id: str) -> Optional[dict[str, Any]]:
        try:
            return await self._request("GET", self._entity_path(workspace_id, "order", order_id))
        except PermanentExternalError:
            return None

    async def get_contact(self, workspace_id: str, contact_id: str) -> Optional[dict[str, Any]]:
        try:
            return await self._request("GET", self._entity_path(workspace_id, "contact", contact_id))
        except PermanentExternalError:
            return None


class InMemoryCrmDataStore(CrmDataStore):
    """
    Dict-backed CRM for development and tests.
    Every mutation is appended to ``calls`` so tests can count side effects.
    """

    def __init__(self):
        self.orders: dict[str, dict[str, Any]] = {}
        self.contacts: dict[str, dict[str, Any]] = {}
        self.tasks: dict[str, dict[str, Any]] = {}
        self.calls: list[tuple[str, dict[str, Any]]] = []

    def _entity(self, entity_type: str, entity_id: str) -> dict[str, Any]:
        table = self.orders if entity_type == "order" else self.contacts
        entity = table.get(entity_id)
        if entity is None:
            raise PermanentExternalError(
                f"{entity_type} {entity_id} not found",
                entity_type=entity_type, entity_id=entity_id,
            )
        return entity

    async def add_tag(self, workspace_id: str, entity_type: str, entity_id: str, tag_name: str) -> dict[str, Any]:
        entity = self._entity(entity_type, entity_id)
        tags = entity.setdefault("tags", [])
        if tag_name not in tags:
            tags.append(tag_name)
        self.calls.append(("add_tag", {"entity_id": entity_id, "tag_name": tag_name}))
        return {"entity_id": entity_id, "tags": list(tags)}

    async def remove_tag(self, workspace_id: str, entity_type: str, entity_id: str, tag_name: str) -> dict[str, Any]:
        entity = self._entity(entity_type, entity_id)
        tags = entity.setdefault("tags", [])
        if tag_name in tags:
            tags.remove(tag_name)
        self.calls.append(("remove_tag", {"entity_id": entity_id, "tag_name": tag_name}))
        return {"entity_id": entity_id, "tags": list(tags)}

    async def move_order_to_stage(
        self, workspace_id: str, order_id: str, stage_id: str, pipeline_id: str = "",
    ) -> dict[str, Any]:
        order = self._entity("order", order_id)
        previous = order.get("stage_id")
        order["stage_id"] = stage_id
        if pipeline_id:
            order["pipeline_id"] = pipeline_id
        self.calls.append(("move_order_to_stage", {"order_id": order_id, "stage_id": stage_id}))
        return {"order_id": order_id, "previous_stage_id": previous, "stage_id": stage_id}

    async def update_field(
        self, workspace_id: str, entity_type: str, entity_id: str, field_name: str, value: Any,
    ) -> dict[str, Any]:
        entity = self._entity(entity_type, entity_id)
        previous = entity.get(field_name)
        entity[field_name] = value
        self.calls.append(("update_field", {"entity_id": entity_id, "field_name": field_name}))
        return {"entity_id": entity_id, "field_name": field_name,
                "previous_value": previous, "new_value": value}

    async def create_task(self, workspace_id: str, task: dict[str, Any]) -> dict[str, Any]:
        task_id = f"task_{uuid.uuid4().hex[:10]}"
        self.tasks[task_id] = {"id": task_id, "workspace_id": workspace_id, **task}
        self.calls.append(("create_task", dict(task)))
        return {"task_id": task_id}

    async def create_order(self, workspace_id: str, order: dict[str, Any]) -> dict[str, Any]:
        order_id = f"order_{uuid.uuid4().hex[:10]}"
        self.orders[order_id] = {"id": order_id, "workspace_id": workspace_id, **order}
        self.calls.append(("create_order", dict(order)))
        return {"order_id": order_id}

    async def get_order(self, workspace_id: str, order_id: str) -> Optional[dict[str, Any]]:
        order = self.orders.get(order_id)
        return dict(order) if order else None

    async def get_contact(self, workspace_id: str, contact_id: str) -> Optional[dict[str, Any]]:
        contact = self.contacts.get(contact_id)
        return dict(contact) if contact else None

    def count(self, operation: str) -> int:
        return sum(1 for op, _ in self.calls if op == operation)


def create_datastore(config: CollaboratorConfig) -> CrmDataStore:
    if config.type == "http":
        return RestCrmDataStore(config)
    return InMemoryCrmDataStore()
