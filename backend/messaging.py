"""
Messaging collaborator — sends rendered text and templates into a conversation.

Channel-specific quirks live behind this interface; the orchestration core
only needs "send this text" and "send this template".
"""
from __future__ import annotations

import abc
import uuid
import structlog
from typing import Any

from backend.http import HttpCollaborator
from config.settings import CollaboratorConfig

logger = structlog.get_logger()


class MessagingClient(abc.ABC):
    """Abstract base for messaging collaborators."""

    @abc.abstractmethod
    async def send_message(self, workspace_id: str, conversation_id: str, text: str) -> dict[str, Any]:
        """Send a text message. Returns the provider's message reference."""
        ...

    @abc.abstractmethod
    async def send_template(
        self,
        workspace_id: str,
        conversation_id: str,
        template_name: str,
        language: str = "es",
        variables: dict[str, str] = None,
    ) -> dict[str, Any]:
        """Send a pre-approved template with rendered variables."""
        ...

    async def close(self):
        """Release network resources. In-memory clients hold none."""
        return None


class HttpMessagingClient(HttpCollaborator, MessagingClient):
    """Messaging API over REST."""

    collaborator_name = "messaging"

    async def send_message(self, workspace_id: str, conversation_id: str, text: str) -> dict[str, Any]:
        result = await self._request(
            "POST",
            f"/workspaces/{workspace_id}/conversations/{conversation_id}/messages",
            json={"type": "text", "text": text},
        )
        logger.info("message_sent", conversation_id=conversation_id,
                    message_id=result.get("id"))
        return result

    async def send_template(
        self,
        workspace_id: str,
        conversation_id: str,
        template_name: str,
        language: str = "es",
        variables: dict[str, str] = None,
    ) -> dict[str, Any]:
        result = await self._request(
            "POST",
            f"/workspaces/{workspace_id}/conversations/{conversation_id}/messages",
            json={
                "type": "template",
                "template": {"name": template_name, "language": language,
                             "variables": variables or {}},
            },
        )
        logger.info("template_sent", conversation_id=conversation_id,
                    template=template_name, message_id=result.get("id"))
        return result


class InMemoryMessagingClient(MessagingClient):
    """Records outgoing messages instead of sending them (development/testing)."""

    def __init__(self):
        self.sent: list[dict[str, Any]] = []

    async def send_message(self, workspace_id: str, conversation_id: str, text: str) -> dict[str, Any]:
        record = {
            "id": f"msg_{uuid.uuid4().hex[:12]}",
            "workspace_id": workspace_id,
            "conversation_id": conversation_id,
            "type": "text",
            "text": text,
        }
        self.sent.append(record)
        logger.info("message_recorded", conversation_id=conversation_id)
        return {"id": record["id"]}

    async def send_template(
        self,
        workspace_id: str,
        conversation_id: str,
        template_name: str,
        language: str = "es",
        variables: dict[str, str] = None,
    ) -> dict[str, Any]:
        record = {
            "id": f"msg_{uuid.uuid4().hex[:12]}",
            "workspace_id": workspace_id,
            "conversation_id": conversation_id,
            "type": "template",
            "template_name": template_name,
            "language": language,
            "variables": dict(variables or {}),
        }
        self.sent.append(record)
        logger.info("template_recorded", conversation_id=conversation_id,
                    template=template_name)
        return {"id": record["id"]}

    def messages_for(self, conversation_id: str) -> list[dict[str, Any]]:
        return [m for m in self.sent if m["conversation_id"] == conversation_id]


def create_messaging_client(config: CollaboratorConfig) -> MessagingClient:
    if config.type == "http":
        return HttpMessagingClient(config)
    return InMemoryMessagingClient()
