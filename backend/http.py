"""
Shared HTTP plumbing for external collaborators (messaging API, CRM data store,
webhooks).

Transport failures are mapped onto the orchestration error taxonomy so the
action executor can decide whether to retry:

  timeout / connection error / 5xx / 429   → TransientExternalError
  404                                       → PermanentExternalError (missing record)
  other 4xx                                 → PermanentExternalError
"""
from __future__ import annotations

import structlog
from typing import Any, Optional

import httpx

from config.settings import CollaboratorConfig
from core.errors import PermanentExternalError, TransientExternalError

logger = structlog.get_logger()


def raise_for_response(response: httpx.Response, collaborator: str) -> None:
    """Translate an HTTP error status into an orchestration error."""
    status = response.status_code
    if status < 400:
        return
    detail = response.text[:300]
    if status >= 500 or status == 429:
        raise TransientExternalError(
            f"{collaborator} returned {status}", status_code=status, detail=detail,
        )
    if status == 404:
        raise PermanentExternalError(
            f"{collaborator}: target record not found", status_code=status, detail=detail,
        )
    raise PermanentExternalError(
        f"{collaborator} rejected the request ({status})", status_code=status, detail=detail,
    )


async def send_request(
    client: httpx.AsyncClient,
    method: str,
    url: str,
    collaborator: str,
    **kwargs: Any,
) -> dict[str, Any]:
    """Issue one request and return its JSON body (or {} for empty bodies)."""
    try:
        response = await client.request(method, url, **kwargs)
    except httpx.TimeoutException as e:
        raise TransientExternalError(f"{collaborator} timed out", url=url) from e
    except httpx.TransportError as e:
        raise TransientExternalError(f"{collaborator} unreachable: {e}", url=url) from e

    raise_for_response(response, collaborator)
    if not response.content:
        return {}
    try:
        body = response.json()
    except ValueError:
        return {"body": response.text}
    return body if isinstance(body, dict) else {"data": body}


class HttpCollaborator:
    """Base for REST collaborators configured by a CollaboratorConfig section."""

    collaborator_name = "collaborator"

    def __init__(self, config: CollaboratorConfig, client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self.client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self.client is None or self.client.is_closed:
            headers = {}
            if self.config.api_key:
                headers["Authorization"] = f"Bearer {self.config.api_key}"
            self.client = httpx.AsyncClient(
                base_url=self.config.base_url,
                headers=headers,
                timeout=self.config.timeout_seconds,
            )
        return self.client

    async def _request(self, method: str, path: str, **kwargs: Any) -> dict[str, Any]:
        client = await self._get_client()
        return await send_request(client, method, path, self.collaborator_name, **kwargs)

    async def close(self):
        if self.client and not self.client.is_closed:
            await self.client.aclose()
