"""Agent gateway — sends tasks and notifications to agent sessions.

The engine depends only on the ``AgentGateway`` protocol. ``HttpGateway`` is
an httpx implementation against a session gateway exposing:

    POST /v1/agents/{agent_id}/dispatch   → {"sessionKey": ..., "sessionId": ...}
    POST /v1/sessions/send                 {"sessionKey": ..., "message": ...}
"""

from __future__ import annotations

import logging
from typing import Any, Protocol

import httpx
from pydantic import BaseModel, Field

from stagehand.errors import DispatchError

logger = logging.getLogger(__name__)


class DispatchReceipt(BaseModel):
    session_key: str = Field(alias="sessionKey")
    session_id: str | None = Field(None, alias="sessionId")

    model_config = {"populate_by_name": True}


class AgentGateway(Protocol):
    async def dispatch_to_agent(
        self,
        *,
        agent_id: str,
        work_order_id: str,
        operation_id: str,
        task: str,
        context: dict[str, Any],
    ) -> DispatchReceipt: ...

    async def send_to_session(self, session_key: str, text: str) -> None: ...


class HttpGateway:
    """Async gateway client over httpx."""

    def __init__(self, base_url: str, *, token: str | None = None, timeout: float = 30.0):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self._client: httpx.AsyncClient | None = None

    async def start(self) -> None:
        """Initialize HTTP client."""
        headers = {"User-Agent": "Stagehand/0.1.0"}
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        self._client = httpx.AsyncClient(
            base_url=self.base_url, headers=headers, timeout=self.timeout
        )
        logger.info("Gateway client started: %s", self.base_url)

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("Gateway client not started")
        return self._client

    async def dispatch_to_agent(
        self,
        *,
        agent_id: str,
        work_order_id: str,
        operation_id: str,
        task: str,
        context: dict[str, Any],
    ) -> DispatchReceipt:
        try:
            resp = await self.client.post(
                f"/v1/agents/{agent_id}/dispatch",
                json={
                    "workOrderId": work_order_id,
                    "operationId": operation_id,
                    "task": task,
                    "context": context,
                },
            )
            resp.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise DispatchError(
                f"Gateway rejected dispatch to {agent_id} ({e.response.status_code}): "
                f"{e.response.text[:200]}"
            ) from e
        except httpx.HTTPError as e:
            raise DispatchError(f"Gateway unreachable for dispatch to {agent_id}: {e}") from e

        try:
            return DispatchReceipt(**resp.json())
        except (TypeError, ValueError) as e:
            raise DispatchError(f"Malformed dispatch response from gateway: {e}") from e

    async def send_to_session(self, session_key: str, text: str) -> None:
        resp = await self.client.post(
            "/v1/sessions/send", json={"sessionKey": session_key, "message": text}
        )
        resp.raise_for_status()
