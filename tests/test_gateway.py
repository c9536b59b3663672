"""Tests for HttpGateway — request shapes and error mapping.

Uses `respx` to intercept httpx requests at the transport level.
"""

from __future__ import annotations

import json

import httpx
import pytest
import respx

from stagehand.errors import DispatchError
from stagehand.gateway import HttpGateway

BASE = "http://gateway.test"


# ── Fixtures ─────────────────────────────────────────────────────────────────


@pytest.fixture
async def gateway():
    gw = HttpGateway(BASE + "/", token="secret-token", timeout=5.0)
    await gw.start()
    yield gw
    await gw.close()


async def dispatch(gw):
    return await gw.dispatch_to_agent(
        agent_id="builder",
        work_order_id="wo-1",
        operation_id="op-1",
        task="Build it",
        context={"stageRef": "build"},
    )


# ── Dispatch ─────────────────────────────────────────────────────────────────


class TestDispatch:
    @respx.mock
    async def test_request_shape(self, gateway):
        route = respx.post(f"{BASE}/v1/agents/builder/dispatch").mock(
            return_value=httpx.Response(200, json={"sessionKey": "agent:builder:op-1",
                                                   "sessionId": "s-1"})
        )

        receipt = await dispatch(gateway)

        assert route.called
        request = route.calls.last.request
        assert request.headers["Authorization"] == "Bearer secret-token"
        assert json.loads(request.content) == {
            "workOrderId": "wo-1",
            "operationId": "op-1",
            "task": "Build it",
            "context": {"stageRef": "build"},
        }
        assert receipt.session_key == "agent:builder:op-1"
        assert receipt.session_id == "s-1"

    @respx.mock
    async def test_http_error_becomes_dispatch_error(self, gateway):
        respx.post(f"{BASE}/v1/agents/builder/dispatch").mock(
            return_value=httpx.Response(503, text="overloaded")
        )

        with pytest.raises(DispatchError, match="503"):
            await dispatch(gateway)

    @respx.mock
    async def test_connection_error_becomes_dispatch_error(self, gateway):
        respx.post(f"{BASE}/v1/agents/builder/dispatch").mock(
            side_effect=httpx.ConnectError("refused")
        )

        with pytest.raises(DispatchError, match="unreachable"):
            await dispatch(gateway)

    @respx.mock
    async def test_malformed_response(self, gateway):
        respx.post(f"{BASE}/v1/agents/builder/dispatch").mock(
            return_value=httpx.Response(200, json={"unexpected": True})
        )

        with pytest.raises(DispatchError, match="Malformed"):
            await dispatch(gateway)


# ── Sessions ─────────────────────────────────────────────────────────────────


class TestSendToSession:
    @respx.mock
    async def test_request_shape(self, gateway):
        route = respx.post(f"{BASE}/v1/sessions/send").mock(return_value=httpx.Response(204))

        await gateway.send_to_session("agent:main:main", "hello")

        assert json.loads(route.calls.last.request.content) == {
            "sessionKey": "agent:main:main",
            "message": "hello",
        }

    @respx.mock
    async def test_error_propagates(self, gateway):
        respx.post(f"{BASE}/v1/sessions/send").mock(return_value=httpx.Response(500))

        with pytest.raises(httpx.HTTPStatusError):
            await gateway.send_to_session("agent:main:main", "hello")


class TestLifecycle:
    def test_client_before_start(self):
        with pytest.raises(RuntimeError):
            HttpGateway(BASE).client

    async def test_no_auth_header_without_token(self):
        gw = HttpGateway(BASE)
        await gw.start()
        try:
            assert "Authorization" not in gw.client.headers
        finally:
            await gw.close()
