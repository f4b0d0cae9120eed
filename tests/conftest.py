"""
Shared fixtures: fake node executors and fake HTTP services.

External endpoints are FastAPI apps mounted through httpx.ASGITransport,
so no test touches the network.
"""

from typing import Any, Dict, List
import asyncio

import pytest
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from httpx import AsyncClient, ASGITransport

from dagflow.errors import NodeExecutionError
from dagflow.nodes.http import HttpExecutor
from dagflow.nodes.registry import NodeContext, NodeExecutorRegistry
from dagflow.storage.memory import ExecutionStore, WorkflowStore
from dagflow.webhooks.dispatcher import WebhookDispatcher


# ============================================================
# Fake Node Executors
# ============================================================

class EchoExecutor:
    """Returns its resolved config; records every invocation."""

    def __init__(self):
        self.calls: List[str] = []
        self.active = 0
        self.peak = 0

    def validate(self, config: Dict[str, Any]) -> None:
        pass

    async def execute(self, ctx: NodeContext, config: Dict[str, Any]) -> Any:
        self.calls.append(ctx.node_id)
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await asyncio.sleep(config.get("sleep", 0))
        finally:
            self.active -= 1
        return {"node": ctx.node_id, "config": config}


class FailingExecutor:
    """Fails while `failing` is set, otherwise succeeds."""

    def __init__(self):
        self.failing = True
        self.calls: List[str] = []

    def validate(self, config: Dict[str, Any]) -> None:
        pass

    async def execute(self, ctx: NodeContext, config: Dict[str, Any]) -> Any:
        self.calls.append(ctx.node_id)
        if self.failing:
            raise NodeExecutionError(f"{ctx.node_id} failed", retryable=False)
        return {"node": ctx.node_id, "recovered": True}


class FlakyExecutor:
    """Fails the first `failures` attempts of each node with a retryable error."""

    def __init__(self, failures: int = 2):
        self.failures = failures
        self.attempts: List[int] = []

    def validate(self, config: Dict[str, Any]) -> None:
        pass

    async def execute(self, ctx: NodeContext, config: Dict[str, Any]) -> Any:
        self.attempts.append(ctx.attempt)
        if ctx.attempt <= self.failures:
            raise NodeExecutionError(f"attempt {ctx.attempt} failed")
        return {"attempt": ctx.attempt}


class SlowExecutor:
    """Sleeps for config['delay'] seconds (default 10)."""

    def __init__(self):
        self.started = asyncio.Event()

    def validate(self, config: Dict[str, Any]) -> None:
        pass

    async def execute(self, ctx: NodeContext, config: Dict[str, Any]) -> Any:
        self.started.set()
        await asyncio.sleep(config.get("delay", 10))
        return {"slept": config.get("delay", 10)}


class CrashingExecutor:
    """Raises an exception outside the engine's error taxonomy."""

    def validate(self, config: Dict[str, Any]) -> None:
        pass

    async def execute(self, ctx: NodeContext, config: Dict[str, Any]) -> Any:
        raise RuntimeError("unexpected")


class RecordingDelivery:
    """In-memory webhook transport."""

    def __init__(self):
        self.payloads: List[Dict[str, Any]] = []

    async def deliver(self, payload, subscription) -> None:
        self.payloads.append({"url": subscription.url, **payload})

    def events(self, url: str = None) -> List[str]:
        return [p["event"] for p in self.payloads if url is None or p["url"] == url]


# ============================================================
# Fake HTTP Services
# ============================================================

def create_upstream_app() -> FastAPI:
    """User, billing, notification and audit endpoints."""
    app = FastAPI()
    app.state.requests = []

    @app.get("/users/{user_id}")
    async def get_user(user_id: str):
        if user_id == "404":
            return JSONResponse({"detail": "not found"}, status_code=404)
        return {"id": user_id, "email": f"user{user_id}@example.com", "name": f"User {user_id}"}

    @app.post("/billing/customers")
    async def create_customer(request: Request):
        body = await request.json()
        app.state.requests.append(("billing", body))
        return JSONResponse({"customer_id": f"cus_{body['user_id']}", **body}, status_code=201)

    @app.post("/notifications/email")
    async def send_email(request: Request):
        body = await request.json()
        app.state.requests.append(("email", body))
        return {"queued": True}

    @app.post("/audit")
    async def audit(request: Request):
        body = await request.json()
        app.state.requests.append(("audit", body))
        return {"recorded": True}

    @app.post("/echo")
    async def echo(request: Request):
        return {
            "body": (await request.body()).decode(),
            "content_type": request.headers.get("content-type"),
            "x_trace": request.headers.get("x-trace"),
            "query": dict(request.query_params),
        }

    @app.get("/text")
    async def text():
        return PlainTextResponse("plain body")

    @app.get("/error")
    async def error():
        return JSONResponse({"detail": "boom"}, status_code=503)

    return app


def create_webhook_receiver() -> FastAPI:
    """Records delivered payloads; /flaky fails the first request."""
    app = FastAPI()
    app.state.received = []
    app.state.flaky_calls = 0

    @app.post("/hooks")
    async def hooks(request: Request):
        app.state.received.append({"headers": dict(request.headers), "payload": await request.json()})
        return {"ok": True}

    @app.post("/flaky")
    async def flaky(request: Request):
        app.state.flaky_calls += 1
        if app.state.flaky_calls == 1:
            return JSONResponse({"detail": "try again"}, status_code=502)
        app.state.received.append({"headers": dict(request.headers), "payload": await request.json()})
        return {"ok": True}

    @app.post("/down")
    async def down():
        return JSONResponse({"detail": "down"}, status_code=500)

    @app.post("/rejected")
    async def rejected():
        return JSONResponse({"detail": "bad request"}, status_code=400)

    return app


# ============================================================
# Fixtures
# ============================================================

@pytest.fixture
def echo():
    return EchoExecutor()


@pytest.fixture
def failing():
    return FailingExecutor()


@pytest.fixture
def flaky():
    return FlakyExecutor()


@pytest.fixture
def slow():
    return SlowExecutor()


@pytest.fixture
def upstream_app():
    return create_upstream_app()


@pytest.fixture
def upstream_client(upstream_app):
    return AsyncClient(transport=ASGITransport(app=upstream_app), base_url="http://upstream")


@pytest.fixture
def webhook_receiver():
    return create_webhook_receiver()


@pytest.fixture
def webhook_client(webhook_receiver):
    return AsyncClient(transport=ASGITransport(app=webhook_receiver), base_url="http://hooks")


@pytest.fixture
def registry(echo, failing, flaky, slow, upstream_client):
    registry = NodeExecutorRegistry()
    registry.add("echo", echo)
    registry.add("fail", failing)
    registry.add("flaky", flaky)
    registry.add("slow", slow)
    registry.add("crash", CrashingExecutor())
    registry.add("http", HttpExecutor(client=upstream_client))
    return registry


@pytest.fixture
def delivery():
    return RecordingDelivery()


@pytest.fixture
def dispatcher(delivery):
    return WebhookDispatcher(delivery=delivery)


@pytest.fixture
def stores():
    return WorkflowStore(), ExecutionStore()
