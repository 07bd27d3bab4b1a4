"""Shared fakes: in-memory backend, scripted channel, and an aiohttp fake Memory API."""

from __future__ import annotations

import asyncio
import json
from datetime import datetime, timezone

import pytest
import pytest_asyncio
from aiohttp import test_utils, web

from memgate.errors import NetworkError, NotFound
from memgate.transport.base import Endpoint

VALID_TOKEN = "tok_valid_1234567890"


# ── Lifecycle backend ──────────────────────────────────────────


class FakeBackend:
    """MemoryBackend holding records in a dict; counts calls."""

    def __init__(self, records: dict[str, dict] | None = None):
        self.records = {k: dict(v) for k, v in (records or {}).items()}
        self.get_calls: list[str] = []
        self.update_calls: list[tuple[str, dict]] = []
        self.list_calls: list[dict] = []
        self.fail_updates: set[str] = set()

    async def get_memory(self, memory_id):
        self.get_calls.append(memory_id)
        await asyncio.sleep(0)
        if memory_id not in self.records:
            raise NotFound(f"Memory {memory_id} not found")
        return dict(self.records[memory_id])

    async def update_memory(self, memory_id, changes):
        self.update_calls.append((memory_id, dict(changes)))
        await asyncio.sleep(0)
        if memory_id in self.fail_updates:
            raise NetworkError("update failed")
        self.records[memory_id].update(changes)
        return dict(self.records[memory_id])

    async def list_memories(self, *, state=None, before=None, limit=None):
        self.list_calls.append({"state": state, "before": before, "limit": limit})
        items = [dict(r) for r in self.records.values() if state is None or r["state"] == state]
        if before is not None:
            items = [
                r for r in items
                if datetime.fromisoformat(r["created_at"].replace("Z", "+00:00")) < before
            ]
        return items[:limit] if limit else items


def record(memory_id: str, state: str = "active", created_at: str = "2024-01-01T00:00:00Z") -> dict:
    return {
        "id": memory_id,
        "state": state,
        "created_at": created_at,
        "updated_at": created_at,
        "metadata": {},
        "title": f"Memory {memory_id}",
    }


@pytest.fixture
def backend():
    return FakeBackend(
        {
            "A": record("A", "active"),
            "B": record("B", "archived"),
            "P": record("P", "paused"),
            "D": record("D", "deleted"),
        }
    )


# ── Transport ──────────────────────────────────────────────────


class FakeChannel:
    """Channel whose connect outcomes and heartbeats are scripted."""

    def __init__(self, endpoint: Endpoint, connect_errors=None, heartbeats=None, responses=None):
        self._endpoint = endpoint
        self.connect_errors = list(connect_errors or [])
        self.heartbeats = list(heartbeats or [])
        self.responses = dict(responses or {})
        self.connect_calls = 0
        self.requests: list[tuple[str, dict | None]] = []
        self.closed = False
        self._open = False

    @property
    def endpoint(self):
        return self._endpoint

    @property
    def is_open(self):
        return self._open

    async def connect(self):
        self.connect_calls += 1
        if self.connect_errors:
            error = self.connect_errors.pop(0)
            if error is not None:
                raise error
        self._open = True

    async def send(self, message):
        self.requests.append((message.get("method"), message.get("params")))

    async def receive(self):
        return {}

    async def request(self, method, params=None):
        self.requests.append((method, params))
        response = self.responses.get(method)
        if isinstance(response, Exception):
            raise response
        return response

    async def heartbeat(self):
        if self.heartbeats:
            return self.heartbeats.pop(0)
        return True

    async def close(self):
        self.closed = True
        self._open = False


class ChannelFactory:
    """Hands out one FakeChannel per connect attempt, sharing a script per endpoint uri."""

    def __init__(self, scripts: dict[str, dict] | None = None):
        self.scripts = scripts or {}
        self.created: list[FakeChannel] = []

    def __call__(self, endpoint: Endpoint) -> FakeChannel:
        script = self.scripts.setdefault(endpoint.uri, {})
        errors = script.setdefault("connect_errors", [])
        channel = FakeChannel(
            endpoint,
            connect_errors=[errors.pop(0)] if errors else [],
            heartbeats=script.get("heartbeats"),
            responses=script.get("responses"),
        )
        self.created.append(channel)
        return channel

    def connect_calls(self, uri: str | None = None) -> int:
        return sum(c.connect_calls for c in self.created if uri is None or c.endpoint.uri == uri)


class RecordingSleep:
    """Stand-in for asyncio.sleep that records delays and only yields."""

    def __init__(self):
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)
        await asyncio.sleep(0)


@pytest.fixture
def no_sleep():
    return RecordingSleep()


# ── Fake Memory API server ─────────────────────────────────────


class FakeMemoryService:
    """aiohttp app implementing the Memory API and a JSON-RPC endpoint at /mcp."""

    def __init__(self):
        self.records: dict[str, dict] = {}
        self.valid_tokens = {VALID_TOKEN}
        self.verify_mode = "normal"  # normal | unavailable | slow
        self.requests: list[tuple[str, str]] = []
        self.base_url = ""
        self.origin = ""

    def _authorized(self, request: web.Request) -> bool:
        header = request.headers.get("Authorization", "")
        token = header.removeprefix("Bearer ") if header else request.headers.get("X-API-Key", "")
        return token in self.valid_tokens

    @web.middleware
    async def _log(self, request, handler):
        self.requests.append((request.method, request.path))
        return await handler(request)

    def app(self) -> web.Application:
        app = web.Application(middlewares=[self._log])
        app.router.add_get("/health", self.health)
        app.router.add_get("/api/v1/health", self.health)
        app.router.add_post("/api/v1/auth/verify", self.verify)
        app.router.add_get("/api/v1/memory", self.list_memories)
        app.router.add_post("/api/v1/memory", self.create_memory)
        app.router.add_post("/api/v1/memory/search", self.search)
        app.router.add_get("/api/v1/memory/{id}", self.get_memory)
        app.router.add_put("/api/v1/memory/{id}", self.update_memory)
        app.router.add_delete("/api/v1/memory/{id}", self.delete_memory)
        app.router.add_post("/mcp", self.rpc)
        return app

    async def health(self, request):
        return web.json_response({"status": "ok"})

    async def verify(self, request):
        if self.verify_mode == "unavailable":
            return web.json_response({"error": "maintenance"}, status=503)
        if self.verify_mode == "slow":
            await asyncio.sleep(1)
        body = await request.json()
        if body.get("token") == "revoked":
            return web.json_response({"error": "token revoked"}, status=401)
        return web.json_response({"valid": body.get("token") in self.valid_tokens})

    async def list_memories(self, request):
        if not self._authorized(request):
            return web.json_response({"error": "unauthorized"}, status=401)
        state = request.query.get("state")
        before = request.query.get("before")
        items = [r for r in self.records.values() if not state or r["state"] == state]
        if before:
            cutoff = datetime.fromisoformat(before.replace("Z", "+00:00"))
            items = [
                r for r in items
                if datetime.fromisoformat(r["created_at"].replace("Z", "+00:00")) < cutoff
            ]
        limit = int(request.query.get("limit", 0)) or None
        return web.json_response({"memories": items[:limit] if limit else items})

    async def create_memory(self, request):
        if not self._authorized(request):
            return web.json_response({"error": "unauthorized"}, status=401)
        body = await request.json()
        memory_id = f"m{len(self.records) + 1}"
        now = datetime.now(timezone.utc).isoformat()
        self.records[memory_id] = {
            "id": memory_id,
            "state": "active",
            "created_at": now,
            "updated_at": now,
            "metadata": {},
            **body,
        }
        return web.json_response(self.records[memory_id], status=201)

    async def search(self, request):
        if not self._authorized(request):
            return web.json_response({"error": "unauthorized"}, status=401)
        body = await request.json()
        query = body.get("query", "").lower()
        hits = [r for r in self.records.values() if query in (r.get("content") or "").lower()]
        return web.json_response({"memories": hits})

    async def get_memory(self, request):
        if not self._authorized(request):
            return web.json_response({"error": "unauthorized"}, status=401)
        memory = self.records.get(request.match_info["id"])
        if memory is None:
            return web.json_response({"error": "Memory not found"}, status=404)
        return web.json_response(memory)

    async def update_memory(self, request):
        if not self._authorized(request):
            return web.json_response({"error": "unauthorized"}, status=401)
        memory = self.records.get(request.match_info["id"])
        if memory is None:
            return web.json_response({"error": "Memory not found"}, status=404)
        memory.update(await request.json())
        return web.json_response(memory)

    async def delete_memory(self, request):
        if not self._authorized(request):
            return web.json_response({"error": "unauthorized"}, status=401)
        if self.records.pop(request.match_info["id"], None) is None:
            return web.json_response({"error": "Memory not found"}, status=404)
        return web.Response(status=204)

    async def rpc(self, request):
        message = await request.json()
        if "id" not in message:
            return web.Response(status=202)
        if not self._authorized(request):
            return web.json_response({"error": "unauthorized"}, status=401)
        method = message.get("method")
        if method == "initialize":
            result = {"serverInfo": {"name": "fake-memory", "version": "1"}, "capabilities": {}}
        elif method == "ping":
            result = {}
        elif method == "tools/list":
            result = {"tools": [{"name": "memory_get_memory"}]}
        elif method == "tools/call":
            params = message.get("params") or {}
            arguments = dict(params.get("arguments") or {})
            memory = self.records.get(arguments.pop("memory_id", None))
            if memory is not None and params.get("name") == "memory_update_memory":
                memory.update(arguments)
            if memory is None:
                result = {"content": [{"type": "text", "text": "Memory not found"}], "isError": True}
            else:
                result = {"content": [{"type": "text", "text": json.dumps(memory)}]}
        else:
            return web.json_response(
                {"jsonrpc": "2.0", "id": message["id"], "error": {"code": -32601, "message": "Method not found"}}
            )
        return web.json_response({"jsonrpc": "2.0", "id": message["id"], "result": result})


@pytest_asyncio.fixture
async def memory_service():
    service = FakeMemoryService()
    async with test_utils.TestServer(service.app()) as server:
        service.origin = str(server.make_url("/")).rstrip("/")
        service.base_url = str(server.make_url("/api/v1"))
        yield service
