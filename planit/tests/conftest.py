"""
Centralized Test Configuration.

The TMS backend is replaced by an in-memory FastAPI app served through
httpx's ASGITransport, wrapped so tests can record calls, inject one-shot
failures and hold a request until released.
"""

import asyncio
from typing import Any, Dict, List, Optional, Tuple

import httpx
import pytest
from fastapi import Body, FastAPI
from fastapi.responses import JSONResponse

from planit.app.api.client import ApiClient
from planit.app.core.config import Settings
from planit.app.services.assignment_store import AssignmentStore
from planit.app.services.planning_context import PlanningContext
from planit.app.services.preferences import PreferenceStore
from planit.app.services import sync_channel as sync_channel_module
from planit.app.services.sync_channel import LocalBroadcastBackend, SyncChannel

PLAN_DAY = "2024-05-01"


def seed_data() -> Dict[str, List[Dict[str, Any]]]:
    return {
        "drivers": [
            {"id": 1, "firstName": "Ann", "lastName": "Lee"},
            {"id": 2, "first_name": "Bob", "last_name": "Ray"},
        ],
        "trucks": [
            {"id": 10, "registration_plate": "RIG-001", "type_of_truck": "rigid", "max_payload_kg": 1000, "pallet_capacity": 10},
            {"id": 11, "registration_plate": "TRC-001", "type_of_truck": "tractor"},
        ],
        "trailers": [
            {"id": 20, "registration_plate": "TRL-001", "max_payload_kg": 2000, "max_spaces": 26},
        ],
        "runs": [
            {"id": 1, "run_date": f"{PLAN_DAY}T00:00:00", "type": "delivery", "driver_id": 1, "truck_id": 10, "trailer_id": None},
            {"id": 2, "run_date": PLAN_DAY, "type": "collection", "driver_id": 2, "truck_id": 11, "trailer_id": 20},
            {"id": 3, "run_date": "2024-05-02", "type": "delivery", "driver_id": 1, "truck_id": 11, "trailer_id": None},
        ],
        "orders": [
            {
                "id": 1, "order_number": "ORD-1", "status": "new",
                "recipient_details": {"name": "Acme Ltd", "postCode": "AB1 2CD"},
                "cargo_details": {"total_kilos": 400, "total_spaces": 4},
                "unloading_date_time": f"{PLAN_DAY}T09:00:00",
            },
            {
                "id": 2, "customer_reference": "CUST-2", "status": "New",
                "sender_details": {"name": "Beta", "postcode": "ZZ9 9ZZ"},
                "cargo_details": {"total_kilos": 700, "total_spaces": 7},
                "loading_date_time": f"{PLAN_DAY}T07:30:00Z",
            },
            {
                "id": 3, "order_number": "ORD-3", "status": "new",
                "cargo_details": {"total_kilos": 100, "total_spaces": None},
            },
            {
                "id": 4, "order_number": "ORD-4", "status": "planned",
                "cargo_details": None,
            },
        ],
        "zones": [
            {"id": 1, "zoneName": "Home", "isHomeZone": True, "postcodePatterns": ["AB*"]},
            {"id": 2, "zone_name": "North", "is_home_zone": False},
        ],
        "assignments": [
            {"id": 1, "order_id": 3, "run_id": 2, "notes": None},
        ],
    }


class Hold:
    """Parks one matching request until released."""

    def __init__(self):
        self.arrived = asyncio.Event()
        self.release = asyncio.Event()


class FakeTmsBackend:
    """In-memory TMS backend answering with the response shapes seen in the field."""

    def __init__(self):
        self.data = seed_data()
        self.next_ids = {"assignments": 100, "runs": 100}
        self.calls: List[Tuple[str, str]] = []
        self._failures: Dict[Tuple[str, str], Tuple[int, Optional[dict]]] = {}
        self._holds: Dict[Tuple[str, str], Hold] = {}
        self.app = self._build_app()

    # -- test controls ---------------------------------------------------

    def fail(self, method: str, path: str, status: int = 500, body: Optional[dict] = None) -> None:
        """Answer the next matching request with an error."""
        self._failures[(method.upper(), path)] = (status, body)

    def hold(self, method: str, path: str) -> Hold:
        """Park the next matching request until hold.release is set."""
        hold = Hold()
        self._holds[(method.upper(), path)] = hold
        return hold

    def release_all(self) -> None:
        for hold in self._holds.values():
            hold.release.set()
        self._holds.clear()

    def count(self, method: str, path: str) -> int:
        return self.calls.count((method.upper(), path))

    def add_assignment(self, order_id: int, run_id: int) -> Dict[str, Any]:
        record = {"id": self.next_ids["assignments"], "order_id": order_id, "run_id": run_id, "notes": None}
        self.next_ids["assignments"] += 1
        self.data["assignments"].append(record)
        return record

    # -- ASGI entry point --------------------------------------------------

    async def __call__(self, scope, receive, send):
        if scope["type"] == "http":
            key = (scope["method"], scope["path"])
            self.calls.append(key)

            hold = self._holds.pop(key, None)
            if hold is not None:
                hold.arrived.set()
                await hold.release.wait()

            failure = self._failures.pop(key, None)
            if failure is not None:
                status, body = failure
                response = JSONResponse(status_code=status, content=body if body is not None else {})
                await response(scope, receive, send)
                return

        await self.app(scope, receive, send)

    # -- routes ----------------------------------------------------------

    def _build_app(self) -> FastAPI:
        app = FastAPI()
        data = self.data

        @app.get("/api/orders")
        async def list_orders():
            return {"orders": data["orders"], "total": len(data["orders"])}

        @app.get("/api/runs")
        async def list_runs():
            return data["runs"]

        @app.get("/api/drivers")
        async def list_drivers():
            return {"data": data["drivers"]}

        @app.get("/api/trucks")
        async def list_trucks():
            return {"results": data["trucks"], "page": 1}

        @app.get("/api/trailers")
        async def list_trailers():
            return {"payload": {"trailers": data["trailers"]}}

        @app.get("/api/zones")
        async def list_zones():
            return {"zoneList": data["zones"]}

        @app.get("/api/assignments")
        async def list_assignments():
            return {"assignments": data["assignments"]}

        @app.post("/api/assignments", status_code=201)
        async def create_assignment(payload: dict = Body(...)):
            if not any(o["id"] == payload.get("order_id") for o in data["orders"]):
                return JSONResponse(status_code=404, content={"error": "Order not found"})
            return self.add_assignment(payload["order_id"], payload["run_id"])

        @app.post("/api/assignments/bulk")
        async def bulk_assign(payload: dict = Body(...)):
            for order_id in payload["order_ids"]:
                self.add_assignment(order_id, payload["run_id"])
            return {"message": f"{len(payload['order_ids'])} orders assigned to run {payload['run_id']}."}

        @app.delete("/api/assignments/{assignment_id}")
        async def delete_assignment(assignment_id: int):
            before = len(data["assignments"])
            data["assignments"][:] = [a for a in data["assignments"] if a["id"] != assignment_id]
            if len(data["assignments"]) == before:
                return JSONResponse(status_code=404, content={"error": "Assignment not found"})
            return {"message": "Assignment deleted"}

        @app.delete("/api/orders/bulk")
        async def bulk_delete_orders(payload: dict = Body(...)):
            ids = set(payload.get("ids") or [])
            data["orders"][:] = [o for o in data["orders"] if o["id"] not in ids]
            data["assignments"][:] = [a for a in data["assignments"] if a["order_id"] not in ids]
            return {"deleted": len(ids)}

        @app.post("/api/runs", status_code=201)
        async def create_run(payload: dict = Body(...)):
            run = dict(payload, id=self.next_ids["runs"])
            self.next_ids["runs"] += 1
            data["runs"].append(run)
            return run

        @app.put("/api/runs/{run_id}")
        async def update_run(run_id: int, payload: dict = Body(...)):
            for run in data["runs"]:
                if run["id"] == run_id:
                    run.update(payload)
                    return run
            return JSONResponse(status_code=404, content={"error": "Run not found"})

        @app.delete("/api/runs/{run_id}")
        async def delete_run(run_id: int):
            data["runs"][:] = [r for r in data["runs"] if r["id"] != run_id]
            data["assignments"][:] = [a for a in data["assignments"] if a["run_id"] != run_id]
            return {"message": "Run deleted"}

        return app


# Mock Redis for reliability in CI/CD
class MockPubSub:
    def __init__(self, redis):
        self._redis = redis
        self.queue: asyncio.Queue = asyncio.Queue()
        self.channels = set()
        self.closed = False

    async def subscribe(self, *names):
        for name in names:
            self.channels.add(name)
            self._redis.subscribers.setdefault(name, []).append(self)

    async def unsubscribe(self, *names):
        for name in names or tuple(self.channels):
            self.channels.discard(name)
            members = self._redis.subscribers.get(name, [])
            if self in members:
                members.remove(self)

    async def listen(self):
        while True:
            yield await self.queue.get()

    async def aclose(self):
        self.closed = True


class MockRedis:
    def __init__(self):
        self.store = {}
        self.subscribers: Dict[str, List[MockPubSub]] = {}
        self.published: List[Tuple[str, str]] = []
        self.fail = False

    async def ping(self):
        return not self.fail

    async def get(self, key):
        if self.fail:
            raise ConnectionError("redis down")
        return self.store.get(key)

    async def set(self, key, value, ex=None):
        if self.fail:
            raise ConnectionError("redis down")
        self.store[key] = value
        return True

    async def publish(self, channel, message):
        self.published.append((channel, message))
        receivers = list(self.subscribers.get(channel, []))
        for pubsub in receivers:
            pubsub.queue.put_nowait({"type": "message", "channel": channel, "data": message})
        return len(receivers)

    def pubsub(self):
        return MockPubSub(self)


# -- fixtures ----------------------------------------------------------------

@pytest.fixture
def test_settings():
    return Settings(
        sync_debounce_ms=20,
        assignment_refresh_min_interval_ms=0,
        refresh_cooldown_seconds=0,
        auto_refresh_interval_seconds=0.05,
        auto_refresh_default=False,
    )


@pytest.fixture
def backend():
    fake = FakeTmsBackend()
    yield fake
    fake.release_all()


def make_api_client(backend: FakeTmsBackend, config: Optional[Settings] = None) -> ApiClient:
    return ApiClient(base_url="http://test", transport=httpx.ASGITransport(app=backend), config=config)


@pytest.fixture
async def api_client(backend, test_settings):
    client = make_api_client(backend, test_settings)
    yield client
    await client.aclose()


@pytest.fixture
def redis_mock():
    return MockRedis()


@pytest.fixture
def preferences(redis_mock):
    return PreferenceStore(redis_client=redis_mock)


@pytest.fixture
def local_backend():
    return LocalBroadcastBackend()


@pytest.fixture
async def channel_factory(local_backend, test_settings):
    """Channels on one shared in-process bus, one per simulated tab."""
    channels = []

    def _make(name: str = "test_sync") -> SyncChannel:
        channel = SyncChannel(name=name, backend=local_backend, config=test_settings)
        channels.append(channel)
        return channel

    yield _make
    for channel in channels:
        await channel.close()


@pytest.fixture
def channel(channel_factory):
    return channel_factory()


@pytest.fixture
def store(api_client, channel, test_settings):
    return AssignmentStore(api_client, channel=channel, config=test_settings)


@pytest.fixture
async def context_factory(backend, channel_factory, redis_mock, test_settings):
    """Build PlanningContexts that share the fake backend and sync bus like tabs of one browser."""
    contexts = []
    clients = []

    def _make(notify=None, confirm=None, selected_date=PLAN_DAY) -> PlanningContext:
        client = make_api_client(backend, test_settings)
        clients.append(client)
        context = PlanningContext(
            client,
            channel=channel_factory(),
            preferences=PreferenceStore(redis_client=redis_mock),
            notify=notify,
            confirm=confirm,
            config=test_settings,
            selected_date=selected_date,
        )
        contexts.append(context)
        return context

    yield _make
    for context in contexts:
        await context.close()
    for client in clients:
        await client.aclose()


@pytest.fixture(autouse=True)
def reset_process_channel():
    yield
    sync_channel_module._channel = None


@pytest.fixture
def wait_until():
    async def _wait(predicate, timeout: float = 1.0):
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout
        while not predicate():
            if loop.time() > deadline:
                raise AssertionError("condition not met in time")
            await asyncio.sleep(0.005)
    return _wait


class Toasts(list):
    """notify() stand-in collecting (message, level) pairs."""

    def __call__(self, message, level="info"):
        self.append((message, level))

    @property
    def messages(self):
        return [message for message, _ in self]


@pytest.fixture
def toasts():
    return Toasts()
