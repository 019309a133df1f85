from __future__ import annotations

from typing import Any

import anyio
import httpx
import pytest
from fastapi import FastAPI

from stock_allocation.api import create_app
from stock_allocation.keys import policy_key


class SyncASGIClient:
    def __init__(self, app: FastAPI) -> None:
        self._app = app

    def request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        async def _call() -> httpx.Response:
            transport = httpx.ASGITransport(app=self._app)
            async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
                return await client.request(method, path, **kwargs)

        return anyio.run(_call)

    def get(self, path: str, **kwargs: Any) -> httpx.Response:
        return self.request("GET", path, **kwargs)

    def post(self, path: str, **kwargs: Any) -> httpx.Response:
        return self.request("POST", path, **kwargs)

    def put(self, path: str, **kwargs: Any) -> httpx.Response:
        return self.request("PUT", path, **kwargs)

    def delete(self, path: str, **kwargs: Any) -> httpx.Response:
        return self.request("DELETE", path, **kwargs)


@pytest.fixture
def client(services) -> SyncASGIClient:
    return SyncASGIClient(create_app(services))


SIGNALS = [
    {"outlet_id": "north", "product_id": "p1", "demand_weight": 3.0},
    {"outlet_id": "south", "product_id": "p1", "demand_weight": 1.0},
]
POLICY = {"name": "inline", "min_allocation_pct": 0, "max_allocation_pct": 100}


def _body(**overrides: Any) -> dict[str, Any]:
    return {"policy": POLICY, "signals": SIGNALS, "total_units": 20, **overrides}


def test_simulate_returns_plan(client) -> None:
    response = client.post("/allocate/simulate", json=_body())

    assert response.status_code == 200
    payload = response.json()
    assert {line["outlet_id"]: line["allocated_units"] for line in payload["lines"]} == {"north": 15, "south": 5}
    assert payload["conserved"] is True


def test_simulate_rejects_invalid_policy(client) -> None:
    response = client.post(
        "/allocate/simulate",
        json=_body(policy={"name": "bad", "min_allocation_pct": 90, "max_allocation_pct": 10}),
    )

    assert response.status_code == 422
    error = response.json()
    assert error["code"] == "VALIDATION_FAILED"
    assert error["details"]["errors"][0]["code"] == "MIN_NOT_BELOW_MAX"


@pytest.mark.parametrize("body", [{"signals": SIGNALS, "total_units": 5}, _body(policy_id=1)])
def test_request_needs_exactly_one_policy(client, body) -> None:
    response = client.post("/allocate/simulate", json=body)
    assert response.status_code == 422
    assert response.json()["code"] == "VALIDATION_FAILED"


def test_execute_simulation_is_recorded(client) -> None:
    response = client.post("/allocate/execute", json=_body(run_id="api-run", actor="ops"))

    assert response.status_code == 200
    payload = response.json()
    assert payload["status"] == "Completed"
    assert payload["result"]["total_allocated"] == 20

    fetched = client.get("/executions/api-run")
    assert fetched.status_code == 200
    assert fetched.json()["actor"] == "ops"
    assert fetched.json()["lines"] == []

    recent = client.get("/executions/recent", params={"limit": 5})
    assert [item["run_id"] for item in recent.json()] == ["api-run"]

    reused = client.post("/allocate/execute", json=_body(run_id="api-run"))
    assert reused.status_code == 409
    assert reused.json()["code"] == "RUN_ID_CONFLICT"


def test_live_execution_persists_lines(client, services, seed) -> None:
    seed(services, {("warehouse", "p1"): 50})

    response = client.post("/allocate/execute", json=_body(simulation_mode=False))

    assert response.status_code == 200
    run_id = response.json()["run_id"]
    lines = client.get(f"/executions/{run_id}").json()["lines"]
    assert sorted((line["outlet_id"], line["units"]) for line in lines) == [("north", 15), ("south", 5)]


def test_kill_switch_refuses_live_execution(client) -> None:
    assert client.post("/safety/kill-switch/activate").json()["kill_switch_active"] is True

    response = client.post("/allocate/execute", json=_body(simulation_mode=False))

    assert response.status_code == 403
    assert response.json()["error_code"] == "GATE_REFUSED"
    assert response.json()["error"]["details"]["reason"] == "kill_switch"

    status = client.post("/safety/kill-switch/deactivate").json()
    assert status["writes_allowed"] is True


def test_held_lock_maps_to_conflict(client, services) -> None:
    policy = services.policies.create(POLICY)
    services.store.try_lock(policy_key(policy))

    response = client.post("/allocate/execute", json={"policy_id": policy.id, "signals": SIGNALS, "total_units": 5})

    assert response.status_code == 409
    assert response.json()["code"] == "ALREADY_RUNNING"


def test_unknown_execution_is_404(client) -> None:
    response = client.get("/executions/nope")
    assert response.status_code == 404
    assert response.json()["code"] == "EXECUTION_NOT_FOUND"


def test_policy_lifecycle(client) -> None:
    created = client.post("/policies", json={"name": "Weekly", "method": 2}, params={"actor": "planner"})
    assert created.status_code == 201
    policy = created.json()
    assert policy["method"] == 2
    assert policy["created_by"] == "planner"

    updated = client.put(f"/policies/{policy['id']}", json={"name": "Weekly v2"})
    assert updated.status_code == 200
    assert updated.json()["name"] == "Weekly v2"

    clone = client.post(f"/policies/{policy['id']}/clone", json={"actor": "planner"})
    assert clone.status_code == 201
    assert clone.json()["name"] == "Weekly v2 (Copy)"

    assert len(client.get("/policies").json()) == 2
    assert client.delete(f"/policies/{policy['id']}").status_code == 204
    missing = client.get(f"/policies/{policy['id']}")
    assert missing.status_code == 404
    assert missing.json()["code"] == "POLICY_NOT_FOUND"


def test_policy_validation_errors_are_field_level(client) -> None:
    response = client.post("/policies", json={"name": "", "power_factor": "abc"})
    assert response.status_code == 422
    fields = {item["field"] for item in response.json()["details"]["errors"]}
    assert fields == {"name", "power_factor"}


def test_presets(client) -> None:
    assert client.get("/presets").json() == {"presets": ["aggressive", "balanced", "conservative"]}
    balanced = client.get("/presets/balanced").json()
    assert balanced["is_preset"] is True
    assert balanced["rounding_method"] == 3

    missing = client.get("/presets/unknown")
    assert missing.status_code == 404
    assert missing.json()["code"] == "PRESET_NOT_FOUND"


def test_write_window_endpoints(client) -> None:
    opened = client.post("/safety/write-window", json={"seconds": 120}).json()
    assert opened["write_window_active"] is True
    assert 0 < opened["write_window_remaining_seconds"] <= 120

    closed = client.delete("/safety/write-window").json()
    assert closed["write_window_active"] is False
    assert client.get("/safety").json()["reason"] is None


def test_metrics_and_health(client, services) -> None:
    client.post("/allocate/execute", json=_body())

    metrics = client.get("/metrics")
    assert metrics.status_code == 200
    assert metrics.headers["content-type"].startswith("text/plain")
    assert "allocation_runs_total" in metrics.text
    assert (
        services.registry.get_sample_value("allocation_runs_total", {"status": "completed", "mode": "simulation"})
        == 1.0
    )

    health = client.get("/healthz").json()
    assert health["status"] == "ok"
