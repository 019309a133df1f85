"""Thin FastAPI adapter over the allocation services."""
from __future__ import annotations

from typing import Any, Dict, List, Optional, Union

from fastapi import APIRouter, FastAPI, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, Field, model_validator

from .bootstrap import AllocationServices, build_services
from .contracts import AllocationPolicy, ExecutionRecord, ExecutionStatus, OutletDemandSignal
from .errors import AllocationError, envelope

HTTP_STATUS: Dict[str, int] = {
    "VALIDATION_FAILED": 422,
    "GATE_REFUSED": 403,
    "ALREADY_RUNNING": 409,
    "RUN_ID_CONFLICT": 409,
    "POLICY_IN_USE": 409,
    "PRESET_READ_ONLY": 409,
    "POLICY_NOT_FOUND": 404,
    "PRESET_NOT_FOUND": 404,
    "EXECUTION_NOT_FOUND": 404,
    "COMMIT_FAILED": 500,
    "SAFETY_CHECK_FAILED": 500,
    "EXECUTION_TIMEOUT": 500,
    "INTERNAL_ERROR": 500,
}


class SignalIn(BaseModel):
    outlet_id: str = Field(min_length=1, max_length=64)
    product_id: str = Field(min_length=1, max_length=64)
    current_stock: int = Field(default=0, ge=0)
    demand_weight: float
    capacity: Optional[int] = Field(default=None, ge=0)

    def to_signal(self) -> OutletDemandSignal:
        return OutletDemandSignal(
            outlet_id=self.outlet_id,
            product_id=self.product_id,
            current_stock=self.current_stock,
            demand_weight=self.demand_weight,
            capacity=self.capacity,
        )


class SimulateRequest(BaseModel):
    policy_id: Optional[int] = None
    policy: Optional[Dict[str, Any]] = None
    signals: List[SignalIn]
    total_units: Union[int, Dict[str, int]]
    source_outlet_id: Optional[str] = None

    @model_validator(mode="after")
    def _one_policy(self) -> "SimulateRequest":
        if (self.policy_id is None) == (self.policy is None):
            raise ValueError("exactly one of policy_id or policy is required")
        return self

    def policy_ref(self) -> Union[int, Dict[str, Any]]:
        return self.policy_id if self.policy_id is not None else dict(self.policy or {})

    def signal_values(self) -> List[OutletDemandSignal]:
        return [item.to_signal() for item in self.signals]


class ExecuteRequest(SimulateRequest):
    simulation_mode: bool = True
    run_id: Optional[str] = Field(default=None, max_length=64)
    actor: Optional[str] = Field(default=None, max_length=64)


class WriteWindowRequest(BaseModel):
    seconds: Optional[int] = Field(default=None, ge=1, le=86_400)


class ActorRequest(BaseModel):
    actor: Optional[str] = Field(default=None, max_length=64)


def _policy_payload(policy: AllocationPolicy) -> Dict[str, Any]:
    return policy.snapshot()


def _record_payload(record: ExecutionRecord) -> Dict[str, Any]:
    payload = record.as_dict()
    if record.result is not None:
        payload["result"] = record.result.as_dict()
    if record.error is not None and isinstance(record.error, AllocationError):
        payload["error"] = record.error.envelope.as_dict()
    return payload


def _record_status(record: ExecutionRecord) -> int:
    if record.status is ExecutionStatus.FAILED:
        return HTTP_STATUS.get(record.error_code or "", 500)
    return 200


def _error_response(code: str, **details: Any) -> JSONResponse:
    return JSONResponse(envelope(code, details=details).as_dict(), status_code=HTTP_STATUS.get(code, 500))


def create_router(services: AllocationServices) -> APIRouter:
    router = APIRouter()
    orchestrator = services.orchestrator
    policies = services.policies
    gate = services.gate

    @router.post("/allocate/simulate")
    def simulate(body: SimulateRequest) -> Dict[str, Any]:
        result = orchestrator.simulate(
            body.policy_ref(),
            body.signal_values(),
            body.total_units,
            source_outlet_id=body.source_outlet_id,
        )
        return result.as_dict()

    @router.post("/allocate/execute")
    def execute(body: ExecuteRequest) -> JSONResponse:
        record = orchestrator.execute(
            body.policy_ref(),
            body.signal_values(),
            body.total_units,
            simulation_mode=body.simulation_mode,
            source_outlet_id=body.source_outlet_id,
            run_id=body.run_id,
            actor=body.actor,
        )
        return JSONResponse(_record_payload(record), status_code=_record_status(record))

    @router.get("/executions/recent")
    def recent(limit: int = Query(default=20, ge=1, le=services.config.execution.recent_limit_max)):
        return [record.as_dict() for record in orchestrator.recent(limit)]

    @router.get("/executions/{run_id}")
    def execution(run_id: str):
        record = services.store.find_by_run_id(run_id)
        if record is None:
            return _error_response("EXECUTION_NOT_FOUND", run_id=run_id)
        payload = record.as_dict()
        payload["lines"] = [
            {
                "product_id": line.product_id,
                "source_outlet_id": line.source_outlet_id,
                "outlet_id": line.outlet_id,
                "units": line.units,
                "priority_score": line.priority_score,
            }
            for line in services.store.lines_for(run_id)
        ]
        return payload

    @router.get("/policies")
    def list_policies(active_only: bool = False):
        return [_policy_payload(policy) for policy in policies.list(active_only=active_only)]

    @router.post("/policies", status_code=201)
    def create_policy(body: Dict[str, Any], actor: Optional[str] = None):
        return _policy_payload(policies.create(body, actor=actor))

    @router.get("/policies/{policy_id}")
    def get_policy(policy_id: int):
        return _policy_payload(policies.get(policy_id))

    @router.put("/policies/{policy_id}")
    def update_policy(policy_id: int, body: Dict[str, Any], actor: Optional[str] = None):
        return _policy_payload(policies.update(policy_id, body, actor=actor))

    @router.delete("/policies/{policy_id}", status_code=204)
    def delete_policy(policy_id: int) -> None:
        policies.delete(policy_id)

    @router.post("/policies/{policy_id}/clone", status_code=201)
    def clone_policy(policy_id: int, body: Optional[ActorRequest] = None):
        actor = body.actor if body else None
        return _policy_payload(policies.clone(policy_id, actor=actor))

    @router.get("/presets")
    def list_presets():
        return {"presets": policies.preset_names()}

    @router.get("/presets/{name}")
    def get_preset(name: str):
        return _policy_payload(policies.load_preset(name))

    @router.get("/safety")
    def safety_status():
        return gate.status()

    @router.post("/safety/kill-switch/activate")
    def activate_kill_switch():
        gate.kill_switch.activate()
        return gate.status()

    @router.post("/safety/kill-switch/deactivate")
    def deactivate_kill_switch():
        gate.kill_switch.deactivate()
        return gate.status()

    @router.post("/safety/write-window")
    def open_write_window(body: Optional[WriteWindowRequest] = None):
        gate.write_window.open(body.seconds if body else None)
        return gate.status()

    @router.delete("/safety/write-window")
    def close_write_window():
        gate.write_window.close()
        return gate.status()

    @router.get("/metrics")
    def metrics() -> PlainTextResponse:
        data = generate_latest(services.registry)
        return PlainTextResponse(data.decode("utf-8"), media_type=CONTENT_TYPE_LATEST)

    @router.get("/healthz")
    def healthz():
        return {"status": "ok", "service": services.config.observability.service_name}

    return router


def create_app(services: Optional[AllocationServices] = None) -> FastAPI:
    services = services or build_services()
    app = FastAPI(title="Stock Allocation Engine")
    app.state.services = services

    @app.exception_handler(AllocationError)
    async def allocation_error_handler(request: Request, exc: AllocationError):
        return JSONResponse(exc.envelope.as_dict(), status_code=HTTP_STATUS.get(exc.code, 500))

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        body = envelope("VALIDATION_FAILED", details={"errors": jsonable_encoder(exc.errors())})
        return JSONResponse(body.as_dict(), status_code=HTTP_STATUS["VALIDATION_FAILED"])

    app.include_router(create_router(services))
    return app


__all__ = ["HTTP_STATUS", "create_app", "create_router"]
