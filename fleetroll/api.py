from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from . import __version__, db
from .api_models import CapacityRequest, CreateFleetRequest, MetricRequest, ScalingPolicyModel, UpdateRequest
from .controller import Controller
from .errors import FleetrollError, ResultCode
from .gateway import GatewayTrafficDirector, NoHealthyBackends

STATUS_BY_RESULT = {
    ResultCode.CONFLICT: 409,
    ResultCode.INVALID_POLICY: 422,
    ResultCode.NOT_FOUND: 404,
    ResultCode.TIMEOUT: 504,
    ResultCode.FAILED: 502,
}


def build_default_controller() -> Controller:
    from .docker_ops import DockerFleetProvider

    return Controller(DockerFleetProvider(), GatewayTrafficDirector())


def create_app(controller: Controller | None = None, start_background: bool = True) -> FastAPI:
    """Operator API. Without a controller, a docker-backed one is built at startup."""

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        ctl = controller or build_default_controller()
        app.state.controller = ctl
        if start_background:
            ctl.start()
        else:
            ctl.recover()
        yield
        ctl.stop()

    app = FastAPI(title="fleetroll", version=__version__, lifespan=lifespan)

    @app.exception_handler(FleetrollError)
    async def _fleetroll_error(request: Request, exc: FleetrollError) -> JSONResponse:
        return JSONResponse(
            status_code=STATUS_BY_RESULT.get(exc.result, 500),
            content={"result": exc.result.value, "detail": str(exc)},
        )

    def ctl(request: Request) -> Controller:
        return request.app.state.controller

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "healthy", "version": __version__}

    # -- fleet ------------------------------------------------------------

    @app.get("/fleet")
    def describe_fleet(request: Request) -> dict[str, Any]:
        return ctl(request).describe_fleet().to_dict()

    @app.post("/fleet", status_code=201)
    def create_fleet(req: CreateFleetRequest, request: Request) -> dict[str, Any]:
        return ctl(request).create_fleet(req.to_spec(), req.desired_capacity).to_dict()

    @app.post("/fleet/capacity")
    def set_capacity(req: CapacityRequest, request: Request) -> dict[str, Any]:
        return ctl(request).set_desired(req.desired).to_dict()

    @app.get("/route")
    def route(request: Request) -> JSONResponse:
        c = ctl(request)
        if not isinstance(c.director, GatewayTrafficDirector):
            return JSONResponse(status_code=501, content={"result": "failed", "detail": "traffic director has no routing table"})
        try:
            rid = c.director.pick()
        except NoHealthyBackends as e:
            return JSONResponse(status_code=503, content={"result": "failed", "detail": str(e)})
        replica = c.fleet.get(rid)
        return JSONResponse(content={"replica": rid, "address": replica.address if replica else None})

    # -- updates ----------------------------------------------------------

    @app.post("/updates", status_code=202)
    def submit_update(req: UpdateRequest, request: Request) -> dict[str, Any]:
        c = ctl(request)
        current = c.describe_fleet().launch_spec
        spec = req.to_spec(default_zones=current.zones if current else ())
        return c.submit_update(spec, req.policy.to_policy()).to_dict()

    @app.get("/updates")
    def list_updates(request: Request) -> list[dict[str, Any]]:
        return [st.to_dict() for st in ctl(request).orchestrator.list_updates()]

    @app.get("/updates/{update_id}")
    def describe_update(update_id: str, request: Request) -> dict[str, Any]:
        return ctl(request).orchestrator.describe_update(update_id).to_dict()

    @app.post("/updates/{update_id}/pause")
    def pause_update(update_id: str, request: Request) -> dict[str, Any]:
        return ctl(request).orchestrator.pause_update(update_id).to_dict()

    @app.post("/updates/{update_id}/resume")
    def resume_update(update_id: str, request: Request) -> dict[str, Any]:
        return ctl(request).resume_update(update_id).to_dict()

    @app.post("/updates/{update_id}/cancel")
    def cancel_update(update_id: str, request: Request) -> dict[str, Any]:
        return ctl(request).orchestrator.cancel_update(update_id).to_dict()

    # -- scaling ----------------------------------------------------------

    @app.get("/scaling-policy")
    def get_scaling_policy(request: Request) -> dict[str, Any]:
        return ctl(request).capacity.policy.to_dict()

    @app.put("/scaling-policy")
    def put_scaling_policy(req: ScalingPolicyModel, request: Request) -> dict[str, Any]:
        return ctl(request).submit_scaling_policy(req.to_policy()).to_dict()

    @app.post("/scaling/evaluate")
    def evaluate(req: MetricRequest, request: Request) -> dict[str, Any]:
        action = ctl(request).push_metric(req.metric)
        return {"action": action.to_dict() if action else None}

    # -- events -----------------------------------------------------------

    @app.get("/events")
    def events(limit: int = 100, update_id: str | None = None) -> list[dict[str, Any]]:
        return db.latest_events(limit=max(1, min(1000, limit)), update_id=update_id)

    return app
