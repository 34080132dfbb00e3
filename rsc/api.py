from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.responses import JSONResponse, Response
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from .alerts import email_alert_sink
from .api_models import CreateServiceRequest, MetricRequest, ScalingPolicyRequest, TaskDefinitionIn, UpdateServiceRequest
from .autoscaler import AutoScaler
from .controller import ServiceController
from .errors import NotFound, ValidationError
from .events import EventLog
from .gateway import HttpTargetGroup, InProcessTargetGroup, NoHealthyBackends
from .metric_sources import FirstAvailable, FleetCpuMetric, PushedMetrics
from .reconciler import Reconciler
from .settings import settings
from .task_definitions import TaskDefinitionStore


def build_controller() -> tuple[ServiceController, AutoScaler, PushedMetrics]:
    """Wire the default stack: SQLite store/events, Docker runtime, LB from settings."""
    from .docker_ops import DockerRuntime

    store = TaskDefinitionStore()
    events = EventLog(sinks=[email_alert_sink])
    binding = HttpTargetGroup(settings.lb_url) if settings.lb_url else InProcessTargetGroup()
    controller = ServiceController(store, DockerRuntime(), events, binding=binding)
    pushed = PushedMetrics()
    autoscaler = AutoScaler(controller, FirstAvailable(pushed, FleetCpuMetric(controller)))
    return controller, autoscaler, pushed


def create_app(
    controller: ServiceController | None = None,
    autoscaler: AutoScaler | None = None,
    pushed_metrics: PushedMetrics | None = None,
    run_reconciler: bool = True,
) -> FastAPI:
    if controller is None:
        controller, autoscaler, pushed_metrics = build_controller()
    pushed_metrics = pushed_metrics or PushedMetrics()
    reconciler = Reconciler(controller, autoscaler)

    @asynccontextmanager
    async def lifespan(_app: FastAPI):
        if run_reconciler:
            reconciler.start()
        yield
        reconciler.stop()
        controller.health.shutdown()

    app = FastAPI(title="Rolling Service Controller", lifespan=lifespan)
    app.state.controller = controller
    app.state.reconciler = reconciler

    @app.exception_handler(ValidationError)
    async def _validation_error(_request: Request, exc: ValidationError):
        return JSONResponse(status_code=400, content={"detail": str(exc)})

    @app.exception_handler(NotFound)
    async def _not_found(_request: Request, exc: NotFound):
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.get("/health")
    def health():
        return {"status": "healthy"}

    @app.post("/task-definitions", status_code=201)
    def register_task_definition(req: TaskDefinitionIn):
        version = controller.store.register(req.to_spec())
        return controller.store.get(version).to_dict()

    @app.get("/task-definitions")
    def list_task_definitions():
        return [td.to_dict() for td in controller.store.list()]

    @app.get("/task-definitions/{version}")
    def get_task_definition(version: int):
        return controller.store.get(version).to_dict()

    @app.post("/services", status_code=201)
    def create_service(req: CreateServiceRequest):
        service_id = controller.create_service(
            task_definition=req.task_definition,
            desired_count=req.desired_count,
            rolling_policy=req.rolling_policy.to_policy(),
            name=req.name,
        )
        return controller.describe_service(service_id)

    @app.get("/services")
    def list_services():
        return controller.list_services()

    @app.get("/services/{service_id}")
    def describe_service(service_id: str):
        return controller.describe_service(service_id)

    @app.patch("/services/{service_id}")
    def update_service(service_id: str, req: UpdateServiceRequest):
        return controller.update_service(
            service_id,
            task_definition=req.task_definition,
            desired_count=req.desired_count,
            rolling_policy=req.rolling_policy.to_policy() if req.rolling_policy else None,
        )

    @app.put("/services/{service_id}/scaling-policy")
    def set_scaling_policy(service_id: str, req: ScalingPolicyRequest):
        policy = controller.set_scaling_policy(
            service_id,
            target_value=req.target_value,
            min_capacity=req.min_capacity,
            max_capacity=req.max_capacity,
            cooldown=req.cooldown,
            scale_in_cooldown=req.scale_in_cooldown,
        )
        return policy.to_dict()

    @app.post("/services/{service_id}/resume")
    def resume_service(service_id: str):
        return controller.resume_service(service_id)

    @app.post("/services/{service_id}/metric", status_code=202)
    def push_metric(service_id: str, req: MetricRequest):
        controller.get_service(service_id)
        pushed_metrics.push(service_id, req.value)
        return {"service_id": service_id, "value": req.value}

    @app.get("/route/{service_id}")
    def route(service_id: str):
        if not isinstance(controller.binding, InProcessTargetGroup):
            raise HTTPException(status_code=501, detail="Routing is handled by an external load balancer.")
        controller.get_service(service_id)
        try:
            target = controller.binding.select(service_id)
        except NoHealthyBackends as e:
            raise HTTPException(status_code=503, detail=str(e)) from e
        return {"task_id": target.task_id, "version": target.version, "url": f"http://{target.endpoint}"}

    @app.get("/events")
    def events(limit: int = 100, service_id: str | None = None):
        limit = max(1, min(1000, limit))
        return [ev.to_dict() for ev in controller.events.latest(limit=limit, service_id=service_id)]

    @app.get("/metrics")
    def metrics():
        return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app
