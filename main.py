from __future__ import annotations

import json
import logging
import secrets
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from gsr import db, service
from gsr.api_models import DeploymentCreate, LifecycleRequest, SpecUpdate, TemplateCreate
from gsr.cluster import Cluster
from gsr.ingest import ObservationIngest
from gsr.reconciler import Reconciler
from gsr.runtime import RuntimeState
from gsr.scheduler import ReconcileScheduler
from gsr.settings import settings

logger = logging.getLogger("gsr")

_RESERVED = set(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}


class JsonFormatter(logging.Formatter):
    """One JSON object per line; ``extra={...}`` fields are merged in."""

    def format(self, record: logging.LogRecord) -> str:
        data = {
            "timestamp": datetime.now(timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }
        for key, value in record.__dict__.items():
            if key not in _RESERVED:
                data[key] = value
        if record.exc_info:
            data["exception"] = self.formatException(record.exc_info)
        return json.dumps(data, default=str)


def setup_logging() -> None:
    root = logging.getLogger()
    if any(getattr(h, "_gsr", False) for h in root.handlers):
        return
    handler = logging.StreamHandler(sys.stdout)
    handler._gsr = True  # type: ignore[attr-defined]
    if settings.log_json:
        handler.setFormatter(JsonFormatter())
    else:
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    root.addHandler(handler)
    root.setLevel(settings.log_level.upper())
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("docker").setLevel(logging.WARNING)


class Controller:
    """Ingest, scheduler and reconciler wired to one cluster connection."""

    def __init__(self, cluster: Cluster):
        self.runtime = RuntimeState()
        self.reconciler = Reconciler(cluster, self.runtime)
        self.scheduler = ReconcileScheduler(self.reconciler, self.runtime)
        self.ingest = ObservationIngest(cluster, self.runtime, trigger=self.scheduler.trigger)

    def start(self) -> None:
        self.ingest.start()
        self.scheduler.start()

    def stop(self) -> None:
        self.ingest.stop()
        self.scheduler.stop()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    startup()
    try:
        yield
    finally:
        shutdown()


app = FastAPI(title="Game Server Reconciler", lifespan=lifespan)
security = HTTPBasic(auto_error=False)
controller: Controller | None = None


def require_user(credentials: HTTPBasicCredentials | None = Depends(security)) -> str | None:
    if not (settings.api_user and settings.api_password):
        return None
    if credentials is None or not (
        secrets.compare_digest(credentials.username, settings.api_user)
        and secrets.compare_digest(credentials.password, settings.api_password)
    ):
        raise HTTPException(status_code=401, detail="Invalid credentials", headers={"WWW-Authenticate": "Basic"})
    return credentials.username


@app.exception_handler(db.NotFound)
def _not_found(request: Request, exc: db.NotFound) -> JSONResponse:
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(db.ConflictError)
def _conflict(request: Request, exc: db.ConflictError) -> JSONResponse:
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(db.LifecycleError)
def _lifecycle(request: Request, exc: db.LifecycleError) -> JSONResponse:
    return JSONResponse(status_code=409, content={"detail": str(exc)})


@app.exception_handler(db.StoreUnavailable)
def _unavailable(request: Request, exc: db.StoreUnavailable) -> JSONResponse:
    # Fail closed: no desired-state change is accepted without the store.
    logger.error("State store unavailable", extra={"error": str(exc), "path": request.url.path})
    return JSONResponse(status_code=503, content={"detail": "state store unavailable"})


def startup() -> None:
    global controller
    setup_logging()
    db.init_db()
    if settings.start_controller:
        from gsr.docker_ops import DockerCluster

        controller = Controller(DockerCluster())
        controller.start()
        logger.info("Controller started", extra={"worker_id": settings.worker_id})


def shutdown() -> None:
    global controller
    if controller is not None:
        controller.stop()
        controller = None


@app.get("/healthz")
def healthz() -> dict:
    out: dict = {"status": "ok"}
    if controller is not None:
        w = controller.runtime.watch_status()
        out["watch"] = {
            "connected": w.connected,
            "last_event_time": w.last_event_time,
            "last_resync_at": w.last_resync_at,
            "reconnects": w.reconnects,
        }
    return out


@app.post("/templates", status_code=status.HTTP_201_CREATED)
def register_template(req: TemplateCreate, user: str | None = Depends(require_user)) -> dict:
    t = service.register_template(req)
    return {"name": t.name, "version": t.version, "allowed_mutations": t.allowed_mutations}


@app.post("/deployments", status_code=status.HTTP_201_CREATED)
def create_deployment(req: DeploymentCreate, user: str | None = Depends(require_user)) -> dict:
    return service.deployment_view(service.create_deployment(req))


@app.get("/deployments")
def list_deployments(include_archived: bool = False, user: str | None = Depends(require_user)) -> list[dict]:
    return [service.deployment_view(d) for d in db.list_deployments(include_archived=include_archived)]


@app.get("/deployments/{deployment_id}")
def get_deployment(deployment_id: str, user: str | None = Depends(require_user)) -> dict:
    return service.deployment_status(deployment_id)


@app.put("/deployments/{deployment_id}/spec")
def update_spec(deployment_id: str, req: SpecUpdate, user: str | None = Depends(require_user)) -> dict:
    dep = service.update_desired_spec(deployment_id, req.desired_spec, req.expected_generation)
    return service.deployment_view(dep)


@app.post("/deployments/{deployment_id}/pause")
def pause(deployment_id: str, req: LifecycleRequest | None = None, user: str | None = Depends(require_user)) -> dict:
    return service.deployment_view(service.pause(deployment_id, req.expected_generation if req else None))


@app.post("/deployments/{deployment_id}/resume")
def resume(deployment_id: str, req: LifecycleRequest | None = None, user: str | None = Depends(require_user)) -> dict:
    return service.deployment_view(service.resume(deployment_id, req.expected_generation if req else None))


@app.post("/deployments/{deployment_id}/reconcile", status_code=status.HTTP_202_ACCEPTED)
def reconcile(deployment_id: str, user: str | None = Depends(require_user)) -> dict:
    service.trigger_reconcile(deployment_id)
    return {"queued": True}


@app.delete("/deployments/{deployment_id}", status_code=status.HTTP_202_ACCEPTED)
def delete_deployment(deployment_id: str, user: str | None = Depends(require_user)) -> dict:
    return service.deployment_view(service.delete_deployment(deployment_id))


@app.get("/deployments/{deployment_id}/events")
def events(
    deployment_id: str,
    after: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=1000),
    user: str | None = Depends(require_user),
) -> dict:
    return service.event_feed(deployment_id, after=after, limit=limit)


@app.get("/deployments/{deployment_id}/snapshot")
def snapshot(deployment_id: str, user: str | None = Depends(require_user)) -> dict:
    return service.snapshot(deployment_id)


@app.get("/approvals")
def approvals(
    deployment_id: str | None = None, state: str | None = None, user: str | None = Depends(require_user)
) -> list[dict]:
    return [vars(a) for a in db.list_approvals(deployment_id=deployment_id, state=state)]


@app.post("/approvals/{approval_id}/approve")
def approve(approval_id: int, user: str | None = Depends(require_user)) -> dict:
    return vars(service.approve_adoption(approval_id))


@app.post("/approvals/{approval_id}/reject")
def reject(approval_id: int, user: str | None = Depends(require_user)) -> dict:
    return vars(service.reject_adoption(approval_id))
