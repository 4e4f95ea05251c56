from __future__ import annotations

import secrets
from typing import Any

from fastapi import Depends, FastAPI, HTTPException, Query, Request, status
from fastapi.responses import JSONResponse
from fastapi.security import HTTPBasic, HTTPBasicCredentials

from . import db
from .api_models import ActionResponse, LockdownOut, LockdownRequest, ProbeOut, ServiceOut
from .errors import SupervisorError
from .models import HealthStatus, utc_now
from .runtime import Deadline, get_lockdown
from .settings import settings
from .supervisor import Supervisor

_STATUS_BY_KIND = {
    "not_found": status.HTTP_404_NOT_FOUND,
    "container_unresolvable": status.HTTP_503_SERVICE_UNAVAILABLE,
    "runtime_operation_failed": status.HTTP_502_BAD_GATEWAY,
    "invalid_operation": status.HTTP_409_CONFLICT,
    "cancelled": status.HTTP_504_GATEWAY_TIMEOUT,
}


def create_app(
    supervisor: Supervisor | None = None,
    admin_user: str | None = None,
    admin_password: str | None = None,
    start_monitor: bool = True,
) -> FastAPI:
    app = FastAPI(title="Docker Service Supervisor")
    security = HTTPBasic(auto_error=False)
    user = admin_user or settings.admin_user
    password = admin_password if admin_password is not None else settings.admin_password
    state: dict[str, Any] = {"supervisor": supervisor}

    def sup() -> Supervisor:
        if state["supervisor"] is None:
            state["supervisor"] = Supervisor()
        return state["supervisor"]

    def current_actor(credentials: HTTPBasicCredentials | None = Depends(security)) -> str:
        if password is None:
            return "anonymous"
        if credentials is None or not (
            secrets.compare_digest(credentials.username, user) and secrets.compare_digest(credentials.password, password)
        ):
            raise HTTPException(status_code=401, detail="invalid credentials", headers={"WWW-Authenticate": "Basic"})
        return credentials.username

    def require_unlocked() -> None:
        st = get_lockdown().status()
        if st.is_locked:
            raise HTTPException(
                status_code=503,
                detail={"error": "system_lockdown", "reason": st.reason, "since": st.since.isoformat() if st.since else None},
            )

    def deadline(timeout_s: float | None = Query(None, gt=0, le=300)) -> Deadline:
        return Deadline(timeout_s if timeout_s is not None else settings.runtime_timeout_s)

    @app.exception_handler(SupervisorError)
    def _supervisor_error(_: Request, exc: SupervisorError) -> JSONResponse:
        return JSONResponse(
            status_code=_STATUS_BY_KIND.get(exc.kind, status.HTTP_500_INTERNAL_SERVER_ERROR),
            content={"error": exc.kind, "detail": str(exc)},
        )

    @app.on_event("startup")
    def _startup() -> None:
        db.init_db()
        if password is None:
            db.log_event("WARN", "SVCSUP_ADMIN_PASSWORD is not set, HTTP authentication is disabled")
        if start_monitor:
            sup().monitor.start()

    @app.on_event("shutdown")
    def _shutdown() -> None:
        if state["supervisor"] is not None:
            state["supervisor"].shutdown()

    @app.get("/health")
    def health() -> dict[str, Any]:
        return {"status": "healthy", "lockdown": get_lockdown().is_locked, "ts": utc_now().isoformat()}

    @app.get("/services", response_model=list[ServiceOut])
    def list_services(actor: str = Depends(current_actor)) -> list[ServiceOut]:
        return [ServiceOut.from_service(s) for s in sup().store.list_services()]

    @app.get("/services/{service_id}", response_model=ServiceOut)
    def get_service(service_id: int, actor: str = Depends(current_actor)) -> ServiceOut:
        return ServiceOut.from_service(sup().store.get_service(service_id))

    def _action(action: str):
        def handler(
            service_id: int,
            actor: str = Depends(current_actor),
            _: None = Depends(require_unlocked),
            dl: Deadline = Depends(deadline),
        ) -> ActionResponse:
            container_id = getattr(sup().lifecycle, action)(service_id, actor=actor, deadline=dl)
            return ActionResponse(
                service_id=service_id,
                action=action,
                container_id=container_id,
                message=f"service {action} succeeded",
            )

        handler.__name__ = f"{action}_service"
        return handler

    for action in ("start", "stop", "restart"):
        app.post(f"/services/{{service_id}}/{action}", response_model=ActionResponse)(_action(action))

    @app.post("/services/{service_id}/unlock", response_model=ServiceOut)
    def unlock_service(
        service_id: int, actor: str = Depends(current_actor), _: None = Depends(require_unlocked)
    ) -> ServiceOut:
        return ServiceOut.from_service(sup().detector.unlock(service_id, actor=actor))

    @app.post("/services/{service_id}/probe", response_model=ProbeOut)
    def probe_service(
        service_id: int, actor: str = Depends(current_actor), dl: Deadline = Depends(deadline)
    ) -> ProbeOut:
        result = sup().prober.probe_and_update(service_id, deadline=dl)
        if result is None:
            return ProbeOut(
                service_id=service_id,
                status=HealthStatus.UNKNOWN.value,
                cause="crash-looping, checks disabled",
                timestamp=utc_now(),
                skipped=True,
            )
        return ProbeOut.from_result(service_id, result)

    @app.get("/services/{service_id}/diagnostics")
    def diagnostics(
        service_id: int, actor: str = Depends(current_actor), dl: Deadline = Depends(deadline)
    ) -> dict[str, Any]:
        return sup().diagnostics(service_id, deadline=dl)

    @app.get("/events")
    def events(limit: int = Query(100, ge=1, le=1000), actor: str = Depends(current_actor)) -> list[dict[str, Any]]:
        return db.latest_events(limit)

    @app.get("/audit")
    def audit(limit: int = Query(50, ge=1, le=100), actor: str = Depends(current_actor)) -> list[dict[str, Any]]:
        return [vars(r) for r in db.latest_audit(limit)]

    @app.get("/system/lockdown", response_model=LockdownOut)
    def lockdown_status() -> LockdownOut:
        return LockdownOut(**vars(get_lockdown().status()))

    @app.post("/system/lockdown", response_model=LockdownOut)
    def engage_lockdown(req: LockdownRequest, actor: str = Depends(current_actor)) -> LockdownOut:
        st = get_lockdown().engage(req.reason, actor)
        sup().audit.record_system_action(actor, "system_lockdown", {"reason": req.reason})
        db.log_event("WARN", f"System lockdown engaged by {actor}: {req.reason}")
        return LockdownOut(**vars(st))

    @app.post("/system/lockdown/lift", response_model=LockdownOut)
    def lift_lockdown(actor: str = Depends(current_actor)) -> LockdownOut:
        get_lockdown().lift()
        sup().audit.record_system_action(actor, "system_lockdown_lift")
        db.log_event("INFO", f"System lockdown lifted by {actor}")
        return LockdownOut(**vars(get_lockdown().status()))

    return app
