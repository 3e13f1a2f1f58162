"""FastAPI routes exposing synchronisation and scheduler control."""
from __future__ import annotations

from typing import Dict, Optional

from fastapi import APIRouter, Depends, FastAPI, Header, HTTPException, Query, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field, field_validator

from .errors import (
    AlreadySyncing,
    ExternalLogicalError,
    ExternalUserNotFound,
    ServiceUnavailable,
    UserIneligible,
    UserNotFound,
    ValidationError,
)
from .security import TokenAuth
from .service import RECENT_HISTORY_LIMIT, SyncService


class FullSyncRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    dry_run: bool = Field(default=False, alias="dryRun")
    delete_orphaned: bool = Field(default=False, alias="deleteOrphaned")


class SchedulerControlRequest(BaseModel):
    action: str = Field(..., min_length=1, max_length=16)

    @field_validator("action")
    @classmethod
    def _normalize_action(cls, value: str) -> str:
        return value.strip().lower()


class IntervalRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    interval_minutes: int = Field(..., alias="intervalMinutes")


def create_app(
    service: SyncService,
    *,
    auth: TokenAuth | None = None,
    lifespan=None,
) -> FastAPI:
    app = FastAPI(
        title="VPN User Sync",
        description="Keeps VPN access server accounts in step with the user directory",
        version="1.0.0",
        lifespan=lifespan,
    )
    app.state.service = service

    def get_service() -> SyncService:
        return service

    @app.get("/health")
    async def healthcheck() -> Dict[str, str]:
        return {"status": "ok"}

    dependencies = [Depends(auth)] if auth is not None else []
    protected_router = APIRouter(dependencies=dependencies)

    # Plain def handlers: store calls block and run in the threadpool.
    @protected_router.post("/sync/full")
    def run_full_sync(
        payload: Optional[FullSyncRequest] = None,
        svc: SyncService = Depends(get_service),
    ) -> Dict[str, object]:
        options = payload or FullSyncRequest()
        result = svc.full_sync(dry_run=options.dry_run, delete_orphaned=options.delete_orphaned)
        body = result.to_dict()
        body["message"] = "Dry run completed" if options.dry_run else "Synchronisation completed"
        return body

    @protected_router.post("/sync/user/{user_id}")
    def sync_single_user(user_id: int, svc: SyncService = Depends(get_service)) -> Dict[str, object]:
        return svc.sync_user(user_id).to_dict()

    @protected_router.delete("/sync/user/{username}")
    def remove_external_user(
        username: str,
        operator: Optional[str] = Header(default=None, alias="X-Operator-Username"),
        svc: SyncService = Depends(get_service),
    ) -> Dict[str, object]:
        if operator is not None and operator.strip() == username.strip():
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="You cannot remove your own VPN account",
            )
        removed = svc.remove_user(username)
        return {"username": removed}

    @protected_router.get("/sync/status")
    def read_sync_status(
        limit: int = Query(default=RECENT_HISTORY_LIMIT, ge=1, le=100),
        svc: SyncService = Depends(get_service),
    ) -> Dict[str, object]:
        return svc.status(history_limit=limit).to_dict()

    @protected_router.get("/sync/history")
    def read_sync_history(
        limit: Optional[int] = Query(default=None, ge=1, le=100),
        svc: SyncService = Depends(get_service),
    ) -> Dict[str, object]:
        runs = svc.scheduler.history.recent(limit)
        return {
            "history": [run.to_dict() for run in runs],
            "statistics": svc.scheduler.statistics().to_dict(),
        }

    @protected_router.post("/scheduler/control")
    def control_scheduler(
        payload: SchedulerControlRequest,
        svc: SyncService = Depends(get_service),
    ) -> Dict[str, object]:
        changed = svc.control_scheduler(payload.action)
        if not changed:
            state = "running" if payload.action == "start" else "stopped"
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail=f"Scheduler is already {state}",
            )
        state = svc.scheduler.state()
        return {
            "isRunning": state.is_running,
            "intervalMinutes": state.interval_minutes,
            "scheduleExpression": state.schedule_expression,
        }

    @protected_router.put("/scheduler/interval")
    def update_interval(
        payload: IntervalRequest,
        svc: SyncService = Depends(get_service),
    ) -> Dict[str, object]:
        state = svc.update_interval(payload.interval_minutes)
        return {
            "intervalMinutes": state.interval_minutes,
            "scheduleExpression": state.schedule_expression,
            "scheduleDescription": state.schedule_description,
            "isRunning": state.is_running,
        }

    @protected_router.post("/scheduler/reset-stats")
    def reset_statistics(svc: SyncService = Depends(get_service)) -> Dict[str, object]:
        svc.scheduler.reset_stats()
        return {"statistics": svc.scheduler.statistics().to_dict()}

    app.include_router(protected_router)

    @app.exception_handler(ServiceUnavailable)
    async def handle_service_unavailable(_: object, exc: ServiceUnavailable):
        payload: Dict[str, object] = {"detail": str(exc), "guidance": exc.guidance}
        if exc.partial_run is not None:
            payload["partialRun"] = exc.partial_run.to_dict()
        return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content=payload)

    @app.exception_handler(AlreadySyncing)
    async def handle_already_syncing(_: object, exc: AlreadySyncing):
        return JSONResponse(status_code=status.HTTP_409_CONFLICT, content={"detail": str(exc)})

    @app.exception_handler(ValidationError)
    async def handle_validation_error(_: object, exc: ValidationError):
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"detail": str(exc)})

    @app.exception_handler(UserIneligible)
    async def handle_user_ineligible(_: object, exc: UserIneligible):
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"detail": str(exc), "reason": exc.reason},
        )

    @app.exception_handler(UserNotFound)
    async def handle_user_not_found(_: object, exc: UserNotFound):
        return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": str(exc)})

    @app.exception_handler(ExternalLogicalError)
    async def handle_external_error(_: object, exc: ExternalLogicalError):
        code = (
            status.HTTP_404_NOT_FOUND
            if isinstance(exc, ExternalUserNotFound)
            else status.HTTP_502_BAD_GATEWAY
        )
        return JSONResponse(status_code=code, content={"detail": str(exc)})

    return app


__all__ = ["create_app", "FullSyncRequest", "SchedulerControlRequest", "IntervalRequest"]
