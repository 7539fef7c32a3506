import os
from collections.abc import Callable
from pathlib import Path
from typing import Literal

from fastapi import APIRouter, Response, status
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from orderpay.config import settings
from orderpay.db.session import SessionLocal
from orderpay.observability import log_event
from orderpay.schemas.health import HealthResponse, ReadinessDependency, ReadinessResponse

ReadinessStatus = Literal["ok", "error"]

router = APIRouter(tags=["health"])


@router.get("/health", summary="Health check", response_model=HealthResponse)
def health() -> HealthResponse:
    return HealthResponse(status="ok")


@router.get(
    "/ready",
    summary="Readiness check",
    response_model=ReadinessResponse,
    responses={status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ReadinessResponse}},
)
def readiness(response: Response) -> ReadinessResponse:
    dependencies: list[ReadinessDependency] = []

    database_status = _safe_dependency_status(
        "database", lambda: _database_dependency_status(SessionLocal)
    )
    dependencies.append(ReadinessDependency(name="database", status=database_status))

    if settings.proof_storage_backend == "local":
        proof_store_status = _safe_dependency_status(
            "proof_store",
            lambda: _local_proof_store_status(Path(settings.proof_storage_dir)),
        )
        dependencies.append(ReadinessDependency(name="proof_store", status=proof_store_status))

    readiness_status = "ok" if all(dep.status == "ok" for dep in dependencies) else "degraded"
    if readiness_status != "ok":
        response.status_code = status.HTTP_503_SERVICE_UNAVAILABLE
    return ReadinessResponse(status=readiness_status, dependencies=dependencies)


def _safe_dependency_status(
    dependency_name: str,
    checker: Callable[[], ReadinessStatus],
) -> ReadinessStatus:
    try:
        return checker()
    except Exception as exc:  # readiness reports degraded instead of failing
        log_event(
            "readiness_dependency_check_failed",
            reason=f"{dependency_name}:{type(exc).__name__}",
        )
        return "error"


def _database_dependency_status(
    session_factory: Callable[[], Session],
) -> ReadinessStatus:
    try:
        with session_factory() as db:
            db.execute(text("SELECT 1"))
    except SQLAlchemyError:
        return "error"
    return "ok"


def _local_proof_store_status(root_dir: Path) -> ReadinessStatus:
    try:
        root_dir.mkdir(parents=True, exist_ok=True)
    except OSError:
        return "error"
    return "ok" if os.access(root_dir, os.W_OK) else "error"
