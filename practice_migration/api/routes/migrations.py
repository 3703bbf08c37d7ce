"""Read-only endpoints over the migration status row and run log."""

from functools import lru_cache
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query

from ..models import (
    MigrationRunListResponse,
    MigrationRunResponse,
    MigrationStatusResponse,
)
from ...config import MigrationSettings
from ...errors import ConfigurationError, TargetStoreError
from ...services.progress import RUNS_TABLE, STATUS_ROW_ID, STATUS_TABLE
from ...services.target_store import TargetStore

router = APIRouter()


@lru_cache()
def get_target_store() -> TargetStore:
    """Shared TargetStore built from the environment."""
    settings = MigrationSettings.from_env()
    try:
        settings.validate(require_legacy=False)
    except ConfigurationError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return TargetStore.from_settings(settings)


@router.get("/status", response_model=MigrationStatusResponse)
async def get_status(store: TargetStore = Depends(get_target_store)):
    """Latest snapshot from the shared status row."""
    try:
        rows = store.select(
            STATUS_TABLE, filters={"id": f"eq.{STATUS_ROW_ID}"}, order=None, limit=1
        )
    except TargetStoreError as e:
        raise HTTPException(status_code=502, detail=str(e))

    if not rows:
        return MigrationStatusResponse()
    row = rows[0]
    return MigrationStatusResponse(
        current_step=row.get("current_step") or "not_started",
        progress_percentage=row.get("progress_percentage") or 0.0,
        details=row.get("details") or {},
        updated_at=row.get("updated_at"),
    )


@router.get("/runs", response_model=MigrationRunListResponse)
async def list_runs(
    limit: int = Query(10, ge=1, le=100),
    store: TargetStore = Depends(get_target_store),
):
    """Most recent migration runs, newest first."""
    try:
        rows = store.select(RUNS_TABLE, order="start_time.desc", limit=limit)
    except TargetStoreError as e:
        raise HTTPException(status_code=502, detail=str(e))

    runs: List[MigrationRunResponse] = [_run_response(row) for row in rows]
    return MigrationRunListResponse(runs=runs, total=len(runs))


@router.get("/runs/{run_id}", response_model=MigrationRunResponse)
async def get_run(run_id: str, store: TargetStore = Depends(get_target_store)):
    """A single migration run with its log."""
    try:
        rows = store.select(RUNS_TABLE, filters={"id": f"eq.{run_id}"}, order=None, limit=1)
    except TargetStoreError as e:
        raise HTTPException(status_code=502, detail=str(e))

    if not rows:
        raise HTTPException(status_code=404, detail="Migration run not found")
    return _run_response(rows[0])


def _run_response(row: dict) -> MigrationRunResponse:
    return MigrationRunResponse(
        id=str(row["id"]),
        type=row.get("type") or "full",
        status=row.get("status") or "not_started",
        start_time=row.get("start_time"),
        end_time=row.get("end_time"),
        log=row.get("log") or {},
    )
