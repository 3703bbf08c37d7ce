"""Pydantic models for API responses."""

from typing import Any, Dict, List, Optional
from pydantic import BaseModel, Field
from enum import Enum


class RunStatusEnum(str, Enum):
    NOT_STARTED = "not_started"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class MigrationStatusResponse(BaseModel):
    current_step: str = "not_started"
    progress_percentage: float = 0.0
    details: Dict[str, Any] = Field(default_factory=dict)
    updated_at: Optional[str] = None


class MigrationRunResponse(BaseModel):
    id: str
    type: str = "full"
    status: RunStatusEnum
    start_time: Optional[str] = None
    end_time: Optional[str] = None
    log: Dict[str, Any] = Field(default_factory=dict)


class MigrationRunListResponse(BaseModel):
    runs: List[MigrationRunResponse]
    total: int


class HealthResponse(BaseModel):
    status: str
    target_store: str
