"""FastAPI application entry point."""

from fastapi import Depends, FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .models import HealthResponse
from .routes import migrations
from .routes.migrations import get_target_store
from ..services.target_store import TargetStore

app = FastAPI(
    title="Practice Migration API",
    description="Read-only status for the practice database migration",
    version="0.1.0",
)

# CORS middleware for the dashboard
app.add_middleware(
    CORSMiddleware,
    allow_origins=["http://localhost:5173", "http://127.0.0.1:5173", "http://localhost:3000"],
    allow_credentials=True,
    allow_methods=["GET"],
    allow_headers=["*"],
)

app.include_router(migrations.router, prefix="/api/migrations", tags=["migrations"])


@app.get("/api/health", response_model=HealthResponse)
async def health_check(store: TargetStore = Depends(get_target_store)):
    """Health check endpoint."""
    reachable = store.health_check()
    return HealthResponse(
        status="healthy" if reachable else "degraded",
        target_store="reachable" if reachable else "unreachable",
    )
