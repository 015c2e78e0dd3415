"""
HTTP API - REST endpoints for declaring Sentry projects.

Declaring, changing and deleting projects only touches the store; the
controller picks the change up on its next poll.
"""

import asyncio
import logging
import re
from datetime import datetime
from typing import Any, Dict, List, Optional

import asyncpg
import uvicorn
from fastapi import FastAPI, HTTPException
from fastapi.responses import StreamingResponse
from pydantic import BaseModel, Field, field_validator

from db import DatabaseManager
from events import EventBus, EventType, ProjectEvent
from validation import SENTRY_PROJECT_SCHEMA, validate_project_spec

logger = logging.getLogger(__name__)

# Kubernetes-style name: lowercase alphanumeric and '-', max 63 chars
NAME_PATTERN = re.compile(r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$")
MAX_NAME_LENGTH = 63


class ProjectCreate(BaseModel):
    """Request model for declaring a project."""

    name: str = Field(..., description="Resource key, unique per operator")
    spec: Dict[str, Any] = Field(..., description="Desired Sentry project state")

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        if not v:
            raise ValueError("name cannot be empty")
        if len(v) > MAX_NAME_LENGTH:
            raise ValueError(f"name cannot exceed {MAX_NAME_LENGTH} characters")
        if not NAME_PATTERN.match(v):
            raise ValueError(
                "name must consist of lowercase alphanumeric characters or '-', "
                "must start and end with an alphanumeric character"
            )
        return v


class ProjectUpdate(BaseModel):
    """Request model for replacing a project's spec."""

    spec: Dict[str, Any]


class ProjectResponse(BaseModel):
    id: int
    name: str
    spec: Dict[str, Any]
    status: Dict[str, Any]
    finalizers: List[str]
    generation: int
    resource_version: int
    deletion_timestamp: Optional[datetime] = None
    retry_count: int = 0
    last_reconcile_time: Optional[datetime] = None
    next_reconcile_time: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class ReconciliationHistoryResponse(BaseModel):
    id: int
    project_name: str
    generation: Optional[int] = None
    success: bool
    action: Optional[str] = None
    phase: Optional[str] = None
    message: Optional[str] = None
    duration_seconds: Optional[float] = None
    trigger_reason: Optional[str] = None
    reconcile_time: datetime


class APIServer:
    """FastAPI application serving the project API under ``/api/v1``."""

    def __init__(
        self, host: str = "0.0.0.0", port: int = 8000, log_level: str = "INFO"
    ):
        self.host = host
        self.port = port
        self.log_level = log_level
        self.server: Optional[uvicorn.Server] = None
        self._db_manager: Optional[DatabaseManager] = None
        self._event_bus: Optional[EventBus] = None
        self.app = FastAPI(
            title="Sentry Project Operator API",
            description="Declare Sentry projects and follow their reconciliation",
            version="0.1.0",
        )
        self._setup_routes()

    def set_db_manager(self, db_manager: DatabaseManager) -> None:
        self._db_manager = db_manager

    def set_event_bus(self, event_bus: EventBus) -> None:
        self._event_bus = event_bus

    def _require_db(self) -> DatabaseManager:
        if not self._db_manager:
            raise HTTPException(status_code=503, detail="Database not available")
        return self._db_manager

    def _validate_spec(self, spec: Dict[str, Any]) -> None:
        is_valid, error = validate_project_spec(spec)
        if not is_valid:
            raise HTTPException(
                status_code=400, detail=f"Spec validation failed: {error}"
            )

    async def _publish(self, event_type: EventType, record: Optional[Dict]) -> None:
        if self._event_bus:
            await self._event_bus.publish_record(event_type, record)

    def _setup_routes(self) -> None:
        """
        Register all routes.

        - Health check: GET /
        - Spec schema: GET /api/v1/schema
        - Projects CRUD: /api/v1/projects
        - Reconciliation: POST /api/v1/projects/{name}/reconcile
        - History: GET /api/v1/projects/{name}/history
        - Events: GET /api/v1/events, GET /api/v1/projects/{name}/events
        """

        @self.app.get("/")
        async def health_check():
            return {"status": "ok", "service": "sentry-project-operator"}

        @self.app.get("/api/v1/schema")
        async def get_schema():
            return SENTRY_PROJECT_SCHEMA

        @self.app.post(
            "/api/v1/projects", response_model=ProjectResponse, status_code=201
        )
        async def create_project(project: ProjectCreate):
            """Declare a new project."""
            db = self._require_db()
            self._validate_spec(project.spec)

            try:
                created = await db.create_project(project.name, project.spec)
            except asyncpg.UniqueViolationError:
                raise HTTPException(
                    status_code=409, detail=f"Project {project.name} already exists"
                )
            except Exception as e:
                logger.error(f"Error creating project: {e}")
                raise HTTPException(status_code=500, detail=str(e))

            await self._publish(EventType.CREATED, created)
            return ProjectResponse(**created)

        @self.app.get("/api/v1/projects", response_model=List[ProjectResponse])
        async def list_projects(
            phase: Optional[str] = None,
            organization: Optional[str] = None,
            limit: int = 100,
        ):
            """List declared projects with optional filters."""
            db = self._require_db()
            try:
                projects = await db.list_projects(
                    phase=phase, organization=organization, limit=limit
                )
            except Exception as e:
                logger.error(f"Error listing projects: {e}")
                raise HTTPException(status_code=500, detail=str(e))
            return [ProjectResponse(**p) for p in projects]

        @self.app.get("/api/v1/projects/{name}", response_model=ProjectResponse)
        async def get_project(name: str):
            db = self._require_db()
            record = await db.get_project_record(name)
            if not record:
                raise HTTPException(status_code=404, detail="Project not found")
            return ProjectResponse(**record)

        @self.app.put("/api/v1/projects/{name}", response_model=ProjectResponse)
        async def update_project(name: str, update: ProjectUpdate):
            """Replace a project's spec. The organization cannot change."""
            db = self._require_db()
            self._validate_spec(update.spec)

            try:
                current = await db.get_project_record(name)
                if not current:
                    raise HTTPException(status_code=404, detail="Project not found")
                organization = current["spec"].get("organization")
                if update.spec["organization"] != organization:
                    raise HTTPException(
                        status_code=409,
                        detail=(
                            f"spec.organization is immutable (currently {organization})"
                        ),
                    )

                updated = await db.update_project_spec(name, update.spec)
                if not updated:
                    existing = await db.get_project_record(name)
                    if not existing:
                        raise HTTPException(status_code=404, detail="Project not found")
                    raise HTTPException(
                        status_code=409, detail="Project is being deleted"
                    )
            except HTTPException:
                raise
            except Exception as e:
                logger.error(f"Error updating project: {e}")
                raise HTTPException(status_code=500, detail=str(e))

            await self._publish(EventType.MODIFIED, updated)
            return ProjectResponse(**updated)

        @self.app.delete("/api/v1/projects/{name}", status_code=202)
        async def delete_project(name: str):
            """Request deletion; the Sentry project is removed by the controller."""
            db = self._require_db()
            try:
                if not await db.delete_project(name):
                    raise HTTPException(status_code=404, detail="Project not found")
                record = await db.get_project_record(name)
            except HTTPException:
                raise
            except Exception as e:
                logger.error(f"Error deleting project: {e}")
                raise HTTPException(status_code=500, detail=str(e))

            await self._publish(EventType.DELETION_REQUESTED, record)
            return {"message": "Project marked for deletion", "name": name}

        @self.app.post("/api/v1/projects/{name}/reconcile", status_code=202)
        async def trigger_reconciliation(name: str):
            db = self._require_db()
            if not await db.mark_project_for_reconciliation(name):
                raise HTTPException(status_code=404, detail="Project not found")
            return {"message": "Reconciliation triggered", "name": name}

        @self.app.get(
            "/api/v1/projects/{name}/history",
            response_model=List[ReconciliationHistoryResponse],
        )
        async def get_reconciliation_history(name: str, limit: int = 10):
            db = self._require_db()
            history = await db.get_reconciliation_history(name, limit)
            return [ReconciliationHistoryResponse(**row) for row in history]

        # ==================== Event Streaming Endpoints ====================

        @self.app.get("/api/v1/events")
        async def stream_all_events():
            """SSE stream of all project events."""
            return await self._stream_events(None)

        @self.app.get("/api/v1/projects/{name}/events")
        async def stream_project_events(name: str):
            """SSE stream for a single project."""
            def filter_fn(event: ProjectEvent) -> bool:
                return event.project_name == name

            return await self._stream_events(filter_fn)

    async def _stream_events(self, filter_fn) -> StreamingResponse:
        if not self._event_bus:
            raise HTTPException(status_code=503, detail="Event streaming not available")

        subscriber_id, subscription = await self._event_bus.subscribe(filter_fn)

        async def event_generator():
            try:
                async for event in subscription:
                    yield event.to_sse()
            except asyncio.CancelledError:
                pass
            finally:
                await self._event_bus.unsubscribe(subscriber_id)

        return StreamingResponse(
            event_generator(),
            media_type="text/event-stream",
            headers={"Cache-Control": "no-cache", "X-Accel-Buffering": "no"},
        )

    async def start(self) -> None:
        """Serve the API until stop() is called."""
        config = uvicorn.Config(
            self.app,
            host=self.host,
            port=self.port,
            log_level=self.log_level.lower(),
        )
        self.server = uvicorn.Server(config)
        logger.info(f"Starting HTTP API on {self.host}:{self.port}")
        await self.server.serve()

    async def stop(self) -> None:
        logger.info("Stopping HTTP API")
        if self.server:
            self.server.should_exit = True
