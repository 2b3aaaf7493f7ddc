"""FastAPI application exposing the project sync endpoints."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, TypeVar

from fastapi import FastAPI, Header, HTTPException, Query, Response
from pydantic import BaseModel, ConfigDict, Field

from ..audit import CompositeAuditSink, LoggingAuditSink, StoreAuditSink
from ..changes import ChangeFeed
from ..context import SyncContext
from ..errors import InvalidPayloadError, SyncError
from ..identity import IdentityResolver, StaticTokenIdentityResolver, parse_bearer_token
from ..rollout import RolloutPolicy
from ..service import ProjectSyncService
from ..snapshots import SnapshotManager
from ..sqlite_store import SQLiteEntityStore
from ..store import EntityStore, InMemoryEntityStore
from .settings import SyncApiSettings

logger = logging.getLogger(__name__)

T = TypeVar("T")


class ProjectResponse(BaseModel):
    """Assembled project document with the version it was read at."""

    projectData: dict[str, Any]
    updatedAt: int


class ProjectSaveRequest(BaseModel):
    """Request payload for saving a full document or a delta."""

    model_config = ConfigDict(extra="ignore")

    projectData: Any = Field(
        None, description="Full replacement document. Mutually exclusive with delta."
    )
    delta: Any = Field(
        None, description="Partial change set applied against the stored rows."
    )
    updatedAt: int | None = Field(
        None, description="Version the client based its edit on."
    )
    opId: str | None = Field(
        None, description="Idempotency token; a retry with the same token is a no-op."
    )
    deviceId: str | None = None


class ProjectSaveResponse(BaseModel):
    ok: bool = True
    updatedAt: int
    duplicate: bool = False


class SnapshotSummaryResource(BaseModel):
    version: int
    createdAt: int


class SnapshotListResponse(BaseModel):
    snapshots: list[SnapshotSummaryResource]


class SnapshotDetailResponse(BaseModel):
    version: int
    createdAt: int
    projectData: dict[str, Any]


class ProjectRestoreRequest(BaseModel):
    """Request payload naming the snapshot version to restore."""

    model_config = ConfigDict(extra="ignore")

    version: Any = None
    deviceId: str | None = None


class ProjectRestoreResponse(BaseModel):
    ok: bool = True
    updatedAt: int
    restoredFrom: int


class ChangeResource(BaseModel):
    version: int
    documentVersion: int
    createdAt: int
    patch: dict[str, Any] | None


class ChangePageResponse(BaseModel):
    changes: list[ChangeResource]
    latestVersion: int
    hasMore: bool


class AuditResource(BaseModel):
    id: int
    action: str
    status: str
    detail: dict[str, Any] | None
    createdAt: int


class AuditListResponse(BaseModel):
    entries: list[AuditResource]


def _http_error(exc: SyncError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.to_detail())


def _parse_since(value: str | None) -> int:
    if value is None or not value.strip():
        raise InvalidPayloadError("Missing or invalid 'since' parameter.", path="since")
    try:
        return int(value.strip())
    except ValueError as exc:
        raise InvalidPayloadError(
            "Missing or invalid 'since' parameter.", path="since"
        ) from exc


def _build_store(settings: SyncApiSettings) -> EntityStore:
    if settings.database_path is None:
        return InMemoryEntityStore()
    return SQLiteEntityStore(settings.database_path)


def create_app(
    service: ProjectSyncService | None = None,
    *,
    settings: SyncApiSettings | None = None,
    identity_resolver: IdentityResolver | None = None,
    store: EntityStore | None = None,
) -> FastAPI:
    """Create a FastAPI app exposing the project sync endpoints."""

    resolved_settings = settings or SyncApiSettings.from_env()
    entity_store = store or _build_store(resolved_settings)

    sync_service = service
    if sync_service is None:
        sync_service = ProjectSyncService(
            rollout=RolloutPolicy.from_values(
                resolved_settings.rollout_percent,
                resolved_settings.rollout_salt,
                resolved_settings.rollout_allowlist,
            ),
            snapshots=SnapshotManager(retention=resolved_settings.snapshot_retention),
            changes=ChangeFeed(retention=resolved_settings.changelog_retention),
            audit_sink=CompositeAuditSink(
                [
                    StoreAuditSink(
                        entity_store, retention=resolved_settings.audit_retention
                    ),
                    LoggingAuditSink(),
                ]
            ),
            audit_limit=resolved_settings.audit_retention,
        )

    resolver = identity_resolver or StaticTokenIdentityResolver(
        resolved_settings.api_tokens
    )
    @asynccontextmanager
    async def lifespan(_app: FastAPI) -> AsyncIterator[None]:
        await entity_store.ensure_schema()
        yield

    async def _context(
        authorization: str | None, device_id: str | None
    ) -> SyncContext:
        owner_id = resolver.resolve(parse_bearer_token(authorization))
        return SyncContext(owner_id=owner_id, store=entity_store, device_id=device_id)

    async def _call(operation: Callable[[], Awaitable[T]]) -> T:
        try:
            return await operation()
        except SyncError as exc:
            raise _http_error(exc) from exc

    tags_metadata = [
        {
            "name": "Project",
            "description": (
                "Read and write the project document with optimistic "
                "concurrency and idempotent retries."
            ),
        },
        {
            "name": "Snapshots",
            "description": "Browse and restore archived versions of the project.",
        },
        {
            "name": "Sync",
            "description": "Incremental change feed and the sync audit trail.",
        },
    ]

    app = FastAPI(
        title="Story Project Sync API",
        version="0.1.0",
        description=(
            "HTTP API synchronising a hierarchical story project between "
            "devices. Writes are version checked, archived and recorded in an "
            "incremental change feed."
        ),
        openapi_tags=tags_metadata,
        lifespan=lifespan,
    )

    @app.get("/api/project", response_model=ProjectResponse, tags=["Project"])
    async def get_project(
        response: Response,
        authorization: str | None = Header(None),
        x_device_id: str | None = Header(None),
    ) -> ProjectResponse:
        async def operation() -> ProjectResponse:
            ctx = await _context(authorization, x_device_id)
            state = await sync_service.get_project(ctx)
            return ProjectResponse(projectData=state.document, updatedAt=state.version)

        result = await _call(operation)
        response.headers["ETag"] = str(result.updatedAt)
        return result

    @app.put("/api/project", response_model=ProjectSaveResponse, tags=["Project"])
    async def put_project(
        payload: ProjectSaveRequest,
        response: Response,
        authorization: str | None = Header(None),
        x_device_id: str | None = Header(None),
    ) -> ProjectSaveResponse:
        async def operation() -> ProjectSaveResponse:
            ctx = await _context(authorization, x_device_id or payload.deviceId)
            saved = await sync_service.save_project(
                ctx,
                document=payload.projectData,
                delta=payload.delta,
                base_version=payload.updatedAt,
                op_id=payload.opId,
            )
            return ProjectSaveResponse(
                updatedAt=saved.version, duplicate=saved.duplicate
            )

        result = await _call(operation)
        response.headers["ETag"] = str(result.updatedAt)
        return result

    @app.get(
        "/api/project-snapshots",
        response_model=SnapshotListResponse,
        tags=["Snapshots"],
    )
    async def list_snapshots(
        authorization: str | None = Header(None),
        x_device_id: str | None = Header(None),
    ) -> SnapshotListResponse:
        async def operation() -> SnapshotListResponse:
            ctx = await _context(authorization, x_device_id)
            snapshots = await sync_service.list_snapshots(ctx)
            return SnapshotListResponse(
                snapshots=[
                    SnapshotSummaryResource(**summary.to_payload())
                    for summary in snapshots
                ]
            )

        return await _call(operation)

    @app.get(
        "/api/project-snapshots/{version}",
        response_model=SnapshotDetailResponse,
        tags=["Snapshots"],
    )
    async def get_snapshot(
        version: int,
        authorization: str | None = Header(None),
        x_device_id: str | None = Header(None),
    ) -> SnapshotDetailResponse:
        async def operation() -> SnapshotDetailResponse:
            ctx = await _context(authorization, x_device_id)
            snapshot = await sync_service.get_snapshot(ctx, version)
            return SnapshotDetailResponse(
                version=snapshot.version,
                createdAt=snapshot.created_at,
                projectData=snapshot.document,
            )

        return await _call(operation)

    @app.post(
        "/api/project-restore",
        response_model=ProjectRestoreResponse,
        tags=["Snapshots"],
    )
    async def restore_snapshot(
        payload: ProjectRestoreRequest,
        response: Response,
        authorization: str | None = Header(None),
        x_device_id: str | None = Header(None),
    ) -> ProjectRestoreResponse:
        async def operation() -> ProjectRestoreResponse:
            ctx = await _context(authorization, x_device_id or payload.deviceId)
            restored = await sync_service.restore_snapshot(ctx, payload.version)
            return ProjectRestoreResponse(
                updatedAt=restored.version, restoredFrom=restored.restored_from
            )

        result = await _call(operation)
        response.headers["ETag"] = str(result.updatedAt)
        return result

    @app.get(
        "/api/project-changes",
        response_model=ChangePageResponse,
        tags=["Sync"],
    )
    async def get_changes(
        since: str | None = Query(
            None, description="Return change entries after this sequence number."
        ),
        authorization: str | None = Header(None),
        x_device_id: str | None = Header(None),
    ) -> ChangePageResponse:
        async def operation() -> ChangePageResponse:
            ctx = await _context(authorization, x_device_id)
            page = await sync_service.changes_since(ctx, _parse_since(since))
            return ChangePageResponse(**page.to_payload())

        return await _call(operation)

    @app.get("/api/sync-audit", response_model=AuditListResponse, tags=["Sync"])
    async def get_audit(
        authorization: str | None = Header(None),
        x_device_id: str | None = Header(None),
    ) -> AuditListResponse:
        async def operation() -> AuditListResponse:
            ctx = await _context(authorization, x_device_id)
            entries = await sync_service.list_audit(ctx)
            return AuditListResponse(
                entries=[AuditResource(**entry.to_payload()) for entry in entries]
            )

        return await _call(operation)

    return app


__all__ = ["create_app"]
