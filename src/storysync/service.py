"""Request-level orchestration of project reads, writes and restores."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Mapping, TypeVar

from .assembler import assemble_from_meta, decompose, replace_document
from .audit import AuditEntry, AuditEvent, AuditSink, LoggingAuditSink, read_audit
from .changes import ChangeFeed, ChangePage, compute_patch
from .context import SyncContext
from .delta import ProjectDelta, parse_delta
from .document import validate_document
from .errors import (
    InternalSyncError,
    InvalidPayloadError,
    NotFoundError,
    PayloadTooLargeError,
    SyncDisabledError,
    SyncError,
    UnauthorizedError,
    VersionConflictError,
)
from .merge import DeltaMerger, reconcile_design_assets
from .rollout import RolloutPolicy
from .snapshots import SnapshotManager, SnapshotSummary, StoredSnapshot
from .store import MetaRecord, StoreSession
from .versioning import VersionController

logger = logging.getLogger(__name__)

MAX_META_BYTES = 1_800_000

ACTION_GET = "project.get"
ACTION_SAVE = "project.save"
ACTION_SNAPSHOTS = "project.snapshots"
ACTION_SNAPSHOT = "project.snapshot"
ACTION_RESTORE = "project.restore"
ACTION_CHANGES = "project.changes"
ACTION_AUDIT = "sync.audit"

_MUTATING_ACTIONS = frozenset({ACTION_SAVE, ACTION_RESTORE})

_AUDIT_STATUS = (
    (SyncDisabledError, "disabled"),
    (InvalidPayloadError, "invalid"),
    (VersionConflictError, "conflict"),
    (NotFoundError, "not_found"),
    (PayloadTooLargeError, "too_large"),
    (UnauthorizedError, "unauthorized"),
)

T = TypeVar("T")


@dataclass(frozen=True)
class ProjectState:
    document: Dict[str, Any]
    version: int


@dataclass(frozen=True)
class SaveResult:
    """Version produced by a write; ``duplicate`` marks a replayed retry."""

    version: int
    duplicate: bool = False


@dataclass(frozen=True)
class RestoreResult:
    version: int
    restored_from: int


def _audit_status(error: SyncError) -> str:
    for error_type, status in _AUDIT_STATUS:
        if isinstance(error, error_type):
            return status
    return "error"


def meta_size(meta: Mapping[str, Any]) -> int:
    """Return the UTF-8 size of the serialised meta record."""

    return len(json.dumps(meta, ensure_ascii=False).encode("utf-8"))


class ProjectSyncService:
    """Coordinate the store, version controller, snapshots and change feed.

    Every operation checks the rollout gate before touching storage. Mutating
    operations validate, detect conflicts and check the meta size before the
    first write, and always write the meta record last through a version
    compare-and-swap.
    """

    def __init__(
        self,
        *,
        rollout: RolloutPolicy | None = None,
        snapshots: SnapshotManager | None = None,
        changes: ChangeFeed | None = None,
        audit_sink: AuditSink | None = None,
        max_meta_bytes: int = MAX_META_BYTES,
        audit_limit: int = 50,
    ) -> None:
        self.rollout = rollout or RolloutPolicy()
        self.snapshots = snapshots or SnapshotManager()
        self.changes = changes or ChangeFeed()
        self.audit_sink: AuditSink = audit_sink or LoggingAuditSink()
        self.max_meta_bytes = max_meta_bytes
        self.audit_limit = audit_limit

    async def get_project(self, ctx: SyncContext) -> ProjectState:
        async def operation() -> ProjectState:
            async with ctx.store.session(write=False) as session:
                meta = await session.get_meta(ctx.owner_id)
                if meta is None:
                    raise NotFoundError("Project not found.")
                document = await assemble_from_meta(session, ctx.owner_id, meta)
            return ProjectState(document=document, version=meta.version)

        return await self._run(ctx, ACTION_GET, operation)

    async def save_project(
        self,
        ctx: SyncContext,
        *,
        document: Mapping[str, Any] | None = None,
        delta: Mapping[str, Any] | None = None,
        base_version: int | None = None,
        op_id: str | None = None,
    ) -> SaveResult:
        """Apply a full document or a delta on top of ``base_version``.

        Raises:
            InvalidPayloadError: When the payload fails validation.
            VersionConflictError: When ``base_version`` is stale.
            PayloadTooLargeError: When the merged meta record is too large.
        """

        detail: Dict[str, Any] = {"baseVersion": base_version}
        if op_id:
            detail["opId"] = op_id

        async def operation() -> SaveResult:
            if (document is None) == (delta is None):
                raise InvalidPayloadError(
                    "Provide exactly one of projectData or delta.", path="projectData"
                )
            if document is not None:
                detail["mode"] = "full"
                payload = validate_document(document).to_payload()
                return await self._write_full(ctx, payload, base_version, op_id)
            detail["mode"] = "delta"
            parsed = parse_delta(delta)
            return await self._write_delta(ctx, parsed, base_version, op_id)

        result = await self._run(
            ctx,
            ACTION_SAVE,
            operation,
            detail=detail,
            on_success=lambda saved: (
                "duplicate" if saved.duplicate else "ok",
                {"updatedAt": saved.version},
            ),
        )
        return result

    async def list_snapshots(self, ctx: SyncContext) -> List[SnapshotSummary]:
        async def operation() -> List[SnapshotSummary]:
            async with ctx.store.session(write=False) as session:
                return await self.snapshots.list_snapshots(session, ctx.owner_id)

        return await self._run(ctx, ACTION_SNAPSHOTS, operation)

    async def get_snapshot(self, ctx: SyncContext, version: int) -> StoredSnapshot:
        async def operation() -> StoredSnapshot:
            async with ctx.store.session(write=False) as session:
                return await self.snapshots.get_snapshot(session, ctx.owner_id, version)

        return await self._run(
            ctx, ACTION_SNAPSHOT, operation, detail={"version": version}
        )

    async def restore_snapshot(self, ctx: SyncContext, version: int) -> RestoreResult:
        """Make the snapshot at ``version`` the live document again.

        The restore is a write: the current document is archived first and the
        result carries a new version greater than every earlier one.
        """

        async def operation() -> RestoreResult:
            if isinstance(version, bool) or not isinstance(version, int):
                raise InvalidPayloadError("Missing or invalid version.", path="version")
            owner_id = ctx.owner_id
            async with ctx.store.session() as session:
                payload = await self.snapshots.load_for_restore(session, owner_id, version)
                meta = await session.get_meta(owner_id)
                current = (
                    await assemble_from_meta(session, owner_id, meta)
                    if meta is not None
                    else None
                )
                payload = reconcile_design_assets(current, payload)
                self._check_meta_size(decompose(payload).meta)

                new_version = self._versions(ctx).next_version(
                    meta.version if meta is not None else None
                )
                now = ctx.now()
                new_meta = await self.snapshots.restore(
                    session,
                    owner_id,
                    payload,
                    current_document=current,
                    current_version=meta.version if meta is not None else None,
                    version=new_version,
                    created_at=now,
                )
                await self._commit(
                    ctx,
                    session,
                    before=current,
                    meta=meta,
                    new_meta=new_meta,
                    version=new_version,
                    op_id=None,
                )
            logger.info(
                "Restored snapshot %s for %s as version %s",
                version,
                owner_id,
                new_version,
            )
            return RestoreResult(version=new_version, restored_from=version)

        return await self._run(
            ctx,
            ACTION_RESTORE,
            operation,
            detail={"version": version},
            on_success=lambda restored: ("ok", {"updatedAt": restored.version}),
        )

    async def changes_since(self, ctx: SyncContext, since: int) -> ChangePage:
        async def operation() -> ChangePage:
            async with ctx.store.session(write=False) as session:
                return await self.changes.changes_since(session, ctx.owner_id, since)

        return await self._run(ctx, ACTION_CHANGES, operation, detail={"since": since})

    async def list_audit(self, ctx: SyncContext) -> List[AuditEntry]:
        async def operation() -> List[AuditEntry]:
            async with ctx.store.session(write=False) as session:
                return await read_audit(session, ctx.owner_id, limit=self.audit_limit)

        return await self._run(ctx, ACTION_AUDIT, operation)

    async def _write_full(
        self,
        ctx: SyncContext,
        payload: Dict[str, Any],
        base_version: int | None,
        op_id: str | None,
    ) -> SaveResult:
        owner_id = ctx.owner_id
        new_meta = decompose(payload).meta
        async with ctx.store.session() as session:
            meta = await session.get_meta(owner_id)
            settled = await self._decide(ctx, session, meta, base_version, op_id)
            if settled is not None:
                return settled
            self._check_meta_size(new_meta)

            before = await self._capture_current(ctx, session, meta)
            version = self._versions(ctx).next_version(
                meta.version if meta is not None else None
            )
            payload = reconcile_design_assets(before, payload)
            new_meta = await replace_document(session, owner_id, payload, version=version)
            await self._commit(
                ctx,
                session,
                before=before,
                meta=meta,
                new_meta=new_meta,
                version=version,
                op_id=op_id,
            )
        logger.info("Saved full project for %s as version %s", owner_id, version)
        return SaveResult(version=version)

    async def _write_delta(
        self,
        ctx: SyncContext,
        delta: ProjectDelta,
        base_version: int | None,
        op_id: str | None,
    ) -> SaveResult:
        owner_id = ctx.owner_id
        async with ctx.store.session() as session:
            meta = await session.get_meta(owner_id)
            settled = await self._decide(ctx, session, meta, base_version, op_id)
            if settled is not None:
                return settled
            if meta is not None and delta.is_empty():
                logger.info("Ignoring empty delta for %s", owner_id)
                return SaveResult(version=meta.version)

            merger = DeltaMerger(session, owner_id)
            merged_meta = await merger.plan(delta, meta=meta.data if meta else None)
            self._check_meta_size(merged_meta)

            before = await self._capture_current(ctx, session, meta)
            version = self._versions(ctx).next_version(
                meta.version if meta is not None else None
            )
            result = await merger.write(version)
            await self._commit(
                ctx,
                session,
                before=before,
                meta=meta,
                new_meta=result.meta,
                version=version,
                op_id=op_id,
            )
        logger.info(
            "Applied delta for %s as version %s (upserted=%s deleted=%s)",
            owner_id,
            version,
            result.upserted,
            result.deleted,
        )
        return SaveResult(version=version)

    def _versions(self, ctx: SyncContext) -> VersionController:
        return VersionController(clock=ctx.clock)

    async def _decide(
        self,
        ctx: SyncContext,
        session: StoreSession,
        meta: MetaRecord | None,
        base_version: int | None,
        op_id: str | None,
    ) -> SaveResult | None:
        """Return a result for duplicates, raise on conflicts, else ``None``."""

        decision = self._versions(ctx).decide(meta, base_version, op_id)
        if decision.duplicate and meta is not None:
            logger.info(
                "Duplicate write %s for %s at version %s",
                op_id,
                ctx.owner_id,
                meta.version,
            )
            return SaveResult(version=meta.version, duplicate=True)
        if decision.conflict and meta is not None:
            current = await assemble_from_meta(session, ctx.owner_id, meta)
            logger.info(
                "Version conflict for %s: base %s, current %s",
                ctx.owner_id,
                base_version,
                meta.version,
            )
            raise VersionConflictError(meta.version, current)
        return None

    async def _capture_current(
        self, ctx: SyncContext, session: StoreSession, meta: MetaRecord | None
    ) -> Dict[str, Any] | None:
        if meta is None:
            return None
        current = await assemble_from_meta(session, ctx.owner_id, meta)
        await self.snapshots.capture(
            session,
            ctx.owner_id,
            version=meta.version,
            document=current,
            created_at=ctx.now(),
        )
        return current

    async def _commit(
        self,
        ctx: SyncContext,
        session: StoreSession,
        *,
        before: Mapping[str, Any] | None,
        meta: MetaRecord | None,
        new_meta: Dict[str, Any],
        version: int,
        op_id: str | None,
    ) -> None:
        """Record the change feed entry, then write the meta record last."""

        owner_id = ctx.owner_id
        after = await assemble_from_meta(
            session, owner_id, MetaRecord(data=new_meta, version=version)
        )
        await self.changes.record(
            session,
            owner_id,
            document_version=version,
            patch=compute_patch(after, before),
            created_at=ctx.now(),
        )
        swapped = await session.put_meta(
            owner_id,
            new_meta,
            version=version,
            op_id=op_id,
            expected_version=meta.version if meta is not None else None,
        )
        if not swapped:
            latest = await session.get_meta(owner_id)
            current = (
                await assemble_from_meta(session, owner_id, latest)
                if latest is not None
                else None
            )
            logger.warning("Lost version race for %s", owner_id)
            raise VersionConflictError(
                latest.version if latest is not None else 0, current
            )

    def _check_meta_size(self, meta: Mapping[str, Any]) -> None:
        size = meta_size(meta)
        if size > self.max_meta_bytes:
            raise PayloadTooLargeError(size, self.max_meta_bytes)

    def _check_gate(self, ctx: SyncContext) -> None:
        info = self.rollout.info(ctx.owner_id)
        if not info.enabled:
            raise SyncDisabledError(info.percent)

    async def _run(
        self,
        ctx: SyncContext,
        action: str,
        operation: Callable[[], Awaitable[T]],
        *,
        detail: Mapping[str, Any] | None = None,
        on_success: Callable[[T], tuple[str, Mapping[str, Any]]] | None = None,
    ) -> T:
        audit_detail: Dict[str, Any] = {}
        try:
            self._check_gate(ctx)
            result = await operation()
        except SyncError as exc:
            audit_detail = {"reason": exc.reason, "error": str(exc)}
            if isinstance(exc, SyncDisabledError):
                audit_detail["rolloutPercent"] = exc.percent
            if isinstance(exc, VersionConflictError):
                audit_detail["currentVersion"] = exc.current_version
            await self._audit(ctx, action, _audit_status(exc), detail, audit_detail)
            raise
        except Exception as exc:
            logger.exception("%s failed for %s", action, ctx.owner_id)
            await self._audit(
                ctx, action, "error", detail, {"error": type(exc).__name__}
            )
            raise InternalSyncError("Storage operation failed.") from exc

        if action in _MUTATING_ACTIONS:
            status = "ok"
            if on_success is not None:
                status, audit_detail = on_success(result)
            await self._audit(ctx, action, status, detail, audit_detail)
        return result

    async def _audit(
        self,
        ctx: SyncContext,
        action: str,
        status: str,
        detail: Mapping[str, Any] | None,
        extra: Mapping[str, Any],
    ) -> None:
        payload: Dict[str, Any] = {**(detail or {}), **extra}
        if ctx.device_id:
            payload["deviceId"] = ctx.device_id
        try:
            await self.audit_sink.record(
                AuditEvent(
                    owner_id=ctx.owner_id, action=action, status=status, detail=payload
                )
            )
        except Exception:
            logger.warning(
                "Failed to record audit event %s/%s for %s",
                action,
                status,
                ctx.owner_id,
                exc_info=True,
            )


__all__ = [
    "MAX_META_BYTES",
    "ProjectState",
    "ProjectSyncService",
    "RestoreResult",
    "SaveResult",
    "meta_size",
]
