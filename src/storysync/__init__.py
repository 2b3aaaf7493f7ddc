"""Sync and versioning engine for hierarchical story projects."""

from .assembler import assemble, decompose, replace_document
from .audit import AuditEvent, AuditSink, LoggingAuditSink, StoreAuditSink
from .changes import ChangeFeed, ChangePage, compute_patch
from .context import SyncContext
from .delta import ProjectDelta, parse_delta
from .document import ProjectDocument, validate_document
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
from .identity import IdentityResolver, StaticTokenIdentityResolver
from .merge import DeltaMerger, apply_delta
from .rollout import RolloutInfo, RolloutPolicy
from .service import ProjectState, ProjectSyncService, RestoreResult, SaveResult
from .snapshots import SnapshotManager
from .sqlite_store import SQLiteEntityStore
from .store import EntityStore, InMemoryEntityStore
from .versioning import VersionController, WriteDecision

__all__ = [
    "ProjectDocument",
    "validate_document",
    "ProjectDelta",
    "parse_delta",
    "EntityStore",
    "InMemoryEntityStore",
    "SQLiteEntityStore",
    "assemble",
    "decompose",
    "replace_document",
    "DeltaMerger",
    "apply_delta",
    "VersionController",
    "WriteDecision",
    "SnapshotManager",
    "ChangeFeed",
    "ChangePage",
    "compute_patch",
    "SyncContext",
    "ProjectSyncService",
    "ProjectState",
    "SaveResult",
    "RestoreResult",
    "RolloutInfo",
    "RolloutPolicy",
    "IdentityResolver",
    "StaticTokenIdentityResolver",
    "AuditEvent",
    "AuditSink",
    "LoggingAuditSink",
    "StoreAuditSink",
    "SyncError",
    "UnauthorizedError",
    "SyncDisabledError",
    "InvalidPayloadError",
    "VersionConflictError",
    "NotFoundError",
    "PayloadTooLargeError",
    "InternalSyncError",
]
