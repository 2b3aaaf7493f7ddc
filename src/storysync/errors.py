"""Exception hierarchy shared by the sync engine and its HTTP surface."""

from __future__ import annotations

from typing import Any, Mapping


class SyncError(RuntimeError):
    """Base class for every rejection surfaced to a sync client.

    ``reason`` is a short machine-readable string, ``status_code`` the HTTP
    status the API layer reports for the failure.
    """

    status_code = 500
    default_reason = "error"

    def __init__(self, message: str, *, reason: str | None = None) -> None:
        super().__init__(message)
        self.reason = reason or self.default_reason

    def to_detail(self) -> dict[str, Any]:
        """Return the structured error payload exposed to clients."""

        return {"error": str(self), "reason": self.reason}


class UnauthorizedError(SyncError):
    """Raised when a request carries no usable credential."""

    status_code = 401
    default_reason = "unauthorized"


class SyncDisabledError(SyncError):
    """Raised when the rollout gate is closed for the owner."""

    status_code = 403
    default_reason = "sync_disabled"

    def __init__(self, percent: float) -> None:
        super().__init__("Sync disabled for this account")
        self.percent = percent

    def to_detail(self) -> dict[str, Any]:
        detail = super().to_detail()
        detail["rollout"] = {"percent": self.percent}
        return detail


class InvalidPayloadError(SyncError):
    """Raised when a document, delta or restore target fails validation."""

    status_code = 400
    default_reason = "invalid_payload"

    def __init__(
        self, message: str, *, path: str | None = None, reason: str | None = None
    ) -> None:
        super().__init__(message, reason=reason)
        self.path = path

    def to_detail(self) -> dict[str, Any]:
        detail = super().to_detail()
        if self.path is not None:
            detail["path"] = self.path
        return detail


class VersionConflictError(SyncError):
    """Raised when the client's base version no longer matches the store."""

    status_code = 409
    default_reason = "version_conflict"

    def __init__(
        self,
        current_version: int,
        current_document: Mapping[str, Any] | None,
    ) -> None:
        super().__init__("Project has changed since the provided base version.")
        self.current_version = current_version
        self.current_document = current_document

    def to_detail(self) -> dict[str, Any]:
        detail = super().to_detail()
        detail["currentVersion"] = self.current_version
        detail["projectData"] = self.current_document
        return detail


class NotFoundError(SyncError):
    """Raised when the requested document or snapshot does not exist."""

    status_code = 404
    default_reason = "not_found"


class PayloadTooLargeError(SyncError):
    """Raised when the serialised meta record exceeds the size ceiling."""

    status_code = 413
    default_reason = "payload_too_large"

    def __init__(self, size: int, limit: int) -> None:
        super().__init__(
            f"Project metadata is {size} bytes which exceeds the {limit} byte limit."
        )
        self.size = size
        self.limit = limit

    def to_detail(self) -> dict[str, Any]:
        detail = super().to_detail()
        detail["size"] = self.size
        detail["limit"] = self.limit
        return detail


class InternalSyncError(SyncError):
    """Raised when the storage collaborator fails; safe to retry."""

    status_code = 500
    default_reason = "internal_error"


__all__ = [
    "SyncError",
    "UnauthorizedError",
    "SyncDisabledError",
    "InvalidPayloadError",
    "VersionConflictError",
    "NotFoundError",
    "PayloadTooLargeError",
    "InternalSyncError",
]
