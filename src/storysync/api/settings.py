"""Configuration helpers for deploying the project sync service."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

from ..audit import DEFAULT_AUDIT_RETENTION
from ..changes import DEFAULT_CHANGELOG_RETENTION
from ..rollout import normalize_rollout_percent
from ..snapshots import DEFAULT_SNAPSHOT_RETENTION

_LOG_LEVELS = ("CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG")


def _normalise_path(value: str | None) -> Path | None:
    if value is None:
        return None

    trimmed = value.strip()
    if not trimmed:
        return None

    return Path(trimmed).expanduser()


def _normalise_string(value: str | None, *, default: str) -> str:
    if value is None:
        return default

    trimmed = value.strip()
    return trimmed or default


def _normalise_positive_int(value: str | None, *, name: str, default: int) -> int:
    if value is None:
        return default

    trimmed = value.strip()
    if not trimmed:
        return default

    try:
        parsed = int(trimmed)
    except ValueError as exc:
        raise ValueError(f"{name} must be a positive integer.") from exc
    if parsed < 1:
        raise ValueError(f"{name} must be greater than zero.")
    return parsed


def _normalise_list(value: str | None) -> tuple[str, ...]:
    if value is None:
        return ()
    return tuple(entry.strip() for entry in value.split(",") if entry.strip())


def _normalise_tokens(value: str | None) -> dict[str, str]:
    tokens: dict[str, str] = {}
    for entry in _normalise_list(value):
        token, separator, owner = entry.partition("=")
        if not separator or not token.strip() or not owner.strip():
            raise ValueError(
                "STORYSYNC_API_TOKENS entries must look like 'token=owner'."
            )
        tokens[token.strip()] = owner.strip()
    return tokens


@dataclass(frozen=True)
class SyncApiSettings:
    """Deployment settings for the FastAPI application.

    Values are read from environment variables so the service can be
    configured without modifying application code. Empty strings are treated
    as if the variable was unset; the database path is expanded to support
    ``~`` prefixes. Without a database path the service keeps data in memory.
    """

    database_path: Path | None = None
    rollout_percent: float = 100.0
    rollout_salt: str = ""
    rollout_allowlist: tuple[str, ...] = ()
    snapshot_retention: int = DEFAULT_SNAPSHOT_RETENTION
    changelog_retention: int = DEFAULT_CHANGELOG_RETENTION
    audit_retention: int = DEFAULT_AUDIT_RETENTION
    api_tokens: Mapping[str, str] = field(default_factory=dict)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "SyncApiSettings":
        """Return settings populated from ``environ``.

        Args:
            environ: Optional mapping of environment variables. When omitted,
                :data:`os.environ` is used.

        Raises:
            ValueError: If a retention, the token list or the log level is
                malformed.
        """

        source = environ if environ is not None else os.environ

        log_level = _normalise_string(
            source.get("STORYSYNC_LOG_LEVEL"), default="INFO"
        ).upper()
        if log_level not in _LOG_LEVELS:
            raise ValueError(
                f"STORYSYNC_LOG_LEVEL must be one of {', '.join(_LOG_LEVELS)}."
            )

        return cls(
            database_path=_normalise_path(source.get("STORYSYNC_DATABASE_PATH")),
            rollout_percent=normalize_rollout_percent(
                source.get("STORYSYNC_ROLLOUT_PERCENT")
            ),
            rollout_salt=_normalise_string(
                source.get("STORYSYNC_ROLLOUT_SALT"), default=""
            ),
            rollout_allowlist=_normalise_list(source.get("STORYSYNC_ROLLOUT_ALLOWLIST")),
            snapshot_retention=_normalise_positive_int(
                source.get("STORYSYNC_SNAPSHOT_RETENTION"),
                name="STORYSYNC_SNAPSHOT_RETENTION",
                default=DEFAULT_SNAPSHOT_RETENTION,
            ),
            changelog_retention=_normalise_positive_int(
                source.get("STORYSYNC_CHANGELOG_RETENTION"),
                name="STORYSYNC_CHANGELOG_RETENTION",
                default=DEFAULT_CHANGELOG_RETENTION,
            ),
            audit_retention=_normalise_positive_int(
                source.get("STORYSYNC_AUDIT_RETENTION"),
                name="STORYSYNC_AUDIT_RETENTION",
                default=DEFAULT_AUDIT_RETENTION,
            ),
            api_tokens=_normalise_tokens(source.get("STORYSYNC_API_TOKENS")),
            log_level=log_level,
        )


__all__ = ["SyncApiSettings"]
