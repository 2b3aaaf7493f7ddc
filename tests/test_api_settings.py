from __future__ import annotations

from pathlib import Path
from typing import Any

import pytest

from storysync.api import SyncApiSettings


def test_sync_api_settings_from_env(monkeypatch: Any, tmp_path: Path) -> None:
    database = tmp_path / "sync.sqlite3"

    monkeypatch.setenv("STORYSYNC_DATABASE_PATH", str(database))
    monkeypatch.setenv("STORYSYNC_ROLLOUT_PERCENT", "35")
    monkeypatch.setenv("STORYSYNC_ROLLOUT_SALT", " wave-2 ")
    monkeypatch.setenv("STORYSYNC_ROLLOUT_ALLOWLIST", "alice, bob,,")
    monkeypatch.setenv("STORYSYNC_SNAPSHOT_RETENTION", "4")
    monkeypatch.setenv("STORYSYNC_CHANGELOG_RETENTION", "100")
    monkeypatch.setenv("STORYSYNC_AUDIT_RETENTION", "25")
    monkeypatch.setenv("STORYSYNC_API_TOKENS", "tok-a=alice, tok-b = bob")
    monkeypatch.setenv("STORYSYNC_LOG_LEVEL", "debug")

    settings = SyncApiSettings.from_env()

    assert settings.database_path == database
    assert settings.rollout_percent == 35.0
    assert settings.rollout_salt == "wave-2"
    assert settings.rollout_allowlist == ("alice", "bob")
    assert settings.snapshot_retention == 4
    assert settings.changelog_retention == 100
    assert settings.audit_retention == 25
    assert settings.api_tokens == {"tok-a": "alice", "tok-b": "bob"}
    assert settings.log_level == "DEBUG"


def test_sync_api_settings_ignore_blank_values() -> None:
    settings = SyncApiSettings.from_env(
        {
            "STORYSYNC_DATABASE_PATH": "   ",
            "STORYSYNC_ROLLOUT_PERCENT": "",
            "STORYSYNC_ROLLOUT_SALT": " ",
            "STORYSYNC_SNAPSHOT_RETENTION": "",
            "STORYSYNC_LOG_LEVEL": " ",
        }
    )

    assert settings == SyncApiSettings()
    assert settings.database_path is None
    assert settings.rollout_percent == 100.0
    assert settings.snapshot_retention == 10
    assert settings.changelog_retention == 200
    assert settings.audit_retention == 50


def test_sync_api_settings_clamp_rollout_percent() -> None:
    assert SyncApiSettings.from_env({"STORYSYNC_ROLLOUT_PERCENT": "140"}).rollout_percent == 100.0
    assert SyncApiSettings.from_env({"STORYSYNC_ROLLOUT_PERCENT": "-3"}).rollout_percent == 0.0
    assert SyncApiSettings.from_env({"STORYSYNC_ROLLOUT_PERCENT": "lots"}).rollout_percent == 100.0


@pytest.mark.parametrize(
    ("name", "value"),
    [
        ("STORYSYNC_SNAPSHOT_RETENTION", "0"),
        ("STORYSYNC_CHANGELOG_RETENTION", "not-a-number"),
        ("STORYSYNC_AUDIT_RETENTION", "-1"),
        ("STORYSYNC_API_TOKENS", "just-a-token"),
        ("STORYSYNC_LOG_LEVEL", "chatty"),
    ],
)
def test_sync_api_settings_reject_invalid_values(name: str, value: str) -> None:
    with pytest.raises(ValueError):
        SyncApiSettings.from_env({name: value})
