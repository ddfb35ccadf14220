"""
Shared fixtures for drive_migrator tests.
"""

import os
import stat
import sys
from datetime import timedelta
from pathlib import Path

import pytest

from config.types import (
    CredentialConfig,
    MigratorConfig,
    RegistryConfig,
    SupervisorConfig,
    TransferToolConfig,
)
from drive_migrator.credentials.provider import AccessChecker, CredentialProvider
from drive_migrator.errors import RefreshFailedError
from drive_migrator.types import AccessDecision, CredentialRecord, TokenGrant
from drive_migrator.utils import utc_now

FAKE_RCLONE_SOURCE = Path(__file__).with_name("fake_rclone.py")


class FakeProvider(CredentialProvider):
    """Records exchanges; fails while ``fail`` is set."""

    def __init__(self, expires_in=3600, rotate=True, fail=False):
        self.expires_in = expires_in
        self.rotate = rotate
        self.fail = fail
        self.calls = []
        self.gate = None  # optional asyncio.Event awaited inside each exchange

    async def exchange_refresh_token(self, refresh_token):
        self.calls.append(refresh_token)
        if self.gate is not None:
            await self.gate.wait()
        if self.fail:
            raise RefreshFailedError("Token refresh failed: HTTP 400: invalid_grant")
        n = len(self.calls)
        return TokenGrant(
            access_token=f"access-{n}",
            refresh_token=f"refresh-{n}" if self.rotate else None,
            expires_in=self.expires_in,
        )


class FakeAccessChecker(AccessChecker):
    def __init__(self, approved=True, reason=None):
        self.approved = approved
        self.reason = reason
        self.tokens = []

    async def check_access(self, access_token):
        self.tokens.append(access_token)
        return AccessDecision(approved=self.approved, reason=self.reason, drive_id="drive-1" if self.approved else None)


def make_record(principal="alice", expires_in=3600, access_token="access-0", refresh_token="refresh-0"):
    now = utc_now()
    return CredentialRecord(
        principal=principal,
        access_token=access_token,
        refresh_token=refresh_token,
        expires_at=now + timedelta(seconds=expires_in),
        created_at=now,
        updated_at=now,
    )


@pytest.fixture
def fake_rclone(tmp_path):
    """Executable fake rclone run by the current interpreter."""
    script = tmp_path / "bin" / "rclone"
    script.parent.mkdir()
    script.write_text(f"#!{sys.executable}\n" + FAKE_RCLONE_SOURCE.read_text(encoding="utf-8"), encoding="utf-8")
    script.chmod(script.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return str(script)


@pytest.fixture
def rclone_mode(monkeypatch):
    def set_mode(mode, **extra):
        monkeypatch.setenv("FAKE_RCLONE_MODE", mode)
        for key, value in extra.items():
            monkeypatch.setenv(key, str(value))

    set_mode("success")
    return set_mode


@pytest.fixture
def tool_config(fake_rclone):
    return TransferToolConfig(
        executable=fake_rclone,
        destination_account="key-id",
        destination_key="key-secret",
    )


@pytest.fixture
def supervisor_config():
    return SupervisorConfig(
        max_concurrent_processes=2,
        admission_queue_size=4,
        max_job_duration_seconds=30,
        stop_grace_seconds=0.5,
        stream_limit_bytes=1024,
    )


@pytest.fixture
def migrator_config(tmp_path, tool_config, supervisor_config):
    data_dir = tmp_path / "data"
    return MigratorConfig(
        data_dir=str(data_dir),
        manifest_dir=str(data_dir / "manifests"),
        credential_store_path=str(data_dir / "tokens.json"),
        transfer=tool_config,
        supervisor=supervisor_config,
        credentials=CredentialConfig(token_url="https://login.example.test/token"),
        registry=RegistryConfig(log_dir=str(data_dir / "logs"), progress_min_interval_seconds=0),
    )


def list_manifests(manifest_dir):
    return sorted(p for p in os.listdir(manifest_dir) if p.startswith("manifest_"))
