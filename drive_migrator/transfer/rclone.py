"""
rclone invocation: argument vector and credential environment.

Credentials are materialized as ``RCLONE_CONFIG_<REMOTE>_<OPTION>``
environment variables of the child process only. Nothing is written to a
shared rclone config file, so concurrent jobs of different principals never
see each other's tokens.
"""

import json
import re
from dataclasses import dataclass, field
from typing import Dict, List

from config.types import TransferToolConfig
from drive_migrator.types import CredentialRecord

_SENSITIVE_SUFFIXES = ("_TOKEN", "_KEY", "_CLIENT_SECRET")


def remote_env_prefix(remote: str) -> str:
    """Environment prefix rclone reads options of ``remote`` from."""
    return "RCLONE_CONFIG_" + re.sub(r"[^A-Za-z0-9]", "_", remote).upper() + "_"


def source_locator(tool: TransferToolConfig) -> str:
    return f"{tool.source_remote}:"


def destination_locator(tool: TransferToolConfig, destination_prefix: str) -> str:
    prefix = destination_prefix.strip("/")
    path = f"{tool.destination_bucket}/{prefix}" if prefix else tool.destination_bucket
    return f"{tool.destination_remote}:{path}"


def build_command(tool: TransferToolConfig, manifest_path: str, source: str, destination: str) -> List[str]:
    """Argument vector for one copy run restricted to the manifest."""
    argv = [
        tool.executable,
        "copy",
        source,
        destination,
        "--files-from",
        manifest_path,
        "--transfers",
        str(tool.transfers),
        "--checkers",
        str(tool.checkers),
        "--retries",
        str(tool.retries),
        "--low-level-retries",
        str(tool.low_level_retries),
        "--stats",
        tool.stats_interval,
    ]
    if tool.show_progress:
        argv.append("--progress")
    if tool.buffer_size:
        argv.extend(["--buffer-size", tool.buffer_size])
    if tool.config_path:
        argv.extend(["--config", tool.config_path])
    return argv


def build_credential_env(tool: TransferToolConfig, credential: CredentialRecord) -> Dict[str, str]:
    """Remote definitions for the source (from ``credential``) and destination."""
    source = remote_env_prefix(tool.source_remote)
    token = {
        "access_token": credential.access_token,
        "token_type": "Bearer",
        "refresh_token": credential.refresh_token,
        "expiry": credential.expires_at.isoformat(),
    }
    env = {
        source + "TYPE": "onedrive",
        source + "TOKEN": json.dumps(token),
        source + "DRIVE_TYPE": tool.source_drive_type,
    }
    if tool.source_drive_id:
        env[source + "DRIVE_ID"] = tool.source_drive_id
    if tool.client_id:
        env[source + "CLIENT_ID"] = tool.client_id
    if tool.client_secret:
        env[source + "CLIENT_SECRET"] = tool.client_secret

    if tool.destination_account and tool.destination_key:
        destination = remote_env_prefix(tool.destination_remote)
        env[destination + "TYPE"] = "b2"
        env[destination + "ACCOUNT"] = tool.destination_account
        env[destination + "KEY"] = tool.destination_key

    return env


@dataclass
class TransferInvocation:
    """Everything needed to spawn one transfer process."""

    argv: List[str]
    env: Dict[str, str] = field(default_factory=dict)

    @property
    def display_command(self) -> str:
        return " ".join(self.argv)

    def redacted_env(self) -> Dict[str, str]:
        return {
            key: "***" if key.endswith(_SENSITIVE_SUFFIXES) else value
            for key, value in self.env.items()
        }


def build_invocation(
    tool: TransferToolConfig,
    manifest_path: str,
    destination_prefix: str,
    credential: CredentialRecord,
) -> TransferInvocation:
    return TransferInvocation(
        argv=build_command(
            tool,
            manifest_path,
            source_locator(tool),
            destination_locator(tool, destination_prefix),
        ),
        env=build_credential_env(tool, credential),
    )
