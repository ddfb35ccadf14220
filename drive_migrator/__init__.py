"""
Drive Migrator

Idempotent cloud-to-cloud transfer jobs supervised on top of rclone.
"""

from drive_migrator.errors import (
    AccessDeniedError,
    EmptyManifestError,
    InvalidTransitionError,
    JobNotFoundError,
    MigratorError,
    NoCredentialError,
    ProcessFailedError,
    RefreshFailedError,
    SpawnFailedError,
)
from drive_migrator.orchestrator import TransferOrchestrator, compute_fingerprint
from drive_migrator.types import (
    EventType,
    Job,
    JobEvent,
    JobState,
    JobStatusResponse,
    LogChunk,
    StartJobResponse,
)

__all__ = [
    "TransferOrchestrator",
    "compute_fingerprint",
    "EventType",
    "Job",
    "JobEvent",
    "JobState",
    "JobStatusResponse",
    "LogChunk",
    "StartJobResponse",
    "MigratorError",
    "NoCredentialError",
    "RefreshFailedError",
    "AccessDeniedError",
    "EmptyManifestError",
    "SpawnFailedError",
    "ProcessFailedError",
    "InvalidTransitionError",
    "JobNotFoundError",
]
