from typing import Optional
from pydantic import BaseModel, Field


class TransferToolConfig(BaseModel):
    """Invocation settings for the external transfer executable"""

    executable: str = Field(default="rclone", description="Path or name of the transfer executable")
    config_path: Optional[str] = Field(default=None, description="Read-only rclone config with static remotes")
    transfers: int = Field(default=8, ge=1, description="Parallel file transfers")
    checkers: int = Field(default=8, ge=1, description="Parallel checkers")
    retries: int = Field(default=3, ge=0, description="High-level retries")
    low_level_retries: int = Field(default=5, ge=0, description="Low-level retries")
    stats_interval: str = Field(default="1s", description="Interval between stats blocks")
    show_progress: bool = Field(default=True, description="Pass --progress")
    buffer_size: Optional[str] = Field(default="16M", description="In-memory buffer per transfer")
    source_remote: str = Field(default="onedrive", description="Remote name of the source")
    source_drive_type: str = Field(default="personal", description="OneDrive drive type")
    source_drive_id: Optional[str] = Field(default=None, description="OneDrive drive id")
    destination_remote: str = Field(default="b2", description="Remote name of the destination")
    destination_bucket: str = Field(default="onedrive-migrations", description="Destination bucket")
    destination_account: Optional[str] = Field(default=None, description="Destination key id")
    destination_key: Optional[str] = Field(default=None, description="Destination key secret")
    client_id: Optional[str] = Field(default=None, description="OAuth client id for the source remote")
    client_secret: Optional[str] = Field(default=None, description="OAuth client secret for the source remote")


class SupervisorConfig(BaseModel):
    """Limits applied by the process supervisor"""

    max_concurrent_processes: int = Field(default=2, ge=1, description="Global ceiling on live transfer processes")
    admission_queue_size: int = Field(default=50, ge=0, description="Jobs allowed to wait for a process slot")
    max_job_duration_seconds: float = Field(default=86400, gt=0, description="Wall clock limit per job")
    stop_grace_seconds: float = Field(default=10.0, ge=0, description="Wait after SIGTERM before killing")
    stream_limit_bytes: int = Field(default=1024 * 1024, ge=1024, description="Longest output line accepted")


class CredentialConfig(BaseModel):
    """OAuth refresh exchange and credential freshness settings"""

    token_url: str = "https://login.microsoftonline.com/common/oauth2/v2.0/token"
    client_id: Optional[str] = None
    client_secret: Optional[str] = None
    redirect_uri: Optional[str] = None
    access_check_url: str = "https://graph.microsoft.com/v1.0/me/drive"
    safety_margin_seconds: int = Field(default=300, ge=0)
    sweep_window_seconds: int = Field(default=7200, ge=0)
    sweep_interval_seconds: int = Field(default=1800, ge=1)
    request_timeout_seconds: int = Field(default=10, ge=1)


class RegistryConfig(BaseModel):
    """Job registry log retention and progress coalescing"""

    log_dir: str = ".migrator/logs"
    log_tail_lines: int = Field(default=200, ge=1)
    progress_min_interval_seconds: float = Field(default=1.0, ge=0)
    job_ttl_seconds: int = Field(default=3600, ge=0)
    cleanup_interval_seconds: int = Field(default=300, gt=0)


class MigratorConfig(BaseModel):
    """Complete configuration for the transfer orchestrator"""

    data_dir: str = ".migrator"
    manifest_dir: str = ".migrator/manifests"
    credential_store_path: str = ".migrator/tokens.json"
    concurrency_enabled: bool = True
    orphan_manifest_max_age_seconds: int = Field(default=7200, ge=0)
    transfer: TransferToolConfig = Field(default_factory=TransferToolConfig)
    supervisor: SupervisorConfig = Field(default_factory=SupervisorConfig)
    credentials: CredentialConfig = Field(default_factory=CredentialConfig)
    registry: RegistryConfig = Field(default_factory=RegistryConfig)
