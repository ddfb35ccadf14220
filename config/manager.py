from pathlib import Path
from typing import Dict, Any, List, Callable
import logging
import os

from config.types import (
    CredentialConfig,
    MigratorConfig,
    RegistryConfig,
    SupervisorConfig,
    TransferToolConfig,
)


class EnvironmentManager:
    """
    Environment manager holding the migrator settings.

    Settings start from DEFAULT_SETTINGS and are overridden by the first
    .env file found and then by the OS environment (upper-cased names).
    """

    _instance = None

    # List of all settings that are paths
    PATH_SETTINGS = [
        "data_dir",
        "manifest_dir",
        "log_dir",
        "credential_store_path",
        "rclone_config_path",
    ]

    # Default settings with their types
    DEFAULT_SETTINGS = {
        # Storage locations
        "data_dir": (".migrator", str),
        "manifest_dir": (None, str),
        "log_dir": (None, str),
        "credential_store_path": (None, str),
        # Transfer executable
        "rclone_path": ("rclone", str),
        "rclone_config_path": (None, str),
        "rclone_transfers": (8, int),
        "rclone_checkers": (8, int),
        "rclone_retries": (3, int),
        "rclone_low_level_retries": (5, int),
        "rclone_stats_interval": ("1s", str),
        "rclone_show_progress": (True, bool),
        "rclone_buffer_size": ("16M", str),
        "source_remote": ("onedrive", str),
        "source_drive_type": ("personal", str),
        "source_drive_id": (None, str),
        "destination_remote": ("b2", str),
        "b2_bucket_name": ("onedrive-migrations", str),
        "b2_application_key_id": (None, str),
        "b2_application_key": (None, str),
        # Process supervision
        "max_concurrent_jobs": (2, int),
        "admission_queue_size": (50, int),
        "job_timeout_seconds": (86400, int),
        "stop_grace_seconds": (10.0, float),
        "stream_limit_bytes": (1024 * 1024, int),
        "concurrency_enabled": (True, bool),
        # Job registry
        "log_tail_lines": (200, int),
        "progress_update_interval": (1.0, float),
        "job_ttl_seconds": (3600, int),
        "job_cleanup_interval_seconds": (300, int),
        # OAuth credentials
        "ms_tenant_id": ("common", str),
        "ms_client_id": (None, str),
        "ms_client_secret": (None, str),
        "ms_redirect_uri": (None, str),
        "token_url": (None, str),
        "access_check_url": ("https://graph.microsoft.com/v1.0/me/drive", str),
        "token_safety_margin_seconds": (300, int),
        "token_sweep_window_seconds": (7200, int),
        "token_sweep_interval_seconds": (1800, int),
        "token_request_timeout_seconds": (10, int),
        "orphan_manifest_max_age_seconds": (7200, int),
    }

    # Each setting can be set via its uppercase env var
    ENV_MAPPING = {setting.upper(): setting for setting in DEFAULT_SETTINGS.keys()}

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
            cls._instance._initialize()
        return cls._instance

    def _initialize(self):
        """Initialize environment with default values"""
        self.env_variables: Dict[str, str] = {}
        self._providers: List[Callable[[], Dict[str, Any]]] = []
        self.settings: Dict[str, Any] = {}
        self.logger = logging.getLogger(__name__)

        for key, (default_value, _) in self.DEFAULT_SETTINGS.items():
            self.settings[key] = default_value

        self._load_from_env_file()

    def _convert_value(self, value: str, target_type: type) -> Any:
        """Convert string value to target type"""
        if target_type == bool:
            return value.lower() == "true"
        return target_type(value)

    def _apply_variable(self, key: str, value: str) -> None:
        """Record a variable and update the mapped setting, if any"""
        self.env_variables[key] = value

        if key in self.ENV_MAPPING:
            setting_name = self.ENV_MAPPING[key]
            _, target_type = self.DEFAULT_SETTINGS[setting_name]
            try:
                self.settings[setting_name] = self._convert_value(value, target_type)
            except ValueError:
                self.logger.warning(
                    f"Ignoring invalid value for {key}: expected {target_type.__name__}"
                )

    def _env_file_candidates(self) -> List[Path]:
        """Locations probed for a .env file, in priority order"""
        env_file_paths = [Path.cwd() / ".env"]

        try:
            env_file_paths.append(Path.home() / ".env")
        except (RuntimeError, OSError):
            # Skip home directory if it can't be determined
            pass

        return env_file_paths

    def _load_from_env_file(self):
        """Find and load variables from a .env file"""
        for env_path in self._env_file_candidates():
            if env_path.exists() and env_path.is_file():
                self.logger.debug(f"Loading environment from: {env_path}")
                self._parse_env_file(env_path)
                return

        self.logger.debug("No .env file found, using defaults and OS environment")

    def _parse_env_file(self, env_file_path: Path):
        """Parse a .env file and load variables into the settings"""
        try:
            with open(env_file_path, "r") as f:
                for line in f:
                    line = line.strip()
                    if line and not line.startswith("#") and "=" in line:
                        key, value = line.split("=", 1)
                        key = key.strip()
                        value = value.strip()

                        # Remove quotes if present
                        if (value.startswith('"') and value.endswith('"')) or (
                            value.startswith("'") and value.endswith("'")
                        ):
                            value = value[1:-1]

                        self._apply_variable(key, value)

        except OSError as e:
            self.logger.error(f"Error parsing .env file {env_file_path}: {e}")

    def _resolve_paths(self) -> None:
        """Resolve relative path settings against the current directory"""
        for key in self.PATH_SETTINGS:
            value = self.settings.get(key)
            if value:
                self.settings[key] = str(Path(value).expanduser().resolve())

    def register_provider(self, provider: Callable[[], Dict[str, Any]]):
        """Register a provider function that returns additional settings"""
        self._providers.append(provider)
        return self

    def load(self):
        """Load settings from the .env file, the OS environment and providers"""
        self._load_from_env_file()

        for key, value in os.environ.items():
            self._apply_variable(key, value)

        for provider in self._providers:
            try:
                additional_data = provider()
            except Exception as e:
                self.logger.error(f"Error from settings provider: {e}")
                continue

            for key, value in additional_data.get("settings", {}).items():
                if key in self.settings:
                    self.settings[key] = value

        self._resolve_paths()
        return self

    def get_setting(self, name: str, default: Any = None) -> Any:
        """Get a setting value by name"""
        value = self.settings.get(name)
        return default if value is None else value

    def set_setting(self, name: str, value: Any) -> None:
        """Override a setting value"""
        self.settings[name] = value

    def get_migrator_config(self) -> MigratorConfig:
        """Assemble the typed migrator configuration from the current settings"""
        get = self.get_setting

        tenant = get("ms_tenant_id", "common")
        token_url = get(
            "token_url",
            f"https://login.microsoftonline.com/{tenant}/oauth2/v2.0/token",
        )

        data_dir = get("data_dir")
        return MigratorConfig(
            data_dir=data_dir,
            manifest_dir=get("manifest_dir", str(Path(data_dir) / "manifests")),
            credential_store_path=get(
                "credential_store_path", str(Path(data_dir) / "tokens.json")
            ),
            concurrency_enabled=get("concurrency_enabled", True),
            orphan_manifest_max_age_seconds=get("orphan_manifest_max_age_seconds"),
            transfer=TransferToolConfig(
                executable=get("rclone_path"),
                config_path=get("rclone_config_path"),
                transfers=get("rclone_transfers"),
                checkers=get("rclone_checkers"),
                retries=get("rclone_retries"),
                low_level_retries=get("rclone_low_level_retries"),
                stats_interval=get("rclone_stats_interval"),
                show_progress=get("rclone_show_progress"),
                buffer_size=get("rclone_buffer_size"),
                source_remote=get("source_remote"),
                source_drive_type=get("source_drive_type"),
                source_drive_id=get("source_drive_id"),
                destination_remote=get("destination_remote"),
                destination_bucket=get("b2_bucket_name"),
                destination_account=get("b2_application_key_id"),
                destination_key=get("b2_application_key"),
                client_id=get("ms_client_id"),
                client_secret=get("ms_client_secret"),
            ),
            supervisor=SupervisorConfig(
                max_concurrent_processes=get("max_concurrent_jobs"),
                admission_queue_size=get("admission_queue_size"),
                max_job_duration_seconds=get("job_timeout_seconds"),
                stop_grace_seconds=get("stop_grace_seconds"),
                stream_limit_bytes=get("stream_limit_bytes"),
            ),
            credentials=CredentialConfig(
                token_url=token_url,
                client_id=get("ms_client_id"),
                client_secret=get("ms_client_secret"),
                redirect_uri=get("ms_redirect_uri"),
                access_check_url=get("access_check_url"),
                safety_margin_seconds=get("token_safety_margin_seconds"),
                sweep_window_seconds=get("token_sweep_window_seconds"),
                sweep_interval_seconds=get("token_sweep_interval_seconds"),
                request_timeout_seconds=get("token_request_timeout_seconds"),
            ),
            registry=RegistryConfig(
                log_dir=get("log_dir", str(Path(data_dir) / "logs")),
                log_tail_lines=get("log_tail_lines"),
                progress_min_interval_seconds=get("progress_update_interval"),
                job_ttl_seconds=get("job_ttl_seconds"),
                cleanup_interval_seconds=get("job_cleanup_interval_seconds"),
            ),
        )


# Create singleton instance
env_manager = EnvironmentManager()


def load_migrator_config() -> MigratorConfig:
    """Load the environment and return the typed migrator configuration."""
    return env_manager.load().get_migrator_config()
