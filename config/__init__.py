"""
Migrator Configuration Package.

This package contains the environment-backed settings for the transfer
orchestrator.
"""

from config.manager import EnvironmentManager, env_manager, load_migrator_config
from config.types import (
    CredentialConfig,
    MigratorConfig,
    RegistryConfig,
    SupervisorConfig,
    TransferToolConfig,
)

# Re-export the singleton instance for easy access
env = env_manager

__all__ = [
    "EnvironmentManager",
    "env_manager",
    "env",
    "load_migrator_config",
    "CredentialConfig",
    "MigratorConfig",
    "RegistryConfig",
    "SupervisorConfig",
    "TransferToolConfig",
]
