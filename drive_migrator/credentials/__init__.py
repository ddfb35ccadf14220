from drive_migrator.credentials.gate import CredentialGate
from drive_migrator.credentials.http_client import HttpClient
from drive_migrator.credentials.provider import (
    AccessChecker,
    CredentialProvider,
    GraphDriveAccessChecker,
    OAuthTokenProvider,
)
from drive_migrator.credentials.store import CredentialStore

__all__ = [
    "CredentialGate",
    "HttpClient",
    "AccessChecker",
    "CredentialProvider",
    "GraphDriveAccessChecker",
    "OAuthTokenProvider",
    "CredentialStore",
]
