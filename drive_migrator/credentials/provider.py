"""
Upstream identity provider and source access check.

Both are abstract so the credential gate and the orchestrator can be driven
by in-process fakes; the concrete classes talk to the Microsoft identity
platform and Microsoft Graph.
"""

import logging
from abc import ABC, abstractmethod
from typing import Callable, Optional

from pydantic import ValidationError

from config.types import CredentialConfig
from drive_migrator.credentials.http_client import HttpClient
from drive_migrator.errors import RefreshFailedError
from drive_migrator.types import AccessDecision, TokenGrant

logger = logging.getLogger(__name__)

ADMIN_APPROVAL_REASON = "Admin approval required for OneDrive access"


class CredentialProvider(ABC):
    """Exchanges a refresh token for a new access token."""

    @abstractmethod
    async def exchange_refresh_token(self, refresh_token: str) -> TokenGrant:
        """
        Raises:
            RefreshFailedError: If the exchange is rejected or unreachable
        """
        pass


class AccessChecker(ABC):
    """Decides whether a credential may read the source drive."""

    @abstractmethod
    async def check_access(self, access_token: str) -> AccessDecision:
        """Never raises for upstream failures; they become a denial."""
        pass


class OAuthTokenProvider(CredentialProvider):
    """OAuth 2.0 ``refresh_token`` grant against a token endpoint."""

    def __init__(self, config: CredentialConfig, client_factory: Optional[Callable[[], HttpClient]] = None):
        self.config = config
        self._client_factory = client_factory or (
            lambda: HttpClient(request_timeout=config.request_timeout_seconds)
        )

    async def exchange_refresh_token(self, refresh_token: str) -> TokenGrant:
        form = {
            "grant_type": "refresh_token",
            "refresh_token": refresh_token,
        }
        if self.config.client_id:
            form["client_id"] = self.config.client_id
        if self.config.client_secret:
            form["client_secret"] = self.config.client_secret
        if self.config.redirect_uri:
            form["redirect_uri"] = self.config.redirect_uri

        async with self._client_factory() as client:
            response = await client.post(
                self.config.token_url,
                data=form,
                headers={"Accept": "application/json"},
            )

        if not response.get("success"):
            error = response.get("error") or "unknown error"
            logger.warning(f"Refresh token exchange failed: {error}")
            raise RefreshFailedError(f"Token refresh failed: {error}")

        try:
            return TokenGrant.model_validate(response["data"])
        except ValidationError as e:
            raise RefreshFailedError(f"Token refresh returned an unusable response: {e.error_count()} invalid field(s)") from e


class GraphDriveAccessChecker(AccessChecker):
    """Reads the principal's default drive through Microsoft Graph."""

    def __init__(self, config: CredentialConfig, client_factory: Optional[Callable[[], HttpClient]] = None):
        self.config = config
        self._client_factory = client_factory or (
            lambda: HttpClient(request_timeout=config.request_timeout_seconds)
        )

    async def check_access(self, access_token: str) -> AccessDecision:
        async with self._client_factory() as client:
            response = await client.get(
                self.config.access_check_url,
                headers={"Authorization": f"Bearer {access_token}", "Accept": "application/json"},
            )

        status_code = response.get("status_code", 0)
        if response.get("success"):
            data = response.get("data") or {}
            return AccessDecision(approved=True, drive_id=data.get("id"))

        if status_code == 403:
            return AccessDecision(approved=False, reason=ADMIN_APPROVAL_REASON)
        if status_code == 401:
            return AccessDecision(approved=False, reason="Credential was rejected by the source drive")

        error = response.get("error") or "unknown error"
        logger.warning(f"Source access check failed: {error}")
        return AccessDecision(approved=False, reason=f"Access check failed: {error}")
