"""
Credential gate: hands out access tokens that stay valid for at least the
safety margin.

Refreshes are collapsed per principal. While one exchange is in flight every
other caller for that principal awaits the same result, so a rotating
refresh token is never spent twice. A failed exchange leaves the stored
record untouched.
"""

import asyncio
import logging
from datetime import timedelta
from typing import Any, Dict, Optional

from config.types import CredentialConfig
from drive_migrator.credentials.provider import CredentialProvider
from drive_migrator.credentials.store import CredentialStore
from drive_migrator.errors import MigratorError, NoCredentialError, RefreshFailedError
from drive_migrator.types import CredentialRecord
from drive_migrator.utils import log_with_context, utc_now

logger = logging.getLogger(__name__)


class CredentialGate:
    """Per-principal credential freshness with single-flight refresh."""

    def __init__(
        self,
        store: CredentialStore,
        provider: CredentialProvider,
        config: Optional[CredentialConfig] = None,
    ):
        self.store = store
        self.provider = provider
        self.config = config or CredentialConfig()

        self._inflight: Dict[str, asyncio.Task] = {}
        self._lock = asyncio.Lock()
        self._sweep_task: Optional[asyncio.Task] = None
        self._last_sweep: Optional[Dict[str, Any]] = None
        self.metrics = {"refreshes": 0, "refresh_failures": 0, "collapsed_waiters": 0}

    async def get_valid_credential(self, principal: str) -> str:
        """
        Return an access token valid for at least the safety margin.

        Raises:
            NoCredentialError: If the principal has no stored credential
            RefreshFailedError: If a needed refresh was rejected or unreachable
        """
        record = await self.get_valid_record(principal)
        return record.access_token

    async def get_valid_record(self, principal: str) -> CredentialRecord:
        """Like ``get_valid_credential`` but returns the whole record."""
        record = self.store.get(principal)
        if record is None:
            raise NoCredentialError(f"No credential stored for {principal}", principal=principal)

        if not record.expires_within(self.config.safety_margin_seconds):
            return record

        return await self._refresh(principal)

    async def refresh(self, principal: str) -> CredentialRecord:
        """Refresh now, joining an exchange already in flight."""
        if self.store.get(principal) is None:
            raise NoCredentialError(f"No credential stored for {principal}", principal=principal)
        return await self._refresh(principal)

    async def _refresh(self, principal: str) -> CredentialRecord:
        async with self._lock:
            task = self._inflight.get(principal)
            if task is None:
                task = asyncio.create_task(self._exchange(principal))
                self._inflight[principal] = task
                task.add_done_callback(lambda t, p=principal: self._forget(p, t))
            else:
                self.metrics["collapsed_waiters"] += 1

        # Shielded so a cancelled waiter does not abort the shared exchange
        return await asyncio.shield(task)

    def _forget(self, principal: str, task: asyncio.Task) -> None:
        if self._inflight.get(principal) is task:
            del self._inflight[principal]
        if not task.cancelled():
            # Marks the exception retrieved when every waiter was cancelled
            task.exception()

    async def _exchange(self, principal: str) -> CredentialRecord:
        record = self.store.get(principal)
        if record is None:
            raise NoCredentialError(f"No credential stored for {principal}", principal=principal)

        try:
            grant = await self.provider.exchange_refresh_token(record.refresh_token)
        except MigratorError as e:
            self.metrics["refresh_failures"] += 1
            log_with_context(
                logger, logging.WARNING, "Credential refresh failed", {"principal": principal, "error": e.message}
            )
            if isinstance(e, RefreshFailedError):
                e.principal = principal
                raise
            raise RefreshFailedError(e.message, principal=principal) from e
        except Exception as e:
            self.metrics["refresh_failures"] += 1
            log_with_context(
                logger, logging.WARNING, "Credential refresh failed", {"principal": principal, "error": str(e)}
            )
            raise RefreshFailedError(f"Token refresh failed: {e}", principal=principal) from e

        now = utc_now()
        refreshed = record.model_copy(
            update={
                "access_token": grant.access_token,
                "refresh_token": grant.refresh_token or record.refresh_token,
                "expires_at": now + timedelta(seconds=grant.expires_in),
                "updated_at": now,
            }
        )
        self.store.put(refreshed)
        self.metrics["refreshes"] += 1
        log_with_context(
            logger,
            logging.INFO,
            "Credential refreshed",
            {
                "principal": principal,
                "expires_at": refreshed.expires_at.isoformat(),
                "refresh_token_rotated": bool(grant.refresh_token),
            },
        )
        return refreshed

    def store_authorization(
        self, principal: str, access_token: str, refresh_token: str, expires_in: int
    ) -> CredentialRecord:
        """Record the result of a completed authorization code exchange."""
        now = utc_now()
        existing = self.store.get(principal)
        record = CredentialRecord(
            principal=principal,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_at=now + timedelta(seconds=expires_in),
            created_at=existing.created_at if existing else now,
            updated_at=now,
        )
        self.store.put(record)
        log_with_context(logger, logging.INFO, "Stored authorization", {"principal": principal})
        return record

    def revoke(self, principal: str) -> bool:
        """Forget a principal's credential."""
        removed = self.store.delete(principal)
        if removed:
            log_with_context(logger, logging.INFO, "Revoked credential", {"principal": principal})
        return removed

    async def refresh_all(self, force: bool = False) -> Dict[str, Any]:
        """
        Refresh credentials expiring within the sweep window, or all of them.

        Returns:
            Counts of refreshed, skipped and failed principals
        """
        summary: Dict[str, Any] = {"refreshed": 0, "skipped": 0, "failed": 0, "errors": {}}
        for record in self.store.records():
            if not force and not record.expires_within(self.config.sweep_window_seconds):
                summary["skipped"] += 1
                continue
            try:
                await self._refresh(record.principal)
                summary["refreshed"] += 1
            except MigratorError as e:
                summary["failed"] += 1
                summary["errors"][record.principal] = e.message

        summary["completed_at"] = utc_now().isoformat()
        self._last_sweep = summary
        log_with_context(
            logger,
            logging.INFO,
            "Credential sweep finished",
            {k: v for k, v in summary.items() if k != "errors"},
        )
        return summary

    def token_status(self) -> Dict[str, Dict[str, Any]]:
        """
        Expiry overview per principal. Token values are never included.

        ``needs_refresh`` uses the sweep window, so it names exactly the
        principals the next ``refresh_all()`` would refresh.
        """
        now = utc_now()
        status: Dict[str, Dict[str, Any]] = {}
        for record in self.store.records():
            remaining = (record.expires_at - now).total_seconds()
            status[record.principal] = {
                "expires_at": record.expires_at.isoformat(),
                "minutes_until_expiry": int(remaining // 60),
                "is_expired": remaining <= 0,
                "needs_refresh": record.expires_within(self.config.sweep_window_seconds, now),
                "updated_at": record.updated_at.isoformat(),
            }
        return status

    def service_status(self) -> Dict[str, Any]:
        return {
            "running": self._sweep_task is not None and not self._sweep_task.done(),
            "sweep_interval_seconds": self.config.sweep_interval_seconds,
            "sweep_window_seconds": self.config.sweep_window_seconds,
            "principals": len(self.store.principals()),
            "refreshes_in_flight": len(self._inflight),
            "last_sweep": self._last_sweep,
            "metrics": dict(self.metrics),
        }

    async def start_background_refresh(self) -> None:
        """Start the periodic sweep task."""
        if self._sweep_task is None or self._sweep_task.done():
            self._sweep_task = asyncio.create_task(self._sweep_loop())
            logger.info("Started credential refresh sweep")

    async def stop_background_refresh(self) -> None:
        """Stop the periodic sweep task."""
        if self._sweep_task and not self._sweep_task.done():
            self._sweep_task.cancel()
            try:
                await self._sweep_task
            except asyncio.CancelledError:
                pass
            logger.info("Stopped credential refresh sweep")
        self._sweep_task = None

    async def _sweep_loop(self) -> None:
        while True:
            try:
                await self.refresh_all()
                await asyncio.sleep(self.config.sweep_interval_seconds)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"Error during credential sweep: {e}")
                await asyncio.sleep(self.config.sweep_interval_seconds)
