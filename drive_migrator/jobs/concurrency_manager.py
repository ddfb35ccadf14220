import asyncio
import logging
import time
from typing import Any, Dict, Optional

from drive_migrator.utils import short_id

logger = logging.getLogger(__name__)


class ConcurrencyGuard:
    """Allows at most one non-terminal job per principal.

    The guard is acquired before a job record is created and released
    exactly once when that job reaches a terminal state.
    """

    def __init__(self, enabled: bool = True):
        """
        Initialize the guard

        Args:
            enabled: When False every acquisition succeeds and nothing is tracked
        """
        self.enabled = enabled
        self._holders: Dict[str, str] = {}  # principal -> job_id
        self._acquired_at: Dict[str, float] = {}
        self._lock = asyncio.Lock()

        logger.info(f"ConcurrencyGuard initialized: enabled={self.enabled}")

    async def try_acquire(self, principal: str, job_id: str) -> bool:
        """
        Reserve the principal's slot for a job

        Args:
            principal: Principal submitting the job
            job_id: Job that will hold the slot

        Returns:
            True if the slot was free and now belongs to ``job_id``
        """
        if not self.enabled:
            return True

        async with self._lock:
            holder = self._holders.get(principal)
            if holder is not None:
                logger.info(
                    f"Principal {principal} already has active job {short_id(holder)}, "
                    f"rejecting job {short_id(job_id)}"
                )
                return False

            self._holders[principal] = job_id
            self._acquired_at[principal] = time.time()
            logger.debug(f"Principal {principal} acquired slot for job {short_id(job_id)}")
            return True

    async def release(self, principal: str, job_id: str) -> bool:
        """
        Free the principal's slot if ``job_id`` holds it

        Returns:
            True if this call released the slot
        """
        if not self.enabled:
            return False

        async with self._lock:
            if self._holders.get(principal) != job_id:
                logger.debug(f"Job {short_id(job_id)} does not hold the slot of {principal}, nothing to release")
                return False

            del self._holders[principal]
            held_for = time.time() - self._acquired_at.pop(principal, time.time())
            logger.debug(
                f"Principal {principal} released slot of job {short_id(job_id)} after {held_for:.2f}s"
            )
            return True

    async def holder(self, principal: str) -> Optional[str]:
        """Job id currently holding the principal's slot, if any."""
        async with self._lock:
            return self._holders.get(principal)

    async def get_user_status(self, principal: str) -> Dict[str, Any]:
        """Get the slot status of one principal"""
        async with self._lock:
            holder = self._holders.get(principal)
            return {
                "principal": principal,
                "active_job_id": holder,
                "held_seconds": (
                    time.time() - self._acquired_at[principal] if holder is not None else None
                ),
                "can_start": not self.enabled or holder is None,
            }

    async def get_status(self) -> Dict[str, Any]:
        """Get overall guard status"""
        async with self._lock:
            return {
                "enabled": self.enabled,
                "active_principals": len(self._holders),
                "holders": dict(self._holders),
            }
