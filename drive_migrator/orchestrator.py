"""
Transfer orchestrator: the single entry point for starting, observing and
stopping transfer jobs.

A start request flows through the components in a fixed order:

    fingerprint -> registry lookup -> credential gate -> access check
    -> concurrency guard -> registry record -> manifest -> supervisor

Identical requests map to the same job id, so re-submitting a job that is
still Pending or Running returns the live job instead of starting another
process. A terminal job is retried as a new attempt under the same id.

Example:
    orchestrator = TransferOrchestrator.from_environment()
    await orchestrator.start()
    response = await orchestrator.start_job("alice@example.com", ["Documents/report.docx"])
    async for event in orchestrator.subscribe(response.job_id):
        print(event.type, event.progress)
    await orchestrator.shutdown()
"""

import hashlib
import json
import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence

from config import load_migrator_config
from config.types import MigratorConfig
from drive_migrator.credentials.gate import CredentialGate
from drive_migrator.credentials.provider import (
    AccessChecker,
    CredentialProvider,
    GraphDriveAccessChecker,
    OAuthTokenProvider,
)
from drive_migrator.credentials.store import CredentialStore
from drive_migrator.errors import AccessDeniedError, MigratorError
from drive_migrator.jobs.concurrency_manager import ConcurrencyGuard
from drive_migrator.jobs.notifications import NotificationPublisher, Subscription
from drive_migrator.jobs.registry import JobRegistry
from drive_migrator.transfer.manifest import ManifestBuilder
from drive_migrator.transfer.supervisor import STOP_REASON_REQUESTED, ProcessSupervisor
from drive_migrator.types import (
    EventType,
    Job,
    JobEvent,
    JobSpec,
    JobState,
    JobStatusResponse,
    LogChunk,
    StartJobResponse,
    StopOutcome,
)
from drive_migrator.utils import log_with_context, short_id

logger = logging.getLogger(__name__)


def compute_fingerprint(principal: str, items: Sequence[str], destination_prefix: str) -> str:
    """Deterministic job id of a canonical request."""
    payload = "\n".join([principal, json.dumps(list(items), ensure_ascii=False), destination_prefix])
    return hashlib.sha1(payload.encode("utf-8")).hexdigest()


def effective_destination_prefix(principal: str, destination_prefix: Optional[str]) -> str:
    """Destination prefix with surrounding slashes removed; the principal when empty."""
    prefix = (destination_prefix or "").strip().strip("/")
    return prefix or principal


class TransferOrchestrator:
    """Coordinates credentials, job records, manifests and transfer processes."""

    def __init__(
        self,
        config: Optional[MigratorConfig] = None,
        *,
        store: Optional[CredentialStore] = None,
        provider: Optional[CredentialProvider] = None,
        access_checker: Optional[AccessChecker] = None,
        credential_gate: Optional[CredentialGate] = None,
        publisher: Optional[NotificationPublisher] = None,
        registry: Optional[JobRegistry] = None,
        guard: Optional[ConcurrencyGuard] = None,
        manifest_builder: Optional[ManifestBuilder] = None,
        supervisor: Optional[ProcessSupervisor] = None,
    ):
        self.config = config or MigratorConfig()
        cfg = self.config

        self.credential_gate = credential_gate or CredentialGate(
            store or CredentialStore(cfg.credential_store_path),
            provider or OAuthTokenProvider(cfg.credentials),
            cfg.credentials,
        )
        self.access_checker = access_checker or GraphDriveAccessChecker(cfg.credentials)
        self.publisher = publisher or NotificationPublisher()
        self.registry = registry or JobRegistry(
            cfg.registry.log_dir,
            log_tail_lines=cfg.registry.log_tail_lines,
            progress_min_interval=cfg.registry.progress_min_interval_seconds,
            publisher=self.publisher,
            job_ttl=cfg.registry.job_ttl_seconds,
            cleanup_interval=cfg.registry.cleanup_interval_seconds,
        )
        self.guard = guard or ConcurrencyGuard(enabled=cfg.concurrency_enabled)
        self.manifest_builder = manifest_builder or ManifestBuilder(
            cfg.manifest_dir, remote_names=(cfg.transfer.source_remote,)
        )
        self.supervisor = supervisor or ProcessSupervisor(
            self.registry, self.manifest_builder, cfg.supervisor, cfg.transfer
        )

        self.registry.add_terminal_listener(self._on_job_terminal)

    @classmethod
    def from_environment(cls, **kwargs) -> "TransferOrchestrator":
        """Build an orchestrator from the environment manager's settings."""
        return cls(load_migrator_config(), **kwargs)

    async def start(self) -> None:
        """Start background credential refresh and job eviction, and clean up stale manifests."""
        removed = self.manifest_builder.cleanup_orphaned_manifests(
            self.config.orphan_manifest_max_age_seconds, self.supervisor.live_job_ids()
        )
        if removed:
            logger.info(f"Removed {removed} orphaned manifest(s)")
        await self.credential_gate.start_background_refresh()
        await self.registry.start_cleanup()

    async def shutdown(self, timeout: Optional[float] = None) -> None:
        """Stop every live job, then the background tasks."""
        await self.supervisor.shutdown(timeout)
        await self.credential_gate.stop_background_refresh()
        await self.registry.close()
        self.publisher.close_all()

    async def start_job(
        self, principal: str, items: Iterable[str], destination_prefix: Optional[str] = None
    ) -> StartJobResponse:
        """
        Start a transfer job, or return the live job for an identical request.

        Raises:
            ValueError: If ``principal`` is empty
            EmptyManifestError: If no usable item path is given
            NoCredentialError: If the principal never authorized
            RefreshFailedError: If the credential could not be refreshed
            AccessDeniedError: If the source refused access
        """
        if not principal or not principal.strip():
            raise ValueError("principal is required")

        canonical_items = self.manifest_builder.canonicalize(items)
        prefix = effective_destination_prefix(principal, destination_prefix)
        job_id = compute_fingerprint(principal, canonical_items, prefix)

        existing = self.registry.find(job_id)
        if existing is not None and not existing.is_terminal:
            log_with_context(
                logger, logging.INFO, "Identical job already active", {"job_id": job_id, "status": existing.state.value}
            )
            return StartJobResponse(job_id=job_id, status=existing.state, already_running=True)

        credential = await self.credential_gate.get_valid_record(principal)
        decision = await self.access_checker.check_access(credential.access_token)
        if not decision.approved:
            log_with_context(
                logger, logging.WARNING, "Source access denied", {"principal": principal, "reason": decision.reason}
            )
            raise AccessDeniedError(decision.reason or "Access to the source drive was denied", principal=principal)

        if not await self.guard.try_acquire(principal, job_id):
            return self._already_running_response(await self.guard.holder(principal), job_id)

        try:
            job, created = await self.registry.create_or_get(
                job_id, JobSpec(principal=principal, items=canonical_items, destination_prefix=prefix)
            )
        except Exception:
            await self.guard.release(principal, job_id)
            raise
        if not created:
            await self.guard.release(principal, job_id)
            return StartJobResponse(job_id=job_id, status=job.state, already_running=True)

        try:
            manifest_path = self.manifest_builder.build(job_id, canonical_items)
        except OSError as e:
            logger.error(f"Failed to write manifest for job {short_id(job_id)}: {e}")
            await self.registry.append_log(job_id, f"PROCESS ERROR: failed to write manifest: {e}")
            failed = await self.registry.transition(
                job_id, JobState.FAILED, failure_reason=f"Failed to write manifest: {e}"
            )
            return StartJobResponse(job_id=job_id, status=failed.state)

        await self.supervisor.launch(job, manifest_path, credential)
        current = self.registry.get(job_id)
        log_with_context(
            logger,
            logging.INFO,
            "Job started",
            {"job_id": job_id, "principal": principal, "attempt": current.attempt, "status": current.state.value},
        )
        return StartJobResponse(job_id=job_id, status=current.state)

    def _already_running_response(self, holder_id: Optional[str], requested_id: str) -> StartJobResponse:
        holder = self.registry.find(holder_id) if holder_id else None
        if holder is None:
            return StartJobResponse(job_id=requested_id, status=JobState.PENDING, already_running=True)
        log_with_context(
            logger,
            logging.INFO,
            "Principal already has an active job",
            {"requested_job_id": requested_id, "active_job_id": holder.id},
        )
        return StartJobResponse(job_id=holder.id, status=holder.state, already_running=True)

    async def _on_job_terminal(self, job: Job) -> None:
        await self.guard.release(job.principal, job.id)

    def get_status(self, job_id: str) -> JobStatusResponse:
        """
        Raises:
            JobNotFoundError: If the job is unknown
        """
        job = self.registry.get(job_id)
        return JobStatusResponse.from_job(job, self.supervisor.get_process_info(job_id))

    async def get_logs(self, job_id: str) -> str:
        """Full log text of a job, every attempt included."""
        return await self.registry.read_log_text(job_id)

    async def tail_logs(
        self, job_id: str, since_offset: Optional[int] = None, limit: Optional[int] = None
    ) -> LogChunk:
        return await self.registry.get_logs(job_id, since_offset=since_offset, limit=limit)

    async def stop_job(self, job_id: str) -> bool:
        """
        Stop a job.

        Returns:
            True if this call initiated the stop; False if the job was
            already terminal or already stopping

        Raises:
            JobNotFoundError: If the job is unknown
        """
        job = self.registry.get(job_id)
        if job.is_terminal:
            logger.info(f"Job {short_id(job_id)} already {job.state.value}, nothing to stop")
            return False

        outcome = await self.supervisor.stop(job_id)
        if outcome in (StopOutcome.STOPPING, StopOutcome.STOPPED):
            return True

        if outcome == StopOutcome.ALREADY_STOPPED and not self.supervisor.is_live(job_id):
            # Pending job that never reached the supervisor
            current = self.registry.get(job_id)
            if current.state == JobState.PENDING:
                await self.registry.append_log(job_id, f"Stopped before start: {STOP_REASON_REQUESTED}")
                await self.registry.transition(job_id, JobState.STOPPED, failure_reason=STOP_REASON_REQUESTED)
                return True
        return False

    def subscribe(self, job_id: str) -> Subscription:
        """
        Subscribe to progress, log line and done events of a job.

        A subscription to a job that is already terminal receives its done
        event immediately.

        Raises:
            JobNotFoundError: If the job is unknown
        """
        job = self.registry.get(job_id)
        subscription = self.publisher.subscribe(job_id)
        if job.is_terminal:
            subscription.deliver(
                JobEvent(
                    type=EventType.DONE,
                    job_id=job_id,
                    status=job.state,
                    progress=job.progress_percent,
                    exit_code=job.exit_code,
                    failure_reason=job.failure_reason,
                )
            )
            self.publisher.unsubscribe(subscription)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        self.publisher.unsubscribe(subscription)

    def list_jobs(self, principal: Optional[str] = None) -> List[JobStatusResponse]:
        return [
            JobStatusResponse.from_job(job, self.supervisor.get_process_info(job.id))
            for job in self.registry.list_jobs(principal)
        ]

    async def test_connection(self, principal: str) -> Dict[str, Any]:
        """Check that a principal's credential is usable and the source is readable."""
        try:
            record = await self.credential_gate.get_valid_record(principal)
            decision = await self.access_checker.check_access(record.access_token)
        except MigratorError as e:
            return {"success": False, "error": e.code, "message": e.message}

        if not decision.approved:
            return {"success": False, "error": AccessDeniedError.code, "message": decision.reason}
        return {"success": True, "drive_id": decision.drive_id, "expires_at": record.expires_at.isoformat()}

    async def get_service_status(self) -> Dict[str, Any]:
        return {
            "supervisor": self.supervisor.get_status(),
            "concurrency": await self.guard.get_status(),
            "credentials": self.credential_gate.service_status(),
            "active_jobs": len(self.registry.active_job_ids()),
        }
