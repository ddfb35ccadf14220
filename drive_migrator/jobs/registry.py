"""
Job registry: the authoritative record of every job attempt.

Jobs are keyed by their fingerprint. All mutations of one job happen under
that job's lock and go through the state machine below. Log lines are kept
in a bounded in-memory tail and appended to ``<log_dir>/<job_id>.log``; log
offsets are absolute line indexes into that file, so incremental reads keep
working after the tail has rolled over.
"""

import asyncio
import inspect
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Deque, Dict, FrozenSet, List, Optional, TextIO, Tuple

from drive_migrator.errors import InvalidTransitionError, JobNotFoundError
from drive_migrator.jobs.notifications import NotificationPublisher
from drive_migrator.types import EventType, Job, JobEvent, JobSpec, JobState, LogChunk
from drive_migrator.utils import log_with_context, short_id, utc_now

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: Dict[JobState, FrozenSet[JobState]] = {
    JobState.PENDING: frozenset({JobState.RUNNING, JobState.FAILED, JobState.STOPPED}),
    JobState.RUNNING: frozenset({JobState.COMPLETED, JobState.FAILED, JobState.STOPPED}),
    JobState.COMPLETED: frozenset(),
    JobState.FAILED: frozenset(),
    JobState.STOPPED: frozenset(),
}

# Highest progress reported before the process has exited successfully
RUNNING_PROGRESS_CAP = 99

ATTEMPT_HEADER_PREFIX = "=== Attempt "

TerminalListener = Callable[[Job], Any]


@dataclass
class _JobEntry:
    job: Job
    log_path: Path
    tail: Deque[str]
    line_count: int = 0
    last_progress_publish: Optional[float] = None
    # Progress stored but held back by the publish interval
    pending_progress: Optional[int] = None
    flush_task: Optional[asyncio.Task] = None
    log_file: Optional[TextIO] = None
    terminal_since: Optional[float] = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


class JobRegistry:
    """In-memory job records with persistent per-job logs."""

    def __init__(
        self,
        log_dir: str,
        log_tail_lines: int = 200,
        progress_min_interval: float = 1.0,
        publisher: Optional[NotificationPublisher] = None,
        job_ttl: float = 3600,
        cleanup_interval: float = 300,
    ):
        """
        Initialize the registry.

        Args:
            log_dir: Directory holding one append-only log file per job
            log_tail_lines: Lines kept in memory per job
            progress_min_interval: Minimum seconds between progress events
            publisher: Receives progress, log line and done events
            job_ttl: Seconds a terminal job stays in memory (its log file is kept)
            cleanup_interval: How often to evict expired terminal jobs (seconds)
        """
        self.log_dir = Path(log_dir)
        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.log_tail_lines = max(1, log_tail_lines)
        self.progress_min_interval = progress_min_interval
        self.publisher = publisher
        self.job_ttl = job_ttl
        self.cleanup_interval = cleanup_interval

        self._entries: Dict[str, _JobEntry] = {}
        self._lock = asyncio.Lock()
        self._terminal_listeners: List[TerminalListener] = []
        self._cleanup_task: Optional[asyncio.Task] = None
        self._logger = logger.getChild("registry")

    async def start_cleanup(self) -> None:
        """Start the background eviction task."""
        if self._cleanup_task is None or self._cleanup_task.done():
            self._cleanup_task = asyncio.create_task(self._cleanup_loop())
            self._logger.info("Started cleanup task")

    async def stop_cleanup(self) -> None:
        """Stop the background eviction task."""
        if self._cleanup_task and not self._cleanup_task.done():
            self._cleanup_task.cancel()
            try:
                await self._cleanup_task
            except asyncio.CancelledError:
                pass
            self._logger.info("Stopped cleanup task")
        self._cleanup_task = None

    async def close(self) -> None:
        """Stop cleanup, cancel pending progress flushes and close log files."""
        await self.stop_cleanup()
        async with self._lock:
            entries = list(self._entries.values())
        for entry in entries:
            async with entry.lock:
                self._cancel_flush(entry)
                self._close_log(entry)

    def add_terminal_listener(self, listener: TerminalListener) -> None:
        """Call ``listener(job)`` once each time a job attempt becomes terminal.

        Listeners may be plain functions or coroutine functions.
        """
        self._terminal_listeners.append(listener)

    def log_path(self, job_id: str) -> Path:
        return self.log_dir / f"{job_id}.log"

    async def create_or_get(self, job_id: str, spec: JobSpec) -> Tuple[Job, bool]:
        """
        Return the live job for ``job_id`` or register a new attempt.

        A non-terminal job is returned unchanged. A terminal job is replaced
        by a fresh Pending attempt with an incremented attempt counter; its
        log file is kept and continues to grow.

        Returns:
            (job snapshot, True if a new attempt was created)
        """
        async with self._lock:
            previous = self._entries.get(job_id)
            if previous is not None and not previous.job.is_terminal:
                return self._snapshot(previous), False

            log_path = self.log_path(job_id)
            if previous is not None:
                line_count, attempts = previous.line_count, previous.job.attempt
            else:
                # Evicted or written by an earlier host process
                line_count, attempts = self._scan_log(log_path)

            job = Job(
                id=job_id,
                principal=spec.principal,
                items=list(spec.items),
                destination_prefix=spec.destination_prefix,
                attempt=attempts + 1,
            )
            entry = _JobEntry(
                job=job,
                log_path=log_path,
                tail=deque(maxlen=self.log_tail_lines),
                line_count=line_count,
            )
            self._entries[job_id] = entry

            async with entry.lock:
                self._write_line(
                    entry,
                    f"{ATTEMPT_HEADER_PREFIX}{job.attempt} started {job.created_at.isoformat()}: "
                    f"{len(job.items)} item(s) -> {job.destination_prefix} ===",
                )

            log_with_context(
                self._logger,
                logging.INFO,
                "Registered job attempt",
                {
                    "job_id": job_id,
                    "principal": spec.principal,
                    "attempt": job.attempt,
                    "items": len(job.items),
                },
            )
            return self._snapshot(entry), True

    async def transition(
        self,
        job_id: str,
        new_state: JobState,
        *,
        exit_code: Optional[int] = None,
        failure_reason: Optional[str] = None,
    ) -> Job:
        """
        Move a job to ``new_state``.

        Repeating the current terminal state is a no-op. Any other change not
        in ``ALLOWED_TRANSITIONS`` is rejected.

        Raises:
            JobNotFoundError: If the job is unknown
            InvalidTransitionError: If the state machine forbids the change
        """
        entry = self._require(job_id)
        async with entry.lock:
            job = entry.job
            current = job.state

            if current == new_state and current.is_terminal:
                self._logger.debug(f"Job {short_id(job_id)} already {current.value}, ignoring repeat")
                return self._snapshot(entry)

            if new_state not in ALLOWED_TRANSITIONS[current]:
                log_with_context(
                    self._logger,
                    logging.ERROR,
                    "Rejected job state transition",
                    {"job_id": job_id, "from": current.value, "to": new_state.value},
                )
                raise InvalidTransitionError(
                    f"Cannot move job from {current.value} to {new_state.value}",
                    principal=job.principal,
                    job_id=job_id,
                )

            now = utc_now()
            job.state = new_state
            if new_state == JobState.RUNNING:
                job.started_at = now
            if new_state.is_terminal:
                job.finished_at = now
                job.exit_code = exit_code
                job.failure_reason = failure_reason
                if new_state == JobState.COMPLETED:
                    job.progress_percent = 100

            log_with_context(
                self._logger,
                logging.INFO,
                f"Job {new_state.value}",
                {
                    "job_id": job_id,
                    "from": current.value,
                    "exit_code": exit_code,
                    "failure_reason": failure_reason,
                },
            )

            if new_state.is_terminal:
                entry.terminal_since = time.monotonic()
                entry.pending_progress = None
                self._cancel_flush(entry)
                self._publish(
                    JobEvent(
                        type=EventType.DONE,
                        job_id=job_id,
                        status=new_state,
                        progress=job.progress_percent,
                        exit_code=exit_code,
                        failure_reason=failure_reason,
                    )
                )
                self._close_log(entry)
            snapshot = self._snapshot(entry)

        if new_state.is_terminal:
            await self._notify_terminal(snapshot)
        return snapshot

    async def update_progress(self, job_id: str, percent: int) -> bool:
        """
        Record a progress observation for a Running job.

        Values are clamped below 100 and never decrease; stale or out of
        state updates are ignored. Updates arriving faster than
        ``progress_min_interval`` are coalesced: the latest value is held
        and published once the interval has passed, by the next update or
        by a trailing flush.

        Returns:
            True if the stored progress changed
        """
        entry = self._require(job_id)
        async with entry.lock:
            job = entry.job
            if job.state != JobState.RUNNING:
                return False

            value = max(0, min(int(percent), RUNNING_PROGRESS_CAP))
            changed = value > job.progress_percent
            if changed:
                job.progress_percent = value
                entry.pending_progress = value

            if entry.pending_progress is not None:
                remaining = self._publish_delay(entry)
                if remaining <= 0:
                    self._publish_progress(entry)
                elif entry.flush_task is None or entry.flush_task.done():
                    entry.flush_task = asyncio.create_task(self._flush_progress(entry, remaining))
            return changed

    async def append_log(self, job_id: str, line: str) -> int:
        """
        Append one line to the job log.

        Returns:
            Absolute offset of the appended line
        """
        entry = self._require(job_id)
        text = str(line).replace("\r", " ").replace("\n", " ")
        async with entry.lock:
            offset = self._write_line(entry, text)
            self._publish(JobEvent(type=EventType.LOG_LINE, job_id=job_id, message=text))
            return offset

    def get(self, job_id: str) -> Job:
        """
        Get a snapshot of a job.

        Raises:
            JobNotFoundError: If the job is unknown
        """
        return self._snapshot(self._require(job_id))

    def find(self, job_id: str) -> Optional[Job]:
        entry = self._entries.get(job_id)
        return self._snapshot(entry) if entry else None

    def list_jobs(self, principal: Optional[str] = None) -> List[Job]:
        """Snapshots of all jobs, newest first, optionally for one principal."""
        jobs = [
            self._snapshot(entry)
            for entry in self._entries.values()
            if principal is None or entry.job.principal == principal
        ]
        return sorted(jobs, key=lambda job: job.created_at, reverse=True)

    def active_job_ids(self) -> List[str]:
        return [job_id for job_id, entry in self._entries.items() if not entry.job.is_terminal]

    async def get_logs(
        self, job_id: str, since_offset: Optional[int] = None, limit: Optional[int] = None
    ) -> LogChunk:
        """
        Read a slice of the job log.

        Args:
            job_id: Job to read
            since_offset: Absolute line offset to read from; None returns the
                most recent lines
            limit: Maximum number of lines to return

        Raises:
            JobNotFoundError: If the job is unknown
        """
        entry = self._require(job_id)
        async with entry.lock:
            total = entry.line_count
            tail = list(entry.tail)
            tail_start = total - len(tail)

            if since_offset is None:
                lines = tail if limit is None else tail[max(0, len(tail) - limit):]
                offset = total - len(lines)
            else:
                offset = max(0, min(since_offset, total))
                if offset >= tail_start:
                    lines = tail[offset - tail_start:]
                else:
                    lines = self._read_lines(entry.log_path, offset, total)
                if limit is not None:
                    lines = lines[:max(0, limit)]

        return LogChunk(job_id=job_id, offset=offset, next_offset=offset + len(lines), lines=lines)

    async def read_log_text(self, job_id: str) -> str:
        """Full log of a job, every attempt included."""
        entry = self._require(job_id)
        async with entry.lock:
            try:
                return entry.log_path.read_text(encoding="utf-8", errors="replace")
            except FileNotFoundError:
                return "".join(f"{line}\n" for line in entry.tail)

    def _require(self, job_id: str) -> _JobEntry:
        entry = self._entries.get(job_id)
        if entry is None:
            raise JobNotFoundError(f"Job not found: {job_id}", job_id=job_id)
        return entry

    def _snapshot(self, entry: _JobEntry) -> Job:
        return entry.job.model_copy(update={"log_tail": list(entry.tail)}, deep=True)

    def _write_line(self, entry: _JobEntry, text: str) -> int:
        """Append to tail and file. Caller holds ``entry.lock``."""
        offset = entry.line_count
        entry.tail.append(text)
        entry.line_count += 1
        try:
            if entry.log_file is None or entry.log_file.closed:
                # Line buffered so readers of the file see every complete line
                entry.log_file = open(entry.log_path, "a", encoding="utf-8", buffering=1)
            entry.log_file.write(text + "\n")
        except OSError as e:
            self._logger.error(f"Failed to write log line for job {short_id(entry.job.id)}: {e}")
        return offset

    def _close_log(self, entry: _JobEntry) -> None:
        if entry.log_file is not None and not entry.log_file.closed:
            try:
                entry.log_file.close()
            except OSError as e:
                self._logger.error(f"Failed to close log for job {short_id(entry.job.id)}: {e}")
        entry.log_file = None

    def _publish_delay(self, entry: _JobEntry) -> float:
        """Seconds until the next progress event may be published."""
        last = entry.last_progress_publish
        if last is None:
            return 0.0
        return last + self.progress_min_interval - time.monotonic()

    def _publish_progress(self, entry: _JobEntry) -> None:
        """Publish the held progress value. Caller holds ``entry.lock``."""
        value = entry.pending_progress
        if value is None:
            return
        entry.pending_progress = None
        entry.last_progress_publish = time.monotonic()
        self._publish(JobEvent(type=EventType.PROGRESS, job_id=entry.job.id, progress=value))

    async def _flush_progress(self, entry: _JobEntry, delay: float) -> None:
        try:
            await asyncio.sleep(delay)
            async with entry.lock:
                if entry.job.state == JobState.RUNNING:
                    self._publish_progress(entry)
        except asyncio.CancelledError:
            pass

    def _cancel_flush(self, entry: _JobEntry) -> None:
        task = entry.flush_task
        entry.flush_task = None
        if task is not None and not task.done() and task is not asyncio.current_task():
            task.cancel()

    async def _cleanup_loop(self) -> None:
        """Background loop evicting expired terminal jobs."""
        while True:
            try:
                await asyncio.sleep(self.cleanup_interval)
                await self._cleanup_expired()
            except asyncio.CancelledError:
                break
            except Exception as e:
                self._logger.error(f"Error during cleanup: {e}")

    async def _cleanup_expired(self) -> int:
        """Drop terminal jobs older than ``job_ttl`` from memory. Log files are kept."""
        cutoff = time.monotonic() - self.job_ttl
        async with self._lock:
            expired = [
                job_id
                for job_id, entry in self._entries.items()
                if entry.job.is_terminal
                and entry.terminal_since is not None
                and entry.terminal_since <= cutoff
            ]
            evicted = [self._entries.pop(job_id) for job_id in expired]

        for entry in evicted:
            async with entry.lock:
                self._cancel_flush(entry)
                self._close_log(entry)

        if evicted:
            self._logger.info(f"Evicted {len(evicted)} expired job(s) from memory")
        return len(evicted)

    def _publish(self, event: JobEvent) -> None:
        if self.publisher is None:
            return
        try:
            self.publisher.publish(event)
        except Exception as e:
            self._logger.error(f"Failed to publish {event.type.value} event: {e}")

    async def _notify_terminal(self, job: Job) -> None:
        for listener in list(self._terminal_listeners):
            try:
                result = listener(job)
                if inspect.isawaitable(result):
                    await result
            except Exception as e:
                self._logger.error(f"Terminal listener failed for job {short_id(job.id)}: {e}")

    @staticmethod
    def _scan_log(path: Path) -> Tuple[int, int]:
        """(line count, attempt headers) of an existing log file."""
        lines = attempts = 0
        try:
            with open(path, "r", encoding="utf-8", errors="replace") as f:
                for line in f:
                    lines += 1
                    if line.startswith(ATTEMPT_HEADER_PREFIX):
                        attempts += 1
        except FileNotFoundError:
            pass
        return lines, attempts

    @staticmethod
    def _read_lines(path: Path, start: int, end: int) -> List[str]:
        lines: List[str] = []
        try:
            with open(path, "r", encoding="utf-8", errors="replace") as f:
                for index, line in enumerate(f):
                    if index >= end:
                        break
                    if index >= start:
                        lines.append(line.rstrip("\n"))
        except FileNotFoundError:
            pass
        return lines
