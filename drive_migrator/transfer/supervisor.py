"""
Process supervisor: owns the lifecycle of every transfer process.

One ``SupervisedProcess`` exists per live job id. Launches beyond the global
process ceiling wait in a FIFO admission queue; when that queue is full the
job fails immediately. For each running process the supervisor drains stdout
and stderr concurrently, feeds every line through the progress parser into
the job registry, enforces the wall clock limit, and on exit removes the
manifest before recording the terminal state.

Example:
    supervisor = ProcessSupervisor(registry, manifests, SupervisorConfig(), TransferToolConfig())
    handle = await supervisor.launch(job, manifest_path, credential)
    await supervisor.stop(job.id)
    await handle.wait()
"""

import asyncio
import logging
import os
import time
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Optional

import psutil

from config.types import SupervisorConfig, TransferToolConfig
from drive_migrator.errors import InvalidTransitionError, MigratorError
from drive_migrator.jobs.registry import JobRegistry
from drive_migrator.transfer.manifest import ManifestBuilder
from drive_migrator.transfer.progress import ParsedLine, parse_line, split_output
from drive_migrator.transfer.rclone import TransferInvocation, build_invocation
from drive_migrator.types import CredentialRecord, Job, JobState, StopOutcome
from drive_migrator.utils import log_with_context, short_id

logger = logging.getLogger(__name__)

STOP_REASON_REQUESTED = "Stopped by request"

# Seconds to keep draining pipes after exit, for output held open by grandchildren
_DRAIN_TIMEOUT = 5.0


class SupervisedProcess:
    """Handle of one job's transfer process."""

    QUEUED = "queued"
    STARTING = "starting"
    RUNNING = "running"
    EXITED = "exited"

    def __init__(self, job: Job, manifest_path: str, invocation: TransferInvocation):
        self.job_id = job.id
        self.principal = job.principal
        self.manifest_path = manifest_path
        self.invocation = invocation
        self.state = self.QUEUED
        self.process: Optional[asyncio.subprocess.Process] = None
        self.pid: Optional[int] = None
        self.started_at: Optional[float] = None
        self.exit_code: Optional[int] = None
        self.stop_requested = False
        self.stop_reason: Optional[str] = None
        self.tasks: List[asyncio.Task] = []
        self.done = asyncio.Event()

    async def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        """Wait until the job is terminal; returns the exit code, if any."""
        await asyncio.wait_for(self.done.wait(), timeout)
        return self.exit_code

    def __repr__(self):
        return f"SupervisedProcess(job={short_id(self.job_id)}, state={self.state}, pid={self.pid})"


class ProcessSupervisor:
    """Spawns, observes and stops transfer processes."""

    def __init__(
        self,
        registry: JobRegistry,
        manifest_builder: ManifestBuilder,
        config: Optional[SupervisorConfig] = None,
        tool_config: Optional[TransferToolConfig] = None,
        parser: Callable[[Any], ParsedLine] = parse_line,
    ):
        self.registry = registry
        self.manifest_builder = manifest_builder
        self.config = config or SupervisorConfig()
        self.tool_config = tool_config or TransferToolConfig()
        self.parser = parser

        self._handles: Dict[str, SupervisedProcess] = {}  # queued, starting or running
        self._active: Dict[str, SupervisedProcess] = {}  # holding a process slot
        self._queue: Deque[SupervisedProcess] = deque()
        self._admission_lock = asyncio.Lock()

        logger.info(
            f"ProcessSupervisor initialized: max_concurrent={self.config.max_concurrent_processes}, "
            f"queue_size={self.config.admission_queue_size}"
        )

    def is_live(self, job_id: str) -> bool:
        return job_id in self._handles

    def get_handle(self, job_id: str) -> Optional[SupervisedProcess]:
        return self._handles.get(job_id)

    def live_job_ids(self) -> List[str]:
        return list(self._handles)

    async def launch(self, job: Job, manifest_path: str, credential: CredentialRecord) -> SupervisedProcess:
        """
        Start (or queue) the transfer process of a Pending job.

        Spawn failures are recorded on the job, never raised.

        Returns:
            The handle of the job's process
        """
        existing = self._handles.get(job.id)
        if existing is not None:
            logger.warning(f"Job {short_id(job.id)} already has a supervised process, not launching again")
            return existing

        invocation = build_invocation(self.tool_config, manifest_path, job.destination_prefix, credential)
        handle = SupervisedProcess(job, manifest_path, invocation)
        self._handles[job.id] = handle

        async with self._admission_lock:
            if len(self._active) < self.config.max_concurrent_processes:
                self._active[job.id] = handle
                handle.state = SupervisedProcess.STARTING
                admitted, rejected = True, False
            elif len(self._queue) >= self.config.admission_queue_size:
                admitted, rejected = False, True
            else:
                self._queue.append(handle)
                admitted, rejected = False, False

        if rejected:
            log_with_context(
                logger,
                logging.WARNING,
                "Admission queue full, failing job",
                {"job_id": job.id, "queue_size": self.config.admission_queue_size},
            )
            await self._fail_before_start(handle, "Admission queue full")
        elif admitted:
            await self._spawn(handle)
        else:
            log_with_context(
                logger,
                logging.INFO,
                "Process ceiling reached, job queued",
                {"job_id": job.id, "queue_position": len(self._queue)},
            )
            await self.registry.append_log(job.id, f"Queued: waiting for a free transfer slot (position {len(self._queue)})")
        return handle

    async def _spawn(self, handle: SupervisedProcess) -> None:
        env = dict(os.environ)
        env.update(handle.invocation.env)

        log_with_context(
            logger,
            logging.INFO,
            "Spawning transfer process",
            {"job_id": handle.job_id, "command": handle.invocation.display_command},
        )

        try:
            process = await asyncio.create_subprocess_exec(
                *handle.invocation.argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                limit=self.config.stream_limit_bytes,
            )
        except (OSError, ValueError) as e:
            log_with_context(
                logger, logging.ERROR, "Failed to spawn transfer process", {"job_id": handle.job_id, "error": str(e)}
            )
            await self._fail_before_start(handle, f"Failed to start transfer process: {e}")
            await self._admit_next()
            return

        handle.process = process
        handle.pid = process.pid
        handle.started_at = time.time()
        handle.state = SupervisedProcess.RUNNING

        try:
            await self.registry.transition(handle.job_id, JobState.RUNNING)
        except MigratorError as e:
            logger.error(f"Could not mark job {short_id(handle.job_id)} running: {e}")
        await self.registry.append_log(handle.job_id, f"Started transfer process (pid {process.pid})")

        readers = [
            asyncio.create_task(self._read_stream(handle, process.stdout)),
            asyncio.create_task(self._read_stream(handle, process.stderr)),
        ]
        handle.tasks.extend(readers)
        handle.tasks.append(asyncio.create_task(self._monitor(handle, readers)))

        if handle.stop_requested:
            self._terminate(handle)
            handle.tasks.append(asyncio.create_task(self._escalate(handle)))

    async def _read_stream(self, handle: SupervisedProcess, stream: Optional[asyncio.StreamReader]) -> None:
        """Drain one pipe to EOF, parsing every line."""
        if stream is None:
            return
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                # Line longer than the stream limit; the reader has discarded it
                await self._handle_line(handle, "[output line exceeded the stream limit and was discarded]")
                continue
            except (ConnectionResetError, BrokenPipeError):
                break
            if not raw:
                break
            for segment in split_output(raw.decode("utf-8", errors="replace")):
                await self._handle_line(handle, segment)

    async def _handle_line(self, handle: SupervisedProcess, line: str) -> None:
        try:
            parsed = self.parser(line)
            await self.registry.append_log(handle.job_id, parsed.log_entry)
            if parsed.percent is not None:
                await self.registry.update_progress(handle.job_id, parsed.percent)
        except Exception as e:
            # Keep draining so the child never blocks on a full pipe
            logger.error(f"Failed to record output of job {short_id(handle.job_id)}: {e}")

    async def _monitor(self, handle: SupervisedProcess, readers: List[asyncio.Task]) -> None:
        process = handle.process
        try:
            await asyncio.wait_for(process.wait(), self.config.max_job_duration_seconds)
        except asyncio.TimeoutError:
            limit = int(self.config.max_job_duration_seconds)
            log_with_context(
                logger,
                logging.WARNING,
                "Transfer exceeded maximum duration",
                {"job_id": handle.job_id, "pid": handle.pid, "limit_seconds": limit},
            )
            await self.stop(handle.job_id, reason=f"Exceeded maximum duration of {limit} seconds")
            await process.wait()

        try:
            await asyncio.wait_for(asyncio.gather(*readers, return_exceptions=True), _DRAIN_TIMEOUT)
        except asyncio.TimeoutError:
            logger.warning(f"Output of job {short_id(handle.job_id)} still open after exit, abandoning readers")
            for reader in readers:
                reader.cancel()

        await self._finalize(handle, process.returncode)

    async def _finalize(self, handle: SupervisedProcess, returncode: int) -> None:
        handle.exit_code = returncode
        handle.state = SupervisedProcess.EXITED
        for task in handle.tasks:
            if task is not asyncio.current_task() and not task.done():
                task.cancel()

        try:
            await self.manifest_builder.remove(handle.manifest_path)
            await self.registry.append_log(handle.job_id, f"EXIT {returncode}")

            if handle.stop_requested:
                state, reason = JobState.STOPPED, handle.stop_reason
            elif returncode == 0:
                state, reason = JobState.COMPLETED, None
            elif returncode < 0:
                state, reason = JobState.FAILED, f"Transfer process was killed by signal {-returncode}"
            else:
                state, reason = JobState.FAILED, f"Transfer process exited with code {returncode}"

            log_with_context(
                logger,
                logging.INFO,
                "Transfer process exited",
                {"job_id": handle.job_id, "pid": handle.pid, "exit_code": returncode, "state": state.value},
            )
            try:
                await self.registry.transition(handle.job_id, state, exit_code=returncode, failure_reason=reason)
            except InvalidTransitionError as e:
                logger.error(f"Could not record exit of job {short_id(handle.job_id)}: {e}")
        finally:
            await self._release(handle)
            await self._admit_next()

    async def _fail_before_start(self, handle: SupervisedProcess, reason: str) -> None:
        # A stop requested while spawning still ends the job Stopped
        if handle.stop_requested:
            state, failure_reason = JobState.STOPPED, handle.stop_reason
        else:
            state, failure_reason = JobState.FAILED, reason
        handle.state = SupervisedProcess.EXITED
        try:
            await self.manifest_builder.remove(handle.manifest_path)
            await self.registry.append_log(handle.job_id, f"PROCESS ERROR: {reason}")
            await self.registry.transition(handle.job_id, state, failure_reason=failure_reason)
        except MigratorError as e:
            logger.error(f"Could not record start failure of job {short_id(handle.job_id)}: {e}")
        finally:
            await self._release(handle)

    async def _release(self, handle: SupervisedProcess) -> None:
        async with self._admission_lock:
            if self._handles.get(handle.job_id) is handle:
                del self._handles[handle.job_id]
            if self._active.get(handle.job_id) is handle:
                del self._active[handle.job_id]
        handle.done.set()

    async def _admit_next(self) -> None:
        to_spawn: List[SupervisedProcess] = []
        async with self._admission_lock:
            while self._queue and len(self._active) < self.config.max_concurrent_processes:
                handle = self._queue.popleft()
                handle.state = SupervisedProcess.STARTING
                self._active[handle.job_id] = handle
                to_spawn.append(handle)

        for handle in to_spawn:
            logger.info(f"Admitting queued job {short_id(handle.job_id)}")
            await self._spawn(handle)

    async def stop(self, job_id: str, reason: str = STOP_REASON_REQUESTED) -> StopOutcome:
        """
        Request termination of a job's process.

        Sends SIGTERM and escalates to SIGKILL after the grace period. A
        queued job is removed from the queue and stopped directly. Repeated
        requests are idempotent.

        Once a stop has been requested the job always ends Stopped: a
        process that still exits 0, or a spawn that fails after the
        request, records Stopped with the stop reason. The exit code and
        any spawn error remain in the job log.
        """
        handle = self._handles.get(job_id)
        if handle is None:
            return StopOutcome.ALREADY_STOPPED if self.registry.find(job_id) else StopOutcome.NOT_FOUND

        if handle.stop_requested or handle.state == SupervisedProcess.EXITED:
            return StopOutcome.ALREADY_STOPPED

        handle.stop_requested = True
        handle.stop_reason = reason
        log_with_context(logger, logging.INFO, "Stopping job", {"job_id": job_id, "state": handle.state, "reason": reason})

        if handle.state == SupervisedProcess.QUEUED:
            async with self._admission_lock:
                dequeued = handle in self._queue
                if dequeued:
                    self._queue.remove(handle)
            if dequeued:
                handle.state = SupervisedProcess.EXITED
                try:
                    await self.manifest_builder.remove(handle.manifest_path)
                    await self.registry.append_log(job_id, f"Stopped before start: {reason}")
                    await self.registry.transition(job_id, JobState.STOPPED, failure_reason=reason)
                finally:
                    await self._release(handle)
                return StopOutcome.STOPPED

        if handle.state == SupervisedProcess.RUNNING:
            self._terminate(handle)
            handle.tasks.append(asyncio.create_task(self._escalate(handle)))
        # A STARTING handle is terminated by _spawn once the process exists

        return StopOutcome.STOPPING

    def _terminate(self, handle: SupervisedProcess) -> None:
        process = handle.process
        if process is None or process.returncode is not None:
            return
        try:
            process.terminate()
            log_with_context(logger, logging.INFO, "Sent termination signal to process", {"pid": handle.pid})
        except ProcessLookupError:
            pass

    async def _escalate(self, handle: SupervisedProcess) -> None:
        try:
            await asyncio.wait_for(handle.process.wait(), self.config.stop_grace_seconds)
            return
        except asyncio.TimeoutError:
            pass

        log_with_context(
            logger,
            logging.WARNING,
            "Process ignored termination signal, killing",
            {"job_id": handle.job_id, "pid": handle.pid, "grace_seconds": self.config.stop_grace_seconds},
        )
        try:
            for child in psutil.Process(handle.pid).children(recursive=True):
                try:
                    child.kill()
                except psutil.NoSuchProcess:
                    pass
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            pass
        try:
            handle.process.kill()
        except ProcessLookupError:
            pass

    def get_process_info(self, job_id: str) -> Optional[Dict[str, Any]]:
        """Resource usage of a running job's process, via psutil."""
        handle = self._handles.get(job_id)
        if handle is None or handle.pid is None or handle.state != SupervisedProcess.RUNNING:
            return None

        try:
            p = psutil.Process(handle.pid)
            info: Dict[str, Any] = {
                "pid": handle.pid,
                "status": p.status(),
                "runtime": time.time() - (handle.started_at or p.create_time()),
            }
            try:
                info["cpu_percent"] = p.cpu_percent(interval=None)
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                pass
            try:
                info["memory_mb"] = p.memory_info().rss / (1024 * 1024)
            except (psutil.NoSuchProcess, psutil.AccessDenied):
                pass
            return info
        except (psutil.NoSuchProcess, psutil.AccessDenied, psutil.ZombieProcess):
            return None

    def get_status(self) -> Dict[str, Any]:
        return {
            "running": len(self._active),
            "queued": len(self._queue),
            "max_concurrent_processes": self.config.max_concurrent_processes,
            "admission_queue_size": self.config.admission_queue_size,
            "queued_job_ids": [h.job_id for h in self._queue],
        }

    async def shutdown(self, timeout: Optional[float] = None) -> None:
        """Stop every live job and wait for them to become terminal."""
        handles = list(self._handles.values())
        if not handles:
            return
        logger.info(f"Shutting down {len(handles)} supervised job(s)")
        for handle in handles:
            await self.stop(handle.job_id, reason="Stopped by shutdown")
        wait_timeout = timeout if timeout is not None else self.config.stop_grace_seconds + _DRAIN_TIMEOUT + 1
        try:
            await asyncio.wait_for(asyncio.gather(*(h.done.wait() for h in handles)), wait_timeout)
        except asyncio.TimeoutError:
            logger.warning("Timed out waiting for supervised jobs to exit")
