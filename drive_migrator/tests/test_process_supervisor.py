"""Tests for the process supervisor, driven by a fake rclone executable."""

import asyncio
import json
import os
from unittest.mock import patch

import pytest

from config.types import SupervisorConfig, TransferToolConfig
from conftest import list_manifests, make_record
from drive_migrator.jobs.notifications import NotificationPublisher
from drive_migrator.jobs.registry import JobRegistry
from drive_migrator.transfer.manifest import ManifestBuilder
from drive_migrator.transfer.supervisor import ProcessSupervisor, SupervisedProcess
from drive_migrator.types import EventType, JobSpec, JobState, StopOutcome


@pytest.fixture
def publisher():
    return NotificationPublisher(max_queue_size=1000)


@pytest.fixture
def registry(tmp_path, publisher):
    return JobRegistry(str(tmp_path / "logs"), progress_min_interval=0, publisher=publisher)


@pytest.fixture
def manifests(tmp_path):
    return ManifestBuilder(str(tmp_path / "manifests"), cleanup_retry_delay=0)


@pytest.fixture
def make_supervisor(registry, manifests, tool_config, supervisor_config):
    def factory(**overrides):
        config = supervisor_config.model_copy(update=overrides)
        return ProcessSupervisor(registry, manifests, config, tool_config)

    return factory


@pytest.fixture
def supervisor(make_supervisor):
    return make_supervisor()


async def launch(supervisor, registry, manifests, job_id="job1", principal="alice", items=("Documents/a.txt",)):
    job, _ = await registry.create_or_get(
        job_id, JobSpec(principal=principal, items=list(items), destination_prefix=principal)
    )
    path = manifests.build(job_id, items)
    return await supervisor.launch(job, path, make_record(principal))


async def log_lines(registry, job_id):
    return (await registry.read_log_text(job_id)).splitlines()


class TestSuccessfulRun:
    @pytest.mark.asyncio
    async def test_completes_with_full_progress(self, supervisor, registry, manifests, rclone_mode):
        handle = await launch(supervisor, registry, manifests)
        assert await handle.wait(timeout=15) == 0

        job = registry.get("job1")
        assert job.state == JobState.COMPLETED
        assert job.progress_percent == 100
        assert job.exit_code == 0
        assert job.started_at is not None and job.finished_at is not None
        assert list_manifests(manifests.manifest_dir) == []
        assert not supervisor.is_live("job1")

        lines = await log_lines(registry, "job1")
        assert "Transferred:   1 / 2, 50%" in lines
        assert lines[-1] == "EXIT 0"

    @pytest.mark.asyncio
    async def test_progress_events_are_monotonic_and_end_with_done(
        self, supervisor, registry, manifests, publisher, rclone_mode
    ):
        job, _ = await registry.create_or_get(
            "job1", JobSpec(principal="alice", items=["a.txt"], destination_prefix="alice")
        )
        subscription = publisher.subscribe("job1")
        path = manifests.build("job1", ["a.txt"])
        await supervisor.launch(job, path, make_record("alice"))

        events = []

        async def collect():
            async for event in subscription:
                events.append(event)

        await asyncio.wait_for(collect(), timeout=15)

        progress = [e.progress for e in events if e.type == EventType.PROGRESS]
        assert progress == sorted(progress)
        assert all(value <= 99 for value in progress)
        assert events[-1].type == EventType.DONE
        assert events[-1].status == JobState.COMPLETED
        assert events[-1].progress == 100

    @pytest.mark.asyncio
    async def test_carriage_return_updates_are_split(self, supervisor, registry, manifests, rclone_mode):
        rclone_mode("carriage")
        handle = await launch(supervisor, registry, manifests)
        await handle.wait(timeout=15)

        lines = await log_lines(registry, "job1")
        assert sum(1 for line in lines if line.startswith("Transferred: 1.0 MiB")) == 3
        assert registry.get("job1").state == JobState.COMPLETED

    @pytest.mark.asyncio
    async def test_overlong_line_is_discarded(self, supervisor, registry, manifests, rclone_mode):
        rclone_mode("long_line")
        handle = await launch(supervisor, registry, manifests)
        await handle.wait(timeout=15)

        lines = await log_lines(registry, "job1")
        assert any("exceeded the stream limit" in line for line in lines)
        assert registry.get("job1").state == JobState.COMPLETED

    @pytest.mark.asyncio
    async def test_arguments_manifest_and_credentials_reach_the_process(
        self, supervisor, registry, manifests, rclone_mode, tmp_path
    ):
        record_path = tmp_path / "record.json"
        rclone_mode("success", FAKE_RCLONE_RECORD=record_path)

        handle = await launch(supervisor, registry, manifests, items=("/Documents/a.txt", "Photos"))
        await handle.wait(timeout=15)

        seen = json.loads(record_path.read_text(encoding="utf-8"))
        assert seen["args"][:3] == ["copy", "onedrive:", "b2:onedrive-migrations/alice"]
        assert seen["manifest"] == "Documents/a.txt\nPhotos\n"
        token = json.loads(seen["env"]["RCLONE_CONFIG_ONEDRIVE_TOKEN"])
        assert token["access_token"] == "access-0"
        assert seen["env"]["RCLONE_CONFIG_B2_ACCOUNT"] == "key-id"
        assert "RCLONE_CONFIG_ONEDRIVE_TOKEN" not in os.environ


class TestFailures:
    @pytest.mark.asyncio
    async def test_nonzero_exit_fails_job(self, supervisor, registry, manifests, rclone_mode):
        rclone_mode("fail")
        handle = await launch(supervisor, registry, manifests)
        assert await handle.wait(timeout=15) == 3

        job = registry.get("job1")
        assert job.state == JobState.FAILED
        assert job.exit_code == 3
        assert job.failure_reason == "Transfer process exited with code 3"
        assert job.progress_percent == 25
        assert list_manifests(manifests.manifest_dir) == []

        lines = await log_lines(registry, "job1")
        assert any("permission denied" in line for line in lines)
        assert lines[-1] == "EXIT 3"

    @pytest.mark.asyncio
    async def test_missing_executable_fails_job(self, registry, manifests, supervisor_config, tmp_path):
        tool = TransferToolConfig(executable=str(tmp_path / "no-such-rclone"))
        supervisor = ProcessSupervisor(registry, manifests, supervisor_config, tool)

        handle = await launch(supervisor, registry, manifests)
        await handle.wait(timeout=5)

        job = registry.get("job1")
        assert job.state == JobState.FAILED
        assert job.failure_reason.startswith("Failed to start transfer process")
        assert job.exit_code is None
        assert list_manifests(manifests.manifest_dir) == []
        lines = await log_lines(registry, "job1")
        assert lines[-1].startswith("PROCESS ERROR:")
        assert not supervisor.is_live("job1")


class TestStopping:
    @pytest.mark.asyncio
    async def test_stop_running_job(self, supervisor, registry, manifests, rclone_mode):
        rclone_mode("hang")
        handle = await launch(supervisor, registry, manifests)
        await wait_for_progress(registry, "job1")

        assert await supervisor.stop("job1") == StopOutcome.STOPPING
        assert await supervisor.stop("job1") == StopOutcome.ALREADY_STOPPED
        await handle.wait(timeout=15)

        job = registry.get("job1")
        assert job.state == JobState.STOPPED
        assert job.failure_reason == "Stopped by request"
        assert job.exit_code is not None
        assert list_manifests(manifests.manifest_dir) == []
        assert await supervisor.stop("job1") == StopOutcome.ALREADY_STOPPED

    @pytest.mark.asyncio
    async def test_process_ignoring_sigterm_is_killed(self, supervisor, registry, manifests, rclone_mode):
        rclone_mode("ignore_term")
        handle = await launch(supervisor, registry, manifests)
        await wait_for_progress(registry, "job1")

        await supervisor.stop("job1")
        await handle.wait(timeout=15)

        job = registry.get("job1")
        assert job.state == JobState.STOPPED
        assert job.exit_code == -9

    @pytest.mark.asyncio
    async def test_deadline_stops_job(self, make_supervisor, registry, manifests, rclone_mode):
        rclone_mode("hang")
        supervisor = make_supervisor(max_job_duration_seconds=1)

        handle = await launch(supervisor, registry, manifests)
        await handle.wait(timeout=15)

        job = registry.get("job1")
        assert job.state == JobState.STOPPED
        assert job.failure_reason == "Exceeded maximum duration of 1 seconds"

    @pytest.mark.asyncio
    async def test_stop_unknown_job(self, supervisor):
        assert await supervisor.stop("missing") == StopOutcome.NOT_FOUND

    @pytest.mark.asyncio
    async def test_stop_while_spawning_ends_stopped_when_spawn_fails(self, supervisor, registry, manifests):
        spawn_entered = asyncio.Event()
        release_spawn = asyncio.Event()

        async def blocked_spawn(*args, **kwargs):
            spawn_entered.set()
            await release_spawn.wait()
            raise FileNotFoundError("no-such-rclone")

        with patch("drive_migrator.transfer.supervisor.asyncio.create_subprocess_exec", side_effect=blocked_spawn):
            launching = asyncio.create_task(launch(supervisor, registry, manifests))
            await asyncio.wait_for(spawn_entered.wait(), timeout=5)

            assert supervisor.get_handle("job1").state == SupervisedProcess.STARTING
            assert await supervisor.stop("job1") == StopOutcome.STOPPING

            release_spawn.set()
            handle = await asyncio.wait_for(launching, timeout=5)
            await handle.wait(timeout=5)

        job = registry.get("job1")
        assert job.state == JobState.STOPPED
        assert job.failure_reason == "Stopped by request"
        lines = await log_lines(registry, "job1")
        assert lines[-1].startswith("PROCESS ERROR: Failed to start transfer process")
        assert list_manifests(manifests.manifest_dir) == []


class TestAdmission:
    @pytest.mark.asyncio
    async def test_jobs_beyond_ceiling_wait_in_fifo_order(self, make_supervisor, registry, manifests, rclone_mode):
        rclone_mode("sleep", FAKE_RCLONE_SLEEP=0.3)
        supervisor = make_supervisor(max_concurrent_processes=1, admission_queue_size=2)

        first = await launch(supervisor, registry, manifests, job_id="job1", principal="alice")
        second = await launch(supervisor, registry, manifests, job_id="job2", principal="bob")
        third = await launch(supervisor, registry, manifests, job_id="job3", principal="carol")

        assert first.state == SupervisedProcess.RUNNING
        assert second.state == SupervisedProcess.QUEUED
        assert registry.get("job2").state == JobState.PENDING
        assert supervisor.get_status()["queued_job_ids"] == ["job2", "job3"]

        await asyncio.wait_for(asyncio.gather(first.wait(), second.wait(), third.wait()), timeout=20)

        jobs = [registry.get(job_id) for job_id in ("job1", "job2", "job3")]
        assert all(job.state == JobState.COMPLETED for job in jobs)
        assert jobs[0].finished_at <= jobs[1].started_at
        assert jobs[1].finished_at <= jobs[2].started_at

    @pytest.mark.asyncio
    async def test_full_queue_fails_job(self, make_supervisor, registry, manifests, rclone_mode):
        rclone_mode("hang")
        supervisor = make_supervisor(max_concurrent_processes=1, admission_queue_size=0)

        running = await launch(supervisor, registry, manifests, job_id="job1", principal="alice")
        rejected = await launch(supervisor, registry, manifests, job_id="job2", principal="bob")
        await rejected.wait(timeout=5)

        job = registry.get("job2")
        assert job.state == JobState.FAILED
        assert job.failure_reason == "Admission queue full"
        assert not os.path.exists(manifests.manifest_path("job2"))

        await supervisor.shutdown()
        await running.wait(timeout=15)
        assert registry.get("job1").state == JobState.STOPPED

    @pytest.mark.asyncio
    async def test_stop_queued_job(self, make_supervisor, registry, manifests, rclone_mode):
        rclone_mode("hang")
        supervisor = make_supervisor(max_concurrent_processes=1)

        running = await launch(supervisor, registry, manifests, job_id="job1", principal="alice")
        queued = await launch(supervisor, registry, manifests, job_id="job2", principal="bob")

        assert await supervisor.stop("job2") == StopOutcome.STOPPED
        assert queued.done.is_set()
        job = registry.get("job2")
        assert job.state == JobState.STOPPED
        assert job.started_at is None
        assert not os.path.exists(manifests.manifest_path("job2"))

        await supervisor.shutdown()
        await running.wait(timeout=15)

    @pytest.mark.asyncio
    async def test_second_launch_for_same_job_reuses_handle(self, supervisor, registry, manifests, rclone_mode):
        rclone_mode("hang")
        handle = await launch(supervisor, registry, manifests)

        again = await supervisor.launch(registry.get("job1"), str(manifests.manifest_path("job1")), make_record())

        assert again is handle
        await supervisor.shutdown()
        assert registry.get("job1").state == JobState.STOPPED


class TestProcessInfo:
    @pytest.mark.asyncio
    async def test_process_info_while_running(self, supervisor, registry, manifests, rclone_mode):
        rclone_mode("hang")
        handle = await launch(supervisor, registry, manifests)
        await wait_for_progress(registry, "job1")

        info = supervisor.get_process_info("job1")
        assert info["pid"] == handle.pid
        assert info["runtime"] >= 0
        assert "memory_mb" in info

        await supervisor.shutdown()
        assert supervisor.get_process_info("job1") is None


async def wait_for_progress(registry, job_id, timeout=10.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while registry.get(job_id).progress_percent == 0:
        if loop.time() > deadline:
            raise AssertionError(f"no progress reported for {job_id}")
        await asyncio.sleep(0.02)
