"""Tests for the WorkflowQueue retry, delay and administration behaviour."""

from dataclasses import replace
from unittest.mock import patch

import pytest

from conductor.exceptions import JobNotFoundError
from conductor.orchestration.workflow_engine.events import EventBus, EventType
from conductor.queue.backends import SQLiteQueueBackend
from conductor.queue.models import JobKind, JobOptions, JobState
from conductor.queue.workflow_queue import WorkflowQueue, step_job_id, workflow_job_id
from tests.conftest import ManualClock, pipeline_doc, step

TRANSIENT = {"message": "provider hiccup", "code": "PROVIDER_ERROR", "retryable": True}


@pytest.fixture
def clock():
    return ManualClock()


@pytest.fixture
def bus():
    return EventBus(history_size=100)


@pytest.fixture
def queue(clock, bus):
    return WorkflowQueue(
        event_bus=bus,
        default_options=JobOptions(attempts=3, backoff_delay=2.0),
        lease_seconds=60.0,
        clock=clock,
    )


class TestSubmission:
    """Tests for adding jobs."""

    def test_job_ids(self):
        assert workflow_job_id("p1") == "p1"
        assert step_job_id("p1", "s1") == "p1-s1"

    @pytest.mark.asyncio
    async def test_workflow_job_is_idempotent(self, queue):
        first = await queue.add_workflow_job(pipeline_doc(step("a")), variables={"topic": "owls"})
        second = await queue.add_workflow_job(pipeline_doc(step("a")), variables={"topic": "cats"})

        assert first == second == "p1"
        stats = await queue.get_stats()
        assert stats["total"] == 1
        job = await queue.get_job("p1")
        assert job.kind == JobKind.WORKFLOW
        assert job.payload["variables"] == {"topic": "owls"}
        assert job.payload["pipeline"]["steps"][0]["id"] == "a"

    @pytest.mark.asyncio
    async def test_step_job(self, queue):
        job_id = await queue.add_step_job(
            "p1", step("render"), step_outputs={"script": {"text": "hi"}}, user_id="u1"
        )

        assert job_id == "p1-render"
        status = await queue.get_job_status(job_id)
        assert status.name == "step"
        assert status.data["step_id"] == "render"
        assert status.data["step_outputs"] == {"script": {"text": "hi"}}
        assert status.data["user_id"] == "u1"

    @pytest.mark.asyncio
    async def test_delayed_submission(self, queue, clock):
        await queue.add_job("later", JobKind.WORKFLOW, {"workflow_id": "later"}, JobOptions(delay=10))

        assert (await queue.get_job("later")).status == JobState.DELAYED
        assert await queue.claim() == []
        clock.advance(10)
        assert [j.id for j in await queue.claim()] == ["later"]

    @pytest.mark.asyncio
    async def test_unknown_job_status(self, queue):
        assert await queue.get_job_status("nope") is None


class TestRetries:
    """Tests for fail_job retry and exhaustion."""

    @pytest.mark.asyncio
    async def test_failed_attempt_is_delayed_with_backoff(self, queue, clock, bus):
        await queue.add_job("j", JobKind.WORKFLOW, {"workflow_id": "j"})
        await queue.claim()

        job = await queue.fail_job("j", TRANSIENT)

        assert job.status == JobState.DELAYED
        assert job.available_at == clock() + 2.0
        assert job.failed_reason == "provider hiccup"
        failed = bus.history(EventType.JOB_FAILED)
        assert failed[-1].data["will_retry"] is True
        assert failed[-1].data["retry_delay"] == 2.0

        assert await queue.claim() == []
        clock.advance(2.0)
        job = (await queue.claim())[0]
        assert job.attempts_made == 2

        await queue.fail_job("j", TRANSIENT)
        assert (await queue.get_job("j")).available_at == clock() + 4.0

    @pytest.mark.asyncio
    async def test_exhaustion_publishes_once(self, queue, clock, bus):
        await queue.add_job("j", JobKind.WORKFLOW, {"workflow_id": "j"})

        for _ in range(3):
            clock.advance(100)
            claimed = await queue.claim()
            assert [c.id for c in claimed] == ["j"]
            await queue.fail_job("j", TRANSIENT)

        job = await queue.get_job("j")
        assert job.status == JobState.FAILED
        assert job.attempts_made == 3
        assert job.finished_on == clock()

        exhausted = bus.history(EventType.JOB_EXHAUSTED)
        assert len(exhausted) == 1
        assert exhausted[0].data["attempts_made"] == 3
        assert exhausted[0].data["error"] == TRANSIENT
        assert [e.data["will_retry"] for e in bus.history(EventType.JOB_FAILED)] == [True, True, False]

        clock.advance(100)
        assert await queue.claim() == []
        assert await queue.fail_job("j", TRANSIENT) is None
        assert len(bus.history(EventType.JOB_EXHAUSTED)) == 1

    @pytest.mark.asyncio
    async def test_non_retryable_error_exhausts_immediately(self, queue, bus):
        await queue.add_job("j", JobKind.WORKFLOW, {"workflow_id": "j"})
        await queue.claim()

        job = await queue.fail_job("j", {"message": "bad config", "code": "VALIDATION_ERROR", "retryable": False})

        assert job.status == JobState.FAILED
        assert job.attempts_made == 1
        assert len(bus.history(EventType.JOB_EXHAUSTED)) == 1

    @pytest.mark.asyncio
    async def test_retry_failed_jobs_resets_attempts(self, queue):
        await queue.add_job("j", JobKind.WORKFLOW, {"workflow_id": "j"}, JobOptions(attempts=1))
        await queue.claim()
        await queue.fail_job("j", TRANSIENT)

        assert await queue.retry_failed_jobs() == 1

        job = await queue.get_job("j")
        assert job.status == JobState.WAITING
        assert job.attempts_made == 0
        assert job.finished_on is None


class TestCompletionAndProgress:
    """Tests for complete_job, update_progress and cancel_job."""

    @pytest.mark.asyncio
    async def test_complete(self, queue, bus):
        await queue.add_job("j", JobKind.STEP, {"workflow_id": "p", "step_id": "s"})
        await queue.claim()

        job = await queue.complete_job("j", {"out": 1})

        assert job.status == JobState.COMPLETED
        assert job.progress == 100
        assert job.return_value == {"out": 1}
        event = bus.history(EventType.JOB_COMPLETED)[0]
        assert event.execution_id == "p"
        assert event.step_id == "s"

    @pytest.mark.asyncio
    async def test_complete_requires_active_job(self, queue):
        await queue.add_job("j", JobKind.WORKFLOW, {"workflow_id": "j"})
        assert await queue.complete_job("j") is None
        assert await queue.complete_job("missing") is None

    @pytest.mark.asyncio
    async def test_progress(self, queue, bus):
        await queue.add_job("j", JobKind.WORKFLOW, {"workflow_id": "j"})
        await queue.claim()

        await queue.update_progress("j", 150, "almost")

        status = await queue.get_job_status("j")
        assert status.progress == 100
        assert status.message == "almost"
        assert bus.history(EventType.JOB_PROGRESS)[0].data["progress"] == 100

    @pytest.mark.asyncio
    async def test_progress_unknown_job(self, queue):
        with pytest.raises(JobNotFoundError):
            await queue.update_progress("ghost", 10)

    @pytest.mark.asyncio
    async def test_cancel_keeps_record_and_discards_result(self, queue):
        await queue.add_job("j", JobKind.WORKFLOW, {"workflow_id": "j"})
        await queue.claim()

        assert await queue.cancel_job("j") is True
        assert await queue.cancel_job("j") is False
        assert await queue.complete_job("j", {"late": True}) is None

        job = await queue.get_job("j")
        assert job.status == JobState.CANCELLED
        assert job.return_value is None

    @pytest.mark.asyncio
    async def test_cancel_unknown(self, queue):
        assert await queue.cancel_job("ghost") is False


class TestAdministration:
    """Tests for pause, clean, stats and listings."""

    @pytest.mark.asyncio
    async def test_pause_and_resume(self, queue):
        await queue.add_job("j", JobKind.WORKFLOW, {"workflow_id": "j"})
        await queue.pause()
        assert queue.is_paused
        assert await queue.claim() == []
        await queue.resume()
        assert len(await queue.claim()) == 1

    @pytest.mark.asyncio
    async def test_clean_respects_grace(self, queue, clock):
        await queue.add_job("j", JobKind.WORKFLOW, {"workflow_id": "j"})
        await queue.claim()
        await queue.complete_job("j")

        assert await queue.clean(grace=60) == 0
        clock.advance(61)
        assert await queue.clean(grace=60) == 1
        assert await queue.get_job("j") is None

    @pytest.mark.asyncio
    async def test_stats_and_listings(self, queue):
        await queue.add_workflow_job(pipeline_doc(step("a"), pipeline_id="w1"))
        await queue.add_step_job("w1", step("a"))
        await queue.add_job("done", JobKind.WORKFLOW, {"workflow_id": "done"}, JobOptions(priority=-1))
        await queue.claim()
        await queue.complete_job("done")

        stats = await queue.get_stats()
        assert stats["waiting"] == 2
        assert stats["completed"] == 1
        assert stats["total"] == 3
        assert stats["paused"] is False

        active = await queue.get_active_workflows()
        assert [s.id for s in active] == ["w1"]
        assert [j.id for j in await queue.get_recent_finished()] == ["done"]

    @pytest.mark.asyncio
    async def test_remove_job(self, queue):
        await queue.add_job("j", JobKind.WORKFLOW, {"workflow_id": "j"})
        assert await queue.remove_job("j") is True
        assert await queue.remove_job("j") is False


class TestLeaseExpiry:
    """Tests for jobs whose worker never reports back."""

    @pytest.mark.asyncio
    async def test_lost_worker_exhausts_attempts(self, queue, clock, bus):
        await queue.add_job("j", JobKind.WORKFLOW, {"workflow_id": "j"})

        for attempt in (1, 2, 3):
            claimed = await queue.claim()
            assert [(c.id, c.attempts_made) for c in claimed] == [("j", attempt)]
            clock.advance(61)

        assert await queue.claim() == []

        job = await queue.get_job("j")
        assert job.status == JobState.FAILED
        assert job.attempts_made == 3
        assert job.error["code"] == "LEASE_EXPIRED"
        assert job.error["retryable"] is False

        exhausted = bus.history(EventType.JOB_EXHAUSTED)
        assert [e.data["job_id"] for e in exhausted] == ["j"]
        assert exhausted[0].data["attempts_made"] == 3
        assert [e.data["will_retry"] for e in bus.history(EventType.JOB_FAILED)] == [False]

        clock.advance(61)
        assert await queue.claim() == []
        assert len(bus.history(EventType.JOB_EXHAUSTED)) == 1

    @pytest.mark.asyncio
    async def test_paused_queue_leaves_leases_alone(self, queue, clock):
        await queue.add_job("j", JobKind.WORKFLOW, {"workflow_id": "j"}, options=JobOptions(attempts=1))
        await queue.claim()
        clock.advance(61)

        await queue.pause()
        assert await queue.claim() == []
        assert (await queue.get_job("j")).status == JobState.ACTIVE


class TestSharedDatabase:
    """Two queues on one SQLite file, as separate worker and admin processes."""

    @pytest.fixture
    def queues(self, tmp_path, clock):
        worker = WorkflowQueue(SQLiteQueueBackend(tmp_path / "queue.db"), lease_seconds=60.0, clock=clock)
        admin = WorkflowQueue(SQLiteQueueBackend(tmp_path / "queue.db"), lease_seconds=60.0, clock=clock)
        yield worker, admin
        worker.backend.close()
        admin.backend.close()

    @pytest.mark.asyncio
    async def test_cancel_between_read_and_write_wins(self, queues):
        worker, admin = queues
        await worker.add_job("j", JobKind.WORKFLOW, {"workflow_id": "j"})
        await worker.claim()

        read_job = worker.backend.get

        def read_then_cancel_elsewhere(job_id):
            job = read_job(job_id)
            stored = admin.backend.get(job_id)
            admin.backend.update(replace(stored, status=JobState.CANCELLED, lease_expires_at=None), expected=stored)
            return job

        with patch.object(worker.backend, "get", side_effect=read_then_cancel_elsewhere):
            await worker.update_progress("j", 40)
        assert (await admin.get_job("j")).status == JobState.CANCELLED

        assert await worker.complete_job("j", {"done": True}) is None
        assert (await admin.get_job("j")).status == JobState.CANCELLED

    @pytest.mark.asyncio
    async def test_completion_racing_a_cancel_is_discarded(self, queues):
        worker, admin = queues
        await worker.add_job("j", JobKind.WORKFLOW, {"workflow_id": "j"})
        await worker.claim()

        read_job = worker.backend.get

        def read_then_cancel_elsewhere(job_id):
            job = read_job(job_id)
            stored = admin.backend.get(job_id)
            admin.backend.update(replace(stored, status=JobState.CANCELLED, lease_expires_at=None), expected=stored)
            return job

        with patch.object(worker.backend, "get", side_effect=read_then_cancel_elsewhere):
            assert await worker.complete_job("j", {"done": True}) is None
        job = await admin.get_job("j")
        assert job.status == JobState.CANCELLED
        assert job.return_value is None
