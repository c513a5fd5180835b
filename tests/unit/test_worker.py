"""Tests for WorkflowWorker job processing."""

import asyncio

import pytest

from conductor.orchestration.workflow_engine.events import EventBus, EventType
from conductor.queue.models import JobOptions, JobState
from conductor.queue.worker import WorkerConfig, WorkflowWorker
from conductor.queue.workflow_queue import WorkflowQueue
from tests.conftest import ManualClock, pipeline_doc, step


@pytest.fixture
def queue_bus():
    return EventBus(history_size=200)


@pytest.fixture
def queue(queue_bus):
    return WorkflowQueue(event_bus=queue_bus, default_options=JobOptions(attempts=1), clock=ManualClock())


@pytest.fixture
def worker(queue, engine):
    return WorkflowWorker(queue, engine, config=WorkerConfig(concurrency=2, poll_interval=0.01))


class TestWorkerConfig:
    """Tests for WorkerConfig validation."""

    def test_rejects_bad_values(self):
        with pytest.raises(ValueError):
            WorkerConfig(concurrency=0)
        with pytest.raises(ValueError):
            WorkerConfig(poll_interval=0)


class TestWorkflowJobs:
    """Tests for workflow jobs run through the engine."""

    @pytest.mark.asyncio
    async def test_completed_workflow(self, queue, worker, queue_bus):
        doc = pipeline_doc(
            step("a", inputs={"text": "${topic}"}),
            step("b", dependsOn=["a"], inputs={"text": "${a.text}!"}),
            pipeline_id="w1",
        )
        await queue.add_workflow_job(doc, variables={"topic": "owls"})

        assert await worker.run_once() == 1

        status = await queue.get_job_status("w1")
        assert status.status == JobState.COMPLETED
        assert status.return_value["status"] == "completed"
        assert status.return_value["execution_id"] == "w1-1"
        assert status.return_value["outputs"]["b"] == {"text": "owls!"}
        assert "execution_time" in status.return_value

        progress = [e.data["progress"] for e in queue_bus.history(EventType.JOB_PROGRESS)]
        assert progress[0] == 5
        assert progress[-1] == 95
        assert progress == sorted(progress)

    @pytest.mark.asyncio
    async def test_failed_workflow_reports_to_queue(self, queue, worker, queue_bus):
        doc = pipeline_doc(step("a", config={"fail": True, "fail_message": "boom"}), pipeline_id="w2")
        await queue.add_workflow_job(doc)

        await worker.run_once()

        status = await queue.get_job_status("w2")
        assert status.status == JobState.FAILED
        assert "boom" in status.failed_reason
        assert len(queue_bus.history(EventType.JOB_EXHAUSTED)) == 1
        assert worker.get_worker_stats()["failed"] == 1

    @pytest.mark.asyncio
    async def test_invalid_pipeline_is_not_retried(self, queue, worker):
        doc = pipeline_doc(step("a", dependsOn=["ghost"]), pipeline_id="w3")
        await queue.add_workflow_job(doc, options=JobOptions(attempts=3))

        await worker.run_once()

        status = await queue.get_job_status("w3")
        assert status.status == JobState.FAILED
        assert status.error["code"] == "VALIDATION_ERROR"
        assert status.attempts_made == 1


class TestStepJobs:
    """Tests for single-step jobs."""

    @pytest.mark.asyncio
    async def test_step_job_resolves_references(self, queue, worker, recorder):
        await queue.add_step_job(
            "p1",
            step("render", provider="recorder", inputs={"script": "${script.text}", "lang": "${lang}"}),
            variables={"lang": "en"},
            step_outputs={"script": {"text": "hello"}},
        )

        await worker.run_once()

        status = await queue.get_job_status("p1-render")
        assert status.status == JobState.COMPLETED
        assert status.return_value["result"] == {"script": "hello", "lang": "en"}
        assert recorder.calls[0]["inputs"] == {"script": "hello", "lang": "en"}

    @pytest.mark.asyncio
    async def test_step_timeout(self, queue, worker):
        await queue.add_step_job("p1", step("nap", provider="sleep", inputs={"seconds": 1}, timeout=0.01))

        await worker.run_once()

        status = await queue.get_job_status("p1-nap")
        assert status.status == JobState.FAILED
        assert status.error["code"] == "TIMEOUT"

    @pytest.mark.asyncio
    async def test_unknown_provider(self, queue, worker):
        await queue.add_step_job("p1", step("x", provider="missing"))

        await worker.run_once()

        assert (await queue.get_job_status("p1-x")).status == JobState.FAILED


class TestWorkerLifecycle:
    """Tests for polling, pausing and stats."""

    @pytest.mark.asyncio
    async def test_run_once_on_empty_queue(self, worker):
        assert await worker.run_once() == 0

    @pytest.mark.asyncio
    async def test_paused_worker_claims_nothing(self, queue, worker):
        await queue.add_workflow_job(pipeline_doc(step("a")))
        await worker.pause()
        assert worker.is_paused
        assert await worker.run_once() == 0
        await worker.resume()
        assert await worker.run_once() == 1

    @pytest.mark.asyncio
    async def test_background_loop(self, queue, worker):
        await queue.add_workflow_job(pipeline_doc(step("a"), pipeline_id="bg"))

        await worker.start()
        assert worker.is_running
        for _ in range(200):
            status = await queue.get_job_status("bg")
            if status.status == JobState.COMPLETED:
                break
            await asyncio.sleep(0.01)
        await worker.close()

        assert status.status == JobState.COMPLETED
        stats = worker.get_worker_stats()
        assert stats["is_running"] is False
        assert stats["processed"] == 1
        assert stats["completed"] == 1
        assert stats["active_jobs"] == 0
