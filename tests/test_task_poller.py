"""Tests for the task poller."""

import asyncio
from typing import Any, Dict, List
from unittest.mock import patch

import pytest

from api.enums import TaskKind
from worker import task_poller
from worker.alerts import get_metrics, reset_metrics
from worker.http_client import ServiceAPIError
from worker.task_poller import PollResult, poll_once, process_one, task_label


@pytest.fixture(autouse=True)
def reset_alert_metrics():
    reset_metrics()
    yield
    reset_metrics()


class FakeServiceClient:
    """Serves canned due-task listings and records process calls."""

    def __init__(self, due: Dict[TaskKind, Dict[str, Any]] = None):
        self.due = due or {}
        self.processed: List[tuple] = []
        self.errors: Dict[str, ServiceAPIError] = {}
        self.list_errors: Dict[TaskKind, ServiceAPIError] = {}

    async def list_due_tasks(self, kind, limit=None):
        if kind in self.list_errors:
            raise self.list_errors[kind]
        return self.due.get(kind, {"kind": kind.value, "tasks": [], "stuckCount": 0})

    async def process_task(self, kind, key):
        self.processed.append((kind, key))
        label = task_label(kind, key)
        if label in self.errors:
            raise self.errors[label]
        return {"status": "ok"}


def _task(**fields):
    return {**fields, "retryCount": 0, "executionTimeMs": 1, "createdTimeMs": 1}


class TestTaskLabel:
    def test_excludes_ledger_fields_and_sorts(self):
        task = _task(version=2, containerId="c1")
        assert task_label(TaskKind.VIDEO_CONTAINER_SYNCING, task) == "video_container_syncing(containerId=c1, version=2)"

    def test_accepts_kind_value(self):
        assert task_label("r2_key_deleting", {"key": "a/b"}) == "r2_key_deleting(key=a/b)"


class TestProcessOne:
    @pytest.mark.asyncio
    async def test_sends_key_only(self):
        client = FakeServiceClient()
        result = PollResult()

        await process_one(client, TaskKind.R2_KEY_DELETING, _task(key="c1/d1"), asyncio.Semaphore(1), result)

        assert client.processed == [(TaskKind.R2_KEY_DELETING, {"key": "c1/d1"})]
        assert result == PollResult(processed=1)

    @pytest.mark.asyncio
    async def test_gone_task_skipped(self):
        client = FakeServiceClient()
        client.errors["r2_key_deleting(key=gone)"] = ServiceAPIError(404, "Task not found")
        result = PollResult()

        with patch.object(task_poller, "send_alert_fire_and_forget") as mock_alert:
            await process_one(client, TaskKind.R2_KEY_DELETING, _task(key="gone"), asyncio.Semaphore(1), result)

        assert result == PollResult(skipped=1)
        mock_alert.assert_not_called()

    @pytest.mark.asyncio
    async def test_failure_counted_and_alerted(self):
        client = FakeServiceClient()
        client.errors["r2_key_deleting(key=k)"] = ServiceAPIError(500, "Failed to process task")
        result = PollResult()

        with patch.object(task_poller, "send_alert_fire_and_forget") as mock_alert:
            await process_one(client, TaskKind.R2_KEY_DELETING, _task(key="k"), asyncio.Semaphore(1), result)

        assert result == PollResult(failed=1)
        mock_alert.assert_called_once()
        mock_alert.call_args.args[0].close()

    @pytest.mark.asyncio
    async def test_success_clears_failure_history(self):
        get_metrics().increment_failed("r2_key_deleting(key=k)")
        client = FakeServiceClient()

        await process_one(client, TaskKind.R2_KEY_DELETING, _task(key="k"), asyncio.Semaphore(1), PollResult())

        assert get_metrics().get_task_failure_count("r2_key_deleting(key=k)") == 0


class TestPollOnce:
    @pytest.mark.asyncio
    async def test_processes_every_kind_in_order(self):
        client = FakeServiceClient(
            {
                TaskKind.MEDIA_FORMATTING: {"tasks": [_task(containerId="c1", filename="f1")], "stuckCount": 0},
                TaskKind.GCS_KEY_DELETING: {"tasks": [_task(key="f0")], "stuckCount": 0},
            }
        )

        result = await poll_once(client, concurrency=2)

        assert result == PollResult(processed=2)
        assert [kind for kind, _ in client.processed] == [TaskKind.GCS_KEY_DELETING, TaskKind.MEDIA_FORMATTING]

    @pytest.mark.asyncio
    async def test_stuck_count_alerts(self):
        client = FakeServiceClient({TaskKind.R2_KEY_DELETING: {"tasks": [], "stuckCount": 2}})

        with patch.object(task_poller, "send_alert_fire_and_forget") as mock_alert:
            await poll_once(client, kinds=[TaskKind.R2_KEY_DELETING])

        mock_alert.assert_called_once()
        mock_alert.call_args.args[0].close()

    @pytest.mark.asyncio
    async def test_list_failure_moves_on(self):
        client = FakeServiceClient({TaskKind.R2_KEY_DELETING: {"tasks": [_task(key="k")], "stuckCount": 0}})
        client.list_errors[TaskKind.GCS_KEY_DELETING] = ServiceAPIError(503, "busy")

        result = await poll_once(client, kinds=[TaskKind.GCS_KEY_DELETING, TaskKind.R2_KEY_DELETING])

        assert result.processed == 1

    @pytest.mark.asyncio
    async def test_mixed_results(self):
        client = FakeServiceClient(
            {TaskKind.R2_KEY_DELETING: {"tasks": [_task(key="a"), _task(key="b"), _task(key="c")], "stuckCount": 0}}
        )
        client.errors["r2_key_deleting(key=b)"] = ServiceAPIError(404, "gone")
        client.errors["r2_key_deleting(key=c)"] = ServiceAPIError(500, "boom")

        with patch.object(task_poller, "send_alert_fire_and_forget") as mock_alert:
            result = await poll_once(client, kinds=[TaskKind.R2_KEY_DELETING])
            for call in mock_alert.call_args_list:
                call.args[0].close()

        assert result == PollResult(processed=1, failed=1, skipped=1)

    @pytest.mark.asyncio
    async def test_stops_when_shutdown_requested(self):
        client = FakeServiceClient({TaskKind.GCS_KEY_DELETING: {"tasks": [_task(key="f")], "stuckCount": 0}})

        with patch.object(task_poller, "shutdown_requested", True):
            result = await poll_once(client)

        assert result == PollResult()
        assert client.processed == []
