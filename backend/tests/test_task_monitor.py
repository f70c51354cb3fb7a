import asyncio

import httpx
import pytest

from site_screener.models import (
    ResultLabel,
    TaskProgress,
    TaskResult,
    TaskResultsPublic,
    TaskSnapshot,
    TaskStatus,
)
from site_screener.monitor.reconcile import ResultReconciler
from site_screener.monitor.task_monitor import BackgroundTaskMonitor, MonitorOutcome
from site_screener.store.backends import MemoryBackend
from site_screener.store.task_registry import TaskRegistry


class FakeJobControl:
    """Scripted job control; the last scripted status repeats forever."""

    def __init__(self, scripts: dict[str, list] | None = None):
        self.scripts = scripts or {}
        self.full_results: dict[str, TaskResultsPublic] = {}
        self.polls: list[str] = []
        self.cancelled: list[str] = []

    async def create(self, urls, config, task_type=None):
        raise NotImplementedError

    async def status(self, task_id):
        self.polls.append(task_id)
        script = self.scripts.get(task_id)
        if script is None:
            return None
        item = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(item, Exception):
            raise item
        return item

    async def cancel(self, task_id):
        self.cancelled.append(task_id)
        return task_id in self.scripts

    async def results(self, task_id):
        return self.full_results.get(task_id)


class FakeTime:
    def __init__(self):
        self.now = 0.0
        self.sleeps: list[float] = []

    def clock(self) -> float:
        return self.now

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


def _snap(task_id, status, results=(), processing=()):
    return TaskSnapshot(
        task_id=task_id,
        status=status,
        progress=TaskProgress(current=len(results), total=2),
        currently_processing=list(processing),
        recent_results=list(results),
    )


def _result(url, label=ResultLabel.N):
    return TaskResult(url=url, result=label, reason="because")


@pytest.fixture
def fake_time():
    return FakeTime()


@pytest.fixture
def registry():
    return TaskRegistry(MemoryBackend())


def _monitor(jobs, store, registry, fake_time, max_duration=600.0):
    return BackgroundTaskMonitor(
        jobs,
        ResultReconciler(store),
        registry=registry,
        interval=3.0,
        max_duration=max_duration,
        sleep=fake_time.sleep,
        clock=fake_time.clock,
    )


@pytest.mark.asyncio
async def test_polls_until_completed_then_syncs_full_results(store, registry, fake_time):
    jobs = FakeJobControl(
        {
            "t1": [
                _snap("t1", TaskStatus.RUNNING, processing=["https://a.com"]),
                _snap("t1", TaskStatus.RUNNING, results=[_result("https://a.com", ResultLabel.Y)]),
                _snap("t1", TaskStatus.COMPLETED, results=[_result("https://a.com", ResultLabel.Y)]),
            ]
        }
    )
    jobs.full_results["t1"] = TaskResultsPublic(
        task_id="t1",
        status=TaskStatus.COMPLETED,
        results=[_result("https://a.com", ResultLabel.Y), _result("https://b.com")],
    )
    monitor = _monitor(jobs, store, registry, fake_time)

    monitor.start("t1")
    assert "t1" in registry
    outcome = await monitor.wait("t1")

    assert outcome == MonitorOutcome.COMPLETED
    assert jobs.polls == ["t1", "t1", "t1"]
    assert fake_time.sleeps == [3.0, 3.0]
    assert store.find_by_url("https://a.com").result == ResultLabel.Y
    assert store.find_by_url("https://b.com").result == ResultLabel.N
    assert "t1" not in registry
    assert not monitor.is_monitoring("t1")


@pytest.mark.asyncio
async def test_failed_task_stops_polling(store, registry, fake_time):
    jobs = FakeJobControl({"t1": [_snap("t1", TaskStatus.FAILED)]})
    outcome = await _monitor(jobs, store, registry, fake_time).start("t1")
    assert outcome == MonitorOutcome.FAILED
    assert jobs.polls == ["t1"]


@pytest.mark.asyncio
async def test_stops_after_wall_clock_budget(store, registry, fake_time):
    jobs = FakeJobControl({"t1": [_snap("t1", TaskStatus.RUNNING)]})
    monitor = _monitor(jobs, store, registry, fake_time, max_duration=10.0)

    outcome = await monitor.start("t1")

    assert outcome == MonitorOutcome.TIMED_OUT
    assert len(jobs.polls) == 5
    assert fake_time.now == 12.0
    # 超时只停止本地监控，下次启动时仍可恢复
    assert "t1" in registry


@pytest.mark.asyncio
async def test_missing_task_is_dropped(store, registry, fake_time):
    jobs = FakeJobControl()
    outcome = await _monitor(jobs, store, registry, fake_time).start("gone")
    assert outcome == MonitorOutcome.MISSING
    assert "gone" not in registry


@pytest.mark.asyncio
async def test_poll_errors_are_retried(store, registry, fake_time):
    jobs = FakeJobControl(
        {"t1": [RuntimeError("connection reset"), _snap("t1", TaskStatus.COMPLETED)]}
    )
    outcome = await _monitor(jobs, store, registry, fake_time).start("t1")
    assert outcome == MonitorOutcome.COMPLETED
    assert len(jobs.polls) == 2


@pytest.mark.asyncio
async def test_tasks_are_polled_independently(store, registry, fake_time):
    jobs = FakeJobControl(
        {
            "t1": [_snap("t1", TaskStatus.COMPLETED, results=[_result("https://a.com")])],
            "t2": [
                _snap("t2", TaskStatus.RUNNING),
                _snap("t2", TaskStatus.COMPLETED, results=[_result("https://b.com")]),
            ],
        }
    )
    monitor = _monitor(jobs, store, registry, fake_time)
    monitor.start("t1")
    monitor.start("t2")
    assert sorted(monitor.monitored()) == ["t1", "t2"]

    outcomes = [await monitor.wait("t1"), await monitor.wait("t2")]

    assert outcomes == [MonitorOutcome.COMPLETED, MonitorOutcome.COMPLETED]
    assert jobs.polls.count("t1") == 1
    assert jobs.polls.count("t2") == 2
    assert store.count() == 2


@pytest.mark.asyncio
async def test_start_twice_keeps_single_poller(store, registry, fake_time):
    jobs = FakeJobControl({"t1": [_snap("t1", TaskStatus.COMPLETED)]})
    monitor = _monitor(jobs, store, registry, fake_time)
    first = monitor.start("t1")
    assert monitor.start("t1") is first
    await first
    assert jobs.polls == ["t1"]


@pytest.mark.asyncio
async def test_cancel_stops_polling(store, registry, fake_time):
    jobs = FakeJobControl({"t1": [_snap("t1", TaskStatus.RUNNING)]})
    monitor = _monitor(jobs, store, registry, fake_time)
    poller = monitor.start("t1")

    acknowledged = await monitor.cancel("t1")

    assert acknowledged is True
    assert jobs.cancelled == ["t1"]
    assert not monitor.is_monitoring("t1")
    assert "t1" not in registry
    with pytest.raises(asyncio.CancelledError):
        await poller


@pytest.mark.asyncio
async def test_cancel_stops_polling_when_cancel_request_fails(store, registry, fake_time):
    class UnreachableJobControl(FakeJobControl):
        async def cancel(self, task_id):
            raise httpx.ConnectError("server unreachable")

    jobs = UnreachableJobControl({"t1": [_snap("t1", TaskStatus.RUNNING)]})
    monitor = _monitor(jobs, store, registry, fake_time)
    poller = monitor.start("t1")

    with pytest.raises(httpx.ConnectError):
        await monitor.cancel("t1")

    assert not monitor.is_monitoring("t1")
    assert "t1" not in registry
    with pytest.raises(asyncio.CancelledError):
        await poller


@pytest.mark.asyncio
async def test_resume_picks_up_persisted_tasks(store, registry, fake_time):
    for task_id in ["running", "done", "gone"]:
        registry.add(task_id)
    jobs = FakeJobControl(
        {
            "running": [
                _snap("running", TaskStatus.RUNNING),
                _snap("running", TaskStatus.COMPLETED, results=[_result("https://r.com")]),
            ],
            "done": [_snap("done", TaskStatus.COMPLETED, results=[_result("https://d.com")])],
        }
    )
    monitor = _monitor(jobs, store, registry, fake_time)

    resumed = await monitor.resume()

    assert resumed == ["running"]
    assert registry.task_ids() == ["running"]
    assert store.find_by_url("https://d.com") is not None
    assert await monitor.wait("running") == MonitorOutcome.COMPLETED
    assert registry.task_ids() == []
    assert store.find_by_url("https://r.com") is not None


@pytest.mark.asyncio
async def test_stop_all(store, registry, fake_time):
    jobs = FakeJobControl({"t1": [_snap("t1", TaskStatus.RUNNING)], "t2": [_snap("t2", TaskStatus.RUNNING)]})
    monitor = _monitor(jobs, store, registry, fake_time)
    monitor.start("t1")
    monitor.start("t2")
    await monitor.stop_all()
    assert monitor.monitored() == []
