"""Tests for the single-flight job queue."""
from __future__ import annotations

import asyncio

import pytest

from gptj_bot.config import Settings, get_settings
from gptj_bot.inference_client import InferenceError
from gptj_bot.job_queue import SequentialJobQueue
from gptj_bot.models import NO_RESULT, Job, RunStatus
from gptj_bot.telemetry import TelemetryCollector


class RecordingSink:
    def __init__(self, log: list, name: str):
        self.log = log
        self.name = name

    async def send(self, text: str) -> None:
        self.log.append((self.name, text))


class FailingSink:
    def __init__(self):
        self.attempts = 0

    async def send(self, text: str) -> None:
        self.attempts += 1
        raise RuntimeError("discord unavailable")


class GatedInvoker:
    """Invoker that blocks until released and records every call."""

    def __init__(self, gated: bool = True):
        self.calls = []
        self.results = {}
        self.failures = {}
        self.release = asyncio.Event()
        if not gated:
            self.release.set()

    async def invoke(self, text: str) -> str:
        self.calls.append(text)
        await self.release.wait()
        if text in self.failures:
            raise self.failures[text]
        return self.results.get(text, f"echo {text}")


async def settle() -> None:
    for _ in range(10):
        await asyncio.sleep(0)


def make_job(source_id, payload, log, *, elaboration=False, sink=None):
    return Job(
        source_id=source_id,
        payload=payload,
        is_elaboration=elaboration,
        reply_sink=sink or RecordingSink(log, source_id),
    )


@pytest.fixture
def settings() -> Settings:
    return get_settings()


@pytest.mark.asyncio
async def test_idle_submission_runs_immediately(settings):
    """A job submitted while idle starts at once and gets no busy reply."""
    log = []
    invoker = GatedInvoker(gated=False)
    queue = SequentialJobQueue(invoker, settings)

    started = queue.enqueue(make_job("m1", "[gptj] hello", log))

    assert started is True
    assert queue.active.source_id == "m1"
    await queue.wait_idle()

    assert invoker.calls == ["hello"]
    assert log == [
        ("m1", "*closes robot-eyes to enter a deep think...*"),
        ("m1", "echo hello"),
    ]
    assert queue.is_idle
    assert queue.tracker.status("m1") == RunStatus.SUCCESS


@pytest.mark.asyncio
async def test_busy_submission_is_deferred(settings):
    """A job arriving while another runs gets one busy reply and waits."""
    log = []
    invoker = GatedInvoker()
    queue = SequentialJobQueue(invoker, settings)

    queue.enqueue(make_job("m1", "[gptj] hello", log))
    await settle()
    started = queue.enqueue(make_job("m2", "[gptj] second", log))
    await settle()

    assert started is False
    assert queue.backlog_size == 1
    assert invoker.calls == ["hello"]
    assert log.count(("m2", settings.busy_reply)) == 1
    assert [entry for entry in log if entry[0] == "m2"] == [("m2", settings.busy_reply)]

    invoker.release.set()
    await queue.wait_idle()

    assert invoker.calls == ["hello", "second"]
    assert log.count(("m2", settings.busy_reply)) == 1
    assert log.index(("m1", "echo hello")) < log.index(("m2", settings.invoke_reply))


@pytest.mark.asyncio
async def test_backlog_drains_in_arrival_order(settings):
    log = []
    invoker = GatedInvoker()
    queue = SequentialJobQueue(invoker, settings)

    queue.enqueue(make_job("x", "[gptj] x", log))
    queue.enqueue(make_job("a", "[gptj] a", log))
    queue.enqueue(make_job("b", "[gptj] b", log))
    await settle()
    assert queue.backlog_size == 2

    invoker.release.set()
    await queue.wait_idle()

    assert invoker.calls == ["x", "a", "b"]
    assert log.index(("a", "echo a")) < log.index(("b", settings.invoke_reply))
    assert queue.backlog_size == 0
    assert queue.active is None


@pytest.mark.asyncio
async def test_duplicate_after_completion_is_rejected(settings):
    log = []
    invoker = GatedInvoker(gated=False)
    queue = SequentialJobQueue(invoker, settings)

    queue.enqueue(make_job("m1", "[gptj] hello", log))
    await queue.wait_idle()
    log.clear()

    assert queue.enqueue(make_job("m1", "[gptj] hello", log, elaboration=True)) is True
    await queue.wait_idle()

    assert log == [("m1", "*I've already responded to this!*")]
    assert invoker.calls == ["hello"]


@pytest.mark.asyncio
async def test_duplicate_in_backlog_is_rejected_when_reached(settings):
    log = []
    invoker = GatedInvoker()
    queue = SequentialJobQueue(invoker, settings)

    queue.enqueue(make_job("m1", "[gptj] hello", log))
    queue.enqueue(make_job("m1", "[gptj] hello", log, elaboration=True))
    await settle()
    assert queue.backlog_size == 1

    invoker.release.set()
    await queue.wait_idle()

    assert invoker.calls == ["hello"]
    assert log[-1] == ("m1", settings.already_used_reply)
    assert ("m1", settings.busy_reply) in log


@pytest.mark.asyncio
async def test_elaboration_uses_payload_verbatim(settings):
    log = []
    invoker = GatedInvoker(gated=False)
    queue = SequentialJobQueue(invoker, settings)

    queue.enqueue(make_job("m9", "  [gptj] keep the marker ", log, elaboration=True))
    await queue.wait_idle()

    assert invoker.calls == ["[gptj] keep the marker"]
    assert log[0] == ("m9", "*let me elaborate...*")


@pytest.mark.asyncio
async def test_long_result_is_chunked_in_order(settings):
    log = []
    invoker = GatedInvoker(gated=False)
    invoker.results["long"] = "a" * 2000 + "b" * 2000 + "c" * 500
    queue = SequentialJobQueue(invoker, settings)

    queue.enqueue(make_job("m1", "[gptj] long", log))
    await queue.wait_idle()

    chunks = [text for _, text in log[1:]]
    assert [len(chunk) for chunk in chunks] == [2000, 2000, 500]
    assert chunks[0] == "a" * 2000
    assert chunks[1] == "b" * 2000
    assert chunks[2] == "c" * 500


@pytest.mark.asyncio
async def test_empty_result_yields_no_result_sentinel(settings):
    log = []
    invoker = GatedInvoker(gated=False)
    invoker.results["quiet"] = ""
    queue = SequentialJobQueue(invoker, settings)

    queue.enqueue(make_job("m1", "[gptj] quiet", log))
    await queue.wait_idle()

    assert log[1:] == [("m1", NO_RESULT)]


@pytest.mark.asyncio
async def test_invoker_failure_still_drains_backlog(settings):
    log = []
    invoker = GatedInvoker()
    invoker.failures["boom"] = InferenceError("pipeline down")
    queue = SequentialJobQueue(invoker, settings)

    queue.enqueue(make_job("m1", "[gptj] boom", log))
    queue.enqueue(make_job("m2", "[gptj] fine", log))
    invoker.release.set()
    await queue.wait_idle()

    assert invoker.calls == ["boom", "fine"]
    assert ("m1", settings.error_reply) in log
    assert ("m2", "echo fine") in log
    assert queue.tracker.status("m1") == RunStatus.ERROR
    assert queue.tracker.status("m2") == RunStatus.SUCCESS


@pytest.mark.asyncio
async def test_delivery_failures_do_not_stop_the_queue(settings):
    log = []
    invoker = GatedInvoker()
    failing = FailingSink()
    queue = SequentialJobQueue(invoker, settings)

    queue.enqueue(make_job("m1", "[gptj] one", log, sink=failing))
    queue.enqueue(make_job("m2", "[gptj] two", log, sink=failing))
    queue.enqueue(make_job("m3", "[gptj] three", log))
    invoker.release.set()
    await queue.wait_idle()

    assert invoker.calls == ["one", "two", "three"]
    assert ("m3", "echo three") in log
    assert failing.attempts == 5
    assert queue.tracker.status("m1") == RunStatus.SUCCESS


class HangingInvoker:
    """Never answers prompts equal to ``hang``."""

    def __init__(self):
        self.calls = []

    async def invoke(self, text: str) -> str:
        self.calls.append(text)
        if text == "hang":
            await asyncio.Event().wait()
        return f"echo {text}"


@pytest.mark.asyncio
async def test_timeout_counts_as_failed_completion():
    settings = Settings.from_dict({"queue": {"job_timeout_seconds": 0.05}})
    log = []
    invoker = HangingInvoker()
    queue = SequentialJobQueue(invoker, settings)

    queue.enqueue(make_job("m1", "[gptj] hang", log))
    queue.enqueue(make_job("m2", "[gptj] next", log))
    await asyncio.wait_for(queue.wait_idle(), timeout=2)

    assert invoker.calls == ["hang", "next"]
    assert ("m1", settings.error_reply) in log
    assert queue.tracker.status("m1") == RunStatus.ERROR
    assert ("m2", "echo next") in log


@pytest.mark.asyncio
async def test_cancelled_job_hands_over_to_backlog(settings):
    log = []
    invoker = GatedInvoker()
    queue = SequentialJobQueue(invoker, settings)

    queue.enqueue(make_job("m1", "[gptj] stuck", log))
    queue.enqueue(make_job("m2", "[gptj] next", log))
    await settle()
    queue._current.cancel()
    await settle()

    assert queue.active.source_id == "m2"
    invoker.release.set()
    await queue.wait_idle()
    assert ("m2", "echo next") in log


@pytest.mark.asyncio
async def test_queue_records_telemetry(settings, tmp_path):
    telemetry = TelemetryCollector(tmp_path / "telemetry.db")
    log = []
    invoker = GatedInvoker()
    queue = SequentialJobQueue(invoker, settings, telemetry=telemetry)

    queue.enqueue(make_job("m1", "[gptj] hello", log))
    queue.enqueue(make_job("m1", "[gptj] hello", log))
    invoker.release.set()
    await queue.wait_idle()
    telemetry.flush()

    jobs = telemetry.get_job_summary()
    assert jobs["success"]["jobs"] == 1
    assert jobs["duplicate"]["jobs"] == 1
    assert telemetry.get_queue_depth_summary()["max_backlog"] == 1.0
