import asyncio
import json
from functools import partial

import httpx
import pytest

import recognition_client
from batch_controller import BatchBusyError, BatchController
from fakes import CARD, FakeRecognizer
from job_registry import (
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_RUNNING,
    STATUS_SUCCEEDED,
    InvalidTransitionError,
    JobNotFoundError,
    JobRegistry,
)
from recognition_client import ParseError, UpstreamError, recognize_card
from scheduler import NO_RESULT


def _submit(registry, n, prefix="card"):
    return [
        registry.submit(f"{prefix}-{i}.png", f"{prefix}-{i}".encode(), "image/png")
        for i in range(n)
    ]


async def _until(predicate, timeout=1.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached")
        await asyncio.sleep(0.001)


def test_recognize_all_resolves_every_pending_job():
    registry = JobRegistry()
    jobs = _submit(registry, 4)
    fake = FakeRecognizer()
    controller = BatchController(registry, recognize=fake, concurrency=2)

    report = asyncio.run(controller.recognize_all())

    assert report.job_ids == [j.job_id for j in jobs]
    assert report.results == [CARD] * 4
    assert report.succeeded == 4
    assert all(j.status == STATUS_SUCCEEDED for j in jobs)
    assert fake.peak == 2
    assert not controller.busy


def test_second_recognize_all_makes_no_calls():
    registry = JobRegistry()
    jobs = _submit(registry, 3)
    fake = FakeRecognizer(outcomes={jobs[1].payload: UpstreamError(api_error="down")})
    controller = BatchController(registry, recognize=fake, concurrency=5, rerun_failed=False)

    asyncio.run(controller.recognize_all())
    assert len(fake.calls) == 3

    report = asyncio.run(controller.recognize_all())
    assert len(fake.calls) == 3
    assert report.job_ids == []
    assert jobs[1].status == STATUS_FAILED


def test_rerun_failed_policy_reoffers_failed_jobs():
    registry = JobRegistry()
    jobs = _submit(registry, 3)
    fake = FakeRecognizer(outcomes={jobs[2].payload: UpstreamError(api_error="down")})
    controller = BatchController(registry, recognize=fake, concurrency=5, rerun_failed=True)

    asyncio.run(controller.recognize_all())
    fake.outcomes.clear()
    report = asyncio.run(controller.recognize_all())

    assert report.job_ids == [jobs[2].job_id]
    assert len(fake.calls) == 4
    assert jobs[2].status == STATUS_SUCCEEDED
    assert jobs[2].error is None


def test_mixed_outcomes_end_to_end_through_client(monkeypatch):
    monkeypatch.setattr(recognition_client, "DOUBAO_API_KEY", "test-key")
    monkeypatch.setattr(recognition_client, "MOCK_RECOGNITION", False)

    card_json = json.dumps(CARD, ensure_ascii=False)

    def handler(request: httpx.Request) -> httpx.Response:
        url = json.loads(request.content)["messages"][0]["content"][1]["image_url"]["url"]
        if "am9iLTI=" in url:        # b"job-2"
            raise httpx.ConnectError("network unreachable", request=request)
        if "am9iLTM=" in url:        # b"job-3"
            return httpx.Response(200, json={"choices": [{"message": {"content": "not json at all"}}]})
        return httpx.Response(200, json={"choices": [{"message": {"content": card_json}}]})

    registry = JobRegistry()
    job1 = registry.submit("one.png", b"job-1", "image/png")
    job2 = registry.submit("two.png", b"job-2", "image/png")
    job3 = registry.submit("three.png", b"job-3", "image/png")

    async def _run():
        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            controller = BatchController(
                registry, recognize=partial(recognize_card, client=client), concurrency=5
            )
            return await controller.recognize_all()

    report = asyncio.run(_run())

    assert job1.status == STATUS_SUCCEEDED
    assert job1.result == CARD
    assert job2.status == STATUS_FAILED
    assert job2.error_kind == "upstream"
    assert job2.error.startswith("Recognition API Error")
    assert job3.status == STATUS_FAILED
    assert job3.error_kind == ParseError.kind
    assert job3.error == "Recognition result could not be parsed."
    assert report.results == [CARD, NO_RESULT, NO_RESULT]


def test_running_jobs_never_exceed_limit():
    registry = JobRegistry()
    _submit(registry, 12)
    observed = []
    fake = FakeRecognizer(on_call=lambda payload: observed.append(registry.counts()[STATUS_RUNNING]))
    controller = BatchController(registry, recognize=fake, concurrency=5)

    asyncio.run(controller.recognize_all())

    assert len(fake.calls) == 12
    assert max(observed) == 5
    assert fake.peak == 5
    assert registry.counts()[STATUS_SUCCEEDED] == 12


def test_single_job_during_batch_leaves_other_jobs_alone():
    registry = JobRegistry()
    y, z = _submit(registry, 2, prefix="batch")
    fake = FakeRecognizer()
    controller = BatchController(registry, recognize=fake, concurrency=5)

    async def _run():
        fake.gates[y.payload] = asyncio.Event()
        fake.gates[z.payload] = asyncio.Event()
        batch = asyncio.create_task(controller.recognize_all())
        await _until(lambda: len(fake.calls) == 2)
        assert controller.busy

        before = [(j.status, j.result, j.error) for j in (y, z)]
        x = registry.submit("single.png", b"single", "image/png")
        await controller.recognize_one(x.job_id)
        after = [(j.status, j.result, j.error) for j in (y, z)]

        assert x.status == STATUS_SUCCEEDED
        assert before == after == [(STATUS_RUNNING, None, None)] * 2

        fake.gates[y.payload].set()
        fake.gates[z.payload].set()
        return await batch, x

    report, x = asyncio.run(_run())
    assert report.job_ids == [y.job_id, z.job_id]
    assert y.status == z.status == STATUS_SUCCEEDED
    assert not controller.busy


def test_job_failed_by_single_path_is_not_rerun_by_queued_batch():
    registry = JobRegistry()
    a, b = _submit(registry, 2)
    fake = FakeRecognizer(outcomes={b.payload: UpstreamError(api_error="down")})
    controller = BatchController(registry, recognize=fake, concurrency=1, rerun_failed=False)

    async def _run():
        fake.gates[a.payload] = asyncio.Event()
        batch = asyncio.create_task(controller.recognize_all())
        await _until(lambda: len(fake.calls) == 1)

        # b is still queued behind a when the user runs it on its own.
        await controller.recognize_one(b.job_id)
        assert b.status == STATUS_FAILED

        fake.gates[a.payload].set()
        return await batch

    report = asyncio.run(_run())

    assert fake.calls.count(b.payload) == 1
    assert report.job_ids == [a.job_id, b.job_id]
    assert report.results == [CARD, NO_RESULT]
    assert b.status == STATUS_FAILED
    assert b.error == "Recognition API Error: down"


def test_job_succeeded_by_single_path_is_skipped_by_queued_batch():
    registry = JobRegistry()
    a, b = _submit(registry, 2)
    fake = FakeRecognizer()
    controller = BatchController(registry, recognize=fake, concurrency=1, rerun_failed=True)

    async def _run():
        fake.gates[a.payload] = asyncio.Event()
        batch = asyncio.create_task(controller.recognize_all())
        await _until(lambda: len(fake.calls) == 1)
        await controller.recognize_one(b.job_id)
        fake.gates[a.payload].set()
        return await batch

    report = asyncio.run(_run())

    assert fake.calls.count(b.payload) == 1
    assert report.results == [CARD, NO_RESULT]
    assert b.status == STATUS_SUCCEEDED


def test_overlapping_batch_is_refused():
    registry = JobRegistry()
    jobs = _submit(registry, 1)
    fake = FakeRecognizer()
    controller = BatchController(registry, recognize=fake)

    async def _run():
        fake.gates[jobs[0].payload] = asyncio.Event()
        first = asyncio.create_task(controller.recognize_all())
        await _until(lambda: len(fake.calls) == 1)
        with pytest.raises(BatchBusyError):
            await controller.recognize_all()
        with pytest.raises(BatchBusyError):
            controller.start_batch()
        fake.gates[jobs[0].payload].set()
        await first

    asyncio.run(_run())
    assert len(fake.calls) == 1


def test_start_batch_runs_in_background():
    registry = JobRegistry()
    jobs = _submit(registry, 3)
    fake = FakeRecognizer()
    controller = BatchController(registry, recognize=fake, concurrency=2)

    async def _run():
        controller.start_batch()
        assert controller.busy
        await controller.join()

    asyncio.run(_run())
    assert not controller.busy
    assert all(j.status == STATUS_SUCCEEDED for j in jobs)


def test_clear_mid_batch_discards_late_completions():
    registry = JobRegistry()
    jobs = _submit(registry, 2)
    fake = FakeRecognizer()
    controller = BatchController(registry, recognize=fake, concurrency=5)

    async def _run():
        gates = [asyncio.Event() for _ in jobs]
        for job, gate in zip(jobs, gates):
            fake.gates[job.payload] = gate
        batch = asyncio.create_task(controller.recognize_all())
        await _until(lambda: len(fake.calls) == 2)

        assert controller.clear() == 2
        assert all(job.payload == b"" for job in jobs)
        fresh = registry.submit("fresh.png", b"fresh", "image/png")

        for gate in gates:
            gate.set()
        await batch
        return fresh

    fresh = asyncio.run(_run())
    assert registry.jobs() == [fresh]
    assert fresh.status == STATUS_PENDING
    assert all(j.job_id not in registry for j in jobs)


def test_recognize_one_state_contract():
    registry = JobRegistry()
    job = registry.submit("card.png", b"card", "image/png")
    fake = FakeRecognizer(outcomes={b"card": UpstreamError(status_code=503, api_error="busy")})
    controller = BatchController(registry, recognize=fake)

    asyncio.run(controller.recognize_one(job.job_id))
    assert job.status == STATUS_FAILED
    assert job.error == "Recognition API Error: busy"

    # Manual retry from failed.
    fake.outcomes.clear()
    asyncio.run(controller.recognize_one(job.job_id))
    assert job.status == STATUS_SUCCEEDED
    assert job.error is None

    with pytest.raises(InvalidTransitionError):
        asyncio.run(controller.recognize_one(job.job_id))
    with pytest.raises(JobNotFoundError):
        asyncio.run(controller.recognize_one("missing"))
    assert len(fake.calls) == 2


def test_unexpected_exception_is_recorded_as_internal_failure():
    registry = JobRegistry()
    jobs = _submit(registry, 2)
    fake = FakeRecognizer(outcomes={jobs[0].payload: KeyError("boom")})
    controller = BatchController(registry, recognize=fake)

    report = asyncio.run(controller.recognize_all())

    assert report.results[0] is NO_RESULT
    assert jobs[0].status == STATUS_FAILED
    assert jobs[0].error_kind == "internal"
    assert jobs[1].status == STATUS_SUCCEEDED


def test_status_payload_in_display_order():
    registry = JobRegistry()
    jobs = _submit(registry, 3)
    fake = FakeRecognizer(outcomes={jobs[0].payload: ParseError()})
    controller = BatchController(registry, recognize=fake)
    asyncio.run(controller.recognize_all())
    registry.submit("late.png", b"late", "image/png")

    payload = controller.get_status_payload()

    assert payload["total"] == 4
    assert payload["succeeded"] == 2
    assert payload["failed"] == 1
    assert payload["pending"] == 1
    assert payload["running"] == 0
    assert payload["busy"] is False
    assert [j["filename"] for j in payload["jobs"]] == [
        "card-0.png", "card-1.png", "card-2.png", "late.png",
    ]
    assert payload["jobs"][0]["error_kind"] == "parse"
    json.dumps(payload)


def test_concurrency_must_be_positive():
    with pytest.raises(ValueError):
        BatchController(JobRegistry(), recognize=FakeRecognizer(), concurrency=0)
