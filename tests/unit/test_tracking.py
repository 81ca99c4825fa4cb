import pytest

from flowtrack.models import RetryCreate, StepPatch, UpsertResult
from flowtrack.tracking import track_step
from flowtrack.utils.retry import RetryPolicy


class RecordingReporter:
    def __init__(self, fail: bool = False):
        self.steps: list[StepPatch] = []
        self.retries: list[RetryCreate] = []
        self.fail = fail

    async def report_step(self, patch: StepPatch) -> UpsertResult:
        if self.fail:
            raise ConnectionError("tracker unreachable")
        self.steps.append(patch)
        if patch.id is None:
            return UpsertResult(id=7, inserted=True)
        return UpsertResult(id=patch.id, updated=True)

    async def report_retry(self, record: RetryCreate) -> UpsertResult:
        self.retries.append(record)
        return UpsertResult(id=len(self.retries), inserted=True)


@pytest.mark.asyncio
async def test_successful_step_reports_running_then_completed():
    reporter = RecordingReporter()

    async def work():
        return {"charged": 10}

    result = await track_step(reporter, "run-1", "charge", 0, work)

    assert result == {"charged": 10}
    assert [p.status for p in reporter.steps] == ["Running", "Completed"]
    assert reporter.steps[1].id == 7
    assert reporter.steps[1].state == {"charged": 10}
    assert reporter.retries == []


@pytest.mark.asyncio
async def test_failure_with_retries_left_annotates_error():
    reporter = RecordingReporter()

    async def work():
        raise RuntimeError("card declined")

    with pytest.raises(RuntimeError) as info:
        await track_step(
            reporter, "run-1", "charge", 0, work, RetryPolicy(current_retry=1)
        )

    err = info.value
    assert err.retry_count == 2
    assert err.retry_delay == 2000
    assert err.next_retry_at
    assert not getattr(err, "non_retryable", False)

    failed = reporter.steps[-1]
    assert failed.status == "Retrying"
    assert failed.state["error"] == "card declined"
    assert failed.state["retry"]["count"] == 2
    assert failed.state["retry"]["maxRetries"] == 3

    (retry,) = reporter.retries
    assert retry.workflow_step_id == 7
    assert retry.retry_count == 2
    assert retry.last_error == "card declined"


@pytest.mark.asyncio
async def test_exhausted_retries_mark_error_non_retryable():
    reporter = RecordingReporter()

    async def work():
        raise RuntimeError("still failing")

    with pytest.raises(RuntimeError) as info:
        await track_step(
            reporter, "run-1", "charge", 0, work, RetryPolicy(max_retries=3, current_retry=3)
        )

    assert info.value.non_retryable is True
    assert not hasattr(info.value, "retry_count")
    assert reporter.steps[-1].status == "Failed"
    assert reporter.steps[-1].state["retry"] is None
    assert reporter.retries == []


@pytest.mark.asyncio
async def test_non_retryable_error_fails_immediately():
    reporter = RecordingReporter()

    class Fatal(Exception):
        non_retryable = True

    async def work():
        raise Fatal("bad input")

    with pytest.raises(Fatal):
        await track_step(reporter, "run-1", "validate", 0, work)

    assert reporter.steps[-1].status == "Failed"
    assert reporter.retries == []


@pytest.mark.asyncio
async def test_reporter_outage_does_not_change_step_outcome():
    reporter = RecordingReporter(fail=True)

    async def work():
        return 5

    assert await track_step(reporter, "run-1", "count", 0, work) == 5


@pytest.mark.asyncio
async def test_retry_not_logged_without_step_id():
    class NoIdReporter(RecordingReporter):
        async def report_step(self, patch):
            self.steps.append(patch)
            return UpsertResult(id=None)

    reporter = NoIdReporter()

    async def work():
        raise RuntimeError("flaky")

    with pytest.raises(RuntimeError) as info:
        await track_step(reporter, "run-1", "charge", 0, work)

    assert info.value.retry_count == 1
    assert reporter.retries == []


@pytest.mark.asyncio
async def test_retry_uses_step_id_from_failure_report_when_start_report_fails():
    class FlakyStartReporter(RecordingReporter):
        async def report_step(self, patch):
            self.steps.append(patch)
            if len(self.steps) == 1:
                raise ConnectionError("tracker unreachable")
            return UpsertResult(id=42, inserted=True)

    reporter = FlakyStartReporter()

    async def work():
        raise RuntimeError("card declined")

    with pytest.raises(RuntimeError):
        await track_step(reporter, "run-1", "charge", 0, work)

    assert reporter.steps[-1].id is None
    (retry,) = reporter.retries
    assert retry.workflow_step_id == 42
    assert retry.retry_count == 1
