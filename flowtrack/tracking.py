"""Executor-side helper that reports a step's lifecycle to the tracker."""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Callable, Optional, Protocol, TypeVar

from .models import RetryCreate, StepPatch, StepStatus, UpsertResult, utcnow
from .utils.retry import RetryPolicy, plan_retry

logger = logging.getLogger(__name__)

T = TypeVar("T")

_JSON_SCALARS = (str, int, float, bool, type(None))


class StepReporter(Protocol):
    """Destination for step reports: ``TrackerService`` or ``WorkflowClient``."""

    async def report_step(self, patch: StepPatch) -> UpsertResult: ...

    async def report_retry(self, record: RetryCreate) -> UpsertResult: ...


def _as_state(value: Any) -> Any:
    if isinstance(value, (dict, list, *_JSON_SCALARS)):
        return value
    return str(value)


async def _report(
    send: Callable[[Any], Awaitable[UpsertResult]], record: Any, what: str
) -> Optional[UpsertResult]:
    # Tracking is telemetry; a failed report never changes the step outcome.
    try:
        return await send(record)
    except Exception:
        logger.exception(f"Failed to record {what}")
        return None


async def track_step(
    reporter: StepReporter,
    run_id: str,
    step_name: str,
    step_index: int,
    execute: Callable[[], Awaitable[T]],
    policy: Optional[RetryPolicy] = None,
) -> T:
    """Run ``execute`` while reporting the step's status to ``reporter``.

    On failure the exception is annotated before it is re-raised:
    ``retry_count``, ``retry_delay`` (ms) and ``next_retry_at`` when another
    attempt is scheduled, or ``non_retryable = True`` when retries are
    exhausted, so the caller's next invocation fails fast.
    """
    policy = policy or RetryPolicy()

    started = await _report(
        reporter.report_step,
        StepPatch(
            workflow_run_id=run_id,
            step_name=step_name,
            status=StepStatus.RUNNING,
            step_index=step_index,
            state=None,
            started_at=utcnow(),
        ),
        f"start of step {step_name!r}",
    )
    step_id = started.id if started is not None else None

    try:
        result = await execute()
    except Exception as exc:
        await _record_failure(reporter, exc, run_id, step_name, step_index, step_id, policy)
        raise

    await _report(
        reporter.report_step,
        StepPatch(
            id=step_id,
            workflow_run_id=run_id,
            step_name=step_name,
            status=StepStatus.COMPLETED,
            step_index=step_index,
            state=_as_state(result),
            completed_at=utcnow(),
        ),
        f"completion of step {step_name!r}",
    )
    return result


async def _record_failure(
    reporter: StepReporter,
    exc: Exception,
    run_id: str,
    step_name: str,
    step_index: int,
    step_id: Any,
    policy: RetryPolicy,
) -> None:
    message = str(exc) or "Unknown error"
    decision = plan_retry(policy, non_retryable=bool(getattr(exc, "non_retryable", False)))
    next_retry_at = decision.next_retry_at.isoformat()

    failed = await _report(
        reporter.report_step,
        StepPatch(
            id=step_id,
            workflow_run_id=run_id,
            step_name=step_name,
            status=StepStatus.RETRYING if decision.retryable else StepStatus.FAILED,
            step_index=step_index,
            state={
                "error": message,
                "retry": {
                    "count": decision.retry_count,
                    "maxRetries": policy.max_retries,
                    "nextRetryAt": next_retry_at,
                }
                if decision.retryable
                else None,
            },
        ),
        f"failure of step {step_name!r}",
    )
    # Without a start report the step row is created here.
    if step_id is None and failed is not None:
        step_id = failed.id

    if not decision.retryable:
        exc.non_retryable = True
        logger.warning(
            f"Step {step_name} failed permanently after {policy.current_retry} "
            f"retries: {message}"
        )
        return

    if step_id is not None:
        await _report(
            reporter.report_retry,
            RetryCreate(
                workflow_step_id=step_id,
                retry_count=decision.retry_count,
                retry_at=decision.next_retry_at,
                last_error=message,
            ),
            f"retry of step {step_name!r}",
        )
    else:
        logger.warning(f"Step {step_name} has no recorded id; retry not logged")

    exc.retry_count = decision.retry_count
    exc.retry_delay = decision.delay_ms
    exc.next_retry_at = next_retry_at
    logger.info(
        f"Step {step_name} will retry ({decision.retry_count}/{policy.max_retries}) "
        f"at {next_retry_at}: {message}"
    )
