"""Example reporting step progress to a running `flowtrack serve` instance."""

import asyncio
import os
import sys

from flowtrack import RetryPolicy, RunPatch, WorkflowClient, track_step


async def charge_card(amount):
    if amount > 100:
        raise RuntimeError("card declined")
    return {"charged": amount}


async def main():
    base_url = os.getenv("FLOWTRACK_URL", "http://127.0.0.1:8787")
    amount = int(sys.argv[1]) if len(sys.argv) > 1 else 42

    async with WorkflowClient(base_url) as client:
        started = await client.start_workflow("payment", {"amount": amount}, ref_type="payment")
        run_id = started["workflowId"]
        await client.update_run(RunPatch(id=run_id, status="Running"))
        try:
            await track_step(
                client,
                run_id,
                "charge-card",
                0,
                lambda: charge_card(amount),
                RetryPolicy(max_retries=5, base_delay_ms=5000),
            )
        except RuntimeError as exc:
            status = "Errored" if getattr(exc, "non_retryable", False) else "Sleeping"
            await client.update_run(RunPatch(id=run_id, status=status))
            print(f"Charge failed, next retry at {getattr(exc, 'next_retry_at', None)}")
            return
        await client.update_run(RunPatch(id=run_id, status="Completed"))


if __name__ == "__main__":
    asyncio.run(main())
