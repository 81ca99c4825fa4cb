"""Example tracking an order workflow in-process with the TrackerService."""

import asyncio
import logging

from flowtrack import RunPatch, TrackerService, track_step


async def validate_order(items):
    return {"valid": True, "total": sum(item["price"] for item in items)}


async def main():
    logging.basicConfig(level=logging.INFO)
    service = TrackerService()

    items = [{"sku": "A-1", "price": 30}, {"sku": "B-2", "price": 12}]
    started = await service.start_workflow(
        "order-processing", {"items": items}, ref_id="1001", ref_type="order"
    )
    run_id = started["workflowId"]
    await service.upsert_run(RunPatch(id=run_id, status="Running"))

    validation = await track_step(
        service, run_id, "validate-order", 0, lambda: validate_order(items)
    )
    await service.upsert_run(
        RunPatch(id=run_id, status="Completed", output_result={"total": validation["total"]})
    )

    run = await service.get_workflow_run(run_id)
    print(run.model_dump_json(indent=2))
    await service.close()


if __name__ == "__main__":
    asyncio.run(main())
