from datetime import datetime, timezone

from prefect import flow, get_run_logger, task

from app.core.database import async_session_maker, init_db
from app.services.experiments.service import ExperimentService
from app.services.experiments.sql_store import SQLAlchemyExperimentStore


async def run_completion_sweep(service: ExperimentService) -> dict:
    """One completion pass over running tests, summarised for flow logs."""
    completed = await service.run_completion_cycle()
    active = await service.get_active_tests()

    return {
        "checked_at": datetime.now(timezone.utc).isoformat(),
        "completed": [{"test_id": t.id, "name": t.name, "winner": t.winner} for t in completed],
        "still_running": len(active),
    }


@task(retries=2, retry_delay_seconds=30)
async def completion_sweep() -> dict:
    logger = get_run_logger()

    await init_db()
    service = ExperimentService(SQLAlchemyExperimentStore(async_session_maker))
    try:
        await service.start(run_monitor=False)
        summary = await run_completion_sweep(service)
    finally:
        await service.close()

    for test in summary["completed"]:
        logger.info(f"Completed {test['name']} ({test['test_id']}), winner: {test['winner'] or 'none'}")
    logger.info(f"{summary['still_running']} tests still running")

    return summary


@flow(name="experiment_completion_sweep", log_prints=True)
async def experiment_completion_sweep() -> dict:
    logger = get_run_logger()
    logger.info("Starting experiment completion sweep")

    return await completion_sweep()


if __name__ == "__main__":
    import asyncio

    asyncio.run(experiment_completion_sweep())
