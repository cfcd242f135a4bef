"""
Main entry point for the candidate forge pipeline.
Runs one sample generation request through the task manager and, if it succeeds,
a short continuous-evolution loop on the resulting project.
"""
import asyncio
import logging
import sys

from candidate_forge.task_manager.agent import TaskManagerAgent
from candidate_forge.config import settings

# Configure logging
logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    handlers=[logging.StreamHandler(sys.stdout), logging.FileHandler(settings.LOG_FILE)],
)
logger = logging.getLogger(__name__)

SAMPLE_REQUIREMENTS = (
    "Build an inventory module for a small shop. A Product has a SKU, a name, a unit price and a "
    "quantity in stock. The Inventory must let staff add products, restock them, record sales and "
    "list products whose stock is below a reorder level. Selling more units than are in stock must "
    "be rejected with a clear error. Prices are never negative."
)


async def run_candidate_forge():
    """
    Initializes the task manager and runs a sample generation request.
    """
    logger.info("Starting candidate forge...")

    # It will use settings from config/settings.py for model names, hosts, etc.
    task_manager = TaskManagerAgent()

    try:
        result = await task_manager.generate(
            "inventory_manager",
            SAMPLE_REQUIREMENTS,
            {"strategy_count": settings.STRATEGY_COUNT, "mode": "development"},
        )
        if not result.ok:
            report = result.error
            logger.info(f"Generation failed at stage '{report.stage}' after {report.attempt_count} attempt(s): {report.cause}")
            logger.info(f"Compensation completed: {report.compensation_completed}")
            if report.best_candidate is not None:
                logger.info("Best candidate found before the failure:\n" + report.best_candidate.source_text)
            return

        project = result.project
        logger.info(f"Generation finished for project {project.id}. Quality score: {project.quality_score:.2f}"
                    + (" (degraded)" if result.degraded else ""))
        logger.info("Code:\n" + project.result)

        handle = await task_manager.start_evolution(project.id, {"mode": "aggressive", "max_cycles": 1})
        for cycle in await handle.wait():
            logger.info(f"Evolution cycle {cycle.cycle}: best {cycle.best_score:.2f} vs {cycle.previous_score:.2f}, "
                        f"applied: {cycle.applied}")
    except Exception as e:
        logger.error(f"An error occurred while running the pipeline: {e}", exc_info=True)


if __name__ == "__main__":
    asyncio.run(run_candidate_forge())
