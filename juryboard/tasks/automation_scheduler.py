"""
juryboard/tasks/automation_scheduler.py
Scheduler tick loop for time-based automation rules
"""

import logging
import asyncio
from datetime import datetime
from typing import Dict, Optional

from juryboard.services.automation_engine import AutomationEngine, EvaluationOutcome

logger = logging.getLogger(__name__)


async def run_tick_once(engine: AutomationEngine, now: Optional[datetime] = None) -> Dict[int, EvaluationOutcome]:
    """Run a single scheduler tick."""
    outcomes = await engine.run_tick(now)
    fired = sum(1 for outcome in outcomes.values() if outcome == EvaluationOutcome.FIRED)
    failed = sum(1 for outcome in outcomes.values() if outcome == EvaluationOutcome.FAILED)
    if fired or failed:
        logger.info(f"Automation tick: {len(outcomes)} rules evaluated, {fired} fired, {failed} failed")
    return outcomes


async def scheduler_loop(engine: AutomationEngine, interval_seconds: float = 30):
    """
    Background scheduler loop.
    Runs every interval_seconds (default 30 seconds).
    """
    logger.info(f"Starting automation scheduler with interval {interval_seconds}s")

    while True:
        try:
            await run_tick_once(engine)
        except Exception as e:
            logger.error(f"Automation scheduler error: {str(e)}")

        await asyncio.sleep(interval_seconds)


def start_automation_scheduler(engine: AutomationEngine, interval_seconds: float = 30) -> asyncio.Task:
    """Start the scheduler as a background task."""
    return asyncio.create_task(scheduler_loop(engine, interval_seconds))


if __name__ == "__main__":
    from juryboard.database import AsyncSessionLocal, close_db

    logging.basicConfig(level=logging.INFO)

    async def _main():
        try:
            await run_tick_once(AutomationEngine(AsyncSessionLocal))
        finally:
            await close_db()

    asyncio.run(_main())
