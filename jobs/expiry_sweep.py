"""
One-shot entitlement expiry sweep.

The API process already runs the sweep daily through APScheduler; this entry
point is for deployments that prefer an external cron.

Usage:
    python -m jobs.expiry_sweep
"""

import asyncio
import logging
import sys

from config.settings import get_settings
from context import AppContext

logging.basicConfig(
    level=logging.INFO,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


async def run_sweep(context: AppContext) -> int:
    await context.start(schedule_jobs=False)
    try:
        return await context.sweeper.sweep()
    finally:
        await context.stop()


def main() -> int:
    try:
        expired = asyncio.run(run_sweep(AppContext(get_settings())))
    except Exception as e:
        logger.error(f"Expiry sweep failed: {e}", exc_info=True)
        return 1
    logger.info(f"Expiry sweep finished, {expired} record(s) expired")
    return 0


if __name__ == "__main__":
    sys.exit(main())
