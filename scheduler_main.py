"""
Main entry point for the scheduled jobs.

Starts the scheduler service that runs the daily loan sync and the daily
note digest.

Usage: python scheduler_main.py [--once|--sync|--digest|--test]
"""

import asyncio
import sys
from pathlib import Path

# Add project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

import structlog
from utilities.logger import setup_logging
from utilities.config import config
from scheduler.jobs import build_repository
from scheduler.scheduler_service import SchedulerService

# Run-once modes and the job each one restricts to
RUN_ONCE_MODES = {
    "--once": None,
    "--sync": "sync",
    "--digest": "digest",
}


async def main():
    """Main function to start the scheduler service."""
    setup_logging(
        log_level=config.log_level,
        log_format=config.log_format,
        log_file=config.get_log_file_path(),
        debug=config.debug
    )
    logger = structlog.get_logger(__name__)

    test_mode = config.test_mode
    run_once = False
    only = None

    if len(sys.argv) > 1:
        arg = sys.argv[1]
        if arg == "--test":
            test_mode = True
        elif arg in RUN_ONCE_MODES:
            run_once = True
            only = RUN_ONCE_MODES[arg]
        else:
            print(f"Unknown argument: {arg}")
            print("Usage: python scheduler_main.py [--once|--sync|--digest|--test]")
            sys.exit(1)

    scheduler_service = SchedulerService.from_settings(config, build_repository(config))

    if run_once:
        print(f"Run once mode: {only or 'sync + digest'}")
    elif test_mode:
        print("Test mode: sync every 2 minutes, digest every 5 minutes")
    else:
        print(
            f"Daemon mode: sync daily at {config.sync_schedule_hour:02d}:{config.sync_schedule_minute:02d}, "
            f"digest daily at {config.digest_schedule_hour:02d}:{config.digest_schedule_minute:02d} "
            f"({config.timezone})"
        )

    try:
        await scheduler_service.start(test_mode=test_mode, run_once=run_once, only=only)
    except Exception as e:
        logger.error("Failed to start scheduler service", error=str(e))
        sys.exit(1)


if __name__ == "__main__":
    asyncio.run(main())
