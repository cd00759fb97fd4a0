"""
Main entry point for a one-off loan sync.
Runs a single reconciliation and prints the sync summary as JSON.
"""

import asyncio
import json
import sys
from pathlib import Path

# Add project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from scheduler.jobs import run_sync_job
from utilities.config import config
from utilities.logger import setup_logging, get_logger


async def main() -> int:
    """Run one sync and report the outcome."""
    setup_logging(
        log_level=config.log_level,
        log_format=config.log_format,
        log_file=config.get_log_file_path(),
        debug=config.debug
    )

    logger = get_logger(__name__)
    logger.info("Starting one-off loan sync")

    result = await run_sync_job(config)

    if not result.success:
        logger.error(
            "Sync failed",
            code=result.error.code.value,
            error=result.error.message,
            duration_seconds=result.duration_seconds
        )
        print(json.dumps({"error": result.error.code.value, "message": result.error.message}, ensure_ascii=False))
        return 1

    for warning in result.warnings:
        logger.warning("Sync warning", warning=warning)

    print(json.dumps(result.to_response().model_dump(), ensure_ascii=False, indent=2))
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
