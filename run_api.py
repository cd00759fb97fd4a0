#!/usr/bin/env python3
"""
Script to run the BookFlow Sync API server.
"""

import uvicorn
import sys
from pathlib import Path

# Add project root to Python path
project_root = Path(__file__).parent
sys.path.insert(0, str(project_root))

from api.config import config
from utilities.config import config as settings
from utilities.logger import setup_logging


def main():
    """Run the API server."""
    setup_logging(
        log_level=settings.log_level,
        log_format=settings.log_format,
        log_file=settings.get_log_file_path(),
        debug=settings.debug
    )

    print("Starting BookFlow Sync API Server")
    print(f"Host: {config.host}")
    print(f"Port: {config.port}")
    print(f"Debug: {config.debug}")
    print(f"Database: {settings.mongodb_database}")
    print("=" * 50)

    uvicorn.run(
        "api.main:app",
        host=config.host,
        port=config.port,
        reload=config.debug,
        log_level=settings.log_level.lower(),
        access_log=True
    )


if __name__ == "__main__":
    main()
