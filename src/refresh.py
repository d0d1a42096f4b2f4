"""CLI command for executing refresh operations

Usage:
    python -m src.refresh                  # refresh every watched repository
    python -m src.refresh owner/name       # refresh a single repository
"""

import logging
import sys
from datetime import datetime
from pathlib import Path

from dotenv import load_dotenv

from src.services.refresh_orchestrator import (
    RefreshException,
    RefreshOrchestrator,
    refresh_repository_now,
)


def setup_logging() -> None:
    """Configure logging for CLI (stdout for K8s)"""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        handlers=[logging.StreamHandler(sys.stdout)],
    )


def main(argv: list[str] | None = None) -> int:
    """
    Main entry point for refresh CLI command

    Returns:
        int: Exit code (0 for success, 1 for failure)
    """
    setup_logging()
    logger = logging.getLogger(__name__)
    args = sys.argv[1:] if argv is None else argv

    # Load .env file first (won't override existing env vars)
    if Path(".env").exists():
        load_dotenv()
        logger.info("Loaded environment variables from .env file")

    try:
        logger.info("Starting refresh operation")
        logger.info(f"Timestamp: {datetime.now().isoformat()}")

        if args:
            logger.info(f"Refreshing single repository {args[0]}")
            result = refresh_repository_now(args[0])
        else:
            result = RefreshOrchestrator().refresh_once()

        logger.info(
            f"Checked {result.repositories_checked} repositories, "
            f"polled {result.invocations_polled} invocations"
        )
        if not result.success:
            logger.error(f"Refresh finished with failures: {result.error}")
            return 1

        logger.info(f"Refresh completed successfully in {result.duration_seconds:.2f}s")
        return 0
    except RefreshException as e:
        logger.error(f"Refresh failed: {e}")
        return 1
    except ValueError as e:
        logger.error(f"Invalid argument: {e}")
        return 1
    except Exception as e:
        logger.error(f"Unexpected error: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
