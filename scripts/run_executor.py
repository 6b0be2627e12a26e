#!/usr/bin/env python3
"""
Copy Relay Executor - Main Entry Point

Copies PENDING trades written by the trade monitor into every follower
wallet. Configuration comes from the environment / .env file.

Usage:
    python scripts/run_executor.py [--preview] [--max-iterations N]

Examples:
    # Record intended orders without placing them
    python scripts/run_executor.py --preview

    # Live copying with debug logging
    python scripts/run_executor.py --log-level DEBUG
"""

import argparse
import asyncio
import logging
import signal
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from copyrelay.config import CopyRelayConfig
from copyrelay.errors import CopyRelayError
from copyrelay.pipeline import create_pipeline

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


def parse_args() -> argparse.Namespace:
    """Parse command line arguments."""
    parser = argparse.ArgumentParser(
        description="Copy Relay Executor",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__,
    )

    parser.add_argument(
        "--preview",
        action="store_true",
        help="Preview mode (record orders, never place them)",
    )

    parser.add_argument(
        "--env-file",
        default=None,
        help="Path to .env file (default: search from cwd)",
    )

    parser.add_argument(
        "--max-iterations",
        type=int,
        default=None,
        help="Maximum iterations (default: until stopped)",
    )

    parser.add_argument(
        "--log-level",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        default=None,
        help="Logging level (default: LOG_LEVEL env or INFO)",
    )

    return parser.parse_args()


async def main() -> int:
    """Main entry point."""
    args = parse_args()

    try:
        config = CopyRelayConfig.from_env(args.env_file)
    except CopyRelayError as e:
        logger.critical(f"Configuration error: {e.message}")
        return 1

    logging.getLogger().setLevel(getattr(logging, args.log_level or config.log_level))

    if args.preview:
        config = config.model_copy(update={"preview_mode": True})
        logger.info("PREVIEW mode enabled")

    pipeline = create_pipeline(config)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, pipeline.stop)
        except NotImplementedError:
            # Windows event loops have no signal handlers
            logger.debug(f"Signal handler for {sig.name} not supported")

    try:
        await pipeline.run(max_iterations=args.max_iterations)
    except Exception as e:
        logger.error(f"Fatal error: {e}", exc_info=True)
        return 1
    finally:
        await pipeline.close()

    stats = pipeline.stats.to_dict()
    logger.info("=" * 60)
    logger.info("FINAL STATUS")
    logger.info("=" * 60)
    logger.info(f"Iterations: {stats['iterations']}")
    logger.info(f"Trades seen: {stats['trades_seen']}")
    logger.info(f"Orders placed: {stats['orders_placed']}")
    logger.info(f"Orders failed: {stats['orders_failed']}")
    logger.info(f"Rejections: {stats['rejections']}")
    logger.info(f"Errors: {stats['errors']}")
    logger.info("=" * 60)

    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
