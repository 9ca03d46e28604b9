"""
Alert engine entry point.
"""

import logging
import signal
import threading

from dotenv import load_dotenv

load_dotenv()

from smartalerts.app import SmartAlertsApp
from smartalerts.config import load_config
from smartalerts.database.connection import Database

logger = logging.getLogger(__name__)


def main():
    """CLI entry point."""
    import argparse

    parser = argparse.ArgumentParser(description="SmartAlerts evaluation engine")
    parser.add_argument(
        "--config", default="config.yaml", help="Path to config file"
    )
    parser.add_argument("--debug", action="store_true", help="Enable debug mode")
    parser.add_argument(
        "--once", action="store_true", help="Run a single evaluation tick and exit"
    )
    parser.add_argument(
        "--dry-run", action="store_true", help="Run without sending notifications"
    )

    args = parser.parse_args()

    # Load config
    config = load_config(args.config)

    # Setup logging
    log_level = logging.DEBUG if args.debug else getattr(logging, config.advanced.log_level)
    logging.basicConfig(
        level=log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )

    # Initialize database
    db = Database(config.database.path)
    db.initialize()

    app = SmartAlertsApp(db=db, config=config, dry_run=args.dry_run)
    if args.dry_run:
        logger.info("Dry run mode - every channel is simulated")

    if args.once:
        result = app.scheduler.tick()
        logger.info(
            f"Tick finished: {result.evaluated} evaluated, {result.triggered} triggered, "
            f"{len(result.records)} dispatch records"
        )
        app.close()
        return

    stopped = threading.Event()

    def _shutdown(signum, frame):
        logger.info(f"Received signal {signum}, shutting down")
        stopped.set()

    signal.signal(signal.SIGTERM, _shutdown)
    signal.signal(signal.SIGINT, _shutdown)

    app.scheduler.start()
    try:
        stopped.wait()
    finally:
        app.close()


if __name__ == "__main__":
    main()
