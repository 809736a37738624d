#!/usr/bin/env python3

import signal
import threading

from loguru import logger

from .cli import cli
from .engine import BackupEngine


def run_daemon_mode(engine: BackupEngine):
    """Keep the engine watching until SIGINT/SIGTERM"""
    stop_event = threading.Event()

    # Set up signal handlers for graceful shutdown
    def signal_handler(signum, frame):
        logger.info("Received shutdown signal, stopping services...")
        stop_event.set()

    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    try:
        settings = engine.get_settings()
        if not settings.repo_save_path:
            logger.warning("No save folder configured; run 'reposaver settings --path ...' first")

        logger.info("Backup daemon started successfully")
        logger.info("Press Ctrl+C to stop")

        while not stop_event.wait(1.0):
            pass

    except KeyboardInterrupt:
        logger.info("Shutting down...")
    finally:
        engine.shutdown()


def main():
    """Main entry point"""
    cli()


if __name__ == "__main__":
    main()
