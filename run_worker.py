"""
Run Queue Worker - Direct launch script

Processes pending documents every QUEUE_INTERVAL_SECONDS until interrupted.

Usage:
    python run_worker.py            # loop forever
    python run_worker.py --once     # single queue run
"""
import argparse
import logging
import sys
import time

from config.settings import configure_logging, get_settings
from botkit.agent import create_botkit

logger = logging.getLogger("botkit.worker")


def run(once: bool = False) -> int:
    settings = get_settings()
    configure_logging(settings.log_level)

    kit = create_botkit(settings)
    interval = settings.queue.interval_seconds
    logger.info(f"Queue worker started (interval {interval}s, batch size {settings.queue.batch_size})")

    try:
        while True:
            try:
                result = kit.process_queue()
                if result["skipped"]:
                    logger.info("Queue run skipped: another run holds the lock")
                elif result["processed"] or result["failed"]:
                    logger.info(f"Queue run: {result['processed']} processed, {result['failed']} failed")
            except Exception as e:
                logger.exception(f"Queue run crashed: {e}")
            if once:
                return 0
            time.sleep(interval)
    except KeyboardInterrupt:
        logger.info("Queue worker stopped")
        return 0
    finally:
        kit.close()


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="BotKit document queue worker")
    parser.add_argument("--once", action="store_true", help="Process one batch and exit")
    args = parser.parse_args()
    sys.exit(run(once=args.once))
