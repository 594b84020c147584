"""Background worker that drains the pending-document queue."""

import argparse
import signal
import time
from typing import Optional

from botkit_rag.container import build_rag_engine
from botkit_rag.database.session import close_db, init_db
from botkit_rag.services.rag_engine import RAGEngine
from botkit_rag.utils.errors import RAGException
from botkit_rag.utils.logging import get_logger, log_error, setup_logging

logger = get_logger("queue_worker")


class QueueWorker:
    """
    Poll ``RAGEngine.process_queue`` on a fixed interval.

    Each tick also removes expired temporary uploads. The loop stops after
    the current tick when ``stop()`` is called or SIGINT/SIGTERM is received.
    """

    def __init__(self, engine: RAGEngine, interval: float = 60.0, batch_limit: int = 5):
        self.engine = engine
        self.interval = interval
        self.batch_limit = batch_limit
        self._running = False

    def tick(self) -> dict:
        """Run one queue pass. Returns the processed/failed counts."""
        result = self.engine.process_queue(limit=self.batch_limit)
        try:
            self.engine.loader.cleanup_temp_files()
        except OSError as e:
            logger.warning(f"Temp file cleanup failed: {e}")
        return result

    def run(self, max_ticks: Optional[int] = None) -> None:
        if self._running:
            logger.warning("Queue worker is already running")
            return
        self._running = True
        ticks = 0
        logger.info(f"Queue worker started: interval={self.interval}s, batch_limit={self.batch_limit}")
        while self._running:
            try:
                self.tick()
            except RAGException as e:
                log_error(e, {"worker": "queue", "tick": ticks + 1})
            ticks += 1
            if max_ticks is not None and ticks >= max_ticks:
                break
            self._sleep()
        self._running = False
        logger.info("Queue worker stopped")

    def _sleep(self) -> None:
        deadline = time.monotonic() + self.interval
        while self._running and time.monotonic() < deadline:
            time.sleep(min(1.0, self.interval))

    def stop(self, *_args) -> None:
        self._running = False


def main(argv: Optional[list] = None) -> None:
    parser = argparse.ArgumentParser(description="Process pending documents on an interval.")
    parser.add_argument("--interval", type=float, default=60.0, help="Seconds between queue passes")
    parser.add_argument("--limit", type=int, default=5, help="Documents per pass")
    parser.add_argument("--once", action="store_true", help="Run a single pass and exit")
    args = parser.parse_args(argv)

    setup_logging()
    init_db()
    worker = QueueWorker(build_rag_engine(), interval=args.interval, batch_limit=args.limit)
    signal.signal(signal.SIGINT, worker.stop)
    signal.signal(signal.SIGTERM, worker.stop)
    try:
        worker.run(max_ticks=1 if args.once else None)
    finally:
        close_db()


if __name__ == "__main__":
    main()
