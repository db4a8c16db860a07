"""
Background worker running the reconciliation sweep.

Usage:
    python -m chatline.worker

Every SWEEP_INTERVAL_SECONDS the worker closes sessions that went quiet
and re-attempts notifications left ``queued``. Run it as a separate process
(e.g., systemd service, Docker container).
"""

import logging
import time

from chatline.core.config import settings
from chatline.core.structured_logging import build_log_context
from chatline.db.session import SessionLocal
from chatline.services.notification_dispatch_service import NotificationDispatcher
from chatline.services.notification_transports import build_default_transports
from chatline.services.reconciliation_service import run_sweep

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger(__name__)


def worker_loop(dispatcher: NotificationDispatcher, *, iterations: int | None = None) -> None:
    """Run sweeps forever (or ``iterations`` times)."""
    logger.info(
        "Worker starting (sweep interval: %ss, batch size: %s)",
        settings.SWEEP_INTERVAL_SECONDS,
        settings.SWEEP_BATCH_SIZE,
    )
    completed = 0
    while iterations is None or completed < iterations:
        with SessionLocal() as db:
            try:
                run_sweep(db, dispatcher)
            except Exception:
                db.rollback()
                logger.exception(
                    "Sweep failed",
                    extra=build_log_context(route="worker", method="sweep"),
                )
        completed += 1
        if iterations is None or completed < iterations:
            time.sleep(settings.SWEEP_INTERVAL_SECONDS)


def main() -> None:
    """Entry point for the worker."""
    try:
        worker_loop(NotificationDispatcher(build_default_transports()))
    except KeyboardInterrupt:
        logger.info("Worker shutting down")


if __name__ == "__main__":
    main()
