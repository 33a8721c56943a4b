# =======================================================================================
# gatepass/workers/expiry_worker.py - Background Expiry Sweep
# =======================================================================================
import asyncio
import logging
import threading
from typing import List, Optional

from ..config import config
from ..database import db_manager
from ..services.connection_manager import connection_manager
from ..services.notification_service import LiveEvent
from ..services.pass_workflow import PassWorkflow

logger = logging.getLogger(__name__)


class ExpiryWorker:
    """Periodically expires stale passes and sends the time-based reminders and alerts."""

    def __init__(self, interval: Optional[int] = None):
        self.workflow = PassWorkflow()
        self.interval = config.EXPIRY_SWEEP_INTERVAL if interval is None else interval
        self.running = False
        self._stop = threading.Event()
        self._loop: Optional[asyncio.AbstractEventLoop] = None

    # ------------------------------------------------------------------
    # Start / Stop
    # ------------------------------------------------------------------
    def start(self, loop: Optional[asyncio.AbstractEventLoop] = None):
        """Start the sweep in a background thread."""
        if not self.interval or self.interval <= 0:
            logger.info("Expiry sweep disabled")
            return
        if self.running:
            return

        self._loop = loop
        self.running = True
        self._stop.clear()
        thread = threading.Thread(target=self._run_loop, name="expiry-worker", daemon=True)
        thread.start()
        logger.info("Expiry worker started (every %ss)", self.interval)

    def stop(self):
        """Stop the worker."""
        self.running = False
        self._stop.set()

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------
    def _run_loop(self):
        while self.running:
            try:
                self.sweep_once()
            except Exception:
                logger.exception("Expiry sweep failed; retrying in %ss", self.interval)
            self._stop.wait(self.interval)

    def sweep_once(self) -> List[LiveEvent]:
        """Run one sweep in its own transaction, then push the committed events."""
        with db_manager.get_connection() as conn:
            expired = self.workflow.expire_stale(conn)
            reminders = self.workflow.remind_pending(conn)
            overdue = self.workflow.alert_overdue(conn)
            warnings = self.workflow.warn_expiring(conn)

        if expired:
            logger.info("Expired %d gate passes", len(expired))
        if reminders:
            logger.info("Sent %d approval reminders", len(reminders))
        if warnings:
            logger.info("Sent %d expiry warnings", len(warnings))
        events = expired + reminders + overdue + warnings
        if events:
            self._publish(events)
        return events

    def _publish(self, events: List[LiveEvent]) -> None:
        if self._loop is None or self._loop.is_closed():
            return
        future = asyncio.run_coroutine_threadsafe(connection_manager.deliver(events), self._loop)
        future.add_done_callback(self._log_delivery_error)

    @staticmethod
    def _log_delivery_error(future) -> None:
        if not future.cancelled() and future.exception() is not None:
            logger.warning("Live delivery of expiry events failed: %s", future.exception())

# ----------------------------------------------------------------------
# Global instance + entrypoint
# ----------------------------------------------------------------------
expiry_worker = ExpiryWorker()


def start_expiry_worker(loop: Optional[asyncio.AbstractEventLoop] = None):
    """Called from FastAPI startup."""
    expiry_worker.start(loop)


def stop_expiry_worker():
    expiry_worker.stop()
