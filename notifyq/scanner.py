import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from .models import NotificationKind
from .utils import utc_now

logger = logging.getLogger(__name__)


@dataclass
class ScanReport:
    found: int = 0
    expired: int = 0
    failed: int = 0


class ExpirationScanner:
    """Moves lapsed ACTIVE subscriptions to EXPIRED and queues one notice each."""

    def __init__(self, subscriptions, enqueuer, *, clock: Callable[[], datetime] = utc_now):
        self.subscriptions = subscriptions
        self.enqueuer = enqueuer
        self._clock = clock

    def run_once(self) -> ScanReport:
        report = ScanReport()
        due = self.subscriptions.find_active_expired(self._clock())
        report.found = len(due)
        if not due:
            logger.info("No expired subscriptions found")
            return report

        for sub in due:
            try:
                updated = self.subscriptions.mark_expired(sub)
            except Exception:
                logger.exception("Could not expire subscription %s", sub.id)
                report.failed += 1
                continue
            if updated is None:
                # Another scan got there first.
                continue

            report.expired += 1
            try:
                self.enqueuer.enqueue(
                    NotificationKind.EXPIRED,
                    {
                        "email": updated.email,
                        "name": updated.name,
                        "plan_name": updated.plan_name,
                        "expiry_date": updated.end_date,
                    },
                )
            except Exception:
                logger.exception("Subscription %s expired but its notification was not queued", sub.id)
                report.failed += 1

        logger.info(
            "Expiration scan: %d due, %d expired, %d failed",
            report.found, report.expired, report.failed,
        )
        return report


class IntervalTimer:
    """Calls a callback once right away, then every `interval_seconds`, on a daemon thread."""

    def __init__(self, interval_seconds: float):
        if interval_seconds <= 0:
            raise ValueError("interval_seconds must be > 0")
        self.interval_seconds = interval_seconds
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self, callback: Callable[[], None]) -> None:
        if self._thread is not None:
            raise RuntimeError("timer already started")

        def _loop():
            while not self._stop.is_set():
                callback()
                self._stop.wait(self.interval_seconds)

        self._thread = threading.Thread(target=_loop, name="notifyq-scan-timer", daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)


class ExpirationSchedule:
    """Runs a scanner on a timer. A failing tick is logged and the timer keeps going."""

    def __init__(self, scanner: ExpirationScanner, timer, *, after_tick: Optional[Callable[[], None]] = None):
        self.scanner = scanner
        self.timer = timer
        self._after_tick = after_tick
        self._busy = threading.Lock()

    def start(self) -> None:
        self.timer.start(self.tick)

    def stop(self) -> None:
        self.timer.stop()

    def tick(self) -> Optional[ScanReport]:
        if not self._busy.acquire(blocking=False):
            logger.info("Previous expiration scan still running; skipping this tick")
            return None
        try:
            logger.debug("Running scheduled subscription expiration check")
            report = self.scanner.run_once()
            if self._after_tick is not None:
                self._after_tick()
            return report
        except Exception:
            logger.exception("Error checking expired subscriptions")
            return None
        finally:
            self._busy.release()
