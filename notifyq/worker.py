import logging
import threading
import time
from datetime import timedelta
from typing import Callable, Optional

from .delivery import DeliveryResult
from .models import (
    Job, PENDING, IN_PROGRESS, WAITING_RETRY, COMPLETED, FAILED,
)
from .utils import now_iso, to_iso, utc_now

logger = logging.getLogger(__name__)

DEFAULT_COMPLETED_TTL = 24 * 60 * 60
ABANDONED_ERROR = "abandoned while in progress"


def spawn_thread(target: Callable[[], None]) -> None:
    threading.Thread(target=target, name="notifyq-worker", daemon=True).start()


class QueueWorker:
    """Drains the job queue one job at a time.

    At most one drain runs per worker instance. ``wake()`` starts a drain
    through ``spawn`` (a daemon thread by default) unless one is already
    running; the drain exits once the queue is empty.
    """

    def __init__(
        self,
        store,
        queue,
        client,
        *,
        pause_seconds: float = 0.1,
        completed_ttl_seconds: int = DEFAULT_COMPLETED_TTL,
        sleep: Callable[[float], None] = time.sleep,
        spawn: Callable[[Callable[[], None]], None] = spawn_thread,
    ):
        self.store = store
        self.queue = queue
        self.client = client
        self.pause_seconds = pause_seconds
        self.completed_ttl_seconds = completed_ttl_seconds
        self._sleep = sleep
        self._spawn = spawn
        self._guard = threading.Lock()

    @property
    def running(self) -> bool:
        return self._guard.locked()

    def wake(self) -> bool:
        """Start a drain if idle. Returns False when one is already running."""
        if not self._guard.acquire(blocking=False):
            return False
        try:
            self._spawn(self._run)
        except Exception:
            self._guard.release()
            raise
        return True

    def _run(self) -> None:
        # Entered holding the guard.
        while True:
            try:
                self.drain()
            except Exception:
                logger.exception("Queue processing error")
                self._guard.release()
                return
            self._guard.release()
            # An id pushed between the last empty pop and the release would
            # otherwise wait for the next enqueue.
            if self.queue.length() == 0 or not self._guard.acquire(blocking=False):
                return

    def drain(self) -> int:
        """Process jobs until the queue is empty; returns the number popped."""
        popped = 0
        while True:
            job_id = self.queue.pop_head()
            if job_id is None:
                return popped
            popped += 1
            self.process(job_id)
            self._sleep(self.pause_seconds)

    def process(self, job_id: str) -> Optional[Job]:
        job = self.store.get(job_id)
        if job is None:
            logger.warning("Job data not found: %s", job_id)
            return None
        if job.is_terminal:
            logger.warning("Skipping %s job %s still referenced by the queue", job.state, job_id)
            return job
        if not job.attempts_left:
            return self._fail(job, job.last_error or "max attempts reached")

        job.state = IN_PROGRESS
        job.attempts += 1
        job.updated_at = now_iso()
        self.store.put(job)

        try:
            result = self.client.send(job.kind, job.payload)
        except Exception as e:
            result = DeliveryResult(False, str(e) or e.__class__.__name__)

        if result.success:
            job.state = COMPLETED
            job.last_error = None
            job.updated_at = now_iso()
            self.store.put(job, ttl_seconds=self.completed_ttl_seconds)
            logger.info("Notification sent: %s (attempt %d)", job.id, job.attempts)
            return job

        reason = result.message or "delivery failed"
        if job.attempts_left:
            # Re-push first: if the push fails the record stays in_progress
            # and the recovery sweep picks it up.
            self.queue.push_tail(job.id)
            job.state = WAITING_RETRY
            job.updated_at = now_iso()
            self.store.put(job)
            logger.info(
                "Job %s attempt %d/%d failed (%s); scheduled for retry",
                job.id, job.attempts, job.max_attempts, reason,
            )
            return job
        return self._fail(job, reason)

    def _fail(self, job: Job, reason: str) -> Job:
        job.state = FAILED
        job.last_error = reason
        job.updated_at = now_iso()
        self.store.put(job)
        logger.error("Job %s failed permanently after %d attempts: %s", job.id, job.attempts, reason)
        return job

    def recover_orphans(self, grace_seconds: int) -> int:
        """Requeue jobs that no queue entry will ever deliver.

        Looks at records last updated more than ``grace_seconds`` ago that
        are not on the queue: ``in_progress`` jobs abandoned by a crashed
        drain, and ``pending`` or ``waiting_retry`` jobs whose id never made
        it onto the queue. Those with attempts left go back on the queue; the
        rest are failed. Skipped (returns 0) while a drain is running.
        """
        if not self._guard.acquire(blocking=False):
            logger.debug("Drain running; orphan sweep skipped")
            return 0
        try:
            return self._requeue_orphans(grace_seconds)
        finally:
            self._guard.release()

    def _requeue_orphans(self, grace_seconds: int) -> int:
        cutoff = to_iso(utc_now() - timedelta(seconds=grace_seconds))
        recovered = 0
        for state in (IN_PROGRESS, PENDING, WAITING_RETRY):
            for job in self.store.iter_jobs(state):
                if job.updated_at and job.updated_at > cutoff:
                    continue
                if self.queue.contains(job.id):
                    continue
                if job.attempts_left:
                    self.queue.push_tail(job.id)
                    job.state = WAITING_RETRY if job.attempts else PENDING
                    job.updated_at = now_iso()
                    self.store.put(job)
                    logger.warning(
                        "Requeued orphaned %s job %s (attempt %d/%d)",
                        state, job.id, job.attempts, job.max_attempts,
                    )
                elif state == IN_PROGRESS:
                    self._fail(job, ABANDONED_ERROR)
                else:
                    self._fail(job, job.last_error or "max attempts reached")
                recovered += 1
        return recovered
