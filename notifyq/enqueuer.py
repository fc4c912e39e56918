import logging
from dataclasses import asdict
from typing import Any, Mapping

from .models import Job, PENDING, DEFAULT_MAX_ATTEMPTS
from .payloads import build_payload, parse_kind
from .utils import now_iso, new_job_id

logger = logging.getLogger(__name__)


class JobEnqueuer:
    """Entry point for producers: records a job, queues its id, wakes the worker."""

    def __init__(self, store, queue, worker=None, *, max_attempts: int = DEFAULT_MAX_ATTEMPTS):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1.")
        self.store = store
        self.queue = queue
        self.worker = worker
        self.max_attempts = max_attempts

    def enqueue(self, kind, payload: Mapping[str, Any]) -> str:
        # Raises PayloadError before anything is written.
        kind = parse_kind(kind)
        notification = build_payload(kind, payload)

        ts = now_iso()
        job = Job(
            id=new_job_id(),
            kind=kind.value,
            payload=asdict(notification),
            state=PENDING,
            attempts=0,
            max_attempts=self.max_attempts,
            created_at=ts,
            updated_at=ts,
        )
        # Record first so a popped id always resolves; if the push fails the
        # pending record is left for the recovery sweep.
        self.store.put(job)
        self.queue.push_tail(job.id)
        logger.info("Notification job added to queue: %s (%s)", job.id, job.kind)

        if self.worker is not None:
            self.worker.wake()
        return job.id
