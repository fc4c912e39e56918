import logging
import signal
import threading
from dataclasses import dataclass

from .config import Settings
from .delivery import DeliveryClient
from .enqueuer import JobEnqueuer
from .repository import SqliteJobStore, SqliteJobQueue, SqliteSubscriptionRepository
from .scanner import ExpirationScanner, ExpirationSchedule, IntervalTimer
from .worker import QueueWorker

logger = logging.getLogger(__name__)

_stop = threading.Event()


@dataclass
class Components:
    store: object
    queue: object
    worker: QueueWorker
    enqueuer: JobEnqueuer
    scanner: ExpirationScanner


def build_stores(settings: Settings):
    if settings.backend == "redis":
        from .redis_backend import RedisJobStore, RedisJobQueue, connect_redis

        client = connect_redis(settings.redis_url)
        return RedisJobStore(client), RedisJobQueue(client)
    return SqliteJobStore(settings.db_path), SqliteJobQueue(settings.db_path)


def build_components(
    settings: Settings,
    *,
    client=None,
    subscriptions=None,
    attach_worker: bool = True,
    **worker_kwargs,
) -> Components:
    """Wire store, queue, worker, enqueuer and scanner from settings.

    With ``attach_worker=False`` the enqueuer only records and queues jobs;
    a separately running service drains them.
    """
    store, queue = build_stores(settings)
    if client is None:
        client = DeliveryClient(settings.delivery_url, timeout_seconds=settings.delivery_timeout_seconds)
    worker = QueueWorker(
        store,
        queue,
        client,
        pause_seconds=settings.worker_pause_seconds,
        completed_ttl_seconds=settings.completed_ttl_seconds,
        **worker_kwargs,
    )
    enqueuer = JobEnqueuer(
        store, queue, worker if attach_worker else None, max_attempts=settings.max_attempts,
    )
    if subscriptions is None:
        subscriptions = SqliteSubscriptionRepository(settings.db_path)
    scanner = ExpirationScanner(subscriptions, enqueuer)
    return Components(store=store, queue=queue, worker=worker, enqueuer=enqueuer, scanner=scanner)


def setup_signal_handlers():
    def _handler(signum, frame):
        logger.info("Received signal %s. Stopping notification service", signum)
        _stop.set()

    previous = {}
    for sig in (signal.SIGINT, signal.SIGTERM):
        previous[sig] = signal.signal(sig, _handler)
    return previous


def run_service(settings: Settings, *, components: Components = None, timer=None) -> None:
    """Recover orphans, start the worker and the expiration timer, block until signalled.

    Nothing is in flight before the worker starts, so the startup sweep
    recovers every stranded record. Each scan tick repeats the sweep with
    ``orphan_grace_seconds`` to catch records stranded while running.
    """
    previous = setup_signal_handlers()
    _stop.clear()
    components = components or build_components(settings)
    worker = components.worker

    recovered = worker.recover_orphans(grace_seconds=0)
    if recovered:
        logger.info("Recovered %d orphaned job(s)", recovered)
    worker.wake()

    def after_tick():
        components.store.purge_expired()
        if worker.recover_orphans(settings.orphan_grace_seconds):
            worker.wake()

    schedule = ExpirationSchedule(
        components.scanner,
        timer or IntervalTimer(settings.scan_interval_seconds),
        after_tick=after_tick,
    )
    schedule.start()
    logger.info(
        "Notification service started (backend=%s, scan every %ss)",
        settings.backend, settings.scan_interval_seconds,
    )
    try:
        while not _stop.wait(0.5):
            # Pick up ids pushed by other processes (e.g. `notifyq enqueue`).
            if components.queue.length() and not worker.running:
                worker.wake()
    finally:
        schedule.stop()
        for sig, handler in previous.items():
            signal.signal(sig, handler)
        logger.info("Notification service stopped.")


def request_stop() -> None:
    _stop.set()
