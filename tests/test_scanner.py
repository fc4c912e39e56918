import threading
from datetime import timedelta

from notifyq.enqueuer import JobEnqueuer
from notifyq.models import Subscription, ACTIVE, EXPIRED, COMPLETED
from notifyq.scanner import ExpirationScanner, ExpirationSchedule, IntervalTimer
from notifyq.utils import to_iso, utc_now


class ManualTimer:
    def __init__(self):
        self.callback = None
        self.stopped = False

    def start(self, callback):
        self.callback = callback

    def fire(self):
        return self.callback()

    def stop(self):
        self.stopped = True


def _add(subscriptions, sub_id, days_from_now, status=ACTIVE):
    return subscriptions.add(Subscription(
        id=sub_id,
        email=f"{sub_id}@x.io",
        name=sub_id.title(),
        plan_name="Pro",
        end_date=to_iso(utc_now() + timedelta(days=days_from_now)),
        status=status,
    ))


def test_lapsed_subscription_expires_with_one_job(subscriptions, enqueuer, store, queue):
    sub = _add(subscriptions, "ann", -1)
    scanner = ExpirationScanner(subscriptions, enqueuer)

    report = scanner.run_once()

    assert (report.found, report.expired, report.failed) == (1, 1, 0)
    assert subscriptions.get("ann").status == EXPIRED
    assert queue.length() == 1
    job = store.get(queue.pop_head())
    assert job.kind == "subscription_expired"
    assert job.payload == {
        "email": "ann@x.io",
        "name": "Ann",
        "plan_name": "Pro",
        "expiry_date": sub.end_date,
    }


def test_no_matches_is_a_noop(subscriptions, enqueuer, queue):
    _add(subscriptions, "future", 5)
    report = ExpirationScanner(subscriptions, enqueuer).run_once()
    assert report.found == 0
    assert queue.length() == 0


def test_second_scan_enqueues_nothing(subscriptions, enqueuer, queue):
    _add(subscriptions, "ann", -1)
    _add(subscriptions, "bob", -2)
    scanner = ExpirationScanner(subscriptions, enqueuer)

    assert scanner.run_once().expired == 2
    assert scanner.run_once().expired == 0
    assert queue.length() == 2


def test_clock_decides_what_is_due(subscriptions, enqueuer):
    _add(subscriptions, "ann", 2)
    later = utc_now() + timedelta(days=3)
    report = ExpirationScanner(subscriptions, enqueuer, clock=lambda: later).run_once()
    assert report.expired == 1


def test_persist_failure_does_not_stop_scan(subscriptions, enqueuer, queue):
    _add(subscriptions, "ann", -2)
    _add(subscriptions, "bob", -1)

    class FlakyRepo:
        def find_active_expired(self, now):
            return subscriptions.find_active_expired(now)

        def mark_expired(self, sub):
            if sub.id == "ann":
                raise RuntimeError("write conflict")
            return subscriptions.mark_expired(sub)

    report = ExpirationScanner(FlakyRepo(), enqueuer).run_once()

    assert (report.found, report.expired, report.failed) == (2, 1, 1)
    assert subscriptions.get("ann").status == ACTIVE
    assert subscriptions.get("bob").status == EXPIRED
    assert queue.length() == 1


def test_enqueue_failure_does_not_stop_scan(subscriptions, store, queue):
    _add(subscriptions, "ann", -2)
    _add(subscriptions, "bob", -1)
    real = JobEnqueuer(store, queue)

    class FlakyEnqueuer:
        def enqueue(self, kind, payload):
            if payload["email"] == "ann@x.io":
                raise ConnectionError("queue unavailable")
            return real.enqueue(kind, payload)

    report = ExpirationScanner(subscriptions, FlakyEnqueuer()).run_once()

    assert report.expired == 2
    assert report.failed == 1
    assert queue.length() == 1


def test_expired_job_is_delivered(subscriptions, store, queue, worker, client):
    _add(subscriptions, "ann", -1)
    enqueuer = JobEnqueuer(store, queue, worker)

    ExpirationScanner(subscriptions, enqueuer).run_once()

    assert client.calls == [("subscription_expired", "ann@x.io")]
    assert [j.state for j in store.iter_jobs()] == [COMPLETED]


def test_schedule_runs_scan_on_each_tick(subscriptions, enqueuer, queue):
    timer = ManualTimer()
    purged = []
    schedule = ExpirationSchedule(
        ExpirationScanner(subscriptions, enqueuer), timer, after_tick=lambda: purged.append(1),
    )
    schedule.start()

    assert timer.fire().found == 0
    _add(subscriptions, "ann", -1)
    assert timer.fire().expired == 1
    assert len(purged) == 2
    assert queue.length() == 1

    schedule.stop()
    assert timer.stopped


def test_schedule_tick_survives_query_failure():
    class BrokenScanner:
        def run_once(self):
            raise RuntimeError("database unavailable")

    timer = ManualTimer()
    schedule = ExpirationSchedule(BrokenScanner(), timer)
    schedule.start()
    assert timer.fire() is None


def test_interval_timer_fires_immediately_and_repeats():
    fired = threading.Event()
    ticks = []

    def callback():
        ticks.append(1)
        if len(ticks) >= 2:
            fired.set()

    timer = IntervalTimer(0.01)
    timer.start(callback)
    try:
        assert fired.wait(5)
    finally:
        timer.stop(timeout=5)
    assert len(ticks) >= 2
