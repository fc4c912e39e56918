import json
from typing import Iterator, Optional

import redis

from .models import Job

DEFAULT_PREFIX = "notifyq"


def connect_redis(url: str):
    return redis.Redis.from_url(url, decode_responses=True)


def _text(value) -> Optional[str]:
    if value is None:
        return None
    return value.decode("utf-8") if isinstance(value, (bytes, bytearray)) else str(value)


class RedisJobStore:
    """Job records as JSON strings under ``<prefix>:job:<id>``; TTL via EXPIRE."""

    def __init__(self, client, prefix: str = DEFAULT_PREFIX):
        self.client = client
        self.prefix = prefix

    def _key(self, job_id: str) -> str:
        return f"{self.prefix}:job:{job_id}"

    def get(self, job_id: str) -> Optional[Job]:
        raw = _text(self.client.get(self._key(job_id)))
        if raw is None:
            return None
        return Job.from_dict(json.loads(raw))

    def put(self, job: Job, ttl_seconds: Optional[int] = None) -> None:
        value = json.dumps(job.to_dict())
        if ttl_seconds:
            self.client.set(self._key(job.id), value, ex=ttl_seconds)
        else:
            # KEEPTTL so rewriting a record never drops an expiry already set.
            self.client.set(self._key(job.id), value, keepttl=True)

    def expire(self, job_id: str, ttl_seconds: int) -> bool:
        return bool(self.client.expire(self._key(job_id), ttl_seconds))

    def iter_jobs(self, state: Optional[str] = None) -> Iterator[Job]:
        jobs = []
        for key in self.client.scan_iter(match=f"{self.prefix}:job:*"):
            raw = _text(self.client.get(_text(key)))
            if raw is None:
                continue
            job = Job.from_dict(json.loads(raw))
            if state is None or job.state == state:
                jobs.append(job)
        jobs.sort(key=lambda j: j.created_at)
        return iter(jobs)

    def purge_expired(self) -> int:
        # Redis evicts expired keys itself.
        return 0


class RedisJobQueue:
    """FIFO list of job ids: RPUSH to the tail, LPOP from the head."""

    def __init__(self, client, prefix: str = DEFAULT_PREFIX):
        self.client = client
        self.key = f"{prefix}:queue"

    def push_tail(self, job_id: str) -> None:
        self.client.rpush(self.key, job_id)

    def pop_head(self) -> Optional[str]:
        return _text(self.client.lpop(self.key))

    def length(self) -> int:
        return int(self.client.llen(self.key))

    def contains(self, job_id: str) -> bool:
        return self.client.lpos(self.key, job_id) is not None
