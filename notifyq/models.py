from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, Optional

# Job States
PENDING = "pending"
IN_PROGRESS = "in_progress"
WAITING_RETRY = "waiting_retry"
COMPLETED = "completed"
FAILED = "failed"

JOB_STATES = (PENDING, IN_PROGRESS, WAITING_RETRY, COMPLETED, FAILED)
TERMINAL_STATES = frozenset({COMPLETED, FAILED})

# Subscription statuses (owned by the billing service)
ACTIVE = "ACTIVE"
CANCELLED = "CANCELLED"
EXPIRED = "EXPIRED"

DEFAULT_MAX_ATTEMPTS = 3


class NotificationKind(str, Enum):
    CREATED = "subscription_created"
    UPDATED = "subscription_updated"
    CANCELLED = "subscription_cancelled"
    EXPIRED = "subscription_expired"


@dataclass
class Job:
    id: str
    kind: str
    payload: Dict[str, Any] = field(default_factory=dict)
    state: str = PENDING
    attempts: int = 0
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    created_at: str = ""
    updated_at: str = ""
    last_error: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.state in TERMINAL_STATES

    @property
    def attempts_left(self) -> int:
        return max(0, self.max_attempts - self.attempts)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Job":
        known = {k: data[k] for k in cls.__dataclass_fields__ if k in data}
        return cls(**known)


@dataclass
class Subscription:
    id: str
    email: str
    name: str
    plan_name: str
    end_date: str
    status: str = ACTIVE
    start_date: str = ""
