from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import List, Optional, Tuple

from .errors import FetchError


class Direction(str, Enum):
    IN = "IN"
    OUT = "OUT"


class Status(str, Enum):
    UPCOMING = "UPCOMING"
    PENDING = "PENDING"
    SETTLED = "SETTLED"
    ACCOUNT_CHECK = "ACCOUNT_CHECK"


def _require_utc(value: datetime, name: str) -> datetime:
    if value.tzinfo is None:
        raise ValueError(f"{name} must be timezone-aware")
    return value.astimezone(timezone.utc)


@dataclass(frozen=True, order=True)
class Money:
    """An amount in integer minor units (pence, cents) plus its currency code."""

    minor_units: int
    currency: str

    def format(self) -> str:
        sign = "-" if self.minor_units < 0 else ""
        major, minor = divmod(abs(self.minor_units), 100)
        return f"{sign}{major}.{minor:02d}"


@dataclass(frozen=True)
class AccountIdentity:
    token: str = field(repr=False)
    account_uid: str
    default_category: str
    created_at: datetime
    name: str = ""
    currency: str = ""


@dataclass(frozen=True)
class Balance:
    cleared: Money
    effective: Money


@dataclass(frozen=True, order=True)
class Transaction:
    """
    A single feed item. Field order is the sort order: time first, the rest
    break ties so that any list of transactions has exactly one sorted form.
    """

    time: datetime
    uid: str
    counterparty_name: str
    direction: Direction
    amount: Money
    reference: str
    status: Status
    account_uid: str = ""

    @property
    def is_settled(self) -> bool:
        return self.status == Status.SETTLED


@dataclass(frozen=True)
class TimeWindow:
    """Half-open interval [start, end) in UTC."""

    start: datetime
    end: datetime

    def __post_init__(self):
        start = _require_utc(self.start, "start")
        end = _require_utc(self.end, "end")
        if start > end:
            raise ValueError("Window start must not be after its end")
        object.__setattr__(self, "start", start)
        object.__setattr__(self, "end", end)

    @classmethod
    def trailing(cls, days: int, now: Optional[datetime] = None) -> "TimeWindow":
        if days <= 0:
            raise ValueError("Window size must be a positive number of days")
        end = now or datetime.now(timezone.utc)
        return cls(start=end - timedelta(days=days), end=end)

    def contains(self, moment: datetime) -> bool:
        return self.start <= moment < self.end


@dataclass(frozen=True)
class AccountFailure:
    account: str
    error: FetchError


@dataclass
class SyncResult:
    transactions: Tuple[Transaction, ...] = ()
    failures: List[AccountFailure] = field(default_factory=list)
    window: Optional[TimeWindow] = None

    @property
    def degraded(self) -> bool:
        return bool(self.failures)
