import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

from starling_core import (
    AccountIdentity,
    Balance,
    Direction,
    FinancialProvider,
    Money,
    Status,
    TimeWindow,
    Transaction,
)


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


def make_tx(
    uid: str,
    time: datetime,
    *,
    pence: int = 1000,
    direction: Direction = Direction.OUT,
    status: Status = Status.SETTLED,
    counterparty: str = "Tesco",
    reference: str = "",
    account_uid: str = "acc-1",
) -> Transaction:
    return Transaction(
        time=time,
        uid=uid,
        counterparty_name=counterparty,
        direction=direction,
        amount=Money(pence, "GBP"),
        reference=reference,
        status=status,
        account_uid=account_uid,
    )


def feed_item(uid: str, time: str, **overrides: Any) -> Dict[str, Any]:
    """A feed item shaped like the Starling API returns it."""
    item = {
        "feedItemUid": uid,
        "categoryUid": "cat-1",
        "amount": {"currency": "GBP", "minorUnits": 1250},
        "sourceAmount": {"currency": "GBP", "minorUnits": 1250},
        "direction": "OUT",
        "updatedAt": time,
        "transactionTime": time,
        "settlementTime": time,
        "source": "MASTER_CARD",
        "status": "SETTLED",
        "counterPartyType": "MERCHANT",
        "counterPartyName": "Pret A Manger",
        "reference": "PRET LONDON",
        "country": "GB",
        "spendingCategory": "EATING_OUT",
    }
    item.update(overrides)
    return item


class FakeProvider(FinancialProvider):
    """In-memory account that can be slow or broken on demand."""

    def __init__(
        self,
        name: str,
        transactions: Sequence[Transaction] = (),
        error: Optional[BaseException] = None,
        delay: float = 0.0,
        balance: Optional[Balance] = None,
    ):
        self.name = name
        self.transactions = list(transactions)
        self.error = error
        self.delay = delay
        self._balance = balance
        self.calls: List[TimeWindow] = []

    @property
    def label(self) -> str:
        return self.name

    async def resolve(self) -> AccountIdentity:
        return AccountIdentity(
            token="t", account_uid=self.name, default_category="c", created_at=utc(2020, 1, 1)
        )

    async def _respond(self, value):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return value

    async def settled_transactions_between(self, window: TimeWindow) -> List[Transaction]:
        self.calls.append(window)
        return await self._respond([t for t in self.transactions if window.contains(t.time)])

    async def transactions_since(self, since: datetime) -> List[Transaction]:
        return await self._respond([t for t in self.transactions if t.time >= since])

    async def balance(self) -> Balance:
        return await self._respond(self._balance)
