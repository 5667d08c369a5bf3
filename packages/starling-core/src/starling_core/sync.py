import asyncio
from typing import Awaitable, Iterable, List, Optional, Sequence, Tuple, TypeVar

from .errors import AllAccountsFailed, FetchError, RetrievalFailed
from .interfaces import FinancialProvider, TransactionStore
from .logger import get_logger
from .models import AccountFailure, Balance, SyncResult, TimeWindow, Transaction

logger = get_logger(__name__)

T = TypeVar("T")


def merge_ordered(batches: Iterable[Sequence[Transaction]]) -> Tuple[Transaction, ...]:
    """
    Flatten per-account batches into one sorted sequence with one entry per uid.
    The first record in sorted order wins when a uid repeats.
    """
    seen = set()
    merged = []
    for transaction in sorted(t for batch in batches for t in batch):
        if transaction.uid in seen:
            continue
        seen.add(transaction.uid)
        merged.append(transaction)
    return tuple(merged)


class SyncOrchestrator:
    def __init__(
        self, store: Optional[TransactionStore] = None, timeout: Optional[float] = None
    ):
        # Without a store, sync fetches and orders but persists nothing.
        self.store = store
        self.timeout = timeout

    async def _bounded(self, provider: FinancialProvider, call: Awaitable[T]) -> T:
        if self.timeout is None:
            return await call
        try:
            return await asyncio.wait_for(call, timeout=self.timeout)
        except asyncio.TimeoutError as e:
            raise RetrievalFailed(
                f"Timed out after {self.timeout:g}s", account=provider.label, cause=e
            ) from e

    async def _gather(
        self, providers: Sequence[FinancialProvider], calls: List[Awaitable[T]]
    ) -> Tuple[List[Tuple[FinancialProvider, T]], List[AccountFailure]]:
        # Each call is isolated: one account failing never cancels the others.
        results = await asyncio.gather(
            *(self._bounded(p, c) for p, c in zip(providers, calls)),
            return_exceptions=True,
        )

        successes = []
        failures = []
        for provider, result in zip(providers, results):
            if isinstance(result, FetchError):
                logger.warning("%s failed: %s", provider.label, result)
                failures.append(AccountFailure(account=provider.label, error=result))
            elif isinstance(result, BaseException):
                raise result
            else:
                successes.append((provider, result))
        return successes, failures

    async def sync(
        self, providers: Sequence[FinancialProvider], window: TimeWindow
    ) -> SyncResult:
        if not providers:
            logger.info("No accounts configured, nothing to sync")
            return SyncResult(window=window)

        successes, failures = await self._gather(
            providers, [p.settled_transactions_between(window) for p in providers]
        )
        if not successes:
            raise AllAccountsFailed(failures)

        transactions = merge_ordered(batch for _, batch in successes)
        if transactions and self.store is not None:
            self.store.merge_and_persist(transactions)

        logger.info(
            "Synced %d transaction(s) from %d/%d account(s)",
            len(transactions),
            len(successes),
            len(providers),
        )
        return SyncResult(transactions=transactions, failures=failures, window=window)

    async def balances(
        self, providers: Sequence[FinancialProvider]
    ) -> Tuple[List[Tuple[str, Balance]], List[AccountFailure]]:
        successes, failures = await self._gather(
            providers, [p.balance() for p in providers]
        )
        return [(p.label, balance) for p, balance in successes], failures
