from abc import ABC, abstractmethod
from typing import List, Sequence
from datetime import datetime
from .models import AccountIdentity, Balance, TimeWindow, Transaction


class FinancialProvider(ABC):
    """One authenticated account at the bank."""

    @property
    @abstractmethod
    def label(self) -> str:
        """Human-readable name used when reporting failures."""

    @abstractmethod
    async def resolve(self) -> AccountIdentity:
        """Look up the account behind the credential."""

    @abstractmethod
    async def settled_transactions_between(
        self, window: TimeWindow
    ) -> List[Transaction]:
        """Settled transactions with a timestamp inside the window."""

    @abstractmethod
    async def transactions_since(self, since: datetime) -> List[Transaction]:
        """Every feed item that changed after `since`."""

    @abstractmethod
    async def balance(self) -> Balance:
        pass


class TransactionStore(ABC):
    @abstractmethod
    def merge_and_persist(self, transactions: Sequence[Transaction]) -> None:
        """
        Insert unseen transactions and refresh known ones, keyed by uid.
        Submitting the same sequence twice leaves the same stored set.
        """

    @abstractmethod
    def list_all(self) -> List[Transaction]:
        """All stored transactions in their natural order."""
