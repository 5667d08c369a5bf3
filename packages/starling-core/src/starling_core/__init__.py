from .errors import (
    AllAccountsFailed,
    CredentialExpired,
    DeserializationFailed,
    FetchError,
    RetrievalFailed,
    StarlingError,
)
from .models import (
    AccountFailure,
    AccountIdentity,
    Balance,
    Direction,
    Money,
    Status,
    SyncResult,
    TimeWindow,
    Transaction,
)
from .interfaces import FinancialProvider, TransactionStore
from .providers.starling import StarlingSession
from .sync import SyncOrchestrator

__all__ = [
    "AccountFailure",
    "AccountIdentity",
    "AllAccountsFailed",
    "Balance",
    "CredentialExpired",
    "DeserializationFailed",
    "Direction",
    "FetchError",
    "FinancialProvider",
    "Money",
    "RetrievalFailed",
    "StarlingError",
    "StarlingSession",
    "Status",
    "SyncOrchestrator",
    "SyncResult",
    "TimeWindow",
    "Transaction",
    "TransactionStore",
]
