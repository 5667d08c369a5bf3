from typing import List, Optional, TYPE_CHECKING

if TYPE_CHECKING:
    from .models import AccountFailure


class StarlingError(Exception):
    """Base class for everything the sync pipeline raises."""


class FetchError(StarlingError):
    """
    A single call against one account did not produce usable data.
    Carries enough context to attribute the failure to an account.
    """

    def __init__(
        self,
        message: str,
        account: Optional[str] = None,
        status_code: Optional[int] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.account = account
        self.status_code = status_code
        self.cause = cause

    def __str__(self) -> str:
        parts = [self.message]
        if self.account:
            parts.append(f"account={self.account}")
        if self.status_code is not None:
            parts.append(f"status={self.status_code}")
        return " ".join(parts)


class CredentialExpired(FetchError):
    """The provider rejected the token. A new token must be issued; never retried."""


class RetrievalFailed(FetchError):
    """Transport error, timeout or unexpected status. Safe to retry later."""


class DeserializationFailed(FetchError):
    """The response body did not have the expected shape."""


class AllAccountsFailed(StarlingError):
    """Every account in a sync cycle failed."""

    def __init__(self, failures: List["AccountFailure"]):
        self.failures = list(failures)
        summary = "; ".join(f"{f.account}: {f.error}" for f in self.failures)
        super().__init__(f"All {len(self.failures)} account(s) failed: {summary}")
