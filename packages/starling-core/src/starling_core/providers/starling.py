import httpx
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, TypeVar

from ..errors import CredentialExpired, DeserializationFailed, RetrievalFailed
from ..interfaces import FinancialProvider
from ..logger import get_logger
from ..models import (
    AccountIdentity,
    Balance,
    Direction,
    Money,
    Status,
    TimeWindow,
    Transaction,
)

logger = get_logger(__name__)

BASE_URL = "https://api.starlingbank.com/api/v2"
USER_AGENT = "starling-sync/0.1.0"

T = TypeVar("T")


# --- Wire mapping ---
# Everything that knows Starling's field names lives here. Each function raises
# KeyError/TypeError/ValueError on a malformed payload; the session turns those
# into DeserializationFailed.


def format_timestamp(value: datetime) -> str:
    """2024-01-01T10:00:00.000Z"""
    utc = value.astimezone(timezone.utc)
    return utc.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: str) -> datetime:
    if not isinstance(value, str):
        raise TypeError(f"Expected a timestamp string, got {type(value).__name__}")
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def money_from_dict(data: Dict[str, Any]) -> Money:
    minor_units = data["minorUnits"]
    if isinstance(minor_units, bool) or not isinstance(minor_units, int):
        raise TypeError("minorUnits must be an integer")
    return Money(minor_units=minor_units, currency=str(data["currency"]))


def identity_from_account(data: Dict[str, Any], token: str) -> AccountIdentity:
    return AccountIdentity(
        token=token,
        account_uid=str(data["accountUid"]),
        default_category=str(data["defaultCategory"]),
        created_at=parse_timestamp(data["createdAt"]),
        name=str(data.get("name") or ""),
        currency=str(data.get("currency") or ""),
    )


def transaction_from_feed_item(data: Dict[str, Any], account_uid: str) -> Transaction:
    return Transaction(
        time=parse_timestamp(data["transactionTime"]),
        uid=str(data["feedItemUid"]),
        counterparty_name=str(data.get("counterPartyName") or ""),
        direction=Direction(data["direction"]),
        amount=money_from_dict(data["sourceAmount"]),
        reference=str(data.get("reference") or ""),
        status=Status(data["status"]),
        account_uid=account_uid,
    )


def balance_from_dict(data: Dict[str, Any]) -> Balance:
    return Balance(
        cleared=money_from_dict(data["clearedBalance"]),
        effective=money_from_dict(data["effectiveBalance"]),
    )


# --- Session ---


class StarlingSession(FinancialProvider):
    def __init__(
        self,
        token: str,
        client: Optional[httpx.AsyncClient] = None,
        base_url: str = BASE_URL,
        account_uid: Optional[str] = None,
        name: Optional[str] = None,
    ):
        self.token = token
        self.base_url = base_url.rstrip("/")
        # Pins the account when one token can see several.
        self.account_uid = account_uid
        self.name = name
        self.identity: Optional[AccountIdentity] = None
        # Borrow the caller's client when given one, otherwise own a private one.
        self._internal_client = client is None
        self.client = client or httpx.AsyncClient(
            timeout=30.0, headers={"User-Agent": USER_AGENT}
        )

    async def close(self):
        if self._internal_client:
            await self.client.aclose()

    async def __aenter__(self) -> "StarlingSession":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.close()

    @property
    def label(self) -> str:
        if self.name:
            return self.name
        if self.identity is not None:
            return self.identity.name or self.identity.account_uid
        return f"token ...{self.token[-4:]}"

    @property
    def _account_ref(self) -> str:
        return self.identity.account_uid if self.identity else self.label

    async def _get(self, path: str, params: Optional[Dict[str, str]] = None) -> httpx.Response:
        logger.debug("GET %s for %s", path, self.label)
        try:
            resp = await self.client.get(
                f"{self.base_url}{path}",
                params=params,
                headers={
                    "Authorization": f"Bearer {self.token}",
                    "Accept": "application/json",
                },
            )
        except httpx.HTTPError as e:
            raise RetrievalFailed(
                f"Network error: {e}", account=self._account_ref, cause=e
            ) from e

        if resp.status_code in (401, 403):
            raise CredentialExpired(
                "Access token rejected, a new one must be issued",
                account=self._account_ref,
                status_code=resp.status_code,
            )
        if not resp.is_success:
            raise RetrievalFailed(
                f"Unexpected response from {path}",
                account=self._account_ref,
                status_code=resp.status_code,
            )
        return resp

    def _decode(self, resp: httpx.Response, parse: Callable[[Any], T]) -> T:
        try:
            return parse(resp.json())
        except ValueError as e:
            # Covers both a non-JSON body and bad field values.
            raise DeserializationFailed(
                f"Invalid API response: {e}",
                account=self._account_ref,
                status_code=resp.status_code,
                cause=e,
            ) from e
        except (KeyError, TypeError) as e:
            raise DeserializationFailed(
                f"Invalid API response: missing or malformed field {e}",
                account=self._account_ref,
                status_code=resp.status_code,
                cause=e,
            ) from e

    def _select(self, accounts: List[AccountIdentity]) -> AccountIdentity:
        if self.account_uid:
            for account in accounts:
                if account.account_uid == self.account_uid:
                    return account
            raise RetrievalFailed(
                f"Account {self.account_uid} is not visible to this token",
                account=self.label,
            )
        if len(accounts) > 1:
            logger.warning(
                "%s can see %d accounts (%s); using the first. "
                "Pin one with --account-uid to choose explicitly.",
                self.label,
                len(accounts),
                ", ".join(a.account_uid for a in accounts),
            )
        return accounts[0]

    async def resolve(self) -> AccountIdentity:
        if self.identity is not None:
            return self.identity

        resp = await self._get("/accounts")
        accounts = self._decode(
            resp,
            lambda body: [identity_from_account(a, self.token) for a in body["accounts"]],
        )
        if not accounts:
            raise RetrievalFailed("No accounts found for this token", account=self.label)

        self.identity = self._select(accounts)
        logger.info("Resolved %s to account %s", self.label, self.identity.account_uid)
        return self.identity

    def _parse_feed(self, resp: httpx.Response, account_uid: str) -> List[Transaction]:
        return self._decode(
            resp,
            lambda body: [
                transaction_from_feed_item(item, account_uid)
                for item in body["feedItems"]
            ],
        )

    async def settled_transactions_between(self, window: TimeWindow) -> List[Transaction]:
        identity = await self.resolve()
        resp = await self._get(
            f"/feed/account/{identity.account_uid}/settled-transactions-between",
            params={
                "minTransactionTimestamp": format_timestamp(window.start),
                "maxTransactionTimestamp": format_timestamp(window.end),
            },
        )
        items = self._parse_feed(resp, identity.account_uid)

        transactions = [t for t in items if window.contains(t.time)]
        if len(transactions) != len(items):
            logger.debug(
                "Dropped %d item(s) outside %s..%s for %s",
                len(items) - len(transactions),
                window.start,
                window.end,
                self.label,
            )
        logger.info("Fetched %d settled transaction(s) for %s", len(transactions), self.label)
        return transactions

    async def transactions_since(self, since: datetime) -> List[Transaction]:
        identity = await self.resolve()
        resp = await self._get(
            f"/feed/account/{identity.account_uid}/category/{identity.default_category}",
            params={"changesSince": format_timestamp(since)},
        )
        transactions = self._parse_feed(resp, identity.account_uid)
        logger.info("Fetched %d changed item(s) for %s", len(transactions), self.label)
        return transactions

    async def balance(self) -> Balance:
        identity = await self.resolve()
        resp = await self._get(f"/accounts/{identity.account_uid}/balance")
        return self._decode(resp, balance_from_dict)
