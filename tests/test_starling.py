from datetime import timedelta
from typing import Callable

import httpx
import pytest

from starling_core import (
    CredentialExpired,
    DeserializationFailed,
    Direction,
    Money,
    RetrievalFailed,
    StarlingSession,
    Status,
    TimeWindow,
)
from starling_core.providers.starling import format_timestamp, parse_timestamp

from helpers import feed_item, utc

BASE = "https://api.test/api/v2"
ACCOUNT = {
    "accountUid": "acc-1",
    "accountType": "PRIMARY",
    "defaultCategory": "cat-1",
    "currency": "GBP",
    "createdAt": "2020-05-01T12:00:00.000Z",
    "name": "Personal",
}


def make_session(handler: Callable[[httpx.Request], httpx.Response], **kwargs) -> StarlingSession:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return StarlingSession("secret-token", client=client, base_url=BASE, **kwargs)


def accounts_then(feed_handler):
    """Serves the account listing, delegating everything else."""

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/v2/accounts":
            return httpx.Response(200, json={"accounts": [ACCOUNT]})
        return feed_handler(request)

    return handler


def test_timestamps_use_utc_z_suffix():
    assert format_timestamp(utc(2024, 1, 1, 10)) == "2024-01-01T10:00:00.000Z"
    assert parse_timestamp("2024-01-01T10:00:00.000Z") == utc(2024, 1, 1, 10)


@pytest.mark.anyio
async def test_resolve_sends_bearer_token_and_maps_account():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"accounts": [ACCOUNT]})

    session = make_session(handler)
    identity = await session.resolve()

    assert identity.account_uid == "acc-1"
    assert identity.default_category == "cat-1"
    assert identity.created_at == utc(2020, 5, 1, 12)
    assert seen[0].headers["Authorization"] == "Bearer secret-token"
    assert seen[0].headers["Accept"] == "application/json"

    # Cached for the life of the session.
    await session.resolve()
    assert len(seen) == 1


@pytest.mark.anyio
@pytest.mark.parametrize("status", [401, 403])
async def test_resolve_rejected_token_is_credential_expired(status):
    session = make_session(lambda request: httpx.Response(status))
    with pytest.raises(CredentialExpired) as exc:
        await session.resolve()
    assert exc.value.status_code == status


@pytest.mark.anyio
async def test_resolve_server_error_is_retrieval_failed():
    session = make_session(lambda request: httpx.Response(500, text="oops"))
    with pytest.raises(RetrievalFailed) as exc:
        await session.resolve()
    assert exc.value.status_code == 500


@pytest.mark.anyio
async def test_resolve_transport_error_is_retrieval_failed():
    def handler(request):
        raise httpx.ConnectError("connection refused")

    session = make_session(handler)
    with pytest.raises(RetrievalFailed) as exc:
        await session.resolve()
    assert isinstance(exc.value.cause, httpx.ConnectError)


@pytest.mark.anyio
async def test_resolve_with_no_accounts_fails():
    session = make_session(lambda request: httpx.Response(200, json={"accounts": []}))
    with pytest.raises(RetrievalFailed):
        await session.resolve()


@pytest.mark.anyio
@pytest.mark.parametrize(
    "body",
    [
        {"accounts": [{k: v for k, v in ACCOUNT.items() if k != "accountUid"}]},
        {"accounts": [{k: v for k, v in ACCOUNT.items() if k != "createdAt"}]},
        {"accounts": [dict(ACCOUNT, createdAt="yesterday")]},
        {"accounts": ["acc-1"]},
        {"accountList": [ACCOUNT]},
        [ACCOUNT],
    ],
)
async def test_malformed_account_listing_is_deserialization_failed(body):
    session = make_session(lambda request: httpx.Response(200, json=body))
    with pytest.raises(DeserializationFailed) as exc:
        await session.resolve()
    assert exc.value.status_code == 200
    assert session.identity is None


@pytest.mark.anyio
async def test_resolve_picks_first_account_unless_pinned():
    second = dict(ACCOUNT, accountUid="acc-2", name="Joint")
    payload = {"accounts": [ACCOUNT, second]}

    first = await make_session(lambda r: httpx.Response(200, json=payload)).resolve()
    assert first.account_uid == "acc-1"

    pinned = await make_session(
        lambda r: httpx.Response(200, json=payload), account_uid="acc-2"
    ).resolve()
    assert pinned.account_uid == "acc-2"

    with pytest.raises(RetrievalFailed):
        await make_session(
            lambda r: httpx.Response(200, json=payload), account_uid="missing"
        ).resolve()


@pytest.mark.anyio
async def test_settled_between_builds_window_query_and_maps_items():
    window = TimeWindow(start=utc(2024, 1, 1), end=utc(2024, 1, 8))
    seen = []

    def feed(request):
        seen.append(request)
        return httpx.Response(
            200, json={"feedItems": [feed_item("tx1", "2024-01-03T09:00:00.000Z")]}
        )

    session = make_session(accounts_then(feed))
    transactions = await session.settled_transactions_between(window)

    request = seen[0]
    assert request.url.path == "/api/v2/feed/account/acc-1/settled-transactions-between"
    assert request.url.params["minTransactionTimestamp"] == "2024-01-01T00:00:00.000Z"
    assert request.url.params["maxTransactionTimestamp"] == "2024-01-08T00:00:00.000Z"

    [tx] = transactions
    assert tx.uid == "tx1"
    assert tx.time == utc(2024, 1, 3, 9)
    assert tx.direction == Direction.OUT
    assert tx.amount == Money(1250, "GBP")
    assert tx.status == Status.SETTLED
    assert tx.counterparty_name == "Pret A Manger"
    assert tx.account_uid == "acc-1"


@pytest.mark.anyio
async def test_settled_between_never_returns_items_outside_window():
    now = utc(2024, 1, 8, 12)
    window = TimeWindow.trailing(7, now=now)
    inside = format_timestamp(now - timedelta(days=1))
    outside = format_timestamp(now - timedelta(days=8))

    def feed(request):
        return httpx.Response(
            200, json={"feedItems": [feed_item("old", outside), feed_item("new", inside)]}
        )

    transactions = await make_session(accounts_then(feed)).settled_transactions_between(window)
    assert [t.uid for t in transactions] == ["new"]


@pytest.mark.anyio
async def test_optional_fields_default_and_unknown_fields_are_ignored():
    item = feed_item("tx1", "2024-01-03T09:00:00.000Z", brandNewField={"nested": True})
    del item["reference"]
    del item["counterPartyName"]

    def feed(request):
        return httpx.Response(200, json={"feedItems": [item], "extra": 1})

    window = TimeWindow(start=utc(2024, 1, 1), end=utc(2024, 1, 8))
    [tx] = await make_session(accounts_then(feed)).settled_transactions_between(window)
    assert tx.reference == ""
    assert tx.counterparty_name == ""


@pytest.mark.anyio
@pytest.mark.parametrize(
    "body",
    [
        {"feedItems": [{"feedItemUid": "tx1"}]},
        {"feedItems": [feed_item("tx1", "2024-01-03T09:00:00.000Z", direction="SIDEWAYS")]},
        {"feedItems": [feed_item("tx1", "not a date")]},
        {"feedItems": [feed_item("tx1", "2024-01-03T09:00:00.000Z", sourceAmount={"currency": "GBP", "minorUnits": 12.5})]},
        {"items": []},
    ],
)
async def test_malformed_feed_is_deserialization_failed(body):
    window = TimeWindow(start=utc(2024, 1, 1), end=utc(2024, 1, 8))
    session = make_session(accounts_then(lambda r: httpx.Response(200, json=body)))

    with pytest.raises(DeserializationFailed) as exc:
        await session.settled_transactions_between(window)
    assert exc.value.account == "acc-1"
    assert exc.value.status_code == 200


@pytest.mark.anyio
async def test_non_json_body_is_deserialization_failed():
    window = TimeWindow(start=utc(2024, 1, 1), end=utc(2024, 1, 8))
    session = make_session(accounts_then(lambda r: httpx.Response(200, text="<html>")))
    with pytest.raises(DeserializationFailed):
        await session.settled_transactions_between(window)


@pytest.mark.anyio
async def test_feed_rejection_is_credential_expired():
    window = TimeWindow(start=utc(2024, 1, 1), end=utc(2024, 1, 8))
    session = make_session(accounts_then(lambda r: httpx.Response(403)))
    with pytest.raises(CredentialExpired) as exc:
        await session.settled_transactions_between(window)
    assert exc.value.account == "acc-1"


@pytest.mark.anyio
async def test_changes_since_queries_default_category():
    seen = []

    def feed(request):
        seen.append(request)
        return httpx.Response(
            200,
            json={"feedItems": [feed_item("tx9", "2023-12-01T09:00:00.000Z", status="PENDING")]},
        )

    session = make_session(accounts_then(feed))
    [tx] = await session.transactions_since(utc(2024, 1, 1))

    assert seen[0].url.path == "/api/v2/feed/account/acc-1/category/cat-1"
    assert seen[0].url.params["changesSince"] == "2024-01-01T00:00:00.000Z"
    assert tx.status == Status.PENDING


@pytest.mark.anyio
async def test_changes_since_shares_error_taxonomy():
    session = make_session(accounts_then(lambda r: httpx.Response(502)))
    with pytest.raises(RetrievalFailed):
        await session.transactions_since(utc(2024, 1, 1))


@pytest.mark.anyio
async def test_balance():
    def feed(request):
        assert request.url.path == "/api/v2/accounts/acc-1/balance"
        return httpx.Response(
            200,
            json={
                "clearedBalance": {"currency": "GBP", "minorUnits": 10000},
                "effectiveBalance": {"currency": "GBP", "minorUnits": 8750},
                "pendingTransactions": {"currency": "GBP", "minorUnits": 1250},
            },
        )

    balance = await make_session(accounts_then(feed)).balance()
    assert balance.cleared == Money(10000, "GBP")
    assert balance.effective == Money(8750, "GBP")


@pytest.mark.anyio
async def test_owned_client_is_closed_on_exit():
    async with StarlingSession("secret-token", base_url=BASE) as session:
        client = session.client
    assert client.is_closed


@pytest.mark.anyio
async def test_borrowed_client_is_left_open():
    async with httpx.AsyncClient() as client:
        async with StarlingSession("secret-token", client=client) as session:
            assert session.label == "token ...oken"
        assert not client.is_closed
