import httpx
from typing import List
from starling_core import StarlingSession
from starling_core.providers.starling import USER_AGENT
from . import config
from .db import SqlTransactionStore, create_store_engine


def get_client() -> httpx.AsyncClient:
    """One connection pool shared by every session in a command."""
    return httpx.AsyncClient(timeout=30.0, headers={"User-Agent": USER_AGENT})


def get_sessions(conf: config.Config, client: httpx.AsyncClient) -> List[StarlingSession]:
    """
    Builds one session per configured access token.
    Raises ValueError if no token is configured.
    """
    if not conf.keys:
        raise ValueError("No access tokens configured. Run 'starling add-key' first.")

    return [
        StarlingSession(
            key.token,
            client=client,
            base_url=conf.api_url,
            account_uid=key.account_uid,
            name=key.name,
        )
        for key in conf.keys
    ]


def get_store() -> SqlTransactionStore:
    return SqlTransactionStore(create_store_engine(config.database_url()))
