from typing import Dict, List, Optional, Sequence
from datetime import datetime, timezone
from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, Field, create_engine, Session, col, select
from starling_core.interfaces import TransactionStore
from starling_core.logger import get_logger
from starling_core.models import Direction, Money, Status, Transaction

logger = get_logger(__name__)

LOOKUP_CHUNK = 500


class StoredTransaction(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    uid: str = Field(index=True, unique=True)
    account_uid: str = Field(index=True)
    time: datetime = Field(index=True)
    counterparty_name: str
    direction: str
    minor_units: int
    currency: str
    reference: str
    status: str

    @staticmethod
    def columns_for(t: Transaction) -> dict:
        return {
            "account_uid": t.account_uid,
            "time": t.time.astimezone(timezone.utc),
            "counterparty_name": t.counterparty_name,
            "direction": t.direction.value,
            "minor_units": t.amount.minor_units,
            "currency": t.amount.currency,
            "reference": t.reference,
            "status": t.status.value,
        }

    @classmethod
    def from_transaction(cls, t: Transaction) -> "StoredTransaction":
        return cls(uid=t.uid, **cls.columns_for(t))

    def refresh_from(self, t: Transaction) -> None:
        for name, value in self.columns_for(t).items():
            setattr(self, name, value)

    def to_transaction(self) -> Transaction:
        # SQLite hands back naive values on some SQLAlchemy releases.
        if self.time.tzinfo is None:
            time = self.time.replace(tzinfo=timezone.utc)
        else:
            time = self.time.astimezone(timezone.utc)
        return Transaction(
            time=time,
            uid=self.uid,
            counterparty_name=self.counterparty_name,
            direction=Direction(self.direction),
            amount=Money(minor_units=self.minor_units, currency=self.currency),
            reference=self.reference,
            status=Status(self.status),
            account_uid=self.account_uid,
        )


def create_store_engine(url: str) -> Engine:
    return create_engine(url, connect_args={"check_same_thread": False})


class SqlTransactionStore(TransactionStore):
    def __init__(self, engine: Engine):
        self.engine = engine
        SQLModel.metadata.create_all(engine)

    def merge_and_persist(self, transactions: Sequence[Transaction]) -> None:
        """
        Upsert by uid. Known rows are refreshed in place, so a pending item
        that has since settled changes status instead of appearing twice.
        """
        if not transactions:
            return

        uids = sorted({t.uid for t in transactions})
        inserted = updated = 0
        with Session(self.engine) as session:
            existing: Dict[str, StoredTransaction] = {}
            # Stay under SQLite's bound-parameter limit.
            for i in range(0, len(uids), LOOKUP_CHUNK):
                chunk = uids[i : i + LOOKUP_CHUNK]
                rows = session.exec(
                    select(StoredTransaction).where(col(StoredTransaction.uid).in_(chunk))
                ).all()
                existing.update((row.uid, row) for row in rows)

            for t in transactions:
                row = existing.get(t.uid)
                if row is None:
                    row = StoredTransaction.from_transaction(t)
                    existing[t.uid] = row
                    inserted += 1
                elif row.to_transaction() != t:
                    row.refresh_from(t)
                    updated += 1
                else:
                    continue
                session.add(row)

            session.commit()
        logger.info("Store merge: %d new, %d updated", inserted, updated)

    def list_all(self) -> List[Transaction]:
        with Session(self.engine) as session:
            rows = session.exec(select(StoredTransaction)).all()
            return sorted(row.to_transaction() for row in rows)
