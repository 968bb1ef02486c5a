"""Atomic counter store used for per-branch parse-failure tracking."""

from __future__ import annotations

from typing import Protocol

from sqlalchemy import delete as sa_delete
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlmodel import Session, select

from shipflow.storage.common import SqliteStore, to_db_datetime, utc_now
from shipflow.storage.sqlmodel_models import Counter


class CounterStore(Protocol):
    def increment(self, key: str) -> int: ...

    def get(self, key: str) -> int: ...

    def reset(self, key: str) -> None: ...


def parse_failure_key(branch_id: str) -> str:
    return f"predictive_branch:update_status:{branch_id}"


class SqliteCounterStore(SqliteStore):
    """Counters kept in the ``counters`` table; each operation is one statement."""

    def increment(self, key: str) -> int:
        now = to_db_datetime(utc_now())
        statement = sqlite_insert(Counter).values(key=key, value=1, updated_at=now)
        statement = statement.on_conflict_do_update(
            index_elements=["key"],
            set_={"value": Counter.value + 1, "updated_at": now},
        )
        with Session(self.engine) as session:
            session.exec(statement)
            value = session.exec(select(Counter.value).where(Counter.key == key)).one()
            session.commit()
            return value

    def get(self, key: str) -> int:
        with Session(self.engine) as session:
            value = session.exec(select(Counter.value).where(Counter.key == key)).one_or_none()
        return value or 0

    def reset(self, key: str) -> None:
        with Session(self.engine) as session:
            session.exec(sa_delete(Counter).where(Counter.key == key))
            session.commit()
