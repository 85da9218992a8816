# jobmarket/db.py
from typing import Iterable, List

from sqlalchemy import (
    Column,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    create_engine,
    insert,
    select,
    text,
    update,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import IntegrityError
from sqlalchemy.pool import StaticPool

from .errors import ConcurrentUpdate, NotFound
from .models import Bid, ChangeOrder, Event, Job
from .store import LABELS, Record, Store, kind_of

metadata = MetaData()

jobs = Table(
    "jobs", metadata,
    Column("id", String(64), primary_key=True),
    Column("customer_id", String(64), nullable=False, index=True),
    Column("mechanic_id", String(64), index=True),
    Column("status", String(32), nullable=False, index=True),
    Column("version", Integer, nullable=False),
    Column("created_at", String(40), nullable=False),
    Column("data", Text, nullable=False),
)

bids = Table(
    "bids", metadata,
    Column("id", String(64), primary_key=True),
    Column("job_id", String(64), nullable=False, index=True),
    Column("status", String(32), nullable=False, index=True),
    Column("version", Integer, nullable=False),
    Column("created_at", String(40), nullable=False),
    Column("data", Text, nullable=False),
)

change_orders = Table(
    "change_orders", metadata,
    Column("id", String(64), primary_key=True),
    Column("job_id", String(64), nullable=False, index=True),
    Column("status", String(32), nullable=False, index=True),
    Column("version", Integer, nullable=False),
    Column("created_at", String(40), nullable=False),
    Column("data", Text, nullable=False),
)

events = Table(
    "events", metadata,
    Column("seq", Integer, primary_key=True, autoincrement=True),
    Column("id", String(64), nullable=False, unique=True),
    Column("user_id", String(64), nullable=False, index=True),
    Column("data", Text, nullable=False),
)

seen_watermarks = Table(
    "seen_watermarks", metadata,
    Column("user_id", String(64), primary_key=True),
    Column("seq", Integer, nullable=False),
)

TABLES = {"jobs": jobs, "bids": bids, "change_orders": change_orders}
MODELS = {"jobs": Job, "bids": Bid, "change_orders": ChangeOrder}


def make_engine(db_url: str) -> Engine:
    if db_url == "sqlite://" or (db_url.startswith("sqlite") and ":memory:" in db_url):
        # one shared connection, or every checkout sees an empty database
        return create_engine(
            db_url, poolclass=StaticPool, connect_args={"check_same_thread": False}
        )
    return create_engine(db_url, pool_size=5, max_overflow=10, pool_pre_ping=True)


class SqlStore(Store):
    """Store backed by a SQL database through SQLAlchemy Core."""

    def __init__(self, engine: Engine, create: bool = True):
        self.engine = engine
        if create:
            metadata.create_all(engine)

    @classmethod
    def from_url(cls, db_url: str) -> "SqlStore":
        return cls(make_engine(db_url))

    def _row_values(self, kind: str, record: Record, version: int) -> dict:
        values = {
            "id": record.id,
            "status": record.status.value,
            "version": version,
            "created_at": record.created_at.isoformat(),
            "data": record.model_copy(update={"version": version}).model_dump_json(),
        }
        if kind == "jobs":
            values["customer_id"] = record.customer_id
            values["mechanic_id"] = record.mechanic_id
        else:
            values["job_id"] = record.job_id
        return values

    def _get(self, kind: str, ident: str) -> Record:
        table = TABLES[kind]
        with self.engine.connect() as conn:
            row = conn.execute(select(table.c.data).where(table.c.id == ident)).first()
        if row is None:
            raise NotFound(LABELS[kind], ident)
        return MODELS[kind].model_validate_json(row.data)

    def _list(self, kind: str, *criteria) -> List[Record]:
        table = TABLES[kind]
        query = select(table.c.data).where(*criteria).order_by(table.c.created_at)
        with self.engine.connect() as conn:
            rows = conn.execute(query).all()
        return [MODELS[kind].model_validate_json(row.data) for row in rows]

    def get_job(self, job_id: str) -> Job:
        return self._get("jobs", job_id)

    def list_jobs(self, customer_id=None, mechanic_id=None, status=None) -> List[Job]:
        criteria = []
        if customer_id is not None:
            criteria.append(jobs.c.customer_id == customer_id)
        if mechanic_id is not None:
            criteria.append(jobs.c.mechanic_id == mechanic_id)
        if status is not None:
            criteria.append(jobs.c.status == status.value)
        return list(reversed(self._list("jobs", *criteria)))

    def get_bid(self, bid_id: str) -> Bid:
        return self._get("bids", bid_id)

    def list_bids(self, job_id: str, status=None) -> List[Bid]:
        criteria = [bids.c.job_id == job_id]
        if status is not None:
            criteria.append(bids.c.status == status.value)
        return self._list("bids", *criteria)

    def get_change_order(self, change_order_id: str) -> ChangeOrder:
        return self._get("change_orders", change_order_id)

    def list_change_orders(self, job_id=None, status=None) -> List[ChangeOrder]:
        criteria = []
        if job_id is not None:
            criteria.append(change_orders.c.job_id == job_id)
        if status is not None:
            criteria.append(change_orders.c.status == status.value)
        return self._list("change_orders", *criteria)

    def commit(self, *records: Record, expect: Iterable[Record] = ()) -> List[Record]:
        written: List[Record] = []
        # engine.begin() rolls back everything when a CAS below raises
        with self.engine.begin() as conn:
            for record in expect:
                kind = kind_of(record)
                table = TABLES[kind]
                # no-op update: takes the row lock and checks the version
                result = conn.execute(
                    update(table)
                    .where(table.c.id == record.id, table.c.version == record.version)
                    .values(version=table.c.version)
                )
                if result.rowcount != 1:
                    raise ConcurrentUpdate(LABELS[kind], record.id)
            for record in records:
                kind = kind_of(record)
                table = TABLES[kind]
                values = self._row_values(kind, record, record.version + 1)
                if record.version == 0:
                    try:
                        conn.execute(insert(table).values(**values))
                    except IntegrityError:
                        raise ConcurrentUpdate(LABELS[kind], record.id)
                else:
                    result = conn.execute(
                        update(table)
                        .where(table.c.id == record.id, table.c.version == record.version)
                        .values(**values)
                    )
                    if result.rowcount != 1:
                        raise ConcurrentUpdate(LABELS[kind], record.id)
                written.append(record.model_copy(update={"version": record.version + 1}))
        return written

    def add_event(self, event: Event) -> Event:
        with self.engine.begin() as conn:
            row = conn.execute(select(events.c.data).where(events.c.id == event.id)).first()
            if row is not None:
                return Event.model_validate_json(row.data)
            result = conn.execute(
                insert(events).values(id=event.id, user_id=event.user_id, data=event.model_dump_json())
            )
            seq = result.inserted_primary_key[0]
            stored = event.model_copy(update={"seq": seq})
            conn.execute(update(events).where(events.c.seq == seq).values(data=stored.model_dump_json()))
        return stored

    def get_event(self, event_id: str) -> Event:
        with self.engine.connect() as conn:
            row = conn.execute(select(events.c.data).where(events.c.id == event_id)).first()
        if row is None:
            raise NotFound("Event", event_id)
        return Event.model_validate_json(row.data)

    def list_events(self, user_id: str, after_seq: int = 0) -> List[Event]:
        query = (
            select(events.c.data)
            .where(events.c.user_id == user_id, events.c.seq > after_seq)
            .order_by(events.c.seq)
        )
        with self.engine.connect() as conn:
            rows = conn.execute(query).all()
        return [Event.model_validate_json(row.data) for row in rows]

    def ping(self) -> bool:
        with self.engine.connect() as conn:
            return conn.execute(text("select 1")).scalar_one() == 1

    def get_watermark(self, user_id: str) -> int:
        query = select(seen_watermarks.c.seq).where(seen_watermarks.c.user_id == user_id)
        with self.engine.connect() as conn:
            seq = conn.execute(query).scalar_one_or_none()
        return seq or 0

    def advance_watermark(self, user_id: str, seq: int) -> int:
        row = seen_watermarks.c
        for attempt in range(2):
            try:
                with self.engine.begin() as conn:
                    conn.execute(
                        update(seen_watermarks)
                        .where(row.user_id == user_id, row.seq < seq)
                        .values(seq=seq)
                    )
                    current = conn.execute(select(row.seq).where(row.user_id == user_id)).scalar_one_or_none()
                    if current is None:
                        conn.execute(insert(seen_watermarks).values(user_id=user_id, seq=seq))
                        current = seq
                return current
            except IntegrityError:
                # another writer inserted the first row for this user; the retry updates it
                if attempt:
                    raise
