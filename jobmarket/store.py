# jobmarket/store.py
"""Versioned aggregate store.

Jobs, bids and change orders are stored as whole snapshots with a
``version``. ``commit`` is the only write: a record whose id is unknown and
whose version is 0 is inserted; any other record must still match the
stored version. Every record of one commit lands, or none does.
Records passed as ``expect`` are version-checked in the same commit
without being written, so a write can depend on a record it read.

Seen watermarks are kept per user and only ever move forward.
"""
from __future__ import annotations

import threading
from abc import ABC, abstractmethod
from typing import Dict, Iterable, List, Optional, Tuple, Type, Union

from .errors import ConcurrentUpdate, NotFound
from .models import Bid, BidStatus, ChangeOrder, ChangeOrderStatus, Event, Job, JobStatus

Record = Union[Job, Bid, ChangeOrder]

KINDS: Dict[Type, str] = {Job: "jobs", Bid: "bids", ChangeOrder: "change_orders"}
LABELS = {"jobs": "Job", "bids": "Bid", "change_orders": "ChangeOrder"}


def kind_of(record: Record) -> str:
    try:
        return KINDS[type(record)]
    except KeyError:
        raise TypeError(f"not a stored aggregate: {type(record).__name__}")


def job_key(record: Record) -> str:
    return record.id if isinstance(record, Job) else record.job_id


class Store(ABC):
    @abstractmethod
    def get_job(self, job_id: str) -> Job: ...

    @abstractmethod
    def list_jobs(
        self,
        customer_id: Optional[str] = None,
        mechanic_id: Optional[str] = None,
        status: Optional[JobStatus] = None,
    ) -> List[Job]: ...

    @abstractmethod
    def get_bid(self, bid_id: str) -> Bid: ...

    @abstractmethod
    def list_bids(self, job_id: str, status: Optional[BidStatus] = None) -> List[Bid]: ...

    @abstractmethod
    def get_change_order(self, change_order_id: str) -> ChangeOrder: ...

    @abstractmethod
    def list_change_orders(
        self, job_id: Optional[str] = None, status: Optional[ChangeOrderStatus] = None
    ) -> List[ChangeOrder]: ...

    @abstractmethod
    def commit(self, *records: Record, expect: Iterable[Record] = ()) -> List[Record]:
        """Write `records`; `expect` records are version-checked in the same commit but not written."""

    @abstractmethod
    def get_watermark(self, user_id: str) -> int: ...

    @abstractmethod
    def advance_watermark(self, user_id: str, seq: int) -> int:
        """Raise the seen watermark to `seq` if higher; return the stored value."""

    @abstractmethod
    def add_event(self, event: Event) -> Event: ...

    @abstractmethod
    def get_event(self, event_id: str) -> Event: ...

    @abstractmethod
    def list_events(self, user_id: str, after_seq: int = 0) -> List[Event]: ...

    def ping(self) -> bool:
        return True


class MemoryStore(Store):
    """Process-local store; commits are serialized per job id."""

    def __init__(self):
        self._tables: Dict[str, Dict[str, Record]] = {name: {} for name in LABELS}
        self._events: Dict[str, Event] = {}
        self._seq = 0
        self._meta = threading.Lock()
        self._job_locks: Dict[str, threading.Lock] = {}
        self._watermarks: Dict[str, int] = {}

    def _lock_for(self, key: str) -> threading.Lock:
        with self._meta:
            return self._job_locks.setdefault(key, threading.Lock())

    def _get(self, kind: str, ident: str) -> Record:
        with self._meta:
            record = self._tables[kind].get(ident)
        if record is None:
            raise NotFound(LABELS[kind], ident)
        return record.model_copy(deep=True)

    def _all(self, kind: str) -> List[Record]:
        with self._meta:
            rows = list(self._tables[kind].values())
        return [r.model_copy(deep=True) for r in rows]

    def get_job(self, job_id: str) -> Job:
        return self._get("jobs", job_id)

    def list_jobs(self, customer_id=None, mechanic_id=None, status=None) -> List[Job]:
        jobs = self._all("jobs")
        if customer_id is not None:
            jobs = [j for j in jobs if j.customer_id == customer_id]
        if mechanic_id is not None:
            jobs = [j for j in jobs if j.mechanic_id == mechanic_id]
        if status is not None:
            jobs = [j for j in jobs if j.status == status]
        return sorted(jobs, key=lambda j: j.created_at, reverse=True)

    def get_bid(self, bid_id: str) -> Bid:
        return self._get("bids", bid_id)

    def list_bids(self, job_id: str, status: Optional[BidStatus] = None) -> List[Bid]:
        bids = [b for b in self._all("bids") if b.job_id == job_id]
        if status is not None:
            bids = [b for b in bids if b.status == status]
        return sorted(bids, key=lambda b: b.created_at)

    def get_change_order(self, change_order_id: str) -> ChangeOrder:
        return self._get("change_orders", change_order_id)

    def list_change_orders(self, job_id=None, status=None) -> List[ChangeOrder]:
        orders = self._all("change_orders")
        if job_id is not None:
            orders = [c for c in orders if c.job_id == job_id]
        if status is not None:
            orders = [c for c in orders if c.status == status]
        return sorted(orders, key=lambda c: c.created_at)

    def commit(self, *records: Record, expect: Iterable[Record] = ()) -> List[Record]:
        expect = list(expect)
        keys = sorted({job_key(r) for r in [*records, *expect]})
        locks = [self._lock_for(key) for key in keys]
        for lock in locks:
            lock.acquire()
        try:
            writes: List[Tuple[str, Record]] = []
            with self._meta:
                for record in expect:
                    kind = kind_of(record)
                    current = self._tables[kind].get(record.id)
                    if current is None or current.version != record.version:
                        raise ConcurrentUpdate(LABELS[kind], record.id)
                for record in records:
                    kind = kind_of(record)
                    current = self._tables[kind].get(record.id)
                    if current is None:
                        if record.version != 0:
                            raise NotFound(LABELS[kind], record.id)
                    elif current.version != record.version:
                        raise ConcurrentUpdate(LABELS[kind], record.id)
                    writes.append((kind, record.model_copy(deep=True, update={"version": record.version + 1})))
                for kind, stored in writes:
                    self._tables[kind][stored.id] = stored
            return [stored.model_copy(deep=True) for _, stored in writes]
        finally:
            for lock in reversed(locks):
                lock.release()

    def add_event(self, event: Event) -> Event:
        with self._meta:
            existing = self._events.get(event.id)
            if existing is not None:
                return existing.model_copy()
            self._seq += 1
            stored = event.model_copy(update={"seq": self._seq})
            self._events[stored.id] = stored
            return stored.model_copy()

    def get_event(self, event_id: str) -> Event:
        with self._meta:
            event = self._events.get(event_id)
        if event is None:
            raise NotFound("Event", event_id)
        return event.model_copy()

    def list_events(self, user_id: str, after_seq: int = 0) -> List[Event]:
        with self._meta:
            events = [e for e in self._events.values() if e.user_id == user_id and e.seq > after_seq]
        return [e.model_copy() for e in sorted(events, key=lambda e: e.seq)]

    def get_watermark(self, user_id: str) -> int:
        with self._meta:
            return self._watermarks.get(user_id, 0)

    def advance_watermark(self, user_id: str, seq: int) -> int:
        with self._meta:
            self._watermarks[user_id] = max(self._watermarks.get(user_id, 0), seq)
            return self._watermarks[user_id]
