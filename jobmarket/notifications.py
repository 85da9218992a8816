# jobmarket/notifications.py
"""Marketplace events and the per-user unread counter built from them.

Events reach the counter two ways: pushed by ``EventLog.publish`` right
after the store assigns their ``seq``, and pulled by ``refresh``. Either
path may deliver an event late, twice, or out of order; the counter merges
by event id. Seen watermarks live in the store and only ever move forward,
so they survive restarts and are shared between workers.
"""
from __future__ import annotations

import logging
import threading
from typing import Callable, Dict, List, Optional

from .errors import NotFound
from .models import Event, EventKind
from .store import Store

logger = logging.getLogger("uvicorn")

Subscriber = Callable[[Event], None]


class EventLog:
    def __init__(self, store: Store):
        self.store = store
        self._subscribers: List[Subscriber] = []

    def subscribe(self, fn: Subscriber) -> None:
        self._subscribers.append(fn)

    def publish(
        self,
        user_id: Optional[str],
        kind: EventKind,
        job_id: str,
        ref_id: Optional[str] = None,
        status: Optional[str] = None,
    ) -> Optional[Event]:
        if not user_id:
            return None
        event = self.store.add_event(Event(
            user_id=user_id, kind=kind, job_id=job_id, ref_id=ref_id, status=status,
        ))
        for fn in self._subscribers:
            try:
                fn(event)
            except Exception:
                # the state change is already committed; a late counter catches up on refresh
                logger.exception(f"Event subscriber failed for {event.kind.value} {event.id}")
        return event


class NotificationCounter:
    """Unread events per user, above a seen watermark persisted in the store.

    Only unseen events are cached; anything at or below the watermark is
    dropped whenever the watermark moves.
    """

    def __init__(self, store: Store):
        self.store = store
        self._lock = threading.Lock()
        self._events: Dict[str, Dict[str, Event]] = {}

    def handle(self, event: Event) -> None:
        if event.seq is None:
            raise ValueError("event has not been stored yet")
        with self._lock:
            self._events.setdefault(event.user_id, {})[event.id] = event

    def refresh(self, user_id: str) -> int:
        """Poll the store for events above the watermark and merge by id."""
        mark = self.store.get_watermark(user_id)
        # polling from the watermark, not the newest pushed seq, keeps gaps fillable
        fetched = self.store.list_events(user_id, after_seq=mark)
        with self._lock:
            known = self._events.setdefault(user_id, {})
            for event in fetched:
                known.setdefault(event.id, event)
            self._prune_locked(user_id, mark)
            return len(known)

    def unread_count(self, user_id: str) -> int:
        return len(self.unread(user_id))

    def unread(self, user_id: str) -> List[Event]:
        mark = self.store.get_watermark(user_id)
        with self._lock:
            events = [e for e in self._events.get(user_id, {}).values() if e.seq > mark]
        return sorted(events, key=lambda e: e.seq)

    def mark_seen(self, user_id: str, event_id: str) -> int:
        with self._lock:
            event = self._events.get(user_id, {}).get(event_id)
        if event is None:
            event = self.store.get_event(event_id)
            if event.user_id != user_id:
                raise NotFound("Event", event_id)
        return self._advance(user_id, event.seq)

    def mark_all_seen(self, user_id: str) -> int:
        self.refresh(user_id)
        with self._lock:
            seqs = [e.seq for e in self._events.get(user_id, {}).values()]
        return self._advance(user_id, max(seqs, default=0))

    def watermark(self, user_id: str) -> int:
        return self.store.get_watermark(user_id)

    def _advance(self, user_id: str, seq: int) -> int:
        mark = self.store.advance_watermark(user_id, seq)
        with self._lock:
            self._prune_locked(user_id, mark)
            return len(self._events.get(user_id, {}))

    def _prune_locked(self, user_id: str, mark: int) -> None:
        known = self._events.get(user_id, {})
        for event_id in [i for i, e in known.items() if e.seq <= mark]:
            del known[event_id]
