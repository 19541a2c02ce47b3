from __future__ import annotations

import os
import logging
import threading
from typing import Any, Callable, Dict, List, Mapping, Optional

from db import _ph, db_commit, db_execute, now_str

logger = logging.getLogger("farmmarket")

EVENTS = ("INSERT", "UPDATE", "DELETE")

TABLE_KEYS = {
    "orders": "order_id",
    "products": "product_id",
}

# change_events older than this are pruned on every emit
CHANGE_RETENTION_DAYS = int(os.environ.get("FARMMARKET_CHANGE_RETENTION_DAYS", "7"))

Payload = Dict[str, Any]


class Subscription:
    def __init__(self, feed: "ChangeFeed", table: str, event: str,
                 row_filter: Optional[Mapping[str, Any]], callback: Callable[[Payload], None]):
        self.feed = feed
        self.table = table
        self.event = event
        self.row_filter = dict(row_filter or {})
        self.callback = callback
        self.active = True

    def matches(self, payload: Payload) -> bool:
        if payload["table"] != self.table:
            return False
        if self.event != "*" and payload["event"] != self.event:
            return False
        if not self.row_filter:
            return True
        row = payload.get("new") if payload["event"] != "DELETE" else payload.get("old")
        row = row or {}
        return all(row.get(k) == v for k, v in self.row_filter.items())

    def unsubscribe(self) -> None:
        if self.active:
            self.feed._remove(self)
            self.active = False


class ChangeFeed:
    """In-process fan-out of row changes.

    Views subscribe to (table, event, row filter); writers call publish()
    after their transaction commits.
    """

    def __init__(self):
        self._subs: List[Subscription] = []
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._subs)

    def subscribe(self, table: str, on_change: Callable[[Payload], None], event: str = "*",
                  row_filter: Optional[Mapping[str, Any]] = None) -> Subscription:
        event = event.upper()
        if event != "*" and event not in EVENTS:
            raise ValueError(f"unknown event type: {event}")
        sub = Subscription(self, table, event, row_filter, on_change)
        with self._lock:
            self._subs.append(sub)
        return sub

    def _remove(self, sub: Subscription) -> None:
        with self._lock:
            if sub in self._subs:
                self._subs.remove(sub)

    def publish(self, table: str, event: str, new: Optional[dict] = None, old: Optional[dict] = None) -> int:
        """Deliver to every matching subscriber; returns how many were called."""
        payload = {"table": table, "event": event.upper(), "new": new, "old": old}
        with self._lock:
            targets = [s for s in self._subs if s.matches(payload)]

        delivered = 0
        for sub in targets:
            try:
                sub.callback(payload)
                delivered += 1
            except Exception:
                # one broken view must not starve the others
                logger.exception("change_callback_failed table=%s event=%s", table, payload["event"])
        return delivered


def prune_changes(days: Optional[int] = None) -> int:
    """Drop change events older than the retention window; returns rows removed."""
    days = CHANGE_RETENTION_DAYS if days is None else days
    return db_execute(
        f"DELETE FROM change_events WHERE created_at < {_ph()}",
        (now_str(days_ago=days),),
    )


def emit_change(feed: ChangeFeed, table: str, event: str, new: Optional[dict] = None, old: Optional[dict] = None) -> int:
    """Persist a change event for polling clients, then publish it in-process."""
    row = new if new is not None else (old or {})
    key = TABLE_KEYS.get(table, "id")
    db_execute(
        f"INSERT INTO change_events(table_name, event, row_id, buyer_id, created_at) VALUES({_ph()}, {_ph()}, {_ph()}, {_ph()}, {_ph()})",
        (table, event.upper(), str(row.get(key)), row.get("buyer_id"), now_str()),
    )
    pruned = prune_changes()
    db_commit()
    if pruned:
        logger.info("change_events_pruned rows=%s", pruned)
    return feed.publish(table, event, new=new, old=old)


class OrderBoard:
    """Per-view order list kept current from the change feed.

    Every INSERT/UPDATE re-fetches the joined order (status name, line items)
    before patching, since change payloads only carry the bare row.
    """

    def __init__(self, fetch: Callable[[Any], Optional[dict]], include: Optional[Callable[[dict], bool]] = None):
        self.fetch = fetch
        self.include = include
        self.orders: List[dict] = []
        self.buyer_id: Optional[str] = None
        self._subscription: Optional[Subscription] = None

    def load(self, orders: List[dict], buyer_id: Optional[str] = None) -> "OrderBoard":
        self.orders = list(orders)
        self.buyer_id = buyer_id
        return self

    def get(self, order_id: Any) -> Optional[dict]:
        for o in self.orders:
            if str(o["order_id"]) == str(order_id):
                return o
        return None

    def attach(self, feed: ChangeFeed) -> Subscription:
        self.detach()
        row_filter = {"buyer_id": self.buyer_id} if self.buyer_id else None
        self._subscription = feed.subscribe("orders", self.apply, row_filter=row_filter)
        return self._subscription

    def detach(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

    def apply(self, payload: Payload) -> None:
        if payload["event"] == "DELETE":
            old = payload.get("old") or {}
            self.orders = [o for o in self.orders if str(o["order_id"]) != str(old.get("order_id"))]
            return

        row = payload.get("new") or {}
        fresh = self.fetch(row.get("order_id"))
        if fresh is None:
            return
        if self.include is not None and not self.include(fresh):
            return

        for i, o in enumerate(self.orders):
            if str(o["order_id"]) == str(fresh["order_id"]):
                self.orders[i] = fresh
                return
        self.orders.insert(0, fresh)
