"""Hand-off transports with two delivery profiles.

``publish`` is fire-and-forget: deliveries may arrive in any order and more than
once. ``enqueue`` is ordered and depth-bounded: at most one ordered delivery is in
flight at a time, and payloads deeper than ``max_chain_depth`` are refused.
"""

from __future__ import annotations

import json
import sqlite3
import threading
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path
from typing import Literal

from turnflow.errors import ChainDepthExceededError
from turnflow.types import HandoffPayload, utcnow

DeliveryProfile = Literal["publish", "queue"]


@dataclass
class Delivery:
    id: str
    profile: DeliveryProfile
    payload: HandoffPayload


class HandoffTransport(ABC):
    def __init__(self, max_chain_depth: int = 5) -> None:
        self.max_chain_depth = max_chain_depth

    def _check_depth(self, payload: HandoffPayload) -> None:
        if payload.depth > self.max_chain_depth:
            raise ChainDepthExceededError(payload.depth, self.max_chain_depth)

    @abstractmethod
    def publish(self, payload: HandoffPayload) -> None:
        raise NotImplementedError

    @abstractmethod
    def enqueue(self, payload: HandoffPayload) -> None:
        raise NotImplementedError

    @abstractmethod
    def poll(self, limit: int = 10) -> list[Delivery]:
        raise NotImplementedError

    @abstractmethod
    def ack(self, delivery: Delivery) -> None:
        raise NotImplementedError

    @abstractmethod
    def release(self, delivery: Delivery) -> None:
        """Return an unacknowledged delivery so it is handed out again."""
        raise NotImplementedError


class InMemoryTransport(HandoffTransport):
    def __init__(self, max_chain_depth: int = 5) -> None:
        super().__init__(max_chain_depth)
        self._lock = threading.Lock()
        self._published: deque[Delivery] = deque()
        self._ordered: deque[Delivery] = deque()
        self._ordered_in_flight: str | None = None
        self._counter = 0

    def _next_id(self) -> str:
        self._counter += 1
        return f"dlv-{self._counter}"

    def publish(self, payload: HandoffPayload) -> None:
        with self._lock:
            self._published.append(Delivery(self._next_id(), "publish", payload))

    def enqueue(self, payload: HandoffPayload) -> None:
        self._check_depth(payload)
        with self._lock:
            self._ordered.append(Delivery(self._next_id(), "queue", payload))

    def poll(self, limit: int = 10) -> list[Delivery]:
        with self._lock:
            batch: list[Delivery] = []
            if self._ordered and self._ordered_in_flight is None:
                head = self._ordered.popleft()
                self._ordered_in_flight = head.id
                batch.append(head)
            while self._published and len(batch) < limit:
                batch.append(self._published.popleft())
            return batch

    def ack(self, delivery: Delivery) -> None:
        with self._lock:
            if delivery.profile == "queue" and self._ordered_in_flight == delivery.id:
                self._ordered_in_flight = None

    def release(self, delivery: Delivery) -> None:
        with self._lock:
            if delivery.profile == "queue":
                if self._ordered_in_flight == delivery.id:
                    self._ordered_in_flight = None
                self._ordered.appendleft(delivery)
            else:
                self._published.append(delivery)

    def pending(self) -> int:
        with self._lock:
            return len(self._published) + len(self._ordered)


class SqliteTransport(HandoffTransport):
    """Durable queue table shared by every process pointing at the same file.

    In-flight deliveries that are not acknowledged within ``visibility_timeout``
    become visible again, which gives the publish profile its at-least-once shape.
    """

    def __init__(
        self,
        db_path: Path | str,
        max_chain_depth: int = 5,
        visibility_timeout_seconds: int = 300,
    ) -> None:
        super().__init__(max_chain_depth)
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self.visibility_timeout = timedelta(seconds=visibility_timeout_seconds)
        self.conn = sqlite3.connect(
            self.db_path, check_same_thread=False, isolation_level=None, timeout=30.0
        )
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self.conn.execute("PRAGMA busy_timeout=5000")
        self.conn.executescript(
            """
            CREATE TABLE IF NOT EXISTS handoffs (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                profile TEXT NOT NULL,
                payload_json TEXT NOT NULL,
                state TEXT NOT NULL DEFAULT 'pending',
                leased_at TEXT,
                created_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_handoffs_state ON handoffs(state, profile, id);
            """
        )

    def _insert(self, profile: DeliveryProfile, payload: HandoffPayload) -> None:
        with self._lock:
            self.conn.execute(
                "INSERT INTO handoffs(profile, payload_json, created_at) VALUES (?,?,?)",
                (profile, payload.model_dump_json(), utcnow().isoformat()),
            )

    def publish(self, payload: HandoffPayload) -> None:
        self._insert("publish", payload)

    def enqueue(self, payload: HandoffPayload) -> None:
        self._check_depth(payload)
        self._insert("queue", payload)

    def poll(self, limit: int = 10) -> list[Delivery]:
        now = utcnow()
        expired = (now - self.visibility_timeout).isoformat()
        with self._lock:
            self.conn.execute("BEGIN IMMEDIATE")
            try:
                self.conn.execute(
                    "UPDATE handoffs SET state = 'pending', leased_at = NULL "
                    "WHERE state = 'inflight' AND leased_at < ?",
                    (expired,),
                )
                rows: list[sqlite3.Row] = []
                ordered_busy = self.conn.execute(
                    "SELECT 1 FROM handoffs WHERE profile = 'queue' AND state = 'inflight' LIMIT 1"
                ).fetchone()
                if ordered_busy is None:
                    head = self.conn.execute(
                        "SELECT * FROM handoffs WHERE profile = 'queue' AND state = 'pending' "
                        "ORDER BY id ASC LIMIT 1"
                    ).fetchone()
                    if head is not None:
                        rows.append(head)
                remaining = max(limit - len(rows), 0)
                rows.extend(
                    self.conn.execute(
                        "SELECT * FROM handoffs WHERE profile = 'publish' AND state = 'pending' "
                        "ORDER BY id ASC LIMIT ?",
                        (remaining,),
                    ).fetchall()
                )
                for row in rows:
                    self.conn.execute(
                        "UPDATE handoffs SET state = 'inflight', leased_at = ? WHERE id = ?",
                        (now.isoformat(), row["id"]),
                    )
            except BaseException:
                self.conn.execute("ROLLBACK")
                raise
            self.conn.execute("COMMIT")
        return [
            Delivery(
                id=str(row["id"]),
                profile=row["profile"],
                payload=HandoffPayload.model_validate(json.loads(row["payload_json"])),
            )
            for row in rows
        ]

    def ack(self, delivery: Delivery) -> None:
        with self._lock:
            self.conn.execute("DELETE FROM handoffs WHERE id = ?", (int(delivery.id),))

    def release(self, delivery: Delivery) -> None:
        with self._lock:
            self.conn.execute(
                "UPDATE handoffs SET state = 'pending', leased_at = NULL WHERE id = ?",
                (int(delivery.id),),
            )

    def pending(self) -> int:
        with self._lock:
            row = self.conn.execute(
                "SELECT COUNT(*) AS n FROM handoffs WHERE state = 'pending'"
            ).fetchone()
        return int(row["n"])

    def close(self) -> None:
        with self._lock:
            self.conn.close()
