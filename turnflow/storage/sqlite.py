"""SQLite persistence for executions, messages, pending actions and the decision log."""

from __future__ import annotations

import json
import sqlite3
import threading
from collections.abc import Iterable, Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

from turnflow.errors import StaleTurnError
from turnflow.storage.base import ExecutionStore, check_action_notes
from turnflow.types import (
    DecisionLogEntry,
    Execution,
    ExecutionStatus,
    Message,
    PendingAction,
    PendingActionStatus,
    StepType,
    ToolCall,
    utcnow,
)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS executions (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    agent_name TEXT NOT NULL,
    status TEXT NOT NULL,
    current_turn_id TEXT,
    cycle_count INTEGER NOT NULL DEFAULT 0,
    version INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    last_updated TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY,
    execution_id TEXT NOT NULL,
    turn_id TEXT NOT NULL,
    sequence INTEGER NOT NULL,
    role TEXT NOT NULL,
    content TEXT,
    tool_calls_json TEXT,
    tool_call_id TEXT,
    is_error INTEGER NOT NULL DEFAULT 0,
    input_tokens INTEGER,
    output_tokens INTEGER,
    latency_ms INTEGER,
    created_at TEXT NOT NULL,
    UNIQUE(execution_id, sequence),
    FOREIGN KEY(execution_id) REFERENCES executions(id)
);

CREATE TABLE IF NOT EXISTS pending_actions (
    id TEXT PRIMARY KEY,
    execution_id TEXT NOT NULL,
    turn_id TEXT NOT NULL,
    cycle INTEGER NOT NULL,
    capability TEXT NOT NULL,
    arguments TEXT NOT NULL,
    tool_call_id TEXT NOT NULL,
    status TEXT NOT NULL,
    requires_approval INTEGER NOT NULL DEFAULT 0,
    approval_handle TEXT,
    decided_by TEXT,
    decision_comment TEXT,
    claimed_at TEXT,
    created_at TEXT NOT NULL,
    FOREIGN KEY(execution_id) REFERENCES executions(id)
);

CREATE TABLE IF NOT EXISTS decision_log (
    id TEXT PRIMARY KEY,
    seq INTEGER NOT NULL,
    execution_id TEXT NOT NULL,
    turn_id TEXT NOT NULL,
    cycle INTEGER NOT NULL,
    step_type TEXT NOT NULL,
    payload_json TEXT NOT NULL,
    success INTEGER NOT NULL,
    duration_ms INTEGER NOT NULL,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_messages_execution ON messages(execution_id, sequence);
CREATE INDEX IF NOT EXISTS idx_actions_turn ON pending_actions(execution_id, turn_id);
CREATE INDEX IF NOT EXISTS idx_decisions_execution ON decision_log(execution_id, seq);
"""


def _ts(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_ts(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class SqliteStore(ExecutionStore):
    """One connection per store, serialized by a lock; writes use BEGIN IMMEDIATE.

    BEGIN IMMEDIATE takes the database write lock up front, so the read-check-write
    sequences below are atomic across processes sharing the same file.
    """

    def __init__(self, db_path: Path | str = ":memory:") -> None:
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(
            self.db_path, check_same_thread=False, isolation_level=None, timeout=30.0
        )
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        self._configure_connection()
        self._init_schema()

    def _configure_connection(self) -> None:
        if self.db_path != ":memory:":
            self.conn.execute("PRAGMA journal_mode=WAL")
        self.conn.execute("PRAGMA busy_timeout=5000")
        self.conn.execute("PRAGMA synchronous=NORMAL")
        self.conn.execute("PRAGMA foreign_keys=ON")

    def _init_schema(self) -> None:
        self.conn.executescript(_SCHEMA)
        for column in ("decided_by", "decision_comment"):
            if not self._has_column("pending_actions", column):
                self.conn.execute(f"ALTER TABLE pending_actions ADD COLUMN {column} TEXT")

    def _has_column(self, table: str, column: str) -> bool:
        rows = self.conn.execute(f"PRAGMA table_info({table})").fetchall()
        return any(row["name"] == column for row in rows)

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            self.conn.execute("BEGIN IMMEDIATE")
            try:
                yield self.conn
            except BaseException:
                self.conn.execute("ROLLBACK")
                raise
            self.conn.execute("COMMIT")

    def close(self) -> None:
        with self._lock:
            self.conn.close()

    # executions

    @staticmethod
    def _execution_from_row(row: sqlite3.Row) -> Execution:
        return Execution(
            id=row["id"],
            user_id=row["user_id"],
            agent_name=row["agent_name"],
            status=ExecutionStatus(row["status"]),
            current_turn_id=row["current_turn_id"],
            cycle_count=row["cycle_count"],
            version=row["version"],
            created_at=_parse_ts(row["created_at"]),
            last_updated=_parse_ts(row["last_updated"]),
        )

    def create_execution(self, execution: Execution) -> Execution:
        with self._transaction() as conn:
            conn.execute(
                "INSERT INTO executions(id, user_id, agent_name, status, current_turn_id, "
                "cycle_count, version, created_at, last_updated) VALUES (?,?,?,?,?,?,?,?,?)",
                (
                    execution.id,
                    execution.user_id,
                    execution.agent_name,
                    execution.status.value,
                    execution.current_turn_id,
                    execution.cycle_count,
                    execution.version,
                    _ts(execution.created_at),
                    _ts(execution.last_updated),
                ),
            )
        return execution

    def get_execution(self, execution_id: str) -> Execution | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM executions WHERE id = ?", (execution_id,)
            ).fetchone()
        return self._execution_from_row(row) if row else None

    def compare_and_set(self, current: Execution, **changes: Any) -> Execution | None:
        updated = current.model_copy(
            update={**changes, "version": current.version + 1, "last_updated": utcnow()}
        )
        with self._transaction() as conn:
            cursor = conn.execute(
                "UPDATE executions SET status = ?, current_turn_id = ?, cycle_count = ?, "
                "version = ?, last_updated = ? WHERE id = ? AND version = ?",
                (
                    ExecutionStatus(updated.status).value,
                    updated.current_turn_id,
                    updated.cycle_count,
                    updated.version,
                    _ts(updated.last_updated),
                    current.id,
                    current.version,
                ),
            )
            if cursor.rowcount != 1:
                return None
        return updated

    # messages

    @staticmethod
    def _message_from_row(row: sqlite3.Row) -> Message:
        tool_calls_raw = row["tool_calls_json"]
        tool_calls = (
            [ToolCall.model_validate(item) for item in json.loads(tool_calls_raw)]
            if tool_calls_raw
            else None
        )
        return Message(
            id=row["id"],
            execution_id=row["execution_id"],
            turn_id=row["turn_id"],
            sequence=row["sequence"],
            role=row["role"],
            content=row["content"],
            tool_calls=tool_calls,
            tool_call_id=row["tool_call_id"],
            is_error=bool(row["is_error"]),
            input_tokens=row["input_tokens"],
            output_tokens=row["output_tokens"],
            latency_ms=row["latency_ms"],
            created_at=_parse_ts(row["created_at"]),
        )

    def append_message(self, message: Message, expected_turn_id: str) -> Message:
        with self._transaction() as conn:
            row = conn.execute(
                "SELECT current_turn_id FROM executions WHERE id = ?", (message.execution_id,)
            ).fetchone()
            if row is None or row["current_turn_id"] != expected_turn_id:
                raise StaleTurnError(
                    f"Turn {expected_turn_id} is no longer current for {message.execution_id}"
                )
            last = conn.execute(
                "SELECT COALESCE(MAX(sequence), 0) AS seq FROM messages WHERE execution_id = ?",
                (message.execution_id,),
            ).fetchone()
            stored = message.model_copy(update={"sequence": last["seq"] + 1})
            tool_calls_json = (
                json.dumps([call.model_dump(mode="json") for call in stored.tool_calls])
                if stored.tool_calls
                else None
            )
            conn.execute(
                "INSERT INTO messages(id, execution_id, turn_id, sequence, role, content, "
                "tool_calls_json, tool_call_id, is_error, input_tokens, output_tokens, "
                "latency_ms, created_at) VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?)",
                (
                    stored.id,
                    stored.execution_id,
                    stored.turn_id,
                    stored.sequence,
                    stored.role,
                    stored.content,
                    tool_calls_json,
                    stored.tool_call_id,
                    int(stored.is_error),
                    stored.input_tokens,
                    stored.output_tokens,
                    stored.latency_ms,
                    _ts(stored.created_at),
                ),
            )
        return stored

    def list_messages(
        self,
        execution_id: str,
        *,
        turn_id: str | None = None,
        limit: int | None = None,
        before_sequence: int | None = None,
    ) -> list[Message]:
        clauses = ["execution_id = ?"]
        params: list[Any] = [execution_id]
        if turn_id is not None:
            clauses.append("turn_id = ?")
            params.append(turn_id)
        if before_sequence is not None:
            clauses.append("sequence < ?")
            params.append(before_sequence)
        sql = f"SELECT * FROM messages WHERE {' AND '.join(clauses)} ORDER BY sequence DESC"
        if limit is not None:
            sql += " LIMIT ?"
            params.append(max(limit, 0))
        with self._lock:
            rows = self.conn.execute(sql, params).fetchall()
        return [self._message_from_row(row) for row in reversed(rows)]

    # pending actions

    @staticmethod
    def _action_from_row(row: sqlite3.Row) -> PendingAction:
        return PendingAction(
            id=row["id"],
            execution_id=row["execution_id"],
            turn_id=row["turn_id"],
            cycle=row["cycle"],
            capability=row["capability"],
            arguments=row["arguments"],
            tool_call_id=row["tool_call_id"],
            status=PendingActionStatus(row["status"]),
            requires_approval=bool(row["requires_approval"]),
            approval_handle=row["approval_handle"],
            decided_by=row["decided_by"],
            decision_comment=row["decision_comment"],
            claimed_at=_parse_ts(row["claimed_at"]),
            created_at=_parse_ts(row["created_at"]),
        )

    def create_pending_action(self, action: PendingAction) -> PendingAction:
        with self._transaction() as conn:
            conn.execute(
                "INSERT INTO pending_actions(id, execution_id, turn_id, cycle, capability, "
                "arguments, tool_call_id, status, requires_approval, approval_handle, "
                "decided_by, decision_comment, claimed_at, created_at) "
                "VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?,?)",
                (
                    action.id,
                    action.execution_id,
                    action.turn_id,
                    action.cycle,
                    action.capability,
                    action.arguments,
                    action.tool_call_id,
                    action.status.value,
                    int(action.requires_approval),
                    action.approval_handle,
                    action.decided_by,
                    action.decision_comment,
                    _ts(action.claimed_at),
                    _ts(action.created_at),
                ),
            )
        return action

    def get_pending_action(self, action_id: str) -> PendingAction | None:
        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM pending_actions WHERE id = ?", (action_id,)
            ).fetchone()
        return self._action_from_row(row) if row else None

    def list_pending_actions(self, execution_id: str, turn_id: str) -> list[PendingAction]:
        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM pending_actions WHERE execution_id = ? AND turn_id = ? "
                "ORDER BY created_at ASC",
                (execution_id, turn_id),
            ).fetchall()
        return [self._action_from_row(row) for row in rows]

    def claim_pending_action(
        self, action_id: str, allowed: Iterable[PendingActionStatus]
    ) -> PendingAction | None:
        statuses = [status.value for status in allowed]
        placeholders = ",".join("?" for _ in statuses)
        with self._transaction() as conn:
            cursor = conn.execute(
                f"UPDATE pending_actions SET claimed_at = ? WHERE id = ? "
                f"AND claimed_at IS NULL AND status IN ({placeholders})",
                (_ts(utcnow()), action_id, *statuses),
            )
            if cursor.rowcount != 1:
                return None
        return self.get_pending_action(action_id)

    def transition_pending_action(
        self,
        action_id: str,
        from_statuses: Iterable[PendingActionStatus],
        to_status: PendingActionStatus,
        **notes: Any,
    ) -> PendingAction | None:
        check_action_notes(notes)
        statuses = [status.value for status in from_statuses]
        placeholders = ",".join("?" for _ in statuses)
        assignments = "".join(f", {name} = ?" for name in notes)
        with self._transaction() as conn:
            cursor = conn.execute(
                f"UPDATE pending_actions SET status = ?{assignments} WHERE id = ? "
                f"AND status IN ({placeholders})",
                (to_status.value, *notes.values(), action_id, *statuses),
            )
            if cursor.rowcount != 1:
                return None
        return self.get_pending_action(action_id)

    def annotate_pending_action(self, action_id: str, **notes: Any) -> PendingAction | None:
        check_action_notes(notes)
        if not notes:
            return self.get_pending_action(action_id)
        assignments = ", ".join(f"{name} = ?" for name in notes)
        with self._transaction() as conn:
            cursor = conn.execute(
                f"UPDATE pending_actions SET {assignments} WHERE id = ?",
                (*notes.values(), action_id),
            )
            if cursor.rowcount != 1:
                return None
        return self.get_pending_action(action_id)

    # decision log

    def append_decision(self, entry: DecisionLogEntry) -> DecisionLogEntry:
        with self._transaction() as conn:
            last = conn.execute(
                "SELECT COALESCE(MAX(seq), 0) AS seq FROM decision_log WHERE execution_id = ?",
                (entry.execution_id,),
            ).fetchone()
            conn.execute(
                "INSERT INTO decision_log(id, seq, execution_id, turn_id, cycle, step_type, "
                "payload_json, success, duration_ms, created_at) VALUES (?,?,?,?,?,?,?,?,?,?)",
                (
                    entry.id,
                    last["seq"] + 1,
                    entry.execution_id,
                    entry.turn_id,
                    entry.cycle,
                    entry.step_type.value,
                    json.dumps(entry.payload, ensure_ascii=True, default=str),
                    int(entry.success),
                    entry.duration_ms,
                    _ts(entry.created_at),
                ),
            )
        return entry

    def list_decisions(
        self, execution_id: str, turn_id: str | None = None
    ) -> list[DecisionLogEntry]:
        sql = "SELECT * FROM decision_log WHERE execution_id = ?"
        params: list[Any] = [execution_id]
        if turn_id is not None:
            sql += " AND turn_id = ?"
            params.append(turn_id)
        sql += " ORDER BY seq ASC"
        with self._lock:
            rows = self.conn.execute(sql, params).fetchall()
        return [
            DecisionLogEntry(
                id=row["id"],
                execution_id=row["execution_id"],
                turn_id=row["turn_id"],
                cycle=row["cycle"],
                step_type=StepType(row["step_type"]),
                payload=json.loads(row["payload_json"]),
                success=bool(row["success"]),
                duration_ms=row["duration_ms"],
                created_at=_parse_ts(row["created_at"]),
            )
            for row in rows
        ]
