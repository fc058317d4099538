from __future__ import annotations

import threading
from collections.abc import Iterable
from typing import Any

from turnflow.errors import StaleTurnError
from turnflow.storage.base import ExecutionStore, check_action_notes, page_messages
from turnflow.types import (
    DecisionLogEntry,
    Execution,
    Message,
    PendingAction,
    PendingActionStatus,
    utcnow,
)


class MemoryStore(ExecutionStore):
    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._executions: dict[str, Execution] = {}
        self._messages: dict[str, list[Message]] = {}
        self._actions: dict[str, PendingAction] = {}
        self._decisions: dict[str, list[DecisionLogEntry]] = {}

    def create_execution(self, execution: Execution) -> Execution:
        with self._lock:
            if execution.id in self._executions:
                raise ValueError(f"Execution already exists: {execution.id}")
            self._executions[execution.id] = execution.model_copy(deep=True)
            return execution.model_copy(deep=True)

    def get_execution(self, execution_id: str) -> Execution | None:
        with self._lock:
            found = self._executions.get(execution_id)
            return found.model_copy(deep=True) if found else None

    def compare_and_set(self, current: Execution, **changes: Any) -> Execution | None:
        with self._lock:
            stored = self._executions.get(current.id)
            if stored is None or stored.version != current.version:
                return None
            updated = stored.model_copy(
                update={**changes, "version": stored.version + 1, "last_updated": utcnow()}
            )
            self._executions[current.id] = updated
            return updated.model_copy(deep=True)

    def append_message(self, message: Message, expected_turn_id: str) -> Message:
        with self._lock:
            execution = self._executions.get(message.execution_id)
            if execution is None or execution.current_turn_id != expected_turn_id:
                raise StaleTurnError(
                    f"Turn {expected_turn_id} is no longer current for {message.execution_id}"
                )
            rows = self._messages.setdefault(message.execution_id, [])
            sequence = rows[-1].sequence + 1 if rows else 1
            stored = message.model_copy(update={"sequence": sequence}, deep=True)
            rows.append(stored)
            return stored.model_copy(deep=True)

    def list_messages(
        self,
        execution_id: str,
        *,
        turn_id: str | None = None,
        limit: int | None = None,
        before_sequence: int | None = None,
    ) -> list[Message]:
        with self._lock:
            rows = [
                item.model_copy(deep=True)
                for item in self._messages.get(execution_id, [])
                if turn_id is None or item.turn_id == turn_id
            ]
        return page_messages(rows, limit, before_sequence)

    def create_pending_action(self, action: PendingAction) -> PendingAction:
        with self._lock:
            self._actions[action.id] = action.model_copy(deep=True)
            return action.model_copy(deep=True)

    def get_pending_action(self, action_id: str) -> PendingAction | None:
        with self._lock:
            found = self._actions.get(action_id)
            return found.model_copy(deep=True) if found else None

    def list_pending_actions(self, execution_id: str, turn_id: str) -> list[PendingAction]:
        with self._lock:
            return [
                item.model_copy(deep=True)
                for item in self._actions.values()
                if item.execution_id == execution_id and item.turn_id == turn_id
            ]

    def claim_pending_action(
        self, action_id: str, allowed: Iterable[PendingActionStatus]
    ) -> PendingAction | None:
        allowed_set = set(allowed)
        with self._lock:
            stored = self._actions.get(action_id)
            if stored is None or stored.claimed_at is not None or stored.status not in allowed_set:
                return None
            updated = stored.model_copy(update={"claimed_at": utcnow()})
            self._actions[action_id] = updated
            return updated.model_copy(deep=True)

    def transition_pending_action(
        self,
        action_id: str,
        from_statuses: Iterable[PendingActionStatus],
        to_status: PendingActionStatus,
        **notes: Any,
    ) -> PendingAction | None:
        check_action_notes(notes)
        allowed_set = set(from_statuses)
        with self._lock:
            stored = self._actions.get(action_id)
            if stored is None or stored.status not in allowed_set:
                return None
            updated = stored.model_copy(update={"status": to_status, **notes})
            self._actions[action_id] = updated
            return updated.model_copy(deep=True)

    def annotate_pending_action(self, action_id: str, **notes: Any) -> PendingAction | None:
        check_action_notes(notes)
        with self._lock:
            stored = self._actions.get(action_id)
            if stored is None:
                return None
            updated = stored.model_copy(update=notes)
            self._actions[action_id] = updated
            return updated.model_copy(deep=True)

    def append_decision(self, entry: DecisionLogEntry) -> DecisionLogEntry:
        with self._lock:
            self._decisions.setdefault(entry.execution_id, []).append(entry.model_copy(deep=True))
            return entry

    def list_decisions(
        self, execution_id: str, turn_id: str | None = None
    ) -> list[DecisionLogEntry]:
        with self._lock:
            return [
                item.model_copy(deep=True)
                for item in self._decisions.get(execution_id, [])
                if turn_id is None or item.turn_id == turn_id
            ]
