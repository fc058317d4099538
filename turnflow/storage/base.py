from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable
from typing import Any

from turnflow.types import (
    DecisionLogEntry,
    Execution,
    Message,
    PendingAction,
    PendingActionStatus,
)

ACTION_NOTE_FIELDS = frozenset({"approval_handle", "decided_by", "decision_comment"})


def check_action_notes(notes: dict[str, Any]) -> None:
    unknown = set(notes) - ACTION_NOTE_FIELDS
    if unknown:
        raise ValueError(f"Not a pending action note field: {sorted(unknown)}")


class ExecutionStore(ABC):
    """Persistence contract for the turn orchestration core.

    The Execution row is the only record shared between units of work, so every
    write to it goes through ``compare_and_set``. Messages are appended only while
    the caller's turn is still current; the check and the insert are atomic.
    """

    @abstractmethod
    def create_execution(self, execution: Execution) -> Execution:
        raise NotImplementedError

    @abstractmethod
    def get_execution(self, execution_id: str) -> Execution | None:
        raise NotImplementedError

    @abstractmethod
    def compare_and_set(self, current: Execution, **changes: Any) -> Execution | None:
        """Write ``changes`` only if the stored version still equals ``current.version``.

        Returns the updated row, or ``None`` when a concurrent writer got there first.
        """
        raise NotImplementedError

    @abstractmethod
    def append_message(self, message: Message, expected_turn_id: str) -> Message:
        """Persist ``message`` with the next sequence number.

        Raises ``StaleTurnError`` when the execution has moved on to another turn.
        """
        raise NotImplementedError

    @abstractmethod
    def list_messages(
        self,
        execution_id: str,
        *,
        turn_id: str | None = None,
        limit: int | None = None,
        before_sequence: int | None = None,
    ) -> list[Message]:
        raise NotImplementedError

    @abstractmethod
    def create_pending_action(self, action: PendingAction) -> PendingAction:
        raise NotImplementedError

    @abstractmethod
    def get_pending_action(self, action_id: str) -> PendingAction | None:
        raise NotImplementedError

    @abstractmethod
    def list_pending_actions(self, execution_id: str, turn_id: str) -> list[PendingAction]:
        raise NotImplementedError

    @abstractmethod
    def claim_pending_action(
        self, action_id: str, allowed: Iterable[PendingActionStatus]
    ) -> PendingAction | None:
        """Set the one-shot execution lease; ``None`` if already claimed or not allowed."""
        raise NotImplementedError

    @abstractmethod
    def transition_pending_action(
        self,
        action_id: str,
        from_statuses: Iterable[PendingActionStatus],
        to_status: PendingActionStatus,
        **notes: Any,
    ) -> PendingAction | None:
        """Move the action to ``to_status`` if it is still in one of ``from_statuses``.

        ``notes`` may set any of ``ACTION_NOTE_FIELDS`` in the same write.
        """
        raise NotImplementedError

    @abstractmethod
    def annotate_pending_action(self, action_id: str, **notes: Any) -> PendingAction | None:
        """Set note fields without touching status or the claim; ``None`` if missing."""
        raise NotImplementedError

    @abstractmethod
    def append_decision(self, entry: DecisionLogEntry) -> DecisionLogEntry:
        raise NotImplementedError

    @abstractmethod
    def list_decisions(
        self, execution_id: str, turn_id: str | None = None
    ) -> list[DecisionLogEntry]:
        raise NotImplementedError

    def close(self) -> None:
        return None


def page_messages(
    messages: list[Message], limit: int | None, before_sequence: int | None
) -> list[Message]:
    selected = [
        item for item in messages if before_sequence is None or item.sequence < before_sequence
    ]
    if limit is not None:
        selected = selected[-limit:] if limit > 0 else []
    return selected
