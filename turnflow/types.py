from __future__ import annotations

from datetime import UTC, datetime
from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field

MessageRole = Literal["user", "assistant", "tool"]
ProviderName = Literal["anthropic", "gemini"]
HandoffKind = Literal["action", "followup"]
OutcomeKind = Literal[
    "completed", "suspended", "deferred", "failed", "stale", "rejected_busy", "noop"
]
LlmTranscriptStatus = Literal["success", "request_failed"]


def utcnow() -> datetime:
    return datetime.now(tz=UTC)


class ExecutionStatus(str, Enum):
    IDLE = "Idle"
    PROCESSING = "Processing"
    AWAITING_ACTION = "AwaitingAction"
    AWAITING_FOLLOWUP = "AwaitingFollowup"
    AWAITING_APPROVAL = "AwaitingApproval"
    FAILED = "Failed"


class PendingActionStatus(str, Enum):
    QUEUED = "Queued"
    APPROVED = "Approved"
    REJECTED = "Rejected"
    EXECUTED = "Executed"
    FAILED = "Failed"


class StepType(str, Enum):
    LLM_CALL = "LLMCall"
    TOOL_CALL = "ToolCall"
    TOOL_RESULT = "ToolResult"
    ERROR = "Error"
    APPROVAL_REQUESTED = "ApprovalRequested"
    APPROVAL_RESOLVED = "ApprovalResolved"
    FINALIZE = "Finalize"


class ExecutionPolicy(str, Enum):
    SYNCHRONOUS = "sync"
    ASYNCHRONOUS = "async"


class ErrorPolicy(str, Enum):
    HALT_AND_REPORT = "halt_and_report"
    CONTINUE_WITH_CONTEXT = "continue_with_context"


class Execution(BaseModel):
    id: str
    user_id: str
    agent_name: str
    status: ExecutionStatus = ExecutionStatus.IDLE
    current_turn_id: str | None = None
    cycle_count: int = 0
    version: int = 0
    created_at: datetime = Field(default_factory=utcnow)
    last_updated: datetime = Field(default_factory=utcnow)


class ToolCall(BaseModel):
    id: str
    name: str
    arguments: dict[str, Any] = Field(default_factory=dict)


class Message(BaseModel):
    id: str
    execution_id: str
    turn_id: str
    sequence: int = 0
    role: MessageRole
    content: str | None = None
    tool_calls: list[ToolCall] | None = None
    tool_call_id: str | None = None
    is_error: bool = False
    input_tokens: int | None = None
    output_tokens: int | None = None
    latency_ms: int | None = None
    created_at: datetime = Field(default_factory=utcnow)


class PendingAction(BaseModel):
    id: str
    execution_id: str
    turn_id: str
    cycle: int
    capability: str
    arguments: str
    tool_call_id: str
    status: PendingActionStatus = PendingActionStatus.QUEUED
    requires_approval: bool = False
    approval_handle: str | None = None
    decided_by: str | None = None
    decision_comment: str | None = None
    claimed_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)


class DecisionLogEntry(BaseModel):
    id: str
    execution_id: str
    turn_id: str
    cycle: int = 0
    step_type: StepType
    payload: dict[str, Any] = Field(default_factory=dict)
    success: bool = True
    duration_ms: int = 0
    created_at: datetime = Field(default_factory=utcnow)


class HandoffPayload(BaseModel):
    kind: HandoffKind = "action"
    execution_id: str
    turn_id: str
    cycle_count: int
    tool_call_id: str | None = None
    pending_action_id: str | None = None
    depth: int = 0


class ApprovalDecision(BaseModel):
    pending_action_id: str
    approved: bool
    decided_by: str | None = None
    comment: str | None = None


class CapabilityOutcome(BaseModel):
    success: bool
    payload: Any = None
    code: str | None = None
    message: str | None = None
    detail: str | None = None

    @classmethod
    def ok(cls, payload: Any = None) -> CapabilityOutcome:
        return cls(success=True, payload=payload)

    @classmethod
    def failure(cls, code: str, message: str, detail: str | None = None) -> CapabilityOutcome:
        return cls(success=False, code=code, message=message, detail=detail)

    def to_tool_content(self) -> dict[str, Any]:
        if self.success:
            return {"status": "success", "result": self.payload}
        status = "rejected" if self.code == "approval_rejected" else "failed"
        return {"status": status, "error": {"code": self.code, "message": self.message}}


class LlmRequestMeta(BaseModel):
    provider: ProviderName
    model: str
    attempt: int
    latency_ms: int
    input_tokens: int | None = None
    output_tokens: int | None = None


class TurnOutcome(BaseModel):
    execution_id: str
    turn_id: str | None
    status: ExecutionStatus | None = None
    outcome: OutcomeKind
    content: str | None = None
    error: str | None = None
    reason: str | None = None


class LlmTranscriptUsage(BaseModel):
    input_tokens: int | None = None
    output_tokens: int | None = None
    latency_ms: int | None = None


class LlmTranscriptRecord(BaseModel):
    execution_id: str
    turn_id: str
    cycle: int
    attempt: int
    provider: ProviderName
    model: str
    status: LlmTranscriptStatus
    request_text: str
    response_text: str | None = None
    response_kind: Literal["content", "tool_calls", "none"] = "none"
    tool_names: list[str] = Field(default_factory=list)
    usage: LlmTranscriptUsage = Field(default_factory=LlmTranscriptUsage)
    error: str | None = None
    retryable: bool | None = None


class EventRecord(BaseModel):
    run_id: str
    trace_id: str
    span_id: str
    timestamp: str = Field(default_factory=lambda: datetime.now(tz=UTC).isoformat())
    event_type: str
    payload: dict[str, Any] = Field(default_factory=dict)
    redaction_mode: Literal["full", "redacted"] = "redacted"
