from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field

from turnflow.errors import ConfigError, NotFoundError, TurnflowError
from turnflow.runtime.builder import Runtime
from turnflow.storage.ids import new_id
from turnflow.types import ApprovalDecision, HandoffPayload, Message, TurnOutcome


class ApiModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ProcessRequest(ApiModel):
    session_id: str = Field(alias="sessionId")
    turn_identifier: str | None = Field(default=None, alias="turnIdentifier")
    user_message: str = Field(alias="userMessage", min_length=1)


class ApprovalRequestBody(ApiModel):
    pending_action_id: str = Field(alias="pendingActionId")
    execution_id: str = Field(alias="executionId")
    approved: bool
    decided_by: str | None = Field(default=None, alias="decidedBy")
    comment: str | None = None


class OpenSessionRequest(ApiModel):
    user_id: str = Field(alias="userId")
    agent_name: str = Field(default="default", alias="agentName")


class AcceptedResponse(ApiModel):
    accepted: bool
    outcome: TurnOutcome
    request_id: str = Field(serialization_alias="requestId")


class SessionResponse(ApiModel):
    session_id: str = Field(serialization_alias="sessionId")
    user_id: str = Field(serialization_alias="userId")
    agent_name: str = Field(serialization_alias="agentName")
    status: str
    current_turn_id: str | None = Field(serialization_alias="currentTurnId")
    cycle_count: int = Field(serialization_alias="cycleCount")
    welcome_message: str | None = Field(default=None, serialization_alias="welcomeMessage")


REFUSED_OUTCOMES = frozenset({"rejected_busy", "stale"})


def _accepted(
    outcome: TurnOutcome, refused: frozenset[str] = REFUSED_OUTCOMES
) -> AcceptedResponse:
    return AcceptedResponse(
        accepted=outcome.outcome not in refused,
        outcome=outcome,
        request_id=new_id("req"),
    )


def create_app(runtime: Runtime) -> FastAPI:
    """HTTP surface over one assembled runtime.

    Handlers are plain ``def`` functions: the coordinator is synchronous and
    FastAPI runs them in its worker thread pool.
    """

    @asynccontextmanager
    async def lifespan(_: FastAPI) -> AsyncIterator[None]:
        yield
        runtime.close()

    app = FastAPI(
        title="turnflow",
        description="Turn orchestration API for configured agents",
        version="0.1.0",
        lifespan=lifespan,
    )
    coordinator = runtime.coordinator

    @app.exception_handler(TurnflowError)
    async def turnflow_error(_: Request, exc: TurnflowError) -> JSONResponse:
        status_code = 404 if isinstance(exc, NotFoundError) else 400
        return JSONResponse(status_code=status_code, content={"detail": str(exc)})

    def _session(execution_id: str) -> SessionResponse:
        try:
            execution = coordinator.get_execution(execution_id)
        except NotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        profile = runtime.config.agents.get(execution.agent_name)
        return SessionResponse(
            session_id=execution.id,
            user_id=execution.user_id,
            agent_name=execution.agent_name,
            status=execution.status.value,
            current_turn_id=execution.current_turn_id,
            cycle_count=execution.cycle_count,
            welcome_message=profile.welcome_message if profile else None,
        )

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "ok"}

    @app.post("/sessions", response_model=SessionResponse, response_model_by_alias=True)
    def open_session(request: OpenSessionRequest) -> SessionResponse:
        try:
            execution = coordinator.open_session(request.user_id, request.agent_name)
        except ConfigError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return _session(execution.id)

    @app.get(
        "/sessions/{session_id}", response_model=SessionResponse, response_model_by_alias=True
    )
    def get_session(session_id: str) -> SessionResponse:
        return _session(session_id)

    @app.get("/sessions/{session_id}/messages", response_model=list[Message])
    def get_messages(
        session_id: str,
        limit: int = Query(default=25, ge=1, le=200),
        before: int | None = Query(default=None, ge=1),
    ) -> list[Message]:
        try:
            return coordinator.get_history(session_id, limit=limit, before_sequence=before)
        except NotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc

    @app.post("/process", response_model=AcceptedResponse, response_model_by_alias=True)
    def process(request: ProcessRequest) -> AcceptedResponse:
        try:
            outcome = coordinator.start_turn(
                request.session_id, request.user_message, turn_id=request.turn_identifier
            )
        except NotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return _accepted(outcome)

    @app.post("/hitl/execute", response_model=AcceptedResponse, response_model_by_alias=True)
    def execute_decision(request: ApprovalRequestBody) -> AcceptedResponse:
        action = runtime.store.get_pending_action(request.pending_action_id)
        if action is None or action.execution_id != request.execution_id:
            raise HTTPException(
                status_code=404, detail=f"Unknown pending action: {request.pending_action_id}"
            )
        outcome = coordinator.decide_approval(
            ApprovalDecision(
                pending_action_id=request.pending_action_id,
                approved=request.approved,
                decided_by=request.decided_by,
                comment=request.comment,
            )
        )
        # A duplicate or out-of-state decision changed nothing.
        return _accepted(outcome, REFUSED_OUTCOMES | {"noop"})

    @app.post("/handoffs", response_model=AcceptedResponse, response_model_by_alias=True)
    def receive_handoff(payload: HandoffPayload) -> AcceptedResponse:
        try:
            outcome = runtime.bridge.receive(payload)
        except NotFoundError as exc:
            raise HTTPException(status_code=404, detail=str(exc)) from exc
        return _accepted(outcome)

    return app
