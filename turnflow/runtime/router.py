from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Literal

from turnflow.config import RuntimeConfig
from turnflow.llm.base_client import LlmResult
from turnflow.runtime.decision_log import DecisionLog
from turnflow.runtime.dispatcher import ActionDispatcher, DispatchResult, tool_message_content
from turnflow.runtime.notifications import Notifier
from turnflow.storage.base import ExecutionStore
from turnflow.storage.ids import new_id
from turnflow.types import CapabilityOutcome, Execution, Message, ToolCall

RouteKind = Literal["final", "tools"]


@dataclass
class RouteResult:
    kind: RouteKind
    message: Message
    results: list[DispatchResult] = field(default_factory=list)

    @property
    def halted(self) -> DispatchResult | None:
        return next((item for item in self.results if item.halted), None)

    @property
    def suspended(self) -> list[DispatchResult]:
        return [item for item in self.results if item.suspended]


class ResponseRouter:
    """Branches a model reply into a final answer or a batch of dispatched tool calls."""

    def __init__(
        self,
        store: ExecutionStore,
        dispatcher: ActionDispatcher,
        runtime_config: RuntimeConfig,
        notifier: Notifier | None = None,
    ) -> None:
        self.store = store
        self.dispatcher = dispatcher
        self.runtime_config = runtime_config
        self.notifier = notifier

    def _append_assistant(self, execution: Execution, result: LlmResult) -> Message:
        turn_id = execution.current_turn_id or ""
        return self.store.append_message(
            Message(
                id=new_id("msg"),
                execution_id=execution.id,
                turn_id=turn_id,
                role="assistant",
                content=result.content,
                tool_calls=list(result.tool_calls) or None,
                input_tokens=result.meta.input_tokens,
                output_tokens=result.meta.output_tokens,
                latency_ms=result.meta.latency_ms,
            ),
            expected_turn_id=turn_id,
        )

    def append_tool_result(
        self, execution: Execution, turn_id: str, call_id: str, outcome: CapabilityOutcome
    ) -> Message:
        return self.store.append_message(
            Message(
                id=new_id("msg"),
                execution_id=execution.id,
                turn_id=turn_id,
                role="tool",
                content=tool_message_content(outcome),
                tool_call_id=call_id,
                is_error=not outcome.success,
            ),
            expected_turn_id=turn_id,
        )

    def _dispatch_sequential(
        self,
        execution: Execution,
        calls: list[ToolCall],
        log: DecisionLog,
        allowed: list[str] | None,
    ) -> list[DispatchResult]:
        results: list[DispatchResult] = []
        for index, call in enumerate(calls):
            result = self.dispatcher.dispatch(execution, call, log, allowed)
            results.append(result)
            if result.halted:
                for skipped in calls[index + 1 :]:
                    results.append(
                        DispatchResult(
                            call=skipped,
                            status="completed",
                            outcome=CapabilityOutcome.failure(
                                "skipped", "Not run because an earlier tool call failed"
                            ),
                        )
                    )
                break
        return results

    def _dispatch_parallel(
        self,
        execution: Execution,
        calls: list[ToolCall],
        log: DecisionLog,
        allowed: list[str] | None,
    ) -> list[DispatchResult]:
        workers = max(1, min(self.runtime_config.max_parallel_tool_calls, len(calls)))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="turnflow-tool") as pool:
            futures = [
                pool.submit(self.dispatcher.dispatch, execution, call, log, allowed)
                for call in calls
            ]
            return [future.result() for future in futures]

    def route(
        self,
        execution: Execution,
        result: LlmResult,
        log: DecisionLog,
        allowed: list[str] | None = None,
    ) -> RouteResult:
        message = self._append_assistant(execution, result)
        if not result.has_tool_calls:
            return RouteResult(kind="final", message=message)

        if result.content and self.notifier is not None:
            self.notifier.transient(log.bus, execution, result.content, message.id)

        limit = max(self.runtime_config.max_tool_calls_per_response, 0)
        accepted = result.tool_calls[:limit]
        overflow = result.tool_calls[limit:]

        if not accepted:
            results: list[DispatchResult] = []
        elif self.runtime_config.tool_call_mode == "parallel" and len(accepted) > 1:
            results = self._dispatch_parallel(execution, accepted, log, allowed)
        else:
            results = self._dispatch_sequential(execution, accepted, log, allowed)

        for call in overflow:
            results.append(
                self.dispatcher.reject(
                    call,
                    "tool_call_limit",
                    f"Only {limit} tool calls are run per response; call {call.name} again later",
                    log,
                    execution.cycle_count,
                )
            )

        turn_id = execution.current_turn_id or ""
        for item in results:
            if item.suspended or item.outcome is None:
                continue
            self.append_tool_result(execution, turn_id, item.call.id, item.outcome)

        return RouteResult(kind="tools", message=message, results=results)
