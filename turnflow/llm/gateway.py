from __future__ import annotations

import json
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Literal

from turnflow.config import ModelConfig, RuntimeConfig
from turnflow.errors import ConfigError
from turnflow.llm.base_client import LlmResult
from turnflow.llm.provider_router import ProviderRouter
from turnflow.logging.redaction import redact_secrets, summarize_text
from turnflow.logging.sanitizer import sanitize_text
from turnflow.logging.transcript import TranscriptWriter
from turnflow.runtime.decision_log import DecisionLog
from turnflow.runtime.retry import classify_failure, compute_backoff_delay
from turnflow.types import LlmTranscriptRecord, LlmTranscriptUsage, StepType

GatewayErrorKind = Literal["retryable_exhausted", "fatal", "configuration"]


@dataclass
class LlmCallOutcome:
    result: LlmResult | None = None
    error_kind: GatewayErrorKind | None = None
    error: str | None = None
    attempts: int = 0
    attempt_errors: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.result is not None


class LlmGateway:
    """Sends a prompt to the configured provider with bounded, classified retries.

    The gateway never raises across its boundary; callers get an ``LlmCallOutcome``.
    Every attempt, successful or not, is written to the decision log.
    """

    def __init__(
        self,
        router: ProviderRouter,
        model_config: ModelConfig,
        runtime_config: RuntimeConfig,
        transcript: TranscriptWriter | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.router = router
        self.model_config = model_config
        self.runtime_config = runtime_config
        self.transcript = transcript
        self._sleep = sleep

    @staticmethod
    def _clean(text: str) -> str:
        return redact_secrets(sanitize_text(text))

    def _write_transcript(self, log: DecisionLog, record: LlmTranscriptRecord) -> None:
        if self.transcript is None:
            return
        try:
            self.transcript.write(record)
        except Exception as exc:
            log.bus.emit(
                "llm_transcript_write_failed",
                {"cycle": record.cycle, "attempt": record.attempt, "error": str(exc)},
            )

    def call(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]],
        log: DecisionLog,
        cycle: int,
    ) -> LlmCallOutcome:
        provider = self.model_config.provider
        model = self.model_config.name
        max_attempts = max(self.runtime_config.max_llm_attempts, 1)
        outcome = LlmCallOutcome()
        request_text = self._clean(json.dumps(messages, ensure_ascii=True, default=str))

        if not self.router.has_provider(provider):
            outcome.error_kind = "configuration"
            outcome.error = f"Provider is not configured: {provider}"
            log.record(
                StepType.LLM_CALL,
                {"provider": provider, "model": model, "attempt": 0, "error": outcome.error},
                cycle=cycle,
                success=False,
            )
            return outcome

        for attempt in range(1, max_attempts + 1):
            outcome.attempts = attempt
            log.bus.emit(
                "llm_request_sent",
                {
                    "provider": provider,
                    "model": model,
                    "attempt": attempt,
                    "cycle": cycle,
                    "message_count": len(messages),
                    "tool_count": len(tools),
                },
            )
            start = time.perf_counter()
            try:
                result = self.router.send(
                    provider=provider,
                    messages=messages,
                    tools=tools,
                    model=model,
                    max_tokens=self.model_config.max_tokens,
                    attempt=attempt,
                )
            except ConfigError as exc:
                duration_ms = int((time.perf_counter() - start) * 1000)
                outcome.error_kind = "configuration"
                outcome.error = str(exc)
                log.record(
                    StepType.LLM_CALL,
                    {"provider": provider, "model": model, "attempt": attempt, "error": str(exc)},
                    cycle=cycle,
                    success=False,
                    duration_ms=duration_ms,
                )
                return outcome
            except Exception as exc:
                duration_ms = int((time.perf_counter() - start) * 1000)
                kind = classify_failure(exc)
                error_text = self._clean(f"{exc.__class__.__name__}: {exc}")
                outcome.attempt_errors.append(error_text)
                log.record(
                    StepType.LLM_CALL,
                    {
                        "provider": provider,
                        "model": model,
                        "attempt": attempt,
                        "error": error_text,
                        "retryable": kind == "retryable",
                    },
                    cycle=cycle,
                    success=False,
                    duration_ms=duration_ms,
                )
                self._write_transcript(
                    log,
                    LlmTranscriptRecord(
                        execution_id=log.execution_id,
                        turn_id=log.turn_id,
                        cycle=cycle,
                        attempt=attempt,
                        provider=provider,
                        model=model,
                        status="request_failed",
                        request_text=request_text,
                        error=error_text,
                        retryable=kind == "retryable",
                    ),
                )
                if kind == "retryable" and attempt < max_attempts:
                    delay = compute_backoff_delay(
                        attempt=attempt,
                        base_delay=self.runtime_config.retry_base_delay_seconds,
                        max_delay=self.runtime_config.retry_max_delay_seconds,
                    )
                    log.bus.emit(
                        "llm_retry_scheduled",
                        {"attempt": attempt, "delay_seconds": delay, "error": error_text},
                    )
                    self._sleep(delay)
                    continue
                outcome.error_kind = "retryable_exhausted" if kind == "retryable" else "fatal"
                outcome.error = error_text
                log.bus.emit(
                    "llm_request_failed",
                    {"attempt": attempt, "error": error_text, "error_kind": outcome.error_kind},
                )
                return outcome

            duration_ms = int((time.perf_counter() - start) * 1000)
            tool_names = [call.name for call in result.tool_calls]
            log.record(
                StepType.LLM_CALL,
                {
                    "provider": provider,
                    "model": model,
                    "attempt": attempt,
                    "response_kind": "tool_calls" if result.tool_calls else "content",
                    "tool_calls": tool_names,
                    "input_tokens": result.meta.input_tokens,
                    "output_tokens": result.meta.output_tokens,
                },
                cycle=cycle,
                success=True,
                duration_ms=duration_ms,
            )
            self._write_transcript(
                log,
                LlmTranscriptRecord(
                    execution_id=log.execution_id,
                    turn_id=log.turn_id,
                    cycle=cycle,
                    attempt=attempt,
                    provider=provider,
                    model=model,
                    status="success",
                    request_text=request_text,
                    response_text=self._clean(
                        json.dumps(
                            {
                                "content": result.content,
                                "tool_calls": [c.model_dump() for c in result.tool_calls],
                            },
                            ensure_ascii=True,
                            default=str,
                        )
                    ),
                    response_kind="tool_calls" if result.tool_calls else "content",
                    tool_names=tool_names,
                    usage=LlmTranscriptUsage(
                        input_tokens=result.meta.input_tokens,
                        output_tokens=result.meta.output_tokens,
                        latency_ms=result.meta.latency_ms,
                    ),
                ),
            )
            log.bus.emit(
                "llm_response_received",
                {
                    "cycle": cycle,
                    "meta": result.meta.model_dump(),
                    "response_preview": summarize_text(str(result.content or tool_names)),
                },
            )
            outcome.result = result
            return outcome

        return outcome
