from __future__ import annotations

import json
from pathlib import Path
from typing import Annotated

import typer
from rich.console import Console
from rich.table import Table

from turnflow.capabilities.registry import CapabilityRegistry
from turnflow.config import (
    AgentConfig,
    discover_config_path,
    load_config,
    write_default_config,
)
from turnflow.errors import ConfigError, NotFoundError
from turnflow.runtime.builder import Runtime, build_runtime
from turnflow.types import ApprovalDecision, EventRecord, TurnOutcome

app = typer.Typer(help="Turn orchestration runtime for tool-using agents")
config_app = typer.Typer(help="Initialize and validate configuration")
app.add_typer(config_app, name="config")
console = Console()


def _load_config_or_exit(config_path: Path | None) -> AgentConfig:
    try:
        return load_config(config_path)
    except ConfigError as exc:
        console.print(f"[red]Config error:[/red] {exc}")
        raise typer.Exit(code=1) from exc


def _render_progress(event: EventRecord) -> None:
    payload = event.payload
    et = event.event_type
    if et == "turn_started":
        console.print(f"[cyan]turn[/cyan] {event.trace_id} started")
    elif et == "llm_request_sent":
        console.print(
            f"[cyan]llm[/cyan] cycle={payload.get('cycle')} attempt={payload.get('attempt')} "
            f"tools={payload.get('tool_count')}"
        )
    elif et == "llm_response_received":
        meta = payload.get("meta", {})
        console.print(
            f"[cyan]llm[/cyan] response latency_ms={meta.get('latency_ms')} "
            f"output_tokens={meta.get('output_tokens')}"
        )
    elif et == "llm_retry_scheduled":
        console.print(
            f"[yellow]llm-retry[/yellow] attempt={payload.get('attempt')} "
            f"delay={payload.get('delay_seconds')}"
        )
    elif et == "decision_recorded" and payload.get("step_type") == "ToolResult":
        inner = payload.get("payload", {})
        status = "ok" if payload.get("success") else f"failed code={inner.get('code')}"
        console.print(f"[cyan]tool[/cyan] {inner.get('capability')} {status}")
    elif et == "handoff_published":
        console.print(f"[cyan]handoff[/cyan] kind={payload.get('kind')} depth={payload.get('depth')}")
    elif et == "turn_suspended":
        console.print(f"[yellow]waiting[/yellow] status={payload.get('status')}")
    elif et == "turn_stale":
        console.print(f"[yellow]stale[/yellow] reason={payload.get('reason')}")
    elif et == "turn_failed":
        console.print(f"[red]failed[/red] {payload.get('error_kind')}: {payload.get('message')}")
    elif et == "turn_completed":
        console.print(f"[green]completed[/green] cycles={payload.get('cycles')}")


def _build_or_exit(cfg: AgentConfig, show_progress: bool = False) -> Runtime:
    try:
        return build_runtime(cfg, on_emit=_render_progress if show_progress else None)
    except ConfigError as exc:
        console.print(f"[red]Config error:[/red] {exc}")
        raise typer.Exit(code=1) from exc


def _report(runtime: Runtime, outcome: TurnOutcome, drain: bool) -> None:
    if drain and outcome.outcome == "suspended":
        runtime.worker.drain()
    execution = runtime.coordinator.get_execution(outcome.execution_id)
    console.print(f"Session: {execution.id}  Status: {execution.status.value}")
    latest = runtime.coordinator.get_history(execution.id, limit=1)
    if latest and latest[0].role == "assistant" and latest[0].turn_id == outcome.turn_id:
        style = "red" if latest[0].is_error else "green"
        console.print(f"[{style}]{latest[0].content or ''}[/{style}]")
    pending = [
        item
        for item in runtime.coordinator.pending_actions(execution.id)
        if item.status.value in {"Queued", "Approved"}
    ]
    for item in pending:
        label = "awaiting approval" if item.requires_approval else "queued"
        console.print(f"[yellow]{label}[/yellow] {item.id} {item.capability}")
    if outcome.outcome in {"failed", "rejected_busy"}:
        raise typer.Exit(code=1)


@app.command("chat")
def chat_command(
    message: Annotated[str, typer.Argument(help="User message to send")],
    session: Annotated[str | None, typer.Option(help="Existing session id")] = None,
    user: Annotated[str, typer.Option(help="User id for a new session")] = "local",
    agent: Annotated[str, typer.Option(help="Agent configuration name")] = "default",
    turn_id: Annotated[str | None, typer.Option(help="Caller-supplied turn identifier")] = None,
    drain: Annotated[
        bool, typer.Option(help="Process queued hand-offs before returning")
    ] = True,
    show_progress: Annotated[bool, typer.Option(help="Show progress events")] = True,
    config: Annotated[Path | None, typer.Option(help="Path to config file")] = None,
) -> None:
    cfg = _load_config_or_exit(config)
    runtime = _build_or_exit(cfg, show_progress)
    try:
        if session is None:
            try:
                execution = runtime.coordinator.open_session(user, agent)
            except ConfigError as exc:
                console.print(f"[red]Config error:[/red] {exc}")
                raise typer.Exit(code=1) from exc
            session = execution.id
            console.print(f"Opened session: {session}")
        try:
            outcome = runtime.coordinator.start_turn(session, message, turn_id=turn_id)
        except NotFoundError as exc:
            console.print(f"[red]{exc}[/red]")
            raise typer.Exit(code=1) from exc
        if outcome.outcome == "rejected_busy":
            console.print("[yellow]The session is still working on a previous message.[/yellow]")
        _report(runtime, outcome, drain)
    finally:
        runtime.close()


@app.command("history")
def history_command(
    session: Annotated[str, typer.Argument(help="Session id")],
    limit: Annotated[int, typer.Option(help="Messages per page")] = 25,
    before: Annotated[int | None, typer.Option(help="Only messages before this sequence")] = None,
    config: Annotated[Path | None, typer.Option(help="Path to config file")] = None,
) -> None:
    cfg = _load_config_or_exit(config)
    runtime = _build_or_exit(cfg)
    try:
        try:
            messages = runtime.coordinator.get_history(session, limit=limit, before_sequence=before)
        except NotFoundError as exc:
            console.print(f"[red]{exc}[/red]")
            raise typer.Exit(code=1) from exc
        if not messages:
            console.print("No messages")
            return
        table = Table(title=f"Session {session}")
        table.add_column("#")
        table.add_column("Role")
        table.add_column("Turn")
        table.add_column("Content")
        for item in messages:
            content = item.content or ""
            if item.tool_calls:
                content = ", ".join(call.name for call in item.tool_calls)
            table.add_row(str(item.sequence), item.role, item.turn_id, content)
        console.print(table)
    finally:
        runtime.close()


def _decide(
    action_id: str,
    approved: bool,
    by: str | None,
    comment: str | None,
    config: Path | None,
) -> None:
    cfg = _load_config_or_exit(config)
    runtime = _build_or_exit(cfg, show_progress=True)
    try:
        try:
            outcome = runtime.coordinator.decide_approval(
                ApprovalDecision(
                    pending_action_id=action_id,
                    approved=approved,
                    decided_by=by,
                    comment=comment,
                )
            )
        except NotFoundError as exc:
            console.print(f"[red]{exc}[/red]")
            raise typer.Exit(code=1) from exc
        if outcome.outcome in {"noop", "stale"}:
            reason = f" ({outcome.reason})" if outcome.reason else ""
            console.print(f"[yellow]Decision ignored:[/yellow] {outcome.outcome}{reason}")
            return
        if outcome.outcome == "deferred":
            console.print("[yellow]Decision recorded; applies when the running step ends.[/yellow]")
            return
        _report(runtime, outcome, drain=True)
    finally:
        runtime.close()


@app.command("approve")
def approve_command(
    action_id: Annotated[str, typer.Argument(help="Pending action id")],
    by: Annotated[str | None, typer.Option(help="Approver name")] = None,
    comment: Annotated[str | None, typer.Option(help="Decision comment")] = None,
    config: Annotated[Path | None, typer.Option(help="Path to config file")] = None,
) -> None:
    _decide(action_id, True, by, comment, config)


@app.command("reject")
def reject_command(
    action_id: Annotated[str, typer.Argument(help="Pending action id")],
    by: Annotated[str | None, typer.Option(help="Approver name")] = None,
    comment: Annotated[str | None, typer.Option(help="Reason for rejecting")] = None,
    config: Annotated[Path | None, typer.Option(help="Path to config file")] = None,
) -> None:
    _decide(action_id, False, by, comment, config)


@app.command("worker")
def worker_command(
    once: Annotated[bool, typer.Option(help="Drain queued hand-offs and exit")] = False,
    config: Annotated[Path | None, typer.Option(help="Path to config file")] = None,
) -> None:
    cfg = _load_config_or_exit(config)
    runtime = _build_or_exit(cfg, show_progress=True)
    try:
        if once:
            handled = runtime.worker.drain()
            console.print(f"Processed {handled} hand-offs")
            return
        console.print("Worker started; press Ctrl+C to stop")
        stats = runtime.worker.run_forever()
        console.print(
            f"Worker stopped: deliveries={stats.deliveries} released={stats.released} "
            f"outcomes={stats.outcomes}"
        )
    finally:
        runtime.close()


@app.command("serve")
def serve_command(
    host: Annotated[str, typer.Option(help="Bind address")] = "127.0.0.1",
    port: Annotated[int, typer.Option(help="Bind port")] = 8070,
    config: Annotated[Path | None, typer.Option(help="Path to config file")] = None,
) -> None:
    import uvicorn

    from turnflow.api import create_app

    cfg = _load_config_or_exit(config)
    runtime = _build_or_exit(cfg)
    uvicorn.run(create_app(runtime), host=host, port=port)


@app.command("replay")
def replay_command(
    session: Annotated[str, typer.Argument(help="Session id")],
    event_stream: Annotated[bool, typer.Option(help="Replay events as a stream")] = True,
    llm_transcript: Annotated[
        bool, typer.Option(help="Replay readable LLM transcript entries")
    ] = False,
    config: Annotated[Path | None, typer.Option(help="Path to config file")] = None,
) -> None:
    cfg = _load_config_or_exit(config)
    events_path = Path(cfg.logging.jsonl_dir) / session / "events.jsonl"
    if not events_path.exists():
        console.print(f"Events file not found: {events_path}")
        raise typer.Exit(code=1)

    lines = events_path.read_text(encoding="utf-8").splitlines()
    for line in lines:
        if not line.strip():
            continue
        data = json.loads(line)
        if event_stream:
            console.print(
                f"[{data['timestamp']}] {data['event_type']} "
                f"turn={data['trace_id']} payload={data['payload']}"
            )
        else:
            console.print_json(json.dumps(data))

    if llm_transcript:
        transcript_path = Path(cfg.logging.jsonl_dir) / session / cfg.logging.llm_transcript_filename
        if not transcript_path.exists():
            console.print(f"LLM transcript file not found: {transcript_path}")
            raise typer.Exit(code=1)
        console.print(transcript_path.read_text(encoding="utf-8").rstrip())


@config_app.command("init")
def config_init(
    output: Annotated[Path, typer.Option(help="Output config path")] = Path("./turnflow.yaml"),
    force: Annotated[bool, typer.Option(help="Overwrite existing config file")] = False,
) -> None:
    try:
        write_default_config(output, overwrite=force)
    except ConfigError as exc:
        console.print(f"[red]Config init failed:[/red] {exc}")
        raise typer.Exit(code=1) from exc
    console.print(f"Wrote config file: {output}")


@config_app.command("validate")
def config_validate(
    file: Annotated[Path, typer.Option(help="Config file path")] = Path("turnflow.yaml"),
    check_capabilities: Annotated[
        bool, typer.Option(help="Also import every configured capability handler")
    ] = True,
) -> None:
    try:
        cfg = load_config(file)
        if check_capabilities:
            CapabilityRegistry.from_config(cfg)
    except ConfigError as exc:
        console.print(f"[red]Invalid config:[/red] {exc}")
        raise typer.Exit(code=1) from exc
    console.print(f"Config valid: {file}")


@app.command("config-path")
def config_path() -> None:
    path = discover_config_path(None)
    if path is None:
        console.print("No config discovered; using built-in defaults")
        return
    console.print(str(path))


def main() -> None:
    app()


if __name__ == "__main__":
    main()
