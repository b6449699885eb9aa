"""CLI commands for memgate."""

from __future__ import annotations

import asyncio
import json
from pathlib import Path
from typing import Optional

import typer

from memgate import __version__
from memgate.config.loader import load_config
from memgate.config.schema import Config, ConfigError
from memgate.logging import setup_logging
from memgate.memory.models import MEMORY_KINDS, MEMORY_SCOPES, MemoryRecord, new_id
from memgate.memory.store import LocalMemoryStore
from memgate.memory.tokens import count_tokens
from memgate.privacy.gate import PRIVACY_MODES, PrivacyGate
from memgate.session.manager import ConversationManager

app = typer.Typer(
    name="memgate",
    help="Memory scoring, budgeting and consolidation",
    no_args_is_help=True,
)


def version_callback(value: bool) -> None:
    if value:
        typer.echo(f"memgate v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(None, "--version", "-v", callback=version_callback, is_eager=True),
) -> None:
    """memgate - context budgeting and memory consolidation."""


def _load(workspace: Optional[Path]) -> tuple[Config, Path]:
    try:
        config = load_config()
    except ConfigError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(2)
    logging_cfg = getattr(config, "logging", None)
    if logging_cfg is not None:
        setup_logging(json_output=logging_cfg.json_output, level=logging_cfg.level)
    return config, (workspace or config.workspace_path).expanduser()


def _make_provider(config: Config):
    from memgate.providers.litellm_provider import LiteLLMProvider

    p = config.provider
    return LiteLLMProvider(
        api_key=p.resolved_api_key or None,
        api_base=p.api_base,
        default_model=p.model,
        embedding_model=p.embedding_model,
        resilience_config=p.resilience,
    )


def _make_backends(config: Config):
    """Build the text generator and embedder the configured provider supports."""
    from memgate.providers.generator import ProviderEmbedder, ProviderTextGenerator

    p = config.provider
    if not (p.resolved_api_key or p.api_base or p.embedding_model):
        return None, None
    provider = _make_provider(config)
    generator = ProviderTextGenerator(provider) if (p.resolved_api_key or p.api_base) else None
    embedder = ProviderEmbedder(provider) if p.embedding_model else None
    return generator, embedder


def _make_worker(config: Config, ws: Path):
    from memgate.memory.consolidation import ConsolidationWorker

    generator, embedder = _make_backends(config)
    if generator is None:
        typer.echo("No provider configured; summarize/extract steps will be skipped")
    return ConsolidationWorker(
        LocalMemoryStore(ws),
        generator,
        gate=PrivacyGate(config.get_loadout().privacy_mode),
        config=config.worker,
        embedder=embedder,
    )


@app.command()
def classify(
    text: str = typer.Argument(..., help="Text to analyze"),
    mode: str = typer.Option("standard", "--mode", "-m", help="standard | strict | permissive"),
) -> None:
    """Show write permissions and the redacted form of TEXT."""
    if mode not in PRIVACY_MODES:
        typer.echo(f"Error: unknown mode {mode!r}", err=True)
        raise typer.Exit(2)
    gate = PrivacyGate(mode)  # type: ignore[arg-type]
    perms = gate.analyze(text)
    typer.echo(json.dumps(perms.to_dict(), ensure_ascii=False, indent=2))
    typer.echo(f"redacted: {gate.redact(text)}")


@app.command()
def remember(
    content: str = typer.Argument(..., help="Fact to store"),
    user: str = typer.Option("local", "--user", "-u"),
    kind: str = typer.Option("semantic", "--kind", "-k", help="episodic | semantic | summary"),
    scope: str = typer.Option("global", "--scope", "-s", help="conversation | project | global"),
    tags: str = typer.Option("", "--tags", "-t", help="Comma-separated tags"),
    conversation: Optional[str] = typer.Option(None, "--conversation", "-c"),
    project: Optional[str] = typer.Option(None, "--project", "-p"),
    workspace: Optional[Path] = typer.Option(None, "--workspace", "-w"),
) -> None:
    """Manually write a memory record into the local store."""
    if kind not in MEMORY_KINDS or scope not in MEMORY_SCOPES:
        typer.echo(f"Error: invalid kind/scope {kind}/{scope}", err=True)
        raise typer.Exit(2)
    config, ws = _load(workspace)
    gate = PrivacyGate(config.get_loadout().privacy_mode)
    decision = gate.classify_fact(content)
    if decision == "block":
        typer.echo("Blocked: content carries a forget directive or credentials")
        raise typer.Exit(1)
    if decision == "redact":
        content = gate.redact(content)

    store = LocalMemoryStore(ws)
    _, embedder = _make_backends(config)
    embedding = asyncio.run(embedder.embed(content)) if embedder is not None else None
    record = MemoryRecord(
        id=new_id("mem_"),
        kind=kind,  # type: ignore[arg-type]
        scope=scope,  # type: ignore[arg-type]
        content=content,
        user_id=user,
        embedding=embedding,
        tags=[t.strip() for t in tags.split(",") if t.strip()],
        token_count=count_tokens(content),
        session_id=conversation,
        project_id=project,
        source="manual",
    )
    record_id = asyncio.run(store.insert_record(record))
    typer.echo(f"Stored {record_id} ({decision})")


@app.command()
def pack(
    message: str = typer.Argument(..., help="User message to build context for"),
    conversation: str = typer.Option("cli:default", "--conversation", "-c"),
    user: str = typer.Option("local", "--user", "-u"),
    project: Optional[str] = typer.Option(None, "--project", "-p"),
    loadout: Optional[str] = typer.Option(None, "--loadout", "-l"),
    reply: Optional[str] = typer.Option(None, "--reply", "-r", help="Record this assistant reply afterwards"),
    session_end: bool = typer.Option(False, "--session-end", help="Mark the conversation as ended"),
    as_json: bool = typer.Option(False, "--json", help="Print the full trace as JSON"),
    workspace: Optional[Path] = typer.Option(None, "--workspace", "-w"),
) -> None:
    """Assemble context for MESSAGE and show what was packed or dropped."""
    from memgate.agent.context import ContextBuilder

    config, ws = _load(workspace)
    store = LocalMemoryStore(ws)
    _, embedder = _make_backends(config)
    builder = ContextBuilder(config, store, ConversationManager(ws), semantic_index=store, embedder=embedder)

    async def _run():
        result = await builder.build(
            conversation,
            message,
            user_id=user,
            project_id=project,
            loadout=loadout,
            session_end=session_end,
        )
        outcome = None
        if reply is not None:
            outcome = await builder.record_turn(
                conversation,
                message,
                reply,
                permissions=result.permissions,
                user_id=user,
                project_id=project,
                pressure=result.pressure,
                loadout=loadout,
                session_end=session_end,
            )
        await builder.touch.drain()
        return result, outcome

    result, outcome = asyncio.run(_run())
    trace = result.pack.trace()
    if as_json:
        trace["permissions"] = result.permissions.to_dict()
        trace["pressure"] = round(result.pressure, 4)
        trace["consolidation"] = {
            "should_enqueue": result.trigger.should_enqueue,
            "reason": result.trigger.reason,
        }
        typer.echo(json.dumps(trace, ensure_ascii=False, indent=2))
    else:
        breakdown = trace["token_breakdown"]
        typer.echo(f"Loadout: {result.loadout_id}  skills: {', '.join(s.id for s in result.skills)}")
        typer.echo("Tokens: " + " ".join(f"{k}={v}" for k, v in breakdown.items()))
        typer.echo(f"Packed: {len(result.pack.packed)}  Dropped: {len(result.pack.dropped)}")
        for cand in result.pack.dropped:
            typer.echo(f"  - {cand.source_id}: {cand.drop_reason}")
        typer.echo(f"Pressure: {result.pressure:.2f}  consolidation due: {result.trigger.should_enqueue}")
    if outcome is not None:
        typer.echo(
            f"Recorded turn: evicted={outcome.compaction.evicted_count} "
            f"compaction_pass={outcome.compaction.compaction_pass} "
            f"job={outcome.job.id if outcome.job else '-'}"
        )


@app.command()
def consolidate(
    batch: Optional[int] = typer.Option(None, "--batch", "-b", help="Max jobs to process"),
    workspace: Optional[Path] = typer.Option(None, "--workspace", "-w"),
) -> None:
    """Process pending consolidation jobs once."""
    config, ws = _load(workspace)
    worker = _make_worker(config, ws)
    stats = asyncio.run(worker.process_pending(batch))
    typer.echo(f"Processed {stats['processed']} job(s), {stats['failed']} failed")


@app.command("worker")
def run_worker(
    interval: Optional[float] = typer.Option(None, "--interval", "-i", help="Poll interval in seconds"),
    workspace: Optional[Path] = typer.Option(None, "--workspace", "-w"),
) -> None:
    """Poll for consolidation jobs until interrupted."""
    from memgate.agent.consolidation_coordinator import ConsolidationCoordinator

    config, ws = _load(workspace)
    worker = _make_worker(config, ws)
    coordinator = ConsolidationCoordinator(worker, poll_interval=interval or config.worker.poll_interval_s)

    async def _run() -> None:
        task = coordinator.start_background()
        try:
            if task is not None:
                await task
        finally:
            await coordinator.stop()

    typer.echo(f"Polling every {coordinator.poll_interval:g}s, Ctrl+C to stop")
    try:
        asyncio.run(_run())
    except KeyboardInterrupt:
        typer.echo("Stopped")


if __name__ == "__main__":
    app()
