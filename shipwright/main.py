"""Command line entry point for Shipwright."""

import asyncio
import signal
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import NoReturn, Optional

import typer
from rich.console import Console
from rich.markup import escape
from rich.prompt import Confirm
from rich.table import Table

from shipwright.agent import Orchestrator
from shipwright.config import (
    GLOBAL_CONFIG_PATH,
    Config,
    PermissionRule,
    RuleMatch,
    project_config_path,
    set_config,
)
from shipwright.exceptions import ShipwrightError, TurnCancelledError
from shipwright.llm import provider_from_config
from shipwright.logging import configure_logging, log
from shipwright.patch_engine import PatchEngine, touched_paths
from shipwright.permissions import (
    ALLOW,
    CONFIRM,
    DENY,
    PermissionEngine,
    PermissionStore,
    authorize_paths,
    set_prompts_disabled,
)
from shipwright.session import SessionStore
from shipwright.tools.bridge import ToolCallBridge
from shipwright.tools.servers import CATALOG_FILENAME, ServerCatalog

console = Console()

app = typer.Typer(help="Shipwright - a local-first coding assistant", no_args_is_help=True)
permissions_app = typer.Typer(help="Inspect and edit permission rules", no_args_is_help=True)
servers_app = typer.Typer(help="Manage attached tool servers", no_args_is_help=True)
patch_app = typer.Typer(help="Check, apply and revert patches", no_args_is_help=True)
app.add_typer(permissions_app, name="permissions")
app.add_typer(servers_app, name="servers")
app.add_typer(patch_app, name="patch")

ACTIONS = (ALLOW, DENY, CONFIRM)


@dataclass
class CliState:
    """Resolved options shared by every command."""

    project_root: Path
    config: Config
    global_path: Path = GLOBAL_CONFIG_PATH


def _state(ctx: typer.Context) -> CliState:
    return ctx.obj


def _fail(error: Exception) -> NoReturn:
    console.print(f"[red]Error:[/red] {escape(str(error))}")
    raise typer.Exit(code=1)


def _confirm_prompt(question: str) -> bool:
    return Confirm.ask(escape(question), default=False, console=console)


def _catalog(state: CliState) -> ServerCatalog:
    return ServerCatalog(state.config.state_dir(state.project_root) / CATALOG_FILENAME)


def _permission_engine(state: CliState) -> PermissionEngine:
    return PermissionEngine(PermissionStore(state.project_root, state.global_path))


def _patch_engine(state: CliState) -> PatchEngine:
    return PatchEngine(state.project_root, config=state.config)


def _build_orchestrator(state: CliState, with_sessions: bool = True) -> Orchestrator:
    permissions = _permission_engine(state)
    registry = _catalog(state).build_registry(config=state.config)
    bridge = ToolCallBridge(registry, permissions, _confirm_prompt)
    session_store = SessionStore(state.config.session.path) if with_sessions else None
    return Orchestrator(
        provider=provider_from_config(),
        bridge=bridge,
        patch_engine=_patch_engine(state),
        permissions=permissions,
        confirm=_confirm_prompt,
        session_store=session_store,
        config=state.config,
        project_root=state.project_root,
    )


async def _close_orchestrator(orchestrator: Orchestrator) -> None:
    await orchestrator.bridge.registry.close()
    await orchestrator.provider.close()
    if orchestrator.session_store is not None:
        await orchestrator.session_store.close()


def _print_delta(delta: str) -> None:
    sys.stdout.write(delta)
    sys.stdout.flush()


async def _respond_interruptible(orchestrator: Orchestrator, text: str) -> str:
    """Run one turn; Ctrl-C cancels the turn instead of the process."""
    cancel_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    installed = False
    try:
        loop.add_signal_handler(signal.SIGINT, cancel_event.set)
        installed = True
    except (NotImplementedError, RuntimeError):
        pass
    try:
        return await orchestrator.respond(text, on_delta=_print_delta, cancel_event=cancel_event)
    finally:
        if installed:
            loop.remove_signal_handler(signal.SIGINT)
        sys.stdout.write("\n")


async def _handle_slash_command(orchestrator: Orchestrator, line: str) -> bool:
    """Run a chat slash command; returns False when the loop should stop."""
    command, _, arg = line.partition(" ")
    command = command.lower()
    if command in ("/exit", "/quit"):
        return False
    if command == "/commit":
        paths = await orchestrator.commit_pending_patch()
        console.print(f"[green]Applied patch to:[/green] {escape(', '.join(paths) or '(no files)')}")
    elif command == "/discard":
        orchestrator.clear_pending_patch()
        console.print("[yellow]Pending patch discarded[/yellow]")
    elif command == "/revert":
        if await orchestrator.revert_last_patch():
            console.print("[green]Reverted last patch[/green]")
        else:
            console.print("[yellow]Nothing to revert[/yellow]")
    elif command == "/compact":
        keep_last = int(arg) if arg.strip().isdigit() else orchestrator.config.context.keep_last
        compacted, stats = orchestrator.compact(keep_last)
        if compacted:
            console.print(
                f"Compacted {stats['compacted_messages']} messages "
                f"({stats['before_tokens']} -> {stats['after_tokens']} tokens)"
            )
        else:
            console.print(f"Nothing compacted ({stats.get('reason')})")
    elif command == "/metrics":
        console.print(orchestrator.metrics.to_dict())
    else:
        console.print(
            "Commands: /commit, /discard, /revert, /compact N, /metrics, /exit"
        )
    return True


async def _chat_loop(state: CliState, resume: str | None) -> None:
    orchestrator = _build_orchestrator(state)
    try:
        if resume:
            await orchestrator.restore_session(resume)
            console.print(f"Resumed session {escape(resume)}")
        while True:
            try:
                line = console.input("[bold cyan]you>[/bold cyan] ").strip()
            except (EOFError, KeyboardInterrupt):
                break
            if not line:
                continue
            try:
                if line.startswith("/"):
                    if not await _handle_slash_command(orchestrator, line):
                        break
                    continue
                await _respond_interruptible(orchestrator, line)
                if orchestrator.pending_patch:
                    console.print("[cyan]Patch pending:[/cyan] /commit to apply, /discard to drop")
            except TurnCancelledError:
                console.print("[yellow]Turn cancelled[/yellow]")
            except ShipwrightError as e:
                console.print(f"[red]Error:[/red] {escape(str(e))}")
    finally:
        await _close_orchestrator(orchestrator)


@app.callback()
def _root(
    ctx: typer.Context,
    project: Path = typer.Option(Path("."), "-C", "--project", help="Project root"),
    config: Optional[Path] = typer.Option(None, "-c", "--config", help="Global config file"),
    model: str = typer.Option("", "-m", "--model", help="Override model"),
    provider: str = typer.Option("", "-p", "--provider", help="Override provider"),
    yes: bool = typer.Option(False, "-y", "--yes", help="Allow every action without prompting"),
    verbose: bool = typer.Option(False, "-v", "--verbose", help="Debug logging"),
) -> None:
    """Load layered configuration and set process-wide options."""
    project_root = project.expanduser().resolve()
    global_path = config.expanduser() if config else GLOBAL_CONFIG_PATH
    try:
        cfg = Config.from_layers(global_path, project_config_path(project_root))
    except (ShipwrightError, ValueError) as e:
        _fail(e)
    if model:
        cfg.model.model = model
    if provider:
        cfg.model.provider = provider
    set_config(cfg)
    configure_logging(cfg, level="DEBUG" if verbose else None)
    set_prompts_disabled(yes)
    ctx.obj = CliState(project_root=project_root, config=cfg, global_path=global_path)


@app.command()
def chat(
    ctx: typer.Context,
    resume: Optional[str] = typer.Option(None, "--resume", help="Session id to resume"),
) -> None:
    """Start an interactive session."""
    state = _state(ctx)
    try:
        asyncio.run(_chat_loop(state, resume))
    except ShipwrightError as e:
        _fail(e)
    except KeyboardInterrupt:
        log.info("Shutting down...")


@app.command()
def run(
    ctx: typer.Context,
    prompt: str = typer.Argument(..., help="Instruction for a single turn"),
    commit: bool = typer.Option(False, "--commit", help="Apply a proposed patch"),
) -> None:
    """Run one turn without interaction."""
    state = _state(ctx)

    async def _run() -> None:
        orchestrator = _build_orchestrator(state, with_sessions=False)
        try:
            await orchestrator.respond(prompt, on_delta=_print_delta)
            sys.stdout.write("\n")
            if orchestrator.pending_patch:
                if commit:
                    paths = await orchestrator.commit_pending_patch()
                    console.print(f"Applied patch to: {escape(', '.join(paths))}")
                else:
                    console.print("Patch proposed (use --commit to apply)")
        finally:
            await _close_orchestrator(orchestrator)

    try:
        asyncio.run(_run())
    except ShipwrightError as e:
        _fail(e)


@permissions_app.command("show")
def permissions_show(ctx: typer.Context) -> None:
    """Show effective rules and defaults."""
    engine = _permission_engine(_state(ctx))
    try:
        rules = engine.rules()
        defaults = engine.defaults()
    except ShipwrightError as e:
        _fail(e)

    table = Table(title="Rules", show_header=True, header_style="bold cyan")
    table.add_column("#")
    table.add_column("Tool")
    table.add_column("Path")
    table.add_column("Command")
    table.add_column("Action")
    for idx, rule in enumerate(rules):
        table.add_row(
            str(idx),
            rule.match.tool or "*",
            rule.match.path or "*",
            rule.match.command or "*",
            rule.action,
        )
    console.print(table)

    table = Table(title="Defaults", show_header=True, header_style="bold cyan")
    table.add_column("Tool")
    table.add_column("Action")
    for tool, action in sorted(defaults.items()):
        table.add_row(tool, action)
    console.print(table)


def _validate_action(action: str) -> str:
    action = action.strip().lower()
    if action not in ACTIONS:
        raise typer.BadParameter(f"action must be one of {', '.join(ACTIONS)}")
    return action


@permissions_app.command("default")
def permissions_default(
    ctx: typer.Context,
    tool: str = typer.Argument(..., help="Tool name, e.g. fs_patch or mcp"),
    action: str = typer.Argument(..., help="allow, deny or confirm"),
) -> None:
    """Set the project default for a tool."""
    action = _validate_action(action)
    try:
        _permission_engine(_state(ctx)).set_default(tool, action)
    except ShipwrightError as e:
        _fail(e)
    console.print(f"Default for {escape(tool)}: {action}")


@permissions_app.command("add")
def permissions_add(
    ctx: typer.Context,
    action: str = typer.Argument(..., help="allow, deny or confirm"),
    tool: Optional[str] = typer.Option(None, "--tool", help="Exact tool name"),
    path: Optional[str] = typer.Option(None, "--path", help="Path glob (** spans directories)"),
    command: Optional[str] = typer.Option(None, "--command", help="Command regex"),
) -> None:
    """Append a project rule."""
    action = _validate_action(action)
    rule = PermissionRule(match=RuleMatch(tool=tool, path=path, command=command), action=action)
    try:
        _permission_engine(_state(ctx)).add_rule(rule)
    except ShipwrightError as e:
        _fail(e)
    console.print(f"Added rule: {escape(str(rule.model_dump(exclude_none=True)))}")


@permissions_app.command("remove")
def permissions_remove(
    ctx: typer.Context,
    index: int = typer.Argument(..., help="Project rule index"),
) -> None:
    """Remove a project rule by index."""
    try:
        _permission_engine(_state(ctx)).remove_rule(index)
    except ShipwrightError as e:
        _fail(e)
    console.print(f"Removed rule {index} (if present)")


@servers_app.command("attach")
def servers_attach(
    ctx: typer.Context,
    server_id: str = typer.Argument(..., help="Server id used in tool calls"),
    url: str = typer.Argument(..., help="Server base URL"),
) -> None:
    """Attach a tool server."""
    try:
        _catalog(_state(ctx)).attach(server_id, url)
    except ShipwrightError as e:
        _fail(e)
    console.print(f"Attached {escape(server_id)} -> {escape(url)}")


@servers_app.command("detach")
def servers_detach(
    ctx: typer.Context,
    server_id: str = typer.Argument(..., help="Server id"),
) -> None:
    """Detach a tool server."""
    if _catalog(_state(ctx)).detach(server_id):
        console.print(f"Detached {escape(server_id)}")
    else:
        console.print(f"[yellow]No server named {escape(server_id)}[/yellow]")


@servers_app.command("list")
def servers_list(ctx: typer.Context) -> None:
    """List attached tool servers."""
    entries = _catalog(_state(ctx)).entries()
    if not entries:
        console.print("No tool servers attached")
        return
    table = Table(title="Tool servers", show_header=True, header_style="bold cyan")
    table.add_column("Id")
    table.add_column("URL")
    for entry in entries:
        table.add_row(entry.id, entry.url)
    console.print(table)


@servers_app.command("health")
def servers_health(
    ctx: typer.Context,
    server_id: Optional[str] = typer.Argument(None, help="Only probe this server"),
) -> None:
    """Probe attached tool servers."""
    results = asyncio.run(_catalog(_state(ctx)).health(server_id))
    table = Table(title="Health", show_header=True, header_style="bold cyan")
    table.add_column("Id")
    table.add_column("OK")
    table.add_column("Status")
    table.add_column("Error")
    for item in results:
        table.add_row(
            item.id,
            "yes" if item.ok else "no",
            str(item.status) if item.status is not None else "-",
            item.error or "",
        )
    console.print(table)


@servers_app.command("tools")
def servers_tools(
    ctx: typer.Context,
    server_id: Optional[str] = typer.Argument(None, help="Only list this server"),
) -> None:
    """List tools offered by attached servers."""
    listing = asyncio.run(_catalog(_state(ctx)).list_tools(server_id))
    for sid, tools in listing.items():
        console.print(f"[bold]{escape(sid)}[/bold]")
        if not tools:
            console.print("  (no tools)")
        for tool in tools:
            name = tool.get("name", "?") if isinstance(tool, dict) else str(tool)
            description = tool.get("description", "") if isinstance(tool, dict) else ""
            console.print(f"  {escape(str(name))}  {escape(str(description))}")


def _read_patch(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except OSError as e:
        raise typer.BadParameter(f"Cannot read {path}: {e}") from e


@patch_app.command("check")
def patch_check(
    ctx: typer.Context,
    file: Path = typer.Argument(..., help="Patch file"),
) -> None:
    """Check whether a patch applies cleanly."""
    diff = _read_patch(file)
    try:
        result = asyncio.run(_patch_engine(_state(ctx)).dry_run_apply(diff))
    except ShipwrightError as e:
        _fail(e)
    if result.ok:
        console.print("[green]Patch applies cleanly[/green]")
        return
    for line in result.conflicts:
        console.print(escape(line))
    raise typer.Exit(code=1)


@patch_app.command("apply")
def patch_apply(
    ctx: typer.Context,
    file: Path = typer.Argument(..., help="Patch file"),
) -> None:
    """Authorize and apply a patch."""
    state = _state(ctx)
    diff = _read_patch(file)
    engine = _patch_engine(state)

    async def _apply() -> list[str]:
        paths = touched_paths(diff)
        await authorize_paths(_permission_engine(state), "fs_patch", paths, engine.root, _confirm_prompt)
        await engine.apply(diff)
        return paths

    try:
        paths = asyncio.run(_apply())
    except ShipwrightError as e:
        _fail(e)
    console.print(f"[green]Applied patch to:[/green] {escape(', '.join(paths))}")


@patch_app.command("revert-last")
def patch_revert_last(ctx: typer.Context) -> None:
    """Revert the most recently applied patch."""
    try:
        reverted = asyncio.run(_patch_engine(_state(ctx)).revert_last())
    except ShipwrightError as e:
        _fail(e)
    if reverted:
        console.print("[green]Reverted last patch[/green]")
    else:
        console.print("[yellow]Nothing to revert[/yellow]")


@patch_app.command("journal")
def patch_journal(ctx: typer.Context) -> None:
    """Show the patch journal."""
    entries = _patch_engine(_state(ctx)).entries()
    table = Table(title="Patch journal", show_header=True, header_style="bold cyan")
    table.add_column("#")
    table.add_column("Action")
    table.add_column("Time")
    table.add_column("Files")
    table.add_column("Reverted")
    for idx, entry in enumerate(entries):
        try:
            files = ", ".join(touched_paths(entry.diff))
        except ShipwrightError:
            files = "?"
        table.add_row(str(idx), entry.action, entry.timestamp, files, "yes" if entry.reverted else "")
    console.print(table)


def main() -> None:
    """Console script entry point."""
    app()


if __name__ == "__main__":
    main()
