from __future__ import annotations

import asyncio
import os
import signal
import tempfile
import time
from pathlib import Path
from typing import Awaitable, Callable
from urllib.parse import quote

import typer
from rich.console import Console
from rich.table import Table
from rich.text import Text

from keel.anchors import AnchorManager
from keel.archive import (
    export_anchor,
    export_journey,
    import_anchor,
    import_journey,
)
from keel.config import (
    CONFIG_FILENAME,
    KeelConfig,
    config_path,
    default_token,
    load_config,
    save_config,
)
from keel.errors import AlreadyExistsError, KeelError, NotFoundError, ReplayDivergenceError
from keel.executor import ShellExecutor
from keel.hub import pull_archive, push_archive, remote_journey_path
from keel.log import configure_logging
from keel.models import Checkpoint, CheckpointKind, DiffResult, JourneyStep, StepOutcome
from keel.player import JourneyPlayer
from keel.recorder import (
    CommandSource,
    ConsoleCommandSource,
    JourneyRecorder,
    StreamCommandSource,
    record_session,
)
from keel.state_db import StateStore
from keel.variables import parse_assignments, resolve_variables


app = typer.Typer(help="keel: project anchors and command journeys")
anchor_app = typer.Typer(help="Save, track and restore project anchors.")
journey_app = typer.Typer(help="Record and replay command journeys.")
app.add_typer(anchor_app, name="anchor")
app.add_typer(journey_app, name="journey")
console = Console()

STOP_WAIT_SECONDS = 30.0


@app.callback()
def main(
    verbose: int = typer.Option(
        0,
        "--verbose",
        "-v",
        count=True,
        help="Increase log output (-v for info, -vv for debug).",
    ),
) -> None:
    configure_logging(verbose)


async def _guarded(action: Callable[[], Awaitable[int]], *, interrupted: str) -> int:
    try:
        return await action()
    except KeyboardInterrupt:
        console.print(f"[yellow]{interrupted}[/yellow]")
        return 130
    except (FileNotFoundError, KeelError) as exc:
        console.print(f"[red]{exc}[/red]")
        return 1


def _format_size(size: int) -> str:
    value = float(size)
    for unit in ("B", "KiB", "MiB", "GiB"):
        if value < 1024 or unit == "GiB":
            return f"{value:.0f} {unit}" if unit == "B" else f"{value:.1f} {unit}"
        value /= 1024
    return f"{size} B"


def _render_path_summary(title: str, paths: list[str], style: str) -> None:
    if not paths:
        return
    console.print(Text(f"{title} ({len(paths)}):", style=style))
    for path in paths:
        console.print(f"  {path}")


def _render_diff(result: DiffResult) -> None:
    _render_path_summary("Added", result.added, "green")
    _render_path_summary("Removed", result.removed, "red")
    _render_path_summary("Modified", [entry.path for entry in result.modified], "yellow")
    if result.unreadable:
        console.print(Text(f"Unreadable ({len(result.unreadable)}):", style="magenta"))
        for entry in result.unreadable:
            console.print(f"  {entry.path}: {entry.reason}")
    if not result.has_changes:
        console.print("[green]No changes detected.[/green]")


def _pid_path(config: KeelConfig, name: str) -> Path:
    return config.tracking_path / f"{quote(name, safe='')}.pid"


def _read_pid(path: Path) -> int | None:
    try:
        return int(path.read_text(encoding="utf-8").strip())
    except (OSError, ValueError):
        return None


def _pid_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _signal_tracker(config: KeelConfig, name: str) -> bool:
    """Ask a tracking process for ``name`` to stop and wait for it; False when none runs."""
    pid_path = _pid_path(config, name)
    pid = _read_pid(pid_path)
    if pid is None or pid == os.getpid() or not _pid_alive(pid):
        pid_path.unlink(missing_ok=True)
        return False
    os.kill(pid, signal.SIGTERM)
    deadline = time.monotonic() + STOP_WAIT_SECONDS
    while pid_path.exists() and _pid_alive(pid):
        if time.monotonic() > deadline:
            raise KeelError(f"Tracking process {pid} for anchor '{name}' did not stop")
        time.sleep(0.1)
    return True


# init


async def _init_async(root: Path, storage_dir: str, repo_id: str, debounce_ms: int, force: bool) -> int:
    root = root.resolve()
    if not root.is_dir():
        console.print(f"[red]Project root does not exist: {root}[/red]")
        return 1
    if config_path(root).exists() and not force:
        console.print(f"[red]{config_path(root)} already exists.[/red] Use --force to overwrite it.")
        return 1

    config = KeelConfig(
        project_root=str(root),
        storage_dir=storage_dir,
        debounce_ms=debounce_ms,
        hub_repo_id=repo_id,
        token=default_token(),
    )
    config.objects_path.mkdir(parents=True, exist_ok=True)
    config.tracking_path.mkdir(parents=True, exist_ok=True)
    await StateStore(config.state_db_path).ensure_db()
    save_config(config, root)
    console.print(f"[green]Initialized keel[/green] at {root}")
    console.print(f"Config: {root / CONFIG_FILENAME}")
    console.print(f"Storage: {config.storage_path}")
    return 0


@app.command()
def init(
    root: Path = typer.Argument(Path("."), help="Project directory to manage."),
    storage_dir: str = typer.Option("", "--storage-dir", help="Where anchors and journeys are stored."),
    repo_id: str = typer.Option("", "--repo", help="Hugging Face repo used by publish/download."),
    debounce_ms: int = typer.Option(200, "--debounce-ms", help="Watcher debounce window."),
    force: bool = typer.Option(False, "--force", help="Overwrite an existing config."),
) -> None:
    """Create .keel.json and the storage directory."""
    raise typer.Exit(code=asyncio.run(_init_async(root, storage_dir, repo_id, debounce_ms, force)))


# anchors


async def _anchor_save_async(name: str, description: str) -> int:
    config = load_config()
    manager = AnchorManager(config)
    console.print(f"Scanning [bold]{config.project_root_path}[/bold] ...")
    result = await manager.save(name, description, console=console)
    for entry in result.unreadable:
        console.print(f"[yellow]Skipped unreadable file[/yellow] {entry.path}: {entry.reason}")
    anchor = result.anchor
    console.print(
        f"[green]Saved anchor[/green] {anchor.name}: {len(anchor.file_tree)} file(s), "
        f"{_format_size(anchor.total_size)}"
    )
    return 0


@anchor_app.command("save")
def anchor_save(
    name: str,
    description: str = typer.Option("", "--message", "-m", help="Description for the anchor."),
) -> None:
    """Snapshot the project tree under NAME, replacing any anchor with that name."""
    raise typer.Exit(
        code=asyncio.run(
            _guarded(
                lambda: _anchor_save_async(name, description),
                interrupted="Save interrupted. The previous anchor is unchanged.",
            )
        )
    )


async def _anchor_restore_async(name: str, wait: bool) -> int:
    manager = AnchorManager(load_config())
    result = await manager.restore(name, wait=wait)
    _render_path_summary("Written", result.written_paths, "green")
    _render_path_summary("Deleted", result.deleted_paths, "yellow")
    console.print(f"Restored [bold]{name}[/bold]. Unchanged: {result.unchanged_count} file(s)")
    return 0


@anchor_app.command("restore")
def anchor_restore(
    name: str,
    wait: bool = typer.Option(True, "--wait/--no-wait", help="Wait for in-flight tracking updates."),
) -> None:
    """Make the project tree match anchor NAME."""
    raise typer.Exit(
        code=asyncio.run(
            _guarded(
                lambda: _anchor_restore_async(name, wait),
                interrupted="Restore interrupted. The tree may be partially restored.",
            )
        )
    )


async def _anchor_list_async() -> int:
    manager = AnchorManager(load_config())
    summaries = await manager.list()
    if not summaries:
        console.print("No anchors saved yet.")
        return 0
    table = Table(title="Anchors")
    table.add_column("Name")
    table.add_column("Created (UTC)")
    table.add_column("Files", justify="right")
    table.add_column("Size", justify="right")
    table.add_column("Tracked")
    table.add_column("Description")
    for summary in summaries:
        table.add_row(
            summary.name,
            summary.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            str(summary.file_count),
            _format_size(summary.total_size),
            "yes" if summary.tracked else "",
            summary.description,
        )
    console.print(table)
    return 0


@anchor_app.command("list")
def anchor_list() -> None:
    """List anchors, newest first."""
    raise typer.Exit(code=asyncio.run(_guarded(_anchor_list_async, interrupted="Interrupted.")))


async def _anchor_show_async(name: str, files: bool) -> int:
    manager = AnchorManager(load_config())
    anchor = await manager.show(name)
    console.print(f"[bold]{anchor.name}[/bold]  created {anchor.created_at.isoformat()}")
    if anchor.description:
        console.print(anchor.description)
    console.print(
        f"{len(anchor.file_tree)} file(s), {_format_size(anchor.total_size)}, "
        f"tracked: {'yes' if anchor.tracked else 'no'}"
    )
    if anchor.git_commit:
        console.print(f"git commit: {anchor.git_commit}")
    for key, value in anchor.environment.items():
        console.print(Text(f"  {key}={value}", style="dim"))
    if files:
        table = Table()
        table.add_column("Path")
        table.add_column("Size", justify="right")
        table.add_column("Mode", justify="right")
        table.add_column("SHA-256")
        for record in anchor.file_tree.values():
            table.add_row(record.path, str(record.size), oct(record.mode), record.sha256)
        console.print(table)
    return 0


@anchor_app.command("show")
def anchor_show(
    name: str,
    files: bool = typer.Option(False, "--files", help="List every file in the anchor."),
) -> None:
    """Show details of anchor NAME."""
    raise typer.Exit(
        code=asyncio.run(_guarded(lambda: _anchor_show_async(name, files), interrupted="Interrupted."))
    )


async def _anchor_diff_async(name: str, against: str | None) -> int:
    manager = AnchorManager(load_config())
    if against:
        result = await manager.diff_anchors(name, against)
    else:
        result = await manager.diff(name)
    _render_diff(result)
    return 0


@anchor_app.command("diff")
def anchor_diff(
    name: str,
    against: str | None = typer.Option(
        None,
        "--against",
        help="Compare with another anchor instead of the live tree.",
    ),
) -> None:
    """Show what changed between anchor NAME and the live tree."""
    raise typer.Exit(
        code=asyncio.run(
            _guarded(lambda: _anchor_diff_async(name, against), interrupted="Diff interrupted.")
        )
    )


async def _anchor_auto_async(name: str) -> int:
    config = load_config()
    manager = AnchorManager(config)
    pid_path = _pid_path(config, name)
    existing = _read_pid(pid_path)
    if existing is not None and existing != os.getpid() and _pid_alive(existing):
        console.print(f"[red]Anchor '{name}' is already tracked by process {existing}.[/red]")
        return 1

    handle = await manager.auto(name)
    pid_path.parent.mkdir(parents=True, exist_ok=True)
    pid_path.write_text(f"{os.getpid()}\n", encoding="utf-8")

    loop = asyncio.get_running_loop()
    stop_requested = asyncio.Event()
    installed: list[signal.Signals] = []
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_requested.set)
            installed.append(sig)
        except (NotImplementedError, RuntimeError):
            continue

    console.print(f"[green]Tracking anchor[/green] {name}. Press Ctrl+C or run `keel anchor stop {name}`.")
    stop_waiter = asyncio.create_task(stop_requested.wait())
    try:
        assert handle.task is not None
        await asyncio.wait({stop_waiter, handle.task}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        stop_waiter.cancel()
        for sig in installed:
            loop.remove_signal_handler(sig)
        await manager.stop(name)
        pid_path.unlink(missing_ok=True)

    for failure in handle.failures:
        console.print(f"[yellow]Could not track[/yellow] {failure}")
    if handle.error is not None:
        console.print(f"[red]Tracking stopped:[/red] {handle.error}")
        return 1
    console.print(f"Stopped tracking {name} after {handle.applied_events} change(s).")
    return 0


@anchor_app.command("auto")
def anchor_auto(name: str) -> None:
    """Keep anchor NAME in sync with the project tree until stopped."""
    raise typer.Exit(
        code=asyncio.run(_guarded(lambda: _anchor_auto_async(name), interrupted="Tracking interrupted."))
    )


async def _anchor_stop_async(name: str) -> int:
    config = load_config()
    signalled = await asyncio.to_thread(_signal_tracker, config, name)
    await AnchorManager(config).stop(name)
    if signalled:
        console.print(f"[green]Stopped tracking[/green] {name}")
    else:
        console.print(f"Anchor {name} was not being tracked.")
    return 0


@anchor_app.command("stop")
def anchor_stop(name: str) -> None:
    """Stop background tracking of anchor NAME."""
    raise typer.Exit(code=asyncio.run(_guarded(lambda: _anchor_stop_async(name), interrupted="Interrupted.")))


async def _anchor_delete_async(name: str) -> int:
    config = load_config()
    await asyncio.to_thread(_signal_tracker, config, name)
    await AnchorManager(config).delete(name)
    console.print(f"[green]Deleted anchor[/green] {name}. Run `keel gc` to reclaim blob storage.")
    return 0


@anchor_app.command("delete")
def anchor_delete(name: str) -> None:
    """Delete anchor NAME, stopping its tracking first."""
    raise typer.Exit(code=asyncio.run(_guarded(lambda: _anchor_delete_async(name), interrupted="Interrupted.")))


async def _anchor_export_async(name: str, path: Path) -> int:
    written = await export_anchor(AnchorManager(load_config()), name, path)
    console.print(f"[green]Exported anchor[/green] {name} to {written}")
    return 0


@anchor_app.command("export")
def anchor_export(
    name: str,
    path: Path = typer.Argument(..., help="Archive file; a .gz suffix compresses it."),
) -> None:
    """Write anchor NAME and its file contents to an archive."""
    raise typer.Exit(
        code=asyncio.run(_guarded(lambda: _anchor_export_async(name, path), interrupted="Export interrupted."))
    )


async def _anchor_import_async(path: Path, name: str | None, force: bool) -> int:
    anchor = await import_anchor(AnchorManager(load_config()), path, name=name, replace=force)
    console.print(f"[green]Imported anchor[/green] {anchor.name} ({len(anchor.file_tree)} file(s))")
    return 0


@anchor_app.command("import")
def anchor_import(
    path: Path,
    name: str | None = typer.Option(None, "--name", help="Store under a different name."),
    force: bool = typer.Option(False, "--force", help="Replace an existing anchor."),
) -> None:
    """Load an anchor archive produced by `keel anchor export`."""
    raise typer.Exit(
        code=asyncio.run(
            _guarded(lambda: _anchor_import_async(path, name, force), interrupted="Import interrupted.")
        )
    )


async def _gc_async() -> int:
    result = await AnchorManager(load_config()).gc()
    console.print(
        f"Removed {result.removed} unreferenced blob(s), freed {_format_size(result.freed_bytes)}"
    )
    return 0


@app.command()
def gc() -> None:
    """Delete stored file contents no anchor refers to."""
    raise typer.Exit(code=asyncio.run(_guarded(_gc_async, interrupted="GC interrupted.")))


# journeys


def _store(config: KeelConfig) -> StateStore:
    return StateStore(config.state_db_path)


def _print_step(step: JourneyStep) -> None:
    if step.captured_stdout:
        console.print(step.captured_stdout, end="", markup=False, highlight=False)
    if step.exit_status != 0:
        console.print(f"[yellow]exit {step.exit_status}[/yellow]")


def _print_outcome(outcome: StepOutcome) -> None:
    prefix = f"[{outcome.index + 1}] {outcome.command}"
    if not outcome.executed:
        console.print(Text(f"{prefix}  (expects exit {outcome.recorded_status})", style="dim"))
        return
    if outcome.status_changed:
        console.print(
            Text(f"{prefix}  exit {outcome.live_status}, recorded {outcome.recorded_status}", style="red")
        )
    else:
        console.print(Text(f"{prefix}  exit {outcome.live_status}", style="green"))
    for check in outcome.checkpoints:
        if check.passed:
            console.print(Text(f"    checkpoint {check.name}: ok", style="green"))
        else:
            console.print(Text(f"    checkpoint {check.name}: {check.message}", style="red"))
    if outcome.live_output:
        console.print(outcome.live_output, end="", markup=False, highlight=False)


async def _journey_record_async(
    name: str, description: str, from_file: Path | None, assignments: list[str]
) -> int:
    config = load_config()
    variables = parse_assignments(assignments)
    store = _store(config)
    if await store.load_journey(name) is not None:
        raise AlreadyExistsError("journey", name)

    executor = ShellExecutor(config.project_root_path, timeout=config.command_timeout)
    recorder = JourneyRecorder(store, capture_env=config.capture_env)
    if from_file is not None:
        with from_file.open("r", encoding="utf-8") as fh:
            source: CommandSource = StreamCommandSource(fh)
            journey = await record_session(
                recorder,
                name,
                source,
                executor.execute,
                description=description,
                variables=variables,
                on_step=_print_step,
            )
    else:
        console.print(
            f"Recording journey [bold]{name}[/bold]. Type `stop` or `exit`, or press Ctrl+D to finish."
        )
        journey = await record_session(
            recorder,
            name,
            ConsoleCommandSource(console),
            executor.execute,
            description=description,
            variables=variables,
            on_step=_print_step,
        )
    console.print(f"[green]Saved journey[/green] {journey.name} ({len(journey.steps)} step(s))")
    return 0


@journey_app.command("record")
def journey_record(
    name: str,
    description: str = typer.Option("", "--message", "-m", help="Description for the journey."),
    from_file: Path | None = typer.Option(
        None,
        "--from-file",
        help="Read commands from a file instead of the interactive prompt.",
    ),
    assignments: list[str] = typer.Option(
        [],
        "--var",
        help="Declare a variable as KEY=DEFAULT; use it in commands as {{KEY}}.",
    ),
) -> None:
    """Record the commands you run as journey NAME."""
    raise typer.Exit(
        code=asyncio.run(
            _guarded(
                lambda: _journey_record_async(name, description, from_file, assignments),
                interrupted="Recording interrupted. Nothing was saved.",
            )
        )
    )


def _prompt_variable(name: str, default: str) -> str:
    return console.input(f"[bold]{name}[/bold] [dim]({default})[/dim]: ").strip()


async def _journey_play_async(
    name: str, strict: bool, dry_run: bool, assignments: list[str], interactive: bool
) -> int:
    config = load_config()
    store = _store(config)
    journey = await store.load_journey(name)
    if journey is None:
        raise NotFoundError("journey", name)
    variables = resolve_variables(
        journey.variables,
        parse_assignments(assignments),
        _prompt_variable if interactive else None,
    )

    executor = ShellExecutor(config.project_root_path, timeout=config.command_timeout)
    player = JourneyPlayer(
        executor.execute,
        strict=strict,
        dry_run=dry_run,
        store=store,
        on_step=_print_outcome,
        variables=variables,
        root=config.project_root_path,
    )
    try:
        result = await player.play(journey)
    except ReplayDivergenceError as exc:
        console.print(f"[red]{exc}[/red]")
        return 1

    if dry_run:
        console.print(f"{len(result.outcomes)} step(s) would run.")
        return 0
    divergences = result.divergences
    if divergences:
        console.print(f"[yellow]Completed with {len(divergences)} divergent step(s).[/yellow]")
    else:
        console.print(f"[green]Replayed {len(result.outcomes)} step(s) without divergence.[/green]")
    return 0


@journey_app.command("play")
def journey_play(
    name: str,
    strict: bool = typer.Option(False, "--strict", help="Stop at the first divergent exit status."),
    dry_run: bool = typer.Option(False, "--dry-run", help="List the steps without running them."),
    assignments: list[str] = typer.Option([], "--var", help="Set a journey variable as KEY=VALUE."),
    interactive: bool = typer.Option(
        False, "--interactive", "-i", help="Ask for each variable not set with --var."
    ),
) -> None:
    """Replay journey NAME step by step."""
    raise typer.Exit(
        code=asyncio.run(
            _guarded(
                lambda: _journey_play_async(name, strict, dry_run, assignments, interactive),
                interrupted="Replay interrupted.",
            )
        )
    )


async def _journey_list_async() -> int:
    summaries = await _store(load_config()).list_journeys()
    if not summaries:
        console.print("No journeys recorded yet.")
        return 0
    table = Table(title="Journeys")
    table.add_column("Name")
    table.add_column("Created (UTC)")
    table.add_column("Steps", justify="right")
    table.add_column("Description")
    for summary in summaries:
        table.add_row(
            summary.name,
            summary.created_at.strftime("%Y-%m-%d %H:%M:%S"),
            str(summary.step_count),
            summary.description,
        )
    console.print(table)
    return 0


@journey_app.command("list")
def journey_list() -> None:
    """List recorded journeys, newest first."""
    raise typer.Exit(code=asyncio.run(_guarded(_journey_list_async, interrupted="Interrupted.")))


def _describe(checkpoint: Checkpoint) -> str:
    if checkpoint.kind is CheckpointKind.FILE_EXISTS:
        return f"{checkpoint.target} exists"
    if checkpoint.kind is CheckpointKind.FILE_CONTAINS:
        return f"{checkpoint.target} contains {checkpoint.expected!r}"
    return f"`{checkpoint.target}` succeeds"


async def _journey_show_async(name: str, output: bool) -> int:
    journey = await _store(load_config()).load_journey(name)
    if journey is None:
        raise NotFoundError("journey", name)
    console.print(f"[bold]{journey.name}[/bold]  created {journey.created_at.isoformat()}")
    if journey.description:
        console.print(journey.description)
    table = Table()
    table.add_column("#", justify="right")
    table.add_column("Command")
    table.add_column("Exit", justify="right")
    table.add_column("At (UTC)")
    for index, step in enumerate(journey.steps, start=1):
        table.add_row(
            str(index),
            Text(step.raw_command),
            str(step.exit_status),
            step.timestamp.strftime("%H:%M:%S"),
        )
    console.print(table)
    for key, default in journey.variables.items():
        console.print(f"variable {key} (default {default!r})", markup=False)
    for checkpoint in journey.checkpoints:
        where = f"after step {checkpoint.step_index + 1}"
        console.print(Text(f"checkpoint {checkpoint.name} {where}: {_describe(checkpoint)}"))
    if output:
        for index, step in enumerate(journey.steps, start=1):
            console.print(Text(f"[{index}] {step.raw_command}", style="bold"))
            if step.captured_stdout:
                console.print(step.captured_stdout, end="", markup=False, highlight=False)
    return 0


@journey_app.command("show")
def journey_show(
    name: str,
    output: bool = typer.Option(False, "--output", help="Also print the captured output."),
) -> None:
    """Show the steps of journey NAME."""
    raise typer.Exit(
        code=asyncio.run(_guarded(lambda: _journey_show_async(name, output), interrupted="Interrupted."))
    )


async def _journey_checkpoint_async(journey_name: str, checkpoint: Checkpoint) -> int:
    store = _store(load_config())
    journey = await store.load_journey(journey_name)
    if journey is None:
        raise NotFoundError("journey", journey_name)
    if not 0 <= checkpoint.step_index < len(journey.steps):
        console.print(f"[red]Journey {journey_name} has {len(journey.steps)} step(s).[/red]")
        return 1
    if any(existing.name == checkpoint.name for existing in journey.checkpoints):
        raise AlreadyExistsError("checkpoint", checkpoint.name)
    journey.checkpoints.append(checkpoint)
    await store.save_journey(journey, replace=True)
    console.print(
        f"[green]Added checkpoint[/green] {checkpoint.name} after step {checkpoint.step_index + 1}: "
        f"{_describe(checkpoint)}"
    )
    return 0


@journey_app.command("checkpoint")
def journey_checkpoint(
    journey_name: str = typer.Argument(..., metavar="JOURNEY"),
    name: str = typer.Argument(..., help="Name of the checkpoint."),
    step: int = typer.Option(..., "--step", min=1, help="Check after this step (1-based)."),
    file_exists: str | None = typer.Option(None, "--file-exists", help="Path that must exist."),
    file_contains: str | None = typer.Option(None, "--file-contains", help="Path whose content is checked."),
    text: str = typer.Option("", "--text", help="Text --file-contains must find."),
    command: str | None = typer.Option(None, "--command", help="Command that must exit 0."),
) -> None:
    """Add a check that replays of JOURNEY run after a step."""
    chosen = [value is not None for value in (file_exists, file_contains, command)]
    if chosen.count(True) != 1:
        console.print("[red]Give exactly one of --file-exists, --file-contains or --command.[/red]")
        raise typer.Exit(code=2)
    if file_exists is not None:
        kind, target = CheckpointKind.FILE_EXISTS, file_exists
    elif file_contains is not None:
        if not text:
            console.print("[red]--file-contains needs --text.[/red]")
            raise typer.Exit(code=2)
        kind, target = CheckpointKind.FILE_CONTAINS, file_contains
    else:
        kind, target = CheckpointKind.COMMAND_SUCCEEDS, command
    checkpoint = Checkpoint(name=name, step_index=step - 1, kind=kind, target=target, expected=text)
    raise typer.Exit(
        code=asyncio.run(
            _guarded(lambda: _journey_checkpoint_async(journey_name, checkpoint), interrupted="Interrupted.")
        )
    )


async def _journey_delete_async(name: str) -> int:
    if not await _store(load_config()).delete_journey(name):
        raise NotFoundError("journey", name)
    console.print(f"[green]Deleted journey[/green] {name}")
    return 0


@journey_app.command("delete")
def journey_delete(name: str) -> None:
    """Delete journey NAME and its playback history."""
    raise typer.Exit(code=asyncio.run(_guarded(lambda: _journey_delete_async(name), interrupted="Interrupted.")))


def _divergence_label(outcome: StepOutcome) -> str:
    parts = [f"{outcome.recorded_status}->{outcome.live_status}"] if outcome.status_changed else []
    parts.extend(f"checkpoint {check.name}" for check in outcome.failed_checkpoints)
    return f"{outcome.index + 1} ({', '.join(parts)})"


async def _journey_history_async(name: str | None) -> int:
    playbacks = await _store(load_config()).list_playbacks(name)
    if not playbacks:
        console.print("No playbacks recorded.")
        return 0
    table = Table(title="Playback history")
    table.add_column("ID", justify="right")
    table.add_column("Journey")
    table.add_column("Started (UTC)")
    table.add_column("Mode")
    table.add_column("Steps", justify="right")
    table.add_column("Divergent steps")
    for playback in playbacks:
        mode = "strict" if playback.strict else "lenient"
        if playback.aborted:
            mode += ", aborted"
        table.add_row(
            str(playback.id),
            playback.journey,
            playback.started_at.strftime("%Y-%m-%d %H:%M:%S"),
            mode,
            str(playback.step_count),
            ", ".join(_divergence_label(outcome) for outcome in playback.divergences),
        )
    console.print(table)
    return 0


@journey_app.command("history")
def journey_history(
    name: str | None = typer.Argument(None, help="Only show playbacks of this journey."),
) -> None:
    """Show past replays and where they diverged."""
    raise typer.Exit(code=asyncio.run(_guarded(lambda: _journey_history_async(name), interrupted="Interrupted.")))


async def _journey_export_async(name: str, path: Path) -> int:
    written = await export_journey(_store(load_config()), name, path)
    console.print(f"[green]Exported journey[/green] {name} to {written}")
    return 0


@journey_app.command("export")
def journey_export(
    name: str,
    path: Path = typer.Argument(..., help="Archive file; a .gz suffix compresses it."),
) -> None:
    """Write journey NAME to an archive."""
    raise typer.Exit(
        code=asyncio.run(_guarded(lambda: _journey_export_async(name, path), interrupted="Export interrupted."))
    )


async def _journey_import_async(path: Path, name: str | None, force: bool) -> int:
    journey = await import_journey(_store(load_config()), path, name=name, replace=force)
    console.print(f"[green]Imported journey[/green] {journey.name} ({len(journey.steps)} step(s))")
    return 0


@journey_app.command("import")
def journey_import(
    path: Path,
    name: str | None = typer.Option(None, "--name", help="Store under a different name."),
    force: bool = typer.Option(False, "--force", help="Replace an existing journey."),
) -> None:
    """Load a journey archive produced by `keel journey export`."""
    raise typer.Exit(
        code=asyncio.run(
            _guarded(lambda: _journey_import_async(path, name, force), interrupted="Import interrupted.")
        )
    )


async def _journey_publish_async(name: str, repo_id: str) -> int:
    config = load_config()
    if repo_id:
        config.hub_repo_id = repo_id
    remote_path = remote_journey_path(name)
    with tempfile.TemporaryDirectory(prefix="keel-publish-") as tmp:
        archive_path = Path(tmp) / Path(remote_path).name
        await export_journey(_store(config), name, archive_path)
        with console.status(f"Uploading {remote_path} to {config.hub_repo_id or '?'}..."):
            await asyncio.to_thread(push_archive, config, archive_path, remote_path)
    console.print(f"[green]Published journey[/green] {name} to {config.hub_repo_id}:{remote_path}")
    return 0


@journey_app.command("publish")
def journey_publish(
    name: str,
    repo_id: str = typer.Option("", "--repo", help="Hugging Face repo; defaults to hub_repo_id."),
) -> None:
    """Upload journey NAME to the Hugging Face Hub."""
    raise typer.Exit(
        code=asyncio.run(
            _guarded(lambda: _journey_publish_async(name, repo_id), interrupted="Publish interrupted.")
        )
    )


async def _journey_download_async(name: str, repo_id: str, as_name: str | None, force: bool) -> int:
    config = load_config()
    if repo_id:
        config.hub_repo_id = repo_id
    remote_path = remote_journey_path(name)
    with tempfile.TemporaryDirectory(prefix="keel-download-") as tmp:
        with console.status(f"Downloading {remote_path} from {config.hub_repo_id or '?'}..."):
            archive_path = await asyncio.to_thread(pull_archive, config, remote_path, Path(tmp))
        journey = await import_journey(_store(config), archive_path, name=as_name, replace=force)
    console.print(f"[green]Downloaded journey[/green] {journey.name} ({len(journey.steps)} step(s))")
    return 0


@journey_app.command("download")
def journey_download(
    name: str,
    repo_id: str = typer.Option("", "--repo", help="Hugging Face repo; defaults to hub_repo_id."),
    as_name: str | None = typer.Option(None, "--name", help="Store under a different name."),
    force: bool = typer.Option(False, "--force", help="Replace an existing journey."),
) -> None:
    """Fetch journey NAME from the Hugging Face Hub and import it."""
    raise typer.Exit(
        code=asyncio.run(
            _guarded(
                lambda: _journey_download_async(name, repo_id, as_name, force),
                interrupted="Download interrupted.",
            )
        )
    )


if __name__ == "__main__":
    app()
