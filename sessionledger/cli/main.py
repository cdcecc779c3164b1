# sessionledger/cli/main.py
"""
CLI for inspecting, verifying and exporting session ledgers, and for running the daemon.
"""

import json
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from sessionledger import __version__
from sessionledger.config import AutostartPaths, DaemonSettings, LedgerPaths
from sessionledger.crypto.keystore import read_public_key_pem
from sessionledger.core.errors import KeystoreError
from sessionledger.daemon.autostart import get_autostart_manager
from sessionledger.daemon.client import DaemonClient, DaemonError
from sessionledger.daemon.supervisor import DaemonSupervisor, EnsureOptions
from sessionledger.logs import configure_logging
from sessionledger.storage import StorageBackend, create_storage
from sessionledger.verify.verifier import ChainVerifier

app = typer.Typer(
    name="sessionledger",
    help="Inspect, verify and export tamper-evident AI coding session ledgers",
    add_completion=False,
    no_args_is_help=True,
)
daemon_app = typer.Typer(help="Start, stop and inspect the background daemon", no_args_is_help=True)
autostart_app = typer.Typer(help="Start the daemon at login", no_args_is_help=True)
app.add_typer(daemon_app, name="daemon")
app.add_typer(autostart_app, name="autostart")

console = Console()


def get_paths(ctx: typer.Context) -> LedgerPaths:
    """Resolve the home directory in this order:
    1. --home flag
    2. SESSIONLEDGER_HOME environment variable
    3. Default: ~/.sessionledger
    """
    return ctx.obj if isinstance(ctx.obj, LedgerPaths) else LedgerPaths.from_env()


def open_storage(paths: LedgerPaths) -> StorageBackend:
    if not paths.data_dir.exists():
        console.print(f"[red]No ledger data found in {paths.home}[/]")
        console.print("[yellow]To get started:[/]")
        console.print("  • Start the daemon: sessionledger daemon start")
        console.print("  • Or point at another home: export SESSIONLEDGER_HOME=/path/to/home")
        raise typer.Exit(1)
    return create_storage(paths.storage_uri)


@app.callback()
def main(
    ctx: typer.Context,
    home: Optional[Path] = typer.Option(
        None,
        "--home",
        help="Ledger home directory (overrides SESSIONLEDGER_HOME env var)",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Debug logging"),
):
    """Manage tamper-evident AI coding session ledgers."""
    configure_logging(level="debug" if verbose else "warning")
    ctx.obj = LedgerPaths.from_env(home)


@app.command()
def sessions(ctx: typer.Context):
    """List sealed and in-progress sessions."""
    paths = get_paths(ctx)
    storage = open_storage(paths)

    seals = {s.session_id: s for s in storage.load_seals()}
    active = storage.list_active()
    if not seals and not active:
        console.print("[yellow]No sessions recorded yet.[/]")
        return

    table = Table(title="Recorded Sessions")
    table.add_column("Session ID")
    table.add_column("State")
    table.add_column("Client")
    table.add_column("Task")
    table.add_column("Records")
    table.add_column("Duration")
    table.add_column("Ended")

    for sid in active:
        records = storage.load_records(sid)
        start = records[0].data if records else {}
        table.add_row(sid, "[yellow]active[/]", start.get("client", "—"), start.get("task_type", "—"),
                      str(len(records)), "—", "—")

    for seal in sorted(seals.values(), key=lambda s: s.ended_at, reverse=True):
        state = "sealed (auto)" if seal.auto_sealed else "sealed"
        table.add_row(seal.session_id, f"[green]{state}[/]", seal.client, seal.task_type,
                      str(seal.record_count), f"{seal.duration_seconds}s", seal.ended_at)

    console.print(table)


@app.command()
def records(
    ctx: typer.Context,
    session_id: str = typer.Argument(..., help="Session ID to display"),
    limit: int = typer.Option(20, "--limit", "-n", help="Number of recent records to show"),
):
    """Show the most recent records of a session."""
    storage = open_storage(get_paths(ctx))
    chain = storage.load_records(session_id)

    if not chain:
        console.print(f"[yellow]No records found for session '{session_id}'[/]")
        return

    for i, rec in enumerate(chain[-limit:], start=max(0, len(chain) - limit)):
        signed = "signed" if rec.signature != "unsigned" else "unsigned"
        console.print(f"[bold cyan]{i:4d} | {rec.timestamp} | {rec.type:13} | {rec.id} | {signed}[/]")
        payload = json.dumps(rec.data, separators=(",", ":"))
        console.print(f"  {payload[:160]}{'...' if len(payload) > 160 else ''}")
        console.print(f"  hash {rec.hash[:16]}… ← {rec.prev_hash[:16]}")
        console.print("  " + "─" * 90)


@app.command()
def verify(
    ctx: typer.Context,
    session_id: str = typer.Argument(..., help="Session ID to verify"),
):
    """Verify the integrity of a session (hash chain + signatures)."""
    paths = get_paths(ctx)
    storage = open_storage(paths)

    public_key_pem = None
    if paths.keystore_file.exists():
        try:
            public_key_pem = read_public_key_pem(paths.keystore_file)
        except KeystoreError as e:
            console.print(f"[yellow]Keystore unreadable ({e}); signature checks skipped.[/]")
    else:
        console.print("[yellow]Warning: no keystore found; signature checks skipped.[/]")

    result = ChainVerifier(public_key_pem).verify_from_storage(session_id, storage)

    if result.is_valid:
        console.print(f"[green]✓ Session '{session_id}' is valid[/]")
        console.print(f"  {result.message}")
        if result.signature_valid is None:
            console.print("  Signatures: not checked (unsigned or no public key)")
        else:
            console.print("  Signatures: valid")
    else:
        console.print(f"[red]✗ Verification failed for session '{session_id}'[/]")
        if result.broken_at is not None:
            console.print(f"  Chain broken at record {result.broken_at}")
        for failure in result.failures:
            console.print(f"  • [{failure.index}] {failure.category}: {failure.message}")
        raise typer.Exit(1)


@app.command()
def export(
    ctx: typer.Context,
    session_id: str = typer.Argument(..., help="Session ID to export"),
    output: Optional[Path] = typer.Option(None, "--output", "-o", help="Output file (default: <session_id>.jsonl)"),
):
    """Export a session as JSONL (one hash-linked record per line)."""
    storage = open_storage(get_paths(ctx))
    chain = storage.load_records(session_id)

    if not chain:
        console.print(f"[yellow]No records found for session '{session_id}'[/]")
        raise typer.Exit(0)

    out_path = output or Path(f"{session_id}.jsonl")
    with open(out_path, "w", encoding="utf-8") as f:
        for rec in chain:
            json.dump(rec.to_dict(), f, separators=(",", ":"))
            f.write("\n")

    console.print(f"[green]Exported {len(chain)} records to {out_path}[/]")
    console.print("Format: JSONL, one hash-linked record per line")


# ── daemon ────────────────────────────────────────────────────────────────


@daemon_app.command("start")
def daemon_start(
    ctx: typer.Context,
    port: Optional[int] = typer.Option(None, "--port", help="Port (default: SESSIONLEDGER_PORT or 19200)"),
    prefer_online: bool = typer.Option(False, "--prefer-online", help="Run the latest release via pipx"),
    require_version: Optional[str] = typer.Option(None, "--require-version", help="Restart a daemon running another version"),
):
    """Start the daemon unless one is already healthy."""
    paths = get_paths(ctx)
    paths.ensure_dirs()
    with DaemonSupervisor(paths, DaemonSettings.from_env(port)) as supervisor:
        ok = supervisor.ensure_daemon(EnsureOptions(prefer_online=prefer_online, require_version=require_version))
        if not ok:
            console.print(f"[red]Daemon did not become healthy. See {paths.log_file}[/]")
            raise typer.Exit(1)
        health = supervisor.check_health() or {}
    console.print(f"[green]Daemon running[/] pid={health.get('pid', '?')} port={supervisor.settings.port} "
                  f"version={health.get('version', '?')}")


@daemon_app.command("stop")
def daemon_stop(
    ctx: typer.Context,
    port: Optional[int] = typer.Option(None, "--port"),
):
    """Stop the daemon. Succeeds if it is not running."""
    with DaemonSupervisor(get_paths(ctx), DaemonSettings.from_env(port)) as supervisor:
        if not supervisor.kill_daemon():
            console.print("[red]Could not stop the daemon (permission denied?)[/]")
            raise typer.Exit(1)
    console.print("[green]Daemon stopped[/]")


def print_update_hint(latest: Optional[str], running: Optional[str] = None) -> None:
    if latest is None:
        console.print("[yellow]Could not check PyPI for a newer release[/]")
    elif latest not in (__version__, running):
        console.print(f"[cyan]sessionledger {latest} is available[/] (installed {__version__}). "
                      "Run `sessionledger daemon start --prefer-online --require-version "
                      f"{latest}` to switch the daemon to it.")
    else:
        console.print(f"[green]Up to date[/] ({latest})")


@daemon_app.command("status")
def daemon_status(
    ctx: typer.Context,
    port: Optional[int] = typer.Option(None, "--port"),
    check_update: bool = typer.Option(False, "--check-update", help="Also look up the latest release on PyPI"),
):
    """Show health and PID record."""
    with DaemonSupervisor(get_paths(ctx), DaemonSettings.from_env(port)) as supervisor:
        status = supervisor.status()
        latest = supervisor.fetch_latest_version() if check_update else None

    running_version = (status["health"] or {}).get("version")
    if check_update:
        print_update_hint(latest, running_version)

    record = status["pid_record"]
    if not status["running"]:
        console.print("[yellow]Daemon is not running[/]")
        if record:
            console.print(f"  Stale PID record: pid={record['pid']} port={record['port']}")
        raise typer.Exit(1)

    health = status["health"]
    table = Table(title="Daemon")
    table.add_column("Key")
    table.add_column("Value")
    for key in ("version", "pid", "port", "started_at", "uptime_seconds", "active_sessions", "connections", "signing"):
        table.add_row(key, str(health.get(key, "—")))
    console.print(table)


@daemon_app.command("serve")
def daemon_serve(
    ctx: typer.Context,
    port: Optional[int] = typer.Option(None, "--port"),
):
    """Run the daemon in the foreground (this is what `daemon start` spawns)."""
    from sessionledger.daemon.server import run_daemon

    raise typer.Exit(run_daemon(get_paths(ctx), DaemonSettings.from_env(port)))


@daemon_app.command("seal-active")
def daemon_seal_active(
    ctx: typer.Context,
    port: Optional[int] = typer.Option(None, "--port"),
):
    """Seal every in-progress session held by the running daemon."""
    settings = DaemonSettings.from_env(port)
    try:
        with DaemonClient(settings.base_url) as client:
            result = client.seal_active()
    except DaemonError as e:
        console.print(f"[red]{e}[/]")
        raise typer.Exit(1)
    console.print(f"[green]Sealed {result['sealed']} session(s)[/]")


# ── autostart ─────────────────────────────────────────────────────────────


def _autostart(ctx: typer.Context, port: Optional[int]):
    return get_autostart_manager(get_paths(ctx), DaemonSettings.from_env(port), AutostartPaths())


def _report(result) -> None:
    color = "green" if result and not result.is_degraded else ("yellow" if result else "red")
    console.print(f"[{color}]{result}[/]")
    if not result:
        raise typer.Exit(1)


@autostart_app.command("install")
def autostart_install(ctx: typer.Context, port: Optional[int] = typer.Option(None, "--port")):
    """Register the daemon to start at login."""
    _report(_autostart(ctx, port).install())


@autostart_app.command("remove")
def autostart_remove(ctx: typer.Context, port: Optional[int] = typer.Option(None, "--port")):
    """Remove the login registration."""
    _report(_autostart(ctx, port).remove())


@autostart_app.command("status")
def autostart_status(ctx: typer.Context, port: Optional[int] = typer.Option(None, "--port")):
    """Show whether the login registration exists."""
    manager = _autostart(ctx, port)
    if manager.is_installed():
        console.print(f"[green]Installed[/] ({manager.platform}: {manager.registration})")
    else:
        console.print(f"[yellow]Not installed[/] ({manager.platform})")


@autostart_app.command("recover")
def autostart_recover(ctx: typer.Context, port: Optional[int] = typer.Option(None, "--port")):
    """Repair a missing, stale or crash-looped registration."""
    _report(_autostart(ctx, port).recover(expected=True))


if __name__ == "__main__":
    app()
