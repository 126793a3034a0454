"""
devicemesh CLI
Commands: init, devices, show, resolve, sync, changelog, reindex, status
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table
from rich.panel import Panel
from rich import box

app = typer.Typer(
    name="devicemesh",
    help="devicemesh — device recognition and per-device replication",
    add_completion=False,
)
console = Console()


def _bootstrap():
    """Configure logging and open the store before any command that needs it."""
    from devicemesh.config.logging_setup import setup_logging
    from devicemesh.storage.device_store import DeviceStore

    setup_logging(level="WARNING")
    logging.getLogger("devicemesh").setLevel(logging.INFO)
    return DeviceStore()


def _find_device(store, prefix: str):
    matches = [d for d in store.all_device_ids() if d.startswith(prefix)]
    if not matches:
        console.print(f"[red]Device not found:[/] {prefix}")
        raise typer.Exit(1)
    if len(matches) > 1:
        console.print(f"[red]Ambiguous prefix:[/] {prefix} matches {len(matches)} devices")
        raise typer.Exit(1)
    return matches[0]


def _load_all(store) -> list:
    """Every readable device record; unreadable shards are reported and skipped."""
    from devicemesh.errors import StoreIOError

    records = []
    for device_id in store.all_device_ids():
        try:
            device = store.get_device(device_id)
        except StoreIOError as exc:
            console.print(f"[red]Unreadable shard[/] {device_id[:10]}: {exc}")
            continue
        if device is not None:
            records.append(device)
    return records


def _when(value) -> str:
    return value.strftime("%Y-%m-%d %H:%M") if value else "—"


# ── init ──────────────────────────────────────────────────────────────────────

@app.command()
def init():
    """Create the data directories and the device index."""
    store = _bootstrap()
    console.print(Panel(
        f"Devices dir : [cyan]{store.devices_dir}[/]\n"
        f"Shards      : [cyan]{len(store.all_device_ids())}[/]",
        title="devicemesh",
        border_style="green",
    ))


# ── devices ───────────────────────────────────────────────────────────────────

@app.command()
def devices(handle: Optional[str] = typer.Option(None, "--handle", "-u", help="Only this owner's devices")):
    """List device shards."""
    store = _bootstrap()

    if handle:
        records = store.list_owner_devices(handle)
    else:
        records = _load_all(store)

    if not records:
        console.print("[dim]No devices.[/]")
        return

    table = Table(title="Devices", box=box.ROUNDED)
    table.add_column("ID", style="cyan", no_wrap=True, max_width=12)
    table.add_column("Name")
    table.add_column("Type", justify="center")
    table.add_column("Owner")
    table.add_column("Verified", no_wrap=True)
    table.add_column("Trusted", justify="center")

    for d in records:
        table.add_row(
            d.device_id[:10],
            d.display_name,
            d.device_type.value,
            d.handle or "[dim]unclaimed[/]",
            _when(d.last_verified_at),
            "[green]yes[/]" if d.is_trusted else "no",
        )

    console.print(table)


# ── show ──────────────────────────────────────────────────────────────────────

@app.command()
def show(device_id: str = typer.Argument(..., help="Device ID (or prefix)")):
    """Show one device: identity, browsers, peers and recent access."""
    store = _bootstrap()
    device = store.get_device(_find_device(store, device_id))

    console.print(Panel(
        f"[bold]{device.display_name}[/] ({device.device_type.value})\n"
        f"ID: [cyan]{device.device_id}[/]\n"
        f"Owner: {device.handle or '[dim]unclaimed[/]'}  |  "
        f"Created: {_when(device.created_at)}  |  "
        f"Verified: {_when(device.last_verified_at)}",
        title="devicemesh — Device",
        border_style="cyan",
    ))

    browsers = store.list_browsers(device.device_id)
    if browsers:
        table = Table(title="Browsers", box=box.SIMPLE)
        table.add_column("Token", style="cyan", max_width=12)
        table.add_column("Family")
        table.add_column("Last used", no_wrap=True)
        table.add_column("State", justify="center")
        for b in browsers:
            state = "[yellow]pending[/]" if b.pending else "[green]confirmed[/]"
            table.add_row(b.browser_id[:10], b.browser_family, _when(b.last_used_at), state)
        console.print(table)

    peers = store.list_peers(device.device_id)
    if peers:
        table = Table(title="Peer view", box=box.SIMPLE)
        table.add_column("Device", style="cyan", max_width=12)
        table.add_column("Name")
        table.add_column("Verified", no_wrap=True)
        table.add_column("Signed out", justify="center")
        for p in peers:
            table.add_row(p.device_id[:10], p.device_name or "—", _when(p.last_verified_at), "yes" if p.signed_out else "")
        console.print(table)

    for entry in store.access_history(device.device_id, limit=5):
        console.print(f"[dim]{_when(entry.access_time)}[/] {entry.ip} {entry.user_agent or ''}")


# ── resolve ───────────────────────────────────────────────────────────────────

@app.command()
def resolve(
    token: Optional[str] = typer.Option(None, "--token", "-t", help="Opaque browser token"),
    header_file: Optional[Path] = typer.Option(None, "--header-file", help="JSON identity header"),
    hints_file: Optional[Path] = typer.Option(None, "--hints-file", help="Full request hints as JSON"),
    owners_file: Optional[Path] = typer.Option(None, "--owners", help="JSON list of owners (for PIN lookup)"),
    ip: Optional[str] = typer.Option(None, "--ip"),
):
    """Resolve request hints to an authentication decision."""
    store = _bootstrap()
    from devicemesh.errors import ValidationError
    from devicemesh.recognition.owners import InMemoryOwnerLookup
    from devicemesh.recognition.resolver import DeviceResolver

    hints = json.loads(hints_file.read_text(encoding="utf-8")) if hints_file else {}
    if token:
        hints["opaqueBrowserToken"] = token
    if header_file:
        hints["identityHeader"] = json.loads(header_file.read_text(encoding="utf-8"))
    if ip:
        hints["requestIp"] = ip

    owners = InMemoryOwnerLookup.from_file(owners_file) if owners_file else None
    resolver = DeviceResolver(store, owners=owners)
    try:
        decision = resolver.resolve(hints)
    except ValidationError as exc:
        console.print(f"[red]Invalid hints:[/] {exc}")
        raise typer.Exit(1)

    style = {
        "authenticated": "green",
        "needs_pin_verification": "yellow",
        "needs_verification": "yellow",
    }.get(decision.status.value, "red")
    lines = [f"Status : [{style}]{decision.status.value}[/]"]
    if decision.device_id:
        lines.append(f"Device : [cyan]{decision.device_id[:10]}[/] {decision.device_name or ''}")
    if decision.score is not None:
        lines.append(f"Score  : {decision.score} ({decision.level.value}, {decision.match_type.value})")
    if decision.reason:
        lines.append(f"Reason : {decision.reason}")
    console.print(Panel("\n".join(lines), title="Decision", border_style=style))


# ── sync ──────────────────────────────────────────────────────────────────────

@app.command()
def sync(device: Optional[str] = typer.Option(None, "--device", "-d", help="Sync one device (ID or prefix)")):
    """Run one replication pass."""
    store = _bootstrap()
    from devicemesh.sync.engine import sync_engine

    sync_engine.initialize(store)
    device_id = _find_device(store, device) if device else None
    result = asyncio.run(sync_engine.sync_now(device_id))

    errors = result.get("errors", [])
    if device_id:
        body = (
            f"Siblings : [cyan]{len(result['siblings'])}[/]\n"
            f"Pushed   : [cyan]{result['pushed']}[/]\n"
            f"Pulled   : [cyan]{result['pulled']}[/]\n"
            f"Status   : {result['status']}"
        )
    else:
        body = (
            f"Devices  : [cyan]{result['devices']}[/]\n"
            f"Pushed   : [cyan]{result['pushed']}[/]\n"
            f"Synced   : [cyan]{result['marked_synced']}[/]"
        )
    console.print(Panel(body, title="Sync", border_style="red" if errors else "green"))
    for error in errors:
        console.print(f"[red]•[/] {error}")


# ── changelog ─────────────────────────────────────────────────────────────────

@app.command()
def changelog(
    device_id: str = typer.Argument(..., help="Device ID (or prefix)"),
    limit: int = typer.Option(20, "--limit", "-n"),
):
    """Show a device's change log, newest first."""
    store = _bootstrap()
    entries = store.change_log(_find_device(store, device_id), limit=limit)
    if not entries:
        console.print("[dim]No changes logged.[/]")
        return

    table = Table(title="Change log", box=box.ROUNDED)
    table.add_column("HLC", no_wrap=True)
    table.add_column("Op", justify="center")
    table.add_column("Table")
    table.add_column("Entity", style="cyan", max_width=12)
    table.add_column("Synced", justify="center")
    for e in entries:
        table.add_row(
            e.hlc_timestamp,
            e.operation.value,
            e.entity_table,
            e.entity_id[:10],
            "[green]yes[/]" if e.synced else "[yellow]no[/]",
        )
    console.print(table)


# ── reindex ───────────────────────────────────────────────────────────────────

@app.command()
def reindex():
    """Rebuild the owner/browser index from the device shards."""
    store = _bootstrap()
    count = store.rebuild_index()
    console.print(f"[green]Indexed {count} device(s)[/]")


# ── status ────────────────────────────────────────────────────────────────────

@app.command()
def status():
    """Shard counts and sync configuration."""
    store = _bootstrap()
    from devicemesh.config.settings import settings

    ids = store.all_device_ids()
    claimed = 0
    pending = 0
    for device in _load_all(store):
        if device.is_claimed:
            claimed += 1
            pending += len(store.unsynced_changes(device.device_id))

    console.print(Panel(
        f"Devices total     : [cyan]{len(ids)}[/]\n"
        f"  Claimed         : [green]{claimed}[/]\n"
        f"Unsynced changes  : [yellow]{pending}[/]\n"
        f"Auto-sync         : {'on' if settings.sync_enabled else 'off'} "
        f"(every {settings.sync_interval_seconds}s)",
        title="devicemesh Status",
        border_style="blue",
    ))


if __name__ == "__main__":
    app()
