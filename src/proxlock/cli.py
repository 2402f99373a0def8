"""Proxlock CLI: run the service or a door, and manage enrollments."""

import asyncio
import json
import logging
from datetime import datetime, timedelta
from typing import List, Optional

import typer
from rich.console import Console
from rich.table import Table

from proxlock.config import ProxlockConfig, get_config_path, load_config, save_config
from proxlock.models import ALL_DOORS, Decision
from proxlock.token_store import (
    DEFAULT_ENROLLMENT_DAYS,
    DuplicateCredential,
    TokenStore,
    UnknownIdentity,
)

app = typer.Typer(
    name="proxlock",
    help="Proximity-gated smart lock: validation service and door controller",
)
console = Console()

# Demo identities: (credential, identity, permissions, expiry offset in days)
DEMO_ENROLLMENTS = [
    ("ALICE_ENROLLMENT_TOKEN", "40000000", ["LAB_968"], 120),
    ("BOB_ENROLLMENT_TOKEN", "50000000", ["LAB_969"], 30),
    ("EVE_ENROLLMENT_TOKEN", "60000000", ALL_DOORS, -1),
]


def _setup_logging(debug: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )


def _open_store(config: ProxlockConfig) -> TokenStore:
    return TokenStore(config.service.db_path, token_ttl=config.service.token_ttl_seconds)


def seed_demo(store: TokenStore) -> int:
    """Insert the demo enrollments that are not there yet."""
    now = store.clock()
    added = 0
    for credential, identity, permissions, days in DEMO_ENROLLMENTS:
        expires_at = now + timedelta(days=days).total_seconds()
        try:
            store.enroll(credential, permissions, expires_at, identity)
            added += 1
        except DuplicateCredential:
            continue
    return added


class ConsoleFeedback:
    """Door feedback rendered on the terminal."""

    def render(self, state, decision: Decision | None) -> None:
        from proxlock.controller import ControllerState

        if state is ControllerState.READING_SENSOR:
            console.print("[dim]Reading distance sensor...[/dim]")
        elif state is ControllerState.AWAITING_DECISION:
            console.print("[dim]Waiting for validation...[/dim]")
        elif state is ControllerState.ACTUATING_GRANT:
            console.print("[bold green]ACCESS GRANTED[/bold green]")
        elif state is ControllerState.ACTUATING_DENY and decision is not None:
            reason = decision.reason.value if decision.reason else "unknown"
            console.print(f"[bold red]ACCESS DENIED[/bold red] ({reason})")


@app.command()
def init(
    seed: bool = typer.Option(False, "--seed", help="Add demo enrollments"),
):
    """Initialize Proxlock configuration."""
    config_path = get_config_path()
    if config_path.exists():
        if not typer.confirm("Config already exists. Overwrite?"):
            raise typer.Abort()

    config = ProxlockConfig()
    save_config(config, config_path)
    console.print(f"[green]Created config at {config_path}[/green]")

    if seed:
        store = _open_store(config)
        added = seed_demo(store)
        store.close()
        console.print(f"[green]Seeded {added} demo enrollments[/green]")

    console.print("\nNext steps:")
    console.print("  1. Export [bold]PROXLOCK_ADMIN_SECRET[/bold] for the admin endpoints")
    console.print("  2. Run [bold]proxlock serve[/bold] on the server")
    console.print("  3. Run [bold]proxlock controller[/bold] on each door")


@app.command()
def serve(
    debug: bool = typer.Option(False, "--debug", help="Enable debug logging"),
):
    """Run the validation service."""
    from proxlock.service import ValidatorService

    _setup_logging(debug)
    config = load_config()
    service = ValidatorService(config.service)

    try:
        asyncio.run(service.start())
    except KeyboardInterrupt:
        console.print("\n[yellow]Shutting down...[/yellow]")


@app.command()
def controller(
    debug: bool = typer.Option(False, "--debug", help="Enable debug logging"),
):
    """Run a door controller that accepts tokens pushed over HTTP."""
    from aiohttp import web

    from proxlock.controller import (
        DoorController,
        GpioLockActuator,
        LoggingActuator,
        ValidatorClient,
        create_push_app,
    )
    from proxlock.frame_decoder import FrameDecoder, open_sensor

    _setup_logging(debug)
    config = load_config()
    door = config.controller
    sensor = config.sensor

    async def run_door():
        stream = open_sensor(sensor.port, sensor.baudrate)
        decoder = FrameDecoder(
            stream,
            timeout=sensor.read_timeout_seconds,
            settle=sensor.settle_seconds,
        )
        validator = ValidatorClient(door.validator_url, door.door_id, door.request_timeout_seconds)
        actuator = GpioLockActuator(door.lock_pin) if door.lock_pin is not None else LoggingActuator()
        actuator.lock()
        ctrl = DoorController(door, decoder, validator, actuator, feedback=ConsoleFeedback())

        runner = web.AppRunner(create_push_app(ctrl))
        await runner.setup()
        await web.TCPSite(runner, door.listen_host, door.listen_port).start()
        console.print(f"Door [bold]{door.door_id}[/bold] listening on {door.listen_host}:{door.listen_port}")
        try:
            await asyncio.Event().wait()
        finally:
            await runner.cleanup()
            await validator.aclose()
            stream.close()

    try:
        asyncio.run(run_door())
    except KeyboardInterrupt:
        console.print("\n[yellow]Shutting down...[/yellow]")


@app.command()
def enroll(
    credential: str = typer.Argument(..., help="Enrollment credential"),
    identity: str = typer.Argument(..., help="Identity used for revocation (e.g. student id)"),
    door: Optional[List[str]] = typer.Option(None, "--door", "-d", help="Door id (repeatable; default: all doors)"),
    days: int = typer.Option(DEFAULT_ENROLLMENT_DAYS, help="Days until the enrollment expires"),
):
    """Enroll a credential."""
    config = load_config()
    store = _open_store(config)
    expires_at = store.clock() + timedelta(days=days).total_seconds()

    try:
        enrollment = store.enroll(credential, door or ALL_DOORS, expires_at, identity)
    except DuplicateCredential:
        console.print("[red]Credential or identity already enrolled[/red]")
        raise typer.Exit(1)
    finally:
        store.close()

    doors = enrollment.permissions if enrollment.permissions == ALL_DOORS else ", ".join(enrollment.permissions)
    console.print(f"[green]Enrolled {identity}[/green] for {doors} until {enrollment.expires_at:%Y-%m-%d}")


@app.command()
def revoke(
    identity: str = typer.Argument(..., help="Identity to revoke"),
):
    """Revoke an identity's enrollment."""
    config = load_config()
    store = _open_store(config)
    try:
        store.revoke(identity)
    except UnknownIdentity:
        console.print(f"[red]No enrollment for {identity}[/red]")
        raise typer.Exit(1)
    finally:
        store.close()
    console.print(f"[yellow]Access revoked for {identity}[/yellow]")


@app.command()
def status():
    """Show enrollments and live short tokens."""
    config = load_config()
    store = _open_store(config)
    now = store.clock()
    try:
        enrollments = store.list_enrollments()
        tokens = store.list_short_tokens()
    finally:
        store.close()

    table = Table(title="Enrollments")
    table.add_column("Credential")
    table.add_column("Doors")
    table.add_column("Expires")
    for enrollment in enrollments:
        doors = enrollment.permissions if enrollment.permissions == ALL_DOORS else ", ".join(enrollment.permissions)
        expires = f"{enrollment.expires_at:%Y-%m-%d %H:%M}"
        if enrollment.is_expired(now):
            expires = f"[red]{expires} (expired)[/red]"
        table.add_row(enrollment.credential, doors, expires)
    if not enrollments:
        table.add_row("-", "-", "[dim]no enrollments[/dim]")
    console.print(table)

    table = Table(title="Short tokens")
    table.add_column("Token")
    table.add_column("State")
    table.add_column("Reason")
    table.add_column("Expires", style="dim")
    for tok in tokens:
        table.add_row(
            tok.token,
            tok.state.value,
            tok.reason.value if tok.reason else "-",
            f"{tok.expires_at:%H:%M:%S}",
        )
    if not tokens:
        table.add_row("-", "-", "-", "[dim]none[/dim]")
    console.print(table)


@app.command()
def sweep():
    """Purge expired tokens and enrollments now."""
    config = load_config()
    store = _open_store(config)
    try:
        tokens = store.sweep_expired_tokens()
        enrollments = store.sweep_expired_enrollments()
    finally:
        store.close()
    console.print(f"Removed {tokens} tokens and {enrollments} enrollments")


@app.command()
def audit(
    limit: int = typer.Option(50, help="Maximum entries to show"),
    event: str = typer.Option(None, help="Filter by event"),
):
    """View audit log."""
    from proxlock.audit import AuditLogger

    config = load_config()
    entries = AuditLogger(config.service.audit_log_path).read()
    if not entries:
        console.print("[dim]No audit log found yet.[/dim]")
        return

    if event:
        entries = [e for e in entries if e.get("event") == event]
    entries = entries[-limit:]

    table = Table(title="Audit Log")
    table.add_column("Time", style="dim")
    table.add_column("Event")
    table.add_column("Door")
    table.add_column("Reason")

    for entry in entries:
        ts = entry.get("ts", "")
        try:
            ts = datetime.fromisoformat(ts.replace("Z", "+00:00")).strftime("%m-%d %H:%M:%S")
        except ValueError:
            pass
        event_name = entry.get("event", "-")
        if event_name == "access_granted":
            event_name = "[green]access_granted[/green]"
        elif event_name in ("access_denied", "token_refused"):
            event_name = f"[red]{event_name}[/red]"
        table.add_row(ts, event_name, entry.get("door_id", "-"), entry.get("reason", "-"))

    console.print(table)


@app.command("request")
def request_cmd(
    credential: str = typer.Argument(..., help="Enrollment credential"),
    url: str = typer.Option("http://localhost:3000", "--url", help="Validation service URL"),
    door_url: str = typer.Option(None, "--door-url", help="Push the token to this door controller"),
    wait: bool = typer.Option(False, "--wait", help="Poll until the door decides"),
):
    """Request a short-lived token, as a phone would."""
    from proxlock.client import EnrollmentError, ProxlockClient, RateLimitedError, ServiceError

    async def run():
        async with ProxlockClient(url) as client:
            issued = await client.request_token(credential)
            console.print(f"Token: [bold]{issued.token}[/bold] (expires {issued.expires_at:%H:%M:%S})")
            if door_url:
                decision = await client.push_to_door(door_url, issued.token)
                console.print(json.dumps(decision.to_dict()))
            elif wait:
                status = await client.wait_for_decision(issued.token)
                console.print(f"Status: [bold]{status.value}[/bold]")

    try:
        asyncio.run(run())
    except RateLimitedError as e:
        until = f"{e.suspended_until:%H:%M:%S}" if e.suspended_until else "later"
        console.print(f"[red]Rate limited. Try again after {until}.[/red]")
        raise typer.Exit(1)
    except EnrollmentError as e:
        console.print(f"[red]Token refused: {e.reason}[/red]")
        raise typer.Exit(1)
    except ServiceError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)


@app.command()
def version():
    """Show version information."""
    from proxlock import __version__
    console.print(f"Proxlock v{__version__}")


if __name__ == "__main__":
    app()
