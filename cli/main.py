import typer
from contextlib import contextmanager
from rich.console import Console
from rich.table import Table
from rich.text import Text
from typing import Optional
from mitigation.core.errors import ConfigurationError, StorageUnavailable, ValidationError
from mitigation.engine import MitigationEngine
from mitigation.security.ip_manager import IPState

console = Console()

EXIT_OK = 0
EXIT_INVALID = 1
EXIT_STORAGE = 2


def gradient_text(text: str):
    colors = ["#FFD700", "#FFE135", "#FFEB3B", "#FFC107", "#FFD54F", "#FFE082"]

    gradient = Text()
    for i, char in enumerate(text):
        if char == " ":
            gradient.append(char)
            continue
        progress = i / max(len(text) - 1, 1)
        gradient.append(char, style=f"bold {colors[int(progress * (len(colors) - 1))]}")
    return gradient


def build_engine() -> MitigationEngine:
    return MitigationEngine.from_settings()


def get_engine() -> MitigationEngine:
    try:
        return build_engine()
    except ConfigurationError as e:
        console.print(f"[bold red]ERROR[/bold red] Invalid configuration: {e}")
        raise typer.Exit(code=EXIT_INVALID)


def fail(message: str, code: int):
    console.print(f"[bold red]ERROR[/bold red] {message}")
    raise typer.Exit(code=code)


@contextmanager
def handle_errors():
    """Maps engine errors to CLI exit codes."""
    try:
        yield
    except ValidationError as e:
        fail(str(e), EXIT_INVALID)
    except StorageUnavailable as e:
        fail(f"Store unavailable: {e}", EXIT_STORAGE)


app = typer.Typer(
    name="mitigate",
    help="API mitigation engine - rate limits, IP lists and attack detection",
    add_completion=False,
    no_args_is_help=True,
    rich_markup_mode="rich"
)


@app.command()
def add(
    ip_address: str = typer.Argument(..., help="IPv4 or IPv6 address"),
    list_type: str = typer.Option(..., "--type", "-t", help="whitelist, blacklist or temporary"),
    reason: Optional[str] = typer.Option(None, "--reason", "-r", help="Why the address is listed"),
    ttl: Optional[int] = typer.Option(None, "--ttl", help="Lifetime in seconds (required for temporary)"),
    created_by: str = typer.Option("cli", "--by", help="Operator recorded on the entry")
):
    """Add an address to an IP list"""
    engine = get_engine()
    with handle_errors():
        entry = engine.add_ip_to_list(ip_address, list_type, reason, ttl, created_by)
    expires = f" until {entry.expires_at.isoformat()}" if entry.expires_at else ""
    console.print(f"[bold green]OK[/bold green] {entry.ip_address} added to {entry.list_type.value}{expires}")


@app.command()
def remove(
    ip_address: str = typer.Argument(..., help="IPv4 or IPv6 address"),
    list_type: str = typer.Option(..., "--type", "-t", help="whitelist, blacklist or temporary")
):
    """Remove an address from an IP list"""
    engine = get_engine()
    with handle_errors():
        removed = engine.remove_ip_from_list(ip_address, list_type)
    if removed == 0:
        fail(f"{ip_address} is not in the {list_type} list", EXIT_INVALID)
    console.print(f"[bold green]OK[/bold green] Removed {removed} {list_type} entr{'y' if removed == 1 else 'ies'} for {ip_address}")


@app.command(name="list")
def list_entries(
    list_type: Optional[str] = typer.Option(None, "--type", "-t", help="Only show one list type")
):
    """Show active IP list entries"""
    engine = get_engine()
    with handle_errors():
        entries = engine.list_ips_in_list(list_type)

    if not entries:
        console.print("[yellow]WARNING[/yellow] No active entries")
        return

    table = Table(box=None, show_header=True, header_style="bold cyan", padding=(0, 2))
    table.add_column("IP", style="cyan", no_wrap=True)
    table.add_column("Type")
    table.add_column("Reason", style="magenta")
    table.add_column("Added")
    table.add_column("Expires")
    table.add_column("By", style="dim")

    for entry in entries:
        table.add_row(
            entry.ip_address,
            entry.list_type.value,
            entry.reason or "[dim]-[/dim]",
            entry.added_at.isoformat(timespec="seconds"),
            entry.expires_at.isoformat(timespec="seconds") if entry.expires_at else "[dim]never[/dim]",
            entry.created_by or "[dim]-[/dim]"
        )
    console.print(table)


@app.command()
def status(ip_address: str = typer.Argument(..., help="IPv4 or IPv6 address")):
    """Show whether an address is whitelisted, blocked or unlisted"""
    engine = get_engine()
    with handle_errors():
        result = engine.ip_status(ip_address)
        entries = engine.ip_entries(ip_address)

    styles = {
        IPState.BLACKLISTED: "[bold red]BLOCKED[/bold red] (blacklist)",
        IPState.TEMPORARILY_BLOCKED: f"[bold red]BLOCKED[/bold red] (temporary, {result.remaining_ttl}s left)",
        IPState.WHITELISTED: "[bold green]WHITELISTED[/bold green]",
        IPState.NONE: "[bold]NORMAL[/bold]",
    }
    reason = f" - {result.reason}" if result.reason else ""
    console.print(f"{ip_address}: {styles[result.status]}{reason}")

    for entry in entries:
        expires = entry.expires_at.isoformat(timespec="seconds") if entry.expires_at else "never"
        console.print(f"  [dim]>[/dim] {entry.list_type.value} (expires {expires}, by {entry.created_by or '-'})")


@app.command()
def cleanup():
    """Delete expired IP list entries"""
    engine = get_engine()
    with handle_errors():
        removed = engine.cleanup_expired_blocks()
    console.print(f"[bold green]OK[/bold green] Removed {removed} expired entr{'y' if removed == 1 else 'ies'}")


@app.command()
def check(
    ip_address: str = typer.Argument(..., help="IPv4 or IPv6 address"),
    endpoint: Optional[str] = typer.Option(None, "--endpoint", "-e"),
    api_key: Optional[str] = typer.Option(None, "--api-key", "-k")
):
    """Evaluate one request against the configured limits (records it when allowed)"""
    engine = get_engine()
    with handle_errors():
        decision = engine.check_rate_limit(ip_address, endpoint, api_key)

    if decision.allowed:
        degraded = " [yellow](degraded)[/yellow]" if decision.degraded else ""
        console.print(f"[bold green]ALLOWED[/bold green] {decision.reason}{degraded}")
    else:
        retry = f", retry after {decision.retry_after}s" if decision.retry_after else ""
        console.print(f"[bold red]DENIED[/bold red] {decision.reason} ({decision.matched_scope}{retry})")


@app.command()
def record(
    ip_address: str = typer.Argument(..., help="IPv4 or IPv6 address"),
    endpoint: Optional[str] = typer.Option(None, "--endpoint", "-e"),
    api_key: Optional[str] = typer.Option(None, "--api-key", "-k")
):
    """Record a request without evaluating it"""
    engine = get_engine()
    with handle_errors():
        recorded = engine.record_request(ip_address, endpoint, api_key)
    if not recorded:
        fail("Request could not be recorded", EXIT_STORAGE)
    console.print(f"[bold green]OK[/bold green] Recorded request from {ip_address}")


@app.command()
def stats(
    ip_address: str = typer.Argument(..., help="IPv4 or IPv6 address"),
    endpoint: Optional[str] = typer.Option(None, "--endpoint", "-e")
):
    """Show current counts per rate-limit tier"""
    engine = get_engine()
    with handle_errors():
        counts = engine.get_rate_limit_stats(ip_address, endpoint)

    table = Table(box=None, show_header=True, header_style="bold cyan", padding=(0, 2))
    table.add_column("Tier", style="cyan")
    table.add_column("Requests", style="green", justify="right")
    for tier, count in counts.items():
        table.add_row(tier, f"[bold]{count}[/bold]")
    console.print(table)


@app.command()
def reset(
    ip_address: str = typer.Argument(..., help="IPv4 or IPv6 address"),
    endpoint: Optional[str] = typer.Option(None, "--endpoint", "-e", help="Only reset this endpoint")
):
    """Clear rate-limit counters for an address"""
    engine = get_engine()
    with handle_errors():
        engine.reset_rate_limit(ip_address, endpoint)
    scope = f" on {endpoint}" if endpoint else ""
    console.print(f"[bold green]OK[/bold green] Rate limits reset for {ip_address}{scope}")


@app.command(name="scan-ddos")
def scan_ddos():
    """Run one DDoS detection pass"""
    engine = get_engine()
    with handle_errors():
        results = engine.scan_ddos()

    for scope, transition in results.items():
        if transition is None:
            console.print(f"[yellow]WARNING[/yellow] {scope}: store unavailable, no action taken")
            continue
        line = f"{scope}: [bold]{transition.state.phase.value}[/bold]"
        if transition.offenders:
            line += f" - blocked {', '.join(transition.offenders)}"
        console.print(line)


@app.command(name="scan-abuse")
def scan_abuse():
    """Run one abuse detection pass over recently active addresses"""
    engine = get_engine()
    with handle_errors():
        reports = engine.scan_abuse()

    if not reports:
        console.print("[bold green]OK[/bold green] No abusive sources found")
        return
    for report in reports:
        action = report.action.value if report.action else "none"
        console.print(
            f"[bold red]{report.severity.value.upper()}[/bold red] {report.ip_address} "
            f"({', '.join(report.findings)}) -> {action}"
        )


@app.command(name="init-db")
def init_db():
    """Create the tables in the configured database"""
    engine = get_engine()
    with handle_errors():
        engine.database.create_all()
    console.print("[bold green]OK[/bold green] Tables created")


@app.command()
def serve(
    port: int = typer.Option(8000, "--port", "-p", help="Server port"),
    host: str = typer.Option("0.0.0.0", "--host", "-h", help="Server host")
):
    """Run the HTTP decision API"""
    import uvicorn

    console.print(gradient_text("API Mitigation Engine"))
    console.print(f"[dim]>[/dim] [bold]API:[/bold] [cyan]http://{host}:{port}/api/mitigation[/cyan]\n")
    uvicorn.run("mitigation.main:create_app", host=host, port=port, factory=True)


if __name__ == "__main__":
    app()
