"""
plugmesh CLI - Command line interface for circuit load balancing.
"""

import asyncio
import json
import logging
import sys
import time
from pathlib import Path
from typing import Optional, Tuple

import aiohttp
import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from .config import Config, DEFAULT_DATA_DIR, get_config, set_config

console = Console()


def setup_logging(verbose: bool = False):
    """Set up logging configuration."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
        handlers=[logging.StreamHandler()]
    )


def run_async(coro):
    """Run an async function."""
    return asyncio.run(coro)


def _load_config(data_dir: Optional[str]) -> Config:
    config = Config.load(Path(data_dir)) if data_dir else get_config()
    set_config(config)
    return config


@click.group()
@click.option('-v', '--verbose', is_flag=True, help='Enable verbose output')
@click.pass_context
def main(ctx, verbose):
    """plugmesh - keep a shared circuit under its breaker limit"""
    ctx.ensure_object(dict)
    ctx.obj['verbose'] = verbose
    setup_logging(verbose)


@main.command()
@click.option('--node-id', '-n', help='This plug\'s id / address (host:port)')
@click.option('--priority', '-p', default=3, type=int, help='Priority class, 0 = most important')
@click.option('--peer', 'peers', multiple=True, help='Seed peer address (repeatable)')
@click.option('--metering-url', help='Shelly Gen2 plug to read power from')
@click.option('--mdns/--no-mdns', default=False, help='Discover peers over mDNS')
@click.option('--data-dir', type=click.Path(), help='Data directory')
def init(
    node_id: Optional[str],
    priority: int,
    peers: Tuple[str, ...],
    metering_url: Optional[str],
    mdns: bool,
    data_dir: Optional[str],
):
    """Write the configuration for this plug."""
    data_path = Path(data_dir) if data_dir else DEFAULT_DATA_DIR
    existing = Config.load(data_path)

    max_priority = existing.balancer.max_priority
    if not 0 <= priority <= max_priority:
        raise click.BadParameter(f"must be between 0 and {max_priority}", param_hint="'--priority'")

    if Config.exists(data_path):
        console.print(f"[yellow]⚠️  A configuration already exists in {data_path}.[/yellow]")
        if not click.confirm("Overwrite it?"):
            return

    # Circuit and timing settings survive a re-init
    config = Config(
        data_dir=data_path,
        node_id=node_id,
        priority=priority,
        peers=list(peers),
        metering_url=metering_url,
        mdns_enabled=mdns,
        balancer=existing.balancer,
        coordination=existing.coordination,
        transport=existing.transport,
        server=existing.server,
    )
    config.save()

    console.print("\n[bold green]✓ Plug configured[/bold green]\n")
    table = Table(show_header=False, box=None)
    table.add_column("Key", style="dim")
    table.add_column("Value")
    table.add_row("Node ID", f"[cyan]{node_id or '(hostname:port)'}[/cyan]")
    table.add_row("Priority", str(priority))
    table.add_row("Peers", ", ".join(peers) or "[dim]none[/dim]")
    table.add_row("Circuit limit", f"{config.circuit_limit_watts:.0f} W")
    table.add_row("Data Directory", str(data_path))
    console.print(table)
    console.print()


@main.command()
@click.option('--host', '-h', default=None, help='Host to bind to')
@click.option('--port', '-p', default=None, type=int, help='Port to bind to')
@click.option('--data-dir', type=click.Path(), help='Data directory')
def serve(host: Optional[str], port: Optional[int], data_dir: Optional[str]):
    """Start the plugmesh node."""
    config = _load_config(data_dir)

    if host:
        config.server.host = host
    if port:
        config.server.port = port

    console.print("\n[bold blue]⚡ Starting plugmesh[/bold blue]")
    console.print(f"   Listening on: http://{config.server.host}:{config.server.port}")
    console.print(f"   Circuit limit: {config.circuit_limit_watts:.0f} W")
    console.print("   Press Ctrl+C to stop\n")

    from .api.server import run_server

    run_server(host=config.server.host, port=config.server.port, config=config)


async def _fetch_json(url: str, timeout: float) -> dict:
    async with aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=timeout)) as session:
        async with session.get(url) as resp:
            resp.raise_for_status()
            return await resp.json()


@main.command()
@click.option('--url', '-u', default=None, help='Node to query (defaults to the local node)')
def status(url: Optional[str]):
    """Show the circuit, leader and every known plug."""
    config = get_config()
    base = (url or f"http://127.0.0.1:{config.server.port}").rstrip("/")
    if not base.startswith(("http://", "https://")):
        base = f"http://{base}"

    async def fetch():
        info = await _fetch_json(f"{base}/api/status", config.transport.request_timeout)
        snapshot = await _fetch_json(f"{base}/api/nodes", config.transport.request_timeout)
        return info, snapshot

    try:
        info, snapshot = run_async(fetch())
    except (aiohttp.ClientError, asyncio.TimeoutError) as e:
        console.print(f"[red]Could not reach {base}: {e}[/red]")
        sys.exit(1)

    leader = info.get("leader") or "[yellow]none[/yellow]"
    if info.get("is_leader"):
        leader = f"[green]{leader} (this node)[/green]"
    spare = info.get("spare_capacity", 0.0)
    spare_style = "green" if spare >= 0 else "red"

    console.print(Panel(
        f"Node: [cyan]{info.get('node_id')}[/cyan]  priority {info.get('priority')}\n"
        f"Leader: {leader}\n"
        f"Load: {info.get('total_load', 0.0):.0f} W / {info.get('circuit_limit_watts', 0.0):.0f} W  "
        f"([{spare_style}]{spare:+.0f} W[/{spare_style}])",
        title="⚡ plugmesh",
    ))

    table = Table(title="Plugs")
    table.add_column("Priority", justify="right")
    table.add_column("Node")
    table.add_column("State")
    table.add_column("Avg W", justify="right")
    table.add_column("Budget W", justify="right")
    table.add_column("Tier", justify="right")
    table.add_column("Last seen", justify="right")

    now = time.time()
    for node in snapshot.get("nodes", []):
        state = "[green]on[/green]" if node.get("circuit_closed") else "[red]off[/red]"
        name = node["id"] + (" [dim](self)[/dim]" if node.get("is_self") else "")
        table.add_row(
            str(node.get("priority")),
            name,
            state,
            f"{node.get('average_consumption', 0.0):.0f}",
            f"{node.get('budget_watts', 0.0):.0f}",
            str(node.get("tier")),
            f"{now - node.get('last_seen', now):.0f}s ago",
        )
    console.print(table)

    votes = info.get("votes") or []
    if votes:
        console.print("\n[bold]Votes in flight[/bold]")
        for vote in votes:
            console.print(f"  • {vote['type']} {vote['subject'] or '-'} at {vote['stage']} (waiting on {', '.join(vote['missing']) or 'nobody'})")


@main.command()
@click.argument('sender')
@click.argument('value', type=float)
@click.option('--to', 'targets', multiple=True, required=True, help='Peer to send the report to (repeatable)')
@click.option('--priority', '-p', type=int, help='Priority class of the sender')
@click.option('--closed/--open', 'closed', default=None, help='Relay state of the sender')
def report(sender: str, value: float, targets: Tuple[str, ...], priority: Optional[int], closed: Optional[bool]):
    """Send one power report by hand."""
    from .balancer.updates import PeerReport
    from .errors import ReportValidationError
    from .mesh.transport import PeerClient

    config = get_config()
    try:
        peer_report = PeerReport.from_query(
            {
                k: v for k, v in {
                    "sender": sender,
                    "value": str(value),
                    "priority": None if priority is None else str(priority),
                    "circuitclosed": None if closed is None else str(closed).lower(),
                    "timestamp": repr(time.time()),
                }.items() if v is not None
            },
            config.balancer.max_priority,
        )
    except ReportValidationError as e:
        console.print(f"[red]Invalid report: {e}[/red]")
        sys.exit(1)

    async def send():
        client = PeerClient(config.transport)
        try:
            return await asyncio.gather(*(client.send_report(t, peer_report.to_params()) for t in targets))
        finally:
            await client.close()

    results = run_async(send())
    failed = False
    for target, ok in zip(targets, results):
        if ok:
            console.print(f"[green]✓[/green] {target}")
        else:
            console.print(f"[red]✗[/red] {target}")
            failed = True
    if failed:
        sys.exit(1)


def _parse_value(raw: str):
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return raw


@main.command('config')
@click.argument('key', required=False)
@click.argument('value', required=False)
@click.option('--data-dir', type=click.Path(), help='Data directory')
def config_cmd(key: Optional[str], value: Optional[str], data_dir: Optional[str]):
    """Show configuration, or set KEY (dotted, e.g. balancer.breaker_amps) to VALUE."""
    config = _load_config(data_dir)
    data = config.to_dict()

    if key is None:
        console.print_json(json.dumps(data))
        console.print(f"\n[dim]Circuit limit: {config.circuit_limit_watts:.0f} W[/dim]")
        return

    parts = key.split(".")
    section = data
    for part in parts[:-1]:
        if not isinstance(section.get(part), dict):
            console.print(f"[red]Unknown section: {part}[/red]")
            sys.exit(1)
        section = section[part]

    if parts[-1] not in section:
        console.print(f"[red]Unknown setting: {key}[/red]")
        sys.exit(1)

    if value is None:
        console.print(json.dumps(section[parts[-1]]))
        return

    section[parts[-1]] = _parse_value(value)
    updated = Config.from_dict(data, data_dir=config.data_dir)
    updated.save()
    console.print(f"[green]✓[/green] {key} = {json.dumps(section[parts[-1]])}")


if __name__ == '__main__':
    main()
