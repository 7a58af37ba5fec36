#!/usr/bin/env python3
"""fleetwatch - CLI Entry Point."""
import sys
import json
import logging
from datetime import datetime, timezone
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent))

import click
from rich.console import Console
from rich.table import Table

from __version__ import __version__

console = Console()
logger = logging.getLogger("fleetwatch.cli")

SEVERITY_STYLES = {"critical": "bold red", "warning": "yellow", "info": "blue"}
STATUS_STYLES = {"success": "green", "failed": "red", "pending": "yellow"}


def _init_components(config_path=None, verbose=False):
    """Lazy initialization of all components."""
    from utils.logger import setup_logging
    from config import load_config
    from models.database import Database
    from alerts.engine import AlertEngine
    from notifications.email_sender import EmailSender

    config = load_config(config_path)
    log_cfg = config.get("logging", {})
    setup_logging("DEBUG" if verbose else log_cfg.get("level", "INFO"), log_cfg.get("file"))

    db = Database(config["database"]["path"])
    db.connect()

    email_sender = EmailSender(config)
    engine = AlertEngine(db, config, email_sender=email_sender)

    return {"config": config, "db": db, "engine": engine, "email_sender": email_sender}


@click.group()
@click.option("--config", "config_path", default=None, help="Path to config YAML")
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.version_option(__version__, prog_name="fleetwatch")
@click.pass_context
def cli(ctx, config_path, verbose):
    """fleetwatch - rule evaluation and alerting for agent fleets."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    ctx.obj["verbose"] = verbose


def _get_components(ctx):
    if "_components" not in ctx.obj:
        ctx.obj["_components"] = _init_components(ctx.obj.get("config_path"), ctx.obj.get("verbose"))
    return ctx.obj["_components"]


def _fmt_time(epoch):
    if epoch is None:
        return "-"
    return datetime.fromtimestamp(epoch, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def _parse_event(line):
    """One JSONL event: {"agent_id", "type", "payload", "timestamp"}."""
    event = json.loads(line)
    if not isinstance(event, dict):
        raise ValueError("event is not an object")
    agent_id = event.get("agent_id") or event.get("agentId")
    event_type = event.get("type") or event.get("event_type")
    if not agent_id or not event_type:
        raise ValueError("event needs agent_id and type")
    return agent_id, event_type, event.get("payload", {}), event.get("timestamp")


def _print_transitions(transitions):
    if not transitions:
        return
    table = Table(title="Transitions", show_header=True)
    table.add_column("Time", style="dim")
    table.add_column("Agent")
    table.add_column("Rule")
    table.add_column("State")
    table.add_column("Occurrence", style="dim")
    for t in transitions:
        state = "[bold red]FIRING[/bold red]" if t.firing else "[green]OK[/green]"
        table.add_row(_fmt_time(t.at), t.agent_id, t.rule.name, state,
                      t.occurrence.id[:8] if t.occurrence else "")
    console.print(table)


# ──────────────────────────────────────────────────────
# INIT
# ──────────────────────────────────────────────────────
@cli.command()
@click.pass_context
def init(ctx):
    """Create the database and its tables."""
    c = _get_components(ctx)
    console.print("[bold]fleetwatch - Setup[/bold]\n")
    console.print(f"[green]✓[/green] Database initialized at {c['config']['database']['path']}")
    sender = c["email_sender"]
    if sender.is_configured():
        console.print(f"[green]✓[/green] SMTP configured ({sender.smtp_host}:{sender.smtp_port})")
    else:
        console.print("[yellow]![/yellow] SMTP not configured; email channels will fail")
    console.print("\nLoad a fleet with [bold]python main.py config load config/fleet_example.yaml[/bold]")


# ──────────────────────────────────────────────────────
# CONFIG
# ──────────────────────────────────────────────────────
@cli.group("config")
def config_group():
    """Fleet configuration (groups, agents, rules, channels)."""
    pass


@config_group.command("load")
@click.argument("path", type=click.Path(exists=True, dir_okay=False))
@click.pass_context
def config_load(ctx, path):
    """Seed groups, agents, rules and channels from a YAML file."""
    c = _get_components(ctx)
    counts = c["engine"].config_store.load_fixture(path)
    console.print(f"[green]✓[/green] Loaded {counts['groups']} group(s), {counts['agents']} agent(s), "
                  f"{counts['rules']} rule(s), {counts['channels']} channel(s)")


@config_group.command("show")
@click.argument("group_id")
@click.pass_context
def config_show(ctx, group_id):
    """Show the rules and channels of a group."""
    c = _get_components(ctx)
    store = c["engine"].config_store
    group = store.get_group(group_id)
    if group is None:
        console.print(f"[red]Unknown group {group_id}[/red]")
        raise SystemExit(1)

    table = Table(title=f"Rules: {group['name']}", show_header=True)
    table.add_column("ID", style="dim")
    table.add_column("Name")
    table.add_column("Condition")
    table.add_column("Severity")
    table.add_column("Enabled")
    for r in store.get_rules_for_group(group_id):
        sev = r.severity.value
        table.add_row(r.id, r.name, r.describe(), f"[{SEVERITY_STYLES.get(sev, '')}]{sev}[/]",
                      "[green]✓[/green]" if r.enabled else "[red]✗[/red]")
    console.print(table)

    agents = c["db"].list_group_agents(group_id)
    console.print(f"\n[bold]Agents:[/bold] {', '.join(sorted(agents)) if agents else 'none'}")

    channels = store.get_channels_for_group(group_id)
    if channels:
        console.print("\n[bold]Channels:[/bold]")
        for ch in channels:
            console.print(f"  {ch.id}: {ch.type.value} → {ch.target}")


# ──────────────────────────────────────────────────────
# INGEST / SERVE
# ──────────────────────────────────────────────────────
@cli.command()
@click.argument("events_file", type=click.File("r"))
@click.option("--sweep-at", type=float, default=None,
              help="Sweep time after replay (default: latest event timestamp)")
@click.option("--drain-timeout", default=60, type=int, help="Seconds to wait for deliveries")
@click.pass_context
def ingest(ctx, events_file, sweep_at, drain_timeout):
    """Replay a JSONL event file through the engine, then sweep and deliver."""
    c = _get_components(ctx)
    engine = c["engine"]
    engine.start(run_scheduler=False)

    transitions, bad_lines, latest = [], 0, None
    try:
        for lineno, line in enumerate(events_file, 1):
            if not line.strip():
                continue
            try:
                agent_id, event_type, payload, timestamp = _parse_event(line)
            except ValueError as e:
                bad_lines += 1
                logger.warning(f"Line {lineno}: {e}")
                continue
            transitions.extend(engine.ingest(agent_id, event_type, payload, timestamp))
            last = engine.aggregator.last_activity(agent_id)
            if last is not None and (latest is None or last > latest):
                latest = last

        now = sweep_at if sweep_at is not None else latest
        if now is not None:
            transitions.extend(engine.sweep(now).transitions)

        if not engine.dispatcher.drain(timeout=drain_timeout):
            console.print("[yellow]Deliveries still in progress; they stay pending for the next run[/yellow]")
    finally:
        engine.stop()

    _print_transitions(transitions)
    stats = engine.stats()
    console.print(f"\n{stats['events']} events, {stats['samples']} samples, "
                  f"{stats['dropped_events']} dropped, {bad_lines} unreadable line(s)")
    console.print(f"Occurrences recorded: [bold]{stats['occurrences_recorded']}[/bold]  "
                  f"Deliveries: {stats['dispatch']['succeeded']} ok / {stats['dispatch']['failed']} failed")


@cli.command()
@click.pass_context
def serve(ctx):
    """Run the engine, reading JSONL events from stdin until EOF."""
    c = _get_components(ctx)
    engine = c["engine"]
    engine.start()
    console.print(f"[bold]fleetwatch[/bold] serving (sweep every {engine.sweep_interval}s); reading events from stdin")
    try:
        for line in sys.stdin:
            if not line.strip():
                continue
            try:
                agent_id, event_type, payload, timestamp = _parse_event(line)
            except ValueError as e:
                logger.warning(f"Unreadable event: {e}")
                continue
            engine.ingest(agent_id, event_type, payload, timestamp)
    except KeyboardInterrupt:
        pass
    finally:
        engine.stop()
        console.print("[dim]Stopped.[/dim]")


# ──────────────────────────────────────────────────────
# ALERTS
# ──────────────────────────────────────────────────────
@cli.group()
def alerts():
    """Alert history and rule checks."""
    pass


@alerts.command("history")
@click.argument("group_id")
@click.option("--limit", default=20, help="Number of occurrences")
@click.option("--offset", default=0, help="Skip this many (newest first)")
@click.pass_context
def alerts_history(ctx, group_id, limit, offset):
    """Show past alert occurrences of a group."""
    c = _get_components(ctx)
    recent = c["engine"].list_occurrences(group_id, limit, offset)
    if not recent:
        console.print("[dim]No alerts in history[/dim]")
        return
    table = Table(title=f"Alert History: {group_id}", show_header=True)
    table.add_column("Time", style="dim")
    table.add_column("ID", style="dim")
    table.add_column("Severity")
    table.add_column("Agent")
    table.add_column("Message")
    for o in recent:
        sev = o.severity.value
        table.add_row(_fmt_time(o.created_at), o.id[:8], f"[{SEVERITY_STYLES.get(sev, '')}]{sev}[/]",
                      o.agent_id, o.message[:60])
    console.print(table)


@alerts.command("deliveries")
@click.argument("occurrence_id")
@click.pass_context
def alerts_deliveries(ctx, occurrence_id):
    """Show delivery status and attempts for an occurrence."""
    c = _get_components(ctx)
    deliveries = c["engine"].list_deliveries(occurrence_id)
    if not deliveries:
        console.print("[dim]No deliveries for this occurrence[/dim]")
        return
    table = Table(title=f"Deliveries: {occurrence_id[:8]}", show_header=True)
    table.add_column("Channel")
    table.add_column("Status")
    table.add_column("Attempts")
    table.add_column("Last Attempt", style="dim")
    table.add_column("Last Error")
    for d in deliveries:
        log = d["attempt_log"]
        last_error = log[-1]["error"] if log else ""
        style = STATUS_STYLES.get(d["status"], "")
        table.add_row(d["channel_id"], f"[{style}]{d['status']}[/]", str(d["attempts"]),
                      _fmt_time(d["last_attempt_at"]), (last_error or "")[:50])
    console.print(table)


@alerts.command("test")
@click.argument("agent_id")
@click.option("--now", type=float, default=None, help="Evaluation time (epoch seconds)")
@click.option("--events", "events_file", type=click.File("r"), default=None,
              help="JSONL events to buffer before evaluating")
@click.pass_context
def alerts_test(ctx, agent_id, now, events_file):
    """Show which of an agent's rules would hold, without recording anything."""
    c = _get_components(ctx)
    engine = c["engine"]
    if events_file is not None:
        for line in events_file:
            if not line.strip():
                continue
            try:
                event_agent, event_type, payload, timestamp = _parse_event(line)
            except ValueError:
                continue
            group_id = engine.config_store.get_agent_group(event_agent)
            for sample in engine.normalizer.normalize(event_agent, event_type, payload, timestamp):
                engine.aggregator.add_sample(sample, group_id)
        if now is None:
            now = engine.aggregator.last_activity(agent_id)

    group_id, results = engine.preview(agent_id, now)
    if group_id is None:
        console.print(f"[yellow]Agent {agent_id} is not in any group[/yellow]")
        return

    table = Table(title=f"Alert Rules Test: {agent_id} ({group_id})", show_header=True)
    table.add_column("Rule")
    table.add_column("Condition")
    table.add_column("Current")
    table.add_column("Would Fire")
    table.add_column("Enabled")
    for r in results:
        if r["config_error"]:
            fire_str = "[red]config error[/red]"
        else:
            fire_str = "[green]YES[/green]" if r["holds"] else "[dim]no[/dim]"
        en_str = "✓" if r["enabled"] else "✗"
        val = str(r["value"]) if r["value"] is not None else "N/A"
        table.add_row(r["name"], r["condition"], val, fire_str, en_str)
    console.print(table)


# ──────────────────────────────────────────────────────
# WEB
# ──────────────────────────────────────────────────────
@cli.command()
@click.option("--port", default=None, type=int, help="Port to bind to")
@click.option("--host", default=None, type=str, help="Host to bind to")
@click.pass_context
def web(ctx, port, host):
    """Run the HTTP API (event feed, history, health)."""
    from web.app import create_app

    c = _get_components(ctx)
    web_cfg = c["config"].get("web", {})
    host = host or web_cfg.get("host", "127.0.0.1")
    port = port or web_cfg.get("port", 8080)

    engine = c["engine"]
    engine.start()
    app = create_app(c["config"], {"engine": engine, "db": c["db"]})
    console.print(f"[bold]fleetwatch API[/bold] on http://{host}:{port}")
    try:
        app.run(host=host, port=port, debug=False, use_reloader=False)
    finally:
        engine.stop()


# ──────────────────────────────────────────────────────
# EMAIL
# ──────────────────────────────────────────────────────
@cli.group()
def email():
    """SMTP checks."""
    pass


@email.command("test")
@click.argument("to_address")
@click.pass_context
def email_test(ctx, to_address):
    """Check the SMTP connection and send a test email."""
    c = _get_components(ctx)
    sender = c["email_sender"]
    if not sender.is_configured():
        console.print("[red]Email not configured.[/red] Set email.from_address and email.smtp_host")
        return

    result = sender.test_connection()
    if result["status"] != "ok":
        console.print(f"[red]SMTP check failed:[/red] {result['message']}")
        return

    if sender.send_alert(to_address, "fleetwatch test email",
                         "This is a test message from fleetwatch."):
        console.print(f"[green]Test email sent to {to_address}[/green]")
    else:
        console.print("[red]Failed to send test email. Check logs.[/red]")


if __name__ == "__main__":
    cli()
