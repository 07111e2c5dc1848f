from __future__ import annotations

import argparse
import asyncio
import json
import logging
import platform
from dataclasses import asdict

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from quotamon.config import CONFIG_PATH, Config, load_config, save_config, set_config_value
from quotamon.logs import setup_logging
from quotamon.models import QuotaStatus
from quotamon.monitor import ProviderState, QuotaMonitor, StatusTransition
from quotamon.registry import ProviderRegistry, build_registry
from quotamon.snapshot import states_to_json, write_state_file

logger = logging.getLogger(__name__)

STATUS_COLORS = {
    QuotaStatus.HEALTHY: "green",
    QuotaStatus.WARNING: "yellow",
    QuotaStatus.CRITICAL: "red",
    QuotaStatus.DEPLETED: "bold red",
}
BORDERS = {
    "healthy": "#2be38f",
    "warning": "#f2c94c",
    "critical": "#ff5e6c",
    "depleted": "#ff5e6c",
    "failed": "#7184d6",
}


def _bar_color(pct: float) -> str:
    if pct < 20.0:
        return "red"
    if pct < 50.0:
        return "yellow"
    return "green"


def _cli_bar(remaining: float, width: int = 30) -> Text:
    filled = int(round((remaining / 100.0) * width))
    empty = width - filled
    color = _bar_color(remaining)
    bar = Text()
    bar.append("━" * filled, style=f"bold {color}")
    bar.append("╌" * empty, style="bright_black")
    bar.append(f"  {remaining:5.1f}% left", style=f"bold {color}")
    return bar


def _render_panel(name: str, state: ProviderState) -> Panel:
    table = Table.grid(padding=(0, 1), expand=True)
    table.add_column("label", no_wrap=True, style="bold bright_white", ratio=1)
    table.add_column("value", ratio=4)

    status_text = Text()
    if state.status is not None:
        status_text.append(f"● {state.status.value.upper()}", style=STATUS_COLORS[state.status])
    else:
        status_text.append("● NO DATA", style="dim")
    table.add_row("Status", status_text)

    if state.snapshot is not None:
        for quota in state.snapshot.quotas:
            table.add_row("", Text())
            table.add_row(Text(quota.quota_type.label.capitalize(), style="bold cyan"), _cli_bar(quota.percent_remaining))
            if quota.reset_description:
                table.add_row(Text("  resets", style="dim"), Text(quota.reset_description, style="bright_white"))

    if state.error is not None:
        table.add_row("", Text())
        table.add_row(Text("Error", style="bold red"), Text(str(state.error), style="red"))
        if state.snapshot is not None:
            table.add_row("", Text("showing last good reading", style="dim italic"))

    return Panel(
        table,
        title=f"[bold bright_white] {name.upper()} [/]",
        subtitle=f"[dim]updated {state.updated_at.astimezone().strftime('%H:%M:%S')}[/]" if state.updated_at else None,
        border_style=BORDERS.get(state.phase, "#7184d6"),
        padding=(1, 2),
    )


def _print_states(console: Console, registry: ProviderRegistry, monitor: QuotaMonitor, only: str = "all") -> None:
    for record in registry.enabled:
        if only != "all" and record.id != only:
            continue
        console.print(_render_panel(record.name, monitor.state(record.id)))


def _alert_line(transition: StatusTransition) -> Text:
    text = Text()
    text.append(f"{transition.at.astimezone().strftime('%H:%M:%S')} ", style="dim")
    text.append(f"{transition.provider_id} ", style="bold")
    previous = transition.previous.value if transition.previous else "none"
    text.append(f"{previous} → {transition.current.value}", style=STATUS_COLORS[transition.current])
    return text


async def _check(cfg: Config, registry: ProviderRegistry) -> QuotaMonitor:
    monitor = QuotaMonitor(registry, probe_timeout=float(cfg.general.probe_timeout_seconds))
    try:
        await monitor.refresh()
        write_state_file(cfg.general.state_file, monitor.states())
    finally:
        await monitor.shutdown()
    return monitor


async def _watch(cfg: Config, registry: ProviderRegistry, console: Console) -> None:
    monitor = QuotaMonitor(registry, probe_timeout=float(cfg.general.probe_timeout_seconds))
    monitor.subscribe(lambda t: console.print(_alert_line(t)))
    try:
        while True:
            result = await monitor.refresh()
            write_state_file(cfg.general.state_file, monitor.states())
            summary = "  ".join(
                f"{o.provider_id}:{monitor.state(o.provider_id).phase}" for o in result.outcomes
            )
            console.print(Text(f"refresh {result.sequence}  {summary}", style="dim"))
            await asyncio.sleep(max(1, cfg.general.refresh_seconds))
    finally:
        await monitor.shutdown()


def main() -> None:
    parser = argparse.ArgumentParser(prog="quotamon")
    parser.add_argument("-v", "--verbose", action="store_true", help="log at DEBUG level")
    sub = parser.add_subparsers(dest="cmd")

    check = sub.add_parser("check")
    check.add_argument("--provider", choices=["all", "claude", "codex", "gemini"], default="all")

    sub.add_parser("watch")

    snap_cmd = sub.add_parser("snapshot")
    snap_cmd.add_argument("--format", choices=["json"], default="json")

    sub.add_parser("health")

    config = sub.add_parser("config")
    config_sub = config.add_subparsers(dest="config_cmd")
    config_sub.add_parser("show")
    config_set = config_sub.add_parser("set")
    config_set.add_argument("key")
    config_set.add_argument("value")

    args = parser.parse_args()
    cfg = load_config()
    setup_logging("DEBUG" if args.verbose else cfg.general.log_level, cfg.general.log_file)

    cmd = args.cmd or "check"
    console = Console()

    if cmd == "config":
        if args.config_cmd == "show":
            print(json.dumps(asdict(cfg), indent=2, default=str))
            return
        if args.config_cmd == "set":
            try:
                set_config_value(cfg, args.key, args.value)
            except ValueError as exc:
                parser.error(str(exc))
            save_config(cfg)
            print(f"updated {args.key}")
            return
        parser.error("config requires show or set")

    registry = build_registry(cfg)

    if cmd == "check":
        monitor = asyncio.run(_check(cfg, registry))
        _print_states(console, registry, monitor, args.provider)
        return

    if cmd == "watch":
        try:
            asyncio.run(_watch(cfg, registry, console))
        except KeyboardInterrupt:
            pass
        return

    if cmd == "snapshot":
        monitor = asyncio.run(_check(cfg, registry))
        print(states_to_json(monitor.states()))
        return

    if cmd == "health":
        checks = {
            "config": str(CONFIG_PATH),
            "state_file": cfg.general.state_file,
            "platform": platform.platform(),
            "providers": {
                r.id: {"enabled": r.is_enabled, "available": r.probe.is_available()} for r in registry.all
            },
        }
        print(json.dumps(checks, indent=2))
        return

    parser.error("unknown command")


if __name__ == "__main__":
    main()
