"""
Console runner.

Run with: python -m healthwatch --once
"""

import argparse
import asyncio
import os
from collections.abc import Sequence

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from healthwatch.config import AppConfig, load_config_from_env
from healthwatch.domain.models import CheckResult, MonitoringStatus, SlaState, SlaStatus
from healthwatch.observability import configure_logging
from healthwatch.services.monitoring_service import MonitoringService

console = Console()

STATUS_STYLES = {
    MonitoringStatus.HEALTHY: "green",
    MonitoringStatus.WARNING: "yellow",
    MonitoringStatus.UNHEALTHY: "red",
    MonitoringStatus.CRITICAL: "bold red",
    MonitoringStatus.ERROR: "magenta",
    MonitoringStatus.UNKNOWN: "dim",
}

SLA_STYLES = {
    SlaState.COMPLIANT: "green",
    SlaState.WARNING: "yellow",
    SlaState.VIOLATION: "bold red",
}


def results_table(results: Sequence[CheckResult]) -> Table:
    table = Table(title="Check Results")
    table.add_column("Check", style="cyan")
    table.add_column("Status")
    table.add_column("Message", style="white")
    table.add_column("Duration", justify="right", style="yellow")

    for result in sorted(results, key=lambda r: (-r.status.rank, r.check_name)):
        style = STATUS_STYLES[result.status]
        table.add_row(
            result.check_name,
            f"[{style}]{result.status.value.upper()}[/{style}]",
            result.message,
            f"{result.duration_ms:.0f} ms",
        )
    return table


def metrics_table(metrics: dict[str, float]) -> Table:
    table = Table(title="Metrics")
    table.add_column("Metric", style="cyan")
    table.add_column("Value", justify="right", style="white")
    for name in sorted(metrics):
        value = metrics[name]
        table.add_row(name, f"{value:.2f}" if name.endswith(".avg") else f"{value:.0f}")
    return table


def sla_table(statuses: Sequence[SlaStatus]) -> Table:
    table = Table(title="SLA Status")
    table.add_column("Service", style="cyan")
    table.add_column("State")
    table.add_column("Availability", justify="right")
    table.add_column("Success Rate", justify="right")
    table.add_column("P95", justify="right")
    table.add_column("Compliance", justify="right")
    for status in statuses:
        style = SLA_STYLES[status.state]
        table.add_row(
            status.service_name,
            f"[{style}]{status.state.value.upper()}[/{style}]",
            f"{status.metrics.availability:.2f}%",
            f"{status.metrics.success_rate:.2f}%",
            f"{status.metrics.p95_response_time_ms:.0f} ms",
            f"{status.compliance_percentage:.1f}%",
        )
    return table


async def run_once(service: MonitoringService) -> int:
    console.print(Panel("Running monitoring pass", style="blue"))
    results = await service.run_once()
    console.print(results_table(results))
    console.print(metrics_table(service.metrics.get_metrics()))

    if service.config.sla.enabled and service.sla_evaluator.definitions:
        console.print(sla_table(await service.sla_evaluator.evaluate()))

    summary = service.metrics.get_summary()
    console.print(
        f"\nResults: {summary.healthy_checks}/{summary.total_checks} healthy "
        f"({summary.success_rate:.1f}%)"
    )
    failing = [r for r in results if r.status >= MonitoringStatus.UNHEALTHY]
    return 1 if failing else 0


async def run_continuous(service: MonitoringService) -> int:
    console.print(
        Panel(
            f"Monitoring every {service.config.monitoring.check_interval_seconds:g}s (Ctrl+C to stop)",
            style="blue",
        )
    )
    async for results in service.run_continuous():
        console.print(results_table(results))
    return 0


async def check_channels(service: MonitoringService) -> int:
    console.print(Panel("Testing notification channels", style="blue"))
    table = Table()
    table.add_column("Channel", style="cyan")
    table.add_column("Type", style="magenta")
    table.add_column("Result", style="white")

    passed = 0
    for channel in service.router.channels:
        ok = await service.router.test_channel(channel)
        passed += ok
        table.add_row(channel.name, channel.type, "[green]OK[/green]" if ok else "[red]FAILED[/red]")
    console.print(table)
    console.print(f"\n{passed}/{len(service.router.channels)} channels reachable")
    return 0 if passed == len(service.router.channels) else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="healthwatch", description="Health check orchestration")
    mode = parser.add_mutually_exclusive_group()
    mode.add_argument("--once", action="store_true", help="run a single pass (default)")
    mode.add_argument("--continuous", action="store_true", help="run passes on an interval")
    mode.add_argument("--test-channels", action="store_true", help="send a test notification")
    parser.add_argument("--config", metavar="PATH", help="JSON configuration file")
    return parser


def load_config(path: str | None) -> AppConfig:
    if path:
        os.environ["HEALTHWATCH_CONFIG_FILE"] = path
    return load_config_from_env()


async def _main(args: argparse.Namespace) -> int:
    config = load_config(args.config)
    configure_logging(config.logging)
    async with MonitoringService(config) as service:
        if args.continuous:
            return await run_continuous(service)
        if args.test_channels:
            return await check_channels(service)
        return await run_once(service)


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    try:
        return asyncio.run(_main(args))
    except KeyboardInterrupt:
        console.print("\nStopped by user", style="yellow")
        return 130
