#!/usr/bin/env python3
"""
SecAuto Command Line Interface

Usage:
    secauto run                          # Run the worker and all schedulers
    secauto playbooks                    # List playbooks
    secauto enable|disable PLAYBOOK_ID   # Toggle a playbook
    secauto trigger PLAYBOOK_ID [--var k=v]
    secauto cancel EXECUTION_ID
    secauto execution EXECUTION_ID       # Show an execution and its steps
    secauto event TYPE [--data JSON]     # Submit an event to the router
    secauto violations                   # Policy violations
    secauto checks                       # Compliance check results
    secauto responses                    # Automated responses
    secauto scan TYPE TARGET             # Run a vulnerability assessment
"""

import argparse
import asyncio
import json
import sys
from typing import Any, Optional

from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from secauto import __version__
from secauto.config import Settings, configure_logging
from secauto.orchestrator.errors import OrchestrationError
from secauto.orchestrator.system import OrchestrationSystem
from secauto.store.models import AssessmentType, ExecutionStatus, PlaybookExecution

STATUS_COLORS = {
    "completed": "green",
    "compliant": "green",
    "running": "cyan",
    "waiting": "cyan",
    "paused": "yellow",
    "pending": "yellow",
    "cancelled": "yellow",
    "failed": "red",
    "non_compliant": "red",
    "error": "red",
}


class CLI:
    """CLI helper class."""

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console()

    def print_header(self, title: str):
        self.console.print(Panel.fit(f"[bold cyan]{title}[/bold cyan]", border_style="cyan"))

    def print_success(self, msg: str):
        self.console.print(f"[green]OK[/green] {msg}")

    def print_error(self, msg: str):
        self.console.print(f"[red]ERROR[/red] {msg}")

    def print_info(self, msg: str):
        self.console.print(msg)

    def status(self, value: Any) -> str:
        text = getattr(value, "value", value) or "-"
        return f"[{STATUS_COLORS.get(text, 'white')}]{text}[/]"


async def _dispatch(args, settings: Settings) -> int:
    """Build a system for one command and tear it down afterwards."""
    system = OrchestrationSystem(settings=settings)
    system.use_builtin_capabilities()
    try:
        if args.func is not cmd_run and settings.load_defaults:
            system.load_defaults()
        return await args.func(args, system)
    finally:
        await system.stop()


def _parse_vars(pairs: list[str]) -> dict[str, Any]:
    variables: dict[str, Any] = {}
    for pair in pairs:
        key, sep, raw = pair.partition("=")
        if not sep:
            raise ValueError(f"Expected key=value, got {pair!r}")
        try:
            variables[key] = json.loads(raw)
        except ValueError:
            variables[key] = raw
    return variables


def _print_execution(cli: CLI, execution: PlaybookExecution) -> None:
    table = Table(title=f"Execution {execution.id}", show_header=True)
    table.add_column("Step")
    table.add_column("Status")
    table.add_column("Retries", justify="right")
    table.add_column("Duration (ms)", justify="right")
    table.add_column("Error", style="dim")
    for record in execution.steps:
        table.add_row(
            record.name,
            cli.status(record.status),
            str(record.retry_count),
            f"{record.duration_ms:.0f}" if record.duration_ms is not None else "-",
            record.error or "",
        )
    cli.print_info(
        f"Playbook: {execution.playbook_name} (v{execution.playbook_version})  "
        f"Status: {cli.status(execution.status)}  Triggered by: {execution.triggered_by}"
    )
    cli.console.print(table)
    if execution.error:
        cli.print_error(execution.error)


# ============================================================================
# Commands
# ============================================================================

async def cmd_run(args, system: OrchestrationSystem) -> int:
    """Run the worker and schedulers until interrupted."""
    cli = CLI()
    await system.start()
    cli.print_header(f"SecAuto {__version__} running")
    await asyncio.Event().wait()
    return 0


async def cmd_playbooks(args, system: OrchestrationSystem) -> int:
    """List playbooks."""
    cli = CLI()
    table = Table(title="Playbooks", show_header=True)
    table.add_column("ID", style="dim")
    table.add_column("Name")
    table.add_column("Type")
    table.add_column("Trigger")
    table.add_column("Enabled")
    table.add_column("Runs", justify="right")
    table.add_column("Success", justify="right")
    table.add_column("Version")
    for playbook in system.list_playbooks():
        table.add_row(
            playbook.id,
            playbook.name,
            playbook.type.value,
            playbook.trigger.type.value,
            "yes" if playbook.enabled else "[yellow]no[/]",
            str(playbook.execution_count),
            f"{playbook.success_rate:.0%}",
            playbook.version,
        )
    cli.console.print(table)
    return 0


async def cmd_enable(args, system: OrchestrationSystem) -> int:
    cli = CLI()
    playbook = await system.enable_playbook(args.playbook_id)
    cli.print_success(f"Enabled {playbook.name}")
    return 0


async def cmd_disable(args, system: OrchestrationSystem) -> int:
    cli = CLI()
    playbook = await system.disable_playbook(args.playbook_id)
    cli.print_success(f"Disabled {playbook.name}")
    return 0


async def cmd_trigger(args, system: OrchestrationSystem) -> int:
    """Queue a playbook and run it in this process."""
    cli = CLI()
    execution = system.trigger_playbook(args.playbook_id, _parse_vars(args.var), triggered_by="cli")
    cli.print_info(f"Queued execution {execution.id}")
    finished = await system.worker.process_next()
    _print_execution(cli, finished or system.get_execution(execution.id))
    return 0 if (finished and finished.status == ExecutionStatus.COMPLETED) else 1


async def cmd_cancel(args, system: OrchestrationSystem) -> int:
    cli = CLI()
    execution = await system.cancel_execution(args.execution_id)
    cli.print_success(f"Cancellation recorded for {execution.id} ({execution.status.value})")
    return 0


async def cmd_execution(args, system: OrchestrationSystem) -> int:
    cli = CLI()
    execution = system.get_execution(args.execution_id)
    _print_execution(cli, execution)
    if args.logs:
        for entry in execution.logs:
            cli.print_info(f"[dim]{entry.timestamp.isoformat()}[/] {entry.level.value:5} {entry.message}")
    return 0


async def cmd_event(args, system: OrchestrationSystem) -> int:
    """Submit an event and run whatever it queued."""
    cli = CLI()
    data = json.loads(args.data) if args.data else {}
    if not isinstance(data, dict):
        cli.print_error("--data must be a JSON object")
        return 1
    result = await system.submit_event(args.type, data)
    for summary in result.responses:
        cli.print_info(f"Response {summary['response_name']}: {'ok' if summary['success'] else 'failed'}")
    for playbook_id in result.skipped:
        cli.print_info(f"[yellow]Skipped[/] {playbook_id}: variables not satisfied")
    for execution in await system.worker.drain():
        _print_execution(cli, execution)
    if not result.executions and not result.responses:
        cli.print_info("No playbook or response matched")
    return 0


async def cmd_violations(args, system: OrchestrationSystem) -> int:
    cli = CLI()
    table = Table(title="Policy Violations", show_header=True)
    table.add_column("Policy")
    table.add_column("Rule")
    table.add_column("Severity")
    table.add_column("Target")
    table.add_column("Seen", justify="right")
    table.add_column("Status")
    table.add_column("Description", style="dim")
    for violation in system.get_policy_violations(open_only=args.open):
        table.add_row(
            violation.policy_id,
            violation.rule_id,
            violation.severity.value,
            violation.target,
            str(violation.occurrences),
            violation.status.value,
            violation.description,
        )
    cli.console.print(table)
    return 0


async def cmd_checks(args, system: OrchestrationSystem) -> int:
    cli = CLI()
    table = Table(title="Compliance Checks", show_header=True)
    table.add_column("ID", style="dim")
    table.add_column("Standard")
    table.add_column("Requirement")
    table.add_column("Frequency")
    table.add_column("Status")
    table.add_column("Next check")
    table.add_column("Open issues", justify="right")
    for check in system.get_compliance_results(standard_id=args.standard):
        table.add_row(
            check.id,
            check.standard_id,
            check.requirement_id,
            check.frequency.value,
            cli.status(check.status),
            check.next_check.isoformat(timespec="seconds"),
            str(sum(1 for issue in check.issues if issue.is_open)),
        )
    cli.console.print(table)
    return 0


async def cmd_responses(args, system: OrchestrationSystem) -> int:
    cli = CLI()
    table = Table(title="Automated Responses", show_header=True)
    table.add_column("ID", style="dim")
    table.add_column("Name")
    table.add_column("Enabled")
    table.add_column("Runs", justify="right")
    table.add_column("Cap", justify="right")
    table.add_column("Cooldown (s)", justify="right")
    table.add_column("Success", justify="right")
    for response in system.list_responses():
        table.add_row(
            response.id,
            response.name,
            "yes" if response.enabled else "[yellow]no[/]",
            str(response.execution_count),
            str(response.max_executions),
            f"{response.cooldown:g}",
            f"{response.success_rate:.0%}",
        )
    cli.console.print(table)
    return 0


async def cmd_scan(args, system: OrchestrationSystem) -> int:
    cli = CLI()
    assessment = await system.start_vulnerability_assessment(
        args.type, args.target, scan_profile=args.profile, executed_by="cli",
    )
    if assessment.error:
        cli.print_error(f"Assessment {assessment.id} failed: {assessment.error}")
        return 1
    table = Table(title=f"Findings for {assessment.target}", show_header=True)
    table.add_column("Severity")
    table.add_column("Title")
    table.add_column("CVE")
    table.add_column("Exploitable")
    for finding in assessment.findings:
        table.add_row(finding.severity.value, finding.title, finding.cve or "-", "yes" if finding.exploitable else "no")
    cli.console.print(table)
    await system.worker.drain()
    return 0


def main(argv=None):
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        prog="secauto",
        description="SecAuto - Security Automation Orchestration",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  secauto run                                   Run worker and schedulers
  secauto trigger pb_incident_response --var system_id=web-01
  secauto event alert --data '{"severity": "critical"}'
  secauto scan network 10.0.0.0/24
        """
    )
    parser.add_argument("--db", help="SQLite database path (overrides SECAUTO_DB_PATH)")
    parser.add_argument("--log-level", help="Logging level (overrides SECAUTO_LOG_LEVEL)")
    parser.add_argument("--version", "-v", action="version", version=f"secauto {__version__}")

    subparsers = parser.add_subparsers(dest="command", help="Commands")

    run_p = subparsers.add_parser("run", help="Run the worker and all schedulers")
    run_p.set_defaults(func=cmd_run)

    playbooks_p = subparsers.add_parser("playbooks", help="List playbooks")
    playbooks_p.set_defaults(func=cmd_playbooks)

    enable_p = subparsers.add_parser("enable", help="Enable a playbook")
    enable_p.add_argument("playbook_id")
    enable_p.set_defaults(func=cmd_enable)

    disable_p = subparsers.add_parser("disable", help="Disable a playbook")
    disable_p.add_argument("playbook_id")
    disable_p.set_defaults(func=cmd_disable)

    trigger_p = subparsers.add_parser("trigger", help="Manually run a playbook")
    trigger_p.add_argument("playbook_id")
    trigger_p.add_argument("--var", action="append", default=[], metavar="KEY=VALUE")
    trigger_p.set_defaults(func=cmd_trigger)

    cancel_p = subparsers.add_parser("cancel", help="Cancel an execution")
    cancel_p.add_argument("execution_id")
    cancel_p.set_defaults(func=cmd_cancel)

    execution_p = subparsers.add_parser("execution", help="Show an execution")
    execution_p.add_argument("execution_id")
    execution_p.add_argument("--logs", action="store_true", help="Include the execution log")
    execution_p.set_defaults(func=cmd_execution)

    event_p = subparsers.add_parser("event", help="Submit an event")
    event_p.add_argument("type")
    event_p.add_argument("--data", help="Event data as a JSON object")
    event_p.set_defaults(func=cmd_event)

    violations_p = subparsers.add_parser("violations", help="List policy violations")
    violations_p.add_argument("--open", action="store_true", help="Only unresolved violations")
    violations_p.set_defaults(func=cmd_violations)

    checks_p = subparsers.add_parser("checks", help="List compliance check results")
    checks_p.add_argument("--standard", help="Filter by standard id")
    checks_p.set_defaults(func=cmd_checks)

    responses_p = subparsers.add_parser("responses", help="List automated responses")
    responses_p.set_defaults(func=cmd_responses)

    scan_p = subparsers.add_parser("scan", help="Run a vulnerability assessment")
    scan_p.add_argument("type", choices=[t.value for t in AssessmentType])
    scan_p.add_argument("target")
    scan_p.add_argument("--profile", default="default")
    scan_p.set_defaults(func=cmd_scan)

    args = parser.parse_args(argv)

    if args.command is None:
        parser.print_help()
        return 0

    overrides = {}
    if args.db:
        overrides["db_path"] = args.db
    if args.log_level:
        overrides["log_level"] = args.log_level
    settings = Settings(**overrides)
    configure_logging(settings.log_level, settings.log_format)

    try:
        return asyncio.run(_dispatch(args, settings))
    except OrchestrationError as e:
        CLI().print_error(str(e))
        return 1
    except ValueError as e:
        CLI().print_error(str(e))
        return 1
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    sys.exit(main())
