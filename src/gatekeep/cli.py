"""
CLI entry point for Gatekeep.

This module provides the Typer-based command-line interface for Gatekeep.
It is one transport adapter over the Decision Pipeline: it turns its
arguments into ActionRequests and delegates every decision to the pipeline.

Commands:
    check       Evaluate an action request for one phase
    verify      Record a verification run for a scenario
    audit       Show recorded audit records or conflict resolutions
    stats       Show audit, rule and lock counters
    rules       import | list | enable | disable
    locks       status | lock | unlock | register | reload | watch

Exit codes:
    0  allowed / success
    1  error
    2  blocked
"""

import json
import time
import traceback
from pathlib import Path
from typing import Annotated, Any, Optional

import typer
import yaml
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from gatekeep import __version__
from gatekeep.errors import GatekeepError
from gatekeep.locks.registry import LockRegistry, ReloadResult
from gatekeep.locks.watcher import ConfigWatcher
from gatekeep.logging import configure_logging
from gatekeep.pipeline import DecisionPipeline
from gatekeep.schema import ActionRequest, Decision, Phase, Settings, load_rules_file, load_settings
from gatekeep.session import SessionState
from gatekeep.store.db import GatekeepDB

EXIT_BLOCKED = 2

app = typer.Typer(
    name="gatekeep",
    help="Policy enforcement for agent tool calls: rules, conflicts and module locks.",
    add_completion=False,
    no_args_is_help=True,
)

rules_app = typer.Typer(help="Manage stored rules.", no_args_is_help=True)
locks_app = typer.Typer(help="Inspect and administer module locks.", no_args_is_help=True)
app.add_typer(rules_app, name="rules")
app.add_typer(locks_app, name="locks")

console = Console()


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"[bold]gatekeep[/bold] version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    config: Annotated[
        Optional[Path],
        typer.Option(
            "--config",
            "-c",
            help="Path to the settings YAML file.",
            exists=True,
            readable=True,
            resolve_path=True,
        ),
    ] = None,
    db: Annotated[
        Optional[Path],
        typer.Option("--db", help="SQLite database (overrides the settings file)."),
    ] = None,
    locks: Annotated[
        Optional[Path],
        typer.Option("--locks", help="Lock config file (overrides the settings file)."),
    ] = None,
    version: Annotated[
        Optional[bool],
        typer.Option(
            "--version",
            "-v",
            help="Show version and exit.",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
) -> None:
    """
    Gatekeep - decide whether an agent's operation may proceed.

    Rules are evaluated before, during and after each operation; protected
    modules can be locked against modification.
    """
    try:
        settings = load_settings(config) if config else Settings()
    except (OSError, yaml.YAMLError, ValidationError) as e:
        console.print(f"[red]Error loading settings: {e}[/red]")
        raise typer.Exit(code=1)

    overrides: dict[str, Any] = {}
    if db:
        overrides["db_path"] = db
    if locks:
        overrides["lock_config_path"] = locks
    if overrides:
        settings = settings.model_copy(update=overrides)

    configure_logging(settings.log_level, json=settings.log_json)
    ctx.obj = settings


def _settings(ctx: typer.Context) -> Settings:
    return ctx.obj if isinstance(ctx.obj, Settings) else Settings()


def _fail(message: str, json_output: bool = False, debug: bool = False) -> None:
    if json_output:
        _output_json_error(message, debug)
    else:
        console.print(f"[red]{message}[/red]")
        if debug:
            console.print(f"[dim]{traceback.format_exc()}[/dim]")
    raise typer.Exit(code=1)


def _output_json_error(message: str, include_traceback: bool = False) -> None:
    """Output an error in JSON format."""
    output: dict[str, Any] = {"error": True, "message": message}
    if include_traceback:
        output["traceback"] = traceback.format_exc()
    print(json.dumps(output, indent=2))


# =============================================================================
# check
# =============================================================================


def _parse_flag(raw: str) -> tuple[str, Any]:
    name, sep, value = raw.partition("=")
    if not name or not sep:
        raise typer.BadParameter(f"expected NAME=VALUE, got {raw!r}")
    return name, yaml.safe_load(value)


def _read_request(raw: str) -> dict[str, Any]:
    text = Path(raw[1:]).read_text(encoding="utf-8") if raw.startswith("@") else raw
    data = json.loads(text)
    if not isinstance(data, dict):
        raise ValueError("the request must be a JSON object")
    return data


@app.command()
def check(
    ctx: typer.Context,
    request: Annotated[
        str,
        typer.Argument(help='Request JSON, e.g. \'{"operation_name": "write", ...}\', or @file.'),
    ],
    phase: Annotated[
        Phase,
        typer.Option("--phase", "-p", help="Phase to evaluate."),
    ] = Phase.PRE,
    flags: Annotated[
        Optional[list[str]],
        typer.Option("--flag", "-f", help="Session flag NAME=VALUE (repeatable)."),
    ] = None,
    user_input: Annotated[
        Optional[str],
        typer.Option("--user-input", help="Most recent user message."),
    ] = None,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output the decision in JSON format."),
    ] = False,
    debug: Annotated[
        bool,
        typer.Option("--debug", help="Show full error tracebacks."),
    ] = False,
) -> None:
    """
    Evaluate an action request for one phase.

    Exits with code 2 when the operation is blocked.

    Example:
        $ gatekeep check '{"operation_name": "delete_file", "arguments": {"path": "/etc/passwd"}}'
    """
    if phase == Phase.ALL:
        _fail("--phase must be a concrete phase", json_output)

    try:
        data = _read_request(request)
        action = ActionRequest.model_validate({**data, "phase": phase})
    except (OSError, ValueError, ValidationError) as e:
        _fail(f"Invalid request: {e}", json_output, debug)

    session = SessionState()
    for raw in flags or []:
        session.set_flag(*_parse_flag(raw))
    if user_input:
        session.last_user_input = user_input

    try:
        with DecisionPipeline.from_settings(_settings(ctx)) as pipeline:
            if phase == Phase.PRE:
                decision = pipeline.before(action, session)
            elif phase == Phase.MID:
                decision = pipeline.during(action, session, action.result_snapshot)
            elif phase == Phase.POST:
                decision = pipeline.after(action, session, action.result_snapshot)
            else:
                decision = pipeline.review_response(
                    action.response_text or "", session, action.operation_name
                )
    except GatekeepError as e:
        _fail(f"Check failed: {e}", json_output, debug)

    if json_output:
        print(json.dumps(decision.model_dump(mode="json"), indent=2))
    else:
        _display_decision(decision)

    raise typer.Exit(code=EXIT_BLOCKED if decision.blocked else 0)


def _display_decision(decision: Decision) -> None:
    """Display a decision in a formatted way."""
    if decision.blocked:
        console.print(
            f"[red]✗ blocked[/red] ({decision.phase.value}) by "
            f"[bold]{decision.matched_rule_code}[/bold]"
        )
        console.print(decision.message)
        if decision.suggestion:
            console.print()
            console.print(f"[dim]{decision.suggestion}[/dim]")
    else:
        console.print(f"[green]✓ allowed[/green] ({decision.phase.value})")
    if decision.warnings:
        console.print(f"[yellow]Warnings: {', '.join(decision.warnings)}[/yellow]")


# =============================================================================
# verify / audit / stats
# =============================================================================


@app.command()
def verify(
    ctx: typer.Context,
    scenario: Annotated[str, typer.Argument(help="Verification scenario name.")],
    failed: Annotated[
        bool,
        typer.Option("--failed", help="Record a failed run instead of a success."),
    ] = False,
    note: Annotated[
        Optional[str],
        typer.Option("--note", help="Free-form note stored with the run."),
    ] = None,
) -> None:
    """
    Record a verification run for a scenario.

    Example:
        $ gatekeep verify checkout-flow --note "manual run on staging"
    """
    with GatekeepDB(_settings(ctx).db_path) as db:
        db.record_verification(scenario, success=not failed, note=note)
        streak = db.consecutive_successes(scenario)
    console.print(f"Recorded {'failure' if failed else 'success'} for [cyan]{scenario}[/cyan]")
    console.print(f"[dim]Consecutive successes: {streak}[/dim]")


@app.command()
def audit(
    ctx: typer.Context,
    limit: Annotated[
        int,
        typer.Option("--limit", "-n", help="Maximum number of records to show."),
    ] = 20,
    rule_code: Annotated[
        Optional[str],
        typer.Option("--rule", help="Only records for this rule."),
    ] = None,
    session_id: Annotated[
        Optional[str],
        typer.Option("--session", help="Only records for this session."),
    ] = None,
    conflicts: Annotated[
        bool,
        typer.Option("--conflicts", help="Show conflict resolutions instead."),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output in JSON format."),
    ] = False,
) -> None:
    """
    Show recorded audit records (most recent first).

    Example:
        $ gatekeep audit --rule R1 -n 50
    """
    db_path = _settings(ctx).db_path
    if not Path(db_path).exists():
        console.print(f"[yellow]No database found at {db_path}[/yellow]")
        raise typer.Exit(code=0)

    with GatekeepDB(db_path) as db:
        if conflicts:
            entries = db.list_conflicts(limit=limit)
            if json_output:
                print(json.dumps(entries, indent=2))
                return
            table = Table(show_header=True, header_style="bold")
            table.add_column("Time")
            table.add_column("Rules", style="cyan")
            table.add_column("Strategy")
            table.add_column("Resolved", style="bold")
            for entry in entries:
                table.add_row(
                    entry["timestamp"][:19],
                    ", ".join(entry["conflicting_rules"]),
                    entry["strategy_used"],
                    entry["resolved_rule"] or "",
                )
            console.print(table)
            return

        records = db.list_audit_records(limit=limit, rule_code=rule_code, session_id=session_id)

    if json_output:
        print(json.dumps([r.model_dump(mode="json") for r in records], indent=2))
        return

    if not records:
        console.print("[dim]No audit records found.[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Time")
    table.add_column("Rule", style="cyan")
    table.add_column("Operation")
    table.add_column("Phase", width=8)
    table.add_column("Outcome", width=8)
    table.add_column("Reason")
    for record in records:
        outcome = record.outcome.value
        if record.evaluation_error:
            outcome_display = "[magenta]error[/magenta]"
        elif outcome == "blocked":
            outcome_display = "[red]blocked[/red]"
        elif outcome == "warned":
            outcome_display = "[yellow]warned[/yellow]"
        else:
            outcome_display = "[green]passed[/green]"
        reason = record.evaluation_error or record.reason
        if len(reason) > 60:
            reason = reason[:57] + "..."
        table.add_row(
            record.timestamp.isoformat()[:19],
            record.rule_code,
            record.operation_name,
            record.phase.value,
            outcome_display,
            reason,
        )
    console.print(table)


@app.command()
def stats(
    ctx: typer.Context,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output in JSON format."),
    ] = False,
) -> None:
    """Show audit outcome counts, rule counts and lock counts."""
    settings = _settings(ctx)
    try:
        with GatekeepDB(settings.db_path) as db:
            summary = db.audit_summary()
            rules = db.list_rules()
        registry = LockRegistry(settings.lock_config_path)
    except GatekeepError as e:
        _fail(f"Could not read state: {e}", json_output)

    output = {
        "audit": summary,
        "rules": {
            "total": len(rules),
            "enabled": sum(1 for r in rules if r.enabled),
        },
        "locks": {
            "modules": len(registry.config.modules),
            "locked": sum(1 for m in registry.config.modules.values() if m.locked),
            "protected_paths": len(registry.protected_paths()),
        },
    }

    if json_output:
        print(json.dumps(output, indent=2))
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Metric")
    table.add_column("Value", justify="right")
    for section, values in output.items():
        for key, value in values.items():
            table.add_row(f"{section}.{key}", str(value))
    console.print(table)


# =============================================================================
# rules
# =============================================================================


@rules_app.command("import")
def rules_import(
    ctx: typer.Context,
    rules_path: Annotated[
        Path,
        typer.Argument(
            help="Path to the rules YAML file.",
            exists=True,
            readable=True,
            resolve_path=True,
        ),
    ],
) -> None:
    """
    Import (insert or update) rules from a YAML file.

    Example:
        $ gatekeep rules import rules.yaml
    """
    try:
        rules = load_rules_file(rules_path)
    except (OSError, yaml.YAMLError, ValidationError) as e:
        _fail(f"Error loading rules: {e}")

    with GatekeepDB(_settings(ctx).db_path) as db:
        count = db.import_rules(rules)
    console.print(f"[green]✓[/green] Imported {count} rule(s)")


@rules_app.command("list")
def rules_list(
    ctx: typer.Context,
    enabled_only: Annotated[
        bool,
        typer.Option("--enabled", help="Only show enabled rules."),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output in JSON format."),
    ] = False,
) -> None:
    """List stored rules, highest priority first."""
    with GatekeepDB(_settings(ctx).db_path) as db:
        rules = db.list_rules(include_disabled=not enabled_only)

    if json_output:
        print(json.dumps([r.model_dump(mode="json") for r in rules], indent=2))
        return

    if not rules:
        console.print("[dim]No rules found.[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Code", style="cyan")
    table.add_column("Phase", width=8)
    table.add_column("Priority", justify="right")
    table.add_column("Detection")
    table.add_column("Action", width=6)
    table.add_column("Severity")
    table.add_column("Group / Strategy")
    table.add_column("Enabled", width=7)
    for rule in rules:
        table.add_row(
            rule.rule_code,
            rule.phase_scope.value,
            str(rule.priority),
            rule.detection_type.value,
            rule.action_on_violation.value,
            rule.severity.value,
            f"{rule.conflict_group} / {rule.conflict_strategy.value}",
            "[green]yes[/green]" if rule.enabled else "[dim]no[/dim]",
        )
    console.print(table)


def _set_enabled(ctx: typer.Context, rule_code: str, enabled: bool) -> None:
    with GatekeepDB(_settings(ctx).db_path) as db:
        found = db.set_rule_enabled(rule_code, enabled)
    if not found:
        _fail(f"Rule not found: {rule_code}")
    console.print(f"[green]✓[/green] {rule_code} {'enabled' if enabled else 'disabled'}")


@rules_app.command("enable")
def rules_enable(
    ctx: typer.Context,
    rule_code: Annotated[str, typer.Argument(help="Rule code.")],
) -> None:
    """Enable a rule."""
    _set_enabled(ctx, rule_code, True)


@rules_app.command("disable")
def rules_disable(
    ctx: typer.Context,
    rule_code: Annotated[str, typer.Argument(help="Rule code.")],
) -> None:
    """Disable a rule."""
    _set_enabled(ctx, rule_code, False)


# =============================================================================
# locks
# =============================================================================


def _registry(ctx: typer.Context) -> LockRegistry:
    try:
        return LockRegistry(_settings(ctx).lock_config_path)
    except GatekeepError as e:
        _fail(str(e))


@locks_app.command("status")
def locks_status(
    ctx: typer.Context,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output in JSON format."),
    ] = False,
) -> None:
    """Show the lock state of every module."""
    registry = _registry(ctx)
    modules = registry.status()

    if json_output:
        print(json.dumps({"modules": modules, "protected_paths": registry.protected_paths()}, indent=2))
        return

    if not modules:
        console.print("[dim]No modules registered.[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Module", style="cyan")
    table.add_column("Name")
    table.add_column("State", width=8)
    table.add_column("Since")
    table.add_column("Reason")
    for m in modules:
        state = "[red]locked[/red]" if m["locked"] else "[green]unlocked[/green]"
        since = (m["locked_at"] if m["locked"] else m["unlocked_at"]) or ""
        table.add_row(m["module_id"], m["name"], state, since[:19], m["locked_reason"] or "")
    console.print(table)
    console.print(f"[dim]Protected paths: {len(registry.protected_paths())}[/dim]")


@locks_app.command("lock")
def locks_lock(
    ctx: typer.Context,
    module_id: Annotated[
        Optional[str],
        typer.Argument(help="Module to lock."),
    ] = None,
    reason: Annotated[
        str,
        typer.Option("--reason", "-r", help="Why the module is locked."),
    ] = "",
    all_modules: Annotated[
        bool,
        typer.Option("--all", help="Lock every module."),
    ] = False,
) -> None:
    """Lock a module (or all modules) against modification."""
    registry = _registry(ctx)
    try:
        if all_modules:
            changed = registry.lock_all(reason or "bulk lock")
            console.print(f"[green]✓[/green] Locked {len(changed)} module(s)")
            return
        if not module_id:
            _fail("Give a module id or --all")
        module = registry.lock(module_id, reason)
    except GatekeepError as e:
        _fail(str(e))
    console.print(f"[green]✓[/green] {module.label} is locked")


@locks_app.command("unlock")
def locks_unlock(
    ctx: typer.Context,
    module_id: Annotated[
        Optional[str],
        typer.Argument(help="Module to unlock."),
    ] = None,
    reason: Annotated[
        str,
        typer.Option("--reason", "-r", help="Why the module is unlocked."),
    ] = "",
    all_modules: Annotated[
        bool,
        typer.Option("--all", help="Unlock every module."),
    ] = False,
) -> None:
    """Unlock a module (or all modules)."""
    registry = _registry(ctx)
    try:
        if all_modules:
            changed = registry.unlock_all(reason or "bulk unlock")
            console.print(f"[green]✓[/green] Unlocked {len(changed)} module(s)")
            return
        if not module_id:
            _fail("Give a module id or --all")
        module = registry.unlock(module_id, reason)
    except GatekeepError as e:
        _fail(str(e))
    console.print(f"[green]✓[/green] {module.label} is unlocked")


@locks_app.command("register")
def locks_register(
    ctx: typer.Context,
    module_id: Annotated[str, typer.Argument(help="New module id.")],
    name: Annotated[
        str,
        typer.Option("--name", help="Human-readable name."),
    ] = "",
    paths: Annotated[
        Optional[list[str]],
        typer.Option("--path", help="Protected path, fragment or glob (repeatable)."),
    ] = None,
    symbols: Annotated[
        Optional[list[str]],
        typer.Option("--symbol", help="Protected symbol (repeatable)."),
    ] = None,
    locked: Annotated[
        bool,
        typer.Option("--locked", help="Register the module already locked."),
    ] = False,
    reason: Annotated[
        str,
        typer.Option("--reason", "-r", help="Lock reason when --locked."),
    ] = "",
) -> None:
    """
    Register a new module.

    Example:
        $ gatekeep locks register core --name "Core engine" --path src/core/ --symbol evaluate --locked
    """
    registry = _registry(ctx)
    try:
        module = registry.register_module(
            module_id,
            name=name,
            protected_paths=paths or [],
            protected_symbols=symbols or [],
            locked=locked,
            reason=reason,
        )
    except GatekeepError as e:
        _fail(str(e))
    state = "locked" if module.locked else "unlocked"
    console.print(f"[green]✓[/green] Registered {module.label} ({state})")


def _print_reload(result: ReloadResult) -> None:
    if result.success:
        console.print(f"[green]✓[/green] {result.message}")
    else:
        console.print(f"[red]✗ {result.message}[/red]")


@locks_app.command("reload")
def locks_reload(ctx: typer.Context) -> None:
    """Validate and reload the lock config, reporting what changed."""
    registry = _registry(ctx)
    result = registry.refresh()
    _print_reload(result)
    if not result.success:
        raise typer.Exit(code=1)


@locks_app.command("watch")
def locks_watch(ctx: typer.Context) -> None:
    """Watch the lock config and report every hot reload until interrupted."""
    settings = _settings(ctx)
    registry = _registry(ctx)
    watcher = ConfigWatcher(registry, debounce_seconds=settings.reload_debounce_seconds)
    watcher.add_reload_callback(_print_reload)

    console.print(f"Watching [cyan]{registry.config_path}[/cyan] (Ctrl-C to stop)")
    with watcher:
        try:
            while True:
                time.sleep(1)
        except KeyboardInterrupt:
            console.print("[dim]Stopped.[/dim]")


if __name__ == "__main__":
    app()
