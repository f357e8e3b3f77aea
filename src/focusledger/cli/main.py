"""
FocusLedger CLI

Operator commands for the reward ledger:
- quote: Compute the reward breakdown for an event without crediting it
- tiers: List the stake tiers
- actions: List the action table
- check-action: Decide an action for a role and a set of held capabilities
- spend-quote: Price an acceleration spend
- config: Print the effective settings as YAML
"""

import asyncio
import json
import logging
from decimal import Decimal
from typing import Optional

import click
import yaml
from rich import box
from rich.console import Console
from rich.table import Table

from focusledger import __version__
from focusledger.config import LedgerSettings
from focusledger.exceptions import FocusLedgerError
from focusledger.governance.actions import ActionRegistry, Role
from focusledger.governance.authority import InMemoryRoleProvider, RoleAuthority
from focusledger.rewards.calculator import RewardCalculator
from focusledger.rewards.events import EventNormalizer
from focusledger.rewards.spend import SpendKind, SpendPricer
from focusledger.staking.tiers import StakeTierCatalog

console = Console()

_FORMAT_OPTION = click.option(
    "--format", "fmt",
    type=click.Choice(["table", "json", "yaml"]),
    default="table",
    help="Output format (table, json, or yaml).",
)


def _output_json(data: object) -> None:
    """Print data as JSON to stdout."""
    click.echo(json.dumps(data, indent=2, default=str))


def _output_yaml(data: object) -> None:
    """Print data as YAML to stdout."""
    click.echo(yaml.safe_dump(data, default_flow_style=False, sort_keys=False))


def _output(data: object, fmt: str) -> bool:
    """Print structured output; returns False when the caller should draw a table."""
    if fmt == "json":
        _output_json(data)
        return True
    if fmt == "yaml":
        _output_yaml(data)
        return True
    return False


def _parse_payload(pairs: tuple[str, ...]) -> dict:
    """Turn ``key=value`` options into a payload dict. Numeric values become ints."""
    payload: dict = {}
    for pair in pairs:
        if "=" not in pair:
            raise click.BadParameter(f"Expected key=value, got '{pair}'", param_hint="--field")
        key, value = pair.split("=", 1)
        payload[key.strip()] = int(value) if value.strip().lstrip("-").isdigit() else value
    return payload


class _HeldCapabilities:
    """Capability source for what-if checks from the command line."""

    def __init__(self, capabilities: tuple[str, ...]) -> None:
        self._capabilities = set(capabilities)

    async def active_capabilities(self, user_id: str) -> set[str]:
        return set(self._capabilities)


@click.group()
@click.version_option(__version__, prog_name="focusledger")
@click.option(
    "--config", "config_path",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="YAML settings file (defaults are used when omitted).",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging.")
@click.pass_context
def app(ctx: click.Context, config_path: Optional[str], verbose: bool):
    """Inspect FocusLedger reward rules, stake tiers and action gating."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    ctx.ensure_object(dict)
    ctx.obj["settings"] = (
        LedgerSettings.from_yaml(config_path) if config_path else LedgerSettings()
    )


@app.command()
@click.argument("event_type")
@click.option("--field", "-f", "fields", multiple=True, help="Payload field as key=value.")
@click.option("--streak-days", type=int, default=0, show_default=True)
@click.option("--sessions", "sessions_this_week", type=int, default=0, show_default=True,
              help="Focus sessions completed this week.")
@_FORMAT_OPTION
@click.pass_context
def quote(
    ctx: click.Context,
    event_type: str,
    fields: tuple[str, ...],
    streak_days: int,
    sessions_this_week: int,
    fmt: str,
):
    """Compute the reward for EVENT_TYPE without crediting anything.

    Example: focusledger quote focus_session -f duration_minutes=60 -f mode=learning
    """
    settings: LedgerSettings = ctx.obj["settings"]
    payload = _parse_payload(fields)
    event = EventNormalizer().normalize(
        {"event_type": event_type, "payload": payload}, idempotency_key="cli-quote"
    )
    breakdown = RewardCalculator(settings.rewards).compute(event, streak_days, sessions_this_week)

    data = breakdown.model_dump(mode="json", exclude={"idempotency_key"})
    data["credit_amount"] = str(breakdown.credit_amount)
    if _output(data, fmt):
        return

    console.print(f"\n[bold blue]Reward quote: {breakdown.event_type}[/bold blue]\n")
    table = Table(box=box.SIMPLE, show_header=False)
    table.add_column("Line", style="cyan")
    for line in breakdown.lines:
        table.add_row(line)
    console.print(table)
    console.print(f"  Base:        {breakdown.base_reward}")
    console.print(f"  Streak:      {breakdown.streak_bonus}")
    console.print(f"  Tier:        {breakdown.tier_bonus} ({breakdown.consistency_tier or 'none'})")
    console.print(f"  [bold]Total:       {breakdown.total_reward}[/bold]")
    console.print(f"  Credited:    {breakdown.credit_amount}\n")


@app.command()
@_FORMAT_OPTION
@click.pass_context
def tiers(ctx: click.Context, fmt: str):
    """List the configured stake tiers."""
    settings: LedgerSettings = ctx.obj["settings"]
    catalog = StakeTierCatalog(settings.staking.tiers)
    data = [tier.model_dump(mode="json") for tier in catalog.all()]
    if _output(data, fmt):
        return

    table = Table(title="Stake Tiers", box=box.ROUNDED)
    table.add_column("Tier", style="cyan", no_wrap=True)
    table.add_column("Name")
    table.add_column("Amount", justify="right")
    table.add_column("Capability", style="green")
    table.add_column("Autonomy", justify="right")
    for tier in catalog.all():
        table.add_row(
            tier.tier_id, tier.name or "-", str(tier.amount), tier.capability, str(tier.autonomy_level)
        )
    console.print(table)
    console.print(f"\n  Unstake cooldown: {settings.staking.cooldown_days} days\n")


@app.command()
@_FORMAT_OPTION
@click.option(
    "--actions-file",
    type=click.Path(exists=True, dir_okay=False),
    default=None,
    help="YAML file with extra or overriding action rows.",
)
def actions(fmt: str, actions_file: Optional[str]):
    """List the action table."""
    registry = ActionRegistry.from_yaml(actions_file) if actions_file else ActionRegistry()
    data = [spec.model_dump(mode="json", exclude_none=True) for spec in registry.all()]
    if _output(data, fmt):
        return

    table = Table(title="Autonomous Actions", box=box.ROUNDED)
    table.add_column("Action", style="cyan", no_wrap=True)
    table.add_column("Category")
    table.add_column("Min Role")
    table.add_column("Capability", style="green")
    table.add_column("Confirm (analyst/operator)")
    for spec in registry.all():
        confirm = "/".join(
            "yes" if spec.requires_confirmation(role) else "no"
            for role in (Role.analyst, Role.operator)
        )
        table.add_row(
            spec.action_id,
            spec.category.value,
            spec.min_role.value,
            spec.required_capability or "-",
            confirm,
        )
    console.print(table)


@app.command("check-action")
@click.argument("action_id")
@click.option(
    "--role",
    type=click.Choice([r.value for r in Role]),
    default=Role.analyst.value,
    show_default=True,
)
@click.option("--capability", "-c", "capabilities", multiple=True,
              help="Capability the user holds through an active stake.")
@_FORMAT_OPTION
def check_action(action_id: str, role: str, capabilities: tuple[str, ...], fmt: str):
    """Decide whether ACTION_ID may run for a role and set of held capabilities."""
    authority = RoleAuthority(
        _HeldCapabilities(capabilities),
        InMemoryRoleProvider(default=Role(role)),
    )
    result = asyncio.run(authority.check_action("cli", action_id))
    data = result.model_dump(mode="json")
    if _output(data, fmt):
        return

    if not result.allowed:
        verdict = "[bold red]DENIED[/bold red]"
    elif result.requires_confirmation:
        verdict = "[yellow]ALLOWED, CONFIRMATION REQUIRED[/yellow]"
    else:
        verdict = "[green]ALLOWED[/green]"
    console.print(f"\n  {action_id} as {role}: {verdict}")
    if result.blocked_reason:
        console.print(f"  Reason: {result.blocked_reason}")
    if result.suggested_alternative:
        console.print(f"  Suggestion: {result.suggested_alternative}")
    if result.missing_capability:
        console.print(f"  Missing capability: {result.missing_capability}")
    console.print()
    if not result.allowed:
        raise SystemExit(1)


@app.command("spend-quote")
@click.argument("kind", type=click.Choice([k.value for k in SpendKind]))
@click.option("--items", type=int, default=0, show_default=True)
@click.option("--hours", type=int, default=1, show_default=True)
@click.option("--base-cost", type=str, default="1", show_default=True)
@click.option("--available", type=str, default=None, help="Available balance to check against.")
@_FORMAT_OPTION
@click.pass_context
def spend_quote(
    ctx: click.Context,
    kind: str,
    items: int,
    hours: int,
    base_cost: str,
    available: Optional[str],
    fmt: str,
):
    """Price an acceleration spend of KIND."""
    settings: LedgerSettings = ctx.obj["settings"]
    try:
        quoted = SpendPricer(settings.spend).quote(
            kind,
            available=Decimal(available) if available is not None else None,
            items=items,
            hours=hours,
            base_cost=Decimal(base_cost),
        )
    except (FocusLedgerError, ArithmeticError) as e:
        click.echo(f"Error: {e}", err=True)
        raise SystemExit(1)

    data = quoted.model_dump(mode="json")
    data["affordable"] = quoted.affordable
    if _output(data, fmt):
        return
    console.print(f"\n  {quoted.kind.value}: [bold]{quoted.cost}[/bold] credits")
    if quoted.affordable is not None:
        state = "[green]affordable[/green]" if quoted.affordable else "[red]insufficient balance[/red]"
        console.print(f"  Available {quoted.available}: {state}")
    console.print()


@app.command("config")
@click.pass_context
def show_config(ctx: click.Context):
    """Print the effective settings as YAML."""
    settings: LedgerSettings = ctx.obj["settings"]
    _output_yaml(settings.model_dump(mode="json"))


def main():
    app(obj={})


if __name__ == "__main__":
    main()
