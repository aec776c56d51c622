"""
TOSS Risk Engine - Main Entry Point

Commands:
- status: engine banner with the active risk config
- fault-index: weighted Fault Index and band for four components
- slash: slash / burn / compensation preview
- api: run the FastAPI server
"""

import argparse
import logging
import sys
from decimal import Decimal, InvalidOperation

import uvicorn
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from riskcore.validation import PreconditionError
from riskops.config import settings
from riskops.engine import RiskEngine

logger = logging.getLogger(__name__)

console = Console()


def _decimal(value: str) -> Decimal:
    try:
        return Decimal(value)
    except InvalidOperation:
        raise argparse.ArgumentTypeError(f"not a number: {value}")


def _print_banner(engine: RiskEngine):
    config = engine.config_provider.current()
    console.print(Panel.fit(
        f"[bold cyan]{settings.app_name}[/bold cyan]\n"
        f"[dim]Version {settings.app_version}[/dim]\n"
        f"[green]Environment: {settings.environment}[/green]",
        border_style="cyan"
    ))

    table = Table(title=f"Risk Config v{config.version}", show_header=True)
    table.add_column("Parameter", style="cyan")
    table.add_column("Value", style="green")

    weights = config.weights
    table.add_row("Weights (L/B/D/I)", f"{weights.limit}/{weights.behavior}/{weights.damage}/{weights.intent}")
    table.add_row("Burn share (gamma)", f"{config.gamma}%")
    table.add_row("Loss multiplier (alpha)", str(config.alpha))
    table.add_row("Min slashing FI", str(config.min_slashing_fi))
    table.add_row("Ban threshold FI", str(config.ban_threshold_fi))
    table.add_row("Warning FI", str(config.warning_fi))
    table.add_row("Oracle max staleness", f"{settings.oracle_max_staleness_seconds}s")
    table.add_row("Audit", "[+] Enabled" if engine.audit else "[-] Disabled")
    console.print(table)


def cmd_status(args) -> int:
    _print_banner(RiskEngine())
    return 0


def cmd_fault_index(args) -> int:
    engine = RiskEngine()
    result = engine.preview_fault_index(args.limit, args.behavior, args.damage, args.intent)

    table = Table(title=f"Fault Index (config v{result['config_version']})")
    table.add_column("Component", style="cyan")
    table.add_column("Score", justify="right")
    for name, score in result["components"].items():
        table.add_row(name, score)
    table.add_row("[bold]FI[/bold]", f"[bold]{result['fault_index']}[/bold]")
    table.add_row("Band", result["band"])
    console.print(table)
    return 0


def cmd_slash(args) -> int:
    engine = RiskEngine()
    total = args.total_stake if args.total_stake is not None else args.stake
    computation = engine.preview_slash(args.stake, args.fi, args.loss, total, args.toss_price)

    table = Table(title=f"Slash Preview (FI {computation.fault_index}, config v{computation.config_version})")
    table.add_column("Item", style="cyan")
    table.add_column("TOSS", justify="right", style="green")
    table.add_row("Ratio", f"{computation.ratio_pct}%")
    table.add_row("Base", str(computation.base_amount))
    table.add_row("Loss cap", str(computation.loss_cap))
    table.add_row("Total-stake cap", str(computation.total_cap))
    table.add_row("[bold]Slash[/bold]", f"[bold]{computation.slash_amount}[/bold] ({computation.binding_cap})")
    table.add_row("Burn", str(computation.burn_amount))
    table.add_row("Compensation", str(computation.compensation_amount))
    table.add_row("Ban", "[red]yes[/red]" if computation.ban else "no")
    console.print(table)
    return 0


def cmd_api(args) -> int:
    uvicorn.run(
        "riskops.api:app",
        host=args.host or settings.api_host,
        port=args.port or settings.api_port,
        log_level=settings.log_level.lower(),
    )
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="toss-risk", description=settings.app_name)
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("status", help="Show the active risk configuration").set_defaults(func=cmd_status)

    fi = sub.add_parser("fault-index", help="Compute a Fault Index")
    for name in ("limit", "behavior", "damage", "intent"):
        fi.add_argument(f"--{name}", type=_decimal, default=Decimal(0))
    fi.set_defaults(func=cmd_fault_index)

    slash = sub.add_parser("slash", help="Preview a slash")
    slash.add_argument("--stake", type=_decimal, required=True)
    slash.add_argument("--fi", type=int, required=True)
    slash.add_argument("--loss", type=_decimal, required=True, help="Fund loss in USD")
    slash.add_argument("--total-stake", type=_decimal, default=None)
    slash.add_argument("--toss-price", type=_decimal, default=Decimal(1))
    slash.set_defaults(func=cmd_slash)

    api = sub.add_parser("api", help="Run the HTTP API")
    api.add_argument("--host", default=None)
    api.add_argument("--port", type=int, default=None)
    api.set_defaults(func=cmd_api)

    return parser


def main(argv=None) -> int:
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    args = build_parser().parse_args(argv)
    try:
        return args.func(args)
    except PreconditionError as e:
        console.print(f"[red]Invalid input:[/red] {e}")
        return 2


if __name__ == "__main__":
    sys.exit(main())
