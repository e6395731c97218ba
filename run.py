#!/usr/bin/env python3
"""
DeFi Rebalancer -- Rebalance Decision Engine
============================================

Decides whether a DeFi portfolio should be rebalanced into a better mix
of lending supply and concentrated-liquidity positions.

Usage:
  python run.py evaluate <fixture.json>                          Decide for the fixture's account
  python run.py evaluate <fixture.json> --account 0x…            Decide for another account
  python run.py evaluate <fixture.json> --json                   Full DecisionResult as JSON
  python run.py evaluate <fixture.json> --tracker-url <url>      Live pools from the tracker
  python run.py simulate <fixture.json> --pool 0x… --tick-lower N --tick-upper N --amount USD
  python run.py info                                             Constraints + allocation profiles

Sources:
  Uniswap V3 Whitepaper : https://uniswap.org/whitepaper-v3.pdf
  Uniswap V3 Docs       : https://docs.uniswap.org/
"""

import sys
import asyncio
import argparse

from defi_rebalancer.central_config import PROJECT_VERSION, EngineSettings
from defi_rebalancer.commands import cmd_evaluate, cmd_info, cmd_simulate
from defi_rebalancer.log_utils import setup_logging


# ── CLI Parser ────────────────────────────────────────────────────────────


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="defi-rebalancer",
        description=f"DeFi Rebalancer v{PROJECT_VERSION} — Rebalance Decision Engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python run.py evaluate fixture.json                        Run one decision offline
  python run.py evaluate fixture.json --json                 Machine-readable result
  python run.py simulate fixture.json --pool 0xd0b5… \\
      --tick-lower -200 --tick-upper 200 --amount 10000     Simulate an LP deposit
  python run.py info                                         Constraint table + profiles

Environment:
  LENDING_PROTOCOLS            comma list (default: aave,venus)
  ENABLED_ALLOCATION_PROFILES  comma list (default: Conservative)
  TRACKER_URL                  market-data tracker base URL
  LOG_LEVEL                    DEBUG, INFO, WARNING (default: INFO)
""",
    )
    parser.add_argument(
        "--version", action="version", version=f"DeFi Rebalancer v{PROJECT_VERSION}"
    )
    parser.add_argument(
        "--log-level",
        type=str,
        default=None,
        help="Log level for the JSON log stream on stderr (default: LOG_LEVEL or INFO)",
    )

    sub = parser.add_subparsers(dest="command", help="Available commands")

    eval_p = sub.add_parser("evaluate", help="Run the decision engine on a fixture")
    eval_p.add_argument("fixture", help="Path to a JSON fixture")
    eval_p.add_argument(
        "--account",
        type=str,
        default=None,
        help="Account address (default: the fixture's account)",
    )
    eval_p.add_argument(
        "--tracker-url",
        type=str,
        default=None,
        help="Fetch pool snapshots from this tracker instead of the fixture",
    )
    eval_p.add_argument(
        "--json", action="store_true", help="Print the full DecisionResult as JSON"
    )

    sim_p = sub.add_parser("simulate", help="Simulate an LP position on a fixture pool")
    sim_p.add_argument("fixture", help="Path to a JSON fixture")
    sim_p.add_argument("--pool", type=str, required=True, help="Pool address (0x…)")
    sim_p.add_argument("--tick-lower", type=int, required=True, help="Lower tick (inclusive)")
    sim_p.add_argument("--tick-upper", type=int, required=True, help="Upper tick (exclusive)")
    sim_p.add_argument("--amount", type=float, required=True, help="Position size in USD")
    sim_p.add_argument(
        "--horizon",
        type=int,
        default=30,
        help="Simulation window in minutes (default: 30)",
    )
    sim_p.add_argument(
        "--remove",
        action="store_true",
        help="Simulate withdrawing the amount instead of adding it",
    )

    sub.add_parser("info", help="Constraint table and allocation profiles")

    return parser


# ── Main ──────────────────────────────────────────────────────────────────


def main(argv=None) -> int:
    parser = create_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        return 0

    setup_logging(args.log_level or EngineSettings.from_env().log_level)

    if args.command == "info":
        cmd_info()
        return 0

    if args.command == "evaluate":
        asyncio.run(
            cmd_evaluate(
                fixture_path=args.fixture,
                account=args.account,
                tracker_url=args.tracker_url,
                as_json=args.json,
            )
        )
        return 0

    if args.command == "simulate":
        cmd_simulate(
            fixture_path=args.fixture,
            pool=args.pool,
            tick_lower=args.tick_lower,
            tick_upper=args.tick_upper,
            amount=args.amount,
            horizon=args.horizon,
            operation="remove" if args.remove else "add",
        )
        return 0

    parser.print_help()
    return 0


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        print("\n❌ Cancelled.")
        sys.exit(130)
