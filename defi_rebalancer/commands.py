"""
DeFi Rebalancer — Command Implementations
=========================================

All CLI command handlers live here, keeping run.py as a thin
argparse dispatcher.  Each public function corresponds to a
subcommand (info, evaluate, simulate).

Commands run offline against a JSON fixture (see
``defi_rebalancer.fixtures``); ``evaluate --tracker-url`` swaps the
fixture's pools for live tracker snapshots.
"""

from __future__ import annotations

import json
import math
from dataclasses import asdict
from typing import Any

from defi_rebalancer.central_config import (
    ALLOCATION_PROFILES,
    CONSTRAINTS_BY_STATUS,
    PROJECT_NAME,
    PROJECT_VERSION,
    SUPPORTED_CHAINS,
    EngineSettings,
)
from defi_rebalancer.decision_engine import DecisionEngine, describe_strategy
from defi_rebalancer.fixtures import load_fixture
from defi_rebalancer.market_data import CombinedMarketData, TrackerClient
from defi_rebalancer.models import DecisionResult, SimulatedPosition
from defi_rebalancer.protocols import PROTOCOL_REGISTRY
from position_simulator import simulate_position


# ── Output helpers ───────────────────────────────────────────────────────


def _jsonable(value: Any) -> Any:
    if isinstance(value, float) and not math.isfinite(value):
        return str(value)
    if isinstance(value, dict):
        return {k: _jsonable(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(v) for v in value]
    return value


def result_to_dict(result: DecisionResult) -> dict:
    """``DecisionResult`` as a JSON-safe dict (infinities become strings)."""
    data = asdict(result)
    data["difference_bps"] = result.difference_bps
    return _jsonable(data)


def _fmt_hours(hours: float) -> str:
    if hours < 0:
        return "n/a"
    if math.isinf(hours):
        return "∞"
    return f"{hours:.2f}h"


def format_decision(result: DecisionResult) -> str:
    verdict = "✅ REBALANCE" if result.should_trigger else "⏸️  HOLD"
    lines = [
        "=" * 60,
        f"  {verdict} — {result.state.value}",
        "=" * 60,
        f"  Position status : {result.position_status.value if result.position_status else 'n/a'}",
        f"  Total assets    : ${result.total_assets_usd:,.2f}",
        f"  Portfolio APY   : {result.portfolio_apy:.2f}%",
        f"  Opportunity APY : {result.opportunity_apy:.2f}%",
        f"  Difference      : {result.difference_bps:+.0f} bps",
        f"  Break-even      : {_fmt_hours(result.break_even_hours)}",
        f"  Net daily gain  : ${result.net_gain_usd:,.2f}",
        f"  Swap cost       : ${result.gas_estimate:,.2f}",
    ]
    if result.failure_reason:
        lines.append(f"  Reason          : {result.failure_reason}")
    if result.selected_strategy is not None:
        lines.append(f"  Strategy        : {result.selected_strategy.name}")
        lines.append(f"                    {describe_strategy(result.selected_strategy)}")
    if result.evaluations:
        lines.append("")
        lines.append("  Evaluated strategies:")
        for record in result.evaluations:
            marker = "→" if record.is_selected else " "
            lines.append(
                f"   {marker} #{record.strategy_index} {record.strategy_name:<24}"
                f" APY {record.strategy_apy:6.2f}%  fee ${record.swap_fee:,.2f}"
                f"  BE {_fmt_hours(record.break_even_hours)}  score {record.score:.4f}"
            )
    lines.append("=" * 60)
    return "\n".join(lines)


def format_simulation(sim: SimulatedPosition) -> str:
    status = "🟢 in range" if sim.in_range else "⚪ out of range"
    return "\n".join(
        [
            "=" * 60,
            "  AMM Position Simulation",
            "=" * 60,
            f"  Pool        : {sim.pool_address or 'unknown'}",
            f"  Range       : [{sim.tick_lower}, {sim.tick_upper})  current tick {sim.current_tick} ({status})",
            f"  Price       : {sim.current_price:.8g}",
            f"  Amount      : ${sim.input_amount_usd:,.2f}",
            f"  Token split : ${sim.token0_amount:,.2f} token0 / ${sim.token1_amount:,.2f} token1",
            f"  TVL         : ${sim.tvl_before:,.2f} → ${sim.tvl_after:,.2f} (pool ${sim.pool_liquidity_usd:,.2f})",
            f"  APY         : {sim.before_apy:.2f}% → {sim.after_apy:.2f}%",
            f"  Daily return: ${sim.daily_return_usd:,.2f}",
            "=" * 60,
        ]
    )


# ── Commands ─────────────────────────────────────────────────────────────


def cmd_info() -> None:
    """Display version, constraint table and allocation profiles."""
    print(f"\n📊 {PROJECT_NAME} v{PROJECT_VERSION}")
    print("=" * 55)
    print("🌐 Chains     : " + ", ".join(f"{net} ({cid})" for cid, net in SUPPORTED_CHAINS.items()))
    print("🔗 Protocols  : " + ", ".join(p["name"] for p in PROTOCOL_REGISTRY.values()))
    print()
    print("⚖️  Constraints by position status:")
    for status, c in CONSTRAINTS_BY_STATUS.items():
        print(
            f"   {status.value:<16} break-even ≤ {c.max_break_even_hours:g}h, "
            f"relative ≥ {c.min_relative_apy_increase:g}x, "
            f"absolute ≥ {c.min_absolute_apy_increase_pp:g}pp"
        )
    print()
    settings = EngineSettings.from_env()
    active = {p.name for p in settings.active_profiles()}
    print("📐 Allocation profiles:")
    for p in ALLOCATION_PROFILES:
        flag = "✅" if p.name in active else "⚪"
        print(
            f"   {flag} {p.name:<13} increment {p.increment_fraction:.0%} (min ${p.min_increment_usd:g}), "
            f"floor {p.min_marginal_apy:g}%, break-even < {p.max_breakeven_hours:g}h"
        )
    print()
    print("🔗 Quick Start:")
    print("   python run.py evaluate fixture.json")
    print("   python run.py simulate fixture.json --pool 0x… --tick-lower -10 --tick-upper 10 --amount 1000")


async def cmd_evaluate(
    fixture_path: str,
    account: str | None = None,
    tracker_url: str | None = None,
    as_json: bool = False,
) -> DecisionResult:
    """Run one decision against a fixture's collaborators."""
    fixture = load_fixture(fixture_path)
    settings = EngineSettings.from_env()

    market_data = fixture.market_data
    if tracker_url:
        market_data = CombinedMarketData(TrackerClient(tracker_url), fixture.market_data)

    engine = DecisionEngine(
        market_data, fixture.cost_oracle, fixture.portfolio_reader, settings=settings
    )
    result = await engine.evaluate(account or fixture.account, fixture.chain_id)

    if as_json:
        print(json.dumps(result_to_dict(result), indent=2))
    else:
        print(format_decision(result))
    return result


def cmd_simulate(
    fixture_path: str,
    pool: str,
    tick_lower: int,
    tick_upper: int,
    amount: float,
    horizon: int = 30,
    operation: str = "add",
) -> SimulatedPosition:
    """Simulate a position on one fixture pool."""
    fixture = load_fixture(fixture_path)
    history = fixture.market_data.pools.get(pool)
    if history is None:
        wanted = pool.lower()
        history = next(
            (h for address, h in fixture.market_data.pools.items() if address.lower() == wanted),
            None,
        )
    if history is None:
        print(f"⚠️  Pool {pool} not in fixture — simulating against an empty pool")

    sim = simulate_position(
        history, tick_lower, tick_upper, amount, operation, horizon, pool_address=pool
    )
    print(format_simulation(sim))
    return sim
