#!/usr/bin/env python3
"""
AMM Position Simulator
======================

Simulates adding (or removing) a concentrated-liquidity position against a
pool's recent tick-level history and reports what the position would earn.

No fake numbers — every output is derived from the tracker's per-tick
liquidity and per-tick traded volume with the formulas below.

FORMULA SOURCES (every formula is traceable):
──────────────────────────────────────────────
1. Uniswap V3 Core Whitepaper
   https://uniswap.org/whitepaper-v3.pdf
   - §6.1  Price ↔ Tick: p(i) = 1.0001^i
   - §6.2  sqrtPriceX96 = √P · 2^96  →  P = sqrtPriceX96² / 2^192

2. Uniswap V3 Docs — Fee Distribution
   https://docs.uniswap.org/concepts/protocol/fees
   "Fees are distributed pro-rata to in-range liquidity at the time of
    the swap."  →  fees(range) = Σ volume(range) × fee_rate

3. Fee yield annualization (minute-level snapshots)
   APY = fees / TVL × (525 600 / horizon_minutes) × 100

4. Token split inside a range
   v0 = (√P − √Pa) / √P
   v1 = (√Pb − √P) · √P
   token1 share = v1 / (v0 + v1)
"""

import math
from typing import Iterable, List, Optional, Sequence, Tuple

from defi_rebalancer.central_config import EngineDefaults
from defi_rebalancer.models import PoolHistory, PoolSnapshot, SimulatedPosition, TickLiquidity

# ── Named Constants ──────────────────────────────────────────────────────

_DEFAULTS = EngineDefaults()
DEFAULT_TIME_HORIZON_MINUTES = _DEFAULTS.LP_SIMULATION_TIME_HORIZON_MINUTES
MINUTES_PER_YEAR = _DEFAULTS.MINUTES_PER_YEAR
FEE_DENOMINATOR = 1_000_000  # fee field is in hundredths of a bip (3000 = 0.30 %)
DEFAULT_FEE_BPS = 3000

Q96 = 2**96  # sqrtPriceX96 denominator (FixedPoint96.RESOLUTION)
Q192 = Q96 * Q96


# ── Uniswap V3 Core Math ────────────────────────────────────────────────


class UniswapV3Math:
    """
    Pure functions implementing the concentrated-liquidity geometry used by
    the simulator. Every formula references a section of the Whitepaper.
    """

    @staticmethod
    def tick_to_price(tick: int) -> float:
        """
        Convert a tick index to a price.
        Formula (Whitepaper §6.1): p(i) = 1.0001^i

        Ticks are clamped to [-887272, +887272] to keep the power finite.
        """
        tick = max(_DEFAULTS.MIN_TICK, min(_DEFAULTS.MAX_TICK, tick))
        return 1.0001**tick

    @staticmethod
    def price_to_tick(price: float) -> int:
        """
        Convert a price to the nearest lower tick.
        Formula (Whitepaper §6.1): i = floor(log(p) / log(1.0001))
        """
        if price <= 0:
            raise ValueError("Price must be positive")
        raw_tick = math.log(price) / math.log(1.0001)
        clamped = max(_DEFAULTS.MIN_TICK, min(_DEFAULTS.MAX_TICK, raw_tick))
        return math.floor(clamped)

    @staticmethod
    def sqrt_price_x96_to_price(sqrt_price_x96) -> Optional[float]:
        """
        Decode a packed Q64.96 square-root price.

        Formula (Whitepaper §6.2): P = sqrtPriceX96² / 2^192

        Returns None when the value is missing, malformed or decodes to a
        non-positive / non-finite price.
        """
        if sqrt_price_x96 is None or sqrt_price_x96 == "":
            return None
        try:
            raw = int(sqrt_price_x96)
            price = (raw * raw) / Q192
        except (TypeError, ValueError, OverflowError):
            return None
        if not math.isfinite(price) or price <= 0:
            return None
        return price

    @classmethod
    def snapshot_price(cls, snapshot: PoolSnapshot) -> float:
        """Current price of a snapshot: sqrtPriceX96 first, 1.0001^tick fallback."""
        price = cls.sqrt_price_x96_to_price(snapshot.sqrt_price_x96)
        if price is None:
            price = cls.tick_to_price(snapshot.current_tick)
        return price

    @classmethod
    def split_amount_usd(
        cls,
        amount_usd: float,
        current_price: float,
        current_tick: int,
        tick_lower: int,
        tick_upper: int,
    ) -> Tuple[float, float]:
        """
        Split a USD notional into (token0_usd, token1_usd) for a range.

        In range:
            v0 = (√P − √Pa) / √P
            v1 = (√Pb − √P) · √P
            token1 = amount × v1 / (v0 + v1),  token0 = amount − token1
            (50/50 when both contributions are zero)

        Out of range:
            price below range → everything in token0
            price above range → everything in token1
        """
        if tick_lower <= current_tick < tick_upper:
            sqrt_p = math.sqrt(current_price)
            sqrt_pa = math.sqrt(cls.tick_to_price(tick_lower))
            sqrt_pb = math.sqrt(cls.tick_to_price(tick_upper))

            v0 = (sqrt_p - sqrt_pa) / sqrt_p if sqrt_p > 0 else 0.0
            v1 = (sqrt_pb - sqrt_p) * sqrt_p
            total = v0 + v1
            if total > 0:
                token1_usd = amount_usd * (v1 / total)
                return amount_usd - token1_usd, token1_usd
            return amount_usd / 2, amount_usd / 2

        if current_tick < tick_lower:
            return amount_usd, 0.0
        return 0.0, amount_usd


# ── Fee Yield ────────────────────────────────────────────────────────────


def ticks_in_range(
    ticks: Iterable[TickLiquidity], tick_lower: int, tick_upper: int
) -> List[TickLiquidity]:
    """Ticks with index in the half-open range [tick_lower, tick_upper)."""
    return [t for t in ticks if tick_lower <= t.tick < tick_upper]


def range_tvl_usd(snapshot: PoolSnapshot, tick_lower: int, tick_upper: int) -> float:
    """TVL in range = Σ (token0_usd + token1_usd) over in-range ticks."""
    return sum(
        t.token0_amount_usd + t.token1_amount_usd
        for t in ticks_in_range(snapshot.ticks, tick_lower, tick_upper)
    )


def pool_tvl_usd(snapshot: PoolSnapshot) -> float:
    """Whole-pool TVL = Σ (token0_usd + token1_usd) over every tick."""
    return sum(t.token0_amount_usd + t.token1_amount_usd for t in snapshot.ticks)


def range_volume_usd(
    snapshots: Sequence[PoolSnapshot], tick_lower: int, tick_upper: int
) -> float:
    """Traded volume in range, summed across every snapshot of the window."""
    return sum(
        t.trading_volume_usd
        for snap in snapshots
        for t in ticks_in_range(snap.ticks, tick_lower, tick_upper)
    )


def annualized_fee_apy(fees_usd: float, tvl_usd: float, horizon_minutes: int) -> float:
    """
    Annualize fees earned over a window into a percentage APY.

    Formula: APY = fees / TVL × (525 600 / horizon_minutes) × 100
    Returns 0 when TVL is not positive.
    """
    if tvl_usd <= 0 or horizon_minutes <= 0:
        return 0.0
    return fees_usd / tvl_usd * (MINUTES_PER_YEAR / horizon_minutes) * 100


def history_window(history: PoolHistory, horizon_minutes: int) -> List[PoolSnapshot]:
    """The last ``horizon_minutes`` snapshots, most-recent-first."""
    ordered = sorted(history.snapshots, key=lambda s: s.timestamp_ms, reverse=True)
    return ordered[: max(horizon_minutes, 0)]


# ── Simulation ───────────────────────────────────────────────────────────


def simulate_position(
    history: Optional[PoolHistory],
    tick_lower: Optional[int],
    tick_upper: Optional[int],
    amount_usd: float,
    operation: str = "add",
    time_horizon_minutes: int = DEFAULT_TIME_HORIZON_MINUTES,
    pool_address: str = "",
) -> SimulatedPosition:
    """
    Simulate a position of ``amount_usd`` on ``[tick_lower, tick_upper)``.

    Current state (tick, price, TVL) comes from the latest snapshot; fee
    rate from the most recent snapshot of the window; volume from the whole
    window. ``after_apy`` is only non-zero when the current tick is inside
    the range — a range that excludes the price earns no fees.

    Missing pool data yields a zero-valued position, never an error.
    """
    if operation not in ("add", "remove"):
        raise ValueError(f"Unknown pool operation: {operation!r}")

    lower = _DEFAULTS.MIN_TICK if tick_lower is None else int(tick_lower)
    upper = _DEFAULTS.MAX_TICK if tick_upper is None else int(tick_upper)
    address = history.pool_address if history is not None else pool_address

    if history is None or history.current is None:
        return SimulatedPosition.empty(address, amount_usd, lower, upper)

    latest = history.current
    window = history_window(history, time_horizon_minutes)
    fee_source = window[0] if window else latest
    fee_rate = (fee_source.fee_bps or DEFAULT_FEE_BPS) / FEE_DENOMINATOR

    current_tick = latest.current_tick
    in_range = lower <= current_tick < upper

    tvl_before = range_tvl_usd(latest, lower, upper)
    if operation == "add":
        tvl_after = tvl_before + amount_usd
    else:
        tvl_after = max(0.0, tvl_before - amount_usd)

    fees = range_volume_usd(window, lower, upper) * fee_rate
    before_apy = annualized_fee_apy(fees, tvl_before, time_horizon_minutes)
    after_apy = (
        annualized_fee_apy(fees, tvl_after, time_horizon_minutes) if in_range else 0.0
    )

    current_price = UniswapV3Math.snapshot_price(latest)
    token0_usd, token1_usd = UniswapV3Math.split_amount_usd(
        amount_usd, current_price, current_tick, lower, upper
    )

    return SimulatedPosition(
        pool_address=latest.pool_address or address,
        input_amount_usd=amount_usd,
        tick_lower=lower,
        tick_upper=upper,
        current_tick=current_tick,
        in_range=in_range,
        token0_amount=token0_usd,
        token1_amount=token1_usd,
        before_apy=before_apy,
        after_apy=after_apy,
        tvl_before=tvl_before,
        tvl_after=tvl_after,
        daily_return_usd=amount_usd * after_apy / 100 / 365,
        current_price=current_price,
        pool_liquidity_usd=pool_tvl_usd(latest),
        protocol=latest.dex_key,
    )


def single_tick_range(current_tick: int) -> Tuple[int, int]:
    """The one-tick candidate range [trunc(tick), trunc(tick) + 1)."""
    lower = math.trunc(current_tick)
    return lower, lower + 1


def simulate_candidate_ranges(
    pools: Iterable[PoolHistory],
    amount_usd: float,
    time_horizon_minutes: int = DEFAULT_TIME_HORIZON_MINUTES,
) -> List[SimulatedPosition]:
    """Simulate an ``add`` of ``amount_usd`` on each pool's current tick."""
    simulations = []
    for history in pools:
        lower, upper = single_tick_range(history.current_tick)
        simulations.append(
            simulate_position(
                history, lower, upper, amount_usd, "add", time_horizon_minutes
            )
        )
    return simulations


# ── CLI quick test ───────────────────────────────────────────────────────

if __name__ == "__main__":
    import sys as _sys

    from defi_rebalancer.fixtures import load_fixture

    if len(_sys.argv) < 3:
        print("Usage: python position_simulator.py <fixture.json> <pool_address> [amount_usd]")
        _sys.exit(1)

    _fixture = load_fixture(_sys.argv[1])
    _history = _fixture.market_data.pools.get(_sys.argv[2])
    _amount = float(_sys.argv[3]) if len(_sys.argv) > 3 else 10_000.0
    _lower, _upper = single_tick_range(_history.current_tick) if _history else (0, 1)
    _sim = simulate_position(_history, _lower, _upper, _amount, pool_address=_sys.argv[2])

    print("=" * 60)
    print("  AMM Position Simulator")
    print("=" * 60)
    for _k, _v in _sim.__dict__.items():
        print(f"  {_k:20s} : {_v}")
    print("=" * 60)
