"""
Rebalance Engine Data Model
===========================

Immutable records exchanged between the simulator, the APY curves, the
allocator and the decision engine. Every record is produced fresh for one
evaluation pass and never mutated afterwards.

Units:
  - USD amounts are plain floats (dollars)
  - APY values are percentages (5.0 = 5 %)
  - Ticks are Uniswap V3 tick indices, price(i) = 1.0001^i
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from defi_rebalancer.protocols import Protocol


# ── Enumerations ─────────────────────────────────────────────────────────


class OpportunityKind(str, Enum):
    SUPPLY = "supply"
    LP = "lp"


class PositionStatus(str, Enum):
    """Coarse shape of the current portfolio, selects the constraint profile."""

    LP_IN_RANGE = "LP_IN_RANGE"
    LP_OUT_OF_RANGE = "LP_OUT_OF_RANGE"
    LENDING_ONLY = "LENDING_ONLY"
    NO_POSITION = "NO_POSITION"


class DecisionState(str, Enum):
    FETCHING_DATA = "FETCHING_DATA"
    BUILDING_STRATEGIES = "BUILDING_STRATEGIES"
    PRICING = "PRICING"
    SCORING = "SCORING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


# ── Pool history ─────────────────────────────────────────────────────────


@dataclass(frozen=True)
class TickLiquidity:
    """Liquidity and trailing volume sitting on one initialized tick."""

    tick: int
    token0_amount_usd: float = 0.0
    token1_amount_usd: float = 0.0
    trading_volume_usd: float = 0.0


@dataclass(frozen=True)
class PoolSnapshot:
    """
    One minute-level observation of a concentrated-liquidity pool.

    ``sqrt_price_x96`` is the raw Q64.96 value from slot0 (string or int),
    ``fee_bps`` is the pool fee in hundredths of a bip (3000 = 0.30 %).
    """

    timestamp_ms: int
    current_tick: int
    fee_bps: float
    tick_spacing: int = 1
    sqrt_price_x96: Optional[str] = None
    ticks: Tuple[TickLiquidity, ...] = ()
    pool_address: str = ""
    dex_key: str = ""
    token0: str = ""
    token1: str = ""
    token0_symbol: str = ""
    token1_symbol: str = ""


@dataclass(frozen=True)
class PoolHistory:
    """Latest snapshot plus the trailing window, most-recent-first."""

    pool_address: str
    current: PoolSnapshot
    snapshots: Tuple[PoolSnapshot, ...] = ()

    @property
    def current_tick(self) -> int:
        return self.current.current_tick


# ── Simulator output ─────────────────────────────────────────────────────


@dataclass(frozen=True)
class SimulatedPosition:
    pool_address: str
    input_amount_usd: float
    tick_lower: int
    tick_upper: int
    current_tick: int = 0
    in_range: bool = False
    token0_amount: float = 0.0
    token1_amount: float = 0.0
    before_apy: float = 0.0
    after_apy: float = 0.0
    tvl_before: float = 0.0
    tvl_after: float = 0.0
    daily_return_usd: float = 0.0
    current_price: float = 0.0
    pool_liquidity_usd: float = 0.0  # whole-pool TVL, all ticks
    protocol: str = ""

    @classmethod
    def empty(
        cls, pool_address: str, amount_usd: float, tick_lower: int, tick_upper: int
    ) -> "SimulatedPosition":
        """Zero-valued result for a pool the provider knows nothing about."""
        return cls(
            pool_address=pool_address,
            input_amount_usd=amount_usd,
            tick_lower=tick_lower,
            tick_upper=tick_upper,
        )


# ── Raw market inputs ────────────────────────────────────────────────────


@dataclass(frozen=True)
class SupplyOpportunity:
    """A lending market quote for supplying ``asset`` at a given size."""

    asset: str
    protocol: str
    supply_apy: Optional[float]
    vault_address: Optional[str] = None
    chain_id: str = ""


# ── Opportunities ────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Opportunity:
    """
    One investable target for a single evaluation pass.

    ``apy_curve`` is a ``MarginalApyCurve`` (sync ``estimate`` + async
    ``refine``); callers use ``apy_at`` for the cheap synchronous value.
    """

    id: str
    kind: OpportunityKind
    protocol: Protocol
    target_tokens: Tuple[str, ...]
    max_amount: float
    chain_id: str
    apy_curve: Any
    # supply
    asset: Optional[str] = None
    vault_address: Optional[str] = None
    # lp
    pool_address: Optional[str] = None
    token0_address: Optional[str] = None
    token1_address: Optional[str] = None
    tick_lower: Optional[int] = None
    tick_upper: Optional[int] = None
    current_tick: Optional[int] = None

    def apy_at(self, amount: float) -> float:
        return self.apy_curve.estimate(amount)

    async def apy_at_async(self, amount: float) -> float:
        return await self.apy_curve.refine(amount)


# ── Allocation ───────────────────────────────────────────────────────────


@dataclass(frozen=True)
class AllocationProfile:
    """
    Parameters of one greedy allocator run.

    ``increment_fraction`` × capital (bounded below by ``min_increment_usd``)
    gives the concrete ``increment_size`` for a given budget.
    """

    name: str
    increment_fraction: float
    min_increment_usd: float
    min_marginal_apy: float
    max_breakeven_hours: float
    holding_period_days: float
    enabled: bool = False

    def increment_size(self, total_capital: float) -> float:
        return max(total_capital * self.increment_fraction, self.min_increment_usd)


@dataclass(frozen=True)
class AllocationStep:
    opportunity_id: str
    amount: float
    marginal_apy: float
    total_allocated: float
    remaining_capital: float
    swap_cost: float = 0.0


@dataclass(frozen=True)
class StrategyPosition:
    type: OpportunityKind
    protocol: Protocol
    amount: float
    allocation_percent: float
    apy: float = 0.0
    asset: Optional[str] = None
    vault_address: Optional[str] = None
    pool_address: Optional[str] = None
    token0_address: Optional[str] = None
    token1_address: Optional[str] = None
    tick_lower: Optional[int] = None
    tick_upper: Optional[int] = None


@dataclass(frozen=True)
class Strategy:
    name: str
    positions: Tuple[StrategyPosition, ...]
    total_invested: float
    total_swap_cost: float
    weighted_apy: float
    allocation_history: Tuple[AllocationStep, ...] = ()

    @property
    def is_empty(self) -> bool:
        return not self.positions


# ── Cost oracle exchange ────────────────────────────────────────────────


@dataclass(frozen=True)
class LendingTarget:
    protocol: Protocol
    token: Optional[str]
    vault: Optional[str]
    amount: float


@dataclass(frozen=True)
class LiquidityTarget:
    protocol: Protocol
    pool_address: str
    token0_address: str
    token1_address: str
    tick_lower: int
    tick_upper: int
    amount0_usd: float
    amount1_usd: float


@dataclass(frozen=True)
class TargetPositions:
    lending: Tuple[LendingTarget, ...] = ()
    liquidity: Tuple[LiquidityTarget, ...] = ()


@dataclass(frozen=True)
class StrategyCostQuote:
    fee: float
    route_details: Any = None


# ── Current holdings ────────────────────────────────────────────────────


@dataclass(frozen=True)
class IdleAsset:
    symbol: str
    token_address: str
    balance: float
    balance_usd: float = 0.0


@dataclass(frozen=True)
class LendingHolding:
    protocol: str
    symbol: str
    token_address: str
    supply_amount: float
    amount_usd: float = 0.0
    apy: float = 0.0
    vault_address: Optional[str] = None


@dataclass(frozen=True)
class LpHolding:
    protocol: str
    pool_address: str
    tick_lower: Optional[int]
    tick_upper: Optional[int]
    token_id: Optional[str] = None
    amount_usd: float = 0.0
    apy: float = 0.0
    token0_symbol: str = ""
    token1_symbol: str = ""
    token0_amount: float = 0.0
    token1_amount: float = 0.0


@dataclass(frozen=True)
class PortfolioHoldings:
    idle_assets: Tuple[IdleAsset, ...] = ()
    lending_positions: Tuple[LendingHolding, ...] = ()
    lp_positions: Tuple[LpHolding, ...] = ()
    total_assets_usd: float = 0.0
    portfolio_apy: float = 0.0

    def current_token_holdings(self) -> Dict[str, float]:
        """Token symbol → amount held across idle, lending and LP positions."""
        holdings: Dict[str, float] = {}

        def _add(symbol: str, amount: float) -> None:
            if symbol and amount > 0:
                holdings[symbol] = holdings.get(symbol, 0.0) + amount

        for asset in self.idle_assets:
            _add(asset.symbol, asset.balance)
        for supply in self.lending_positions:
            _add(supply.symbol, supply.supply_amount)
        for lp in self.lp_positions:
            _add(lp.token0_symbol, lp.token0_amount)
            _add(lp.token1_symbol, lp.token1_amount)
        return holdings


# ── Decision ─────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class Constraints:
    max_break_even_hours: float
    min_relative_apy_increase: float
    min_absolute_apy_increase_pp: float


@dataclass(frozen=True)
class ConstraintFlags:
    meets_break_even: bool
    meets_relative_apy: bool
    meets_absolute_apy: bool

    @property
    def all_met(self) -> bool:
        return self.meets_break_even and self.meets_relative_apy and self.meets_absolute_apy


@dataclass(frozen=True)
class StrategyEvaluationRecord:
    strategy_index: int
    strategy_name: str
    strategy_apy: float
    portfolio_apy: float
    swap_fee: float
    apy_improvement_pp: float
    annual_gain_usd: float
    daily_gain_usd: float
    daily_cost_usd: float
    net_daily_gain_usd: float
    break_even_hours: float
    relative_increase: float
    score: float
    constraint_flags: ConstraintFlags
    is_selected: bool = False


@dataclass(frozen=True)
class DecisionResult:
    should_trigger: bool
    portfolio_apy: float
    opportunity_apy: float
    break_even_hours: float
    net_gain_usd: float
    state: DecisionState
    selected_strategy: Optional[Strategy] = None
    evaluations: Tuple[StrategyEvaluationRecord, ...] = ()
    failure_reason: Optional[str] = None
    position_status: Optional[PositionStatus] = None
    total_assets_usd: float = 0.0
    gas_estimate: float = 0.0

    @property
    def difference_bps(self) -> float:
        return (self.opportunity_apy - self.portfolio_apy) * 100


# ── Per-evaluation context ──────────────────────────────────────────────


@dataclass(frozen=True)
class EvaluationContext:
    """
    Everything fetched or derived for one ``evaluate`` call.

    Threaded explicitly through converter, allocator and pricing so that
    concurrent evaluations never share state.
    """

    account: str
    chain_id: str
    network: str
    total_capital: float
    pools: Dict[str, PoolHistory] = field(default_factory=dict)
    lp_simulations: Tuple[SimulatedPosition, ...] = ()
    supply_opportunities: Tuple[SupplyOpportunity, ...] = ()
    lending_protocols: Tuple[str, ...] = ()
    token_holdings: Dict[str, float] = field(default_factory=dict)

    def pool(self, pool_address: str) -> Optional[PoolHistory]:
        """Case-insensitive pool lookup."""
        if pool_address in self.pools:
            return self.pools[pool_address]
        wanted = pool_address.lower()
        for address, history in self.pools.items():
            if address.lower() == wanted:
                return history
        return None

    def simulation(self, pool_address: str) -> Optional[SimulatedPosition]:
        wanted = pool_address.lower()
        for sim in self.lp_simulations:
            if sim.pool_address.lower() == wanted:
                return sim
        return None

    def current_ticks(self) -> Dict[str, int]:
        return {address: h.current_tick for address, h in self.pools.items()}

    def to_log_dict(self) -> Dict[str, Any]:
        return {
            "account": self.account,
            "chain_id": self.chain_id,
            "network": self.network,
            "total_capital": self.total_capital,
            "pools": len(self.pools),
            "lp_simulations": len(self.lp_simulations),
            "supply_opportunities": len(self.supply_opportunities),
        }
