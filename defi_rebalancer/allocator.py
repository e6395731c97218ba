"""
Marginal Capital Allocator
==========================

Greedy marginal allocation of a capital budget across opportunities.

Each iteration, for every opportunity not yet at its cap:
    increment = min(increment_size, remaining, max_amount − allocated)
    marginal  = apy(allocated + increment)
The opportunity with the highest marginal APY that clears the profile's
floor receives one increment. Ties go to the earlier opportunity.

Stops when capital is exhausted, nothing clears the floor, every
opportunity is capped, or after ``MAX_ALLOCATION_ITERATIONS`` rounds.

weighted APY = Σ apy(amount_i) · amount_i / Σ amount_i
(each position valued at its final size, not at its last increment)

Optional cost model (per increment, swap + gas):
    net APY    = gross − cost / increment × 365 / holding_days × 100
    break-even = cost / (increment × gross / 100 / 8760)   hours
An increment is eligible only when net ≥ floor and break-even < the
profile's ``max_breakeven_hours``.

The engine prices increments with ``HoldingsSwapCost``. Tokens the account
already holds fund increments for free; a shortfall pays DEX fee + slippage
plus gas the first time its token is swapped into.
"""

import logging
import math
from dataclasses import dataclass
from typing import Callable, Dict, List, Mapping, Optional, Sequence, Set, Tuple

from defi_rebalancer.central_config import EngineDefaults
from defi_rebalancer.log_utils import jlog
from defi_rebalancer.models import (
    AllocationProfile,
    AllocationStep,
    EvaluationContext,
    Opportunity,
    OpportunityKind,
    Strategy,
    StrategyPosition,
)
from defi_rebalancer.tokens import lookup_token_symbol, normalize_symbol

logger = logging.getLogger(__name__)

_EPSILON = 1e-9

# (opportunity, increment, has_existing_allocation) → USD cost of that increment
SwapCostFn = Callable[[Opportunity, float, bool], float]

FALLBACK_GAS_USD = 5.0
FALLBACK_SWAP_FEE_RATE = 0.004

GAS_PER_SWAP_USD = 0.01
DEX_FEE_RATE = 0.0001
MAX_SLIPPAGE_RATE = 0.002
SLIPPAGE_SCALE_USD = 100_000


def estimate_swap_cost_fallback(
    opportunity: Opportunity, amount: float, has_existing_position: bool
) -> float:
    """Flat gas for the first entry into an opportunity plus a 0.4 % swap fee."""
    gas = 0.0 if has_existing_position else FALLBACK_GAS_USD
    return gas + amount * FALLBACK_SWAP_FEE_RATE


def static_swap_cost(amount_usd: float) -> float:
    """DEX fee plus size-scaled slippage (capped at 0.2 %) for one swap."""
    if amount_usd <= 0:
        return 0.0
    slippage_rate = min(MAX_SLIPPAGE_RATE, amount_usd / SLIPPAGE_SCALE_USD)
    return amount_usd * (DEX_FEE_RATE + slippage_rate)


def token_needs(
    ctx: EvaluationContext, opportunity: Opportunity, amount: float
) -> Optional[List[Tuple[str, float]]]:
    """
    Tokens (symbol, USD) an increment of ``amount`` into ``opportunity``
    must be funded with; ``None`` when that cannot be worked out.

    LP increments split like the pool's candidate simulation.
    """
    if opportunity.kind is OpportunityKind.SUPPLY:
        if not opportunity.asset:
            return None
        return [(normalize_symbol(opportunity.asset), amount)]

    sim = ctx.simulation(opportunity.pool_address or "")
    if sim is None:
        return None
    total = sim.token0_amount + sim.token1_amount
    if total <= 0:
        return None

    history = ctx.pool(opportunity.pool_address or "")
    snapshot = history.current if history is not None else None
    ratio = amount / total
    needs = []
    for address, pool_symbol, held in (
        (opportunity.token0_address, snapshot.token0_symbol if snapshot else "", sim.token0_amount),
        (opportunity.token1_address, snapshot.token1_symbol if snapshot else "", sim.token1_amount),
    ):
        symbol = lookup_token_symbol(address, ctx.chain_id) or normalize_symbol(pool_symbol) or address
        if not symbol:
            return None
        needs.append((symbol, held * ratio))
    return needs


class HoldingsSwapCost:
    """
    Swap cost that funds increments from tokens already held first.

    Per needed token: deficit = need − (held − used so far). A deficit
    pays ``static_swap_cost(deficit)``, plus ``GAS_PER_SWAP_USD`` the
    first time that token is swapped into during the run. Opportunities
    whose token needs are unknown are priced with
    ``estimate_swap_cost_fallback``.

    Stateful: build one per allocation run. The allocator calls
    ``commit`` for every increment it actually allocates.
    """

    def __init__(
        self,
        ctx: EvaluationContext,
        holdings: Optional[Mapping[str, float]] = None,
        gas_per_swap: float = GAS_PER_SWAP_USD,
    ):
        self.ctx = ctx
        source = ctx.token_holdings if holdings is None else holdings
        self.holdings: Dict[str, float] = {}
        for symbol, held in source.items():
            key = normalize_symbol(symbol)
            self.holdings[key] = self.holdings.get(key, 0.0) + held
        self.gas_per_swap = gas_per_swap
        self.used: Dict[str, float] = {}
        self.swapped: Set[str] = set()

    def available(self, symbol: str) -> float:
        return self.holdings.get(symbol, 0.0) - self.used.get(symbol, 0.0)

    def __call__(self, opportunity: Opportunity, amount: float, has_existing_position: bool) -> float:
        needs = token_needs(self.ctx, opportunity, amount)
        if needs is None:
            return estimate_swap_cost_fallback(opportunity, amount, has_existing_position)

        cost = 0.0
        for symbol, need in needs:
            deficit = need - self.available(symbol)
            if deficit > 0:
                if symbol not in self.swapped:
                    cost += self.gas_per_swap
                cost += static_swap_cost(deficit)
        return cost

    def commit(self, opportunity: Opportunity, amount: float) -> None:
        for symbol, need in token_needs(self.ctx, opportunity, amount) or ():
            if need > self.available(symbol):
                self.swapped.add(symbol)
            self.used[symbol] = self.used.get(symbol, 0.0) + need


@dataclass(frozen=True)
class MarginalScore:
    opportunity: Opportunity
    amount: float
    gross_apy: float
    net_apy: float
    swap_cost: float
    breakeven_hours: float


def strategy_name(profile: AllocationProfile) -> str:
    return f"marginal_{profile.name.lower()}"


def _score(
    opportunity: Opportunity,
    allocated: float,
    increment: float,
    profile: AllocationProfile,
    swap_cost: Optional[SwapCostFn],
    hours_per_year: int,
) -> MarginalScore:
    gross = opportunity.apy_at(allocated + increment)
    if swap_cost is None:
        return MarginalScore(opportunity, increment, gross, gross, 0.0, 0.0)

    cost = swap_cost(opportunity, increment, allocated > 0)
    annualized_cost = cost / increment * (365 / profile.holding_period_days)
    net = gross - annualized_cost * 100

    hourly_gain = increment * gross / 100 / hours_per_year
    if net > 0 and hourly_gain > 0:
        breakeven = cost / hourly_gain
    else:
        breakeven = math.inf
    return MarginalScore(opportunity, increment, gross, net, cost, breakeven)


def _eligible(score: MarginalScore, profile: AllocationProfile, with_costs: bool) -> bool:
    if score.net_apy < profile.min_marginal_apy:
        return False
    if with_costs and not score.breakeven_hours < profile.max_breakeven_hours:
        return False
    return True


def allocate(
    opportunities: Sequence[Opportunity],
    total_capital: float,
    profile: AllocationProfile,
    swap_cost: Optional[SwapCostFn] = None,
    defaults: Optional[EngineDefaults] = None,
) -> Strategy:
    """
    Run one greedy allocation and return the resulting ``Strategy``.

    An empty strategy (no positions, zero totals) comes back when nothing
    could be allocated; callers discard it.
    """
    defaults = defaults or EngineDefaults()
    increment_size = profile.increment_size(total_capital)
    allocations: Dict[str, float] = {opp.id: 0.0 for opp in opportunities}
    remaining = total_capital
    history: List[AllocationStep] = []

    iteration = 0
    while remaining > _EPSILON and iteration < defaults.MAX_ALLOCATION_ITERATIONS:
        iteration += 1

        best: Optional[MarginalScore] = None
        for opp in opportunities:
            allocated = allocations[opp.id]
            increment = min(increment_size, remaining, opp.max_amount - allocated)
            if increment <= _EPSILON:
                continue
            score = _score(opp, allocated, increment, profile, swap_cost, defaults.HOURS_PER_YEAR)
            if not _eligible(score, profile, swap_cost is not None):
                continue
            if best is None or score.net_apy > best.net_apy:
                best = score

        if best is None:
            logger.debug("Stopping %s allocation at iteration %d: no eligible opportunity", profile.name, iteration)
            break

        commit = getattr(swap_cost, "commit", None)
        if commit is not None:
            commit(best.opportunity, best.amount)
        opp_id = best.opportunity.id
        allocations[opp_id] += best.amount
        remaining -= best.amount
        step = AllocationStep(
            opportunity_id=opp_id,
            amount=best.amount,
            marginal_apy=best.net_apy,
            total_allocated=allocations[opp_id],
            remaining_capital=remaining,
            swap_cost=best.swap_cost,
        )
        history.append(step)
        jlog(
            logger,
            "allocation_step",
            level=logging.DEBUG,
            profile=profile.name,
            iteration=iteration,
            opportunity=opp_id,
            amount=best.amount,
            gross_apy=best.gross_apy,
            net_apy=best.net_apy,
            swap_cost=best.swap_cost,
            breakeven_hours=best.breakeven_hours,
            remaining=remaining,
        )

    return build_strategy(opportunities, allocations, history, profile)


async def refine_curves(
    opportunities: Sequence[Opportunity],
    total_capital: float,
    profile: AllocationProfile,
) -> None:
    """
    Refine every curve once, at the size of its first increment.

    Calls run one after another, so upstream quote endpoints see a
    throttled sequence rather than a burst.
    """
    increment_size = profile.increment_size(total_capital)
    for opp in opportunities:
        first = min(increment_size, total_capital, opp.max_amount)
        if first > 0:
            await opp.apy_at_async(first)


async def allocate_refined(
    opportunities: Sequence[Opportunity],
    total_capital: float,
    profile: AllocationProfile,
    swap_cost: Optional[SwapCostFn] = None,
    defaults: Optional[EngineDefaults] = None,
) -> Strategy:
    """``allocate`` after one live refinement per opportunity curve."""
    await refine_curves(opportunities, total_capital, profile)
    return allocate(opportunities, total_capital, profile, swap_cost, defaults)


def build_strategy(
    opportunities: Sequence[Opportunity],
    allocations: Dict[str, float],
    history: Sequence[AllocationStep],
    profile: AllocationProfile,
) -> Strategy:
    total_invested = sum(allocations.values())
    name = strategy_name(profile)
    if total_invested <= 0:
        return Strategy(name=name, positions=(), total_invested=0.0, total_swap_cost=0.0, weighted_apy=0.0)

    positions = []
    weighted = 0.0
    for opp in opportunities:
        amount = allocations.get(opp.id, 0.0)
        if amount <= 0:
            continue
        apy = opp.apy_at(amount)
        weighted += apy * amount
        positions.append(_to_position(opp, amount, amount / total_invested * 100, apy))

    total_swap_cost = sum(step.swap_cost for step in history)
    strategy = Strategy(
        name=name,
        positions=tuple(positions),
        total_invested=total_invested,
        total_swap_cost=total_swap_cost,
        weighted_apy=weighted / total_invested,
        allocation_history=tuple(history),
    )
    logger.info(
        "Allocation %s complete: %d positions, invested=$%.2f, weighted APY=%.2f%%, swap cost=$%.2f",
        profile.name,
        len(positions),
        total_invested,
        strategy.weighted_apy,
        total_swap_cost,
    )
    return strategy


def _to_position(opp: Opportunity, amount: float, percent: float, apy: float) -> StrategyPosition:
    if opp.kind is OpportunityKind.SUPPLY:
        return StrategyPosition(
            type=opp.kind,
            protocol=opp.protocol,
            amount=amount,
            allocation_percent=percent,
            apy=apy,
            asset=opp.asset,
            vault_address=opp.vault_address,
        )
    return StrategyPosition(
        type=opp.kind,
        protocol=opp.protocol,
        amount=amount,
        allocation_percent=percent,
        apy=apy,
        pool_address=opp.pool_address,
        token0_address=opp.token0_address,
        token1_address=opp.token1_address,
        tick_lower=opp.tick_lower,
        tick_upper=opp.tick_upper,
    )
