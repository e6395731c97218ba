"""
Opportunity Converter
=====================

Turns raw market data of one evaluation pass (lending quotes and LP
simulations) into the unified ``Opportunity`` list the allocator consumes,
attaching a marginal APY curve to each entry.

Drop rules:
  - supply quote whose token cannot be resolved on the chain → dropped
  - LP simulation without pool address, pool metadata or token addresses → dropped
  - LP pool whose dex key is not a known LP protocol → ContractViolationError
"""

import logging
from typing import Awaitable, Callable, Dict, List, Optional

from defi_rebalancer.apy_curve import LpApyCurve, SupplyApyCurve
from defi_rebalancer.central_config import ApyCurveParams, EngineDefaults
from defi_rebalancer.models import (
    EvaluationContext,
    Opportunity,
    OpportunityKind,
    PoolHistory,
    SimulatedPosition,
    SupplyOpportunity,
)
from defi_rebalancer.protocols import normalize_lending_protocol, normalize_lp_protocol
from defi_rebalancer.tokens import lookup_token_address
from position_simulator import simulate_position, single_tick_range

logger = logging.getLogger(__name__)

# (raw supply quote, amount) → fresh supply APY for that asset, or None
SupplyQuoteFn = Callable[[SupplyOpportunity, float], Awaitable[Optional[float]]]

# stale pool history → freshly fetched history of the same pool, or None
PoolFetchFn = Callable[[PoolHistory], Awaitable[Optional[PoolHistory]]]


def lp_base_apy(simulation: Optional[SimulatedPosition]) -> float:
    """APY an LP simulation promises at its simulated size."""
    if simulation is None:
        return 0.0
    return simulation.after_apy


def _lp_quote(history: PoolHistory, pool_fetch: Optional[PoolFetchFn]):
    """Fresh pool snapshot from the provider, simulated over its current tick."""
    if pool_fetch is None:
        return None

    async def quote(amount: float) -> Optional[float]:
        fresh = await pool_fetch(history)
        if fresh is None:
            return None
        tick_lower, tick_upper = single_tick_range(fresh.current_tick)
        sim = simulate_position(fresh, tick_lower, tick_upper, amount, "add")
        return lp_base_apy(sim)

    return quote


def _supply_quote(raw: SupplyOpportunity, supply_quote: Optional[SupplyQuoteFn]):
    if supply_quote is None:
        return None

    async def quote(amount: float) -> Optional[float]:
        return await supply_quote(raw, amount)

    return quote


def convert_supply(
    ctx: EvaluationContext,
    raw: SupplyOpportunity,
    supply_quote: Optional[SupplyQuoteFn] = None,
    params: Optional[ApyCurveParams] = None,
    defaults: Optional[EngineDefaults] = None,
) -> Optional[Opportunity]:
    defaults = defaults or EngineDefaults()
    asset = raw.asset or ""
    token_address = lookup_token_address(asset, ctx.chain_id)
    if not token_address:
        logger.info("Dropping supply opportunity %s/%s: unresolvable token", raw.protocol, asset)
        return None

    protocol = normalize_lending_protocol(raw.protocol)
    opportunity_id = f"supply-{protocol.value}-{asset}"
    curve = SupplyApyCurve(
        base_amount=ctx.total_capital,
        base_apy=raw.supply_apy or 0.0,
        quote=_supply_quote(raw, supply_quote),
        params=params,
        label=opportunity_id,
    )
    return Opportunity(
        id=opportunity_id,
        kind=OpportunityKind.SUPPLY,
        protocol=protocol,
        target_tokens=(token_address,),
        max_amount=ctx.total_capital * defaults.MAX_AMOUNT_MULTIPLIER,
        chain_id=ctx.chain_id,
        apy_curve=curve,
        asset=asset,
        vault_address=raw.vault_address,
    )


def convert_lp(
    ctx: EvaluationContext,
    sim: SimulatedPosition,
    pool_fetch: Optional[PoolFetchFn] = None,
    params: Optional[ApyCurveParams] = None,
    defaults: Optional[EngineDefaults] = None,
) -> Optional[Opportunity]:
    defaults = defaults or EngineDefaults()
    if not sim.pool_address:
        return None

    history = ctx.pool(sim.pool_address)
    if history is None:
        logger.info("Dropping LP opportunity %s: no pool metadata", sim.pool_address)
        return None

    snapshot = history.current
    token0, token1 = snapshot.token0, snapshot.token1
    if not token0 or not token1:
        logger.info("Dropping LP opportunity %s: missing token addresses", sim.pool_address)
        return None

    protocol = normalize_lp_protocol(snapshot.dex_key or sim.protocol)
    opportunity_id = f"lp-{sim.pool_address}"
    curve = LpApyCurve(
        base_amount=ctx.total_capital,
        base_apy=lp_base_apy(sim),
        pool_liquidity_usd=sim.pool_liquidity_usd or defaults.DEFAULT_POOL_LIQUIDITY_USD,
        quote=_lp_quote(history, pool_fetch),
        params=params,
        label=opportunity_id,
    )
    return Opportunity(
        id=opportunity_id,
        kind=OpportunityKind.LP,
        protocol=protocol,
        target_tokens=(token0, token1),
        max_amount=ctx.total_capital * defaults.MAX_AMOUNT_MULTIPLIER,
        chain_id=ctx.chain_id,
        apy_curve=curve,
        pool_address=sim.pool_address,
        token0_address=token0,
        token1_address=token1,
        tick_lower=sim.tick_lower,
        tick_upper=sim.tick_upper,
        current_tick=sim.current_tick,
    )


def convert_to_opportunities(
    ctx: EvaluationContext,
    supply_quote: Optional[SupplyQuoteFn] = None,
    pool_fetch: Optional[PoolFetchFn] = None,
    params: Optional[ApyCurveParams] = None,
    defaults: Optional[EngineDefaults] = None,
) -> List[Opportunity]:
    """
    Build the opportunity list for one pass: supply entries first, then LP
    entries, each in input order. Duplicate ids keep the first occurrence.
    """
    converted: Dict[str, Opportunity] = {}

    candidates = [
        convert_supply(ctx, raw, supply_quote, params, defaults)
        for raw in ctx.supply_opportunities
    ]
    candidates += [convert_lp(ctx, sim, pool_fetch, params, defaults) for sim in ctx.lp_simulations]

    for opportunity in candidates:
        if opportunity is not None and opportunity.id not in converted:
            converted[opportunity.id] = opportunity

    logger.debug(
        "Converted %d opportunities (%d supply quotes, %d LP simulations)",
        len(converted),
        len(ctx.supply_opportunities),
        len(ctx.lp_simulations),
    )
    return list(converted.values())
