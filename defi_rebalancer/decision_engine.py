"""
Rebalance Decision Engine
=========================

Orchestrates one evaluation:

  FETCHING_DATA        holdings → capital gate → pools + lending quotes
  BUILDING_STRATEGIES  LP candidates → opportunities → one allocation per profile
  PRICING              one batched Cost Oracle call for every candidate
  SCORING              per-strategy metrics, break-even filter, best score
  APPROVED / REJECTED  constraint check for the current position status

Scoring, per strategy (APY in percent, money in USD):

  improvement_pp = strategy_apy − portfolio_apy
  annual_gain    = assets × improvement_pp / 100            (0 if ≤ 0)
  break_even_h   = fee / annual_gain × 8760                  (0 if no gain)
  daily_gain     = assets × improvement_pp / 100 / 365
  daily_cost     = fee / 30
  net_daily      = daily_gain − daily_cost
  score          = net_daily / (break_even_h + 1)
  relative       = strategy_apy / portfolio_apy              (inf if portfolio is 0)

The engine holds no per-evaluation state: everything fetched for a call
lives in an ``EvaluationContext`` passed down explicitly.
"""

import asyncio
import logging
import math
from dataclasses import replace
from typing import List, Mapping, Optional, Sequence, Tuple

from defi_rebalancer.allocator import HoldingsSwapCost, SwapCostFn, allocate, allocate_refined
from defi_rebalancer.central_config import EngineSettings, config, constraints_for, network_for_chain
from defi_rebalancer.log_utils import jlog
from defi_rebalancer.market_data import CostOracle, MarketDataProvider, PortfolioReader, index_pools
from defi_rebalancer.models import (
    ConstraintFlags,
    Constraints,
    DecisionResult,
    DecisionState,
    EvaluationContext,
    LendingTarget,
    LiquidityTarget,
    OpportunityKind,
    PoolHistory,
    PortfolioHoldings,
    PositionStatus,
    Strategy,
    StrategyCostQuote,
    StrategyEvaluationRecord,
    SupplyOpportunity,
    TargetPositions,
)
from defi_rebalancer.opportunity_converter import convert_to_opportunities
from defi_rebalancer.position_status import classify_position_status
from defi_rebalancer.protocols import normalize_protocol
from defi_rebalancer.tokens import lookup_token_address
from position_simulator import simulate_candidate_ranges

logger = logging.getLogger(__name__)

NO_BREAK_EVEN = -1.0


# ── Portfolio helpers ────────────────────────────────────────────────────


def blended_portfolio_apy(holdings: PortfolioHoldings) -> float:
    """Capital-weighted APY of invested positions; idle assets count at 0 %."""
    weighted = 0.0
    weight = 0.0
    for amount_usd, apy in [(p.amount_usd, p.apy) for p in holdings.lending_positions] + [
        (p.amount_usd, p.apy) for p in holdings.lp_positions
    ]:
        if amount_usd > 0 and apy > 0:
            weighted += amount_usd * apy
            weight += amount_usd
    weight += sum(a.balance_usd for a in holdings.idle_assets if a.balance_usd > 0)
    return weighted / weight if weight > 0 else 0.0


def describe_strategy(strategy: Strategy) -> str:
    """One-line human summary of a strategy's positions."""
    if strategy.is_empty:
        return "No positions"
    parts = []
    for pos in strategy.positions:
        amount = f"${pos.amount:,.2f} ({pos.allocation_percent:.1f}%)"
        if pos.type is OpportunityKind.SUPPLY:
            parts.append(f"{pos.asset}(supply/{pos.protocol.value}): {amount}")
        else:
            pool = (pos.pool_address or "unknown")[:10]
            parts.append(
                f"LP {pool}(lp/{pos.protocol.value}) [{pos.tick_lower},{pos.tick_upper}): {amount}"
            )
    return ", ".join(parts)


# ── Cost Oracle targets ─────────────────────────────────────────────────


def build_target_positions(strategy: Strategy, ctx: EvaluationContext) -> TargetPositions:
    """
    Translate a strategy into the lending and liquidity targets the Cost
    Oracle prices. LP token amounts come from the pool's candidate
    simulation, scaled by the position's share of the strategy.
    """
    lending: List[LendingTarget] = []
    liquidity: List[LiquidityTarget] = []

    for pos in strategy.positions:
        if pos.type is OpportunityKind.SUPPLY:
            lending.append(
                LendingTarget(
                    protocol=pos.protocol,
                    token=lookup_token_address(pos.asset, ctx.chain_id),
                    vault=pos.vault_address,
                    amount=pos.amount,
                )
            )
            continue

        sim = ctx.simulation(pos.pool_address or "")
        if sim is None or (sim.token0_amount == 0 and sim.token1_amount == 0):
            continue
        if not pos.token0_address or not pos.token1_address:
            continue
        share = pos.allocation_percent / 100 if pos.allocation_percent else 1.0
        liquidity.append(
            LiquidityTarget(
                protocol=pos.protocol,
                pool_address=pos.pool_address,
                token0_address=pos.token0_address,
                token1_address=pos.token1_address,
                tick_lower=sim.tick_lower,
                tick_upper=sim.tick_upper,
                amount0_usd=sim.token0_amount * share,
                amount1_usd=sim.token1_amount * share,
            )
        )

    return TargetPositions(lending=tuple(lending), liquidity=tuple(liquidity))


# ── Scoring ──────────────────────────────────────────────────────────────


def score_strategy(
    index: int,
    strategy: Strategy,
    swap_fee: float,
    total_assets_usd: float,
    portfolio_apy: float,
    constraints: Constraints,
    hours_per_year: int = 8_760,
    amortization_days: int = 30,
) -> StrategyEvaluationRecord:
    strategy_apy = strategy.weighted_apy
    improvement = strategy_apy - portfolio_apy

    annual_gain = 0.0
    break_even = 0.0
    if improvement > 0 and total_assets_usd > 0:
        annual_gain = total_assets_usd * improvement / 100
        if annual_gain > 0:
            break_even = swap_fee / annual_gain * hours_per_year

    daily_gain = total_assets_usd * improvement / 100 / 365
    daily_cost = swap_fee / amortization_days
    net_daily = daily_gain - daily_cost
    score = net_daily / (break_even + 1)
    relative = strategy_apy / portfolio_apy if portfolio_apy > 0 else math.inf

    flags = ConstraintFlags(
        meets_break_even=break_even <= constraints.max_break_even_hours,
        meets_relative_apy=relative >= constraints.min_relative_apy_increase,
        meets_absolute_apy=improvement >= constraints.min_absolute_apy_increase_pp,
    )
    return StrategyEvaluationRecord(
        strategy_index=index,
        strategy_name=strategy.name,
        strategy_apy=strategy_apy,
        portfolio_apy=portfolio_apy,
        swap_fee=swap_fee,
        apy_improvement_pp=improvement,
        annual_gain_usd=annual_gain,
        daily_gain_usd=daily_gain,
        daily_cost_usd=daily_cost,
        net_daily_gain_usd=net_daily,
        break_even_hours=break_even,
        relative_increase=relative,
        score=score,
        constraint_flags=flags,
    )


def select_best(
    records: Sequence[StrategyEvaluationRecord], constraints: Constraints
) -> Tuple[Tuple[StrategyEvaluationRecord, ...], Optional[StrategyEvaluationRecord]]:
    """
    Highest score among records within the break-even limit (first wins a
    tie). Returns the records with ``is_selected`` set, plus the winner.
    """
    best_index = -1
    for i, record in enumerate(records):
        if record.break_even_hours > constraints.max_break_even_hours:
            continue
        if best_index == -1 or record.score > records[best_index].score:
            best_index = i
    if best_index == -1:
        return tuple(records), None
    marked = tuple(
        replace(r, is_selected=True) if i == best_index else r for i, r in enumerate(records)
    )
    return marked, marked[best_index]


# ── Engine ───────────────────────────────────────────────────────────────


class DecisionEngine:
    """Stateless rebalance evaluator; safe to share across concurrent calls."""

    def __init__(
        self,
        market_data: MarketDataProvider,
        cost_oracle: CostOracle,
        portfolio_reader: PortfolioReader,
        settings: Optional[EngineSettings] = None,
        swap_cost: Optional[SwapCostFn] = None,
        refine_curves: bool = True,
        holdings_cost_model: bool = True,
    ):
        self.market_data = market_data
        self.cost_oracle = cost_oracle
        self.portfolio_reader = portfolio_reader
        self.settings = settings or config
        self.swap_cost = swap_cost
        self.refine_curves = refine_curves
        self.holdings_cost_model = holdings_cost_model

    # ── FETCHING_DATA ────────────────────────────────────────────────────

    async def _read_holdings(self, account: str, chain_id: str) -> Optional[PortfolioHoldings]:
        try:
            return await self.portfolio_reader.get_current_holdings(account, chain_id)
        except Exception as exc:
            logger.warning("Portfolio read failed for %s: %s", account, exc)
            return None

    async def fetch_market_data(
        self, network: str, chain_id: str, amount_usd: float
    ) -> Tuple[List[PoolHistory], List[SupplyOpportunity]]:
        """Pools and lending quotes, fetched concurrently; a failed side is empty."""
        pools, supply = await asyncio.gather(
            self.market_data.get_pool_snapshots(network),
            self.market_data.get_supply_opportunities(
                chain_id, amount_usd, self.settings.lending_protocols
            ),
            return_exceptions=True,
        )
        if isinstance(pools, BaseException):
            if not isinstance(pools, Exception):
                raise pools
            logger.warning("Pool snapshot fetch failed on %s: %s", network, pools)
            pools = []
        if isinstance(supply, BaseException):
            if not isinstance(supply, Exception):
                raise supply
            logger.warning("Supply opportunity fetch failed on chain %s: %s", chain_id, supply)
            supply = []
        return list(pools), list(supply)

    def build_context(
        self,
        account: str,
        chain_id: str,
        network: str,
        total_capital: float,
        pools: Sequence[PoolHistory],
        supply: Sequence[SupplyOpportunity],
        token_holdings: Optional[Mapping[str, float]] = None,
    ) -> EvaluationContext:
        indexed = index_pools(pools)
        simulations = simulate_candidate_ranges(
            indexed.values(),
            total_capital,
            self.settings.defaults.LP_SIMULATION_TIME_HORIZON_MINUTES,
        )
        return EvaluationContext(
            account=account,
            chain_id=chain_id,
            network=network,
            total_capital=total_capital,
            pools=indexed,
            lp_simulations=tuple(simulations),
            supply_opportunities=tuple(supply),
            lending_protocols=tuple(self.settings.lending_protocols),
            token_holdings=dict(token_holdings or {}),
        )

    # ── BUILDING_STRATEGIES ─────────────────────────────────────────────

    def _supply_quote(self, ctx: EvaluationContext):
        async def quote(raw: SupplyOpportunity, amount: float) -> Optional[float]:
            fresh = await self.market_data.get_supply_opportunities(
                ctx.chain_id, amount, ctx.lending_protocols
            )
            wanted = normalize_protocol(raw.protocol)
            for opp in fresh:
                if opp.asset == raw.asset and normalize_protocol(opp.protocol) == wanted:
                    return opp.supply_apy
            return None

        return quote

    def _pool_fetch(self, ctx: EvaluationContext):
        async def fetch(history: PoolHistory) -> Optional[PoolHistory]:
            return await self.market_data.get_pool_snapshot(
                ctx.network, history.current.dex_key or "", history.pool_address
            )

        return fetch

    def _swap_cost_for(self, ctx: EvaluationContext) -> Optional[SwapCostFn]:
        """Cost model for one allocation run; ``None`` allocates on gross APY."""
        if self.swap_cost is not None:
            return self.swap_cost
        if self.holdings_cost_model:
            return HoldingsSwapCost(ctx)
        return None

    async def build_strategies(self, ctx: EvaluationContext) -> List[Strategy]:
        opportunities = convert_to_opportunities(
            ctx,
            supply_quote=self._supply_quote(ctx),
            pool_fetch=self._pool_fetch(ctx),
            params=self.settings.curve,
            defaults=self.settings.defaults,
        )
        if not opportunities:
            return []

        for idx, opp in enumerate(opportunities):
            logger.info(
                "Opportunity %d: %s on %s, APY at full size=%.2f%%",
                idx,
                opp.id,
                opp.protocol.value,
                opp.apy_at(ctx.total_capital),
            )

        strategies = []
        for profile in self.settings.active_profiles():
            swap_cost = self._swap_cost_for(ctx)
            if self.refine_curves:
                strategy = await allocate_refined(
                    opportunities, ctx.total_capital, profile, swap_cost, self.settings.defaults
                )
            else:
                strategy = allocate(
                    opportunities, ctx.total_capital, profile, swap_cost, self.settings.defaults
                )
            if not strategy.is_empty:
                strategies.append(strategy)
        return strategies

    # ── PRICING ──────────────────────────────────────────────────────────

    async def price_strategies(
        self, holdings: PortfolioHoldings, ctx: EvaluationContext, strategies: Sequence[Strategy]
    ) -> Optional[List[StrategyCostQuote]]:
        """Batch cost quotes, index-aligned with ``strategies``; ``None`` on failure."""
        targets = [build_target_positions(s, ctx) for s in strategies]
        try:
            return list(await self.cost_oracle.price_strategies_batch(holdings, targets))
        except Exception as exc:
            logger.warning("Cost calculation failed, continuing without costs: %s", exc)
            return None

    # ── Evaluate ─────────────────────────────────────────────────────────

    async def evaluate(self, account: str, chain_id: str) -> DecisionResult:
        """Run one full evaluation for ``account`` on ``chain_id``."""
        chain_id = str(chain_id)
        network = network_for_chain(chain_id)
        defaults = self.settings.defaults

        _transition(account, DecisionState.FETCHING_DATA)
        holdings = await self._read_holdings(account, chain_id)
        if holdings is None:
            return self._reject(account, "No portfolio data", 0.0, 0.0)

        total_assets = holdings.total_assets_usd
        portfolio_apy = holdings.portfolio_apy
        if total_assets < defaults.MIN_TOTAL_ASSETS_USD:
            return self._reject(account, "Insufficient capital", portfolio_apy, total_assets)

        pools, supply = await self.fetch_market_data(network, chain_id, total_assets)
        ctx = self.build_context(
            account, chain_id, network, total_assets, pools, supply,
            token_holdings=holdings.current_token_holdings(),
        )
        jlog(logger, "evaluation_context", **ctx.to_log_dict())

        status = classify_position_status(holdings, ctx.current_ticks())
        constraints = constraints_for(status)
        jlog(
            logger,
            "position_status",
            account=account,
            status=status,
            max_break_even_hours=constraints.max_break_even_hours,
            min_relative_apy_increase=constraints.min_relative_apy_increase,
            min_absolute_apy_increase_pp=constraints.min_absolute_apy_increase_pp,
        )

        _transition(account, DecisionState.BUILDING_STRATEGIES)
        strategies = await self.build_strategies(ctx)
        if not strategies:
            return self._reject(
                account, "No valid strategies", portfolio_apy, total_assets, status=status
            )

        _transition(account, DecisionState.PRICING)
        quotes = await self.price_strategies(holdings, ctx, strategies)

        _transition(account, DecisionState.SCORING)
        if quotes is None:
            chosen: Optional[Strategy] = strategies[0]
            records: Tuple[StrategyEvaluationRecord, ...] = ()
            gas, break_even, net_gain = 0.0, 0.0, 0.0
        else:
            if len(quotes) != len(strategies):
                logger.warning(
                    "Cost oracle returned %d quotes for %d strategies; unquoted strategies are not scored",
                    len(quotes),
                    len(strategies),
                )
            scored = [
                score_strategy(
                    i,
                    strategy,
                    quote.fee or 0.0,
                    total_assets,
                    portfolio_apy,
                    constraints,
                    defaults.HOURS_PER_YEAR,
                    defaults.DAILY_COST_AMORTIZATION_DAYS,
                )
                for i, (strategy, quote) in enumerate(zip(strategies, quotes))
            ]
            for record in scored:
                jlog(logger, "strategy_evaluated", account=account, **_record_fields(record))
            records, best = select_best(scored, constraints)
            if best is None:
                chosen, gas, break_even, net_gain = None, 0.0, NO_BREAK_EVEN, 0.0
            else:
                chosen = strategies[best.strategy_index]
                gas, break_even, net_gain = best.swap_fee, best.break_even_hours, best.net_daily_gain_usd

        opportunity_apy = (chosen or strategies[0]).weighted_apy
        outcome = dict(
            portfolio_apy=portfolio_apy,
            opportunity_apy=opportunity_apy,
            break_even_hours=break_even,
            net_gain_usd=net_gain,
            evaluations=records,
            position_status=status,
            total_assets_usd=total_assets,
            gas_estimate=gas,
        )

        if status is PositionStatus.LP_IN_RANGE:
            return self._finish(
                account,
                DecisionResult(
                    should_trigger=False,
                    state=DecisionState.REJECTED,
                    selected_strategy=chosen,
                    failure_reason="LP position is in range",
                    **outcome,
                ),
            )

        if chosen is None:
            if records:
                reason = (
                    "No strategy meets breakeven time constraint "
                    f"(all > {constraints.max_break_even_hours:g}h)"
                )
            else:
                reason = "No cost quotes"
            return self._finish(
                account,
                DecisionResult(
                    should_trigger=False,
                    state=DecisionState.REJECTED,
                    failure_reason=reason,
                    **outcome,
                ),
            )

        relative = opportunity_apy / portfolio_apy if portfolio_apy > 0 else math.inf
        absolute = opportunity_apy - portfolio_apy
        if not (
            relative >= constraints.min_relative_apy_increase
            and absolute >= constraints.min_absolute_apy_increase_pp
        ):
            logger.info(
                "Rejected (%s): relative=%.2fx absolute=%.2fpp, required relative>=%sx absolute>=%spp",
                status.value,
                relative,
                absolute,
                constraints.min_relative_apy_increase,
                constraints.min_absolute_apy_increase_pp,
            )
            return self._finish(
                account,
                DecisionResult(
                    should_trigger=False,
                    state=DecisionState.REJECTED,
                    selected_strategy=chosen,
                    failure_reason=f"APY improvement insufficient for {status.value}",
                    **outcome,
                ),
            )

        logger.info(
            "Approved for %s: portfolio APY=%.2f%%, opportunity APY=%.2f%%, strategy=%s, %s",
            account,
            portfolio_apy,
            opportunity_apy,
            chosen.name,
            describe_strategy(chosen),
        )
        return self._finish(
            account,
            DecisionResult(
                should_trigger=True,
                state=DecisionState.APPROVED,
                selected_strategy=chosen,
                **outcome,
            ),
        )

    # ── Results ──────────────────────────────────────────────────────────

    def _reject(
        self,
        account: str,
        reason: str,
        portfolio_apy: float,
        total_assets: float,
        status: Optional[PositionStatus] = None,
    ) -> DecisionResult:
        return self._finish(
            account,
            DecisionResult(
                should_trigger=False,
                portfolio_apy=portfolio_apy,
                opportunity_apy=0.0,
                break_even_hours=0.0,
                net_gain_usd=0.0,
                state=DecisionState.REJECTED,
                failure_reason=reason,
                position_status=status,
                total_assets_usd=total_assets,
            ),
        )

    @staticmethod
    def _finish(account: str, result: DecisionResult) -> DecisionResult:
        jlog(
            logger,
            "rebalance_decision",
            account=account,
            should_trigger=result.should_trigger,
            state=result.state,
            position_status=result.position_status,
            portfolio_apy=result.portfolio_apy,
            opportunity_apy=result.opportunity_apy,
            difference_bps=result.difference_bps,
            break_even_hours=result.break_even_hours,
            net_gain_usd=result.net_gain_usd,
            gas_estimate=result.gas_estimate,
            strategy=result.selected_strategy.name if result.selected_strategy else None,
            failure_reason=result.failure_reason,
        )
        return result


def _transition(account: str, state: DecisionState) -> None:
    jlog(logger, "decision_state", level=logging.DEBUG, account=account, state=state)


def _record_fields(record: StrategyEvaluationRecord) -> dict:
    return {
        "strategy_index": record.strategy_index,
        "strategy_name": record.strategy_name,
        "strategy_apy": record.strategy_apy,
        "portfolio_apy": record.portfolio_apy,
        "swap_fee": record.swap_fee,
        "apy_improvement_pp": record.apy_improvement_pp,
        "break_even_hours": record.break_even_hours,
        "net_daily_gain_usd": record.net_daily_gain_usd,
        "score": record.score,
        "meets_break_even": record.constraint_flags.meets_break_even,
        "meets_relative_apy": record.constraint_flags.meets_relative_apy,
        "meets_absolute_apy": record.constraint_flags.meets_absolute_apy,
    }
