"""
Decision Engine — End-to-End Scenarios
======================================

Runs ``DecisionEngine.evaluate`` against in-memory collaborators:

  - break-even rejection and approval for a lending-only portfolio
  - an in-range LP position is never disturbed
  - LP opportunities priced from pool history
  - degraded collaborators (cost oracle, market data, portfolio reader)
  - live pool re-query and the holdings-aware swap cost model
  - scoring and selection helpers

All tests are offline.
"""

import asyncio
import math
from unittest.mock import patch

import pytest

from defi_rebalancer.allocator import GAS_PER_SWAP_USD, static_swap_cost
from defi_rebalancer.central_config import EngineSettings, constraints_for
from defi_rebalancer.decision_engine import (
    DecisionEngine,
    blended_portfolio_apy,
    build_target_positions,
    describe_strategy,
    score_strategy,
    select_best,
)
from defi_rebalancer.errors import ContractViolationError, ProviderError
from defi_rebalancer.fixtures import (
    StaticCostOracle,
    StaticMarketData,
    StaticPortfolioReader,
    fixture_from_dict,
)
from defi_rebalancer.market_data import parse_pool_history
from defi_rebalancer.models import (
    DecisionState,
    EvaluationContext,
    IdleAsset,
    LendingHolding,
    LpHolding,
    OpportunityKind,
    PortfolioHoldings,
    PositionStatus,
    Strategy,
    StrategyPosition,
    SupplyOpportunity,
)
from defi_rebalancer.protocols import Protocol
from position_simulator import simulate_position

ACCOUNT = "0x5f2b2c6d2a4b1e8e0b8c7f2d3a9e1c4b6d8f0a12"
BASE_USDC = "0x833589fcd6edb6e08f4c7c32d4f71b54bda02913"
BASE_USDT = "0xfde4c96c8593536e31f229ea8f37b2ada2699bb2"
POOL = "0xd56da2b74ba826f19015e6b7dd9dae1903e85da1"


# ── Helpers ──────────────────────────────────────────────────────────────


def lending_portfolio(total=10_000, apy=5):
    return {
        "totalAssetsUsd": total,
        "portfolioApy": apy,
        "lendingPositions": [
            {"protocol": "aave", "symbol": "USDC", "tokenAddress": BASE_USDC,
             "supplyAmount": total, "amountUsd": total, "apy": apy},
        ],
    }


def pool_entry(tick=0, liquidity=100_000, volume=50_000, fee=3000, dex_key="uniswapV3"):
    return {
        "currentSnapshot": {
            "poolAddress": POOL,
            "dexKey": dex_key,
            "timestampMs": 2_000,
            "currentTick": tick,
            "fee": fee,
            "token0Address": BASE_USDC,
            "token1Address": BASE_USDT,
            "ticks": [{"tick": tick, "token0AmountUsd": liquidity / 2, "token1AmountUsd": liquidity / 2}],
        },
        "snapshots": [
            {"timestampMs": 2_000, "currentTick": tick, "fee": fee,
             "ticks": [{"tick": tick, "tradingVolume": volume}]},
        ],
    }


def run_fixture(data, **engine_kwargs):
    fixture = fixture_from_dict(data)
    engine = DecisionEngine(
        fixture.market_data, fixture.cost_oracle, fixture.portfolio_reader, **engine_kwargs
    )
    return asyncio.run(engine.evaluate(fixture.account, fixture.chain_id)), fixture


def lending_scenario(swap_fee):
    return {
        "account": ACCOUNT,
        "chainId": "8453",
        "portfolio": lending_portfolio(),
        "supplyOpportunities": [{"asset": "USDC", "protocol": "aave", "supplyAPY": 8}],
        "swapFees": [swap_fee],
    }


# ── Lending-only portfolio: 5 % → 8 % on $10k ───────────────────────────


class TestBreakEven:
    def test_rejected_on_break_even(self):
        """$2 fee vs $300/yr gain → 58.4 h, above the 4 h limit."""
        result, _ = run_fixture(lending_scenario(2.0))
        assert not result.should_trigger
        assert result.state is DecisionState.REJECTED
        assert result.position_status is PositionStatus.LENDING_ONLY
        assert result.failure_reason == "No strategy meets breakeven time constraint (all > 4h)"
        assert result.break_even_hours == -1
        assert result.selected_strategy is None
        assert len(result.evaluations) == 1
        record = result.evaluations[0]
        assert record.annual_gain_usd == pytest.approx(300)
        assert record.break_even_hours == pytest.approx(58.4)
        assert record.constraint_flags.meets_relative_apy
        assert record.constraint_flags.meets_absolute_apy
        assert not record.constraint_flags.meets_break_even
        assert not record.is_selected

    def test_approved_when_fee_is_small(self):
        """$0.05 fee → 1.46 h; relative 1.6× and +3 pp clear the bars."""
        result, _ = run_fixture(lending_scenario(0.05))
        assert result.should_trigger
        assert result.state is DecisionState.APPROVED
        assert result.failure_reason is None
        assert result.break_even_hours == pytest.approx(1.46)
        assert result.opportunity_apy == pytest.approx(8)
        assert result.portfolio_apy == 5
        assert result.difference_bps == pytest.approx(300)
        assert result.gas_estimate == pytest.approx(0.05)
        assert result.net_gain_usd == pytest.approx(300 / 365 - 0.05 / 30)
        assert result.evaluations[0].is_selected
        position = result.selected_strategy.positions[0]
        assert position.type is OpportunityKind.SUPPLY
        assert position.protocol is Protocol.AAVE
        assert position.amount == pytest.approx(10_000)

    def test_rejected_on_insufficient_improvement(self):
        # 5 % → 6 %: 1.2× clears the relative bar, +1 pp misses the absolute one
        data = lending_scenario(0.01)
        data["supplyOpportunities"][0]["supplyAPY"] = 6
        result, _ = run_fixture(data)
        assert not result.should_trigger
        assert result.failure_reason == "APY improvement insufficient for LENDING_ONLY"
        assert result.selected_strategy is not None

    def test_cost_oracle_receives_lending_targets(self):
        result, fixture = run_fixture(lending_scenario(0.05))
        (targets,) = fixture.cost_oracle.batches[0]
        assert targets.liquidity == ()
        assert targets.lending[0].token == BASE_USDC
        assert targets.lending[0].protocol is Protocol.AAVE
        assert targets.lending[0].amount == pytest.approx(10_000)

    def test_supply_requoted_at_increment_size(self):
        _, fixture = run_fixture(lending_scenario(0.05))
        # initial fetch at total assets, then one refinement at the first increment
        assert fixture.market_data.supply_requests == [10_000, 5_000]


# ── In-range LP ──────────────────────────────────────────────────────────


LP_TOKENS = {"token0Symbol": "USDC", "token1Symbol": "USDT", "token0Amount": 5_000, "token1Amount": 5_000}


class TestLpInRange:
    def test_never_triggers(self):
        data = lending_scenario(0.0)
        data["portfolio"] = {
            "totalAssetsUsd": 10_000,
            "portfolioApy": 5,
            "lpPositions": [
                {"protocol": "uniswapV3", "poolAddress": POOL, "tickLower": -100, "tickUpper": 100,
                 "amountUsd": 10_000, "apy": 5, **LP_TOKENS},
            ],
        }
        data["supplyOpportunities"][0]["supplyAPY"] = 24
        data["pools"] = [pool_entry(tick=3, liquidity=0, volume=0)]
        result, _ = run_fixture(data)
        assert result.position_status is PositionStatus.LP_IN_RANGE
        assert not result.should_trigger
        assert result.state is DecisionState.REJECTED
        assert result.failure_reason == "LP position is in range"

    def test_out_of_range_lp_can_move(self):
        data = lending_scenario(0.05)
        data["portfolio"] = {
            "totalAssetsUsd": 10_000,
            "portfolioApy": 5,
            "lpPositions": [
                {"protocol": "uniswapV3", "poolAddress": POOL, "tickLower": 10, "tickUpper": 20,
                 "amountUsd": 10_000, "apy": 5, **LP_TOKENS},
            ],
        }
        data["pools"] = [pool_entry(tick=3, liquidity=0, volume=0)]
        result, _ = run_fixture(data)
        assert result.position_status is PositionStatus.LP_OUT_OF_RANGE
        assert result.should_trigger


# ── LP opportunities ─────────────────────────────────────────────────────


class TestLpOpportunity:
    def test_fee_rich_pool_wins(self):
        data = {
            "account": ACCOUNT,
            "portfolio": {
                "idleAssets": [{"symbol": "USDC", "tokenAddress": BASE_USDC, "balance": 10_000, "balanceUsd": 10_000}],
            },
            "pools": [pool_entry()],
            "swapFees": [0.5],
        }
        result, fixture = run_fixture(data)
        assert result.position_status is PositionStatus.NO_POSITION
        assert result.portfolio_apy == 0
        assert result.should_trigger
        assert result.opportunity_apy == pytest.approx(2628 * 100_000 / 110_000)
        position = result.selected_strategy.positions[0]
        assert position.type is OpportunityKind.LP
        assert position.pool_address == POOL
        assert (position.tick_lower, position.tick_upper) == (0, 1)

        (targets,) = fixture.cost_oracle.batches[0]
        (lp_target,) = targets.liquidity
        assert lp_target.protocol is Protocol.UNISWAP_V3
        assert (lp_target.token0_address, lp_target.token1_address) == (BASE_USDC, BASE_USDT)
        assert lp_target.amount0_usd + lp_target.amount1_usd == pytest.approx(10_000)

        # one re-query of the pool for the first increment
        assert fixture.market_data.pool_requests == [POOL]

    def test_swap_costs_for_tokens_not_held(self):
        """A one-tick range at tick 0 is all USDT; the account only holds USDC."""
        data = {
            "account": ACCOUNT,
            "portfolio": {
                "idleAssets": [{"symbol": "USDC", "tokenAddress": BASE_USDC, "balance": 10_000, "balanceUsd": 10_000}],
            },
            "pools": [pool_entry()],
            "swapFees": [0.5],
        }
        result, _ = run_fixture(data)
        strategy = result.selected_strategy
        first, second = strategy.allocation_history
        assert first.swap_cost == pytest.approx(GAS_PER_SWAP_USD + static_swap_cost(5_000))
        assert second.swap_cost == pytest.approx(static_swap_cost(5_000))
        assert strategy.total_swap_cost == pytest.approx(first.swap_cost + second.swap_cost)
        assert strategy.total_swap_cost > 0

    def test_unknown_dex_is_a_contract_violation(self):
        data = lending_scenario(0.05)
        data["pools"] = [pool_entry(dex_key="sushiswap")]
        with pytest.raises(ContractViolationError):
            run_fixture(data)


# ── Degraded collaborators ──────────────────────────────────────────────


class _Abort(BaseException):
    pass


def _engine(holdings=None, market_data=None, cost_oracle=None, reader_error=None, **kwargs):
    return DecisionEngine(
        market_data or StaticMarketData(supply=[SupplyOpportunity("USDC", "aave", 8.0)]),
        cost_oracle or StaticCostOracle([0.05]),
        StaticPortfolioReader(holdings, error=reader_error),
        **kwargs,
    )


HOLDINGS = PortfolioHoldings(
    lending_positions=(LendingHolding("aave", "USDC", BASE_USDC, 10_000, 10_000, 5),),
    total_assets_usd=10_000,
    portfolio_apy=5,
)


class TestFailureHandling:
    def test_cost_oracle_failure_falls_back_to_first_strategy(self):
        engine = _engine(HOLDINGS, cost_oracle=StaticCostOracle(error=ProviderError("quote service down")))
        result = asyncio.run(engine.evaluate(ACCOUNT, "8453"))
        assert result.should_trigger
        assert result.evaluations == ()
        assert result.gas_estimate == 0 and result.break_even_hours == 0 and result.net_gain_usd == 0
        assert result.selected_strategy.name == "marginal_conservative"

    def test_pool_fetch_failure_is_empty(self):
        md = StaticMarketData(supply=[SupplyOpportunity("USDC", "aave", 8.0)], pool_error=ProviderError("503"))
        result = asyncio.run(_engine(HOLDINGS, market_data=md).evaluate(ACCOUNT, "8453"))
        assert result.should_trigger

    def test_all_market_data_failing(self):
        md = StaticMarketData(pool_error=RuntimeError("x"), supply_error=ProviderError("y"))
        result = asyncio.run(_engine(HOLDINGS, market_data=md).evaluate(ACCOUNT, "8453"))
        assert not result.should_trigger
        assert result.failure_reason == "No valid strategies"
        assert result.position_status is PositionStatus.LENDING_ONLY

    def test_non_exception_failures_propagate(self):
        md = StaticMarketData(pool_error=_Abort())
        with pytest.raises(_Abort):
            asyncio.run(_engine(HOLDINGS, market_data=md).evaluate(ACCOUNT, "8453"))

    def test_no_portfolio_data(self):
        result = asyncio.run(_engine(None).evaluate(ACCOUNT, "8453"))
        assert result.failure_reason == "No portfolio data"
        assert result.state is DecisionState.REJECTED
        assert result.portfolio_apy == 0 and result.total_assets_usd == 0

    def test_portfolio_reader_error(self):
        engine = _engine(HOLDINGS, reader_error=ProviderError("indexer down"))
        assert asyncio.run(engine.evaluate(ACCOUNT, "8453")).failure_reason == "No portfolio data"

    def test_insufficient_capital(self):
        small = PortfolioHoldings(idle_assets=(IdleAsset("USDC", BASE_USDC, 40, 40),), total_assets_usd=40)
        engine = _engine(small)
        result = asyncio.run(engine.evaluate(ACCOUNT, "8453"))
        assert result.failure_reason == "Insufficient capital"
        assert result.total_assets_usd == 40
        assert engine.market_data.supply_requests == []

    def test_nothing_clears_the_floor(self):
        md = StaticMarketData(supply=[SupplyOpportunity("USDC", "aave", 1.0)])
        result = asyncio.run(_engine(HOLDINGS, market_data=md).evaluate(ACCOUNT, "8453"))
        assert result.failure_reason == "No valid strategies"

    def test_unsupported_chain(self):
        with pytest.raises(ValueError):
            asyncio.run(_engine(HOLDINGS).evaluate(ACCOUNT, "1"))

    def test_without_curve_refinement(self):
        engine = _engine(HOLDINGS, refine_curves=False)
        assert asyncio.run(engine.evaluate(ACCOUNT, "8453")).should_trigger
        assert engine.market_data.supply_requests == [10_000]

    def test_multiple_profiles(self):
        settings = EngineSettings(enabled_profiles=("Aggressive", "Balanced", "Conservative"))
        oracle = StaticCostOracle([0.05, 0.05, 0.05])
        result = asyncio.run(_engine(HOLDINGS, cost_oracle=oracle, settings=settings).evaluate(ACCOUNT, "8453"))
        assert [r.strategy_name for r in result.evaluations] == [
            "marginal_aggressive", "marginal_balanced", "marginal_conservative",
        ]
        assert sum(r.is_selected for r in result.evaluations) == 1

    def test_concurrent_evaluations_are_independent(self):
        engine = _engine(HOLDINGS)

        async def both():
            return await asyncio.gather(engine.evaluate(ACCOUNT, "8453"), engine.evaluate(ACCOUNT, "8453"))

        first, second = asyncio.run(both())
        assert first.should_trigger and second.should_trigger
        assert first.opportunity_apy == second.opportunity_apy
        assert first.break_even_hours == second.break_even_hours


# ── Live pool re-query and swap costs ───────────────────────────────────


IDLE_USDC = PortfolioHoldings(idle_assets=(IdleAsset("USDC", BASE_USDC, 10_000, 10_000),), total_assets_usd=10_000)
IDLE_USDT = PortfolioHoldings(idle_assets=(IdleAsset("USDT", BASE_USDT, 10_000, 10_000),), total_assets_usd=10_000)


class FreshPoolMarketData(StaticMarketData):
    """Serves ``fresh`` (or raises ``fetch_error``) for single-pool snapshot requests."""

    def __init__(self, fresh=None, fetch_error=None, **kwargs):
        super().__init__(**kwargs)
        self.fresh = fresh
        self.fetch_error = fetch_error

    async def get_pool_snapshot(self, network, dex_key, pool_address):
        self.pool_requests.append((network, dex_key, pool_address))
        if self.fetch_error is not None:
            raise self.fetch_error
        return self.fresh


class ShortCostOracle(StaticCostOracle):
    async def price_strategies_batch(self, holdings, targets):
        self.batches.append(targets)
        return []


class TestLivePoolRequery:
    def test_lp_quote_uses_fresh_snapshot(self):
        stale = parse_pool_history(pool_entry())
        fresh = parse_pool_history(pool_entry(volume=80_000))
        md = FreshPoolMarketData(fresh=fresh, pools=[stale])
        engine = _engine(IDLE_USDC, market_data=md, cost_oracle=StaticCostOracle([0.5]), holdings_cost_model=False)
        result = asyncio.run(engine.evaluate(ACCOUNT, "8453"))

        assert md.pool_requests == [("base", "uniswapV3", POOL)]
        first = result.selected_strategy.allocation_history[0]
        assert first.amount == pytest.approx(5_000)
        assert first.marginal_apy == pytest.approx(simulate_position(fresh, 0, 1, 5_000).after_apy)
        assert first.marginal_apy != pytest.approx(simulate_position(stale, 0, 1, 5_000).after_apy)

    def test_failed_requery_falls_back_to_estimate(self):
        md = FreshPoolMarketData(fetch_error=ProviderError("503"), pools=[parse_pool_history(pool_entry())])
        engine = _engine(IDLE_USDC, market_data=md, cost_oracle=StaticCostOracle([0.5]))
        result = asyncio.run(engine.evaluate(ACCOUNT, "8453"))
        assert len(md.pool_requests) == 1
        assert result.should_trigger
        assert result.selected_strategy.positions[0].type is OpportunityKind.LP


class TestSwapCostModel:
    def test_uncovered_supply_is_not_worth_the_swap(self):
        # $10.51 to swap USDT → USDC for a 1-day hold wipes out 8 %
        result = asyncio.run(_engine(IDLE_USDT).evaluate(ACCOUNT, "8453"))
        assert not result.should_trigger
        assert result.failure_reason == "No valid strategies"

    def test_cost_model_can_be_disabled(self):
        result = asyncio.run(_engine(IDLE_USDT, holdings_cost_model=False).evaluate(ACCOUNT, "8453"))
        assert result.should_trigger
        assert result.selected_strategy.total_swap_cost == 0

    def test_covered_supply_is_free(self):
        result = asyncio.run(_engine(IDLE_USDC).evaluate(ACCOUNT, "8453"))
        assert result.should_trigger
        assert result.selected_strategy.total_swap_cost == 0
        assert result.selected_strategy.total_invested == pytest.approx(10_000)

    def test_explicit_swap_cost_overrides_holdings_model(self):
        engine = _engine(IDLE_USDT, swap_cost=lambda opp, amount, existing: 0.0)
        assert asyncio.run(engine.evaluate(ACCOUNT, "8453")).should_trigger


class TestMissingQuotes:
    def test_no_quotes_rejects_with_warning(self):
        engine = _engine(HOLDINGS, cost_oracle=ShortCostOracle())
        with patch("defi_rebalancer.decision_engine.logger") as log:
            result = asyncio.run(engine.evaluate(ACCOUNT, "8453"))
        assert not result.should_trigger
        assert result.failure_reason == "No cost quotes"
        assert result.break_even_hours == -1
        assert result.selected_strategy is None
        assert result.evaluations == ()
        (call,) = log.warning.call_args_list
        assert call.args[0].startswith("Cost oracle returned %d quotes for %d strategies")
        assert call.args[1:] == (0, 1)


# ── Scoring helpers ─────────────────────────────────────────────────────


def strategy(apy, name="s"):
    pos = StrategyPosition(OpportunityKind.SUPPLY, Protocol.AAVE, 10_000, 100, apy, asset="USDC")
    return Strategy(name=name, positions=(pos,), total_invested=10_000, total_swap_cost=0, weighted_apy=apy)


LENDING_ONLY = constraints_for(PositionStatus.LENDING_ONLY)


class TestScoring:
    def test_score_formula(self):
        r = score_strategy(0, strategy(8), 2.0, 10_000, 5, LENDING_ONLY)
        assert r.apy_improvement_pp == pytest.approx(3)
        assert r.annual_gain_usd == pytest.approx(300)
        assert r.break_even_hours == pytest.approx(2 / 300 * 8760)
        assert r.daily_gain_usd == pytest.approx(300 / 365)
        assert r.daily_cost_usd == pytest.approx(2 / 30)
        assert r.score == pytest.approx((300 / 365 - 2 / 30) / (r.break_even_hours + 1))
        assert r.relative_increase == pytest.approx(1.6)

    def test_no_improvement_has_zero_break_even(self):
        r = score_strategy(0, strategy(4), 2.0, 10_000, 5, LENDING_ONLY)
        assert r.annual_gain_usd == 0 and r.break_even_hours == 0
        assert r.net_daily_gain_usd < 0
        assert not r.constraint_flags.meets_absolute_apy

    def test_zero_portfolio_apy_is_infinite_relative(self):
        r = score_strategy(0, strategy(4), 0.0, 10_000, 0, LENDING_ONLY)
        assert math.isinf(r.relative_increase)
        assert r.constraint_flags.meets_relative_apy

    def test_select_best_filters_break_even(self):
        records = [
            score_strategy(0, strategy(8), 2.0, 10_000, 5, LENDING_ONLY),
            score_strategy(1, strategy(7), 0.05, 10_000, 5, LENDING_ONLY),
        ]
        marked, best = select_best(records, LENDING_ONLY)
        assert best.strategy_index == 1
        assert [r.is_selected for r in marked] == [False, True]

    def test_select_best_tie_keeps_first(self):
        records = [score_strategy(i, strategy(8, f"s{i}"), 0.05, 10_000, 5, LENDING_ONLY) for i in range(2)]
        _, best = select_best(records, LENDING_ONLY)
        assert best.strategy_name == "s0"

    def test_select_best_none(self):
        records = [score_strategy(0, strategy(8), 50.0, 10_000, 5, LENDING_ONLY)]
        marked, best = select_best(records, LENDING_ONLY)
        assert best is None and not marked[0].is_selected


class TestPortfolioHelpers:
    def test_blended_apy_weights_idle_at_zero(self):
        holdings = PortfolioHoldings(
            idle_assets=(IdleAsset("USDC", BASE_USDC, 2_000, 2_000),),
            lending_positions=(
                LendingHolding("aave", "USDC", BASE_USDC, 6_000, 6_000, 5),
                LendingHolding("venus", "USDT", BASE_USDT, 1_000, 1_000, 0),
            ),
            lp_positions=(LpHolding("uniswapV3", POOL, 0, 1, amount_usd=2_000, apy=20),),
        )
        assert blended_portfolio_apy(holdings) == pytest.approx(7.0)

    def test_blended_apy_empty(self):
        assert blended_portfolio_apy(PortfolioHoldings()) == 0.0

    def test_describe_strategy(self):
        assert describe_strategy(Strategy("s", (), 0, 0, 0)) == "No positions"
        assert "USDC(supply/aave)" in describe_strategy(strategy(8))

    def test_lp_targets_scaled_by_share(self):
        fixture = fixture_from_dict({"pools": [pool_entry()]})
        history = fixture.market_data.pools[POOL]
        sim = simulate_position(history, 0, 1, 10_000)
        ctx = EvaluationContext(
            account=ACCOUNT, chain_id="8453", network="base", total_capital=10_000,
            pools={POOL: history}, lp_simulations=(sim,),
        )
        lp = StrategyPosition(
            OpportunityKind.LP, Protocol.UNISWAP_V3, 4_000, 40, 20,
            pool_address=POOL, token0_address=BASE_USDC, token1_address=BASE_USDT, tick_lower=0, tick_upper=1,
        )
        supply = StrategyPosition(OpportunityKind.SUPPLY, Protocol.AAVE, 6_000, 60, 8, asset="USDC", vault_address="0xv")
        targets = build_target_positions(Strategy("s", (supply, lp), 10_000, 0, 12), ctx)
        assert targets.lending[0].vault == "0xv"
        assert targets.lending[0].amount == 6_000
        (liq,) = targets.liquidity
        assert liq.amount0_usd == pytest.approx(sim.token0_amount * 0.4)
        assert liq.amount1_usd == pytest.approx(sim.token1_amount * 0.4)

    def test_lp_target_skipped_without_simulation(self):
        ctx = EvaluationContext(account=ACCOUNT, chain_id="8453", network="base", total_capital=10_000)
        lp = StrategyPosition(
            OpportunityKind.LP, Protocol.UNISWAP_V3, 4_000, 100, 20,
            pool_address=POOL, token0_address=BASE_USDC, token1_address=BASE_USDT,
        )
        assert build_target_positions(Strategy("s", (lp,), 4_000, 0, 20), ctx).liquidity == ()
