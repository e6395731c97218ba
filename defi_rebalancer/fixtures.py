"""
In-memory collaborators and JSON fixtures.

A fixture file captures everything one evaluation needs offline:

    {
      "account": "0x…",
      "chainId": "8453",
      "pools": [{"currentSnapshot": {…}, "snapshots": [{…}, …]}],
      "supplyOpportunities": [{"asset": "USDC", "protocol": "aave", "supplyAPY": "4.1"}],
      "portfolio": {
        "totalAssetsUsd": 10000, "portfolioApy": 5,
        "idleAssets": [...], "lendingPositions": [...], "lpPositions": [...]
      },
      "swapFees": [0.05]
    }

Pool entries use the tracker's snapshot-cache shape; ``portfolioApy`` is
derived from the positions when absent.
"""

import json
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Union

from defi_rebalancer.decision_engine import blended_portfolio_apy
from defi_rebalancer.market_data import index_pools, parse_pool_history, parse_supply_opportunity
from defi_rebalancer.models import (
    IdleAsset,
    LendingHolding,
    LpHolding,
    PoolHistory,
    PortfolioHoldings,
    StrategyCostQuote,
    SupplyOpportunity,
    TargetPositions,
)
from defi_rebalancer.numeric import parse_int, parse_number
from defi_rebalancer.protocols import normalize_protocol


class StaticMarketData:
    """Fixed pools and lending quotes; either side can be set to fail."""

    def __init__(
        self,
        pools: Sequence[PoolHistory] = (),
        supply: Sequence[SupplyOpportunity] = (),
        pool_error: Optional[Exception] = None,
        supply_error: Optional[Exception] = None,
    ):
        self.pools = index_pools(pools)
        self.supply = list(supply)
        self.pool_error = pool_error
        self.supply_error = supply_error
        self.supply_requests: List[float] = []
        self.pool_requests: List[str] = []

    async def get_pool_snapshots(self, network: str) -> List[PoolHistory]:
        if self.pool_error is not None:
            raise self.pool_error
        return list(self.pools.values())

    async def get_pool_snapshot(
        self, network: str, dex_key: str, pool_address: str
    ) -> Optional[PoolHistory]:
        self.pool_requests.append(pool_address)
        if self.pool_error is not None:
            raise self.pool_error
        return self.pools.get(pool_address)

    async def get_supply_opportunities(
        self, chain_id: str, amount_usd: float, protocols: Sequence[str]
    ) -> List[SupplyOpportunity]:
        self.supply_requests.append(amount_usd)
        if self.supply_error is not None:
            raise self.supply_error
        wanted = {normalize_protocol(p) for p in protocols}
        return [s for s in self.supply if not protocols or normalize_protocol(s.protocol) in wanted]


class StaticCostOracle:
    """Returns ``fees[i]`` for the i-th strategy, ``default_fee`` past the end."""

    def __init__(
        self,
        fees: Sequence[float] = (),
        default_fee: float = 0.0,
        error: Optional[Exception] = None,
    ):
        self.fees = list(fees)
        self.default_fee = default_fee
        self.error = error
        self.batches: List[Sequence[TargetPositions]] = []

    async def price_strategies_batch(
        self, holdings: PortfolioHoldings, targets: Sequence[TargetPositions]
    ) -> List[StrategyCostQuote]:
        self.batches.append(targets)
        if self.error is not None:
            raise self.error
        return [
            StrategyCostQuote(fee=self.fees[i] if i < len(self.fees) else self.default_fee)
            for i in range(len(targets))
        ]


class StaticPortfolioReader:
    def __init__(self, holdings: Optional[PortfolioHoldings] = None, error: Optional[Exception] = None):
        self.holdings = holdings
        self.error = error

    async def get_current_holdings(self, account: str, chain_id: str) -> Optional[PortfolioHoldings]:
        if self.error is not None:
            raise self.error
        return self.holdings


# ── Fixture parsing ──────────────────────────────────────────────────────


def _idle(raw: Mapping[str, Any]) -> IdleAsset:
    return IdleAsset(
        symbol=raw.get("symbol") or "",
        token_address=(raw.get("tokenAddress") or "").lower(),
        balance=parse_number(raw.get("balance")) or 0.0,
        balance_usd=parse_number(raw.get("balanceUsd")) or 0.0,
    )


def _lending(raw: Mapping[str, Any]) -> LendingHolding:
    return LendingHolding(
        protocol=raw.get("protocol") or "aave",
        symbol=raw.get("symbol") or "",
        token_address=(raw.get("tokenAddress") or "").lower(),
        supply_amount=parse_number(raw.get("supplyAmount")) or 0.0,
        amount_usd=parse_number(raw.get("amountUsd")) or 0.0,
        apy=parse_number(raw.get("apy")) or 0.0,
        vault_address=raw.get("vaultAddress"),
    )


def _lp(raw: Mapping[str, Any]) -> LpHolding:
    return LpHolding(
        protocol=raw.get("protocol") or "",
        pool_address=raw.get("poolAddress") or "",
        tick_lower=parse_int(raw.get("tickLower")),
        tick_upper=parse_int(raw.get("tickUpper")),
        token_id=str(raw["tokenId"]) if raw.get("tokenId") is not None else None,
        amount_usd=parse_number(raw.get("amountUsd")) or 0.0,
        apy=parse_number(raw.get("apy")) or 0.0,
        token0_symbol=raw.get("token0Symbol") or "",
        token1_symbol=raw.get("token1Symbol") or "",
        token0_amount=parse_number(raw.get("token0Amount")) or 0.0,
        token1_amount=parse_number(raw.get("token1Amount")) or 0.0,
    )


def parse_holdings(raw: Optional[Mapping[str, Any]]) -> Optional[PortfolioHoldings]:
    """Portfolio section of a fixture; ``None`` when the section is missing."""
    if not raw:
        return None
    holdings = PortfolioHoldings(
        idle_assets=tuple(_idle(r) for r in raw.get("idleAssets") or ()),
        lending_positions=tuple(_lending(r) for r in raw.get("lendingPositions") or ()),
        lp_positions=tuple(_lp(r) for r in raw.get("lpPositions") or ()),
        total_assets_usd=parse_number(raw.get("totalAssetsUsd")) or 0.0,
    )
    apy = parse_number(raw.get("portfolioApy"))
    if apy is None:
        apy = blended_portfolio_apy(holdings)
    total = holdings.total_assets_usd or (
        sum(a.balance_usd for a in holdings.idle_assets)
        + sum(p.amount_usd for p in holdings.lending_positions)
        + sum(p.amount_usd for p in holdings.lp_positions)
    )
    return replace(holdings, total_assets_usd=total, portfolio_apy=apy)


@dataclass
class Fixture:
    account: str
    chain_id: str
    market_data: StaticMarketData
    cost_oracle: StaticCostOracle
    portfolio_reader: StaticPortfolioReader
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)


def fixture_from_dict(data: Mapping[str, Any]) -> Fixture:
    chain_id = str(data.get("chainId") or "8453")
    pools = [h for h in (parse_pool_history(p) for p in data.get("pools") or ()) if h is not None]
    supply = [parse_supply_opportunity(s, chain_id) for s in data.get("supplyOpportunities") or ()]
    fees = [parse_number(f) or 0.0 for f in data.get("swapFees") or ()]
    return Fixture(
        account=data.get("account") or "0x0000000000000000000000000000000000000000",
        chain_id=chain_id,
        market_data=StaticMarketData(pools, supply),
        cost_oracle=StaticCostOracle(fees, default_fee=parse_number(data.get("defaultSwapFee")) or 0.0),
        portfolio_reader=StaticPortfolioReader(parse_holdings(data.get("portfolio"))),
        raw=dict(data),
    )


def load_fixture(path: Union[str, Path]) -> Fixture:
    """Read a JSON fixture file into ready-to-use collaborators."""
    with open(path, encoding="utf-8") as fh:
        return fixture_from_dict(json.load(fh))
