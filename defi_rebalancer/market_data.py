"""
Market Data — collaborator interfaces and the tracker HTTP client
=================================================================

The engine talks to three collaborators, all async:

  MarketDataProvider  pool snapshot histories + lending quotes
  CostOracle          execution cost of candidate target positions (batch)
  PortfolioReader     current holdings and blended APY

``TrackerClient`` implements the pool-snapshot half of the provider
against the tracker service:

  GET {url}/api/v1/dex-pool/snapshot-caches/{network}
  GET {url}/api/v1/dex-pool/snapshot-caches/{network}/{dexKey}/{pool}

Both answer ``{"code": 0, "data": ...}``; anything else is a ProviderError.
"""

import asyncio
import logging
import time
import typing
from typing import Any, Dict, List, Mapping, Optional, Sequence

import httpx

from defi_rebalancer.central_config import config
from defi_rebalancer.errors import ProviderError
from defi_rebalancer.models import (
    PoolHistory,
    PoolSnapshot,
    PortfolioHoldings,
    StrategyCostQuote,
    SupplyOpportunity,
    TargetPositions,
    TickLiquidity,
)
from defi_rebalancer.numeric import parse_int, parse_number

logger = logging.getLogger(__name__)


# ── Collaborator interfaces ──────────────────────────────────────────────


class MarketDataProvider(typing.Protocol):
    async def get_pool_snapshots(self, network: str) -> List[PoolHistory]: ...

    async def get_pool_snapshot(
        self, network: str, dex_key: str, pool_address: str
    ) -> Optional[PoolHistory]: ...

    async def get_supply_opportunities(
        self, chain_id: str, amount_usd: float, protocols: Sequence[str]
    ) -> List[SupplyOpportunity]: ...


class CostOracle(typing.Protocol):
    async def price_strategies_batch(
        self, holdings: PortfolioHoldings, targets: Sequence[TargetPositions]
    ) -> List[StrategyCostQuote]: ...


class PortfolioReader(typing.Protocol):
    async def get_current_holdings(
        self, account: str, chain_id: str
    ) -> Optional[PortfolioHoldings]: ...


# ── Tracker payload parsing ─────────────────────────────────────────────


def parse_tick(raw: Mapping[str, Any]) -> Optional[TickLiquidity]:
    tick = parse_int(raw.get("tick"))
    if tick is None:
        return None
    return TickLiquidity(
        tick=tick,
        token0_amount_usd=parse_number(raw.get("token0AmountUsd")) or 0.0,
        token1_amount_usd=parse_number(raw.get("token1AmountUsd")) or 0.0,
        trading_volume_usd=parse_number(raw.get("tradingVolume", raw.get("tradingVolumeUsd"))) or 0.0,
    )


def parse_snapshot(raw: Mapping[str, Any]) -> Optional[PoolSnapshot]:
    """One tracker snapshot → ``PoolSnapshot``; ``None`` without a current tick."""
    current_tick = parse_int(raw.get("currentTick"))
    if current_tick is None:
        return None
    ticks = tuple(t for t in (parse_tick(r) for r in raw.get("ticks") or ()) if t is not None)
    price = raw.get("currentPrice", raw.get("sqrtPriceX96"))
    return PoolSnapshot(
        timestamp_ms=parse_int(raw.get("timestampMs")) or 0,
        current_tick=current_tick,
        fee_bps=parse_number(raw.get("fee", raw.get("feeBps"))) or 0.0,
        tick_spacing=parse_int(raw.get("tickSpacing")) or 1,
        sqrt_price_x96=str(price) if price not in (None, "") else None,
        ticks=ticks,
        pool_address=raw.get("poolAddress") or "",
        dex_key=raw.get("dexKey") or "",
        token0=(raw.get("token0Address") or raw.get("token0") or "").lower(),
        token1=(raw.get("token1Address") or raw.get("token1") or "").lower(),
        token0_symbol=raw.get("token0Symbol") or "",
        token1_symbol=raw.get("token1Symbol") or "",
    )


def parse_pool_history(raw: Mapping[str, Any]) -> Optional[PoolHistory]:
    """``{currentSnapshot, snapshots}`` → ``PoolHistory`` (snapshots most-recent-first)."""
    current = parse_snapshot(raw.get("currentSnapshot") or {})
    if current is None or not current.pool_address:
        return None
    snapshots = [s for s in (parse_snapshot(r) for r in raw.get("snapshots") or ()) if s is not None]
    snapshots.sort(key=lambda s: s.timestamp_ms, reverse=True)
    return PoolHistory(pool_address=current.pool_address, current=current, snapshots=tuple(snapshots))


def parse_supply_opportunity(raw: Mapping[str, Any], chain_id: str = "") -> SupplyOpportunity:
    after = raw.get("after") or {}
    apy = raw.get("supplyAPY", raw.get("supply_apy", after.get("supplyAPY")))
    return SupplyOpportunity(
        asset=raw.get("asset") or "",
        protocol=raw.get("protocol") or "aave",
        supply_apy=parse_number(apy),
        vault_address=raw.get("vault_address") or raw.get("vaultAddress"),
        chain_id=chain_id,
    )


def _unwrap(payload: Any, what: str) -> Any:
    if not isinstance(payload, dict) or payload.get("code") != 0:
        message = payload.get("message") if isinstance(payload, dict) else None
        raise ProviderError(f"Tracker rejected {what}: {message or 'malformed envelope'}")
    return payload.get("data")


# ── Rate Limiter ─────────────────────────────────────────────────────────


class _RateLimiter:
    """Token-bucket rate limiter shared by all tracker requests."""

    def __init__(self, max_requests: int, period_seconds: float):
        self._max = max_requests
        self._period = period_seconds
        self._timestamps: list[float] = []

    async def acquire(self) -> None:
        """Wait until a request slot is available."""
        now = time.monotonic()
        self._timestamps = [t for t in self._timestamps if now - t < self._period]
        if len(self._timestamps) >= self._max:
            sleep_time = self._period - (now - self._timestamps[0]) + 0.1
            if sleep_time > 0:
                await asyncio.sleep(sleep_time)
        self._timestamps.append(time.monotonic())


_tracker_limiter = _RateLimiter(max_requests=120, period_seconds=60)


# ── Tracker client ───────────────────────────────────────────────────────


class TrackerClient:
    """Pool snapshot caches from the tracker service."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        limiter: Optional[_RateLimiter] = None,
    ):
        self.base_url = (base_url or config.tracker_url).rstrip("/")
        self.timeout = timeout
        self._transport = transport
        self._limiter = limiter or _tracker_limiter

    async def _get(self, path: str) -> Any:
        url = f"{self.base_url}{path}"
        await self._limiter.acquire()
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                response = await client.get(url)
        except httpx.HTTPError as exc:
            raise ProviderError(f"Tracker request failed: {type(exc).__name__}") from exc

        if response.status_code != 200:
            raise ProviderError(f"Tracker HTTP {response.status_code} for {path}")
        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderError(f"Tracker returned non-JSON body for {path}") from exc
        return _unwrap(payload, path)

    async def get_pool_snapshots(self, network: str) -> List[PoolHistory]:
        data = await self._get(f"/api/v1/dex-pool/snapshot-caches/{network}") or {}
        histories = []
        for entry in data.get("latestSnapshots") or ():
            history = parse_pool_history(entry)
            if history is not None:
                histories.append(history)
        logger.info("Tracker returned %d pools for %s", len(histories), network)
        return histories

    async def get_pool_snapshot(
        self, network: str, dex_key: str, pool_address: str
    ) -> Optional[PoolHistory]:
        data = await self._get(f"/api/v1/dex-pool/snapshot-caches/{network}/{dex_key}/{pool_address}")
        return parse_pool_history(data or {})


class CombinedMarketData:
    """Pool snapshots from one source, lending quotes from another."""

    def __init__(self, pools: Any, supply: MarketDataProvider):
        self._pools = pools
        self._supply = supply

    async def get_pool_snapshots(self, network: str) -> List[PoolHistory]:
        return await self._pools.get_pool_snapshots(network)

    async def get_pool_snapshot(
        self, network: str, dex_key: str, pool_address: str
    ) -> Optional[PoolHistory]:
        return await self._pools.get_pool_snapshot(network, dex_key, pool_address)

    async def get_supply_opportunities(
        self, chain_id: str, amount_usd: float, protocols: Sequence[str]
    ) -> List[SupplyOpportunity]:
        return await self._supply.get_supply_opportunities(chain_id, amount_usd, protocols)


def index_pools(histories: Sequence[PoolHistory]) -> Dict[str, PoolHistory]:
    """Pool address → history; later duplicates are ignored."""
    indexed: Dict[str, PoolHistory] = {}
    for history in histories:
        indexed.setdefault(history.pool_address, history)
    return indexed
