"""
Marginal APY Curves
===================

Maps "amount invested" → "expected APY" for one opportunity, anchored at
one observed ``(base_amount, base_apy)`` point.

Two phases:
  - ``estimate(amount)`` — synchronous decay formula, no I/O.
  - ``refine(amount)``   — async; re-quotes the market when ``amount`` is
    outside the trusted band around the base point, falling back to the
    estimate when the quote fails or comes back empty.

Both are memoized per exact amount for the lifetime of the curve (one
evaluation pass). ``estimate(0) == refine(0) == 0``.

Decay models:
  Supply:  a ≤ b → base
           a > b → max(base · e^(−k·(a/b − 1)), 0.5 · base)      k = 0.05
  LP:      a > 0 → max(base · L/(L + a) · b/a, 0.3 · base)
           L = in-range pool liquidity seen by the simulation
"""

import logging
import math
from typing import Awaitable, Callable, Dict, Optional

from defi_rebalancer.central_config import ApyCurveParams
from defi_rebalancer.log_utils import jlog
from defi_rebalancer.models import OpportunityKind

logger = logging.getLogger(__name__)

# amount → fresh APY quote (percent), or None when the market has no answer
QuoteFn = Callable[[float], Awaitable[Optional[float]]]


class MarginalApyCurve:
    """Base class; subclasses provide ``_decay``."""

    kind: OpportunityKind

    def __init__(
        self,
        base_amount: float,
        base_apy: float,
        quote: Optional[QuoteFn] = None,
        params: Optional[ApyCurveParams] = None,
        label: str = "",
    ):
        self.base_amount = base_amount
        self.base_apy = base_apy
        self.params = params or ApyCurveParams()
        self.label = label
        self._quote = quote
        self._memo: Dict[float, float] = {}
        if base_amount > 0:
            self._memo[base_amount] = base_apy

    def _decay(self, amount: float) -> float:
        raise NotImplementedError

    def __call__(self, amount: float) -> float:
        return self.estimate(amount)

    def estimate(self, amount: float) -> float:
        if amount <= 0:
            return 0.0
        if amount in self._memo:
            return self._memo[amount]
        return self._decay(amount)

    def in_trust_band(self, amount: float) -> bool:
        if self.base_amount <= 0:
            return False
        low, high = self.params.TRUST_BAND
        return low < amount / self.base_amount < high

    async def refine(self, amount: float) -> float:
        if amount <= 0:
            return 0.0
        if amount in self._memo:
            return self._memo[amount]

        estimated = self._decay(amount)
        if self.in_trust_band(amount) or self._quote is None:
            self._memo[amount] = estimated
            return estimated

        try:
            quoted = await self._quote(amount)
        except Exception as exc:  # any provider failure degrades to the estimate
            logger.warning("APY re-query failed for %s at $%.2f: %s", self.label, amount, exc)
            quoted = None

        if quoted is not None and quoted > 0:
            jlog(
                logger,
                "apy_requery",
                level=logging.DEBUG,
                kind=self.kind,
                opportunity=self.label,
                amount=amount,
                quoted_apy=quoted,
                estimated_apy=estimated,
            )
            self._memo[amount] = quoted
            return quoted

        self._memo[amount] = estimated
        return estimated


class SupplyApyCurve(MarginalApyCurve):
    """Lending yield: flat up to the observed size, exponential decay past it."""

    kind = OpportunityKind.SUPPLY

    def _decay(self, amount: float) -> float:
        if amount <= self.base_amount or self.base_amount <= 0:
            return self.base_apy
        ratio = amount / self.base_amount
        decayed = self.base_apy * math.exp(-self.params.SUPPLY_DECAY_RATE * (ratio - 1))
        return max(decayed, self.base_apy * self.params.SUPPLY_APY_FLOOR)


class LpApyCurve(MarginalApyCurve):
    """Concentrated-liquidity yield, diluted by our own share of the range."""

    kind = OpportunityKind.LP

    def __init__(
        self,
        base_amount: float,
        base_apy: float,
        pool_liquidity_usd: float,
        quote: Optional[QuoteFn] = None,
        params: Optional[ApyCurveParams] = None,
        label: str = "",
    ):
        super().__init__(base_amount, base_apy, quote=quote, params=params, label=label)
        self.pool_liquidity_usd = pool_liquidity_usd

    def _decay(self, amount: float) -> float:
        if amount <= 0:
            return 0.0
        liquidity = self.pool_liquidity_usd
        diluted = self.base_apy * liquidity / (liquidity + amount) * (self.base_amount / amount)
        return max(diluted, self.base_apy * self.params.LP_APY_FLOOR)
