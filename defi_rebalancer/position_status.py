"""
Position Status Classifier
==========================

LP_IN_RANGE      any LP deposit with tick_lower ≤ current_tick ≤ tick_upper
LP_OUT_OF_RANGE  LP deposits exist, none in range (or range/tick unknown)
LENDING_ONLY     no LP deposit, at least one lending supply
NO_POSITION      nothing invested

The range check here is closed on both ends, matching how the holdings
reader reports a position sitting exactly on its upper tick.
"""

from typing import Mapping, Optional

from defi_rebalancer.models import LpHolding, PortfolioHoldings, PositionStatus


def _lookup_tick(current_ticks: Mapping[str, int], pool_address: str) -> Optional[int]:
    if pool_address in current_ticks:
        return current_ticks[pool_address]
    wanted = pool_address.lower()
    for address, tick in current_ticks.items():
        if address.lower() == wanted:
            return tick
    return None


def is_in_range(position: LpHolding, current_tick: Optional[int]) -> bool:
    if current_tick is None or position.tick_lower is None or position.tick_upper is None:
        return False
    return position.tick_lower <= current_tick <= position.tick_upper


def classify_position_status(
    holdings: Optional[PortfolioHoldings], current_ticks: Mapping[str, int]
) -> PositionStatus:
    """Classify the portfolio's exposure; ``current_ticks`` maps pool → tick."""
    if holdings is None:
        return PositionStatus.NO_POSITION

    for position in holdings.lp_positions:
        if is_in_range(position, _lookup_tick(current_ticks, position.pool_address)):
            return PositionStatus.LP_IN_RANGE

    if holdings.lp_positions:
        return PositionStatus.LP_OUT_OF_RANGE
    if holdings.lending_positions:
        return PositionStatus.LENDING_ONLY
    return PositionStatus.NO_POSITION
