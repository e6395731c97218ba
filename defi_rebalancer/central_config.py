"""
Project Configuration — engine constants, constraint table, allocation profiles
================================================================================

Single home for every tunable number the decision engine uses. Values
are immutable at import time; ``EngineSettings.from_env`` layers the
few deployment-specific overrides on top.

Environment overrides:
  LENDING_PROTOCOLS            comma list, default "aave,venus"
  TRACKER_URL                  market-data tracker base URL
  ENABLED_ALLOCATION_PROFILES  comma list, default "Conservative"
  LOG_LEVEL                    default "INFO"
"""

import math
import os
import re
from dataclasses import dataclass, field, replace
from importlib.metadata import version, PackageNotFoundError
from pathlib import Path
from types import MappingProxyType
from typing import Mapping, Optional, Tuple

from defi_rebalancer.models import AllocationProfile, Constraints, PositionStatus

# Version: single source of truth is pyproject.toml
try:
    PROJECT_VERSION = version("defi-rebalancer")
except PackageNotFoundError:
    # Dev / CI: package not installed, read pyproject.toml directly
    _toml = Path(__file__).resolve().parent.parent / "pyproject.toml"
    _m = (
        re.search(r'version\s*=\s*"([^"]+)"', _toml.read_text())
        if _toml.exists()
        else None
    )
    PROJECT_VERSION = _m.group(1) if _m else "0.0.0-dev"
PROJECT_NAME = "DeFi Rebalancer"


@dataclass(frozen=True)
class EngineDefaults:
    """Fixed numeric constants of the rebalance engine."""

    # Below this the gas of any rebalance outweighs the yield
    MIN_TOTAL_ASSETS_USD: float = 50.0

    # AMM simulation window (one snapshot per minute)
    LP_SIMULATION_TIME_HORIZON_MINUTES: int = 30
    MINUTES_PER_YEAR: int = 525_600
    HOURS_PER_YEAR: int = 8_760

    # Daily cost = one-off swap fee spread over this many days
    DAILY_COST_AMORTIZATION_DAYS: int = 30

    # Opportunity cap = total capital × multiplier
    MAX_AMOUNT_MULTIPLIER: float = 10.0
    MAX_ALLOCATION_ITERATIONS: int = 100

    # Used by the LP curve when the simulation saw no liquidity at all
    DEFAULT_POOL_LIQUIDITY_USD: float = 1_000_000.0

    # Uniswap V3 valid tick range
    MIN_TICK: int = -887_272
    MAX_TICK: int = 887_272


@dataclass(frozen=True)
class ApyCurveParams:
    """Decay model of the marginal APY curves."""

    SUPPLY_DECAY_RATE: float = 0.05
    SUPPLY_APY_FLOOR: float = 0.5  # × base APY
    LP_APY_FLOOR: float = 0.3  # × base APY
    # Decay formula trusted for amount/base in (low, high); re-query outside
    TRUST_BAND: Tuple[float, float] = (0.8, 1.2)


# ── Constraint table (selected by PositionStatus) ───────────────────────
# LP_IN_RANGE: a relative bar of +inf is unreachable, so an in-range LP is
# never disturbed.

CONSTRAINTS_BY_STATUS: Mapping[PositionStatus, Constraints] = MappingProxyType(
    {
        PositionStatus.LP_IN_RANGE: Constraints(
            max_break_even_hours=2,
            min_relative_apy_increase=math.inf,
            min_absolute_apy_increase_pp=20,
        ),
        PositionStatus.LP_OUT_OF_RANGE: Constraints(
            max_break_even_hours=4,
            min_relative_apy_increase=1.10,
            min_absolute_apy_increase_pp=2,
        ),
        PositionStatus.LENDING_ONLY: Constraints(
            max_break_even_hours=4,
            min_relative_apy_increase=1.10,
            min_absolute_apy_increase_pp=2,
        ),
        PositionStatus.NO_POSITION: Constraints(
            max_break_even_hours=4,
            min_relative_apy_increase=1.10,
            min_absolute_apy_increase_pp=2,
        ),
    }
)


def constraints_for(status: PositionStatus) -> Constraints:
    return CONSTRAINTS_BY_STATUS[status]


# ── Allocation profiles ─────────────────────────────────────────────────
# Aggressive and Balanced are defined but disabled by default.

ALLOCATION_PROFILES: Tuple[AllocationProfile, ...] = (
    AllocationProfile(
        name="Aggressive",
        increment_fraction=0.15,
        min_increment_usd=50,
        min_marginal_apy=8,
        max_breakeven_hours=2,
        holding_period_days=1,
        enabled=False,
    ),
    AllocationProfile(
        name="Balanced",
        increment_fraction=0.30,
        min_increment_usd=100,
        min_marginal_apy=5,
        max_breakeven_hours=4,
        holding_period_days=1,
        enabled=False,
    ),
    AllocationProfile(
        name="Conservative",
        increment_fraction=0.50,
        min_increment_usd=100,
        min_marginal_apy=3,
        max_breakeven_hours=8,
        holding_period_days=1,
        enabled=True,
    ),
)


# ── Networks ────────────────────────────────────────────────────────────

SUPPORTED_CHAINS = MappingProxyType({"8453": "base", "56": "bsc"})


def network_for_chain(chain_id: str) -> str:
    """EIP-155 chain id → tracker network slug."""
    try:
        return SUPPORTED_CHAINS[str(chain_id)]
    except KeyError:
        raise ValueError(f"Unsupported chain id: {chain_id}") from None


def _split_env(name: str) -> Optional[Tuple[str, ...]]:
    raw = os.environ.get(name)
    if raw is None:
        return None
    return tuple(part.strip() for part in raw.split(",") if part.strip())


@dataclass(frozen=True)
class EngineSettings:
    """Deployment-level settings, overridable from the environment."""

    lending_protocols: Tuple[str, ...] = ("aave", "venus")
    tracker_url: str = "http://localhost:3000"
    enabled_profiles: Tuple[str, ...] = ("Conservative",)
    log_level: str = "INFO"
    defaults: EngineDefaults = field(default_factory=EngineDefaults)
    curve: ApyCurveParams = field(default_factory=ApyCurveParams)

    @classmethod
    def from_env(cls) -> "EngineSettings":
        settings = cls()
        overrides = {}
        lending = _split_env("LENDING_PROTOCOLS")
        if lending:
            overrides["lending_protocols"] = lending
        profiles = _split_env("ENABLED_ALLOCATION_PROFILES")
        if profiles:
            overrides["enabled_profiles"] = profiles
        if os.environ.get("TRACKER_URL"):
            overrides["tracker_url"] = os.environ["TRACKER_URL"].rstrip("/")
        if os.environ.get("LOG_LEVEL"):
            overrides["log_level"] = os.environ["LOG_LEVEL"].upper()
        return replace(settings, **overrides)

    def active_profiles(self) -> Tuple[AllocationProfile, ...]:
        """Profiles to run, in table order."""
        wanted = {name.lower() for name in self.enabled_profiles}
        return tuple(
            replace(p, enabled=True)
            for p in ALLOCATION_PROFILES
            if p.name.lower() in wanted
        )


# Global instance
config = EngineSettings()
