#!/usr/bin/env python3
"""
Protocol Registry — Lending Markets and Concentrated-Liquidity DEXes
====================================================================

Closed set of protocols the rebalance engine can allocate to, with one
normalization function applied where raw strings enter the system
(market data, holdings, cost-oracle routes). Internal code only ever
compares ``Protocol`` members.

Supported:
  Lending : Aave V3, Euler V2, Venus V4
  LP      : Uniswap V3, Aerodrome Slipstream (Uniswap V3 fork on Base)

Protocol Documentation:
  Aave V3              : https://aave.com/docs/developers/smart-contracts
  Euler V2             : https://docs.euler.finance/
  Venus V4             : https://docs-v4.venus.io/
  Uniswap V3 Core      : https://github.com/Uniswap/v3-core
  Aerodrome Slipstream : https://github.com/aerodrome-finance/slipstream
"""

from enum import Enum
from types import MappingProxyType
from typing import Dict, Optional

from defi_rebalancer.errors import ContractViolationError


class ProtocolKind(str, Enum):
    LENDING = "lending"
    LP = "lp"


class Protocol(str, Enum):
    AAVE = "aave"
    EULER = "euler"
    VENUS = "venus"
    UNISWAP_V3 = "uniswapV3"
    AERODROME_SLIPSTREAM = "aerodromeSlipstream"

    @property
    def kind(self) -> ProtocolKind:
        return PROTOCOL_REGISTRY[self]["kind"]

    @property
    def display_name(self) -> str:
        return PROTOCOL_REGISTRY[self]["name"]

    @property
    def is_lp(self) -> bool:
        return self.kind is ProtocolKind.LP


# ── Protocol Registry ───────────────────────────────────────────────────
#
# Structure:
#   PROTOCOL_REGISTRY[protocol] = {
#       "name": str,              # Display name
#       "kind": ProtocolKind,     # lending | lp
#       "networks": tuple,        # Networks the engine allocates on
#   }

PROTOCOL_REGISTRY: Dict[Protocol, dict] = MappingProxyType(
    {
        Protocol.AAVE: {
            "name": "Aave V3",
            "kind": ProtocolKind.LENDING,
            "networks": ("base", "bsc"),
        },
        Protocol.EULER: {
            "name": "Euler V2",
            "kind": ProtocolKind.LENDING,
            "networks": ("base",),
        },
        Protocol.VENUS: {
            "name": "Venus V4",
            "kind": ProtocolKind.LENDING,
            "networks": ("bsc",),
        },
        Protocol.UNISWAP_V3: {
            "name": "Uniswap V3",
            "kind": ProtocolKind.LP,
            "networks": ("base", "bsc"),
        },
        Protocol.AERODROME_SLIPSTREAM: {
            "name": "Aerodrome Slipstream",
            "kind": ProtocolKind.LP,
            "networks": ("base",),
        },
    }
)

# Raw identifiers seen from upstream services → canonical member.
# Keys are lowercase with separators removed (see _alias_key).
PROTOCOL_ALIASES = MappingProxyType(
    {
        "aave": Protocol.AAVE,
        "aavev3": Protocol.AAVE,
        "euler": Protocol.EULER,
        "eulerv2": Protocol.EULER,
        "venus": Protocol.VENUS,
        "venusv4": Protocol.VENUS,
        "uniswap": Protocol.UNISWAP_V3,
        "uniswapv3": Protocol.UNISWAP_V3,
        "aerodrome": Protocol.AERODROME_SLIPSTREAM,
        "aerodromecl": Protocol.AERODROME_SLIPSTREAM,
        "aerodromeslipstream": Protocol.AERODROME_SLIPSTREAM,
    }
)


def _alias_key(raw: str) -> str:
    return raw.strip().lower().replace("-", "").replace("_", "").replace(" ", "")


def normalize_protocol(raw: Optional[str]) -> Optional[Protocol]:
    """
    Map a raw protocol identifier to its ``Protocol`` member.

    Examples:
        >>> normalize_protocol("aerodromecl")
        <Protocol.AERODROME_SLIPSTREAM: 'aerodromeSlipstream'>
        >>> normalize_protocol("Uniswap-V3")
        <Protocol.UNISWAP_V3: 'uniswapV3'>
        >>> normalize_protocol("sushiswap") is None
        True
    """
    if isinstance(raw, Protocol):
        return raw
    if not raw:
        return None
    return PROTOCOL_ALIASES.get(_alias_key(raw))


def normalize_lp_protocol(raw: Optional[str]) -> Protocol:
    """LP protocol or ``ContractViolationError`` — an LP target must name its DEX."""
    if not raw:
        raise ContractViolationError("LP protocol required")
    protocol = normalize_protocol(raw)
    if protocol is None or not protocol.is_lp:
        raise ContractViolationError(f'Invalid LP protocol: "{raw}"')
    return protocol


def normalize_lending_protocol(raw: Optional[str]) -> Protocol:
    """Lending protocol; unknown keys fall back to Aave."""
    protocol = normalize_protocol(raw)
    if protocol is None or protocol.is_lp:
        return Protocol.AAVE
    return protocol
