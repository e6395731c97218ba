"""
Token Registry — Symbol ↔ Address Resolution per Chain
======================================================

Resolves the ERC-20 contract a lending opportunity supplies into, and
the symbol behind an LP pool's token addresses. Only assets the engine
is allowed to allocate into are listed; anything else is unresolvable
and the opportunity is dropped by the converter.

Chain ids follow EIP-155:
  - 8453 → Base
  - 56   → BNB Smart Chain

Sources:
  Base  USDC : https://basescan.org/token/0x833589fcd6edb6e08f4c7c32d4f71b54bda02913
  BSC   USDT : https://bscscan.com/token/0x55d398326f99059ff775485246999027b3197955
"""

from types import MappingProxyType
from typing import Optional

# ── Token Addresses ─────────────────────────────────────────────────────
# Lowercase addresses, uppercase symbols.

TOKEN_ADDRESS_BY_CHAIN = MappingProxyType(
    {
        "8453": MappingProxyType(
            {
                "USDC": "0x833589fcd6edb6e08f4c7c32d4f71b54bda02913",
                "USDT": "0xfde4c96c8593536e31f229ea8f37b2ada2699bb2",
            }
        ),
        "56": MappingProxyType(
            {
                "USDT": "0x55d398326f99059ff775485246999027b3197955",
                "USDC": "0x8ac76a51cc950d9822d68b83fe1ad97b32cd580d",
                "USD1": "0x8d0d000ee44948fc98c9b98a4fa4921476f08b0d",
            }
        ),
    }
)

# ── Symbol Normalization ────────────────────────────────────────────────
# Some on-chain symbols use non-standard Unicode or suffixes.

SYMBOL_MAP = MappingProxyType(
    {
        "USD₮0": "USDT",
        "USD₮": "USDT",
        "USDT0": "USDT",
    }
)


def normalize_symbol(raw_symbol: str) -> str:
    """Normalize an on-chain token symbol to its registry key."""
    cleaned = (raw_symbol or "").strip().strip("\x00")
    return SYMBOL_MAP.get(cleaned, cleaned).upper()


def lookup_token_address(symbol: Optional[str], chain_id: str) -> Optional[str]:
    """
    Token address for ``symbol`` on ``chain_id``, or ``None``.

    >>> lookup_token_address("usdc", "8453")
    '0x833589fcd6edb6e08f4c7c32d4f71b54bda02913'
    >>> lookup_token_address("WETH", "8453") is None
    True
    """
    if not symbol:
        return None
    chain_map = TOKEN_ADDRESS_BY_CHAIN.get(str(chain_id))
    if not chain_map:
        return None
    return chain_map.get(normalize_symbol(symbol))


def lookup_token_symbol(address: Optional[str], chain_id: str) -> Optional[str]:
    """Reverse lookup: symbol for a token ``address`` on ``chain_id``."""
    if not address:
        return None
    chain_map = TOKEN_ADDRESS_BY_CHAIN.get(str(chain_id))
    if not chain_map:
        return None
    wanted = address.lower()
    for symbol, token_address in chain_map.items():
        if token_address == wanted:
            return symbol
    return None
