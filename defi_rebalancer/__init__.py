"""DeFi Rebalancer — rebalance decision engine for lending and concentrated-liquidity yield."""
