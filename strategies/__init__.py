"""
Strategies
==========

Concrete strategy kinds run by the orchestration engine.

Engine scope (one shared instance over the account pool):
- HourlyArbitrageStrategy
- PriceArbitrageStrategy

Account scope (one instance per account):
- SettlementClaimStrategy
"""

from strategies.cycle_arbitrage_base import CycleArbitrageStrategy
from strategies.hourly_arbitrage import HourlyArbitrageStrategy
from strategies.price_arbitrage import PriceArbitrageStrategy
from strategies.settlement_claim import SettlementClaimStrategy

__all__ = [
    "CycleArbitrageStrategy",
    "HourlyArbitrageStrategy",
    "PriceArbitrageStrategy",
    "SettlementClaimStrategy",
]
