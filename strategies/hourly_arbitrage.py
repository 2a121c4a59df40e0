"""
Hourly Arbitrage Strategy
=========================

Buys the near-certain side of hourly markets in the last minutes before
settlement.

Logic:
1. More than max_time_to_settlement before settlement: reserve accounts
2. Inside the window: act when YES or NO trades within
   [min_price_threshold, max_price_threshold], buying that side
   (YES preferred when both qualify)
"""

from __future__ import annotations

import logging
from typing import Any, ClassVar

from core.market import MarketSnapshot
from core.strategy_base import ParameterSpec, StrategyConfigError
from core.strategy_types import StrategyType
from strategies.cycle_arbitrage_base import COMMON_PARAMETERS, CycleArbitrageStrategy


logger = logging.getLogger(__name__)


class HourlyArbitrageStrategy(CycleArbitrageStrategy):
    """Settlement-window arbitrage on hourly markets."""

    STRATEGY_TYPE: ClassVar[StrategyType] = StrategyType.HOURLY_ARBITRAGE
    PARAMETERS: ClassVar[dict[str, ParameterSpec]] = {
        **COMMON_PARAMETERS,
        "arbitrage_amount": ParameterSpec(float, 10.0, min_value=0.01, description="Order size per account"),
        "min_price_threshold": ParameterSpec(float, 0.90, min_value=0.0, max_value=1.0),
        "max_price_threshold": ParameterSpec(float, 0.985, min_value=0.0, max_value=1.0),
        "max_time_to_settlement_seconds": ParameterSpec(float, 300.0, min_value=1.0),
    }

    @classmethod
    def check_parameter_consistency(cls, params: dict[str, Any]) -> None:
        if params["min_price_threshold"] > params["max_price_threshold"]:
            raise StrategyConfigError(
                f"min_price_threshold {params['min_price_threshold']} exceeds "
                f"max_price_threshold {params['max_price_threshold']}"
            )

    def scan_window_seconds(self) -> float:
        return self._params["max_time_to_settlement_seconds"]

    def reservation_cost(self) -> float:
        return self._params["arbitrage_amount"]

    def build_order(self, market: MarketSnapshot) -> dict[str, Any] | None:
        prices = market.prices
        if prices is None:
            self.increment("missing_prices")
            return None

        low = self._params["min_price_threshold"]
        high = self._params["max_price_threshold"]
        yes_in_range = prices.yes is not None and low <= prices.yes <= high
        no_in_range = prices.no is not None and low <= prices.no <= high

        if yes_in_range:
            outcome_index, price = 0, prices.yes
        elif no_in_range:
            outcome_index, price = 1, prices.no
        else:
            logger.debug(
                f"{market.market_id}: YES {prices.yes} / NO {prices.no} outside [{low}, {high}]"
            )
            return None

        return self.order_params(market, self._params["arbitrage_amount"], outcome_index, price)
