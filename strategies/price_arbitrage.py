"""
Price Arbitrage Strategy
========================

Takes the side the reference price feed favours early in each hourly
cycle.

Minutes are counted from the start of the cycle (one hour before
settlement):
- before min_minutes: reserve accounts
- from min_minutes to max_minutes: act on the feed direction
- after max_minutes: the cycle is left alone

Direction: a feed YES price of at least 0.6 buys NO at the feed NO
price; a feed NO price above 0.6 buys YES; otherwise the dearer side is
bought.

Every sell_interval_seconds, positions opened by this strategy in markets
that have not settled yet are offered back to the venue for
sell_return_multiplier times their cost. Positions already sold or
claimed are left alone.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timedelta, timezone
from typing import Any, ClassVar

from core.market import MarketSnapshot
from core.reservation import Opportunity
from core.strategy_base import ParameterSpec, StrategyConfig, StrategyConfigError, StrategyContext
from core.strategy_types import StrategyType
from strategies.cycle_arbitrage_base import COMMON_PARAMETERS, CycleArbitrageStrategy


logger = logging.getLogger(__name__)

CYCLE_MINUTES = 60
FEED_CONVICTION = 0.6


class PriceArbitrageStrategy(CycleArbitrageStrategy):
    """Feed-directed entry in the opening minutes of hourly markets."""

    STRATEGY_TYPE: ClassVar[StrategyType] = StrategyType.PRICE_ARBITRAGE
    PARAMETERS: ClassVar[dict[str, ParameterSpec]] = {
        **COMMON_PARAMETERS,
        "arbitrage_amount": ParameterSpec(float, 5.0, min_value=0.01),
        "slippage": ParameterSpec(float, 0.2, min_value=0.0, max_value=1.0),
        "min_minutes": ParameterSpec(float, 1.0, min_value=0.0, max_value=CYCLE_MINUTES),
        "max_minutes": ParameterSpec(float, 10.0, min_value=0.0, max_value=CYCLE_MINUTES),
        "sell_interval_seconds": ParameterSpec(float, 1.0, min_value=0.1),
        "sell_return_multiplier": ParameterSpec(float, 1.2, min_value=1.0),
    }

    def __init__(self, config: StrategyConfig, context: StrategyContext):
        super().__init__(config, context)
        # Markets this strategy holds positions in, by market id
        self._entered_markets: dict[str, MarketSnapshot] = {}

    @classmethod
    def check_parameter_consistency(cls, params: dict[str, Any]) -> None:
        if params["min_minutes"] >= params["max_minutes"]:
            raise StrategyConfigError(
                f"min_minutes {params['min_minutes']} must be below max_minutes {params['max_minutes']}"
            )

    def scan_window_seconds(self) -> float:
        return (CYCLE_MINUTES - self._params["min_minutes"]) * 60

    def reservation_cost(self) -> float:
        return self._params["arbitrage_amount"]

    def action_allowed(self, opportunity: Opportunity, now: datetime) -> bool:
        latest = timedelta(minutes=CYCLE_MINUTES - self._params["max_minutes"])
        if opportunity.time_to_expiry(now) < latest:
            self.increment("late_cycles")
            return False
        return True

    def build_order(self, market: MarketSnapshot) -> dict[str, Any] | None:
        feed = market.feed_prices
        if feed is None or feed.yes is None or feed.no is None:
            self.increment("missing_feed")
            return None

        if feed.yes >= FEED_CONVICTION:
            outcome_index, price = 1, feed.no
        elif feed.no > FEED_CONVICTION:
            outcome_index, price = 0, feed.yes
        elif feed.no > feed.yes:
            outcome_index, price = 1, feed.no
        else:
            outcome_index, price = 0, feed.yes

        return self.order_params(
            market,
            self._params["arbitrage_amount"],
            outcome_index,
            price,
            slippage=self._params["slippage"],
        )

    # ------------------------------------------------------------------
    # Exit
    # ------------------------------------------------------------------

    async def on_start(self) -> None:
        await super().on_start()
        self.set_timer("sell_to_arbitrage", self.sell_to_arbitrage, self._params["sell_interval_seconds"])

    def positions_opened(self, market: MarketSnapshot, account_ids: list[str]) -> None:
        self._entered_markets[market.market_id] = market

    async def sell_to_arbitrage(self) -> int:
        """Offer unsold positions in live entered markets back at a markup. Returns how many sold."""
        now = datetime.now(timezone.utc)
        for market_id, market in list(self._entered_markets.items()):
            if not market.is_live(now):
                del self._entered_markets[market_id]
        if not self._entered_markets:
            return 0

        venue = self._context.venue
        multiplier = self._params["sell_return_multiplier"]
        targets = []
        for account in self._context.registry.list_eligible(self.STRATEGY_TYPE):
            client = account.client or venue
            try:
                positions = await client.fetch_positions(account.account_id)
            except Exception as e:
                self.increment("sell_failures")
                logger.warning(f"Strategy {self.name}: positions of {account.account_id} unavailable: {e}")
                continue
            for position in positions:
                if position["market_id"] not in self._entered_markets:
                    continue
                if position.get("sold") or position.get("claimed"):
                    continue
                targets.append((client, account.account_id, position))

        outcomes = await asyncio.gather(
            *(
                client.sell_position(account_id, position["position_id"], position["amount"] * multiplier)
                for client, account_id, position in targets
            ),
            return_exceptions=True,
        )

        sold = 0
        for (_, account_id, position), outcome in zip(targets, outcomes):
            if outcome is True:
                sold += 1
                continue
            self.increment("sell_failures")
            if isinstance(outcome, BaseException):
                logger.warning(f"Strategy {self.name}: selling {position['position_id']} of {account_id} failed: {outcome}")

        if sold:
            self.increment("positions_sold", sold)
            logger.info(f"Strategy {self.name}: sold {sold}/{len(targets)} position(s)")
        return sold
