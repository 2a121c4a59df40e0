"""
Cycle Arbitrage Base
====================

Shared driver of the engine-scope arbitrage strategies on hourly
markets. Each market cycle is one opportunity:

- while the cycle is far from settlement, accounts are pre-authorized
  (reserved and prepared) through the candidate reservation protocol
- inside the action window, the subclass decides whether and how to act
  and every reserved account is committed

Subclasses define the windows and the order parameters.
"""

from __future__ import annotations

import logging
from abc import abstractmethod
from datetime import datetime, timezone
from typing import Any, ClassVar

from core.market import MarketSnapshot, TickSnapshot
from core.reservation import CandidateReservationProtocol, Opportunity
from core.strategy_base import (
    BaseStrategy,
    ExecutionResult,
    InitializationError,
    ParameterSpec,
    StrategyConfig,
    StrategyConfigError,
    StrategyContext,
)
from core.strategy_types import StrategyType


logger = logging.getLogger(__name__)


COMMON_PARAMETERS: dict[str, ParameterSpec] = {
    "max_concurrent_positions": ParameterSpec(int, 1, min_value=0, description="Reserved accounts across all cycles"),
    "scan_interval_seconds": ParameterSpec(float, 60.0, min_value=1.0),
    "market_scan_interval_seconds": ParameterSpec(float, 30.0, min_value=1.0),
    "housekeeping_interval_seconds": ParameterSpec(float, 60.0, min_value=1.0),
    "prepare_cooldown_seconds": ParameterSpec(float, 5.0, min_value=0.0),
    "prepare_cooldown_max_seconds": ParameterSpec(float, 600.0, min_value=0.0),
    "max_reservations_per_account": ParameterSpec(int, None, min_value=1, optional=True),
}


class CycleArbitrageStrategy(BaseStrategy):
    """
    Engine-scope strategy that reserves accounts ahead of each hourly
    cycle and commits them inside the cycle's action window.
    """

    STRATEGY_TYPE: ClassVar[StrategyType]
    PARAMETERS: ClassVar[dict[str, ParameterSpec]] = dict(COMMON_PARAMETERS)

    def __init__(self, config: StrategyConfig, context: StrategyContext):
        super().__init__(config, context)
        self._protocol: CandidateReservationProtocol | None = None

    @property
    def protocol(self) -> CandidateReservationProtocol:
        if self._protocol is None:
            raise InitializationError(f"Strategy {self.name} is not initialized")
        return self._protocol

    # ------------------------------------------------------------------
    # Subclass hooks
    # ------------------------------------------------------------------

    @abstractmethod
    def scan_window_seconds(self) -> float:
        """Time-to-expiry at or below which the cycle is in its action window."""

    @abstractmethod
    def reservation_cost(self) -> float:
        """Risk reserved per account and opportunity."""

    @abstractmethod
    def build_order(self, market: MarketSnapshot) -> dict[str, Any] | None:
        """Order parameters for a market in its action window, or None to pass."""

    def action_allowed(self, opportunity: Opportunity, now: datetime) -> bool:
        """Extra gate inside the action window."""
        return True

    def accepts_market(self, market: MarketSnapshot, now: datetime) -> bool:
        return market.is_live(now) and market.is_hourly()

    def positions_opened(self, market: MarketSnapshot, account_ids: list[str]) -> None:
        """Called after a commit with the accounts that now hold a position."""

    # ------------------------------------------------------------------
    # Lifecycle hooks
    # ------------------------------------------------------------------

    async def on_initialize(self) -> None:
        registry = self._context.registry
        if registry is None:
            raise StrategyConfigError(f"Strategy {self.name} needs the account registry")

        venue = self._context.venue
        self._protocol = CandidateReservationProtocol(
            registry=registry,
            strategy_type=self.STRATEGY_TYPE,
            prepare=venue.prepare_account,
            execute=venue.execute_action,
            max_concurrent_positions=self._params["max_concurrent_positions"],
            scan_window_seconds=self.scan_window_seconds(),
            cost=self.reservation_cost(),
            prepare_cooldown_seconds=self._params["prepare_cooldown_seconds"],
            prepare_cooldown_max_seconds=self._params["prepare_cooldown_max_seconds"],
            max_reservations_per_account=self._params["max_reservations_per_account"],
            event_bus=self._context.event_bus,
            name=self.name,
        )

    async def on_start(self) -> None:
        self.set_timer(
            "market_scan",
            self.scheduled_execute,
            max(self._params["scan_interval_seconds"], self._params["market_scan_interval_seconds"]),
        )
        self.set_timer(
            "housekeeping",
            self.collect_expired,
            self._params["housekeeping_interval_seconds"],
        )

    async def on_stop(self) -> None:
        if self._protocol is not None:
            await self._protocol.clear()

    async def on_account_withdrawn(self, account_id: str) -> None:
        if self._protocol is not None:
            await self._protocol.withdraw_account(account_id)

    async def collect_expired(self) -> int:
        expired = await self.protocol.collect_expired()
        if expired:
            self.increment("expired_cycles", len(expired))
        return len(expired)

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    async def on_execute(self, snapshot: TickSnapshot) -> ExecutionResult:
        now = datetime.now(timezone.utc)
        protocol = self.protocol
        await protocol.collect_expired(now)

        markets = [m for m in snapshot.markets if self.accepts_market(m, now)]
        self.increment("markets_scanned", len(markets))
        if not markets:
            return ExecutionResult.idle("no eligible markets", tick_id=snapshot.tick_id)

        reserved = 0
        committed = 0
        failed = 0
        opportunities = 0

        for market in markets:
            try:
                opportunity = protocol.track(market, now)

                if opportunity.time_to_expiry(now) > protocol.scan_window:
                    pre_auth = await protocol.pre_authorize(opportunity, now)
                    reserved += len(pre_auth.reserved)
                    continue

                if not self.action_allowed(opportunity, now):
                    continue

                order = self.build_order(market)
                if order is None:
                    continue
                opportunities += 1
                self.increment("opportunities_found")

                result = await protocol.commit(opportunity, order, now)
                committed += len(result.succeeded)
                failed += len(result.failed)
                if result.succeeded:
                    self.positions_opened(market, result.succeeded)
                self.increment("positions_opened", len(result.succeeded))
                self.increment("amount_committed", order["amount"] * len(result.succeeded))

            except Exception as e:
                self.increment("market_errors")
                logger.error(f"Strategy {self.name}: failed processing market {market.market_id}: {e}")

        action = "commit" if committed or failed else ("reserve" if reserved else "scan")
        return ExecutionResult(
            action=action,
            payload={
                "tick_id": snapshot.tick_id,
                "markets": len(markets),
                "opportunities": opportunities,
                "reserved": reserved,
                "committed": committed,
                "failed": failed,
            },
        )

    @staticmethod
    def order_params(
        market: MarketSnapshot,
        amount: float,
        outcome_index: int,
        price: float | None,
        **extra: Any,
    ) -> dict[str, Any]:
        return {
            "market_id": market.market_id,
            "amount": amount,
            "outcome_index": outcome_index,
            "price": price,
            "end_time": market.end_time.isoformat(),
            **extra,
        }

    def get_status(self) -> dict[str, Any]:
        status = super().get_status()
        if self._protocol is not None:
            status["reservations"] = self._protocol.get_status()
        return status
