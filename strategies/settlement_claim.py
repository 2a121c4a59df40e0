"""
Settlement Claim Strategy
=========================

Per-account housekeeping: claims the payout of positions whose market
has closed. Runs only between claim_start_minute and claim_end_minute
of each hour, leaving the settlement minutes to the arbitrage
strategies.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, ClassVar

from core.account_registry import AccountNotFoundError
from core.market import TickSnapshot
from core.strategy_base import BaseStrategy, ExecutionResult, ParameterSpec, StrategyConfigError


logger = logging.getLogger(__name__)


class SettlementClaimStrategy(BaseStrategy):
    """Claims settled positions of one account."""

    PARAMETERS: ClassVar[dict[str, ParameterSpec]] = {
        "claim_interval_seconds": ParameterSpec(float, 60.0, min_value=1.0),
        "claim_start_minute": ParameterSpec(int, 20, min_value=0, max_value=59),
        "claim_end_minute": ParameterSpec(int, 40, min_value=0, max_value=59),
        "settle_delay_seconds": ParameterSpec(float, 0.0, min_value=0.0),
        "max_claims_per_pass": ParameterSpec(int, 20, min_value=1),
    }

    @classmethod
    def check_parameter_consistency(cls, params: dict[str, Any]) -> None:
        if params["claim_start_minute"] > params["claim_end_minute"]:
            raise StrategyConfigError("claim_start_minute must not exceed claim_end_minute")

    async def on_initialize(self) -> None:
        if self.account_id is None:
            raise StrategyConfigError(f"Strategy {self.name} must be bound to an account")

    async def on_start(self) -> None:
        self.set_timer("claim", self.scheduled_execute, self._params["claim_interval_seconds"])

    def in_claim_window(self, now: datetime) -> bool:
        return self._params["claim_start_minute"] <= now.minute <= self._params["claim_end_minute"]

    def _account_active(self) -> bool:
        registry = self._context.registry
        if registry is None:
            return True
        try:
            return registry.get(self.account_id).is_active
        except AccountNotFoundError:
            return False

    def is_claimable(self, position: dict[str, Any], now: datetime) -> bool:
        if position.get("claimed") or position.get("sold"):
            return False
        if position.get("closed"):
            return True
        end_time = position.get("end_time")
        if not end_time:
            return False
        if isinstance(end_time, str):
            end_time = datetime.fromisoformat(end_time)
        return end_time + timedelta(seconds=self._params["settle_delay_seconds"]) <= now

    async def on_execute(self, snapshot: TickSnapshot) -> ExecutionResult:
        now = datetime.now(timezone.utc)
        if not self.in_claim_window(now):
            return ExecutionResult.idle("outside claim window", minute=now.minute)
        if not self._account_active():
            return ExecutionResult.idle("account inactive")

        venue = self._context.venue
        positions = await venue.fetch_positions(self.account_id)
        claimable = [p for p in positions if self.is_claimable(p, now)]
        if not claimable:
            return ExecutionResult.idle("nothing to claim", positions=len(positions))

        claimed: list[str] = []
        rejected: list[str] = []
        for position in claimable[: self._params["max_claims_per_pass"]]:
            position_id = position["position_id"]
            if await venue.claim_position(self.account_id, position_id):
                claimed.append(position_id)
            else:
                rejected.append(position_id)

        self.increment("positions_claimed", len(claimed))
        self.increment("claims_rejected", len(rejected))
        if rejected:
            logger.warning(f"Strategy {self.name}: {len(rejected)} claim(s) rejected by venue")
        if claimed:
            logger.info(f"Strategy {self.name}: claimed {len(claimed)} position(s)")

        return ExecutionResult(
            action="claim",
            payload={"claimed": claimed, "rejected": rejected, "pending": len(claimable) - len(claimed)},
            success=not rejected or bool(claimed),
            error=f"{len(rejected)} claim(s) rejected" if rejected else None,
        )
