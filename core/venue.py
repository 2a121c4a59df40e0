"""
Venue Boundary
==============

Async operations consumed from the external market venue, plus an
in-memory paper venue used in paper mode and tests.

The venue client, chain signing and proxy transport are external
collaborators: the orchestrator only sees success/failure outcomes.

PaperVenue scenarios:
1. Transient market fetch errors
2. Rejected account preparation (allowance approval)
3. Rejected order placement
4. Rejected settlement claims
5. Rejected position sales

Recurring markets are listed again for every hourly cycle, with prices
drawn from the seeded generator.
"""

from __future__ import annotations

import asyncio
import logging
import random
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Protocol, runtime_checkable

from core.market import MarketSnapshot, OutcomePrices

logger = logging.getLogger(__name__)


class VenueError(Exception):
    """Raised by a venue operation that failed outright."""


@runtime_checkable
class VenueClient(Protocol):
    """Operations the orchestrator needs from a venue."""

    async def fetch_markets(self) -> list[MarketSnapshot | dict[str, Any]]:
        ...

    async def prepare_account(self, account_id: str, opportunity_key: str, cost: float) -> bool:
        ...

    async def execute_action(self, account_id: str, opportunity_key: str, params: dict[str, Any]) -> bool:
        ...

    async def fetch_positions(self, account_id: str) -> list[dict[str, Any]]:
        ...

    async def claim_position(self, account_id: str, position_id: str) -> bool:
        ...

    async def sell_position(self, account_id: str, position_id: str, min_return: float) -> bool:
        ...


class VenueFailure(Enum):
    """Failure scenarios the paper venue can inject."""
    FETCH_ERROR = "fetch_error"
    PREPARE_REJECTED = "prepare_rejected"
    ACTION_REJECTED = "action_rejected"
    CLAIM_REJECTED = "claim_rejected"
    SELL_REJECTED = "sell_rejected"


@dataclass
class PaperPosition:
    """A filled paper order held by one account."""
    position_id: str
    account_id: str
    market_id: str
    opportunity_key: str
    amount: float
    outcome_index: int | None = None
    price: float | None = None
    end_time: datetime | None = None
    claimed: bool = False
    sold: bool = False
    sold_for: float | None = None
    opened_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def to_dict(self) -> dict[str, Any]:
        return {
            "position_id": self.position_id,
            "account_id": self.account_id,
            "market_id": self.market_id,
            "opportunity_key": self.opportunity_key,
            "amount": self.amount,
            "outcome_index": self.outcome_index,
            "price": self.price,
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "claimed": self.claimed,
            "sold": self.sold,
            "sold_for": self.sold_for,
            "opened_at": self.opened_at.isoformat(),
        }


@dataclass
class RecurringMarket:
    """An hourly market the paper venue lists again for every cycle."""
    market_id: str
    title: str = ""

    def snapshot(self, now: datetime, rng: random.Random) -> MarketSnapshot:
        end_time = now.replace(minute=0, second=0, microsecond=0) + timedelta(hours=1)
        yes = round(rng.uniform(0.01, 0.99), 3)
        feed_yes = round(min(max(yes + rng.uniform(-0.1, 0.1), 0.01), 0.99), 3)
        return MarketSnapshot(
            market_id=self.market_id,
            end_time=end_time,
            title=self.title,
            tags=("hourly",),
            prices=OutcomePrices(yes=yes, no=round(1 - yes, 3)),
            feed_prices=OutcomePrices(yes=feed_yes, no=round(1 - feed_yes, 3)),
        )


class PaperVenue:
    """
    In-memory venue with reproducible failure injection.

    Usage:
        venue = PaperVenue(seed=42)
        venue.set_markets([...])
        venue.enable_failure(VenueFailure.ACTION_REJECTED, probability=0.1)
        venue.fail_account("acct-3", VenueFailure.PREPARE_REJECTED)
    """

    def __init__(
        self,
        markets: list[MarketSnapshot] | None = None,
        seed: int | None = None,
        latency_seconds: float = 0.0,
        max_history: int = 1000,
    ):
        self._random = random.Random(seed)
        self._price_random = random.Random(seed)
        self._recurring: list[RecurringMarket] = []
        self._markets: list[MarketSnapshot] = list(markets or [])
        self._latency = latency_seconds
        self._failure_rates: dict[VenueFailure, float] = {}
        self._forced: dict[tuple[str, VenueFailure], int | None] = {}
        self._prepared: set[tuple[str, str]] = set()
        self._positions: dict[str, list[PaperPosition]] = {}
        self._history: deque[dict[str, Any]] = deque(maxlen=max_history)
        self._stats = {
            "fetches": 0,
            "prepares": 0,
            "actions": 0,
            "claims": 0,
            "sells": 0,
            "failures_by_scenario": {f.value: 0 for f in VenueFailure},
        }

    def set_markets(self, markets: list[MarketSnapshot]) -> None:
        self._markets = list(markets)

    def add_recurring_market(self, market_id: str, title: str = "") -> RecurringMarket:
        market = RecurringMarket(market_id=market_id, title=title)
        self._recurring.append(market)
        return market

    def enable_failure(self, scenario: VenueFailure, probability: float) -> None:
        """Fail a share of calls of one kind at random."""
        if not 0.0 <= probability <= 1.0:
            raise ValueError(f"probability must be within [0, 1], got {probability}")
        self._failure_rates[scenario] = probability
        logger.info(f"Paper venue: enabled {scenario.value} at p={probability}")

    def disable_failure(self, scenario: VenueFailure) -> None:
        self._failure_rates.pop(scenario, None)

    def fail_account(self, account_id: str, scenario: VenueFailure, times: int | None = None) -> None:
        """Force failures for one account; times=None fails until cleared."""
        self._forced[(account_id, scenario)] = times

    def clear_account_failures(self, account_id: str) -> None:
        for key in [k for k in self._forced if k[0] == account_id]:
            del self._forced[key]

    def _should_fail(self, account_id: str | None, scenario: VenueFailure) -> bool:
        if account_id is not None and (account_id, scenario) in self._forced:
            remaining = self._forced[(account_id, scenario)]
            if remaining is None:
                failed = True
            elif remaining > 0:
                self._forced[(account_id, scenario)] = remaining - 1
                failed = True
            else:
                del self._forced[(account_id, scenario)]
                failed = False
            if failed:
                self._stats["failures_by_scenario"][scenario.value] += 1
                return True

        probability = self._failure_rates.get(scenario, 0.0)
        if probability > 0 and self._random.random() < probability:
            self._stats["failures_by_scenario"][scenario.value] += 1
            return True
        return False

    async def _simulate_latency(self) -> None:
        if self._latency > 0:
            await asyncio.sleep(self._latency)
        else:
            await asyncio.sleep(0)

    def _record(self, operation: str, account_id: str | None, success: bool, **details: Any) -> None:
        self._history.append({
            "operation": operation,
            "account_id": account_id,
            "success": success,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            **details,
        })

    async def fetch_markets(self) -> list[MarketSnapshot]:
        self._stats["fetches"] += 1
        await self._simulate_latency()
        if self._should_fail(None, VenueFailure.FETCH_ERROR):
            self._record("fetch_markets", None, False)
            raise VenueError("simulated market fetch failure")
        now = datetime.now(timezone.utc)
        markets = self._markets + [r.snapshot(now, self._price_random) for r in self._recurring]
        self._record("fetch_markets", None, True, count=len(markets))
        return markets

    async def prepare_account(self, account_id: str, opportunity_key: str, cost: float) -> bool:
        self._stats["prepares"] += 1
        await self._simulate_latency()
        if self._should_fail(account_id, VenueFailure.PREPARE_REJECTED):
            self._record("prepare_account", account_id, False, opportunity_key=opportunity_key)
            return False
        self._prepared.add((account_id, opportunity_key))
        self._record("prepare_account", account_id, True, opportunity_key=opportunity_key, cost=cost)
        return True

    async def execute_action(self, account_id: str, opportunity_key: str, params: dict[str, Any]) -> bool:
        self._stats["actions"] += 1
        await self._simulate_latency()
        if self._should_fail(account_id, VenueFailure.ACTION_REJECTED):
            self._record("execute_action", account_id, False, opportunity_key=opportunity_key)
            return False

        market_id = params.get("market_id") or opportunity_key.rsplit("_", 1)[0]
        end_time = params.get("end_time")
        position = PaperPosition(
            position_id=str(uuid.uuid4()),
            account_id=account_id,
            market_id=market_id,
            opportunity_key=opportunity_key,
            amount=float(params.get("amount", 0.0)),
            outcome_index=params.get("outcome_index"),
            price=params.get("price"),
            end_time=datetime.fromisoformat(end_time) if isinstance(end_time, str) else end_time,
        )
        self._positions.setdefault(account_id, []).append(position)
        self._record("execute_action", account_id, True, opportunity_key=opportunity_key)
        return True

    async def fetch_positions(self, account_id: str) -> list[dict[str, Any]]:
        await self._simulate_latency()
        return [p.to_dict() for p in self._positions.get(account_id, [])]

    async def claim_position(self, account_id: str, position_id: str) -> bool:
        self._stats["claims"] += 1
        await self._simulate_latency()
        for position in self._positions.get(account_id, []):
            if position.position_id != position_id:
                continue
            if position.claimed or position.sold or self._should_fail(account_id, VenueFailure.CLAIM_REJECTED):
                self._record("claim_position", account_id, False, position_id=position_id)
                return False
            position.claimed = True
            self._record("claim_position", account_id, True, position_id=position_id)
            return True

        self._record("claim_position", account_id, False, position_id=position_id)
        return False

    async def sell_position(self, account_id: str, position_id: str, min_return: float) -> bool:
        """Sell the whole position back; paper fills exactly at min_return."""
        self._stats["sells"] += 1
        await self._simulate_latency()
        for position in self._positions.get(account_id, []):
            if position.position_id != position_id:
                continue
            if position.claimed or position.sold or self._should_fail(account_id, VenueFailure.SELL_REJECTED):
                self._record("sell_position", account_id, False, position_id=position_id)
                return False
            position.sold = True
            position.sold_for = min_return
            self._record("sell_position", account_id, True, position_id=position_id, min_return=min_return)
            return True

        self._record("sell_position", account_id, False, position_id=position_id)
        return False

    def is_prepared(self, account_id: str, opportunity_key: str) -> bool:
        return (account_id, opportunity_key) in self._prepared

    def actions_for(self, account_id: str) -> list[dict[str, Any]]:
        return [
            h for h in self._history
            if h["operation"] == "execute_action" and h["account_id"] == account_id
        ]

    def get_history(self, limit: int = 100) -> list[dict[str, Any]]:
        return list(self._history)[-limit:]

    def get_statistics(self) -> dict[str, Any]:
        return {
            **self._stats,
            "markets": len(self._markets),
            "recurring_markets": len(self._recurring),
            "open_positions": sum(
                1 for positions in self._positions.values() for p in positions
                if not (p.claimed or p.sold)
            ),
            "enabled_failures": {s.value: p for s, p in self._failure_rates.items()},
        }
