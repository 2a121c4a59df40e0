"""
Market Snapshots
================

Immutable views of venue markets. The scheduler fetches markets once per
tick and hands the same TickSnapshot to every strategy execution.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OutcomePrices:
    """Best prices for the two outcomes of a binary market."""
    yes: float | None = None
    no: float | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "OutcomePrices | None":
        if not data:
            return None
        yes = data.get("YES", data.get("yes"))
        no = data.get("NO", data.get("no"))
        return cls(
            yes=float(yes) if yes is not None else None,
            no=float(no) if no is not None else None,
        )


@dataclass(frozen=True)
class MarketSnapshot:
    """
    One venue market at fetch time.

    end_time is the settlement boundary of the current cycle. A market
    recurring every hour produces a new end_time per cycle.
    """
    market_id: str
    end_time: datetime
    title: str = ""
    tags: tuple[str, ...] = ()
    expired: bool = False
    address: str | None = None
    prices: OutcomePrices | None = None
    feed_prices: OutcomePrices | None = None

    @property
    def cycle_end_ms(self) -> int:
        return int(self.end_time.timestamp() * 1000)

    def time_to_expiry(self, now: datetime | None = None) -> timedelta:
        now = now or datetime.now(timezone.utc)
        return self.end_time - now

    def is_live(self, now: datetime | None = None) -> bool:
        """Not flagged expired and settlement still ahead."""
        return not self.expired and self.time_to_expiry(now) > timedelta(0)

    def is_hourly(self) -> bool:
        """Tagged hourly, or settling on the hour with an hourly title."""
        if any("hourly" in tag.lower() for tag in self.tags):
            return True
        title = self.title.lower()
        on_the_hour = self.end_time.minute == 0 and self.end_time.second == 0
        return on_the_hour and ("hourly" in title or "hour" in title)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MarketSnapshot":
        """Build from a venue market record (camelCase or snake_case keys)."""
        market_id = data.get("market_id") or data.get("conditionId") or data.get("id")
        if not market_id:
            raise ValueError("market record has no id")

        end_time = _parse_end_time(data)
        tags = data.get("tags") or ()

        return cls(
            market_id=str(market_id),
            end_time=end_time,
            title=data.get("title", "") or "",
            tags=tuple(str(t) for t in tags),
            expired=bool(data.get("expired", False)),
            address=data.get("address"),
            prices=OutcomePrices.from_dict(data.get("prices")),
            feed_prices=OutcomePrices.from_dict(data.get("feed_prices") or data.get("feedPrices")),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "market_id": self.market_id,
            "end_time": self.end_time.isoformat(),
            "title": self.title,
            "tags": list(self.tags),
            "expired": self.expired,
            "address": self.address,
            "prices": {"YES": self.prices.yes, "NO": self.prices.no} if self.prices else None,
            "feed_prices": (
                {"YES": self.feed_prices.yes, "NO": self.feed_prices.no} if self.feed_prices else None
            ),
        }


def _parse_end_time(data: dict[str, Any]) -> datetime:
    value = data.get("end_time") or data.get("endDate")
    if isinstance(value, datetime):
        end_time = value
    elif isinstance(value, str):
        end_time = datetime.fromisoformat(value.replace("Z", "+00:00"))
    elif data.get("expirationTimestamp") is not None:
        end_time = datetime.fromtimestamp(int(data["expirationTimestamp"]) / 1000, timezone.utc)
    else:
        raise ValueError(f"market {data.get('id')} has no end time")

    if end_time.tzinfo is None:
        end_time = end_time.replace(tzinfo=timezone.utc)
    return end_time


@dataclass(frozen=True)
class TickSnapshot:
    """Markets fetched once for one scheduler tick."""
    tick_id: int = 0
    fetched_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    markets: tuple[MarketSnapshot, ...] = ()
    fetch_error: str | None = None

    @classmethod
    def empty(cls, tick_id: int = 0, error: str | None = None) -> "TickSnapshot":
        return cls(tick_id=tick_id, fetch_error=error)

    @classmethod
    def from_records(cls, tick_id: int, records: list[Any]) -> "TickSnapshot":
        """Normalize venue records, dropping those that cannot be parsed."""
        markets: list[MarketSnapshot] = []
        for record in records:
            if isinstance(record, MarketSnapshot):
                markets.append(record)
                continue
            try:
                markets.append(MarketSnapshot.from_dict(record))
            except (ValueError, TypeError, KeyError) as e:
                logger.debug(f"Skipping unparseable market record: {e}")
        return cls(tick_id=tick_id, markets=tuple(markets))

    def live_markets(self, now: datetime | None = None) -> list[MarketSnapshot]:
        now = now or datetime.now(timezone.utc)
        return [m for m in self.markets if m.is_live(now)]

    def __len__(self) -> int:
        return len(self.markets)
