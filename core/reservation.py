"""
Candidate Reservation
=====================

Two-phase reservation of accounts for time-bounded opportunities.

Phase 1 (pre-authorization) runs while the opportunity is still outside
its action window: it tops the scope up to max_concurrent_positions
reserved accounts, running the venue preparation step (allowance
approval) for each pick. It never evicts existing entries.

Phase 2 (commit) runs inside the action window: each reserved entry is
taken out of the pool before the venue action. A successful action
consumes the account for that opportunity for good; a failed one puts
the entry back before the failure is reported.

Pools live in memory only and are discarded once the opportunity's
deadline has passed.

Pool invariants, per protocol instance (one account-pool scope):
- reserved + pending + in-flight entries across all opportunities never
  exceed max_concurrent_positions
- an account appears at most once per opportunity
- a consumed account never re-enters the same opportunity's pool
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from core.account_registry import AccountNotFoundError, AccountRegistry, RiskLimitExceededError
from core.events import ReservationEvent, TradeEvent
from core.market import MarketSnapshot
from core.strategy_types import StrategyType

if TYPE_CHECKING:
    from core.event_bus import EventBus


logger = logging.getLogger(__name__)


PrepareFn = Callable[[str, str, float], Awaitable[bool]]
ExecuteFn = Callable[[str, str, dict[str, Any]], Awaitable[bool]]


class ReservationError(Exception):
    """Base class for reservation errors."""

    def __init__(self, account_id: str, opportunity_key: str, reason: str):
        self.account_id = account_id
        self.opportunity_key = opportunity_key
        self.reason = reason
        super().__init__(f"{type(self).__name__}: account {account_id} on {opportunity_key}: {reason}")


class ReservationPrepareFailure(ReservationError):
    """The venue preparation step failed; the account stays eligible."""


class ActionExecutionFailure(ReservationError):
    """The venue action failed; the reservation was put back in the pool."""


@dataclass(frozen=True)
class OpportunityKey:
    """Market id plus cycle boundary: one hourly market is one key per hour."""
    market_id: str
    cycle_end_ms: int

    @classmethod
    def from_market(cls, market: MarketSnapshot) -> "OpportunityKey":
        return cls(market_id=market.market_id, cycle_end_ms=market.cycle_end_ms)

    def __str__(self) -> str:
        return f"{self.market_id}_{self.cycle_end_ms}"


@dataclass
class ExecutionHandle:
    """
    A reserved account, ready for the commit phase.

    client is the account's own venue connection when it has one; venue
    calls for the account go through it instead of the shared venue.
    """
    account_id: str
    opportunity_key: str
    cost: float
    reserved_at: datetime
    client: Any = field(default=None, repr=False)
    attempts: int = 0


@dataclass
class CandidatePool:
    """Accounts reserved for one opportunity."""
    entries: dict[str, ExecutionHandle] = field(default_factory=dict)
    pending: set[str] = field(default_factory=set)
    in_flight: dict[str, ExecutionHandle] = field(default_factory=dict)
    consumed: set[str] = field(default_factory=set)

    @property
    def size(self) -> int:
        """Slots held against the scope cap."""
        return len(self.entries) + len(self.pending) + len(self.in_flight)

    def holds(self, account_id: str) -> bool:
        return account_id in self.entries or account_id in self.pending or account_id in self.in_flight

    def accounts(self) -> list[str]:
        return list(self.entries)

    def __len__(self) -> int:
        return len(self.entries)

    def __contains__(self, account_id: object) -> bool:
        return account_id in self.entries


@dataclass
class Opportunity:
    """A time-bounded chance to act, with its candidate pool."""
    key: OpportunityKey
    market: MarketSnapshot
    discovered_at: datetime
    deadline: datetime
    pool: CandidatePool = field(default_factory=CandidatePool)

    def time_to_expiry(self, now: datetime | None = None) -> timedelta:
        return self.deadline - (now or datetime.now(timezone.utc))

    def is_expired(self, now: datetime | None = None) -> bool:
        return self.time_to_expiry(now) <= timedelta(0)


@dataclass
class PreAuthorizationResult:
    opportunity_key: str
    need: int = 0
    reserved: list[str] = field(default_factory=list)
    failed: list[str] = field(default_factory=list)
    risk_rejected: list[str] = field(default_factory=list)
    skipped_reason: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "opportunity": self.opportunity_key,
            "need": self.need,
            "reserved": list(self.reserved),
            "failed": list(self.failed),
            "risk_rejected": list(self.risk_rejected),
            "skipped_reason": self.skipped_reason,
        }


@dataclass
class CommitResult:
    opportunity_key: str
    succeeded: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)
    skipped_reason: str | None = None

    @property
    def attempted(self) -> int:
        return len(self.succeeded) + len(self.failed)

    def to_dict(self) -> dict[str, Any]:
        return {
            "opportunity": self.opportunity_key,
            "succeeded": list(self.succeeded),
            "failed": dict(self.failed),
            "skipped_reason": self.skipped_reason,
        }


@dataclass
class _Cooldown:
    failures: int
    until: datetime


class CandidateReservationProtocol:
    """
    Reservation pools for one strategy (one account-pool scope).

    Selection, snapshot and take run under the scope lock. The
    bookkeeping that follows a venue call (pending -> entry, in-flight ->
    consumed or back to entries) is synchronous and never awaits
    mid-update. Venue calls always run outside the lock.
    """

    def __init__(
        self,
        registry: AccountRegistry,
        strategy_type: StrategyType,
        prepare: PrepareFn,
        execute: ExecuteFn,
        max_concurrent_positions: int = 1,
        scan_window_seconds: float = 300.0,
        cost: float = 10.0,
        prepare_cooldown_seconds: float = 30.0,
        prepare_cooldown_max_seconds: float = 600.0,
        max_reservations_per_account: int | None = None,
        event_bus: EventBus | None = None,
        name: str = "reservation",
    ):
        if max_concurrent_positions < 0:
            raise ValueError("max_concurrent_positions must be >= 0")
        self._registry = registry
        self._strategy_type = strategy_type
        self._prepare = prepare
        self._execute = execute
        self.max_concurrent_positions = max_concurrent_positions
        self.scan_window = timedelta(seconds=scan_window_seconds)
        self.cost = cost
        self._cooldown_base = prepare_cooldown_seconds
        self._cooldown_max = prepare_cooldown_max_seconds
        self.max_reservations_per_account = max_reservations_per_account
        self._event_bus = event_bus
        self._name = name

        self._opportunities: dict[OpportunityKey, Opportunity] = {}
        self._cooldowns: dict[str, _Cooldown] = {}
        self._lock = asyncio.Lock()

        self._stats = {
            "prepared": 0,
            "prepare_failures": 0,
            "risk_rejections": 0,
            "committed": 0,
            "commit_failures": 0,
            "reinserted": 0,
            "expired_pools": 0,
            "expired_entries": 0,
        }

    # ------------------------------------------------------------------
    # Opportunities
    # ------------------------------------------------------------------

    def track(self, market: MarketSnapshot, now: datetime | None = None) -> Opportunity:
        """Return the opportunity for this market cycle, creating it on first sight."""
        key = OpportunityKey.from_market(market)
        opportunity = self._opportunities.get(key)
        if opportunity is None:
            opportunity = Opportunity(
                key=key,
                market=market,
                discovered_at=now or datetime.now(timezone.utc),
                deadline=market.end_time,
            )
            self._opportunities[key] = opportunity
            logger.debug(f"{self._name}: tracking opportunity {key}")
        else:
            opportunity.market = market
        return opportunity

    def get_opportunity(self, key: OpportunityKey) -> Opportunity | None:
        return self._opportunities.get(key)

    def opportunities(self) -> list[Opportunity]:
        return list(self._opportunities.values())

    def pool_accounts(self, key: OpportunityKey) -> list[str]:
        opportunity = self._opportunities.get(key)
        return opportunity.pool.accounts() if opportunity else []

    def scope_size(self) -> int:
        """Slots held across every opportunity of this scope."""
        return sum(o.pool.size for o in self._opportunities.values())

    def in_action_window(self, opportunity: Opportunity, now: datetime | None = None) -> bool:
        remaining = opportunity.time_to_expiry(now)
        return timedelta(0) < remaining <= self.scan_window

    # ------------------------------------------------------------------
    # Phase 1: pre-authorization
    # ------------------------------------------------------------------

    async def pre_authorize(
        self,
        opportunity: Opportunity,
        now: datetime | None = None,
    ) -> PreAuthorizationResult:
        """
        Reserve up to the free scope capacity for one opportunity.

        Only runs while time-to-expiry is greater than the scan window.
        Failed preparations are skipped (not retried in this pass) and
        put the account on a cooldown.
        """
        now = now or datetime.now(timezone.utc)
        key = str(opportunity.key)
        result = PreAuthorizationResult(opportunity_key=key)

        if opportunity.key not in self._opportunities:
            result.skipped_reason = "opportunity not tracked"
            return result
        if opportunity.time_to_expiry(now) <= self.scan_window:
            result.skipped_reason = "inside action window"
            return result

        async with self._lock:
            need = self.max_concurrent_positions - self.scope_size()
            result.need = max(0, need)
            if need <= 0:
                return result

            pool = opportunity.pool
            picks = []
            for account in self._registry.list_eligible(self._strategy_type):
                if len(picks) >= need:
                    break
                account_id = account.account_id
                if pool.holds(account_id) or account_id in pool.consumed:
                    continue
                if self._cooling_down(account_id, now):
                    continue
                if not self._under_account_cap(account_id):
                    continue
                pool.pending.add(account_id)
                picks.append(account)

        if not picks:
            return result

        outcomes = await asyncio.gather(
            *(self._prepare_one(opportunity, account.account_id, account.client, now) for account in picks),
            return_exceptions=True,
        )
        for account, outcome in zip(picks, outcomes):
            if outcome == "reserved":
                result.reserved.append(account.account_id)
            elif outcome == "risk":
                result.risk_rejected.append(account.account_id)
            else:
                result.failed.append(account.account_id)
                if isinstance(outcome, BaseException):
                    logger.error(f"{self._name}: unexpected prepare error for {account.account_id}: {outcome}")

        if result.reserved or result.failed:
            logger.info(
                f"{self._name}: pre-authorized {len(result.reserved)}/{result.need} on {key} "
                f"({len(result.failed)} failed, scope {self.scope_size()}/{self.max_concurrent_positions})"
            )
        return result

    async def _prepare_one(self, opportunity: Opportunity, account_id: str, client: Any, now: datetime) -> str:
        pool = opportunity.pool
        key = str(opportunity.key)

        try:
            await self._registry.check_risk_limit(account_id, self.cost)
        except RiskLimitExceededError as e:
            pool.pending.discard(account_id)
            self._stats["risk_rejections"] += 1
            logger.info(f"{self._name}: {e}")
            return "risk"
        except AccountNotFoundError:
            pool.pending.discard(account_id)
            return "missing"

        error: str | None = None
        ok = False
        try:
            prepare = client.prepare_account if client is not None else self._prepare
            ok = bool(await prepare(account_id, key, self.cost))
            if not ok:
                error = "venue rejected preparation"
        except asyncio.CancelledError:
            pool.pending.discard(account_id)
            await self._registry.release_risk(account_id, self.cost)
            raise
        except Exception as e:
            error = str(e) or type(e).__name__
        finally:
            # pending -> entry in one step so the slot is never uncounted
            pool.pending.discard(account_id)
            reserved = ok and self._is_tracked(opportunity)
            if reserved:
                pool.entries[account_id] = ExecutionHandle(
                    account_id=account_id,
                    opportunity_key=key,
                    cost=self.cost,
                    reserved_at=datetime.now(timezone.utc),
                    client=client,
                )

        if reserved:
            self._cooldowns.pop(account_id, None)
            self._stats["prepared"] += 1
            await self._publish(ReservationEvent(
                source=self._name,
                strategy_name=self._name,
                account_id=account_id,
                opportunity_key=key,
                success=True,
            ))
            return "reserved"

        await self._registry.release_risk(account_id, self.cost)
        if ok:
            return "expired"

        failure = ReservationPrepareFailure(account_id, key, error or "unknown")
        self._stats["prepare_failures"] += 1
        cooldown = self._start_cooldown(account_id, now)
        logger.warning(f"{self._name}: {failure} (cooldown {cooldown:.0f}s)")
        await self._publish(ReservationEvent(
            source=self._name,
            strategy_name=self._name,
            account_id=account_id,
            opportunity_key=key,
            success=False,
            error=failure.reason,
        ))
        return "failed"

    def _is_tracked(self, opportunity: Opportunity) -> bool:
        return self._opportunities.get(opportunity.key) is opportunity

    def _account_active(self, account_id: str) -> bool:
        return account_id in self._registry and self._registry.get(account_id).is_active

    def _cooling_down(self, account_id: str, now: datetime) -> bool:
        cooldown = self._cooldowns.get(account_id)
        return cooldown is not None and now < cooldown.until

    def _start_cooldown(self, account_id: str, now: datetime) -> float:
        if self._cooldown_base <= 0:
            return 0.0
        previous = self._cooldowns.get(account_id)
        failures = previous.failures + 1 if previous else 1
        delay = min(self._cooldown_base * (2 ** (failures - 1)), self._cooldown_max)
        self._cooldowns[account_id] = _Cooldown(failures=failures, until=now + timedelta(seconds=delay))
        return delay

    def _under_account_cap(self, account_id: str) -> bool:
        if self.max_reservations_per_account is None:
            return True
        held = sum(1 for o in self._opportunities.values() if o.pool.holds(account_id))
        return held < self.max_reservations_per_account

    # ------------------------------------------------------------------
    # Phase 2: commit
    # ------------------------------------------------------------------

    async def commit(
        self,
        opportunity: Opportunity,
        params: dict[str, Any],
        now: datetime | None = None,
    ) -> CommitResult:
        """
        Act for every reserved account of one opportunity.

        Each entry is handled independently; partial success is normal.
        Failed entries are back in the pool when this returns.
        """
        now = now or datetime.now(timezone.utc)
        result = CommitResult(opportunity_key=str(opportunity.key))

        if not self._is_tracked(opportunity):
            result.skipped_reason = "opportunity not tracked"
            return result
        if not self.in_action_window(opportunity, now):
            result.skipped_reason = (
                "deadline passed" if opportunity.is_expired(now) else "before action window"
            )
            return result

        async with self._lock:
            account_ids = opportunity.pool.accounts()

        if not account_ids:
            result.skipped_reason = "no reserved accounts"
            return result

        outcomes = await asyncio.gather(
            *(self.commit_one(opportunity, account_id, params) for account_id in account_ids),
            return_exceptions=True,
        )
        for account_id, outcome in zip(account_ids, outcomes):
            if outcome is True:
                result.succeeded.append(account_id)
            elif isinstance(outcome, ActionExecutionFailure):
                result.failed[account_id] = outcome.reason
            elif isinstance(outcome, BaseException):
                logger.error(f"{self._name}: unexpected commit error for {account_id}: {outcome}")
                result.failed[account_id] = str(outcome)

        logger.info(
            f"{self._name}: commit on {result.opportunity_key}: "
            f"{len(result.succeeded)} succeeded, {len(result.failed)} failed"
        )
        return result

    async def commit_one(self, opportunity: Opportunity, account_id: str, params: dict[str, Any]) -> bool:
        """
        Take one reserved entry and perform the venue action.

        Returns:
            True if the action succeeded, False if the account held no
            entry (already taken or never reserved)

        Raises:
            ActionExecutionFailure: the action failed; the entry is back
                in the pool when this is raised
        """
        pool = opportunity.pool
        key = str(opportunity.key)

        async with self._lock:
            handle = pool.entries.pop(account_id, None)
            if handle is None:
                return False
            withdrawn = not self._account_active(account_id)
            if not withdrawn:
                pool.in_flight[account_id] = handle
                handle.attempts += 1

        if withdrawn:
            await self._registry.release_risk(account_id, handle.cost)
            logger.info(f"{self._name}: account {account_id} no longer active, reservation on {key} dropped")
            return False

        execute = handle.client.execute_action if handle.client is not None else self._execute

        ok = False
        error = "cancelled"
        cause: BaseException | None = None
        release = False
        try:
            ok = bool(await execute(account_id, key, params))
            if not ok:
                error = "venue rejected action"
        except Exception as e:
            error = str(e) or type(e).__name__
            cause = e
        finally:
            pool.in_flight.pop(account_id, None)
            if ok:
                pool.consumed.add(account_id)
            elif self._is_tracked(opportunity):
                pool.entries[account_id] = handle
                self._stats["reinserted"] += 1
            else:
                release = True

        if release:
            await self._registry.release_risk(account_id, handle.cost)

        amount = float(params.get("amount", handle.cost))
        if ok:
            self._stats["committed"] += 1
            logger.info(f"{self._name}: account {account_id} executed on {key}")
            await self._publish(TradeEvent(
                source=self._name,
                strategy_name=self._name,
                account_id=account_id,
                opportunity_key=key,
                success=True,
                amount=amount,
                details=_plain(params),
            ))
            return True

        self._stats["commit_failures"] += 1
        logger.warning(f"{self._name}: account {account_id} action failed on {key}: {error}")
        await self._publish(TradeEvent(
            source=self._name,
            strategy_name=self._name,
            account_id=account_id,
            opportunity_key=key,
            success=False,
            amount=amount,
            error=error,
            details=_plain(params),
        ))
        raise ActionExecutionFailure(account_id, key, error) from cause

    # ------------------------------------------------------------------
    # Garbage collection
    # ------------------------------------------------------------------

    async def collect_expired(self, now: datetime | None = None) -> list[OpportunityKey]:
        """Discard every opportunity whose deadline has passed, whatever its fill state."""
        now = now or datetime.now(timezone.utc)
        leftovers: list[ExecutionHandle] = []

        async with self._lock:
            expired = [o for o in self._opportunities.values() if o.is_expired(now)]
            for opportunity in expired:
                del self._opportunities[opportunity.key]
                leftovers.extend(opportunity.pool.entries.values())
                opportunity.pool.entries.clear()

        for handle in leftovers:
            await self._registry.release_risk(handle.account_id, handle.cost)

        if expired:
            self._stats["expired_pools"] += len(expired)
            self._stats["expired_entries"] += len(leftovers)
            logger.info(
                f"{self._name}: discarded {len(expired)} expired pool(s), "
                f"{len(leftovers)} unused reservation(s) released"
            )
        return [o.key for o in expired]

    async def withdraw_account(self, account_id: str) -> int:
        """
        Drop the account's reserved entries from every pool and release their risk.

        Entries already in flight are left to their commit, which drops
        them once it sees the account is gone. Returns the number dropped.
        """
        async with self._lock:
            dropped = [
                o.pool.entries.pop(account_id)
                for o in self._opportunities.values()
                if account_id in o.pool.entries
            ]
            self._cooldowns.pop(account_id, None)

        for handle in dropped:
            await self._registry.release_risk(account_id, handle.cost)
        if dropped:
            logger.info(f"{self._name}: withdrew account {account_id} from {len(dropped)} pool(s)")
        return len(dropped)

    async def clear(self) -> None:
        """Drop every pool and release unused reservations."""
        async with self._lock:
            opportunities = list(self._opportunities.values())
            self._opportunities.clear()
        for opportunity in opportunities:
            for handle in opportunity.pool.entries.values():
                await self._registry.release_risk(handle.account_id, handle.cost)
            opportunity.pool.entries.clear()
        self._cooldowns.clear()

    # ------------------------------------------------------------------

    async def _publish(self, event: Any) -> None:
        if self._event_bus is not None:
            await self._event_bus.publish(event)

    def get_status(self) -> dict[str, Any]:
        return {
            "scope_size": self.scope_size(),
            "max_concurrent_positions": self.max_concurrent_positions,
            "scan_window_seconds": self.scan_window.total_seconds(),
            "opportunities": {
                str(o.key): {
                    "reserved": o.pool.accounts(),
                    "pending": sorted(o.pool.pending),
                    "in_flight": sorted(o.pool.in_flight),
                    "consumed": len(o.pool.consumed),
                    "deadline": o.deadline.isoformat(),
                }
                for o in self._opportunities.values()
            },
            "cooldowns": {
                account_id: c.until.isoformat() for account_id, c in self._cooldowns.items()
            },
            "stats": dict(self._stats),
        }


def _plain(params: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in params.items() if isinstance(v, (str, int, float, bool, type(None)))}
