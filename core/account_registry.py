"""
Account Registry
================

One entry per trading account: identity, risk ceiling, venue handle and
the strategy instances bound to it.

Answers "which accounts are eligible for strategy X" and enforces the
per-account risk ceiling. The check-and-reserve step of the risk limit
is atomic per account.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import TYPE_CHECKING, Any

from core.strategy_base import BaseStrategy, StrategyState
from core.strategy_types import StrategyFactory, StrategyScope, StrategyType, UnknownStrategyTypeError

if TYPE_CHECKING:
    from core.config import AccountConfig


logger = logging.getLogger(__name__)


class AccountRegistryError(Exception):
    """Base class for registry errors."""


class DuplicateAccountError(AccountRegistryError):
    """An account with this id is already registered."""


class AccountNotFoundError(AccountRegistryError):
    """No account with this id."""


class RiskLimitExceededError(AccountRegistryError):
    """Reserving the requested cost would exceed the account's ceiling."""

    def __init__(self, account_id: str, cost: float, used: float, total: float):
        self.account_id = account_id
        self.cost = cost
        self.used = used
        self.total = total
        super().__init__(
            f"Account {account_id}: risk {used:.2f} + {cost:.2f} exceeds limit {total:.2f}"
        )


class RiskResetPolicy(Enum):
    """When used risk returns to zero."""
    NEVER = "never"
    HOURLY = "hourly"
    DAILY = "daily"

    @property
    def window(self) -> timedelta | None:
        if self == RiskResetPolicy.HOURLY:
            return timedelta(hours=1)
        if self == RiskResetPolicy.DAILY:
            return timedelta(days=1)
        return None


@dataclass
class RiskLimit:
    """Risk ceiling and the amount currently reserved against it."""
    total: float = 1000.0
    used: float = 0.0
    reset_policy: RiskResetPolicy = RiskResetPolicy.DAILY
    window_started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def available(self) -> float:
        return max(0.0, self.total - self.used)

    def maybe_reset(self, now: datetime | None = None) -> bool:
        """Zero the used amount once the current window has elapsed."""
        window = self.reset_policy.window
        if window is None:
            return False
        now = now or datetime.now(timezone.utc)
        if now - self.window_started_at < window:
            return False
        self.used = 0.0
        self.window_started_at = now
        return True

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "used": self.used,
            "reset_policy": self.reset_policy.value,
            "window_started_at": self.window_started_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RiskLimit":
        started = data.get("window_started_at")
        return cls(
            total=float(data.get("total", 1000.0)),
            used=float(data.get("used", 0.0)),
            reset_policy=RiskResetPolicy(data.get("reset_policy", "daily")),
            window_started_at=(
                datetime.fromisoformat(started) if started else datetime.now(timezone.utc)
            ),
        )


@dataclass
class Account:
    """A trading account and its strategy bindings."""
    account_id: str
    name: str = ""
    risk: RiskLimit = field(default_factory=RiskLimit)
    is_active: bool = True
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    client: Any = field(default=None, repr=False)
    bindings: dict[StrategyType, BaseStrategy] = field(default_factory=dict, repr=False)
    binding_params: dict[StrategyType, dict[str, Any]] = field(default_factory=dict)
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def strategy_types(self) -> list[StrategyType]:
        return list(self.bindings)

    def to_state_dict(self) -> dict[str, Any]:
        """Persistable form. The venue handle is never written out."""
        return {
            "id": self.account_id,
            "name": self.name,
            "risk": self.risk.to_dict(),
            "is_active": self.is_active,
            "created_at": self.created_at.isoformat(),
            "strategies": [t.value for t in self.bindings],
            "strategy_params": {t.value: dict(p) for t, p in self.binding_params.items()},
            "metadata": dict(self.metadata),
        }

    def summary(self) -> dict[str, Any]:
        return {
            "id": self.account_id,
            "name": self.name,
            "is_active": self.is_active,
            "risk_used": round(self.risk.used, 4),
            "risk_total": self.risk.total,
            "strategies": {t.value: s.state.value for t, s in self.bindings.items()},
        }


class AccountRegistry:
    """
    Registry of accounts and their strategy bindings.

    Engine-scope strategy kinds are instantiated once per registry and
    shared by every account bound to that kind; account-scope kinds get
    one instance per account.
    """

    def __init__(self, factory: StrategyFactory):
        self._factory = factory
        self._factory.attach_registry(self)
        self._accounts: dict[str, Account] = {}
        self._risk_locks: dict[str, asyncio.Lock] = {}
        self._shared: dict[StrategyType, BaseStrategy] = {}

    @property
    def factory(self) -> StrategyFactory:
        return self._factory

    def __len__(self) -> int:
        return len(self._accounts)

    def __contains__(self, account_id: object) -> bool:
        return account_id in self._accounts

    # ------------------------------------------------------------------
    # Accounts
    # ------------------------------------------------------------------

    def register(self, account_id: str, config: AccountConfig | None = None, client: Any = None) -> Account:
        """
        Create an account entry.

        Raises:
            DuplicateAccountError: account_id is already registered
        """
        if account_id in self._accounts:
            raise DuplicateAccountError(f"Account {account_id} is already registered")

        account = Account(account_id=account_id, name=account_id, client=client)
        if config is not None:
            account.name = config.name or account_id
            account.is_active = config.enabled
            account.metadata = dict(config.metadata)
            account.risk = RiskLimit(
                total=config.max_risk,
                reset_policy=RiskResetPolicy(config.risk_reset_policy),
            )

        self._accounts[account_id] = account
        self._risk_locks[account_id] = asyncio.Lock()
        logger.info(f"Registered account {account_id} (risk limit {account.risk.total})")
        return account

    def get(self, account_id: str) -> Account:
        try:
            return self._accounts[account_id]
        except KeyError:
            raise AccountNotFoundError(f"Account {account_id} not found") from None

    def get_all(self) -> list[Account]:
        return list(self._accounts.values())

    def get_active(self) -> list[Account]:
        return [a for a in self._accounts.values() if a.is_active]

    def activate(self, account_id: str) -> Account:
        account = self.get(account_id)
        account.is_active = True
        logger.info(f"Account {account_id} activated")
        return account

    def deactivate(self, account_id: str) -> Account:
        account = self.get(account_id)
        account.is_active = False
        logger.info(f"Account {account_id} deactivated")
        return account

    async def remove(self, account_id: str) -> Account:
        """
        Stop every strategy bound to the account, then delete it.

        Stop failures are logged and do not prevent removal. Shared
        engine-scope instances keep running for the remaining accounts.
        """
        account = self.get(account_id)

        for strategy_type, strategy in list(account.bindings.items()):
            if strategy_type.scope != StrategyScope.ACCOUNT:
                continue
            try:
                await strategy.stop()
            except Exception as e:
                logger.error(f"Failed to stop {strategy.name} while removing account {account_id}: {e}")

        account.bindings.clear()
        del self._accounts[account_id]
        self._risk_locks.pop(account_id, None)
        logger.info(f"Removed account {account_id}")
        return account

    # ------------------------------------------------------------------
    # Strategy bindings
    # ------------------------------------------------------------------

    def bind_strategy(
        self,
        account_id: str,
        strategy_type: StrategyType | str,
        params: dict[str, Any] | None = None,
    ) -> BaseStrategy:
        """
        Attach a strategy kind to an account.

        Raises:
            AccountNotFoundError: account_id is unknown
            UnknownStrategyTypeError: the kind is not a StrategyType
            StrategyConfigError: params fail validation
        """
        account = self.get(account_id)
        strategy_type = StrategyType.parse(strategy_type)
        params = dict(params or {})

        existing = account.bindings.get(strategy_type)
        if existing is not None:
            logger.debug(f"Account {account_id} already bound to {strategy_type.value}")
            return existing

        if strategy_type.scope == StrategyScope.ENGINE:
            strategy = self._shared.get(strategy_type)
            if strategy is None:
                strategy = self._factory.create(strategy_type, None, params)
                self._shared[strategy_type] = strategy
            elif params and params != self._shared_params(strategy_type):
                logger.warning(
                    f"Account {account_id}: parameters for shared strategy "
                    f"{strategy_type.value} ignored, instance already configured"
                )
        else:
            strategy = self._factory.create(strategy_type, account_id, params)

        account.bindings[strategy_type] = strategy
        account.binding_params[strategy_type] = params
        logger.info(f"Bound {strategy.name} to account {account_id}")
        return strategy

    def _shared_params(self, strategy_type: StrategyType) -> dict[str, Any]:
        for account in self._accounts.values():
            if strategy_type in account.binding_params and account.binding_params[strategy_type]:
                return account.binding_params[strategy_type]
        return {}

    async def unbind_strategy(self, account_id: str, strategy_type: StrategyType | str) -> None:
        account = self.get(account_id)
        strategy_type = StrategyType.parse(strategy_type)
        strategy = account.bindings.pop(strategy_type, None)
        account.binding_params.pop(strategy_type, None)
        if strategy is None:
            return

        if strategy_type.scope == StrategyScope.ACCOUNT:
            try:
                await strategy.stop()
            except Exception as e:
                logger.error(f"Failed to stop {strategy.name} on unbind: {e}")
        logger.info(f"Unbound {strategy_type.value} from account {account_id}")

    def list_eligible(self, strategy_type: StrategyType | str) -> list[Account]:
        """
        Active accounts with a live binding of the given kind.

        Order is stable (registration order) and carries no priority.
        """
        strategy_type = StrategyType.parse(strategy_type)
        eligible = []
        for account in self._accounts.values():
            if not account.is_active:
                continue
            strategy = account.bindings.get(strategy_type)
            if strategy is None or strategy.state in (StrategyState.ERROR, StrategyState.STOPPED):
                continue
            eligible.append(account)
        return eligible

    def execution_pairs(self) -> list[tuple[Account | None, BaseStrategy]]:
        """
        Every (account, strategy) pair a scheduler tick should run.

        Account-scope bindings yield one pair per active account; each
        shared engine-scope instance yields a single (None, strategy)
        pair when at least one active account participates.
        """
        pairs: list[tuple[Account | None, BaseStrategy]] = []
        shared_with_participants: set[StrategyType] = set()

        for account in self._accounts.values():
            if not account.is_active:
                continue
            for strategy_type, strategy in account.bindings.items():
                if strategy_type.scope == StrategyScope.ENGINE:
                    shared_with_participants.add(strategy_type)
                else:
                    pairs.append((account, strategy))

        for strategy_type, strategy in self._shared.items():
            if strategy_type in shared_with_participants:
                pairs.append((None, strategy))
        return pairs

    def shared_strategies(self) -> dict[StrategyType, BaseStrategy]:
        return dict(self._shared)

    def all_strategies(self) -> list[BaseStrategy]:
        """Every distinct strategy instance, shared ones first."""
        strategies: list[BaseStrategy] = list(self._shared.values())
        for account in self._accounts.values():
            for strategy_type, strategy in account.bindings.items():
                if strategy_type.scope == StrategyScope.ACCOUNT:
                    strategies.append(strategy)
        return strategies

    # ------------------------------------------------------------------
    # Risk
    # ------------------------------------------------------------------

    def _risk_lock(self, account_id: str) -> asyncio.Lock:
        lock = self._risk_locks.get(account_id)
        if lock is None:
            lock = self._risk_locks[account_id] = asyncio.Lock()
        return lock

    async def check_risk_limit(self, account_id: str, cost: float) -> float:
        """
        Reserve cost against the account's ceiling.

        Returns:
            Remaining headroom after the reservation

        Raises:
            RiskLimitExceededError: used + cost would exceed the ceiling;
                nothing is reserved
            AccountNotFoundError: account_id is unknown
        """
        if cost < 0:
            raise ValueError(f"Risk cost must be non-negative, got {cost}")
        account = self.get(account_id)

        async with self._risk_lock(account_id):
            if account.risk.maybe_reset():
                logger.info(f"Account {account_id} risk window reset")
            if account.risk.used + cost > account.risk.total:
                raise RiskLimitExceededError(account_id, cost, account.risk.used, account.risk.total)
            account.risk.used += cost
            return account.risk.available

    async def release_risk(self, account_id: str, cost: float) -> None:
        """Return previously reserved risk. Unknown accounts are ignored."""
        account = self._accounts.get(account_id)
        if account is None:
            return
        async with self._risk_lock(account_id):
            account.risk.used = max(0.0, account.risk.used - cost)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def to_state(self) -> list[dict[str, Any]]:
        return [a.to_state_dict() for a in self._accounts.values()]

    def restore(self, documents: list[dict[str, Any]]) -> list[Account]:
        """
        Rebuild accounts from persisted documents.

        Accounts already registered are left untouched. A persisted
        binding of an unknown kind is logged and skipped.
        """
        restored = []
        for document in documents:
            account_id = document.get("id")
            if not account_id:
                logger.warning(f"Skipping persisted account without id: {document}")
                continue
            if account_id in self._accounts:
                continue

            account = self.register(account_id)
            account.name = document.get("name", account_id)
            account.is_active = bool(document.get("is_active", True))
            account.metadata = dict(document.get("metadata", {}))
            if "risk" in document:
                account.risk = RiskLimit.from_dict(document["risk"])
            if document.get("created_at"):
                account.created_at = datetime.fromisoformat(document["created_at"])

            strategy_params = document.get("strategy_params", {})
            for kind in document.get("strategies", []):
                try:
                    self.bind_strategy(account_id, kind, strategy_params.get(kind))
                except (UnknownStrategyTypeError, ValueError) as e:
                    logger.error(f"Account {account_id}: cannot restore binding '{kind}': {e}")

            restored.append(account)

        if restored:
            logger.info(f"Restored {len(restored)} account(s) from state")
        return restored

    def summary(self) -> dict[str, Any]:
        accounts = self.get_all()
        return {
            "total": len(accounts),
            "active": sum(1 for a in accounts if a.is_active),
            "inactive": sum(1 for a in accounts if not a.is_active),
            "total_risk_limit": sum(a.risk.total for a in accounts),
            "total_risk_used": round(sum(a.risk.used for a in accounts), 4),
            "shared_strategies": {t.value: s.state.value for t, s in self._shared.items()},
            "accounts": [a.summary() for a in accounts],
        }
