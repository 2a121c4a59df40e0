"""
Strategy Types
==============

Closed set of strategy kinds and the factory that builds them.

Kinds are resolved when a strategy is bound to an account, so an
unknown kind is rejected at configuration time rather than at the
first tick.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable

from core.strategy_base import BaseStrategy, StrategyConfig, StrategyContext

if TYPE_CHECKING:
    from core.account_registry import AccountRegistry


logger = logging.getLogger(__name__)


class UnknownStrategyTypeError(ValueError):
    """Raised for a strategy kind outside StrategyType."""

    def __init__(self, value: Any):
        self.value = value
        known = ", ".join(t.value for t in StrategyType)
        super().__init__(f"Unknown strategy type '{value}' (known: {known})")


class StrategyScope(Enum):
    """Whether an instance serves one account or the whole account pool."""
    ACCOUNT = "account"
    ENGINE = "engine"


class StrategyType(Enum):
    HOURLY_ARBITRAGE = "hourly_arbitrage"
    PRICE_ARBITRAGE = "price_arbitrage"
    SETTLEMENT_CLAIM = "settlement_claim"

    @property
    def scope(self) -> StrategyScope:
        return _SCOPES[self]

    @property
    def display_name(self) -> str:
        return self.value.replace("_", " ").title()

    @classmethod
    def parse(cls, value: "StrategyType | str") -> "StrategyType":
        if isinstance(value, StrategyType):
            return value
        normalized = str(value).strip().lower().replace("-", "_")
        for member in cls:
            if member.value == normalized:
                return member
        raise UnknownStrategyTypeError(value)


_SCOPES = {
    StrategyType.HOURLY_ARBITRAGE: StrategyScope.ENGINE,
    StrategyType.PRICE_ARBITRAGE: StrategyScope.ENGINE,
    StrategyType.SETTLEMENT_CLAIM: StrategyScope.ACCOUNT,
}


StrategyBuilder = Callable[[StrategyConfig, StrategyContext], BaseStrategy]


def _create_hourly_arbitrage(config: StrategyConfig, context: StrategyContext) -> BaseStrategy:
    from strategies.hourly_arbitrage import HourlyArbitrageStrategy
    return HourlyArbitrageStrategy(config, context)


def _create_price_arbitrage(config: StrategyConfig, context: StrategyContext) -> BaseStrategy:
    from strategies.price_arbitrage import PriceArbitrageStrategy
    return PriceArbitrageStrategy(config, context)


def _create_settlement_claim(config: StrategyConfig, context: StrategyContext) -> BaseStrategy:
    from strategies.settlement_claim import SettlementClaimStrategy
    return SettlementClaimStrategy(config, context)


def strategy_class(strategy_type: StrategyType | str) -> type[BaseStrategy]:
    """Resolve the implementation class of a kind (used for config validation)."""
    strategy_type = StrategyType.parse(strategy_type)
    if strategy_type == StrategyType.HOURLY_ARBITRAGE:
        from strategies.hourly_arbitrage import HourlyArbitrageStrategy
        return HourlyArbitrageStrategy
    if strategy_type == StrategyType.PRICE_ARBITRAGE:
        from strategies.price_arbitrage import PriceArbitrageStrategy
        return PriceArbitrageStrategy
    from strategies.settlement_claim import SettlementClaimStrategy
    return SettlementClaimStrategy


class StrategyFactory:
    """
    Builds strategy instances, one builder per StrategyType.

    Builders may be overridden per kind (paper trading, tests), but the
    set of kinds itself is closed.
    """

    def __init__(
        self,
        context: StrategyContext,
        builders: dict[StrategyType, StrategyBuilder] | None = None,
    ):
        self._context = context
        self._builders: dict[StrategyType, StrategyBuilder] = {
            StrategyType.HOURLY_ARBITRAGE: _create_hourly_arbitrage,
            StrategyType.PRICE_ARBITRAGE: _create_price_arbitrage,
            StrategyType.SETTLEMENT_CLAIM: _create_settlement_claim,
        }
        for strategy_type, builder in (builders or {}).items():
            self._builders[StrategyType.parse(strategy_type)] = builder

    @property
    def context(self) -> StrategyContext:
        return self._context

    def attach_registry(self, registry: AccountRegistry) -> None:
        self._context.registry = registry

    @staticmethod
    def instance_name(strategy_type: StrategyType, account_id: str | None) -> str:
        if account_id is None:
            return strategy_type.value
        return f"{strategy_type.value}:{account_id}"

    def create(
        self,
        strategy_type: StrategyType | str,
        account_id: str | None = None,
        parameters: dict[str, Any] | None = None,
    ) -> BaseStrategy:
        """
        Build one instance.

        Raises:
            UnknownStrategyTypeError: kind is not a StrategyType
            StrategyConfigError: parameters fail validation
        """
        strategy_type = StrategyType.parse(strategy_type)
        if strategy_type.scope == StrategyScope.ENGINE:
            account_id = None

        config = StrategyConfig(
            name=self.instance_name(strategy_type, account_id),
            strategy_type=strategy_type.value,
            account_id=account_id,
            parameters=dict(parameters or {}),
        )
        strategy = self._builders[strategy_type](config, self._context)
        logger.debug(f"Created strategy {config.name} ({strategy_type.scope.value} scope)")
        return strategy
