"""
Tests for Account Registry
==========================
"""

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from core.account_registry import (
    AccountNotFoundError,
    DuplicateAccountError,
    RiskLimit,
    RiskLimitExceededError,
    RiskResetPolicy,
)
from core.config import AccountConfig
from core.strategy_base import StrategyConfigError, StrategyState
from core.strategy_types import StrategyFactory, StrategyScope, StrategyType, UnknownStrategyTypeError
from strategies.hourly_arbitrage import HourlyArbitrageStrategy
from strategies.settlement_claim import SettlementClaimStrategy


class TestAccounts:
    """Test account registration."""

    def test_register_with_config(self, registry):
        config = AccountConfig(
            account_id="acct-1",
            name="Primary",
            max_risk=250.0,
            risk_reset_policy="hourly",
            metadata={"desk": "a"},
        )

        account = registry.register("acct-1", config)

        assert account.name == "Primary"
        assert account.risk.total == 250.0
        assert account.risk.reset_policy == RiskResetPolicy.HOURLY
        assert account.metadata == {"desk": "a"}
        assert "acct-1" in registry
        assert len(registry) == 1

    def test_duplicate_rejected(self, registry):
        registry.register("acct-1")

        with pytest.raises(DuplicateAccountError):
            registry.register("acct-1")

    def test_unknown_account(self, registry):
        with pytest.raises(AccountNotFoundError):
            registry.get("missing")
        with pytest.raises(AccountNotFoundError):
            registry.bind_strategy("missing", "settlement_claim")

    def test_activation(self, registry):
        registry.register("acct-1")
        registry.register("acct-2")

        registry.deactivate("acct-1")
        assert [a.account_id for a in registry.get_active()] == ["acct-2"]

        registry.activate("acct-1")
        assert len(registry.get_active()) == 2

    def test_summary(self, registry):
        registry.register("acct-1", AccountConfig(account_id="acct-1", max_risk=100.0))
        registry.register("acct-2", AccountConfig(account_id="acct-2", max_risk=50.0, enabled=False))

        summary = registry.summary()

        assert summary["total"] == 2
        assert summary["active"] == 1
        assert summary["total_risk_limit"] == 150.0


class TestBindings:
    """Test strategy bindings and scopes."""

    def test_account_scope_gets_own_instance(self, registry):
        registry.register("acct-1")
        registry.register("acct-2")

        first = registry.bind_strategy("acct-1", StrategyType.SETTLEMENT_CLAIM)
        second = registry.bind_strategy("acct-2", "settlement_claim")

        assert isinstance(first, SettlementClaimStrategy)
        assert first is not second
        assert first.account_id == "acct-1"
        assert first.name == "settlement_claim:acct-1"

    def test_engine_scope_is_shared(self, registry):
        registry.register("acct-1")
        registry.register("acct-2")

        first = registry.bind_strategy("acct-1", "hourly_arbitrage", {"arbitrage_amount": 20})
        second = registry.bind_strategy("acct-2", "hourly_arbitrage", {"arbitrage_amount": 50})

        assert isinstance(first, HourlyArbitrageStrategy)
        assert first is second
        assert first.account_id is None
        assert first.params["arbitrage_amount"] == 20.0
        assert registry.shared_strategies() == {StrategyType.HOURLY_ARBITRAGE: first}

    def test_bind_is_idempotent(self, registry):
        registry.register("acct-1")

        first = registry.bind_strategy("acct-1", "settlement_claim")
        again = registry.bind_strategy("acct-1", "settlement-claim")

        assert first is again
        assert registry.get("acct-1").strategy_types == [StrategyType.SETTLEMENT_CLAIM]

    def test_unknown_kind_rejected(self, registry):
        registry.register("acct-1")

        with pytest.raises(UnknownStrategyTypeError):
            registry.bind_strategy("acct-1", "momentum")
        assert registry.get("acct-1").bindings == {}

    def test_invalid_parameters_rejected(self, registry):
        registry.register("acct-1")

        with pytest.raises(StrategyConfigError):
            registry.bind_strategy("acct-1", "settlement_claim", {"claim_start_minute": 50, "claim_end_minute": 10})
        assert registry.get("acct-1").bindings == {}

    def test_list_eligible(self, recording_registry):
        for account_id in ("a", "b", "c", "d"):
            recording_registry.register(account_id)
        for account_id in ("a", "b", "c"):
            recording_registry.bind_strategy(account_id, StrategyType.HOURLY_ARBITRAGE)
        recording_registry.bind_strategy("d", StrategyType.SETTLEMENT_CLAIM)
        recording_registry.deactivate("b")

        eligible = recording_registry.list_eligible(StrategyType.HOURLY_ARBITRAGE)

        assert [a.account_id for a in eligible] == ["a", "c"]

    @pytest.mark.asyncio
    async def test_stopped_binding_not_eligible(self, recording_registry):
        recording_registry.register("a")
        strategy = recording_registry.bind_strategy("a", StrategyType.SETTLEMENT_CLAIM)

        await strategy.stop()

        assert recording_registry.list_eligible(StrategyType.SETTLEMENT_CLAIM) == []

    def test_execution_pairs(self, recording_registry):
        for account_id in ("a", "b", "c"):
            recording_registry.register(account_id)
            recording_registry.bind_strategy(account_id, StrategyType.SETTLEMENT_CLAIM)
            recording_registry.bind_strategy(account_id, StrategyType.HOURLY_ARBITRAGE)
        recording_registry.deactivate("c")

        pairs = recording_registry.execution_pairs()

        account_pairs = [(a.account_id, s.name) for a, s in pairs if a is not None]
        shared_pairs = [s.name for a, s in pairs if a is None]
        assert account_pairs == [("a", "settlement_claim:a"), ("b", "settlement_claim:b")]
        assert shared_pairs == ["hourly_arbitrage"]

    def test_shared_pair_needs_active_participant(self, recording_registry):
        recording_registry.register("a")
        recording_registry.bind_strategy("a", StrategyType.PRICE_ARBITRAGE)
        recording_registry.deactivate("a")

        assert recording_registry.execution_pairs() == []

    def test_all_strategies_lists_shared_first(self, recording_registry):
        recording_registry.register("a")
        recording_registry.bind_strategy("a", StrategyType.SETTLEMENT_CLAIM)
        recording_registry.bind_strategy("a", StrategyType.HOURLY_ARBITRAGE)

        names = [s.name for s in recording_registry.all_strategies()]

        assert names == ["hourly_arbitrage", "settlement_claim:a"]

    @pytest.mark.asyncio
    async def test_unbind_stops_account_strategy(self, recording_registry):
        recording_registry.register("a")
        strategy = recording_registry.bind_strategy("a", StrategyType.SETTLEMENT_CLAIM)
        await strategy.initialize()

        await recording_registry.unbind_strategy("a", "settlement_claim")

        assert strategy.state == StrategyState.STOPPED
        assert recording_registry.get("a").bindings == {}

    @pytest.mark.asyncio
    async def test_remove_stops_strategies_despite_failures(self, recording_registry):
        recording_registry.register("a")
        recording_registry.register("b")
        account_strategy = recording_registry.bind_strategy("a", StrategyType.SETTLEMENT_CLAIM)
        shared = recording_registry.bind_strategy("a", StrategyType.HOURLY_ARBITRAGE)
        recording_registry.bind_strategy("b", StrategyType.HOURLY_ARBITRAGE)
        await account_strategy.initialize()
        await shared.initialize()
        account_strategy.fail_on.add("stop")

        removed = await recording_registry.remove("a")

        assert removed.account_id == "a"
        assert "a" not in recording_registry
        assert account_strategy.stop_calls == 1
        assert shared.state == StrategyState.INITIALIZED
        assert [a.account_id for a in recording_registry.list_eligible("hourly_arbitrage")] == ["b"]


class TestRiskLimits:
    """Test per-account risk reservation."""

    @pytest.fixture
    def risky_registry(self, registry):
        registry.register("acct-1", AccountConfig(account_id="acct-1", max_risk=100.0))
        return registry

    @pytest.mark.asyncio
    async def test_reserve_and_release(self, risky_registry):
        assert await risky_registry.check_risk_limit("acct-1", 60.0) == 40.0
        assert risky_registry.get("acct-1").risk.used == 60.0

        await risky_registry.release_risk("acct-1", 60.0)

        assert risky_registry.get("acct-1").risk.used == 0.0

    @pytest.mark.asyncio
    async def test_exceeding_reserves_nothing(self, risky_registry):
        await risky_registry.check_risk_limit("acct-1", 80.0)

        with pytest.raises(RiskLimitExceededError) as exc_info:
            await risky_registry.check_risk_limit("acct-1", 30.0)

        assert exc_info.value.used == 80.0
        assert risky_registry.get("acct-1").risk.used == 80.0

    @pytest.mark.asyncio
    async def test_exact_ceiling_allowed(self, risky_registry):
        assert await risky_registry.check_risk_limit("acct-1", 100.0) == 0.0

    @pytest.mark.asyncio
    async def test_negative_cost_rejected(self, risky_registry):
        with pytest.raises(ValueError):
            await risky_registry.check_risk_limit("acct-1", -1.0)

    @pytest.mark.asyncio
    async def test_release_floors_at_zero(self, risky_registry):
        await risky_registry.check_risk_limit("acct-1", 10.0)
        await risky_registry.release_risk("acct-1", 50.0)
        await risky_registry.release_risk("missing", 50.0)

        assert risky_registry.get("acct-1").risk.used == 0.0

    @pytest.mark.asyncio
    async def test_concurrent_reservations_respect_ceiling(self, registry):
        """floor(total / cost) reservations succeed, no matter the interleaving."""
        registry.register("acct-1", AccountConfig(account_id="acct-1", max_risk=250.0))

        results = await asyncio.gather(
            *(registry.check_risk_limit("acct-1", 30.0) for _ in range(20)),
            return_exceptions=True,
        )

        admitted = [r for r in results if not isinstance(r, Exception)]
        rejected = [r for r in results if isinstance(r, RiskLimitExceededError)]
        assert len(admitted) == 8
        assert len(rejected) == 12
        assert registry.get("acct-1").risk.used == 240.0

    def test_reset_window(self):
        started = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
        limit = RiskLimit(total=100.0, used=90.0, reset_policy=RiskResetPolicy.HOURLY, window_started_at=started)

        assert not limit.maybe_reset(started + timedelta(minutes=59))
        assert limit.used == 90.0
        assert limit.maybe_reset(started + timedelta(hours=1))
        assert limit.used == 0.0
        assert limit.window_started_at == started + timedelta(hours=1)

    def test_never_reset(self):
        limit = RiskLimit(used=5.0, reset_policy=RiskResetPolicy.NEVER)

        assert not limit.maybe_reset(datetime.now(timezone.utc) + timedelta(days=30))
        assert limit.used == 5.0

    @pytest.mark.asyncio
    async def test_expired_window_resets_before_check(self, registry):
        account = registry.register("acct-1", AccountConfig(account_id="acct-1", max_risk=100.0))
        account.risk.used = 100.0
        account.risk.window_started_at -= timedelta(days=2)

        assert await registry.check_risk_limit("acct-1", 40.0) == 60.0


class TestRegistryState:
    """Test persistence round trip."""

    def test_round_trip(self, registry, strategy_context):
        registry.register("acct-1", AccountConfig(account_id="acct-1", name="One", max_risk=300.0))
        registry.bind_strategy("acct-1", "settlement_claim", {"claim_interval_seconds": 120})
        registry.bind_strategy("acct-1", "hourly_arbitrage")
        registry.deactivate("acct-1")
        documents = registry.to_state()

        restored_registry = type(registry)(StrategyFactory(strategy_context))
        restored = restored_registry.restore(documents)

        account = restored_registry.get("acct-1")
        assert [a.account_id for a in restored] == ["acct-1"]
        assert account.name == "One"
        assert account.is_active is False
        assert account.risk.total == 300.0
        assert set(account.strategy_types) == {StrategyType.SETTLEMENT_CLAIM, StrategyType.HOURLY_ARBITRAGE}
        claim = account.bindings[StrategyType.SETTLEMENT_CLAIM]
        assert claim.params["claim_interval_seconds"] == 120.0

    def test_state_omits_client(self, registry):
        registry.register("acct-1", client=object())

        assert "client" not in registry.to_state()[0]

    def test_restore_skips_bad_entries(self, registry):
        restored = registry.restore([
            {"name": "no id"},
            {"id": "acct-1", "strategies": ["momentum", "settlement_claim"]},
        ])

        assert [a.account_id for a in restored] == ["acct-1"]
        assert registry.get("acct-1").strategy_types == [StrategyType.SETTLEMENT_CLAIM]

    def test_restore_leaves_existing_accounts(self, registry):
        registry.register("acct-1", AccountConfig(account_id="acct-1", max_risk=10.0))

        restored = registry.restore([{"id": "acct-1", "risk": {"total": 999.0}}])

        assert restored == []
        assert registry.get("acct-1").risk.total == 10.0


class TestStrategyTypes:
    """Test the closed set of strategy kinds."""

    def test_scopes(self):
        assert StrategyType.HOURLY_ARBITRAGE.scope == StrategyScope.ENGINE
        assert StrategyType.PRICE_ARBITRAGE.scope == StrategyScope.ENGINE
        assert StrategyType.SETTLEMENT_CLAIM.scope == StrategyScope.ACCOUNT

    def test_parse(self):
        assert StrategyType.parse(" Hourly-Arbitrage ") == StrategyType.HOURLY_ARBITRAGE
        assert StrategyType.PRICE_ARBITRAGE.display_name == "Price Arbitrage"
        with pytest.raises(UnknownStrategyTypeError) as exc_info:
            StrategyType.parse("momentum")
        assert exc_info.value.value == "momentum"

    def test_factory_forces_engine_scope_account(self, strategy_context):
        factory = StrategyFactory(strategy_context)

        strategy = factory.create("price_arbitrage", "acct-1")

        assert strategy.account_id is None
        assert strategy.name == "price_arbitrage"
