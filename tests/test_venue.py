"""
Tests for Venue Boundary and Market Snapshots
=============================================
"""

from datetime import datetime, timedelta, timezone

import pytest

from core.market import MarketSnapshot, OutcomePrices, TickSnapshot
from core.venue import PaperVenue, VenueClient, VenueError, VenueFailure


NOW = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)


class TestMarketSnapshot:
    """Test market record normalization."""

    def test_from_camel_case_record(self):
        market = MarketSnapshot.from_dict({
            "conditionId": "0xabc",
            "endDate": "2026-03-02T13:00:00Z",
            "title": "BTC up this hour?",
            "tags": ["crypto", "Hourly"],
            "prices": {"YES": 0.93, "NO": 0.07},
            "feedPrices": {"YES": "0.7", "NO": "0.3"},
        })

        assert market.market_id == "0xabc"
        assert market.end_time == datetime(2026, 3, 2, 13, 0, tzinfo=timezone.utc)
        assert market.prices == OutcomePrices(yes=0.93, no=0.07)
        assert market.feed_prices.yes == pytest.approx(0.7)
        assert market.is_hourly()

    def test_expiration_timestamp(self):
        market = MarketSnapshot.from_dict({"id": "m1", "expirationTimestamp": 1772456400000})

        assert market.cycle_end_ms == 1772456400000

    def test_naive_end_time_is_utc(self):
        market = MarketSnapshot.from_dict({"id": "m1", "end_time": "2026-03-02T13:00:00"})

        assert market.end_time.tzinfo == timezone.utc

    @pytest.mark.parametrize("record", [{"end_time": "2026-03-02T13:00:00"}, {"id": "m1"}])
    def test_incomplete_records_rejected(self, record):
        with pytest.raises(ValueError):
            MarketSnapshot.from_dict(record)

    def test_hourly_by_title_needs_round_hour(self):
        on_hour = MarketSnapshot("m1", datetime(2026, 3, 2, 13, 0, tzinfo=timezone.utc), title="Hourly ETH")
        off_hour = MarketSnapshot("m2", datetime(2026, 3, 2, 13, 15, tzinfo=timezone.utc), title="Hourly ETH")

        assert on_hour.is_hourly()
        assert not off_hour.is_hourly()

    def test_liveness(self):
        future = MarketSnapshot("m1", NOW + timedelta(minutes=5))
        past = MarketSnapshot("m2", NOW - timedelta(minutes=5))
        flagged = MarketSnapshot("m3", NOW + timedelta(minutes=5), expired=True)

        assert future.is_live(NOW)
        assert not past.is_live(NOW)
        assert not flagged.is_live(NOW)

    def test_tick_snapshot_skips_bad_records(self):
        snapshot = TickSnapshot.from_records(3, [
            {"id": "m1", "end_time": (NOW + timedelta(minutes=5)).isoformat()},
            {"title": "no id"},
            MarketSnapshot("m2", NOW - timedelta(minutes=1)),
        ])

        assert snapshot.tick_id == 3
        assert len(snapshot) == 2
        assert [m.market_id for m in snapshot.live_markets(NOW)] == ["m1"]

    def test_to_dict_round_trip(self):
        market = MarketSnapshot("m1", NOW, tags=("hourly",), prices=OutcomePrices(0.9, 0.1))

        assert MarketSnapshot.from_dict(market.to_dict()) == market


class TestPaperVenue:
    """Test the paper venue."""

    @pytest.fixture
    def venue(self):
        return PaperVenue(markets=[MarketSnapshot("m1", NOW)], seed=1)

    def test_satisfies_client_protocol(self, venue):
        assert isinstance(venue, VenueClient)

    @pytest.mark.asyncio
    async def test_fetch_markets(self, venue):
        markets = await venue.fetch_markets()

        assert [m.market_id for m in markets] == ["m1"]

    @pytest.mark.asyncio
    async def test_fetch_failure(self, venue):
        venue.enable_failure(VenueFailure.FETCH_ERROR, 1.0)

        with pytest.raises(VenueError):
            await venue.fetch_markets()

        venue.disable_failure(VenueFailure.FETCH_ERROR)
        assert await venue.fetch_markets()

    def test_probability_bounds(self, venue):
        with pytest.raises(ValueError):
            venue.enable_failure(VenueFailure.ACTION_REJECTED, 1.5)

    @pytest.mark.asyncio
    async def test_forced_failure_count(self, venue):
        venue.fail_account("acct-1", VenueFailure.PREPARE_REJECTED, times=1)

        assert await venue.prepare_account("acct-1", "m1_1", 10.0) is False
        assert await venue.prepare_account("acct-1", "m1_1", 10.0) is True
        assert venue.is_prepared("acct-1", "m1_1")
        assert await venue.prepare_account("acct-2", "m1_1", 10.0) is True

    @pytest.mark.asyncio
    async def test_forced_failure_until_cleared(self, venue):
        venue.fail_account("acct-1", VenueFailure.ACTION_REJECTED)

        for _ in range(3):
            assert await venue.execute_action("acct-1", "m1_1", {}) is False

        venue.clear_account_failures("acct-1")
        assert await venue.execute_action("acct-1", "m1_1", {}) is True
        assert venue.get_statistics()["failures_by_scenario"]["action_rejected"] == 3

    @pytest.mark.asyncio
    async def test_execute_opens_position(self, venue):
        params = {
            "market_id": "m1",
            "amount": 10,
            "outcome_index": 0,
            "price": 0.95,
            "end_time": NOW.isoformat(),
        }

        assert await venue.execute_action("acct-1", "m1_1", params)

        positions = await venue.fetch_positions("acct-1")
        assert len(positions) == 1
        assert positions[0]["amount"] == 10.0
        assert positions[0]["end_time"] == NOW.isoformat()
        assert positions[0]["claimed"] is False
        assert len(venue.actions_for("acct-1")) == 1
        assert await venue.fetch_positions("acct-2") == []

    @pytest.mark.asyncio
    async def test_claim_once(self, venue):
        await venue.execute_action("acct-1", "m1_1", {"amount": 5})
        position_id = (await venue.fetch_positions("acct-1"))[0]["position_id"]

        assert await venue.claim_position("acct-1", position_id)
        assert not await venue.claim_position("acct-1", position_id)
        assert not await venue.claim_position("acct-1", "missing")
        assert venue.get_statistics()["open_positions"] == 0

    @pytest.mark.asyncio
    async def test_sell_closes_position(self, venue):
        await venue.execute_action("acct-1", "m1_1", {"amount": 5})
        position_id = (await venue.fetch_positions("acct-1"))[0]["position_id"]

        assert await venue.sell_position("acct-1", position_id, 6.0)
        assert not await venue.sell_position("acct-1", position_id, 6.0)
        assert not await venue.claim_position("acct-1", position_id)

        position = (await venue.fetch_positions("acct-1"))[0]
        assert position["sold"] is True
        assert position["sold_for"] == 6.0
        assert venue.get_statistics()["open_positions"] == 0

    @pytest.mark.asyncio
    async def test_sell_rejected(self, venue):
        await venue.execute_action("acct-1", "m1_1", {"amount": 5})
        position_id = (await venue.fetch_positions("acct-1"))[0]["position_id"]
        venue.fail_account("acct-1", VenueFailure.SELL_REJECTED, times=1)

        assert not await venue.sell_position("acct-1", position_id, 6.0)
        assert await venue.sell_position("acct-1", position_id, 6.0)

    @pytest.mark.asyncio
    async def test_seeded_failures_are_reproducible(self):
        outcomes = []
        for _ in range(2):
            venue = PaperVenue(seed=42)
            venue.enable_failure(VenueFailure.PREPARE_REJECTED, 0.5)
            outcomes.append([await venue.prepare_account("a", "k", 1.0) for _ in range(20)])

        assert outcomes[0] == outcomes[1]
        assert True in outcomes[0] and False in outcomes[0]

    @pytest.mark.asyncio
    async def test_recurring_market_listed_for_current_cycle(self):
        venue = PaperVenue(seed=3)
        venue.add_recurring_market("btc-hourly", "BTC up this hour?")

        first = (await venue.fetch_markets())[0]
        again = (await venue.fetch_markets())[0]

        assert first.market_id == "btc-hourly"
        assert first.is_hourly()
        assert first.end_time.minute == 0 and first.end_time.second == 0
        assert timedelta(0) < first.time_to_expiry() <= timedelta(hours=1)
        assert first.cycle_end_ms == again.cycle_end_ms
        assert first.prices.yes + first.prices.no == pytest.approx(1.0)
        assert 0.0 < first.feed_prices.yes < 1.0
        assert venue.get_statistics()["recurring_markets"] == 1
