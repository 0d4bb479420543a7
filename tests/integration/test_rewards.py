"""Reward engine tests: welcome spin, milestone thresholds, exactly-once grants."""

from __future__ import annotations

import asyncio
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import event, func, select
from sqlalchemy.exc import OperationalError

from usagecredits.config import get_settings
from usagecredits.database import get_engine
from usagecredits.db.models import CreditTransaction, RewardMilestone
from usagecredits.ledger import balance_store, metering
from usagecredits.ledger.balance_store import get_balance_row
from usagecredits.ledger.errors import LedgerWriteFailed
from usagecredits.ledger.transaction_log import verify_ledger
from usagecredits.ledger.types import TransactionType
from usagecredits.rewards import engine as reward_engine
from usagecredits.rewards.eligibility import check_eligibility, list_reward_history
from usagecredits.rewards.engine import RewardEngine
from usagecredits.rewards.prizes import DEFAULT_PRIZES, PrizePool, PrizeTable

USER = "user-1"


@pytest.fixture
def engine(fixed_random) -> RewardEngine:
    """Engine whose draw always lands on the first prize of a pool (1 standard, 5 welcome)."""
    return RewardEngine(PrizeTable(DEFAULT_PRIZES, rng=fixed_random(0.0)), threshold_step=20)


async def _fund_and_spend(db, *, fund: int, spend: int, user_id: str = USER) -> None:
    await metering.credit(db, user_id, fund, TransactionType.PURCHASE)
    if spend:
        await metering.debit(db, user_id, spend)


class TestWelcomeReward:
    @pytest.mark.asyncio
    async def test_purchase_spend_spin_scenario(self, db_session):
        await _fund_and_spend(db_session, fund=100, spend=20)
        engine = RewardEngine(threshold_step=20)

        outcome = await engine.request_reward(db_session, USER)
        assert outcome.granted is True
        assert outcome.pool == PrizePool.WELCOME
        assert outcome.threshold == 20
        assert 5 <= outcome.credits_won <= 20
        assert outcome.new_balance == 80 + outcome.credits_won

        again = await engine.request_reward(db_session, USER)
        assert again.granted is False
        assert again.reason == "already_granted"

        row = await get_balance_row(db_session, USER)
        assert row.balance == 80 + outcome.credits_won
        assert row.total_spent == 20
        assert (await verify_ledger(db_session, USER)).consistent

    @pytest.mark.asyncio
    async def test_first_spin_without_spend_is_welcome(self, db_session, engine):
        outcome = await engine.request_reward(db_session, USER)
        assert outcome.granted is True
        assert outcome.pool == PrizePool.WELCOME
        assert outcome.threshold is None
        assert outcome.credits_won == 5

        milestone = (await db_session.execute(select(RewardMilestone))).scalar_one()
        assert milestone.threshold_value == 0
        assert milestone.pool == "welcome"
        assert milestone.transaction_id == outcome.transaction_id

    @pytest.mark.asyncio
    async def test_welcome_granted_at_most_once(self, db_session, engine):
        assert (await engine.request_reward(db_session, USER)).granted is True
        second = await engine.request_reward(db_session, USER)
        assert second.granted is False
        assert second.reason == "not_eligible"

        row = await get_balance_row(db_session, USER)
        assert row.welcome_reward_granted is True
        assert row.balance == 5

    @pytest.mark.asyncio
    async def test_reward_is_logged_as_reward_credit(self, db_session, engine):
        await _fund_and_spend(db_session, fund=50, spend=20)
        outcome = await engine.request_reward(db_session, USER)

        tx = await db_session.get(CreditTransaction, outcome.transaction_id)
        assert tx.transaction_type == "reward"
        assert tx.activity_type == "welcome_spin"
        assert tx.amount == 5
        assert tx.tx_metadata["pool"] == "welcome"

        row = await get_balance_row(db_session, USER)
        assert row.total_earned == 55
        assert row.total_spent == 20

    @pytest.mark.asyncio
    async def test_concurrent_welcome_spins_grant_once(self, db_session, session_factory, engine):
        await _fund_and_spend(db_session, fund=100, spend=20)

        async def _spin():
            async with session_factory() as s:
                return await engine.request_reward(s, USER)

        outcomes = await asyncio.gather(*[_spin() for _ in range(5)])
        granted = [o for o in outcomes if o.granted]
        assert len(granted) == 1
        assert all(o.reason == "already_granted" for o in outcomes if not o.granted)

        row = await get_balance_row(db_session, USER)
        assert row.balance == 85
        assert (await verify_ledger(db_session, USER)).consistent


class TestMilestoneReward:
    async def _claim_welcome(self, db, engine: RewardEngine) -> None:
        outcome = await engine.request_reward(db, USER)
        assert outcome.pool == PrizePool.WELCOME

    @pytest.mark.asyncio
    async def test_threshold_after_welcome_uses_standard_pool(self, db_session, engine):
        await self._claim_welcome(db_session, engine)
        await _fund_and_spend(db_session, fund=100, spend=20)

        outcome = await engine.request_reward(db_session, USER)
        assert outcome.granted is True
        assert outcome.pool == PrizePool.STANDARD
        assert outcome.threshold == 20
        assert outcome.credits_won == 1

    @pytest.mark.asyncio
    async def test_same_threshold_never_rewarded_twice(self, db_session, engine):
        await self._claim_welcome(db_session, engine)
        await _fund_and_spend(db_session, fund=100, spend=20)
        assert (await engine.request_reward(db_session, USER)).granted is True

        again = await engine.request_reward(db_session, USER)
        assert again.granted is False
        assert again.reason == "already_granted"
        assert again.threshold == 20

    @pytest.mark.asyncio
    async def test_next_threshold_rewards_again(self, db_session, engine):
        await self._claim_welcome(db_session, engine)
        await _fund_and_spend(db_session, fund=100, spend=20)
        await engine.request_reward(db_session, USER)

        await metering.debit(db_session, USER, 20)
        outcome = await engine.request_reward(db_session, USER)
        assert outcome.granted is True
        assert outcome.threshold == 40

    @pytest.mark.asyncio
    async def test_between_thresholds_not_eligible(self, db_session, engine):
        await self._claim_welcome(db_session, engine)
        await _fund_and_spend(db_session, fund=100, spend=25)

        outcome = await engine.request_reward(db_session, USER)
        assert outcome.granted is False
        assert outcome.reason == "not_eligible"

    @pytest.mark.asyncio
    async def test_crossed_threshold_mode(self, db_session, fixed_random):
        engine = RewardEngine(
            PrizeTable(DEFAULT_PRIZES, rng=fixed_random(0.0)), threshold_step=20, require_exact_multiple=False
        )
        await engine.request_reward(db_session, USER)
        await _fund_and_spend(db_session, fund=100, spend=25)

        outcome = await engine.request_reward(db_session, USER)
        assert outcome.granted is True
        assert outcome.threshold == 20

    @pytest.mark.asyncio
    async def test_welcome_consumes_current_threshold(self, db_session, engine):
        await _fund_and_spend(db_session, fund=100, spend=20)
        welcome = await engine.request_reward(db_session, USER)
        assert welcome.pool == PrizePool.WELCOME
        assert welcome.threshold == 20

        again = await engine.request_reward(db_session, USER)
        assert again.granted is False

        rows = (await db_session.execute(select(RewardMilestone))).scalars().all()
        assert [r.threshold_value for r in rows] == [20]

    @pytest.mark.asyncio
    async def test_concurrent_threshold_spins_grant_once(self, db_session, session_factory, engine):
        await self._claim_welcome(db_session, engine)
        await _fund_and_spend(db_session, fund=100, spend=20)

        async def _spin():
            async with session_factory() as s:
                return await engine.request_reward(s, USER)

        outcomes = await asyncio.gather(*[_spin() for _ in range(5)])
        assert sum(1 for o in outcomes if o.granted) == 1
        assert all(o.reason == "already_granted" for o in outcomes if not o.granted)

        rows = (
            await db_session.execute(select(RewardMilestone).where(RewardMilestone.threshold_value == 20))
        ).scalars().all()
        assert len(rows) == 1

        # the losers' prize credits rolled back with their milestone inserts
        rewards = (
            await db_session.execute(
                select(CreditTransaction).where(CreditTransaction.transaction_type == "reward")
            )
        ).scalars().all()
        assert len(rewards) == 2
        assert rows[0].transaction_id in {tx.id for tx in rewards}
        assert (await verify_ledger(db_session, USER)).consistent

    @pytest.mark.asyncio
    async def test_milestone_is_inserted_linked_and_never_updated(self, db_session, engine):
        statements: list[str] = []

        def _record(conn, cursor, statement, parameters, context, executemany):
            statements.append(statement.lower())

        sync_engine = get_engine().sync_engine
        event.listen(sync_engine, "before_cursor_execute", _record)
        try:
            outcome = await engine.request_reward(db_session, USER)
        finally:
            event.remove(sync_engine, "before_cursor_execute", _record)

        assert outcome.granted is True
        assert any(s.startswith("insert into reward_milestones") for s in statements)
        assert not any(s.startswith("update reward_milestones") for s in statements)
        milestone = (await db_session.execute(select(RewardMilestone))).scalar_one()
        assert milestone.transaction_id == outcome.transaction_id


class TestEligibility:
    @pytest.mark.asyncio
    async def test_check_is_read_only(self, db_session):
        result = await check_eligibility(db_session, "never-seen", step=20)
        assert result.eligible is True
        assert result.is_welcome is True
        assert await get_balance_row(db_session, "never-seen") is None

    @pytest.mark.asyncio
    async def test_reports_already_granted(self, db_session, engine):
        await _fund_and_spend(db_session, fund=100, spend=20)
        await engine.request_reward(db_session, USER)

        result = await check_eligibility(db_session, USER, step=20)
        assert result.eligible is False
        assert result.reason == "already_granted"
        assert result.threshold == 20


class TestWriteFailures:
    @pytest.fixture(autouse=True)
    def _no_backoff(self, monkeypatch):
        monkeypatch.setenv("UC_LEDGER_RETRY_BACKOFF_SECONDS", "0")
        get_settings.cache_clear()

    @staticmethod
    def _locked_error() -> OperationalError:
        return OperationalError("UPDATE credit_balances", {}, Exception("database is locked"))

    async def _milestone_count(self, db) -> int:
        return await db.scalar(select(func.count()).select_from(RewardMilestone))

    async def _reward_tx_count(self, db) -> int:
        stmt = select(func.count()).select_from(CreditTransaction).where(CreditTransaction.transaction_type == "reward")
        return await db.scalar(stmt)

    @pytest.mark.asyncio
    async def test_transient_eligibility_failure_is_retried(self, db_session, engine, monkeypatch):
        await _fund_and_spend(db_session, fund=100, spend=20)
        real_check = reward_engine.check_eligibility
        calls = 0

        async def _flaky(*args, **kwargs):
            nonlocal calls
            calls += 1
            if calls == 1:
                raise self._locked_error()
            return await real_check(*args, **kwargs)

        monkeypatch.setattr(reward_engine, "check_eligibility", _flaky)
        outcome = await engine.request_reward(db_session, USER)

        assert calls == 2
        assert outcome.granted is True
        assert outcome.new_balance == 85
        assert await self._milestone_count(db_session) == 1

    @pytest.mark.asyncio
    async def test_transient_grant_failure_is_retried(self, db_session, engine, monkeypatch):
        await _fund_and_spend(db_session, fund=100, spend=20)
        real_credit = reward_engine.credit_in_transaction
        calls = 0

        async def _flaky(*args, **kwargs):
            nonlocal calls
            calls += 1
            if calls == 1:
                raise self._locked_error()
            return await real_credit(*args, **kwargs)

        monkeypatch.setattr(reward_engine, "credit_in_transaction", _flaky)
        outcome = await engine.request_reward(db_session, USER)

        assert calls == 2
        assert outcome.granted is True
        assert outcome.pool == PrizePool.WELCOME
        row = await get_balance_row(db_session, USER)
        assert row.balance == 85
        assert row.welcome_reward_granted is True
        assert await self._milestone_count(db_session) == 1
        assert await self._reward_tx_count(db_session) == 1
        assert (await verify_ledger(db_session, USER)).consistent

    @pytest.mark.asyncio
    async def test_persistent_grant_failure_writes_nothing(self, db_session, engine, monkeypatch):
        await _fund_and_spend(db_session, fund=100, spend=20)
        calls = 0

        async def _broken(*args, **kwargs):
            nonlocal calls
            calls += 1
            raise self._locked_error()

        monkeypatch.setattr(reward_engine, "credit_in_transaction", _broken)
        with pytest.raises(LedgerWriteFailed):
            await engine.request_reward(db_session, USER)

        assert calls == 2
        row = await get_balance_row(db_session, USER)
        assert row.balance == 80
        assert row.welcome_reward_granted is False
        assert await self._milestone_count(db_session) == 0
        assert await self._reward_tx_count(db_session) == 0

    @pytest.mark.asyncio
    async def test_transient_account_lookup_failure_is_retried(self, db_session, engine, monkeypatch):
        await _fund_and_spend(db_session, fund=100, spend=20)
        real_get_balance_row = balance_store.get_balance_row
        calls = 0

        async def _flaky(db, user_id, *, for_update=False):
            nonlocal calls
            calls += 1
            if calls == 1:
                raise self._locked_error()
            return await real_get_balance_row(db, user_id, for_update=for_update)

        monkeypatch.setattr(balance_store, "get_balance_row", _flaky)
        outcome = await engine.request_reward(db_session, USER)

        assert outcome.granted is True
        assert outcome.new_balance == 85

    @pytest.mark.asyncio
    async def test_persistent_account_lookup_failure_surfaces(self, db_session, engine, monkeypatch):
        async def _broken(db, user_id, *, for_update=False):
            raise self._locked_error()

        monkeypatch.setattr(balance_store, "get_balance_row", _broken)
        with pytest.raises(LedgerWriteFailed):
            await engine.request_reward(db_session, USER)

        assert await get_balance_row(db_session, USER) is None
        assert await self._milestone_count(db_session) == 0


class TestHistoryAndEvents:
    @pytest.mark.asyncio
    async def test_history_newest_first(self, db_session, engine):
        await engine.request_reward(db_session, USER)
        await _fund_and_spend(db_session, fund=100, spend=20)
        await engine.request_reward(db_session, USER)

        history = await list_reward_history(db_session, USER)
        assert [h.pool for h in history] == ["standard", "welcome"]

    @pytest.mark.asyncio
    async def test_grant_publishes_event(self, db_session, engine):
        redis = AsyncMock()
        await engine.request_reward(db_session, USER, redis=redis)
        redis.publish.assert_awaited_once()
        assert '"reward_granted"' in redis.publish.call_args.args[1]

    @pytest.mark.asyncio
    async def test_no_grant_no_event(self, db_session, engine):
        await engine.request_reward(db_session, USER)
        redis = AsyncMock()
        await engine.request_reward(db_session, USER, redis=redis)
        redis.publish.assert_not_awaited()
