# tests/test_points.py

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from shopfront.web.crud import (
    InsufficientPointsError,
    NotFoundError,
    PointsOperations,
    ConflictError,
    ValidationError,
    check_in_reward,
)
from shopfront.web.models import PointKind, PointLog

DAY_ONE = datetime(2026, 3, 1, 9, 30, tzinfo=timezone.utc)


async def log_sum(session, user_id):
    result = await session.execute(
        select(func.coalesce(func.sum(PointLog.delta), 0)).where(PointLog.user_id == user_id)
    )
    return result.scalar_one()


async def log_count(session, user_id):
    result = await session.execute(
        select(func.count(PointLog.id)).where(PointLog.user_id == user_id)
    )
    return result.scalar_one()


async def test_new_account_gets_welcome_bonus(session, make_user):
    account = await make_user("alice")

    assert account.points == 100
    history = await PointsOperations(session).get_history("alice")
    assert [(log.delta, log.reason) for log in history] == [(100, "welcome bonus")]


async def test_get_or_create_returns_existing_account(session, make_user):
    await make_user("alice")
    again = await PointsOperations(session).get_or_create_account("alice", name="Other")

    assert again.name == "alice"
    assert again.points == 100
    assert await log_count(session, "alice") == 1


async def test_balance_matches_log_after_earns_and_spends(session, make_user):
    await make_user("bob")
    ops = PointsOperations(session)

    await ops.apply_delta("bob", 40, "bonus", PointKind.EARN)
    await ops.apply_delta("bob", 25, "purchase", PointKind.SPEND, ensure_sufficient=True)
    balance = await ops.apply_delta("bob", 5, "refund", PointKind.EARN)

    assert balance == 120
    assert (await ops.get_account("bob")).points == await log_sum(session, "bob")


async def test_spend_above_balance_is_rejected_without_side_effects(session, make_user):
    await make_user("carol")
    ops = PointsOperations(session)

    with pytest.raises(InsufficientPointsError) as exc_info:
        await ops.apply_delta("carol", 150, "too much", PointKind.SPEND, ensure_sufficient=True)

    assert exc_info.value.required == 150
    assert exc_info.value.available == 100
    assert (await ops.get_account("carol")).points == 100
    assert await log_count(session, "carol") == 1


async def test_spend_of_exact_balance_reaches_zero(session, make_user):
    await make_user("dave")
    balance = await PointsOperations(session).apply_delta(
        "dave", 100, "all in", PointKind.SPEND, ensure_sufficient=True
    )
    assert balance == 0


async def test_apply_delta_rejects_bad_input(session, make_user):
    await make_user("erin")
    ops = PointsOperations(session)

    with pytest.raises(ValidationError):
        await ops.apply_delta("erin", -5, "negative", PointKind.EARN)
    with pytest.raises(ValidationError):
        await ops.apply_delta("erin", 5, "unknown", "gift")


async def test_apply_delta_unknown_user(session):
    with pytest.raises(NotFoundError):
        await PointsOperations(session).apply_delta("ghost", 10, "bonus", PointKind.EARN)

    assert await log_count(session, "ghost") == 0


@pytest.mark.parametrize(
    "streak,reward",
    [(1, 10), (7, 10), (8, 20), (29, 20), (30, 30), (45, 30)],
)
def test_check_in_reward_tiers(streak, reward):
    assert check_in_reward(streak) == reward


async def test_check_in_streak_grows_on_consecutive_days(session, make_user):
    await make_user("frank")
    ops = PointsOperations(session)

    first = await ops.check_in("frank", now=DAY_ONE)
    second = await ops.check_in("frank", now=DAY_ONE + timedelta(days=1, hours=5))

    assert (first.streak, first.points_earned) == (1, 10)
    assert (second.streak, second.points_earned) == (2, 10)
    assert second.balance == 120

    history = await ops.get_history("frank")
    assert "daily check-in (day 2)" in {log.reason for log in history}


async def test_check_in_twice_same_day_conflicts(session, make_user):
    await make_user("gina")
    ops = PointsOperations(session)

    await ops.check_in("gina", now=DAY_ONE)
    with pytest.raises(ConflictError):
        await ops.check_in("gina", now=DAY_ONE + timedelta(hours=10))

    assert (await ops.get_account("gina")).points == 110


async def test_check_in_gap_resets_streak(session, make_user):
    await make_user("hank")
    ops = PointsOperations(session)

    await ops.check_in("hank", now=DAY_ONE)
    await ops.check_in("hank", now=DAY_ONE + timedelta(days=1))
    result = await ops.check_in("hank", now=DAY_ONE + timedelta(days=3))

    assert result.streak == 1


async def test_check_in_status(session, make_user):
    await make_user("ivy")
    ops = PointsOperations(session)

    before = await ops.check_in_status("ivy", now=DAY_ONE)
    assert before.can_check_in is True
    assert before.streak == 0

    await ops.check_in("ivy", now=DAY_ONE)
    after = await ops.check_in_status("ivy", now=DAY_ONE + timedelta(hours=1))
    assert after.can_check_in is False
    assert after.streak == 1
    assert after.points == 110

    tomorrow = await ops.check_in_status("ivy", now=DAY_ONE + timedelta(days=1))
    assert tomorrow.can_check_in is True
