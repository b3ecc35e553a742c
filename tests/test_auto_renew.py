# tests/test_auto_renew.py

from uuid import uuid4

import pytest

from shopfront.web import crud
from shopfront.web.crud import (
    AutoRenewOperations,
    CampaignOperations,
    RenewReason,
    base_title,
    next_series_title,
    series_number,
)


@pytest.mark.parametrize(
    "title,base,number",
    [
        ("Widget", "Widget", 1),
        ("Widget #2", "Widget", 2),
        ("Widget #12", "Widget", 12),
        ("Widget#3 ", "Widget", 3),
        ("Widget Pro #4", "Widget Pro", 4),
    ],
)
def test_series_title_parsing(title, base, number):
    assert base_title(title) == base
    assert series_number(title) == number


def test_next_series_title_uses_highest_number():
    assert next_series_title("X", ["X", "X #2", "X #5"]) == "X #6"
    assert next_series_title("X", ["X"]) == "X #2"
    assert next_series_title("X", []) == "X #2"


def test_next_series_title_ignores_other_series():
    titles = ["Widget", "Widget #3", "Widget Pro #9", "Widgets #7"]
    assert next_series_title("Widget", titles) == "Widget #4"


async def test_renew_numbers_after_highest_batch(session, make_campaign):
    await make_campaign("Widget", 2, current_count=2)
    await make_campaign("Widget #2", 2, minutes=1, current_count=2)
    latest = await make_campaign(
        "Widget #5", 2, price="7.50", minutes=2, current_count=2, auto_renew=True,
        description="Batch order", image_url="https://img.example/w.png", is_hot=True,
    )

    result = await AutoRenewOperations(session).try_renew(latest.id)

    assert result.renewed
    assert result.reason is None
    successor = result.campaign
    assert successor.title == "Widget #6"
    assert successor.parent_campaign_id == latest.id
    assert successor.description == "Batch order"
    assert successor.image_url == "https://img.example/w.png"
    assert successor.is_hot is True
    assert successor.auto_renew is True
    assert successor.current_count == 0
    assert result.message == "Created Widget #6"


async def test_renew_blocked_by_open_sibling(session, make_campaign):
    source = await make_campaign("Lamp", 2, current_count=2, auto_renew=True)
    sibling = await make_campaign("Lamp #2", 2, minutes=1, current_count=1)

    result = await AutoRenewOperations(session).try_renew(source.id)

    assert not result.renewed
    assert result.reason == RenewReason.SIBLING_OPEN
    assert result.sibling_id == sibling.id
    assert result.sibling_title == "Lamp #2"
    assert result.message.endswith("Lamp #2")


async def test_ended_sibling_does_not_block(session, make_campaign):
    source = await make_campaign("Desk", 2, current_count=2, auto_renew=True)
    await make_campaign("Desk #2", 2, minutes=1, current_count=1, status="ended")

    result = await AutoRenewOperations(session).try_renew(source.id)

    assert result.renewed
    assert result.campaign.title == "Desk #3"


async def test_renew_reports_not_full_and_disabled(session, make_campaign):
    partial = await make_campaign("Chair", 3, current_count=1, auto_renew=True)
    manual = await make_campaign("Stool", 3, current_count=3)
    ops = AutoRenewOperations(session)

    assert (await ops.try_renew(partial.id)).reason == RenewReason.NOT_FULL
    assert (await ops.try_renew(manual.id)).reason == RenewReason.AUTO_RENEW_DISABLED
    assert (await ops.try_renew(uuid4())).reason == RenewReason.NOT_FOUND


async def test_renew_is_not_repeated_while_successor_open(session, make_campaign):
    source = await make_campaign("Mug", 1, current_count=1, auto_renew=True)
    ops = AutoRenewOperations(session)

    first = await ops.try_renew(source.id)
    second = await ops.try_renew(source.id)

    assert first.renewed
    assert second.reason == RenewReason.SIBLING_OPEN
    assert second.sibling_id == first.campaign.id


async def test_renew_title_collision_reports_successor_exists(session, make_campaign, monkeypatch):
    source = await make_campaign("Pen", 1, current_count=1, auto_renew=True)
    await make_campaign("Pen #2", 1, minutes=1, current_count=1)

    # Simulate a concurrent renewal that already took the computed title
    monkeypatch.setattr(crud, "next_series_title", lambda base, titles: "Pen #2")

    result = await AutoRenewOperations(session).try_renew(source.id)

    assert result.reason == RenewReason.SUCCESSOR_EXISTS
    titles = [c.title for c in await CampaignOperations(session).list_campaigns()]
    assert sorted(titles) == ["Pen", "Pen #2"]


async def test_settling_full_campaign_triggers_renewal(session, make_user, make_campaign):
    await make_user("u1")
    campaign = await make_campaign("Soap", 2)
    ops = CampaignOperations(session)
    joined = await ops.join(campaign.id, "u1", quantity=2)
    assert joined.renewal is None

    await ops.update_campaign(campaign.id, {"auto_renew": True})
    settlement = await ops.settle(campaign.id)

    assert settlement.renewal is not None
    assert settlement.renewal.campaign.title == "Soap #2"
    assert (await ops.settle(campaign.id)).renewal is None
