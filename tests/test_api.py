# tests/test_api.py

from uuid import uuid4

from shopfront.shared.config import get_settings
from shopfront.web import crud


def as_user(user_id, name=None):
    headers = {"X-User-Id": user_id}
    if name:
        headers["X-User-Name"] = name
    return headers


async def create_group(client, admin_headers, **overrides):
    body = {"title": "Kit", "price": "10", "targetCount": 3}
    body.update(overrides)
    response = await client.post("/api/groups", json=body, headers=admin_headers)
    assert response.status_code == 201
    return response.json()


async def create_lottery(client, admin_headers, **overrides):
    body = {"title": "Gift", "drawDate": "2026-12-01T10:00:00+08:00", "winnersCount": 1, "entryCost": 10}
    body.update(overrides)
    response = await client.post("/api/lotteries", json=body, headers=admin_headers)
    assert response.status_code == 201
    return response.json()


async def test_health_check(client):
    response = await client.get("/health")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"


async def test_request_id_is_echoed(client):
    response = await client.get("/health", headers={"x-request-id": "req-123"})
    assert response.headers["x-request-id"] == "req-123"


async def test_authentication_and_admin_checks(client):
    assert (await client.get("/api/points")).status_code == 401

    response = await client.post(
        "/api/groups",
        json={"title": "Nope", "price": "1", "targetCount": 1},
        headers=as_user("u1"),
    )
    assert response.status_code == 403


async def test_blank_user_id_is_anonymous(client):
    response = await client.get("/api/points", headers={"X-User-Id": "   "})

    assert response.status_code == 401


async def test_first_request_creates_account_with_bonus(client):
    response = await client.get("/api/points", headers=as_user("newbie"))

    assert response.status_code == 200
    data = response.json()
    assert data["points"] == 100
    assert [log["reason"] for log in data["logs"]] == ["welcome bonus"]


async def test_join_and_capacity_conflict(client, admin_headers):
    group = await create_group(client, admin_headers)

    joined = await client.post(f"/api/groups/{group['id']}/join", json={"quantity": 2}, headers=as_user("u1"))
    assert joined.status_code == 200
    assert joined.json()["campaign"]["currentCount"] == 2
    assert joined.json()["redirected"] is False

    full = await client.post(f"/api/groups/{group['id']}/join", json={"quantity": 2}, headers=as_user("u2"))
    assert full.status_code == 409
    body = full.json()
    assert body["type"] == "capacity_exceeded"
    assert body["context"] == {"needed": 2, "available": 1}


async def test_invalid_body_is_rejected(client, admin_headers):
    group = await create_group(client, admin_headers)

    response = await client.post(f"/api/groups/{group['id']}/join", json={"quantity": 0}, headers=as_user("u1"))

    assert response.status_code == 422
    assert response.json()["type"] == "validation_error"


async def test_unknown_group_is_not_found(client):
    response = await client.get(f"/api/groups/{uuid4()}")

    assert response.status_code == 404
    assert response.json()["type"] == "not_found_error"


async def test_ending_group_settles_points(client, admin_headers):
    group = await create_group(client, admin_headers)
    await client.post(f"/api/groups/{group['id']}/join", json={"quantity": 2}, headers=as_user("u1"))

    response = await client.put(f"/api/groups/{group['id']}", json={"status": "ended"}, headers=admin_headers)

    assert response.status_code == 200
    data = response.json()
    assert data["campaign"]["status"] == "ended"
    assert data["settlement"]["paidCount"] == 1
    assert data["settlement"]["totalPoints"] == 20

    points = await client.get("/api/points", headers=as_user("u1"))
    assert points.json()["points"] == 120

    reopen = await client.put(f"/api/groups/{group['id']}", json={"status": "open"}, headers=admin_headers)
    assert reopen.status_code == 409


async def test_locked_is_not_a_manual_status(client, admin_headers):
    group = await create_group(client, admin_headers)

    response = await client.put(f"/api/groups/{group['id']}", json={"status": "locked"}, headers=admin_headers)

    assert response.status_code == 422


async def test_my_groups_lists_memberships(client, admin_headers):
    group = await create_group(client, admin_headers)
    await client.post(
        f"/api/groups/{group['id']}/join",
        json={"quantity": 1, "contactInfo": "wechat:u1"},
        headers=as_user("u1"),
    )

    response = await client.get("/api/me/groups", headers=as_user("u1"))

    assert response.status_code == 200
    [membership] = response.json()
    assert membership["campaign"]["id"] == group["id"]
    assert membership["quantity"] == 1
    assert membership["contactInfo"] == "wechat:u1"


async def test_daily_check_in(client):
    first = await client.post("/api/points/check-in", headers=as_user("u1"))
    assert first.status_code == 200
    assert first.json()["pointsEarned"] == 10
    assert first.json()["points"] == 110

    second = await client.post("/api/points/check-in", headers=as_user("u1"))
    assert second.status_code == 409

    status = await client.get("/api/points/check-in", headers=as_user("u1"))
    assert status.json()["canCheckIn"] is False


async def test_lottery_entry_and_manual_draw(client, admin_headers):
    lottery = await create_lottery(client, admin_headers)
    assert lottery["drawDate"].startswith("2026-12-01T02:00:00")

    entered = await client.post(f"/api/lotteries/{lottery['id']}/enter", headers=as_user("u1", "Winston"))
    assert entered.status_code == 200
    assert entered.json() == {"success": True, "pointsSpent": 10, "newPoints": 90}

    again = await client.post(f"/api/lotteries/{lottery['id']}/enter", headers=as_user("u1"))
    assert again.status_code == 409

    drawn = await client.post("/api/lotteries/draw", json={"lotteryId": lottery["id"]}, headers=admin_headers)
    assert drawn.status_code == 200
    assert drawn.json()["winnersMarked"] == 1

    detail = await client.get(f"/api/lotteries/{lottery['id']}", headers=as_user("u1"))
    data = detail.json()
    assert data["status"] == "ended"
    assert data["hasEntered"] is True
    assert data["winners"] == [{"name": "Wi*****", "isWinner": True}]

    entries = await client.get(f"/api/lotteries/{lottery['id']}/entries", headers=admin_headers)
    assert [e["isWinner"] for e in entries.json()] == [True]


async def test_manual_draw_requires_minimum_entries(client, admin_headers):
    lottery = await create_lottery(client, admin_headers, minParticipants=2)
    await client.post(f"/api/lotteries/{lottery['id']}/enter", headers=as_user("u1"))

    response = await client.post("/api/lotteries/draw", json={"lotteryId": lottery["id"]}, headers=admin_headers)

    assert response.status_code == 400
    assert response.json()["detail"] == "Not enough participants (1/2)"


async def test_rejected_winner_marks_return_consistency_error(client, admin_headers, monkeypatch):
    lottery = await create_lottery(client, admin_headers)
    await client.post(f"/api/lotteries/{lottery['id']}/enter", headers=as_user("u1"))
    monkeypatch.setattr(crud, "fisher_yates_shuffle", lambda items, rng=None: ["nobody"])

    response = await client.post("/api/lotteries/draw", json={"lotteryId": lottery["id"]}, headers=admin_headers)

    assert response.status_code == 500
    assert response.json()["type"] == "consistency_error"

    # The lottery stays ended so it is not drawn a second time
    detail = await client.get(f"/api/lotteries/{lottery['id']}")
    assert detail.json()["status"] == "ended"


async def test_listing_lotteries_extends_overdue_draws(client, admin_headers):
    lottery = await create_lottery(client, admin_headers, drawDate="2020-01-01T00:00:00Z", entryCost=0)

    response = await client.get("/api/lotteries")

    assert response.status_code == 200
    [listed] = response.json()
    assert listed["id"] == lottery["id"]
    assert listed["status"] == "pending"
    assert not listed["drawDate"].startswith("2020-01-01")


async def test_auto_draw_requires_cron_key_when_configured(client, monkeypatch):
    monkeypatch.setattr(get_settings(), "cron_api_key", "s3cret")

    denied = await client.get("/api/lotteries/auto-draw")
    assert denied.status_code == 401

    wrong = await client.post("/api/lotteries/auto-draw", headers={"Authorization": "Bearer nope"})
    assert wrong.status_code == 401

    allowed = await client.get("/api/lotteries/auto-draw", headers={"Authorization": "Bearer s3cret"})
    assert allowed.status_code == 200
    assert allowed.json()["total"] == 0


async def test_auto_draw_is_open_without_cron_key(client, admin_headers):
    lottery = await create_lottery(client, admin_headers, drawDate="2020-01-01T00:00:00Z")
    await client.post(f"/api/lotteries/{lottery['id']}/enter", headers=as_user("u1"))

    response = await client.post("/api/lotteries/auto-draw")

    assert response.status_code == 200
    data = response.json()
    assert data["drawn"] == 1
    assert data["results"][0]["lotteryId"] == lottery["id"]


async def test_leave_releases_seats(client, admin_headers):
    group = await create_group(client, admin_headers)
    await client.post(f"/api/groups/{group['id']}/join", json={"quantity": 2}, headers=as_user("u1"))

    response = await client.post(f"/api/groups/{group['id']}/leave", headers=as_user("u1"))

    assert response.status_code == 200
    data = response.json()
    assert data["released"] == 2
    assert data["campaign"]["currentCount"] == 0
    assert data["backfilledQuantity"] == 0

    again = await client.post(f"/api/groups/{group['id']}/leave", headers=as_user("u1"))
    assert again.status_code == 404


async def test_member_edits_own_membership(client, admin_headers):
    group = await create_group(client, admin_headers)
    await client.post(f"/api/groups/{group['id']}/join", json={"quantity": 2}, headers=as_user("u1"))

    response = await client.put(
        f"/api/groups/{group['id']}/membership",
        json={"quantity": 3, "contactInfo": "tel:555"},
        headers=as_user("u1"),
    )

    assert response.status_code == 200
    data = response.json()
    assert data["delta"] == 1
    assert data["campaign"]["currentCount"] == 3
    assert data["participant"]["quantity"] == 3
    assert data["participant"]["contactInfo"] == "tel:555"

    outsider = await client.put(
        f"/api/groups/{group['id']}/membership", json={"quantity": 1}, headers=as_user("u2")
    )
    assert outsider.status_code == 404


async def test_admin_manages_participants(client, admin_headers):
    group = await create_group(client, admin_headers)
    await client.post(f"/api/groups/{group['id']}/join", json={"quantity": 2}, headers=as_user("u1"))

    updated = await client.put(
        f"/api/groups/{group['id']}/participants/u1",
        json={"quantity": 1, "contacted": True},
        headers=admin_headers,
    )
    assert updated.status_code == 200
    assert updated.json()["delta"] == -1
    assert updated.json()["participant"]["contacted"] is True

    removed = await client.delete(f"/api/groups/{group['id']}/participants/u1", headers=admin_headers)
    assert removed.status_code == 200
    assert removed.json()["success"] is True

    participants = await client.get(f"/api/groups/{group['id']}/participants", headers=admin_headers)
    assert participants.json() == []
    detail = await client.get(f"/api/groups/{group['id']}")
    assert detail.json()["currentCount"] == 0


async def test_move_member_merges_quantities(client, admin_headers):
    source = await create_group(client, admin_headers, title="Kettle", targetCount=5)
    target = await create_group(client, admin_headers, title="Toaster", targetCount=5)
    await client.post(f"/api/groups/{source['id']}/join", json={"quantity": 2}, headers=as_user("u1"))
    await client.post(f"/api/groups/{target['id']}/join", json={"quantity": 3}, headers=as_user("u1"))

    response = await client.post(
        "/api/groups/move-member",
        json={"groupId": source["id"], "userId": "u1", "targetGroupId": target["id"]},
        headers=admin_headers,
    )

    assert response.status_code == 200
    assert response.json()["userId"] == "u1"
    assert response.json()["quantity"] == 5
    assert (await client.get(f"/api/groups/{source['id']}")).json()["currentCount"] == 0
    assert (await client.get(f"/api/groups/{target['id']}")).json()["currentCount"] == 5


async def test_renew_reports_not_full(client, admin_headers):
    group = await create_group(client, admin_headers, title="Pot", autoRenew=True)

    response = await client.post("/api/groups/renew", json={"groupId": group["id"]}, headers=admin_headers)

    assert response.status_code == 200
    data = response.json()
    assert data["renewed"] is False
    assert data["reason"] == "not_full"
    assert data["campaign"] is None


async def test_renew_creates_next_batch_then_blocks(client, admin_headers):
    group = await create_group(client, admin_headers, title="Lamp", targetCount=1)
    await client.post(f"/api/groups/{group['id']}/join", json={"quantity": 1}, headers=as_user("u1"))
    await client.put(f"/api/groups/{group['id']}", json={"autoRenew": True}, headers=admin_headers)

    renewed = await client.post("/api/groups/renew", json={"groupId": group["id"]}, headers=admin_headers)

    assert renewed.status_code == 200
    data = renewed.json()
    assert data["renewed"] is True
    assert data["reason"] is None
    assert data["campaign"]["title"] == "Lamp #2"
    assert data["campaign"]["parentCampaignId"] == group["id"]

    blocked = await client.post("/api/groups/renew", json={"groupId": group["id"]}, headers=admin_headers)
    assert blocked.json()["reason"] == "sibling_open"
    assert blocked.json()["siblingTitle"] == "Lamp #2"
    assert blocked.json()["siblingId"] == data["campaign"]["id"]


async def test_filling_join_reports_renewal(client, admin_headers):
    group = await create_group(client, admin_headers, targetCount=1, autoRenew=True)

    joined = await client.post(f"/api/groups/{group['id']}/join", json={"quantity": 1}, headers=as_user("u1"))

    assert joined.status_code == 200
    renewal = joined.json()["renewal"]
    assert renewal["renewed"] is True
    assert renewal["campaign"]["title"] == "Kit #2"


async def test_entry_contact_and_my_lotteries(client, admin_headers):
    lottery = await create_lottery(client, admin_headers)
    await client.post(f"/api/lotteries/{lottery['id']}/enter", headers=as_user("u1"))

    contact = await client.put(
        f"/api/lotteries/{lottery['id']}/contact",
        json={"contactInfo": "wechat:u1"},
        headers=as_user("u1"),
    )
    assert contact.status_code == 200

    response = await client.get("/api/me/lotteries", headers=as_user("u1"))

    assert response.status_code == 200
    [entry] = response.json()
    assert entry["lottery"]["id"] == lottery["id"]
    assert entry["entryCost"] == 10
    assert entry["isWinner"] is False
    assert entry["contactInfo"] == "wechat:u1"

    stranger = await client.put(
        f"/api/lotteries/{lottery['id']}/contact",
        json={"contactInfo": "x"},
        headers=as_user("u2"),
    )
    assert stranger.status_code == 404
