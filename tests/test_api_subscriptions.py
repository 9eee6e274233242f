"""
API tests for subscription endpoints.
"""
import pytest


@pytest.fixture
async def fan_and_creator(user_factory, wallet_factory):
    fan = await user_factory(username="fan")
    creator = await user_factory(username="creator")
    await wallet_factory(user_id=fan.id)
    await wallet_factory(user_id=creator.id)
    return fan, creator


async def _subscribe(test_client, fan_id: int, creator_id: int, **extra):
    body = {"subscriberId": fan_id, "creatorId": creator_id, "tier": "BASIC", **extra}
    return await test_client.post("/api/subscriptions/", json=body)


@pytest.mark.unit
async def test_create_subscription(test_client, fan_and_creator, fake_rail):
    fan, creator = fan_and_creator

    response = await _subscribe(test_client, fan.id, creator.id)

    assert response.status_code == 201
    data = response.json()
    assert data["status"] == "active"
    assert data["tier"] == "basic"
    assert data["interval"] == "monthly"
    assert data["amount"] == "4.99"
    assert data["failed_charge_count"] == 0
    assert len(fake_rail.charges) == 1

    creator_wallet = await test_client.get(f"/api/wallets/{creator.id}")
    assert creator_wallet.json()["pending_earnings"] == "3.49"


@pytest.mark.unit
async def test_create_yearly_vip(test_client, fan_and_creator):
    fan, creator = fan_and_creator

    response = await _subscribe(test_client, fan.id, creator.id, tier="vip", interval="YEARLY")

    assert response.status_code == 201
    assert response.json()["amount"] == "249.99"


@pytest.mark.unit
async def test_duplicate_subscription_conflicts(test_client, fan_and_creator):
    fan, creator = fan_and_creator
    await _subscribe(test_client, fan.id, creator.id)

    response = await _subscribe(test_client, fan.id, creator.id)

    assert response.status_code == 409
    assert response.json()["error"]["code"] == "already_subscribed"


@pytest.mark.unit
async def test_declined_first_charge(test_client, fan_and_creator, fake_rail):
    fan, creator = fan_and_creator
    fake_rail.decline = True

    response = await _subscribe(test_client, fan.id, creator.id)

    assert response.status_code == 402
    assert response.json()["error"]["code"] == "payment_failed"


@pytest.mark.unit
async def test_unknown_tier_is_validation_error(test_client, fan_and_creator):
    fan, creator = fan_and_creator

    response = await _subscribe(test_client, fan.id, creator.id, tier="platinum")

    assert response.status_code == 400
    assert response.json()["error"]["code"] == "validation_error"


@pytest.mark.unit
async def test_get_subscription(test_client, fan_and_creator):
    fan, creator = fan_and_creator
    created = (await _subscribe(test_client, fan.id, creator.id)).json()

    response = await test_client.get(f"/api/subscriptions/{created['id']}")

    assert response.status_code == 200
    assert response.json()["id"] == created["id"]


@pytest.mark.unit
async def test_get_unknown_subscription(test_client):
    response = await test_client.get("/api/subscriptions/999")

    assert response.status_code == 404
    assert response.json()["error"]["code"] == "subscription_not_found"


@pytest.mark.unit
async def test_cancel_then_cancel_again(test_client, fan_and_creator):
    fan, creator = fan_and_creator
    created = (await _subscribe(test_client, fan.id, creator.id)).json()
    url = f"/api/subscriptions/{created['id']}"

    first = await test_client.delete(url, params={"acting_user_id": fan.id})
    second = await test_client.delete(url, params={"acting_user_id": fan.id})

    assert first.status_code == 200
    assert first.json()["status"] == "canceled"
    assert first.json()["canceled_at"] is not None
    assert second.status_code == 409
    assert second.json()["error"]["code"] == "invalid_state_transition"


@pytest.mark.unit
async def test_cancel_by_creator_is_forbidden(test_client, fan_and_creator):
    fan, creator = fan_and_creator
    created = (await _subscribe(test_client, fan.id, creator.id)).json()

    response = await test_client.delete(
        f"/api/subscriptions/{created['id']}", params={"acting_user_id": creator.id}
    )

    assert response.status_code == 403
