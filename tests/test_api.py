"""HTTP-level tests for the FastAPI routes."""

import uuid

from ticketing.models import TicketTier, TransactionStatus
from ticketing.notifications import drain_notifications

from tests.factories import make_coupon, make_tier, reload

CUSTOMER = {"X-API-TOKEN": "customer-token"}
ORGANIZER = {"X-API-TOKEN": "organizer-token"}


def _purchase(tier, **overrides):
    body = {"eventId": str(tier.event_id), "ticketTierId": str(tier.id), "quantity": 2}
    body.update(overrides)
    return body


async def _create(client, tier, **overrides):
    res = await client.post("/transactions", json=_purchase(tier, **overrides), headers=CUSTOMER)
    assert res.status_code == 201, res.text
    return res.json()


async def test_create_transaction(client, session, customer, tier):
    data = await _create(client, tier)

    assert data["status"] == TransactionStatus.WAITING_PAYMENT.value
    assert data["totalAmount"] == 20_000
    assert data["ticketTierId"] == str(tier.id)
    assert data["userId"] == str(customer.id)
    assert data["expiresAt"] is not None
    assert (await reload(session, TicketTier, tier.id)).sold == 2


async def test_missing_token_is_unauthorized(client, tier):
    res = await client.post("/transactions", json=_purchase(tier))
    assert res.status_code == 401
    assert res.json()["code"] == "UNAUTHORIZED"


async def test_unknown_token_is_unauthorized(client, tier):
    res = await client.post("/transactions", json=_purchase(tier),
                            headers={"X-API-TOKEN": "nobody"})
    assert res.status_code == 401


async def test_invalid_quantity_is_bad_request(client, customer, tier):
    res = await client.post("/transactions", json=_purchase(tier, quantity=0), headers=CUSTOMER)
    assert res.status_code == 400
    assert "errors" in res.json()


async def test_overselling_is_conflict(client, session, customer, event):
    tier = await make_tier(session, event, quantity=10, sold=9)

    res = await client.post("/transactions", json=_purchase(tier, quantity=5), headers=CUSTOMER)

    assert res.status_code == 409
    assert res.json() == {"error": "Only 1 seats available", "code": "INSUFFICIENT_SEATS"}


async def test_unknown_event_is_not_found(client, customer, tier):
    res = await client.post("/transactions", json=_purchase(tier, eventId=str(uuid.uuid4())),
                            headers=CUSTOMER)
    assert res.status_code == 404
    assert res.json()["code"] == "EVENT_NOT_FOUND"


async def test_upload_then_accept(client, session, organizer, customer, tier, notifier):
    created = await _create(client, tier)

    res = await client.post(f"/transactions/{created['id']}/upload-proof",
                            json={"proofUrl": "https://example.com/proof.jpg"}, headers=CUSTOMER)
    assert res.status_code == 200, res.text
    assert res.json()["status"] == TransactionStatus.WAITING_CONFIRMATION.value
    assert res.json()["paymentProofUrl"] == "https://example.com/proof.jpg"

    res = await client.patch(f"/transactions/{created['id']}/accept", headers=ORGANIZER)
    assert res.status_code == 200, res.text
    assert res.json()["status"] == TransactionStatus.DONE.value
    assert res.json()["expiresAt"] is None
    await drain_notifications()
    assert [p["kind"] for p in notifier.sent] == ["transaction_accepted"]


async def test_customer_cannot_accept(client, customer, organizer, tier):
    created = await _create(client, tier)
    await client.post(f"/transactions/{created['id']}/upload-proof",
                      json={"proofUrl": "https://example.com/proof.jpg"}, headers=CUSTOMER)

    res = await client.patch(f"/transactions/{created['id']}/accept", headers=CUSTOMER)

    assert res.status_code == 403
    assert res.json()["code"] == "NOT_ORGANIZER"


async def test_accept_unpaid_is_conflict(client, customer, organizer, tier):
    created = await _create(client, tier)
    res = await client.patch(f"/transactions/{created['id']}/accept", headers=ORGANIZER)
    assert res.status_code == 409
    assert res.json()["code"] == "INVALID_STATUS"


async def test_reject_releases_seats(client, session, organizer, customer, tier, notifier):
    created = await _create(client, tier)

    res = await client.patch(f"/transactions/{created['id']}/reject", headers=ORGANIZER)

    assert res.status_code == 200
    assert res.json()["status"] == TransactionStatus.REJECTED.value
    assert (await reload(session, TicketTier, tier.id)).sold == 0
    await drain_notifications()
    assert notifier.sent[0]["kind"] == "transaction_rejected"


async def test_cancel_and_list(client, session, customer, tier):
    created = await _create(client, tier)
    await _create(client, tier, quantity=1)

    res = await client.patch(f"/transactions/{created['id']}/cancel", headers=CUSTOMER)
    assert res.status_code == 200
    assert res.json()["status"] == TransactionStatus.CANCELED.value

    res = await client.get("/transactions", params={"status": "CANCELED"}, headers=CUSTOMER)
    assert [t["id"] for t in res.json()] == [created["id"]]

    res = await client.get(f"/transactions/{created['id']}", headers=CUSTOMER)
    assert res.status_code == 200
    assert (await reload(session, TicketTier, tier.id)).sold == 1


async def test_get_unknown_transaction(client, customer):
    res = await client.get(f"/transactions/{uuid.uuid4()}", headers=CUSTOMER)
    assert res.status_code == 404
    assert res.json()["code"] == "TRANSACTION_NOT_FOUND"


async def test_validate_coupon(client, session, customer, event):
    coupon = await make_coupon(session, discount_value=20, max_discount=5000)

    res = await client.post("/coupons/validate", headers=CUSTOMER, json={
        "couponCode": coupon.code, "eventId": str(event.id), "amount": 100_000,
    })

    assert res.status_code == 200
    assert res.json() == {"isValid": True, "discountAmount": 5000,
                          "finalAmount": 95_000, "message": None}


async def test_validate_unknown_coupon(client, customer, event):
    res = await client.post("/coupons/validate", headers=CUSTOMER, json={
        "couponCode": "MISSING", "eventId": str(event.id), "amount": 1000,
    })
    assert res.json()["isValid"] is False
    assert res.json()["message"] == "Coupon not found"


async def test_tier_availability(client, session, event):
    tier = await make_tier(session, event, quantity=50, sold=12)

    res = await client.get(f"/ticket-tiers/{tier.id}/availability")

    assert res.status_code == 200
    assert res.json() == {"ticketTierId": str(tier.id), "quantity": 50, "sold": 12,
                          "available": 38, "version": 1}


async def test_unknown_tier_availability(client):
    res = await client.get(f"/ticket-tiers/{uuid.uuid4()}/availability")
    assert res.status_code == 404


async def test_tier_version_changes_with_seat_updates(client, customer, tier):
    before = (await client.get(f"/ticket-tiers/{tier.id}/availability")).json()
    created = await _create(client, tier)
    after_buy = (await client.get(f"/ticket-tiers/{tier.id}/availability")).json()
    await client.patch(f"/transactions/{created['id']}/cancel", headers=CUSTOMER)
    after_cancel = (await client.get(f"/ticket-tiers/{tier.id}/availability")).json()

    assert [before["sold"], after_buy["sold"], after_cancel["sold"]] == [0, 2, 0]
    assert before["version"] < after_buy["version"] < after_cancel["version"]
