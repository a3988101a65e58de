"""
End-to-end tests through the FastAPI app with the database, gateway and
outbox dependencies swapped for test doubles.
"""

from decimal import Decimal
from unittest.mock import AsyncMock, patch
from uuid import UUID

import pytest
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from packtrip.db import crud
from packtrip.db.models import BookingStatus, TransactionStatus, UserRole

from conftest import future

API = "/api/v1"


def booking_body(seed, **overrides):
    body = {
        "package_type": "tour",
        "package_id": str(seed.tour.id),
        "quantity": 2,
        "start_date": future().isoformat(),
    }
    body.update(overrides)
    return body


class TestBookingEndpoints:
    @pytest.mark.asyncio
    async def test_create_booking(self, client, seed, auth_headers):
        response = await client.post(
            f"{API}/bookings",
            json=booking_body(seed, reward_ids=[str(seed.rewards.welcome.id)]),
            headers=auth_headers(seed.customer),
        )
        assert response.status_code == 201
        data = response.json()
        assert data["booking"]["status"] == "pending"
        assert Decimal(data["booking"]["total_price"]) == Decimal("2000000")
        assert Decimal(data["booking"]["final_price"]) == Decimal("1800000")
        assert data["payment_session"]["status"] == "created"
        assert data["payment_session"]["redirect_url"].startswith("https://pay.example.test/")
        assert [r["reward_id"] for r in data["rewards"]] == [str(seed.rewards.welcome.id)]

    @pytest.mark.asyncio
    async def test_requires_token(self, client, seed):
        response = await client.post(f"{API}/bookings", json=booking_body(seed))
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_field_errors(self, client, seed, auth_headers):
        response = await client.post(
            f"{API}/bookings",
            json=booking_body(seed, quantity=0, start_date=future(-1).isoformat()),
            headers=auth_headers(seed.customer),
        )
        assert response.status_code == 422
        fields = {e["field"] for e in response.json()["detail"]}
        assert fields == {"quantity", "start_date"}

    @pytest.mark.asyncio
    async def test_malformed_body_uses_same_error_shape(self, client, seed, auth_headers):
        body = booking_body(seed)
        del body["package_type"]
        response = await client.post(f"{API}/bookings", json=body, headers=auth_headers(seed.customer))
        assert response.status_code == 422
        detail = response.json()["detail"]
        assert detail[0]["field"] == "package_type"
        assert detail[0]["message"]

    @pytest.mark.asyncio
    async def test_unknown_package(self, client, seed, auth_headers):
        response = await client.post(
            f"{API}/bookings",
            json=booking_body(seed, package_id=str(seed.rental.id)),
            headers=auth_headers(seed.customer),
        )
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_gateway_failure_still_creates_booking(self, client, seed, auth_headers, gateway):
        gateway.fail = True
        response = await client.post(f"{API}/bookings", json=booking_body(seed), headers=auth_headers(seed.customer))
        assert response.status_code == 201
        assert response.json()["payment_session"]["status"] == "failed"

        listing = await client.get(f"{API}/bookings", headers=auth_headers(seed.customer))
        assert [b["status"] for b in listing.json()] == ["pending"]

    @pytest.mark.asyncio
    async def test_detail_is_private(self, client, seed, auth_headers):
        created = await client.post(f"{API}/bookings", json=booking_body(seed), headers=auth_headers(seed.customer))
        booking_id = created.json()["booking"]["id"]

        own = await client.get(f"{API}/bookings/{booking_id}", headers=auth_headers(seed.customer))
        assert own.status_code == 200
        assert [log["new_status"] for log in own.json()["logs"]] == ["pending"]

        other = await client.get(f"{API}/bookings/{booking_id}", headers=auth_headers(seed.other))
        assert other.status_code == 403

        staff = await client.get(f"{API}/bookings/{booking_id}", headers=auth_headers(seed.admin, UserRole.ADMIN))
        assert staff.status_code == 200

    @pytest.mark.asyncio
    async def test_cancel_and_admin_status(self, client, seed, auth_headers):
        customer = auth_headers(seed.customer)
        admin = auth_headers(seed.admin, UserRole.ADMIN)
        first = (await client.post(f"{API}/bookings", json=booking_body(seed), headers=customer)).json()
        second = (await client.post(
            f"{API}/bookings", json=booking_body(seed, start_date=future(40).isoformat()), headers=customer
        )).json()

        cancelled = await client.post(
            f"{API}/bookings/{first['booking']['id']}/cancel", json={"reason": "Sick"}, headers=customer
        )
        assert cancelled.status_code == 200
        assert cancelled.json()["status"] == "cancelled"

        forbidden = await client.put(
            f"{API}/admin/bookings/{second['booking']['id']}/status", json={"status": "confirmed"}, headers=customer
        )
        assert forbidden.status_code == 403

        confirmed = await client.put(
            f"{API}/admin/bookings/{second['booking']['id']}/status", json={"status": "confirmed"}, headers=admin
        )
        assert confirmed.json()["status"] == "confirmed"

        invalid = await client.put(
            f"{API}/admin/bookings/{first['booking']['id']}/status", json={"status": "confirmed"}, headers=admin
        )
        assert invalid.status_code == 422
        assert invalid.json()["detail"][0]["field"] == "status"

        listing = await client.get(f"{API}/admin/bookings", params={"status": "confirmed"}, headers=admin)
        assert [b["id"] for b in listing.json()] == [second["booking"]["id"]]

    @pytest.mark.asyncio
    async def test_payment_session_retry(self, client, seed, auth_headers, gateway):
        gateway.fail = True
        created = (await client.post(f"{API}/bookings", json=booking_body(seed), headers=auth_headers(seed.customer))).json()
        gateway.fail = False

        retry = await client.post(
            f"{API}/bookings/{created['booking']['id']}/payment-session", headers=auth_headers(seed.customer)
        )
        assert retry.status_code == 200
        assert retry.json()["status"] == "created"

        history = await client.get(
            f"{API}/bookings/{created['booking']['id']}/payments", headers=auth_headers(seed.customer)
        )
        assert sorted(t["status"] for t in history.json()) == ["failed", "pending"]


class TestPaymentNotifications:
    @pytest.mark.asyncio
    async def test_settlement_confirms(self, client, seed, auth_headers):
        created = (await client.post(f"{API}/bookings", json=booking_body(seed), headers=auth_headers(seed.customer))).json()
        reference = created["payment_session"]["gateway_reference"]
        notification = {"order_id": reference, "transaction_status": "settlement", "payment_type": "qris"}

        first = await client.post(f"{API}/payments/notifications", json=notification)
        assert first.status_code == 200
        assert first.json() == {"status": "ok"}

        replay = await client.post(f"{API}/payments/notifications", json=notification)
        assert replay.status_code == 200

        detail = (await client.get(
            f"{API}/bookings/{created['booking']['id']}", headers=auth_headers(seed.customer)
        )).json()
        assert detail["status"] == "confirmed"
        assert [log["new_status"] for log in detail["logs"]] == ["pending", "confirmed"]

    @pytest.mark.asyncio
    async def test_unknown_reference(self, client, seed):
        response = await client.post(
            f"{API}/payments/notifications",
            json={"order_id": "BK-UNKNOWN", "transaction_status": "settlement"},
        )
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_database_failure_leaves_payment_pending(self, client, db, seed, auth_headers):
        created = (await client.post(f"{API}/bookings", json=booking_body(seed), headers=auth_headers(seed.customer))).json()
        reference = created["payment_session"]["gateway_reference"]
        booking_id = UUID(created["booking"]["id"])
        async with db.get_session() as s:
            logs_before = len(await crud.get_booking_logs(s, booking_id))

        with patch.object(AsyncSession, "commit", new=AsyncMock(side_effect=SQLAlchemyError("disk full"))):
            response = await client.post(
                f"{API}/payments/notifications",
                json={"order_id": reference, "transaction_status": "settlement"},
            )
        assert response.status_code == 500

        async with db.get_session() as s:
            txn = await crud.get_transaction_by_reference(s, reference)
            assert txn.status == TransactionStatus.PENDING
            assert len(await crud.get_booking_logs(s, booking_id)) == logs_before
            booking = await crud.get_booking_by_id(s, booking_id)
            assert booking.status == BookingStatus.PENDING


class TestRewardsAndCatalog:
    @pytest.mark.asyncio
    async def test_available_rewards(self, client, seed, auth_headers):
        response = await client.get(f"{API}/rewards", headers=auth_headers(seed.customer))
        ids = {r["id"] for r in response.json()}
        assert str(seed.rewards.welcome.id) in ids
        assert str(seed.rewards.expired.id) not in ids
        assert str(seed.rewards.others.id) not in ids

    @pytest.mark.asyncio
    async def test_preview(self, client, seed, auth_headers):
        response = await client.post(
            f"{API}/rewards/preview",
            json={
                "package_type": "tour",
                "total_price": "2000000",
                "reward_ids": [str(seed.rewards.welcome.id), str(seed.rewards.rental_only.id)],
            },
            headers=auth_headers(seed.customer),
        )
        data = response.json()
        assert Decimal(data["reward_total"]) == Decimal("200000")
        assert Decimal(data["final_price"]) == Decimal("1800000")
        assert [r["id"] for r in data["not_applicable"]] == [str(seed.rewards.rental_only.id)]

    @pytest.mark.asyncio
    async def test_packages(self, client, seed):
        tours = await client.get(f"{API}/packages/tour")
        assert [t["name"] for t in tours.json()] == ["Bromo Sunrise"]

        rental = await client.get(f"{API}/packages/rental/{seed.rental.id}")
        assert rental.json()["brand"] == "Toyota"

        missing = await client.get(f"{API}/packages/activity/{seed.rental.id}")
        assert missing.status_code == 404


class TestReviews:
    @pytest.mark.asyncio
    async def test_review_completed_booking_once(self, client, seed, auth_headers):
        customer = auth_headers(seed.customer)
        admin = auth_headers(seed.admin, UserRole.ADMIN)
        created = (await client.post(f"{API}/bookings", json=booking_body(seed), headers=customer)).json()
        booking_id = created["booking"]["id"]

        early = await client.get(f"{API}/bookings/{booking_id}/can-review", headers=customer)
        assert early.json()["can_review"] is False

        for status in ("confirmed", "completed"):
            await client.put(f"{API}/admin/bookings/{booking_id}/status", json={"status": status}, headers=admin)

        review = await client.post(
            f"{API}/bookings/{booking_id}/review", json={"rating": 5, "comment": " Great sunrise "}, headers=customer
        )
        assert review.status_code == 201
        assert review.json()["comment"] == "Great sunrise"

        again = await client.post(f"{API}/bookings/{booking_id}/review", json={"rating": 4}, headers=customer)
        assert again.status_code == 422

        package_reviews = await client.get(f"{API}/packages/tour/{seed.tour.id}/reviews")
        assert [r["rating"] for r in package_reviews.json()] == [5]

        mine = await client.get(f"{API}/reviews/mine", headers=customer)
        assert len(mine.json()) == 1

    @pytest.mark.asyncio
    async def test_rating_out_of_range(self, client, seed, auth_headers):
        created = (await client.post(
            f"{API}/bookings", json=booking_body(seed), headers=auth_headers(seed.customer)
        )).json()
        response = await client.post(
            f"{API}/bookings/{created['booking']['id']}/review", json={"rating": 6}, headers=auth_headers(seed.customer)
        )
        assert response.status_code == 422
        assert response.json()["detail"][0]["field"] == "rating"


@pytest.mark.asyncio
async def test_health(client):
    response = await client.get("/health")
    assert response.status_code == 200
    assert response.json()["components"]["api"] == "healthy"


@pytest.mark.asyncio
async def test_request_id_is_echoed(client):
    forwarded = await client.get("/health", headers={"X-Request-ID": "midtrans-retry-7"})
    assert forwarded.headers["X-Request-ID"] == "midtrans-retry-7"

    generated = await client.get("/health")
    assert len(generated.headers["X-Request-ID"]) == 32
