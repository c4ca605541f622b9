"""
Tests for the HTTP API.

Drives the FastAPI app through httpx against the SQLite test database.
"""

from datetime import timedelta
from uuid import uuid4

import pytest

from app.api.errors import STATUS_BY_KIND, http_error
from app.exceptions import ConflictError, IntegrityFaultError
from app.models.api import ErrorKind


async def book(api_client, headers, session_id):
    return await api_client.post(
        "/v1/bookings", json={"session_id": str(session_id)}, headers=headers
    )


class TestAuthentication:
    """API key and member identity headers."""

    async def test_missing_api_key(self, api_client):
        response = await api_client.get("/v1/sessions")

        assert response.status_code == 401

    async def test_unknown_api_key(self, api_client):
        response = await api_client.get("/v1/sessions", headers={"X-API-Key": "wrong"})

        assert response.status_code == 401

    async def test_any_configured_key_accepted(self, api_client):
        response = await api_client.get("/v1/sessions", headers={"X-API-Key": "second-test-key"})

        assert response.status_code == 200

    async def test_member_header_required_for_booking(self, api_client, service_headers):
        response = await book(api_client, service_headers, uuid4())

        assert response.status_code == 401


class TestBookingRoutes:
    """POST /v1/bookings and friends."""

    async def test_reserve_creates_member_and_charges_grant(
        self, api_client, factory, member_headers
    ):
        member = await factory.member("member-1")
        grant = await factory.grant(member, credits=2)
        cls_session = await factory.class_session()

        response = await book(api_client, member_headers("member-1"), cls_session.id)

        assert response.status_code == 201
        body = response.json()
        assert body["status"] == "active"
        assert body["session_id"] == str(cls_session.id)
        assert body["plan_grant_id"] == str(grant.id)

    async def test_first_booking_without_plan(self, api_client, factory, member_headers):
        cls_session = await factory.class_session()

        response = await book(api_client, member_headers("walk-in"), cls_session.id)

        assert response.status_code == 402
        detail = response.json()["detail"]
        assert detail["kind"] == ErrorKind.NO_CREDITS_AVAILABLE.value
        assert detail["retryable"] is False

    async def test_full_session(self, api_client, factory, member_headers):
        member = await factory.member("member-1")
        await factory.grant(member)
        cls_session = await factory.class_session(capacity=1, spots_taken=1)

        response = await book(api_client, member_headers("member-1"), cls_session.id)

        assert response.status_code == 409
        assert response.json()["detail"]["kind"] == ErrorKind.SESSION_FULL.value

    async def test_booking_closed(self, api_client, factory, member_headers, clock):
        member = await factory.member("member-1")
        await factory.grant(member)
        cls_session = await factory.class_session(starts_at=clock.now + timedelta(minutes=5))

        response = await book(api_client, member_headers("member-1"), cls_session.id)

        assert response.status_code == 422
        assert response.json()["detail"]["kind"] == ErrorKind.BOOKING_CLOSED.value

    async def test_unknown_session(self, api_client, factory, member_headers):
        await factory.member("member-1")

        response = await book(api_client, member_headers("member-1"), uuid4())

        assert response.status_code == 404

    async def test_cancel_and_fetch(self, api_client, factory, member_headers):
        member = await factory.member("member-1")
        await factory.grant(member, credits=2)
        cls_session = await factory.class_session()
        headers = member_headers("member-1")
        booking_id = (await book(api_client, headers, cls_session.id)).json()["booking_id"]

        cancelled = await api_client.post(
            f"/v1/bookings/{booking_id}/cancel", json={"reason": "travelling"}, headers=headers
        )
        fetched = await api_client.get(f"/v1/bookings/{booking_id}", headers=headers)

        assert cancelled.status_code == 200
        assert cancelled.json()["credit_refunded"] is True
        assert cancelled.json()["refund_denied"] is None
        assert fetched.status_code == 200
        assert fetched.json()["status"] == "cancelled"
        assert fetched.json()["cancellation_reason"] == "travelling"
        assert fetched.json()["session_name"] == cls_session.name

    async def test_late_cancel_reports_refund_denied(
        self, api_client, factory, member_headers, clock
    ):
        member = await factory.member("member-1")
        await factory.grant(member)
        cls_session = await factory.class_session(starts_at=clock.now + timedelta(hours=2))
        headers = member_headers("member-1")
        booking_id = (await book(api_client, headers, cls_session.id)).json()["booking_id"]

        response = await api_client.post(f"/v1/bookings/{booking_id}/cancel", headers=headers)

        assert response.status_code == 200
        assert response.json()["status"] == "cancelled"
        assert response.json()["credit_refunded"] is False
        assert response.json()["refund_denied"] == ErrorKind.CANCELLATION_CLOSED.value

    async def test_cancel_twice(self, api_client, factory, member_headers):
        member = await factory.member("member-1")
        await factory.grant(member)
        cls_session = await factory.class_session()
        headers = member_headers("member-1")
        booking_id = (await book(api_client, headers, cls_session.id)).json()["booking_id"]
        await api_client.post(f"/v1/bookings/{booking_id}/cancel", headers=headers)

        response = await api_client.post(f"/v1/bookings/{booking_id}/cancel", headers=headers)

        assert response.status_code == 409
        assert response.json()["detail"]["kind"] == ErrorKind.NOT_CANCELLABLE.value

    async def test_someone_elses_booking(self, api_client, factory, member_headers):
        owner = await factory.member("owner")
        await factory.member("stranger")
        await factory.grant(owner)
        cls_session = await factory.class_session()
        booking_id = (
            await book(api_client, member_headers("owner"), cls_session.id)
        ).json()["booking_id"]

        response = await api_client.get(
            f"/v1/bookings/{booking_id}", headers=member_headers("stranger")
        )

        assert response.status_code == 404


class TestSessionRoutes:
    """GET /v1/sessions and availability."""

    async def test_list_sessions(self, api_client, factory, service_headers, clock):
        await factory.class_session(name="Tomorrow", starts_at=clock.now + timedelta(days=1))
        await factory.class_session(name="Later", starts_at=clock.now + timedelta(days=4))

        response = await api_client.get(
            "/v1/sessions",
            params={"date": (clock.now + timedelta(days=1)).date().isoformat()},
            headers=service_headers,
        )

        assert response.status_code == 200
        body = response.json()
        assert body["total"] == 1
        assert body["sessions"][0]["name"] == "Tomorrow"
        assert body["sessions"][0]["spots_left"] == 10

    async def test_availability(self, api_client, factory, service_headers):
        cls_session = await factory.class_session(capacity=4, spots_taken=3)

        response = await api_client.get(
            f"/v1/sessions/{cls_session.id}/availability", headers=service_headers
        )

        assert response.status_code == 200
        assert response.json()["available_spots"] == 1
        assert response.json()["can_book"] is True

    async def test_availability_unknown(self, api_client, service_headers):
        response = await api_client.get(
            f"/v1/sessions/{uuid4()}/availability", headers=service_headers
        )

        assert response.status_code == 404


class TestMemberRoutes:
    """Member balance, bookings and transactions."""

    async def test_balance_and_history(self, api_client, factory, member_headers, service_headers):
        member = await factory.member("member-1")
        await factory.grant(member, credits=3)
        cls_session = await factory.class_session()
        await book(api_client, member_headers("member-1"), cls_session.id)

        balance = await api_client.get("/v1/members/member-1/balance", headers=service_headers)
        bookings = await api_client.get("/v1/members/member-1/bookings", headers=service_headers)
        transactions = await api_client.get(
            "/v1/members/member-1/transactions", headers=service_headers
        )

        assert balance.json()["grants"][0]["remaining"] == 2
        assert bookings.json()["total"] == 1
        assert bookings.json()["bookings"][0]["session_name"] == cls_session.name
        assert [t["entry_type"] for t in transactions.json()["transactions"]] == ["debit"]

    async def test_unknown_member_is_empty(self, api_client, service_headers):
        balance = await api_client.get("/v1/members/ghost/balance", headers=service_headers)
        bookings = await api_client.get(
            "/v1/members/ghost/bookings", params={"status": "all"}, headers=service_headers
        )

        assert balance.status_code == 200
        assert balance.json()["grants"] == []
        assert bookings.json()["total"] == 0


class TestInternalRoutes:
    """Purchase pipeline, scheduler and reconciliation endpoints."""

    async def test_create_grant_is_idempotent(self, api_client, service_headers, clock):
        payload = {
            "member_external_id": "buyer-1",
            "credits": 10,
            "duration_days": 30,
            "external_reference": "order-1",
        }

        first = await api_client.post("/v1/internal/grants", json=payload, headers=service_headers)
        second = await api_client.post(
            "/v1/internal/grants", json=payload, headers=service_headers
        )

        assert first.status_code == 201
        assert second.json()["grant_id"] == first.json()["grant_id"]
        assert first.json()["start_date"] == clock.now.date().isoformat()
        assert first.json()["end_date"] == (clock.now.date() + timedelta(days=30)).isoformat()

    async def test_limited_grant_without_credits(self, api_client, service_headers):
        response = await api_client.post(
            "/v1/internal/grants",
            json={"member_external_id": "buyer-1", "credits": 0, "duration_days": 30},
            headers=service_headers,
        )

        assert response.status_code == 422

    async def test_create_session_uses_default_cutoffs(self, api_client, service_headers, clock):
        response = await api_client.post(
            "/v1/internal/sessions",
            json={
                "name": "Yin",
                "session_date": (clock.now.date() + timedelta(days=2)).isoformat(),
                "session_time": "18:30:00",
                "capacity": 8,
            },
            headers=service_headers,
        )

        assert response.status_code == 201
        body = response.json()
        assert body["booking_cutoff_minutes"] == 5
        assert body["cancellation_cutoff_hours"] == 12
        assert body["spots_left"] == 8

    async def test_reversal_cascades(self, api_client, factory, member_headers, service_headers):
        member = await factory.member("member-1")
        grant = await factory.grant(member, credits=4)
        cls_session = await factory.class_session()
        booking_id = (
            await book(api_client, member_headers("member-1"), cls_session.id)
        ).json()["booking_id"]

        first = await api_client.post(
            f"/v1/internal/grants/{grant.id}/reversal",
            json={"reason": "chargeback"},
            headers=service_headers,
        )
        replay = await api_client.post(
            f"/v1/internal/grants/{grant.id}/reversal", headers=service_headers
        )

        assert first.status_code == 200
        assert first.json()["credits_voided"] == 3
        assert first.json()["cancelled_booking_ids"] == [booking_id]
        assert first.json()["already_reversed"] is False
        assert replay.json()["already_reversed"] is True

    async def test_reversal_unknown_grant(self, api_client, service_headers):
        response = await api_client.post(
            f"/v1/internal/grants/{uuid4()}/reversal", headers=service_headers
        )

        assert response.status_code == 404

    async def test_reconciliation_clean(self, api_client, factory, member_headers, service_headers):
        member = await factory.member("member-1")
        await factory.grant(member)
        cls_session = await factory.class_session()
        await book(api_client, member_headers("member-1"), cls_session.id)

        response = await api_client.get("/v1/internal/reconciliation", headers=service_headers)

        assert response.status_code == 200
        assert response.json()["grants_checked"] == 1
        assert response.json()["sessions_checked"] == 1
        assert response.json()["divergences"] == []


class TestServiceRoutes:
    """Health, root and metrics."""

    async def test_health(self, api_client):
        response = await api_client.get("/health")

        assert response.status_code == 200
        assert response.json()["database"] == "connected"

    async def test_root(self, api_client):
        response = await api_client.get("/")

        assert response.json()["status"] == "running"

    async def test_metrics(self, api_client, factory, member_headers):
        await factory.member("member-1")
        cls_session = await factory.class_session()
        await book(api_client, member_headers("member-1"), cls_session.id)

        response = await api_client.get("/metrics")

        assert response.status_code == 200
        assert "booking_reservations_total" in response.text


class TestErrorTranslation:
    """Tests for http_error."""

    def test_every_kind_has_a_status(self):
        assert set(STATUS_BY_KIND) == set(ErrorKind)

    def test_conflict_is_retryable(self):
        exc = http_error(ConflictError("reserve", 4), "reserve")

        assert exc.status_code == 409
        assert exc.headers == {"Retry-After": "1"}
        assert exc.detail["retryable"] is True

    @pytest.mark.parametrize("message", ["Grant 123 balance would go negative"])
    def test_integrity_fault_hides_details(self, message):
        exc = http_error(IntegrityFaultError(message), "reserve")

        assert exc.status_code == 500
        assert exc.detail["kind"] == ErrorKind.INTEGRITY_FAULT.value
        assert message not in exc.detail["message"]
