"""
API tests: endpoints, status codes and error bodies.
"""
from datetime import datetime

from teatime import config
from teatime.auth import create_access_token, decode_token
from teatime.main import app
from teatime.services.compliance import MockVerifier


INTERNAL = {"X-Internal-Key": config.INTERNAL_API_KEY}


class LateVerifier(MockVerifier):
    """Instant passing verifier that moves the test clock on before answering."""

    def __init__(self, clock, answered_at):
        super().__init__(latency=0, outcome=True)
        self.clock = clock
        self.answered_at = answered_at

    async def verify(self, request, on_progress=None):
        self.clock.now = self.answered_at
        return await super().verify(request, on_progress)


def submit(client, image_ref="img-1", tea_type="Earl Grey"):
    return client.post("/tea/submissions", json={"image_ref": image_ref, "tea_type": tea_type})


def miss_today(client, clock):
    clock.now = datetime(2024, 6, 3, 17, 10)
    response = client.post("/internal/window-close", headers=INTERNAL)
    assert response.status_code == 200
    return client.get("/fines").json()["fines"][0]


class TestMeta:

    def test_health(self, client):
        assert client.get("/health").json()["status"] == "healthy"

    def test_config(self, client):
        data = client.get("/tea/config").json()
        assert data["hour"] == 17
        assert data["submission_window_minutes"] == 10
        assert "Earl Grey" in data["tea_types"]
        assert data["donation_for_base_fine"] == "0.50"


class TestTeaEndpoints:

    def test_status_inside_window(self, client):
        data = client.get("/tea/status").json()

        assert data["window"]["window_open"] is True
        assert data["window"]["seconds_until_close"] == 7 * 60
        assert data["submission"]["state"] == "WINDOW_OPEN"
        assert data["can_submit"] is True
        assert data["next_states"] == ["PENDING_VERIFICATION", "MISSED"]

    def test_submit_and_verify(self, client):
        response = submit(client)

        assert response.status_code == 200
        data = response.json()
        assert data["submission"]["state"] == "VERIFIED"
        assert data["submission"]["tea_type"] == "Earl Grey"
        assert data["verification"]["valid"] is True
        assert data["applied"] is True
        assert data["progress"][-1] == 1.0

    def test_rejected_then_retry(self, client):
        app.state.verifier = MockVerifier(latency=0, outcome=False, seed=7)
        rejected = submit(client).json()
        assert rejected["submission"]["state"] == "REJECTED"
        assert rejected["submission"]["feedback"].startswith("Verification failed:")

        app.state.verifier = MockVerifier(latency=0, outcome=True)
        verified = submit(client, image_ref="img-2").json()
        assert verified["submission"]["state"] == "VERIFIED"
        assert verified["submission"]["attempts"] == 2

    def test_submit_after_verified_conflicts(self, client):
        submit(client)
        response = submit(client, image_ref="img-2")

        assert response.status_code == 409
        assert response.json()["detail"]["error"] == "InvalidTransition"

    def test_submit_before_window(self, client, clock):
        clock.now = datetime(2024, 6, 3, 16, 59, 59)
        response = submit(client)

        assert response.status_code == 409
        assert "hasn't started" in response.json()["detail"]["message"]

    def test_unknown_tea_type(self, client):
        response = submit(client, tea_type="Coffee")
        assert response.status_code == 422
        assert response.json()["detail"]["error"] == "InvalidRequest"

    def test_verifier_unavailable_then_retry(self, client):
        app.state.verifier = MockVerifier(latency=0, unavailable=True)
        response = submit(client)
        assert response.status_code == 503

        status = client.get("/tea/status").json()
        assert status["submission"]["state"] == "PENDING_VERIFICATION"
        assert submit(client, image_ref="img-2").status_code == 409

        app.state.verifier = MockVerifier(latency=0, outcome=True)
        retried = client.post("/tea/submissions/verify")
        assert retried.status_code == 200
        assert retried.json()["submission"]["state"] == "VERIFIED"

    def test_cancel_pending(self, client):
        app.state.verifier = MockVerifier(latency=0, unavailable=True)
        submit(client)

        response = client.post("/tea/submissions/cancel")
        assert response.status_code == 200
        assert response.json()["submission"]["state"] == "WINDOW_OPEN"

        assert client.post("/tea/submissions/cancel").status_code == 409

    def test_history(self, client):
        submit(client)
        data = client.get("/tea/history").json()
        assert data["count"] == 1
        assert data["submissions"][0]["state"] == "VERIFIED"

    def test_stats_after_verified_day(self, client):
        submit(client)

        data = client.get("/tea/stats").json()

        assert data["streak_count"] == 1
        assert data["total_teas"] == 1
        assert data["missed_count"] == 0
        assert data["total_fines"] == "0.00"

    def test_verdict_after_close_is_missed(self, client, clock):
        clock.now = datetime(2024, 6, 3, 17, 9, 59)
        app.state.verifier = LateVerifier(clock, datetime(2024, 6, 3, 17, 10, 2))

        data = submit(client).json()

        assert data["applied"] is False
        assert data["submission"]["state"] == "MISSED"
        assert client.get("/fines").json()["count"] == 1


class TestFineEndpoints:

    def test_missed_day_fine(self, client, clock):
        client.get("/tea/status")
        fine = miss_today(client, clock)

        assert fine["amount"] == "5.00"
        assert fine["donation_amount"] == "0.50"
        assert fine["status"] == "PENDING"
        assert client.get("/tea/status").json()["submission"]["state"] == "MISSED"

    def test_pay_twice(self, client, clock):
        client.get("/tea/status")
        fine = miss_today(client, clock)

        first = client.post(f"/fines/{fine['id']}/pay")
        second = client.post(f"/fines/{fine['id']}/pay")

        assert first.status_code == 200
        assert second.status_code == 200
        assert second.json()["fine"]["status"] == "PAID"
        assert client.get("/fines?status=unpaid").json()["count"] == 0

    def test_unknown_fine(self, client):
        response = client.post("/fines/nope/pay")
        assert response.status_code == 404

    def test_donation_accepted(self, client, clock):
        client.get("/tea/status")
        fine = miss_today(client, clock)

        response = client.post(f"/fines/{fine['id']}/donations", json={
            "charity_name": "National Trust",
            "receipt_ref": "receipt-1",
            "amount": "0.50",
        })

        assert response.status_code == 200
        data = response.json()
        assert data["fine"]["status"] == "DONATED"
        assert data["donation"]["verified"] is True
        assert client.post(f"/fines/{fine['id']}/pay").status_code == 409

    def test_donation_rejected(self, client, clock):
        client.get("/tea/status")
        fine = miss_today(client, clock)
        app.state.verifier = MockVerifier(latency=0, outcome=False, seed=2)

        response = client.post(f"/fines/{fine['id']}/donations", json={
            "charity_name": "National Trust",
            "receipt_ref": "receipt-1",
            "amount": "0.50",
        })

        assert response.status_code == 422
        detail = response.json()["detail"]
        assert detail["error"] == "ReceiptRejected"
        assert detail["fine"]["status"] == "PENDING"
        assert detail["donation"]["verified"] is False

        listed = client.get(f"/fines/{fine['id']}").json()
        assert len(listed["donations"]) == 1

    def test_donation_wrong_charity(self, client, clock):
        client.get("/tea/status")
        fine = miss_today(client, clock)

        response = client.post(f"/fines/{fine['id']}/donations", json={
            "charity_name": "Tea Appreciation Society",
            "receipt_ref": "receipt-1",
            "amount": "0.50",
        })

        assert response.status_code == 422
        assert client.get("/fines/donations").json()["count"] == 0

    def test_stats_after_donation(self, client, clock):
        client.get("/tea/status")
        fine = miss_today(client, clock)
        client.post(f"/fines/{fine['id']}/donations", json={
            "charity_name": "National Trust",
            "receipt_ref": "receipt-1",
            "amount": "0.50",
        })

        data = client.get("/tea/stats").json()

        assert data["missed_count"] == 1
        assert data["fine_count"] == 1
        assert data["total_fines"] == "5.00"
        assert data["total_donated"] == "0.50"


class TestNotificationEndpoints:

    def test_list_and_read(self, client, clock):
        client.get("/tea/status")
        miss_today(client, clock)

        data = client.get("/notifications").json()
        types = {n["type"] for n in data["notifications"]}
        assert {"TEA_WINDOW_OPEN", "FINE_ISSUED"} <= types
        assert data["unread"] == len(data["notifications"])

        first = data["notifications"][0]["id"]
        assert client.post(f"/notifications/{first}/read").json()["is_read"] is True
        client.post("/notifications/read-all")
        assert client.get("/notifications").json()["unread"] == 0

    def test_unknown_notification(self, client):
        assert client.post("/notifications/missing/read").status_code == 404


class TestInternalEndpoints:

    def test_requires_internal_key(self, client):
        response = client.post("/internal/window-close", headers={"X-Internal-Key": "wrong"})
        assert response.status_code == 403

    def test_reminders(self, client, clock):
        clock.now = datetime(2024, 6, 3, 16, 57)
        response = client.post("/internal/reminders", json={"user_ids": ["user-1"]}, headers=INTERNAL)

        assert response.json()["reminded"] == 1

    def test_scheduled_tasks(self, client):
        client.get("/tea/status")
        data = client.get("/internal/scheduled", headers=INTERNAL).json()
        assert data["count"] == 1
        assert data["tasks"][0]["scheduled_for"] == "2024-06-03T17:10:00"


class TestTokens:

    def test_round_trip(self):
        token = create_access_token("user-42")
        assert decode_token(token)["sub"] == "user-42"

    def test_tampered_token(self):
        assert decode_token(create_access_token("user-42") + "x") is None
