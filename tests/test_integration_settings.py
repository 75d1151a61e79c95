"""Integration tests for the gated account pages."""

from fastapi.testclient import TestClient

from conftest import TEST_PASSWORD, create_user, login, post_form
from gatehouse.app import app
from gatehouse.service.runtime import get_runtime
from gatehouse.service.tokens import hash_token
from gatehouse.storage.models import SubscriptionStatus


class TestDashboard:
    def test_anonymous_redirected_to_login(self, client):
        response = client.get("/dashboard", follow_redirects=False)
        assert response.status_code == 303
        assert response.headers["location"] == "/login?return_to=/dashboard"

    def test_return_to_round_trip(self, client):
        """Signing in after a gate redirect lands on the originally requested page."""
        create_user()
        response = client.get("/settings/password", follow_redirects=True)
        assert 'name="return_to" value="/settings/password"' in response.text
        login_response = post_form(
            client,
            "/login",
            {"email": "ada@example.com", "password": TEST_PASSWORD, "return_to": "/settings/password"},
        )
        assert login_response.headers["location"] == "/settings/password"

    def test_unverified_user_sees_reminder(self, client):
        create_user(verified=False)
        login(client)
        response = client.get("/dashboard", follow_redirects=False)
        assert response.headers["location"] == "/verify-email-reminder"

    def test_verified_user_sees_dashboard(self, client):
        create_user()
        login(client)
        response = client.get("/dashboard")
        assert response.status_code == 200
        assert "Welcome, Ada Lovelace" in response.text

    def test_gates_never_loop(self, client):
        """Following every redirect from a gated page always ends on a 200 page."""
        create_user(verified=False)
        login(client)
        response = client.get("/reports")
        assert response.status_code == 200
        assert str(response.url).endswith("/verify-email-reminder")


class TestSubscriptionGate:
    def test_unsubscribed_user_sent_to_billing(self, client):
        create_user()
        login(client)
        response = client.get("/reports", follow_redirects=False)
        assert response.headers["location"] == "/settings/billing?upgrade=1"
        billing = client.get("/settings/billing?upgrade=1")
        assert "An active subscription is required" in billing.text
        assert "inactive" in billing.text

    def test_subscribed_user_reaches_reports(self, client):
        user = create_user()
        get_runtime().store.set_subscription(user.id, SubscriptionStatus.ACTIVE, "pro")
        login(client)
        response = client.get("/reports")
        assert response.status_code == 200
        assert "Your pro plan includes reporting." in response.text


class TestProfile:
    def test_update_profile(self, client):
        user = create_user()
        login(client)
        assert client.get("/settings").status_code == 200
        response = post_form(
            client,
            "/settings",
            {"name": "Ada King", "company_name": "Analytical Engines", "phone": "+44 20 0000"},
        )
        assert response.status_code == 303
        assert response.headers["location"] == "/settings?updated=1"
        updated = get_runtime().store.get_user(user.id)
        assert updated.name == "Ada King"
        assert updated.phone == "+44 20 0000"
        assert "Your profile has been updated." in client.get("/settings?updated=1").text

    def test_profile_field_errors(self, client):
        create_user()
        login(client)
        response = post_form(client, "/settings", {"name": "", "phone": "9" * 60})
        assert response.status_code == 200
        assert "Name is required" in response.text
        assert "Phone must be 50 characters or less" in response.text


class TestChangePassword:
    def test_change_password_signs_out_everywhere(self, client):
        create_user()
        with TestClient(app) as other_device:
            login(other_device)
            other_token = other_device.cookies.get(get_runtime().policy.session_name)
        login(client)
        response = post_form(
            client,
            "/settings/password",
            {
                "current_password": TEST_PASSWORD,
                "new_password": "brand-new-password",
                "new_password_confirm": "brand-new-password",
            },
        )
        assert response.status_code == 303
        assert response.headers["location"] == "/login?reset=1"
        assert get_runtime().store.get_session(hash_token(other_token)) is None
        assert not client.cookies.get(get_runtime().policy.session_name)
        login(client, password="brand-new-password")

    def test_wrong_current_password(self, client):
        create_user()
        login(client)
        response = post_form(
            client,
            "/settings/password",
            {
                "current_password": "not-my-password",
                "new_password": "brand-new-password",
                "new_password_confirm": "brand-new-password",
            },
        )
        assert response.status_code == 200
        assert "Current password is incorrect" in response.text

    def test_local_validation(self, client):
        create_user()
        login(client)
        response = post_form(
            client,
            "/settings/password",
            {"current_password": "", "new_password": "short", "new_password_confirm": ""},
        )
        assert "Current password is required" in response.text
        assert "Password must be at least 8 characters" in response.text
        assert "Please confirm your new password" in response.text


class TestApiMe:
    def test_me_returns_envelope(self, client):
        create_user()
        login(client)
        body = client.get("/api/me").json()
        assert body["status"] == "ok"
        assert body["data"]["email"] == "ada@example.com"
        assert body["data"]["email_verified"] is True
        assert "request_id" in body

    def test_me_anonymous_is_401(self, client):
        response = client.get("/api/me")
        assert response.status_code == 401
        assert response.json()["error"]["code"] == "unauthorized"


class TestAppPlumbing:
    def test_request_id_echoed(self, client):
        response = client.get("/login", headers={"X-Request-ID": "trace-42"})
        assert response.headers["X-Request-ID"] == "trace-42"

    def test_security_headers(self, client):
        response = client.get("/login")
        assert response.headers["X-Frame-Options"] == "DENY"
        assert response.headers["X-Content-Type-Options"] == "nosniff"

    def test_healthz(self, client):
        body = client.get("/healthz").json()
        assert body["status"] == "healthy"
        assert body["store"] == "MemoryStore"
        assert body["redis"] is False

    def test_root_redirects_to_landing(self, client):
        response = client.get("/", follow_redirects=False)
        assert response.headers["location"] == "/dashboard"

    def test_metrics_exposition(self, client):
        create_user()
        client.get("/login")
        response = client.get("/metrics")
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        body = response.text
        assert 'gatehouse_info{version="0.1.0"} 1' in body
        assert "gatehouse_users_total 1" in body
        assert "gatehouse_cache_available 0" in body
        assert "gatehouse_database_healthy 1" in body
        assert 'gatehouse_http_requests_total{method="GET",route="/login",status="200"}' in body

    def test_metrics_counts_unmatched_paths(self, client):
        client.get("/no-such-page")
        body = client.get("/metrics").text
        assert 'route="unmatched",status="404"' in body
