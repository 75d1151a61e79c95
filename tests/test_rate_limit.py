"""Tests for the token-bucket rate limiter and its use on the auth forms."""

from datetime import datetime, timedelta, timezone

import pytest

from conftest import create_user, post_form, register_form
from gatehouse.app import sweep_expired
from gatehouse.service.runtime import check_rate_limit, get_runtime, prune_rate_limits
from gatehouse.storage.redis_cache import RedisCache


class TestLocalBucket:
    @pytest.mark.asyncio
    async def test_allows_up_to_limit_then_blocks(self):
        runtime = get_runtime()
        results = [await check_rate_limit(runtime, "login:a@example.com", 3, 60) for _ in range(4)]
        assert results == [True, True, True, False]

    @pytest.mark.asyncio
    async def test_keys_are_independent(self):
        runtime = get_runtime()
        for _ in range(2):
            await check_rate_limit(runtime, "login:a@example.com", 2, 60)
        assert not await check_rate_limit(runtime, "login:a@example.com", 2, 60)
        assert await check_rate_limit(runtime, "login:b@example.com", 2, 60)

    @pytest.mark.asyncio
    async def test_return_remaining(self):
        runtime = get_runtime()
        allowed, remaining, reset = await check_rate_limit(
            runtime, "reset:a@example.com", 2, 60, return_remaining=True
        )
        assert (allowed, remaining, reset) == (True, 1, 0)
        await check_rate_limit(runtime, "reset:a@example.com", 2, 60)
        allowed, remaining, reset = await check_rate_limit(
            runtime, "reset:a@example.com", 2, 60, return_remaining=True
        )
        assert not allowed
        assert remaining == 0
        assert reset > 0

    @pytest.mark.asyncio
    async def test_zero_limit_disables(self):
        runtime = get_runtime()
        assert all([await check_rate_limit(runtime, "k", 0, 60) for _ in range(10)])

    @pytest.mark.asyncio
    async def test_invalid_window_defaults_to_a_minute(self):
        runtime = get_runtime()
        assert await check_rate_limit(runtime, "k", 1, 0)
        assert not await check_rate_limit(runtime, "k", 1, 0)


class TestPrune:
    @pytest.mark.asyncio
    async def test_prune_drops_only_refilled_buckets(self):
        runtime = get_runtime()
        await check_rate_limit(runtime, "login:a@example.com", 2, 60)
        await check_rate_limit(runtime, "login:b@example.com", 2, 60)
        tokens, last_ts, _ = runtime._local_rate_limits["login:a@example.com"]
        runtime._local_rate_limits["login:a@example.com"] = (
            tokens,
            last_ts,
            datetime.now(timezone.utc) - timedelta(seconds=1),
        )
        assert await prune_rate_limits(runtime) == 1
        assert list(runtime._local_rate_limits) == ["login:b@example.com"]

    @pytest.mark.asyncio
    async def test_pruned_bucket_starts_full(self):
        runtime = get_runtime()
        for _ in range(2):
            await check_rate_limit(runtime, "k", 2, 60)
        runtime._local_rate_limits.clear()
        assert await check_rate_limit(runtime, "k", 2, 60)

    @pytest.mark.asyncio
    async def test_sweep_reports_rate_buckets(self):
        runtime = get_runtime()
        await check_rate_limit(runtime, "k", 1, 60)
        removed = await sweep_expired(runtime)
        assert removed["rate_buckets"] == 0
        assert set(removed) == {"sessions", "email_tokens", "rate_buckets"}


class TestRedisKeys:
    def test_rate_key_hides_email(self):
        key = RedisCache._rate_key("login:ada@example.com")
        assert key.startswith("rate:")
        assert "ada" not in key

    def test_ttl_clamped_to_one_second(self):
        past = datetime.now(timezone.utc) - timedelta(minutes=5)
        assert RedisCache._ttl_seconds(past) == 1
        future = datetime.now(timezone.utc) + timedelta(hours=1)
        assert 3590 <= RedisCache._ttl_seconds(future) <= 3600


class TestFormLimits:
    def test_login_limited_per_email(self, client, monkeypatch):
        """Past the limit the form comes back with 429 and a wait message."""
        monkeypatch.setattr(get_runtime().settings, "login_rate_limit_per_minute", 2)
        create_user()
        statuses = [
            post_form(client, "/login", {"email": "ada@example.com", "password": "wrong-password"}).status_code
            for _ in range(3)
        ]
        assert statuses == [200, 200, 429]
        blocked = post_form(client, "/login", {"email": "ada@example.com", "password": "wrong-password"})
        assert "Too many attempts. Please wait a minute and try again." in blocked.text
        other = post_form(client, "/login", {"email": "grace@example.com", "password": "wrong-password"})
        assert other.status_code == 200

    def test_signup_limited(self, client, monkeypatch):
        monkeypatch.setattr(get_runtime().settings, "signup_rate_limit_per_minute", 1)
        first = post_form(client, "/register", register_form())
        assert first.status_code == 303
        client.cookies.clear()
        second = post_form(client, "/register", register_form())
        assert second.status_code == 429

    def test_forgot_password_limited(self, client, monkeypatch):
        monkeypatch.setattr(get_runtime().settings, "reset_rate_limit_per_minute", 1)
        assert post_form(client, "/forgot-password", {"email": "ada@example.com"}).status_code == 200
        assert post_form(client, "/forgot-password", {"email": "ada@example.com"}).status_code == 429

    def test_retry_after_header_on_429(self, client, monkeypatch):
        monkeypatch.setattr(get_runtime().settings, "reset_rate_limit_per_minute", 1)
        post_form(client, "/forgot-password", {"email": "ada@example.com"})
        blocked = post_form(client, "/forgot-password", {"email": "ada@example.com"})
        assert blocked.status_code == 429
        assert int(blocked.headers["retry-after"]) >= 1


class TestClientLimits:
    def test_rotating_emails_hit_client_limit(self, client, monkeypatch):
        """One client cycling through addresses is throttled by its address."""
        monkeypatch.setattr(get_runtime().settings, "client_rate_limit_per_minute", 2)
        statuses = [
            post_form(
                client, "/login", {"email": f"user{i}@example.com", "password": "wrong-password"}
            ).status_code
            for i in range(4)
        ]
        assert statuses == [200, 200, 429, 429]

    def test_client_limit_is_per_action(self, client, monkeypatch):
        monkeypatch.setattr(get_runtime().settings, "client_rate_limit_per_minute", 1)
        assert post_form(client, "/forgot-password", {"email": "a@example.com"}).status_code == 200
        assert post_form(client, "/forgot-password", {"email": "b@example.com"}).status_code == 429
        resent = post_form(client, "/resend-verification", {"email": "c@example.com"})
        assert resent.status_code == 200

    def test_register_limited_per_client(self, client, monkeypatch):
        monkeypatch.setattr(get_runtime().settings, "client_rate_limit_per_minute", 1)
        assert post_form(client, "/register", register_form()).status_code == 303
        client.cookies.clear()
        blocked = post_form(client, "/register", register_form(email="grace@example.com"))
        assert blocked.status_code == 429
        assert int(blocked.headers["Retry-After"]) >= 1
