"""Rate limiting through the runtime, with the in-process fallback bucket."""

from apiguard.service.runtime import _mask_url_password, check_rate_limit, get_runtime


class TestLocalRateLimit:
    async def test_bucket_empties_then_denies(self):
        runtime = get_runtime()
        assert runtime.cache is None

        results = [await check_rate_limit(runtime, "login:10.0.0.1", 5, 900) for _ in range(6)]

        assert results == [True] * 5 + [False]

    async def test_remaining_and_reset_reported(self):
        runtime = get_runtime()

        allowed, remaining, reset = await check_rate_limit(
            runtime, "forgot:ip", 3, 3600, return_remaining=True
        )
        assert (allowed, remaining, reset) == (True, 2, 0)

        for _ in range(2):
            await check_rate_limit(runtime, "forgot:ip", 3, 3600)
        allowed, remaining, reset = await check_rate_limit(
            runtime, "forgot:ip", 3, 3600, return_remaining=True
        )
        assert allowed is False
        assert remaining == 0
        assert 0 < reset <= 1200 + 1

    async def test_keys_are_independent(self):
        runtime = get_runtime()

        for _ in range(2):
            await check_rate_limit(runtime, "register:a", 2, 3600)

        assert await check_rate_limit(runtime, "register:a", 2, 3600) is False
        assert await check_rate_limit(runtime, "register:b", 2, 3600) is True

    async def test_zero_limit_disables_limiting(self):
        runtime = get_runtime()

        assert await check_rate_limit(runtime, "any", 0, 60) is True


class TestMaskUrl:
    def test_password_masked(self):
        assert _mask_url_password("redis://:hunter2@cache:6379/0") == "redis://:***@cache:6379/0"
        assert (
            _mask_url_password("postgresql://app:pw@db/app") == "postgresql://app:***@db/app"
        )

    def test_url_without_password_untouched(self):
        assert _mask_url_password("redis://cache:6379/0") == "redis://cache:6379/0"
        assert _mask_url_password(None) is None
