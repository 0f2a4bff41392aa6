"""Local token-bucket rate limiting used when Redis is unavailable."""

import pytest

from taskdesk.service.runtime import check_rate_limit, get_runtime


@pytest.mark.asyncio
async def test_bucket_allows_up_to_limit_then_blocks():
    runtime = get_runtime()
    assert runtime.cache is None

    results = [await check_rate_limit(runtime, "login:a@example.com", 3, 60) for _ in range(4)]

    assert results == [True, True, True, False]


@pytest.mark.asyncio
async def test_remaining_and_reset_are_reported():
    runtime = get_runtime()

    allowed, remaining, reset = await check_rate_limit(
        runtime, "signup:b@example.com", 2, 60, return_remaining=True
    )
    assert (allowed, remaining, reset) == (True, 1, 0)

    await check_rate_limit(runtime, "signup:b@example.com", 2, 60)
    allowed, remaining, reset = await check_rate_limit(
        runtime, "signup:b@example.com", 2, 60, return_remaining=True
    )
    assert allowed is False
    assert remaining == 0
    assert reset > 0


@pytest.mark.asyncio
async def test_keys_are_independent():
    runtime = get_runtime()
    assert await check_rate_limit(runtime, "login:one", 1, 60)
    assert not await check_rate_limit(runtime, "login:one", 1, 60)
    assert await check_rate_limit(runtime, "login:two", 1, 60)


@pytest.mark.asyncio
async def test_non_positive_limit_disables_check():
    runtime = get_runtime()
    for _ in range(5):
        assert await check_rate_limit(runtime, "reset:c", 0, 60)
