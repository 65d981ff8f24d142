import asyncio
from types import SimpleNamespace

import aiohttp
import discord
import pytest

from bot.errors import (
    NotFoundRemote,
    PermanentFailure,
    RateLimited,
    TransientRemoteFailure,
    classify_exception,
)
from bot.retry import RetryPolicy


def _response(status, reason="", headers=None):
    return SimpleNamespace(status=status, reason=reason, headers=headers or {})


@pytest.mark.asyncio
async def test_backoff_delays_then_permanent_failure(monkeypatch):
    sleep_calls = []

    async def fake_sleep(delay):
        sleep_calls.append(delay)

    monkeypatch.setattr("bot.retry.asyncio.sleep", fake_sleep)
    policy = RetryPolicy(max_retries=3, base_delay=0.5)
    attempts = 0

    async def op():
        nonlocal attempts
        attempts += 1
        raise TransientRemoteFailure("upstream 502", status=502)

    with pytest.raises(PermanentFailure) as info:
        await policy.run(op, label="rename")

    assert attempts == 4
    assert sleep_calls == [0.5, 1.0, 2.0]
    assert info.value.attempts == 4
    assert info.value.status == 502


@pytest.mark.asyncio
async def test_succeeds_after_transient_errors():
    sleeps = []

    async def fake_sleep(delay):
        sleeps.append(delay)

    policy = RetryPolicy(max_retries=3, base_delay=1.0, sleep=fake_sleep)
    results = iter([aiohttp.ClientConnectionError("reset"), asyncio.TimeoutError(), "ok"])

    async def op():
        r = next(results)
        if isinstance(r, BaseException):
            raise r
        return r

    assert await policy.run(op) == "ok"
    assert sleeps == [1.0, 2.0]


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "exc",
    [
        NotFoundRemote("gone", status=404),
        RateLimited(retry_after=3),
        PermanentFailure("forbidden", status=403),
    ],
)
async def test_non_transient_errors_are_not_retried(exc):
    sleeps = []

    async def fake_sleep(delay):
        sleeps.append(delay)

    policy = RetryPolicy(sleep=fake_sleep)

    async def op():
        raise exc

    with pytest.raises(type(exc)):
        await policy.run(op)
    assert sleeps == []


def test_schedule_doubles_without_ceiling():
    policy = RetryPolicy(max_retries=3, base_delay=20)
    assert policy.schedule() == [20, 40, 80]


def test_classify_not_found():
    exc = discord.NotFound(_response(404, "Not Found"), {"code": 10003, "message": "Unknown Channel"})
    err = classify_exception(exc)
    assert isinstance(err, NotFoundRemote)
    assert err.code == 10003


def test_classify_rate_limit_reads_retry_after_header():
    exc = discord.HTTPException(
        _response(429, "Too Many Requests", {"Retry-After": "2.5"}),
        {"code": 0, "message": "You are being rate limited."},
    )
    err = classify_exception(exc)
    assert isinstance(err, RateLimited)
    assert err.retry_after == 2.5
    assert err.diagnostic()["retry_after"] == 2.5


def test_classify_server_error_is_transient():
    exc = discord.DiscordServerError(_response(503, "Service Unavailable"), "try later")
    assert isinstance(classify_exception(exc), TransientRemoteFailure)


def test_classify_forbidden_is_permanent():
    exc = discord.Forbidden(_response(403, "Forbidden"), {"code": 50013, "message": "Missing Permissions"})
    err = classify_exception(exc)
    assert isinstance(err, PermanentFailure)
    assert err.diagnostic()["code"] == 50013


def test_classify_transport_errors_are_transient():
    assert isinstance(classify_exception(aiohttp.ClientConnectionError()), TransientRemoteFailure)
    assert isinstance(classify_exception(ConnectionResetError()), TransientRemoteFailure)


def test_classify_unknown_exception_is_permanent():
    assert isinstance(classify_exception(ValueError("bad")), PermanentFailure)
