from __future__ import annotations

import asyncio

import pytest

from hcloud_build.errors import ConnectivityTimeout
from hcloud_build.retry import SSH_READY, RetryPolicy


def test_ssh_policy_has_150s_ceiling():
    assert SSH_READY.attempts == 30
    assert SSH_READY.interval == 5.0
    assert SSH_READY.ceiling == 150


def test_returns_first_truthy_result():
    calls = []

    async def check():
        calls.append(1)
        return "ready" if len(calls) == 2 else None

    result = asyncio.run(RetryPolicy(5, 0).until(check, ConnectivityTimeout, "never"))
    assert result == "ready"
    assert len(calls) == 2


def test_raises_named_error_after_last_attempt():
    calls = []

    async def check():
        calls.append(1)
        return False

    with pytest.raises(ConnectivityTimeout) as excinfo:
        asyncio.run(
            RetryPolicy(4, 0).until(
                check, ConnectivityTimeout, "SSH connection timeout", arch="arm64", phase="provision"
            )
        )
    assert len(calls) == 4
    assert excinfo.value.arch == "arm64"
    assert "after 4 attempts" in str(excinfo.value)


def test_rejects_zero_attempts():
    with pytest.raises(ValueError):
        RetryPolicy(0, 1.0)
