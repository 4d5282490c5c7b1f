#!/usr/bin/env python3
"""
Tests for status classification and the scan deadline
"""

import asyncio
import ssl

import pytest

from netprobe.core.context import ScanContext
from netprobe.core.status import (
    ApplicationError,
    ProtocolError,
    ScanConnectionError,
    ScanError,
    ScanStatus,
    ScanTimeoutError,
    try_get_scan_status,
)


def _chain(outer: BaseException, cause: BaseException) -> BaseException:
    try:
        try:
            raise cause
        except BaseException as e:
            raise outer from e
    except BaseException as e:
        return e


def test_no_error_is_success():
    assert try_get_scan_status(None) == ScanStatus.SUCCESS


@pytest.mark.parametrize("err, expected", [
    (ScanTimeoutError("t"), ScanStatus.TIMEOUT),
    (asyncio.TimeoutError(), ScanStatus.TIMEOUT),
    (ConnectionRefusedError(), ScanStatus.CONNECTION_FAILED),
    (asyncio.IncompleteReadError(b"", 8), ScanStatus.CONNECTION_FAILED),
    (ssl.SSLError("bad record"), ScanStatus.PROTOCOL_ERROR),
    (ApplicationError("refused"), ScanStatus.APPLICATION_ERROR),
    (ValueError("boom"), ScanStatus.UNKNOWN_ERROR),
])
def test_direct_classification(err, expected):
    assert try_get_scan_status(err) == expected


def test_wrapped_cause_is_followed():
    err = _chain(ScanError("handshake failed"), ConnectionResetError())
    assert try_get_scan_status(err) == ScanStatus.CONNECTION_FAILED


def test_outermost_meaningful_error_wins():
    err = _chain(ProtocolError("bad header"), ConnectionResetError())
    assert try_get_scan_status(err) == ScanStatus.PROTOCOL_ERROR

    err = _chain(ScanConnectionError("reset"), ValueError("inner"))
    assert try_get_scan_status(err) == ScanStatus.CONNECTION_FAILED


def test_context_run_times_out():
    async def run():
        ctx = ScanContext(5.0)
        with pytest.raises(ScanTimeoutError):
            await ctx.run(asyncio.sleep(1), timeout=0.05)

    asyncio.run(run())


def test_expired_context_does_not_start_work():
    async def run():
        ctx = ScanContext(0.01)
        await asyncio.sleep(0.05)
        assert ctx.expired
        started = []

        async def work():
            started.append(True)

        with pytest.raises(ScanTimeoutError):
            await ctx.run(work())
        assert started == []

    asyncio.run(run())


def test_context_without_deadline():
    async def run():
        ctx = ScanContext(None)
        assert ctx.remaining() is None
        assert not ctx.expired
        assert await ctx.run(asyncio.sleep(0, result=7)) == 7

    asyncio.run(run())
