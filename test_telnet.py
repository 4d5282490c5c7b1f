#!/usr/bin/env python3
"""
Tests for telnet option negotiation and banner capture
"""

import asyncio
import socket

from conftest import MemoryStream, loopback_server
from netprobe.core.context import ScanContext
from netprobe.core.status import ScanStatus
from netprobe.core.target import ScanTarget
from netprobe.scanners import run_scan
from netprobe.scanners.telnet import (
    DO,
    DONT,
    IAC,
    SB,
    SE,
    WILL,
    WONT,
    TelnetFlags,
    TelnetLog,
    TelnetNegotiator,
    TelnetOption,
    read_banner,
)

ECHO = 1
SUPPRESS_GO_AHEAD = 3
TERMINAL_TYPE = 24
NAWS = 31


def scan(handler, flags: TelnetFlags):
    async def run():
        async with loopback_server(handler) as target:
            return await run_scan("telnet", target, flags)
    return asyncio.run(run())


def test_negotiation_and_banner():
    replies = []

    async def server(reader, writer):
        writer.write(bytes([IAC, WILL, ECHO, IAC, DO, NAWS]) + b"Welcome\r\nlogin: ")
        await writer.drain()
        replies.append(await reader.readexactly(6))

    status, result, error = scan(server, TelnetFlags(timeout=5))

    assert status == ScanStatus.SUCCESS, error
    assert result.banner == "Welcome\r\nlogin: "
    assert [o.name for o in result.will] == ["ECHO"]
    assert [o.name for o in result.do] == ["NAWS"]
    assert replies == [bytes([IAC, DONT, ECHO, IAC, WONT, NAWS])]


def test_quiet_server_ends_read_after_idle_timeout():
    async def server(reader, writer):
        writer.write(b"router> ")
        await writer.drain()
        await reader.read()

    status, result, error = scan(server, TelnetFlags(timeout=5, idle_timeout=0.2))

    assert status == ScanStatus.SUCCESS, error
    assert result.banner == "router> "


def test_banner_truncated_to_max_read_size():
    async def server(reader, writer):
        writer.write(b"A" * 100)
        await writer.drain()
        await reader.read()

    status, result, error = scan(server, TelnetFlags(timeout=5, max_read_size=10))

    assert status == ScanStatus.SUCCESS, error
    assert result.banner == "A" * 10


def test_silent_server_times_out():
    async def server(reader, writer):
        await reader.read()

    status, result, error = scan(server, TelnetFlags(timeout=0.3))

    assert status == ScanStatus.TIMEOUT
    assert result is None


def test_eof_inside_control_sequence():
    async def server(reader, writer):
        writer.write(b"hi" + bytes([IAC]))
        await writer.drain()

    status, result, error = scan(server, TelnetFlags(timeout=5))

    assert status == ScanStatus.PROTOCOL_ERROR
    assert result is None


def test_force_banner_keeps_banner_on_error():
    async def server(reader, writer):
        writer.write(b"hi" + bytes([IAC]))
        await writer.drain()

    status, result, error = scan(server, TelnetFlags(timeout=5, force_banner=True))

    assert status == ScanStatus.PROTOCOL_ERROR
    assert result.banner == "hi"
    assert result.options == []


def test_slow_greeting_is_not_cut_by_idle_timeout():
    async def server(reader, writer):
        await asyncio.sleep(0.6)
        writer.write(b"Welcome\r\n")
        await writer.drain()
        await reader.read()

    status, result, error = scan(server, TelnetFlags(timeout=5, idle_timeout=0.2))

    assert status == ScanStatus.SUCCESS, error
    assert result.banner == "Welcome\r\n"


def test_connection_refused():
    with socket.socket() as sock:
        sock.bind(("127.0.0.1", 0))
        port = sock.getsockname()[1]

    target = ScanTarget("127.0.0.1", port, ip="127.0.0.1")
    status, result, error = asyncio.run(run_scan("telnet", target, TelnetFlags(timeout=5)))

    assert status == ScanStatus.CONNECTION_FAILED
    assert result is None


def test_negotiator_escapes_and_subnegotiation():
    log = TelnetLog()
    negotiator = TelnetNegotiator(log, 1024)

    replies = negotiator.feed(bytes([IAC, SB, TERMINAL_TYPE, 1, IAC, SE]) + b"a"
                              + bytes([IAC, IAC]) + b"b" + bytes([IAC, WONT, ECHO, IAC, DONT, SUPPRESS_GO_AHEAD]))

    assert replies == b""
    assert bytes(negotiator.banner) == b"a\xffb"
    assert [(o.command, o.outcome) for o in log.options] == [("WONT", "accepted"), ("DONT", "accepted")]
    assert not negotiator.in_sequence


def test_negotiation_split_across_reads():
    log = TelnetLog()
    negotiator = TelnetNegotiator(log, 1024)

    assert negotiator.feed(bytes([IAC])) == b""
    assert negotiator.in_sequence
    assert negotiator.feed(bytes([DO])) == b""
    assert negotiator.feed(bytes([ECHO])) == bytes([IAC, WONT, ECHO])
    assert log.options[0].to_dict() == {'name': 'ECHO', 'value': ECHO, 'command': 'DO', 'outcome': 'refused'}


def test_read_banner_decodes_latin1():
    async def run():
        stream = MemoryStream(b"caf\xe9 " + bytes([IAC, WILL, SUPPRESS_GO_AHEAD]))
        log = await read_banner(ScanContext(5), stream, 1024)
        return log, stream

    log, stream = asyncio.run(run())

    assert log.banner == "café "
    assert stream.written == bytes([IAC, DONT, SUPPRESS_GO_AHEAD])
    assert log.to_dict() == {'banner': "café ", 'will': [{'name': 'SUPPRESS_GO_AHEAD', 'value': 3}]}


def test_empty_log_has_no_result():
    assert TelnetLog().get_result() is None


def test_banner_without_options_has_no_result():
    assert TelnetLog(banner="hi").get_result() is None
    log = TelnetLog(options=[TelnetOption(code=ECHO, command="WILL", outcome="refused")])
    assert log.get_result() is log
