#!/usr/bin/env python3
"""
Tests for SMB negotiation and the single retry
"""

import asyncio
import struct

from conftest import MemoryStream, loopback_server
from netprobe.core.context import ScanContext
from netprobe.core.dialer import DialerGroup
from netprobe.core.status import ScanStatus, ScanTimeoutError
from netprobe.core.target import ScanTarget
from netprobe.scanners import run_scan
from netprobe.scanners.smb import (
    NTLMSSP_OID,
    NTLMSSP_SIGNATURE,
    SPNEGO_OID,
    STATUS_MORE_PROCESSING_REQUIRED,
    NegotiationLog,
    HeaderLog,
    SMBError,
    SMBFlags,
    SMBLog,
    SMBScanner,
    build_smb1_negotiate_request,
    ntlmssp_negotiate,
    parse_ntlm_challenge,
)

SMB2_HEADER = struct.Struct("<4sHHIHHIIQIIQ16s")
SERVER_GUID = bytes(range(16))


def smb2_header(command: int, status: int = 0, message_id: int = 0) -> bytes:
    return SMB2_HEADER.pack(b"\xfeSMB", 64, 0, status, command, 1, 0x00000001,
                            0, message_id, 0, 0, 0x1234 if command else 0, bytes(16))


def netbios(message: bytes) -> bytes:
    return b"\x00" + struct.pack(">I", len(message))[1:] + message


def negotiate_response(dialect: int = 0x0210, security_mode: int = 0x03,
                       capabilities: int = 0x05, blob: bytes = b"") -> bytes:
    body = struct.pack("<HHHH16sIIIIQQHHI", 65, security_mode, dialect, 0, SERVER_GUID,
                       capabilities, 65536, 65536, 65536, 132000000000000000, 0,
                       128, len(blob), 0)
    return netbios(smb2_header(0) + body + blob)


def ntlm_challenge() -> bytes:
    target_name = "CORP".encode("utf-16-le")
    target_info = b""
    for av_id, value in ((2, "CORP"), (3, "dc01.corp.local")):
        raw = value.encode("utf-16-le")
        target_info += struct.pack("<HH", av_id, len(raw)) + raw
    target_info += struct.pack("<HH", 0, 0)

    flags = 0x00000001 | 0x00800000 | 0x02000000
    return (NTLMSSP_SIGNATURE + struct.pack("<I", 2)
            + struct.pack("<HHI", len(target_name), len(target_name), 56)
            + struct.pack("<I", flags) + b"\x11" * 8 + bytes(8)
            + struct.pack("<HHI", len(target_info), len(target_info), 56 + len(target_name))
            + struct.pack("<BBH3xB", 10, 0, 17763, 15)
            + target_name + target_info)


def session_setup_response(blob: bytes) -> bytes:
    body = struct.pack("<HHHH", 9, 0, 72, len(blob))
    return netbios(smb2_header(1, STATUS_MORE_PROCESSING_REQUIRED, message_id=1) + body + blob)


async def read_netbios(reader) -> bytes:
    header = await reader.readexactly(4)
    return await reader.readexactly(int.from_bytes(header[1:], "big"))


def scan(handler, flags: SMBFlags):
    async def run():
        async with loopback_server(handler) as target:
            return await run_scan("smb", target, flags)
    return asyncio.run(run())


def test_negotiate():
    requests = []

    async def server(reader, writer):
        requests.append(await read_netbios(reader))
        writer.write(negotiate_response(blob=b"\x60\x10" + b"\x06\x0a" + NTLMSSP_OID))
        await writer.drain()
        await reader.read()

    status, log, error = scan(server, SMBFlags(timeout=5))

    assert status == ScanStatus.SUCCESS, error
    assert not log.smbv1_support
    assert not log.retried
    assert log.version.version_string == "SMB 2.1.0"
    assert log.capabilities['dfs_support'] and log.capabilities['large_mtu']
    assert not log.capabilities['encryption']
    assert log.negotiation_log.signing_required
    assert log.negotiation_log.server_guid == SERVER_GUID
    assert log.negotiation_log.authentication_types == ["ntlmssp"]
    assert log.session_setup_log is None

    request = requests[0]
    assert request[:4] == b"\xfeSMB"
    structure_size, dialect_count, security_mode = struct.unpack_from("<HHH", request, 64)
    assert (structure_size, dialect_count, security_mode) == (36, 1, 0x01)
    assert struct.unpack_from("<H", request, 100) == (0x0210,)


def test_smbv1_response():
    async def server(reader, writer):
        await read_netbios(reader)
        writer.write(netbios(b"\xffSMB" + bytes(60)))
        await writer.drain()
        await reader.read()

    status, log, error = scan(server, SMBFlags(timeout=5))

    assert status == ScanStatus.SUCCESS, error
    assert log.smbv1_support
    assert log.version is None


def test_session_setup_reads_ntlm_challenge():
    requests = []

    async def server(reader, writer):
        await read_netbios(reader)
        writer.write(negotiate_response())
        await writer.drain()
        requests.append(await read_netbios(reader))
        writer.write(session_setup_response(b"\xa1\x81\x30" + ntlm_challenge()))
        await writer.drain()
        await reader.read()

    status, log, error = scan(server, SMBFlags(timeout=5, setup_session=True))

    assert status == ScanStatus.SUCCESS, error
    assert log.has_ntlm
    assert log.ntlm == "10.0.17763"
    assert log.group_name == "CORP"
    assert log.session_setup_log.target_name == "CORP"
    assert log.session_setup_log.target_info['dns_computer_name'] == "dc01.corp.local"
    assert log.session_setup_log.header.status == STATUS_MORE_PROCESSING_REQUIRED

    request = requests[0]
    assert struct.unpack_from("<H", request, 12) == (1,)
    assert SPNEGO_OID in request and NTLMSSP_SIGNATURE in request
    offset, length = struct.unpack_from("<HH", request, 64 + 12)
    assert offset == 88 and offset + length == len(request)


def test_non_smb_server_is_tried_twice():
    connections = []

    async def server(reader, writer):
        connections.append(await reader.read(4096))
        writer.write(b"HTTP/1.1 400 Bad Request\r\n\r\n")
        await writer.drain()

    status, log, error = scan(server, SMBFlags(timeout=5))

    assert status == ScanStatus.PROTOCOL_ERROR
    assert log is None
    assert len(connections) == 2


def test_silent_server_times_out():
    async def server(reader, writer):
        await reader.read()

    status, log, error = scan(server, SMBFlags(timeout=0.5))

    assert status == ScanStatus.TIMEOUT
    assert log is None


def smb1_negotiate_response(status: int = 0, dialect_index: int = 0) -> bytes:
    header = struct.pack("<4sBIBHH8sHHHHH", b"\xffSMB", 0x72, status, 0x98, 0xC853,
                         0, bytes(8), 0, 0xFFFF, 0xFEFF, 0, 0)
    words = struct.pack("<BH", 17, dialect_index) + bytes(32)
    return netbios(header + words + struct.pack("<H", 0))


def test_retry_negotiates_smbv1():
    requests = []

    async def smbv1_only(reader, writer):
        request = await read_netbios(reader)
        requests.append(request)
        if request[:4] == b"\xffSMB":
            writer.write(smb1_negotiate_response())
            await writer.drain()
            await reader.read()

    status, log, error = scan(smbv1_only, SMBFlags(timeout=5))

    assert status == ScanStatus.SUCCESS, error
    assert log.smbv1_support
    assert log.retried and log.verbose
    assert log.version is None
    assert 'negotiate_response' in log.raw
    assert [r[:4] for r in requests] == [b"\xfeSMB", b"\xffSMB"]
    assert requests[1][4] == 0x72
    assert requests[1].endswith(b"\x02NT LM 0.12\x00")


def test_retry_with_smbv1_dialect_refused():
    async def server(reader, writer):
        request = await read_netbios(reader)
        if request[:4] == b"\xffSMB":
            writer.write(smb1_negotiate_response(dialect_index=0xFFFF))
            await writer.drain()
            await reader.read()

    status, log, error = scan(server, SMBFlags(timeout=5))

    assert status == ScanStatus.APPLICATION_ERROR
    assert not log.smbv1_support
    assert log.retried


def test_smb1_negotiate_request_layout():
    request = build_smb1_negotiate_request()
    message = request[4:]

    assert int.from_bytes(request[1:4], "big") == len(message)
    assert message[:4] == b"\xffSMB" and message[4] == 0x72
    assert message[32] == 0
    assert struct.unpack_from("<H", message, 33) == (len(b"\x02NT LM 0.12\x00"),)



class FakeNegotiator:
    """Replays canned outcomes and records every call"""

    def __init__(self, *outcomes):
        self.outcomes = list(outcomes)
        self.calls = []

    async def __call__(self, ctx, conn, setup_session, verbose, smb1):
        self.calls.append((verbose, smb1))
        outcome = self.outcomes.pop(0)
        if isinstance(outcome, BaseException):
            raise outcome
        return outcome


def run_fake(negotiator, verbose=False):
    streams = []

    async def dial(target, flags):
        streams.append(MemoryStream())
        return streams[-1]

    async def run():
        scanner = SMBScanner(SMBFlags(verbose=verbose))
        scanner.negotiator = negotiator
        dialer_group = DialerGroup(scanner.dialer_group_config, dial)
        target = ScanTarget("192.0.2.1", 445, ip="192.0.2.1")
        return await scanner.scan(ScanContext(5), dialer_group, target)

    return asyncio.run(run()), streams


def test_retry_when_nothing_was_learned():
    second = SMBError("still nothing", status=ScanStatus.PROTOCOL_ERROR)
    negotiator = FakeNegotiator(SMBError("nothing"), second)

    (status, log, error), streams = run_fake(negotiator)

    assert negotiator.calls == [(False, False), (True, True)]
    assert error is second
    assert status == ScanStatus.PROTOCOL_ERROR
    assert log is None
    assert len(streams) == 2 and all(s.closed for s in streams)


def test_no_retry_with_partial_log():
    partial = SMBLog(negotiation_log=NegotiationLog(header=HeaderLog(b"\xfeSMB", 0, 0, 1, 1)))
    negotiator = FakeNegotiator(SMBError("session setup failed", log=partial,
                                         status=ScanStatus.APPLICATION_ERROR))

    (status, log, error), streams = run_fake(negotiator)

    assert negotiator.calls == [(False, False)]
    assert status == ScanStatus.APPLICATION_ERROR
    assert log is partial
    assert not log.retried
    assert len(streams) == 1 and streams[0].closed


def test_retry_after_timeout_succeeds_verbosely():
    def timed_out():
        try:
            raise ScanTimeoutError("negotiate timed out")
        except ScanTimeoutError as e:
            try:
                raise SMBError(f"SMB negotiation failed: {e}") from e
            except SMBError as wrapped:
                return wrapped

    negotiator = FakeNegotiator(timed_out(), SMBLog(verbose=True))

    (status, log, error), streams = run_fake(negotiator)

    assert negotiator.calls == [(False, False), (True, True)]
    assert status == ScanStatus.SUCCESS
    assert error is None
    assert log.retried and log.verbose
    assert log.to_dict()['retried'] is True
    assert 'raw' in log.to_dict()


def test_first_attempt_success_is_not_retried():
    negotiator = FakeNegotiator(SMBLog())

    (status, log, error), streams = run_fake(negotiator, verbose=True)

    assert negotiator.calls == [(True, False)]
    assert status == ScanStatus.SUCCESS
    assert not log.retried


def test_ntlmssp_negotiate_message():
    message = ntlmssp_negotiate()

    assert len(message) == 40
    assert message.startswith(NTLMSSP_SIGNATURE)
    assert struct.unpack_from("<I", message, 8) == (1,)


def test_blob_without_ntlmssp():
    assert parse_ntlm_challenge(b"\xa1\x05\x30\x03\x0a\x01\x02") is None
