"""
SMB Scanner
Default port: 445 (TCP)

1. Send an SMB2 NEGOTIATE offering dialect 2.1 with signing enabled.
2. Read the response; a protocol ID of \\xffSMB means the server answered
   in SMBv1 and smbv1_support is set.
3. With setup_session, send a SESSION_SETUP carrying an NTLMSSP NEGOTIATE
   token and decode the server's CHALLENGE. No credentials are ever sent.

If the first attempt fails before anything was learned, the connection is
closed and the negotiation retried once on a new connection, this time as
an SMBv1 NEGOTIATE (dialect "NT LM 0.12") with verbose logging forced on.
"""

import logging
import struct
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional, Tuple

from netprobe.core.context import ScanContext
from netprobe.core.dialer import DialerGroup, close_connection
from netprobe.core.scanner import BaseFlags, ScanResponse, Scanner, log_level
from netprobe.core.status import ScanError, ScanStatus, try_get_scan_status
from netprobe.core.stream import ByteStream
from netprobe.core.target import ScanTarget

logger = logging.getLogger(__name__)

SMB1_PROTOCOL_ID = b"\xffSMB"
SMB2_PROTOCOL_ID = b"\xfeSMB"

SMB2_NEGOTIATE = 0x0000
SMB2_SESSION_SETUP = 0x0001

DIALECT_SMB_2_1 = 0x0210

SMB1_COM_NEGOTIATE = 0x72
SMB1_FLAGS = 0x18
SMB1_FLAGS2 = 0xC853
SMB1_DIALECT_NT_LM = b"NT LM 0.12"
SMB1_NO_DIALECT = 0xFFFF

SECURITY_MODE_SIGNING_ENABLED = 0x0001
SECURITY_MODE_SIGNING_REQUIRED = 0x0002

STATUS_SUCCESS = 0x00000000
STATUS_MORE_PROCESSING_REQUIRED = 0xC0000016

MAX_MESSAGE_SIZE = 1 << 20

_HEADER = struct.Struct("<4sHHIHHIIQIIQ16s")
_SMB1_HEADER = struct.Struct("<4sBIBHH8sHHHHH")
_NEGOTIATE_REQUEST = struct.Struct("<HHHHI16sQ")
_NEGOTIATE_RESPONSE = struct.Struct("<HHHH16sIIIIQQHHI")
_SESSION_SETUP_REQUEST = struct.Struct("<HBBIIHHQ")
_SESSION_SETUP_RESPONSE = struct.Struct("<HHHH")

CAPABILITY_NAMES = {
    0x01: "dfs_support",
    0x02: "leasing",
    0x04: "large_mtu",
    0x08: "multi_channel",
    0x10: "persistent_handles",
    0x20: "directory_leasing",
    0x40: "encryption",
}

# DER-encoded mechanism OIDs that may appear in the negotiate security blob
AUTH_MECHANISMS = {
    bytes.fromhex("2b06010401823702020a"): "ntlmssp",
    bytes.fromhex("2a864886f712010202"): "kerberos",
    bytes.fromhex("2a864882f712010202"): "ms-kerberos",
    bytes.fromhex("2b06010401823702021e"): "negoex",
}

SPNEGO_OID = bytes.fromhex("2b0601050502")
NTLMSSP_OID = bytes.fromhex("2b06010401823702020a")
NTLMSSP_SIGNATURE = b"NTLMSSP\x00"

NTLMSSP_NEGOTIATE_UNICODE = 0x00000001
NTLMSSP_NEGOTIATE_VERSION = 0x02000000
NTLMSSP_NEGOTIATE_FLAGS = 0xE2088207

AV_PAIR_NAMES = {
    1: "netbios_computer_name",
    2: "netbios_domain_name",
    3: "dns_computer_name",
    4: "dns_domain_name",
    5: "dns_tree_name",
    9: "target_name",
}
AV_TIMESTAMP = 7


class SMBError(ScanError):
    """Negotiation failed. `log` holds whatever was decoded before the
    failure, or None if nothing was."""

    def __init__(self, message: str, log: Optional["SMBLog"] = None,
                 status: Optional[ScanStatus] = None):
        super().__init__(message)
        self.log = log
        if status is not None:
            self.status = status


@dataclass
class HeaderLog:
    protocol_id: bytes
    status: int
    command: int
    credits: int
    flags: int

    def to_dict(self) -> Dict[str, Any]:
        return {'protocol_id': self.protocol_id.hex(), 'status': self.status,
                'command': self.command, 'credits': self.credits, 'flags': self.flags}


@dataclass
class SMBVersions:
    major: int
    minor: int
    revision: int

    @classmethod
    def from_dialect(cls, dialect: int) -> "SMBVersions":
        return cls(dialect >> 8, (dialect >> 4) & 0xF, dialect & 0xF)

    @property
    def version_string(self) -> str:
        return f"SMB {self.major}.{self.minor}.{self.revision}"

    def to_dict(self) -> Dict[str, Any]:
        return {'major': self.major, 'minor': self.minor, 'revision': self.revision,
                'version_string': self.version_string}


@dataclass
class NegotiationLog:
    header: HeaderLog
    security_mode: int = 0
    dialect_revision: int = 0
    server_guid: bytes = b""
    capabilities: int = 0
    max_transact_size: int = 0
    max_read_size: int = 0
    max_write_size: int = 0
    system_time: int = 0
    server_start_time: int = 0
    authentication_types: List[str] = field(default_factory=list)

    @property
    def signing_required(self) -> bool:
        return bool(self.security_mode & SECURITY_MODE_SIGNING_REQUIRED)

    def to_dict(self) -> Dict[str, Any]:
        out = self.header.to_dict()
        out.update({
            'security_mode': self.security_mode,
            'dialect_revision': self.dialect_revision,
            'server_guid': self.server_guid.hex(),
            'capabilities': self.capabilities,
            'max_transact_size': self.max_transact_size,
            'max_read_size': self.max_read_size,
            'max_write_size': self.max_write_size,
            'system_time': self.system_time,
            'server_start_time': self.server_start_time,
        })
        if self.authentication_types:
            out['authentication_types'] = self.authentication_types
        return out


@dataclass
class SessionSetupLog:
    header: HeaderLog
    setup_flags: int = 0
    target_name: str = ""
    negotiate_flags: int = 0
    target_info: Dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        out = self.header.to_dict()
        out.update({'setup_flags': self.setup_flags, 'target_name': self.target_name,
                    'negotiate_flags': self.negotiate_flags})
        if self.target_info:
            out['target_info'] = self.target_info
        return out


@dataclass
class SMBLog:
    """Everything learned from one SMB negotiation"""
    smbv1_support: bool = False
    version: Optional[SMBVersions] = None
    capabilities: Dict[str, bool] = field(default_factory=dict)
    ntlm: Optional[str] = None
    group_name: Optional[str] = None
    has_ntlm: bool = False
    negotiation_log: Optional[NegotiationLog] = None
    session_setup_log: Optional[SessionSetupLog] = None
    verbose: bool = False
    retried: bool = False
    raw: Dict[str, str] = field(default_factory=dict)

    def to_dict(self, verbose: bool = False) -> Dict[str, Any]:
        out: Dict[str, Any] = {'smbv1_support': self.smbv1_support}
        if self.version is not None:
            out['smb_version'] = self.version.to_dict()
        if self.capabilities:
            out['smb_capabilities'] = self.capabilities
        if self.has_ntlm:
            out['has_ntlm'] = True
            out['ntlm'] = self.ntlm
        if self.group_name is not None:
            out['group_name'] = self.group_name
        if self.negotiation_log is not None:
            out['negotiation_log'] = self.negotiation_log.to_dict()
        if self.session_setup_log is not None:
            out['session_setup_log'] = self.session_setup_log.to_dict()
        if self.retried:
            out['retried'] = True
        if self.verbose:
            out['verbose'] = True
        if self.verbose or verbose:
            out['raw'] = self.raw
        return out


def _netbios(message: bytes) -> bytes:
    if len(message) > 0xFFFFFF:
        raise ValueError("SMB message too large for NetBIOS header")
    return b"\x00" + struct.pack(">I", len(message))[1:] + message


def _smb2_header(command: int, message_id: int, session_id: int = 0,
                 credit_request: int = 1) -> bytes:
    return _HEADER.pack(SMB2_PROTOCOL_ID, 64, 0, 0, command, credit_request,
                        0, 0, message_id, 0, 0, session_id, bytes(16))


def build_negotiate_request(dialects=(DIALECT_SMB_2_1,),
                            security_mode: int = SECURITY_MODE_SIGNING_ENABLED) -> bytes:
    body = _NEGOTIATE_REQUEST.pack(36, len(dialects), security_mode, 0, 0,
                                   uuid.uuid4().bytes, 0)
    body += b"".join(struct.pack("<H", d) for d in dialects)
    return _netbios(_smb2_header(SMB2_NEGOTIATE, message_id=0) + body)


def build_smb1_negotiate_request(dialects=(SMB1_DIALECT_NT_LM,)) -> bytes:
    """SMB_COM_NEGOTIATE offering only SMBv1 dialects"""
    dialect_bytes = b"".join(b"\x02" + d + b"\x00" for d in dialects)
    header = _SMB1_HEADER.pack(SMB1_PROTOCOL_ID, SMB1_COM_NEGOTIATE, 0, SMB1_FLAGS, SMB1_FLAGS2,
                               0, bytes(8), 0, 0xFFFF, 0xFEFF, 0, 0)
    return _netbios(header + struct.pack("<BH", 0, len(dialect_bytes)) + dialect_bytes)


def _der(tag: int, content: bytes) -> bytes:
    length = len(content)
    if length < 0x80:
        encoded = bytes([length])
    else:
        raw = length.to_bytes((length.bit_length() + 7) // 8, "big")
        encoded = bytes([0x80 | len(raw)]) + raw
    return bytes([tag]) + encoded + content


def ntlmssp_negotiate() -> bytes:
    """NTLMSSP NEGOTIATE_MESSAGE with empty domain and workstation"""
    version = struct.pack("<BBH3xB", 6, 1, 0, 0x0F)
    return (NTLMSSP_SIGNATURE + struct.pack("<II", 1, NTLMSSP_NEGOTIATE_FLAGS)
            + struct.pack("<HHI", 0, 0, 0) * 2 + version)


def spnego_init(token: bytes) -> bytes:
    """Wrap a mechanism token in a SPNEGO NegTokenInit offering NTLMSSP"""
    mech_types = _der(0xA0, _der(0x30, _der(0x06, NTLMSSP_OID)))
    mech_token = _der(0xA2, _der(0x04, token))
    neg_token_init = _der(0xA0, _der(0x30, mech_types + mech_token))
    return _der(0x60, _der(0x06, SPNEGO_OID) + neg_token_init)


def build_session_setup_request(message_id: int = 1,
                                security_mode: int = SECURITY_MODE_SIGNING_ENABLED) -> bytes:
    blob = spnego_init(ntlmssp_negotiate())
    offset = _HEADER.size + _SESSION_SETUP_REQUEST.size
    body = _SESSION_SETUP_REQUEST.pack(25, 0, security_mode, 0, 0, offset, len(blob), 0)
    return _netbios(_smb2_header(SMB2_SESSION_SETUP, message_id) + body + blob)


async def read_netbios_message(conn: ByteStream) -> bytes:
    header = await conn.read_exactly(4)
    if header[0] != 0x00:
        raise SMBError(f"unexpected NetBIOS message type 0x{header[0]:02x}",
                       status=ScanStatus.PROTOCOL_ERROR)
    length = int.from_bytes(header[1:4], "big")
    if length > MAX_MESSAGE_SIZE:
        raise SMBError(f"NetBIOS message too large: {length} bytes",
                       status=ScanStatus.PROTOCOL_ERROR)
    return await conn.read_exactly(length)


def parse_header(data: bytes) -> HeaderLog:
    if len(data) < _HEADER.size:
        raise SMBError(f"SMB2 message too short: {len(data)} bytes",
                       status=ScanStatus.PROTOCOL_ERROR)
    fields = _HEADER.unpack_from(data)
    protocol_id, status, command, credits, flags = fields[0], fields[3], fields[4], fields[5], fields[6]
    return HeaderLog(protocol_id=protocol_id, status=status, command=command,
                     credits=credits, flags=flags)


def parse_smb1_negotiate_response(data: bytes) -> Tuple[int, int]:
    """Return the NT status and the index of the dialect the server picked"""
    if len(data) < _SMB1_HEADER.size + 1:
        raise SMBError(f"SMBv1 message too short: {len(data)} bytes",
                       status=ScanStatus.PROTOCOL_ERROR)
    _, command, status = _SMB1_HEADER.unpack_from(data)[:3]
    if command != SMB1_COM_NEGOTIATE:
        raise SMBError(f"unexpected SMBv1 command 0x{command:02x}",
                       status=ScanStatus.PROTOCOL_ERROR)
    word_count = data[_SMB1_HEADER.size]
    if not word_count:
        return status, SMB1_NO_DIALECT
    dialect_index, = struct.unpack_from("<H", data, _SMB1_HEADER.size + 1)
    return status, dialect_index


def parse_negotiate_response(data: bytes) -> NegotiationLog:
    header = parse_header(data)
    if header.command != SMB2_NEGOTIATE:
        raise SMBError(f"unexpected SMB2 command {header.command} in negotiate response",
                       status=ScanStatus.PROTOCOL_ERROR)
    log = NegotiationLog(header=header)
    if header.status != STATUS_SUCCESS:
        return log
    if len(data) < _HEADER.size + _NEGOTIATE_RESPONSE.size:
        raise SMBError("SMB2 negotiate response body too short", status=ScanStatus.PROTOCOL_ERROR)

    (_, log.security_mode, log.dialect_revision, _, log.server_guid, log.capabilities,
     log.max_transact_size, log.max_read_size, log.max_write_size, log.system_time,
     log.server_start_time, blob_offset, blob_length, _) = _NEGOTIATE_RESPONSE.unpack_from(data, _HEADER.size)

    blob = data[blob_offset:blob_offset + blob_length]
    log.authentication_types = [name for oid, name in AUTH_MECHANISMS.items() if oid in blob]
    return log


@dataclass
class NTLMChallenge:
    target_name: str
    negotiate_flags: int
    version: Optional[str]
    target_info: Dict[str, str]


def parse_ntlm_challenge(blob: bytes) -> Optional[NTLMChallenge]:
    """Find and decode the NTLMSSP CHALLENGE_MESSAGE inside a security blob"""
    start = blob.find(NTLMSSP_SIGNATURE)
    if start < 0:
        return None
    msg = blob[start:]
    if len(msg) < 48:
        raise SMBError("truncated NTLMSSP challenge", status=ScanStatus.PROTOCOL_ERROR)
    message_type, = struct.unpack_from("<I", msg, 8)
    if message_type != 2:
        raise SMBError(f"unexpected NTLMSSP message type {message_type}",
                       status=ScanStatus.PROTOCOL_ERROR)

    name_len, _, name_off = struct.unpack_from("<HHI", msg, 12)
    flags, = struct.unpack_from("<I", msg, 20)
    info_len, _, info_off = struct.unpack_from("<HHI", msg, 40)
    encoding = "utf-16-le" if flags & NTLMSSP_NEGOTIATE_UNICODE else "latin-1"
    target_name = msg[name_off:name_off + name_len].decode(encoding, errors="replace")

    version = None
    if flags & NTLMSSP_NEGOTIATE_VERSION and len(msg) >= 56:
        major, minor, build = struct.unpack_from("<BBH", msg, 48)
        version = f"{major}.{minor}.{build}"

    target_info = {}
    info = msg[info_off:info_off + info_len]
    pos = 0
    while pos + 4 <= len(info):
        av_id, av_len = struct.unpack_from("<HH", info, pos)
        pos += 4
        if av_id == 0:
            break
        value = info[pos:pos + av_len]
        pos += av_len
        if av_id in AV_PAIR_NAMES:
            target_info[AV_PAIR_NAMES[av_id]] = value.decode("utf-16-le", errors="replace")
        elif av_id == AV_TIMESTAMP and len(value) == 8:
            target_info['timestamp'] = str(struct.unpack("<Q", value)[0])
    return NTLMChallenge(target_name, flags, version, target_info)


def parse_session_setup_response(data: bytes) -> Tuple[SessionSetupLog, bytes]:
    header = parse_header(data)
    if header.command != SMB2_SESSION_SETUP:
        raise SMBError(f"unexpected SMB2 command {header.command} in session setup response",
                       status=ScanStatus.PROTOCOL_ERROR)
    if header.status not in (STATUS_SUCCESS, STATUS_MORE_PROCESSING_REQUIRED):
        raise SMBError(f"session setup failed with status 0x{header.status:08x}",
                       status=ScanStatus.APPLICATION_ERROR)
    if len(data) < _HEADER.size + _SESSION_SETUP_RESPONSE.size:
        raise SMBError("SMB2 session setup response too short", status=ScanStatus.PROTOCOL_ERROR)
    _, setup_flags, blob_offset, blob_length = _SESSION_SETUP_RESPONSE.unpack_from(data, _HEADER.size)
    return SessionSetupLog(header=header, setup_flags=setup_flags), data[blob_offset:blob_offset + blob_length]


async def get_smb_log(ctx: ScanContext, conn: ByteStream, setup_session: bool,
                      verbose: bool, smb1: bool = False) -> SMBLog:
    """Negotiate (and optionally set up a session) on `conn`.

    With `smb1` an SMBv1 NEGOTIATE is sent instead and no session is set up.
    Raises SMBError; its `log` is None unless the negotiate response was
    decoded before the failure.
    """
    level = log_level(verbose)
    log = None
    try:
        if smb1:
            await ctx.run(conn.write(build_smb1_negotiate_request()))
            data = await ctx.run(read_netbios_message(conn))
            if data[:4] != SMB1_PROTOCOL_ID:
                raise SMBError(f"not an SMBv1 response (protocol id {data[:4].hex()})",
                               status=ScanStatus.PROTOCOL_ERROR)
            status, dialect_index = parse_smb1_negotiate_response(data)
            log = SMBLog(verbose=verbose)
            if verbose:
                log.raw['negotiate_response'] = data.hex()
            if status != STATUS_SUCCESS or dialect_index == SMB1_NO_DIALECT:
                raise SMBError(f"SMBv1 negotiate refused (status 0x{status:08x})",
                               log=log, status=ScanStatus.APPLICATION_ERROR)
            log.smbv1_support = True
            logger.log(level, "server accepted the SMBv1 negotiate")
            return log

        await ctx.run(conn.write(build_negotiate_request()))
        data = await ctx.run(read_netbios_message(conn))

        protocol_id = data[:4]
        if protocol_id == SMB1_PROTOCOL_ID:
            log = SMBLog(smbv1_support=True, verbose=verbose)
            if verbose:
                log.raw['negotiate_response'] = data.hex()
            logger.log(level, "server answered the SMB2 negotiate in SMBv1")
            return log
        if protocol_id != SMB2_PROTOCOL_ID:
            raise SMBError(f"not an SMB response (protocol id {protocol_id.hex()})",
                           status=ScanStatus.PROTOCOL_ERROR)

        negotiation = parse_negotiate_response(data)
        log = SMBLog(negotiation_log=negotiation, verbose=verbose)
        if verbose:
            log.raw['negotiate_response'] = data.hex()
        if negotiation.header.status != STATUS_SUCCESS:
            raise SMBError(f"negotiate failed with status 0x{negotiation.header.status:08x}",
                           log=log, status=ScanStatus.APPLICATION_ERROR)
        log.version = SMBVersions.from_dialect(negotiation.dialect_revision)
        log.capabilities = {name: bool(negotiation.capabilities & bit)
                            for bit, name in CAPABILITY_NAMES.items()}
        logger.log(level, f"negotiated {log.version.version_string}, "
                          f"security mode 0x{negotiation.security_mode:04x}")

        if not setup_session:
            return log

        await ctx.run(conn.write(build_session_setup_request()))
        data = await ctx.run(read_netbios_message(conn))
        if verbose:
            log.raw['session_setup_response'] = data.hex()
        log.session_setup_log, blob = parse_session_setup_response(data)
        challenge = parse_ntlm_challenge(blob)
        if challenge is not None:
            log.has_ntlm = True
            log.ntlm = challenge.version
            log.group_name = challenge.target_info.get('netbios_domain_name')
            log.session_setup_log.target_name = challenge.target_name
            log.session_setup_log.negotiate_flags = challenge.negotiate_flags
            log.session_setup_log.target_info = challenge.target_info
        return log
    except SMBError as e:
        if e.log is None and log is not None:
            e.log = log
        raise
    except ScanError as e:
        raise SMBError(f"SMB negotiation failed: {e}", log=log) from e
    except (EOFError, OSError) as e:
        raise SMBError(f"SMB negotiation failed: {e}", log=log) from e
    except (struct.error, IndexError, ValueError) as e:
        raise SMBError(f"malformed SMB response: {e}", log=log,
                       status=ScanStatus.PROTOCOL_ERROR) from e


Negotiator = Callable[[ScanContext, ByteStream, bool, bool, bool], Awaitable[SMBLog]]


@dataclass
class SMBFlags(BaseFlags):
    """SMB module options"""
    # Continue up to the point where credentials would be needed
    setup_session: bool = False


class SMBScanner(Scanner):
    """Probes for SMB servers (Windows file sharing / Samba)"""

    protocol = "smb"

    def __init__(self, flags: SMBFlags):
        super().__init__(flags)
        self.negotiator: Negotiator = get_smb_log

    async def scan(self, ctx: ScanContext, dialer_group: DialerGroup,
                   target: ScanTarget) -> ScanResponse:
        try:
            conn = await dialer_group.dial(ctx, target)
        except ScanError as e:
            return ScanResponse(try_get_scan_status(e), None, e)

        try:
            result = await self.negotiator(ctx, conn, self.flags.setup_session,
                                           self.flags.verbose, False)
            return ScanResponse(ScanStatus.SUCCESS, result, None)
        except SMBError as e:
            if e.log is not None:
                return ScanResponse(try_get_scan_status(e), e.log, e)
            logger.debug(f"SMB negotiation with {target} produced nothing ({e}), retrying")
        finally:
            close_connection(conn, target)

        try:
            conn = await dialer_group.dial(ctx, target)
        except ScanError as e:
            return ScanResponse(try_get_scan_status(e), None,
                                SMBError(f"could not reconnect to SMB server {target}: {e}"))

        try:
            result = await self.negotiator(ctx, conn, self.flags.setup_session, True, True)
            result.retried = True
            return ScanResponse(ScanStatus.SUCCESS, result, None)
        except SMBError as e:
            if e.log is not None:
                e.log.retried = True
            return ScanResponse(try_get_scan_status(e), e.log, e)
        finally:
            close_connection(conn, target)
