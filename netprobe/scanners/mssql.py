"""
MSSQL Scanner
Default port: 1433 (TCP)

Sends a PRELOGIN packet, decodes the server's answer and, unless one side
cannot encrypt, performs a TLS handshake whose records are wrapped in TDS
packets. Only ENCRYPT_NOT_SUP on the client skips TLS, since even
ENCRYPT_OFF uses TLS for the login step.

The result carries the server version and instance name and, if
applicable, the TLS handshake log.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional

from netprobe.core.context import ScanContext
from netprobe.core.dialer import DialerGroup, DialerGroupConfig, close_connection
from netprobe.core.scanner import BaseFlags, ScanResponse, Scanner, log_level
from netprobe.core.status import (
    ApplicationError,
    InvalidInputError,
    ScanConnectionError,
    ScanError,
    ScanStatus,
    ScanTimeoutError,
    try_get_scan_status,
)
from netprobe.core.stream import ByteStream
from netprobe.core.target import ScanTarget
from netprobe.core.tls import TLSConnection, TLSFlags, TLSHandshakeError, TLSLog
from netprobe.scanners.tds import (
    DEFAULT_PACKET_SIZE,
    MAX_PACKET_SIZE,
    MIN_PACKET_SIZE,
    EncryptMode,
    PreloginDecodeError,
    PreloginOptions,
    TDSError,
    TDSHandshakeAdapter,
    TDSHeader,
    TDSPacketType,
    client_prelogin,
    encode_packets,
    read_message,
)

logger = logging.getLogger(__name__)


class NoServerEncryptionError(ApplicationError):
    """The client asked for encryption the server says it cannot do"""


class ServerRequiresEncryptionError(ApplicationError):
    """The server requires encryption but no TLS session came up"""


class HandshakeState(Enum):
    INIT = "init"
    SEND_PRELOGIN = "send-prelogin"
    AWAIT_PRELOGIN_RESPONSE = "await-prelogin-response"
    TLS_HANDSHAKE = "tls-handshake"
    DONE = "done"
    FAILED = "failed"


@dataclass
class MSSQLFlags(BaseFlags):
    """MSSQL module options"""
    tls: TLSFlags = field(default_factory=TLSFlags)
    encrypt_mode: str = "ENCRYPT_ON"
    packet_size: int = DEFAULT_PACKET_SIZE


@dataclass
class MSSQLScanResults:
    """What the PRELOGIN exchange and the TLS handshake revealed"""
    version: Optional[str] = None
    # None when the server sent no INSTANCE option, "" when it sent an empty one
    instance_name: Optional[str] = None
    prelogin_options: Optional[PreloginOptions] = None
    encrypt_mode: Optional[EncryptMode] = None
    tls: Optional[TLSLog] = None

    def to_dict(self, verbose: bool = False) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        if self.version is not None:
            out['version'] = self.version
        if self.instance_name is not None:
            out['instance_name'] = self.instance_name
        if verbose and self.prelogin_options is not None:
            out['prelogin_options'] = self.prelogin_options.to_dict()
        if self.encrypt_mode is not None:
            out['encrypt_mode'] = str(self.encrypt_mode)
        if self.tls is not None:
            out['tls'] = self.tls.to_dict()
        return out


TLSWrapper = Callable[[ByteStream, ScanTarget], TLSConnection]


class MSSQLConnection:
    """A TDS connection for the duration of one handshake"""

    def __init__(self, conn: ByteStream, packet_size: int = DEFAULT_PACKET_SIZE,
                 verbose: bool = False):
        self.conn = conn
        self.packet_size = packet_size
        self.verbose = verbose
        self.state = HandshakeState.INIT
        self.prelogin_options: Optional[PreloginOptions] = None
        self.encrypt_mode: Optional[EncryptMode] = None
        self.tls_conn: Optional[TLSConnection] = None
        # Set once any inbound packet had a structurally valid TDS header
        self.read_valid_tds_packet = False

    def _trace(self, message: str):
        logger.log(log_level(self.verbose), message)

    def _on_header(self, header: TDSHeader):
        self.read_valid_tds_packet = True

    async def prelogin(self, ctx: ScanContext, client_mode: EncryptMode) -> PreloginOptions:
        """Send our PRELOGIN and return the server's decoded options"""
        self.state = HandshakeState.SEND_PRELOGIN
        payload = client_prelogin(client_mode).encode()
        packets = encode_packets(TDSPacketType.PRELOGIN, payload, self.packet_size)
        self._trace(f"sending PRELOGIN ({len(payload)} bytes, {len(packets)} packet(s))")
        await ctx.run(self.conn.write(b"".join(packets)))

        self.state = HandshakeState.AWAIT_PRELOGIN_RESPONSE
        _, response = await ctx.run(read_message(self.conn, self._on_header,
                                                 expected_type=TDSPacketType.TABULAR_RESULT))
        options = PreloginOptions.decode(response)
        self._trace(f"PRELOGIN response options: {options.to_dict()}")
        return options

    async def handshake(self, ctx: ScanContext, target: ScanTarget, client_mode: EncryptMode,
                        tls_wrapper: Optional[TLSWrapper]) -> EncryptMode:
        """PRELOGIN, then TLS through TDS if both sides can encrypt.

        Returns the server's encrypt mode. On failure, `encrypt_mode`,
        `prelogin_options` and `tls_conn` keep whatever was learned.
        """
        try:
            self.prelogin_options = await self.prelogin(ctx, client_mode)
            server_mode = self.prelogin_options.get_encrypt_mode()
            if server_mode is None:
                raise PreloginDecodeError("PRELOGIN response has no ENCRYPTION option")
            self.encrypt_mode = server_mode

            if server_mode == EncryptMode.NOT_SUPPORTED:
                if client_mode in (EncryptMode.ON, EncryptMode.REQUIRED):
                    raise NoServerEncryptionError(
                        f"client requested {client_mode} but {target} does not support encryption")
                self.state = HandshakeState.DONE
                return server_mode

            if client_mode == EncryptMode.NOT_SUPPORTED:
                if server_mode.requires_encryption:
                    raise ServerRequiresEncryptionError(
                        f"{target} requires encryption ({server_mode}) but the client cannot encrypt")
                self.state = HandshakeState.DONE
                return server_mode

            await self._tls_handshake(ctx, target, server_mode, tls_wrapper)
            self.state = HandshakeState.DONE
            return server_mode
        except ScanError:
            self.state = HandshakeState.FAILED
            raise
        except (EOFError, OSError) as e:
            phase = self.state.value
            self.state = HandshakeState.FAILED
            raise ScanConnectionError(f"connection to {target} failed during {phase}: {e}") from e

    async def _tls_handshake(self, ctx: ScanContext, target: ScanTarget,
                             server_mode: EncryptMode, tls_wrapper: Optional[TLSWrapper]):
        if tls_wrapper is None:
            raise InvalidInputError("a TLS wrapper is required for the mssql TLS handshake")

        self.state = HandshakeState.TLS_HANDSHAKE
        self.tls_conn = tls_wrapper(self.conn, target)
        adapter = TDSHandshakeAdapter(self.conn, self.packet_size, self._on_header)
        self._trace(f"starting TLS handshake over TDS with {target}")
        try:
            await self.tls_conn.handshake(ctx, transport=adapter)
        except (TLSHandshakeError, TDSError, ScanTimeoutError, ScanConnectionError,
                EOFError, OSError) as e:
            if server_mode.requires_encryption:
                raise ServerRequiresEncryptionError(
                    f"{target} requires encryption ({server_mode}) but the TLS handshake failed: {e}") from e
            raise


class MSSQLScanner(Scanner):
    """Performs a PRELOGIN handshake against Microsoft SQL Server"""

    protocol = "mssql"

    def __init__(self, flags: MSSQLFlags):
        try:
            self.encrypt_mode = EncryptMode.parse(flags.encrypt_mode)
        except ValueError as e:
            raise InvalidInputError(str(e)) from e
        if not MIN_PACKET_SIZE <= flags.packet_size <= MAX_PACKET_SIZE:
            raise InvalidInputError(f"packet size must be between {MIN_PACKET_SIZE} and {MAX_PACKET_SIZE}")
        super().__init__(flags)

    def make_dialer_group_config(self) -> DialerGroupConfig:
        return DialerGroupConfig(need_separate_l4_dialer=True, tls_enabled=True,
                                 base_flags=self.flags, tls_flags=self.flags.tls)

    async def scan(self, ctx: ScanContext, dialer_group: DialerGroup,
                   target: ScanTarget) -> ScanResponse:
        """
        1. Open a TCP connection to the target (default port 1433).
        2. Send a PRELOGIN packet and read the server's PRELOGIN response.
        3. Stop if either side cannot encrypt.
        4. Perform a TLS handshake with the records wrapped in TDS packets.
        5. Decode the version and instance name from the PRELOGIN response.
        """
        if dialer_group.l4_dialer is None:
            return ScanResponse(ScanStatus.INVALID_INPUT, None,
                                InvalidInputError("l4 dialer is required for mssql"))
        try:
            conn = await dialer_group.l4_dialer(ctx, target)
        except ScanError as e:
            return ScanResponse(try_get_scan_status(e), None, e)

        sql = MSSQLConnection(conn, self.flags.packet_size, self.flags.verbose)
        try:
            handshake_error = None
            try:
                await sql.handshake(ctx, target, self.encrypt_mode, dialer_group.tls_wrapper)
            except Exception as e:
                logger.debug(f"mssql handshake with {target} failed: {e}")
                handshake_error = e

            result = MSSQLScanResults(encrypt_mode=sql.encrypt_mode)
            if sql.tls_conn is not None:
                result.tls = sql.tls_conn.get_log()
            if sql.prelogin_options is not None:
                result.prelogin_options = sql.prelogin_options
                version = sql.prelogin_options.get_version()
                if version is not None:
                    result.version = str(version)
                result.instance_name = sql.prelogin_options.get_instance()
        finally:
            close_connection(conn, target)

        if handshake_error is None:
            return ScanResponse(ScanStatus.SUCCESS, result, None)

        if sql.prelogin_options is None and not sql.read_valid_tds_packet:
            # Nothing that looked like TDS came back: no MSSQL service here.
            # With a valid header but no options the result stays, empty.
            result = None
        return ScanResponse(try_get_scan_status(handshake_error), result, handshake_error)
