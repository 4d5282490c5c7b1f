"""
Telnet Scanner
Default port: 23 (TCP)

Reads the banner while refusing every option the server proposes:
DO x is answered with WONT x, WILL x with DONT x. DONT and WONT need no
answer since every option is already off on our side. `max_read_size`
caps the number of banner bytes kept.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from netprobe.core.context import ScanContext
from netprobe.core.dialer import DialerGroup, close_connection
from netprobe.core.scanner import BaseFlags, ScanResponse, Scanner, log_level
from netprobe.core.status import (
    ProtocolError,
    ScanConnectionError,
    ScanError,
    ScanStatus,
    ScanTimeoutError,
    try_get_scan_status,
)
from netprobe.core.stream import ByteStream
from netprobe.core.target import ScanTarget

logger = logging.getLogger(__name__)

IAC = 0xFF
DONT = 0xFE
DO = 0xFD
WONT = 0xFC
WILL = 0xFB
SB = 0xFA
SE = 0xF0

COMMAND_NAMES = {WILL: "WILL", WONT: "WONT", DO: "DO", DONT: "DONT"}

OPTION_NAMES = {
    0: "BINARY",
    1: "ECHO",
    2: "RECONNECTION",
    3: "SUPPRESS_GO_AHEAD",
    5: "STATUS",
    6: "TIMING_MARK",
    18: "LOGOUT",
    24: "TERMINAL_TYPE",
    25: "END_OF_RECORD",
    31: "NAWS",
    32: "TERMINAL_SPEED",
    33: "TOGGLE_FLOW_CONTROL",
    34: "LINEMODE",
    35: "X_DISPLAY_LOCATION",
    36: "ENVIRON",
    37: "AUTHENTICATION",
    38: "ENCRYPT",
    39: "NEW_ENVIRON",
    255: "EXTENDED_OPTIONS_LIST",
}

READ_CHUNK = 4096
DEFAULT_MAX_READ_SIZE = 65536


class TelnetProtocolError(ProtocolError):
    """Stream ended in the middle of a control sequence"""


class _State(Enum):
    DATA = 0
    IAC = 1
    COMMAND = 2
    SUBNEGOTIATION = 3
    SUBNEGOTIATION_IAC = 4


@dataclass(frozen=True)
class TelnetOption:
    code: int
    command: str
    outcome: str

    @property
    def name(self) -> str:
        return OPTION_NAMES.get(self.code, f"UNKNOWN_{self.code}")

    def to_dict(self) -> Dict[str, Any]:
        return {'name': self.name, 'value': self.code,
                'command': self.command, 'outcome': self.outcome}


@dataclass
class TelnetLog:
    """Banner plus every option the server negotiated"""
    banner: str = ""
    options: List[TelnetOption] = field(default_factory=list)

    def _by_command(self, command: str) -> List[TelnetOption]:
        return [o for o in self.options if o.command == command]

    @property
    def will(self) -> List[TelnetOption]:
        return self._by_command("WILL")

    @property
    def wont(self) -> List[TelnetOption]:
        return self._by_command("WONT")

    @property
    def do(self) -> List[TelnetOption]:
        return self._by_command("DO")

    @property
    def dont(self) -> List[TelnetOption]:
        return self._by_command("DONT")

    def get_result(self) -> Optional["TelnetLog"]:
        """The log, or None if no option was negotiated"""
        if not self.options:
            return None
        return self

    def to_dict(self, verbose: bool = False) -> Dict[str, Any]:
        out: Dict[str, Any] = {}
        if self.banner:
            out['banner'] = self.banner
        for command in ("will", "wont", "do", "dont"):
            entries = getattr(self, command)
            if entries:
                out[command] = [{'name': o.name, 'value': o.code} for o in entries]
        if verbose and self.options:
            out['options'] = [o.to_dict() for o in self.options]
        return out


class TelnetNegotiator:
    """Byte-level state machine separating banner text from IAC sequences"""

    def __init__(self, log: TelnetLog, max_read_size: int):
        self.log = log
        self.max_read_size = max_read_size
        self.banner = bytearray()
        self.state = _State.DATA
        self.command = 0

    @property
    def full(self) -> bool:
        return len(self.banner) >= self.max_read_size

    @property
    def in_sequence(self) -> bool:
        return self.state != _State.DATA

    def feed(self, data: bytes) -> bytes:
        """Consume bytes and return the replies to send back"""
        replies = bytearray()
        for byte in data:
            if self.full and self.state == _State.DATA and byte != IAC:
                break
            if self.state == _State.DATA:
                if byte == IAC:
                    self.state = _State.IAC
                else:
                    self._add_banner(byte)
            elif self.state == _State.IAC:
                if byte == IAC:
                    # Escaped 0xFF data byte
                    self._add_banner(IAC)
                    self.state = _State.DATA
                elif byte in COMMAND_NAMES:
                    self.command = byte
                    self.state = _State.COMMAND
                elif byte == SB:
                    self.state = _State.SUBNEGOTIATION
                else:
                    # NOP, GA, AYT and friends carry no option byte
                    self.state = _State.DATA
            elif self.state == _State.COMMAND:
                replies += self._negotiate(self.command, byte)
                self.state = _State.DATA
            elif self.state == _State.SUBNEGOTIATION:
                if byte == IAC:
                    self.state = _State.SUBNEGOTIATION_IAC
            elif self.state == _State.SUBNEGOTIATION_IAC:
                self.state = _State.DATA if byte == SE else _State.SUBNEGOTIATION
        return bytes(replies)

    def _add_banner(self, byte: int):
        if not self.full:
            self.banner.append(byte)

    def _negotiate(self, command: int, option: int) -> bytes:
        name = COMMAND_NAMES[command]
        if command == DO:
            reply, outcome = bytes([IAC, WONT, option]), "refused"
        elif command == WILL:
            reply, outcome = bytes([IAC, DONT, option]), "refused"
        else:
            reply, outcome = b"", "accepted"
        self.log.options.append(TelnetOption(code=option, command=name, outcome=outcome))
        return reply


async def read_banner(ctx: ScanContext, conn: ByteStream, max_read_size: int,
                      log: Optional[TelnetLog] = None, idle_timeout: Optional[float] = 1.0,
                      verbose: bool = False) -> TelnetLog:
    """Read the banner, answering option negotiation on the same connection.

    Stops once `max_read_size` banner bytes were collected, at EOF, or when
    the server stays quiet for `idle_timeout` after saying something. Before
    the first byte only the scan deadline applies. `log` is filled in place
    so a caller keeps partial data when this raises.
    """
    log = log if log is not None else TelnetLog()
    negotiator = TelnetNegotiator(log, max_read_size)
    try:
        while not negotiator.full:
            seen = bool(negotiator.banner or log.options)
            try:
                data = await ctx.run(conn.read(READ_CHUNK),
                                     timeout=idle_timeout if seen else None)
            except ScanTimeoutError:
                if ctx.expired or not seen:
                    raise
                if negotiator.in_sequence:
                    raise TelnetProtocolError("server went quiet inside a control sequence")
                break
            if not data:
                if negotiator.in_sequence:
                    raise TelnetProtocolError("connection closed inside a control sequence")
                break

            replies = negotiator.feed(data)
            if replies:
                logger.log(log_level(verbose), f"telnet replies: {replies.hex()}")
                await ctx.run(conn.write(replies))
    except (EOFError, OSError) as e:
        raise ScanConnectionError(f"telnet read failed: {e}") from e
    finally:
        log.banner = negotiator.banner.decode("latin-1")
    return log


@dataclass
class TelnetFlags(BaseFlags):
    """Telnet module options"""
    max_read_size: int = DEFAULT_MAX_READ_SIZE
    force_banner: bool = False
    idle_timeout: float = 1.0


class TelnetScanner(Scanner):
    """Fetches a telnet banner"""

    protocol = "telnet"

    async def scan(self, ctx: ScanContext, dialer_group: DialerGroup,
                   target: ScanTarget) -> ScanResponse:
        try:
            conn = await dialer_group.dial(ctx, target)
        except ScanError as e:
            return ScanResponse(try_get_scan_status(e), None, e)

        result = TelnetLog()
        try:
            await read_banner(ctx, conn, self.flags.max_read_size, result,
                              idle_timeout=self.flags.idle_timeout, verbose=self.flags.verbose)
        except Exception as e:
            logger.debug(f"telnet banner grab from {target} failed: {e}")
            if self.flags.force_banner and result.banner:
                return ScanResponse(try_get_scan_status(e), result, e)
            return ScanResponse(try_get_scan_status(e), result.get_result(), e)
        finally:
            close_connection(conn, target)
        return ScanResponse(ScanStatus.SUCCESS, result, None)
