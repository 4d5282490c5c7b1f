"""
Transport dialer
Opens the TCP connection for a scan and optionally runs TLS on top of it
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Awaitable, Callable, Optional

from netprobe.core.context import ScanContext
from netprobe.core.status import (
    InvalidInputError,
    ScanConnectionError,
    ScanTimeoutError,
)
from netprobe.core.stream import ByteStream
from netprobe.core.target import ScanTarget, is_ip_literal
from netprobe.core.tls import TLSConnection, TLSFlags, TLSHandshakeError

if TYPE_CHECKING:
    from netprobe.core.scanner import BaseFlags

logger = logging.getLogger(__name__)

TRANSPORT_TCP = "tcp"


class Connection(ByteStream):
    """A dialed TCP connection owned by exactly one scan"""

    def __init__(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter,
                 target: Optional[ScanTarget] = None):
        self.reader = reader
        self.writer = writer
        self.target = target
        self.closed = False

    async def read(self, n: int) -> bytes:
        return await self.reader.read(n)

    async def read_exactly(self, n: int) -> bytes:
        return await self.reader.readexactly(n)

    async def write(self, data: bytes) -> None:
        self.writer.write(data)
        await self.writer.drain()

    def close(self) -> None:
        if self.closed:
            return
        self.closed = True
        self.writer.close()


def close_connection(conn: Optional[ByteStream], target: Optional[ScanTarget] = None):
    """Close a connection, logging instead of raising on failure"""
    if conn is None:
        return
    try:
        conn.close()
    except OSError as e:
        logger.error(f"error closing connection to target {target}: {e}")


TransportDialer = Callable[[ScanTarget, "BaseFlags"], Awaitable[ByteStream]]


async def tcp_dial(target: ScanTarget, base_flags: "BaseFlags") -> Connection:
    local_addr = None
    if base_flags is not None and base_flags.source_address:
        local_addr = (base_flags.source_address, 0)
    reader, writer = await asyncio.open_connection(target.address, target.port,
                                                   local_addr=local_addr)
    return Connection(reader, writer, target)


@dataclass(frozen=True)
class DialerGroupConfig:
    """How a scanner wants its connections made. Shared read-only."""
    transport: str = TRANSPORT_TCP
    need_separate_l4_dialer: bool = False
    tls_enabled: bool = False
    base_flags: Optional["BaseFlags"] = None
    tls_flags: TLSFlags = field(default_factory=TLSFlags)


class DialerGroup:
    """Dialers built from a DialerGroupConfig.

    `l4_dialer` is only set when the scanner asked for a separate transport
    dialer, `tls_wrapper` only when TLS is enabled.
    """

    def __init__(self, config: DialerGroupConfig,
                 transport_dialer: Optional[TransportDialer] = None):
        if config.transport != TRANSPORT_TCP:
            raise InvalidInputError(f"unsupported transport {config.transport!r}")
        self.config = config
        self.transport_dialer = transport_dialer or tcp_dial
        self.l4_dialer = self._transport_dial if config.need_separate_l4_dialer else None
        self.tls_wrapper = self._wrap_tls if config.tls_enabled else None
        self._tls_context = config.tls_flags.make_context() if config.tls_enabled else None

    async def dial(self, ctx: ScanContext, target: ScanTarget) -> ByteStream:
        """Dial the target and, if configured, complete a TLS handshake"""
        conn = await self._transport_dial(ctx, target)
        if not self.config.tls_enabled:
            return conn

        tls = self._wrap_tls(conn, target)
        try:
            try:
                await tls.handshake(ctx)
            except TLSHandshakeError as e:
                raise TLSHandshakeError(f"TLS handshake with {target} failed: {e}", e.log) from e
            except ScanTimeoutError as e:
                raise ScanTimeoutError(f"timed out in TLS handshake with {target}") from e
            except (ScanConnectionError, EOFError, OSError) as e:
                raise ScanConnectionError(f"connection to {target} lost during TLS handshake: {e}") from e
        except BaseException:
            close_connection(conn, target)
            raise
        return tls

    async def _transport_dial(self, ctx: ScanContext, target: ScanTarget) -> ByteStream:
        base_flags = self.config.base_flags
        connect_timeout = base_flags.connect_timeout if base_flags is not None else None
        logger.debug(f"dialing {target}")
        try:
            return await ctx.run(self.transport_dialer(target, base_flags),
                                 timeout=connect_timeout)
        except (ScanTimeoutError, TimeoutError) as e:
            raise ScanTimeoutError(f"timed out dialing {target}") from e
        except OSError as e:
            raise ScanConnectionError(f"error dialing {target}: {e}") from e

    def _wrap_tls(self, conn: ByteStream, target: ScanTarget) -> TLSConnection:
        server_name = self.config.tls_flags.server_name
        if server_name is None and target.host and not is_ip_literal(target.host):
            server_name = target.host
        return TLSConnection(conn, self._tls_context, server_name=server_name)
