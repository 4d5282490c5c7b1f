"""
TLS handshakes over arbitrary byte streams

The handshake is driven through ssl.MemoryBIO so the same code can run over
a plain TCP connection or over an adapter that frames every TLS record in
another protocol's packets.
"""

import base64
import hashlib
import logging
import ssl
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

from netprobe.core.context import ScanContext
from netprobe.core.status import InvalidInputError, ProtocolError, ScanConnectionError
from netprobe.core.stream import ByteStream

logger = logging.getLogger(__name__)

READ_CHUNK = 16384

TLS_VERSIONS = {
    "TLSv1": ssl.TLSVersion.TLSv1,
    "TLSv1.0": ssl.TLSVersion.TLSv1,
    "TLSv1.1": ssl.TLSVersion.TLSv1_1,
    "TLSv1.2": ssl.TLSVersion.TLSv1_2,
    "TLSv1.3": ssl.TLSVersion.TLSv1_3,
}


class TLSHandshakeError(ProtocolError):
    """TLS handshake failed; the partial handshake log is attached"""

    def __init__(self, message: str, log: Optional["TLSLog"] = None):
        super().__init__(message)
        self.log = log


@dataclass(frozen=True)
class TLSFlags:
    """TLS settings passed through to the dialer"""
    verify: bool = False
    server_name: Optional[str] = None
    min_version: Optional[str] = None
    max_version: Optional[str] = None
    ca_file: Optional[str] = None
    ciphers: Optional[str] = None

    def make_context(self) -> ssl.SSLContext:
        context = ssl.SSLContext(ssl.PROTOCOL_TLS_CLIENT)
        if self.verify:
            if self.ca_file:
                context.load_verify_locations(cafile=self.ca_file)
            else:
                context.load_default_certs()
            context.check_hostname = bool(self.server_name)
        else:
            # Scanners want to see whatever certificate the server has
            context.check_hostname = False
            context.verify_mode = ssl.CERT_NONE

        if self.min_version:
            context.minimum_version = _parse_version(self.min_version)
        if self.max_version:
            context.maximum_version = _parse_version(self.max_version)
        if self.ciphers:
            try:
                context.set_ciphers(self.ciphers)
            except ssl.SSLError as e:
                raise InvalidInputError(f"invalid cipher list {self.ciphers!r}") from e
        return context


def _parse_version(name: str) -> ssl.TLSVersion:
    try:
        return TLS_VERSIONS[name]
    except KeyError:
        raise InvalidInputError(f"unknown TLS version {name!r}") from None


@dataclass
class TLSLog:
    """What a TLS handshake revealed, complete or not"""
    server_name: Optional[str] = None
    handshake_complete: bool = False
    version: Optional[str] = None
    cipher_suite: Optional[str] = None
    cipher_bits: Optional[int] = None
    certificate_sha256: Optional[str] = None
    certificate_der: Optional[bytes] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {'handshake_complete': self.handshake_complete}
        if self.server_name is not None:
            out['server_name'] = self.server_name
        if self.version is not None:
            out['version'] = self.version
        if self.cipher_suite is not None:
            out['cipher_suite'] = self.cipher_suite
            out['cipher_bits'] = self.cipher_bits
        if self.certificate_der is not None:
            out['certificate'] = {
                'sha256': self.certificate_sha256,
                'raw': base64.b64encode(self.certificate_der).decode('ascii'),
            }
        if self.error is not None:
            out['error'] = self.error
        return out


class TLSConnection(ByteStream):
    """Client-side TLS over any ByteStream"""

    def __init__(self, stream: ByteStream, context: ssl.SSLContext,
                 server_name: Optional[str] = None):
        self.stream = stream
        self.server_name = server_name
        self._incoming = ssl.MemoryBIO()
        self._outgoing = ssl.MemoryBIO()
        self._sslobj = context.wrap_bio(self._incoming, self._outgoing,
                                        server_side=False,
                                        server_hostname=server_name)
        self._log = TLSLog(server_name=server_name)

    def get_log(self) -> TLSLog:
        return self._log

    async def handshake(self, ctx: ScanContext, transport: Optional[ByteStream] = None):
        """Run the handshake, optionally through a different transport.

        `transport` only carries the handshake; application data afterwards
        goes straight to `self.stream`.
        """
        io = transport or self.stream
        try:
            while True:
                try:
                    self._sslobj.do_handshake()
                    break
                except ssl.SSLWantReadError:
                    await self._flush(ctx, io)
                    data = await ctx.run(io.read(READ_CHUNK))
                    if not data:
                        raise ScanConnectionError("peer closed the connection during the TLS handshake")
                    self._incoming.write(data)
            # The client's last flight is still in the outgoing buffer
            await self._flush(ctx, io)
        except ssl.SSLError as e:
            self._fill_log(error=e)
            raise TLSHandshakeError(f"TLS handshake failed: {e}", self._log) from e
        except Exception as e:
            self._fill_log(error=e)
            raise

        self._fill_log()
        logger.debug(f"TLS handshake complete: {self._log.version} {self._log.cipher_suite}")

    def _fill_log(self, error: Optional[BaseException] = None):
        log = self._log
        log.handshake_complete = error is None
        if error is not None:
            log.error = str(error) or type(error).__name__
        log.version = self._sslobj.version()
        cipher: Optional[Tuple[str, str, int]] = self._sslobj.cipher()
        if cipher:
            log.cipher_suite, _, log.cipher_bits = cipher
        try:
            der = self._sslobj.getpeercert(binary_form=True)
        except ValueError:
            der = None
        if der:
            log.certificate_der = der
            log.certificate_sha256 = hashlib.sha256(der).hexdigest()

    async def _flush(self, ctx: ScanContext, io: ByteStream):
        data = self._outgoing.read()
        if data:
            await ctx.run(io.write(data))

    async def read(self, n: int) -> bytes:
        while True:
            try:
                return self._sslobj.read(n)
            except ssl.SSLWantReadError:
                data = await self.stream.read(READ_CHUNK)
                if not data:
                    self._incoming.write_eof()
                    return b""
                self._incoming.write(data)
            except ssl.SSLZeroReturnError:
                return b""

    async def write(self, data: bytes) -> None:
        self._sslobj.write(data)
        pending = self._outgoing.read()
        if pending:
            await self.stream.write(pending)

    def close(self) -> None:
        self.stream.close()
