"""
Shared helpers for the NetProbe tests
"""

import asyncio
import os
import ssl
from contextlib import asynccontextmanager

import pytest

from netprobe.core.stream import ByteStream
from netprobe.core.target import ScanTarget


TESTDATA = os.path.join(os.path.dirname(os.path.abspath(__file__)), "testdata")
CERT_FILE = os.path.join(TESTDATA, "localhost-cert.pem")
KEY_FILE = os.path.join(TESTDATA, "localhost-key.pem")


def server_tls_context() -> ssl.SSLContext:
    """Server side context using the self-signed localhost certificate"""
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.load_cert_chain(CERT_FILE, KEY_FILE)
    return context


@asynccontextmanager
async def loopback_server(handler, ssl_context=None):
    """Serve `handler(reader, writer)` on 127.0.0.1 and yield the target"""
    async def wrapped(reader, writer):
        try:
            await handler(reader, writer)
        except (ConnectionError, asyncio.IncompleteReadError):
            pass
        finally:
            writer.close()

    server = await asyncio.start_server(wrapped, "127.0.0.1", 0, ssl=ssl_context)
    port = server.sockets[0].getsockname()[1]
    async with server:
        yield ScanTarget("127.0.0.1", port, ip="127.0.0.1")


class MemoryStream(ByteStream):
    """In-memory ByteStream: reads come from `incoming`, writes are recorded"""

    def __init__(self, incoming: bytes = b"", chunk: int = 0):
        self.incoming = bytearray(incoming)
        self.chunk = chunk
        self.written = bytearray()
        self.closed = False

    async def read(self, n: int) -> bytes:
        if self.chunk:
            n = min(n, self.chunk)
        data = bytes(self.incoming[:n])
        del self.incoming[:n]
        return data

    async def write(self, data: bytes) -> None:
        self.written.extend(data)

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def serve():
    return loopback_server
