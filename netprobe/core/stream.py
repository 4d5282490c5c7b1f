"""
Byte-stream contract shared by raw connections, TLS channels and adapters
"""

import asyncio


class ByteStream:
    """Minimal async read/write/close interface"""

    async def read(self, n: int) -> bytes:
        raise NotImplementedError

    async def write(self, data: bytes) -> None:
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError

    async def read_exactly(self, n: int) -> bytes:
        """Read exactly n bytes; raise IncompleteReadError on early EOF"""
        buf = bytearray()
        while len(buf) < n:
            chunk = await self.read(n - len(buf))
            if not chunk:
                raise asyncio.IncompleteReadError(bytes(buf), n)
            buf.extend(chunk)
        return bytes(buf)

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        self.close()
