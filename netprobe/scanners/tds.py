"""
TDS (Tabular Data Stream) framing and the PRELOGIN option codec

Every TDS packet starts with an 8 byte header:

    type(1) status(1) length(2, big-endian, includes header)
    spid(2) packet_number(1) window(1)

A logical message may span several packets; the last one has the
end-of-message status bit set.
"""

import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Callable, Dict, List, Optional, Tuple

from netprobe.core.status import ProtocolError
from netprobe.core.stream import ByteStream

TDS_HEADER_SIZE = 8
DEFAULT_PACKET_SIZE = 4096
MIN_PACKET_SIZE = 512
MAX_PACKET_SIZE = 32768
MAX_MESSAGE_SIZE = 1 << 20

STATUS_NORMAL = 0x00
STATUS_EOM = 0x01
STATUS_IGNORE = 0x02
STATUS_RESET_CONNECTION = 0x08
STATUS_RESET_CONNECTION_SKIP_TRAN = 0x10
_KNOWN_STATUS_BITS = (STATUS_EOM | STATUS_IGNORE | STATUS_RESET_CONNECTION
                      | STATUS_RESET_CONNECTION_SKIP_TRAN)

_HEADER = struct.Struct(">BBHHBB")
_TOC_ENTRY = struct.Struct(">BHH")


class TDSError(ProtocolError):
    """Malformed TDS data"""


class InvalidTDSHeaderError(TDSError):
    """Bytes that cannot be a TDS packet header: the peer is not speaking TDS"""


class PreloginDecodeError(TDSError):
    """PRELOGIN payload is inconsistent with itself"""


class TDSPacketType(IntEnum):
    SQL_BATCH = 0x01
    PRE_TDS7_LOGIN = 0x02
    RPC = 0x03
    TABULAR_RESULT = 0x04
    ATTENTION = 0x06
    BULK_LOAD = 0x07
    FEDERATED_AUTH_TOKEN = 0x08
    TRANSACTION_MANAGER = 0x0E
    TDS7_LOGIN = 0x10
    SSPI = 0x11
    PRELOGIN = 0x12


_PACKET_TYPES = {t.value for t in TDSPacketType}


@dataclass
class TDSHeader:
    type: int
    status: int
    length: int
    spid: int = 0
    packet_number: int = 0
    window: int = 0

    @property
    def end_of_message(self) -> bool:
        return bool(self.status & STATUS_EOM)

    @property
    def payload_length(self) -> int:
        return self.length - TDS_HEADER_SIZE

    def encode(self) -> bytes:
        return _HEADER.pack(self.type, self.status, self.length, self.spid,
                            self.packet_number, self.window)

    @classmethod
    def decode(cls, data: bytes) -> "TDSHeader":
        """Parse and sanity-check a header"""
        if len(data) < TDS_HEADER_SIZE:
            raise InvalidTDSHeaderError(f"short TDS header: {len(data)} bytes")
        header = cls(*_HEADER.unpack_from(data))
        if header.type not in _PACKET_TYPES:
            raise InvalidTDSHeaderError(f"unknown TDS packet type 0x{header.type:02x}")
        if header.status & ~_KNOWN_STATUS_BITS:
            raise InvalidTDSHeaderError(f"invalid TDS status 0x{header.status:02x}")
        if not TDS_HEADER_SIZE <= header.length <= MAX_PACKET_SIZE:
            raise InvalidTDSHeaderError(f"invalid TDS packet length {header.length}")
        return header


def encode_packets(packet_type: int, payload: bytes,
                   packet_size: int = DEFAULT_PACKET_SIZE, spid: int = 0) -> List[bytes]:
    """Split one message into TDS packets of at most packet_size bytes"""
    if packet_size <= TDS_HEADER_SIZE:
        raise ValueError(f"packet size too small: {packet_size}")
    chunk_size = packet_size - TDS_HEADER_SIZE
    chunks = [payload[i:i + chunk_size] for i in range(0, len(payload), chunk_size)] or [b""]

    packets = []
    for i, chunk in enumerate(chunks):
        status = STATUS_EOM if i == len(chunks) - 1 else STATUS_NORMAL
        header = TDSHeader(type=packet_type, status=status,
                           length=TDS_HEADER_SIZE + len(chunk), spid=spid,
                           packet_number=(i + 1) % 256)
        packets.append(header.encode() + chunk)
    return packets


HeaderCallback = Callable[[TDSHeader], None]


async def read_packet(stream: ByteStream,
                      on_header: Optional[HeaderCallback] = None) -> Tuple[TDSHeader, bytes]:
    """Read one packet. `on_header` sees every header that passed validation."""
    header = TDSHeader.decode(await stream.read_exactly(TDS_HEADER_SIZE))
    if on_header is not None:
        on_header(header)
    payload = await stream.read_exactly(header.payload_length) if header.payload_length else b""
    return header, payload


async def read_message(stream: ByteStream,
                       on_header: Optional[HeaderCallback] = None,
                       expected_type: Optional[int] = None) -> Tuple[TDSHeader, bytes]:
    """Read packets until end-of-message and return the first header plus
    the concatenated payloads"""
    first, payload = await read_packet(stream, on_header)
    if expected_type is not None and first.type != expected_type:
        raise InvalidTDSHeaderError(
            f"expected TDS packet type 0x{expected_type:02x}, got 0x{first.type:02x}")

    message = bytearray(payload)
    header = first
    while not header.end_of_message:
        header, payload = await read_packet(stream, on_header)
        if header.type != first.type:
            raise TDSError(f"packet type changed mid-message: 0x{first.type:02x} -> 0x{header.type:02x}")
        message.extend(payload)
        if len(message) > MAX_MESSAGE_SIZE:
            raise TDSError(f"TDS message exceeds {MAX_MESSAGE_SIZE} bytes")
    return first, bytes(message)


class TDSHandshakeAdapter(ByteStream):
    """Byte stream that frames writes in TDS PRELOGIN packets and strips TDS
    headers from reads. Only used while a TLS handshake is in progress."""

    def __init__(self, stream: ByteStream, packet_size: int = DEFAULT_PACKET_SIZE,
                 on_header: Optional[HeaderCallback] = None):
        self.stream = stream
        self.packet_size = packet_size
        self.on_header = on_header
        self._pending = bytearray()

    async def write(self, data: bytes) -> None:
        packets = encode_packets(TDSPacketType.PRELOGIN, data, self.packet_size)
        await self.stream.write(b"".join(packets))

    async def read(self, n: int) -> bytes:
        while not self._pending:
            try:
                _, payload = await read_packet(self.stream, self.on_header)
            except EOFError:
                return b""
            self._pending.extend(payload)
        data = bytes(self._pending[:n])
        del self._pending[:n]
        return data

    def close(self) -> None:
        self.stream.close()


class PreloginToken(IntEnum):
    VERSION = 0x00
    ENCRYPTION = 0x01
    INSTANCE = 0x02
    THREADID = 0x03
    MARS = 0x04
    TRACEID = 0x05
    FEDAUTHREQUIRED = 0x06
    NONCEOPT = 0x07
    TERMINATOR = 0xFF


def _token(value: int):
    try:
        return PreloginToken(value)
    except ValueError:
        return value


class EncryptMode(IntEnum):
    """ENCRYPTION option values; both what the client asks for and what the
    server answers"""
    OFF = 0x00
    ON = 0x01
    NOT_SUPPORTED = 0x02
    REQUIRED = 0x03
    CLIENT_FORCED = 0x80
    UNKNOWN = 0xFF

    @classmethod
    def from_byte(cls, value: int) -> "EncryptMode":
        if value in (0x00, 0x01, 0x02, 0x03):
            return cls(value)
        if value & 0x80:
            # Client certificate authentication bit
            return cls.CLIENT_FORCED
        return cls.UNKNOWN

    @classmethod
    def parse(cls, name: str) -> "EncryptMode":
        """Parse a requested mode, accepting short and ENCRYPT_* spellings"""
        try:
            return _ENCRYPT_MODE_NAMES[name.strip().upper()]
        except KeyError:
            raise ValueError(f"unknown encrypt mode {name!r}") from None

    @property
    def requires_encryption(self) -> bool:
        return self in (EncryptMode.REQUIRED, EncryptMode.CLIENT_FORCED)

    def __str__(self) -> str:
        return _ENCRYPT_MODE_LABELS[self]


_ENCRYPT_MODE_NAMES = {
    "ON": EncryptMode.ON,
    "OFF": EncryptMode.OFF,
    "NOT_SUPPORTED": EncryptMode.NOT_SUPPORTED,
    "REQUIRED": EncryptMode.REQUIRED,
    "ENCRYPT_ON": EncryptMode.ON,
    "ENCRYPT_OFF": EncryptMode.OFF,
    "ENCRYPT_NOT_SUP": EncryptMode.NOT_SUPPORTED,
    "ENCRYPT_REQ": EncryptMode.REQUIRED,
}

_ENCRYPT_MODE_LABELS = {
    EncryptMode.OFF: "ENCRYPT_OFF",
    EncryptMode.ON: "ENCRYPT_ON",
    EncryptMode.NOT_SUPPORTED: "ENCRYPT_NOT_SUP",
    EncryptMode.REQUIRED: "ENCRYPT_REQ",
    EncryptMode.CLIENT_FORCED: "ENCRYPT_CLIENT_CERT",
    EncryptMode.UNKNOWN: "UNKNOWN",
}


@dataclass(frozen=True)
class ServerVersion:
    major: int
    minor: int
    build_number: int
    sub_build: int = 0

    @classmethod
    def decode(cls, data: bytes) -> Optional["ServerVersion"]:
        if len(data) != 6:
            return None
        major, minor, build, sub_build = struct.unpack(">BBHH", data)
        return cls(major, minor, build, sub_build)

    def encode(self) -> bytes:
        return struct.pack(">BBHH", self.major, self.minor, self.build_number, self.sub_build)

    def __str__(self) -> str:
        return f"{self.major}.{self.minor}.{self.build_number}.{self.sub_build}"


class PreloginOptions(Dict[int, bytes]):
    """Ordered token -> raw value mapping of a PRELOGIN message"""

    def encode(self) -> bytes:
        """Table of contents followed by the data segment, offsets assigned
        in insertion order"""
        toc = bytearray()
        data = bytearray()
        offset = len(self) * _TOC_ENTRY.size + 1
        for token, value in self.items():
            if len(value) > 0xFFFF or offset + len(data) > 0xFFFF:
                raise ValueError("PRELOGIN option too large")
            toc += _TOC_ENTRY.pack(int(token), offset + len(data), len(value))
            data += value
        toc.append(PreloginToken.TERMINATOR)
        return bytes(toc + data)

    @classmethod
    def decode(cls, payload: bytes) -> "PreloginOptions":
        options = cls()
        pos = 0
        while True:
            if pos >= len(payload):
                raise PreloginDecodeError("PRELOGIN option table has no terminator")
            token = payload[pos]
            if token == PreloginToken.TERMINATOR:
                break
            if pos + _TOC_ENTRY.size > len(payload):
                raise PreloginDecodeError(f"truncated PRELOGIN option entry at offset {pos}")
            _, offset, length = _TOC_ENTRY.unpack_from(payload, pos)
            if offset + length > len(payload):
                raise PreloginDecodeError(
                    f"PRELOGIN option 0x{token:02x} [{offset}:{offset + length}] "
                    f"outside {len(payload)} byte payload")
            key = _token(token)
            if key in options:
                raise PreloginDecodeError(f"duplicate PRELOGIN option 0x{token:02x}")
            options[key] = bytes(payload[offset:offset + length])
            pos += _TOC_ENTRY.size
        return options

    def get_version(self) -> Optional[ServerVersion]:
        data = self.get(PreloginToken.VERSION)
        return ServerVersion.decode(data) if data is not None else None

    def get_encrypt_mode(self) -> Optional[EncryptMode]:
        data = self.get(PreloginToken.ENCRYPTION)
        if not data:
            return None
        return EncryptMode.from_byte(data[0])

    def get_instance(self) -> Optional[str]:
        """Instance name with its NUL terminator stripped; None when the
        server sent no INSTANCE option"""
        data = self.get(PreloginToken.INSTANCE)
        if data is None:
            return None
        return data.decode("latin-1").strip("\x00\r\n")

    def to_dict(self) -> Dict[str, str]:
        out = {}
        for token, value in self.items():
            name = token.name if isinstance(token, PreloginToken) else f"0x{token:02x}"
            out[name] = value.hex()
        return out


def client_prelogin(encrypt_mode: EncryptMode) -> PreloginOptions:
    """The PRELOGIN options this client sends"""
    options = PreloginOptions()
    options[PreloginToken.VERSION] = bytes(6)
    options[PreloginToken.ENCRYPTION] = bytes([int(encrypt_mode)])
    options[PreloginToken.INSTANCE] = b"\x00"
    options[PreloginToken.THREADID] = bytes(4)
    options[PreloginToken.MARS] = b"\x00"
    return options
