"""
Scan status classification
Maps raw errors to the outcome of a single probe
"""

import asyncio
import errno
import socket
import ssl
from enum import Enum
from typing import Optional


class ScanStatus(Enum):
    """Outcome of one scan against one target"""
    SUCCESS = "success"
    CONNECTION_FAILED = "connection-failed"
    TIMEOUT = "timeout"
    PROTOCOL_ERROR = "protocol-error"
    APPLICATION_ERROR = "application-error"
    INVALID_INPUT = "invalid-input"
    UNKNOWN_ERROR = "unknown-error"


class ScanError(Exception):
    """Base class for errors raised by the probe engine"""
    status = ScanStatus.UNKNOWN_ERROR


class ScanConnectionError(ScanError):
    status = ScanStatus.CONNECTION_FAILED


class ScanTimeoutError(ScanError):
    status = ScanStatus.TIMEOUT


class ProtocolError(ScanError):
    """Peer spoke, but not the way the protocol requires"""
    status = ScanStatus.PROTOCOL_ERROR


class ApplicationError(ScanError):
    """Negotiated outcome that is itself informative"""
    status = ScanStatus.APPLICATION_ERROR


class InvalidInputError(ScanError):
    status = ScanStatus.INVALID_INPUT


_UNREACHABLE_ERRNOS = {
    errno.ECONNREFUSED,
    errno.ECONNRESET,
    errno.ECONNABORTED,
    errno.EHOSTUNREACH,
    errno.ENETUNREACH,
    errno.EHOSTDOWN,
    errno.ENETDOWN,
    errno.EPIPE,
}


def _classify_one(err: BaseException) -> Optional[ScanStatus]:
    if isinstance(err, ScanError):
        return err.status
    if isinstance(err, (asyncio.TimeoutError, TimeoutError, socket.timeout)):
        return ScanStatus.TIMEOUT
    if isinstance(err, ssl.SSLError):
        return ScanStatus.PROTOCOL_ERROR
    if isinstance(err, (ConnectionError, asyncio.IncompleteReadError, socket.gaierror)):
        return ScanStatus.CONNECTION_FAILED
    if isinstance(err, OSError) and err.errno in _UNREACHABLE_ERRNOS:
        return ScanStatus.CONNECTION_FAILED
    return None


def try_get_scan_status(err: Optional[BaseException]) -> ScanStatus:
    """Classify an error, following the chain of wrapped causes.

    The outermost error that carries a recognizable meaning wins, so a
    ScanError raised ``from`` a socket error keeps its own status.
    """
    if err is None:
        return ScanStatus.SUCCESS

    seen = set()
    current = err
    while current is not None and id(current) not in seen:
        seen.add(id(current))
        status = _classify_one(current)
        if status is not None and status != ScanStatus.UNKNOWN_ERROR:
            return status
        current = current.__cause__ or current.__context__

    return ScanStatus.UNKNOWN_ERROR
