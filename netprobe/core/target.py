"""
Scan targets
"""

import ipaddress
import logging
from dataclasses import dataclass, replace
from typing import Optional

import dns.asyncresolver
import dns.exception

from netprobe.core.status import InvalidInputError, ScanConnectionError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ScanTarget:
    """A single host/port to probe"""
    host: str
    port: int
    ip: Optional[str] = None

    def __post_init__(self):
        if not self.host and not self.ip:
            raise InvalidInputError("target needs a host or an IP address")
        if not 0 <= self.port <= 0xFFFF:
            raise InvalidInputError(f"port out of range: {self.port}")

    @property
    def address(self) -> str:
        """Address to connect to: the pre-resolved IP if there is one"""
        return self.ip or self.host

    def __str__(self) -> str:
        host = self.host or self.ip
        if ':' in host:
            return f"[{host}]:{self.port}"
        return f"{host}:{self.port}"


def is_ip_literal(value: str) -> bool:
    try:
        ipaddress.ip_address(value)
        return True
    except ValueError:
        return False


async def resolve_target(target: ScanTarget, timeout: float = 2.0) -> ScanTarget:
    """Fill in target.ip for domain targets using the system resolver config"""
    if target.ip or is_ip_literal(target.host):
        return target

    resolver = dns.asyncresolver.Resolver()
    resolver.timeout = timeout
    resolver.lifetime = timeout

    last_error = None
    for rdtype in ("A", "AAAA"):
        try:
            answer = await resolver.resolve(target.host, rdtype)
        except dns.exception.DNSException as e:
            logger.debug(f"{rdtype} lookup failed for {target.host}: {e}")
            last_error = e
            continue
        for record in answer:
            return replace(target, ip=record.to_text())

    raise ScanConnectionError(f"could not resolve {target.host}") from last_error
