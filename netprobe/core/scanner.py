"""
NetProbe Core Scanner Abstractions
Flags, the per-protocol Scanner base class and its registry entry type
"""

import logging
from dataclasses import dataclass
from typing import Any, NamedTuple, Optional, Type

from netprobe.core.context import ScanContext
from netprobe.core.dialer import DialerGroup, DialerGroupConfig
from netprobe.core.status import ScanStatus
from netprobe.core.target import ScanTarget


@dataclass
class BaseFlags:
    """Options every scanner understands"""
    port: Optional[int] = None
    name: Optional[str] = None
    timeout: float = 10.0
    connect_timeout: Optional[float] = None
    source_address: Optional[str] = None
    verbose: bool = False


class ScanResponse(NamedTuple):
    """Result triple of a single scan"""
    status: ScanStatus
    result: Optional[Any]
    error: Optional[BaseException]


def log_level(verbose: bool) -> int:
    """Level used for handshake tracing; verbose scans trace at INFO"""
    return logging.INFO if verbose else logging.DEBUG


class Scanner:
    """One protocol's probe. Instances hold only read-only configuration
    and may run many scans concurrently."""

    protocol = ""

    def __init__(self, flags: BaseFlags):
        self.flags = flags
        self.dialer_group_config = self.make_dialer_group_config()

    def make_dialer_group_config(self) -> DialerGroupConfig:
        return DialerGroupConfig(base_flags=self.flags)

    @property
    def name(self) -> str:
        return self.flags.name or self.protocol

    async def scan(self, ctx: ScanContext, dialer_group: DialerGroup,
                   target: ScanTarget) -> ScanResponse:
        raise NotImplementedError


@dataclass(frozen=True)
class ScannerSpec:
    """Static registry entry for one protocol"""
    name: str
    flags_cls: Type[BaseFlags]
    scanner_cls: Type[Scanner]
    default_port: int
    description: str
