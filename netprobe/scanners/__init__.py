"""
Protocol scanners and their registry
"""

import logging
from typing import Dict, Optional

from netprobe.core.context import ScanContext
from netprobe.core.dialer import DialerGroup, TransportDialer
from netprobe.core.scanner import BaseFlags, ScanResponse, ScannerSpec
from netprobe.core.status import InvalidInputError, ScanError, try_get_scan_status
from netprobe.core.target import ScanTarget, resolve_target
from netprobe.scanners.mssql import MSSQLFlags, MSSQLScanner
from netprobe.scanners.smb import SMBFlags, SMBScanner
from netprobe.scanners.telnet import TelnetFlags, TelnetScanner

logger = logging.getLogger(__name__)

SCANNERS: Dict[str, ScannerSpec] = {
    "mssql": ScannerSpec("mssql", MSSQLFlags, MSSQLScanner, 1433,
                         "Microsoft SQL Server PRELOGIN and TLS handshake"),
    "smb": ScannerSpec("smb", SMBFlags, SMBScanner, 445,
                       "SMB2 negotiate and optional NTLM session setup"),
    "telnet": ScannerSpec("telnet", TelnetFlags, TelnetScanner, 23,
                          "Telnet banner and option negotiation"),
}


def get_spec(name: str) -> ScannerSpec:
    try:
        return SCANNERS[name]
    except KeyError:
        raise InvalidInputError(f"unknown module {name!r}, choose from {', '.join(sorted(SCANNERS))}")


async def run_scan(name: str, target: ScanTarget, flags: Optional[BaseFlags] = None,
                   transport_dialer: Optional[TransportDialer] = None) -> ScanResponse:
    """Scan one target with the named module under a fresh deadline"""
    spec = get_spec(name)
    flags = flags if flags is not None else spec.flags_cls()
    try:
        scanner = spec.scanner_cls(flags)
        dialer_group = DialerGroup(scanner.dialer_group_config, transport_dialer)
    except InvalidInputError as e:
        return ScanResponse(e.status, None, e)

    ctx = ScanContext(flags.timeout)
    if target.ip is None:
        try:
            target = await ctx.run(resolve_target(target, flags.connect_timeout or flags.timeout))
        except ScanError as e:
            return ScanResponse(try_get_scan_status(e), None, e)

    logger.debug(f"running {scanner.name} against {target}")
    return await scanner.scan(ctx, dialer_group, target)
