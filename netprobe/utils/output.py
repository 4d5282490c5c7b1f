"""
Output formatting utilities for NetProbe
Supports JSON lines files and rich console tables
"""

import json
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, List, Optional

from rich.console import Console
from rich.table import Table

from netprobe import __version__
from netprobe.core.scanner import ScanResponse
from netprobe.core.status import ScanStatus
from netprobe.core.target import ScanTarget


@dataclass
class ScanRecord:
    """One target's outcome, ready for output"""
    module: str
    target: ScanTarget
    response: ScanResponse
    timestamp: datetime

    def to_dict(self, verbose: bool = False) -> Dict[str, Any]:
        status, result, error = self.response
        out: Dict[str, Any] = {
            'ip': self.target.ip,
            'domain': None if self.target.host == self.target.ip else self.target.host,
            'port': self.target.port,
            'module': self.module,
            'status': status.value,
            'timestamp': self.timestamp.isoformat(),
        }
        if result is not None:
            out['result'] = result.to_dict(verbose=verbose)
        if error is not None:
            out['error'] = str(error)
        return out


def summarize(record: ScanRecord) -> str:
    """Short human-readable description of a result"""
    result = record.response.result
    if result is None:
        return ""
    if record.module == "mssql":
        parts = [f"version {result.version}" if result.version else "no version"]
        if result.instance_name:
            parts.append(f"instance {result.instance_name}")
        if result.encrypt_mode is not None:
            parts.append(str(result.encrypt_mode))
        if result.tls is not None and result.tls.handshake_complete:
            parts.append(f"{result.tls.version} {result.tls.cipher_suite}")
        return ", ".join(parts)
    if record.module == "smb":
        if result.smbv1_support:
            return "SMBv1"
        parts = [result.version.version_string] if result.version else []
        if result.negotiation_log is not None and result.negotiation_log.signing_required:
            parts.append("signing required")
        if result.group_name:
            parts.append(f"domain {result.group_name}")
        if result.retried:
            parts.append("retried")
        return ", ".join(parts)
    if record.module == "telnet":
        banner = " ".join(result.banner.split())
        return banner[:60] + ("..." if len(banner) > 60 else "")
    return ""


class OutputFormatter:
    """Format scan records as JSON or console tables"""

    def __init__(self, records: List[ScanRecord], verbose: bool = False):
        self.records = records
        self.verbose = verbose
        self.version = __version__

    def to_json_lines(self) -> List[str]:
        return [json.dumps(record.to_dict(self.verbose), sort_keys=True) for record in self.records]

    def save_json(self, filename: str, append: bool = False):
        """Save one JSON object per line"""
        with open(filename, 'a' if append else 'w') as f:
            for line in self.to_json_lines():
                f.write(line + "\n")

    def build_table(self, title: Optional[str] = None) -> Table:
        table = Table(title=title or f"NetProbe {self.version}")
        table.add_column("Target", style="cyan", no_wrap=True)
        table.add_column("Module", style="blue")
        table.add_column("Status")
        table.add_column("Details", style="magenta")
        table.add_column("Error", style="dim")

        for record in self.records:
            status = record.response.status
            style = "green" if status == ScanStatus.SUCCESS else "yellow" if record.response.result is not None else "red"
            table.add_row(
                str(record.target),
                record.module,
                f"[{style}]{status.value}[/{style}]",
                summarize(record),
                str(record.response.error or ""),
            )
        return table

    def display(self, console: Console):
        console.print(self.build_table())
