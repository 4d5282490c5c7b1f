#!/usr/bin/env python3
"""
NetProbe CLI - Command Line Interface
Runs one protocol module against a list of targets
"""

import asyncio
import logging
import sys
import time
from datetime import datetime
from typing import List

import click
from rich.console import Console
from rich.panel import Panel

from netprobe import __version__
from netprobe.core.status import InvalidInputError
from netprobe.core.target import ScanTarget, is_ip_literal
from netprobe.core.tls import TLS_VERSIONS, TLSFlags
from netprobe.scanners import SCANNERS, run_scan
from netprobe.utils.output import OutputFormatter, ScanRecord

console = Console()
logger = logging.getLogger(__name__)


def setup_logging(verbose: int):
    """Setup logging based on verbosity level"""
    if verbose == 0:
        level = logging.WARNING
    elif verbose == 1:
        level = logging.INFO
    else:
        level = logging.DEBUG

    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )


def parse_target(value: str, default_port: int) -> ScanTarget:
    """Parse HOST, HOST:PORT, IPv6 or [IPv6]:PORT"""
    host, port = value.strip(), default_port
    if host.startswith('['):
        end = host.find(']')
        if end < 0:
            raise InvalidInputError(f"unterminated IPv6 literal in {value!r}")
        rest = host[end + 1:]
        host = host[1:end]
        if rest.startswith(':'):
            port = _parse_port(rest[1:], value)
    elif host.count(':') == 1:
        host, port_str = host.split(':')
        port = _parse_port(port_str, value)

    if not host:
        raise InvalidInputError(f"missing host in {value!r}")
    return ScanTarget(host=host, port=port, ip=host if is_ip_literal(host) else None)


def _parse_port(port_str: str, value: str) -> int:
    try:
        return int(port_str)
    except ValueError:
        raise InvalidInputError(f"invalid port in {value!r}")


def build_flags(module: str, options: dict):
    """Create module flags from click parameters"""
    spec = SCANNERS[module]
    flags = spec.flags_cls(
        port=options.get('port'),
        timeout=options['timeout'],
        connect_timeout=options.get('connect_timeout'),
        source_address=options.get('source_address'),
        verbose=options.get('verbose', 0) > 0,
    )

    if module == "mssql":
        flags.encrypt_mode = options['encrypt_mode']
        flags.packet_size = options['packet_size']
        flags.tls = TLSFlags(
            verify=options['tls_verify'],
            server_name=options.get('server_name'),
            min_version=options.get('min_tls_version'),
            max_version=options.get('max_tls_version'),
            ca_file=options.get('ca_file'),
            ciphers=options.get('ciphers'),
        )
    elif module == "smb":
        flags.setup_session = options['setup_session']
    elif module == "telnet":
        flags.max_read_size = options['max_read_size']
        flags.force_banner = options['force_banner']
        flags.idle_timeout = options['idle_timeout']
    return flags


async def scan_targets(module: str, targets: List[ScanTarget], flags,
                       concurrency: int) -> List[ScanRecord]:
    """Scan every target, at most `concurrency` at a time"""
    semaphore = asyncio.Semaphore(concurrency)

    async def probe(target: ScanTarget) -> ScanRecord:
        async with semaphore:
            started = datetime.now()
            response = await run_scan(module, target, flags)
            logger.info(f"{module} {target}: {response.status.value}")
            return ScanRecord(module, target, response, started)

    return list(await asyncio.gather(*(probe(t) for t in targets)))


@click.command()
@click.argument('module', type=click.Choice(sorted(SCANNERS)))
@click.argument('targets', nargs=-1, required=True)
# Common options
@click.option('-p', '--port', type=int, help='Port to probe (default depends on module)')
@click.option('-t', '--timeout', type=float, default=10.0, show_default=True,
              help='Overall per-target deadline in seconds')
@click.option('--connect-timeout', type=float, help='Deadline for establishing the TCP connection')
@click.option('--source-address', help='Local address to bind outgoing connections to')
@click.option('-c', '--concurrency', type=int, default=10, show_default=True,
              help='Number of targets probed in parallel')
@click.option('-o', '--output', type=click.Path(dir_okay=False), help='Write results as JSON lines')
@click.option('--append-output', is_flag=True, help='Append to rather than clobber the output file')
@click.option('-v', '--verbose', count=True, help='Increase verbosity level')
@click.option('-q', '--quiet', is_flag=True, help='Do not print the banner and result table')
# MSSQL
@click.option('--encrypt-mode', default='ENCRYPT_ON', show_default=True,
              help='[mssql] ENCRYPT_OFF, ENCRYPT_ON, ENCRYPT_NOT_SUP or ENCRYPT_REQ')
@click.option('--packet-size', type=int, default=4096, show_default=True,
              help='[mssql] Maximum TDS packet size')
@click.option('--tls-verify', is_flag=True, help='[mssql] Verify the server certificate')
@click.option('--server-name', help='[mssql] SNI name sent in the TLS handshake')
@click.option('--min-tls-version', type=click.Choice(sorted(TLS_VERSIONS)), help='[mssql] Minimum TLS version')
@click.option('--max-tls-version', type=click.Choice(sorted(TLS_VERSIONS)), help='[mssql] Maximum TLS version')
@click.option('--ca-file', type=click.Path(exists=True, dir_okay=False), help='[mssql] CA bundle for --tls-verify')
@click.option('--ciphers', help='[mssql] OpenSSL cipher list')
# SMB
@click.option('--setup-session', is_flag=True, help='[smb] Continue into an NTLM session setup (no credentials)')
# Telnet
@click.option('--max-read-size', type=int, default=65536, show_default=True,
              help='[telnet] Maximum number of banner bytes to keep')
@click.option('--force-banner', is_flag=True, help='[telnet] Report the banner even if negotiation failed')
@click.option('--idle-timeout', type=float, default=1.0, show_default=True,
              help='[telnet] Stop reading after this many quiet seconds')
@click.version_option(__version__, prog_name='netprobe')
@click.pass_context
def main(ctx, module, targets, **options):
    """
    NetProbe - application-layer handshake probes

    Examples:
      netprobe mssql 10.0.0.5
      netprobe smb --setup-session 10.0.0.0:445 fileserver.local
      netprobe telnet -o banners.json 192.168.1.1:2323
    """
    setup_logging(options['verbose'])
    spec = SCANNERS[module]

    if options['concurrency'] < 1:
        raise click.BadParameter("must be at least 1", param_hint="--concurrency")

    try:
        default_port = options.get('port') or spec.default_port
        scan_list = [parse_target(t, default_port) for t in targets]
        flags = build_flags(module, options)
    except InvalidInputError as e:
        console.print(f"[bold red]Error:[/bold red] {e}")
        ctx.exit(2)

    if not options['quiet']:
        console.print(Panel(f"NetProbe {__version__} - {spec.description}", style="bold blue"))
        console.print(f"[bold]Starting {module} probe[/bold] at {datetime.now().strftime('%Y-%m-%d %H:%M:%S')}")
        console.print(f"Target(s): [cyan]{', '.join(str(t) for t in scan_list)}[/cyan]")
        console.print()

    start_time = time.time()
    try:
        records = asyncio.run(scan_targets(module, scan_list, flags, options['concurrency']))
    except KeyboardInterrupt:
        console.print("\n[bold red]Scan interrupted by user[/bold red]")
        sys.exit(1)
    except Exception as e:
        console.print(f"\n[bold red]Error:[/bold red] {str(e)}")
        logger.exception("Scan failed")
        sys.exit(1)

    formatter = OutputFormatter(records, verbose=flags.verbose)
    if not options['quiet']:
        formatter.display(console)
        console.print(f"Done: {len(records)} target(s) in {time.time() - start_time:.2f}s")

    if options.get('output'):
        formatter.save_json(options['output'], append=options['append_output'])
        if not options['quiet']:
            console.print(f"JSON output saved to: {options['output']}")


if __name__ == '__main__':
    main()
