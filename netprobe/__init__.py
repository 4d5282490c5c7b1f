"""
NetProbe - application-layer handshake probes for MSSQL, SMB and Telnet
"""

__version__ = "1.0.0"
