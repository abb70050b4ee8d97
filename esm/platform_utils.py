"""
ESM Platform Utilities

Locates the local syslog daemon on Linux, macOS and Windows.
"""

import os
import platform


def get_syslog_address() -> str | tuple[str, int]:
    """
    Get the address of the local syslog daemon for the current platform.

    Logic:

    - If SYSLOG_ADDRESS is set: use it (``host:port`` for UDP, otherwise a socket path)
    - On macOS: use /var/run/syslog
    - On Linux: use /dev/log
    - On Windows: there is no local socket, fall back to UDP localhost:514

    Returns:
        Unix socket path, or (host, port) tuple for UDP syslog
    """
    override = os.getenv("SYSLOG_ADDRESS", "").strip()
    if override:
        host, sep, port = override.rpartition(":")
        if sep and port.isdigit():
            return (host, int(port))
        return override

    system = platform.system()

    if system == "Darwin":
        return "/var/run/syslog"
    elif system == "Windows":
        return ("localhost", 514)
    else:
        return "/dev/log"
