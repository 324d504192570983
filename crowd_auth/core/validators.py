"""Input validation helpers for login requests."""
from __future__ import annotations
import ipaddress

from .models import Credentials


def require_credentials(username: str | None, password: str | None) -> Credentials:
    """Build Credentials, refusing empty values.

    The username is passed through untouched: the directory compares it
    byte-for-byte with the name it echoes back.

    Args:
        username: Submitted username
        password: Submitted password

    Returns:
        Credentials

    Raises:
        ValueError: If either value is missing or blank
    """
    if not username or not username.strip():
        raise ValueError("Username is required")
    if not password:
        raise ValueError("Password is required")
    if len(username) > 255:
        raise ValueError("Username exceeds maximum length")
    return Credentials(username=username, password=password)


def validate_source_ip(source_ip: str | None) -> str:
    """Validate the remote address used as a session validation factor.

    Args:
        source_ip: IPv4 or IPv6 address

    Returns:
        Normalized address string

    Raises:
        ValueError: If the address is missing or not an IP address
    """
    if not source_ip or not source_ip.strip():
        raise ValueError("Source IP is required")
    try:
        return str(ipaddress.ip_address(source_ip.strip()))
    except ValueError:
        raise ValueError(f"Invalid source IP '{source_ip}'") from None
