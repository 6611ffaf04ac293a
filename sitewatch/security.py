"""Outbound URL safety checks for SiteWatch alert delivery."""

import ipaddress
import logging
import socket
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

# Ports of common internal services that a webhook should never target
BLOCKED_PORTS = frozenset(
    {
        22,  # SSH
        23,  # Telnet
        25,  # SMTP
        3306,  # MySQL
        5432,  # PostgreSQL
        6379,  # Redis
        27017,  # MongoDB
        9200,  # Elasticsearch
        9300,  # Elasticsearch
    }
)

LOCALHOST_NAMES = frozenset(
    {
        "localhost",
        "127.0.0.1",
        "::1",
        "0.0.0.0",
        "localhost.localdomain",
        "ip6-localhost",
        "ip6-loopback",
    }
)


class UnsafeUrlError(Exception):
    """Raised when an outbound URL fails validation."""

    pass


def _check_address(ip: str, hostname: str) -> None:
    ip_obj = ipaddress.ip_address(ip)
    if ip_obj.is_private or ip_obj.is_loopback or ip_obj.is_link_local:
        raise UnsafeUrlError(f"Private IP address not allowed: {ip} (resolved from {hostname})")
    if ip_obj.is_multicast or ip_obj.is_reserved:
        raise UnsafeUrlError(f"Reserved IP address not allowed: {ip}")


def validate_webhook_url(url: str, allow_private: bool = False) -> None:
    """Validate a webhook URL before posting an alert to it.

    Args:
        url: The URL to validate.
        allow_private: Skip address resolution and private-range checks.

    Raises:
        UnsafeUrlError: If the URL is malformed or targets a forbidden address.
    """
    try:
        parsed = urlparse(url)
        port = parsed.port or (443 if parsed.scheme == "https" else 80)
    except ValueError as e:
        raise UnsafeUrlError(f"Invalid URL: {e}")

    if parsed.scheme not in ("http", "https"):
        raise UnsafeUrlError(f"Scheme '{parsed.scheme}' not allowed. Only http:// and https:// are permitted.")

    if port in BLOCKED_PORTS:
        raise UnsafeUrlError(f"Port {port} is blocked for security reasons")

    hostname = parsed.hostname
    if not hostname:
        raise UnsafeUrlError("No hostname in URL")

    if hostname.lower() in LOCALHOST_NAMES:
        raise UnsafeUrlError(f"Localhost access not allowed: {hostname}")

    if allow_private:
        return

    try:
        _check_address(socket.gethostbyname(hostname), hostname)
    except socket.gaierror as e:
        raise UnsafeUrlError(f"Cannot resolve hostname '{hostname}': {e}")


def mask_url(url: str) -> str:
    """Mask the path of a URL for logging.

    Webhook URLs usually embed their secret token in the path.

    Returns:
        URL with all but the first characters of the path replaced by ``***``.
    """
    try:
        parsed = urlparse(url)
    except ValueError:
        return "***"
    if parsed.path and len(parsed.path) > 10:
        return f"{parsed.scheme}://{parsed.netloc}{parsed.path[:3]}***"
    return url
