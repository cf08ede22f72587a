"""Input validation and log-sanitizing helpers."""

import re
import socket
from datetime import timedelta
from typing import Any

from .exceptions import ValidationError

MIN_PORT = 1
MAX_PORT = 65535

# DNS label: lowercase alphanumerics and hyphens, alphanumeric at both ends
_SUBDOMAIN_RE = re.compile(r"^[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$")
_PORT_RE = re.compile(r"^\d{1,5}$")
_DURATION_RE = re.compile(r"^(\d+)([mhd])$")
_DURATION_UNITS = {"m": "minutes", "h": "hours", "d": "days"}


def validate_subdomain(subdomain: str) -> str:
    """Validate a subdomain label.

    Args:
        subdomain: Single DNS label, e.g. ``api``

    Returns:
        The subdomain unchanged

    Raises:
        ValidationError: If the label is not a valid lowercase DNS label
    """
    if not isinstance(subdomain, str) or not _SUBDOMAIN_RE.match(subdomain):
        raise ValidationError(
            f"Invalid subdomain {subdomain!r}: use lowercase letters, digits, and "
            "hyphens (must start and end with a letter or digit)"
        )
    return subdomain


def validate_port(port: int | str, port_name: str = "Port") -> int:
    """Validate a port given as an int or a decimal string.

    Args:
        port: Port number to validate
        port_name: Name of the port for error messages

    Returns:
        The port as an int

    Raises:
        ValidationError: If port is not in valid range (1-65535)
    """
    if isinstance(port, bool):
        raise ValidationError(f"{port_name} must be between {MIN_PORT} and {MAX_PORT}")
    if isinstance(port, str):
        if not _PORT_RE.match(port):
            raise ValidationError(
                f"{port_name} must be a number between {MIN_PORT} and {MAX_PORT}"
            )
        port = int(port)
    if not isinstance(port, int) or not (MIN_PORT <= port <= MAX_PORT):
        raise ValidationError(f"{port_name} must be between {MIN_PORT} and {MAX_PORT}")
    return port


def validate_non_empty_string(value: str, field_name: str) -> str:
    """Validate that a string is not empty or only whitespace.

    Returns:
        Stripped string value

    Raises:
        ValidationError: If string is empty or only whitespace
    """
    if not value or not value.strip():
        raise ValidationError(f"{field_name} cannot be empty")
    return value.strip()


def validate_group_name(name: str) -> str:
    """Validate an access group name."""
    name = validate_non_empty_string(name, "Group name")
    if not name.replace("-", "").replace("_", "").isalnum():
        raise ValidationError(
            f"Invalid group name {name!r}: use only letters, digits, hyphens, "
            "and underscores"
        )
    return name


def parse_duration(value: str) -> timedelta:
    """Parse a short duration such as ``30m``, ``24h`` or ``7d``.

    Raises:
        ValidationError: If the format is not ``<n>m``, ``<n>h`` or ``<n>d``
            or the amount is zero
    """
    match = _DURATION_RE.match(value.strip()) if isinstance(value, str) else None
    if match is None:
        raise ValidationError(
            f"Invalid duration {value!r}: expected e.g. 30m, 1h, 24h, 7d"
        )
    amount = int(match.group(1))
    if amount == 0:
        raise ValidationError("Duration must be greater than zero")
    return timedelta(**{_DURATION_UNITS[match.group(2)]: amount})


def mask_sensitive_data(
    value: str | None, mask_char: str = "*", show_chars: int = 4
) -> str:
    """Mask sensitive data for logging while preserving the last few characters.

    Args:
        value: Sensitive string to mask (e.g., API token)
        mask_char: Character to use for masking
        show_chars: Number of characters to show at the end

    Returns:
        Masked string safe for logging
    """
    if not value:
        return "<None>"

    if len(value) <= show_chars:
        return mask_char * len(value)

    masked_length = len(value) - show_chars
    return mask_char * masked_length + value[-show_chars:]


def sanitize_log_data(data: dict[str, Any]) -> dict[str, Any]:
    """Mask values whose keys look like credentials."""
    sensitive_fields = {"token", "password", "secret", "api_key", "authorization"}

    sanitized = {}
    for key, value in data.items():
        if any(sensitive_field in key.lower() for sensitive_field in sensitive_fields):
            sanitized[key] = mask_sensitive_data(str(value) if value else None)
        else:
            sanitized[key] = value

    return sanitized


def is_port_listening(port: int, host: str = "127.0.0.1", timeout: float = 0.8) -> bool:
    """Check whether something accepts TCP connections on ``host:port``.

    Args:
        port: Port to connect to
        host: Interface to try, loopback by default
        timeout: Seconds to wait for the connection

    Returns:
        True if the connection was accepted
    """
    try:
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.settimeout(timeout)
            return sock.connect_ex((host, port)) == 0
    except OSError:
        return False
