"""Format checks for caller-supplied values

Every value that can end up on a command line or inside a generated hook
passes through one of these before anything privileged runs. Empty values
are accepted for optional fields; pass ``required=True`` otherwise.
"""

import ipaddress
import re
from typing import Optional

from controller_errors import ValidationFailed

HOSTNAME_PATTERN = re.compile(r'^[a-zA-Z0-9][a-zA-Z0-9._-]{0,253}$')
SERVICE_NAME_PATTERN = re.compile(r'^[a-zA-Z0-9@:._-]{1,256}$')
IPV4_PATTERN = re.compile(r'^\d{1,3}(\.\d{1,3}){3}$')


def _empty(field: str, value: Optional[str], required: bool) -> bool:
    if value is None or value == "":
        if required:
            raise ValidationFailed(field, "", "value is required")
        return True
    return False


def validate_ipv4(value: Optional[str], field: str = "address", required: bool = False) -> Optional[str]:
    """Check a dotted-quad IPv4 address

    Args:
        value: Address to check
        field: Name used in the error message
        required: Reject empty values

    Returns:
        The address unchanged, or None when empty

    Raises:
        ValidationFailed: when the format is wrong or an octet is out of range
    """
    if _empty(field, value, required):
        return None
    if not IPV4_PATTERN.match(value):
        raise ValidationFailed(field, value, "not an IPv4 address")
    if any(int(octet) > 255 for octet in value.split(".")):
        raise ValidationFailed(field, value, "octet out of range")
    return value


def validate_hostname(value: Optional[str], field: str = "host", required: bool = False) -> Optional[str]:
    """Check a hostname or IPv4 literal"""
    if _empty(field, value, required):
        return None
    if not HOSTNAME_PATTERN.match(value):
        raise ValidationFailed(field, value, "not a valid hostname")
    return value


def validate_port(value, field: str = "port", required: bool = False) -> Optional[int]:
    """Check a TCP/UDP port number (1-65535)

    Returns:
        The port as int, or None when empty
    """
    if _empty(field, None if value is None else str(value), required):
        return None
    text = str(value).strip()
    if not text.isdigit():
        raise ValidationFailed(field, text, "not a number")
    port = int(text)
    if not 1 <= port <= 65535:
        raise ValidationFailed(field, text, "port out of range")
    return port


def validate_service_name(value: Optional[str], field: str = "service", required: bool = False) -> Optional[str]:
    """Check a systemd unit name"""
    if _empty(field, value, required):
        return None
    if not SERVICE_NAME_PATTERN.match(value):
        raise ValidationFailed(field, value, "not a valid service name")
    return value


def validate_network(value: str, field: str = "network") -> str:
    """Check an IPv4 CIDR such as 10.0.0.0/8"""
    try:
        ipaddress.IPv4Network(value, strict=False)
    except ValueError as e:
        raise ValidationFailed(field, value, str(e))
    return value
