import ipaddress
import re

from cert_errors import InvalidInputError, InvalidNameError

NAME_SEPARATOR = ";"
MAX_NAME_LENGTH = 255

DNS_NAME_PATTERN = re.compile(
    r"^([a-zA-Z0-9_*][a-zA-Z0-9_-]{0,62})"
    r"(\.[a-zA-Z0-9_][a-zA-Z0-9_-]{0,62})*[._]?$"
)


def names_from_config(raw: str) -> tuple[str, ...]:
    """
    Parse a ';'-delimited list of DNS names from a configuration value.

    Args:
        raw: Configuration value, e.g. "example.com; www.example.com"

    Returns:
        tuple: Validated names sorted ascending

    Raises:
        InvalidInputError: If the value is empty
        InvalidNameError: If any part is an IP literal or not a DNS name
    """
    if not raw:
        raise InvalidInputError("no certificate names specified")

    names = []
    for part in raw.split(NAME_SEPARATOR):
        name = part.strip()
        if not is_dns_name(name):
            raise InvalidNameError(f"{name!r} is not a valid DNS name")
        names.append(name)

    return tuple(sorted(names))


def is_dns_name(name: str) -> bool:
    if not name or len(name.replace(".", "")) > MAX_NAME_LENGTH:
        return False
    return not is_ip_address(name) and DNS_NAME_PATTERN.fullmatch(name) is not None


def is_ip_address(name: str) -> bool:
    try:
        ipaddress.ip_address(name)
    except ValueError:
        return False
    return True
