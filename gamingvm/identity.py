"""Caller identity: the operator's public IP, used as the only ingress source."""

import ipaddress

import httpx

from .errors import IdentityResolutionError
from .utils import logger

IP_ECHO_URL = "https://api.ipify.org?format=json"


def get_my_ip(url: str = IP_ECHO_URL, timeout: float = 5) -> str:
    """Get the current public IP address from an IP-echo service.

    Queries the service once and parses a ``{"ip": "..."}`` body. There is no
    fallback: a run that cannot resolve the caller IP must not open ports.

    :param url: IP-echo endpoint returning JSON
    :param timeout: Request timeout in seconds
    :return: Public IPv4 address string
    :raises IdentityResolutionError: If the service is unreachable or the body is unusable
    """
    try:
        response = httpx.get(url, timeout=timeout)
        response.raise_for_status()
    except httpx.HTTPError as e:
        raise IdentityResolutionError(f"Could not reach '{url}': {e}") from e

    try:
        body = response.json()
    except ValueError as e:
        raise IdentityResolutionError(f"Response from '{url}' is not JSON") from e

    ip = body.get("ip") if isinstance(body, dict) else None
    if not ip:
        raise IdentityResolutionError(f"Response from '{url}' has no 'ip' field")

    try:
        ipaddress.IPv4Address(ip)
    except ValueError as e:
        raise IdentityResolutionError(f"'{ip}' is not an IPv4 address") from e

    logger.debug(f"Resolved caller IP: {ip}")
    return ip


def caller_cidr(ip: str) -> str:
    return f"{ip}/32"
