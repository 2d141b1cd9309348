#!/usr/bin/env python3
"""
Endpoint Validation Module

Turns whatever the operator typed (bare host, host:port, or a URL with any
scheme) into the host:port form the inspector connects to.

Only the https path defaults to port 443. Other schemes keep the host
component exactly as given, so "ldaps://host" stays "host".
"""

import logging
import re
from dataclasses import dataclass
from typing import Tuple
from urllib.parse import SplitResult, urlsplit

from inspector_config import DEFAULT_PORT, InspectorError

logger = logging.getLogger(__name__)

# Control characters and whitespace are never valid in an endpoint
_INVALID_CHARS = re.compile(r'[\x00-\x20\x7f]')


class MalformedEndpoint(InspectorError):
    """Raised when an endpoint cannot be parsed into host:port."""


@dataclass(frozen=True)
class Endpoint:
    """A normalized host:port endpoint."""

    hostport: str

    @property
    def host(self) -> str:
        host, _ = split_hostport(self.hostport)
        return host

    @property
    def port(self) -> int:
        _, port = split_hostport(self.hostport)
        return port

    def __str__(self) -> str:
        return self.hostport


def _parse(value: str) -> SplitResult:
    try:
        parts = urlsplit(value)
        # Accessing .port validates it
        parts.port
    except ValueError as e:
        raise MalformedEndpoint(f"Supplied endpoint is not well formed: {value!r} ({e})") from e
    return parts


def _host_component(parts: SplitResult) -> str:
    """Host and optional port, without any user:password@ prefix."""
    return parts.netloc.rpartition('@')[2]


def validate_endpoint(raw: str) -> Endpoint:
    """
    Validate the supplied endpoint returning host:port.

    Args:
        raw: Endpoint as typed by the operator

    Returns:
        Endpoint wrapping the normalized host:port string

    Raises:
        MalformedEndpoint: If raw cannot be parsed even with https:// assumed
    """
    if not raw or not raw.strip():
        raise MalformedEndpoint("No endpoint supplied")

    if _INVALID_CHARS.search(raw):
        raise MalformedEndpoint(f"Supplied endpoint contains invalid characters: {raw!r}")

    # Attempt to straight parse what was provided
    parts = _parse(raw)

    if not parts.scheme or not _host_component(parts):
        logger.debug("Reparsing with https:// prepended")
        parts = _parse(f"https://{raw}")

    host = _host_component(parts)
    if parts.scheme and not host:
        raise MalformedEndpoint(f"Supplied endpoint has no host: {raw!r}")

    if host.endswith(':'):
        raise MalformedEndpoint(f"Supplied endpoint has an empty port: {raw!r}")

    if not parts.scheme:
        logger.debug("No scheme - assume port %d", DEFAULT_PORT)
        hostport = f"{host or raw}:{DEFAULT_PORT}"
    elif parts.scheme == 'https' and parts.port is None:
        logger.debug("HTTPS scheme with no port - assume %d", DEFAULT_PORT)
        hostport = f"{host}:{DEFAULT_PORT}"
    else:
        hostport = host

    return Endpoint(hostport)


def split_hostport(hostport: str) -> Tuple[str, int]:
    """
    Split host:port into its parts.

    IPv6 literals must be bracketed ("[::1]:443"); the brackets are stripped
    from the returned host.

    Raises:
        MalformedEndpoint: If no usable port is present
    """
    host, sep, port_s = hostport.rpartition(':')
    if not sep or not host or (host.endswith(':') and not host.startswith('[')):
        raise MalformedEndpoint(f"Endpoint {hostport!r} has no port")

    if host.startswith('[') and host.endswith(']'):
        host = host[1:-1]

    try:
        port = int(port_s)
    except ValueError as e:
        raise MalformedEndpoint(f"Endpoint {hostport!r} has an invalid port") from e

    if not 0 < port <= 65535:
        raise MalformedEndpoint(f"Endpoint {hostport!r} has an out of range port")

    return host, port
