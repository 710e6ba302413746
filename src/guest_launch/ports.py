"""
Compose style port mappings for the guest container.

Short syntax entries follow ``[[HOST_IP:]HOST:]GUEST[/PROTOCOL]`` where HOST and
GUEST may each be a single port or a ``start-end`` range. An empty HOST token
(``0.0.0.0::80``) asks the runtime for an ephemeral port, as accepted by
podman's publish syntax. Long syntax entries are kept as opaque records.
"""

import errno
import ipaddress
import logging
import socket
import threading
from collections.abc import Iterable
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, ValidationError, conint, field_validator, model_validator

from .models import LongPortMapping, PortProtocol

logger = logging.getLogger(__name__)

DEFAULT_HOST_IP = "0.0.0.0"
DEFAULT_PROTOCOL: PortProtocol = "tcp"
SUPPORTED_PROTOCOLS = ("tcp", "udp")

PortNumber = conint(ge=1, le=65535)


class PortFormatError(ValueError):
    """Raised when a port declaration cannot be parsed."""


class Range(BaseModel):
    model_config = ConfigDict(frozen=True)

    start: PortNumber
    end: PortNumber

    @model_validator(mode="after")
    def check_order(self) -> "Range":
        if self.start > self.end:
            raise ValueError(f"Range start {self.start} is greater than its end {self.end}")
        return self

    def __contains__(self, port: int) -> bool:
        return self.start <= port <= self.end

    def __str__(self) -> str:
        return f"{self.start}-{self.end}"


class PortEntry(BaseModel):
    """One short syntax port mapping. ``host`` is None when the runtime picks the port."""

    model_config = ConfigDict(frozen=True)

    host_ip: str = DEFAULT_HOST_IP
    host: Optional[PortNumber | Range] = None
    guest: PortNumber | Range
    protocol: PortProtocol = DEFAULT_PROTOCOL

    @field_validator("host_ip")
    @classmethod
    def validate_host_ip(cls, v: str) -> str:
        try:
            return str(ipaddress.ip_address(v))
        except ValueError:
            raise ValueError(f"'{v}' is neither a valid IPv4 nor IPv6 address") from None

    @property
    def is_dynamic(self) -> bool:
        return self.host is None

    def render(self) -> str:
        """
        Canonical compose form. Implicit defaults are written out explicitly
        (e.g. ``0.0.0.0`` binding or ``/tcp``).
        """
        host_ip = f"[{self.host_ip}]" if ":" in self.host_ip else self.host_ip
        host = "" if self.host is None else str(self.host)
        return f"{host_ip}:{host}:{self.guest}/{self.protocol}"

    def __str__(self) -> str:
        return self.render()


def parse_port_or_range(token: str, entry: str) -> int | Range:
    """Parses a ``(port | range)`` token; a literal ``-`` marks a range."""
    try:
        if "-" in token:
            start, _, end = token.partition("-")
            return Range(start=int(start), end=int(end))
        port = int(token)
    except (ValueError, ValidationError) as e:
        raise PortFormatError(f"Invalid port '{token}' in compose entry: {entry}") from e

    if not 1 <= port <= 65535:
        raise PortFormatError(f"Port {port} out of range in compose entry: {entry}")
    return port


def parse_range(token: str) -> Range:
    value = parse_port_or_range(token, token)
    if not isinstance(value, Range):
        raise PortFormatError(f"'{token}' is not a port range")
    return value


def _parse_protocol(segment: str, entry: str) -> PortProtocol:
    # TCP is the default protocol when none is given
    if not segment:
        return DEFAULT_PROTOCOL
    if segment in SUPPORTED_PROTOCOLS:
        return segment  # type: ignore[return-value]
    raise PortFormatError(f"Protocol '{segment}' is not supported by the compose spec.")


def _parse_ip(raw_ip: str, entry: str) -> str:
    if raw_ip.startswith("[") and raw_ip.endswith("]"):
        raw_ip = raw_ip[1:-1]
    try:
        return str(ipaddress.ip_address(raw_ip))
    except ValueError:
        raise PortFormatError(f"Invalid compose entry: {entry}, IP: {raw_ip}") from None


def parse_entry(text: str) -> PortEntry:
    """
    Parses a short form compose port mapping.

    Format: ``[[HOST_IP:]HOST:]GUEST[/PROTOCOL]``
    """
    entry = text.strip()
    body, _, protocol_segment = entry.partition("/")
    protocol = _parse_protocol(protocol_segment, entry)

    fields = body.split(":")
    guest_token = fields[-1]
    if not guest_token:
        raise PortFormatError(f"Missing guest port in compose entry: {entry}")
    guest = parse_port_or_range(guest_token, entry)

    host: int | Range | None = None
    host_ip = DEFAULT_HOST_IP

    if len(fields) >= 2:
        # An empty host token keeps the runtime's ephemeral port semantics
        host_token = fields[-2]
        if host_token:
            host = parse_port_or_range(host_token, entry)

    # There must be at least 2 colons in the entry for an IP to be specified
    if len(fields) >= 3:
        host_ip = _parse_ip(":".join(fields[:-2]), entry)

    return PortEntry(host_ip=host_ip, host=host, guest=guest, protocol=protocol)


def make_entry(
    host: int | Range | None,
    guest: int | Range,
    host_ip: str = DEFAULT_HOST_IP,
    protocol: PortProtocol = DEFAULT_PROTOCOL,
) -> PortEntry:
    """Builds an entry from structured values instead of compose text."""
    try:
        return PortEntry(host_ip=host_ip, host=host, guest=guest, protocol=protocol)
    except ValidationError as e:
        raise PortFormatError(str(e)) from e


class PortMapper:
    """
    Owns the port declarations of one container definition.

    Short syntax entries are parsed and may be looked up or rewritten; long
    syntax entries are carried along untouched. Rebuild the mapper whenever the
    container definition is reloaded.
    """

    def __init__(self, declarations: Iterable[str | LongPortMapping | dict[str, Any]] = ()):
        self._lock = threading.RLock()
        self._short: list[PortEntry] = []
        self._long: list[LongPortMapping] = []

        for declaration in declarations:
            if isinstance(declaration, str):
                self._short.append(parse_entry(declaration))
            elif isinstance(declaration, LongPortMapping):
                self._long.append(declaration)
            else:
                self._long.append(LongPortMapping.model_validate(declaration))

    @property
    def entries(self) -> list[PortEntry]:
        with self._lock:
            return list(self._short)

    @property
    def long_entries(self) -> list[LongPortMapping]:
        with self._lock:
            return list(self._long)

    def _find_guest_index(self, guest_port: int, protocol: PortProtocol) -> Optional[int]:
        for idx, entry in enumerate(self._short):
            if isinstance(entry.guest, int) and entry.guest == guest_port and entry.protocol == protocol:
                return idx
        return None

    def lookup(self, guest_port: int | str, protocol: PortProtocol = DEFAULT_PROTOCOL) -> Optional[PortEntry]:
        """
        Returns the first short entry whose guest side is exactly ``guest_port``.
        Range valued guest sides are never matched.
        """
        with self._lock:
            idx = self._find_guest_index(int(guest_port), protocol)
            return None if idx is None else self._short[idx]

    def has_mapping(self, guest_port: int | str, protocol: PortProtocol = DEFAULT_PROTOCOL) -> bool:
        return self.lookup(guest_port, protocol) is not None

    def set_mapping(
        self,
        guest_port: int | str,
        host: int | str | Range,
        host_ip: str = DEFAULT_HOST_IP,
        protocol: PortProtocol = DEFAULT_PROTOCOL,
    ) -> PortEntry:
        """
        Overwrites the mapping for ``(guest_port, protocol)`` in place, or appends one.

        Raises PortFormatError for a malformed ``host`` or ``host_ip``; the entry is
        built before the mapper is touched, so rejected input leaves it unchanged.
        Host port conflicts are not checked here, see ``claim_host_port``.
        """
        if isinstance(host, str):
            host = parse_port_or_range(host, host)
        guest_port = int(guest_port)
        entry = make_entry(host, guest_port, host_ip=host_ip, protocol=protocol)

        with self._lock:
            idx = self._find_guest_index(guest_port, protocol)
            if idx is None:
                self._short.append(entry)
            else:
                self._short[idx] = entry

        logger.debug("Mapped guest port %s/%s to %s", guest_port, protocol, entry.render())
        return entry

    def serialize(self) -> list[str]:
        """Short syntax entries in their canonical compose form, in declaration order."""
        with self._lock:
            return [entry.render() for entry in self._short]

    def compose_format(self) -> list[str | dict[str, Any]]:
        """Every declaration as written back to a compose file, long syntax entries last."""
        with self._lock:
            long_form = [entry.model_dump(mode="json", exclude_none=True) for entry in self._long]
            return [entry.render() for entry in self._short] + long_form

    def find_free_port(self, preferred: int, attempts: int = 100) -> Optional[int]:
        """Probes upward from ``preferred`` for a host port nothing is listening on."""
        for port in range(preferred, min(preferred + attempts, 65536)):
            if self.is_port_open(port):
                return port
        return None

    def claim_host_port(
        self,
        guest_port: int,
        preferred_host: int,
        host_ip: str = DEFAULT_HOST_IP,
        protocol: PortProtocol = DEFAULT_PROTOCOL,
    ) -> Optional[int]:
        """
        Maps ``guest_port`` to ``preferred_host``, falling back to the next free
        host port when the preferred one is busy. Returns None if nothing is free.
        The probe is advisory: the port may still be taken before it is bound.
        """
        host_port = self.find_free_port(preferred_host)
        if host_port is None:
            logger.warning("No free host port found from %s for guest port %s", preferred_host, guest_port)
            return None

        if host_port != preferred_host:
            logger.info("Host port %s busy, using %s for guest port %s", preferred_host, host_port, guest_port)

        self.set_mapping(guest_port, host_port, host_ip=host_ip, protocol=protocol)
        return host_port

    @staticmethod
    def is_port_open(port: int | str) -> bool:
        """Returns True when a listener could bind ``port`` on all interfaces right now."""
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
            sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
            try:
                sock.bind(("", int(port)))
                sock.listen(1)
            except OSError as e:
                if e.errno in (errno.EADDRINUSE, errno.EACCES):
                    return False
                raise
        return True
