"""Tables of known hosts, indexed by overlay address and session index."""

from __future__ import annotations

import ipaddress
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Union

from overlaynet.firewall import Certificate

log = logging.getLogger(__name__)

IPAddress = Union[ipaddress.IPv4Address, ipaddress.IPv6Address]
IPNetwork = Union[ipaddress.IPv4Network, ipaddress.IPv6Network]
Addr = tuple  # (IPAddress, port)


class HostNotFoundError(LookupError):
    """Raised when a host is not in a host map."""


def _addr(addr) -> Addr:
    """Normalise an ``(ip, port)`` pair so equal addresses compare equal."""
    ip, port = addr
    return ipaddress.ip_address(ip), int(port)


def _network(net) -> IPNetwork:
    return net if isinstance(net, (ipaddress.IPv4Network, ipaddress.IPv6Network)) else ipaddress.ip_network(net, strict=False)


def _is_preferred(ip: IPAddress, preferred_ranges: Iterable[IPNetwork]) -> bool:
    return any(net.version == ip.version and ip in net for net in preferred_ranges)


class RemoteList:
    """Underlay addresses a host may be reached at, minus those that are blocked."""

    def __init__(self) -> None:
        self._addrs: list[Addr] = []
        self._blocked: list[Addr] = []
        self._lock = threading.Lock()

    def prepend(self, addr) -> None:
        """Put ``addr`` at the front, removing any earlier copy of it."""
        addr = _addr(addr)
        with self._lock:
            self._addrs = [addr] + [a for a in self._addrs if a != addr]

    def copy_addrs(self, preferred_ranges: Iterable = ()) -> list[Addr]:
        """Usable addresses: preferred ranges first, then IPv6 before IPv4, then lexically."""
        ranges = [_network(n) for n in preferred_ranges]
        with self._lock:
            usable = [a for a in self._addrs if a not in self._blocked]
        return sorted(
            usable,
            key=lambda a: (not _is_preferred(a[0], ranges), a[0].version == 4, a[0].packed, a[1]),
        )

    def block_remote(self, addr) -> None:
        """Never hand out ``addr`` again."""
        addr = _addr(addr)
        with self._lock:
            if addr not in self._blocked:
                self._blocked.append(addr)

    @property
    def blocked(self) -> list[Addr]:
        with self._lock:
            return list(self._blocked)

    def __len__(self) -> int:
        return len(self.copy_addrs())


@dataclass(eq=False)
class HostInfo:
    """Everything known about one remote host and its tunnel."""

    vpn_ip: int = 0
    local_index_id: int = 0
    remote_index_id: int = 0
    remote: Addr | None = None
    remotes: RemoteList | None = None
    certificate: Certificate | None = None
    # Opaque session state; present once a handshake has been set up.
    connection_state: Any = None
    message_counter: int = 0
    ready: bool = False
    remote_cidr: tuple | None = None
    handshake_packet: dict[int, bytes] = field(default_factory=dict)
    handshake_ready: bool = False
    handshake_complete: bool = False
    handshake_counter: int = 0
    handshake_start: float = field(default_factory=time.monotonic)
    last_handshake_time: int = 0
    packet_store: list = field(default_factory=list)
    lock: threading.RLock = field(default_factory=threading.RLock, repr=False)

    def set_remote(self, addr) -> None:
        """Use ``addr`` as the current underlay address for this host."""
        self.remote = _addr(addr) if addr is not None else None

    def get_cert(self) -> Certificate | None:
        return self.certificate


class HostMap:
    """Hosts keyed by overlay address, local index and remote index."""

    def __init__(self, name: str, vpn_cidr, preferred_ranges: Iterable) -> None:
        self.name = name
        self.vpn_cidr = _network(vpn_cidr) if vpn_cidr is not None else None
        self.preferred_ranges: list[IPNetwork] = [_network(n) for n in preferred_ranges]
        self.hosts: dict[int, HostInfo] = {}
        self.indexes: dict[int, HostInfo] = {}
        self.remote_indexes: dict[int, HostInfo] = {}
        self.lock = threading.RLock()

    def add(self, vpn_ip: int, hostinfo: HostInfo) -> None:
        with self.lock:
            self.hosts[vpn_ip] = hostinfo

    def add_vpn_ip(
        self, vpn_ip: int, init: Callable[[HostInfo], None] | None = None
    ) -> tuple[HostInfo, bool]:
        """Return the host for ``vpn_ip``, creating it (and calling ``init``) if new."""
        with self.lock:
            existing = self.hosts.get(vpn_ip)
            if existing is not None:
                return existing, False
            hostinfo = HostInfo(vpn_ip=vpn_ip)
            if init is not None:
                init(hostinfo)
            self.hosts[vpn_ip] = hostinfo
            return hostinfo, True

    def add_host_info(self, hostinfo: HostInfo) -> None:
        """Index ``hostinfo`` by address, local index and remote index."""
        with self.lock:
            self.hosts[hostinfo.vpn_ip] = hostinfo
            self.indexes[hostinfo.local_index_id] = hostinfo
            self.remote_indexes[hostinfo.remote_index_id] = hostinfo
        log.debug(
            "Hostmap %s: added vpnIp %s (localIndex=%s, remoteIndex=%s)",
            self.name,
            ipaddress.IPv4Address(hostinfo.vpn_ip),
            hostinfo.local_index_id,
            hostinfo.remote_index_id,
        )

    def query_vpn_ip(self, vpn_ip: int) -> HostInfo:
        with self.lock:
            try:
                return self.hosts[vpn_ip]
            except KeyError:
                raise HostNotFoundError("unable to find host") from None

    def query_index(self, index: int) -> HostInfo:
        with self.lock:
            try:
                return self.indexes[index]
            except KeyError:
                raise HostNotFoundError("unable to find index") from None

    def delete_host_info(self, hostinfo: HostInfo) -> None:
        """Remove every entry that points at this very ``hostinfo``."""
        with self.lock:
            for table, key in (
                (self.hosts, hostinfo.vpn_ip),
                (self.indexes, hostinfo.local_index_id),
                (self.remote_indexes, hostinfo.remote_index_id),
            ):
                if table.get(key) is hostinfo:
                    del table[key]