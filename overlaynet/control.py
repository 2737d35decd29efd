"""Programmatic control over a running node: inspect and close tunnels."""

from __future__ import annotations

import copy
import ipaddress
import logging
from dataclasses import dataclass, field
from typing import Any, Iterable

from overlaynet.firewall import Certificate
from overlaynet.hostmap import HostInfo, HostMap, HostNotFoundError

log = logging.getLogger(__name__)


@dataclass
class ControlHostInfo:
    """A detached snapshot of one host; changing it never touches the node."""

    vpn_ip: ipaddress.IPv4Address
    local_index: int = 0
    remote_index: int = 0
    remote_addrs: list = field(default_factory=list)
    cached_packets: int = 0
    cert: Certificate | None = None
    message_counter: int = 0
    current_remote: tuple | None = None


def copy_host_info(hostinfo: HostInfo, preferred_ranges: Iterable) -> ControlHostInfo:
    """Snapshot ``hostinfo`` without sharing any mutable state with it."""
    remotes = hostinfo.remotes.copy_addrs(preferred_ranges) if hostinfo.remotes is not None else []
    cert = hostinfo.get_cert()
    return ControlHostInfo(
        vpn_ip=ipaddress.IPv4Address(hostinfo.vpn_ip),
        local_index=hostinfo.local_index_id,
        remote_index=hostinfo.remote_index_id,
        remote_addrs=list(remotes),
        cached_packets=len(hostinfo.packet_store),
        cert=copy.deepcopy(cert) if cert is not None else None,
        message_counter=hostinfo.message_counter if hostinfo.connection_state is not None else 0,
        current_remote=hostinfo.remote,
    )


class Control:
    """Operations on a node's interface.

    ``interface`` needs ``hostmap``, ``handshake_manager`` (with ``pending_hostmap``),
    ``lighthouse`` (with ``get_lighthouses()``), ``send_close_tunnel(hostinfo)``,
    ``close_tunnel(hostinfo, has_hostmap_lock)`` and ``close()``.
    """

    def __init__(self, interface: Any) -> None:
        self.interface = interface

    def _hostmap(self, pending: bool) -> HostMap:
        if pending:
            return self.interface.handshake_manager.pending_hostmap
        return self.interface.hostmap

    def stop(self) -> None:
        """Close every tunnel and the interface."""
        self.close_all_tunnels(False)
        try:
            self.interface.close()
        except OSError as exc:
            log.error("Close interface failed: %s", exc)
        log.info("Goodbye")

    def list_hostmap(self, pending: bool) -> list[ControlHostInfo]:
        """Snapshots of every host in the main or the pending (handshaking) map."""
        hm = self._hostmap(pending)
        with hm.lock:
            return [copy_host_info(h, hm.preferred_ranges) for h in hm.hosts.values()]

    def get_host_info_by_vpn_ip(self, vpn_ip: int, pending: bool) -> ControlHostInfo | None:
        try:
            hostinfo = self._hostmap(pending).query_vpn_ip(vpn_ip)
        except HostNotFoundError:
            return None
        return copy_host_info(hostinfo, self.interface.hostmap.preferred_ranges)

    def set_remote_for_tunnel(self, vpn_ip: int, addr) -> ControlHostInfo | None:
        """Force the tunnel to ``vpn_ip`` onto the underlay address ``addr``."""
        try:
            hostinfo = self.interface.hostmap.query_vpn_ip(vpn_ip)
        except HostNotFoundError:
            return None
        hostinfo.set_remote(addr)
        return copy_host_info(hostinfo, self.interface.hostmap.preferred_ranges)

    def close_tunnel(self, vpn_ip: int, local_only: bool) -> bool:
        """Close an established tunnel, telling the remote end unless ``local_only``."""
        try:
            hostinfo = self.interface.hostmap.query_vpn_ip(vpn_ip)
        except HostNotFoundError:
            return False
        if not local_only:
            self.interface.send_close_tunnel(hostinfo)
        self.interface.close_tunnel(hostinfo, False)
        return True

    def close_all_tunnels(self, exclude_lighthouses: bool) -> int:
        """Close every ready tunnel, optionally sparing lighthouses; returns how many closed."""
        closed = 0
        hm = self.interface.hostmap
        with hm.lock:
            lighthouses = self.interface.lighthouse.get_lighthouses()
            for hostinfo in list(hm.hosts.values()):
                if exclude_lighthouses and hostinfo.vpn_ip in lighthouses:
                    continue
                if not hostinfo.ready:
                    continue
                self.interface.send_close_tunnel(hostinfo)
                self.interface.close_tunnel(hostinfo, True)
                log.debug(
                    "Sending close tunnel message: vpnIp=%s udpAddr=%s",
                    ipaddress.IPv4Address(hostinfo.vpn_ip),
                    hostinfo.remote,
                )
                closed += 1
        return closed