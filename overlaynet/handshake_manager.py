"""Drives outbound handshakes and settles races when tunnels complete."""

from __future__ import annotations

import ipaddress
import logging
import secrets
import time
from dataclasses import dataclass
from typing import Any, Callable

from overlaynet.hostmap import HostInfo, HostMap, HostNotFoundError, RemoteList
from overlaynet.timers import TimerWheel

log = logging.getLogger(__name__)

DEFAULT_HANDSHAKE_TRY_INTERVAL = 0.1
DEFAULT_HANDSHAKE_RETRIES = 10
DEFAULT_HANDSHAKE_TRIGGER_BUFFER = 64

_NS = 1_000_000_000


@dataclass
class HandshakeConfig:
    """Retry schedule for outbound handshakes; intervals in seconds."""

    try_interval: float = DEFAULT_HANDSHAKE_TRY_INTERVAL
    retries: int = DEFAULT_HANDSHAKE_RETRIES
    trigger_buffer: int = DEFAULT_HANDSHAKE_TRIGGER_BUFFER


class HandshakeError(Exception):
    """A handshake could not be completed; ``existing`` is the conflicting host, if any."""

    def __init__(self, message: str, existing: HostInfo | None = None) -> None:
        super().__init__(message)
        self.existing = existing


class ExistingHostInfoError(HandshakeError):
    """A tunnel exists that was set up by a newer handshake."""

    def __init__(self, existing: HostInfo | None = None) -> None:
        super().__init__("existing hostinfo", existing)


class AlreadySeenError(HandshakeError):
    """The existing tunnel was set up by this same handshake packet."""

    def __init__(self, existing: HostInfo | None = None) -> None:
        super().__init__("already seen", existing)


class LocalIndexCollisionError(HandshakeError):
    """Another host already uses this local index."""

    def __init__(self, existing: HostInfo | None = None) -> None:
        super().__init__("local index collision", existing)


class ExistingHandshakeError(HandshakeError):
    """Our own pending handshake with this host wins the race."""

    def __init__(self, existing: HostInfo | None = None) -> None:
        super().__init__("existing handshake", existing)


def generate_index() -> int:
    """A random non-zero 32 bit index; zero means "unknown"."""
    index = 0
    while index == 0:
        index = int.from_bytes(secrets.token_bytes(4), "big")
    log.debug("Generated index %d", index)
    return index


def hs_timeout(tries: int, interval: float) -> float:
    """Total time, in seconds, that ``tries`` linearly backed-off attempts take."""
    step = round(interval * _NS)
    return (tries // 2) * (2 * step + (tries - 1) * step) / _NS


def _ip(vpn_ip: int) -> str:
    return str(ipaddress.IPv4Address(vpn_ip))


class HandshakeManager:
    """Keeps the pending host map and retransmits handshakes until they finish or time out.

    ``lighthouse`` needs ``query_server(vpn_ip, writer)`` and ``query_cache(vpn_ip)``
    (returning a :class:`RemoteList`); ``outside`` needs ``write_to(data, addr)``.
    """

    def __init__(
        self,
        vpn_cidr,
        preferred_ranges,
        main_hostmap: HostMap,
        lighthouse: Any,
        outside: Any,
        config: HandshakeConfig | None = None,
    ) -> None:
        self.config = config if config is not None else HandshakeConfig()
        self.pending_hostmap = HostMap("pending", vpn_cidr, preferred_ranges)
        self.main_hostmap = main_hostmap
        self.lighthouse = lighthouse
        self.outside = outside
        self.outbound_timer = TimerWheel(
            self.config.try_interval, hs_timeout(self.config.retries, self.config.try_interval)
        )
        self.metric_initiated = 0
        self.metric_timed_out = 0
        self.metric_sent = 0

    def next_outbound_handshake_timer_tick(self, now: float, writer: Any) -> None:
        """Advance the retry wheel to ``now`` and retry every handshake that came due."""
        self.outbound_timer.advance(now)
        while (vpn_ip := self.outbound_timer.purge()) is not None:
            self.handle_outbound(vpn_ip, writer, False)

    def handle_outbound(self, vpn_ip: int, writer: Any, lighthouse_triggered: bool) -> None:
        """Send (or give up on) the pending handshake for ``vpn_ip``."""
        try:
            hostinfo = self.pending_hostmap.query_vpn_ip(vpn_ip)
        except HostNotFoundError:
            return

        with hostinfo.lock:
            if hostinfo.handshake_complete:
                self.pending_hostmap.delete_host_info(hostinfo)
                return

            if not hostinfo.handshake_ready:
                # The packet is not built yet; look again later.
                self.outbound_timer.add(vpn_ip, self.config.try_interval * hostinfo.handshake_counter)
                return

            if hostinfo.handshake_counter >= self.config.retries:
                remotes = hostinfo.remotes.copy_addrs(self.pending_hostmap.preferred_ranges) if hostinfo.remotes else []
                log.info(
                    "Handshake timed out: vpnIp=%s udpAddrs=%s initiatorIndex=%s remoteIndex=%s durationNs=%d",
                    _ip(vpn_ip),
                    remotes,
                    hostinfo.local_index_id,
                    hostinfo.remote_index_id,
                    round((time.monotonic() - hostinfo.handshake_start) * _NS),
                )
                self.metric_timed_out += 1
                self.pending_hostmap.delete_host_info(hostinfo)
                return

            # A lighthouse reply only matters before the first transmission.
            if lighthouse_triggered and hostinfo.handshake_counter > 0:
                return

            if hostinfo.remotes is None:
                hostinfo.remotes = self.lighthouse.query_cache(vpn_ip)

            if len(hostinfo.remotes) <= 1:
                # Likely raced the host registering with the lighthouse; ask again.
                self.lighthouse.query_server(vpn_ip, writer)

            sent_to = []
            for addr in hostinfo.remotes.copy_addrs(self.pending_hostmap.preferred_ranges):
                self.metric_sent += 1
                try:
                    self.outside.write_to(hostinfo.handshake_packet[0], addr)
                except OSError as exc:
                    log.error(
                        "Failed to send handshake message to %s for %s: %s", addr, _ip(vpn_ip), exc
                    )
                else:
                    sent_to.append(addr)

            if sent_to:
                log.info(
                    "Handshake message sent: vpnIp=%s udpAddrs=%s initiatorIndex=%s",
                    _ip(vpn_ip),
                    sent_to,
                    hostinfo.local_index_id,
                )

            hostinfo.handshake_counter += 1

            # A lighthouse-triggered attempt is still on the wheel already.
            if not lighthouse_triggered:
                self.outbound_timer.add(vpn_ip, self.config.try_interval * hostinfo.handshake_counter)

    def add_vpn_ip(self, vpn_ip: int, init: Callable[[HostInfo], None] | None = None) -> HostInfo:
        """Return the pending host for ``vpn_ip``, scheduling a handshake if it is new."""
        hostinfo, created = self.pending_hostmap.add_vpn_ip(vpn_ip, init)
        if created:
            self.outbound_timer.add(vpn_ip, self.config.try_interval)
            self.metric_initiated += 1
        return hostinfo

    def check_and_complete(
        self, hostinfo: HostInfo, handshake_packet: int, overwrite: bool
    ) -> HostInfo | None:
        """Move ``hostinfo`` into the main map unless it conflicts with what is there.

        Returns the host it replaced, if any. Raises :class:`AlreadySeenError`,
        :class:`ExistingHostInfoError`, :class:`LocalIndexCollisionError` or
        :class:`ExistingHandshakeError`, each carrying the conflicting host.
        """
        pending, main = self.pending_hostmap, self.main_hostmap
        with pending.lock, main.lock:
            existing = main.hosts.get(hostinfo.vpn_ip)
            if existing is not None:
                if hostinfo.handshake_packet.get(handshake_packet) == existing.handshake_packet.get(
                    handshake_packet
                ):
                    raise AlreadySeenError(existing)
                if existing.last_handshake_time >= hostinfo.last_handshake_time:
                    raise ExistingHostInfoError(existing)
                log.info("Taking new handshake for %s", _ip(existing.vpn_ip))

            collision = main.indexes.get(hostinfo.local_index_id)
            if collision is not None:
                raise LocalIndexCollisionError(collision)

            collision = pending.indexes.get(hostinfo.local_index_id)
            if collision is not None and collision is not hostinfo:
                raise LocalIndexCollisionError(collision)

            shadowed = main.remote_indexes.get(hostinfo.remote_index_id)
            if shadowed is not None and shadowed.vpn_ip != hostinfo.vpn_ip:
                log.info(
                    "New host %s shadows existing host remoteIndex %s (collision with %s)",
                    _ip(hostinfo.vpn_ip),
                    hostinfo.remote_index_id,
                    _ip(shadowed.vpn_ip),
                )

            pending_info = pending.hosts.get(hostinfo.vpn_ip)
            if pending_info is not None:
                if not overwrite:
                    raise ExistingHandshakeError(pending_info)
                with pending_info.lock:
                    hostinfo.packet_store.extend(pending_info.packet_store)
                    pending.delete_host_info(pending_info)
                log.info(
                    "Handshake race lost for %s, replacing pending handshake with completed tunnel",
                    _ip(pending_info.vpn_ip),
                )

            if existing is not None:
                main.delete_host_info(existing)

            main.add_host_info(hostinfo)
            return existing

    def complete(self, hostinfo: HostInfo) -> None:
        """Move ``hostinfo`` from pending to main, replacing any tunnel to the same host."""
        pending, main = self.pending_hostmap, self.main_hostmap
        with pending.lock, main.lock:
            existing = main.hosts.get(hostinfo.vpn_ip)
            if existing is not None:
                main.delete_host_info(existing)

            shadowed = main.remote_indexes.get(hostinfo.remote_index_id)
            if shadowed is not None:
                log.info(
                    "New host %s shadows existing host remoteIndex %s (collision with %s)",
                    _ip(hostinfo.vpn_ip),
                    hostinfo.remote_index_id,
                    _ip(shadowed.vpn_ip),
                )

            main.add_host_info(hostinfo)
            pending.delete_host_info(hostinfo)

    def add_index_host_info(self, hostinfo: HostInfo) -> None:
        """Give ``hostinfo`` a local index unused in both maps and register it as pending."""
        with self.pending_hostmap.lock, self.main_hostmap.lock:
            for _ in range(32):
                index = generate_index()
                if index not in self.pending_hostmap.indexes and index not in self.main_hostmap.indexes:
                    hostinfo.local_index_id = index
                    self.pending_hostmap.indexes[index] = hostinfo
                    return
        raise HandshakeError("failed to generate unique localIndexId")

    def delete_host_info(self, hostinfo: HostInfo) -> None:
        self.pending_hostmap.delete_host_info(hostinfo)

    def query_index(self, index: int) -> HostInfo:
        return self.pending_hostmap.query_index(index)

    def stats(self) -> dict[str, int]:
        result = {
            "handshake_manager.initiated": self.metric_initiated,
            "handshake_manager.timed_out": self.metric_timed_out,
            "handshake_manager.sent": self.metric_sent,
        }
        for label, hm in (("pending", self.pending_hostmap), ("main", self.main_hostmap)):
            with hm.lock:
                result[f"hostmap.{label}.hosts"] = len(hm.hosts)
                result[f"hostmap.{label}.indexes"] = len(hm.indexes)
                result[f"hostmap.{label}.remote_indexes"] = len(hm.remote_indexes)
        return result


__all__ = [
    "AlreadySeenError",
    "ExistingHandshakeError",
    "ExistingHostInfoError",
    "HandshakeConfig",
    "HandshakeError",
    "HandshakeManager",
    "LocalIndexCollisionError",
    "RemoteList",
    "generate_index",
    "hs_timeout",
]