"""Watches tunnel traffic and tears down tunnels that stop answering."""

from __future__ import annotations

import ipaddress
import logging
import threading
from datetime import datetime, timezone
from enum import IntEnum
from typing import Any

from overlaynet.hostmap import HostInfo, HostNotFoundError
from overlaynet.timers import TimerWheel

log = logging.getLogger(__name__)

_TICK = 0.5
_WHEEL = 60.0


class MessageType(IntEnum):
    """Top level message types carried in a tunnel packet header."""

    HANDSHAKE = 0
    MESSAGE = 1
    RECV_ERROR = 2
    LIGHTHOUSE = 3
    TEST = 4
    CLOSE_TUNNEL = 5


TEST_REQUEST = 0
TEST_REPLY = 1


def _ip(vpn_ip: int) -> str:
    return str(ipaddress.IPv4Address(vpn_ip))


class ConnectionManager:
    """Tracks traffic per host and probes, then deletes, tunnels that go quiet.

    ``interface`` needs ``hostmap``, ``lighthouse`` (may be ``None``, otherwise with
    ``delete_vpn_ip(vpn_ip)``), ``disconnect_invalid``, ``ca_pool``,
    ``send_message_to_vpn_ip(msg_type, subtype, vpn_ip, payload)``,
    ``send_close_tunnel(hostinfo)`` and ``close_tunnel(hostinfo, has_hostmap_lock)``.
    """

    def __init__(self, interface: Any, check_interval: int, pending_deletion_interval: int) -> None:
        self.interface = interface
        self.hostmap = interface.hostmap
        self.incoming: set[int] = set()
        self.outgoing: set[int] = set()
        self.pending_deletion: dict[int, int] = {}
        self.traffic_timer = TimerWheel(_TICK, _WHEEL)
        self.pending_deletion_timer = TimerWheel(_TICK, _WHEEL)
        self.check_interval = check_interval
        self.pending_deletion_interval = pending_deletion_interval
        self._in_lock = threading.Lock()
        self._out_lock = threading.Lock()
        self._pending_lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def mark_in(self, vpn_ip: int) -> None:
        """Record that traffic arrived from ``vpn_ip``."""
        with self._in_lock:
            self.incoming.add(vpn_ip)

    def mark_out(self, vpn_ip: int) -> None:
        """Record that traffic went to ``vpn_ip``, starting a watch on first sight."""
        with self._out_lock:
            if vpn_ip in self.outgoing:
                return
            self.outgoing.add(vpn_ip)
            self.add_traffic_watch(vpn_ip, self.check_interval)

    def check_in(self, vpn_ip: int) -> bool:
        with self._in_lock:
            return vpn_ip in self.incoming

    def clear_ip(self, vpn_ip: int) -> None:
        with self._in_lock, self._out_lock:
            self.incoming.discard(vpn_ip)
            self.outgoing.discard(vpn_ip)

    def clear_pending_deletion(self, vpn_ip: int) -> None:
        with self._pending_lock:
            self.pending_deletion.pop(vpn_ip, None)

    def add_pending_deletion(self, vpn_ip: int) -> None:
        """Mark ``vpn_ip`` for deletion unless traffic is seen before the deletion check."""
        with self._pending_lock:
            if vpn_ip in self.pending_deletion:
                self.pending_deletion[vpn_ip] += 1
            else:
                self.pending_deletion[vpn_ip] = 0
            self.pending_deletion_timer.add(vpn_ip, float(self.pending_deletion_interval))

    def is_pending_deletion(self, vpn_ip: int) -> bool:
        with self._pending_lock:
            return vpn_ip in self.pending_deletion

    def add_traffic_watch(self, vpn_ip: int, seconds: int) -> None:
        self.traffic_timer.add(vpn_ip, float(seconds))

    def _lookup(self, vpn_ip: int) -> HostInfo | None:
        try:
            return self.hostmap.query_vpn_ip(vpn_ip)
        except HostNotFoundError:
            return None

    def _forget(self, vpn_ip: int) -> None:
        self.clear_ip(vpn_ip)
        self.clear_pending_deletion(vpn_ip)

    def handle_monitor_tick(self, now: datetime) -> None:
        """Check every watched host that came due; probe the ones that sent nothing back."""
        self.traffic_timer.advance(now.timestamp())
        while (vpn_ip := self.traffic_timer.purge()) is not None:
            traffic = self.check_in(vpn_ip)

            hostinfo = self._lookup(vpn_ip)
            if hostinfo is None:
                log.debug("Not found in hostmap: %s", _ip(vpn_ip))
                if not self.interface.disconnect_invalid:
                    self._forget(vpn_ip)
                    continue

            if self.handle_invalid_certificate(now, vpn_ip, hostinfo):
                continue

            if traffic:
                log.debug("Tunnel status: vpnIp=%s state=alive method=passive", _ip(vpn_ip))
                self._forget(vpn_ip)
                continue

            log.debug("Tunnel status: vpnIp=%s state=testing method=active", _ip(vpn_ip))
            if hostinfo is not None and hostinfo.connection_state is not None:
                # An authenticated test should shake out any lingering tunnel problems
                self.interface.send_message_to_vpn_ip(MessageType.TEST, TEST_REQUEST, vpn_ip, b"")
            else:
                log.debug("Hostinfo sadness: %s", _ip(vpn_ip))
            self.add_pending_deletion(vpn_ip)

    def handle_deletion_tick(self, now: datetime) -> None:
        """Delete tunnels that were probed and still sent nothing back."""
        self.pending_deletion_timer.advance(now.timestamp())
        while (vpn_ip := self.pending_deletion_timer.purge()) is not None:
            hostinfo = self._lookup(vpn_ip)
            if hostinfo is None:
                log.debug("Not found in hostmap: %s", _ip(vpn_ip))
                if not self.interface.disconnect_invalid:
                    self._forget(vpn_ip)
                    continue

            if self.handle_invalid_certificate(now, vpn_ip, hostinfo):
                continue

            if self.check_in(vpn_ip):
                log.debug("Tunnel status: vpnIp=%s state=alive method=active", _ip(vpn_ip))
                self._forget(vpn_ip)
                continue

            if self.is_pending_deletion(vpn_ip):
                cert = hostinfo.get_cert() if hostinfo is not None else None
                log.info(
                    "Tunnel status: vpnIp=%s state=dead method=active certName=%s",
                    _ip(vpn_ip),
                    cert.name if cert is not None else "",
                )
                self._forget(vpn_ip)
                lighthouse = getattr(self.interface, "lighthouse", None)
                if lighthouse is not None:
                    lighthouse.delete_vpn_ip(vpn_ip)
                if hostinfo is not None:
                    self.hostmap.delete_host_info(hostinfo)
            else:
                self._forget(vpn_ip)

    def handle_invalid_certificate(self, now: datetime, vpn_ip: int, hostinfo: HostInfo | None) -> bool:
        """Close the tunnel if invalid certificates disconnect and the peer's no longer verifies."""
        if not self.interface.disconnect_invalid or hostinfo is None:
            return False
        remote_cert = hostinfo.get_cert()
        if remote_cert is None:
            return False
        if remote_cert.verify(now, self.interface.ca_pool):
            return False

        log.info(
            "Remote certificate is no longer valid, tearing down the tunnel: "
            "vpnIp=%s certName=%s fingerprint=%s",
            _ip(vpn_ip),
            remote_cert.name,
            remote_cert.fingerprint(),
        )
        self.interface.send_close_tunnel(hostinfo)
        self.interface.close_tunnel(hostinfo, False)
        self._forget(vpn_ip)
        return True

    def start(self) -> None:
        """Run both checks every half second in a background thread."""
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="connection-manager", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join()
            self._thread = None

    def _run(self) -> None:
        while not self._stop.wait(_TICK):
            now = datetime.now(timezone.utc)
            self.handle_monitor_tick(now)
            self.handle_deletion_tick(now)