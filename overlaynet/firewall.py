"""Stateful packet filter keyed on peer certificates."""

from __future__ import annotations

import hashlib
import ipaddress
import json
import logging
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone

from overlaynet.config import Config, _format_value
from overlaynet.packet import (
    PORT_ANY,
    PORT_FRAGMENT,
    PROTO_ANY,
    PROTO_ICMP,
    PROTO_TCP,
    PROTO_UDP,
    Packet,
)
from overlaynet.rules import add_firewall_rules_from_config
from overlaynet.timers import TimerWheel

log = logging.getLogger(__name__)

TCP_ACK = 0x10
TCP_FIN = 0x01

_RTT_SAMPLE_SIZE = 1028
_EPOCH = datetime.fromtimestamp(0, timezone.utc)
_ANY_V4 = ipaddress.IPv4Address(0)

IPNetwork = ipaddress.IPv4Network | ipaddress.IPv6Network


def _contains(networks, vpn_ip: int) -> bool:
    """Whether the IPv4 address ``vpn_ip`` falls in any of ``networks``."""
    addr = ipaddress.IPv4Address(vpn_ip)
    return any(net.version == 4 and addr in net for net in networks)


class DropError(Exception):
    """Raised when the firewall drops a packet; the message says why."""


class InvalidRemoteIPError(DropError):
    def __init__(self, message: str = "remote IP is not in remote certificate subnets") -> None:
        super().__init__(message)


class InvalidLocalIPError(DropError):
    def __init__(self, message: str = "local IP is not in list of handled local IPs") -> None:
        super().__init__(message)


class NoMatchingRuleError(DropError):
    def __init__(self, message: str = "no matching rule in firewall table") -> None:
        super().__init__(message)


@dataclass
class Certificate:
    """The parts of a peer or CA certificate the firewall works with."""

    name: str = ""
    ips: list[ipaddress.IPv4Interface] = field(default_factory=list)
    subnets: list[IPNetwork] = field(default_factory=list)
    groups: list[str] = field(default_factory=list)
    not_before: datetime = _EPOCH
    not_after: datetime = _EPOCH
    public_key: bytes = b""
    is_ca: bool = False
    issuer: str = ""
    signature: bytes = b""

    @property
    def inverted_groups(self) -> frozenset[str]:
        return frozenset(self.groups)

    def _expired(self, now: datetime) -> bool:
        return self.not_before > now or self.not_after < now

    def verify(self, now: datetime, ca_pool: CAPool) -> bool:
        """Whether a known, unexpired CA issued this certificate and it is valid at ``now``.

        Signatures are not checked here.
        """
        try:
            ca = ca_pool.get_ca_for_cert(self)
        except LookupError:
            return False
        if ca._expired(now):
            return False
        return not self._expired(now)

    def fingerprint(self) -> str:
        """Hex SHA-256 over a canonical encoding of the certificate."""
        details = {
            "name": self.name,
            "ips": [str(ip) for ip in self.ips],
            "subnets": [str(net) for net in self.subnets],
            "groups": list(self.groups),
            "notBefore": int(self.not_before.timestamp()),
            "notAfter": int(self.not_after.timestamp()),
            "publicKey": self.public_key.hex(),
            "isCA": self.is_ca,
            "issuer": self.issuer,
            "signature": self.signature.hex(),
        }
        encoded = json.dumps(details, sort_keys=True, separators=(",", ":")).encode()
        return hashlib.sha256(encoded).hexdigest()


@dataclass
class CAPool:
    """Trusted CA certificates keyed by fingerprint."""

    cas: dict[str, Certificate] = field(default_factory=dict)

    def get_ca_for_cert(self, certificate: Certificate) -> Certificate:
        if not certificate.issuer:
            raise LookupError("no issuer in certificate")
        try:
            return self.cas[certificate.issuer]
        except KeyError:
            raise LookupError("could not find ca for the certificate") from None


@dataclass
class Peer:
    """A remote host as the firewall sees it: its certificate and addresses."""

    certificate: Certificate | None = None
    vpn_ip: int = 0
    remote_cidr: tuple[IPNetwork, ...] | None = None

    @classmethod
    def from_certificate(cls, certificate: Certificate) -> Peer:
        """A peer whose address set comes from the certificate's ips and subnets."""
        vpn_ip = int(certificate.ips[0].ip) if certificate.ips else 0
        remote_cidr = None
        if not (len(certificate.ips) == 1 and not certificate.subnets):
            hosts = [ipaddress.ip_network(ip.ip) for ip in certificate.ips]
            remote_cidr = tuple(hosts + list(certificate.subnets))
        return cls(certificate=certificate, vpn_ip=vpn_ip, remote_cidr=remote_cidr)


@dataclass
class Conn:
    """A conntrack entry."""

    expires: float = 0.0
    sent: float = 0.0
    seq: int = 0
    incoming: bool = False
    rules_version: int = 0


class _Conntrack:
    def __init__(self, min_timeout: float, max_timeout: float) -> None:
        self.lock = threading.Lock()
        self.conns: dict[Packet, Conn] = {}
        self.timer_wheel = TimerWheel(min_timeout, max_timeout)


def _is_any(groups: list[str], host: str, ip: IPNetwork | None) -> bool:
    if not groups and host == "" and ip is None:
        return True
    if "any" in groups or host == "any":
        return True
    return ip is not None and ip.version == 4 and _ANY_V4 in ip


@dataclass
class FirewallRule:
    """Who a rule admits: anyone, or by group set, host name or remote address."""

    any: bool = False
    hosts: set[str] = field(default_factory=set)
    groups: list[list[str]] = field(default_factory=list)
    cidr: list[IPNetwork] = field(default_factory=list)

    def add_rule(self, groups: list[str], host: str, ip: IPNetwork | None) -> None:
        if self.any:
            return
        if _is_any(groups, host, ip):
            self.any = True
            self.groups = []
            self.hosts = set()
            self.cidr = []
            return
        if groups:
            self.groups.append(list(groups))
        if host:
            self.hosts.add(host)
        if ip is not None:
            self.cidr.append(ip)

    def match(self, packet: Packet, certificate: Certificate) -> bool:
        if self.any:
            return True
        held = certificate.inverted_groups
        for required in self.groups:
            if required and all(group in held for group in required):
                return True
        if certificate.name in self.hosts:
            return True
        return _contains(self.cidr, packet.remote_ip)


@dataclass
class FirewallCA:
    """Rules for one port, split by the CA that must have issued the peer."""

    any: FirewallRule | None = None
    ca_names: dict[str, FirewallRule] = field(default_factory=dict)
    ca_shas: dict[str, FirewallRule] = field(default_factory=dict)

    def add_rule(
        self, groups: list[str], host: str, ip: IPNetwork | None, ca_name: str, ca_sha: str
    ) -> None:
        if not ca_sha and not ca_name:
            if self.any is None:
                self.any = FirewallRule()
            self.any.add_rule(groups, host, ip)
            return
        if ca_sha:
            self.ca_shas.setdefault(ca_sha, FirewallRule()).add_rule(groups, host, ip)
        if ca_name:
            self.ca_names.setdefault(ca_name, FirewallRule()).add_rule(groups, host, ip)

    def match(self, packet: Packet, certificate: Certificate, ca_pool: CAPool) -> bool:
        if self.any is not None and self.any.match(packet, certificate):
            return True
        by_sha = self.ca_shas.get(certificate.issuer)
        if by_sha is not None and by_sha.match(packet, certificate):
            return True
        try:
            ca = ca_pool.get_ca_for_cert(certificate)
        except LookupError:
            return False
        by_name = self.ca_names.get(ca.name)
        return by_name is not None and by_name.match(packet, certificate)


def _add_port_rule(ports: dict[int, FirewallCA], start_port: int, end_port: int, groups, host, ip, ca_name, ca_sha) -> None:
    if start_port > end_port:
        raise ValueError("start port was lower than end port")
    for port in range(start_port, end_port + 1):
        ports.setdefault(port, FirewallCA()).add_rule(groups, host, ip, ca_name, ca_sha)


def _match_ports(ports: dict[int, FirewallCA], packet: Packet, incoming: bool, certificate, ca_pool) -> bool:
    if packet.fragment:
        port = PORT_FRAGMENT
    elif incoming:
        port = packet.local_port
    else:
        port = packet.remote_port
    for key in (port, PORT_ANY):
        ca = ports.get(key)
        if ca is not None and ca.match(packet, certificate, ca_pool):
            return True
    return False


@dataclass
class FirewallTable:
    """Port-indexed rules per protocol for one direction."""

    tcp: dict[int, FirewallCA] = field(default_factory=dict)
    udp: dict[int, FirewallCA] = field(default_factory=dict)
    icmp: dict[int, FirewallCA] = field(default_factory=dict)
    any_proto: dict[int, FirewallCA] = field(default_factory=dict)

    def _ports(self, proto: int) -> dict[int, FirewallCA] | None:
        return {
            PROTO_TCP: self.tcp,
            PROTO_UDP: self.udp,
            PROTO_ICMP: self.icmp,
            PROTO_ANY: self.any_proto,
        }.get(proto)

    def match(self, packet: Packet, incoming: bool, certificate: Certificate, ca_pool: CAPool) -> bool:
        if _match_ports(self.any_proto, packet, incoming, certificate, ca_pool):
            return True
        if packet.protocol == PROTO_ANY:
            return False
        ports = self._ports(packet.protocol)
        return ports is not None and _match_ports(ports, packet, incoming, certificate, ca_pool)


@dataclass
class _DirectionMetrics:
    dropped_local_ip: int = 0
    dropped_remote_ip: int = 0
    dropped_no_rule: int = 0


def set_tcp_rtt_tracking(conn: Conn, packet: bytes) -> None:
    """Remember the outgoing TCP sequence number so its ack can be timed."""
    if conn.seq != 0:
        return
    ihl = (packet[0] & 0x0F) << 2
    if packet[ihl + 13] & TCP_FIN:
        return
    conn.seq = int.from_bytes(packet[ihl + 4 : ihl + 8], "big")
    conn.sent = time.monotonic()


class Firewall:
    """Inbound and outbound rule tables plus connection tracking."""

    def __init__(
        self, tcp_timeout: float, udp_timeout: float, default_timeout: float, certificate: Certificate
    ) -> None:
        timeouts = (tcp_timeout, udp_timeout, default_timeout)
        self.conntrack = _Conntrack(min(timeouts), max(timeouts))
        self.in_rules = FirewallTable()
        self.out_rules = FirewallTable()
        self.tcp_timeout = tcp_timeout
        self.udp_timeout = udp_timeout
        self.default_timeout = default_timeout
        self.local_ips: list[IPNetwork] = [ipaddress.ip_network(ip.ip) for ip in certificate.ips]
        self.local_ips.extend(certificate.subnets)
        self.rules_version = 0
        self.tcp_rtt_samples: deque[int] = deque(maxlen=_RTT_SAMPLE_SIZE)
        self._rules = ""
        self._metrics = {True: _DirectionMetrics(), False: _DirectionMetrics()}

    def add_rule(
        self,
        incoming: bool,
        proto: int,
        start_port: int,
        end_port: int,
        groups: list[str] | None,
        host: str,
        ip: IPNetwork | None,
        ca_name: str,
        ca_sha: str,
    ) -> None:
        """Add a rule to the inbound or outbound table; raises ValueError if invalid."""
        groups = list(groups or [])
        sip = str(ip) if ip is not None else ""
        # The rule text feeds the rule hash, so its format must stay stable.
        self._rules += (
            f"incoming: {_format_value(incoming)}, proto: {proto}, startPort: {start_port}, "
            f"endPort: {end_port}, groups: {_format_value(groups)}, host: {host}, ip: {sip}, "
            f"caName: {ca_name}, caSha: {ca_sha}\n"
        )
        log.info(
            "Firewall rule added: %s",
            {
                "direction": "incoming" if incoming else "outgoing",
                "proto": proto,
                "startPort": start_port,
                "endPort": end_port,
                "groups": groups,
                "host": host,
                "ip": sip,
                "caName": ca_name,
                "caSha": ca_sha,
            },
        )
        table = self.in_rules if incoming else self.out_rules
        ports = table._ports(proto)
        if ports is None:
            raise ValueError(f"unknown protocol {proto}")
        _add_port_rule(ports, start_port, end_port, groups, host, ip, ca_name, ca_sha)

    def get_rule_hash(self) -> str:
        """Hex SHA-256 of every rule added so far."""
        return hashlib.sha256(self._rules.encode()).hexdigest()

    def drop(
        self,
        packet: bytes,
        fp: Packet,
        incoming: bool,
        peer: Peer,
        ca_pool: CAPool,
        local_cache: set[Packet] | None = None,
    ) -> None:
        """Return if the packet may pass, raise a :class:`DropError` otherwise."""
        if self._in_conns(packet, fp, incoming, peer, ca_pool, local_cache):
            return

        metrics = self._metrics[incoming]
        if peer.remote_cidr is not None:
            if not _contains(peer.remote_cidr, fp.remote_ip):
                metrics.dropped_remote_ip += 1
                raise InvalidRemoteIPError()
        elif fp.remote_ip != peer.vpn_ip:
            metrics.dropped_remote_ip += 1
            raise InvalidRemoteIPError()

        if not _contains(self.local_ips, fp.local_ip):
            metrics.dropped_local_ip += 1
            raise InvalidLocalIPError()

        table = self.in_rules if incoming else self.out_rules
        if not table.match(fp, incoming, peer.certificate, ca_pool):
            metrics.dropped_no_rule += 1
            raise NoMatchingRuleError()

        self._add_conn(packet, fp, incoming)

    def stats(self) -> dict[str, int]:
        with self.conntrack.lock:
            count = len(self.conntrack.conns)
        result = {"firewall.conntrack.count": count, "firewall.rules.version": self.rules_version}
        for incoming, direction in ((True, "incoming"), (False, "outgoing")):
            m = self._metrics[incoming]
            result[f"firewall.{direction}.dropped.local_ip"] = m.dropped_local_ip
            result[f"firewall.{direction}.dropped.remote_ip"] = m.dropped_remote_ip
            result[f"firewall.{direction}.dropped.no_rule"] = m.dropped_no_rule
        return result

    def check_tcp_rtt(self, conn: Conn, packet: bytes) -> bool:
        """Record a round trip if ``packet`` acks the tracked sequence number."""
        if conn.seq == 0:
            return False
        ihl = (packet[0] & 0x0F) << 2
        if not packet[ihl + 13] & TCP_ACK:
            return False
        ack = int.from_bytes(packet[ihl + 8 : ihl + 12], "big")
        # As a signed 32 bit difference: zero or positive means nothing new was acked
        if (conn.seq - ack) & 0xFFFFFFFF < 0x80000000:
            return False
        self.tcp_rtt_samples.append(round((time.monotonic() - conn.sent) * 1_000_000_000))
        conn.seq = 0
        return True

    def _timeout_for(self, protocol: int) -> float:
        if protocol == PROTO_TCP:
            return self.tcp_timeout
        if protocol == PROTO_UDP:
            return self.udp_timeout
        return self.default_timeout

    def _in_conns(self, packet, fp, incoming, peer, ca_pool, local_cache) -> bool:
        if local_cache is not None and fp in local_cache:
            return True

        ct = self.conntrack
        with ct.lock:
            now = time.monotonic()
            ct.timer_wheel.advance(now)
            expired = ct.timer_wheel.purge()
            if expired is not None:
                self._evict(expired, now)

            conn = ct.conns.get(fp)
            if conn is None:
                return False

            if conn.rules_version != self.rules_version:
                table = self.in_rules if conn.incoming else self.out_rules
                if not table.match(fp, conn.incoming, peer.certificate, ca_pool):
                    log.debug(
                        "dropping old conntrack entry, does not match new ruleset: %s "
                        "(incoming=%s, rulesVersion=%s, oldRulesVersion=%s)",
                        fp.to_dict(), conn.incoming, self.rules_version, conn.rules_version,
                    )
                    del ct.conns[fp]
                    return False
                log.debug(
                    "keeping old conntrack entry, does match new ruleset: %s "
                    "(incoming=%s, rulesVersion=%s, oldRulesVersion=%s)",
                    fp.to_dict(), conn.incoming, self.rules_version, conn.rules_version,
                )
                conn.rules_version = self.rules_version

            conn.expires = now + self._timeout_for(fp.protocol)
            if fp.protocol == PROTO_TCP:
                if incoming:
                    self.check_tcp_rtt(conn, packet)
                else:
                    set_tcp_rtt_tracking(conn, packet)

        if local_cache is not None:
            local_cache.add(fp)
        return True

    def _add_conn(self, packet: bytes, fp: Packet, incoming: bool) -> None:
        timeout = self._timeout_for(fp.protocol)
        conn = Conn()
        if fp.protocol == PROTO_TCP and not incoming:
            set_tcp_rtt_tracking(conn, packet)

        ct = self.conntrack
        with ct.lock:
            now = time.monotonic()
            if fp not in ct.conns:
                ct.timer_wheel.advance(now)
                ct.timer_wheel.add(fp, timeout)
            conn.incoming = incoming
            conn.rules_version = self.rules_version
            conn.expires = now + timeout
            ct.conns[fp] = conn

    def _evict(self, fp: Packet, now: float) -> None:
        """Drop an expired entry or reschedule a live one; caller holds the lock."""
        ct = self.conntrack
        conn = ct.conns.get(fp)
        if conn is None:
            return
        remaining = conn.expires - now
        if remaining > 0:
            ct.timer_wheel.add(fp, remaining)
            return
        del ct.conns[fp]


def new_firewall_from_config(certificate: Certificate, config: Config) -> Firewall:
    """Build a firewall from the ``firewall.*`` settings."""
    fw = Firewall(
        config.get_duration("firewall.conntrack.tcp_timeout", 12 * 60.0),
        config.get_duration("firewall.conntrack.udp_timeout", 3 * 60.0),
        config.get_duration("firewall.conntrack.default_timeout", 10 * 60.0),
        certificate,
    )
    add_firewall_rules_from_config(False, config, fw)
    add_firewall_rules_from_config(True, config, fw)
    return fw