"""The flow tuple the firewall tracks."""

from __future__ import annotations

import dataclasses
import ipaddress
import json
from dataclasses import dataclass

PROTO_ANY = 0  # HOPOPT (0) is not handled, so 0 means "any"
PROTO_TCP = 6
PROTO_UDP = 17
PROTO_ICMP = 1

PORT_ANY = 0  # matches `port: any`
PORT_FRAGMENT = -1  # matches `port: fragment`

_PROTO_NAMES = {PROTO_TCP: "tcp", PROTO_ICMP: "icmp", PROTO_UDP: "udp"}


def _ip_str(vpn_ip: int) -> str:
    return str(ipaddress.IPv4Address(vpn_ip))


@dataclass(frozen=True)
class Packet:
    """A flow: IPv4 addresses as integers, ports, protocol and fragment flag."""

    local_ip: int = 0
    remote_ip: int = 0
    local_port: int = 0
    remote_port: int = 0
    protocol: int = 0
    fragment: bool = False

    def copy(self) -> Packet:
        return dataclasses.replace(self)

    def to_dict(self) -> dict:
        proto = _PROTO_NAMES.get(self.protocol, f"unknown {self.protocol}")
        return {
            "LocalIP": _ip_str(self.local_ip),
            "RemoteIP": _ip_str(self.remote_ip),
            "LocalPort": self.local_port,
            "RemotePort": self.remote_port,
            "Protocol": proto,
            "Fragment": self.fragment,
        }

    def to_json(self) -> str:
        return json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))