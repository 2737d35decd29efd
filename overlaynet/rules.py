"""Parsing of firewall rule definitions from configuration."""

from __future__ import annotations

import ipaddress
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Protocol

from overlaynet.config import Config, _format_value
from overlaynet.packet import (
    PORT_ANY,
    PORT_FRAGMENT,
    PROTO_ANY,
    PROTO_ICMP,
    PROTO_TCP,
    PROTO_UDP,
)

log = logging.getLogger(__name__)

_INTEGER = re.compile(r"[+-]?\d+")

_PROTOCOLS = {
    "any": PROTO_ANY,
    "tcp": PROTO_TCP,
    "udp": PROTO_UDP,
    "icmp": PROTO_ICMP,
}

IPNetwork = ipaddress.IPv4Network | ipaddress.IPv6Network


class FirewallConfigError(ValueError):
    """Raised when a firewall rule definition is invalid."""


class RuleSink(Protocol):
    """Anything that accepts rules the way a firewall does."""

    def add_rule(
        self,
        incoming: bool,
        proto: int,
        start_port: int,
        end_port: int,
        groups: list[str],
        host: str,
        ip: IPNetwork | None,
        ca_name: str,
        ca_sha: str,
    ) -> None: ...


@dataclass
class Rule:
    """One firewall rule as written in configuration, all fields as text."""

    port: str = ""
    code: str = ""
    proto: str = ""
    host: str = ""
    group: str = ""
    groups: list[str] = field(default_factory=list)
    cidr: str = ""
    ca_name: str = ""
    ca_sha: str = ""


def _text(raw: dict, key: str) -> str:
    if key not in raw:
        return ""
    value = raw[key]
    if value is None:
        return "<nil>"
    return _format_value(value)


def _parse_int(text: str) -> int | None:
    return int(text) if _INTEGER.fullmatch(text) else None


def parse_port(text: str) -> tuple[int, int]:
    """Parse ``any``, ``fragment``, a single port or a ``start-end`` range."""
    if text == "any":
        return PORT_ANY, PORT_ANY
    if text == "fragment":
        return PORT_FRAGMENT, PORT_FRAGMENT

    if "-" in text:
        first, second = (part.strip(" ") for part in text.split("-", 1))
        if not first or not second:
            raise FirewallConfigError(f"appears to be a range but could not be parsed; `{text}`")
        start = _parse_int(first)
        if start is None:
            raise FirewallConfigError(f"beginning range was not a number; `{first}`")
        end = _parse_int(second)
        if end is None:
            raise FirewallConfigError(f"ending range was not a number; `{second}`")
        if start == PORT_ANY:
            end = PORT_ANY
        return start, end

    port = _parse_int(text)
    if port is None:
        raise FirewallConfigError(f"was not a number; `{text}`")
    return port, port


def convert_rule(raw: Any, table: str, index: int) -> Rule:
    """Turn one raw rule mapping into a :class:`Rule`."""
    if not isinstance(raw, dict):
        raise FirewallConfigError("could not parse rule")

    rule = Rule(
        port=_text(raw, "port"),
        code=_text(raw, "code"),
        proto=_text(raw, "proto"),
        host=_text(raw, "host"),
        cidr=_text(raw, "cidr"),
        ca_name=_text(raw, "ca_name"),
        ca_sha=_text(raw, "ca_sha"),
    )

    group = raw.get("group")
    if isinstance(group, (list, tuple)):
        if len(group) > 1:
            raise FirewallConfigError(
                "group should contain a single value, an array with more than one entry was provided"
            )
        log.warning(
            "%s rule #%s; group was an array with a single value, converting to simple value",
            table,
            index,
        )
        rule.group = _format_value(group[0]) if group else ""
    else:
        rule.group = _text(raw, "group")

    if "groups" in raw:
        groups = raw["groups"]
        if isinstance(groups, (list, tuple)):
            if not all(isinstance(g, str) for g in groups):
                raise FirewallConfigError("groups should only contain strings")
            rule.groups = list(groups)
        elif isinstance(groups, str):
            rule.groups = [groups]
        else:
            rule.groups = [_format_value(groups)]

    return rule


def _parse_cidr(text: str) -> IPNetwork:
    if "/" not in text:
        raise ValueError(f"invalid CIDR address: {text}")
    try:
        return ipaddress.ip_network(text, strict=False)
    except ValueError:
        raise ValueError(f"invalid CIDR address: {text}") from None


def add_firewall_rules_from_config(inbound: bool, config: Config, firewall: RuleSink) -> None:
    """Add every rule under ``firewall.inbound`` or ``firewall.outbound`` to ``firewall``."""
    table = "firewall.inbound" if inbound else "firewall.outbound"

    raw_rules = config.get(table)
    if raw_rules is None:
        return
    if not isinstance(raw_rules, (list, tuple)):
        raise FirewallConfigError(f"{table} failed to parse, should be an array of rules")

    for index, raw in enumerate(raw_rules):
        prefix = f"{table} rule #{index};"
        try:
            rule = convert_rule(raw, table, index)
        except FirewallConfigError as exc:
            raise FirewallConfigError(f"{prefix} {exc}") from exc

        if rule.code and rule.port:
            raise FirewallConfigError(f"{prefix} only one of port or code should be provided")

        if not (rule.host or rule.groups or rule.group or rule.cidr or rule.ca_name or rule.ca_sha):
            raise FirewallConfigError(
                f"{prefix} at least one of host, group, cidr, ca_name, or ca_sha must be provided"
            )

        groups = list(rule.groups)
        if rule.group:
            if groups:
                raise FirewallConfigError(
                    f"{prefix} only one of group or groups should be defined, both provided"
                )
            groups = [rule.group]

        port_kind, port_text = ("code", rule.code) if rule.code else ("port", rule.port)
        try:
            start_port, end_port = parse_port(port_text)
        except FirewallConfigError as exc:
            raise FirewallConfigError(f"{prefix} {port_kind} {exc}") from exc

        proto = _PROTOCOLS.get(rule.proto)
        if proto is None:
            raise FirewallConfigError(f"{prefix} proto was not understood; `{rule.proto}`")

        network = None
        if rule.cidr:
            try:
                network = _parse_cidr(rule.cidr)
            except ValueError as exc:
                raise FirewallConfigError(f"{prefix} cidr did not parse; {exc}") from exc

        try:
            firewall.add_rule(
                inbound, proto, start_port, end_port, groups, rule.host, network, rule.ca_name, rule.ca_sha
            )
        except ValueError as exc:
            raise FirewallConfigError(f"{prefix} `{exc}`") from exc