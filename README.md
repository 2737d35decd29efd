# overlaynet

Building blocks for a node in a certificate-authenticated overlay network.
It is a library to import. It has no command-line program.

## Modules

- `overlaynet.config`
  - `Config` loads YAML from a single file or from a directory. In a directory it
    reads the `.yaml` and `.yml` files in lexical order and merges them. Maps merge,
    lists from different files are appended, and otherwise later files win.
  - Typed getters take dotted keys: `get`, `get_string`, `get_int`, `get_bool`,
    `get_duration`, `get_string_slice`, `get_map` and `is_set`.
  - Reloading: `reload_config` and `reload_config_string` reload the settings,
    `register_reload_callback` adds a function called after each reload,
    `has_changed` reports what differs from before the last reload, and
    `catch_hup` reloads on SIGHUP.
  - `parse_duration` turns text such as `"1h30m"` into seconds. Errors raise
    `ConfigError`.
- `overlaynet.packet.Packet` is the frozen flow tuple: local and remote IPv4
  address as integers, ports, protocol and fragment flag. It has
  `to_dict`/`to_json`. The module also defines `PROTO_*` and `PORT_ANY` /
  `PORT_FRAGMENT`.
- `overlaynet.cache`
  - `ConntrackCacheTicker` hands out a set of flows that is emptied once per
    interval.
  - `new_conntrack_cache_ticker(0)` returns `None`, which disables the cache.
- `overlaynet.timers.TimerWheel` is a hashed timer wheel. The caller drives the
  clock with `advance(now)`, and `purge()` returns the expired items one at a time.
- `overlaynet.rules`
  - `parse_port` reads `any`, `fragment`, single ports and `start-end` ranges.
  - `convert_rule` turns a raw rule mapping into a `Rule`.
  - `add_firewall_rules_from_config` reads `firewall.inbound` or
    `firewall.outbound` into anything that has an `add_rule` method.
  - Invalid rules raise `FirewallConfigError`.
- `overlaynet.firewall`
  - `Firewall` holds inbound and outbound rule tables per protocol and port.
    Rules match on groups, host name, CIDR, CA name and CA fingerprint.
  - `Firewall.drop` returns when a packet may pass. Otherwise it raises
    `InvalidRemoteIPError`, `InvalidLocalIPError` or `NoMatchingRuleError`
    (all are `DropError`).
  - It does connection tracking with per-protocol timeouts, re-checks entries
    after a rules version change, and tracks TCP round-trip times.
  - Other members: `get_rule_hash` and `stats`.
  - `Certificate`, `CAPool` and `Peer` describe the certificates and hosts the
    firewall works with.
  - `new_firewall_from_config` builds a firewall from the `firewall.*` settings.
- `overlaynet.hostmap` provides `HostMap`, `HostInfo` and `RemoteList`.
  - `HostMap` indexes hosts by overlay address, local index and remote index.
  - `RemoteList` orders underlay addresses by preferred ranges first, then
    IPv6 before IPv4, then lexically. Addresses can be blocked.
  - A lookup that fails raises `HostNotFoundError`.
- `overlaynet.handshake_manager.HandshakeManager` keeps the pending host map and
  retries outbound handshakes with linear backoff until they time out.
  - `check_and_complete` settles handshake races. On a conflict it raises
    `AlreadySeenError`, `ExistingHostInfoError`, `LocalIndexCollisionError` or
    `ExistingHandshakeError`.
  - `complete` moves a host from the pending map to the main map.
- `overlaynet.connection_manager.ConnectionManager` records traffic in and out.
  - It probes hosts that have sent nothing back and deletes those that stay silent.
  - It can close tunnels whose peer certificate no longer verifies.
  - `start()`/`stop()` run the checks every half second in a thread.
- `overlaynet.control.Control` lists hosts and looks one up, returning detached
  `ControlHostInfo` snapshots. It can force a tunnel's remote, close one tunnel
  or all of them, and stop the node.
- `overlaynet.dns_server`
  - `DnsRecords` answers A queries from names added with `add`.
  - For requests from inside the overlay range or from `127.0.0.1` it also
    answers TXT queries with the peer's certificate details.
  - `DnsServer` serves these over UDP on `lighthouse.dns.host:lighthouse.dns.port`
    (default port 53). Its methods are `start`, `serve_forever`, `shutdown` and
    `reload`.

## Example

```python
import ipaddress

from overlaynet.config import Config
from overlaynet.firewall import Certificate, new_firewall_from_config

config = Config()
config.load_string("""
firewall:
  inbound:
    - port: any
      proto: any
      host: any
""")

certificate = Certificate(name="node1", ips=[ipaddress.IPv4Interface("10.0.0.1/24")])
firewall = new_firewall_from_config(certificate, config)
print(firewall.get_rule_hash())
```

## What it does not do

The package has no tunnel data path. The caller has to supply these:

- encryption and the handshake messages themselves;
- the virtual network device;
- the underlay UDP socket;
- lighthouse discovery;
- certificate parsing.

`HandshakeManager`, `ConnectionManager` and `Control` work against objects you
pass in. Their docstrings list the methods those objects need, for example
`write_to`, `query_cache`, `send_close_tunnel` and `close_tunnel`.

`Certificate.verify` checks only issuer and validity times. It does not check
signatures.

There is no command to start a node.

## Tests

```
pip install -e .[test]
pytest
```