"""Building blocks for an overlay network node: config, firewall, host maps, handshake retries, tunnel monitoring and DNS."""

__version__ = "0.1.0"