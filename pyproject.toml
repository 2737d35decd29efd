[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "overlaynet"
version = "0.1.0"
description = "Building blocks for a certificate-authenticated overlay network node: config, firewall, host maps, handshake retries, tunnel monitoring and DNS."
requires-python = ">=3.10"
keywords = ["overlay", "vpn", "firewall", "conntrack", "handshake", "dns", "timer-wheel"]
classifiers = [
    "Development Status :: 3 - Alpha",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: System :: Networking",
    "Topic :: Software Development :: Libraries :: Python Modules",
]
dependencies = [
    "pyyaml",
    "dnspython",
]

[project.optional-dependencies]
test = [
    "pytest",
]

[tool.hatch.build.targets.wheel]
packages = ["overlaynet"]

[tool.pytest.ini_options]
addopts = "-ra"
