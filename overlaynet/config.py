"""Layered YAML configuration with typed accessors and reload support."""

from __future__ import annotations

import logging
import os
import re
import signal
import threading
from typing import Any, Callable

import yaml

log = logging.getLogger(__name__)

_DURATION_UNITS_NS = {
    "ns": 1,
    "us": 1_000,
    "µs": 1_000,
    "μs": 1_000,
    "ms": 1_000_000,
    "s": 1_000_000_000,
    "m": 60_000_000_000,
    "h": 3_600_000_000_000,
}
_DURATION_COMPONENT = re.compile(r"(\d*)(?:\.(\d*))?(ns|us|µs|μs|ms|h|m|s)")
_INTEGER = re.compile(r"[+-]?\d+")
_TRUE_WORDS = {"1", "t", "true"}
_FALSE_WORDS = {"0", "f", "false"}


class ConfigError(ValueError):
    """Raised when configuration cannot be found or parsed."""


def parse_duration(text: str) -> float:
    """Parse a duration such as ``"1h30m"`` or ``"250ms"`` into seconds."""
    s = text
    if not s:
        raise ValueError(f"invalid duration {text!r}")
    negative = s[0] == "-"
    if s[0] in "+-":
        s = s[1:]
    if s == "0":
        return 0.0
    if not s:
        raise ValueError(f"invalid duration {text!r}")

    total_ns = 0.0
    pos = 0
    while pos < len(s):
        match = _DURATION_COMPONENT.match(s, pos)
        if match is None:
            raise ValueError(f"invalid duration {text!r}")
        whole, frac, unit = match.groups()
        if not whole and not frac:
            raise ValueError(f"invalid duration {text!r}")
        scale = _DURATION_UNITS_NS[unit]
        total_ns += int(whole or "0") * scale
        if frac:
            total_ns += float("0." + frac) * scale
        pos = match.end()

    seconds = total_ns / 1_000_000_000
    return -seconds if negative else seconds


def _format_value(value: Any) -> str:
    """Render a settings value the way the configuration format prints it."""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float):
        if value.is_integer() and abs(value) < 1e21:
            return str(int(value))
        return repr(value)
    if isinstance(value, (list, tuple)):
        return "[" + " ".join(_format_value(v) for v in value) + "]"
    if isinstance(value, dict):
        items = sorted(value.items(), key=lambda kv: str(kv[0]))
        return "map[" + " ".join(f"{_format_value(k)}:{_format_value(v)}" for k, v in items) + "]"
    return str(value)


def _extension(path: str) -> str:
    name = os.path.basename(path)
    dot = name.rfind(".")
    return name[dot:] if dot >= 0 else ""


def _merge(dst: dict, src: dict) -> dict:
    """Fill ``dst`` from ``src``: maps merge, lists concatenate, ``dst`` wins otherwise."""
    for key, value in src.items():
        if key not in dst or dst[key] is None:
            dst[key] = value
        elif isinstance(dst[key], dict) and isinstance(value, dict):
            _merge(dst[key], value)
        elif isinstance(dst[key], list) and isinstance(value, list):
            dst[key] = dst[key] + value
    return dst


def _load_yaml(text: str, source: str) -> dict:
    try:
        data = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"{source}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"{source}: expected a mapping at the top level, got {type(data).__name__}")
    return data


def _dump(value: Any, key: str, which: str) -> str:
    try:
        return yaml.dump(value, sort_keys=True)
    except (yaml.YAMLError, TypeError) as exc:
        log.error("Error while marshaling %s config for %s: %s", which, key, exc)
        return ""


class Config:
    """Settings loaded from one YAML file or a directory of them."""

    def __init__(self) -> None:
        self.settings: dict = {}
        self.old_settings: dict | None = None
        self.path: str = ""
        self.files: list[str] = []
        self._callbacks: list[Callable[[Config], None]] = []
        self._reload_lock = threading.RLock()

    def load(self, path: str) -> None:
        """Load every yaml file under ``path``, merged in lexical order."""
        self.path = path
        self.files = []
        self._resolve(path, direct=True)
        if not self.files:
            raise ConfigError(f"no config files found at {path}")
        self.files.sort()
        self._parse()

    def load_string(self, raw: str) -> None:
        if raw == "":
            raise ConfigError("Empty configuration")
        self.settings = _load_yaml(raw, "<string>")

    def register_reload_callback(self, callback: Callable[[Config], None]) -> None:
        """Call ``callback`` with this config after every successful reload."""
        self._callbacks.append(callback)

    def has_changed(self, key: str) -> bool:
        """Whether ``key`` (or everything, when empty) differs from before the last reload."""
        if self.old_settings is None:
            return False
        if key == "":
            new, old, key = self.settings, self.old_settings, "all settings"
        else:
            new = self._lookup(key, self.settings)
            old = self._lookup(key, self.old_settings)
        return _dump(new, key, "new") != _dump(old, key, "old")

    def catch_hup(self):
        """Reload the configuration on SIGHUP; returns the previous handler."""
        sighup = getattr(signal, "SIGHUP", None)
        if sighup is None:
            raise ConfigError("SIGHUP is not available on this platform")

        def handler(signum, frame):
            log.info("Caught HUP, reloading config")
            self.reload_config()

        return signal.signal(sighup, handler)

    def reload_config(self) -> None:
        """Reload from the original path; errors are logged and the old settings kept."""
        with self._reload_lock:
            self.old_settings = dict(self.settings)
            try:
                self.load(self.path)
            except (ConfigError, OSError) as exc:
                log.error("Error occurred while reloading config at %s: %s", self.path, exc)
                return
            for callback in self._callbacks:
                callback(self)

    def reload_config_string(self, raw: str) -> None:
        with self._reload_lock:
            self.old_settings = dict(self.settings)
            self.load_string(raw)
            for callback in self._callbacks:
                callback(self)

    def get_string(self, key: str, default: str) -> str:
        value = self.get(key)
        if value is None:
            return default
        return _format_value(value)

    def get_string_slice(self, key: str, default: list[str]) -> list[str]:
        value = self.get(key)
        if not isinstance(value, (list, tuple)):
            return default
        return [_format_value(v) for v in value]

    def get_map(self, key: str, default: dict) -> dict:
        value = self.get(key)
        if not isinstance(value, dict):
            return default
        return value

    def get_int(self, key: str, default: int) -> int:
        text = self.get_string(key, str(default))
        if not _INTEGER.fullmatch(text):
            return default
        return int(text)

    def get_bool(self, key: str, default: bool) -> bool:
        text = self.get_string(key, _format_value(default)).lower()
        if text in _TRUE_WORDS or text in ("y", "yes"):
            return True
        if text in _FALSE_WORDS or text in ("n", "no"):
            return False
        return default

    def get_duration(self, key: str, default: float) -> float:
        """Duration in seconds for ``key``, or ``default`` if missing or invalid."""
        try:
            return parse_duration(self.get_string(key, ""))
        except ValueError:
            return default

    def get(self, key: str) -> Any:
        return self._lookup(key, self.settings)

    def is_set(self, key: str) -> bool:
        return self._lookup(key, self.settings) is not None

    @staticmethod
    def _lookup(key: str, value: Any) -> Any:
        for part in key.split("."):
            if not isinstance(value, dict) or part not in value:
                return None
            value = value[part]
        return value

    def _resolve(self, path: str, direct: bool) -> None:
        if not os.path.exists(path):
            return
        if not os.path.isdir(path):
            self._add_file(path, direct)
            return
        try:
            names = sorted(os.listdir(path))
        except OSError as exc:
            raise ConfigError(f"problem while reading directory {path}: {exc}") from exc
        for name in names:
            self._resolve(os.path.join(path, name), direct=False)

    def _add_file(self, path: str, direct: bool) -> None:
        if not direct and _extension(path) not in (".yaml", ".yml"):
            return
        self.files.append(os.path.abspath(path))

    def _parse(self) -> None:
        merged: dict = {}
        for path in self.files:
            with open(path, encoding="utf-8") as fh:
                data = _load_yaml(fh.read(), path)
            merged = _merge(data, merged)
        self.settings = merged