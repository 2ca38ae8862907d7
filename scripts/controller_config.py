#!/usr/bin/env python3
"""Controller configuration

All the constants the routing rules, the classifier and the filter chains
must agree on live in one frozen ``SplitTunnelConfig`` that is handed to
every component constructor. Defaults match earlier lnclear releases so an
existing install keeps working.

Overrides, in increasing priority:
    1. YAML file (``--config`` or LNCLEAR_CONFIG), keys named after the fields
    2. LNCLEAR_WIREGUARD_DIR / LNCLEAR_STATE_DIR / LNCLEAR_SYSTEMD_DIR /
       LNCLEAR_CGROUP_ROOT environment variables

Example YAML:
    fwmark: 0x11
    table: 211
    service_port: 9735
    private_ranges: [10.0.0.0/8, 172.16.0.0/12, 192.168.0.0/16]
"""

import dataclasses
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import yaml

from controller_errors import ValidationFailed
from input_validation import validate_network

VERSION = "1.5.0"

DEFAULT_PRIVATE_RANGES = ("10.0.0.0/8", "172.16.0.0/12", "192.168.0.0/16")

VARIANTS = ("lnd", "cln", "lit")

ENV_OVERRIDES = {
    "wireguard_dir": "LNCLEAR_WIREGUARD_DIR",
    "state_dir": "LNCLEAR_STATE_DIR",
    "systemd_dir": "LNCLEAR_SYSTEMD_DIR",
    "cgroup_root": "LNCLEAR_CGROUP_ROOT",
}


@dataclass(frozen=True)
class SplitTunnelConfig:
    """Shared constants for one split-tunnel install"""
    interface: str = "lnclear"
    fwmark: int = 0x11
    table: int = 211
    classid: int = 0x00110011
    cgroup_name: str = "lnclear"
    nft_table: str = "lnclear"
    unit_prefix: str = "lnclear"
    service_port: int = 9735
    private_ranges: Tuple[str, ...] = DEFAULT_PRIVATE_RANGES
    # Tables and units left behind by older releases
    legacy_nft_tables: Tuple[str, ...] = ("lnclear_killswitch",)
    legacy_units: Tuple[str, ...] = ("lnclear.slice",)

    wireguard_dir: str = "/etc/wireguard"
    state_dir: str = "/etc/lnclear"
    systemd_dir: str = "/etc/systemd/system"
    cgroup_root: str = "/sys/fs/cgroup/net_cls"
    backup_suffix: str = ".lnclear-backup"

    # seconds
    attach_delay: float = 3.0
    settle_delay: float = 2.0
    active_check_delay: float = 5.0
    command_timeout: float = 30.0
    stop_timeout: int = 30
    network_timeout: float = 5.0
    ip_echo_url: str = "https://api.ipify.org"

    min_kernel: Tuple[int, ...] = (5, 10, 102)

    @property
    def fwmark_hex(self) -> str:
        return f"0x{self.fwmark:x}"

    @property
    def classid_hex(self) -> str:
        return f"0x{self.classid:08x}"

    @property
    def tunnel_unit(self) -> str:
        return f"wg-quick@{self.interface}.service"

    @property
    def cgroup_unit(self) -> str:
        return f"{self.unit_prefix}-cgroup.service"

    @property
    def killswitch_unit(self) -> str:
        return f"{self.unit_prefix}-killswitch.service"

    @property
    def drop_in_name(self) -> str:
        return f"{self.unit_prefix}.conf"

    @property
    def tunnel_config_path(self) -> Path:
        return Path(self.wireguard_dir) / f"{self.interface}.conf"

    @property
    def state_file(self) -> Path:
        return Path(self.state_dir) / "state.conf"

    @property
    def ruleset_script(self) -> Path:
        return Path(self.state_dir) / "ruleset.nft"

    @property
    def killswitch_script(self) -> Path:
        return Path(self.state_dir) / "killswitch.nft"

    @property
    def cgroup_dir(self) -> Path:
        return Path(self.cgroup_root) / self.cgroup_name


@dataclass(frozen=True)
class NodeEnvironment:
    """Resolved description of the node being protected

    Built once by the caller (CLI flags, or an external detection step)
    and threaded through the controller unchanged.
    """
    platform: str
    variant: str
    service: str
    protected_config: str
    tunnel_source: str
    bypass_host: Optional[str] = None
    extra: Dict[str, str] = field(default_factory=dict)


def _coerce(name: str, current: Any, value: Any) -> Any:
    if isinstance(current, bool):
        return bool(value)
    if isinstance(current, int):
        try:
            return int(value, 0) if isinstance(value, str) else int(value)
        except (TypeError, ValueError):
            raise ValidationFailed(name, str(value), "expected an integer")
    if isinstance(current, float):
        try:
            return float(value)
        except (TypeError, ValueError):
            raise ValidationFailed(name, str(value), "expected a number")
    if isinstance(current, tuple):
        if isinstance(value, str):
            value = [value]
        if not isinstance(value, (list, tuple)):
            raise ValidationFailed(name, str(value), "expected a list")
        if name == "private_ranges":
            return tuple(validate_network(str(v), name) for v in value)
        if name == "min_kernel":
            return tuple(int(v) for v in value)
        return tuple(str(v) for v in value)
    return str(value)


def apply_overrides(config: SplitTunnelConfig, overrides: Dict[str, Any]) -> SplitTunnelConfig:
    """Return a copy of config with the given field overrides

    Raises:
        ValidationFailed: for unknown keys or badly typed values
    """
    known = {f.name: f for f in dataclasses.fields(SplitTunnelConfig)}
    changes = {}
    for key, value in overrides.items():
        if key not in known:
            raise ValidationFailed("config", key, "unknown configuration key")
        changes[key] = _coerce(key, getattr(config, key), value)
    return dataclasses.replace(config, **changes)


def load_config(path: Optional[str] = None) -> SplitTunnelConfig:
    """Build the controller configuration

    Args:
        path: YAML file to read; falls back to LNCLEAR_CONFIG, missing is fine

    Returns:
        SplitTunnelConfig
    """
    config = SplitTunnelConfig()

    path = path or os.environ.get("LNCLEAR_CONFIG")
    if path and Path(path).is_file():
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
        if not isinstance(data, dict):
            raise ValidationFailed("config", path, "top level must be a mapping")
        config = apply_overrides(config, data)

    env = {
        key: os.environ[var]
        for key, var in ENV_OVERRIDES.items()
        if os.environ.get(var)
    }
    if env:
        config = apply_overrides(config, env)

    return config
