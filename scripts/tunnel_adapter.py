"""WireGuard (wg-quick) tunnel adapter

Parses the peer config handed out by the tunnel provider, rewrites it into
``/etc/wireguard/lnclear.conf`` with ``Table = off`` and a generated hook
block, and drives the ``wg-quick@lnclear`` unit.

The hook block sits between fixed markers so it can be stripped and
regenerated on every install:

    # BEGIN LNCLEAR HOOKS
    PostUp = ...
    PreDown = ...
    PostDown = ...
    # END LNCLEAR HOOKS
"""

import os
import re
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from command_runner import CommandRunner
from controller_config import SplitTunnelConfig
from controller_errors import DetectionFailed
from hook_ops import (
    AddRoute,
    ApplyNftScript,
    DeleteRoute,
    HookOp,
    RegisterResolver,
    Route,
    StartService,
    StopService,
    UnregisterResolver,
    render_all,
)
from log_config import get_logger
from policy_routing import PolicyRoutingManager
from service_manager import ServiceManager

logger = get_logger("lnclear.tunnel")

HOOK_BEGIN = "# BEGIN LNCLEAR HOOKS"
HOOK_END = "# END LNCLEAR HOOKS"

HOOK_KEYS = ("PreUp", "PostUp", "PreDown", "PostDown")
LEGACY_HOOK_LINE = re.compile(r'^\s*(' + "|".join(HOOK_KEYS) + r')\s*=', re.IGNORECASE)
TABLE_LINE = re.compile(r'^\s*Table\s*=', re.IGNORECASE)
PORT_COMMENT = re.compile(r'^#\s*(?:Your Lightning port:|LIGHTNING_PORT)\s*(\d+)', re.IGNORECASE)
HOST_COMMENT = re.compile(r'^#\s*Your clearnet IP:\s*(\S+)', re.IGNORECASE)


@dataclass
class TunnelPeerConfig:
    """What the controller needs from a wg-quick peer config"""
    address: Optional[str] = None
    prefix: Optional[int] = None
    endpoint_host: Optional[str] = None
    endpoint_port: Optional[int] = None
    dns: Optional[str] = None
    advertised_port: Optional[int] = None
    advertised_host: Optional[str] = None

    @classmethod
    def parse(cls, text: str) -> "TunnelPeerConfig":
        cfg = cls()
        for raw in text.splitlines():
            line = raw.strip()
            match = PORT_COMMENT.match(line)
            if match:
                cfg.advertised_port = int(match.group(1))
                continue
            match = HOST_COMMENT.match(line)
            if match:
                cfg.advertised_host = match.group(1)
                continue
            if line.startswith("#") or "=" not in line:
                continue
            key, _, value = line.partition("=")
            key = key.strip().lower()
            value = value.strip()
            if key == "address" and cfg.address is None:
                first = value.split(",")[0].strip()
                addr, _, prefix = first.partition("/")
                if ":" in addr:
                    continue
                cfg.address = addr
                cfg.prefix = int(prefix) if prefix.isdigit() else None
            elif key == "endpoint":
                host, _, port = value.rpartition(":")
                cfg.endpoint_host = host.strip("[]") or None
                cfg.endpoint_port = int(port) if port.isdigit() else None
            elif key == "dns" and cfg.dns is None:
                cfg.dns = value.split(",")[0].strip() or None
        if cfg.advertised_host is None:
            cfg.advertised_host = cfg.endpoint_host
        return cfg

    @classmethod
    def from_file(cls, path: str) -> "TunnelPeerConfig":
        try:
            text = Path(path).read_text()
        except OSError as e:
            raise DetectionFailed(f"cannot read tunnel config {path}: {e}")
        return cls.parse(text)


@dataclass
class HookSet:
    post_up: List[HookOp] = field(default_factory=list)
    pre_down: List[HookOp] = field(default_factory=list)
    post_down: List[HookOp] = field(default_factory=list)


class TunnelAdapter:
    """Config rewriting and unit control for the wg-quick interface"""

    def __init__(
        self,
        config: SplitTunnelConfig,
        runner: CommandRunner,
        services: ServiceManager,
        routing: PolicyRoutingManager,
    ):
        self.config = config
        self.runner = runner
        self.services = services
        self.routing = routing
        self.interface = config.interface

    # -- hooks -------------------------------------------------------------

    def generate_hooks(
        self,
        service: str,
        tunnel_address: Optional[str] = None,
        local_gateway: Optional[str] = None,
        local_device: Optional[str] = None,
        bypass_host: Optional[str] = None,
        dns_server: Optional[str] = None,
    ) -> HookSet:
        """Build up/down operation lists

        The service is started without blocking on up, because its unit
        requires this tunnel unit, and stopped before routing goes away.
        """
        hooks = HookSet()
        hooks.post_up.extend(self.routing.plan_up(tunnel_address, local_gateway, local_device, bypass_host))
        hooks.post_up.append(ApplyNftScript(str(self.config.ruleset_script)))
        dns_route = Route(f"{dns_server}/32", dev=self.interface) if dns_server else None
        if dns_route:
            hooks.post_up.append(AddRoute(dns_route, str(self.config.table)))
            hooks.post_up.append(RegisterResolver(self.interface, dns_server))
        hooks.post_up.append(StartService(service, no_block=True))

        hooks.pre_down.append(StopService(service))

        hooks.post_down.extend(self.routing.plan_down(tunnel_address))
        if dns_route:
            hooks.post_down.append(DeleteRoute(dns_route, str(self.config.table)))
            hooks.post_down.append(UnregisterResolver(self.interface))
        return hooks

    def render_hook_block(self, hooks: HookSet) -> List[str]:
        lines = [HOOK_BEGIN]
        lines += [f"PostUp = {cmd}" for cmd in render_all(hooks.post_up)]
        lines += [f"PreDown = {cmd}" for cmd in render_all(hooks.pre_down)]
        lines += [f"PostDown = {cmd}" for cmd in render_all(hooks.post_down)]
        lines.append(HOOK_END)
        return lines

    @staticmethod
    def strip_hooks(lines: List[str]) -> List[str]:
        """Drop our marker block and any hook lines left by older installs"""
        out = []
        inside = False
        for line in lines:
            stripped = line.strip()
            if stripped == HOOK_BEGIN:
                inside = True
                continue
            if stripped == HOOK_END:
                inside = False
                continue
            if inside:
                continue
            if LEGACY_HOOK_LINE.match(line) or "resolvconf" in line or stripped.startswith("'|"):
                continue
            out.append(line)
        return out

    def prepare_config_text(self, source_text: str, hooks: HookSet) -> str:
        """Rewrite a peer config: Table = off, fresh hook block before [Peer]"""
        lines = [l for l in self.strip_hooks(source_text.splitlines()) if not TABLE_LINE.match(l)]

        out: List[str] = []
        block = self.render_hook_block(hooks)
        inserted = False
        for line in lines:
            section = line.strip().lower()
            if section == "[peer]" and not inserted:
                while out and not out[-1].strip():
                    out.pop()
                out.extend(block)
                out.append("")
                inserted = True
            out.append(line)
            if section == "[interface]":
                out.append("Table = off")
        if not inserted:
            out.extend(block)
        return "\n".join(out).rstrip("\n") + "\n"

    def install_config(self, source: str, hooks: HookSet) -> Path:
        """Write the rewritten config to /etc/wireguard/<iface>.conf, mode 0600"""
        try:
            text = Path(source).read_text()
        except OSError as e:
            raise DetectionFailed(f"cannot read tunnel config {source}: {e}")
        dest = self.config.tunnel_config_path
        dest.parent.mkdir(parents=True, exist_ok=True)
        content = self.prepare_config_text(text, hooks)
        fd = os.open(dest, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w") as f:
            f.write(content)
        os.chmod(dest, 0o600)
        logger.info(f"Tunnel config written: {dest}")
        return dest

    def remove_config(self) -> bool:
        dest = self.config.tunnel_config_path
        if dest.exists():
            dest.unlink()
            logger.info(f"Tunnel config removed: {dest}")
            return True
        return False

    def configured_address(self) -> Optional[str]:
        """Address from the installed config, if it is still there"""
        dest = self.config.tunnel_config_path
        if not dest.exists():
            return None
        return TunnelPeerConfig.parse(dest.read_text()).address

    # -- unit control ------------------------------------------------------

    def bring_up(self) -> None:
        self.services.start(self.config.tunnel_unit)

    def bring_down(self) -> None:
        self.services.stop(self.config.tunnel_unit)

    def enable(self) -> None:
        self.services.enable(self.config.tunnel_unit)

    def disable(self) -> None:
        self.services.disable(self.config.tunnel_unit)

    def delete_link(self) -> None:
        self.runner.remove(f"delete link {self.interface}", ["ip", "link", "delete", self.interface])

    # -- live state --------------------------------------------------------

    def is_up(self) -> bool:
        return self.runner.query(["wg", "show", self.interface]).ok

    def local_address(self) -> Optional[str]:
        result = self.runner.query(["ip", "-4", "-o", "addr", "show", "dev", self.interface])
        if not result.ok:
            return None
        match = re.search(r'inet (\d+\.\d+\.\d+\.\d+)', result.stdout)
        return match.group(1) if match else None

    def latest_handshake(self) -> Optional[int]:
        """Seconds since the last handshake, None if never"""
        result = self.runner.query(["wg", "show", self.interface, "latest-handshakes"])
        if not result.ok:
            return None
        for line in result.stdout.splitlines():
            parts = line.split()
            if len(parts) == 2 and parts[1].isdigit() and int(parts[1]) > 0:
                return max(0, int(time.time()) - int(parts[1]))
        return None

    def endpoint_ip(self) -> Optional[str]:
        result = self.runner.query(["wg", "show", self.interface, "endpoints"])
        if not result.ok:
            return None
        for line in result.stdout.splitlines():
            parts = line.split()
            if len(parts) == 2 and ":" in parts[1]:
                return parts[1].rpartition(":")[0].strip("[]")
        return None
