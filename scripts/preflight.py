"""Host readiness checks

Used by ``lnclear-ctl check`` for a human-readable report, and by install
to refuse to start on a host that cannot possibly work.
"""

import os
import platform
import re
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from command_runner import CommandRunner
from controller_config import SplitTunnelConfig
from controller_errors import DetectionFailed
from tunnel_adapter import TunnelPeerConfig

REQUIRED_TOOLS = ("ip", "nft", "wg", "wg-quick", "systemctl", "cgcreate")


@dataclass
class CheckItem:
    name: str
    ok: bool
    detail: str = ""


@dataclass
class PreflightReport:
    items: List[CheckItem] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return all(item.ok for item in self.items)

    def add(self, name: str, ok: bool, detail: str = "") -> None:
        self.items.append(CheckItem(name, ok, detail))


def parse_kernel_version(release: str) -> Tuple[int, ...]:
    """'5.10.102-v8+' -> (5, 10, 102)"""
    match = re.match(r'^(\d+)\.(\d+)(?:\.(\d+))?', release)
    if not match:
        return ()
    return tuple(int(part or 0) for part in match.groups())


def missing_tools(runner: CommandRunner) -> List[str]:
    return [tool for tool in REQUIRED_TOOLS if not runner.has_tool(tool)]


def require_tools(runner: CommandRunner) -> None:
    """Raise DetectionFailed unless every required tool is installed"""
    missing = missing_tools(runner)
    if missing:
        raise DetectionFailed(f"required tools not found: {', '.join(missing)}")


def check(
    config: SplitTunnelConfig,
    runner: CommandRunner,
    tunnel_config: Optional[str] = None,
    kernel_release: Optional[str] = None,
) -> PreflightReport:
    report = PreflightReport()

    release = kernel_release or platform.release()
    version = parse_kernel_version(release)
    minimum = ".".join(str(v) for v in config.min_kernel)
    report.add("kernel", bool(version) and version >= tuple(config.min_kernel), f"{release} (need >= {minimum})")

    report.add("net_cls", os.path.isdir(config.cgroup_root), config.cgroup_root)

    missing = missing_tools(runner)
    report.add("tools", not missing, "missing: " + ", ".join(missing) if missing else "all present")

    if runner.has_tool("nft"):
        result = runner.query(["nft", "--version"])
        report.add("nftables", result.ok, result.stdout or result.stderr)

    if tunnel_config:
        try:
            peer = TunnelPeerConfig.from_file(tunnel_config)
        except DetectionFailed as e:
            report.add("tunnel config", False, str(e))
        else:
            report.add(
                "tunnel config",
                bool(peer.address and peer.endpoint_host),
                f"address={peer.address} endpoint={peer.endpoint_host}:{peer.endpoint_port}",
            )
            report.add(
                "advertised port",
                peer.advertised_port is not None,
                str(peer.advertised_port) if peer.advertised_port else "not found in config comments",
            )

    return report
