"""nftables rule set for the split tunnel

Four chains in ``table ip lnclear``:

    prerouting  filter/prerouting  -151  restore conntrack mark
    output      route/output       -151  mark classified traffic, save to ct
    nat         nat/postrouting      99  kill switch, masquerade via tunnel
    input       filter/input         -1  only the service port in via tunnel

Scripts are rendered as one nft transaction (add table, add chain, flush
chain, add rules) and loaded with ``nft -f``, so re-applying replaces the
chain contents instead of appending duplicates.
"""

import ipaddress
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple

from command_runner import CommandRunner, Outcome
from controller_config import SplitTunnelConfig
from log_config import get_logger

logger = get_logger("lnclear.nft")

MARK_RESTORE = "prerouting"
MARK_SET = "output"
KILL_SWITCH = "nat"
PORT_ALLOWLIST = "input"

CHAIN_ORDER = (MARK_RESTORE, MARK_SET, KILL_SWITCH, PORT_ALLOWLIST)


@dataclass(frozen=True)
class ChainSpec:
    """One base chain with its hook point and rules"""
    name: str
    type: str
    hook: str
    priority: int
    rules: Tuple[str, ...] = field(default_factory=tuple)

    def header(self) -> str:
        return f"{{ type {self.type} hook {self.hook} priority {self.priority}; policy accept; }}"


class FilterRuleSet:
    """Render, load and remove the split-tunnel nftables table"""

    def __init__(self, config: SplitTunnelConfig, runner: CommandRunner):
        self.config = config
        self.runner = runner
        self.table = config.nft_table

    # -- chain definitions -------------------------------------------------

    def _private_set(self) -> str:
        return "{ " + ", ".join(self.config.private_ranges) + " }"

    def chains(self) -> List[ChainSpec]:
        iface = self.config.interface
        mark = self.config.fwmark_hex
        port = self.config.service_port
        return [
            ChainSpec(MARK_RESTORE, "filter", "prerouting", -151, (
                "meta mark set ct mark",
            )),
            ChainSpec(MARK_SET, "route", "output", -151, (
                f"meta cgroup {self.config.classid_hex} meta mark set {mark}",
                f"meta mark {mark} ct mark set meta mark",
            )),
            ChainSpec(KILL_SWITCH, "nat", "postrouting", 99, (
                f'oifname != "{iface}" meta mark {mark} ip daddr != {self._private_set()} drop',
                f'oifname "{iface}" masquerade',
            )),
            ChainSpec(PORT_ALLOWLIST, "filter", "input", -1, (
                f'iifname "{iface}" ct state established,related accept',
                f'iifname "{iface}" tcp dport {port} accept',
                f'iifname "{iface}" udp dport {port} accept',
                f'iifname "{iface}" drop',
            )),
        ]

    def kill_switch_chains(self) -> List[ChainSpec]:
        """The mark-set chain plus the kill switch, usable before the tunnel exists"""
        return [c for c in self.chains() if c.name in (MARK_SET, KILL_SWITCH)]

    def render_script(self, chains: List[ChainSpec]) -> str:
        family_table = f"ip {self.table}"
        lines = [f"add table {family_table}"]
        for chain in chains:
            lines.append(f"add chain {family_table} {chain.name} {chain.header()}")
            lines.append(f"flush chain {family_table} {chain.name}")
            for rule in chain.rules:
                lines.append(f"add rule {family_table} {chain.name} {rule}")
        return "\n".join(lines) + "\n"

    # -- scripts on disk ---------------------------------------------------

    def write_scripts(self) -> Tuple[Path, Path]:
        """Write ruleset.nft and killswitch.nft under the state directory"""
        state_dir = Path(self.config.state_dir)
        state_dir.mkdir(parents=True, exist_ok=True)
        os.chmod(state_dir, 0o700)
        ruleset = self.config.ruleset_script
        killswitch = self.config.killswitch_script
        ruleset.write_text(self.render_script(self.chains()))
        killswitch.write_text(self.render_script(self.kill_switch_chains()))
        return ruleset, killswitch

    # -- kernel state ------------------------------------------------------

    def ensure_chains(self) -> None:
        """Load all four chains; replaces existing contents atomically

        Raises:
            ExternalToolFailed: nft rejected the script
        """
        script = self.config.ruleset_script
        if not script.exists():
            self.write_scripts()
        self.runner.apply("nft ruleset", ["nft", "-f", str(script)])
        logger.info(f"nft table ip {self.table}: {len(CHAIN_ORDER)} chains loaded")

    def ensure_kill_switch(self) -> None:
        """Load the mark and kill-switch chains only"""
        script = self.config.killswitch_script
        if not script.exists():
            self.write_scripts()
        self.runner.apply("nft kill switch", ["nft", "-f", str(script)])
        logger.info(f"Kill switch loaded in table ip {self.table}")

    def teardown(self, include_legacy: bool = True) -> Outcome:
        """Delete the whole table, and tables older releases used"""
        result = self.runner.remove(f"delete nft table {self.table}", ["nft", "delete", "table", "ip", self.table])
        if include_legacy:
            for legacy in self.config.legacy_nft_tables:
                self.runner.remove(f"delete nft table {legacy}", ["nft", "delete", "table", "ip", legacy])
        return result.outcome

    def exists(self) -> bool:
        return self.runner.query(["nft", "list", "table", "ip", self.table]).ok

    def present_chains(self) -> List[str]:
        result = self.runner.query(["nft", "list", "table", "ip", self.table])
        if not result.ok:
            return []
        present = []
        for line in result.stdout.splitlines():
            tokens = line.split()
            if len(tokens) >= 2 and tokens[0] == "chain":
                present.append(tokens[1])
        return present

    def kill_switch_loaded(self) -> bool:
        chains = self.present_chains()
        return MARK_SET in chains and KILL_SWITCH in chains

    # -- boot unit ---------------------------------------------------------

    def kill_switch_unit(self) -> str:
        nft = shutil.which("nft") or "/usr/sbin/nft"
        return (
            "[Unit]\n"
            "Description=lnclear kill switch for classified traffic\n"
            "DefaultDependencies=no\n"
            f"Wants={self.config.cgroup_unit}\n"
            f"After={self.config.cgroup_unit}\n"
            "Before=network-pre.target\n"
            "Wants=network-pre.target\n"
            "\n"
            "[Service]\n"
            "Type=oneshot\n"
            "RemainAfterExit=yes\n"
            f"ExecStart={nft} -f {self.config.killswitch_script}\n"
            "\n"
            "[Install]\n"
            "WantedBy=network-pre.target\n"
        )

    # -- packet model ------------------------------------------------------

    def packet_mark(self, classid: Optional[int]) -> int:
        """Mark the output chain gives a packet from a process with classid"""
        return self.config.fwmark if classid == self.config.classid else 0

    def egress_verdict(self, mark: int, oifname: str, daddr: str) -> str:
        """Verdict of the nat chain for one outbound packet

        Returns:
            "drop", "masquerade" or "accept"
        """
        if oifname == self.config.interface:
            return "masquerade"
        if mark == self.config.fwmark and not self.is_private(daddr):
            return "drop"
        return "accept"

    def is_private(self, address: str) -> bool:
        addr = ipaddress.IPv4Address(address)
        return any(
            addr in ipaddress.IPv4Network(net, strict=False)
            for net in self.config.private_ranges
        )
