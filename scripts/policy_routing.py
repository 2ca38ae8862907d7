"""Policy routing manager

Owns the split-tunnel routing table and the three `ip rule` entries that
select it:

    (a) fwmark 0x11           -> table 211
    (b) from <tunnel address> -> table 211
    (c) from all              -> main, suppress_prefixlength 0

Table 211 holds a default route via the tunnel device, a mirror of every
non-default main-table route (so LAN traffic from the classified group
stays local) and an optional host route for a bypass host.
"""

import ipaddress
from typing import List, Optional, Tuple

from command_runner import CommandRunner
from controller_config import SplitTunnelConfig
from controller_errors import DetectionFailed
from hook_ops import (
    AddRoute,
    AddRule,
    DeleteRule,
    FlushTable,
    HookOp,
    MirrorMainRoutes,
    PolicyRule,
    Route,
    run_ops,
)
from log_config import get_logger

logger = get_logger("lnclear.routing")

# `ip rule del` removes one matching entry per call
MAX_RULE_DELETES = 10


def select_route(routes: List[Route], address: str) -> Optional[Route]:
    """Longest-prefix match of address against routes

    Args:
        routes: Routes of one table
        address: Destination IPv4 address

    Returns:
        The route the kernel would pick, or None
    """
    target = ipaddress.IPv4Address(address)
    best = None
    best_len = -1
    for route in routes:
        dest = "0.0.0.0/0" if route.is_default else route.dest
        try:
            network = ipaddress.IPv4Network(dest, strict=False)
        except ValueError:
            continue
        if target in network and network.prefixlen > best_len:
            best = route
            best_len = network.prefixlen
    return best


class PolicyRoutingManager:
    """Apply and remove the split-tunnel routing table and rules"""

    def __init__(self, config: SplitTunnelConfig, runner: CommandRunner):
        self.config = config
        self.runner = runner
        self._table = str(config.table)

    # -- rules -------------------------------------------------------------

    def rules(self, tunnel_address: Optional[str] = None) -> List[PolicyRule]:
        """Rules in install order: fwmark, source address, main suppression"""
        rules = [PolicyRule(("fwmark", self.config.fwmark_hex), self._table)]
        if tunnel_address:
            rules.append(PolicyRule(("from", tunnel_address), self._table))
        rules.append(PolicyRule(("from", "all"), "main", suppress_prefixlength=0))
        return rules

    def rule_exists(self, rule: PolicyRule) -> bool:
        result = self.runner.query(["ip", "rule", "show"])
        if not result.ok:
            return False
        return any(rule.listing() in line for line in result.stdout.splitlines())

    # -- main table --------------------------------------------------------

    def read_main_routes(self) -> List[Route]:
        """Read the main routing table

        Raises:
            DetectionFailed: when `ip route show` fails
        """
        result = self.runner.query(["ip", "route", "show", "table", "main"])
        if not result.ok:
            raise DetectionFailed(f"cannot read main routing table: {result.stderr or result.returncode}")
        routes = []
        for line in result.stdout.splitlines():
            route = Route.parse(line)
            if route is not None:
                routes.append(route)
            elif line.split()[:1] == ["nexthop"] and routes and not (routes[-1].via or routes[-1].dev):
                # multipath: keep the first hop
                hop = Route.parse(line.replace("nexthop", routes[-1].dest, 1))
                routes[-1] = Route(routes[-1].dest, hop.via, hop.dev, routes[-1].src)
        return routes

    def mirrorable_routes(self, main_routes: List[Route]) -> List[Route]:
        """Non-default main-table routes that do not point into the tunnel"""
        return [
            r for r in main_routes
            if not r.is_default and r.dev != self.config.interface
        ]

    def default_gateway(self, main_routes: Optional[List[Route]] = None) -> Tuple[Optional[str], Optional[str]]:
        """Return (gateway, device) of the main default route, if any"""
        if main_routes is None:
            main_routes = self.read_main_routes()
        for route in main_routes:
            if route.is_default and route.dev != self.config.interface:
                return route.via, route.dev
        return None, None

    # -- plans -------------------------------------------------------------

    def plan_up(
        self,
        tunnel_address: Optional[str] = None,
        local_gateway: Optional[str] = None,
        local_device: Optional[str] = None,
        bypass_host: Optional[str] = None,
        mirror: Optional[List[Route]] = None,
    ) -> List[HookOp]:
        """Ordered operations for steps (a) to (f)

        Args:
            mirror: Concrete routes to copy; None emits a MirrorMainRoutes op
                that copies the main table when the hook runs
        """
        ops: List[HookOp] = [AddRule(rule) for rule in self.rules(tunnel_address)]
        ops.append(AddRoute(Route("default", dev=self.config.interface), self._table))
        if mirror is None:
            ops.append(MirrorMainRoutes(self._table, self.config.interface))
        else:
            ops.extend(AddRoute(route, self._table) for route in mirror)
        if bypass_host and local_gateway and local_device:
            ops.append(AddRoute(Route(f"{bypass_host}/32", via=local_gateway, dev=local_device), self._table))
        return ops

    def plan_down(self, tunnel_address: Optional[str] = None) -> List[HookOp]:
        """Rules (b), (a), (c) removed, then the whole table flushed"""
        rules = self.rules(tunnel_address)
        if tunnel_address:
            ordered = [rules[1], rules[0], rules[2]]
        else:
            ordered = rules
        ops: List[HookOp] = [DeleteRule(rule) for rule in ordered]
        ops.append(FlushTable(self._table))
        return ops

    # -- direct execution --------------------------------------------------

    def apply_routing(
        self,
        tunnel_address: Optional[str] = None,
        local_gateway: Optional[str] = None,
        local_device: Optional[str] = None,
        bypass_host: Optional[str] = None,
    ) -> None:
        """Install rules and routes; safe to call repeatedly

        Raises:
            DetectionFailed: main table unreadable, or bypass host without a
                local gateway; nothing has been changed in either case
            ExternalToolFailed: an addition failed for a real reason
        """
        main_routes = self.read_main_routes()
        if bypass_host and not (local_gateway and local_device):
            local_gateway, local_device = self.default_gateway(main_routes)
            if not (local_gateway and local_device):
                raise DetectionFailed(f"no local gateway for bypass host {bypass_host}")

        mirror = self.mirrorable_routes(main_routes)
        for op in self.plan_up(tunnel_address, local_gateway, local_device, bypass_host, mirror=mirror):
            if isinstance(op, AddRule) and self.rule_exists(op.rule):
                logger.debug(f"{op.step}: already present")
                continue
            run_ops(self.runner, [op])
        logger.info(f"Routing applied: table {self._table}, {len(mirror)} local routes mirrored")

    def teardown_routing(self, tunnel_address: Optional[str] = None) -> None:
        """Remove the rules and flush the table; never raises"""
        for op in self.plan_down(tunnel_address):
            if isinstance(op, DeleteRule):
                for _ in range(MAX_RULE_DELETES):
                    if not self.rule_exists(op.rule):
                        break
                    self.runner.remove(op.step, op.argv())
            elif isinstance(op, FlushTable):
                self._delete_stale_rules()
                self.runner.remove(op.step, op.argv())
        logger.info(f"Routing removed: table {self._table}")

    def _delete_stale_rules(self) -> None:
        # source rules for a tunnel address we no longer know about
        for priority in self.stale_rule_priorities():
            self.runner.remove(f"delete ip rule {priority}", ["ip", "rule", "del", "priority", priority])

    def stale_rule_priorities(self) -> List[str]:
        """Priorities of any remaining rules that look up our table"""
        result = self.runner.query(["ip", "rule", "show"])
        if not result.ok:
            return []
        priorities = []
        for line in result.stdout.splitlines():
            prio, _, body = line.partition(":")
            if body.strip().endswith(f"lookup {self._table}") and prio.strip().isdigit():
                priorities.append(prio.strip())
        return priorities

    # -- read back ---------------------------------------------------------

    def table_routes(self) -> List[Route]:
        result = self.runner.query(["ip", "route", "show", "table", self._table])
        if not result.ok:
            return []
        return [r for r in (Route.parse(line) for line in result.stdout.splitlines()) if r]

    def local_bypass_routes(self) -> List[Route]:
        """Routes in the table other than the tunnel default"""
        return [
            r for r in self.table_routes()
            if not r.is_default and r.dev != self.config.interface
        ]

