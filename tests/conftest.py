"""
Pytest configuration and fixtures for lnclear tests.

``FakeHost`` stands in for the privileged tools (ip, nft, systemctl,
cgcreate, wg) by overriding ``CommandRunner.run`` and keeping their state
in memory, so lifecycle properties can be checked without root.
"""

import shutil
import sys
import time
from pathlib import Path
from typing import Dict, Generator, List, Optional

import pytest

# Add scripts directory to path for imports
SCRIPTS_DIR = Path(__file__).parent.parent / "scripts"
sys.path.insert(0, str(SCRIPTS_DIR))

from command_runner import CommandResult, CommandRunner  # noqa: E402
from controller_config import NodeEnvironment, SplitTunnelConfig  # noqa: E402
from hook_ops import Route  # noqa: E402


DEFAULT_MAIN_ROUTES = [
    "default via 192.168.1.1 dev eth0 proto dhcp src 192.168.1.10 metric 100",
    "192.168.1.0/24 dev eth0 proto kernel scope link src 192.168.1.10",
]

TUNNEL_CONFIG = """\
[Interface]
PrivateKey = aGVsbG8gd29ybGQgaGVsbG8gd29ybGQgaGVsbG8gd28=
Address = 10.8.0.2/32
DNS = 10.8.0.1
# Your Lightning port: 9736
# Your clearnet IP: 203.0.113.5
PostUp = echo legacy-hook

[Peer]
PublicKey = cGVlcnBlZXJwZWVycGVlcnBlZXJwZWVycGVlcnBlZXI=
Endpoint = 203.0.113.5:51820
AllowedIPs = 0.0.0.0/0
PersistentKeepalive = 25
"""

LND_CONFIG = """\
[Application Options]
alias=mynode
listen=0.0.0.0:9735
externalhosts=old.example.com:9735

[Bitcoind]
bitcoind.rpchost=192.168.1.20:8332

[Tor]
tor.streamisolation=true
"""


def _rule_listing(tokens: List[str]) -> str:
    args = dict(zip(tokens[::2], tokens[1::2]))
    table = args.get("table", "main")
    if "fwmark" in args:
        text = f"from all fwmark {args['fwmark']} lookup {table}"
    else:
        text = f"from {args.get('from', 'all')} lookup {table}"
    if "suppress_prefixlength" in args:
        text += f" suppress_prefixlength {args['suppress_prefixlength']}"
    return text


class FakeHost(CommandRunner):
    """In-memory emulation of the host's routing, nft and systemd state"""

    def __init__(self, config: SplitTunnelConfig, main_routes: Optional[List[str]] = None):
        super().__init__()
        self.config = config
        self.calls: List[str] = []
        self.rules: List[List] = []  # [priority, listing]
        # raw `ip route show` lines, printed as-is for the main table
        self.main_listing = list(main_routes or DEFAULT_MAIN_ROUTES)
        self.tables: Dict[str, List[Route]] = {
            "main": [r for r in map(Route.parse, self.main_listing) if r is not None],
        }
        self.links = {"lo", "eth0"}
        self.nft: Dict[str, Dict[str, List[str]]] = {}
        self.active: Dict[str, int] = {}
        self.enabled = set()
        self.failures: Dict[str, str] = {}
        self.missing_tools = set()
        self.tunnel_address = "10.8.0.2"
        self._next_pid = 4000

    # -- helpers for tests ---------------------------------------------------

    def fail(self, prefix: str, stderr: str = "Operation not permitted") -> None:
        self.failures[prefix] = stderr

    def routes(self, table) -> List[Route]:
        return list(self.tables.get(str(table), []))

    def rule_listings(self) -> List[str]:
        return [listing for _, listing in self.rules]

    def index(self, prefix: str) -> int:
        for i, call in enumerate(self.calls):
            if call.startswith(prefix):
                return i
        raise AssertionError(f"no call starting with {prefix!r}")

    def has_tool(self, name: str) -> bool:
        return name not in self.missing_tools

    # -- dispatch ------------------------------------------------------------

    def run(self, argv, input_text=None, timeout=None) -> CommandResult:
        argv = [str(a) for a in argv]
        line = " ".join(argv)
        self.calls.append(line)
        for prefix, stderr in self.failures.items():
            if line.startswith(prefix):
                return CommandResult(argv, 1, "", stderr)
        handler = {
            "ip": self._ip,
            "nft": self._nft,
            "systemctl": self._systemctl,
            "cgcreate": self._cgcreate,
            "cgdelete": self._cgdelete,
            "wg": self._wg,
            "resolvconf": lambda a: self._ok(a),
        }.get(argv[0])
        if handler is None:
            return CommandResult(argv, 127, "", f"command not found: {argv[0]}")
        return handler(argv)

    @staticmethod
    def _ok(argv, stdout: str = "") -> CommandResult:
        return CommandResult(argv, 0, stdout, "")

    @staticmethod
    def _err(argv, stderr: str, code: int = 2) -> CommandResult:
        return CommandResult(argv, code, "", stderr)

    # -- ip ------------------------------------------------------------------

    def _ip(self, argv) -> CommandResult:
        if argv[1:3] == ["-4", "-o"]:
            dev = argv[-1]
            if dev not in self.links:
                return self._err(argv, f'Device "{dev}" does not exist.', 1)
            return self._ok(argv, f"7: {dev}    inet {self.tunnel_address}/32 scope global {dev}")
        obj, verb, rest = argv[1], argv[2], argv[3:]
        if obj == "rule":
            return self._ip_rule(argv, verb, rest)
        if obj == "route":
            return self._ip_route(argv, verb, rest)
        if obj == "link" and verb == "delete":
            if rest[0] not in self.links:
                return self._err(argv, "Cannot find device \"%s\"" % rest[0], 1)
            self.links.discard(rest[0])
            return self._ok(argv)
        return self._err(argv, "unsupported", 1)

    def _ip_rule(self, argv, verb, rest) -> CommandResult:
        if verb == "show":
            lines = ["0:\tfrom all lookup local"]
            lines += [f"{prio}:\t{listing}" for prio, listing in sorted(self.rules, key=lambda r: r[0])]
            lines += ["32766:\tfrom all lookup main", "32767:\tfrom all lookup default"]
            return self._ok(argv, "\n".join(lines))
        if verb == "add":
            # the kernel accepts duplicates
            prio = min([r[0] for r in self.rules] + [32766]) - 1
            self.rules.append([prio, _rule_listing(rest)])
            return self._ok(argv)
        if verb == "del":
            if rest[0] == "priority":
                matches = [r for r in self.rules if str(r[0]) == rest[1]]
            else:
                matches = [r for r in self.rules if r[1] == _rule_listing(rest)]
            if not matches:
                return self._err(argv, "RTNETLINK answers: No such file or directory")
            self.rules.remove(matches[0])
            return self._ok(argv)
        return self._err(argv, "unsupported", 1)

    def _ip_route(self, argv, verb, rest) -> CommandResult:
        table = "main"
        if "table" in rest:
            idx = rest.index("table")
            table = rest[idx + 1]
            rest = rest[:idx] + rest[idx + 2:]
        routes = self.tables.setdefault(table, [])
        if verb == "show":
            if table == "main":
                return self._ok(argv, "\n".join(self.main_listing))
            return self._ok(argv, "\n".join(str(r) for r in routes))
        if verb == "flush":
            routes.clear()
            return self._ok(argv)
        if verb == "add":
            route = Route.parse(" ".join(rest))
            if route is None:
                return self._err(argv, "Error: inet prefix is expected rather than \"%s\"." % rest[0], 1)
            if not (route.via or route.dev):
                return self._err(argv, "RTNETLINK answers: Invalid argument", 1)
            if route.dev and route.dev not in self.links:
                return self._err(argv, "Cannot find device \"%s\"" % route.dev, 1)
            if any(r.dest == route.dest for r in routes):
                return self._err(argv, "RTNETLINK answers: File exists")
            routes.append(route)
            if table == "main":
                self.main_listing.append(str(route))
            return self._ok(argv)
        if verb == "del":
            matches = [r for r in routes if r.dest == rest[0]]
            if not matches:
                return self._err(argv, "RTNETLINK answers: No such process")
            routes.remove(matches[0])
            if table == "main":
                self.main_listing = [l for l in self.main_listing if l.split()[:1] != [rest[0]]]
            return self._ok(argv)
        return self._err(argv, "unsupported", 1)

    # -- nft -----------------------------------------------------------------

    def _nft(self, argv) -> CommandResult:
        if argv[1] == "--version":
            return self._ok(argv, "nftables v1.0.6 (Lester Gooch #5)")
        if argv[1] == "-f":
            return self._nft_script(argv, Path(argv[2]).read_text())
        if argv[1] == "delete" and argv[2] == "table":
            if argv[4] not in self.nft:
                return self._err(argv, "Error: No such file or directory", 1)
            del self.nft[argv[4]]
            return self._ok(argv)
        if argv[1] == "list" and argv[2] == "table":
            chains = self.nft.get(argv[4])
            if chains is None:
                return self._err(argv, "Error: No such file or directory", 1)
            out = [f"table ip {argv[4]} {{"]
            for name, rules in chains.items():
                out.append(f"\tchain {name} {{")
                out += [f"\t\t{rule}" for rule in rules]
                out.append("\t}")
            out.append("}")
            return self._ok(argv, "\n".join(out))
        return self._err(argv, "unsupported", 1)

    def _nft_script(self, argv, script: str) -> CommandResult:
        staged = {name: {c: list(r) for c, r in chains.items()} for name, chains in self.nft.items()}
        for raw in script.splitlines():
            tokens = raw.split()
            if not tokens:
                continue
            verb, kind, table = tokens[0], tokens[1], tokens[3]
            if kind == "table":
                staged.setdefault(table, {})
                continue
            if table not in staged:
                return self._err(argv, f"Error: No such file or directory; table {table}", 1)
            chain = tokens[4]
            if verb == "add" and kind == "chain":
                staged[table].setdefault(chain, [])
            elif verb == "flush" and kind == "chain":
                staged[table][chain] = []
            elif verb == "add" and kind == "rule":
                staged[table][chain].append(" ".join(tokens[5:]))
        self.nft = staged
        return self._ok(argv)

    # -- systemctl -----------------------------------------------------------

    def _systemctl(self, argv) -> CommandResult:
        verb = argv[1]
        unit = argv[-1]
        if verb == "daemon-reload":
            return self._ok(argv)
        if verb == "start":
            if unit == self.config.tunnel_unit:
                self.links.add(self.config.interface)
            if unit not in self.active:
                self._next_pid += 1
                self.active[unit] = self._next_pid
            return self._ok(argv)
        if verb == "stop":
            if unit == self.config.tunnel_unit:
                self.links.discard(self.config.interface)
            self.active.pop(unit, None)
            return self._ok(argv)
        if verb == "restart":
            self._systemctl(["systemctl", "stop", unit])
            return self._systemctl(["systemctl", "start", unit])
        if verb == "enable":
            self.enabled.add(unit)
            if "--now" in argv:
                self._systemctl(["systemctl", "start", unit])
            return self._ok(argv)
        if verb == "disable":
            self.enabled.discard(unit)
            return self._ok(argv)
        if verb == "is-active":
            return self._ok(argv) if unit in self.active else self._err(argv, "", 3)
        if verb == "show":
            return self._ok(argv, str(self.active.get(unit, 0)))
        if verb == "cat":
            unit_file = Path(self.config.systemd_dir) / unit
            return self._ok(argv) if unit_file.exists() or unit in self.active else self._err(argv, "No files found", 1)
        return self._err(argv, "unsupported", 1)

    # -- cgroups -------------------------------------------------------------

    def _cgcreate(self, argv) -> CommandResult:
        name = argv[-1].split(":", 1)[1]
        group = Path(self.config.cgroup_root) / name
        group.mkdir(parents=True, exist_ok=True)
        (group / "tasks").touch()
        (group / "net_cls.classid").touch()
        return self._ok(argv)

    def _cgdelete(self, argv) -> CommandResult:
        name = argv[-1].split(":", 1)[1]
        group = Path(self.config.cgroup_root) / name
        if not group.exists():
            return self._err(argv, "cgdelete: cannot remove group: No such file or directory", 1)
        shutil.rmtree(group)
        return self._ok(argv)

    # -- wg ------------------------------------------------------------------

    def _wg(self, argv) -> CommandResult:
        iface = argv[2]
        if iface not in self.links:
            return self._err(argv, f"Unable to access interface: No such device", 1)
        if len(argv) == 3:
            return self._ok(argv, f"interface: {iface}")
        if argv[3] == "latest-handshakes":
            return self._ok(argv, f"cGVlcg==\t{int(time.time()) - 12}")
        if argv[3] == "endpoints":
            return self._ok(argv, "cGVlcg==\t203.0.113.5:51820")
        return self._err(argv, "unsupported", 1)


# -- fixtures ----------------------------------------------------------------


@pytest.fixture
def temp_dir(tmp_path: Path) -> Generator[Path, None, None]:
    """Per-test directory standing in for /etc, /sys and the node's files."""
    yield tmp_path


@pytest.fixture
def config(temp_dir: Path) -> SplitTunnelConfig:
    """Controller config rooted in the temp dir, with no settle delays."""
    cgroup_root = temp_dir / "sys" / "net_cls"
    cgroup_root.mkdir(parents=True)
    return SplitTunnelConfig(
        wireguard_dir=str(temp_dir / "wireguard"),
        state_dir=str(temp_dir / "lnclear"),
        systemd_dir=str(temp_dir / "systemd"),
        cgroup_root=str(cgroup_root),
        attach_delay=0,
        settle_delay=0,
        active_check_delay=0,
    )


@pytest.fixture
def host(config: SplitTunnelConfig) -> FakeHost:
    return FakeHost(config)


@pytest.fixture
def tunnel_source(temp_dir: Path) -> Path:
    path = temp_dir / "provider" / "lnclear.conf"
    path.parent.mkdir()
    path.write_text(TUNNEL_CONFIG)
    return path


@pytest.fixture
def lnd_conf(temp_dir: Path) -> Path:
    path = temp_dir / "lnd" / "lnd.conf"
    path.parent.mkdir()
    path.write_text(LND_CONFIG)
    return path


@pytest.fixture
def node_env(tunnel_source: Path, lnd_conf: Path) -> NodeEnvironment:
    return NodeEnvironment(
        platform="linux",
        variant="lnd",
        service="lnd",
        protected_config=str(lnd_conf),
        tunnel_source=str(tunnel_source),
    )


@pytest.fixture
def no_sleep():
    return lambda seconds: None
