"""Typed hook operations

The routing, filter and service steps are built as ordered lists of these
operations. The controller executes them directly through CommandRunner
(``argv()``); the tunnel adapter renders the very same lists into
wg-quick PostUp/PreDown/PostDown lines (``render()``).

Rendered lines are best-effort shell and must never contain ``#`` (wg-quick
drops everything after it) or ``%i`` (wg-quick substitutes it).
"""

import ipaddress
import shlex
from dataclasses import dataclass
from typing import List, Optional, Tuple

QUIET = "2>/dev/null || true"

# first token of `ip route show` lines that are not plain unicast routes
ROUTE_TYPES = ("unreachable", "blackhole", "prohibit", "throw", "local", "broadcast", "multicast")


@dataclass(frozen=True)
class PolicyRule:
    """One `ip rule` entry

    Attributes:
        selector: ("fwmark", "0x11") or ("from", "10.8.0.2") or ("from", "all")
        table: Table number or name the rule looks up
        suppress_prefixlength: Only set for the main-table rule
    """
    selector: Tuple[str, str]
    table: str
    suppress_prefixlength: Optional[int] = None

    def args(self) -> List[str]:
        args = list(self.selector) + ["table", self.table]
        if self.suppress_prefixlength is not None:
            args += ["suppress_prefixlength", str(self.suppress_prefixlength)]
        return args

    def listing(self) -> str:
        """The text `ip rule show` prints for this rule"""
        kind, value = self.selector
        if kind == "fwmark":
            text = f"from all fwmark {value} lookup {self.table}"
        else:
            text = f"from {value} lookup {self.table}"
        if self.suppress_prefixlength is not None:
            text += f" suppress_prefixlength {self.suppress_prefixlength}"
        return text


@dataclass(frozen=True)
class Route:
    """One route as `ip route` prints it"""
    dest: str
    via: Optional[str] = None
    dev: Optional[str] = None
    src: Optional[str] = None

    @classmethod
    def parse(cls, line: str) -> Optional["Route"]:
        """Parse a line of `ip route show`

        Returns:
            Route, or None for blank lines, non-unicast route types and
            the indented `nexthop` lines of a multipath route
        """
        tokens = line.split()
        if not tokens or tokens[0] in ROUTE_TYPES:
            return None
        if tokens[0] != "default":
            try:
                ipaddress.IPv4Network(tokens[0], strict=False)
            except ValueError:
                return None
        values = {}
        for key in ("via", "dev", "src"):
            if key in tokens:
                idx = tokens.index(key)
                if idx + 1 < len(tokens):
                    values[key] = tokens[idx + 1]
        return cls(dest=tokens[0], **values)

    @property
    def is_default(self) -> bool:
        return self.dest in ("default", "0.0.0.0/0")

    def args(self) -> List[str]:
        out = [self.dest]
        if self.via:
            out += ["via", self.via]
        if self.dev:
            out += ["dev", self.dev]
        if self.src:
            out += ["src", self.src]
        return out

    def __str__(self) -> str:
        return " ".join(self.args())


def _table_args(table: Optional[str]) -> List[str]:
    return ["table", table] if table else []


class HookOp:
    """Base for all operations

    ``removal`` ops are best-effort: absence of the target is success.
    """
    removal = False

    @property
    def step(self) -> str:
        raise NotImplementedError

    def argv(self) -> List[str]:
        raise NotImplementedError

    def input_text(self) -> Optional[str]:
        return None

    def render(self) -> str:
        return f"{shlex.join(self.argv())} {QUIET}"


@dataclass(frozen=True)
class AddRule(HookOp):
    rule: PolicyRule

    @property
    def step(self) -> str:
        return f"ip rule {self.rule.listing()}"

    def argv(self) -> List[str]:
        return ["ip", "rule", "add"] + self.rule.args()

    def render(self) -> str:
        # `ip rule add` happily duplicates, so check the listing first
        return (
            f"ip rule show | grep -qF {shlex.quote(self.rule.listing())} "
            f"|| {shlex.join(self.argv())} {QUIET}"
        )


@dataclass(frozen=True)
class DeleteRule(HookOp):
    rule: PolicyRule
    removal = True

    @property
    def step(self) -> str:
        return f"delete ip rule {self.rule.listing()}"

    def argv(self) -> List[str]:
        return ["ip", "rule", "del"] + self.rule.args()


@dataclass(frozen=True)
class AddRoute(HookOp):
    route: Route
    table: Optional[str] = None

    @property
    def step(self) -> str:
        where = f" table {self.table}" if self.table else ""
        return f"route {self.route}{where}"

    def argv(self) -> List[str]:
        return ["ip", "route", "add"] + self.route.args() + _table_args(self.table)


@dataclass(frozen=True)
class DeleteRoute(HookOp):
    route: Route
    table: Optional[str] = None
    removal = True

    @property
    def step(self) -> str:
        where = f" table {self.table}" if self.table else ""
        return f"delete route {self.route.dest}{where}"

    def argv(self) -> List[str]:
        return ["ip", "route", "del", self.route.dest] + _table_args(self.table)


@dataclass(frozen=True)
class FlushTable(HookOp):
    table: str
    removal = True

    @property
    def step(self) -> str:
        return f"flush table {self.table}"

    def argv(self) -> List[str]:
        return ["ip", "route", "flush", "table", self.table]


@dataclass(frozen=True)
class MirrorMainRoutes(HookOp):
    """Copy every non-default main-table route into ``table``

    Only rendered into hooks, so the copy is taken from the main table as
    it is each time the tunnel comes up. Direct callers expand it into
    concrete AddRoute ops instead.
    """
    table: str
    exclude_dev: str

    @property
    def step(self) -> str:
        return f"mirror main routes into table {self.table}"

    def argv(self) -> List[str]:
        raise TypeError("MirrorMainRoutes has no direct form; expand it into AddRoute ops")

    def normaliser(self) -> str:
        """awk filter that turns `ip route show` output into `ip route add` arguments

        Keeps dest plus via/dev/src, drops default and non-unicast types and
        routes on ``exclude_dev``, and folds the first hop of a multipath
        route into its destination line.
        """
        types = "|".join(("default",) + ROUTE_TYPES)
        program = (
            '$1=="nexthop"{if(h!=""){r=h;d="";'
            'for(i=2;i<NF;i++)if($i=="via"||$i=="dev"){r=r" "$i" "$(i+1);if($i=="dev")d=$(i+1)}'
            'if(d!=x)print r;h=""}next}'
            f'{{h="";if($1~/^({types})$/)next;r=$1;d="";v=0;'
            'for(i=2;i<NF;i++)if($i=="via"||$i=="dev"||$i=="src"){r=r" "$i" "$(i+1);'
            'if($i=="dev")d=$(i+1);if($i!="src")v=1}'
            'if(d==x)next;if(v)print r;else h=r}'
        )
        return f"awk -v x={shlex.quote(self.exclude_dev)} {shlex.quote(program)}"

    def render(self) -> str:
        return (
            f"ip route show table main | {self.normaliser()} "
            "| while read -r r; do "
            f"ip route add $r table {shlex.quote(self.table)} 2>/dev/null; "
            "done || true"
        )


@dataclass(frozen=True)
class ApplyNftScript(HookOp):
    path: str

    @property
    def step(self) -> str:
        return f"nft -f {self.path}"

    def argv(self) -> List[str]:
        return ["nft", "-f", self.path]


@dataclass(frozen=True)
class DeleteNftTable(HookOp):
    name: str
    family: str = "ip"
    removal = True

    @property
    def step(self) -> str:
        return f"delete nft table {self.family} {self.name}"

    def argv(self) -> List[str]:
        return ["nft", "delete", "table", self.family, self.name]


@dataclass(frozen=True)
class RegisterResolver(HookOp):
    interface: str
    nameserver: str

    @property
    def step(self) -> str:
        return f"register resolver {self.nameserver}"

    def argv(self) -> List[str]:
        return ["resolvconf", "-a", self.interface, "-m", "0", "-x"]

    def input_text(self) -> Optional[str]:
        return f"nameserver {self.nameserver}\n"

    def render(self) -> str:
        return (
            f"echo {shlex.quote('nameserver ' + self.nameserver)} "
            f"| {shlex.join(self.argv())} {QUIET}"
        )


@dataclass(frozen=True)
class UnregisterResolver(HookOp):
    interface: str
    removal = True

    @property
    def step(self) -> str:
        return "unregister resolver"

    def argv(self) -> List[str]:
        return ["resolvconf", "-d", self.interface, "-f"]


@dataclass(frozen=True)
class StartService(HookOp):
    service: str
    no_block: bool = True

    @property
    def step(self) -> str:
        return f"start {self.service}"

    def argv(self) -> List[str]:
        flags = ["--no-block"] if self.no_block else []
        return ["systemctl", "start"] + flags + [self.service]


@dataclass(frozen=True)
class StopService(HookOp):
    service: str
    removal = True

    @property
    def step(self) -> str:
        return f"stop {self.service}"

    def argv(self) -> List[str]:
        return ["systemctl", "stop", self.service]


def render_all(ops: List[HookOp]) -> List[str]:
    lines = [op.render() for op in ops]
    for line in lines:
        if "#" in line or "%i" in line:
            raise ValueError(f"hook line cannot be embedded in a wg-quick config: {line}")
    return lines


def run_ops(runner, ops: List[HookOp]) -> list:
    """Execute ops in order; additions raise on failure, removals never do"""
    results = []
    for op in ops:
        if op.removal:
            results.append(runner.remove(op.step, op.argv()))
        else:
            results.append(runner.apply(op.step, op.argv(), input_text=op.input_text()))
    return results
