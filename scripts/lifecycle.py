"""Install / uninstall state machine

    ABSENT --install--> INSTALLING --> INSTALLED
    INSTALLED --install--> REINSTALLING --> INSTALLED
    INSTALLED --uninstall--> UNINSTALLING --> ABSENT

The state record is the only "installed" signal and is written after every
other install step succeeded. A failed step aborts the rest of the
sequence (or is only reported, per ``INSTALL_POLICY``) without rolling
back: every step is idempotent, so recovery is running install again.

Uninstall is best-effort throughout; the one strict rule is that the
protected service is stopped before routing and classification go away.
"""

import ipaddress
import shutil
import time
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Callable, Dict, List, Optional

from command_runner import CommandRunner
from controller_config import VARIANTS, NodeEnvironment, SplitTunnelConfig
from controller_errors import ControllerError, DetectionFailed, ValidationFailed
from input_validation import validate_hostname, validate_ipv4, validate_port, validate_service_name
from install_state import InstallState, StateStore
from log_config import get_logger
from nft_ruleset import FilterRuleSet
from policy_routing import PolicyRoutingManager
from preflight import PreflightReport, check as preflight_check, require_tools
from protected_config import ProtectedConfig
from reachability import outbound_ip, port_reachable
from service_manager import ServiceManager
from traffic_classifier import TrafficClassifier
from tunnel_adapter import TunnelAdapter, TunnelPeerConfig

logger = get_logger("lnclear.lifecycle")

# services older releases attached drop-ins to
LEGACY_DROP_IN_SERVICES = ("lnd", "lightningd", "cln", "litd", "lit")


class LifecycleState(Enum):
    ABSENT = "absent"
    INSTALLING = "installing"
    INSTALLED = "installed"
    REINSTALLING = "reinstalling"
    UNINSTALLING = "uninstalling"


class FailurePolicy(Enum):
    ABORT = "abort"
    WARN = "warn"


INSTALL_POLICY: Dict[str, FailurePolicy] = {
    "reinstall cleanup": FailurePolicy.WARN,
    "tunnel config": FailurePolicy.ABORT,
    "classifier": FailurePolicy.ABORT,
    "kill switch": FailurePolicy.ABORT,
    "service drop-in": FailurePolicy.ABORT,
    "protected config": FailurePolicy.WARN,
    "tunnel up": FailurePolicy.ABORT,
    "routing": FailurePolicy.ABORT,
    "filter chains": FailurePolicy.ABORT,
    "service restart": FailurePolicy.WARN,
    "install state": FailurePolicy.ABORT,
}


@dataclass
class StepReport:
    step: str
    status: str
    detail: str = ""


@dataclass
class ProgressReport:
    """Per-step results of one install, uninstall or restart"""
    operation: str
    steps: List[StepReport] = field(default_factory=list)
    aborted_at: Optional[str] = None

    def ok(self, step: str, detail: str = "") -> None:
        self.steps.append(StepReport(step, "ok", detail))
        logger.info(f"[ok] {step}{': ' + detail if detail else ''}")

    def warn(self, step: str, detail: str) -> None:
        self.steps.append(StepReport(step, "warning", detail))
        logger.warning(f"[warn] {step}: {detail}")

    def fail(self, step: str, detail: str) -> None:
        self.steps.append(StepReport(step, "failed", detail))
        logger.error(f"[fail] {step}: {detail}")

    @property
    def issues(self) -> int:
        return sum(1 for s in self.steps if s.status != "ok")

    @property
    def success(self) -> bool:
        return self.aborted_at is None and not any(s.status == "failed" for s in self.steps)


@dataclass
class StatusReport:
    installed: bool
    state: Optional[Dict[str, str]] = None
    tunnel_up: bool = False
    tunnel_address: Optional[str] = None
    handshake_age: Optional[int] = None
    endpoint: Optional[str] = None
    local_routes: List[str] = field(default_factory=list)
    bypass_route: Optional[bool] = None
    bypass_verdict: Optional[str] = None
    kill_switch: bool = False
    chains: List[str] = field(default_factory=list)
    members: List[int] = field(default_factory=list)
    service_active: bool = False
    outbound_ip: Optional[str] = None
    expected_ip: Optional[str] = None
    port_open: Optional[bool] = None

    def to_dict(self) -> dict:
        return asdict(self)


class SplitTunnelController:
    """Drives routing, classifier, filter and tunnel through their lifecycle"""

    def __init__(
        self,
        config: SplitTunnelConfig,
        runner: Optional[CommandRunner] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.runner = runner or CommandRunner(config.command_timeout)
        self.sleep = sleep
        self.routing = PolicyRoutingManager(config, self.runner)
        self.filters = FilterRuleSet(config, self.runner)
        self.classifier = TrafficClassifier(config, self.runner, sleep)
        self.services = ServiceManager(config, self.runner)
        self.tunnel = TunnelAdapter(config, self.runner, self.services, self.routing)
        self.store = StateStore(config)
        self.phase = LifecycleState.INSTALLED if self.store.exists() else LifecycleState.ABSENT

    def current_state(self) -> LifecycleState:
        return LifecycleState.INSTALLED if self.store.exists() else LifecycleState.ABSENT

    # -- install -----------------------------------------------------------

    def _validate(self, env: NodeEnvironment, peer: TunnelPeerConfig) -> None:
        if env.variant not in VARIANTS:
            raise ValidationFailed("variant", env.variant, "expected lnd, cln or lit")
        validate_service_name(env.service, "service", required=True)
        validate_ipv4(peer.address, "tunnel address", required=True)
        validate_ipv4(peer.dns, "tunnel DNS")
        validate_hostname(peer.advertised_host, "advertised host", required=True)
        validate_port(peer.advertised_port, "advertised port", required=True)
        validate_ipv4(env.bypass_host, "bypass host")

    def _run_step(self, report: ProgressReport, step: str, action: Callable[[], Optional[str]]) -> bool:
        """Run one install step under its failure policy

        The action returns None on success or a warning message.

        Returns:
            False when the sequence must stop
        """
        try:
            warning = action()
        except (ControllerError, OSError) as e:
            if INSTALL_POLICY.get(step, FailurePolicy.ABORT) is FailurePolicy.ABORT:
                report.fail(step, str(e))
                report.aborted_at = step
                return False
            report.warn(step, str(e))
            return True
        if warning:
            report.warn(step, warning)
        else:
            report.ok(step)
        return True

    def install(self, env: NodeEnvironment) -> ProgressReport:
        """Install, or reinstall over an existing install

        Raises:
            ValidationFailed, DetectionFailed: before any change is made
        """
        peer = TunnelPeerConfig.from_file(env.tunnel_source)
        self._validate(env, peer)
        require_tools(self.runner)
        main_routes = self.routing.read_main_routes()
        gateway, device = self.routing.default_gateway(main_routes)
        if env.bypass_host and not (gateway and device):
            raise DetectionFailed(f"no local gateway found for bypass host {env.bypass_host}")

        previous = self.store.load()
        self.phase = LifecycleState.REINSTALLING if previous else LifecycleState.INSTALLING
        report = ProgressReport("reinstall" if previous else "install")
        logger.info(f"{report.operation}: {env.variant} service {env.service} via {self.config.interface}")

        steps = []
        if previous:
            steps.append(("reinstall cleanup", lambda: self._cleanup_previous(previous, env)))
        steps += [
            ("tunnel config", lambda: self._install_tunnel_config(env, peer, gateway, device)),
            ("classifier", self._install_classifier),
            ("kill switch", self._install_kill_switch),
            ("service drop-in", lambda: self._install_drop_in(env)),
            ("protected config", lambda: self._patch_protected(env, peer)),
            ("tunnel up", self._bring_tunnel_up),
            ("routing", lambda: self._apply_routing(env, peer, gateway, device)),
            ("filter chains", self.filters.ensure_chains),
            ("service restart", lambda: self._restart_service(env.service)),
        ]
        for step, action in steps:
            if not self._run_step(report, step, action):
                logger.error(f"{report.operation} aborted at '{step}'; run install again after fixing the cause")
                return report

        state = InstallState.for_environment(env, peer.advertised_host, peer.advertised_port)
        if self._run_step(report, "install state", lambda: self.store.save(state)):
            self.phase = LifecycleState.INSTALLED
        logger.info(f"{report.operation} finished with {report.issues} issue(s)")
        return report

    def _cleanup_previous(self, previous: InstallState, env: NodeEnvironment) -> Optional[str]:
        """Stop the service and remove whatever earlier versions created"""
        for service in {previous.service, env.service} - {""}:
            self.services.stop(service)
        # the installed config still carries the old Address
        self.routing.teardown_routing(self.tunnel.configured_address())
        for unit in (self.config.cgroup_unit, self.config.killswitch_unit) + tuple(self.config.legacy_units):
            self.services.stop(unit)
            self.services.disable(unit)
            self.services.remove_unit(unit)
        self.filters.teardown(include_legacy=True)
        for service in {previous.service, env.service, *LEGACY_DROP_IN_SERVICES} - {""}:
            self.services.remove_drop_in(service)
        self.services.daemon_reload()
        return None

    def _install_tunnel_config(self, env, peer, gateway, device) -> Optional[str]:
        hooks = self.tunnel.generate_hooks(
            env.service,
            tunnel_address=peer.address,
            local_gateway=gateway,
            local_device=device,
            bypass_host=env.bypass_host,
            dns_server=peer.dns,
        )
        self.tunnel.install_config(env.tunnel_source, hooks)
        return None

    def _install_classifier(self) -> Optional[str]:
        self.classifier.ensure_group()
        self.services.write_unit(self.config.cgroup_unit, self.classifier.persistence_unit())
        self.services.daemon_reload()
        self.services.enable(self.config.cgroup_unit)
        return None

    def _install_kill_switch(self) -> Optional[str]:
        self.filters.write_scripts()
        self.services.write_unit(self.config.killswitch_unit, self.filters.kill_switch_unit())
        self.services.daemon_reload()
        self.services.enable(self.config.killswitch_unit)
        self.filters.ensure_kill_switch()
        return None

    def _install_drop_in(self, env: NodeEnvironment) -> Optional[str]:
        self.services.write_drop_in(env.service, self.classifier.service_drop_in())
        self.services.daemon_reload()
        return None

    def _patch_protected(self, env: NodeEnvironment, peer: TunnelPeerConfig) -> Optional[str]:
        protected = ProtectedConfig(env.protected_config, env.variant, self.config.backup_suffix)
        if not protected.exists():
            return (
                f"{env.protected_config} not found; "
                + protected.manual_instructions(peer.advertised_host, peer.advertised_port, self.config.service_port)
            )
        protected.patch(peer.advertised_host, peer.advertised_port, self.config.service_port)
        return None

    def _bring_tunnel_up(self) -> Optional[str]:
        # a stale link from a half-finished run makes wg-quick refuse to start
        self.services.stop(self.config.tunnel_unit)
        self.tunnel.delete_link()
        self.tunnel.enable()
        self.tunnel.bring_up()
        return None

    def _apply_routing(self, env, peer, gateway, device) -> Optional[str]:
        address = self.tunnel.local_address() or peer.address
        self.routing.apply_routing(address, gateway, device, env.bypass_host)
        if env.bypass_host and self.filters.egress_verdict(self.config.fwmark, device, env.bypass_host) == "drop":
            return (
                f"bypass host {env.bypass_host} is outside the private ranges; "
                "the kill switch drops classified traffic to it"
            )
        return None

    def _restart_service(self, service: str) -> Optional[str]:
        self.services.stop(service)
        self.sleep(self.config.settle_delay)
        self.services.start(service, no_block=True)
        self.sleep(self.config.active_check_delay)
        if not self.services.is_active(service):
            return f"{service} is not active yet; check its logs"
        pid = self.services.main_pid(service)
        if pid is None:
            return f"no main PID for {service}"
        self.classifier.attach(pid, settle=False)
        return None

    # -- uninstall ---------------------------------------------------------

    def uninstall(self, env: Optional[NodeEnvironment] = None) -> ProgressReport:
        """Remove everything; each step is best-effort"""
        state = self.store.load()
        if env is None and state is not None:
            env = state.environment()
        self.phase = LifecycleState.UNINSTALLING
        report = ProgressReport("uninstall")
        service = env.service if env else ""

        def step(name: str, action: Callable[[], Optional[str]]) -> None:
            try:
                warning = action()
            except (ControllerError, OSError) as e:
                report.warn(name, str(e))
                return
            if warning:
                report.warn(name, warning)
            else:
                report.ok(name)

        if service:
            step(f"stop {service}", lambda: self._stop_quietly(service))
        tunnel_address = self.tunnel.configured_address()
        step("stop tunnel", self._take_tunnel_down)
        step(f"routing table {self.config.table}", lambda: self.routing.teardown_routing(tunnel_address))
        step(f"nft table {self.config.nft_table}", lambda: self._delete_filters())
        step(f"cgroup {self.config.cgroup_name}", self._remove_classifier)
        step(self.config.killswitch_unit, self._remove_kill_switch_unit)
        step("service drop-ins", lambda: self._remove_drop_ins(service))
        step("tunnel config", lambda: None if self.tunnel.remove_config() else "already removed")
        if env:
            step("protected config", lambda: self._restore_protected(env))
        step("install state", self._remove_state)
        if service:
            step(f"start {service}", lambda: self._start_quietly(service))

        self.phase = LifecycleState.ABSENT
        logger.info(f"uninstall finished with {report.issues} issue(s)")
        return report

    def _stop_quietly(self, service: str) -> Optional[str]:
        result = self.services.stop(service)
        return f"stop reported: {result.detail}" if result.failed else None

    def _start_quietly(self, service: str) -> Optional[str]:
        self.services.start(service, no_block=True)
        return None

    def _take_tunnel_down(self) -> Optional[str]:
        self.tunnel.bring_down()
        self.tunnel.disable()
        self.tunnel.delete_link()
        return None

    def _delete_filters(self) -> Optional[str]:
        self.filters.teardown(include_legacy=True)
        return None

    def _remove_classifier(self) -> Optional[str]:
        unit = self.config.cgroup_unit
        self.services.stop(unit)
        self.services.disable(unit)
        self.services.remove_unit(unit)
        self.classifier.delete_group()
        return None

    def _remove_kill_switch_unit(self) -> Optional[str]:
        for unit in (self.config.killswitch_unit,) + tuple(self.config.legacy_units):
            self.services.stop(unit)
            self.services.disable(unit)
            self.services.remove_unit(unit)
        return None

    def _remove_drop_ins(self, service: str) -> Optional[str]:
        for name in {service, *LEGACY_DROP_IN_SERVICES} - {""}:
            self.services.remove_drop_in(name)
        self.services.daemon_reload()
        return None

    def _restore_protected(self, env: NodeEnvironment) -> Optional[str]:
        protected = ProtectedConfig(env.protected_config, env.variant, self.config.backup_suffix)
        if protected.restore():
            return None
        return (
            f"no backup of {env.protected_config}; remove the block between "
            "'# BEGIN LNCLEAR' and '# END LNCLEAR' by hand"
        )

    def _remove_state(self) -> Optional[str]:
        self.store.delete()
        shutil.rmtree(self.config.state_dir, ignore_errors=True)
        return None

    # -- restart / status / check -----------------------------------------

    def restart(self) -> ProgressReport:
        """Bounce the tunnel and the protected service

        Raises:
            ControllerError: nothing is installed
        """
        state = self.store.load()
        if state is None:
            raise ControllerError("not installed")
        report = ProgressReport("restart")
        service = state.service

        self.services.stop(service)
        self.sleep(1)
        try:
            self.services.restart(self.config.tunnel_unit)
        except ControllerError as e:
            report.fail("tunnel restart", str(e))
            report.aborted_at = "tunnel restart"
            return report
        report.ok("tunnel restart")
        self.sleep(2)
        try:
            self.services.start(service)
        except ControllerError as e:
            report.fail(f"start {service}", str(e))
            return report
        report.ok(f"start {service}")
        pid = self.services.main_pid(service)
        if pid is not None and self.classifier.attach(pid):
            report.ok("classifier attach", f"PID {pid}")
        else:
            report.warn("classifier attach", f"could not attach {service}")
        return report

    def status(self, network: bool = True) -> StatusReport:
        state = self.store.load()
        if state is None:
            return StatusReport(installed=False)

        status = StatusReport(installed=True, state=asdict(state))
        status.tunnel_up = self.tunnel.is_up()
        status.tunnel_address = self.tunnel.local_address()
        status.handshake_age = self.tunnel.latest_handshake()
        status.endpoint = self.tunnel.endpoint_ip()
        status.local_routes = [str(r) for r in self.routing.local_bypass_routes()]
        if state.bypass_host:
            dest = f"{state.bypass_host}/32"
            bypass = [r for r in self.routing.table_routes() if r.dest in (dest, state.bypass_host)]
            status.bypass_route = bool(bypass)
            device = bypass[0].dev if bypass else None
            status.bypass_verdict = self.filters.egress_verdict(self.config.fwmark, device or "", state.bypass_host)
        status.chains = self.filters.present_chains()
        status.kill_switch = self.filters.kill_switch_loaded()
        status.members = self.classifier.members()
        status.service_active = self.services.is_active(state.service)

        status.expected_ip = state.advertised_host if _is_ipv4(state.advertised_host) else status.endpoint
        if network and status.tunnel_up:
            timeout = self.config.network_timeout
            status.outbound_ip = outbound_ip(status.tunnel_address, self.config.ip_echo_url, timeout)
            if state.advertised_host and state.advertised_port.isdigit():
                status.port_open = port_reachable(
                    status.tunnel_address, state.advertised_host, int(state.advertised_port), timeout,
                )
        return status

    def check(self, tunnel_config: Optional[str] = None) -> PreflightReport:
        return preflight_check(self.config, self.runner, tunnel_config)


def _is_ipv4(value: Optional[str]) -> bool:
    try:
        ipaddress.IPv4Address(value or "")
    except ValueError:
        return False
    return True
