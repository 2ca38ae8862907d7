#!/usr/bin/env python3
"""Live-host integration tests

Runs a full install / reinstall / uninstall cycle against the real kernel,
nftables and systemd, then checks what `ip rule`, `ip route` and `nft`
actually report.

These tests change the host's routing and firewall. They only run as root
with LNCLEAR_LIVE_TESTS=1 and a provider config to use:

    sudo LNCLEAR_LIVE_TESTS=1 \\
        LNCLEAR_TEST_TUNNEL_CONFIG=/root/lnclear.conf \\
        LNCLEAR_TEST_SERVICE=lnd \\
        LNCLEAR_TEST_PROTECTED_CONFIG=/home/lnd/.lnd/lnd.conf \\
        pytest tests/integration/test_live_host.py -v
"""

import os
import sys
from pathlib import Path

import pytest

SCRIPTS_DIR = Path(__file__).parent.parent.parent / "scripts"
sys.path.insert(0, str(SCRIPTS_DIR))

from command_runner import CommandRunner  # noqa: E402
from controller_config import NodeEnvironment, load_config  # noqa: E402
from lifecycle import SplitTunnelController  # noqa: E402
from nft_ruleset import CHAIN_ORDER  # noqa: E402

TUNNEL_CONFIG = os.environ.get("LNCLEAR_TEST_TUNNEL_CONFIG", "")
SERVICE = os.environ.get("LNCLEAR_TEST_SERVICE", "lnd")
VARIANT = os.environ.get("LNCLEAR_TEST_VARIANT", "lnd")
PROTECTED_CONFIG = os.environ.get("LNCLEAR_TEST_PROTECTED_CONFIG", "")


def skip_unless_live():
    """Skip unless explicitly enabled on a root shell"""
    if os.environ.get("LNCLEAR_LIVE_TESTS") != "1":
        pytest.skip("set LNCLEAR_LIVE_TESTS=1 to run against this host")
    if os.geteuid() != 0:
        pytest.skip("live tests need root")
    if not Path(TUNNEL_CONFIG).is_file():
        pytest.skip(f"tunnel config not found: {TUNNEL_CONFIG!r}")


@pytest.fixture(scope="module")
def live():
    skip_unless_live()
    config = load_config()
    controller = SplitTunnelController(config)
    env = NodeEnvironment(
        platform="linux",
        variant=VARIANT,
        service=SERVICE,
        protected_config=PROTECTED_CONFIG,
        tunnel_source=TUNNEL_CONFIG,
    )
    yield controller, env
    controller.uninstall(env)


def ip_rules(runner: CommandRunner, table: int):
    out = runner.query(["ip", "rule", "show"]).stdout
    return [line.split(":", 1)[1].strip() for line in out.splitlines() if f"lookup {table}" in line]


class TestLiveCycle:

    def test_preflight(self, live):
        controller, _ = live
        report = controller.check(TUNNEL_CONFIG)
        failed = [item for item in report.items if not item.ok]
        assert not failed, failed

    def test_install(self, live):
        controller, env = live
        report = controller.install(env)
        assert report.success, report.steps
        assert controller.store.exists()

    def test_kernel_state(self, live):
        controller, _ = live
        config = controller.config
        rules = ip_rules(controller.runner, config.table)
        assert f"from all fwmark {config.fwmark_hex} lookup {config.table}" in rules
        assert any(rule.startswith("from ") and "fwmark" not in rule for rule in rules)
        routes = [str(r) for r in controller.routing.table_routes()]
        assert f"default dev {config.interface}" in routes
        assert set(controller.filters.present_chains()) == set(CHAIN_ORDER)

    def test_reinstall_no_duplicates(self, live):
        controller, env = live
        before = ip_rules(controller.runner, controller.config.table)
        assert controller.install(env).success
        after = ip_rules(controller.runner, controller.config.table)
        assert sorted(after) == sorted(before)
        assert len(set(after)) == len(after)

    def test_uninstall(self, live):
        controller, env = live
        controller.uninstall(env)
        assert ip_rules(controller.runner, controller.config.table) == []
        assert controller.routing.table_routes() == []
        assert not controller.filters.exists()
        assert not controller.store.exists()
