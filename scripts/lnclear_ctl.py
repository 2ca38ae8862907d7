#!/usr/bin/env python3
"""lnclear split-tunnel controller

Routes only the protected Lightning node's traffic through the lnclear
WireGuard tunnel, keeps LAN traffic local and blocks the node from
leaking onto the default route when the tunnel is down.

Usage:
    lnclear-ctl install --tunnel-config lnclear.conf --service lnd \\
        --variant lnd --protected-config /home/lnd/.lnd/lnd.conf
    lnclear-ctl status [--offline] [--json]
    lnclear-ctl restart
    lnclear-ctl uninstall
    lnclear-ctl check [--tunnel-config lnclear.conf]

Environment:
    LNCLEAR_CONFIG   YAML file overriding controller constants
    LOG_LEVEL        DEBUG, INFO, WARNING, ERROR
"""

import argparse
import json
import logging
import os
import sys

from controller_config import VERSION, NodeEnvironment, load_config
from controller_errors import ControllerError
from lifecycle import ProgressReport, SplitTunnelController, StatusReport
from log_config import DEFAULT_LOG_FILE, setup_logging
from nft_ruleset import CHAIN_ORDER
from protected_config import ProtectedConfig

logger = logging.getLogger("lnclear")

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_NOT_INSTALLED = 2

MUTATING_COMMANDS = ("install", "uninstall", "restart")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="lnclear-ctl",
        description="Split-tunnel policy controller for a Lightning node",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
examples:
  lnclear-ctl install --tunnel-config ./lnclear.conf --service lnd --variant lnd \\
      --protected-config /home/lnd/.lnd/lnd.conf
  lnclear-ctl status --offline
  lnclear-ctl uninstall
        """
    )
    parser.add_argument("--config", help="controller config file (YAML)")
    parser.add_argument("--debug", action="store_true", help="enable debug logging")
    parser.add_argument("--version", action="version", version=f"lnclear-ctl {VERSION}")

    sub = parser.add_subparsers(dest="command", metavar="COMMAND")

    install = sub.add_parser("install", help="install or reinstall the split tunnel")
    install.add_argument("--tunnel-config", required=True, help="WireGuard config from the provider")
    install.add_argument("--service", required=True, help="systemd unit of the node (e.g. lnd)")
    install.add_argument("--variant", required=True, choices=["lnd", "cln", "lit"], help="node implementation")
    install.add_argument("--protected-config", required=True, help="node config file to patch")
    install.add_argument("--platform", default="linux", help="platform identifier recorded in the state")
    install.add_argument("--bypass-host", help="remote bitcoind address routed outside the tunnel")
    install.add_argument("--detect-bypass-host", action="store_true",
                         help="read the bitcoind host from the node config")

    sub.add_parser("uninstall", help="remove everything and restore the node config")

    status = sub.add_parser("status", help="show tunnel, routing and filter state")
    status.add_argument("--offline", action="store_true", help="skip outbound IP and port checks")
    status.add_argument("--json", action="store_true", help="machine-readable output")

    sub.add_parser("restart", help="restart the tunnel and the node")

    check = sub.add_parser("check", help="check host prerequisites")
    check.add_argument("--tunnel-config", help="also parse this WireGuard config")

    return parser


def print_report(report: ProgressReport) -> None:
    marks = {"ok": "✓", "warning": "!", "failed": "✗"}
    for step in report.steps:
        detail = f" - {step.detail}" if step.detail else ""
        print(f"  [{marks.get(step.status, '?')}] {step.step}{detail}")
    if report.aborted_at:
        print(f"{report.operation} stopped at '{report.aborted_at}'. Fix the cause and run it again.")
    else:
        print(f"{report.operation} complete: {report.issues} issue(s)")


def print_status(status: StatusReport) -> None:
    if not status.installed:
        print("lnclear is not installed")
        return
    state = status.state or {}
    print(f"Node:        {state.get('variant')} ({state.get('service')})")
    print(f"Advertised:  {state.get('advertised_host')}:{state.get('advertised_port')}")
    print(f"Tunnel:      {'up' if status.tunnel_up else 'DOWN'} {status.tunnel_address or ''}")
    if status.handshake_age is not None:
        print(f"Handshake:   {status.handshake_age}s ago ({status.endpoint})")
    print(f"Kill switch: {'loaded' if status.kill_switch else 'MISSING'}")
    missing = [c for c in CHAIN_ORDER if c not in status.chains]
    print(f"Chains:      {', '.join(status.chains) or 'none'}{' (missing: ' + ', '.join(missing) + ')' if missing else ''}")
    print(f"Local routes: {len(status.local_routes)}")
    for route in status.local_routes:
        print(f"  {route}")
    if status.bypass_route is not None:
        print(f"Bypass host: {'routed' if status.bypass_route else 'NO ROUTE'} (kill switch: {status.bypass_verdict})")
    print(f"cgroup PIDs: {' '.join(str(p) for p in status.members) or 'none'}")
    print(f"Service:     {'active' if status.service_active else 'inactive'}")
    if status.outbound_ip is not None or status.port_open is not None:
        match = "" if status.expected_ip in (None, status.outbound_ip) else f" (expected {status.expected_ip})"
        print(f"Outbound IP: {status.outbound_ip or 'unreachable'}{match}")
        print(f"Port check:  {'reachable' if status.port_open else 'unreachable'}")


def environment_from_args(args) -> NodeEnvironment:
    bypass = args.bypass_host
    if not bypass and args.detect_bypass_host:
        bypass = ProtectedConfig(args.protected_config, args.variant).detect_bypass_host()
        if bypass:
            logger.info(f"Detected remote bitcoind at {bypass}")
    return NodeEnvironment(
        platform=args.platform,
        variant=args.variant,
        service=args.service,
        protected_config=args.protected_config,
        tunnel_source=args.tunnel_config,
        bypass_host=bypass,
    )


def main(argv=None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    # modules configure a default on import, so force the command line choice
    setup_logging(
        level=logging.DEBUG if args.debug else None,
        detailed=args.debug,
        force=True,
        log_file=DEFAULT_LOG_FILE if args.command in MUTATING_COMMANDS else None)

    if not args.command:
        parser.print_help()
        return EXIT_FAILED

    if args.command in MUTATING_COMMANDS and os.geteuid() != 0:
        print(f"lnclear-ctl {args.command} must be run as root", file=sys.stderr)
        return EXIT_FAILED

    try:
        config = load_config(args.config)
        controller = SplitTunnelController(config)

        if args.command == "install":
            report = controller.install(environment_from_args(args))
            print_report(report)
            return EXIT_OK if report.success else EXIT_FAILED

        if args.command == "uninstall":
            report = controller.uninstall()
            print_report(report)
            return EXIT_OK

        if args.command == "restart":
            report = controller.restart()
            print_report(report)
            return EXIT_OK if report.success else EXIT_FAILED

        if args.command == "status":
            status = controller.status(network=not args.offline)
            if args.json:
                print(json.dumps(status.to_dict(), indent=2))
            else:
                print_status(status)
            return EXIT_OK if status.installed else EXIT_NOT_INSTALLED

        if args.command == "check":
            result = controller.check(args.tunnel_config)
            for item in result.items:
                print(f"  [{'✓' if item.ok else '✗'}] {item.name}: {item.detail}")
            return EXIT_OK if result.ok else EXIT_FAILED

    except ControllerError as e:
        print(f"Error: {e}", file=sys.stderr)
        return EXIT_FAILED

    parser.print_help()
    return EXIT_FAILED


if __name__ == "__main__":
    sys.exit(main())
