"""
Unit tests for host readiness checks.
"""

import pytest

from controller_errors import DetectionFailed
from preflight import REQUIRED_TOOLS, check, missing_tools, parse_kernel_version, require_tools


@pytest.mark.parametrize("release,expected", [
    ("5.10.102-v8+", (5, 10, 102)),
    ("6.1.0-18-amd64", (6, 1, 0)),
    ("6.8", (6, 8, 0)),
    ("unknown", ()),
])
def test_parse_kernel_version(release, expected):
    assert parse_kernel_version(release) == expected


class TestTools:

    def test_all_present(self, host):
        assert missing_tools(host) == []
        require_tools(host)

    def test_missing(self, host):
        host.missing_tools.update({"nft", "cgcreate"})
        assert missing_tools(host) == ["nft", "cgcreate"]
        with pytest.raises(DetectionFailed) as exc:
            require_tools(host)
        assert "nft, cgcreate" in str(exc.value)

    def test_required_set(self):
        assert {"ip", "nft", "wg-quick", "systemctl"} <= set(REQUIRED_TOOLS)


class TestCheck:

    def test_ready_host(self, config, host, tunnel_source):
        report = check(config, host, str(tunnel_source), kernel_release="6.1.0-18-amd64")
        assert report.ok, report.items
        names = [item.name for item in report.items]
        assert names == ["kernel", "net_cls", "tools", "nftables", "tunnel config", "advertised port"]

    @pytest.mark.parametrize("release", ["5.10.63-v7+", "4.19.0", "garbage"])
    def test_old_kernel(self, config, host, release):
        report = check(config, host, kernel_release=release)
        assert not report.ok
        assert not report.items[0].ok

    def test_no_net_cls(self, config, host):
        config.cgroup_dir.parent.rmdir()
        report = check(config, host, kernel_release="6.1.0")
        assert not next(i for i in report.items if i.name == "net_cls").ok

    def test_unreadable_tunnel_config(self, config, host, temp_dir):
        report = check(config, host, str(temp_dir / "missing.conf"), kernel_release="6.1.0")
        item = next(i for i in report.items if i.name == "tunnel config")
        assert not item.ok

    def test_config_without_port(self, config, host, temp_dir):
        path = temp_dir / "plain.conf"
        path.write_text("[Interface]\nAddress = 10.8.0.2/32\n\n[Peer]\nEndpoint = 203.0.113.5:51820\n")
        report = check(config, host, str(path), kernel_release="6.1.0")
        item = next(i for i in report.items if i.name == "advertised port")
        assert not item.ok
