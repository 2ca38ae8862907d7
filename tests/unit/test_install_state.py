"""
Unit tests for the persisted install record.
"""

from install_state import InstallState, StateStore


class TestInstallState:

    def test_text_uses_legacy_keys(self, node_env):
        state = InstallState.for_environment(node_env, "203.0.113.5", 9736)
        text = state.to_text()
        for key in ("PLATFORM=linux", "LIGHTNING=lnd", "LN_SERVICE=lnd",
                    "SERVER_HOST=203.0.113.5", "ASSIGNED_PORT=9736", "BITCOIN_CORE_HOST="):
            assert key in text.splitlines()
        assert state.installed_at.endswith("Z")

    def test_parse_older_record(self):
        text = (
            "# lnclear state\n"
            'PLATFORM="umbrel"\n'
            "LIGHTNING=cln\n"
            "LN_CONF=/data/lightning/config\n"
            "LN_SERVICE=lightningd\n"
            "WG_CONF=/tmp/lnclear.conf\n"
            "SERVER_HOST=vpn.example.com\n"
            "ASSIGNED_PORT=9740\n"
            "BITCOIN_CORE_HOST=\n"
            "INSTALLED_AT=2024-03-01T10:00:00Z\n"
            "VERSION=1.4.0\n"
        )
        state = InstallState.from_text(text)
        assert state.platform == "umbrel"
        assert state.variant == "cln"
        assert state.service == "lightningd"
        assert state.version == "1.4.0"
        assert state.environment().bypass_host is None

    def test_never_evaluates(self):
        state = InstallState.from_text("LN_SERVICE=$(reboot)\nUNKNOWN=1\n")
        assert state.service == "$(reboot)"

    def test_first_key_wins(self):
        assert InstallState.from_text("LIGHTNING=lnd\nLIGHTNING=cln\n").variant == "lnd"


class TestStateStore:

    def test_save_load_delete(self, config, node_env):
        store = StateStore(config)
        assert store.load() is None
        store.save(InstallState.for_environment(node_env, "203.0.113.5", 9736))
        assert store.exists()
        assert store.load().advertised_port == "9736"
        assert oct(config.state_file.stat().st_mode & 0o777) == "0o600"
        assert oct(config.state_file.parent.stat().st_mode & 0o777) == "0o700"
        assert store.delete()
        assert not store.delete()
