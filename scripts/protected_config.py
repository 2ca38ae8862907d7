"""Protected service config (lnd / litd / Core Lightning)

Appends a marker-delimited block that makes the node listen on the service
port and advertise the tunnel's public address, after removing any keys
the block manages so reinstalls never leave duplicates.

The first modification takes a byte-for-byte backup next to the file.
Later installs leave that backup alone, so uninstall always restores the
pre-controller config.
"""

import os
import re
import shutil
from pathlib import Path
from typing import List, Optional

from controller_config import VERSION
from controller_errors import ValidationFailed
from log_config import get_logger

logger = get_logger("lnclear.protected")

BLOCK_BEGIN = "# BEGIN LNCLEAR"
BLOCK_END = "# END LNCLEAR"

LOOPBACK_HOSTS = ("localhost", "127.0.0.1", "::1")


def _managed_patterns(variant: str, port: int, host: str) -> List[re.Pattern]:
    if variant in ("lnd", "lit"):
        return [
            re.compile(r'^externalhosts='),
            re.compile(rf'^listen=0\.0\.0\.0:{port}\s*$'),
            re.compile(r'^tor\.skip-proxy-for-clearnet-targets='),
            re.compile(r'^tor\.streamisolation='),
        ]
    if variant == "cln":
        return [
            re.compile(rf'^bind-addr=0\.0\.0\.0:{port}\s*$'),
            re.compile(rf'^announce-addr={re.escape(host)}(:\d+)?\s*$'),
            re.compile(r'^always-use-proxy='),
        ]
    raise ValidationFailed("variant", variant, "expected lnd, cln or lit")


class ProtectedConfig:
    """Patch, back up and restore one protected config file"""

    def __init__(self, path: str, variant: str, backup_suffix: str = ".lnclear-backup"):
        if variant not in ("lnd", "cln", "lit"):
            raise ValidationFailed("variant", variant, "expected lnd, cln or lit")
        self.path = Path(path)
        self.variant = variant
        self.backup_path = Path(f"{path}{backup_suffix}")

    def exists(self) -> bool:
        return self.path.is_file()

    def has_backup(self) -> bool:
        return self.backup_path.is_file()

    def ensure_backup(self) -> bool:
        """Copy the file aside unless a backup already exists

        Returns:
            True if a backup was taken now
        """
        if self.has_backup():
            logger.info(f"Keeping existing backup {self.backup_path}")
            return False
        shutil.copyfile(self.path, self.backup_path)
        os.chmod(self.backup_path, 0o600)
        logger.info(f"Backup taken: {self.backup_path}")
        return True

    def managed_block(self, host: str, port: int, service_port: int = 9735) -> List[str]:
        header = f"{BLOCK_BEGIN} -- managed by lnclear v{VERSION}"
        if self.variant == "cln":
            body = [
                f"bind-addr=0.0.0.0:{service_port}",
                f"announce-addr={host}:{port}",
                "always-use-proxy=false",
            ]
        else:
            body = [
                "[Application Options]",
                f"listen=0.0.0.0:{service_port}",
                f"externalhosts={host}:{port}",
                "",
                "[Tor]",
                "tor.streamisolation=false",
                "tor.skip-proxy-for-clearnet-targets=true",
            ]
        return [header] + body + [BLOCK_END]

    def strip_managed(self, lines: List[str], host: str = "", service_port: int = 9735) -> List[str]:
        """Remove our previous block and every key it manages"""
        patterns = _managed_patterns(self.variant, service_port, host)
        out = []
        inside = False
        for line in lines:
            stripped = line.strip()
            if stripped.startswith(BLOCK_BEGIN):
                inside = True
                continue
            if stripped == BLOCK_END:
                inside = False
                continue
            if inside:
                continue
            if any(p.match(stripped) for p in patterns):
                continue
            out.append(line)
        while out and not out[-1].strip():
            out.pop()
        return out

    def patch(self, host: str, port: int, service_port: int = 9735) -> None:
        """Back up once, then rewrite the file in place with a fresh block"""
        self.ensure_backup()
        lines = self.path.read_text().splitlines()
        lines = self.strip_managed(lines, host, service_port)
        lines += ["", *self.managed_block(host, port, service_port)]
        # open in place so owner and mode stay as the node expects
        with open(self.path, "w") as f:
            f.write("\n".join(lines) + "\n")
        logger.info(f"Protected config patched: {self.path}")

    def restore(self) -> bool:
        """Put the backup back and delete it

        Returns:
            False when there was no backup to restore
        """
        if not self.has_backup():
            return False
        with open(self.backup_path, "rb") as src, open(self.path, "wb") as dst:
            shutil.copyfileobj(src, dst)
        self.backup_path.unlink()
        logger.info(f"Protected config restored from {self.backup_path}")
        return True

    def manual_instructions(self, host: str, port: int, service_port: int = 9735) -> str:
        block = "\n".join(self.managed_block(host, port, service_port))
        return f"Add the following to {self.path}:\n\n{block}\n"

    def detect_bypass_host(self) -> Optional[str]:
        """Remote bitcoind host the node talks to, if it is not local"""
        if not self.exists():
            return None
        values = {}
        for raw in self.path.read_text().splitlines():
            key, sep, value = raw.strip().partition("=")
            key = key.strip()
            if sep and key not in values:
                values[key] = value.strip()

        host = None
        if self.variant == "cln":
            host = values.get("bitcoin-rpcconnect")
        else:
            rpchost = values.get("bitcoind.rpchost")
            if rpchost:
                host = rpchost.rsplit(":", 1)[0] if rpchost.count(":") == 1 else rpchost
            else:
                zmq = values.get("bitcoind.zmqpubrawblock", "")
                match = re.match(r'^tcp://([^:/]+)', zmq)
                host = match.group(1) if match else None
        if not host or host in LOOPBACK_HOSTS:
            return None
        return host
