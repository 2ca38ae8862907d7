"""Persisted install record

``/etc/lnclear/state.conf`` holds KEY=value lines and is the only signal
that the system is installed. It is parsed line by line, never sourced,
and written last during install.
"""

import os
import tempfile
from dataclasses import dataclass, fields
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Optional

from controller_config import VERSION, NodeEnvironment, SplitTunnelConfig
from log_config import get_logger

logger = get_logger("lnclear.state")

KEY_MAP = {
    "platform": "PLATFORM",
    "variant": "LIGHTNING",
    "protected_config": "LN_CONF",
    "service": "LN_SERVICE",
    "tunnel_source": "WG_CONF",
    "advertised_host": "SERVER_HOST",
    "advertised_port": "ASSIGNED_PORT",
    "bypass_host": "BITCOIN_CORE_HOST",
    "installed_at": "INSTALLED_AT",
    "version": "VERSION",
}


@dataclass
class InstallState:
    platform: str = ""
    variant: str = ""
    protected_config: str = ""
    service: str = ""
    tunnel_source: str = ""
    advertised_host: str = ""
    advertised_port: str = ""
    bypass_host: str = ""
    installed_at: str = ""
    version: str = VERSION

    @classmethod
    def for_environment(cls, env: NodeEnvironment, host: str, port: int) -> "InstallState":
        return cls(
            platform=env.platform,
            variant=env.variant,
            protected_config=env.protected_config,
            service=env.service,
            tunnel_source=env.tunnel_source,
            advertised_host=host or "",
            advertised_port=str(port or ""),
            bypass_host=env.bypass_host or "",
            installed_at=datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ"),
        )

    def environment(self) -> NodeEnvironment:
        return NodeEnvironment(
            platform=self.platform,
            variant=self.variant,
            service=self.service,
            protected_config=self.protected_config,
            tunnel_source=self.tunnel_source,
            bypass_host=self.bypass_host or None,
        )

    def to_text(self) -> str:
        lines = [f"{KEY_MAP[f.name]}={getattr(self, f.name)}" for f in fields(self)]
        return "\n".join(lines) + "\n"

    @classmethod
    def from_text(cls, text: str) -> "InstallState":
        reverse = {v: k for k, v in KEY_MAP.items()}
        values: Dict[str, str] = {}
        for raw in text.splitlines():
            line = raw.strip()
            if not line or line.startswith("#") or "=" not in line:
                continue
            key, _, value = line.partition("=")
            attr = reverse.get(key.strip())
            if attr and attr not in values:
                values[attr] = value.strip().strip('"').strip("'")
        return cls(**values)


class StateStore:
    """Read and write state.conf"""

    def __init__(self, config: SplitTunnelConfig):
        self.path: Path = config.state_file

    def exists(self) -> bool:
        return self.path.is_file()

    def load(self) -> Optional[InstallState]:
        if not self.exists():
            return None
        return InstallState.from_text(self.path.read_text())

    def save(self, state: InstallState) -> None:
        """Atomically replace state.conf (dir 0700, file 0600)"""
        self.path.parent.mkdir(parents=True, exist_ok=True)
        os.chmod(self.path.parent, 0o700)
        fd, tmp = tempfile.mkstemp(dir=self.path.parent, prefix=".state.")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(state.to_text())
            os.chmod(tmp, 0o600)
            os.replace(tmp, self.path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise
        logger.info(f"Install state written: {self.path}")

    def delete(self) -> bool:
        if not self.exists():
            return False
        self.path.unlink()
        return True
