"""systemd wrapper

Thin layer over systemctl plus the unit and drop-in files the controller
owns under the systemd directory.
"""

from pathlib import Path
from typing import Optional

from command_runner import CommandRunner, StepResult
from controller_config import SplitTunnelConfig
from log_config import get_logger

logger = get_logger("lnclear.systemd")


class ServiceManager:
    """Start, stop and inspect systemd units"""

    def __init__(self, config: SplitTunnelConfig, runner: CommandRunner):
        self.config = config
        self.runner = runner
        self.unit_dir = Path(config.systemd_dir)

    def unit_exists(self, unit: str) -> bool:
        return self.runner.query(["systemctl", "cat", unit]).ok

    def start(self, unit: str, no_block: bool = False) -> StepResult:
        flags = ["--no-block"] if no_block else []
        return self.runner.apply(f"start {unit}", ["systemctl", "start"] + flags + [unit])

    def stop(self, unit: str, timeout: Optional[float] = None) -> StepResult:
        """Stop a unit; best-effort, bounded by timeout"""
        return self.runner.remove(
            f"stop {unit}", ["systemctl", "stop", unit],
            timeout=timeout or self.config.stop_timeout,
        )

    def restart(self, unit: str) -> StepResult:
        return self.runner.apply(f"restart {unit}", ["systemctl", "restart", unit])

    def enable(self, unit: str, now: bool = False) -> StepResult:
        flags = ["--now"] if now else []
        return self.runner.apply(f"enable {unit}", ["systemctl", "enable"] + flags + [unit])

    def disable(self, unit: str, now: bool = False) -> StepResult:
        flags = ["--now"] if now else []
        return self.runner.remove(
            f"disable {unit}", ["systemctl", "disable"] + flags + [unit],
            timeout=self.config.stop_timeout,
        )

    def is_active(self, unit: str) -> bool:
        return self.runner.query(["systemctl", "is-active", "--quiet", unit]).ok

    def main_pid(self, unit: str) -> Optional[int]:
        """MainPID of a running unit, None when not running"""
        result = self.runner.query(["systemctl", "show", "-p", "MainPID", "--value", unit])
        if not result.ok:
            return None
        value = result.stdout.strip()
        if not value.isdigit() or int(value) == 0:
            return None
        return int(value)

    def daemon_reload(self) -> StepResult:
        return self.runner.remove("daemon-reload", ["systemctl", "daemon-reload"])

    # -- unit files --------------------------------------------------------

    def unit_path(self, unit: str) -> Path:
        return self.unit_dir / unit

    def drop_in_path(self, unit: str, name: Optional[str] = None) -> Path:
        return self.unit_dir / f"{self._full_name(unit)}.d" / (name or self.config.drop_in_name)

    @staticmethod
    def _full_name(unit: str) -> str:
        return unit if "." in unit.split("@")[-1] else f"{unit}.service"

    def write_unit(self, unit: str, text: str) -> Path:
        path = self.unit_path(unit)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text)
        logger.info(f"Unit written: {path}")
        return path

    def remove_unit(self, unit: str) -> bool:
        path = self.unit_path(unit)
        if not path.exists():
            return False
        path.unlink()
        logger.info(f"Unit removed: {path}")
        return True

    def write_drop_in(self, unit: str, text: str) -> Path:
        path = self.drop_in_path(unit)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(text)
        logger.info(f"Drop-in written: {path}")
        return path

    def remove_drop_in(self, unit: str) -> bool:
        """Remove our drop-in and its directory when left empty"""
        path = self.drop_in_path(unit)
        removed = False
        if path.exists():
            path.unlink()
            removed = True
            logger.info(f"Drop-in removed: {path}")
        if path.parent.is_dir() and not any(path.parent.iterdir()):
            path.parent.rmdir()
        return removed
