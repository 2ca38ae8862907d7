"""Traffic classifier (cgroup v1 net_cls)

Every process in the ``lnclear`` net_cls group tags its sockets with the
class id 0x00110011; the output chain turns that tag into fwmark 0x11.

Membership is per PID and is not picked up by processes that already
exist, so the protected service re-attaches itself through an
ExecStartPost drop-in every time it starts.
"""

import time
from pathlib import Path
from typing import Callable, List, Optional

from command_runner import CommandRunner
from controller_config import SplitTunnelConfig
from controller_errors import ExternalToolFailed
from log_config import get_logger

logger = get_logger("lnclear.cgroup")


class TrafficClassifier:
    """Create the classification group and manage its members"""

    def __init__(
        self,
        config: SplitTunnelConfig,
        runner: CommandRunner,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.config = config
        self.runner = runner
        self.sleep = sleep
        self.group_dir: Path = config.cgroup_dir

    @property
    def tasks_file(self) -> Path:
        return self.group_dir / "tasks"

    @property
    def classid_file(self) -> Path:
        return self.group_dir / "net_cls.classid"

    def ensure_group(self) -> None:
        """Create the group and set its class id; idempotent

        Raises:
            ExternalToolFailed: cgcreate failed or the class id did not stick
        """
        self.runner.apply(
            f"cgroup {self.config.cgroup_name}",
            ["cgcreate", "-g", f"net_cls:{self.config.cgroup_name}"],
        )
        try:
            self.classid_file.write_text(f"{self.config.classid}\n")
        except OSError as e:
            raise ExternalToolFailed(
                f"classid for {self.config.cgroup_name}",
                ["write", str(self.classid_file)], 1, str(e),
            )
        logger.info(f"cgroup net_cls:{self.config.cgroup_name} classid {self.config.classid_hex}")

    def current_classid(self) -> Optional[int]:
        try:
            return int(self.classid_file.read_text().strip(), 0)
        except (OSError, ValueError):
            return None

    def attach(self, pid: int, settle: bool = True) -> bool:
        """Add pid to the group after the settle delay

        Returns:
            False when the group or the process is gone
        """
        if settle:
            self.sleep(self.config.attach_delay)
        try:
            with open(self.tasks_file, "a") as f:
                f.write(f"{pid}\n")
        except OSError as e:
            logger.warning(f"Could not attach PID {pid} to {self.config.cgroup_name}: {e}")
            return False
        logger.info(f"PID {pid} attached to net_cls:{self.config.cgroup_name}")
        return True

    def members(self) -> List[int]:
        try:
            text = self.tasks_file.read_text()
        except OSError:
            return []
        return [int(line) for line in text.split() if line.isdigit()]

    def delete_group(self) -> None:
        self.runner.remove(
            f"delete cgroup {self.config.cgroup_name}",
            ["cgdelete", "-g", f"net_cls:{self.config.cgroup_name}"],
        )

    # -- unit text ---------------------------------------------------------

    def persistence_unit(self) -> str:
        """Oneshot unit recreating the group at boot"""
        return (
            "[Unit]\n"
            "Description=lnclear net_cls cgroup\n"
            "DefaultDependencies=no\n"
            "Before=network-pre.target network.target\n"
            "\n"
            "[Service]\n"
            "Type=oneshot\n"
            "RemainAfterExit=yes\n"
            f"ExecStart=/usr/bin/cgcreate -g net_cls:{self.config.cgroup_name}\n"
            f"ExecStart=/bin/sh -c 'echo {self.config.classid_hex} > {self.classid_file}'\n"
            "\n"
            "[Install]\n"
            "WantedBy=multi-user.target\n"
        )

    def service_drop_in(self) -> str:
        """Drop-in tying the protected service to the tunnel and the group"""
        tunnel = self.config.tunnel_unit
        delay = self.config.attach_delay
        delay_text = str(int(delay)) if float(delay).is_integer() else str(delay)
        return (
            "[Unit]\n"
            f"After={tunnel}\n"
            f"Requires={tunnel}\n"
            "\n"
            "[Service]\n"
            f"ExecStartPost=/bin/sh -c 'sleep {delay_text} && echo $MAINPID > {self.tasks_file}'\n"
        )
