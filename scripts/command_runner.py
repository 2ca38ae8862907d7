"""Command executor

Every privileged tool invocation (ip, nft, systemctl, cgcreate, wg, ...)
goes through ``CommandRunner``. Results are classified into an ``Outcome``
so callers can tell "already there" and "already gone" apart from real
failures without parsing stderr themselves.

    runner = CommandRunner()
    runner.apply("add rule", ["ip", "rule", "add", "fwmark", "0x11", "table", "211"])
    runner.remove("delete rule", ["ip", "rule", "del", "fwmark", "0x11", "table", "211"])
"""

import shutil
import subprocess
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Sequence

from controller_errors import ExternalToolFailed
from log_config import get_logger

logger = get_logger("lnclear.command")

# exit code reported for commands killed by the timeout, same as timeout(1)
TIMEOUT_EXIT = 124
NOT_FOUND_EXIT = 127

PRESENT_MARKERS = (
    "File exists",
    "already exists",
)

ABSENT_MARKERS = (
    "No such file or directory",
    "No such process",
    "Cannot find device",
    "does not exist",
    "not loaded",
    "No such device",
    "not found",
)


class Outcome(Enum):
    APPLIED = "applied"
    PRESENT = "present"
    ABSENT = "absent"
    FAILED = "failed"


@dataclass
class CommandResult:
    """Raw result of one external command"""
    argv: List[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def outcome(self) -> Outcome:
        if self.returncode == 0:
            return Outcome.APPLIED
        if any(marker in self.stderr for marker in PRESENT_MARKERS):
            return Outcome.PRESENT
        if any(marker in self.stderr for marker in ABSENT_MARKERS):
            return Outcome.ABSENT
        return Outcome.FAILED


@dataclass
class StepResult:
    """Outcome of one named step, as logged and reported"""
    step: str
    outcome: Outcome
    detail: str = ""

    @property
    def failed(self) -> bool:
        return self.outcome is Outcome.FAILED


class CommandRunner:
    """Runs external commands and classifies their results

    Tests substitute a subclass overriding ``run`` to emulate the host.
    """

    def __init__(self, timeout: float = 30.0):
        self.timeout = timeout

    def run(
        self,
        argv: Sequence[str],
        input_text: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        """Execute argv and capture its output

        Args:
            argv: Command and arguments, never passed through a shell
            input_text: Data written to stdin
            timeout: Seconds before the command is killed

        Returns:
            CommandResult; a timeout yields exit 124, a missing binary 127
        """
        argv = [str(a) for a in argv]
        logger.debug(f"$ {' '.join(argv)}")
        try:
            proc = subprocess.run(
                argv,
                input=input_text,
                capture_output=True,
                text=True,
                timeout=timeout or self.timeout,
            )
        except subprocess.TimeoutExpired:
            logger.warning(f"Command timed out: {' '.join(argv)}")
            return CommandResult(argv, TIMEOUT_EXIT, "", "timeout")
        except FileNotFoundError as e:
            return CommandResult(argv, NOT_FOUND_EXIT, "", f"command not found: {e.filename}")
        return CommandResult(argv, proc.returncode, proc.stdout.strip(), proc.stderr.strip())

    def apply(
        self,
        step: str,
        argv: Sequence[str],
        input_text: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> StepResult:
        """Run a state-changing command; "already exists" counts as success

        Raises:
            ExternalToolFailed: for any other non-zero exit
        """
        result = self.run(argv, input_text=input_text, timeout=timeout)
        outcome = result.outcome
        if outcome is Outcome.PRESENT:
            logger.debug(f"{step}: already present")
        elif outcome is Outcome.FAILED or (outcome is Outcome.ABSENT and not result.ok):
            raise ExternalToolFailed(step, result.argv, result.returncode, result.stderr)
        return StepResult(step, outcome)

    def remove(
        self,
        step: str,
        argv: Sequence[str],
        timeout: Optional[float] = None,
    ) -> StepResult:
        """Run a removal command; never raises

        Absence is reported as Outcome.ABSENT and is not a failure.
        """
        result = self.run(argv, timeout=timeout)
        outcome = result.outcome
        if outcome is Outcome.FAILED:
            logger.debug(f"{step}: {result.stderr or 'exit ' + str(result.returncode)}")
        return StepResult(step, outcome, result.stderr)

    def query(self, argv: Sequence[str], timeout: Optional[float] = None) -> CommandResult:
        """Run a read-only command and return the raw result"""
        return self.run(argv, timeout=timeout)

    def has_tool(self, name: str) -> bool:
        return shutil.which(name) is not None
