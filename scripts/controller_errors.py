"""Exception hierarchy for the split-tunnel controller.

Absence of a resource is never an exception; removals report it as
``Outcome.ABSENT`` (see command_runner).
"""

from typing import List, Optional


class ControllerError(Exception):
    """Base class for every error the controller surfaces."""


class ValidationFailed(ControllerError):
    """Caller-supplied input failed its format check.

    Raised before any privileged command runs.
    """

    def __init__(self, field: str, value: str, reason: str = "invalid format"):
        self.field = field
        self.value = value
        self.reason = reason
        super().__init__(f"{field}: {reason} ({value!r})")


class DetectionFailed(ControllerError):
    """A required input could not be determined from the host."""


class ExternalToolFailed(ControllerError):
    """A privileged command exited non-zero for a real failure."""

    def __init__(
        self,
        step: str,
        argv: List[str],
        returncode: int,
        stderr: Optional[str] = None,
    ):
        self.step = step
        self.argv = list(argv)
        self.returncode = returncode
        self.stderr = (stderr or "").strip()
        detail = f": {self.stderr}" if self.stderr else ""
        super().__init__(
            f"{step} failed (exit {returncode}) running '{' '.join(self.argv)}'{detail}"
        )
