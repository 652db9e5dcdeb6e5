"""Error taxonomy for the deployment pipeline.

Every error knows the pipeline stage it belongs to and the process exit
code the CLI reports for it, so scripts driving ``fwdeploy`` can tell a
compiler failure from a missed pushbutton press.
"""

from typing import List, Optional


class DeployError(Exception):
    """Base class for every pipeline failure"""

    stage = "pipeline"
    cli_exit_code = 1

    def __init__(self, message: str, exit_code: Optional[int] = None, captured_output: str = ""):
        super().__init__(message)
        self.message = message
        self.exit_code = exit_code
        self.captured_output = captured_output or ""

    def tail(self, lines: int = 10) -> List[str]:
        """Return the last non-empty lines of captured output"""
        rows = [row for row in self.captured_output.splitlines() if row.strip()]
        return rows[-lines:] if lines > 0 else []

    def __str__(self) -> str:
        if self.exit_code is None:
            return self.message
        return f"{self.message} (exit code {self.exit_code})"


class UnknownTargetError(DeployError):
    """Board identifier has no entry in the target registry"""

    stage = "resolve"
    cli_exit_code = 5

    def __init__(self, board_id: str, known: Optional[List[str]] = None):
        known = known or []
        message = f"Unknown board '{board_id}'"
        if known:
            message += f" (known boards: {', '.join(known)})"
        super().__init__(message)
        self.board_id = board_id
        self.known = known


class DeviceBusyError(DeployError):
    """Another pipeline run holds the device"""

    stage = "lock"
    cli_exit_code = 6


class BuildError(DeployError):
    stage = "build"
    cli_exit_code = 1


class ArtifactNotFoundError(DeployError):
    """Raw artifact is missing or empty"""

    stage = "convert"
    cli_exit_code = 2

    def __init__(self, path, reason: str = "not found"):
        super().__init__(f"Artifact {reason}: {path}")
        self.path = path


class ConversionError(DeployError):
    stage = "convert"
    cli_exit_code = 2


class FlashError(DeployError):
    stage = "flash"
    cli_exit_code = 3


class CancelledError(DeployError):
    """Operator interrupted the flash while the device was pending"""

    stage = "flash"
    cli_exit_code = 4


class PortNotFoundError(DeployError):
    """No USB serial port to monitor"""

    stage = "monitor"
    cli_exit_code = 7
