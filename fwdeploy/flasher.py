"""Flash supervisor.

Runs the flashing utility (``teensy_loader_cli`` by default) as a child
process and follows its output through a small state machine::

    IDLE -> LAUNCHING -> AWAITING_DEVICE_INTERACTION -> FLASHING -> SUCCEEDED
                                                                 \\-> FAILED

Output is pumped by a reader thread into a queue so the supervisor can poll
for cancellation while the utility sits waiting for the pushbutton press.
The wait itself has no timeout; only the operator ends it.
"""

import logging
import queue
import re
import subprocess
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, List, Optional

import psutil

from .build import TOOL_NOT_FOUND
from .config import Config
from .errors import CancelledError, FlashError
from .targets import TargetProfile

logger = logging.getLogger(__name__)


class FlashState(str, Enum):
    IDLE = "idle"
    LAUNCHING = "launching"
    AWAITING_DEVICE_INTERACTION = "awaiting_device_interaction"
    FLASHING = "flashing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


TRANSITIONS = {
    FlashState.IDLE: {FlashState.LAUNCHING, FlashState.FAILED},
    FlashState.LAUNCHING: {
        FlashState.AWAITING_DEVICE_INTERACTION, FlashState.FLASHING,
        FlashState.SUCCEEDED, FlashState.FAILED,
    },
    FlashState.AWAITING_DEVICE_INTERACTION: {
        FlashState.FLASHING, FlashState.SUCCEEDED, FlashState.FAILED,
    },
    FlashState.FLASHING: {FlashState.SUCCEEDED, FlashState.FAILED},
    FlashState.SUCCEEDED: set(),
    FlashState.FAILED: set(),
}


@dataclass
class FlashResult:
    state: FlashState
    exit_code: int
    output: List[str] = field(default_factory=list)
    board_id: str = ""
    artifact: Optional[Path] = None

    @property
    def succeeded(self) -> bool:
        return self.state is FlashState.SUCCEEDED


def _pump(stream, lines: "queue.Queue[Optional[str]]") -> None:
    """Forward subprocess output line by line; None marks end of stream"""
    try:
        for line in iter(stream.readline, ''):
            lines.put(line.rstrip('\r\n'))
    except (OSError, ValueError) as e:
        logger.debug(f"Output reader stopped: {e}")
    finally:
        lines.put(None)


def _compile(patterns) -> List["re.Pattern"]:
    """A lone string is one pattern, not a sequence of characters"""
    if isinstance(patterns, str):
        patterns = [patterns]
    return [re.compile(p, re.IGNORECASE) for p in patterns]


class FlashSupervisor:
    """Supervises one flashing utility run. Instances are single-use."""

    def __init__(self, config: Optional[Config] = None,
                 on_state: Optional[Callable[[FlashState], None]] = None,
                 poll_interval: float = 0.1):
        self.config = config or Config()
        self.on_state = on_state
        self.poll_interval = poll_interval
        self.state = FlashState.IDLE
        self.history = [FlashState.IDLE]
        self.process: Optional[subprocess.Popen] = None
        self._cancel = threading.Event()

        flash_config = self.config.section('flash')
        self.prompt_patterns = _compile(flash_config.get('prompt_patterns', []))
        self.flashing_patterns = _compile(flash_config.get('flashing_patterns', []))
        self.terminate_timeout = float(flash_config.get('terminate_timeout', 5))

    def command(self, artifact: Path, profile: TargetProfile) -> List[str]:
        loader = self.config.value('flash', 'loader', 'teensy_loader_cli')
        cmd = list(loader) if isinstance(loader, list) else [loader]
        cmd += [f"--mcu={profile.device_code}", "-w"]
        # -v makes the loader print its "waiting for device" prompt
        if self.config.value('flash', 'verbose', True):
            cmd.append("-v")
        cmd.append(str(artifact))
        return cmd

    def cancel(self) -> None:
        """Request cancellation; safe to call from any thread"""
        self._cancel.set()

    @property
    def cancelled(self) -> bool:
        return self._cancel.is_set()

    def _transition(self, new_state: FlashState) -> None:
        if new_state not in TRANSITIONS[self.state]:
            raise RuntimeError(f"Illegal flash state transition {self.state.value} -> {new_state.value}")
        logger.debug(f"Flash state: {self.state.value} -> {new_state.value}")
        self.state = new_state
        self.history.append(new_state)
        if self.on_state:
            self.on_state(new_state)

    def _observe(self, line: str) -> None:
        if self.state is FlashState.LAUNCHING and any(p.search(line) for p in self.prompt_patterns):
            self._transition(FlashState.AWAITING_DEVICE_INTERACTION)
        elif self.state in (FlashState.LAUNCHING, FlashState.AWAITING_DEVICE_INTERACTION) \
                and any(p.search(line) for p in self.flashing_patterns):
            self._transition(FlashState.FLASHING)

    def flash(self, artifact_path: Path, profile: TargetProfile) -> FlashResult:
        """Flash artifact_path onto the board described by profile"""
        if self.state is not FlashState.IDLE:
            raise RuntimeError("FlashSupervisor instances are single-use")

        artifact_path = Path(artifact_path)
        if not artifact_path.is_file():
            self._transition(FlashState.FAILED)
            raise FlashError(f"Artifact to flash not found: {artifact_path}")

        cmd = self.command(artifact_path, profile)
        self._transition(FlashState.LAUNCHING)
        logger.info(f"Launching: {' '.join(cmd)}")
        try:
            self.process = subprocess.Popen(
                cmd,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.STDOUT,
                text=True,
                errors='replace',
                bufsize=1,
            )
        except FileNotFoundError as e:
            self._transition(FlashState.FAILED)
            raise FlashError(f"Flashing utility not found: {cmd[0]}", TOOL_NOT_FOUND, str(e))

        lines: "queue.Queue[Optional[str]]" = queue.Queue()
        reader = threading.Thread(target=_pump, args=(self.process.stdout, lines), daemon=True)
        reader.start()

        output: List[str] = []
        try:
            while True:
                if self._cancel.is_set():
                    self._abort(output)
                try:
                    line = lines.get(timeout=self.poll_interval)
                except queue.Empty:
                    continue
                if line is None:
                    break
                output.append(line)
                logger.debug(f"loader: {line}")
                self._observe(line)

            while True:
                try:
                    exit_code = self.process.wait(timeout=self.poll_interval)
                    break
                except subprocess.TimeoutExpired:
                    if self._cancel.is_set():
                        self._abort(output)
        except KeyboardInterrupt:
            self._abort(output)
        finally:
            if self.process.poll() is None:
                self._terminate()
            reader.join(timeout=self.terminate_timeout)
            if self.process.stdout:
                self.process.stdout.close()

        captured = "\n".join(output)
        if exit_code != 0:
            self._transition(FlashState.FAILED)
            logger.error(f"Flashing utility exited with code {exit_code}")
            raise FlashError("Flashing failed", exit_code, captured)

        self._transition(FlashState.SUCCEEDED)
        return FlashResult(self.state, exit_code, output, profile.board_id, artifact_path)

    def _abort(self, output: List[str]) -> None:
        """Stop the utility and raise CancelledError"""
        logger.warning("Flash cancelled, terminating flashing utility")
        self._terminate()
        if self.state not in (FlashState.SUCCEEDED, FlashState.FAILED):
            self._transition(FlashState.FAILED)
        raise CancelledError(
            "Flash cancelled by operator",
            self.process.returncode if self.process else None,
            "\n".join(output),
        )

    def _terminate(self) -> None:
        """Terminate the utility and anything it spawned"""
        if self.process is None or self.process.poll() is not None:
            return
        try:
            children = psutil.Process(self.process.pid).children(recursive=True)
        except psutil.NoSuchProcess:
            children = []
        for child in children:
            try:
                child.terminate()
            except psutil.NoSuchProcess:
                pass

        self.process.terminate()
        try:
            self.process.wait(timeout=self.terminate_timeout)
        except subprocess.TimeoutExpired:
            logger.warning(f"Flashing utility ignored terminate, killing pid {self.process.pid}")
            self.process.kill()
            self.process.wait()

        _, alive = psutil.wait_procs(children, timeout=self.terminate_timeout)
        for child in alive:
            try:
                child.kill()
            except psutil.NoSuchProcess:
                pass
