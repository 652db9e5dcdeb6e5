"""Pipeline orchestrator: Build -> Convert -> Flash, stopping at the first failure.

A ``PipelineRun`` is created fresh for each invocation and records the stage
sequence, captured tool output and outcome. Nothing is shared between runs
except the device lock, which keeps two runs off the same board even when
they deploy from different project directories.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional

from colorama import Fore, Style
from tqdm import tqdm

from .build import BuildInvoker
from .config import DEFAULT_BINARY, DEFAULT_OUTPUT, BuildConfiguration, Config
from .convert import ArtifactConverter
from .errors import CancelledError, DeployError
from .flasher import FlashState, FlashSupervisor
from .lock import DeviceLock, default_lock_dir
from .monitor import find_serial_port, validate_firmware
from .targets import TargetRegistry

logger = logging.getLogger(__name__)

BANNER_WIDTH = 57


class Stage(str, Enum):
    RESOLVE = "resolve"
    BUILD = "build"
    CONVERT = "convert"
    FLASH = "flash"


STAGE_ORDER = [Stage.RESOLVE, Stage.BUILD, Stage.CONVERT, Stage.FLASH]


@dataclass
class PipelineRun:
    """Transient record of one invocation"""
    board_id: str
    started_at: datetime = field(default_factory=datetime.now)
    stage: Optional[Stage] = None
    outputs: Dict[str, str] = field(default_factory=dict)
    outcome: str = "pending"
    error: Optional[DeployError] = None

    def advance(self, stage: Stage) -> None:
        """Move to the next stage; no skipping, re-entering or moving past a failure"""
        if self.outcome != "pending":
            raise RuntimeError(f"Cannot enter {stage.value}: run already {self.outcome}")
        current = STAGE_ORDER.index(self.stage) if self.stage else -1
        if STAGE_ORDER.index(stage) != current + 1:
            raise RuntimeError(f"Stage {stage.value} out of order after {self.stage.value if self.stage else 'start'}")
        self.stage = stage
        logger.debug(f"Stage: {stage.value}")

    def record(self, stage: Stage, output: str) -> None:
        if output:
            self.outputs[stage.value] = output

    def fail(self, error: DeployError) -> None:
        self.outcome = "failed"
        self.error = error
        if error.captured_output and self.stage:
            self.outputs.setdefault(self.stage.value, error.captured_output)

    def succeed(self) -> None:
        if self.stage is not STAGE_ORDER[-1]:
            raise RuntimeError("Run cannot succeed before the flash stage")
        self.outcome = "succeeded"

    def to_dict(self) -> dict:
        return {
            'board': self.board_id,
            'started_at': self.started_at.isoformat(),
            'stage': self.stage.value if self.stage else None,
            'outcome': self.outcome,
            'error': str(self.error) if self.error else None,
            'outputs': self.outputs,
        }


@dataclass
class PipelineResult:
    succeeded: bool
    board_id: str
    output_name: str
    exit_code: int = 0
    artifact: Optional[Path] = None
    failed_stage: Optional[str] = None
    error: Optional[DeployError] = None
    duration: float = 0.0
    outputs: Dict[str, str] = field(default_factory=dict)
    validated: Optional[bool] = None

    @property
    def diagnostics(self) -> List[str]:
        return self.error.tail() if self.error else []


def print_banner(*lines: str, color: str = Fore.CYAN) -> None:
    print(color + "=" * BANNER_WIDTH)
    print("")
    for line in lines:
        print(f"     {line}")
    print("")
    print("=" * BANNER_WIDTH + Style.RESET_ALL)


class Pipeline:
    """Sequences build, conversion and flashing for one board"""

    def __init__(self, project_dir: Path, config: Optional[Config] = None,
                 registry: Optional[TargetRegistry] = None,
                 output_format: Optional[str] = None,
                 converter_backend: Optional[str] = None,
                 supervisor_factory: Optional[Callable[..., FlashSupervisor]] = None,
                 lock_dir: Optional[Path] = None,
                 validate: bool = False,
                 port: Optional[str] = None,
                 progress: bool = True):
        self.project_dir = Path(project_dir)
        self.config = config or Config()
        self.registry = registry or TargetRegistry()
        self.output_format = output_format or self.config.value('convert', 'format', 'ihex')
        self.builder = BuildInvoker(self.config)
        self.converter = ArtifactConverter(self.config, converter_backend)
        self.supervisor_factory = supervisor_factory or FlashSupervisor
        lock_dir = lock_dir or self.config.value('locking', 'dir')
        self.lock_dir = Path(lock_dir).expanduser() if lock_dir else default_lock_dir()
        self.validate = validate
        self.port = port
        self.show_progress = progress
        self.supervisor: Optional[FlashSupervisor] = None

    def configure(self, board_id: str, output_name: str = DEFAULT_OUTPUT,
                  binary_name: Optional[str] = None, release: bool = True,
                  verbose: bool = False) -> BuildConfiguration:
        """Resolve the board and freeze the parameters for one run"""
        profile = self.registry.get(board_id)
        return BuildConfiguration(
            profile=profile,
            project_dir=self.project_dir,
            output_name=output_name,
            binary_name=binary_name or self.config.value('build', 'binary_name', DEFAULT_BINARY),
            release=release,
            verbose=verbose or bool(self.config.value('build', 'verbose', False)),
        )

    def run(self, board_id: str, output_name: str = DEFAULT_OUTPUT,
            binary_name: Optional[str] = None, release: bool = True,
            verbose: bool = False) -> PipelineResult:
        """Resolve the board, then build, convert and flash it"""
        run = PipelineRun(board_id=board_id)
        started = time.monotonic()
        run.advance(Stage.RESOLVE)
        try:
            build_config = self.configure(board_id, output_name, binary_name, release, verbose)
        except DeployError as e:
            logger.error(f"Pipeline failed at resolve: {e}")
            run.fail(e)
            result = self._result(run, output_name, started)
            self.report(result)
            return result
        return self.execute(build_config, run, started)

    def execute(self, build_config: BuildConfiguration, run: Optional[PipelineRun] = None,
                started: Optional[float] = None) -> PipelineResult:
        """Run Build -> Convert -> Flash for an already resolved configuration"""
        if run is None:
            run = PipelineRun(board_id=build_config.board_id)
            run.advance(Stage.RESOLVE)
        started = started if started is not None else time.monotonic()
        run.board_id = build_config.board_id
        logger.info(f"Deploying {build_config.output_name} to {build_config.board_id}")

        progress = tqdm(total=3, desc=build_config.board_id, unit='stage', leave=False,
                        disable=not self.show_progress,
                        bar_format='{l_bar}{bar}| {n_fmt}/{total_fmt} [{elapsed}]')
        artifact = None
        try:
            with DeviceLock(build_config.board_id, self.lock_dir):
                run.advance(Stage.BUILD)
                raw, build_output = self.builder.build_with_output(build_config)
                if build_config.verbose:
                    run.record(Stage.BUILD, build_output)
                progress.update(1)

                run.advance(Stage.CONVERT)
                artifact = self.converter.convert(raw, self.output_format, build_config.output_path,
                                                  build_config.profile.flash_base)
                progress.update(1)

                run.advance(Stage.FLASH)
                self.supervisor = self.supervisor_factory(self.config, on_state=self.on_flash_state)
                flash_result = self.supervisor.flash(artifact, build_config.profile)
                run.record(Stage.FLASH, "\n".join(flash_result.output))
                progress.update(1)
            run.succeed()
        except KeyboardInterrupt:
            error = CancelledError(f"Cancelled by operator during {run.stage.value}")
            error.stage = run.stage.value
            run.fail(error)
        except DeployError as e:
            run.fail(e)
        finally:
            progress.close()

        if run.error:
            logger.error(f"Pipeline failed at {run.error.stage}: {run.error}")
        result = self._result(run, build_config.output_name, started, artifact)

        if result.succeeded and self.validate:
            result.validated = self.validate_device()

        self.save_run(run)
        self.report(result)
        return result

    def on_flash_state(self, state: FlashState) -> None:
        if state is FlashState.AWAITING_DEVICE_INTERACTION:
            print_banner("Press pushbutton on Teensy to start programming",
                         "(Ctrl-C to cancel)", color=Fore.MAGENTA)
        elif state is FlashState.FLASHING:
            print(f"{Fore.CYAN}🚀 Bootloader found, programming...{Style.RESET_ALL}")

    def _result(self, run: PipelineRun, output_name: str, started: float,
                artifact: Optional[Path] = None) -> PipelineResult:
        error = run.error
        return PipelineResult(
            succeeded=run.outcome == "succeeded",
            board_id=run.board_id,
            output_name=output_name,
            exit_code=error.cli_exit_code if error else 0,
            artifact=artifact,
            failed_stage=error.stage if error else None,
            error=error,
            duration=time.monotonic() - started,
            outputs=dict(run.outputs),
        )

    def validate_device(self) -> bool:
        """Look for the board's startup log; a miss is only a warning"""
        validation = self.config.section('validation')
        time.sleep(float(validation.get('boot_delay', 2)))  # Give the board time to boot and enumerate
        port = self.port or find_serial_port()
        if not port:
            return False
        ok = validate_firmware(port, validation.get('markers', []),
                               float(validation.get('timeout', 10)),
                               int(validation.get('baud', 115200)))
        if not ok:
            logger.warning("Firmware validation failed, but flash succeeded")
        return ok

    def save_run(self, run: PipelineRun) -> Optional[Path]:
        """Persist the run record next to the log file"""
        logging_config = self.config.section('logging')
        if not logging_config.get('save_runs', True):
            return None
        runs_dir = self.project_dir / logging_config.get('dir', 'logs') / "runs"
        try:
            runs_dir.mkdir(parents=True, exist_ok=True)
            path = runs_dir / f"{run.started_at.strftime('%Y%m%d_%H%M%S_%f')}_{run.board_id}.json"
            path.write_text(json.dumps(run.to_dict(), indent=2))
        except OSError as e:
            logger.warning(f"Could not save run record: {e}")
            return None
        return path

    def report(self, result: PipelineResult) -> None:
        """Final pass/fail banner"""
        if result.succeeded:
            logger.info(f"{result.output_name} flashed into {result.board_id} in {result.duration:.1f}s")
            print_banner(f"{result.output_name} was successfully flashed into {result.board_id}",
                         color=Fore.GREEN)
            return

        error = result.error
        code = f", exit code {error.exit_code}" if error and error.exit_code is not None else ""
        lines = [f"✘ {result.failed_stage} failed for {result.board_id} ({result.output_name}){code}",
                 str(error)]
        tail = result.diagnostics
        if tail:
            lines.append("")
            lines.extend(tail)
        print_banner(*lines, color=Fore.RED)
