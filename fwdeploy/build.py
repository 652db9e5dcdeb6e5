"""Build invoker: runs the external toolchain for one target profile."""

import logging
import subprocess
from pathlib import Path
from typing import List, Optional, Tuple

from colorama import Fore, Style

from .config import BuildConfiguration, Config
from .errors import BuildError

logger = logging.getLogger(__name__)

TOOL_NOT_FOUND = 127


def run_captured(cmd: List[str], cwd: Optional[Path] = None) -> subprocess.CompletedProcess:
    """Run a command with stdout and stderr merged into one captured text"""
    logger.debug(f"Running: {' '.join(cmd)}")
    return subprocess.run(
        cmd,
        cwd=str(cwd) if cwd else None,
        stdout=subprocess.PIPE,
        stderr=subprocess.STDOUT,
        text=True,
        errors='replace',
    )


class BuildInvoker:
    """Compiles the firmware image for a build configuration"""

    def __init__(self, config: Optional[Config] = None):
        self.config = config or Config()

    def build_command(self, build_config: BuildConfiguration) -> List[str]:
        cmd = list(self.config.value('build', 'command', ['cargo', 'build']))
        cmd += ["--target", build_config.profile.toolchain_triple]
        if build_config.release:
            cmd.append("--release")
        if build_config.binary_name:
            cmd += ["--bin", build_config.binary_name]
        return cmd

    def build(self, build_config: BuildConfiguration) -> Path:
        """Build firmware and return the path of the raw artifact"""
        artifact, _ = self.build_with_output(build_config)
        return artifact

    def build_with_output(self, build_config: BuildConfiguration) -> Tuple[Path, str]:
        """Build firmware; return the raw artifact path and the toolchain's output"""
        cmd = self.build_command(build_config)
        print(f"{Fore.CYAN}🔨 Building {build_config.binary_name} for {build_config.board_id} "
              f"({build_config.mode})...{Style.RESET_ALL}")
        logger.info(f"Building {build_config.board_id} ({build_config.profile.toolchain_triple}, {build_config.mode})")

        try:
            result = run_captured(cmd, build_config.project_dir)
        except FileNotFoundError as e:
            raise BuildError(f"Toolchain not found: {cmd[0]}", TOOL_NOT_FOUND, str(e))

        if result.returncode != 0:
            logger.error(f"Build failed with return code {result.returncode}")
            raise BuildError("Build failed", result.returncode, result.stdout)

        if build_config.verbose:
            for line in result.stdout.splitlines():
                logger.info(line)
        else:
            logger.debug(result.stdout)

        artifact = build_config.raw_artifact_path
        if artifact.is_file():
            print(f"{Fore.GREEN}✔ Build complete: {artifact}{Style.RESET_ALL}")
        else:
            # the converter rejects it with ArtifactNotFoundError
            logger.warning(f"Build succeeded but {artifact} is missing")
        return artifact, result.stdout

    def clean(self, build_config: BuildConfiguration) -> None:
        """Clean build artifacts for the project"""
        cmd = list(self.config.value('build', 'clean_command', ['cargo', 'clean']))
        print(f"{Fore.CYAN}🧹 Cleaning {build_config.project_dir}...{Style.RESET_ALL}")
        try:
            result = run_captured(cmd, build_config.project_dir)
        except FileNotFoundError as e:
            raise BuildError(f"Toolchain not found: {cmd[0]}", TOOL_NOT_FOUND, str(e))
        if result.returncode != 0:
            raise BuildError("Clean failed", result.returncode, result.stdout)
        print(f"{Fore.GREEN}✔ Clean complete{Style.RESET_ALL}")
