"""Artifact converter: raw toolchain output to a loader-ready file."""

import logging
from pathlib import Path
from typing import Optional

from colorama import Fore, Style

from . import ihex
from .build import TOOL_NOT_FOUND, run_captured
from .config import Config
from .errors import ArtifactNotFoundError, ConversionError

logger = logging.getLogger(__name__)

OUTPUT_FORMATS = ('ihex', 'binary')
BACKENDS = ('builtin', 'objcopy')


def check_artifact(path: Path) -> Path:
    """Raw artifact must exist and hold data"""
    path = Path(path)
    if not path.is_file():
        raise ArtifactNotFoundError(path)
    if path.stat().st_size == 0:
        raise ArtifactNotFoundError(path, "is empty")
    return path


class ArtifactConverter:
    """Converts a linked image with the in-process encoder or objcopy"""

    def __init__(self, config: Optional[Config] = None, backend: Optional[str] = None):
        self.config = config or Config()
        self.backend = backend or self.config.value('convert', 'backend', 'builtin')
        if self.backend not in BACKENDS:
            raise ValueError(f"Unknown converter backend '{self.backend}' (choose from {', '.join(BACKENDS)})")

    def convert(self, raw_path: Path, output_format: str, output_path: Path, base_address: int = 0) -> Path:
        """Convert raw_path into output_format at output_path"""
        if output_format not in OUTPUT_FORMATS:
            raise ConversionError(f"Unsupported output format '{output_format}'")

        raw_path = check_artifact(raw_path)
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)

        print(f"{Fore.CYAN}📦 Converting {raw_path.name} → {output_path.name} ({output_format})...{Style.RESET_ALL}")
        logger.info(f"Converting {raw_path} to {output_format} via {self.backend}")

        if self.backend == 'objcopy':
            self._run_objcopy(raw_path, output_format, output_path)
        else:
            self._run_builtin(raw_path, output_format, output_path, base_address)

        if not output_path.is_file() or output_path.stat().st_size == 0:
            raise ConversionError(f"Converter produced no output at {output_path}")

        print(f"{Fore.GREEN}✔ Converted artifact: {output_path} ({output_path.stat().st_size // 1024} KB){Style.RESET_ALL}")
        return output_path

    def _run_builtin(self, raw_path: Path, output_format: str, output_path: Path, base_address: int):
        record_size = int(self.config.value('convert', 'record_size', 16))
        try:
            if output_format == 'ihex':
                ihex.write_hex(raw_path, output_path, base_address, record_size)
            else:
                ihex.write_binary(raw_path, output_path, base_address)
        except ValueError as e:
            raise ConversionError(f"Could not encode {raw_path.name}: {e}", captured_output=str(e))

    def _run_objcopy(self, raw_path: Path, output_format: str, output_path: Path):
        objcopy = self.config.value('convert', 'objcopy', 'rust-objcopy')
        cmd = objcopy if isinstance(objcopy, list) else [objcopy]
        cmd = list(cmd) + ["-O", output_format, str(raw_path), str(output_path)]
        try:
            result = run_captured(cmd)
        except FileNotFoundError as e:
            raise ConversionError(f"Converter not found: {cmd[0]}", TOOL_NOT_FOUND, str(e))
        if result.returncode != 0:
            logger.error(f"objcopy failed with return code {result.returncode}")
            raise ConversionError("Conversion failed", result.returncode, result.stdout)
        logger.debug(result.stdout)
