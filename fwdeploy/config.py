"""Layered settings and the per-run build configuration."""

import copy
import json
import logging
import configparser
import shlex
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

import yaml
from colorama import Fore, Style

from .targets import TargetProfile

logger = logging.getLogger(__name__)

DEFAULT_BOARD = "TEENSY40"
DEFAULT_OUTPUT = "gpio-int.hex"
DEFAULT_BINARY = "gpio-int"


class Config:
    """Centralized configuration management"""

    DEFAULT_CONFIG = {
        'build': {
            'command': ['cargo', 'build'],
            'clean_command': ['cargo', 'clean'],
            'binary_name': DEFAULT_BINARY,
            'verbose': False
        },
        'convert': {
            'backend': 'builtin',
            'format': 'ihex',
            'objcopy': 'rust-objcopy',
            'record_size': 16
        },
        'flash': {
            'loader': 'teensy_loader_cli',
            'verbose': True,
            'prompt_patterns': [r'Waiting for Teensy device', r'press the reset button'],
            'flashing_patterns': [r'Found HalfKay Bootloader', r'Programming'],
            'terminate_timeout': 5
        },
        'validation': {
            'timeout': 10,
            'boot_delay': 2,
            'baud': 115200,
            'markers': ['Interrupt was triggered', 'debounced', 'INFO']
        },
        'logging': {
            'dir': 'logs',
            'file': 'deploy.log',
            'max_bytes': 10 * 1024 * 1024,
            'backup_count': 5,
            'save_runs': True
        },
        'locking': {
            'dir': None
        }
    }

    def __init__(self, config_file: Optional[Path] = None):
        self.config = copy.deepcopy(self.DEFAULT_CONFIG)
        if config_file and config_file.exists():
            self.load_from_file(config_file)

    def load_from_file(self, config_file: Path):
        """Load configuration from YAML/JSON/INI file"""
        try:
            with open(config_file) as f:
                if config_file.suffix in ['.yaml', '.yml']:
                    user_config = yaml.safe_load(f) or {}
                elif config_file.suffix == '.json':
                    user_config = json.load(f)
                else:
                    # Assume INI format
                    parser = configparser.ConfigParser(interpolation=None)
                    parser.read_file(f)
                    user_config = self._from_ini(parser)
        except (OSError, ValueError, yaml.YAMLError, configparser.Error) as e:
            logger.warning(f"Could not load config file {config_file}: {e}")
            print(f"{Fore.YELLOW}⚠ Could not load config file: {e}{Style.RESET_ALL}")
            return

        if not isinstance(user_config, dict):
            logger.warning(f"Ignoring config file {config_file}: top level is not a mapping")
            return
        self._deep_update(self.config, user_config)
        logger.debug(f"Loaded configuration from {config_file}")

    def _from_ini(self, parser: configparser.ConfigParser) -> dict:
        """INI values are all strings; shape them like the defaults they replace"""
        user_config = {}
        for section in parser.sections():
            defaults = self.DEFAULT_CONFIG.get(section, {})
            values = {}
            for key, raw in parser.items(section):
                default = defaults.get(key)
                if isinstance(default, bool):
                    values[key] = parser.getboolean(section, key)
                elif isinstance(default, int):
                    values[key] = parser.getint(section, key)
                elif isinstance(default, float):
                    values[key] = parser.getfloat(section, key)
                elif isinstance(default, list):
                    values[key] = self._ini_list(key, raw)
                else:
                    values[key] = raw
            user_config[section] = values
        return user_config

    @staticmethod
    def _ini_list(key: str, raw: str) -> list:
        # commands: shell words; patterns: one regex per line; others: lines or commas
        if key.endswith('command'):
            return shlex.split(raw)
        lines = [line.strip() for line in raw.splitlines() if line.strip()]
        if key.endswith('patterns') or len(lines) > 1:
            return lines
        return [item.strip() for item in raw.split(',') if item.strip()]

    def _deep_update(self, base: dict, update: dict):
        """Deep update dictionary"""
        for key, value in update.items():
            if isinstance(value, dict) and key in base and isinstance(base[key], dict):
                self._deep_update(base[key], value)
            else:
                base[key] = value

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value by key with optional default"""
        return self.config.get(key, default)

    def section(self, name: str) -> dict:
        """Return a config section, always as a dict"""
        value = self.config.get(name)
        return value if isinstance(value, dict) else {}

    def value(self, section: str, key: str, default: Any = None) -> Any:
        return self.section(section).get(key, default)


@dataclass(frozen=True)
class BuildConfiguration:
    """Read-only parameters of one pipeline run"""
    profile: TargetProfile
    project_dir: Path
    output_name: str = DEFAULT_OUTPUT
    binary_name: str = DEFAULT_BINARY
    release: bool = True
    verbose: bool = False

    @property
    def board_id(self) -> str:
        return self.profile.board_id

    @property
    def mode(self) -> str:
        return "release" if self.release else "debug"

    @property
    def artifact_dir(self) -> Path:
        return self.project_dir / self.profile.artifact_dir(self.mode)

    @property
    def raw_artifact_path(self) -> Path:
        """Where the toolchain leaves the linked image"""
        return self.artifact_dir / self.binary_name

    @property
    def output_path(self) -> Path:
        output = Path(self.output_name)
        if output.is_absolute():
            return output
        return self.artifact_dir / output
