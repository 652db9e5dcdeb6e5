"""Target profile registry: board identifiers to build/flash parameters."""

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

import yaml
from colorama import Fore, Style

from .errors import UnknownTargetError

logger = logging.getLogger(__name__)

ARM_HARD_FLOAT = "thumbv7em-none-eabihf"
DEFAULT_ARTIFACT_PATTERN = "target/{triple}/{mode}"


@dataclass(frozen=True)
class TargetProfile:
    """Everything downstream stages need to know about one board"""
    board_id: str
    toolchain_triple: str
    device_code: str
    description: str = ""
    artifact_pattern: str = DEFAULT_ARTIFACT_PATTERN
    flash_base: int = 0x60000000

    def artifact_dir(self, mode: str) -> Path:
        """Directory the toolchain writes artifacts to for a build mode"""
        return Path(self.artifact_pattern.format(
            triple=self.toolchain_triple, mode=mode, board=self.board_id
        ))


BUILTIN_TARGETS = (
    TargetProfile('TEENSY40', ARM_HARD_FLOAT, 'TEENSY40', 'Teensy 4.0'),
    TargetProfile('TEENSY41', ARM_HARD_FLOAT, 'TEENSY41', 'Teensy 4.1'),
    TargetProfile('TEENSY_MICROMOD', ARM_HARD_FLOAT, 'TEENSY_MICROMOD', 'Teensy MicroMod'),
    TargetProfile('IMXRT1062', ARM_HARD_FLOAT, 'imxrt1062', 'Generic i.MX RT1062 (Teensy 4.x)'),
)


class TargetRegistry:
    """Fixed board table, optionally extended from a boards file"""

    def __init__(self, boards_file: Optional[Path] = None):
        self.profiles: Dict[str, TargetProfile] = {
            profile.board_id: profile for profile in BUILTIN_TARGETS
        }
        if boards_file and boards_file.exists():
            self.profiles.update(self.load_profiles(boards_file))

    def load_profiles(self, boards_file: Path) -> Dict[str, TargetProfile]:
        """Load extra board profiles from JSON/YAML file"""
        try:
            with open(boards_file) as f:
                if boards_file.suffix in ['.yaml', '.yml']:
                    data = yaml.safe_load(f) or {}
                else:
                    data = json.load(f)
        except (OSError, ValueError, yaml.YAMLError) as e:
            logger.warning(f"Could not load boards file {boards_file}: {e}")
            print(f"{Fore.YELLOW}⚠ Could not load boards: {e}{Style.RESET_ALL}")
            return {}

        if not isinstance(data, dict):
            logger.warning(f"Ignoring boards file {boards_file}: top level is not a mapping")
            return {}

        profiles = {}
        for board_id, entry in data.items():
            entry = dict(entry or {})
            board_id = str(board_id).upper()
            triple = entry.get('toolchain_triple', ARM_HARD_FLOAT)
            device_code = entry.get('device_code', board_id)
            if not triple or not device_code:
                logger.warning(f"Skipping board {board_id}: toolchain triple and device code are required")
                continue
            profiles[board_id] = TargetProfile(
                board_id=board_id,
                toolchain_triple=triple,
                device_code=device_code,
                description=entry.get('description', ''),
                artifact_pattern=entry.get('artifact_pattern', DEFAULT_ARTIFACT_PATTERN),
                flash_base=int(str(entry.get('flash_base', 0x60000000)), 0),
            )
            logger.debug(f"Registered board {board_id} from {boards_file}")
        return profiles

    def get(self, board_id: str) -> TargetProfile:
        """Return the profile for a board, case-insensitively"""
        profile = self.profiles.get((board_id or "").strip().upper())
        if profile is None:
            raise UnknownTargetError(board_id, self.board_ids())
        return profile

    def board_ids(self) -> List[str]:
        return sorted(self.profiles)

    def boards(self) -> List[TargetProfile]:
        return [self.profiles[board_id] for board_id in self.board_ids()]

    def __contains__(self, board_id: str) -> bool:
        return (board_id or "").strip().upper() in self.profiles
