"""Build, convert and flash firmware onto pushbutton-programmed boards."""

from .config import BuildConfiguration, Config
from .errors import (
    ArtifactNotFoundError,
    BuildError,
    CancelledError,
    ConversionError,
    DeployError,
    DeviceBusyError,
    FlashError,
    UnknownTargetError,
)
from .pipeline import Pipeline, PipelineResult
from .targets import TargetProfile, TargetRegistry

__version__ = "0.1.0"
