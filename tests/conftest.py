"""Shared fixtures: stand-in toolchain, converter and loader scripts.

The stand-ins are small Python programs run with the current interpreter,
so the real subprocess plumbing (capture, streaming, termination) is
exercised without cargo or a Teensy attached.
"""

from __future__ import annotations

import logging
import sys
import textwrap
from pathlib import Path

import pytest

from fwdeploy.config import Config
from fwdeploy.pipeline import Pipeline
from fwdeploy.targets import TargetRegistry


FAKE_CARGO = """
import sys
from pathlib import Path

args = sys.argv[1:]
triple = args[args.index("--target") + 1]
mode = "release" if "--release" in args else "debug"
name = args[args.index("--bin") + 1]
out = Path("target") / triple / mode / name
out.parent.mkdir(parents=True, exist_ok=True)
out.write_bytes(bytes(range(256)) * 4)
print("   Compiling gpio-int v0.1.0")
print("    Finished " + mode + " [optimized] target(s)")
"""

FAILING_CARGO = """
import sys
print("   Compiling gpio-int v0.1.0")
print("error[E0425]: cannot find value `led` in this scope", file=sys.stderr)
sys.exit(101)
"""

SILENT_CARGO = """
print("    Finished release [optimized] target(s)")
"""

# Waits for the "button" file named in argv[1] before programming
BUTTON_LOADER = """
import sys
import time
from pathlib import Path

button = Path(sys.argv[1])
print("Teensy Loader, Command Line, Version 2.2", flush=True)
print("Waiting for Teensy device...", flush=True)
print(" (hint: press the reset button)", flush=True)
while not button.exists():
    time.sleep(0.05)
print("Found HalfKay Bootloader", flush=True)
print("Programming.....", flush=True)
print("Booting", flush=True)
"""

QUICK_LOADER = """
import time
print("Waiting for Teensy device...", flush=True)
time.sleep(0.2)
print("Found HalfKay Bootloader", flush=True)
print("Programming.....", flush=True)
print("Booting", flush=True)
"""

BOOTLOADER_READY_LOADER = """
print("Found HalfKay Bootloader", flush=True)
print("Programming.....", flush=True)
print("Booting", flush=True)
"""

FAILING_LOADER = """
import sys
print("Waiting for Teensy device...", flush=True)
print("error writing to Teensy", file=sys.stderr, flush=True)
sys.exit(1)
"""

# Never gets its button press; spawns a helper whose pid goes to argv[1]
HANGING_LOADER = """
import subprocess
import sys
import time
from pathlib import Path

helper = subprocess.Popen([sys.executable, "-c", "import time; time.sleep(60)"])
Path(sys.argv[1]).write_text(str(helper.pid))
print("Waiting for Teensy device...", flush=True)
print(" (hint: press the reset button)", flush=True)
while True:
    time.sleep(0.1)
"""

FAKE_OBJCOPY = """
import sys
from pathlib import Path

src, dst = sys.argv[-2], sys.argv[-1]
Path(dst).write_text(":0400000001020304F2\\n:00000001FF\\n")
"""

FAILING_OBJCOPY = """
import sys
print("rust-objcopy: error: 'target/firmware': The file was not recognized as a valid object file", file=sys.stderr)
sys.exit(1)
"""


def write_tool(directory: Path, name: str, body: str) -> list:
    """Write a stand-in tool and return the command that runs it"""
    path = directory / f"{name}.py"
    path.write_text(textwrap.dedent(body))
    return [sys.executable, str(path)]


@pytest.fixture
def tools_dir(tmp_path):
    path = tmp_path / "tools"
    path.mkdir()
    return path


@pytest.fixture
def project_dir(tmp_path):
    path = tmp_path / "firmware"
    path.mkdir()
    return path


@pytest.fixture
def config(tmp_path, tools_dir):
    """Config wired to the stand-in toolchain, a quick loader and a private lock dir"""
    cfg = Config()
    cfg.config['locking']['dir'] = str(tmp_path / "locks")
    cfg.config['build']['command'] = write_tool(tools_dir, "cargo", FAKE_CARGO)
    cfg.config['flash']['loader'] = write_tool(tools_dir, "loader", QUICK_LOADER)
    cfg.config['flash']['terminate_timeout'] = 2
    cfg.config['validation']['boot_delay'] = 0
    return cfg


@pytest.fixture
def registry():
    return TargetRegistry()


@pytest.fixture
def pipeline(project_dir, config, registry):
    return Pipeline(project_dir, config, registry=registry, progress=False)


@pytest.fixture(autouse=True)
def reset_logging():
    """Drop handlers the CLI attaches to the package logger"""
    yield
    logger = logging.getLogger("fwdeploy")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()
