"""Tests for the flash supervisor state machine."""

from __future__ import annotations

import time

import psutil
import pytest

from fwdeploy.build import TOOL_NOT_FOUND
from fwdeploy.config import Config
from fwdeploy.errors import CancelledError, FlashError
from fwdeploy.flasher import FlashState, FlashSupervisor

from conftest import (
    BOOTLOADER_READY_LOADER,
    BUTTON_LOADER,
    FAILING_LOADER,
    HANGING_LOADER,
    write_tool,
)


@pytest.fixture
def hex_file(tmp_path):
    path = tmp_path / "gpio-int.hex"
    path.write_text(":0400000001020304F2\n:00000001FF\n")
    return path


@pytest.fixture
def teensy40(registry):
    return registry.get("TEENSY40")


def gone(pid: int) -> bool:
    """Process has exited (a zombie awaiting reaping counts as exited)"""
    try:
        return psutil.Process(pid).status() == psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return True


class TestCommand:
    def test_loader_arguments(self, config, hex_file, teensy40):
        config.config['flash']['loader'] = 'teensy_loader_cli'

        cmd = FlashSupervisor(config).command(hex_file, teensy40)

        assert cmd == ['teensy_loader_cli', '--mcu=TEENSY40', '-w', '-v', str(hex_file)]

    def test_quiet_loader(self, config, hex_file, teensy40):
        config.config['flash']['loader'] = 'teensy_loader_cli'
        config.config['flash']['verbose'] = False

        assert '-v' not in FlashSupervisor(config).command(hex_file, teensy40)


class TestFlash:
    def test_operator_presses_button(self, config, tools_dir, tmp_path, hex_file, teensy40):
        """Supervisor blocks in AWAITING until the physical action happens."""
        button = tmp_path / "button"
        config.config['flash']['loader'] = write_tool(tools_dir, "button_loader", BUTTON_LOADER) + [str(button)]
        seen = []

        def on_state(state):
            seen.append(state)
            if state is FlashState.AWAITING_DEVICE_INTERACTION:
                button.touch()

        result = FlashSupervisor(config, on_state=on_state).flash(hex_file, teensy40)

        assert result.succeeded
        assert result.exit_code == 0
        assert result.board_id == "TEENSY40"
        assert "Booting" in result.output
        assert seen == [
            FlashState.LAUNCHING,
            FlashState.AWAITING_DEVICE_INTERACTION,
            FlashState.FLASHING,
            FlashState.SUCCEEDED,
        ]

    def test_device_already_in_bootloader(self, config, tools_dir, hex_file, teensy40):
        config.config['flash']['loader'] = write_tool(tools_dir, "ready_loader", BOOTLOADER_READY_LOADER)
        supervisor = FlashSupervisor(config)

        supervisor.flash(hex_file, teensy40)

        assert supervisor.history == [
            FlashState.IDLE, FlashState.LAUNCHING, FlashState.FLASHING, FlashState.SUCCEEDED,
        ]

    def test_loader_failure(self, config, tools_dir, hex_file, teensy40):
        config.config['flash']['loader'] = write_tool(tools_dir, "failing_loader", FAILING_LOADER)
        supervisor = FlashSupervisor(config)

        with pytest.raises(FlashError) as excinfo:
            supervisor.flash(hex_file, teensy40)

        assert excinfo.value.exit_code == 1
        assert "error writing to Teensy" in excinfo.value.captured_output
        assert excinfo.value.cli_exit_code == 3
        assert supervisor.state is FlashState.FAILED

    def test_missing_loader(self, config, hex_file, teensy40):
        config.config['flash']['loader'] = 'definitely-not-a-loader-xyz'
        supervisor = FlashSupervisor(config)

        with pytest.raises(FlashError) as excinfo:
            supervisor.flash(hex_file, teensy40)

        assert excinfo.value.exit_code == TOOL_NOT_FOUND
        assert supervisor.state is FlashState.FAILED

    def test_missing_artifact(self, config, tmp_path, teensy40):
        with pytest.raises(FlashError, match="not found"):
            FlashSupervisor(config).flash(tmp_path / "nope.hex", teensy40)

    def test_single_use(self, config, tools_dir, hex_file, teensy40):
        config.config['flash']['loader'] = write_tool(tools_dir, "ready_loader", BOOTLOADER_READY_LOADER)
        supervisor = FlashSupervisor(config)
        supervisor.flash(hex_file, teensy40)

        with pytest.raises(RuntimeError):
            supervisor.flash(hex_file, teensy40)


BANNER_LOADER = """
print("Teensy Loader, Command Line, Version 2.2", flush=True)
print("Found HalfKay Bootloader", flush=True)
print("Programming.....", flush=True)
"""


class TestIniSettings:
    @pytest.fixture
    def ini_config(self, tmp_path, tools_dir):
        path = tmp_path / "deploy_config.ini"
        path.write_text(
            "[flash]\n"
            "verbose = false\n"
            "prompt_patterns = Waiting for Teensy device\n"
            "terminate_timeout = 2\n"
        )
        config = Config(path)
        config.config['flash']['loader'] = write_tool(tools_dir, "banner_loader", BANNER_LOADER)
        return config

    def test_verbose_false_drops_flag(self, ini_config, hex_file, teensy40):
        assert '-v' not in FlashSupervisor(ini_config).command(hex_file, teensy40)

    def test_banner_is_not_a_prompt(self, ini_config, hex_file, teensy40):
        supervisor = FlashSupervisor(ini_config)

        supervisor.flash(hex_file, teensy40)

        assert supervisor.history == [
            FlashState.IDLE, FlashState.LAUNCHING, FlashState.FLASHING, FlashState.SUCCEEDED,
        ]

    def test_single_string_pattern(self, config):
        config.config['flash']['prompt_patterns'] = "Waiting for Teensy device"

        patterns = FlashSupervisor(config).prompt_patterns

        assert [p.pattern for p in patterns] == ["Waiting for Teensy device"]


class TestCancel:
    def test_cancel_while_awaiting_leaves_no_orphans(self, config, tools_dir, tmp_path, hex_file, teensy40):
        pid_file = tmp_path / "helper.pid"
        config.config['flash']['loader'] = write_tool(tools_dir, "hanging_loader", HANGING_LOADER) + [str(pid_file)]
        supervisor = FlashSupervisor(config)

        def on_state(state):
            if state is FlashState.AWAITING_DEVICE_INTERACTION:
                supervisor.cancel()

        supervisor.on_state = on_state

        with pytest.raises(CancelledError) as excinfo:
            supervisor.flash(hex_file, teensy40)

        assert excinfo.value.cli_exit_code == 4
        assert supervisor.state is FlashState.FAILED
        assert supervisor.process.poll() is not None

        helper_pid = int(pid_file.read_text())
        deadline = time.monotonic() + 5
        while not gone(helper_pid) and time.monotonic() < deadline:
            time.sleep(0.05)
        assert gone(helper_pid)


class TestTransitions:
    def test_illegal_transition(self, config):
        supervisor = FlashSupervisor(config)

        with pytest.raises(RuntimeError, match="Illegal"):
            supervisor._transition(FlashState.SUCCEEDED)

    def test_terminal_states_are_final(self, config):
        supervisor = FlashSupervisor(config)
        supervisor._transition(FlashState.FAILED)

        with pytest.raises(RuntimeError):
            supervisor._transition(FlashState.LAUNCHING)
