"""Tests for post-flash serial confirmation."""

from __future__ import annotations

from types import SimpleNamespace

import serial
import serial.tools.list_ports

from fwdeploy import monitor


class FakeSerial:
    """Replays canned lines, then reads nothing"""

    lines = []

    def __init__(self, port, baud, timeout=None):
        self.port = port
        self.pending = list(self.lines)

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def readline(self):
        return self.pending.pop(0) if self.pending else b""


class TestFindSerialPort:
    def test_matches_teensy_vid(self, monkeypatch):
        ports = [
            SimpleNamespace(device="/dev/ttyS0", description="ttyS0", vid=None),
            SimpleNamespace(device="/dev/ttyACM0", description="USB Serial", vid=0x16C0),
        ]
        monkeypatch.setattr(serial.tools.list_ports, "comports", lambda: ports)

        assert monitor.find_serial_port() == "/dev/ttyACM0"

    def test_none_found(self, monkeypatch):
        monkeypatch.setattr(serial.tools.list_ports, "comports", lambda: [])

        assert monitor.find_serial_port() is None


class TestValidateFirmware:
    def test_marker_found(self, monkeypatch):
        FakeSerial.lines = [b"", b"booting\r\n", b"[INFO gpio_int]: Interrupt was triggered!\r\n"]
        monkeypatch.setattr(serial, "Serial", FakeSerial)

        assert monitor.validate_firmware("/dev/ttyACM0", ["Interrupt was triggered"], timeout=2)

    def test_timeout(self, monkeypatch):
        FakeSerial.lines = [b"noise\r\n"]
        monkeypatch.setattr(serial, "Serial", FakeSerial)

        assert not monitor.validate_firmware("/dev/ttyACM0", ["Ready"], timeout=0.2)

    def test_port_error(self, monkeypatch):
        def broken(*args, **kwargs):
            raise serial.SerialException("could not open port")

        monkeypatch.setattr(serial, "Serial", broken)

        assert not monitor.validate_firmware("/dev/ttyACM0", ["Ready"], timeout=1)
