"""Post-flash confirmation over the board's USB serial log."""

import logging
import time
from typing import Iterable, Optional

import serial
import serial.tools.list_ports
from colorama import Fore, Style

logger = logging.getLogger(__name__)

TEENSY_VID = 0x16C0
PORT_HINTS = ("Teensy", "USB Serial")


def find_serial_port() -> Optional[str]:
    """Find the serial port of a freshly booted Teensy"""
    print("🔍 Searching for Teensy serial ports...")
    for port in serial.tools.list_ports.comports():
        description = port.description or ""
        if port.vid == TEENSY_VID or any(hint in description for hint in PORT_HINTS):
            print(f"{Fore.GREEN}✔ Found port: {port.device}{Style.RESET_ALL}")
            return port.device
    print(f"{Fore.YELLOW}⚠ No Teensy serial port found.{Style.RESET_ALL}")
    return None


def validate_firmware(port: str, markers: Iterable[str], timeout: float = 10, baud: int = 115200) -> bool:
    """Wait for a startup marker in the device log"""
    markers = list(markers)
    print(f"{Fore.CYAN}🔍 Validating firmware on {port}...{Style.RESET_ALL}")
    logger.info(f"Validating firmware on {port}")

    try:
        with serial.Serial(port, baud, timeout=0.5) as ser:
            start_time = time.monotonic()
            while time.monotonic() - start_time < timeout:
                line = ser.readline().decode('utf-8', errors='ignore').strip()
                if not line:
                    continue
                logger.debug(f"Serial: {line}")
                if any(marker in line for marker in markers):
                    print(f"{Fore.GREEN}✔ Firmware validated successfully{Style.RESET_ALL}")
                    return True
    except serial.SerialException as e:
        logger.error(f"Validation failed: {e}")
        print(f"{Fore.RED}✘ Validation failed: {e}{Style.RESET_ALL}")
        return False

    print(f"{Fore.YELLOW}⚠ Firmware validation timeout{Style.RESET_ALL}")
    return False


def launch_serial_monitor(port: str, baud: int = 115200) -> None:
    """Echo the device log until Ctrl-C"""
    print(f"{Fore.CYAN}📡 Serial monitor on {port} (Ctrl-C to quit)...{Style.RESET_ALL}")
    try:
        with serial.Serial(port, baud, timeout=0.5) as ser:
            while True:
                line = ser.readline().decode('utf-8', errors='ignore').rstrip()
                if line:
                    print(line)
    except KeyboardInterrupt:
        print(f"\n{Fore.YELLOW}⏹ Serial monitor closed.{Style.RESET_ALL}")
    except serial.SerialException as e:
        logger.error(f"Serial monitor failed: {e}")
        print(f"{Fore.RED}✘ Serial monitor failed: {e}{Style.RESET_ALL}")
