# cli.py - build, convert and flash firmware onto a Teensy in one go.
# Press the pushbutton when asked; Ctrl-C while waiting cancels cleanly.

import argparse
import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import List, Optional

from colorama import Fore, Style

from .config import DEFAULT_BOARD, DEFAULT_OUTPUT, BuildConfiguration, Config
from .convert import BACKENDS, OUTPUT_FORMATS
from .errors import CancelledError, DeployError, PortNotFoundError
from .flasher import FlashSupervisor
from .lock import DeviceLock
from .monitor import find_serial_port, launch_serial_monitor
from .pipeline import Pipeline, print_banner
from .targets import TargetRegistry

ACTIONS = ['deploy', 'build', 'convert', 'flash', 'boards', 'monitor', 'clean']


def setup_logging(project_dir: Path, config: Config, verbose: bool = False) -> logging.Logger:
    """Setup file and console logging for the fwdeploy logger tree"""
    logging_config = config.section('logging')
    log_dir = project_dir / logging_config.get('dir', 'logs')
    log_dir.mkdir(parents=True, exist_ok=True)

    logger = logging.getLogger('fwdeploy')
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    file_formatter = logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    # File handler with rotation
    file_handler = RotatingFileHandler(
        log_dir / logging_config.get('file', 'deploy.log'),
        maxBytes=int(logging_config.get('max_bytes', 10 * 1024 * 1024)),
        backupCount=int(logging_config.get('backup_count', 5))
    )
    file_handler.setFormatter(file_formatter)
    file_handler.setLevel(logging.DEBUG)

    # Console handler - only show INFO and above unless verbose
    console_handler = logging.StreamHandler()
    console_handler.setLevel(logging.DEBUG if verbose else logging.INFO)

    logger.setLevel(logging.DEBUG)
    logger.addHandler(file_handler)
    logger.addHandler(console_handler)
    return logger


def create_parser() -> argparse.ArgumentParser:
    """Create command line argument parser"""
    parser = argparse.ArgumentParser(
        prog='fwdeploy',
        description='Build, convert and flash firmware onto a Teensy board',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='''
Examples:
  %(prog)s                                   # Build, convert and flash TEENSY40 (default)
  %(prog)s --board=TEENSY41 --output=app.hex # Other board, other output name
  %(prog)s build --debug                     # Build only, debug profile
  %(prog)s flash --output=app.hex            # Flash an already converted image
  %(prog)s boards                            # List known boards

Exit codes: 0 ok, 1 build, 2 convert, 3 flash, 4 cancelled, 5 unknown board, 6 device busy,
            7 no serial port
        '''
    )

    parser.add_argument(
        'action',
        choices=ACTIONS,
        nargs='?',
        default='deploy',
        help='Action to perform (default: deploy)'
    )
    parser.add_argument(
        '-b', '--board',
        default=DEFAULT_BOARD,
        help=f'Target board identifier (default: {DEFAULT_BOARD})'
    )
    parser.add_argument(
        '-o', '--output',
        default=DEFAULT_OUTPUT,
        help=f'Converted artifact file name (default: {DEFAULT_OUTPUT})'
    )
    parser.add_argument(
        '--bin',
        dest='binary',
        help='Binary (crate) name the toolchain builds (default: from config)'
    )
    parser.add_argument(
        '--debug',
        action='store_true',
        help='Build the debug profile instead of release'
    )
    parser.add_argument(
        '--format',
        choices=OUTPUT_FORMATS,
        help='Converted artifact format (default: from config, ihex)'
    )
    parser.add_argument(
        '--converter',
        choices=BACKENDS,
        help='Conversion backend (default: from config, builtin)'
    )
    parser.add_argument(
        '-C', '--project-dir',
        type=Path,
        help='Firmware project directory (default: current directory)'
    )
    parser.add_argument(
        '--config',
        type=Path,
        help='Path to configuration file (default: deploy_config.yaml)'
    )
    parser.add_argument(
        '--boards-file',
        type=Path,
        help='Extra board profiles, YAML or JSON (default: boards.yaml)'
    )
    parser.add_argument(
        '--validate',
        action='store_true',
        help='Check the board log over USB serial after flashing'
    )
    parser.add_argument(
        '--monitor',
        action='store_true',
        help='Open a serial monitor after a successful deploy'
    )
    parser.add_argument(
        '-p', '--port',
        help='Serial port for validate/monitor (default: auto-detect)'
    )
    parser.add_argument(
        '-v', '--verbose',
        action='store_true',
        help='Enable verbose output'
    )
    parser.add_argument(
        '--no-progress',
        action='store_true',
        help='Hide the stage progress bar'
    )
    return parser


def report_failure(error: DeployError, board: str, output: str) -> int:
    lines = [f"✘ {error.stage} failed for {board} ({output})", str(error)]
    tail = error.tail()
    if tail:
        lines.append("")
        lines.extend(tail)
    print_banner(*lines, color=Fore.RED)
    return error.cli_exit_code


def list_boards(registry: TargetRegistry) -> int:
    print(f"{Fore.CYAN}Known boards:{Style.RESET_ALL}")
    for profile in registry.boards():
        print(f"  {Fore.GREEN}{profile.board_id:<16}{Style.RESET_ALL} "
              f"{profile.toolchain_triple:<24} --mcu={profile.device_code:<16} {profile.description}")
    return 0


def run_action(args: argparse.Namespace, pipeline: Pipeline) -> int:
    """Run the requested action and return the process exit code"""
    logger = logging.getLogger('fwdeploy')
    config = pipeline.config

    if args.action == 'boards':
        return list_boards(pipeline.registry)

    if args.action == 'monitor':
        port = args.port or find_serial_port()
        if not port:
            error = PortNotFoundError("No Teensy serial port found (use --port)")
            logger.error(f"monitor failed: {error}")
            return report_failure(error, args.board, args.output)
        launch_serial_monitor(port, int(config.value('validation', 'baud', 115200)))
        return 0

    if args.action == 'deploy':
        result = pipeline.run(args.board, args.output, args.binary, not args.debug, args.verbose)
        if result.succeeded and args.monitor:
            port = args.port or find_serial_port()
            if port:
                launch_serial_monitor(port, int(config.value('validation', 'baud', 115200)))
        return result.exit_code

    try:
        build_config: BuildConfiguration = pipeline.configure(
            args.board, args.output, args.binary, not args.debug, args.verbose
        )
        if args.action == 'build':
            with DeviceLock(build_config.board_id, pipeline.lock_dir):
                pipeline.builder.build(build_config)
        elif args.action == 'clean':
            pipeline.builder.clean(build_config)
        elif args.action == 'convert':
            pipeline.converter.convert(build_config.raw_artifact_path, pipeline.output_format,
                                       build_config.output_path, build_config.profile.flash_base)
        elif args.action == 'flash':
            with DeviceLock(build_config.board_id, pipeline.lock_dir):
                supervisor = pipeline.supervisor_factory(config, on_state=pipeline.on_flash_state)
                supervisor.flash(build_config.output_path, build_config.profile)
            print_banner(f"{build_config.output_name} was successfully flashed into {build_config.board_id}",
                         color=Fore.GREEN)
    except KeyboardInterrupt:
        error = CancelledError(f"Cancelled by operator during {args.action}")
        error.stage = args.action
        logger.error(f"{args.action} cancelled by operator")
        return report_failure(error, args.board, args.output)
    except DeployError as e:
        logger.error(f"{args.action} failed: {e}")
        return report_failure(e, args.board, args.output)
    return 0


def main(argv: Optional[List[str]] = None) -> int:
    parser = create_parser()
    args = parser.parse_args(argv)

    # Find the project directory
    project_dir = (args.project_dir or Path(os.getcwd())).resolve()

    # Load configuration
    config_file = args.config if args.config else project_dir / "deploy_config.yaml"
    config = Config(config_file)
    setup_logging(project_dir, config, args.verbose)

    boards_file = args.boards_file if args.boards_file else project_dir / "boards.yaml"
    pipeline = Pipeline(
        project_dir,
        config,
        registry=TargetRegistry(boards_file),
        output_format=args.format,
        converter_backend=args.converter,
        supervisor_factory=FlashSupervisor,
        validate=args.validate,
        port=args.port,
        progress=not args.no_progress,
    )
    return run_action(args, pipeline)


def run() -> None:
    sys.exit(main())


if __name__ == "__main__":
    run()
