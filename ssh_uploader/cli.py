"""Command-line front end for the upload pipeline."""
import argparse
import getpass
import logging
import os
import sys
from pathlib import Path
from typing import List, Optional

import argcomplete
from rich.console import Console
from rich.logging import RichHandler

from . import __version__
from .config_manager import DEFAULT_CONFIG_PATH, ConfigValidator, UploadSettings, load_config, update_config
from .models import ConnectionCredentials
from .orchestrator import check_local_path_exists, estimate_and_upload, upload_batch_archived
from .ssh_manager import ConnectionSession
from .system_manager import setup_logging
from .ui import BaseUIManager, SimpleUIManager, UIManager
from .utils import UploadError

PASSWORD_ENV_VAR = 'SSH_UPLOADER_PASSWORD'


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='ssh-uploader',
        description="Upload files and directories to a remote host over SSH/SFTP.",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument('paths', nargs='*', metavar='PATH', help='Local files or directories to upload.')
    parser.add_argument('--host', help='Remote host name or address.')
    parser.add_argument('--user', help='Remote user name.')
    parser.add_argument('--remote-dir', help='Remote destination directory. Created if missing.')
    parser.add_argument('--port', type=int, help='SSH port. Defaults to the configured port.')
    parser.add_argument('--archive', action='store_true',
                        help='Package each directory into a zip archive before uploading. '
                             'Always used when more than one path is given.')
    parser.add_argument('--password', help=f'SSH password. Falls back to ${PASSWORD_ENV_VAR}, then a prompt.')
    parser.add_argument('--config', default=str(DEFAULT_CONFIG_PATH), help='Path to the configuration file.')
    parser.add_argument('--debug', action='store_true', help='Enable debug logging.')
    parser.add_argument('--simple', action='store_true',
                        help='Use a simple, non-interactive UI. Recommended for `screen` or `tmux`.')
    parser.add_argument('--list-remote', action='store_true',
                        help='List the remote directory after the upload finishes.')
    parser.add_argument('--check-config', action='store_true', help='Validate the configuration file and exit.')
    parser.add_argument('--version', action='store_true', help="Show program's version and config file path, then exit.")
    return parser


def _resolve_password(args: argparse.Namespace) -> str:
    if args.password:
        return args.password
    env_password = os.environ.get(PASSWORD_ENV_VAR)
    if env_password:
        return env_password
    return getpass.getpass(f"Password for {args.user}@{args.host}: ")


def _add_console_handler(simple_mode: bool, debug: bool) -> None:
    logger = logging.getLogger()
    log_level = logging.DEBUG if debug else logging.INFO
    if simple_mode:
        stream_handler = logging.StreamHandler(sys.stdout)
        stream_handler.setFormatter(logging.Formatter('%(asctime)s - %(levelname)s - %(message)s'))
        stream_handler.setLevel(log_level)
        logger.addHandler(stream_handler)
    else:
        rich_handler = RichHandler(level=log_level, show_path=False, rich_tracebacks=True, markup=True,
                                   console=Console(stderr=True))
        rich_handler.setFormatter(logging.Formatter('%(message)s'))
        logger.addHandler(rich_handler)


def _list_remote(credentials: ConnectionCredentials, remote_dir: str, settings: UploadSettings) -> None:
    with ConnectionSession(connect_timeout=settings.connect_timeout,
                           keepalive_interval=settings.keepalive_interval,
                           connect_retries=settings.connect_retries,
                           retry_delay=settings.retry_delay) as session:
        session.connect(credentials)
        listing = session.list_directory(remote_dir)
    if listing.ok:
        print(f"Contents of {remote_dir}:")
        print(listing.stdout.rstrip())
    else:
        logging.error(f"Could not list '{remote_dir}': {listing.stderr.strip()}")


def main(argv: Optional[List[str]] = None) -> int:
    """The main entry point for the application.

    Parses arguments, loads the configuration, sets up logging and runs either
    a single-path upload or a batch archive upload.

    Returns:
        0 on success, 1 on error.
    """
    parser = build_parser()
    argcomplete.autocomplete(parser)
    args = parser.parse_args(argv)

    if args.version:
        print(f"ssh-uploader {__version__}")
        print(f"Configuration file: {args.config}")
        return 0

    update_config(args.config)
    config = load_config(args.config)
    validator = ConfigValidator(config)
    config_valid = validator.validate()
    if args.check_config:
        if config_valid:
            print(f"SUCCESS: Configuration file '{args.config}' appears to be valid.")
            return 0
        print(f"FAILURE: Configuration file '{args.config}' has errors.", file=sys.stderr)
        return 1
    if not config_valid:
        return 1

    settings = UploadSettings.from_config(config)
    log_file = setup_logging(settings.log_dir, args.debug)
    _add_console_handler(args.simple, args.debug)
    logging.info(f"Using configuration file: {args.config}")
    logging.debug(f"Logging to {log_file}")

    missing = [flag for flag, value in (('PATH', args.paths), ('--host', args.host),
                                        ('--user', args.user), ('--remote-dir', args.remote_dir)) if not value]
    if missing:
        parser.error(f"the following arguments are required: {', '.join(missing)}")

    for path in args.paths:
        if not check_local_path_exists(path):
            logging.error(f"Local path does not exist: {path}")
            return 1
    batch_mode = args.archive or len(args.paths) > 1
    if batch_mode:
        not_dirs = [p for p in args.paths if not os.path.isdir(p)]
        if not_dirs:
            logging.error(f"Archive mode only accepts directories: {', '.join(not_dirs)}")
            return 1

    try:
        credentials = ConnectionCredentials(
            host=args.host,
            username=args.user,
            password=_resolve_password(args),
            port=args.port or settings.port,
        )
        ui: BaseUIManager = SimpleUIManager() if args.simple else UIManager()
        with ui:
            if batch_mode:
                ui.start(f"Uploading {len(args.paths)} directories to {args.host}")
                result = upload_batch_archived(args.paths, args.remote_dir, credentials,
                                               on_progress=ui.on_progress, on_unit_error=ui.on_unit_error,
                                               settings=settings)
            else:
                ui.start(f"Uploading {Path(args.paths[0]).name} to {args.host}")
                result = estimate_and_upload(args.paths[0], args.remote_dir, credentials,
                                             on_progress=ui.on_progress, settings=settings)
            ui.finish(result.success, result.message)

        if args.list_remote and result.success:
            try:
                _list_remote(credentials, args.remote_dir, settings)
            except UploadError as e:
                logging.error(f"Could not list remote directory: {e}")
        return 0 if result.success else 1
    except KeyboardInterrupt:
        logging.warning("Process interrupted by user. Shutting down.")
        return 1
    except Exception as e:
        logging.error(f"An unexpected error occurred in main: {e}", exc_info=True)
        return 1


if __name__ == "__main__":
    sys.exit(main())
