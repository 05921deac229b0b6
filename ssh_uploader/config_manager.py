"""Manages loading, updating, and validating the application's configuration.

This module is responsible for handling the `config.ini` file. It includes
functionality to:
- Create a new configuration file from the bundled template if one doesn't exist.
- Update an existing configuration file with new options from the template
  while preserving user-defined values.
- Load the configuration into a `ConfigParser` object.
- Validate the configuration to ensure all required sections and options are
  present and have valid values.
- Turn a loaded configuration into the immutable `UploadSettings` value that
  is handed to the upload pipeline.
"""
import configparser
import logging
import os
import shutil
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import FrozenSet, List, Optional

import configupdater

from .ssh_manager import DEFAULT_KEEPALIVE_INTERVAL, MAX_RETRY_ATTEMPTS, RETRY_DELAY_SECONDS
from .transfer_strategies import CHUNK_SIZE, DEFAULT_EXCLUDED_DIRS, MAX_CONCURRENT_UPLOADS
from .utils import Timeouts

DEFAULT_CONFIG_DIR = Path.home() / '.ssh_uploader'
DEFAULT_CONFIG_PATH = DEFAULT_CONFIG_DIR / 'config.ini'
DEFAULT_LOG_DIR = DEFAULT_CONFIG_DIR / 'logs'
TEMPLATE_PATH = Path(__file__).resolve().parent / 'config.ini.template'
MAX_CONFIG_BACKUPS = 5


def update_config(config_path: str, template_path: str = str(TEMPLATE_PATH)) -> List[str]:
    """Brings a user's config.ini in line with the bundled template.

    A missing config file is created from the template. An existing one gets
    every section and option the template has and it lacks; values already
    set by the user, and their comments, are kept. Options the template does
    not know are left in place but reported, since the uploader ignores them.

    Before an existing file is rewritten it is copied to
    `backup/<name>.bak_<timestamp>` next to it. Only the newest
    `MAX_CONFIG_BACKUPS` backups are kept.

    Args:
        config_path: The path to the user's configuration file.
        template_path: The path to the template file.

    Returns:
        The `[SECTION] option` entries that were added. Empty when the file
        was created from scratch or was already current.

    Raises:
        SystemExit: If the template is missing or the config cannot be written.
    """
    config_file = Path(config_path)
    template_file = Path(template_path)

    if not template_file.is_file():
        logging.error(f"FATAL: Config template '{template_path}' not found.")
        sys.exit(1)

    if not config_file.is_file():
        logging.warning(f"Configuration file not found at '{config_path}'. Creating it from the template.")
        try:
            config_file.parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(template_file, config_file)
        except OSError as e:
            logging.error(f"FATAL: Could not create config file: {e}")
            sys.exit(1)
        return []

    try:
        updater = configupdater.ConfigUpdater()
        updater.read(config_file, encoding='utf-8')
        template = configupdater.ConfigUpdater()
        template.read(template_file, encoding='utf-8')

        added = _add_missing_options(updater, template)
        for entry in _unknown_options(updater, template):
            logging.warning(f"CONFIG: {entry} is not a known option and will be ignored.")

        if added:
            _backup_config(config_file)
            with config_file.open('w', encoding='utf-8') as f:
                updater.write(f)
            logging.info(f"CONFIG: Added {len(added)} new option(s) to '{config_path}': {', '.join(added)}")
        else:
            logging.debug(f"CONFIG: '{config_path}' is up-to-date.")
        return added
    except (OSError, configparser.Error) as e:
        logging.error(f"FATAL: An error occurred during config update: {e}", exc_info=True)
        sys.exit(1)


def _add_missing_options(updater: configupdater.ConfigUpdater, template: configupdater.ConfigUpdater) -> List[str]:
    added = []
    for section_name in template.sections():
        if not updater.has_section(section_name):
            updater.add_section(section_name)
        user_section = updater[section_name]
        for key, opt in template[section_name].items():
            if not user_section.has_option(key):
                user_section.set(key, opt.value)
                added.append(f"[{section_name}] {key}")
    return added


def _unknown_options(updater: configupdater.ConfigUpdater, template: configupdater.ConfigUpdater) -> List[str]:
    unknown = []
    for section_name in updater.sections():
        if not template.has_section(section_name):
            unknown.append(f"[{section_name}]")
            continue
        known = template[section_name]
        unknown.extend(f"[{section_name}] {key}" for key in updater[section_name].options()
                       if not known.has_option(key))
    return unknown


def _backup_config(config_file: Path) -> Path:
    backup_dir = config_file.parent / 'backup'
    backup_dir.mkdir(exist_ok=True)
    backup_path = backup_dir / f"{config_file.stem}.bak_{time.strftime('%Y%m%d-%H%M%S')}"
    shutil.copy2(config_file, backup_path)
    logging.info(f"CONFIG: Backed up existing configuration to '{backup_path}'")

    # Timestamped names sort chronologically.
    backups = sorted(backup_dir.glob(f"{config_file.stem}.bak_*"))
    for stale in backups[:-MAX_CONFIG_BACKUPS]:
        stale.unlink()
        logging.debug(f"CONFIG: Removed old backup '{stale}'")
    return backup_path


def load_config(config_path: str = str(DEFAULT_CONFIG_PATH)) -> configparser.ConfigParser:
    """Loads the configuration from the specified .ini file.

    Raises:
        SystemExit: If the configuration file does not exist at `config_path`.
    """
    config_file = Path(config_path)
    if not config_file.is_file():
        logging.error(f"FATAL: Configuration file not found at '{config_path}'.")
        sys.exit(1)
    config = configparser.ConfigParser()
    config.read(config_file, encoding='utf-8')
    return config


class ConfigValidator:
    """Validates the structure and values of the application's configuration.

    Attributes:
        config (configparser.ConfigParser): The configuration object to validate.
        errors (List[str]): Critical problems. The configuration is invalid
            when this list is not empty after validation.
        warnings (List[str]): Non-critical problems.
    """

    REQUIRED_SECTIONS = {
        'SETTINGS': ['chunk_size', 'max_concurrent_uploads', 'compression_level'],
        'CONNECTION': ['port', 'connect_timeout'],
    }

    # (section, option): (min, max, out-of-range is an error)
    NUMERIC_OPTIONS = {
        ('SETTINGS', 'chunk_size'): (4096, 4 * 1024 * 1024, False),
        ('SETTINGS', 'max_concurrent_uploads'): (1, MAX_CONCURRENT_UPLOADS, False),
        ('SETTINGS', 'compression_level'): (0, 9, True),
        ('CONNECTION', 'port'): (1, 65535, True),
        ('CONNECTION', 'connect_timeout'): (1, 300, False),
        ('CONNECTION', 'connect_retries'): (1, 10, False),
        ('CONNECTION', 'retry_delay'): (0, 300, False),
        ('CONNECTION', 'keepalive_interval'): (0, 600, False),
    }

    FLOAT_OPTIONS = {('CONNECTION', 'retry_delay')}

    # Values above the maximum are lowered to it when the pipeline runs.
    CLAMPED_OPTIONS = {('SETTINGS', 'max_concurrent_uploads')}

    def __init__(self, config: configparser.ConfigParser):
        self.config = config
        self.errors: List[str] = []
        self.warnings: List[str] = []

    def validate(self) -> bool:
        """Runs all validation checks and prints resulting errors or warnings.

        Returns:
            `True` if the configuration is valid (no errors), `False` otherwise.
        """
        self._check_required_sections()
        self._check_required_options()
        self._check_numeric_values()
        self._check_paths()

        if self.errors:
            print("Configuration errors found:", file=sys.stderr)
            for error in self.errors:
                print(f" ❌ {error}", file=sys.stderr)
            return False

        if self.warnings:
            print("Configuration warnings:", file=sys.stderr)
            for warning in self.warnings:
                print(f" ⚠️ {warning}", file=sys.stderr)

        return True

    def _check_required_sections(self) -> None:
        for section in self.REQUIRED_SECTIONS:
            if not self.config.has_section(section):
                self.errors.append(f"Missing required section: [{section}]")

    def _check_required_options(self) -> None:
        for section, options in self.REQUIRED_SECTIONS.items():
            if not self.config.has_section(section):
                continue
            for option in options:
                if not self.config.has_option(section, option):
                    self.errors.append(f"Missing option '{option}' in [{section}]")
                elif not self.config.get(section, option).strip():
                    self.errors.append(f"Option '{option}' in [{section}] is empty")

    def _check_numeric_values(self) -> None:
        """Validates that numeric options are integers and within a sensible range."""
        for (section, option), (min_val, max_val, fatal) in self.NUMERIC_OPTIONS.items():
            if not self.config.has_option(section, option) or not self.config.get(section, option).strip():
                continue
            is_float = (section, option) in self.FLOAT_OPTIONS
            try:
                value = self.config.getfloat(section, option) if is_float else self.config.getint(section, option)
            except ValueError:
                kind = "a number" if is_float else "an integer"
                self.errors.append(f"Option '{option}' in [{section}] must be {kind}")
                continue
            if not (min_val <= value <= max_val):
                message = f"{option}={value} is outside the allowed range [{min_val}-{max_val}]"
                if fatal:
                    self.errors.append(message)
                else:
                    message = message.replace("allowed", "recommended")
                    if (section, option) in self.CLAMPED_OPTIONS and value > max_val:
                        message += f"; {max_val} will be used"
                    self.warnings.append(message)

    def _check_paths(self) -> None:
        temp_dir = self.config.get('SETTINGS', 'temp_dir', fallback='').strip()
        if temp_dir and not os.path.isdir(os.path.expanduser(temp_dir)):
            self.warnings.append(f"temp_dir '{temp_dir}' does not exist; the system temp directory will be used")


@dataclass(frozen=True)
class UploadSettings:
    """Tunables for one upload request, passed explicitly into the pipeline."""
    chunk_size: int = CHUNK_SIZE
    max_concurrent_uploads: int = MAX_CONCURRENT_UPLOADS
    compression_level: int = 6
    temp_dir: Optional[str] = None
    exclude_dirs: FrozenSet[str] = DEFAULT_EXCLUDED_DIRS
    port: int = 22
    connect_timeout: int = Timeouts.SSH_CONNECT
    connect_retries: int = MAX_RETRY_ATTEMPTS
    retry_delay: float = RETRY_DELAY_SECONDS
    keepalive_interval: int = DEFAULT_KEEPALIVE_INTERVAL
    log_dir: str = str(DEFAULT_LOG_DIR)

    @classmethod
    def from_config(cls, config: configparser.ConfigParser) -> "UploadSettings":
        """Builds settings from a loaded configuration, falling back to defaults."""
        defaults = cls()
        temp_dir = config.get('SETTINGS', 'temp_dir', fallback='').strip()
        if temp_dir:
            temp_dir = os.path.expanduser(temp_dir)
            if not os.path.isdir(temp_dir):
                logging.warning(f"CONFIG: temp_dir '{temp_dir}' does not exist, using the system temp directory.")
                temp_dir = ''
        exclude_raw = config.get('SETTINGS', 'exclude_dirs', fallback=None)
        if exclude_raw is None:
            exclude_dirs = defaults.exclude_dirs
        else:
            exclude_dirs = frozenset(name.strip() for name in exclude_raw.split(',') if name.strip())
        log_dir = config.get('LOGGING', 'log_dir', fallback='').strip()

        return cls(
            chunk_size=config.getint('SETTINGS', 'chunk_size', fallback=defaults.chunk_size),
            max_concurrent_uploads=config.getint('SETTINGS', 'max_concurrent_uploads',
                                                 fallback=defaults.max_concurrent_uploads),
            compression_level=config.getint('SETTINGS', 'compression_level', fallback=defaults.compression_level),
            temp_dir=temp_dir or None,
            exclude_dirs=exclude_dirs,
            port=config.getint('CONNECTION', 'port', fallback=defaults.port),
            connect_timeout=config.getint('CONNECTION', 'connect_timeout', fallback=defaults.connect_timeout),
            connect_retries=config.getint('CONNECTION', 'connect_retries', fallback=defaults.connect_retries),
            retry_delay=config.getfloat('CONNECTION', 'retry_delay', fallback=defaults.retry_delay),
            keepalive_interval=config.getint('CONNECTION', 'keepalive_interval',
                                             fallback=defaults.keepalive_interval),
            log_dir=os.path.expanduser(log_dir) if log_dir else defaults.log_dir,
        )
