"""Provides utility functions and custom exceptions for the application.

This module contains common helpers that are used across the upload pipeline.

Classes:
    Timeouts: Network timeout constants, overridable through the environment.
    UploadError: The base class of every pipeline failure, with one subclass
        per failure stage (connection, remote directory, archive, transfer,
        fallback transfer, verification).

Functions:
    retry: A decorator that retries a function call upon failure with
           configurable delay and backoff.
    sanitize_entry_name: Makes a directory name safe for archive entries.
"""
import logging
import os
import re
import time
from functools import wraps
from typing import Any, Callable, Tuple, Type, TypeVar

# A generic TypeVar to preserve function signatures in the decorator
F = TypeVar('F', bound=Callable[..., Any])

_UNSAFE_ENTRY_CHARS = re.compile(r'[^A-Za-z0-9_.\-]')


class Timeouts:
    """Defines timeout constants for network operations, configurable via environment variables."""
    SSH_CONNECT = int(os.getenv('SSH_UPLOADER_CONNECT_TIMEOUT', '10'))
    SSH_EXEC = int(os.getenv('SSH_UPLOADER_EXEC_TIMEOUT', '60'))
    SFTP_TRANSFER = int(os.getenv('SSH_UPLOADER_SFTP_TIMEOUT', '300'))
    QUEUE_POLL = float(os.getenv('SSH_UPLOADER_QUEUE_POLL', '0.5'))


def retry(tries: int = 2, delay: float = 5, backoff: float = 1,
          exceptions: Tuple[Type[BaseException], ...] = (Exception,),
          giveup_on: Tuple[Type[BaseException], ...] = ()) -> Callable[[F], F]:
    """Creates a decorator that retries a function upon failure.

    This decorator will re-invoke the decorated function if it raises one of
    `exceptions`. It supports a configurable number of retries, an initial
    delay, and an exponential backoff factor. Exceptions listed in `giveup_on`
    are re-raised immediately even when they also match `exceptions`.

    Args:
        tries: The maximum number of attempts to make.
        delay: The initial delay between retries in seconds.
        backoff: The factor by which the delay is multiplied after each failed
            attempt. A value of 1 results in a fixed delay.
        exceptions: The exception types that trigger another attempt.
        giveup_on: Exception types that are never retried.

    Returns:
        A decorator that can be applied to a function to make it resilient to
        transient failures.
    """
    def deco_retry(f: F) -> F:
        @wraps(f)
        def f_retry(*args: Any, **kwargs: Any) -> Any:
            _tries, _delay = max(1, tries), delay
            for attempt in range(1, _tries + 1):
                try:
                    return f(*args, **kwargs)
                except giveup_on:
                    raise
                except exceptions as e:
                    if attempt == _tries:
                        logging.error(f"Function '{f.__name__}' failed on the final attempt ({attempt}/{_tries}): {e}")
                        raise

                    msg = (f"Function '{f.__name__}' failed with '{e}'. Attempt {attempt}/{_tries}. "
                           f"Retrying in {_delay} seconds...")
                    logging.warning(msg)
                    time.sleep(_delay)
                    _delay *= backoff
            # The loop either returns a result or raises.
            raise RuntimeError("Exited retry loop unexpectedly.")
        return f_retry  # type: ignore
    return deco_retry


def sanitize_entry_name(name: str) -> str:
    """Replaces every character outside ``[A-Za-z0-9_.-]`` with an underscore.

    Used for the top-level entry of a packaged directory so that the name is
    safe both inside the archive and on the remote filesystem.
    """
    return _UNSAFE_ENTRY_CHARS.sub('_', name)


class UploadError(Exception):
    """Base class for every failure raised by the upload pipeline."""
    pass


class LocalPathNotFoundError(UploadError, FileNotFoundError):
    """The local source path does not exist."""
    pass


class RemoteConnectionError(UploadError, ConnectionError):
    """The SSH connection could not be established (network or authentication)."""
    pass


class RemoteDirectoryError(UploadError):
    """Creating the remote destination directory reported a non-zero exit status."""
    pass


class ArchiveError(UploadError):
    """Packaging a directory into an archive failed.

    The partially written archive is always removed before this is raised.
    """
    pass


class ArchiveValidationError(ArchiveError):
    """The produced archive failed structural validation (only an empty file is fatal)."""
    pass


class TransferError(UploadError):
    """The primary transfer strategy failed.

    In batch mode this triggers the chunked fallback; in single-path mode it
    is surfaced to the caller.
    """
    pass


class TransferFallbackError(TransferError):
    """The chunked fallback transfer failed as well; fatal for the unit."""
    pass


class VerificationError(UploadError):
    """The remote artifact is missing or its size does not match the local source."""
    pass
