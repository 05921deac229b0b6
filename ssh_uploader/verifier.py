import logging
import os
import socket
import typing

import paramiko

from .ssh_manager import ConnectionSession
from .utils import VerificationError

logger = logging.getLogger(__name__)


class Verifier:
    """Confirms that an uploaded artifact exists remotely with the expected size."""

    def __init__(self, session: ConnectionSession):
        self.session = session

    def verify(self, local_path: str, remote_path: str, expected_size: typing.Optional[int] = None) -> int:
        """Checks the remote file against the local one.

        Args:
            local_path: The file that was uploaded.
            remote_path: Where it was uploaded to.
            expected_size: The expected size. Read from `local_path` when omitted.

        Returns:
            The remote size in bytes.

        Raises:
            VerificationError: If the remote file cannot be found or its size
                differs from the local size. A local size of zero is accepted.
        """
        if expected_size is None:
            try:
                expected_size = os.path.getsize(local_path)
            except OSError as e:
                raise VerificationError(f"Cannot read local size of '{local_path}': {e}") from e
        try:
            remote_size = self.session.stat(remote_path).st_size
        except (paramiko.SSHException, socket.error, EOFError) as e:
            raise VerificationError(f"Upload verification failed: cannot confirm remote artifact '{remote_path}': {e}") from e

        if expected_size == 0:
            logger.warning(f"Local file '{local_path}' is empty; skipping size comparison for '{remote_path}'")
            return remote_size or 0
        if remote_size != expected_size:
            raise VerificationError(
                f"Upload verification failed: size mismatch for '{remote_path}' "
                f"(local {expected_size} bytes, remote {remote_size} bytes)"
            )
        logger.info(f"Verified '{remote_path}' ({remote_size} bytes)")
        return remote_size
