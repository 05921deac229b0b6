import logging
import os
import shlex
import socket
import threading
import typing
from contextlib import contextmanager
from dataclasses import dataclass
from queue import Empty, Queue

import paramiko

from .models import ConnectionCredentials
from .utils import RemoteConnectionError, RemoteDirectoryError, Timeouts, retry

logger = logging.getLogger(__name__)

# Constants
DEFAULT_KEEPALIVE_INTERVAL = 30
DEFAULT_MAX_CHANNELS = 4
MAX_RETRY_ATTEMPTS = 2
RETRY_DELAY_SECONDS = 5

_TRANSIENT_CONNECT_ERRORS = (socket.error, paramiko.SSHException, EOFError)


def sftp_mkdir_p(sftp: paramiko.SFTPClient, remote_path: str) -> None:
    """Recursively creates a directory on the SFTP server.

    This function mimics the behavior of the `mkdir -p` command, ensuring that
    the entire directory path exists on the remote server.

    Args:
        sftp: An active Paramiko SFTPClient object.
        remote_path: The absolute path of the directory to create.

    Raises:
        IOError: If a directory could not be created and does not already exist.
    """
    if not remote_path or remote_path == '/':
        return
    remote_path = remote_path.replace('\\', '/').rstrip('/')
    try:
        sftp.stat(remote_path)
    except FileNotFoundError:
        parent_dir = os.path.dirname(remote_path)
        if parent_dir != remote_path:
            sftp_mkdir_p(sftp, parent_dir)
        try:
            sftp.mkdir(remote_path)
        except IOError as e:
            # Another worker may have created it in the meantime.
            try:
                sftp.stat(remote_path)
            except FileNotFoundError:
                logger.error(f"Failed to create remote directory '{remote_path}': {e}")
                raise e


@dataclass
class CommandResult:
    """Holds the outcome of a remote command."""
    exit_status: int
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.exit_status == 0


class ConnectionSession:
    """One authenticated SSH connection with its SFTP channels.

    A session is created per request and owned by whoever opened it. Besides
    the primary SFTP client it lends extra SFTP channels, opened on the same
    transport, through `sftp_channel()` so that concurrent workers never share
    a channel. `dispose()` closes everything exactly once and may be called
    any number of times.

    Attributes:
        connect_timeout: Timeout in seconds for establishing the connection.
        keepalive_interval: Transport keepalive interval in seconds.
        connect_retries: How many times a transient connection failure is tried.
        retry_delay: Seconds to wait between connection attempts.
        max_channels: Upper bound on SFTP channels lent out at the same time.
    """

    def __init__(self, connect_timeout: int = Timeouts.SSH_CONNECT,
                 keepalive_interval: int = DEFAULT_KEEPALIVE_INTERVAL,
                 connect_retries: int = MAX_RETRY_ATTEMPTS,
                 retry_delay: float = RETRY_DELAY_SECONDS,
                 max_channels: int = DEFAULT_MAX_CHANNELS):
        self.connect_timeout = connect_timeout
        self.keepalive_interval = keepalive_interval
        self.connect_retries = connect_retries
        self.retry_delay = retry_delay
        self.max_channels = max(1, max_channels)
        self.credentials: typing.Optional[ConnectionCredentials] = None
        self._client: typing.Optional[paramiko.SSHClient] = None
        self._sftp: typing.Optional[paramiko.SFTPClient] = None
        self._idle_channels: "Queue[paramiko.SFTPClient]" = Queue()
        self._all_channels: typing.List[paramiko.SFTPClient] = []
        self._channel_slots = threading.BoundedSemaphore(self.max_channels)
        self._lock = threading.Lock()
        self._disposed = False

    def __enter__(self) -> "ConnectionSession":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.dispose()

    @property
    def client(self) -> paramiko.SSHClient:
        if self._client is None:
            raise RemoteConnectionError("The session is not connected.")
        return self._client

    def connect(self, credentials: ConnectionCredentials) -> None:
        """Opens the SSH connection using password authentication only.

        Transient network errors are retried; an authentication failure is
        reported immediately.

        Raises:
            RemoteConnectionError: If the connection cannot be established.
        """
        if self._disposed:
            raise RemoteConnectionError("Cannot connect a disposed session.")
        self.credentials = credentials
        logger.info(f"Connecting to {credentials.target}...")

        @retry(tries=self.connect_retries, delay=self.retry_delay,
               exceptions=_TRANSIENT_CONNECT_ERRORS,
               giveup_on=(paramiko.AuthenticationException,))
        def _open_client() -> paramiko.SSHClient:
            ssh_client = paramiko.SSHClient()
            ssh_client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
            try:
                ssh_client.connect(
                    hostname=credentials.host,
                    port=credentials.port,
                    username=credentials.username,
                    password=credentials.password,
                    timeout=self.connect_timeout,
                    allow_agent=False,
                    look_for_keys=False,
                )
            except BaseException:
                ssh_client.close()
                raise
            return ssh_client

        try:
            client = _open_client()
        except paramiko.AuthenticationException as e:
            raise RemoteConnectionError(f"Authentication failed for {credentials.target}: {e}") from e
        except _TRANSIENT_CONNECT_ERRORS as e:
            raise RemoteConnectionError(f"Could not connect to {credentials.target}: {e}") from e

        transport = client.get_transport()
        if transport:
            transport.set_keepalive(self.keepalive_interval)
        self._client = client
        logger.info(f"Connected to {credentials.target}")

    def is_connected(self) -> bool:
        """Check if SSH connection is still active."""
        if self._client is None or self._disposed:
            return False
        transport = self._client.get_transport()
        return transport is not None and transport.is_active()

    def exec_command(self, command: str, timeout: int = Timeouts.SSH_EXEC) -> CommandResult:
        """Runs `command` on the remote host and waits for it to exit.

        Raises:
            paramiko.SSHException: If the command could not be started.
        """
        logger.debug(f"Executing remote command: {command}")
        stdin, stdout, stderr = self.client.exec_command(command, timeout=timeout)
        out = stdout.read().decode('utf-8', errors='replace')
        err = stderr.read().decode('utf-8', errors='replace')
        exit_status = stdout.channel.recv_exit_status()
        return CommandResult(exit_status=exit_status, stdout=out, stderr=err)

    def ensure_remote_directory(self, path: str) -> None:
        """Creates `path` (and its parents) on the remote host.

        Raises:
            RemoteDirectoryError: If the command fails or exits non-zero.
        """
        command = f"mkdir -p {shlex.quote(path)}"
        try:
            result = self.exec_command(command)
        except (paramiko.SSHException, socket.error, EOFError) as e:
            raise RemoteDirectoryError(f"Failed to create remote directory '{path}': {e}") from e
        if not result.ok:
            detail = result.stderr.strip() or f"exit status {result.exit_status}"
            raise RemoteDirectoryError(f"Failed to create remote directory '{path}': {detail}")
        logger.debug(f"Remote directory ready: {path}")

    def _open_sftp(self) -> paramiko.SFTPClient:
        sftp = self.client.open_sftp()
        sftp.get_channel().settimeout(Timeouts.SFTP_TRANSFER)
        return sftp

    @property
    def sftp(self) -> paramiko.SFTPClient:
        """The primary SFTP client, opened on first use."""
        with self._lock:
            if self._sftp is None:
                self._sftp = self._open_sftp()
            return self._sftp

    @contextmanager
    def sftp_channel(self) -> typing.Generator[paramiko.SFTPClient, None, None]:
        """Lends an SFTP channel for the duration of the context.

        At most `max_channels` channels are lent at once; callers beyond that
        block until one is returned. A channel whose borrower raised is closed
        instead of going back to the pool.
        """
        self._channel_slots.acquire()
        channel = None
        healthy = False
        try:
            try:
                channel = self._idle_channels.get_nowait()
            except Empty:
                with self._lock:
                    if self._disposed:
                        raise RemoteConnectionError("The session has been disposed.")
                    channel = self._open_sftp()
                    self._all_channels.append(channel)
                logger.debug(f"Opened SFTP channel {len(self._all_channels)}/{self.max_channels}")
            yield channel
            healthy = True
        finally:
            if channel is not None:
                if healthy:
                    self._idle_channels.put(channel)
                else:
                    self._discard_channel(channel)
            self._channel_slots.release()

    def _discard_channel(self, channel: paramiko.SFTPClient) -> None:
        with self._lock:
            if channel in self._all_channels:
                self._all_channels.remove(channel)
        _close_quietly(channel, "SFTP channel")
        logger.debug("Discarded an SFTP channel after a failed operation")

    def stat(self, path: str) -> paramiko.SFTPAttributes:
        return self.sftp.stat(path)

    def list_directory(self, path: str) -> CommandResult:
        """Runs `ls -la` on `path`."""
        try:
            return self.exec_command(f"ls -la {shlex.quote(path)}")
        except (paramiko.SSHException, socket.error, EOFError) as e:
            raise RemoteConnectionError(f"Failed to list '{path}': {e}") from e

    def dispose(self) -> None:
        """Closes every channel and the SSH client. Safe to call repeatedly."""
        with self._lock:
            if self._disposed:
                return
            self._disposed = True
            channels, self._all_channels = self._all_channels, []
            sftp, self._sftp = self._sftp, None
            client, self._client = self._client, None

        for channel in channels:
            _close_quietly(channel, "SFTP channel")
        if sftp is not None:
            _close_quietly(sftp, "SFTP client")
        if client is not None:
            _close_quietly(client, "SSH client")
            target = self.credentials.target if self.credentials else "remote host"
            logger.info(f"Disconnected from {target}")


def _close_quietly(resource: typing.Any, what: str) -> None:
    try:
        resource.close()
    except Exception as e:
        logger.debug(f"Error while closing {what}: {e}")
