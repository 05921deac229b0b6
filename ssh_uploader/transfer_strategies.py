"""Strategies that move bytes from the local machine to the remote host.

- `WholeFilePutStrategy`: a single `SFTPClient.put` call. The primary path.
- `ChunkedStreamStrategy`: a reader thread and a writer thread connected by a
  bounded queue. Used as the fallback when the primary put fails.
- `DirectoryTreeStrategy`: recreates a local directory tree under the remote
  destination and uploads its files on a small thread pool.
"""
import abc
import logging
import os
import posixpath
import socket
import stat
import threading
import typing
from concurrent.futures import FIRST_EXCEPTION, ThreadPoolExecutor, as_completed, wait
from queue import Empty, Full, Queue

import paramiko

from .ssh_manager import ConnectionSession, sftp_mkdir_p
from .utils import Timeouts, TransferError, TransferFallbackError

logger = logging.getLogger(__name__)

CHUNK_SIZE = 64 * 1024
QUEUE_DEPTH = 4
MAX_CONCURRENT_UPLOADS = 4
DEFAULT_EXCLUDED_DIRS = frozenset({'.git', '.svn', '.hg'})

StepCallback = typing.Callable[[int, int], None]
BytesCallback = typing.Callable[[int], None]
FileDoneCallback = typing.Callable[[str, int], None]


class TransferStrategy(abc.ABC):
    """Abstract base class for the single-file transfer strategies."""

    name = "transfer"

    @abc.abstractmethod
    def transfer(self, session: ConnectionSession, local_path: str, remote_path: str,
                 on_progress: typing.Optional[BytesCallback] = None) -> int:
        """Copies `local_path` to `remote_path` and returns the number of bytes sent.

        `on_progress` receives the running byte count of this file.
        """
        pass


class WholeFilePutStrategy(TransferStrategy):
    """Uploads the file with one `SFTPClient.put` call."""

    name = "put"

    def transfer(self, session: ConnectionSession, local_path: str, remote_path: str,
                 on_progress: typing.Optional[BytesCallback] = None) -> int:
        sent = 0

        def step(transferred: int, total: int) -> None:
            nonlocal sent
            sent = transferred
            if on_progress:
                on_progress(transferred)

        try:
            attrs = session.sftp.put(local_path, remote_path, callback=step, confirm=False)
        except Exception as e:
            raise TransferError(f"Upload of '{os.path.basename(local_path)}' failed: {e}") from e
        size = getattr(attrs, 'st_size', None)
        return size if size is not None else sent


class _StreamAborted(Exception):
    """Raised on one side of the stream when the other side failed."""


class ChunkedStreamStrategy(TransferStrategy):
    """Streams the file in fixed-size chunks through a bounded queue.

    A reader thread fills the queue from the local file and a writer thread
    drains it into a remote file opened for writing. The queue holds at most
    `queue_depth` chunks, so the reader never runs far ahead of the network.
    Either side failing stops the other. The transfer only counts as done
    once the reader reached end-of-file, the writer flushed and closed the
    remote file and both agree on the byte count.

    Attributes:
        chunk_size (int): Bytes per chunk.
        queue_depth (int): Maximum number of chunks buffered between the threads.
    """

    name = "chunked"

    def __init__(self, chunk_size: int = CHUNK_SIZE, queue_depth: int = QUEUE_DEPTH,
                 poll_interval: float = Timeouts.QUEUE_POLL):
        self.chunk_size = chunk_size
        self.queue_depth = max(1, queue_depth)
        self.poll_interval = poll_interval

    def transfer(self, session: ConnectionSession, local_path: str, remote_path: str,
                 on_progress: typing.Optional[BytesCallback] = None) -> int:
        name = os.path.basename(local_path)
        # Never the primary channel; a failed stream's channel is discarded.
        try:
            with session.sftp_channel() as sftp:
                written = self._stream(sftp, local_path, remote_path, on_progress)
        except TransferFallbackError:
            raise
        except Exception as e:
            raise TransferFallbackError(f"Fallback upload of '{name}' could not open an SFTP channel: {e}") from e
        logger.debug(f"Chunked upload of '{name}' finished: {written} bytes")
        return written

    def _stream(self, sftp: typing.Any, local_path: str, remote_path: str,
                on_progress: typing.Optional[BytesCallback]) -> int:
        name = os.path.basename(local_path)
        chunks: "Queue[typing.Optional[bytes]]" = Queue(maxsize=self.queue_depth)
        abort = threading.Event()

        with ThreadPoolExecutor(max_workers=2, thread_name_prefix='ChunkedStream') as executor:
            reader = executor.submit(self._read_chunks, local_path, chunks, abort)
            writer = executor.submit(self._write_chunks, sftp, remote_path, chunks, abort, on_progress)
            done, _ = wait([reader, writer], return_when=FIRST_EXCEPTION)
            if any(f.exception() is not None for f in done):
                abort.set()
            # Leaving the executor joins both threads.

        errors = [f.exception() for f in (reader, writer)]
        real_errors = [e for e in errors if e is not None and not isinstance(e, _StreamAborted)]
        if real_errors:
            raise TransferFallbackError(f"Fallback upload of '{name}' failed: {real_errors[0]}") from real_errors[0]
        if any(errors):
            raise TransferFallbackError(f"Fallback upload of '{name}' was aborted.")

        bytes_read, bytes_written = reader.result(), writer.result()
        if bytes_read != bytes_written:
            raise TransferFallbackError(
                f"Fallback upload of '{name}' wrote {bytes_written} bytes but read {bytes_read}."
            )
        return bytes_written

    def _read_chunks(self, local_path: str, chunks: Queue, abort: threading.Event) -> int:
        total = 0
        with open(local_path, 'rb') as f:
            while True:
                chunk = f.read(self.chunk_size)
                if not chunk:
                    self._put(chunks, None, abort)
                    return total
                self._put(chunks, chunk, abort)
                total += len(chunk)

    def _write_chunks(self, sftp: typing.Any, remote_path: str, chunks: Queue,
                      abort: threading.Event, on_progress: typing.Optional[BytesCallback]) -> int:
        written = 0
        with sftp.open(remote_path, 'wb') as remote_file:
            while True:
                chunk = self._get(chunks, abort)
                if chunk is None:
                    break
                remote_file.write(chunk)
                written += len(chunk)
                if on_progress:
                    on_progress(written)
            remote_file.flush()
        return written

    def _put(self, chunks: Queue, item: typing.Optional[bytes], abort: threading.Event) -> None:
        while True:
            if abort.is_set():
                raise _StreamAborted()
            try:
                chunks.put(item, timeout=self.poll_interval)
                return
            except Full:
                continue

    def _get(self, chunks: Queue, abort: threading.Event) -> typing.Optional[bytes]:
        while True:
            if abort.is_set():
                raise _StreamAborted()
            try:
                return chunks.get(timeout=self.poll_interval)
            except Empty:
                continue


class DirectoryTreeStrategy:
    """Uploads a whole directory tree under `<remote_dir>/<local dir name>`.

    The remote tree, empty subdirectories included, is created first. Files
    are then uploaded on a thread pool, each worker borrowing its own SFTP
    channel from the session. Version-control metadata directories are skipped
    wherever they appear, and so are symlinked directories.

    Attributes:
        max_workers (int): Maximum number of simultaneous file transfers, capped
            at `MAX_CONCURRENT_UPLOADS`.
        exclude (frozenset): Entry names that are never uploaded.
    """

    def __init__(self, max_workers: int = MAX_CONCURRENT_UPLOADS,
                 exclude: typing.Iterable[str] = DEFAULT_EXCLUDED_DIRS):
        self.max_workers = max(1, min(max_workers, MAX_CONCURRENT_UPLOADS))
        self.exclude = frozenset(exclude)

    def transfer(self, session: ConnectionSession, local_dir: str, remote_dir: str,
                 on_file_done: typing.Optional[FileDoneCallback] = None) -> str:
        """Uploads `local_dir` and returns the remote directory it was placed in.

        Args:
            session: A connected session.
            local_dir: The local directory to upload.
            remote_dir: The remote parent directory.
            on_file_done: Called with `(local_path, size)` as each file finishes.

        Raises:
            RemoteDirectoryError: If the remote target directory cannot be created.
            TransferError: If any subdirectory or file failed to upload.
        """
        local_dir = os.path.normpath(local_dir)
        target = posixpath.join(remote_dir, os.path.basename(local_dir))
        session.ensure_remote_directory(target)

        directories, files = self._collect(local_dir, target)
        logger.info(f"Uploading {len(files)} files from '{local_dir}' to '{target}'")
        try:
            for remote_subdir in directories:
                sftp_mkdir_p(session.sftp, remote_subdir)
        except (paramiko.SSHException, socket.error, EOFError) as e:
            raise TransferError(f"Failed to create remote directory tree under '{target}': {e}") from e

        failures: typing.List[str] = []
        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix='TreeUpload') as executor:
            futures = {
                executor.submit(self._upload_one, session, local_path, remote_path): (local_path, size)
                for local_path, remote_path, size in files
            }
            for future in as_completed(futures):
                local_path, size = futures[future]
                try:
                    future.result()
                except Exception as e:
                    logger.error(f"Upload of '{local_path}' failed: {e}")
                    failures.append(os.path.relpath(local_path, local_dir))
                    continue
                if on_file_done:
                    on_file_done(local_path, size)

        if failures:
            raise TransferError(
                f"{len(failures)} of {len(files)} files failed to upload: {', '.join(sorted(failures))}"
            )
        return target

    def _collect(self, local_dir: str, target: str) -> typing.Tuple[
            typing.List[str], typing.List[typing.Tuple[str, str, int]]]:
        directories: typing.List[str] = []
        files: typing.List[typing.Tuple[str, str, int]] = []
        for root, dirs, names in os.walk(local_dir):
            dirs[:] = sorted(d for d in dirs
                             if d not in self.exclude and not os.path.islink(os.path.join(root, d)))
            rel_root = os.path.relpath(root, local_dir)
            remote_root = target if rel_root == os.curdir else posixpath.join(target, *rel_root.split(os.sep))
            directories.extend(posixpath.join(remote_root, d) for d in dirs)
            for name in sorted(names):
                if name in self.exclude:
                    continue
                local_path = os.path.join(root, name)
                try:
                    st = os.stat(local_path)
                except OSError as e:
                    logger.warning(f"Skipping unreadable file '{local_path}': {e}")
                    continue
                if not stat.S_ISREG(st.st_mode):
                    continue
                files.append((local_path, posixpath.join(remote_root, name), st.st_size))
        return directories, files

    def _upload_one(self, session: ConnectionSession, local_path: str, remote_path: str) -> None:
        with session.sftp_channel() as sftp:
            sftp.put(local_path, remote_path, confirm=True)
        logger.debug(f"Uploaded '{local_path}' -> '{remote_path}'")
