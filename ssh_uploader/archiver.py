"""Packages directories into zip archives ahead of a batch upload.

The archive is streamed to disk through `ProgressReportingFile`, which reports
the number of compressed bytes written so far. Once the archive is closed it
goes through `validate_archive`, a deliberately lenient structural check:
some zip writers place the end-of-central-directory record at a non-canonical
offset, so the check searches for it instead of expecting it in the last 22
bytes and, when it cannot be found, accepts the file with a warning. Only an
empty (or unreadable) archive is rejected.
"""
import logging
import os
import zipfile
from pathlib import Path
from typing import Any, Callable, Optional

from .models import ArchiveJob
from .utils import ArchiveError, ArchiveValidationError, sanitize_entry_name

logger = logging.getLogger(__name__)

LOCAL_FILE_HEADER_SIGNATURE = b"PK\x03\x04"
END_OF_CENTRAL_DIRECTORY_SIGNATURE = b"PK\x05\x06"
FULL_READ_THRESHOLD = 1024 * 1024
TAIL_READ_SIZE = 50 * 1024

DEFAULT_COMPRESSION_LEVEL = 6
EMPTY_PLACEHOLDER_NAME = "README_EMPTY_FOLDER.txt"
EMPTY_PLACEHOLDER_TEXT = "This is an empty folder."
ARCHIVE_COMMENT = b"Created by ssh-uploader"
EMPTY_ARCHIVE_COMMENT = b"Created by ssh-uploader - Empty Folder"


class ProgressReportingFile:
    """Wraps a writable file object and reports how far the output has grown.

    `zipfile` seeks back to rewrite local headers once an entry is finished,
    so the count follows the furthest position written rather than the sum of
    all writes. The callback fires whenever that position advances. All other
    attribute access (seek, tell, flush, ...) is proxied to the wrapped file,
    so it can be handed to `zipfile.ZipFile`.
    """
    def __init__(self, file_obj: Any, callback: Optional[Callable[[int], None]] = None):
        self.file = file_obj
        self.callback = callback
        self.bytes_written = 0

    def write(self, data: bytes) -> int:
        count = self.file.write(data)
        position = self.file.tell()
        if position > self.bytes_written:
            self.bytes_written = position
            if self.callback:
                self.callback(self.bytes_written)
        return count if count is not None else len(data)

    def __getattr__(self, attr: str) -> Any:
        """Proxies any other attribute access to the wrapped file object."""
        return getattr(self.file, attr)


class Archiver:
    """Creates validated zip archives from local directories.

    Attributes:
        compression_level (int): Deflate level used for non-empty directories.
    """
    def __init__(self, compression_level: int = DEFAULT_COMPRESSION_LEVEL):
        self.compression_level = compression_level

    def create_archive(self, job: ArchiveJob, on_progress: Optional[Callable[[int], None]] = None) -> ArchiveJob:
        """Packages `job.source_dir` into `job.archive_path`.

        Returns only once the archive is fully written, closed and validated.
        On success `job.size` holds the archive size.

        Args:
            job: The archive job to run.
            on_progress: Called with the number of compressed bytes written so far.

        Returns:
            The same job, finalized.

        Raises:
            ArchiveError: If the source is unusable or packaging fails. The
                partial archive has been removed.
            ArchiveValidationError: If the finished archive is rejected. The
                archive has been removed.
        """
        source = job.source_dir
        target = Path(job.archive_path)
        if not os.path.exists(source):
            raise ArchiveError(f"Source directory does not exist: {source}")
        if not os.path.isdir(source):
            raise ArchiveError(f"Source path is not a directory: {source}")

        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            if target.exists():
                logger.debug(f"Removing existing archive at '{target}'")
                target.unlink()
            with os.scandir(source) as it:
                is_empty = next(it, None) is None
        except OSError as e:
            raise ArchiveError(f"Cannot prepare archive for '{source}': {e}") from e

        level = job.compression_level if job.compression_level is not None else self.compression_level
        try:
            with open(target, "wb") as raw_output:
                output = ProgressReportingFile(raw_output, on_progress)
                if is_empty:
                    logger.warning(f"Source directory is empty, writing placeholder archive: {source}")
                    self._write_placeholder(output)
                else:
                    logger.info(f"Compressing '{source}' -> '{target}'")
                    self._write_tree(output, source, level)
                raw_output.flush()
        except (OSError, zipfile.BadZipFile, zipfile.LargeZipFile, ValueError) as e:
            _remove_quietly(target)
            raise ArchiveError(f"Failed to package '{source}': {e}") from e

        try:
            validate_archive(target)
        except ArchiveValidationError:
            _remove_quietly(target)
            raise

        job.size = target.stat().st_size
        logger.info(f"Archive ready: '{target}' ({job.size / (1024*1024):.2f} MiB)")
        return job

    def _write_placeholder(self, output: ProgressReportingFile) -> None:
        with zipfile.ZipFile(output, "w", compression=zipfile.ZIP_STORED) as zf:
            zf.comment = EMPTY_ARCHIVE_COMMENT
            zf.writestr(EMPTY_PLACEHOLDER_NAME, EMPTY_PLACEHOLDER_TEXT)

    def _write_tree(self, output: ProgressReportingFile, source: str, level: int) -> None:
        top_level = sanitize_entry_name(os.path.basename(os.path.normpath(source)))
        with zipfile.ZipFile(output, "w", compression=zipfile.ZIP_DEFLATED, compresslevel=level) as zf:
            zf.comment = ARCHIVE_COMMENT
            zf.write(source, arcname=top_level)
            for root, dirs, files in os.walk(source):
                dirs.sort()
                rel_root = os.path.relpath(root, source)
                arc_root = top_level if rel_root == os.curdir else f"{top_level}/{Path(rel_root).as_posix()}"
                for name in dirs:
                    zf.write(os.path.join(root, name), arcname=f"{arc_root}/{name}")
                for name in sorted(files):
                    zf.write(os.path.join(root, name), arcname=f"{arc_root}/{name}")


def validate_archive(path: Path) -> bool:
    """Lenient structural check of a finished zip archive.

    Small archives (under 1 MiB) are read whole, larger ones only for their
    trailing 50 KiB. The end-of-central-directory signature may sit anywhere
    in that buffer. A missing signature only produces a warning.

    Returns:
        `True` when the end-of-central-directory record was found, `False`
        when the archive was accepted on the lenient path.

    Raises:
        ArchiveValidationError: If the archive is empty or cannot be read.
    """
    path = Path(path)
    try:
        file_size = path.stat().st_size
        if file_size == 0:
            raise ArchiveValidationError(f"Archive is empty and cannot be uploaded: {path}")
        with open(path, "rb") as f:
            if file_size < FULL_READ_THRESHOLD:
                buffer = f.read()
                header = buffer[:4]
            else:
                header = f.read(4)
                f.seek(max(0, file_size - TAIL_READ_SIZE))
                buffer = f.read(TAIL_READ_SIZE)
    except OSError as e:
        raise ArchiveValidationError(f"Archive could not be read for validation: {path}: {e}") from e

    if file_size < 22:
        logger.warning(f"Archive '{path}' is unusually small ({file_size} bytes)")

    if buffer.rfind(END_OF_CENTRAL_DIRECTORY_SIGNATURE) != -1:
        logger.debug(f"Archive '{path}' passed validation: end-of-central-directory record found")
        return True

    if header == LOCAL_FILE_HEADER_SIGNATURE:
        logger.warning(f"Archive '{path}' starts with a zip header but no end-of-central-directory "
                       f"record was found. Accepting it anyway.")
    else:
        logger.warning(f"Archive '{path}' has no recognisable zip signatures. "
                       f"Accepting it because it is not empty ({file_size} bytes).")
    return False


def _remove_quietly(path: Path) -> None:
    try:
        path.unlink()
        logger.debug(f"Removed partial archive '{path}'")
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.error(f"Could not remove partial archive '{path}': {e}")
